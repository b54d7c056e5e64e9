"""Local eth_account signer for EVM chains, used for paper trading and tests."""
import logging
from typing import Dict, Optional

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from ..errors import NonceConflictError
from ..interfaces import TransactionSigner
from .bundle_models import UnsignedTransaction

logger = logging.getLogger(__name__)


class EthAccountSigner(TransactionSigner):
    """
    Signs legacy EVM transactions with a key held in memory.

    Nonces come from the ``pending`` transaction count on each chain's RPC.
    Production deployments plug a custody-backed ``TransactionSigner`` in
    its place.
    """

    def __init__(self, private_key: str, rpc_urls: Optional[Dict[str, str]] = None, timeout: float = 10.0):
        self.account = Account.from_key(private_key)
        self._web3: Dict[str, AsyncWeb3] = {
            chain: AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))
            for chain, url in (rpc_urls or {}).items()
        }
        self._confirmed: Dict[str, int] = {}

    def wallet_address(self, chain: str) -> str:
        return self.account.address

    async def get_next_nonce(self, wallet: str, chain: str) -> int:
        w3 = self._web3.get(chain)
        if w3 is None:
            raise KeyError(f"No RPC configured for {chain}")
        address = Web3.to_checksum_address(wallet)
        confirmed = await w3.eth.get_transaction_count(address, "latest")
        pending = await w3.eth.get_transaction_count(address, "pending")
        self._confirmed[chain] = confirmed
        return pending

    async def sign(self, tx: UnsignedTransaction) -> bytes:
        if tx.nonce is None:
            raise NonceConflictError("Transaction has no nonce assigned", chain=tx.chain, wallet=tx.sender)
        confirmed = self._confirmed.get(tx.chain)
        if confirmed is not None and tx.nonce < confirmed:
            raise NonceConflictError(
                f"Nonce {tx.nonce} already used (confirmed count {confirmed})",
                chain=tx.chain, wallet=tx.sender
            )

        signed = self.account.sign_transaction({
            "nonce": tx.nonce,
            "gasPrice": tx.gas_price,
            "gas": tx.gas_limit,
            "to": Web3.to_checksum_address(tx.to),
            "value": tx.value,
            "data": tx.data,
            "chainId": tx.chain_id,
        })
        return bytes(signed.raw_transaction)
