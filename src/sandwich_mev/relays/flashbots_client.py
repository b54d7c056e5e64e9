"""
Flashbots relay client for Ethereum.

Bundles go through ``mev_simBundle`` and ``mev_sendBundle``. Every relay
request carries an ``X-Flashbots-Signature`` header signed with a reputation
key that holds no funds.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ..config.settings import Settings, settings as default_settings
from ..errors import RelayRejectedError
from ..execution.bundle_models import BundleTransaction, TransactionRole
from .base_relay import JsonRpcRelayClient, SimulationResult, as_int, tx_hex

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://relay.flashbots.net"


class FlashbotsClient(JsonRpcRelayClient):
    """Flashbots MEV-Share bundle relay."""

    def __init__(
        self,
        auth_key: str,
        relay_url: str = DEFAULT_RELAY_URL,
        rpc_url: Optional[str] = None,
        profit_account: Optional[str] = None,
        timeout: float = 5.0,
        block_range: int = 3
    ):
        """
        Initialize Flashbots client.

        Args:
            auth_key: Private key used only to sign relay requests
            relay_url: Flashbots relay endpoint
            rpc_url: Ethereum RPC for block numbers and receipts
            profit_account: Executor address whose token balance is the profit
            timeout: Per-request timeout in seconds
            block_range: Blocks past the target the bundle stays valid for
        """
        super().__init__(
            "ethereum", relay_url, rpc_url=rpc_url, profit_account=profit_account,
            timeout=timeout, block_range=block_range
        )
        self.auth_account = Account.from_key(auth_key)

    def _relay_headers(self, body: str) -> Dict[str, str]:
        """Sign the request body for X-Flashbots-Signature."""
        message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
        signed = self.auth_account.sign_message(message)
        return {"X-Flashbots-Signature": f"{self.auth_account.address}:{Web3.to_hex(signed.signature)}"}

    def _bundle_body(self, transactions: Sequence[BundleTransaction]) -> List[Dict[str, Any]]:
        body = []
        for tx in transactions:
            if tx.role == TransactionRole.VICTIM and tx.tx_hash:
                body.append({"hash": tx.tx_hash})
            elif tx.raw is not None:
                body.append({"tx": tx_hex(tx.raw), "canRevert": False})
            elif tx.tx_hash:
                body.append({"hash": tx.tx_hash})
            else:
                raise RelayRejectedError("Bundle entry has neither raw bytes nor a hash", chain=self.chain)
        return body

    def _bundle(self, transactions: Sequence[BundleTransaction], target_block: int) -> Dict[str, Any]:
        return {
            "version": "v0.1",
            "inclusion": {"block": hex(target_block), "maxBlock": hex(target_block + self.block_range)},
            "body": self._bundle_body(transactions),
        }

    async def simulate_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        token: str
    ) -> SimulationResult:
        target = await self.get_block_number() + 1
        self.stats["simulations"] += 1
        result = await self._relay_call("mev_simBundle", [self._bundle(transactions, target)]) or {}

        if not result.get("success", False):
            return SimulationResult(success=False, error=result.get("error", "simulation failed"))

        tx_logs: List[Dict[str, Any]] = []
        for entry in result.get("logs") or []:
            tx_logs.extend(entry.get("txLogs") or [])

        return SimulationResult(
            success=True,
            resulting_balances=self._deltas_from_logs(tx_logs),
            gas_used=as_int(result.get("gasUsed")),
        )

    async def submit_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        target_block: int,
        tip: int
    ) -> str:
        result = await self._relay_call("mev_sendBundle", [self._bundle(transactions, target_block)]) or {}
        bundle_hash = result.get("bundleHash")
        if not bundle_hash:
            raise RelayRejectedError("mev_sendBundle returned no bundle hash", chain=self.chain)

        self.stats["submissions"] += 1
        logger.info(f"Flashbots bundle {bundle_hash} submitted for block {target_block} (tip {tip} wei)")
        return bundle_hash


# Convenience functions

async def create_flashbots_client(
    settings: Optional[Settings] = None,
    profit_account: Optional[str] = None
) -> FlashbotsClient:
    """
    Create and initialize a Flashbots client from settings.

    Raises:
        ValueError: no Flashbots auth key is configured
    """
    settings = settings or default_settings
    if not settings.flashbots_auth_key:
        raise ValueError("FLASHBOTS_AUTH_KEY is required for the Ethereum relay")

    client = FlashbotsClient(
        settings.flashbots_auth_key,
        relay_url=settings.flashbots_relay_url,
        rpc_url=settings.ethereum_rpc_url,
        profit_account=profit_account or settings.executor_contracts.get("ethereum"),
        timeout=settings.relay_timeout_seconds,
        block_range=settings.bundle_block_range,
    )
    await client.initialize()
    return client
