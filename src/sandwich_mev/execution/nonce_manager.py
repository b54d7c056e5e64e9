"""
Serialized nonce assignment and signing per (chain, wallet).

Nonce lookup, assignment and signing for one wallet happen under a single
asyncio lock. This is the only critical section in the pipeline; every
other stage runs concurrently.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Sequence, Set, Tuple

from ..chains import ChainFamily, get_chain
from ..errors import NonceConflictError
from ..interfaces import TransactionSigner
from .bundle_models import UnsignedTransaction

logger = logging.getLogger(__name__)

WalletKey = Tuple[str, str]


class NonceManager:
    """
    Hands out strictly increasing nonces and signs under the wallet lock.

    The next nonce is the larger of the signing service's answer and our
    local cursor, so concurrently signed bundles never share a nonce even
    before the chain has seen the earlier ones.
    """

    def __init__(self, signer: TransactionSigner):
        self.signer = signer
        self._locks: Dict[WalletKey, asyncio.Lock] = {}
        self._cursors: Dict[WalletKey, int] = {}
        self._needs_refresh: Set[WalletKey] = set()
        self._outstanding: Dict[WalletKey, int] = {}
        self._unlanded: Set[WalletKey] = set()
        self.stats = {
            "transactions_signed": 0,
            "nonce_conflicts": 0,
            "refreshes": 0,
        }

    def lock_for(self, chain: str, wallet: str) -> asyncio.Lock:
        key = (chain, wallet.lower())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def sign_sequence(
        self,
        chain: str,
        wallet: str,
        transactions: Sequence[UnsignedTransaction]
    ) -> List[Tuple[bytes, int]]:
        """
        Assign consecutive nonces to ``transactions`` and sign them in order.

        Returns:
            (signed bytes, nonce) per transaction; nonce is -1 on chains
            without account nonces

        Raises:
            NonceConflictError: the signer reported a conflict; the wallet
                is refreshed from the signing service before it signs again
        """
        key = (chain, wallet.lower())
        uses_nonces = get_chain(chain).family == ChainFamily.EVM

        async with self.lock_for(chain, wallet):
            base = -1
            if uses_nonces:
                service_nonce = await self.signer.get_next_nonce(wallet, chain)
                if key in self._needs_refresh:
                    self._needs_refresh.discard(key)
                    self._cursors.pop(key, None)
                    self.stats["refreshes"] += 1
                    logger.info(f"Refreshed nonce for {wallet} on {chain}: {service_nonce}")
                base = max(service_nonce, self._cursors.get(key, service_nonce))

            signed: List[Tuple[bytes, int]] = []
            try:
                for offset, tx in enumerate(transactions):
                    nonce = base + offset if uses_nonces else -1
                    to_sign = replace(tx, nonce=nonce) if uses_nonces else tx
                    signed.append((await self.signer.sign(to_sign), nonce))
            except NonceConflictError:
                self.stats["nonce_conflicts"] += 1
                self._needs_refresh.add(key)
                logger.warning(f"Nonce conflict for {wallet} on {chain} at nonce {base}")
                raise

            if uses_nonces:
                self._cursors[key] = base + len(transactions)
                self._outstanding[key] = self._outstanding.get(key, 0) + 1
            self.stats["transactions_signed"] += len(signed)
            return signed

    def release(self, chain: str, wallet: str, included: bool) -> None:
        """
        Report the outcome of a signed bundle.

        Nonces of a bundle that never landed get reused. The cursor is
        resynchronized with the signing service once no other signed bundle
        for the wallet is still outstanding, so live nonces are never reissued.
        """
        key = (chain, wallet.lower())
        remaining = max(0, self._outstanding.get(key, 0) - 1)
        self._outstanding[key] = remaining
        if not included:
            self._unlanded.add(key)
        if remaining == 0 and key in self._unlanded:
            self._unlanded.discard(key)
            self._needs_refresh.add(key)

    def outstanding(self, chain: str, wallet: str) -> int:
        return self._outstanding.get((chain, wallet.lower()), 0)

    def needs_refresh(self, chain: str, wallet: str) -> bool:
        return (chain, wallet.lower()) in self._needs_refresh
