"""Unit tests for serialized nonce assignment."""
import asyncio

import pytest

from sandwich_mev.errors import NonceConflictError
from sandwich_mev.execution.bundle_models import TransactionRole, UnsignedTransaction
from sandwich_mev.execution.nonce_manager import NonceManager

from fakes import EXECUTOR, WALLET, FakeSigner


def legs(chain: str = "ethereum"):
    return [
        UnsignedTransaction(chain=chain, role=TransactionRole.FRONT_RUN, sender=WALLET, to=EXECUTOR, data=b"\x01"),
        UnsignedTransaction(chain=chain, role=TransactionRole.BACK_RUN, sender=WALLET, to=EXECUTOR, data=b"\x02"),
    ]


class TestNonceManager:
    """Nonces per (chain, wallet) are unique and consecutive."""

    @pytest.mark.asyncio
    async def test_consecutive_nonces_from_service(self):
        signer = FakeSigner(next_nonce=42)
        manager = NonceManager(signer)

        signed = await manager.sign_sequence("ethereum", WALLET, legs())

        assert [nonce for _, nonce in signed] == [42, 43]
        assert [tx.nonce for tx in signer.signed] == [42, 43]
        assert manager.outstanding("ethereum", WALLET) == 1
        assert manager.stats["transactions_signed"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_bundles_never_share_nonces(self):
        signer = FakeSigner(next_nonce=42)
        manager = NonceManager(signer)

        results = await asyncio.gather(*(manager.sign_sequence("ethereum", WALLET, legs()) for _ in range(10)))

        nonces = sorted(nonce for signed in results for _, nonce in signed)
        assert nonces == list(range(42, 62))
        for signed in results:
            assert signed[1][1] == signed[0][1] + 1

    @pytest.mark.asyncio
    async def test_chains_are_independent(self):
        manager = NonceManager(FakeSigner(next_nonce=5))

        eth = await manager.sign_sequence("ethereum", WALLET, legs())
        bsc = await manager.sign_sequence("bsc", WALLET, legs("bsc"))

        assert [n for _, n in eth] == [5, 6]
        assert [n for _, n in bsc] == [5, 6]

    @pytest.mark.asyncio
    async def test_service_ahead_of_cursor_wins(self):
        signer = FakeSigner(next_nonce=10)
        manager = NonceManager(signer)
        await manager.sign_sequence("ethereum", WALLET, legs())

        signer.next_nonce["ethereum"] = 50
        signed = await manager.sign_sequence("ethereum", WALLET, legs())
        assert [n for _, n in signed] == [50, 51]

    @pytest.mark.asyncio
    async def test_conflict_marks_wallet_for_refresh(self):
        signer = FakeSigner(next_nonce=42)
        signer.conflicting_nonces.add(43)
        manager = NonceManager(signer)

        with pytest.raises(NonceConflictError):
            await manager.sign_sequence("ethereum", WALLET, legs())

        assert manager.needs_refresh("ethereum", WALLET)
        assert manager.stats["nonce_conflicts"] == 1

        signer.conflicting_nonces.clear()
        signer.next_nonce["ethereum"] = 44
        signed = await manager.sign_sequence("ethereum", WALLET, legs())

        assert [n for _, n in signed] == [44, 45]
        assert not manager.needs_refresh("ethereum", WALLET)
        assert manager.stats["refreshes"] == 1

    @pytest.mark.asyncio
    async def test_unlanded_nonces_are_reused_after_release(self):
        signer = FakeSigner(next_nonce=42)
        manager = NonceManager(signer)

        await manager.sign_sequence("ethereum", WALLET, legs())
        manager.release("ethereum", WALLET, included=False)

        assert manager.outstanding("ethereum", WALLET) == 0
        signed = await manager.sign_sequence("ethereum", WALLET, legs())
        assert [n for _, n in signed] == [42, 43]

    @pytest.mark.asyncio
    async def test_live_nonces_are_not_reissued(self):
        signer = FakeSigner(next_nonce=42)
        manager = NonceManager(signer)

        await manager.sign_sequence("ethereum", WALLET, legs())
        await manager.sign_sequence("ethereum", WALLET, legs())
        # The first bundle failed but the second is still in flight
        manager.release("ethereum", WALLET, included=False)

        signed = await manager.sign_sequence("ethereum", WALLET, legs())
        assert [n for _, n in signed] == [46, 47]

    @pytest.mark.asyncio
    async def test_solana_has_no_nonces(self):
        signer = FakeSigner()
        manager = NonceManager(signer)

        signed = await manager.sign_sequence("solana", WALLET, legs("solana"))

        assert [n for _, n in signed] == [-1, -1]
        assert signer.signed[0].nonce is None
        assert manager.outstanding("solana", WALLET) == 0

    def test_wallet_case_is_normalized(self):
        manager = NonceManager(FakeSigner())
        assert manager.lock_for("ethereum", WALLET.upper()) is manager.lock_for("ethereum", WALLET)
