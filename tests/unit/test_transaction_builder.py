"""Unit tests for sandwich leg construction and local signing."""
import pytest
from eth_abi import decode
from eth_account import Account

from sandwich_mev.errors import NonceConflictError
from sandwich_mev.execution.bundle_models import TransactionRole, UnsignedTransaction
from sandwich_mev.execution.signer import EthAccountSigner
from sandwich_mev.execution.transaction_builder import (
    EXECUTOR_ARG_TYPES, EXECUTOR_SELECTOR, SandwichTransactionBuilder
)
from sandwich_mev.mev_detection.opportunity_models import SolanaSandwichOpportunity
from sandwich_mev.mev_detection.transaction_analyzer import WHIRLPOOL_SWAP_DISCRIMINATOR, WHIRLPOOL_SWAP_LAYOUT

from fakes import EXECUTOR, GWEI, USDC, USDC_WETH_PAIR, WALLET, WETH, make_estimate, make_opportunity, make_settings

WHIRLPOOL_PROGRAM = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
SOL_POOL = "HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81ngndJ"


def executor_args(tx: UnsignedTransaction):
    assert tx.data[:4] == EXECUTOR_SELECTOR
    kind, pool, token_in, token_out, amount, min_out, tip = decode(EXECUTOR_ARG_TYPES, tx.data[4:])
    return kind, pool.lower(), token_in.lower(), token_out.lower(), amount, min_out, tip


def solana_opportunity(a_to_b: bool = False) -> SolanaSandwichOpportunity:
    evm_only = {"family", "router", "victim_gas_price", "victim_nonce"}
    values = {k: v for k, v in make_opportunity().model_dump().items() if k not in evm_only}
    values.update(chain="solana", pool_address=SOL_POOL, program_id=WHIRLPOOL_PROGRAM, a_to_b=a_to_b)
    return SolanaSandwichOpportunity(**values)


@pytest.fixture
def builder(settings):
    return SandwichTransactionBuilder(settings)


class TestEvmLegs:
    """Front-run buys what the victim buys; back-run sells it back with the tip."""

    def test_legs(self, builder):
        estimate = make_estimate()
        front, back = builder.build(make_opportunity(), estimate, WALLET, tip=5 * 10**16)

        assert (front.role, back.role) == (TransactionRole.FRONT_RUN, TransactionRole.BACK_RUN)
        assert front.to == back.to == EXECUTOR
        assert front.sender == WALLET
        assert front.chain_id == 1
        assert front.gas_price == 120 * GWEI
        assert front.gas_limit == 300_000
        assert front.nonce is None

        kind, pool, token_in, token_out, amount, min_out, tip = executor_args(front)
        assert (kind, pool, token_in, token_out) == (0, USDC_WETH_PAIR, USDC, WETH)
        assert amount == estimate.front_run_amount
        assert min_out == estimate.back_run_amount * 9_950 // 10_000
        assert tip == 0

        kind, pool, token_in, token_out, amount, min_out, tip = executor_args(back)
        assert (token_in, token_out) == (WETH, USDC)
        assert amount == estimate.back_run_amount
        assert min_out == 13_942_833_355
        assert tip == 5 * 10**16

    def test_back_run_never_accepts_a_loss(self, builder):
        estimate = make_estimate(expected_back_run_out=make_estimate().front_run_amount)
        _, back = builder.build(make_opportunity(), estimate, WALLET, tip=0)

        assert executor_args(back)[5] == estimate.front_run_amount

    def test_missing_executor(self):
        builder = SandwichTransactionBuilder(make_settings(executor_contracts={}))
        with pytest.raises(ValueError):
            builder.build(make_opportunity(), make_estimate(), WALLET, tip=0)


class TestSolanaLegs:
    """Whirlpool swap instructions in opposite directions."""

    def test_legs(self, builder):
        estimate = make_estimate(chain="solana")
        front, back = builder.build(solana_opportunity(a_to_b=False), estimate, WALLET, tip=10_000)

        assert front.to == back.to == WHIRLPOOL_PROGRAM
        assert front.accounts == (SOL_POOL,)
        assert front.gas_limit == 200_000
        assert front.tip == 0
        assert back.tip == 10_000

        assert front.data.startswith(WHIRLPOOL_SWAP_DISCRIMINATOR)
        amount, _, _, exact_input, a_to_b = WHIRLPOOL_SWAP_LAYOUT.unpack(front.data[8:])
        assert (amount, exact_input, a_to_b) == (estimate.front_run_amount, True, False)

        amount, _, _, _, a_to_b = WHIRLPOOL_SWAP_LAYOUT.unpack(back.data[8:])
        assert (amount, a_to_b) == (estimate.back_run_amount, True)


class TestEthAccountSigner:
    """Local key signing for paper trading."""

    KEY = "0x" + "4c" * 32

    @pytest.mark.asyncio
    async def test_signed_transaction_recovers_sender(self):
        signer = EthAccountSigner(self.KEY)
        tx = UnsignedTransaction(
            chain="ethereum", role=TransactionRole.FRONT_RUN, sender=signer.wallet_address("ethereum"),
            to=EXECUTOR, data=b"\x01\x02", gas_limit=300_000, gas_price=120 * GWEI, nonce=7, chain_id=1,
        )

        raw = await signer.sign(tx)

        assert Account.recover_transaction(raw) == Account.from_key(self.KEY).address

    @pytest.mark.asyncio
    async def test_unassigned_nonce(self):
        signer = EthAccountSigner(self.KEY)
        tx = UnsignedTransaction(chain="ethereum", role=TransactionRole.BACK_RUN, sender=WALLET, to=EXECUTOR,
                                 data=b"")
        with pytest.raises(NonceConflictError):
            await signer.sign(tx)

    @pytest.mark.asyncio
    async def test_chain_without_rpc(self):
        with pytest.raises(KeyError):
            await EthAccountSigner(self.KEY).get_next_nonce(WALLET, "bsc")
