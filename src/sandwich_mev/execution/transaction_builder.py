"""
Builds the attacker legs of a sandwich.

EVM legs call an executor contract; Solana legs are Whirlpool swap
instructions for the configured executor program, with the tip attached to
the back-run.
"""
import logging
from typing import Optional, Tuple

from eth_abi import encode
from web3 import Web3

from ..chains import ChainFamily, get_chain
from ..config.settings import Settings, settings as default_settings
from ..mev_detection.opportunity_models import (
    EvmSandwichOpportunity, PoolKind, ProfitEstimate, SandwichOpportunity, SolanaSandwichOpportunity
)
from ..mev_detection.transaction_analyzer import WHIRLPOOL_SWAP_DISCRIMINATOR, WHIRLPOOL_SWAP_LAYOUT
from ..protocols.uniswap_v2_math import BPS
from .bundle_models import TransactionRole, UnsignedTransaction

logger = logging.getLogger(__name__)

EXECUTOR_SIGNATURE = "executeSwap(uint8,address,address,address,uint256,uint256,uint256)"
EXECUTOR_SELECTOR = bytes(Web3.keccak(text=EXECUTOR_SIGNATURE)[:4])
EXECUTOR_ARG_TYPES = ["uint8", "address", "address", "address", "uint256", "uint256", "uint256"]

POOL_KIND_CODES = {
    PoolKind.CONSTANT_PRODUCT: 0,
    PoolKind.CONCENTRATED: 1,
}

# Whirlpool sqrt price bounds
MIN_SQRT_PRICE = 4295048016
MAX_SQRT_PRICE = 79226673515401279992447579055


def encode_executor_call(
    pool_kind: PoolKind,
    pool: str,
    token_in: str,
    token_out: str,
    amount_in: int,
    min_amount_out: int,
    coinbase_tip: int = 0
) -> bytes:
    """Calldata for one swap through the executor contract."""
    args = encode(
        EXECUTOR_ARG_TYPES,
        [POOL_KIND_CODES[pool_kind], pool, token_in, token_out, amount_in, min_amount_out, coinbase_tip],
    )
    return EXECUTOR_SELECTOR + args


def encode_whirlpool_swap(amount: int, min_out: int, a_to_b: bool) -> bytes:
    """Whirlpool exact-input swap instruction data."""
    limit = MIN_SQRT_PRICE if a_to_b else MAX_SQRT_PRICE
    return WHIRLPOOL_SWAP_DISCRIMINATOR + WHIRLPOOL_SWAP_LAYOUT.pack(
        amount, min_out, limit.to_bytes(16, "little"), True, a_to_b
    )


class SandwichTransactionBuilder:
    """Creates unsigned front-run and back-run transactions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def executor_for(self, chain: str) -> str:
        executor = self.settings.executor_contracts.get(chain)
        if not executor:
            raise ValueError(f"No executor contract configured for {chain}")
        return executor

    def build(
        self,
        opportunity: SandwichOpportunity,
        estimate: ProfitEstimate,
        wallet: str,
        tip: int
    ) -> Tuple[UnsignedTransaction, UnsignedTransaction]:
        """
        Build (front-run, back-run) for an estimate.

        Minimum outputs allow ``swap_slippage_bps`` below the expected
        amounts; the back-run never accepts less than the front-run spent.
        """
        front_min = self._with_slippage(estimate.back_run_amount)
        back_min = max(self._with_slippage(estimate.expected_back_run_out), estimate.front_run_amount)

        if get_chain(opportunity.chain).family == ChainFamily.SOLANA:
            return self._build_solana(opportunity, estimate, wallet, tip, front_min, back_min)
        return self._build_evm(opportunity, estimate, wallet, tip, front_min, back_min)

    def _with_slippage(self, amount: int) -> int:
        return amount * (BPS - self.settings.swap_slippage_bps) // BPS

    def _build_evm(
        self,
        opportunity: EvmSandwichOpportunity,
        estimate: ProfitEstimate,
        wallet: str,
        tip: int,
        front_min: int,
        back_min: int
    ) -> Tuple[UnsignedTransaction, UnsignedTransaction]:
        chain = get_chain(opportunity.chain)
        executor = self.executor_for(opportunity.chain)
        gas_limit = self.settings.gas_units_per_swap[opportunity.chain] * 2
        kind = opportunity.swap.pool_kind

        front = UnsignedTransaction(
            chain=opportunity.chain,
            role=TransactionRole.FRONT_RUN,
            sender=wallet,
            to=executor,
            data=encode_executor_call(
                kind, opportunity.pool_address, opportunity.token_in, opportunity.token_out,
                estimate.front_run_amount, front_min,
            ),
            gas_limit=gas_limit,
            gas_price=estimate.gas_price,
            chain_id=chain.chain_id,
        )
        # Builder payment rides on the back-run so it is only paid when the sandwich closes
        back = UnsignedTransaction(
            chain=opportunity.chain,
            role=TransactionRole.BACK_RUN,
            sender=wallet,
            to=executor,
            data=encode_executor_call(
                kind, opportunity.pool_address, opportunity.token_out, opportunity.token_in,
                estimate.back_run_amount, back_min, tip,
            ),
            gas_limit=gas_limit,
            gas_price=estimate.gas_price,
            chain_id=chain.chain_id,
        )
        return front, back

    def _build_solana(
        self,
        opportunity: SolanaSandwichOpportunity,
        estimate: ProfitEstimate,
        wallet: str,
        tip: int,
        front_min: int,
        back_min: int
    ) -> Tuple[UnsignedTransaction, UnsignedTransaction]:
        program = opportunity.program_id
        accounts = (opportunity.pool_address,)
        compute_units = self.settings.gas_units_per_swap[opportunity.chain]

        front = UnsignedTransaction(
            chain=opportunity.chain,
            role=TransactionRole.FRONT_RUN,
            sender=wallet,
            to=program,
            data=encode_whirlpool_swap(estimate.front_run_amount, front_min, opportunity.a_to_b),
            gas_limit=compute_units,
            gas_price=estimate.gas_price,
            accounts=accounts,
        )
        back = UnsignedTransaction(
            chain=opportunity.chain,
            role=TransactionRole.BACK_RUN,
            sender=wallet,
            to=program,
            data=encode_whirlpool_swap(estimate.back_run_amount, back_min, not opportunity.a_to_b),
            gas_limit=compute_units,
            gas_price=estimate.gas_price,
            accounts=accounts,
            tip=tip,
        )
        return front, back
