"""
Sandwich Opportunity Data Models.

Defines the pending transaction record, decoded swap parameters, the
per-chain-family sandwich opportunity variants and the profit estimate that
flow through detection, optimization and execution.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from ..chains import normalize_address
from ..interfaces import PoolInfo


class DexProtocol(str, Enum):
    """Router families the decoder understands."""
    UNISWAP_V2 = "uniswap_v2"
    SUSHISWAP = "sushiswap"
    PANCAKESWAP_V2 = "pancakeswap_v2"
    UNISWAP_V3 = "uniswap_v3"
    PANCAKESWAP_V3 = "pancakeswap_v3"
    ORCA_WHIRLPOOL = "orca_whirlpool"


class PoolKind(str, Enum):
    """AMM model behind a protocol."""
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED = "concentrated"
    WHIRLPOOL = "whirlpool"


@dataclass(frozen=True)
class PendingTransaction:
    """A transaction observed in the mempool. Immutable once captured."""
    hash: str
    chain: str
    sender: str
    to: str
    data: bytes
    value: int = 0
    gas_price: int = 0
    observed_at: float = field(default_factory=time.time)

    nonce: Optional[int] = None
    raw_transaction: Optional[bytes] = None     # signed victim bytes, when the source has them
    accounts: Tuple[str, ...] = ()              # Solana instruction accounts

    @property
    def selector(self) -> bytes:
        return self.data[:4]


class DecodedSwap(BaseModel):
    """Swap parameters recovered from router calldata."""

    model_config = ConfigDict(frozen=True)

    protocol: DexProtocol
    pool_kind: PoolKind
    router: str
    function_name: str
    path: Tuple[str, ...] = Field(default=(), description="Token route, input first")
    amount_in: int = Field(..., ge=0)
    amount_out_min: int = Field(default=0, ge=0)
    fee_tier: Optional[int] = Field(None, description="V3 fee in hundredths of a basis point")
    deadline: Optional[int] = Field(None, description="Unix deadline declared by the victim")
    recipient: Optional[str] = None
    pool_address: Optional[str] = None
    a_to_b: Optional[bool] = Field(None, description="Whirlpool direction, token A to token B")
    native_in: bool = False
    native_out: bool = False

    @property
    def token_in(self) -> Optional[str]:
        return self.path[0] if self.path else None

    @property
    def token_out(self) -> Optional[str]:
        return self.path[-1] if self.path else None

    @property
    def is_multi_hop(self) -> bool:
        return len(self.path) > 2


class SandwichOpportunityBase(BaseModel):
    """Fields shared by every chain family. Read-only after detection."""

    model_config = ConfigDict(frozen=True)

    opportunity_id: str = Field(..., description="Unique opportunity identifier")
    chain: str
    victim_tx_hash: str
    pool_address: str
    token_in: str
    token_out: str
    token_in_decimals: int
    token_out_decimals: int
    swap: DecodedSwap

    # Pool state used at detection
    fee_bps: int = Field(..., ge=0, lt=10_000)
    reserve_in: int = Field(..., gt=0)
    reserve_out: int = Field(..., gt=0)
    pool_block_number: int = 0
    pool_state_age_seconds: float = 0.0

    price_impact_bps: int = Field(..., ge=0)
    victim_expected_out: int = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1, description="Confidence in the pool data and estimate")

    detected_at: float = Field(default_factory=time.time)
    expires_at: float

    victim_raw_transaction: Optional[bytes] = None

    @property
    def token_pair(self) -> Tuple[str, str]:
        return (self.token_in, self.token_out)

    @property
    def victim_key(self) -> Tuple[str, str, str]:
        """Stable across repeated sightings of the same victim swap."""
        return (self.chain, self.victim_tx_hash, self.pool_address)

    @property
    def reserves_snapshot(self) -> Tuple[str, str, int, int]:
        """Identifies the pool state this opportunity was scored against."""
        return (self.chain, self.pool_address, self.reserve_in, self.reserve_out)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    def time_to_expiry(self) -> float:
        return max(0.0, self.expires_at - time.time())

    def oriented_reserves(self, pool: PoolInfo) -> Tuple[int, int]:
        """(reserve_in, reserve_out) of ``pool`` in this opportunity's swap direction."""
        if normalize_address(self.chain, pool.token0) == self.token_in:
            return pool.reserve0, pool.reserve1
        return pool.reserve1, pool.reserve0


class EvmSandwichOpportunity(SandwichOpportunityBase):
    """Opportunity on an account/nonce chain (Ethereum, BSC)."""

    family: Literal["evm"] = "evm"
    router: str
    victim_gas_price: int = Field(..., ge=0)
    victim_nonce: Optional[int] = None


class SolanaSandwichOpportunity(SandwichOpportunityBase):
    """Opportunity on Solana, sandwiched through a program instruction."""

    family: Literal["solana"] = "solana"
    program_id: str
    accounts: Tuple[str, ...] = ()
    a_to_b: bool = True


SandwichOpportunity = Annotated[
    Union[EvmSandwichOpportunity, SolanaSandwichOpportunity],
    Field(discriminator="family"),
]


class ProfitEstimate(BaseModel):
    """Optimal sizing and expected profit for one opportunity."""

    model_config = ConfigDict(frozen=True)

    opportunity_id: str
    chain: str

    # Amounts in token base units
    front_run_amount: int = Field(..., gt=0, description="Token-in spent by the front-run")
    back_run_amount: int = Field(..., gt=0, description="Token-out sold by the back-run")
    expected_back_run_out: int
    expected_victim_out: int
    gross_profit: int = Field(..., description="Token-in gained before gas")

    # Gas
    gas_units: int
    gas_price: int
    gas_cost_native: int
    gas_cost_usd: Decimal
    gas_cost_in_token: int

    net_profit: int
    net_profit_usd: Decimal
    risk_score: float = Field(..., ge=0, le=1)
    risk_adjusted_profit: int
    risk_adjusted_profit_usd: Decimal

    token_in_usd_price: Decimal
    native_usd_price: Decimal
    iterations: int = 0
    computed_at: float = Field(default_factory=time.time)
