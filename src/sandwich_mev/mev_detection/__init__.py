"""
Sandwich Opportunity Detection.

Decodes pending swaps against known routers, checks pool and token quality
and emits scored sandwich opportunities.
"""
from .opportunity_models import (
    DecodedSwap,
    DexProtocol,
    EvmSandwichOpportunity,
    PendingTransaction,
    PoolKind,
    ProfitEstimate,
    SandwichOpportunity,
    SolanaSandwichOpportunity
)
from .router_registry import DEFAULT_ROUTERS, RouterRegistry, RouterSpec
from .transaction_analyzer import SWAP_FUNCTIONS, SwapFunction, TransactionAnalyzer, create_transaction_analyzer
from .pool_state_cache import CachedPoolState, CacheLevel, PoolStateCache
from .opportunity_detector import SandwichOpportunityDetector

__all__ = [
    # Models
    "DecodedSwap",
    "DexProtocol",
    "EvmSandwichOpportunity",
    "PendingTransaction",
    "PoolKind",
    "ProfitEstimate",
    "SandwichOpportunity",
    "SolanaSandwichOpportunity",

    # Decoding
    "DEFAULT_ROUTERS",
    "RouterRegistry",
    "RouterSpec",
    "SWAP_FUNCTIONS",
    "SwapFunction",
    "TransactionAnalyzer",
    "create_transaction_analyzer",

    # Pool state
    "CachedPoolState",
    "CacheLevel",
    "PoolStateCache",

    # Detection
    "SandwichOpportunityDetector",
]
