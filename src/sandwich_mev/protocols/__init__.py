"""
DEX protocol math and metadata helpers.

Constant-product swap math, CREATE2 pool addresses and the token quality gate.
"""
from .uniswap_v2_math import BPS, SandwichLegs, UniswapV2Math, liquidity_in_whole_tokens
from .pool_address import create2_address, sort_tokens, v2_pair_address, v3_pool_address
from .token_filter import TokenCriteria, TokenFilter

__all__ = [
    # Swap math
    "BPS",
    "SandwichLegs",
    "UniswapV2Math",
    "liquidity_in_whole_tokens",

    # Pool addresses
    "create2_address",
    "sort_tokens",
    "v2_pair_address",
    "v3_pool_address",

    # Token quality
    "TokenCriteria",
    "TokenFilter",
]
