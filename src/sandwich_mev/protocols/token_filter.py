"""Token and pool quality gate applied before an opportunity is scored."""
import logging
from dataclasses import dataclass, field
from typing import Optional, Set

from ..config.settings import Settings
from ..interfaces import PoolInfo, TokenInfo
from .uniswap_v2_math import liquidity_in_whole_tokens

logger = logging.getLogger(__name__)


@dataclass
class TokenCriteria:
    """Token filtering criteria."""
    min_decimals: int = 0
    max_decimals: int = 30
    max_tax_bps: int = 500                  # 5% buy or sell tax
    min_pool_liquidity: int = 1000          # geometric mean of reserves, whole tokens
    require_verified: bool = False
    blacklisted_tokens: Set[str] = field(default_factory=set)
    whitelisted_tokens: Set[str] = field(default_factory=set)   # bypass token checks

    @classmethod
    def from_settings(cls, settings: Settings, whitelisted: Optional[Set[str]] = None) -> "TokenCriteria":
        return cls(
            min_decimals=settings.min_token_decimals,
            max_decimals=settings.max_token_decimals,
            max_tax_bps=settings.max_token_tax_bps,
            min_pool_liquidity=settings.min_pool_liquidity,
            blacklisted_tokens=set(settings.blacklist),
            whitelisted_tokens={t.lower() for t in (whitelisted or set())},
        )


class TokenFilter:
    """
    Rejects tokens and pools that are unsafe or too thin to sandwich.

    Each check returns a short rejection reason, or ``None`` when the
    token or pool passes. Reasons are used as statistics keys.
    """

    def __init__(self, criteria: TokenCriteria):
        self.criteria = criteria

    def check_token(self, token: TokenInfo) -> Optional[str]:
        address = token.address.lower()

        # Blacklisted tokens are always rejected, even when whitelisted
        if token.blacklisted or address in self.criteria.blacklisted_tokens:
            return "blacklisted"

        if not self.criteria.min_decimals <= token.decimals <= self.criteria.max_decimals:
            return "implausible_decimals"

        if address in self.criteria.whitelisted_tokens:
            return None

        if token.honeypot:
            return "honeypot"

        if max(token.buy_tax_bps, token.sell_tax_bps) > self.criteria.max_tax_bps:
            return "excessive_tax"

        if self.criteria.require_verified and not token.verified:
            return "unverified"

        return None

    def check_pool(self, pool: PoolInfo, decimals0: int, decimals1: int) -> Optional[str]:
        liquidity = liquidity_in_whole_tokens(pool.reserve0, pool.reserve1, decimals0, decimals1)
        if liquidity < self.criteria.min_pool_liquidity:
            logger.debug(f"Pool {pool.address} liquidity {liquidity} below {self.criteria.min_pool_liquidity}")
            return "low_liquidity"
        return None
