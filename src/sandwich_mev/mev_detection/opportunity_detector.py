"""
Sandwich Opportunity Detector.

Turns pending transactions into scored ``SandwichOpportunity`` records:
decode the router call, gate the tokens and pool, measure the victim's price
impact against cached reserves and attach a confidence score.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

from ..chains import ChainFamily, get_chain
from ..config.settings import Settings, settings as default_settings
from ..errors import DecodeError
from ..events import EventDispatcher, EventType, ExecutionStats
from ..interfaces import MetadataProvider, PoolInfo, TokenInfo
from ..protocols.token_filter import TokenCriteria, TokenFilter
from ..protocols.uniswap_v2_math import UniswapV2Math, liquidity_in_whole_tokens
from .opportunity_models import (
    DecodedSwap, EvmSandwichOpportunity, PendingTransaction,
    SandwichOpportunity, SolanaSandwichOpportunity
)
from .pool_state_cache import CachedPoolState, PoolStateCache
from .transaction_analyzer import TransactionAnalyzer

logger = logging.getLogger(__name__)

DETECTION_STAGE = "detection"

# Confidence multipliers
HIGH_IMPACT_BPS = 500
EXTREME_IMPACT_BPS = 1000
HIGH_IMPACT_FACTOR = 0.7
EXTREME_IMPACT_FACTOR = 0.5
TIGHT_SLIPPAGE_FACTOR = 0.9     # victim output within 10% of its minimum
THIN_LIQUIDITY_FACTOR = 0.8     # liquidity under 10x the minimum


class SandwichOpportunityDetector:
    """
    Detects sandwichable swaps in pending transactions.

    Every rejection is counted under the ``detection`` stage; nothing raised
    while inspecting one transaction escapes ``detect``.
    """

    def __init__(
        self,
        metadata: MetadataProvider,
        settings: Optional[Settings] = None,
        analyzer: Optional[TransactionAnalyzer] = None,
        pool_cache: Optional[PoolStateCache] = None,
        token_filter: Optional[TokenFilter] = None,
        stats: Optional[ExecutionStats] = None,
        events: Optional[EventDispatcher] = None,
        clock: Callable[[], float] = time.time
    ):
        self.metadata = metadata
        self.settings = settings or default_settings
        self.analyzer = analyzer or TransactionAnalyzer()
        self.pool_cache = pool_cache or PoolStateCache(
            max_entries=self.settings.pool_cache_max_entries,
            max_age_seconds=self.settings.pool_cache_max_age_seconds,
        )
        self.token_filter = token_filter or TokenFilter(self._default_criteria())
        self.stats = stats or ExecutionStats()
        self.events = events or EventDispatcher()
        self.clock = clock

        self._refresh_tasks: Set[asyncio.Task] = set()

    def _default_criteria(self) -> TokenCriteria:
        # Wrapped native tokens are always tradable
        wrapped = {get_chain(name).wrapped_native for name in self.settings.chains}
        return TokenCriteria.from_settings(self.settings, whitelisted=wrapped)

    async def detect(self, tx: PendingTransaction) -> Optional[SandwichOpportunity]:
        """
        Inspect one pending transaction.

        Returns:
            A sandwich opportunity, or None when the transaction is not a
            viable victim
        """
        self.stats.increment("transactions_seen")
        now = self.clock()

        try:
            swap = self.analyzer.decode(tx)
        except DecodeError as e:
            self.stats.increment("decode_failures")
            logger.debug(f"Skipping {tx.hash}: {e}")
            return None

        chain = get_chain(tx.chain)

        if chain.family == ChainFamily.EVM:
            cap_gwei = self.settings.max_victim_gas_price_gwei.get(tx.chain)
            if cap_gwei is not None and tx.gas_price > cap_gwei * 10**9:
                return self._reject("victim_gas_too_high", tx)

        if swap.is_multi_hop:
            return self._reject("multi_hop", tx)

        if swap.deadline is not None and swap.deadline <= now:
            return self._reject("deadline_passed", tx)

        if swap.amount_in <= 0:
            return self._reject("zero_amount", tx)

        try:
            cached = await self.pool_cache.get_or_fetch(tx.chain, swap.pool_address, self.metadata)
        except Exception as e:
            logger.warning(f"Pool {swap.pool_address} unavailable on {tx.chain}: {e}")
            return self._reject("pool_unavailable", tx)

        stale = self.pool_cache.is_stale(cached, now)
        if stale:
            self._schedule_refresh(tx.chain, swap.pool_address)

        pool = cached.pool
        oriented = self._orient(swap, pool)
        if oriented is None:
            return self._reject("pool_mismatch", tx)
        token_in, token_out, reserve_in, reserve_out = oriented
        if reserve_in <= 0 or reserve_out <= 0:
            return self._reject("empty_pool", tx)

        try:
            info_in = await self.metadata.get_token(tx.chain, token_in)
            info_out = await self.metadata.get_token(tx.chain, token_out)
        except Exception as e:
            logger.warning(f"Token metadata unavailable for {tx.hash} on {tx.chain}: {e}")
            return self._reject("token_unavailable", tx)

        for info in (info_in, info_out):
            reason = self.token_filter.check_token(info)
            if reason:
                return self._reject(reason, tx)

        decimals0, decimals1 = self._pool_decimals(pool, token_in, info_in, info_out)
        reason = self.token_filter.check_pool(pool, decimals0, decimals1)
        if reason:
            return self._reject(reason, tx)

        math = UniswapV2Math(pool.fee_bps)
        victim_out = math.calculate_amount_out(swap.amount_in, reserve_in, reserve_out)
        if victim_out < swap.amount_out_min:
            return self._reject("victim_would_revert", tx)

        impact_bps = math.calculate_price_impact_bps(swap.amount_in, reserve_in, reserve_out)
        if impact_bps <= self.settings.min_price_impact_bps:
            return self._reject("low_price_impact", tx)

        liquidity = liquidity_in_whole_tokens(pool.reserve0, pool.reserve1, decimals0, decimals1)
        confidence = self._score_confidence(stale, impact_bps, victim_out, swap.amount_out_min, liquidity)

        expires_at = now + self.settings.opportunity_ttl_seconds
        if swap.deadline is not None:
            expires_at = min(expires_at, float(swap.deadline))

        common = dict(
            opportunity_id=f"sw_{tx.chain}_{tx.hash[:18]}_{int(now * 1000)}",
            chain=tx.chain,
            victim_tx_hash=tx.hash,
            pool_address=pool.address,
            token_in=token_in,
            token_out=token_out,
            token_in_decimals=info_in.decimals,
            token_out_decimals=info_out.decimals,
            swap=swap,
            fee_bps=pool.fee_bps,
            reserve_in=reserve_in,
            reserve_out=reserve_out,
            pool_block_number=pool.block_number,
            pool_state_age_seconds=cached.age(now),
            price_impact_bps=impact_bps,
            victim_expected_out=victim_out,
            confidence=confidence,
            detected_at=now,
            expires_at=expires_at,
            victim_raw_transaction=tx.raw_transaction,
        )

        if chain.family == ChainFamily.EVM:
            opportunity = EvmSandwichOpportunity(
                router=swap.router,
                victim_gas_price=tx.gas_price,
                victim_nonce=tx.nonce,
                **common,
            )
        else:
            opportunity = SolanaSandwichOpportunity(
                program_id=tx.to,
                accounts=tx.accounts,
                a_to_b=bool(swap.a_to_b),
                **common,
            )

        self.stats.increment("opportunities_detected")
        logger.info(
            f"Sandwich opportunity {opportunity.opportunity_id}: victim {tx.hash} "
            f"impact {impact_bps / 100:.2f}% confidence {confidence:.2f}"
        )
        self.events.emit(
            EventType.OPPORTUNITY_DETECTED,
            chain=tx.chain,
            opportunity_id=opportunity.opportunity_id,
            victim_tx_hash=tx.hash,
            pool_address=pool.address,
            price_impact_bps=impact_bps,
            confidence=confidence,
        )
        return opportunity

    def _orient(self, swap: DecodedSwap, pool: PoolInfo) -> Optional[Tuple[str, str, int, int]]:
        """Return (token_in, token_out, reserve_in, reserve_out) for the victim's direction."""
        if swap.a_to_b is not None:
            if swap.a_to_b:
                return pool.token0, pool.token1, pool.reserve0, pool.reserve1
            return pool.token1, pool.token0, pool.reserve1, pool.reserve0

        token_in, token_out = swap.path[0], swap.path[1]
        pool_tokens = (pool.token0.lower(), pool.token1.lower())
        if (token_in, token_out) == pool_tokens:
            return token_in, token_out, pool.reserve0, pool.reserve1
        if (token_out, token_in) == pool_tokens:
            return token_in, token_out, pool.reserve1, pool.reserve0
        return None

    @staticmethod
    def _pool_decimals(pool: PoolInfo, token_in: str, info_in: TokenInfo, info_out: TokenInfo) -> Tuple[int, int]:
        if token_in.lower() == pool.token0.lower():
            return info_in.decimals, info_out.decimals
        return info_out.decimals, info_in.decimals

    def _score_confidence(
        self,
        stale: bool,
        impact_bps: int,
        victim_out: int,
        victim_min_out: int,
        liquidity: int
    ) -> float:
        confidence = 1.0
        if stale:
            confidence *= self.settings.stale_confidence_factor
        if impact_bps > EXTREME_IMPACT_BPS:
            confidence *= EXTREME_IMPACT_FACTOR
        elif impact_bps > HIGH_IMPACT_BPS:
            confidence *= HIGH_IMPACT_FACTOR
        if victim_min_out > 0 and victim_out * 10 < victim_min_out * 11:
            confidence *= TIGHT_SLIPPAGE_FACTOR
        if liquidity < self.settings.min_pool_liquidity * 10:
            confidence *= THIN_LIQUIDITY_FACTOR
        return max(0.0, min(1.0, confidence))

    def _schedule_refresh(self, chain: str, address: str) -> None:
        task = asyncio.create_task(self._refresh_pool(chain, address))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_pool(self, chain: str, address: str) -> None:
        try:
            await self.pool_cache.refresh(chain, address, self.metadata)
        except Exception as e:
            logger.warning(f"Background refresh of pool {address} on {chain} failed: {e}")

    def _reject(self, reason: str, tx: PendingTransaction) -> None:
        self.stats.record_rejection(DETECTION_STAGE, reason)
        logger.debug(f"Rejected {tx.hash} on {tx.chain}: {reason}")
        return None

    async def close(self) -> None:
        """Cancel outstanding cache refreshes."""
        for task in list(self._refresh_tasks):
            task.cancel()
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "decoder": self.analyzer.get_stats(),
            "pool_cache": self.pool_cache.get_stats(),
            "rejected": self.stats.snapshot()["rejected"].get(DETECTION_STAGE, {}),
        }
