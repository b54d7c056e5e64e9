"""Bounded pool reserve cache with an optional Redis mirror."""
import json
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..cache.redis_client import pool_state_key
from ..interfaces import MetadataProvider, PoolInfo

logger = logging.getLogger(__name__)


class CacheLevel(str, Enum):
    """Where a pool state was served from."""
    MEMORY = "memory"      # In-memory cache (fastest)
    REDIS = "redis"        # Redis mirror (shared across instances)
    FRESH = "fresh"        # Fresh from the metadata provider


@dataclass(frozen=True)
class CachedPoolState:
    """A pool snapshot and the time it was captured."""
    pool: PoolInfo
    updated_at: float
    cache_level: CacheLevel = CacheLevel.MEMORY

    def age(self, now: Optional[float] = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.updated_at)


class PoolStateCache:
    """
    Read-mostly reserve cache keyed by (chain, pool address).

    Entries are immutable snapshots replaced whole, so readers never see a
    half-written state and never wait on writers. The memory level is an LRU
    bounded by ``max_entries``; staleness is reported to callers rather than
    hidden.
    """

    def __init__(
        self,
        max_entries: int = 5000,
        max_age_seconds: float = 12.0,
        redis_client=None,
        redis_ttl_seconds: int = 60
    ):
        """
        Initialize the pool state cache.

        Args:
            max_entries: Maximum pools kept in memory
            max_age_seconds: Age after which an entry is reported stale
            redis_client: Optional ``redis.asyncio`` client for the shared mirror
            redis_ttl_seconds: Expiry of mirrored entries
        """
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self.redis_client = redis_client
        self.redis_ttl_seconds = redis_ttl_seconds

        self._entries: "OrderedDict[Tuple[str, str], CachedPoolState]" = OrderedDict()
        self._metrics = {
            "memory_hits": 0,
            "redis_hits": 0,
            "fresh_fetches": 0,
            "stale_reads": 0,
            "evictions": 0,
        }

    def get(self, chain: str, address: str) -> Optional[CachedPoolState]:
        """Return the cached snapshot without touching the network."""
        key = (chain, address)
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        self._metrics["memory_hits"] += 1
        if self.is_stale(entry):
            self._metrics["stale_reads"] += 1
        return entry

    def put(self, chain: str, pool: PoolInfo, updated_at: Optional[float] = None) -> CachedPoolState:
        """Replace the snapshot for a pool."""
        entry = CachedPoolState(pool=pool, updated_at=updated_at if updated_at is not None else time.time())
        key = (chain, pool.address)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._metrics["evictions"] += 1
        return entry

    def invalidate(self, chain: str, address: str) -> None:
        self._entries.pop((chain, address), None)

    def is_stale(self, entry: CachedPoolState, now: Optional[float] = None) -> bool:
        return entry.age(now) > self.max_age_seconds

    async def get_or_fetch(self, chain: str, address: str, provider: MetadataProvider) -> CachedPoolState:
        """
        Serve a pool from memory, then Redis, then the provider.

        A stale memory entry is still returned; callers decide how much to
        trust it.
        """
        entry = self.get(chain, address)
        if entry is not None:
            return entry

        if self.redis_client is not None:
            mirrored = await self._get_from_redis(chain, address)
            if mirrored is not None:
                self.put(chain, mirrored.pool, mirrored.updated_at)
                return mirrored

        return await self.refresh(chain, address, provider)

    async def refresh(self, chain: str, address: str, provider: MetadataProvider) -> CachedPoolState:
        """Fetch fresh reserves and replace the cached entry."""
        pool = await provider.get_pool(chain, address)
        self._metrics["fresh_fetches"] += 1
        entry = self.put(chain, pool)
        await self._store_in_redis(chain, entry)
        return CachedPoolState(pool=entry.pool, updated_at=entry.updated_at, cache_level=CacheLevel.FRESH)

    async def _get_from_redis(self, chain: str, address: str) -> Optional[CachedPoolState]:
        try:
            raw = await self.redis_client.get(pool_state_key(chain, address))
            if not raw:
                return None
            data = json.loads(raw)
            self._metrics["redis_hits"] += 1
            return CachedPoolState(
                pool=PoolInfo(**data["pool"]),
                updated_at=data["updated_at"],
                cache_level=CacheLevel.REDIS,
            )
        except Exception as e:
            logger.warning(f"Failed to read pool {address} from Redis mirror: {e}")
            return None

    async def _store_in_redis(self, chain: str, entry: CachedPoolState) -> None:
        if self.redis_client is None:
            return
        try:
            payload = json.dumps({"pool": asdict(entry.pool), "updated_at": entry.updated_at})
            await self.redis_client.set(
                pool_state_key(chain, entry.pool.address),
                payload,
                ex=self.redis_ttl_seconds,
            )
        except Exception as e:
            logger.warning(f"Failed to mirror pool {entry.pool.address} to Redis: {e}")

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._metrics, "entries": len(self._entries)}
