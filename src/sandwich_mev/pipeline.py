"""
Sandwich pipeline wiring.

One ordered worker per chain runs detection and optimization in arrival
order. Approved estimates are handed to the orchestrator as independent
tasks, so a slow or failing execution never blocks the chain worker.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Set

from .cache.redis_client import close_redis, get_redis
from .config.environment import initialize_environment
from .config.settings import Settings, settings as default_settings
from .events import EventDispatcher, EventType, ExecutionStats, LoggingObserver, PipelineObserver
from .execution.orchestrator import ExecutionOrchestrator, ExecutionResult
from .interfaces import GasPriceOracle, MempoolView, MetadataProvider, PriceFeed, TransactionSigner
from .mev_detection.opportunity_detector import SandwichOpportunityDetector
from .mev_detection.opportunity_models import PendingTransaction, ProfitEstimate, SandwichOpportunity
from .mev_detection.pool_state_cache import PoolStateCache
from .optimization.profit_optimizer import ProfitOptimizer
from .relays.base_relay import RelayClient
from .relays.bloxroute_client import create_bloxroute_client
from .relays.flashbots_client import create_flashbots_client
from .relays.jito_client import create_jito_client

logger = logging.getLogger(__name__)

PIPELINE_STAGE = "pipeline"


class SandwichPipeline:
    """
    Detector -> optimizer -> orchestrator for every enabled chain.

    Transactions enter through ``submit`` (queued, per-chain order) or
    ``process_transaction`` (direct). Errors raised while handling one
    transaction are logged and counted; they never stop a worker.
    """

    def __init__(
        self,
        detector: SandwichOpportunityDetector,
        optimizer: ProfitOptimizer,
        orchestrator: ExecutionOrchestrator,
        metadata: MetadataProvider,
        gas_oracle: Optional[GasPriceOracle] = None,
        settings: Optional[Settings] = None,
        stats: Optional[ExecutionStats] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.detector = detector
        self.optimizer = optimizer
        self.orchestrator = orchestrator
        self.metadata = metadata
        self.gas_oracle = gas_oracle
        self.settings = settings or default_settings
        self.stats = stats or ExecutionStats()
        self.events = events or EventDispatcher()

        self.queues: Dict[str, asyncio.Queue] = {
            chain: asyncio.Queue(maxsize=self.settings.chain_queue_size) for chain in self.settings.chains
        }
        self.results: Deque[ExecutionResult] = deque(maxlen=1000)

        self.is_running = False
        self.worker_tasks: List[asyncio.Task] = []
        self._executions: Set[asyncio.Task] = set()

    async def start(self):
        """Start one worker per chain and the stats reporter."""
        if self.is_running:
            logger.warning("Sandwich pipeline already running")
            return

        logger.info(f"Starting sandwich pipeline for {', '.join(self.queues)}")
        self.is_running = True
        self.worker_tasks = [
            asyncio.create_task(self._chain_worker(chain), name=f"sandwich-worker-{chain}")
            for chain in self.queues
        ]
        self.worker_tasks.append(asyncio.create_task(self._report_stats(), name="sandwich-stats"))

    async def stop(self):
        """Stop workers and wait for in-flight executions to settle."""
        logger.info("Stopping sandwich pipeline")
        self.is_running = False

        for task in self.worker_tasks:
            task.cancel()
        await asyncio.gather(*self.worker_tasks, return_exceptions=True)
        self.worker_tasks.clear()

        await self.wait_for_executions()
        await self.detector.close()
        for relay in self.orchestrator.relays.values():
            await relay.close()
        await close_redis()

    def submit(self, tx: PendingTransaction) -> bool:
        """
        Queue a pending transaction for its chain's worker.

        Returns:
            False when the chain is not enabled or its queue is full
        """
        queue = self.queues.get(tx.chain)
        if queue is None:
            self.stats.record_rejection(PIPELINE_STAGE, "unknown_chain")
            return False
        try:
            queue.put_nowait(tx)
        except asyncio.QueueFull:
            self.stats.record_rejection(PIPELINE_STAGE, "queue_full")
            logger.warning(f"{tx.chain} queue full, dropping {tx.hash}")
            return False
        return True

    async def _chain_worker(self, chain: str):
        queue = self.queues[chain]
        while self.is_running:
            tx = await queue.get()
            try:
                await self.process_transaction(tx)
            except Exception as e:
                logger.error(f"Error processing {tx.hash} on {chain}: {e}", exc_info=True)
                self.stats.record_rejection(PIPELINE_STAGE, "error")
            finally:
                queue.task_done()

    async def process_transaction(self, tx: PendingTransaction) -> Optional["asyncio.Task[ExecutionResult]"]:
        """
        Detect and size one transaction, then start its execution.

        Returns:
            The execution task, or None when the transaction is not worth
            executing
        """
        opportunity = await self.detector.detect(tx)
        if opportunity is None:
            return None

        try:
            estimate = await self._estimate(opportunity, tx)
        except Exception as e:
            logger.warning(f"Could not size {opportunity.opportunity_id}: {e}")
            self.stats.record_rejection(PIPELINE_STAGE, "estimate_failed")
            return None
        if estimate is None:
            return None

        if self.orchestrator.is_stopped:
            self.stats.record_rejection(PIPELINE_STAGE, "emergency_stop")
            logger.warning(f"Emergency stop active, not executing {opportunity.opportunity_id}")
            return None

        task = asyncio.create_task(self._execute(opportunity, estimate))
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)
        return task

    async def _estimate(self, opportunity: SandwichOpportunity, tx: PendingTransaction) -> Optional[ProfitEstimate]:
        # Size against fresh reserves, not the possibly cached detection snapshot
        pool = await self.metadata.get_pool(opportunity.chain, opportunity.pool_address)
        reserve_in, reserve_out = opportunity.oriented_reserves(pool)
        gas_price = await self._current_gas_price(opportunity.chain, tx)
        return await self.optimizer.optimize(opportunity, reserve_in, reserve_out, gas_price)

    async def _current_gas_price(self, chain: str, tx: PendingTransaction) -> int:
        if self.gas_oracle is None:
            return tx.gas_price
        return await self.gas_oracle.get_gas_price(chain)

    async def _execute(self, opportunity: SandwichOpportunity, estimate: ProfitEstimate) -> ExecutionResult:
        result = await self.orchestrator.execute(opportunity, estimate)
        self.results.append(result)
        if result.error is not None:
            logger.info(f"Execution of {opportunity.opportunity_id} ended with {type(result.error).__name__}: {result.error}")
        return result

    async def wait_for_executions(self) -> List[ExecutionResult]:
        """Wait for every execution started so far."""
        if not self._executions:
            return []
        outcomes = await asyncio.gather(*list(self._executions), return_exceptions=True)
        return [o for o in outcomes if isinstance(o, ExecutionResult)]

    async def emergency_stop(self, reason: str = "operator request"):
        await self.orchestrator.emergency_stop(reason)

    def clear_emergency_stop(self):
        self.orchestrator.clear_emergency_stop()

    def publish_stats(self):
        """Emit an execution_stats snapshot."""
        snapshot = self.stats.snapshot()
        snapshot["queue_depth"] = {chain: queue.qsize() for chain, queue in self.queues.items()}
        snapshot["inflight_executions"] = len(self._executions)
        snapshot["emergency_stop"] = self.orchestrator.is_stopped
        self.events.emit(EventType.EXECUTION_STATS, **snapshot)
        return snapshot

    async def _report_stats(self):
        while self.is_running:
            await asyncio.sleep(self.settings.stats_interval_seconds)
            try:
                self.publish_stats()
            except Exception as e:
                logger.error(f"Error publishing execution stats: {e}")

    def get_stats(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running,
            "counters": self.stats.snapshot(),
            "detector": self.detector.get_stats(),
            "orchestrator": self.orchestrator.get_stats(),
        }


async def create_relays(
    settings: Settings,
    executor_accounts: Optional[Dict[str, str]] = None
) -> Dict[str, RelayClient]:
    """Build and initialize the relay client for every enabled chain."""
    accounts = executor_accounts or {}
    relays: Dict[str, RelayClient] = {}
    for chain in settings.chains:
        if chain == "ethereum":
            relays[chain] = await create_flashbots_client(settings, accounts.get(chain))
        elif chain == "bsc":
            relays[chain] = await create_bloxroute_client(settings, accounts.get(chain))
        elif chain == "solana":
            relays[chain] = await create_jito_client(settings)
        else:
            logger.warning(f"No relay available for chain {chain}")
    return relays


async def create_pipeline(
    settings: Optional[Settings] = None,
    metadata: Optional[MetadataProvider] = None,
    price_feed: Optional[PriceFeed] = None,
    signer: Optional[TransactionSigner] = None,
    mempool: Optional[MempoolView] = None,
    gas_oracle: Optional[GasPriceOracle] = None,
    relays: Optional[Dict[str, RelayClient]] = None,
    observers: Optional[Sequence[PipelineObserver]] = None
) -> SandwichPipeline:
    """
    Wire a pipeline from settings and external collaborators.

    Relays are created from settings unless given. When ``REDIS_URL`` is set
    the pool cache mirrors into Redis.
    """
    settings = settings or default_settings
    if metadata is None or price_feed is None or signer is None or mempool is None:
        raise ValueError("metadata, price_feed, signer and mempool are required")

    stats = ExecutionStats()
    events = EventDispatcher(list(observers) if observers is not None else [LoggingObserver()])

    redis_client = None
    if settings.redis_url:
        redis_client = await get_redis(settings)

    pool_cache = PoolStateCache(
        max_entries=settings.pool_cache_max_entries,
        max_age_seconds=settings.pool_cache_max_age_seconds,
        redis_client=redis_client,
        redis_ttl_seconds=settings.pool_mirror_ttl_seconds,
    )
    detector = SandwichOpportunityDetector(
        metadata, settings, pool_cache=pool_cache, stats=stats, events=events
    )
    optimizer = ProfitOptimizer(price_feed, settings, stats=stats, events=events)

    if relays is None:
        relays = await create_relays(settings, settings.executor_contracts)
    orchestrator = ExecutionOrchestrator(
        relays, signer, metadata, mempool, settings, stats=stats, events=events
    )

    logger.info(f"Sandwich pipeline wired for {', '.join(settings.chains)} with relays {', '.join(relays)}")
    return SandwichPipeline(
        detector, optimizer, orchestrator, metadata,
        gas_oracle=gas_oracle, settings=settings, stats=stats, events=events
    )


async def run_pipeline(pipeline: SandwichPipeline, stop_event: asyncio.Event) -> Dict[str, object]:
    """
    Run a wired pipeline until ``stop_event`` is set.

    Logging is configured from the pipeline's settings before the workers
    start. The pipeline is always stopped on the way out.

    Returns:
        The final stats snapshot
    """
    initialize_environment(pipeline.settings)
    await pipeline.start()
    try:
        await stop_event.wait()
    finally:
        await pipeline.stop()
    return pipeline.stats.snapshot()
