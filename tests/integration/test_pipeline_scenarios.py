"""
End-to-end pipeline scenarios with in-memory collaborators.

A: profitable USDC -> WETH victim, bundle included.
B: gas above gross profit, nothing executed.
C: reserves move 6% between sizing and execution, bundle fails stale.
D: relay never reports inclusion, bundle expires after one submission.
"""
import asyncio
import time

import pytest

from sandwich_mev.events import EventType, QueueObserver
from sandwich_mev.execution.bundle_models import BundleStatus
from sandwich_mev.errors import StaleDataError
from sandwich_mev.optimization.profit_optimizer import OPTIMIZATION_STAGE
from sandwich_mev.pipeline import PIPELINE_STAGE, create_pipeline, run_pipeline
from sandwich_mev.relays.base_relay import BundleStatusReport

from fakes import (
    GWEI, RESERVE_USDC, USDC, FakeGasOracle, FakeRelay, make_victim_tx, scenario_a_pool
)

SIMULATED_PROFIT = 587_000_000


def drain(observer: QueueObserver):
    events = []
    while not observer.queue.empty():
        events.append(observer.queue.get_nowait())
    return events


@pytest.fixture
def observer():
    return QueueObserver()


@pytest.fixture
def build_pipeline(settings, metadata, price_feed, signer, mempool, gas_oracle, observer):
    async def factory(relay, oracle=None, pipeline_settings=None):
        return await create_pipeline(
            settings=pipeline_settings or settings,
            metadata=metadata,
            price_feed=price_feed,
            signer=signer,
            mempool=mempool,
            gas_oracle=oracle or gas_oracle,
            relays={"ethereum": relay},
            observers=[observer],
        )
    return factory


class TestScenarioA:
    """Profitable sandwich at 100 gwei."""

    @pytest.mark.asyncio
    async def test_included(self, build_pipeline, observer, signer):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay)

        task = await pipeline.process_transaction(make_victim_tx())
        assert task is not None
        result = await task

        assert result.status == BundleStatus.INCLUDED
        assert result.bundle.tip == 5 * 10**16
        assert [tx.nonce for tx in signer.signed] == [42, 43]
        assert relay.simulate_calls[0][1] == USDC

        assert [e.event_type for e in drain(observer)] == [
            EventType.OPPORTUNITY_DETECTED,
            EventType.PROFIT_ESTIMATED,
            EventType.BUNDLE_SUBMITTED,
            EventType.BUNDLE_INCLUDED,
        ]
        counters = pipeline.stats.snapshot()
        assert counters["transactions_seen"] == 1
        assert counters["opportunities_detected"] == 1
        assert counters["profit_estimates"] == 1
        assert counters["bundles_submitted"] == 1
        assert counters["bundles_included"] == 1


class TestScenarioB:
    """At 1000 gwei gas costs $720, more than the sandwich makes."""

    @pytest.mark.asyncio
    async def test_not_executed(self, build_pipeline, observer):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay, oracle=FakeGasOracle({"ethereum": 1_000 * GWEI}))

        assert await pipeline.process_transaction(make_victim_tx()) is None

        assert relay.simulate_calls == []
        assert relay.submit_calls == []
        assert pipeline.stats.rejected(OPTIMIZATION_STAGE, "insufficient_profit") == 1
        assert [e.event_type for e in drain(observer)] == [EventType.OPPORTUNITY_DETECTED]

    @pytest.mark.asyncio
    async def test_same_victim_is_not_resized_at_unchanged_reserves(self, build_pipeline):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        oracle = FakeGasOracle({"ethereum": 1_000 * GWEI})
        pipeline = await build_pipeline(relay, oracle=oracle)
        assert await pipeline.process_transaction(make_victim_tx()) is None

        # Seen again a few milliseconds later, after gas has dropped
        pipeline.detector.clock = lambda: time.time() + 0.01
        oracle.prices["ethereum"] = 100 * GWEI
        assert await pipeline.process_transaction(make_victim_tx()) is None

        assert pipeline.stats.rejected(OPTIMIZATION_STAGE, "already_rejected") == 1
        assert relay.simulate_calls == []
        assert relay.submit_calls == []


class TestScenarioC:
    """Reserves move after sizing."""

    @pytest.mark.asyncio
    async def test_stale_state_fails_before_simulation(self, build_pipeline, metadata, signer):
        # Lookups: detection, sizing, then execution validation sees the moved pool
        metadata.update_pool_after(2, "ethereum", scenario_a_pool(reserve_usdc=RESERVE_USDC * 106 // 100))
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay)

        result = await (await pipeline.process_transaction(make_victim_tx()))

        assert result.status == BundleStatus.FAILED
        assert isinstance(result.error, StaleDataError)
        assert relay.simulate_calls == []
        assert signer.signed == []
        assert pipeline.stats.rejected("execution", "stale_data") == 1


class TestScenarioD:
    """The relay accepts the bundle but it never lands."""

    @pytest.mark.asyncio
    async def test_expires_after_single_submission(self, build_pipeline):
        relay = FakeRelay(profit=SIMULATED_PROFIT, statuses=[BundleStatusReport()])
        pipeline = await build_pipeline(relay)

        result = await (await pipeline.process_transaction(make_victim_tx()))

        assert result.status == BundleStatus.EXPIRED
        assert len(relay.submit_calls) == 1
        assert relay.status_calls == pipeline.settings.inclusion_poll_attempts
        assert pipeline.stats.get("bundles_expired") == 1


class TestWorkers:
    """Queued transactions are handled by the per-chain workers."""

    @pytest.mark.asyncio
    async def test_submit_and_process(self, build_pipeline):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay)
        await pipeline.start()
        try:
            assert pipeline.submit(make_victim_tx())
            assert pipeline.submit(make_victim_tx(tx_hash="0x" + "99" * 32, to="0x" + "99" * 20))
            await asyncio.wait_for(pipeline.queues["ethereum"].join(), timeout=5)
            results = await pipeline.wait_for_executions()
        finally:
            await pipeline.stop()

        assert pipeline.stats.get("transactions_seen") == 2
        assert pipeline.stats.get("decode_failures") == 1
        assert all(r.status == BundleStatus.INCLUDED for r in results)
        assert len(pipeline.results) == 1
        assert relay.closed
        assert not pipeline.is_running

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, build_pipeline):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay)
        stop_event = asyncio.Event()

        runner = asyncio.create_task(run_pipeline(pipeline, stop_event))
        await asyncio.sleep(0)
        assert pipeline.is_running
        assert pipeline.submit(make_victim_tx())
        await asyncio.wait_for(pipeline.queues["ethereum"].join(), timeout=5)
        stop_event.set()
        snapshot = await asyncio.wait_for(runner, timeout=5)

        assert snapshot["bundles_included"] == 1
        assert not pipeline.is_running
        assert relay.closed

    @pytest.mark.asyncio
    async def test_unknown_chain_is_rejected(self, build_pipeline):
        pipeline = await build_pipeline(FakeRelay())
        assert not pipeline.submit(make_victim_tx(chain="polygon"))
        assert pipeline.stats.rejected(PIPELINE_STAGE, "unknown_chain") == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_blocks_new_executions(self, build_pipeline):
        relay = FakeRelay(profit=SIMULATED_PROFIT)
        pipeline = await build_pipeline(relay)
        await pipeline.emergency_stop("test")

        assert await pipeline.process_transaction(make_victim_tx()) is None
        assert pipeline.stats.rejected(PIPELINE_STAGE, "emergency_stop") == 1

        pipeline.clear_emergency_stop()
        result = await (await pipeline.process_transaction(make_victim_tx()))
        assert result.status == BundleStatus.INCLUDED

    @pytest.mark.asyncio
    async def test_publish_stats(self, build_pipeline, observer):
        pipeline = await build_pipeline(FakeRelay())
        await pipeline.process_transaction(make_victim_tx(to="0x" + "99" * 20))
        drain(observer)

        snapshot = pipeline.publish_stats()

        assert snapshot["transactions_seen"] == 1
        assert snapshot["queue_depth"] == {"ethereum": 0, "bsc": 0, "solana": 0}
        assert snapshot["decode_failures"] == 1
        assert snapshot["rejected"] == {}
        event = observer.queue.get_nowait()
        assert event.event_type == EventType.EXECUTION_STATS
        assert event.payload["emergency_stop"] is False


class TestCreatePipeline:
    @pytest.mark.asyncio
    async def test_requires_collaborators(self, settings):
        with pytest.raises(ValueError):
            await create_pipeline(settings=settings, relays={})
