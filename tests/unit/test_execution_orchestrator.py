"""
Unit tests for bundle execution.

The relay reports Scenario A's estimated gross profit unless a test says
otherwise, so the simulation gate passes.
"""
import asyncio
import time

import pytest
from eth_abi import decode

from sandwich_mev.errors import (
    EmergencyStopError, RelayRejectedError, SandwichPipelineError, SimulationMismatchError, StaleDataError,
    SubmissionError
)
from sandwich_mev.events import EventDispatcher, EventType, ExecutionStats, QueueObserver
from sandwich_mev.execution.bundle_models import BundleStatus, TransactionRole
from sandwich_mev.execution.orchestrator import ExecutionOrchestrator, rejection_reason
from sandwich_mev.execution.transaction_builder import EXECUTOR_ARG_TYPES
from sandwich_mev.relays.base_relay import BundleStatusReport

from fakes import (
    RESERVE_USDC, RESERVE_WETH, USDC, WALLET, FakeRelay, make_estimate, make_opportunity, make_settings,
    scenario_a_pool
)

GROSS_PROFIT = 587_824_588


def drain(observer: QueueObserver):
    events = []
    while not observer.queue.empty():
        events.append(observer.queue.get_nowait())
    return events


@pytest.fixture
def stats():
    return ExecutionStats()


@pytest.fixture
def observer():
    return QueueObserver()


@pytest.fixture
def profitable_relay():
    return FakeRelay(profit=GROSS_PROFIT)


@pytest.fixture
def make_orchestrator(signer, metadata, mempool, stats, observer):
    def factory(relay, **setting_overrides):
        return ExecutionOrchestrator(
            relays={"ethereum": relay},
            signer=signer,
            metadata=metadata,
            mempool=mempool,
            settings=make_settings(**setting_overrides),
            stats=stats,
            events=EventDispatcher([observer]),
        )
    return factory


class TestSuccessfulExecution:
    """Scenario A lands in the target block."""

    @pytest.mark.asyncio
    async def test_bundle_is_included(self, make_orchestrator, profitable_relay, stats, observer):
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.success
        assert result.error is None
        bundle = result.bundle
        assert bundle.status == BundleStatus.INCLUDED
        assert [s for s, _ in bundle.history] == [
            BundleStatus.CREATED, BundleStatus.VALIDATED, BundleStatus.SIMULATED,
            BundleStatus.SUBMITTED, BundleStatus.INCLUDED,
        ]
        assert bundle.target_block == 19_000_001
        assert bundle.included_block == 19_000_001
        assert bundle.simulated_profit == GROSS_PROFIT
        assert bundle.wallet == WALLET

        assert stats.get("bundles_submitted") == 1
        assert stats.get("bundles_included") == 1
        assert [e.event_type for e in drain(observer)] == [EventType.BUNDLE_SUBMITTED, EventType.BUNDLE_INCLUDED]

    @pytest.mark.asyncio
    async def test_bundle_order_and_nonces(self, make_orchestrator, profitable_relay, signer):
        orchestrator = make_orchestrator(profitable_relay)
        opportunity = make_opportunity()

        result = await orchestrator.execute(opportunity, make_estimate())

        front, victim, back = result.bundle.transactions
        assert (front.role, victim.role, back.role) == (
            TransactionRole.FRONT_RUN, TransactionRole.VICTIM, TransactionRole.BACK_RUN
        )
        assert victim.tx_hash == opportunity.victim_tx_hash
        assert victim.raw == opportunity.victim_raw_transaction
        assert (front.nonce, back.nonce) == (42, 43)
        assert front.tx_hash.startswith("0x") and len(front.tx_hash) == 66

        # The simulation asked for our profit in the front-run's input token
        transactions, token = profitable_relay.simulate_calls[0]
        assert token == USDC
        assert transactions == result.bundle.transactions
        assert orchestrator.nonces.outstanding("ethereum", WALLET) == 0

    @pytest.mark.asyncio
    async def test_tip_is_capped_and_paid_on_the_back_run(self, make_orchestrator, profitable_relay, signer):
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        # 20% of $515.82 at $2000/ETH is 0.0516 ETH, above the 0.05 ETH cap
        assert result.bundle.tip == 5 * 10**16
        assert profitable_relay.submit_calls[0][2] == 5 * 10**16
        back_run = signer.signed[1]
        assert back_run.role == TransactionRole.BACK_RUN
        assert decode(EXECUTOR_ARG_TYPES, back_run.data[4:])[-1] == 5 * 10**16
        assert decode(EXECUTOR_ARG_TYPES, signer.signed[0].data[4:])[-1] == 0


class TestTipCalculation:
    """Tips scale with net profit until the per-chain ceiling."""

    def test_uncapped_tip(self, make_orchestrator, relay):
        orchestrator = make_orchestrator(relay)
        estimate = make_estimate(net_profit_usd=make_estimate().net_profit_usd / 10)

        # 20% of $51.58 at $2000/ETH
        assert orchestrator.calculate_tip(make_opportunity(), estimate) == 5_158_245_880_000_000

    def test_no_profit_no_tip(self, make_orchestrator, relay):
        orchestrator = make_orchestrator(relay)
        estimate = make_estimate(net_profit=-1, net_profit_usd=-1)
        assert orchestrator.calculate_tip(make_opportunity(), estimate) == 0


class TestValidation:
    """Stale state fails the bundle before anything is signed or simulated."""

    @pytest.mark.asyncio
    async def test_reserve_drift_beyond_tolerance(self, make_orchestrator, profitable_relay, metadata, signer, stats):
        metadata.set_pool("ethereum", scenario_a_pool(reserve_usdc=RESERVE_USDC * 106 // 100))
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.FAILED
        assert isinstance(result.error, StaleDataError)
        assert profitable_relay.simulate_calls == []
        assert signer.signed == []
        assert stats.rejected("execution", "stale_data") == 1
        assert orchestrator.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_small_drift_is_tolerated(self, make_orchestrator, profitable_relay, metadata):
        metadata.set_pool("ethereum", scenario_a_pool(reserve_weth=RESERVE_WETH * 1004 // 1000))
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())
        assert result.status == BundleStatus.INCLUDED

    @pytest.mark.asyncio
    async def test_victim_dropped_from_mempool(self, make_orchestrator, profitable_relay, mempool):
        opportunity = make_opportunity()
        mempool.dropped.add(opportunity.victim_tx_hash)
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(opportunity, make_estimate())

        assert result.status == BundleStatus.FAILED
        assert isinstance(result.error, StaleDataError)
        assert profitable_relay.simulate_calls == []

    @pytest.mark.asyncio
    async def test_expired_opportunity(self, make_orchestrator, profitable_relay):
        orchestrator = make_orchestrator(profitable_relay)
        opportunity = make_opportunity(expires_at=time.time() - 1)

        result = await orchestrator.execute(opportunity, make_estimate())

        assert isinstance(result.error, StaleDataError)
        assert result.bundle.failure_reason

    @pytest.mark.asyncio
    async def test_no_relay_for_chain(self, make_orchestrator, profitable_relay):
        orchestrator = make_orchestrator(profitable_relay)

        result = await orchestrator.execute(make_opportunity(chain="bsc"), make_estimate(chain="bsc"))

        assert result.bundle is None
        assert isinstance(result.error, SandwichPipelineError)
        assert not result.success


class TestSimulationGate:
    """A failed or divergent simulation is never submitted."""

    @pytest.mark.asyncio
    async def test_simulation_failure(self, make_orchestrator, stats):
        relay = FakeRelay(simulation_success=False)
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.FAILED
        assert isinstance(result.error, SimulationMismatchError)
        assert relay.submit_calls == []
        assert stats.rejected("execution", "simulation_mismatch") == 1
        assert orchestrator.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_profit_divergence(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT * 80 // 100)
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert isinstance(result.error, SimulationMismatchError)
        assert result.error.expected_profit == GROSS_PROFIT
        assert result.error.simulated_profit == GROSS_PROFIT * 80 // 100
        assert relay.submit_calls == []

    @pytest.mark.asyncio
    async def test_divergence_within_tolerance(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT * 95 // 100)
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())
        assert result.status == BundleStatus.INCLUDED

    @pytest.mark.asyncio
    async def test_simulation_only_stops_before_submission(self, make_orchestrator, profitable_relay, stats):
        orchestrator = make_orchestrator(profitable_relay, simulation_only=True)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.paper_trade
        assert result.success
        assert result.status == BundleStatus.SIMULATED
        assert profitable_relay.submit_calls == []
        assert stats.get("bundles_submitted") == 0


class TestSubmission:
    """Transport errors are retried, relay refusals are not."""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT, transient_submit_failures=2)
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.INCLUDED
        assert result.bundle.submission_attempts == 3
        assert result.bundle.submission_id == "0xbundle3"

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, make_orchestrator, stats):
        relay = FakeRelay(profit=GROSS_PROFIT, transient_submit_failures=10)
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.FAILED
        assert isinstance(result.error, SubmissionError)
        assert result.error.retry_count == 2
        assert len(relay.submit_calls) == 3
        assert stats.rejected("execution", "submission_failed") == 1

    @pytest.mark.asyncio
    async def test_relay_rejection_is_not_retried(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT, submit_error=RelayRejectedError("bundle underpays", chain="ethereum"))
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.FAILED
        assert rejection_reason(result.error) == "relay_rejected"
        assert len(relay.submit_calls) == 1


class TestInclusionMonitoring:
    """Submitted bundles end included, rejected or expired."""

    @pytest.mark.asyncio
    async def test_never_included_expires(self, make_orchestrator, stats, observer):
        relay = FakeRelay(profit=GROSS_PROFIT, statuses=[BundleStatusReport()])
        orchestrator = make_orchestrator(relay, inclusion_poll_attempts=3)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.EXPIRED
        assert result.bundle.poll_attempts == 3
        assert relay.status_calls == 3
        assert len(relay.submit_calls) == 1
        assert stats.get("bundles_expired") == 1
        assert orchestrator.consecutive_failures == 0
        assert drain(observer)[-1].payload["status"] == "expired"

    @pytest.mark.asyncio
    async def test_relay_reports_expiry(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT, statuses=[
            BundleStatusReport(), BundleStatusReport(expired=True, error="not included by block 19000005"),
        ])
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.EXPIRED
        assert result.bundle.failure_reason == "not included by block 19000005"
        assert relay.status_calls == 2

    @pytest.mark.asyncio
    async def test_included_after_pending_checks(self, make_orchestrator):
        relay = FakeRelay(profit=GROSS_PROFIT, statuses=[
            BundleStatusReport(), BundleStatusReport(), BundleStatusReport(included=True, block_number=19_000_002),
        ])
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.INCLUDED
        assert result.bundle.included_block == 19_000_002

    @pytest.mark.asyncio
    async def test_reverted_back_run_fails(self, make_orchestrator, stats):
        relay = FakeRelay(profit=GROSS_PROFIT, statuses=[
            BundleStatusReport(rejected=True, block_number=19_000_001, error="back-run reverted"),
        ])
        orchestrator = make_orchestrator(relay)

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.status == BundleStatus.FAILED
        assert result.bundle.failure_reason == "back-run reverted"
        assert stats.get("bundles_failed") == 1
        # Failures after submission are not counted as execution rejections
        assert stats.rejected("execution") == 0


class TestEmergencyStop:
    """Operator stop and the consecutive-failure breaker."""

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_bundle(self, make_orchestrator, stats):
        relay = FakeRelay(profit=GROSS_PROFIT)
        relay.hold_status = asyncio.Event()
        orchestrator = make_orchestrator(relay)

        task = asyncio.create_task(orchestrator.execute(make_opportunity(), make_estimate()))
        await relay.submitted.wait()
        await orchestrator.emergency_stop("test")
        result = await task

        assert result.status == BundleStatus.CANCELLED
        assert isinstance(result.error, EmergencyStopError)
        assert result.bundle.reached(BundleStatus.SUBMITTED)
        assert stats.get("bundles_cancelled") == 1
        assert orchestrator.nonces.outstanding("ethereum", WALLET) == 0

    @pytest.mark.asyncio
    async def test_stopped_orchestrator_refuses_work(self, make_orchestrator, profitable_relay):
        orchestrator = make_orchestrator(profitable_relay)
        await orchestrator.emergency_stop()

        result = await orchestrator.execute(make_opportunity(), make_estimate())

        assert result.bundle is None
        assert isinstance(result.error, EmergencyStopError)
        assert profitable_relay.simulate_calls == []

        orchestrator.clear_emergency_stop()
        result = await orchestrator.execute(make_opportunity(), make_estimate())
        assert result.status == BundleStatus.INCLUDED

    @pytest.mark.asyncio
    async def test_consecutive_failures_trip_the_breaker(self, make_orchestrator):
        relay = FakeRelay(simulation_success=False)
        orchestrator = make_orchestrator(relay, consecutive_failure_limit=2)

        for _ in range(2):
            result = await orchestrator.execute(make_opportunity(), make_estimate())
            assert result.status == BundleStatus.FAILED

        assert orchestrator.is_stopped
        result = await orchestrator.execute(make_opportunity(), make_estimate())
        assert isinstance(result.error, EmergencyStopError)
        assert orchestrator.get_stats()["emergency_stop"] is True

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, make_orchestrator):
        relay = FakeRelay(simulation_success=False)
        orchestrator = make_orchestrator(relay, consecutive_failure_limit=3)

        await orchestrator.execute(make_opportunity(), make_estimate())
        relay.simulation_success = True
        relay.profit = GROSS_PROFIT
        await orchestrator.execute(make_opportunity(), make_estimate())

        assert orchestrator.consecutive_failures == 0
