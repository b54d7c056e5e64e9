"""
Execution orchestrator for sandwich bundles.

Takes a sized opportunity through validation, tip calculation, signing,
relay simulation, submission and inclusion monitoring. Every execution runs
as its own task, so one failing bundle never affects the others, and the
emergency stop can cancel all of them at once.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import TYPE_CHECKING, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, TypeVar

from web3 import Web3

from ..chains import ChainFamily, get_chain
from ..config.settings import Settings, settings as default_settings
from ..errors import (
    EmergencyStopError, NonceConflictError, RelayRejectedError, SandwichPipelineError,
    SimulationMismatchError, StaleDataError, SubmissionError
)
from ..events import EventDispatcher, EventType, ExecutionStats
from ..interfaces import MempoolView, MetadataProvider, TransactionSigner
from ..mev_detection.opportunity_models import ProfitEstimate, SandwichOpportunity
from ..protocols.uniswap_v2_math import BPS
from .bundle_models import Bundle, BundleStatus, BundleTransaction, TransactionRole
from .nonce_manager import NonceManager
from .transaction_builder import SandwichTransactionBuilder

if TYPE_CHECKING:
    from ..relays.base_relay import BundleStatusReport, RelayClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

REJECTION_REASONS = {
    StaleDataError: "stale_data",
    SimulationMismatchError: "simulation_mismatch",
    RelayRejectedError: "relay_rejected",
    SubmissionError: "submission_failed",
    NonceConflictError: "nonce_conflict",
    EmergencyStopError: "emergency_stop",
}


@dataclass
class ExecutionResult:
    """Outcome of one execution; errors are reported here, never raised."""
    bundle: Optional[Bundle]
    error: Optional[Exception] = None
    paper_trade: bool = False

    @property
    def status(self) -> Optional[BundleStatus]:
        return self.bundle.status if self.bundle else None

    @property
    def success(self) -> bool:
        if self.bundle is None:
            return False
        if self.paper_trade:
            return self.bundle.status == BundleStatus.SIMULATED
        return self.bundle.status == BundleStatus.INCLUDED


def rejection_reason(error: Optional[Exception]) -> str:
    for error_type, reason in REJECTION_REASONS.items():
        if isinstance(error, error_type):
            return reason
    return "error"


class ExecutionOrchestrator:
    """
    Drives bundles through Created -> Validated -> Simulated -> Submitted
    and on to a terminal state.

    Key features:
    - Reserve drift and victim liveness checks before anything is signed
    - Per-wallet nonce critical section and bounded in-flight executions
    - Relay simulation gate: a profit mismatch is never submitted
    - Retries only for relay transport errors
    - Emergency stop and a consecutive-failure breaker
    """

    def __init__(
        self,
        relays: Dict[str, "RelayClient"],
        signer: TransactionSigner,
        metadata: MetadataProvider,
        mempool: MempoolView,
        settings: Optional[Settings] = None,
        stats: Optional[ExecutionStats] = None,
        events: Optional[EventDispatcher] = None,
        builder: Optional[SandwichTransactionBuilder] = None,
        nonce_manager: Optional[NonceManager] = None,
        clock: Callable[[], float] = time.time
    ):
        self.relays = dict(relays)
        self.signer = signer
        self.metadata = metadata
        self.mempool = mempool
        self.settings = settings or default_settings
        self.stats = stats or ExecutionStats()
        self.events = events or EventDispatcher()
        self.builder = builder or SandwichTransactionBuilder(self.settings)
        self.nonces = nonce_manager or NonceManager(signer)
        self.clock = clock

        self._semaphores: Dict[Tuple[str, str], asyncio.Semaphore] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stop = asyncio.Event()
        self._stop_reason: Optional[str] = None
        self._consecutive_failures = 0
        self.recent_bundles: Deque[Bundle] = deque(maxlen=1000)

        logger.info(
            f"ExecutionOrchestrator initialized for {', '.join(sorted(self.relays)) or 'no chains'}"
            f"{' (simulation only)' if self.settings.simulation_only else ''}"
        )

    @property
    def is_stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def execute(self, opportunity: SandwichOpportunity, estimate: ProfitEstimate) -> ExecutionResult:
        """
        Execute one sized opportunity.

        Returns:
            ExecutionResult with the bundle in its final state and the error
            that ended it, if any
        """
        if self._stop.is_set():
            return ExecutionResult(
                bundle=None,
                error=EmergencyStopError(
                    f"Emergency stop active: {self._stop_reason}",
                    chain=opportunity.chain, opportunity_id=opportunity.opportunity_id
                )
            )

        relay = self.relays.get(opportunity.chain)
        if relay is None:
            return ExecutionResult(
                bundle=None,
                error=SandwichPipelineError(
                    "No relay configured", chain=opportunity.chain, opportunity_id=opportunity.opportunity_id
                )
            )

        wallet = self.signer.wallet_address(opportunity.chain)
        bundle = Bundle(chain=opportunity.chain, opportunity_id=opportunity.opportunity_id, wallet=wallet)
        task = asyncio.create_task(self._run(bundle, opportunity, estimate, relay))
        self._inflight[bundle.bundle_id] = task
        try:
            return await task
        finally:
            self._inflight.pop(bundle.bundle_id, None)

    async def _run(
        self,
        bundle: Bundle,
        opportunity: SandwichOpportunity,
        estimate: ProfitEstimate,
        relay: "RelayClient"
    ) -> ExecutionResult:
        signed = False
        try:
            async with self._semaphore_for(bundle.chain, bundle.wallet):
                if self._stop.is_set():
                    raise EmergencyStopError(
                        f"Emergency stop active: {self._stop_reason}",
                        chain=bundle.chain, opportunity_id=bundle.opportunity_id
                    )

                # Phase 1: Validate against current chain state
                await self._validate(bundle, opportunity)

                # Phase 2: Tip, then sign both legs around the victim
                bundle.tip = self.calculate_tip(opportunity, estimate)
                await self._sign(bundle, opportunity, estimate)
                signed = True

                # Phase 3: Relay simulation gate
                await self._simulate(bundle, opportunity, estimate, relay)
                if self.settings.simulation_only:
                    logger.info(
                        f"Paper trade {bundle.bundle_id}: simulated profit {bundle.simulated_profit}, "
                        f"estimate {estimate.gross_profit}"
                    )
                    return self._finalize(bundle, None, signed, paper_trade=True)

                # Phase 4: Submit and monitor
                await self._submit(bundle, relay)
                await self._monitor(bundle, relay)
                return self._finalize(bundle, None, signed)

        except asyncio.CancelledError:
            if not bundle.is_terminal:
                # A submitted bundle may still land after cancellation
                bundle.transition(BundleStatus.CANCELLED, reason=f"cancelled at {bundle.status.value}")
            error = EmergencyStopError(
                f"Execution cancelled: {self._stop_reason or 'shutdown'}",
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )
            result = self._finalize(bundle, error, signed)
            if not self._stop.is_set():
                raise
            return result

        except SandwichPipelineError as e:
            logger.warning(f"Bundle {bundle.bundle_id} aborted at {bundle.status.value}: {e}")
            if isinstance(e, EmergencyStopError):
                bundle.transition(BundleStatus.CANCELLED, reason=str(e))
            else:
                self._fail(bundle, str(e))
            return self._finalize(bundle, e, signed)

        except Exception as e:
            logger.error(f"Bundle {bundle.bundle_id} failed with unexpected error: {e}", exc_info=True)
            self._fail(bundle, f"unexpected error: {e}")
            return self._finalize(bundle, e, signed)

    def _semaphore_for(self, chain: str, wallet: str) -> asyncio.Semaphore:
        key = (chain, wallet.lower())
        semaphore = self._semaphores.get(key)
        if semaphore is None:
            semaphore = asyncio.Semaphore(max(1, self.settings.max_inflight_per_wallet))
            self._semaphores[key] = semaphore
        return semaphore

    @staticmethod
    def _fail(bundle: Bundle, reason: str) -> None:
        if not bundle.is_terminal:
            bundle.transition(BundleStatus.FAILED, reason=reason)

    async def _validate(self, bundle: Bundle, opportunity: SandwichOpportunity) -> None:
        """Victim still pending, opportunity alive, reserves within drift tolerance."""
        now = self.clock()
        if opportunity.is_expired(now):
            raise StaleDataError(
                f"Opportunity expired {now - opportunity.expires_at:.1f}s ago",
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )

        if not await self.mempool.is_pending(opportunity.chain, opportunity.victim_tx_hash):
            raise StaleDataError(
                f"Victim {opportunity.victim_tx_hash} is no longer pending",
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )

        pool = await self.metadata.get_pool(opportunity.chain, opportunity.pool_address)
        reserve_in, reserve_out = opportunity.oriented_reserves(pool)

        drift = max(
            self.drift_bps(opportunity.reserve_in, reserve_in),
            self.drift_bps(opportunity.reserve_out, reserve_out),
        )
        if drift > self.settings.reserve_drift_tolerance_bps:
            raise StaleDataError(
                f"Reserves drifted {drift} bps since detection "
                f"(tolerance {self.settings.reserve_drift_tolerance_bps})",
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )

        bundle.transition(BundleStatus.VALIDATED)

    @staticmethod
    def drift_bps(before: int, after: int) -> int:
        if before <= 0:
            return BPS
        return abs(after - before) * BPS // before

    def calculate_tip(self, opportunity: SandwichOpportunity, estimate: ProfitEstimate) -> int:
        """
        Builder tip in native base units.

        A fixed share of the net profit, converted at the native price and
        capped per chain.
        """
        if estimate.net_profit_usd <= 0 or estimate.native_usd_price <= 0:
            return 0

        chain = get_chain(opportunity.chain)
        tip_usd = estimate.net_profit_usd * Decimal(self.settings.max_tip_ratio_bps) / Decimal(BPS)
        tip = int(
            (tip_usd / estimate.native_usd_price * (Decimal(10) ** chain.native_decimals))
            .to_integral_value(rounding=ROUND_DOWN)
        )
        cap = self.settings.max_absolute_tip.get(opportunity.chain)
        if cap is not None:
            tip = min(tip, cap)
        return max(tip, 0)

    async def _sign(self, bundle: Bundle, opportunity: SandwichOpportunity, estimate: ProfitEstimate) -> None:
        front, back = self.builder.build(opportunity, estimate, bundle.wallet, bundle.tip)
        signed = await self.nonces.sign_sequence(bundle.chain, bundle.wallet, [front, back])
        (front_raw, front_nonce), (back_raw, back_nonce) = signed

        is_evm = get_chain(bundle.chain).family == ChainFamily.EVM
        bundle.set_transactions((
            BundleTransaction(
                role=TransactionRole.FRONT_RUN,
                raw=front_raw,
                tx_hash=Web3.to_hex(Web3.keccak(front_raw)) if is_evm else None,
                nonce=front_nonce if is_evm else None,
            ),
            BundleTransaction(
                role=TransactionRole.VICTIM,
                raw=opportunity.victim_raw_transaction,
                tx_hash=opportunity.victim_tx_hash,
            ),
            BundleTransaction(
                role=TransactionRole.BACK_RUN,
                raw=back_raw,
                tx_hash=Web3.to_hex(Web3.keccak(back_raw)) if is_evm else None,
                nonce=back_nonce if is_evm else None,
            ),
        ))

    async def _simulate(
        self,
        bundle: Bundle,
        opportunity: SandwichOpportunity,
        estimate: ProfitEstimate,
        relay: "RelayClient"
    ) -> None:
        result = await self._with_retry(
            lambda: relay.simulate_bundle(bundle.transactions, opportunity.token_in),
            f"simulate {bundle.bundle_id}"
        )
        if not result.success:
            raise SimulationMismatchError(
                f"Relay simulation failed: {result.error}",
                expected_profit=estimate.gross_profit,
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )

        simulated = result.resulting_balances.get(opportunity.token_in, 0)
        bundle.simulated_profit = simulated
        divergence = self.drift_bps(estimate.gross_profit, simulated)
        if divergence > self.settings.max_simulation_divergence_bps:
            raise SimulationMismatchError(
                f"Simulated profit {simulated} diverges {divergence} bps from estimate {estimate.gross_profit}",
                expected_profit=estimate.gross_profit,
                simulated_profit=simulated,
                chain=bundle.chain, opportunity_id=bundle.opportunity_id
            )

        bundle.transition(BundleStatus.SIMULATED)

    async def _submit(self, bundle: Bundle, relay: "RelayClient") -> None:
        bundle.target_block = await self._with_retry(relay.get_block_number, "block number") + 1

        async def submit() -> str:
            bundle.submission_attempts += 1
            return await relay.submit_bundle(bundle.transactions, bundle.target_block, bundle.tip)

        bundle.submission_id = await self._with_retry(submit, f"submit {bundle.bundle_id}")
        bundle.transition(BundleStatus.SUBMITTED)
        self.stats.increment("bundles_submitted")
        self.events.emit(
            EventType.BUNDLE_SUBMITTED,
            chain=bundle.chain,
            bundle_id=bundle.bundle_id,
            opportunity_id=bundle.opportunity_id,
            submission_id=bundle.submission_id,
            target_block=bundle.target_block,
            tip=bundle.tip,
        )
        logger.info(f"Bundle {bundle.bundle_id} submitted as {bundle.submission_id} for block {bundle.target_block}")

    async def _monitor(self, bundle: Bundle, relay: "RelayClient") -> None:
        try:
            report = await asyncio.wait_for(
                self._poll_inclusion(bundle, relay),
                timeout=self.settings.inclusion_timeout_seconds
            )
        except asyncio.TimeoutError:
            report = None

        if report is not None and report.included:
            bundle.included_block = report.block_number
            bundle.transition(BundleStatus.INCLUDED)
        elif report is not None and report.rejected:
            bundle.transition(BundleStatus.FAILED, reason=report.error or "rejected")
        else:
            reason = report.error if report is not None and report.error else "inclusion not observed"
            bundle.transition(BundleStatus.EXPIRED, reason=reason)

    async def _poll_inclusion(self, bundle: Bundle, relay: "RelayClient") -> Optional["BundleStatusReport"]:
        attempts = max(1, self.settings.inclusion_poll_attempts)
        for attempt in range(1, attempts + 1):
            bundle.poll_attempts = attempt
            try:
                report = await relay.get_bundle_status(bundle.submission_id, bundle.transactions, bundle.target_block)
            except SubmissionError as e:
                logger.warning(f"Inclusion check {attempt}/{attempts} for {bundle.bundle_id} failed: {e}")
                report = None

            if report is not None and (report.included or report.rejected or report.expired):
                return report
            if attempt < attempts:
                await asyncio.sleep(self.settings.inclusion_poll_interval_seconds)
        return None

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run ``operation``, retrying only SubmissionError with exponential backoff."""
        attempts = max(1, self.settings.submission_retry_attempts)
        attempt = 1
        while True:
            try:
                return await operation()
            except SubmissionError as e:
                e.retry_count = attempt - 1
                if attempt >= attempts:
                    raise
                delay = self.settings.submission_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"{description} attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                attempt += 1

    def _finalize(
        self,
        bundle: Bundle,
        error: Optional[Exception],
        signed: bool,
        paper_trade: bool = False
    ) -> ExecutionResult:
        if signed:
            self.nonces.release(bundle.chain, bundle.wallet, included=bundle.status == BundleStatus.INCLUDED)

        status = bundle.status
        if status == BundleStatus.INCLUDED:
            self._consecutive_failures = 0
            self.stats.increment("bundles_included")
            self.events.emit(
                EventType.BUNDLE_INCLUDED,
                chain=bundle.chain,
                bundle_id=bundle.bundle_id,
                opportunity_id=bundle.opportunity_id,
                block_number=bundle.included_block,
                tip=bundle.tip,
            )
            logger.info(f"Bundle {bundle.bundle_id} included in block {bundle.included_block}")

        elif status in (BundleStatus.FAILED, BundleStatus.EXPIRED):
            self.stats.increment("bundles_failed" if status == BundleStatus.FAILED else "bundles_expired")
            if not bundle.reached(BundleStatus.SUBMITTED):
                self.stats.record_rejection("execution", rejection_reason(error))
            self.events.emit(
                EventType.BUNDLE_FAILED,
                chain=bundle.chain,
                bundle_id=bundle.bundle_id,
                opportunity_id=bundle.opportunity_id,
                status=status.value,
                reason=bundle.failure_reason,
            )
            if status == BundleStatus.FAILED and not isinstance(error, StaleDataError):
                self._record_failure(bundle)

        elif status == BundleStatus.CANCELLED:
            self.stats.increment("bundles_cancelled")

        self.recent_bundles.append(bundle)
        return ExecutionResult(bundle=bundle, error=error, paper_trade=paper_trade)

    def _record_failure(self, bundle: Bundle) -> None:
        self._consecutive_failures += 1
        limit = self.settings.consecutive_failure_limit
        if limit > 0 and self._consecutive_failures >= limit and not self._stop.is_set():
            logger.error(
                f"{self._consecutive_failures} consecutive execution failures "
                f"(last: {bundle.bundle_id}); halting"
            )
            self._halt(f"{self._consecutive_failures} consecutive failures")

    def _halt(self, reason: str) -> List[asyncio.Task]:
        self._stop_reason = reason
        self._stop.set()
        current = asyncio.current_task()
        tasks = [t for t in self._inflight.values() if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        return tasks

    async def emergency_stop(self, reason: str = "operator request") -> None:
        """Cancel every in-flight execution and refuse new work until cleared."""
        logger.critical(f"Emergency stop: {reason}")
        tasks = self._halt(reason)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def clear_emergency_stop(self) -> None:
        logger.warning(f"Emergency stop cleared (was: {self._stop_reason})")
        self._stop.clear()
        self._stop_reason = None
        self._consecutive_failures = 0

    def get_stats(self) -> Dict[str, object]:
        """Get orchestrator statistics."""
        return {
            "inflight": len(self._inflight),
            "consecutive_failures": self._consecutive_failures,
            "emergency_stop": self._stop.is_set(),
            "stop_reason": self._stop_reason,
            "recent_bundles": len(self.recent_bundles),
            "nonces": dict(self.nonces.stats),
        }
