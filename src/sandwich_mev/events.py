"""
Pipeline observability: events, observers and execution statistics.

Components publish events through an ``EventDispatcher``; observers implement
``PipelineObserver`` and never affect pipeline control flow.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events emitted by the pipeline."""
    OPPORTUNITY_DETECTED = "opportunity_detected"
    PROFIT_ESTIMATED = "profit_estimated"
    BUNDLE_SUBMITTED = "bundle_submitted"
    BUNDLE_INCLUDED = "bundle_included"
    BUNDLE_FAILED = "bundle_failed"
    EXECUTION_STATS = "execution_stats"


@dataclass(frozen=True)
class PipelineEvent:
    """A single observability event."""
    event_type: EventType
    chain: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class PipelineObserver(ABC):
    """Observer contract for pipeline events."""

    @abstractmethod
    def on_event(self, event: PipelineEvent) -> None:
        """Handle an event. Must not block."""
        pass


class LoggingObserver(PipelineObserver):
    """Writes every event to the log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def on_event(self, event: PipelineEvent) -> None:
        chain = event.chain or "all"
        logger.log(self.level, f"[{chain}] {event.event_type.value}: {event.payload}")


class QueueObserver(PipelineObserver):
    """Forwards events into an asyncio queue for consumers running elsewhere."""

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def on_event(self, event: PipelineEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1


class EventDispatcher:
    """Fans events out to observers, isolating observer failures."""

    def __init__(self, observers: Optional[List[PipelineObserver]] = None):
        self._observers: List[PipelineObserver] = list(observers or [])

    def subscribe(self, observer: PipelineObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: PipelineObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, event_type: EventType, chain: Optional[str] = None, **payload: Any) -> PipelineEvent:
        event = PipelineEvent(event_type=event_type, chain=chain, payload=payload)
        for observer in list(self._observers):
            try:
                observer.on_event(event)
            except Exception as e:
                logger.error(f"Observer {observer.__class__.__name__} failed on {event_type.value}: {e}")
        return event


class ExecutionStats:
    """
    Aggregate pipeline counters.

    Counters only ever increase and live for the lifetime of the process.
    """

    COUNTERS = (
        "transactions_seen",
        "decode_failures",
        "opportunities_detected",
        "profit_estimates",
        "bundles_submitted",
        "bundles_included",
        "bundles_expired",
        "bundles_failed",
        "bundles_cancelled",
    )

    def __init__(self):
        self.started_at = time.time()
        self._counters: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self._rejections: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in self._counters:
            raise KeyError(f"Unknown counter: {counter}")
        if amount < 0:
            raise ValueError("Counters are monotonic")
        self._counters[counter] += amount

    def record_rejection(self, stage: str, reason: str) -> None:
        """Count an opportunity dropped at ``stage`` for ``reason``."""
        self._rejections[stage][reason] += 1

    def get(self, counter: str) -> int:
        return self._counters[counter]

    def rejected(self, stage: str, reason: Optional[str] = None) -> int:
        reasons = self._rejections.get(stage, {})
        if reason is not None:
            return reasons.get(reason, 0)
        return sum(reasons.values())

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time copy safe to hand to observers."""
        return {
            **self._counters,
            "rejected": {stage: dict(reasons) for stage, reasons in self._rejections.items()},
            "uptime_seconds": time.time() - self.started_at,
        }
