"""
Bundle data models and lifecycle.

A bundle moves Created -> Validated -> Simulated -> Submitted and ends in
Included, Failed, Expired or Cancelled. Only the orchestrator changes its
status, always through ``Bundle.transition``.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..errors import InvalidTransitionError


class BundleStatus(str, Enum):
    """Bundle lifecycle states."""
    CREATED = "created"
    VALIDATED = "validated"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[BundleStatus] = frozenset({
    BundleStatus.INCLUDED,
    BundleStatus.FAILED,
    BundleStatus.EXPIRED,
    BundleStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[BundleStatus, FrozenSet[BundleStatus]] = {
    BundleStatus.CREATED: frozenset({BundleStatus.VALIDATED, BundleStatus.FAILED, BundleStatus.CANCELLED}),
    BundleStatus.VALIDATED: frozenset({BundleStatus.SIMULATED, BundleStatus.FAILED, BundleStatus.CANCELLED}),
    BundleStatus.SIMULATED: frozenset({BundleStatus.SUBMITTED, BundleStatus.FAILED, BundleStatus.CANCELLED}),
    BundleStatus.SUBMITTED: TERMINAL_STATUSES,
    BundleStatus.INCLUDED: frozenset(),
    BundleStatus.FAILED: frozenset(),
    BundleStatus.EXPIRED: frozenset(),
    BundleStatus.CANCELLED: frozenset(),
}


class TransactionRole(str, Enum):
    """Position of a transaction inside a sandwich bundle."""
    FRONT_RUN = "front_run"
    VICTIM = "victim"
    BACK_RUN = "back_run"


@dataclass(frozen=True)
class UnsignedTransaction:
    """A transaction ready for the signing service."""
    chain: str
    role: TransactionRole
    sender: str
    to: str
    data: bytes
    value: int = 0
    gas_limit: int = 0
    gas_price: int = 0
    nonce: Optional[int] = None
    chain_id: Optional[int] = None
    accounts: Tuple[str, ...] = ()      # Solana instruction accounts
    tip: int = 0                        # Solana tip paid alongside the instruction


@dataclass(frozen=True)
class BundleTransaction:
    """One entry of a bundle: our signed leg or a reference to the victim."""
    role: TransactionRole
    raw: Optional[bytes] = None
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None

    @property
    def is_signed_by_us(self) -> bool:
        return self.role != TransactionRole.VICTIM


@dataclass
class Bundle:
    """An ordered front-run, victim, back-run bundle for one opportunity."""
    chain: str
    opportunity_id: str
    wallet: str
    bundle_id: str = field(default_factory=lambda: f"bundle_{uuid.uuid4().hex[:16]}")
    status: BundleStatus = BundleStatus.CREATED
    transactions: Tuple[BundleTransaction, ...] = ()
    target_block: Optional[int] = None
    tip: int = 0

    submission_id: Optional[str] = None
    included_block: Optional[int] = None
    simulated_profit: Optional[int] = None
    failure_reason: Optional[str] = None
    submission_attempts: int = 0
    poll_attempts: int = 0

    created_at: float = field(default_factory=time.time)
    history: List[Tuple[BundleStatus, float]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.status, self.created_at))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def signed_transactions(self) -> Tuple[BundleTransaction, ...]:
        return tuple(tx for tx in self.transactions if tx.is_signed_by_us)

    @property
    def nonces(self) -> List[int]:
        return [tx.nonce for tx in self.signed_transactions if tx.nonce is not None]

    def reached(self, status: BundleStatus) -> bool:
        return any(s == status for s, _ in self.history)

    def set_transactions(self, transactions: Tuple[BundleTransaction, ...]) -> None:
        """Replace the ordered transaction set; forbidden once submitted."""
        if self.reached(BundleStatus.SUBMITTED):
            raise InvalidTransitionError(
                f"Bundle {self.bundle_id} transactions are frozen after submission",
                chain=self.chain, opportunity_id=self.opportunity_id
            )
        self.transactions = tuple(transactions)

    def transition(self, new_status: BundleStatus, reason: Optional[str] = None) -> None:
        """Move to ``new_status`` if the lifecycle allows it."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Bundle {self.bundle_id} cannot go from {self.status.value} to {new_status.value}",
                chain=self.chain, opportunity_id=self.opportunity_id
            )
        self.status = new_status
        self.history.append((new_status, time.time()))
        if reason:
            self.failure_reason = reason
