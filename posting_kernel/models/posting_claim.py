"""
Module: posting_kernel.models.posting_claim
Responsibility: ORM persistence for the per-document posting claim, the
    single mutual-exclusion primitive of the posting pipeline.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One claim per (company_id, job_id) (UNIQUE constraint uq_posting_claim_job).
    - request_hash fingerprints the document at first claim; a different hash
      against a running or completed claim is a conflict.
    - Terminal states (COMPLETED, DEAD_LETTER) are immutable
      (db/immutability.py listener + state-guarded conditional UPDATEs).
    - ``version`` increases on every transition; every transition is a
      conditional UPDATE on (id, version, state).

Failure modes:
    - IntegrityError on a concurrent first insert for the same job (the loser
      re-reads and evaluates the winner's row).
    - InvalidClaimTransitionError from validate_transition().
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from posting_kernel.db.base import TrackedBase
from posting_kernel.exceptions import InvalidClaimTransitionError


class ClaimState(str, Enum):
    """
    Posting claim state.

    State machine:
        IDLE → RUNNING | DEAD_LETTER
        RUNNING → COMPLETED | WAIT_RETRY | DEAD_LETTER | RUNNING (lease takeover)
        WAIT_RETRY → RUNNING | DEAD_LETTER
        COMPLETED: terminal
        DEAD_LETTER: terminal
    """

    IDLE = "idle"                # Enqueued, never attempted
    RUNNING = "running"          # Exactly one handler holds the claim
    COMPLETED = "completed"      # Ledger entity created, result id stored
    WAIT_RETRY = "wait_retry"    # Retriable failure, eligible at next_retry_at
    DEAD_LETTER = "dead_letter"  # Needs human remediation, never retried


TERMINAL_STATES: frozenset[ClaimState] = frozenset({
    ClaimState.COMPLETED, ClaimState.DEAD_LETTER,
})

VALID_TRANSITIONS: dict[ClaimState, frozenset[ClaimState]] = {
    ClaimState.IDLE: frozenset({
        ClaimState.RUNNING, ClaimState.DEAD_LETTER,
    }),
    ClaimState.RUNNING: frozenset({
        ClaimState.COMPLETED, ClaimState.WAIT_RETRY,
        ClaimState.DEAD_LETTER, ClaimState.RUNNING,
    }),
    ClaimState.WAIT_RETRY: frozenset({
        ClaimState.RUNNING, ClaimState.DEAD_LETTER,
    }),
    # Terminal states: no transitions allowed
    ClaimState.COMPLETED: frozenset(),
    ClaimState.DEAD_LETTER: frozenset(),
}


class PostingClaim(TrackedBase):
    """
    Exclusive, time-bounded right to post one document.

    Guarantees:
        - At most one RUNNING claim per job at any time.
        - result_id is set iff state is COMPLETED.
        - last_error is set whenever state is WAIT_RETRY or DEAD_LETTER.
    """

    __tablename__ = "posting_claims"

    __table_args__ = (
        UniqueConstraint("company_id", "job_id", name="uq_posting_claim_job"),
        Index("idx_claim_due", "company_id", "state", "next_retry_at"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)

    job_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Fingerprint of the document content at claim time
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    state: Mapped[ClaimState] = mapped_column(String(20), nullable=False)

    # Failed attempts so far (fail(), or a RUNNING lease that expired)
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)

    # External ledger id (invoice or voucher) once COMPLETED
    result_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # "supplier_invoice" or "voucher"
    result_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # validation / policy / period / connectivity
    error_category: Mapped[str | None] = mapped_column(String(30), nullable=True)

    next_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # A RUNNING claim past its lease may be taken over
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    @property
    def state_enum(self) -> ClaimState:
        """Return state as ClaimState enum (normalizes raw DB strings)."""
        if isinstance(self.state, ClaimState):
            return self.state
        return ClaimState(self.state)

    @property
    def state_str(self) -> str:
        return self.state_enum.value

    def __repr__(self) -> str:
        return f"<PostingClaim {self.state_str} job={self.job_id} attempts={self.attempts}>"

    @property
    def is_terminal(self) -> bool:
        return self.state_enum in TERMINAL_STATES

    def validate_transition(self, target: ClaimState) -> None:
        """Raise InvalidClaimTransitionError unless current → target is allowed."""
        allowed = VALID_TRANSITIONS.get(self.state_enum, frozenset())
        if target not in allowed:
            raise InvalidClaimTransitionError(self.job_id, self.state_str, target.value)
