"""
ClaimLedger -- atomic per-document posting claims.

Responsibility:
    Grants the exclusive, time-bounded right to post one document, records
    the outcome of each attempt, and answers repeated requests for an
    already-posted document with the stored result instead of a new posting.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by PostingPipeline before any guard runs and after every gateway
    call; called by PostingWorker to find due claims.

Invariants enforced:
    - At most one RUNNING claim per (company_id, job_id).  Every transition
      is a conditional UPDATE on (id, version, state); a lost race changes
      nothing and is reported as BLOCKED_RUNNING.
    - request_hash is compared on every claim.  A mismatch against a
      RUNNING or COMPLETED claim is BLOCKED_CONFLICT, never an overwrite.
    - COMPLETED and DEAD_LETTER are terminal.  No UPDATE statement here can
      match a terminal row.
    - Transitions follow models.posting_claim.VALID_TRANSITIONS.
    - CLAIMED hands out a lease token (the row version after the claim).
      complete(), fail() and dead_letter() given a token only act while the
      row still carries it, so a holder whose lease was taken over cannot
      finish the new holder's attempt.

Failure modes:
    - ClaimNotFoundError: complete()/fail() on a job that was never claimed.
    - ClaimResultMismatchError: complete() with a different result id on an
      already-completed claim.
    - InvalidClaimTransitionError: complete()/fail() on a claim that is not
      RUNNING, or dead_letter() on a COMPLETED claim.
    - ClaimLeaseLostError: the presented lease token is stale.  Nothing is
      written.

Audit relevance:
    The ledger logs each transition (claim_acquired, claim_completed,
    claim_retry_scheduled, claim_dead_lettered).  Audit events are written
    by the pipeline, which knows why the transition happened.

Usage:
    ledger = SqlClaimLedger(session_factory, RetryPolicy(), clock)
    result = ledger.claim("acme", "job-1", request_hash)
    if result.is_claimed:
        ...
        ledger.complete("acme", "job-1", "INV-42", result_kind="supplier_invoice",
                        lease_token=result.lease_token)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.domain.backoff import RetryPolicy
from posting_kernel.domain.clock import Clock
from posting_kernel.domain.results import ClaimResult
from posting_kernel.exceptions import (
    ClaimLeaseLostError,
    ClaimNotFoundError,
    ClaimResultMismatchError,
    InvalidClaimTransitionError,
)
from posting_kernel.logging_config import get_logger
from posting_kernel.models.posting_claim import ClaimState, PostingClaim
from posting_kernel.services.base import BaseService

logger = get_logger("services.claim_ledger")

DEFAULT_LEASE_SECONDS = 300

# Bounded re-reads after a lost insert race or CAS
_MAX_CAS_ROUNDS = 3


@dataclass(frozen=True)
class ClaimRecord:
    """Immutable view of a PostingClaim row."""

    company_id: str
    job_id: str
    request_hash: str
    state: ClaimState
    attempts: int
    result_id: str | None
    result_kind: str | None
    last_error: str | None
    error_category: str | None
    next_retry_at: datetime | None
    lease_expires_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in (ClaimState.COMPLETED, ClaimState.DEAD_LETTER)

    def is_due(self, now: datetime) -> bool:
        """True when a worker may attempt this claim at ``now``."""
        if self.state == ClaimState.IDLE:
            return True
        if self.state == ClaimState.WAIT_RETRY:
            return self.next_retry_at is None or self.next_retry_at <= now
        return False


def _to_record(row: PostingClaim) -> ClaimRecord:
    return ClaimRecord(
        company_id=row.company_id,
        job_id=row.job_id,
        request_hash=row.request_hash,
        state=row.state_enum,
        attempts=row.attempts,
        result_id=row.result_id,
        result_kind=row.result_kind,
        last_error=row.last_error,
        error_category=row.error_category,
        next_retry_at=row.next_retry_at,
        lease_expires_at=row.lease_expires_at,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ClaimLedger(ABC):
    """Per-document claim ledger contract."""

    @abstractmethod
    def claim(self, company_id: str, job_id: str, request_hash: str) -> ClaimResult:
        """Try to move the claim to RUNNING for this caller."""

    @abstractmethod
    def complete(
        self,
        company_id: str,
        job_id: str,
        result_id: str,
        result_kind: str | None = None,
        *,
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """RUNNING → COMPLETED with the external result id."""

    @abstractmethod
    def fail(
        self,
        company_id: str,
        job_id: str,
        error: str,
        *,
        retriable: bool = True,
        category: str = "connectivity",
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """Record a failed attempt; WAIT_RETRY or DEAD_LETTER."""

    @abstractmethod
    def dead_letter(
        self,
        company_id: str,
        job_id: str,
        error: str,
        category: str = "validation",
        request_hash: str | None = None,
        *,
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """Force the terminal DEAD_LETTER state."""

    @abstractmethod
    def enqueue(self, company_id: str, job_id: str, request_hash: str) -> ClaimRecord:
        """Create an IDLE claim if none exists."""

    @abstractmethod
    def get(self, company_id: str, job_id: str) -> ClaimRecord | None:
        ...

    @abstractmethod
    def list_due(
        self,
        company_id: str,
        now: datetime | None = None,
        limit: int = 50,
    ) -> list[ClaimRecord]:
        ...


class SqlClaimLedger(BaseService, ClaimLedger):
    """
    SQLAlchemy claim ledger with optimistic compare-and-swap.

    Contract:
        Each public call runs in its own committed transaction.  Reads load
        the row, decide the transition in Python, then write with
        ``UPDATE ... WHERE id = :id AND version = :v AND state = :s``.
        ``rowcount == 0`` means another caller moved the row first.

    Guarantees:
        - Exactly one of N concurrent ``claim()`` calls for an eligible job
          returns CLAIMED.
        - A RUNNING claim whose lease expired may be taken over; the lost
          attempt counts as a failed attempt.
        - After a takeover the previous holder's lease token is stale; its
          complete()/fail()/dead_letter() raise ClaimLeaseLostError.
        - Claiming a job whose attempts reached the ceiling dead-letters it.

    Non-goals:
        - Does NOT call the gateway or write audit events.
        - Does NOT resurrect dead-lettered claims.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        super().__init__(session_factory, clock)
        self._retry_policy = retry_policy or RetryPolicy()
        self._lease = timedelta(seconds=lease_seconds)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self, session: Session, company_id: str, job_id: str) -> PostingClaim | None:
        return session.execute(
            select(PostingClaim).where(
                PostingClaim.company_id == company_id,
                PostingClaim.job_id == job_id,
            )
        ).scalar_one_or_none()

    def _insert(
        self,
        company_id: str,
        job_id: str,
        request_hash: str,
        state: ClaimState,
        **values,
    ) -> ClaimRecord | None:
        """Insert a new claim; None when a concurrent caller inserted first."""
        now = self._clock.now()
        try:
            with self._scope() as session:
                row = PostingClaim(
                    company_id=company_id,
                    job_id=job_id,
                    request_hash=request_hash,
                    state=state.value,
                    attempts=values.pop("attempts", 0),
                    version=1,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
                session.add(row)
                session.flush()
                return _to_record(row)
        except IntegrityError:
            logger.info(
                "claim_insert_race_lost",
                extra={"company_id": company_id, "job_id": job_id},
            )
            return None

    def _cas(
        self,
        session: Session,
        row: PostingClaim,
        target: ClaimState,
        **values,
    ) -> bool:
        """Conditional transition; True when this caller won."""
        row.validate_transition(target)
        stmt = (
            update(PostingClaim)
            .where(
                PostingClaim.id == row.id,
                PostingClaim.version == row.version,
                PostingClaim.state == row.state_str,
            )
            .values(
                state=target.value,
                version=row.version + 1,
                updated_at=self._clock.now(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

    @staticmethod
    def _check_lease(row: PostingClaim, lease_token: int | None) -> None:
        """Raise ClaimLeaseLostError when the row has moved past ``lease_token``."""
        if lease_token is None or row.version == lease_token:
            return
        logger.warning(
            "claim_lease_lost",
            extra={
                "company_id": row.company_id,
                "job_id": row.job_id,
                "lease_token": lease_token,
                "current_version": row.version,
                "state": row.state_str,
            },
        )
        raise ClaimLeaseLostError(row.job_id, lease_token, row.version, row.state_str)

    # ------------------------------------------------------------------
    # claim
    # ------------------------------------------------------------------

    def claim(self, company_id: str, job_id: str, request_hash: str) -> ClaimResult:
        """
        Attempt to acquire the posting right for one document.

        Postconditions:
            - CLAIMED: the row is RUNNING with this caller's request_hash
              and a fresh lease.  The caller must finish with complete(),
              fail() or dead_letter().
            - Any other outcome: the row is unchanged (except the
              exhausted-ceiling case, which dead-letters it).
        """
        for _ in range(_MAX_CAS_ROUNDS):
            result = self._claim_once(company_id, job_id, request_hash)
            if result is not None:
                return result

        logger.info(
            "claim_blocked_running",
            extra={"company_id": company_id, "job_id": job_id, "reason": "cas_lost"},
        )
        return ClaimResult.blocked_running()

    def _claim_once(
        self, company_id: str, job_id: str, request_hash: str,
    ) -> ClaimResult | None:
        """One read-decide-write round; None means re-read and try again."""
        now = self._clock.now()
        log_extra = {"company_id": company_id, "job_id": job_id}

        with self._scope() as session:
            row = self._load(session, company_id, job_id)
            if row is not None:
                return self._decide(session, row, request_hash, now)

        inserted = self._insert(
            company_id, job_id, request_hash, ClaimState.RUNNING,
            lease_expires_at=now + self._lease,
        )
        if inserted is None:
            return None
        logger.info("claim_acquired", extra={**log_extra, "attempts": 0})
        return ClaimResult.claimed(attempts=0, lease_token=inserted.version)

    def _decide(
        self, session: Session, row: PostingClaim, request_hash: str, now: datetime,
    ) -> ClaimResult | None:
        """Evaluate an existing claim and apply the transition it allows."""
        log_extra = {"company_id": row.company_id, "job_id": row.job_id}
        state = row.state_enum
        hash_matches = row.request_hash == request_hash

        if state == ClaimState.COMPLETED:
            if hash_matches:
                return ClaimResult.already_completed(row.result_id, row.attempts)
            logger.warning("claim_conflict", extra={**log_extra, "state": state.value})
            return ClaimResult.blocked_conflict(row.request_hash, row.attempts)

        if state == ClaimState.DEAD_LETTER:
            return ClaimResult.dead_letter(row.last_error, row.attempts)

        if state == ClaimState.RUNNING:
            if not hash_matches:
                logger.warning("claim_conflict", extra={**log_extra, "state": state.value})
                return ClaimResult.blocked_conflict(row.request_hash, row.attempts)
            if row.lease_expires_at is None or row.lease_expires_at > now:
                return ClaimResult.blocked_running(row.attempts)
            return self._take_over(session, row, request_hash, now)

        if state == ClaimState.WAIT_RETRY and row.next_retry_at and row.next_retry_at > now:
            return ClaimResult.wait_retry(row.next_retry_at, row.attempts, row.last_error)

        # IDLE, or WAIT_RETRY that is due
        if self._retry_policy.exhausted(row.attempts):
            if not self._cas(session, row, ClaimState.DEAD_LETTER, next_retry_at=None):
                return None
            logger.warning(
                "claim_dead_lettered",
                extra={**log_extra, "attempts": row.attempts, "reason": "attempts_exhausted"},
            )
            return ClaimResult.dead_letter(row.last_error, row.attempts)

        if not hash_matches:
            logger.info(
                "claim_request_hash_replaced",
                extra={**log_extra, "state": state.value},
            )

        won = self._cas(
            session, row, ClaimState.RUNNING,
            request_hash=request_hash,
            lease_expires_at=now + self._lease,
            next_retry_at=None,
        )
        if not won:
            return None
        logger.info("claim_acquired", extra={**log_extra, "attempts": row.attempts})
        return ClaimResult.claimed(attempts=row.attempts, lease_token=row.version + 1)

    def _take_over(
        self, session: Session, row: PostingClaim, request_hash: str, now: datetime,
    ) -> ClaimResult | None:
        """Take over a RUNNING claim whose lease expired."""
        log_extra = {"company_id": row.company_id, "job_id": row.job_id}
        attempts = row.attempts + 1
        lease_error = "claim lease expired before the attempt finished"

        if self._retry_policy.exhausted(attempts):
            won = self._cas(
                session, row, ClaimState.DEAD_LETTER,
                attempts=attempts,
                last_error=lease_error,
                error_category="connectivity",
                lease_expires_at=None,
            )
            if not won:
                return None
            logger.warning(
                "claim_dead_lettered",
                extra={**log_extra, "attempts": attempts, "reason": "lease_expired"},
            )
            return ClaimResult.dead_letter(lease_error, attempts)

        won = self._cas(
            session, row, ClaimState.RUNNING,
            attempts=attempts,
            request_hash=request_hash,
            last_error=lease_error,
            lease_expires_at=now + self._lease,
        )
        if not won:
            return None
        logger.warning("claim_lease_taken_over", extra={**log_extra, "attempts": attempts})
        return ClaimResult.claimed(attempts=attempts, lease_token=row.version + 1)

    # ------------------------------------------------------------------
    # complete / fail / dead_letter
    # ------------------------------------------------------------------

    def complete(
        self,
        company_id: str,
        job_id: str,
        result_id: str,
        result_kind: str | None = None,
        *,
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """
        Mark the claim COMPLETED with the external ledger id.

        Idempotent for the same result id.

        Raises:
            ClaimNotFoundError: No claim exists.
            ClaimLeaseLostError: ``lease_token`` is stale.
            ClaimResultMismatchError: Already completed with another id.
            InvalidClaimTransitionError: Claim is not RUNNING.
        """
        for _ in range(_MAX_CAS_ROUNDS):
            with self._scope() as session:
                row = self._load(session, company_id, job_id)
                if row is None:
                    raise ClaimNotFoundError(company_id, job_id)

                if row.state_enum == ClaimState.COMPLETED:
                    if row.result_id == result_id:
                        return _to_record(row)
                    self._check_lease(row, lease_token)
                    raise ClaimResultMismatchError(job_id, row.result_id or "", result_id)

                self._check_lease(row, lease_token)

                won = self._cas(
                    session, row, ClaimState.COMPLETED,
                    result_id=result_id,
                    result_kind=result_kind,
                    last_error=None,
                    error_category=None,
                    next_retry_at=None,
                    lease_expires_at=None,
                )
            if won:
                logger.info(
                    "claim_completed",
                    extra={"company_id": company_id, "job_id": job_id, "result_id": result_id},
                )
                return self._require(company_id, job_id)

        raise InvalidClaimTransitionError(
            job_id, self._require(company_id, job_id).state.value, ClaimState.COMPLETED.value,
        )

    def fail(
        self,
        company_id: str,
        job_id: str,
        error: str,
        *,
        retriable: bool = True,
        category: str = "connectivity",
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """
        Record a failed attempt on a RUNNING claim.

        Postconditions:
            - attempts is incremented.
            - WAIT_RETRY with next_retry_at = now + backoff(attempts) while
              under the ceiling and ``retriable``.
            - DEAD_LETTER at or over the ceiling, or when not ``retriable``.

        Raises:
            ClaimNotFoundError: No claim exists.
            ClaimLeaseLostError: ``lease_token`` is stale.
            InvalidClaimTransitionError: Claim is not RUNNING.
        """
        for _ in range(_MAX_CAS_ROUNDS):
            now = self._clock.now()
            with self._scope() as session:
                row = self._load(session, company_id, job_id)
                if row is None:
                    raise ClaimNotFoundError(company_id, job_id)
                self._check_lease(row, lease_token)
                if row.state_enum != ClaimState.RUNNING:
                    raise InvalidClaimTransitionError(
                        job_id, row.state_str, ClaimState.WAIT_RETRY.value,
                    )

                attempts = row.attempts + 1
                if not retriable or self._retry_policy.exhausted(attempts):
                    target = ClaimState.DEAD_LETTER
                    next_retry_at = None
                else:
                    target = ClaimState.WAIT_RETRY
                    next_retry_at = self._retry_policy.next_retry_at(now, attempts)

                won = self._cas(
                    session, row, target,
                    attempts=attempts,
                    last_error=error,
                    error_category=category,
                    next_retry_at=next_retry_at,
                    lease_expires_at=None,
                )
            if won:
                event = (
                    "claim_retry_scheduled" if target == ClaimState.WAIT_RETRY
                    else "claim_dead_lettered"
                )
                logger.warning(
                    event,
                    extra={
                        "company_id": company_id,
                        "job_id": job_id,
                        "attempts": attempts,
                        "error_category": category,
                        "next_retry_at": next_retry_at,
                    },
                )
                return self._require(company_id, job_id)

        raise InvalidClaimTransitionError(
            job_id, self._require(company_id, job_id).state.value, ClaimState.WAIT_RETRY.value,
        )

    def dead_letter(
        self,
        company_id: str,
        job_id: str,
        error: str,
        category: str = "validation",
        request_hash: str | None = None,
        *,
        lease_token: int | None = None,
    ) -> ClaimRecord:
        """
        Force DEAD_LETTER regardless of the attempt count.

        Creates the claim when none exists and is a no-op when the claim is
        already dead-lettered.  A RUNNING attempt that ends here counts as
        a failed attempt.

        Raises:
            ClaimLeaseLostError: ``lease_token`` is stale.
            InvalidClaimTransitionError: Claim is COMPLETED.
        """
        log_extra = {"company_id": company_id, "job_id": job_id, "error_category": category}

        for _ in range(_MAX_CAS_ROUNDS):
            with self._scope() as session:
                row = self._load(session, company_id, job_id)
                if row is None:
                    won = None
                else:
                    self._check_lease(row, lease_token)
                    if row.state_enum == ClaimState.DEAD_LETTER:
                        return _to_record(row)
                    attempts = row.attempts + (1 if row.state_enum == ClaimState.RUNNING else 0)
                    won = self._cas(
                        session, row, ClaimState.DEAD_LETTER,
                        attempts=attempts,
                        last_error=error,
                        error_category=category,
                        next_retry_at=None,
                        lease_expires_at=None,
                    )

            if won is None:
                inserted = self._insert(
                    company_id, job_id, request_hash or "", ClaimState.DEAD_LETTER,
                    last_error=error,
                    error_category=category,
                )
                if inserted is None:
                    continue
                logger.warning("claim_dead_lettered", extra=log_extra)
                return inserted
            if won:
                logger.warning("claim_dead_lettered", extra=log_extra)
                return self._require(company_id, job_id)

        raise InvalidClaimTransitionError(
            job_id, self._require(company_id, job_id).state.value, ClaimState.DEAD_LETTER.value,
        )

    # ------------------------------------------------------------------
    # enqueue / queries
    # ------------------------------------------------------------------

    def enqueue(self, company_id: str, job_id: str, request_hash: str) -> ClaimRecord:
        """Create an IDLE claim for later pickup; returns the existing one if present."""
        existing = self.get(company_id, job_id)
        if existing is not None:
            return existing
        inserted = self._insert(company_id, job_id, request_hash, ClaimState.IDLE)
        if inserted is not None:
            logger.info("claim_enqueued", extra={"company_id": company_id, "job_id": job_id})
            return inserted
        return self._require(company_id, job_id)

    def get(self, company_id: str, job_id: str) -> ClaimRecord | None:
        with self._scope() as session:
            row = self._load(session, company_id, job_id)
            return _to_record(row) if row is not None else None

    def _require(self, company_id: str, job_id: str) -> ClaimRecord:
        record = self.get(company_id, job_id)
        if record is None:
            raise ClaimNotFoundError(company_id, job_id)
        return record

    def list_due(
        self,
        company_id: str,
        now: datetime | None = None,
        limit: int = 50,
    ) -> list[ClaimRecord]:
        """IDLE claims and WAIT_RETRY claims whose next_retry_at has passed."""
        now = now or self._clock.now()
        with self._scope() as session:
            rows = session.execute(
                select(PostingClaim)
                .where(
                    PostingClaim.company_id == company_id,
                    or_(
                        PostingClaim.state == ClaimState.IDLE.value,
                        (PostingClaim.state == ClaimState.WAIT_RETRY.value)
                        & (PostingClaim.next_retry_at <= now),
                    ),
                )
                .order_by(PostingClaim.next_retry_at, PostingClaim.created_at)
                .limit(limit)
            ).scalars().all()
            return [_to_record(row) for row in rows]

    def list_claims(
        self,
        company_id: str,
        states: tuple[ClaimState, ...] | None = None,
    ) -> list[ClaimRecord]:
        """All claims for a company, optionally filtered by state."""
        stmt = select(PostingClaim).where(PostingClaim.company_id == company_id)
        if states:
            stmt = stmt.where(PostingClaim.state.in_([s.value for s in states]))
        with self._scope() as session:
            rows = session.execute(
                stmt.order_by(PostingClaim.created_at)
            ).scalars().all()
            return [_to_record(row) for row in rows]
