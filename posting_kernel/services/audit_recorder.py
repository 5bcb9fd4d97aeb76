"""
AuditRecorder -- append-only, hash-chained posting audit trail.

Responsibility:
    Records every guard failure, posting start/success/failure, policy
    block, claim conflict or skip, voucher fallback and worker run as an
    immutable AuditEvent, and exposes the ordered event stream.

Architecture position:
    Kernel > Services -- imperative shell, called by PostingPipeline and
    PostingWorker.

Invariants enforced:
    - Append-only: AuditEvent rows are never modified or deleted (ORM
      listeners in db/immutability.py).
    - Per-company chain: ``hash = H(company_id | job_id | action |
      payload_hash | prev_hash)`` with ``prev_hash`` the hash of the
      company's previous event.
    - ``seq`` is allocated as last seq + 1 under the (company_id, seq)
      unique constraint; a concurrent writer that loses the race retries
      against the new chain head.

Failure modes:
    - AuditChainBrokenError from validate_chain() when a stored hash or a
      prev_hash link does not match.
    - IntegrityError if the append race is lost more than
      ``_MAX_APPEND_ATTEMPTS`` times.

Audit relevance:
    This IS the audit trail.  Guard failures name the specific rule in
    ``payload["rule"]`` and the error code in ``payload["error_code"]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.domain.clock import Clock
from posting_kernel.exceptions import AuditChainBrokenError, PostingKernelError
from posting_kernel.logging_config import get_logger
from posting_kernel.models.audit_event import AuditAction, AuditEvent
from posting_kernel.services.base import BaseService
from posting_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.audit_recorder")

_MAX_APPEND_ATTEMPTS = 20


@dataclass(frozen=True)
class AuditEntry:
    """Immutable view of one audit event."""

    seq: int
    company_id: str
    job_id: str | None
    occurred_at: datetime
    action: AuditAction
    payload: dict[str, Any]
    hash: str


def _to_entry(event: AuditEvent) -> AuditEntry:
    return AuditEntry(
        seq=event.seq,
        company_id=event.company_id,
        job_id=event.job_id,
        occurred_at=event.occurred_at,
        action=AuditAction(event.action_str),
        payload=dict(event.payload or {}),
        hash=event.hash,
    )


class AuditRecorder(BaseService):
    """
    Creates and validates hash-chained posting audit events.

    Contract:
        ``record()`` is the single write path; the ``record_*`` helpers
        only shape payloads.  Each call commits its own transaction so the
        trail survives a later failure of the caller.

    Non-goals:
        - Does NOT interpret events (forensic tooling reads the stream).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        super().__init__(session_factory, clock)

    def _chain_head(self, session: Session, company_id: str) -> AuditEvent | None:
        return session.execute(
            select(AuditEvent)
            .where(AuditEvent.company_id == company_id)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        company_id: str,
        action: AuditAction,
        job_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append one event to the company's chain.

        Postconditions:
            - The event is committed with seq = previous seq + 1 and
              prev_hash = previous hash (None for the first event).
        """
        payload_data = to_json_safe(payload or {})
        payload_hash = hash_payload(payload_data)

        attempt = 0
        while True:
            attempt += 1
            try:
                with self._scope() as session:
                    head = self._chain_head(session, company_id)
                    prev_hash = head.hash if head else None
                    seq = head.seq + 1 if head else 1

                    event = AuditEvent(
                        seq=seq,
                        company_id=company_id,
                        job_id=job_id,
                        action=action.value,
                        occurred_at=self._clock.now(),
                        payload=payload_data,
                        payload_hash=payload_hash,
                        prev_hash=prev_hash,
                        hash=hash_audit_event(
                            company_id=company_id,
                            job_id=job_id,
                            action=action.value,
                            payload_hash=payload_hash,
                            prev_hash=prev_hash,
                        ),
                    )
                    session.add(event)
                    session.flush()
                    entry = _to_entry(event)
            except IntegrityError:
                if attempt == _MAX_APPEND_ATTEMPTS:
                    raise
                logger.info(
                    "audit_append_race_retry",
                    extra={"company_id": company_id, "attempt": attempt},
                )
                continue

            logger.info(
                "audit_event_created",
                extra={
                    "company_id": company_id,
                    "job_id": job_id,
                    "action": action.value,
                    "seq": entry.seq,
                },
            )
            return entry

    # Domain-specific recording methods

    def record_guard_failure(
        self,
        company_id: str,
        job_id: str,
        error: PostingKernelError,
        action: AuditAction = AuditAction.JOB_PRECHECK_FAILED,
    ) -> AuditEntry:
        """Record a guard or builder failure, naming the rule that failed."""
        payload = {
            "rule": error.guard or "builder",
            "error_code": error.code,
            "category": error.category,
            "message": str(error),
        }
        violations = getattr(error, "violations", None) or getattr(error, "findings", None)
        if violations:
            payload["details"] = violations
        return self.record(company_id, action, job_id, payload)

    def record_posting_started(
        self,
        company_id: str,
        job_id: str,
        attempts: int,
        strategy: str,
        trigger: str | None = None,
    ) -> AuditEntry:
        return self.record(
            company_id,
            AuditAction.POSTING_STARTED,
            job_id,
            {"attempts": attempts, "strategy": strategy, "trigger": trigger},
        )

    def record_posting_completed(
        self,
        company_id: str,
        job_id: str,
        result_id: str,
        result_kind: str,
        warnings: list[dict[str, Any]] | None = None,
    ) -> AuditEntry:
        return self.record(
            company_id,
            AuditAction.POSTING_COMPLETED,
            job_id,
            {
                "result_id": result_id,
                "result_kind": result_kind,
                "warnings": warnings or [],
            },
        )

    def record_posting_failed(
        self,
        company_id: str,
        job_id: str,
        message: str,
        error_code: str,
        claim_state: str,
        next_retry_at: datetime | None = None,
    ) -> AuditEntry:
        if claim_state == "dead_letter":
            action = AuditAction.POSTING_DEAD_LETTERED
        elif claim_state == "wait_retry":
            action = AuditAction.POSTING_RETRY_SCHEDULED
        else:
            action = AuditAction.POSTING_FAILED
        return self.record(
            company_id,
            action,
            job_id,
            {
                "error_code": error_code,
                "message": message,
                "claim_state": claim_state,
                "next_retry_at": next_retry_at,
            },
        )

    def record_claim_not_acquired(
        self,
        company_id: str,
        job_id: str,
        outcome: str,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry:
        action = (
            AuditAction.CLAIM_CONFLICT if outcome == "blocked_conflict"
            else AuditAction.CLAIM_SKIPPED
        )
        return self.record(company_id, action, job_id, {"outcome": outcome, **(detail or {})})

    def record_lease_lost(
        self,
        company_id: str,
        job_id: str,
        error: PostingKernelError,
        result_id: str | None = None,
    ) -> AuditEntry:
        """An attempt finished after its claim was taken over.

        ``result_id`` is set when the stale attempt had already created a
        ledger document; that document needs manual reconciliation.
        """
        return self.record(
            company_id,
            AuditAction.CLAIM_LEASE_LOST,
            job_id,
            {
                "error_code": error.code,
                "message": str(error),
                "orphan_result_id": result_id,
            },
        )

    def record_voucher_fallback(
        self,
        company_id: str,
        job_id: str,
        reason: str,
    ) -> AuditEntry:
        return self.record(
            company_id, AuditAction.VOUCHER_FALLBACK, job_id, {"reason": reason},
        )

    def record_worker_run(
        self,
        company_id: str,
        summary: dict[str, Any],
    ) -> AuditEntry:
        return self.record(company_id, AuditAction.WORKER_RUN, None, summary)

    # Queries

    def events_for_job(self, company_id: str, job_id: str) -> list[AuditEntry]:
        with self._scope() as session:
            events = session.execute(
                select(AuditEvent)
                .where(AuditEvent.company_id == company_id, AuditEvent.job_id == job_id)
                .order_by(AuditEvent.seq)
            ).scalars().all()
            return [_to_entry(e) for e in events]

    def events_for_company(
        self,
        company_id: str,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.company_id == company_id)
            .order_by(AuditEvent.seq)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._scope() as session:
            return [_to_entry(e) for e in session.execute(stmt).scalars().all()]

    def validate_chain(self, company_id: str) -> bool:
        """
        Validate one company's audit chain.

        Postconditions:
            - Returns ``True`` only if every stored hash matches its
              recomputed value and every prev_hash matches the previous
              event's hash.

        Raises:
            AuditChainBrokenError: At the first event that fails.
        """
        with self._scope() as session:
            events = session.execute(
                select(AuditEvent)
                .where(AuditEvent.company_id == company_id)
                .order_by(AuditEvent.seq)
            ).scalars().all()

            expected_prev: str | None = None
            for event in events:
                if event.prev_hash != expected_prev:
                    logger.critical(
                        "audit_chain_broken",
                        extra={"company_id": company_id, "seq": event.seq, "link": "prev_hash"},
                    )
                    raise AuditChainBrokenError(
                        event.seq, expected_prev or "None", event.prev_hash or "None",
                    )

                recomputed_payload = hash_payload(event.payload or {})
                expected_hash = hash_audit_event(
                    company_id=event.company_id,
                    job_id=event.job_id,
                    action=event.action_str,
                    payload_hash=recomputed_payload,
                    prev_hash=event.prev_hash,
                )
                if event.hash != expected_hash:
                    logger.critical(
                        "audit_chain_broken",
                        extra={"company_id": company_id, "seq": event.seq, "link": "hash"},
                    )
                    raise AuditChainBrokenError(event.seq, expected_hash, event.hash)

                expected_prev = event.hash

        return True
