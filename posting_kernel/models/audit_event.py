"""
Module: posting_kernel.models.audit_event
Responsibility: Append-only audit log of every guard failure and posting
    lifecycle transition, keyed by (company_id, job_id, occurred_at).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Rows are never updated or deleted (db/immutability.py listeners).
    - seq is unique and gap-free per company (uq_audit_company_seq).
    - hash = H(company_id | job_id | action | payload_hash | prev_hash),
      chaining each company's events into a tamper-evident sequence.

Audit relevance:
    This table is the system of record for "why did this document fail".
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from posting_kernel.db.base import Base


class AuditAction(str, Enum):
    """Types of auditable posting actions."""

    # Posting lifecycle
    POSTING_STARTED = "posting_started"
    POSTING_COMPLETED = "posting_completed"
    POSTING_FAILED = "posting_failed"
    POSTING_RETRY_SCHEDULED = "posting_retry_scheduled"
    POSTING_DEAD_LETTERED = "posting_dead_lettered"
    VOUCHER_FALLBACK = "voucher_fallback"

    # Preflight
    JOB_PRECHECK_FAILED = "job_precheck_failed"
    JOB_POLICY_BLOCKED = "job_policy_blocked"

    # Claim ledger answers that stop an attempt
    CLAIM_CONFLICT = "claim_conflict"
    CLAIM_SKIPPED = "claim_skipped"
    CLAIM_LEASE_LOST = "claim_lease_lost"

    # Retry worker
    WORKER_RUN = "worker_run"


class AuditEvent(Base):
    """
    Audit event with per-company hash chain.

    Guarantees:
        - prev_hash is None only for a company's first event.
        - payload carries the structured detail (rule, error code, message,
          result id) for the event type.
    """

    __tablename__ = "posting_audit_events"

    __table_args__ = (
        UniqueConstraint("company_id", "seq", name="uq_audit_company_seq"),
        Index("idx_audit_job", "company_id", "job_id", "occurred_at"),
        Index("idx_audit_action", "action"),
    )

    # Monotonic per-company sequence
    seq: Mapped[int] = mapped_column(nullable=False)

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Null for company-level events (worker runs)
    job_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def action_str(self) -> str:
        if isinstance(self.action, AuditAction):
            return self.action.value
        return self.action

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action_str} job={self.job_id} seq={self.seq}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
