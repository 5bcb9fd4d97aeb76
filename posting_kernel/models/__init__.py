"""ORM models for the posting kernel."""

from posting_kernel.models.accounting_job import AccountingJobRecord, JobRecordStatus
from posting_kernel.models.accounting_period import AccountingPeriod, PeriodStatus
from posting_kernel.models.audit_event import AuditAction, AuditEvent
from posting_kernel.models.posting_claim import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ClaimState,
    PostingClaim,
)
from posting_kernel.models.reference_cache import ReferenceCacheEntry, ReferenceKind

__all__ = [
    "AccountingJobRecord",
    "JobRecordStatus",
    "AccountingPeriod",
    "PeriodStatus",
    "AuditAction",
    "AuditEvent",
    "ClaimState",
    "PostingClaim",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "ReferenceCacheEntry",
    "ReferenceKind",
]
