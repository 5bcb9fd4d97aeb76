"""Services for the posting kernel (write side)."""

from posting_kernel.services.audit_recorder import AuditEntry, AuditRecorder
from posting_kernel.services.claim_ledger import ClaimLedger, ClaimRecord, SqlClaimLedger
from posting_kernel.services.gateway import LedgerGateway, call_with_timeout
from posting_kernel.services.job_repository import JobRepository
from posting_kernel.services.period_service import PeriodInfo, PeriodService
from posting_kernel.services.posting_pipeline import CompanyPostingSettings, PostingPipeline
from posting_kernel.services.posting_worker import PostingWorker, WorkerRunSummary
from posting_kernel.services.reference_data_cache import ReferenceDataCache

__all__ = [
    "AuditEntry",
    "AuditRecorder",
    "ClaimLedger",
    "ClaimRecord",
    "CompanyPostingSettings",
    "JobRepository",
    "LedgerGateway",
    "PeriodInfo",
    "PeriodService",
    "PostingPipeline",
    "PostingWorker",
    "ReferenceDataCache",
    "SqlClaimLedger",
    "WorkerRunSummary",
    "call_with_timeout",
]
