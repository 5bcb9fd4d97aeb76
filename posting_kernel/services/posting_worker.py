"""
PostingWorker -- picks up due jobs and runs them through the pipeline.

Contract:
    ``run(company_id, limit)`` selects up to ``limit`` jobs of one company
    whose claim is due (no claim yet, IDLE, or WAIT_RETRY past its
    next_retry_at), posts each through ``PostingPipeline.post_document``
    with trigger "retry", and returns a WorkerRunSummary.

Invariants enforced:
    - Only jobs in READY or ERROR status are eligible; SENT jobs never are.
    - Jobs of other companies are skipped, never posted.
    - One job's unexpected failure does not abort the run.
    - Exactly one WORKER_RUN audit event per run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from posting_kernel.domain.classification import AccountingJob, JobStatus
from posting_kernel.domain.clock import Clock, SystemClock
from posting_kernel.domain.results import PostingResult
from posting_kernel.logging_config import LogContext, get_logger
from posting_kernel.services.audit_recorder import AuditRecorder
from posting_kernel.services.claim_ledger import ClaimLedger
from posting_kernel.services.job_repository import JobRepository
from posting_kernel.services.posting_pipeline import PostingPipeline

logger = get_logger("services.posting_worker")

MIN_BATCH = 1
MAX_BATCH = 50
DEFAULT_BATCH = 10

_ELIGIBLE_STATUSES = (JobStatus.READY, JobStatus.ERROR)


@dataclass(frozen=True)
class WorkerRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: dict[str, PostingResult] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": {job_id: r.to_dict() for job_id, r in self.results.items()},
        }


def clamp_limit(limit: int) -> int:
    return max(MIN_BATCH, min(MAX_BATCH, int(limit)))


class PostingWorker:
    """Bounded retry sweep for one company at a time."""

    def __init__(
        self,
        pipeline: PostingPipeline,
        jobs: JobRepository,
        claims: ClaimLedger,
        audit: AuditRecorder,
        clock: Clock | None = None,
    ):
        self._pipeline = pipeline
        self._jobs = jobs
        self._claims = claims
        self._audit = audit
        self._clock = clock or SystemClock()

    def due_jobs(self, company_id: str, limit: int = DEFAULT_BATCH) -> list[AccountingJob]:
        """Eligible jobs whose claim is due, soonest retry first."""
        now = self._clock.now()
        candidates: list[tuple[datetime, datetime, AccountingJob]] = []
        for job in self._jobs.list_by_status(company_id, _ELIGIBLE_STATUSES):
            claim = self._claims.get(company_id, job.id)
            if claim is not None and not claim.is_due(now):
                continue
            retry_at = (claim.next_retry_at if claim else None) or datetime.min.replace(tzinfo=now.tzinfo)
            created_at = job.created_at or now
            candidates.append((retry_at, created_at, job))

        candidates.sort(key=lambda item: (item[0], item[1]))
        return [job for _, _, job in candidates[:clamp_limit(limit)]]

    def run(self, company_id: str, limit: int = DEFAULT_BATCH) -> WorkerRunSummary:
        limit = clamp_limit(limit)
        t0 = time.monotonic()

        with LogContext.bind(correlation_id=str(uuid4()), company_id=company_id, trigger="retry"):
            due = self.due_jobs(company_id, limit)
            logger.info("worker_run_started", extra={"limit": limit, "due": len(due)})

            succeeded = failed = skipped = 0
            results: dict[str, PostingResult] = {}

            for candidate in due:
                # Re-read: the job may have been posted or removed since selection.
                job = self._jobs.get(candidate.id)
                if job is None or job.company_id != company_id or job.status not in _ELIGIBLE_STATUSES:
                    logger.info("worker_job_skipped", extra={"job_id": candidate.id})
                    skipped += 1
                    continue

                try:
                    result = self._pipeline.post_document(company_id, job, trigger="retry")
                except Exception:
                    logger.error("worker_job_crashed", extra={"job_id": job.id}, exc_info=True)
                    failed += 1
                    continue

                results[job.id] = result
                if result.success:
                    succeeded += 1
                else:
                    failed += 1

            summary = WorkerRunSummary(
                processed=succeeded + failed,
                succeeded=succeeded,
                failed=failed,
                skipped=skipped,
                results=results,
            )
            self._audit.record_worker_run(company_id, {
                "limit": limit,
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "job_ids": list(results),
            })
            logger.info(
                "worker_run_completed",
                extra={
                    "processed": summary.processed,
                    "succeeded": summary.succeeded,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return summary
