"""
JobRepository -- persistence for accounting jobs.

Responsibility:
    Stores AccountingJob aggregates and applies the only mutations the
    posting pipeline is allowed to make: status, result ids and the last
    error message.

Architecture position:
    Kernel > Services -- imperative shell, used by PostingPipeline and
    PostingWorker.

Invariants enforced:
    - ``mark_sent`` is called only after the claim is COMPLETED; it sets
      exactly one of invoice_id / voucher_id and clears the error.
    - The embedded classification is never rewritten by posting.

Failure modes:
    - JobNotFoundError from ``require`` / ``mark_*`` on an unknown job id.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.domain.classification import AccountingJob, Classification, JobStatus
from posting_kernel.domain.clock import Clock
from posting_kernel.exceptions import JobNotFoundError
from posting_kernel.logging_config import get_logger
from posting_kernel.models.accounting_job import AccountingJobRecord
from posting_kernel.services.base import BaseService

logger = get_logger("services.job_repository")

SUPPLIER_INVOICE = "supplier_invoice"


def _to_domain(record: AccountingJobRecord) -> AccountingJob:
    return AccountingJob(
        id=record.job_id,
        company_id=record.company_id,
        classification=Classification.from_dict(record.classification or {}),
        status=JobStatus(record.status),
        invoice_id=record.invoice_id,
        voucher_id=record.voucher_id,
        file_name=record.file_name or "",
        created_at=record.created_at,
        error_message=record.error_message,
    )


class JobRepository(BaseService):
    """Reads and writes AccountingJob aggregates."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        super().__init__(session_factory, clock)

    def _get_orm(self, session: Session, job_id: str) -> AccountingJobRecord | None:
        return session.execute(
            select(AccountingJobRecord).where(AccountingJobRecord.job_id == job_id)
        ).scalar_one_or_none()

    def save(self, job: AccountingJob) -> AccountingJob:
        """Insert a new job, or replace the stored content of an existing one."""
        now = self._clock.now()
        with self._scope() as session:
            record = self._get_orm(session, job.id)
            if record is None:
                record = AccountingJobRecord(
                    job_id=job.id,
                    company_id=job.company_id,
                    created_at=job.created_at or now,
                )
                session.add(record)
            record.classification = job.classification.to_dict()
            record.status = job.status.value
            record.invoice_id = job.invoice_id
            record.voucher_id = job.voucher_id
            record.error_message = job.error_message
            record.file_name = job.file_name
            record.updated_at = now
            session.flush()
            return _to_domain(record)

    def register(self, job: AccountingJob) -> AccountingJob:
        """
        Store ``job`` unless a row for it exists; the stored job wins.

        Safe under concurrent first calls for the same job: the loser of the
        insert race reads the winner's row.
        """
        existing = self.get(job.id)
        if existing is not None:
            return existing
        try:
            return self.save(job)
        except IntegrityError:
            logger.info("job_insert_race_lost", extra={"job_id": job.id})
            return self.require(job.id)

    def get(self, job_id: str) -> AccountingJob | None:
        with self._scope() as session:
            record = self._get_orm(session, job_id)
            return _to_domain(record) if record else None

    def require(self, job_id: str) -> AccountingJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def mark_sent(self, job_id: str, result_id: str, result_kind: str) -> AccountingJob:
        with self._scope() as session:
            record = self._get_orm(session, job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            if result_kind == SUPPLIER_INVOICE:
                record.invoice_id = result_id
            else:
                record.voucher_id = result_id
            record.status = JobStatus.SENT.value
            record.error_message = None
            record.updated_at = self._clock.now()
            session.flush()
            logger.info(
                "job_marked_sent",
                extra={"job_id": job_id, "result_id": result_id, "result_kind": result_kind},
            )
            return _to_domain(record)

    def mark_error(self, job_id: str, message: str) -> AccountingJob:
        with self._scope() as session:
            record = self._get_orm(session, job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            record.status = JobStatus.ERROR.value
            record.error_message = message
            record.updated_at = self._clock.now()
            session.flush()
            logger.info("job_marked_error", extra={"job_id": job_id})
            return _to_domain(record)

    def list_by_status(
        self,
        company_id: str,
        statuses: Iterable[JobStatus],
    ) -> list[AccountingJob]:
        """Jobs of ``company_id`` in any of ``statuses``, oldest first."""
        values = [s.value for s in statuses]
        with self._scope() as session:
            records = session.execute(
                select(AccountingJobRecord)
                .where(
                    AccountingJobRecord.company_id == company_id,
                    AccountingJobRecord.status.in_(values),
                )
                .order_by(AccountingJobRecord.created_at)
            ).scalars().all()
            return [_to_domain(r) for r in records]
