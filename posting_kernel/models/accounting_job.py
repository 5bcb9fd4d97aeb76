"""
Module: posting_kernel.models.accounting_job
Responsibility: Persistence for accounting jobs as far as posting needs them:
    the embedded classification, status and the external result ids.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - job_id is unique.
    - status becomes "sent" only after the claim is COMPLETED (enforced by
      the pipeline, which is the only writer of status and result ids).
"""

from enum import Enum

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from posting_kernel.db.base import TrackedBase


class JobRecordStatus(str, Enum):
    READY = "ready"
    SENT = "sent"
    ERROR = "error"


class AccountingJobRecord(TrackedBase):
    __tablename__ = "accounting_jobs"

    __table_args__ = (
        Index("idx_job_company_status", "company_id", "status"),
    )

    job_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Classification.to_dict()
    classification: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[JobRecordStatus] = mapped_column(String(10), nullable=False)

    invoice_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    voucher_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    file_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    def __repr__(self) -> str:
        return f"<AccountingJobRecord {self.job_id} {self.status}>"
