"""
Module: posting_kernel.models.accounting_period
Responsibility: Per-company accounting periods and their lock status, backing
    the period-lock oracle (services/period_service.py).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per (company_id, period_code) where period_code is YYYY-MM.
    - A month without a row is treated as OPEN by the oracle.
"""

from datetime import date
from enum import Enum

from sqlalchemy import Date, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from posting_kernel.db.base import TrackedBase


class PeriodStatus(str, Enum):
    """Accounting period status."""

    OPEN = "open"
    CLOSED = "closed"
    LOCKED = "locked"


class AccountingPeriod(TrackedBase):
    __tablename__ = "accounting_periods"

    __table_args__ = (
        UniqueConstraint("company_id", "period_code", name="uq_period_company_code"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # YYYY-MM
    period_code: Mapped[str] = mapped_column(String(7), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(String(10), nullable=False)

    @property
    def status_enum(self) -> PeriodStatus:
        if isinstance(self.status, PeriodStatus):
            return self.status
        return PeriodStatus(self.status)

    @property
    def is_writable(self) -> bool:
        return self.status_enum == PeriodStatus.OPEN

    def __repr__(self) -> str:
        return f"<AccountingPeriod {self.company_id}:{self.period_code} {self.status_enum.value}>"
