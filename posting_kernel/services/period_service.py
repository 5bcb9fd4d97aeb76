"""
PeriodService -- accounting period lifecycle and the period-lock oracle.

Responsibility:
    Manages per-company accounting periods (OPEN -> CLOSED -> LOCKED) and
    answers the pipeline's question "may this document date be posted?".

Architecture position:
    Kernel > Services -- imperative shell.  Implements
    ``domain.guards.PeriodOracle`` for PeriodWritableGuard.

Invariants enforced:
    - No posting to CLOSED or LOCKED periods (``assert_writable``).
    - A month without a recorded period is treated as OPEN; the external
      ledger's own period locks are surfaced through gateway rejections.
    - LOCKED is final: only CLOSED periods can be locked.
    - Returns frozen ``PeriodInfo`` DTOs, never ORM entities.

Failure modes:
    - ClosedPeriodError: date falls in a CLOSED or LOCKED period.
    - PeriodNotFoundError: close/lock of an unknown period code.
    - PeriodAlreadyClosedError: close of a CLOSED or LOCKED period.
    - ValueError: malformed period code, or lock of a non-CLOSED period.

Audit relevance:
    Period creation, close and lock are logged with company_id and
    period_code.  Blocked dates are logged at WARNING level.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.domain.clock import Clock
from posting_kernel.domain.guards import PeriodOracle
from posting_kernel.exceptions import (
    ClosedPeriodError,
    PeriodAlreadyClosedError,
    PeriodNotFoundError,
)
from posting_kernel.logging_config import get_logger
from posting_kernel.models.accounting_period import AccountingPeriod, PeriodStatus
from posting_kernel.services.base import BaseService

logger = get_logger("services.period")

_PERIOD_CODE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class PeriodInfo:
    company_id: str
    period_code: str
    start_date: date
    end_date: date
    status: PeriodStatus

    @property
    def is_writable(self) -> bool:
        return self.status == PeriodStatus.OPEN


def period_code_for(day: date) -> str:
    """YYYY-MM code of the month containing ``day``."""
    return f"{day.year:04d}-{day.month:02d}"


def month_bounds(period_code: str) -> tuple[date, date]:
    """First and last day of a YYYY-MM period code."""
    match = _PERIOD_CODE.match(period_code)
    if match is None:
        raise ValueError(f"Period code must be YYYY-MM, got {period_code!r}")
    year, month = int(match.group(1)), int(match.group(2))
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


class PeriodService(BaseService, PeriodOracle):
    """
    Per-company accounting periods.

    Contract:
        Lifecycle methods take a company and a YYYY-MM code and return a
        frozen ``PeriodInfo``.  ``assert_writable`` raises on dates in
        closed or locked periods.

    Non-goals:
        - Does NOT manage fiscal years (those come from the reference
          snapshot of the external ledger).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        super().__init__(session_factory, clock)

    def _to_dto(self, period: AccountingPeriod) -> PeriodInfo:
        return PeriodInfo(
            company_id=period.company_id,
            period_code=period.period_code,
            start_date=period.start_date,
            end_date=period.end_date,
            status=period.status_enum,
        )

    def _get_orm(
        self, session: Session, company_id: str, period_code: str,
    ) -> AccountingPeriod | None:
        return session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.company_id == company_id,
                AccountingPeriod.period_code == period_code,
            )
        ).scalar_one_or_none()

    def ensure_period(self, company_id: str, period_code: str) -> PeriodInfo:
        """Return the period, creating it OPEN if it does not exist yet."""
        start_date, end_date = month_bounds(period_code)
        with self._scope() as session:
            period = self._get_orm(session, company_id, period_code)
            if period is None:
                now = self._clock.now()
                period = AccountingPeriod(
                    company_id=company_id,
                    period_code=period_code,
                    start_date=start_date,
                    end_date=end_date,
                    status=PeriodStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(period)
                session.flush()
                logger.info(
                    "period_created",
                    extra={"company_id": company_id, "period_code": period_code},
                )
            return self._to_dto(period)

    def close_period(self, company_id: str, period_code: str) -> PeriodInfo:
        """
        Close an OPEN period.  Creates the row if the month was implicit.

        Raises:
            PeriodAlreadyClosedError: Period is CLOSED or LOCKED.
        """
        self.ensure_period(company_id, period_code)
        with self._scope() as session:
            period = self._get_orm(session, company_id, period_code)
            if period.status_enum != PeriodStatus.OPEN:
                raise PeriodAlreadyClosedError(period_code, period.status_enum.value)
            period.status = PeriodStatus.CLOSED.value
            period.updated_at = self._clock.now()
            session.flush()
            logger.info(
                "period_closed",
                extra={"company_id": company_id, "period_code": period_code},
            )
            return self._to_dto(period)

    def lock_period(self, company_id: str, period_code: str) -> PeriodInfo:
        """
        Permanently lock a CLOSED period.

        Raises:
            PeriodNotFoundError: Period does not exist.
            ValueError: Period is not CLOSED.
        """
        with self._scope() as session:
            period = self._get_orm(session, company_id, period_code)
            if period is None:
                raise PeriodNotFoundError(company_id, period_code)
            if period.status_enum != PeriodStatus.CLOSED:
                raise ValueError(
                    f"Period {period_code} must be CLOSED to lock "
                    f"(current: {period.status_enum.value})"
                )
            period.status = PeriodStatus.LOCKED.value
            period.updated_at = self._clock.now()
            session.flush()
            logger.info(
                "period_locked",
                extra={"company_id": company_id, "period_code": period_code},
            )
            return self._to_dto(period)

    def get_period(self, company_id: str, period_code: str) -> PeriodInfo | None:
        with self._scope() as session:
            period = self._get_orm(session, company_id, period_code)
            return self._to_dto(period) if period else None

    def get_period_for_date(self, company_id: str, day: date) -> PeriodInfo | None:
        return self.get_period(company_id, period_code_for(day))

    def assert_writable(self, company_id: str, day: date) -> None:
        """
        Raise ClosedPeriodError if ``day`` is in a CLOSED or LOCKED period.

        A month with no recorded period is writable.
        """
        period = self.get_period_for_date(company_id, day)
        if period is None or period.is_writable:
            return
        logger.warning(
            "period_blocked_posting",
            extra={
                "company_id": company_id,
                "period_code": period.period_code,
                "status": period.status.value,
                "effective_date": day,
            },
        )
        raise ClosedPeriodError(period.period_code, day.isoformat(), period.status.value)

    def is_writable(self, company_id: str, day: date) -> bool:
        try:
            self.assert_writable(company_id, day)
        except ClosedPeriodError:
            return False
        return True
