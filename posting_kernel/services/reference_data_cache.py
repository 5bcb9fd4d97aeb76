"""
ReferenceDataCache -- per-company cache of the external ledger's master data.

Loads cached accounts, cost centers, voucher series and fiscal years from
the ``reference_snapshots`` table into a frozen ``ReferenceSnapshot`` for the
pure guard and builder layer.  ``store()`` is the write path used by the
bootstrap process that refreshes the cache; the posting pipeline only calls
``snapshot()``.

A kind that was never stored comes back empty, which the snapshot treats as
"unknown" rather than "nothing allowed".
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.domain.classification import parse_date
from posting_kernel.domain.clock import Clock
from posting_kernel.domain.reference_data import FiscalYear, ReferenceSnapshot
from posting_kernel.logging_config import get_logger
from posting_kernel.models.reference_cache import ReferenceCacheEntry, ReferenceKind
from posting_kernel.services.base import BaseService

logger = get_logger("services.reference_data_cache")


def _fiscal_year_from_dict(raw: dict) -> FiscalYear | None:
    from_date = parse_date(raw.get("from") or raw.get("FromDate"))
    to_date = parse_date(raw.get("to") or raw.get("ToDate"))
    if from_date is None or to_date is None:
        return None
    year_id = raw.get("id", raw.get("Id"))
    return FiscalYear(from_date, to_date, str(year_id) if year_id is not None else None)


def _fiscal_year_to_dict(year: FiscalYear) -> dict:
    return {
        "id": year.year_id,
        "from": year.from_date.isoformat(),
        "to": year.to_date.isoformat(),
    }


class ReferenceDataCache(BaseService):
    """
    Loads and stores reference snapshots.

    Non-goals:
        - Does NOT fetch from the external ledger.
        - Does NOT expire entries.  A stale chart surfaces as a builder
          fallback or a gateway rejection.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        super().__init__(session_factory, clock)

    def snapshot(self, company_id: str) -> ReferenceSnapshot:
        """Build the frozen snapshot for ``company_id``."""
        with self._scope() as session:
            entries = session.execute(
                select(ReferenceCacheEntry).where(
                    ReferenceCacheEntry.company_id == company_id,
                )
            ).scalars().all()
            by_kind = {ReferenceKind(entry.kind): entry for entry in entries}

        def values(kind: ReferenceKind) -> list:
            entry = by_kind.get(kind)
            if entry is None:
                return []
            return list((entry.data or {}).get(kind.value) or [])

        fiscal_years = tuple(
            year for year in (
                _fiscal_year_from_dict(raw) for raw in values(ReferenceKind.FISCAL_YEARS)
            ) if year is not None
        )
        fetched = [entry.fetched_at for entry in by_kind.values()]

        snapshot = ReferenceSnapshot(
            company_id=company_id,
            accounts=frozenset(str(a) for a in values(ReferenceKind.ACCOUNTS)),
            cost_centers=frozenset(str(c) for c in values(ReferenceKind.COST_CENTERS)),
            voucher_series=tuple(str(s) for s in values(ReferenceKind.VOUCHER_SERIES)),
            fiscal_years=fiscal_years,
            fetched_at=min(fetched) if fetched else None,
        )
        logger.debug(
            "reference_snapshot_loaded",
            extra={
                "company_id": company_id,
                "accounts": len(snapshot.accounts),
                "cost_centers": len(snapshot.cost_centers),
                "fiscal_years": len(snapshot.fiscal_years),
            },
        )
        return snapshot

    def store(
        self,
        company_id: str,
        *,
        accounts: Iterable[str] | None = None,
        cost_centers: Iterable[str] | None = None,
        voucher_series: Iterable[str] | None = None,
        fiscal_years: Iterable[FiscalYear | dict] | None = None,
    ) -> ReferenceSnapshot:
        """
        Replace the cached kinds that are given; kinds passed as None are
        left untouched.
        """
        updates: dict[ReferenceKind, list] = {}
        if accounts is not None:
            updates[ReferenceKind.ACCOUNTS] = sorted({str(a) for a in accounts})
        if cost_centers is not None:
            updates[ReferenceKind.COST_CENTERS] = sorted({str(c) for c in cost_centers})
        if voucher_series is not None:
            updates[ReferenceKind.VOUCHER_SERIES] = [str(s) for s in voucher_series]
        if fiscal_years is not None:
            years = [
                y if isinstance(y, FiscalYear) else _fiscal_year_from_dict(y)
                for y in fiscal_years
            ]
            updates[ReferenceKind.FISCAL_YEARS] = [
                _fiscal_year_to_dict(y) for y in years if y is not None
            ]

        now = self._clock.now()
        with self._scope() as session:
            for kind, data in updates.items():
                entry = session.execute(
                    select(ReferenceCacheEntry).where(
                        ReferenceCacheEntry.company_id == company_id,
                        ReferenceCacheEntry.kind == kind.value,
                    )
                ).scalar_one_or_none()
                if entry is None:
                    session.add(ReferenceCacheEntry(
                        company_id=company_id,
                        kind=kind.value,
                        data={kind.value: data},
                        fetched_at=now,
                        created_at=now,
                        updated_at=now,
                    ))
                else:
                    entry.data = {kind.value: data}
                    entry.fetched_at = now
                    entry.updated_at = now

        logger.info(
            "reference_snapshot_stored",
            extra={"company_id": company_id, "kinds": [k.value for k in updates]},
        )
        return self.snapshot(company_id)

    def fiscal_year_for(self, company_id: str, day: date) -> FiscalYear | None:
        return self.snapshot(company_id).fiscal_year_for(day)
