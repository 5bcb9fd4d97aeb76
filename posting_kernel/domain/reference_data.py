"""
ReferenceSnapshot -- per-company view of the external ledger's master data.

Responsibility:
    Holds the chart of accounts, cost centers, voucher series and fiscal
    years last fetched from the external ledger, and answers the lookups the
    guards and the builder need.

Architecture position:
    Kernel > Domain -- pure, frozen value object.  Loaded by
    ``services.reference_data_cache.ReferenceDataCache``.

Invariants enforced:
    - Read-only: the pipeline never writes reference data.
    - Staleness is tolerated.  An empty list means "unknown", never "none
      allowed": empty cost centers keep every code, empty fiscal years skip
      the fiscal-year guard, empty accounts keep suggested accounts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

DEFAULT_VOUCHER_SERIES = "A"


@dataclass(frozen=True)
class FiscalYear:
    """One financial year in the external ledger's calendar."""

    from_date: date
    to_date: date
    year_id: str | None = None

    def contains(self, day: date) -> bool:
        return self.from_date <= day <= self.to_date


@dataclass(frozen=True)
class ReferenceSnapshot:
    """Frozen reference data for one company."""

    company_id: str
    accounts: frozenset[str] = frozenset()
    cost_centers: frozenset[str] = frozenset()
    voucher_series: tuple[str, ...] = ()
    fiscal_years: tuple[FiscalYear, ...] = ()
    fetched_at: datetime | None = None

    @classmethod
    def empty(cls, company_id: str) -> ReferenceSnapshot:
        return cls(company_id=company_id)

    def has_account(self, number: str | None) -> bool:
        return number is not None and number in self.accounts

    def normalize_cost_center(self, code: str | None) -> str | None:
        """Return ``code`` if usable, None if it should be dropped."""
        if not code:
            return None
        if not self.cost_centers:
            return code
        return code if code in self.cost_centers else None

    def pick_voucher_series(self, preferred: str = DEFAULT_VOUCHER_SERIES) -> str:
        if preferred in self.voucher_series:
            return preferred
        if self.voucher_series:
            return self.voucher_series[0]
        return preferred

    @property
    def has_fiscal_calendar(self) -> bool:
        return bool(self.fiscal_years)

    def fiscal_year_for(self, day: date) -> FiscalYear | None:
        for year in self.fiscal_years:
            if year.contains(day):
                return year
        return None
