"""
Module: posting_kernel.models.reference_cache
Responsibility: Cached copies of the external ledger's master data, one JSON
    document per (company_id, kind).
Architecture position: Kernel > Models.  May import from db/base.py only.

Kinds:
    accounts        {"accounts": ["1930", "2440", ...]}
    cost_centers    {"cost_centers": ["IT", "KONTOR", ...]}
    voucher_series  {"voucher_series": ["A", "B", ...]}
    fiscal_years    {"fiscal_years": [{"id": "1", "from": "2024-01-01", "to": "2024-12-31"}]}

Refreshed by an external bootstrap process; the posting pipeline only reads.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from posting_kernel.db.base import TrackedBase


class ReferenceKind(str, Enum):
    ACCOUNTS = "accounts"
    COST_CENTERS = "cost_centers"
    VOUCHER_SERIES = "voucher_series"
    FISCAL_YEARS = "fiscal_years"


class ReferenceCacheEntry(TrackedBase):
    __tablename__ = "reference_snapshots"

    __table_args__ = (
        UniqueConstraint("company_id", "kind", name="uq_reference_snapshot_kind"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)

    kind: Mapped[ReferenceKind] = mapped_column(String(30), nullable=False)

    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    fetched_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ReferenceCacheEntry {self.company_id}:{self.kind}>"
