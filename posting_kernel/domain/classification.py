"""
Classification and AccountingJob -- immutable pipeline inputs.

Responsibility:
    Typed, frozen representations of the classified document produced by
    the upstream classifier and of the accounting job that owns it.
    ``Classification.from_dict`` is the single ingestion boundary for the
    loosely-typed upstream JSON (camelCase or snake_case keys, amounts as
    numbers or strings).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Classification is never mutated by the pipeline (frozen dataclass,
      tuples for collections).
    - All monetary amounts are Decimal; floats are converted through str.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from posting_kernel.db.types import ZERO, to_decimal


class DocType(str, Enum):
    """Kind of source document."""

    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    RECEIPT = "RECEIPT"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> DocType:
        """Lenient parse; unknown values become OTHER."""
        if isinstance(value, DocType):
            return value
        text = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(text)
        except ValueError:
            return cls.OTHER

    @property
    def requires_invoice_number(self) -> bool:
        return self in (DocType.INVOICE, DocType.CREDIT_NOTE)


class JobStatus(str, Enum):
    """Lifecycle of an accounting job as seen by the posting pipeline."""

    READY = "ready"
    SENT = "sent"
    ERROR = "error"


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_date(value: Any) -> date | None:
    """Parse an ISO date (or datetime) string; invalid input returns None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class LineItem:
    """One classified line on the source document."""

    description: str
    net_amount: Decimal
    vat_amount: Decimal = ZERO
    suggested_account: str | None = None
    suggested_cost_center: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            description=str(_pick(data, "description", default="")),
            net_amount=to_decimal(_pick(data, "netAmount", "net_amount")),
            vat_amount=to_decimal(_pick(data, "vatAmount", "vat_amount")),
            suggested_account=_optional_str(
                _pick(data, "suggestedAccount", "suggested_account")
            ),
            suggested_cost_center=_optional_str(
                _pick(data, "suggestedCostCenter", "suggested_cost_center")
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "net_amount": str(self.net_amount),
            "vat_amount": str(self.vat_amount),
            "suggested_account": self.suggested_account,
            "suggested_cost_center": self.suggested_cost_center,
        }


@dataclass(frozen=True)
class Classification:
    """
    Immutable classified document.

    Owned by the upstream classifier.  The posting pipeline only reads it.
    """

    doc_type: DocType
    supplier: str
    invoice_number: str | None
    invoice_date: date | None
    due_date: date | None
    currency: str
    total_amount: Decimal
    vat_amount: Decimal
    line_items: tuple[LineItem, ...] = ()
    policy_violations: tuple[str, ...] = ()
    original_currency: str | None = None

    @property
    def is_credit_note(self) -> bool:
        return self.doc_type == DocType.CREDIT_NOTE

    @property
    def line_net_total(self) -> Decimal:
        return sum((item.net_amount for item in self.line_items), ZERO)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Classification:
        """
        Build a Classification from upstream JSON.

        Accepts camelCase (upstream) and snake_case (``to_dict``) keys.
        """
        raw_lines = _pick(data, "lineItems", "line_items", default=[]) or []
        raw_violations = _pick(data, "policyViolations", "policy_violations", default=[]) or []
        currency = str(_pick(data, "currency", default="") or "").strip().upper()
        return cls(
            doc_type=DocType.parse(_pick(data, "docType", "doc_type")),
            supplier=str(_pick(data, "supplier", default="") or "").strip(),
            invoice_number=_optional_str(_pick(data, "invoiceNumber", "invoice_number")),
            invoice_date=parse_date(_pick(data, "invoiceDate", "invoice_date")),
            due_date=parse_date(_pick(data, "dueDate", "due_date")),
            currency=currency,
            total_amount=to_decimal(_pick(data, "totalAmount", "total_amount")),
            vat_amount=to_decimal(_pick(data, "vatAmount", "vat_amount")),
            line_items=tuple(LineItem.from_dict(item) for item in raw_lines),
            policy_violations=tuple(str(v) for v in raw_violations),
            original_currency=_optional_str(
                _pick(data, "originalCurrency", "original_currency")
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Snake-case JSON-safe representation (Decimals as strings)."""
        return {
            "doc_type": self.doc_type.value,
            "supplier": self.supplier,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "currency": self.currency,
            "total_amount": str(self.total_amount),
            "vat_amount": str(self.vat_amount),
            "line_items": [item.to_dict() for item in self.line_items],
            "policy_violations": list(self.policy_violations),
            "original_currency": self.original_currency,
        }


@dataclass(frozen=True)
class AccountingJob:
    """
    Accounting job aggregate as handed to the pipeline.

    The pipeline changes only ``status``, the result identifiers and
    ``error_message``, and it does so through the job store, never on this
    object.
    """

    id: str
    company_id: str
    classification: Classification
    status: JobStatus = JobStatus.READY
    invoice_id: str | None = None
    voucher_id: str | None = None
    file_name: str = ""
    created_at: datetime | None = None
    error_message: str | None = field(default=None, compare=False)

    @property
    def result_id(self) -> str | None:
        return self.invoice_id or self.voucher_id
