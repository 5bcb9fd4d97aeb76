"""
Ledger payloads -- the two shapes sent to the external ledger.

Responsibility:
    ``SupplierInvoicePayload`` and ``VoucherPayload`` are explicit tagged
    variants of ``LedgerPayload``.  Each validates its own balance in
    ``__post_init__``, so an unbalanced payload cannot exist.

Architecture position:
    Kernel > Domain -- pure value objects produced by
    ``domain.builder.LedgerDocumentBuilder`` and consumed by the
    ``LedgerGateway``.  Never persisted; rebuilt on every attempt.

Invariants enforced:
    - Voucher: sum(debit) == sum(credit) within ``tolerance``.
    - Supplier invoice: sum(row debits) == |total| within ``tolerance``.
    - Every payload carries the originating job id in its reference field.

Failure modes:
    - UnbalancedPayloadError on a balance violation.
    - ValidationError on an empty voucher or a negative row amount.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Union

from posting_kernel.db.types import ZERO
from posting_kernel.exceptions import UnbalancedPayloadError, ValidationError

DEFAULT_VOUCHER_TOLERANCE = Decimal("0.01")
DEFAULT_INVOICE_TOLERANCE = Decimal("1.00")


@dataclass(frozen=True)
class InvoiceRow:
    """Debit row on a supplier invoice (the ledger books the liability)."""

    account: str
    debit: Decimal
    cost_center: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        row: dict[str, Any] = {"account": self.account, "debit": str(self.debit)}
        if self.cost_center:
            row["cost_center"] = self.cost_center
        if self.description:
            row["description"] = self.description
        return row


@dataclass(frozen=True)
class SupplierInvoicePayload:
    """Supplier invoice (or credit invoice when ``credit`` is set)."""

    kind: ClassVar[str] = "supplier_invoice"

    supplier_name: str
    invoice_number: str | None
    invoice_date: date
    due_date: date | None
    currency: str
    total: Decimal
    vat: Decimal
    rows: tuple[InvoiceRow, ...]
    your_reference: str
    external_reference: str
    comments: str
    credit: bool = False
    supplier_ref: str | None = None
    tolerance: Decimal = DEFAULT_INVOICE_TOLERANCE

    def __post_init__(self) -> None:
        if any(row.debit < ZERO for row in self.rows):
            raise ValidationError(
                "Supplier invoice rows must be non-negative",
                rule="NEGATIVE_ROW_AMOUNT",
            )
        row_total = self.row_total
        if abs(row_total - self.total) > self.tolerance:
            raise UnbalancedPayloadError(
                debits=str(row_total),
                credits=str(self.total),
                tolerance=str(self.tolerance),
                payload_kind=self.kind,
            )

    @property
    def row_total(self) -> Decimal:
        return sum((row.debit for row in self.rows), ZERO)

    @property
    def reference(self) -> str:
        return self.external_reference

    def with_supplier(self, supplier_ref: str) -> SupplierInvoicePayload:
        return replace(self, supplier_ref=supplier_ref)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "supplier_name": self.supplier_name,
            "supplier_ref": self.supplier_ref,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "currency": self.currency,
            "total": str(self.total),
            "vat": str(self.vat),
            "credit": self.credit,
            "rows": [row.to_dict() for row in self.rows],
            "your_reference": self.your_reference,
            "external_reference": self.external_reference,
            "comments": self.comments,
        }


@dataclass(frozen=True)
class VoucherRow:
    """One side of a double-entry row; exactly one of debit/credit is used."""

    account: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    cost_center: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "account": self.account,
            "debit": str(self.debit),
            "credit": str(self.credit),
        }
        if self.cost_center:
            row["cost_center"] = self.cost_center
        if self.description:
            row["description"] = self.description
        return row


@dataclass(frozen=True)
class VoucherPayload:
    """Balanced manual voucher."""

    kind: ClassVar[str] = "voucher"

    series: str
    transaction_date: date
    description: str
    rows: tuple[VoucherRow, ...]
    reference: str
    comments: str
    tolerance: Decimal = DEFAULT_VOUCHER_TOLERANCE

    def __post_init__(self) -> None:
        if not self.rows:
            raise ValidationError("Voucher has no rows", rule="EMPTY_VOUCHER")
        if any(row.debit < ZERO or row.credit < ZERO for row in self.rows):
            raise ValidationError(
                "Voucher rows must be non-negative",
                rule="NEGATIVE_ROW_AMOUNT",
            )
        if abs(self.total_debit - self.total_credit) > self.tolerance:
            raise UnbalancedPayloadError(
                debits=str(self.total_debit),
                credits=str(self.total_credit),
                tolerance=str(self.tolerance),
                payload_kind=self.kind,
            )

    @property
    def total_debit(self) -> Decimal:
        return sum((row.debit for row in self.rows), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((row.credit for row in self.rows), ZERO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "series": self.series,
            "transaction_date": self.transaction_date.isoformat(),
            "description": self.description,
            "rows": [row.to_dict() for row in self.rows],
            "reference": self.reference,
            "comments": self.comments,
        }


LedgerPayload = Union[SupplierInvoicePayload, VoucherPayload]
