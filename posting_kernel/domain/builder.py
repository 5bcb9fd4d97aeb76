"""
LedgerDocumentBuilder -- Classification to balanced ledger payload.

Responsibility:
    Deterministic, side-effect-free mapping from a guard-passed accounting
    job plus its company's ReferenceSnapshot to a ``SupplierInvoicePayload``
    or ``VoucherPayload``.  Re-executed on every attempt; payloads are never
    cached.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Strategies in
    ``domain.strategies`` decide which build method to call.

Invariants enforced:
    - Row accounts resolve against the cached chart: suggested account if
      present, else the default expense account if present, else the
      suggestion unchanged.
    - Cost centers absent from a non-empty cache are dropped.
    - Amounts are sent unsigned (credit notes carry the sign in the
      ``credit`` flag or in the voucher side) and rounded to two decimals.
    - Every payload carries ``{reference_prefix}:{job_id}`` and the job id.

Failure modes:
    - UnbalancedPayloadError from the payload's own balance check.
    - InvalidDocumentDateError if the document has no date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from posting_kernel.db.types import ZERO, round_money
from posting_kernel.domain.classification import AccountingJob, DocType, LineItem
from posting_kernel.domain.payloads import (
    DEFAULT_INVOICE_TOLERANCE,
    DEFAULT_VOUCHER_TOLERANCE,
    InvoiceRow,
    SupplierInvoicePayload,
    VoucherPayload,
    VoucherRow,
)
from posting_kernel.domain.reference_data import DEFAULT_VOUCHER_SERIES, ReferenceSnapshot
from posting_kernel.exceptions import InvalidDocumentDateError


@dataclass(frozen=True)
class AccountSettings:
    """Fixed accounts used when a document line does not name one."""

    default_expense: str = "6550"
    input_vat: str = "2640"
    supplier_liability: str = "2440"
    bank: str = "1930"
    bank_fallback: str = "1910"
    voucher_series: str = DEFAULT_VOUCHER_SERIES


@dataclass(frozen=True)
class BuilderSettings:
    accounts: AccountSettings = field(default_factory=AccountSettings)
    voucher_tolerance: Decimal = DEFAULT_VOUCHER_TOLERANCE
    invoice_tolerance: Decimal = DEFAULT_INVOICE_TOLERANCE
    reference_prefix: str = "POSTING"


class LedgerDocumentBuilder:
    """Builds ledger payloads from accounting jobs."""

    def __init__(self, settings: BuilderSettings | None = None):
        self._settings = settings or BuilderSettings()

    @property
    def settings(self) -> BuilderSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Account resolution
    # ------------------------------------------------------------------

    def resolve_account(self, suggested: str | None, snapshot: ReferenceSnapshot) -> str:
        default = self._settings.accounts.default_expense
        candidate = suggested if suggested and suggested.isdigit() else default
        if snapshot.has_account(candidate):
            return candidate
        if snapshot.has_account(default):
            return default
        return candidate

    def resolve_bank_account(self, snapshot: ReferenceSnapshot) -> str:
        accounts = self._settings.accounts
        if snapshot.has_account(accounts.bank):
            return accounts.bank
        if snapshot.has_account(accounts.bank_fallback):
            return accounts.bank_fallback
        return accounts.bank

    # ------------------------------------------------------------------
    # Back-references
    # ------------------------------------------------------------------

    def your_reference(self, job: AccountingJob) -> str:
        return f"{self._settings.reference_prefix}:{job.id}"

    def comments(self, job: AccountingJob) -> str:
        parts = [self.your_reference(job)]
        if job.file_name:
            parts.append(f"Source: {job.file_name}")
        return " | ".join(parts)

    # ------------------------------------------------------------------
    # Supplier invoice
    # ------------------------------------------------------------------

    def build_supplier_invoice(
        self, job: AccountingJob, snapshot: ReferenceSnapshot
    ) -> SupplierInvoicePayload:
        c = job.classification
        invoice_date = self._document_date(job)

        rows = [
            InvoiceRow(
                account=self.resolve_account(item.suggested_account, snapshot),
                debit=round_money(abs(item.net_amount)),
                cost_center=snapshot.normalize_cost_center(item.suggested_cost_center),
                description=item.description,
            )
            for item in self._lines_or_default(job)
        ]
        vat = round_money(abs(c.vat_amount))
        if vat != ZERO:
            rows.append(InvoiceRow(account=self._settings.accounts.input_vat, debit=vat))

        return SupplierInvoicePayload(
            supplier_name=c.supplier,
            invoice_number=c.invoice_number,
            invoice_date=invoice_date,
            due_date=c.due_date,
            currency=c.currency,
            total=round_money(abs(c.total_amount)),
            vat=vat,
            rows=tuple(rows),
            your_reference=self.your_reference(job),
            external_reference=job.id,
            comments=self.comments(job),
            credit=c.is_credit_note,
            tolerance=self._settings.invoice_tolerance,
        )

    # ------------------------------------------------------------------
    # Vouchers
    # ------------------------------------------------------------------

    def build_voucher(self, job: AccountingJob, snapshot: ReferenceSnapshot) -> VoucherPayload:
        """Voucher form appropriate to the document type."""
        doc_type = job.classification.doc_type
        if doc_type == DocType.CREDIT_NOTE:
            return self.build_credit_note_voucher(job, snapshot)
        if doc_type == DocType.INVOICE:
            return self.build_expense_voucher(
                job, snapshot, self._settings.accounts.supplier_liability
            )
        return self.build_receipt_voucher(job, snapshot)

    def build_receipt_voucher(
        self, job: AccountingJob, snapshot: ReferenceSnapshot
    ) -> VoucherPayload:
        """Paid receipt: debit expenses and input VAT, credit the bank."""
        return self.build_expense_voucher(job, snapshot, self.resolve_bank_account(snapshot))

    def build_expense_voucher(
        self,
        job: AccountingJob,
        snapshot: ReferenceSnapshot,
        credit_account: str,
    ) -> VoucherPayload:
        c = job.classification
        rows = [
            VoucherRow(
                account=self.resolve_account(item.suggested_account, snapshot),
                debit=round_money(abs(item.net_amount)),
                cost_center=snapshot.normalize_cost_center(item.suggested_cost_center),
                description=item.description,
            )
            for item in self._lines_or_default(job)
        ]
        vat = round_money(abs(c.vat_amount))
        if vat > ZERO:
            rows.append(VoucherRow(account=self._settings.accounts.input_vat, debit=vat))
        rows.append(
            VoucherRow(account=credit_account, credit=round_money(abs(c.total_amount)))
        )

        return VoucherPayload(
            series=snapshot.pick_voucher_series(self._settings.accounts.voucher_series),
            transaction_date=self._document_date(job),
            description=self._describe(job),
            rows=tuple(rows),
            reference=job.id,
            comments=self.comments(job),
            tolerance=self._settings.voucher_tolerance,
        )

    def build_credit_note_voucher(
        self, job: AccountingJob, snapshot: ReferenceSnapshot
    ) -> VoucherPayload:
        """
        Reversal: debit supplier liability, credit expenses and input VAT.

        The document header governs.  When the classified line nets plus VAT
        do not add up to the total, the expense side collapses into one
        credit of ``|total| - |vat|`` on the first line's account so the
        reversal still balances.  A credit note that is all VAT has no
        expense side: the liability debit is matched by the VAT credit alone.
        """
        c = job.classification
        accounts = self._settings.accounts
        total = round_money(abs(c.total_amount))
        vat = round_money(abs(c.vat_amount))

        expense_rows = [
            VoucherRow(
                account=self.resolve_account(item.suggested_account, snapshot),
                credit=round_money(abs(item.net_amount)),
                cost_center=snapshot.normalize_cost_center(item.suggested_cost_center),
                description=item.description,
            )
            for item in self._lines_or_default(job)
            if round_money(abs(item.net_amount)) != ZERO
        ]
        net = total - vat
        credited = sum((row.credit for row in expense_rows), ZERO)
        if net <= ZERO:
            expense_rows = []
        elif abs(credited - net) > self._settings.voucher_tolerance:
            first = expense_rows[0] if expense_rows else None
            expense_rows = [
                VoucherRow(
                    account=first.account if first else accounts.default_expense,
                    credit=net,
                    cost_center=first.cost_center if first else None,
                    description=self._describe_credit_note(job),
                )
            ]

        rows = [VoucherRow(account=accounts.supplier_liability, debit=total), *expense_rows]
        if vat > ZERO:
            rows.append(VoucherRow(account=accounts.input_vat, credit=vat))

        return VoucherPayload(
            series=snapshot.pick_voucher_series(accounts.voucher_series),
            transaction_date=self._document_date(job),
            description=self._describe_credit_note(job),
            rows=tuple(rows),
            reference=job.id,
            comments=self.comments(job),
            tolerance=self._settings.voucher_tolerance,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lines_or_default(self, job: AccountingJob) -> tuple[LineItem, ...]:
        """Document lines, or one default-expense line when none were classified."""
        c = job.classification
        if c.line_items:
            return c.line_items
        return (
            LineItem(
                description=c.supplier,
                net_amount=abs(c.total_amount) - abs(c.vat_amount),
                suggested_account=self._settings.accounts.default_expense,
            ),
        )

    def _document_date(self, job: AccountingJob) -> date:
        if job.classification.invoice_date is None:
            raise InvalidDocumentDateError(None)
        return job.classification.invoice_date

    def _describe_credit_note(self, job: AccountingJob) -> str:
        c = job.classification
        number = f" {c.invoice_number}" if c.invoice_number else ""
        return f"Credit note{number} - {c.supplier}"

    def _describe(self, job: AccountingJob) -> str:
        supplier = job.classification.supplier
        return f"{supplier} - {job.file_name}" if job.file_name else supplier
