"""
Posting strategies -- which ledger entity a document becomes.

Responsibility:
    Makes the "fall back to a voucher" business rule an explicit, swappable
    choice instead of nested conditionals in the pipeline:

    InvoiceWithVoucherFallback
        Invoices and credit notes become supplier invoices.  A credit note
        whose invoice rows do not balance, or whose credit invoice the
        ledger rejects, becomes a reversal voucher when fallback is enabled.
    VoucherOnly
        Every document becomes a voucher (receipts, OTHER documents, and
        companies configured for manual vouchers).

Architecture position:
    Kernel > Domain -- pure.  Strategies call the builder; the pipeline
    calls strategies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

from posting_kernel.domain.builder import LedgerDocumentBuilder
from posting_kernel.domain.classification import AccountingJob, DocType
from posting_kernel.domain.payloads import LedgerPayload, VoucherPayload
from posting_kernel.domain.reference_data import ReferenceSnapshot
from posting_kernel.exceptions import UnbalancedPayloadError

INVOICE_WITH_VOUCHER_FALLBACK = "invoice_with_voucher_fallback"
VOUCHER_ONLY = "voucher_only"


@dataclass(frozen=True)
class PostingPlan:
    """The payload to send, and why it differs from the default if it does."""

    payload: LedgerPayload
    strategy: str
    fallback_reason: str | None = None

    @property
    def fell_back(self) -> bool:
        return self.fallback_reason is not None


class PostingStrategy(ABC):
    name: ClassVar[str]

    @abstractmethod
    def plan(
        self,
        job: AccountingJob,
        snapshot: ReferenceSnapshot,
        builder: LedgerDocumentBuilder,
    ) -> PostingPlan:
        """Build the payload for this attempt."""

    def fallback_for_rejection(
        self,
        job: AccountingJob,
        snapshot: ReferenceSnapshot,
        builder: LedgerDocumentBuilder,
    ) -> VoucherPayload | None:
        """Voucher to send when the ledger rejects the planned payload, if any."""
        return None


class InvoiceWithVoucherFallback(PostingStrategy):
    name = INVOICE_WITH_VOUCHER_FALLBACK

    def __init__(self, fallback_enabled: bool = True):
        self.fallback_enabled = fallback_enabled

    def _can_fall_back(self, job: AccountingJob) -> bool:
        return self.fallback_enabled and job.classification.is_credit_note

    def plan(self, job, snapshot, builder):
        try:
            payload = builder.build_supplier_invoice(job, snapshot)
        except UnbalancedPayloadError as exc:
            if not self._can_fall_back(job):
                raise
            voucher = builder.build_credit_note_voucher(job, snapshot)
            return PostingPlan(payload=voucher, strategy=self.name, fallback_reason=str(exc))
        return PostingPlan(payload=payload, strategy=self.name)

    def fallback_for_rejection(self, job, snapshot, builder):
        if not self._can_fall_back(job):
            return None
        return builder.build_credit_note_voucher(job, snapshot)


class VoucherOnly(PostingStrategy):
    name = VOUCHER_ONLY

    def plan(self, job, snapshot, builder):
        return PostingPlan(payload=builder.build_voucher(job, snapshot), strategy=self.name)


def select_strategy(
    doc_type: DocType,
    mode: str = INVOICE_WITH_VOUCHER_FALLBACK,
    fallback_enabled: bool = True,
) -> PostingStrategy:
    """Pick the strategy for a document under the company's posting mode."""
    if mode not in (INVOICE_WITH_VOUCHER_FALLBACK, VOUCHER_ONLY):
        raise ValueError(f"Unknown posting strategy: {mode}")
    if mode == VOUCHER_ONLY or doc_type in (DocType.RECEIPT, DocType.OTHER):
        return VoucherOnly()
    return InvoiceWithVoucherFallback(fallback_enabled=fallback_enabled)
