"""
Tests for LedgerDocumentBuilder.

Covers supplier-invoice rows, account and cost-center resolution against the
cached chart, receipt and credit-note vouchers, and the voucher balance
invariant as a property over arbitrary amounts.
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from posting_kernel.domain.builder import BuilderSettings, LedgerDocumentBuilder
from posting_kernel.domain.classification import (
    AccountingJob,
    Classification,
    DocType,
    LineItem,
)
from posting_kernel.domain.payloads import VoucherPayload, VoucherRow
from posting_kernel.domain.reference_data import ReferenceSnapshot
from posting_kernel.exceptions import (
    InvalidDocumentDateError,
    UnbalancedPayloadError,
    ValidationError,
)

SNAPSHOT = ReferenceSnapshot(
    company_id="acme",
    accounts=frozenset({"1930", "2440", "2640", "5410", "6550"}),
    cost_centers=frozenset({"IT", "SALES"}),
    voucher_series=("A", "B"),
)


def _line(net, account="5410", cost_center=None, vat="0", description="line"):
    return LineItem(
        description=description,
        net_amount=Decimal(net),
        vat_amount=Decimal(vat),
        suggested_account=account,
        suggested_cost_center=cost_center,
    )


def _job(doc_type=DocType.INVOICE, total="1000", vat="200", lines=None, **overrides):
    values = {
        "doc_type": doc_type,
        "supplier": "Acme Supplies AB",
        "invoice_number": "F-1001",
        "invoice_date": date(2024, 3, 1),
        "due_date": None,
        "currency": "SEK",
        "total_amount": Decimal(total),
        "vat_amount": Decimal(vat),
        "line_items": tuple(lines) if lines is not None else (_line("800", cost_center="IT"),),
    }
    values.update(overrides)
    return AccountingJob(
        id="job-1",
        company_id="acme",
        classification=Classification(**values),
        file_name="invoice.pdf",
    )


@pytest.fixture
def builder():
    return LedgerDocumentBuilder()


class TestSupplierInvoice:

    def test_rows_are_lines_plus_vat(self, builder):
        payload = builder.build_supplier_invoice(_job(), SNAPSHOT)

        assert [(r.account, r.debit, r.cost_center) for r in payload.rows] == [
            ("5410", Decimal("800.00"), "IT"),
            ("2640", Decimal("200.00"), None),
        ]
        assert payload.total == Decimal("1000.00")
        assert payload.vat == Decimal("200.00")
        assert payload.credit is False

    def test_back_references(self, builder):
        payload = builder.build_supplier_invoice(_job(), SNAPSHOT)

        assert payload.your_reference == "POSTING:job-1"
        assert payload.external_reference == "job-1"
        assert "Source: invoice.pdf" in payload.comments

    def test_custom_reference_prefix(self):
        builder = LedgerDocumentBuilder(BuilderSettings(reference_prefix="ACME"))
        payload = builder.build_supplier_invoice(_job(), SNAPSHOT)
        assert payload.your_reference == "ACME:job-1"

    def test_no_vat_row_when_vat_is_zero(self, builder):
        payload = builder.build_supplier_invoice(
            _job(total="800", vat="0", lines=[_line("800")]), SNAPSHOT,
        )
        assert [r.account for r in payload.rows] == ["5410"]

    def test_no_lines_uses_default_expense(self, builder):
        payload = builder.build_supplier_invoice(_job(lines=[]), SNAPSHOT)

        assert payload.rows[0].account == "6550"
        assert payload.rows[0].debit == Decimal("800.00")
        assert payload.row_total == Decimal("1000.00")

    def test_unbalanced_rows_raise(self, builder):
        with pytest.raises(UnbalancedPayloadError) as exc_info:
            builder.build_supplier_invoice(_job(lines=[_line("500")]), SNAPSHOT)
        assert exc_info.value.payload_kind == "supplier_invoice"

    def test_rounding_within_invoice_tolerance(self, builder):
        payload = builder.build_supplier_invoice(
            _job(total="1000.60", lines=[_line("800")]), SNAPSHOT,
        )
        assert payload.total == Decimal("1000.60")

    def test_credit_note_amounts_unsigned_with_credit_flag(self, builder):
        job = _job(
            doc_type=DocType.CREDIT_NOTE, total="-1250", vat="-250",
            lines=[_line("-1000")],
        )
        payload = builder.build_supplier_invoice(job, SNAPSHOT)

        assert payload.credit is True
        assert payload.total == Decimal("1250.00")
        assert all(r.debit > 0 for r in payload.rows)

    def test_missing_date_raises(self, builder):
        with pytest.raises(InvalidDocumentDateError):
            builder.build_supplier_invoice(_job(invoice_date=None), SNAPSHOT)


class TestAccountResolution:

    def test_known_suggestion_kept(self, builder):
        assert builder.resolve_account("5410", SNAPSHOT) == "5410"

    def test_unknown_suggestion_falls_back_to_default(self, builder):
        assert builder.resolve_account("4999", SNAPSHOT) == "6550"

    def test_non_numeric_suggestion_uses_default(self, builder):
        assert builder.resolve_account("office", SNAPSHOT) == "6550"

    def test_empty_chart_keeps_suggestion(self, builder):
        assert builder.resolve_account("4999", ReferenceSnapshot.empty("acme")) == "4999"

    def test_chart_without_default_keeps_suggestion(self, builder):
        snapshot = ReferenceSnapshot(company_id="acme", accounts=frozenset({"1930"}))
        assert builder.resolve_account("4999", snapshot) == "4999"

    def test_unknown_cost_center_dropped(self, builder):
        payload = builder.build_supplier_invoice(
            _job(lines=[_line("800", cost_center="MARKETING")]), SNAPSHOT,
        )
        assert payload.rows[0].cost_center is None

    def test_cost_center_kept_when_cache_empty(self, builder):
        snapshot = ReferenceSnapshot(company_id="acme", accounts=SNAPSHOT.accounts)
        payload = builder.build_supplier_invoice(
            _job(lines=[_line("800", cost_center="MARKETING")]), snapshot,
        )
        assert payload.rows[0].cost_center == "MARKETING"


class TestReceiptVoucher:

    def test_debits_expenses_and_vat_credits_bank(self, builder):
        job = _job(doc_type=DocType.RECEIPT, invoice_number=None)
        voucher = builder.build_voucher(job, SNAPSHOT)

        assert [(r.account, r.debit, r.credit) for r in voucher.rows] == [
            ("5410", Decimal("800.00"), Decimal("0")),
            ("2640", Decimal("200.00"), Decimal("0")),
            ("1930", Decimal("0"), Decimal("1000.00")),
        ]
        assert voucher.description == "Acme Supplies AB - invoice.pdf"
        assert voucher.reference == "job-1"

    def test_bank_fallback_account(self, builder):
        snapshot = ReferenceSnapshot(
            company_id="acme", accounts=frozenset({"1910", "2640", "5410"}),
        )
        voucher = builder.build_receipt_voucher(_job(doc_type=DocType.RECEIPT), snapshot)
        assert voucher.rows[-1].account == "1910"

    def test_bank_default_when_chart_unknown(self, builder):
        voucher = builder.build_receipt_voucher(
            _job(doc_type=DocType.RECEIPT), ReferenceSnapshot.empty("acme"),
        )
        assert voucher.rows[-1].account == "1930"

    def test_invoice_as_voucher_credits_supplier_liability(self, builder):
        voucher = builder.build_voucher(_job(), SNAPSHOT)
        assert voucher.rows[-1].account == "2440"
        assert voucher.rows[-1].credit == Decimal("1000.00")

    def test_unbalanced_receipt_raises(self, builder):
        with pytest.raises(UnbalancedPayloadError):
            builder.build_receipt_voucher(
                _job(doc_type=DocType.RECEIPT, lines=[_line("700")]), SNAPSHOT,
            )


class TestVoucherSeries:

    def test_prefers_a(self, builder):
        voucher = builder.build_voucher(_job(doc_type=DocType.RECEIPT), SNAPSHOT)
        assert voucher.series == "A"

    def test_first_cached_series_when_a_missing(self, builder):
        snapshot = ReferenceSnapshot(company_id="acme", voucher_series=("K", "B"))
        voucher = builder.build_voucher(_job(doc_type=DocType.RECEIPT), snapshot)
        assert voucher.series == "K"

    def test_a_when_cache_empty(self, builder):
        voucher = builder.build_voucher(
            _job(doc_type=DocType.RECEIPT), ReferenceSnapshot.empty("acme"),
        )
        assert voucher.series == "A"


class TestCreditNoteVoucher:

    def _credit_note(self, lines):
        return _job(
            doc_type=DocType.CREDIT_NOTE, total="-1250", vat="-250",
            invoice_number="CN-7", lines=lines,
        )

    def test_reversal_rows(self, builder):
        voucher = builder.build_credit_note_voucher(
            self._credit_note([_line("-1000", cost_center="IT")]), SNAPSHOT,
        )

        assert [(r.account, r.debit, r.credit, r.cost_center) for r in voucher.rows] == [
            ("2440", Decimal("1250.00"), Decimal("0"), None),
            ("5410", Decimal("0"), Decimal("1000.00"), "IT"),
            ("2640", Decimal("0"), Decimal("250.00"), None),
        ]
        assert voucher.description == "Credit note CN-7 - Acme Supplies AB"

    def test_zero_lines_skipped(self, builder):
        voucher = builder.build_credit_note_voucher(
            self._credit_note([_line("-1000"), _line("0", account="6550")]), SNAPSHOT,
        )
        assert [r.account for r in voucher.rows] == ["2440", "5410", "2640"]

    def test_mismatched_lines_collapse_to_header_net(self, builder):
        voucher = builder.build_credit_note_voucher(
            self._credit_note([_line("-600", cost_center="IT"), _line("-200", account="6550")]),
            SNAPSHOT,
        )

        expense = [r for r in voucher.rows if r.account not in ("2440", "2640")]
        assert len(expense) == 1
        assert expense[0].account == "5410"
        assert expense[0].credit == Decimal("1000.00")
        assert expense[0].cost_center == "IT"
        assert voucher.total_debit == voucher.total_credit

    def test_multiple_matching_lines_kept(self, builder):
        voucher = builder.build_credit_note_voucher(
            self._credit_note([_line("-600"), _line("-400", account="6550")]), SNAPSHOT,
        )
        assert [r.credit for r in voucher.rows[1:3]] == [Decimal("600.00"), Decimal("400.00")]

    def test_all_vat_credit_note_reverses_liability_against_vat(self, builder):
        job = _job(
            doc_type=DocType.CREDIT_NOTE, total="-100", vat="-100",
            invoice_number="CN-8", lines=[_line("-50", cost_center="IT")],
        )

        voucher = builder.build_credit_note_voucher(job, SNAPSHOT)

        assert [(r.account, r.debit, r.credit) for r in voucher.rows] == [
            ("2440", Decimal("100.00"), Decimal("0")),
            ("2640", Decimal("0"), Decimal("100.00")),
        ]


class TestVoucherPayloadInvariants:

    def test_empty_voucher_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            VoucherPayload(
                series="A", transaction_date=date(2024, 3, 1), description="x",
                rows=(), reference="job-1", comments="",
            )
        assert exc_info.value.rule == "EMPTY_VOUCHER"

    def test_negative_row_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            VoucherPayload(
                series="A", transaction_date=date(2024, 3, 1), description="x",
                rows=(
                    VoucherRow("1930", debit=Decimal("-5")),
                    VoucherRow("2440", credit=Decimal("-5")),
                ),
                reference="job-1", comments="",
            )
        assert exc_info.value.rule == "NEGATIVE_ROW_AMOUNT"

    def test_imbalance_beyond_tolerance_rejected(self):
        with pytest.raises(UnbalancedPayloadError):
            VoucherPayload(
                series="A", transaction_date=date(2024, 3, 1), description="x",
                rows=(
                    VoucherRow("1930", debit=Decimal("100.00")),
                    VoucherRow("2440", credit=Decimal("99.98")),
                ),
                reference="job-1", comments="",
            )


# ---------------------------------------------------------------------------
# Balance invariant (property-based)
# ---------------------------------------------------------------------------

cents = st.integers(min_value=1, max_value=50_000_000).map(lambda c: Decimal(c) / 100)
cents_or_zero = st.integers(min_value=0, max_value=50_000_000).map(lambda c: Decimal(c) / 100)


class TestVoucherBalanceProperty:

    @settings(max_examples=200, deadline=None)
    @given(
        nets=st.lists(cents, min_size=1, max_size=6),
        vat=cents,
        total=cents,
    )
    def test_receipt_voucher_balanced_or_refused(self, nets, vat, total):
        job = _job(
            doc_type=DocType.RECEIPT, total=str(total), vat=str(vat),
            lines=[_line(str(n)) for n in nets],
        )
        try:
            voucher = LedgerDocumentBuilder().build_receipt_voucher(job, SNAPSHOT)
        except UnbalancedPayloadError:
            return
        assert abs(voucher.total_debit - voucher.total_credit) <= Decimal("0.01")

    @settings(max_examples=200, deadline=None)
    @given(nets=st.lists(cents, min_size=1, max_size=6), vat=cents)
    def test_receipt_with_consistent_total_always_builds(self, nets, vat):
        total = sum(nets, Decimal("0")) + vat
        job = _job(
            doc_type=DocType.RECEIPT, total=str(total), vat=str(vat),
            lines=[_line(str(n)) for n in nets],
        )
        voucher = LedgerDocumentBuilder().build_receipt_voucher(job, SNAPSHOT)
        assert voucher.total_debit == voucher.total_credit == total

    @settings(max_examples=200, deadline=None)
    @given(
        nets=st.lists(cents, min_size=0, max_size=6),
        vat=cents,
        extra=cents_or_zero,
    )
    def test_credit_note_reversal_always_balances(self, nets, vat, extra):
        total = vat + extra
        job = _job(
            doc_type=DocType.CREDIT_NOTE, total=str(-total), vat=str(-vat),
            lines=[_line(str(-n)) for n in nets],
        )
        voucher = LedgerDocumentBuilder().build_credit_note_voucher(job, SNAPSHOT)
        assert abs(voucher.total_debit - voucher.total_credit) <= Decimal("0.01")
        assert voucher.rows[0].debit == total
