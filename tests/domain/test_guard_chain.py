"""
Tests for the guard chain.

Each guard is exercised on its own failure, and the chain is checked for
ordering, short-circuiting and the guard name carried on the error.
"""

from datetime import date
from decimal import Decimal

import pytest

from posting_kernel.domain.classification import AccountingJob, DocType, LineItem
from posting_kernel.domain.clock import DeterministicClock
from posting_kernel.domain.guards import GuardChain, GuardContext, PeriodOracle
from posting_kernel.domain.policy import (
    AccountingPolicy,
    ApprovalRule,
    ListMode,
    ListPolicy,
    RuleAction,
)
from posting_kernel.domain.reference_data import FiscalYear, ReferenceSnapshot
from posting_kernel.domain.validation import ClassificationValidator
from posting_kernel.exceptions import (
    ClosedPeriodError,
    CurrencyNotNormalizedError,
    InvalidDocumentDateError,
    LineValidationError,
    MissingInvoiceNumberError,
    OutsideFiscalYearError,
    PolicyBlockedError,
)

from tests.conftest import TEST_NOW

SNAPSHOT = ReferenceSnapshot(
    company_id="acme",
    accounts=frozenset({"2440", "2640", "5410", "6550"}),
    fiscal_years=(FiscalYear(date(2024, 1, 1), date(2024, 12, 31), "1"),),
)


class StubPeriodOracle(PeriodOracle):
    def __init__(self, closed: set[date] | None = None):
        self.closed = closed or set()
        self.asked: list[date] = []

    def assert_writable(self, company_id, day):
        self.asked.append(day)
        if day in self.closed:
            raise ClosedPeriodError(f"{day.year}-{day.month:02d}", day.isoformat())


@pytest.fixture
def oracle():
    return StubPeriodOracle()


@pytest.fixture
def chain(oracle):
    return GuardChain.default(oracle, ClassificationValidator(DeterministicClock(TEST_NOW)))


def _ctx(job, snapshot=SNAPSHOT, base_currency="SEK", policy=None):
    return GuardContext(
        company_id="acme", job=job, snapshot=snapshot,
        base_currency=base_currency, policy=policy,
    )


class TestGuardOrder:

    def test_default_order(self, chain):
        assert chain.names == (
            "period_writable",
            "fiscal_year",
            "currency_normalized",
            "required_fields",
            "line_validation",
            "accounting_policy",
        )

    def test_passing_job_runs_every_guard(self, chain, make_job):
        report = chain.run(_ctx(make_job()))
        assert report.checked == chain.names

    def test_first_failure_stops_the_chain(self, chain, make_job):
        # Outside the fiscal year AND wrong currency: only the first is reported
        job = make_job(invoice_date=date(2023, 6, 1), currency="EUR")
        with pytest.raises(OutsideFiscalYearError) as exc_info:
            chain.run(_ctx(job))
        assert exc_info.value.guard == "fiscal_year"

    def test_failure_is_logged(self, chain, make_job, captured_logs):
        with pytest.raises(CurrencyNotNormalizedError):
            chain.run(_ctx(make_job(currency="EUR")))
        failed = [r for r in captured_logs() if r["message"] == "guard_failed"]
        assert failed[0]["guard"] == "currency_normalized"
        assert failed[0]["error_code"] == "CURRENCY_NOT_NORMALIZED"


class TestPeriodGuards:

    def test_closed_period_blocks(self, make_job):
        oracle = StubPeriodOracle(closed={date(2024, 3, 1)})
        chain = GuardChain.default(oracle, ClassificationValidator(DeterministicClock(TEST_NOW)))
        with pytest.raises(ClosedPeriodError) as exc_info:
            chain.run(_ctx(make_job()))
        assert exc_info.value.guard == "period_writable"
        assert exc_info.value.category == "period"

    def test_missing_date_is_a_period_error(self, chain, make_job):
        with pytest.raises(InvalidDocumentDateError) as exc_info:
            chain.run(_ctx(make_job(invoice_date=None)))
        assert exc_info.value.guard == "period_writable"

    def test_fiscal_year_skipped_without_calendar(self, chain, make_job):
        snapshot = ReferenceSnapshot(company_id="acme")
        report = chain.run(_ctx(make_job(invoice_date=date(2023, 12, 20)), snapshot))
        assert "fiscal_year" in report.checked


class TestCurrencyGuard:

    def test_foreign_currency_blocked(self, chain, make_job):
        with pytest.raises(CurrencyNotNormalizedError) as exc_info:
            chain.run(_ctx(make_job(currency="EUR")))
        assert exc_info.value.document_currency == "EUR"
        assert exc_info.value.base_currency == "SEK"

    def test_case_insensitive(self, chain, make_job):
        report = chain.run(_ctx(make_job(currency="sek")))
        assert "currency_normalized" in report.checked

    def test_company_base_currency_used(self, chain, make_job):
        report = chain.run(_ctx(make_job(currency="EUR"), base_currency="EUR"))
        assert report.checked == chain.names


class TestRequiredFields:

    @pytest.mark.parametrize("number", [None, "", "   "])
    def test_invoice_needs_number(self, chain, make_job, number):
        with pytest.raises(MissingInvoiceNumberError) as exc_info:
            chain.run(_ctx(make_job(invoice_number=number)))
        assert exc_info.value.guard == "required_fields"

    def test_receipt_needs_no_number(self, chain, make_job):
        report = chain.run(_ctx(make_job(doc_type=DocType.RECEIPT, invoice_number=None)))
        assert report.checked == chain.names


class TestLineValidationGuard:

    def test_blocking_findings_raise(self, chain, make_job):
        job = make_job(line_items=(
            LineItem("Chairs", Decimal("800"), Decimal("200"), suggested_account="54"),
        ))
        with pytest.raises(LineValidationError) as exc_info:
            chain.run(_ctx(job))
        assert exc_info.value.guard == "line_validation"
        assert exc_info.value.findings[0]["code"] == "INVALID_LINE_ACCOUNT"

    def test_warnings_travel_with_report(self, chain, make_job):
        report = chain.run(_ctx(make_job(line_items=())))
        assert "NO_LINE_ITEMS" in [w["code"] for w in report.warnings]


class TestPolicyGuard:

    def test_reject_rule_blocks(self, chain, make_job):
        policy = AccountingPolicy(approval_rules=(
            ApprovalRule(RuleAction.REJECT, supplier_pattern="^acme", reason="blocked"),
        ))
        with pytest.raises(PolicyBlockedError) as exc_info:
            chain.run(_ctx(make_job(), policy=policy))
        assert exc_info.value.guard == "accounting_policy"
        assert exc_info.value.category == "policy"

    def test_corrected_classification_handed_on(self, chain, make_job):
        policy = AccountingPolicy(
            accounts=ListPolicy(ListMode.DENY_LIST, ("5410",), fallback_account="6550"),
        )
        job = make_job()
        report = chain.run(_ctx(job, policy=policy))

        assert report.job.classification.line_items[0].suggested_account == "6550"
        assert job.classification.line_items[0].suggested_account == "5410"
        assert "ACCOUNT_AUTO_CORRECTED" in [w["code"] for w in report.warnings]

    def test_requires_approval_reported_in_details(self, chain, make_job):
        policy = AccountingPolicy(approval_rules=(
            ApprovalRule(RuleAction.REQUIRE_APPROVAL, min_amount=Decimal("500")),
        ))
        report = chain.run(_ctx(make_job(), policy=policy))
        assert report.details["requires_approval"] is True
        assert report.details["policy_summary"] == "Policy: requires approval"

    def test_upstream_policy_notes_become_warnings(self, chain, make_job):
        report = chain.run(_ctx(make_job(policy_violations=("check VAT rate",))))
        notes = [w for w in report.warnings if w["code"] == "UPSTREAM_POLICY_NOTE"]
        assert notes == [{
            "code": "UPSTREAM_POLICY_NOTE",
            "message": "check VAT rate",
            "severity": "warning",
        }]


def test_guard_chain_does_not_mutate_job(chain, make_job):
    job = make_job()
    before = AccountingJob(**{f: getattr(job, f) for f in job.__dataclass_fields__})
    chain.run(_ctx(job, policy=AccountingPolicy()))
    assert job == before
