"""
Pytest fixtures for the posting pipeline test suite.

Provides:
- A file-backed SQLite database per test (shared by threads in the
  concurrency tests)
- Wired kernel services on a DeterministicClock
- FakeLedgerGateway, a scriptable in-memory ledger
- Classification / job factories
- Structured log capture
"""

import json
import logging
import threading
import time
from datetime import UTC, date, datetime
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from posting_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from posting_kernel.db.immutability import register_immutability_listeners
from posting_kernel.domain.backoff import RetryPolicy
from posting_kernel.domain.builder import LedgerDocumentBuilder
from posting_kernel.domain.classification import (
    AccountingJob,
    Classification,
    DocType,
    LineItem,
)
from posting_kernel.domain.clock import DeterministicClock
from posting_kernel.domain.guards import GuardChain
from posting_kernel.domain.policy import AccountingPolicyEvaluator
from posting_kernel.domain.reference_data import FiscalYear
from posting_kernel.domain.validation import ClassificationValidator
from posting_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from posting_kernel.services.audit_recorder import AuditRecorder
from posting_kernel.services.claim_ledger import SqlClaimLedger
from posting_kernel.services.gateway import LedgerGateway
from posting_kernel.services.job_repository import JobRepository
from posting_kernel.services.period_service import PeriodService
from posting_kernel.services.posting_pipeline import CompanyPostingSettings, PostingPipeline
from posting_kernel.services.posting_worker import PostingWorker
from posting_kernel.services.reference_data_cache import ReferenceDataCache

COMPANY_ID = "acme"
OTHER_COMPANY_ID = "globex"

TEST_NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=UTC)

CHART_OF_ACCOUNTS = ("1910", "1930", "2440", "2640", "5410", "6212", "6550")
COST_CENTERS = ("IT", "SALES")
FISCAL_2024 = FiscalYear(date(2024, 1, 1), date(2024, 12, 31), "1")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture posting_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, pipeline, make_job):
            pipeline.post_document("acme", make_job())
            logs = captured_logs()
            assert any(r["message"] == "posting_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("posting_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def session_factory(tmp_path):
    """Fresh file-backed SQLite database with all tables and listeners."""
    init_engine_from_url(f"sqlite:///{tmp_path / 'posting.db'}")
    create_tables()
    register_immutability_listeners()
    yield get_session_factory()
    reset_engine()


@pytest.fixture
def clock():
    return DeterministicClock(TEST_NOW)


# =============================================================================
# Fake ledger
# =============================================================================


class FakeLedgerGateway(LedgerGateway):
    """
    In-memory ledger that records every call.

    Scripting:
        fail_next(operation, exc)  raise ``exc`` on the next ``operation``
        delay[operation] = secs    sleep before answering
        gate = threading.Event()   create_* calls wait until the event is set
    """

    def __init__(self):
        self.calls: list[tuple[str, object]] = []
        self.delay: dict[str, float] = {}
        self.gate: threading.Event | None = None
        self._errors: dict[str, list[Exception]] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def fail_next(self, operation: str, exc: Exception) -> None:
        self._errors.setdefault(operation, []).append(exc)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def payloads(self, operation: str) -> list:
        return [payload for op, payload in self.calls if op == operation]

    def _call(self, operation: str, payload) -> int:
        with self._lock:
            self.calls.append((operation, payload))
            self._counter += 1
            number = self._counter
            pending = self._errors.get(operation)
            error = pending.pop(0) if pending else None
        if operation in self.delay:
            time.sleep(self.delay[operation])
        if self.gate is not None and operation.startswith("create_"):
            self.gate.wait(timeout=10)
        if error is not None:
            raise error
        return number

    def find_or_create_supplier(self, name):
        self._call("find_or_create_supplier", name)
        return "SUP-1"

    def create_supplier_invoice(self, payload):
        return f"INV-{self._call('create_supplier_invoice', payload)}"

    def create_voucher(self, payload):
        return f"{payload.series}-{self._call('create_voucher', payload)}"


@pytest.fixture
def fake_gateway():
    return FakeLedgerGateway()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def audit(session_factory, clock):
    return AuditRecorder(session_factory, clock)


@pytest.fixture
def jobs(session_factory, clock):
    return JobRepository(session_factory, clock)


@pytest.fixture
def periods(session_factory, clock):
    return PeriodService(session_factory, clock)


@pytest.fixture
def reference_cache(session_factory, clock):
    cache = ReferenceDataCache(session_factory, clock)
    cache.store(
        COMPANY_ID,
        accounts=CHART_OF_ACCOUNTS,
        cost_centers=COST_CENTERS,
        voucher_series=("A", "B"),
        fiscal_years=(FISCAL_2024,),
    )
    return cache


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay_seconds=10, max_delay_seconds=60)


@pytest.fixture
def claims(session_factory, clock, retry_policy):
    return SqlClaimLedger(session_factory, retry_policy, clock, lease_seconds=300)


@pytest.fixture
def builder():
    return LedgerDocumentBuilder()


@pytest.fixture
def guards(periods, clock):
    return GuardChain.default(
        periods, ClassificationValidator(clock), AccountingPolicyEvaluator(),
    )


@pytest.fixture
def company_settings():
    """Mutable per-company settings map read by the pipeline fixture."""
    return {COMPANY_ID: CompanyPostingSettings(base_currency="SEK")}


@pytest.fixture
def make_pipeline(claims, guards, builder, fake_gateway, reference_cache, audit, jobs,
                  company_settings):
    """Factory for pipelines that differ only in gateway or timeout."""

    def _make(gateway=None, timeout: float = 5.0) -> PostingPipeline:
        return PostingPipeline(
            claims=claims,
            guards=guards,
            builder=builder,
            gateway=gateway or fake_gateway,
            reference_cache=reference_cache,
            audit=audit,
            jobs=jobs,
            settings_for=lambda company_id: company_settings.get(
                company_id, CompanyPostingSettings(),
            ),
            gateway_timeout_seconds=timeout,
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def worker(pipeline, jobs, claims, audit, clock):
    return PostingWorker(pipeline, jobs, claims, audit, clock=clock)


# =============================================================================
# Document factories
# =============================================================================


@pytest.fixture
def make_classification():
    """
    Build a Classification; defaults to a balanced 1000 SEK invoice with one
    800 line and 200 VAT.
    """

    def _make(**overrides) -> Classification:
        values = {
            "doc_type": DocType.INVOICE,
            "supplier": "Acme Supplies AB",
            "invoice_number": "F-1001",
            "invoice_date": date(2024, 3, 1),
            "due_date": date(2024, 3, 31),
            "currency": "SEK",
            "total_amount": Decimal("1000.00"),
            "vat_amount": Decimal("200.00"),
            "line_items": (
                LineItem(
                    description="Office chairs",
                    net_amount=Decimal("800.00"),
                    vat_amount=Decimal("200.00"),
                    suggested_account="5410",
                    suggested_cost_center="IT",
                ),
            ),
        }
        values.update(overrides)
        return Classification(**values)

    return _make


@pytest.fixture
def make_credit_note(make_classification):
    """Balanced credit note for -1250 (1000 net, 250 VAT)."""

    def _make(**overrides) -> Classification:
        values = {
            "doc_type": DocType.CREDIT_NOTE,
            "invoice_number": "CN-7",
            "total_amount": Decimal("-1250.00"),
            "vat_amount": Decimal("-250.00"),
            "line_items": (
                LineItem(
                    description="Returned chairs",
                    net_amount=Decimal("-1000.00"),
                    vat_amount=Decimal("-250.00"),
                    suggested_account="5410",
                ),
            ),
        }
        values.update(overrides)
        return make_classification(**values)

    return _make


@pytest.fixture
def make_job(make_classification, clock):
    def _make(
        classification: Classification | None = None,
        job_id: str | None = None,
        company_id: str = COMPANY_ID,
        **classification_overrides,
    ) -> AccountingJob:
        return AccountingJob(
            id=job_id or f"job-{uuid4().hex[:12]}",
            company_id=company_id,
            classification=classification or make_classification(**classification_overrides),
            file_name="invoice.pdf",
            created_at=clock.now(),
        )

    return _make
