"""
Pure domain layer.

This module contains immutable inputs, payloads and the pure posting logic
(validation, policy, guards, builder, strategies) with NO dependencies on:
- ORM (SQLAlchemy sessions)
- Database
- Wall-clock time (time comes through an injected Clock)
- Network I/O
"""

from posting_kernel.domain.backoff import RetryPolicy
from posting_kernel.domain.builder import AccountSettings, BuilderSettings, LedgerDocumentBuilder
from posting_kernel.domain.classification import (
    AccountingJob,
    Classification,
    DocType,
    JobStatus,
    LineItem,
)
from posting_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from posting_kernel.domain.guards import GuardChain, GuardContext, GuardReport, PeriodOracle
from posting_kernel.domain.payloads import (
    InvoiceRow,
    LedgerPayload,
    SupplierInvoicePayload,
    VoucherPayload,
    VoucherRow,
)
from posting_kernel.domain.policy import AccountingPolicy, AccountingPolicyEvaluator
from posting_kernel.domain.reference_data import FiscalYear, ReferenceSnapshot
from posting_kernel.domain.results import ClaimOutcome, ClaimResult, PostingResult, ResultCategory
from posting_kernel.domain.strategies import PostingPlan, PostingStrategy, select_strategy
from posting_kernel.domain.validation import ClassificationValidator, Severity

__all__ = [
    # Inputs
    "AccountingJob",
    "Classification",
    "DocType",
    "JobStatus",
    "LineItem",
    # Time
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "RetryPolicy",
    # Reference data
    "FiscalYear",
    "ReferenceSnapshot",
    # Checks
    "ClassificationValidator",
    "Severity",
    "AccountingPolicy",
    "AccountingPolicyEvaluator",
    "GuardChain",
    "GuardContext",
    "GuardReport",
    "PeriodOracle",
    # Payloads
    "AccountSettings",
    "BuilderSettings",
    "LedgerDocumentBuilder",
    "InvoiceRow",
    "LedgerPayload",
    "SupplierInvoicePayload",
    "VoucherPayload",
    "VoucherRow",
    "PostingPlan",
    "PostingStrategy",
    "select_strategy",
    # Results
    "ClaimOutcome",
    "ClaimResult",
    "PostingResult",
    "ResultCategory",
]
