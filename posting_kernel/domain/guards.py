"""
Guard chain -- ordered preflight checks before any ledger call.

Responsibility:
    Runs short-circuiting guards over an accounting job, its company's
    ReferenceSnapshot and policy.  The first failing guard raises a typed,
    non-retriable error; the pipeline dead-letters the claim and never
    reaches the gateway.

    Default order:
        1. period_writable      date falls in an open accounting period
        2. fiscal_year          date inside a cached fiscal year (if any)
        3. currency_normalized  document already in the base currency
        4. required_fields      invoice number on invoices / credit notes
        5. line_validation      no critical/error validator findings
        6. accounting_policy    no reject and no error-severity violation

Architecture position:
    Kernel > Domain.  Pure except for the period oracle, which is an
    injected read-only interface (implemented by services.period_service).

Invariants enforced:
    - Guards run in order and stop at the first failure.
    - Each failure carries the failing guard's name in ``exc.guard``.
    - The policy guard may hand later stages a corrected Classification;
      the original is never mutated.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, ClassVar, Sequence

from posting_kernel.domain.classification import AccountingJob, Classification
from posting_kernel.domain.policy import AccountingPolicy, AccountingPolicyEvaluator
from posting_kernel.domain.reference_data import ReferenceSnapshot
from posting_kernel.domain.validation import ClassificationValidator
from posting_kernel.exceptions import (
    CurrencyNotNormalizedError,
    InvalidDocumentDateError,
    LineValidationError,
    MissingInvoiceNumberError,
    OutsideFiscalYearError,
    PolicyBlockedError,
    PostingKernelError,
)
from posting_kernel.logging_config import get_logger

logger = get_logger("domain.guards")


class PeriodOracle(ABC):
    """Signals when a date falls in a closed or locked accounting period."""

    @abstractmethod
    def assert_writable(self, company_id: str, day: date) -> None:
        """Raise ClosedPeriodError if ``day`` cannot be posted to."""


@dataclass(frozen=True)
class GuardContext:
    company_id: str
    job: AccountingJob
    snapshot: ReferenceSnapshot
    base_currency: str
    policy: AccountingPolicy | None = None

    @property
    def classification(self) -> Classification:
        return self.job.classification


@dataclass(frozen=True)
class GuardResult:
    warnings: tuple[dict[str, Any], ...] = ()
    classification: Classification | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GuardReport:
    """Outcome of a fully passed chain."""

    job: AccountingJob
    checked: tuple[str, ...]
    warnings: tuple[dict[str, Any], ...]
    details: dict[str, Any]


class Guard(ABC):
    name: ClassVar[str]

    @abstractmethod
    def check(self, ctx: GuardContext) -> GuardResult:
        """Return warnings (and optionally a corrected classification) or raise."""


class PeriodWritableGuard(Guard):
    name = "period_writable"

    def __init__(self, oracle: PeriodOracle):
        self._oracle = oracle

    def check(self, ctx):
        day = ctx.classification.invoice_date
        if day is None:
            raise InvalidDocumentDateError(None)
        self._oracle.assert_writable(ctx.company_id, day)
        return GuardResult()


class FiscalYearGuard(Guard):
    name = "fiscal_year"

    def check(self, ctx):
        day = ctx.classification.invoice_date
        if day is None:
            raise InvalidDocumentDateError(None)
        if ctx.snapshot.has_fiscal_calendar and ctx.snapshot.fiscal_year_for(day) is None:
            raise OutsideFiscalYearError(day.isoformat())
        return GuardResult()


class CurrencyGuard(Guard):
    name = "currency_normalized"

    def check(self, ctx):
        currency = (ctx.classification.currency or "").upper()
        base = ctx.base_currency.upper()
        if currency != base:
            raise CurrencyNotNormalizedError(currency or "(none)", base)
        return GuardResult()


class RequiredFieldsGuard(Guard):
    name = "required_fields"

    def check(self, ctx):
        c = ctx.classification
        if c.doc_type.requires_invoice_number and not (c.invoice_number or "").strip():
            raise MissingInvoiceNumberError(c.doc_type.value)
        return GuardResult()


class LineValidationGuard(Guard):
    name = "line_validation"

    def __init__(self, validator: ClassificationValidator):
        self._validator = validator

    def check(self, ctx):
        report = self._validator.validate(ctx.classification)
        if not report.is_valid:
            raise LineValidationError([f.to_dict() for f in report.blocking])
        return GuardResult(warnings=tuple(f.to_dict() for f in report.warnings))


class PolicyGuard(Guard):
    name = "accounting_policy"

    def __init__(self, evaluator: AccountingPolicyEvaluator | None = None):
        self._evaluator = evaluator or AccountingPolicyEvaluator()

    def check(self, ctx):
        upstream = tuple(
            {"code": "UPSTREAM_POLICY_NOTE", "message": note, "severity": "warning"}
            for note in ctx.classification.policy_violations
        )
        if ctx.policy is None:
            return GuardResult(warnings=upstream)

        evaluation = self._evaluator.evaluate(ctx.policy, ctx.classification)
        if evaluation.blocks_posting:
            raise PolicyBlockedError(
                evaluation.summary,
                [v.to_dict() for v in evaluation.violations],
            )
        return GuardResult(
            warnings=upstream + tuple(v.to_dict() for v in evaluation.violations),
            classification=evaluation.classification,
            details={
                "policy_summary": evaluation.summary,
                "requires_approval": evaluation.requires_approval,
            },
        )


class GuardChain:
    """Ordered, short-circuiting sequence of guards."""

    def __init__(self, guards: Sequence[Guard]):
        self._guards = tuple(guards)

    @classmethod
    def default(
        cls,
        period_oracle: PeriodOracle,
        validator: ClassificationValidator,
        evaluator: AccountingPolicyEvaluator | None = None,
    ) -> GuardChain:
        return cls((
            PeriodWritableGuard(period_oracle),
            FiscalYearGuard(),
            CurrencyGuard(),
            RequiredFieldsGuard(),
            LineValidationGuard(validator),
            PolicyGuard(evaluator),
        ))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(g.name for g in self._guards)

    def run(self, ctx: GuardContext) -> GuardReport:
        checked: list[str] = []
        warnings: list[dict[str, Any]] = []
        details: dict[str, Any] = {}

        for guard in self._guards:
            try:
                result = guard.check(ctx)
            except PostingKernelError as exc:
                exc.guard = guard.name
                logger.info(
                    "guard_failed",
                    extra={"guard": guard.name, "error_code": exc.code},
                )
                raise
            checked.append(guard.name)
            warnings.extend(result.warnings)
            details.update(result.details)
            if result.classification is not None:
                ctx = replace(ctx, job=replace(ctx.job, classification=result.classification))

        return GuardReport(
            job=ctx.job,
            checked=tuple(checked),
            warnings=tuple(warnings),
            details=details,
        )
