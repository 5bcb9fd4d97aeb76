"""
ClassificationValidator -- deterministic document and line checks.

Responsibility:
    Produces severity-tagged findings (critical / error / warning) for a
    Classification.  The guard chain blocks posting on any critical or error
    finding; warnings travel with the posting result and audit trail.

Architecture position:
    Kernel > Domain -- pure functional core.  Time comes from an injected
    Clock (FUTURE_DATE, OLD_DATE).

Rules:
    SUPPLIER_MISSING            critical  supplier name shorter than 2 chars
    INVALID_AMOUNT              critical  total is zero, or negative on a
                                          non-credit document
    CREDIT_NOTE_POSITIVE_AMOUNT warning   credit note with positive total
    VAT_MISMATCH                warning   VAT off the nearest standard rate
    LINE_VAT_MISMATCH           warning   line VAT does not sum to total VAT
    INVALID_INVOICE_DATE        critical  missing / unparseable date
    FUTURE_DATE                 error     date after today
    OLD_DATE                    warning   date more than two years back
    DUE_BEFORE_INVOICE          warning   due date before invoice date
    NO_LINE_ITEMS               warning   no classified lines
    INVALID_LINE_ACCOUNT        error     account is not four digits
    INVALID_LINE_AMOUNT         error     zero net amount
    NEGATIVE_LINE_AMOUNT        error     negative net (non-credit only)
    LINE_SUM_MISMATCH           warning   lines off total by > max(1, 1%)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from posting_kernel.db.types import ZERO
from posting_kernel.domain.classification import Classification
from posting_kernel.domain.clock import Clock, SystemClock

STANDARD_VAT_RATES: tuple[int, ...] = (0, 6, 12, 25)
ROUNDING_TOLERANCE = Decimal("1")
_ACCOUNT_PATTERN = re.compile(r"^\d{4}$")


class Severity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"

    @property
    def is_blocking(self) -> bool:
        return self in (Severity.CRITICAL, Severity.ERROR)


@dataclass(frozen=True)
class Finding:
    code: str
    field: str
    message: str
    severity: Severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "field": self.field,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ValidationReport:
    findings: tuple[Finding, ...] = ()

    @property
    def blocking(self) -> tuple[Finding, ...]:
        return tuple(f for f in self.findings if f.severity.is_blocking)

    @property
    def warnings(self) -> tuple[Finding, ...]:
        return tuple(f for f in self.findings if not f.severity.is_blocking)

    @property
    def is_valid(self) -> bool:
        return not self.blocking

    def codes(self) -> tuple[str, ...]:
        return tuple(f.code for f in self.findings)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return day.replace(year=day.year - years, day=28)


class ClassificationValidator:
    """Deterministic validator for classified documents."""

    def __init__(self, clock: Clock | None = None, max_age_years: int = 2):
        self._clock = clock or SystemClock()
        self._max_age_years = max_age_years

    def validate(self, classification: Classification) -> ValidationReport:
        findings: list[Finding] = []
        findings.extend(self._check_supplier(classification))
        findings.extend(self._check_amounts(classification))
        findings.extend(self._check_vat(classification))
        findings.extend(self._check_dates(classification))
        findings.extend(self._check_lines(classification))
        return ValidationReport(findings=tuple(findings))

    def _check_supplier(self, c: Classification) -> list[Finding]:
        if len(c.supplier.strip()) < 2:
            return [Finding(
                "SUPPLIER_MISSING", "supplier",
                "Supplier name is missing or too short", Severity.CRITICAL,
            )]
        return []

    def _check_amounts(self, c: Classification) -> list[Finding]:
        if c.total_amount == ZERO:
            return [Finding(
                "INVALID_AMOUNT", "total_amount",
                "Total amount must not be zero", Severity.CRITICAL,
            )]
        if not c.is_credit_note and c.total_amount < ZERO:
            return [Finding(
                "INVALID_AMOUNT", "total_amount",
                "Total amount must be greater than zero", Severity.CRITICAL,
            )]
        if c.is_credit_note and c.total_amount > ZERO:
            return [Finding(
                "CREDIT_NOTE_POSITIVE_AMOUNT", "total_amount",
                "Credit note has a positive total; check the amount signs",
                Severity.WARNING,
            )]
        return []

    def _check_vat(self, c: Classification) -> list[Finding]:
        findings: list[Finding] = []
        abs_net = abs(c.total_amount - c.vat_amount)
        abs_vat = abs(c.vat_amount)
        if abs_net > ZERO:
            percentage = abs_vat / abs_net * 100
            closest = min(STANDARD_VAT_RATES, key=lambda rate: abs(rate - percentage))
            expected = abs_net * Decimal(closest) / 100
            if abs(abs_vat - expected) > ROUNDING_TOLERANCE:
                findings.append(Finding(
                    "VAT_MISMATCH", "vat_amount",
                    f"VAT {c.vat_amount:.2f} does not match {expected:.2f} "
                    f"expected at {closest}%",
                    Severity.WARNING,
                ))

        if c.line_items:
            line_vat = sum((item.vat_amount for item in c.line_items), ZERO)
            if abs(line_vat - c.vat_amount) > ROUNDING_TOLERANCE:
                findings.append(Finding(
                    "LINE_VAT_MISMATCH", "line_items",
                    f"Line VAT {line_vat:.2f} does not match total VAT "
                    f"{c.vat_amount:.2f}",
                    Severity.WARNING,
                ))
        return findings

    def _check_dates(self, c: Classification) -> list[Finding]:
        if c.invoice_date is None:
            return [Finding(
                "INVALID_INVOICE_DATE", "invoice_date",
                "Invoice date is missing or invalid", Severity.CRITICAL,
            )]

        findings: list[Finding] = []
        today = self._clock.today()
        if c.invoice_date > today:
            findings.append(Finding(
                "FUTURE_DATE", "invoice_date",
                "Invoice date cannot be in the future", Severity.ERROR,
            ))
        if c.invoice_date < _years_before(today, self._max_age_years):
            findings.append(Finding(
                "OLD_DATE", "invoice_date",
                f"Invoice date is more than {self._max_age_years} years old",
                Severity.WARNING,
            ))
        if c.due_date is not None and c.due_date < c.invoice_date:
            findings.append(Finding(
                "DUE_BEFORE_INVOICE", "due_date",
                "Due date is before the invoice date", Severity.WARNING,
            ))
        return findings

    def _check_lines(self, c: Classification) -> list[Finding]:
        if not c.line_items:
            return [Finding(
                "NO_LINE_ITEMS", "line_items",
                "No line items; a default line will be used", Severity.WARNING,
            )]

        findings: list[Finding] = []
        allow_negative = c.is_credit_note
        for i, item in enumerate(c.line_items):
            if not item.suggested_account or not _ACCOUNT_PATTERN.match(item.suggested_account):
                findings.append(Finding(
                    "INVALID_LINE_ACCOUNT", f"line_items[{i}].suggested_account",
                    f"Invalid account on line {i + 1}: {item.suggested_account}",
                    Severity.ERROR,
                ))
            if item.net_amount == ZERO:
                findings.append(Finding(
                    "INVALID_LINE_AMOUNT", f"line_items[{i}].net_amount",
                    f"Invalid amount on line {i + 1}", Severity.ERROR,
                ))
            elif not allow_negative and item.net_amount < ZERO:
                findings.append(Finding(
                    "NEGATIVE_LINE_AMOUNT", f"line_items[{i}].net_amount",
                    f"Negative amount on line {i + 1} is not allowed",
                    Severity.ERROR,
                ))

        line_sum = sum((item.net_amount + item.vat_amount for item in c.line_items), ZERO)
        tolerance = max(ROUNDING_TOLERANCE, abs(c.total_amount) / 100)
        if allow_negative:
            diff = abs(abs(line_sum) - abs(c.total_amount))
        else:
            diff = abs(line_sum - c.total_amount)
        if diff > tolerance:
            findings.append(Finding(
                "LINE_SUM_MISMATCH", "line_items",
                f"Line sum {line_sum:.2f} does not match total {c.total_amount:.2f}",
                Severity.WARNING,
            ))
        return findings
