"""
Accounting policy -- per-company posting guardrails.

Responsibility:
    Evaluates a company's ``AccountingPolicy`` against a Classification:
    allowed accounts and cost centers, supplier overrides, and approval
    rules.  Returns a structured ``PolicyEvaluation`` with a reject flag,
    severity-tagged violations and a (possibly corrected) copy of the
    Classification.

Architecture position:
    Kernel > Domain -- pure functional core.  Policies are declared in
    YAML and translated by ``posting_config.bridges``.

Invariants enforced:
    - Pure: the input Classification is never mutated.  Corrections
      (forced accounts, fallback accounts, dropped cost centers) are applied
      to a new Classification built with ``dataclasses.replace``.
    - Approval rules are evaluated in ascending ``priority``; the first
      matching rule decides.
    - An invalid regular expression never matches (and never raises).

Failure modes:
    None.  The evaluator reports; the guard chain decides whether to block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from posting_kernel.domain.classification import Classification, DocType, LineItem
from posting_kernel.domain.validation import Severity


class ListMode(str, Enum):
    ALLOW_ALL = "allow_all"
    ALLOW_LIST = "allow_list"
    DENY_LIST = "deny_list"


class RuleAction(str, Enum):
    REJECT = "REJECT"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    AUTO_APPROVE = "AUTO_APPROVE"


@dataclass(frozen=True)
class ListPolicy:
    """Allow/deny list over account numbers or cost-center codes."""

    mode: ListMode = ListMode.ALLOW_ALL
    values: tuple[str, ...] = ()
    fallback_account: str | None = None

    def allows(self, value: str | None) -> bool:
        if self.mode == ListMode.ALLOW_ALL:
            return True
        if self.mode == ListMode.ALLOW_LIST:
            return value in self.values
        return value not in self.values

    def pick_fallback(self) -> str | None:
        if self.fallback_account:
            return self.fallback_account
        if self.mode == ListMode.ALLOW_LIST and self.values:
            return self.values[0]
        return None


@dataclass(frozen=True)
class SupplierOverride:
    """
    Forced coding for suppliers matching ``supplier_pattern``.

    ``force_cost_center=""`` clears the cost center; ``None`` leaves it.
    """

    supplier_pattern: str
    force_account: str | None = None
    force_cost_center: str | None = None
    require_approval: bool = False
    note: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class ApprovalRule:
    action: RuleAction
    priority: int = 100
    supplier_pattern: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    doc_types: frozenset[DocType] = frozenset()
    description_pattern: str | None = None
    reason: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class AccountingPolicy:
    accounts: ListPolicy = ListPolicy()
    cost_centers: ListPolicy = ListPolicy()
    strict: bool = False
    supplier_overrides: tuple[SupplierOverride, ...] = ()
    approval_rules: tuple[ApprovalRule, ...] = ()


@dataclass(frozen=True)
class PolicyViolation:
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
class PolicyEvaluation:
    classification: Classification
    violations: tuple[PolicyViolation, ...]
    requires_approval: bool
    reject: bool
    summary: str

    @property
    def blocking_violations(self) -> tuple[PolicyViolation, ...]:
        return tuple(v for v in self.violations if v.severity == Severity.ERROR)

    @property
    def blocks_posting(self) -> bool:
        return self.reject or bool(self.blocking_violations)


def normalize_supplier_name(name: str) -> str:
    return " ".join((name or "").lower().split())


def regex_match(pattern: str, value: str) -> bool:
    try:
        return re.search(pattern, value or "", re.IGNORECASE) is not None
    except re.error:
        return False


class AccountingPolicyEvaluator:
    """Evaluates AccountingPolicy against classifications."""

    def evaluate(
        self, policy: AccountingPolicy, classification: Classification
    ) -> PolicyEvaluation:
        violations: list[PolicyViolation] = []
        summary_parts: list[str] = []

        lines, override_approval = self._apply_overrides(
            policy, classification, violations, summary_parts
        )
        lines, blocked = self._enforce_lines(policy, lines, violations, summary_parts)
        corrected = replace(classification, line_items=lines)

        rule_approval, reject, rule_reason = self._apply_approval_rules(policy, corrected)
        requires_approval = override_approval or rule_approval
        if rule_reason:
            summary_parts.append(f"rule: {rule_reason}")

        if reject:
            summary = "Policy: rejected"
        elif blocked:
            summary = "Policy: blocked (outside policy)"
        elif requires_approval:
            summary = "Policy: requires approval"
        elif summary_parts:
            summary = "Policy: " + ", ".join(summary_parts)
        else:
            summary = "Policy: ok"

        return PolicyEvaluation(
            classification=corrected,
            violations=tuple(violations),
            requires_approval=requires_approval,
            reject=reject,
            summary=summary,
        )

    def _apply_overrides(
        self,
        policy: AccountingPolicy,
        classification: Classification,
        violations: list[PolicyViolation],
        summary_parts: list[str],
    ) -> tuple[tuple[LineItem, ...], bool]:
        supplier = normalize_supplier_name(classification.supplier)
        lines = classification.line_items
        forced = False
        requires_approval = False

        for override in policy.supplier_overrides:
            if not override.enabled or not regex_match(override.supplier_pattern, supplier):
                continue
            if override.force_account:
                lines = tuple(replace(li, suggested_account=override.force_account) for li in lines)
                forced = True
                summary_parts.append(f"forced account {override.force_account}")
            if override.force_cost_center is not None:
                cost_center = override.force_cost_center or None
                lines = tuple(replace(li, suggested_cost_center=cost_center) for li in lines)
                forced = True
                summary_parts.append(f"forced cost center {cost_center or '(empty)'}")
            if override.require_approval:
                requires_approval = True
                summary_parts.append("required approval")
            if override.note:
                summary_parts.append(override.note)

        if forced:
            violations.append(PolicyViolation(
                "POLICY_OVERRIDE_APPLIED", "supplier",
                f'Policy override applied for supplier "{classification.supplier}"',
                Severity.WARNING,
            ))
        return lines, requires_approval

    def _enforce_lines(
        self,
        policy: AccountingPolicy,
        lines: tuple[LineItem, ...],
        violations: list[PolicyViolation],
        summary_parts: list[str],
    ) -> tuple[tuple[LineItem, ...], bool]:
        blocked = False
        fallback = policy.accounts.pick_fallback()
        corrected: list[LineItem] = []

        for line in lines:
            if not policy.accounts.allows(line.suggested_account):
                message = f"Account {line.suggested_account} is not allowed by company policy"
                if policy.strict or not fallback:
                    blocked = True
                    violations.append(PolicyViolation(
                        "ACCOUNT_NOT_ALLOWED", "line_items.suggested_account",
                        message, Severity.ERROR,
                    ))
                else:
                    violations.append(PolicyViolation(
                        "ACCOUNT_AUTO_CORRECTED", "line_items.suggested_account",
                        f"{message}; switched to {fallback}", Severity.WARNING,
                    ))
                    line = replace(line, suggested_account=fallback)
                    summary_parts.append(f"account->{fallback}")

            if line.suggested_cost_center and not policy.cost_centers.allows(
                line.suggested_cost_center
            ):
                violations.append(PolicyViolation(
                    "COSTCENTER_NOT_ALLOWED", "line_items.suggested_cost_center",
                    f"Cost center {line.suggested_cost_center} is not allowed by company policy",
                    Severity.ERROR if policy.strict else Severity.WARNING,
                ))
                if policy.strict:
                    blocked = True
                else:
                    line = replace(line, suggested_cost_center=None)
                    summary_parts.append("cost center->(empty)")

            corrected.append(line)

        return tuple(corrected), blocked

    def _apply_approval_rules(
        self, policy: AccountingPolicy, classification: Classification
    ) -> tuple[bool, bool, str | None]:
        """Return (requires_approval, reject, reason) from the first matching rule."""
        supplier = normalize_supplier_name(classification.supplier)
        rules = sorted(
            (r for r in policy.approval_rules if r.enabled),
            key=lambda r: r.priority,
        )
        for rule in rules:
            if rule.supplier_pattern and not regex_match(rule.supplier_pattern, supplier):
                continue
            amount = classification.total_amount
            if rule.min_amount is not None and amount < rule.min_amount:
                continue
            if rule.max_amount is not None and amount > rule.max_amount:
                continue
            if rule.doc_types and classification.doc_type not in rule.doc_types:
                continue
            if rule.description_pattern and not any(
                regex_match(rule.description_pattern, li.description)
                for li in classification.line_items
            ):
                continue

            if rule.action == RuleAction.REJECT:
                return False, True, rule.reason
            if rule.action == RuleAction.REQUIRE_APPROVAL:
                return True, False, rule.reason
            return False, False, rule.reason

        return False, False, None
