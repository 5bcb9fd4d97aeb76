"""
Config → Kernel Bridges.

Functions that convert PipelineConfig artifacts into kernel inputs.  These
live in posting_config (the producer) because the kernel must NEVER import
posting_config.

Usage:
    from posting_config.bridges import build_retry_policy, settings_resolver

    config = get_active_config()
    claims = SqlClaimLedger(factory, retry_policy=build_retry_policy(config))
    pipeline = PostingPipeline(..., settings_for=settings_resolver(config))
"""

from __future__ import annotations

from collections.abc import Callable

from posting_config.schema import AccountingPolicyDef, ListPolicyDef, PipelineConfig
from posting_kernel.domain.backoff import RetryPolicy
from posting_kernel.domain.builder import AccountSettings, BuilderSettings
from posting_kernel.domain.classification import DocType
from posting_kernel.domain.policy import (
    AccountingPolicy,
    ApprovalRule,
    ListMode,
    ListPolicy,
    RuleAction,
    SupplierOverride,
)
from posting_kernel.services.posting_pipeline import CompanyPostingSettings


def build_retry_policy(config: PipelineConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
    )


def build_builder_settings(config: PipelineConfig) -> BuilderSettings:
    a = config.accounts
    return BuilderSettings(
        accounts=AccountSettings(
            default_expense=a.default_expense,
            input_vat=a.input_vat,
            supplier_liability=a.supplier_liability,
            bank=a.bank,
            bank_fallback=a.bank_fallback,
            voucher_series=a.voucher_series,
        ),
        voucher_tolerance=config.tolerances.voucher,
        invoice_tolerance=config.tolerances.invoice,
        reference_prefix=config.reference_prefix,
    )


def _list_policy(definition: ListPolicyDef) -> ListPolicy:
    return ListPolicy(
        mode=ListMode(definition.mode),
        values=definition.values,
        fallback_account=definition.fallback_account,
    )


def build_accounting_policy(definition: AccountingPolicyDef) -> AccountingPolicy:
    """Translate a declarative policy into the kernel's evaluator input."""
    return AccountingPolicy(
        accounts=_list_policy(definition.accounts),
        cost_centers=_list_policy(definition.cost_centers),
        strict=definition.strict,
        supplier_overrides=tuple(
            SupplierOverride(
                supplier_pattern=o.supplier_pattern,
                force_account=o.force_account,
                force_cost_center=o.force_cost_center,
                require_approval=o.require_approval,
                note=o.note,
                enabled=o.enabled,
            )
            for o in definition.supplier_overrides
        ),
        approval_rules=tuple(
            ApprovalRule(
                action=RuleAction(r.action),
                priority=r.priority,
                supplier_pattern=r.supplier_pattern,
                min_amount=r.min_amount,
                max_amount=r.max_amount,
                doc_types=frozenset(DocType.parse(d) for d in r.doc_types),
                description_pattern=r.description_pattern,
                reason=r.reason,
                enabled=r.enabled,
            )
            for r in definition.approval_rules
        ),
    )


def build_company_settings(config: PipelineConfig, company_id: str) -> CompanyPostingSettings:
    """Pipeline defaults overlaid with the company's own entries."""
    company = config.company(company_id)
    if company is None:
        return CompanyPostingSettings(
            base_currency=config.default_base_currency,
            strategy=config.default_strategy,
            voucher_fallback=config.credit_note_voucher_fallback,
        )
    return CompanyPostingSettings(
        base_currency=company.base_currency or config.default_base_currency,
        strategy=company.strategy or config.default_strategy,
        voucher_fallback=(
            company.voucher_fallback if company.voucher_fallback is not None
            else config.credit_note_voucher_fallback
        ),
        policy=build_accounting_policy(company.policy) if company.policy else None,
    )


def settings_resolver(config: PipelineConfig) -> Callable[[str], CompanyPostingSettings]:
    """``settings_for`` callable for PostingPipeline, computed once per company."""
    cache: dict[str, CompanyPostingSettings] = {
        c.company_id: build_company_settings(config, c.company_id) for c in config.companies
    }
    default = build_company_settings(config, "")

    def settings_for(company_id: str) -> CompanyPostingSettings:
        return cache.get(company_id, default)

    return settings_for
