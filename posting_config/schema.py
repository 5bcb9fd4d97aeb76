"""
PipelineConfig schema.

Defines the human-authored, reviewable configuration of the posting
pipeline.  YAML files are parsed into these types by the loader and turned
into kernel inputs by the bridges.

Key distinction:
  PipelineConfig      = source artifact (human-authored, versioned)
  kernel settings     = runtime inputs (RetryPolicy, BuilderSettings,
                        CompanyPostingSettings, AccountingPolicy)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

# ---------------------------------------------------------------------------
# Retry and timing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicyDef:
    """Backoff schedule for failed posting attempts."""

    max_attempts: int = 6
    base_delay_seconds: float = 10.0
    max_delay_seconds: float = 1800.0


# ---------------------------------------------------------------------------
# Payload construction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountDefaultsDef:
    """Fixed accounts used when a document line names none."""

    default_expense: str = "6550"
    input_vat: str = "2640"
    supplier_liability: str = "2440"
    bank: str = "1930"
    bank_fallback: str = "1910"
    voucher_series: str = "A"


@dataclass(frozen=True)
class ToleranceDef:
    """Balance tolerances in the company currency."""

    voucher: Decimal = Decimal("0.01")
    invoice: Decimal = Decimal("1.00")


# ---------------------------------------------------------------------------
# Accounting policy (declarative data, evaluated by the kernel)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ListPolicyDef:
    mode: str = "allow_all"  # allow_all, allow_list, deny_list
    values: tuple[str, ...] = ()
    fallback_account: str | None = None


@dataclass(frozen=True)
class SupplierOverrideDef:
    supplier_pattern: str
    force_account: str | None = None
    force_cost_center: str | None = None
    require_approval: bool = False
    note: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class ApprovalRuleDef:
    action: str  # REJECT, REQUIRE_APPROVAL, AUTO_APPROVE
    priority: int = 100
    supplier_pattern: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    doc_types: tuple[str, ...] = ()
    description_pattern: str | None = None
    reason: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class AccountingPolicyDef:
    accounts: ListPolicyDef = ListPolicyDef()
    cost_centers: ListPolicyDef = ListPolicyDef()
    strict: bool = False
    supplier_overrides: tuple[SupplierOverrideDef, ...] = ()
    approval_rules: tuple[ApprovalRuleDef, ...] = ()


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompanyConfigDef:
    """Per-company overrides; None means "use the pipeline default"."""

    company_id: str
    base_currency: str | None = None
    strategy: str | None = None
    voucher_fallback: bool | None = None
    policy: AccountingPolicyDef | None = None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Complete posting pipeline configuration."""

    config_id: str
    version: int
    retry: RetryPolicyDef = RetryPolicyDef()
    claim_lease_seconds: float = 300.0
    gateway_timeout_seconds: float = 30.0
    tolerances: ToleranceDef = ToleranceDef()
    accounts: AccountDefaultsDef = AccountDefaultsDef()
    reference_prefix: str = "POSTING"
    credit_note_voucher_fallback: bool = True
    default_base_currency: str = "SEK"
    default_strategy: str = "invoice_with_voucher_fallback"
    max_document_age_years: int = 2
    database_url: str | None = None
    gateway_base_url: str | None = None
    companies: tuple[CompanyConfigDef, ...] = ()
    checksum: str = ""

    def company(self, company_id: str) -> CompanyConfigDef | None:
        for company in self.companies:
            if company.company_id == company_id:
                return company
        return None
