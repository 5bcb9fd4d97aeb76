"""
Configuration Loader (``posting_config.loader``).

Responsibility
--------------
Loads the pipeline YAML file and parses it into typed
``posting_config.schema`` dataclass instances.  Runtime callers go through
``posting_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Amounts are parsed as ``Decimal`` through ``str`` so YAML floats never
  leak binary rounding into tolerances or rule thresholds.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError`` with a descriptive message.
* ``claim_lease_seconds`` must outlast the slowest claimed attempt
  (``MAX_GATEWAY_CALLS_PER_ATTEMPT`` gateway calls at the full timeout);
  a shorter lease lets a second handler take over a live attempt.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from posting_config.schema import (
    AccountDefaultsDef,
    AccountingPolicyDef,
    ApprovalRuleDef,
    CompanyConfigDef,
    ListPolicyDef,
    PipelineConfig,
    RetryPolicyDef,
    SupplierOverrideDef,
    ToleranceDef,
)
from posting_kernel.services.posting_pipeline import MAX_GATEWAY_CALLS_PER_ATTEMPT

_LIST_MODES = ("allow_all", "allow_list", "deny_list")
_RULE_ACTIONS = ("REJECT", "REQUIRE_APPROVAL", "AUTO_APPROVE")
_STRATEGIES = ("invoice_with_voucher_fallback", "voucher_only")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field_name}: cannot parse amount from {value!r}") from exc


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    return None if value is None else parse_decimal(value, field_name)


def parse_retry(data: dict[str, Any]) -> RetryPolicyDef:
    retry = RetryPolicyDef(
        max_attempts=int(data.get("max_attempts", 6)),
        base_delay_seconds=float(data.get("base_delay_seconds", 10)),
        max_delay_seconds=float(data.get("max_delay_seconds", 1800)),
    )
    if retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be >= 1")
    if not 0 < retry.base_delay_seconds <= retry.max_delay_seconds:
        raise ValueError("retry requires 0 < base_delay_seconds <= max_delay_seconds")
    return retry


def parse_accounts(data: dict[str, Any]) -> AccountDefaultsDef:
    defaults = AccountDefaultsDef()
    return AccountDefaultsDef(
        default_expense=str(data.get("default_expense", defaults.default_expense)),
        input_vat=str(data.get("input_vat", defaults.input_vat)),
        supplier_liability=str(data.get("supplier_liability", defaults.supplier_liability)),
        bank=str(data.get("bank", defaults.bank)),
        bank_fallback=str(data.get("bank_fallback", defaults.bank_fallback)),
        voucher_series=str(data.get("voucher_series", defaults.voucher_series)),
    )


def parse_tolerances(data: dict[str, Any]) -> ToleranceDef:
    tolerances = ToleranceDef(
        voucher=parse_decimal(data.get("voucher", "0.01"), "tolerances.voucher"),
        invoice=parse_decimal(data.get("invoice", "1.00"), "tolerances.invoice"),
    )
    if tolerances.voucher < 0 or tolerances.invoice < 0:
        raise ValueError("tolerances must be non-negative")
    return tolerances


def parse_list_policy(data: dict[str, Any] | None, field_name: str) -> ListPolicyDef:
    if not data:
        return ListPolicyDef()
    mode = str(data.get("mode", "allow_all"))
    if mode not in _LIST_MODES:
        raise ValueError(f"{field_name}.mode must be one of {_LIST_MODES}, got {mode!r}")
    fallback = data.get("fallback_account")
    return ListPolicyDef(
        mode=mode,
        values=tuple(str(v) for v in data.get("values", ())),
        fallback_account=str(fallback) if fallback is not None else None,
    )


def parse_supplier_override(data: dict[str, Any]) -> SupplierOverrideDef:
    force_cost_center = data.get("force_cost_center")
    return SupplierOverrideDef(
        supplier_pattern=data["supplier_pattern"],
        force_account=str(data["force_account"]) if data.get("force_account") else None,
        force_cost_center=str(force_cost_center) if force_cost_center is not None else None,
        require_approval=bool(data.get("require_approval", False)),
        note=data.get("note"),
        enabled=bool(data.get("enabled", True)),
    )


def parse_approval_rule(data: dict[str, Any]) -> ApprovalRuleDef:
    action = str(data["action"]).upper()
    if action not in _RULE_ACTIONS:
        raise ValueError(f"approval rule action must be one of {_RULE_ACTIONS}, got {action!r}")
    return ApprovalRuleDef(
        action=action,
        priority=int(data.get("priority", 100)),
        supplier_pattern=data.get("supplier_pattern"),
        min_amount=_optional_decimal(data.get("min_amount"), "approval_rules.min_amount"),
        max_amount=_optional_decimal(data.get("max_amount"), "approval_rules.max_amount"),
        doc_types=tuple(str(d).upper() for d in data.get("doc_types", ())),
        description_pattern=data.get("description_pattern"),
        reason=data.get("reason"),
        enabled=bool(data.get("enabled", True)),
    )


def parse_policy(data: dict[str, Any]) -> AccountingPolicyDef:
    return AccountingPolicyDef(
        accounts=parse_list_policy(data.get("accounts"), "policy.accounts"),
        cost_centers=parse_list_policy(data.get("cost_centers"), "policy.cost_centers"),
        strict=bool(data.get("strict", False)),
        supplier_overrides=tuple(
            parse_supplier_override(o) for o in data.get("supplier_overrides", [])
        ),
        approval_rules=tuple(parse_approval_rule(r) for r in data.get("approval_rules", [])),
    )


def parse_company(data: dict[str, Any]) -> CompanyConfigDef:
    strategy = data.get("strategy")
    if strategy is not None and strategy not in _STRATEGIES:
        raise ValueError(f"company strategy must be one of {_STRATEGIES}, got {strategy!r}")
    base_currency = data.get("base_currency")
    voucher_fallback = data.get("voucher_fallback")
    return CompanyConfigDef(
        company_id=str(data["company_id"]),
        base_currency=str(base_currency).upper() if base_currency else None,
        strategy=strategy,
        voucher_fallback=bool(voucher_fallback) if voucher_fallback is not None else None,
        policy=parse_policy(data["policy"]) if data.get("policy") else None,
    )


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """
    Parse a ``PipelineConfig`` from the root YAML mapping.

    Raises:
        KeyError: if ``config_id`` is missing.
        ValueError: if a value is out of range.
    """
    strategy = data.get("default_strategy", "invoice_with_voucher_fallback")
    if strategy not in _STRATEGIES:
        raise ValueError(f"default_strategy must be one of {_STRATEGIES}, got {strategy!r}")

    lease = float(data.get("claim_lease_seconds", 300))
    timeout = float(data.get("gateway_timeout_seconds", 30))
    if lease <= 0 or timeout <= 0:
        raise ValueError("claim_lease_seconds and gateway_timeout_seconds must be positive")
    if lease <= timeout * MAX_GATEWAY_CALLS_PER_ATTEMPT:
        raise ValueError(
            f"claim_lease_seconds ({lease:g}) must exceed "
            f"{MAX_GATEWAY_CALLS_PER_ATTEMPT} x gateway_timeout_seconds ({timeout:g})"
        )

    companies = tuple(parse_company(c) for c in data.get("companies", []))
    ids = [c.company_id for c in companies]
    if len(ids) != len(set(ids)):
        raise ValueError("company_id values must be unique")

    return PipelineConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        retry=parse_retry(data.get("retry", {})),
        claim_lease_seconds=lease,
        gateway_timeout_seconds=timeout,
        tolerances=parse_tolerances(data.get("tolerances", {})),
        accounts=parse_accounts(data.get("accounts", {})),
        reference_prefix=str(data.get("reference_prefix", "POSTING")),
        credit_note_voucher_fallback=bool(data.get("credit_note_voucher_fallback", True)),
        default_base_currency=str(data.get("default_base_currency", "SEK")).upper(),
        default_strategy=strategy,
        max_document_age_years=int(data.get("max_document_age_years", 2)),
        database_url=data.get("database_url"),
        gateway_base_url=data.get("gateway_base_url"),
        companies=companies,
        checksum=compute_checksum(data),
    )


def load_pipeline_config(path: Path) -> PipelineConfig:
    return parse_pipeline_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
