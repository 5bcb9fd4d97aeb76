"""
Deterministic hashing utilities.

All hashing in the posting kernel must be deterministic and reproducible.
``compute_request_hash`` fingerprints a job's document content for the claim
ledger; ``hash_audit_event`` links audit rows into a tamper-evident chain.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from posting_kernel.domain.classification import Classification


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Remove trailing zeros so 1000.00 and 1000 hash alike
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, there is no whitespace, and Decimal / date / UUID /
    Enum values have a single representation.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_request_hash(
    company_id: str,
    job_id: str,
    classification: Classification,
) -> str:
    """
    Fingerprint the posting-relevant content of a job.

    Stable across attempts as long as the document is unchanged; any change
    to amounts, dates, supplier, numbering or line coding changes the hash.
    Upstream policy notes and the original currency are not part of the
    fingerprint.
    """
    c = classification
    return hash_payload({
        "job_id": job_id,
        "company_id": company_id,
        "doc_type": c.doc_type,
        "supplier": c.supplier,
        "invoice_number": c.invoice_number,
        "invoice_date": c.invoice_date,
        "due_date": c.due_date,
        "currency": c.currency,
        "total_amount": c.total_amount,
        "vat_amount": c.vat_amount,
        "line_items": [
            {
                "description": li.description,
                "net_amount": li.net_amount,
                "vat_amount": li.vat_amount,
                "suggested_account": li.suggested_account,
                "suggested_cost_center": li.suggested_cost_center,
            }
            for li in c.line_items
        ],
    })


def hash_audit_event(
    company_id: str,
    job_id: str | None,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for an audit event.

    The hash includes all key fields plus the previous event's hash,
    creating a tamper-evident chain per company.
    """
    components = [
        company_id,
        job_id or "",
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def to_json_safe(data: dict) -> dict:
    """Round-trip ``data`` through canonical JSON so it can be stored in a JSON column."""
    return json.loads(canonicalize_json(data))
