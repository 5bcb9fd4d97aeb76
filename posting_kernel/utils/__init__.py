"""Utility modules for the posting kernel."""

from posting_kernel.utils.hashing import (
    canonicalize_json,
    compute_request_hash,
    hash_audit_event,
    hash_payload,
    to_json_safe,
)

__all__ = [
    "canonicalize_json",
    "compute_request_hash",
    "hash_audit_event",
    "hash_payload",
    "to_json_safe",
]
