"""
Posting Kernel

Exactly-once posting of classified financial documents into an external
general ledger:
- Atomic per-document claims with bounded retry
- Ordered preflight guards (period, fiscal year, currency, policy)
- Deterministic, self-balancing ledger payloads
- Append-only, hash-chained audit trail
"""

__version__ = "0.1.0"
