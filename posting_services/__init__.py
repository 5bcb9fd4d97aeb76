"""
posting_services -- outer adapters for the posting kernel.

Responsibility:
    The HTTP ledger gateway and the dependency assembly that wires kernel
    services from configuration.

Architecture position:
    posting_services/ -> posting_config/  (allowed)
    posting_services/ -> posting_kernel/  (allowed)
    posting_kernel/   -> posting_services/ (FORBIDDEN)
"""

from posting_services.context import PostingContext, build_posting_context
from posting_services.http_gateway import HttpLedgerGateway

__all__ = [
    "HttpLedgerGateway",
    "PostingContext",
    "build_posting_context",
]
