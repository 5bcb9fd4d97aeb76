"""
LedgerGateway -- contract for the external general-ledger system.

Responsibility:
    Defines the three calls the pipeline makes against the external ledger
    and the bounded-time wrapper every call goes through.

Architecture position:
    Kernel > Services.  Concrete gateways live in outer layers
    (``posting_services.http_gateway``) and in test doubles.

Invariants enforced:
    - Gateways raise TransientGatewayError for failures that a retry can
      fix and GatewayRejectedError for refusals that it cannot.
    - ``call_with_timeout`` never waits longer than the given timeout; a
      timeout becomes TransientGatewayError.

Failure modes:
    - The external ledger is at-least-once.  A call that succeeds remotely
      but times out locally is retried and may create a duplicate; every
      payload carries the job id as its reference so duplicates can be
      found.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from posting_kernel.domain.payloads import SupplierInvoicePayload, VoucherPayload
from posting_kernel.exceptions import TransientGatewayError
from posting_kernel.logging_config import get_logger

logger = get_logger("services.gateway")

T = TypeVar("T")


class LedgerGateway(ABC):
    """External ledger operations used by the posting pipeline."""

    @abstractmethod
    def find_or_create_supplier(self, name: str) -> str:
        """Return the ledger's supplier reference for ``name``."""

    @abstractmethod
    def create_supplier_invoice(self, payload: SupplierInvoicePayload) -> str:
        """Create a supplier invoice; returns the ledger's invoice id."""

    @abstractmethod
    def create_voucher(self, payload: VoucherPayload) -> str:
        """Create a voucher; returns the ledger's voucher id."""


def call_with_timeout(
    operation: str,
    fn: Callable[..., T],
    *args,
    timeout: float,
) -> T:
    """
    Run ``fn(*args)`` on a worker thread and wait at most ``timeout`` seconds.

    A timed-out call is abandoned, not cancelled: its thread finishes in the
    background and its result is discarded.

    Raises:
        TransientGatewayError: The call did not finish in time.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-gateway")
    try:
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(
                "gateway_call_timed_out",
                extra={"operation": operation, "timeout_seconds": timeout},
            )
            raise TransientGatewayError(
                f"{operation} timed out after {timeout:g}s"
            ) from None
    finally:
        executor.shutdown(wait=False)
