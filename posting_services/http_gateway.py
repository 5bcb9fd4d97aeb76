"""
HttpLedgerGateway -- ``requests`` implementation of the LedgerGateway.

Responsibility:
    Translates ledger payloads into the external ledger's JSON resources
    (``/suppliers``, ``/supplierinvoices``, ``/vouchers``) and maps HTTP
    outcomes onto the kernel's two gateway errors.

Architecture position:
    Services -- outer adapter.  Implements
    ``posting_kernel.services.gateway.LedgerGateway``.

Error mapping:
    timeout / connection error   -> TransientGatewayError
    HTTP 429, HTTP 5xx           -> TransientGatewayError
    HTTP 401 / 403               -> TransientGatewayError (token refresh is
                                    the caller's concern; a later attempt
                                    may succeed)
    any other HTTP 4xx           -> GatewayRejectedError
    2xx with an unusable body    -> GatewayRejectedError

Wire amounts:
    Money is sent as a two-decimal string (``"800.00"``), rounded half-up
    from the payload Decimal.  Floats never reach the request body.

Non-goals:
    - Does NOT retry.  Retries belong to the claim ledger's backoff.
    - Does NOT refresh OAuth tokens.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import requests

from posting_kernel.db.types import ZERO, round_money
from posting_kernel.domain.payloads import SupplierInvoicePayload, VoucherPayload
from posting_kernel.exceptions import GatewayRejectedError, TransientGatewayError
from posting_kernel.logging_config import get_logger
from posting_kernel.services.gateway import LedgerGateway

logger = get_logger("services.http_gateway")

DEFAULT_TIMEOUT_SECONDS = 30.0

_AUTH_STATUSES = (401, 403)


def _amount(value: Decimal) -> str:
    return str(round_money(value))


def supplier_invoice_body(payload: SupplierInvoicePayload) -> dict[str, Any]:
    """Wire representation of a supplier invoice."""
    rows = [
        {
            "Account": int(row.account) if row.account.isdigit() else row.account,
            "Debit": _amount(row.debit),
            "Credit": _amount(ZERO),
            **({"CostCenter": row.cost_center} if row.cost_center else {}),
            **({"TransactionInformation": row.description[:100]} if row.description else {}),
        }
        for row in payload.rows
    ]
    body: dict[str, Any] = {
        "SupplierNumber": payload.supplier_ref,
        "InvoiceNumber": payload.invoice_number,
        "InvoiceDate": payload.invoice_date.isoformat(),
        "Currency": payload.currency,
        "Total": _amount(payload.total),
        "VAT": _amount(payload.vat),
        "YourReference": payload.your_reference,
        "ExternalInvoiceNumber": payload.external_reference,
        "Comments": payload.comments,
        "SupplierInvoiceRows": rows,
    }
    if payload.due_date is not None:
        body["DueDate"] = payload.due_date.isoformat()
    if payload.credit:
        body["Credit"] = True
    return {"SupplierInvoice": body}


def voucher_body(payload: VoucherPayload) -> dict[str, Any]:
    """Wire representation of a manual voucher."""
    rows = [
        {
            "Account": int(row.account) if row.account.isdigit() else row.account,
            "Debit": _amount(row.debit),
            "Credit": _amount(row.credit),
            **({"CostCenter": row.cost_center} if row.cost_center else {}),
            **({"TransactionInformation": row.description[:100]} if row.description else {}),
        }
        for row in payload.rows
    ]
    return {
        "Voucher": {
            "VoucherSeries": payload.series,
            "TransactionDate": payload.transaction_date.isoformat(),
            "Description": payload.description,
            "Comments": payload.comments,
            "ReferenceNumber": payload.reference,
            "VoucherRows": rows,
        }
    }


class HttpLedgerGateway(LedgerGateway):
    """
    JSON-over-HTTP ledger client.

    Args:
        base_url: API root, e.g. ``https://ledger.example.com/3``.
        access_token: Bearer token sent on every request.
        timeout: Per-request timeout in seconds.
        session: Optional ``requests.Session`` (injected by tests).
    """

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if access_token:
            self._session.headers["Authorization"] = f"Bearer {access_token}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method, url, json=json, params=params, timeout=self._timeout,
            )
        except requests.Timeout as exc:
            logger.warning("ledger_request_timeout", extra={"method": method, "path": path})
            raise TransientGatewayError(f"{method} {path} timed out") from exc
        except requests.ConnectionError as exc:
            logger.warning("ledger_connection_error", extra={"method": method, "path": path})
            raise TransientGatewayError(f"{method} {path} connection failed: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500 or status in _AUTH_STATUSES:
            logger.warning(
                "ledger_request_transient",
                extra={"method": method, "path": path, "status_code": status},
            )
            raise TransientGatewayError(
                f"Ledger API {method} {path} returned {status}", status_code=status,
            )
        if status >= 400:
            detail = response.text[:500]
            logger.warning(
                "ledger_request_rejected",
                extra={"method": method, "path": path, "status_code": status, "detail": detail},
            )
            raise GatewayRejectedError(
                f"Ledger API {method} {path} rejected the request ({status}): {detail}",
                status_code=status,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayRejectedError(
                f"Ledger API {method} {path} returned a non-JSON body", status_code=status,
            ) from exc
        logger.debug("ledger_request_ok", extra={"method": method, "path": path, "status_code": status})
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _require(data: dict[str, Any], *keys: str) -> Any:
        value: Any = data
        for key in keys:
            if not isinstance(value, dict) or value.get(key) in (None, ""):
                raise GatewayRejectedError(
                    f"Ledger response is missing {'.'.join(keys)}"
                )
            value = value[key]
        return value

    # ------------------------------------------------------------------
    # LedgerGateway
    # ------------------------------------------------------------------

    def find_or_create_supplier(self, name: str) -> str:
        found = self._request("GET", "/suppliers", params={"name": name})
        suppliers = found.get("Suppliers") or []
        if suppliers:
            return str(self._require(suppliers[0], "SupplierNumber"))

        created = self._request("POST", "/suppliers", json={"Supplier": {"Name": name}})
        supplier_number = str(self._require(created, "Supplier", "SupplierNumber"))
        logger.info("ledger_supplier_created", extra={"supplier_number": supplier_number})
        return supplier_number

    def create_supplier_invoice(self, payload: SupplierInvoicePayload) -> str:
        data = self._request("POST", "/supplierinvoices", json=supplier_invoice_body(payload))
        return str(self._require(data, "SupplierInvoice", "GivenNumber"))

    def create_voucher(self, payload: VoucherPayload) -> str:
        data = self._request("POST", "/vouchers", json=voucher_body(payload))
        voucher = self._require(data, "Voucher")
        number = self._require(voucher, "VoucherNumber")
        series = voucher.get("VoucherSeries") or payload.series
        return f"{series}-{number}"
