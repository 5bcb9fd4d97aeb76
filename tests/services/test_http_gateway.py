"""Tests for HttpLedgerGateway and the gateway timeout wrapper."""

import time
from dataclasses import replace
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from posting_kernel.domain.payloads import (
    InvoiceRow,
    SupplierInvoicePayload,
    VoucherPayload,
    VoucherRow,
)
from posting_kernel.exceptions import GatewayRejectedError, TransientGatewayError
from posting_kernel.services.gateway import call_with_timeout
from posting_services.http_gateway import HttpLedgerGateway, supplier_invoice_body, voucher_body

BASE_URL = "https://ledger.example.com/3/"


def _response(status=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body if body is not None else {}
    return response


@pytest.fixture
def session():
    s = MagicMock(spec=requests.Session)
    s.headers = {}
    return s


@pytest.fixture
def gateway(session):
    return HttpLedgerGateway(BASE_URL, access_token="tok", timeout=7.5, session=session)


@pytest.fixture
def invoice_payload():
    return SupplierInvoicePayload(
        supplier_name="Acme Supplies AB",
        invoice_number="F-1001",
        invoice_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        currency="SEK",
        total=Decimal("1000.00"),
        vat=Decimal("200.00"),
        rows=(
            InvoiceRow("5410", Decimal("800.00"), cost_center="IT", description="Office chairs"),
            InvoiceRow("2640", Decimal("200.00")),
        ),
        your_reference="POSTING:job-1",
        external_reference="job-1",
        comments="POSTING:job-1 | Source: invoice.pdf",
        supplier_ref="17",
    )


@pytest.fixture
def voucher_payload():
    return VoucherPayload(
        series="B",
        transaction_date=date(2024, 3, 1),
        description="Acme Supplies AB - receipt.pdf",
        rows=(
            VoucherRow("5410", debit=Decimal("800.00")),
            VoucherRow("2640", debit=Decimal("200.00")),
            VoucherRow("1930", credit=Decimal("1000.00")),
        ),
        reference="job-2",
        comments="POSTING:job-2",
    )


class TestWireBodies:

    def test_supplier_invoice(self, invoice_payload):
        body = supplier_invoice_body(invoice_payload)["SupplierInvoice"]

        assert body["SupplierNumber"] == "17"
        assert body["Total"] == "1000.00"
        assert body["VAT"] == "200.00"
        assert body["DueDate"] == "2024-03-31"
        assert body["ExternalInvoiceNumber"] == "job-1"
        assert "Credit" not in body
        assert body["SupplierInvoiceRows"][0] == {
            "Account": 5410,
            "Debit": "800.00",
            "Credit": "0.00",
            "CostCenter": "IT",
            "TransactionInformation": "Office chairs",
        }
        assert body["SupplierInvoiceRows"][1] == {"Account": 2640, "Debit": "200.00", "Credit": "0.00"}

    def test_credit_invoice_flagged(self, invoice_payload):
        body = supplier_invoice_body(replace(invoice_payload, credit=True, due_date=None))
        assert body["SupplierInvoice"]["Credit"] is True
        assert "DueDate" not in body["SupplierInvoice"]

    def test_voucher(self, voucher_payload):
        body = voucher_body(voucher_payload)["Voucher"]

        assert body["VoucherSeries"] == "B"
        assert body["ReferenceNumber"] == "job-2"
        assert [(r["Account"], r["Debit"], r["Credit"]) for r in body["VoucherRows"]] == [
            (5410, "800.00", "0.00"),
            (2640, "200.00", "0.00"),
            (1930, "0.00", "1000.00"),
        ]

    def test_amounts_sent_as_exact_two_decimal_strings(self, voucher_payload):
        rows = (
            VoucherRow("6550", debit=Decimal("0.1")),
            VoucherRow("6550", debit=Decimal("0.2")),
            VoucherRow("2640", debit=Decimal("12.345")),
            VoucherRow("1930", credit=Decimal("12.645")),
        )
        body = voucher_body(replace(voucher_payload, rows=rows))["Voucher"]

        assert [(r["Debit"], r["Credit"]) for r in body["VoucherRows"]] == [
            ("0.10", "0.00"),
            ("0.20", "0.00"),
            ("12.35", "0.00"),
            ("0.00", "12.65"),
        ]


class TestRequests:

    def test_headers_and_url(self, gateway, session, invoice_payload):
        session.request.return_value = _response(body={"SupplierInvoice": {"GivenNumber": 55}})

        assert gateway.create_supplier_invoice(invoice_payload) == "55"

        assert session.headers["Authorization"] == "Bearer tok"
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://ledger.example.com/3/supplierinvoices")
        assert session.request.call_args.kwargs["timeout"] == 7.5

    def test_existing_supplier_reused(self, gateway, session):
        session.request.return_value = _response(body={"Suppliers": [{"SupplierNumber": "17"}]})

        assert gateway.find_or_create_supplier("Acme Supplies AB") == "17"
        assert session.request.call_count == 1
        assert session.request.call_args.kwargs["params"] == {"name": "Acme Supplies AB"}

    def test_missing_supplier_created(self, gateway, session):
        session.request.side_effect = [
            _response(body={"Suppliers": []}),
            _response(status=201, body={"Supplier": {"SupplierNumber": 42}}),
        ]

        assert gateway.find_or_create_supplier("New AB") == "42"
        create = session.request.call_args_list[1]
        assert create.args[0] == "POST"
        assert create.kwargs["json"] == {"Supplier": {"Name": "New AB"}}

    def test_voucher_id_combines_series(self, gateway, session, voucher_payload):
        session.request.return_value = _response(
            body={"Voucher": {"VoucherNumber": 9, "VoucherSeries": "C"}},
        )
        assert gateway.create_voucher(voucher_payload) == "C-9"

    def test_voucher_series_defaults_to_payload(self, gateway, session, voucher_payload):
        session.request.return_value = _response(body={"Voucher": {"VoucherNumber": 9}})
        assert gateway.create_voucher(voucher_payload) == "B-9"


class TestErrorMapping:

    @pytest.mark.parametrize("status", [429, 500, 503, 401, 403])
    def test_transient_statuses(self, gateway, session, voucher_payload, status):
        session.request.return_value = _response(status=status)

        with pytest.raises(TransientGatewayError) as exc_info:
            gateway.create_voucher(voucher_payload)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 404, 422])
    def test_rejected_statuses(self, gateway, session, voucher_payload, status):
        session.request.return_value = _response(status=status, text="Account 9999 missing")

        with pytest.raises(GatewayRejectedError, match="Account 9999 missing") as exc_info:
            gateway.create_voucher(voucher_payload)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize(
        "error",
        [requests.Timeout("read timed out"), requests.ConnectionError("refused")],
    )
    def test_network_errors_transient(self, gateway, session, error):
        session.request.side_effect = error

        with pytest.raises(TransientGatewayError):
            gateway.find_or_create_supplier("Acme Supplies AB")

    def test_non_json_body_rejected(self, gateway, session, voucher_payload):
        session.request.return_value = _response(body=ValueError("not json"))

        with pytest.raises(GatewayRejectedError, match="non-JSON"):
            gateway.create_voucher(voucher_payload)

    @pytest.mark.parametrize(
        "body",
        [{}, {"SupplierInvoice": {}}, {"SupplierInvoice": {"GivenNumber": ""}}, ["unexpected"]],
    )
    def test_unusable_body_rejected(self, gateway, session, invoice_payload, body):
        session.request.return_value = _response(body=body)

        with pytest.raises(GatewayRejectedError, match="SupplierInvoice"):
            gateway.create_supplier_invoice(invoice_payload)


class TestCallWithTimeout:

    def test_returns_result(self):
        assert call_with_timeout("add", lambda a, b: a + b, 1, 2, timeout=1.0) == 3

    def test_errors_propagate(self):
        def boom():
            raise GatewayRejectedError("no", 400)

        with pytest.raises(GatewayRejectedError):
            call_with_timeout("boom", boom, timeout=1.0)

    def test_timeout_is_transient(self):
        start = time.monotonic()

        with pytest.raises(TransientGatewayError, match="slow timed out after 0.05s"):
            call_with_timeout("slow", time.sleep, 0.5, timeout=0.05)
        assert time.monotonic() - start < 0.4
