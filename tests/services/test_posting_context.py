"""Tests for wiring the pipeline from configuration."""

import pytest
import yaml

from posting_kernel.db.engine import reset_engine
from posting_kernel.domain.clock import DeterministicClock
from posting_kernel.domain.strategies import VOUCHER_ONLY
from posting_services import HttpLedgerGateway, build_posting_context

from tests.conftest import TEST_NOW, FakeLedgerGateway


@pytest.fixture
def database_url(tmp_path):
    yield f"sqlite:///{tmp_path / 'context.db'}"
    reset_engine()


@pytest.fixture
def clock():
    return DeterministicClock(TEST_NOW)


class TestBuildPostingContext:

    def test_wires_services_from_defaults(self, database_url, clock):
        gateway = FakeLedgerGateway()
        context = build_posting_context(gateway=gateway, database_url=database_url, clock=clock)

        assert context.gateway is gateway
        assert context.clock is clock
        assert context.config.config_id == "posting-defaults"
        assert context.builder.settings.reference_prefix == "POSTING"
        assert context.worker.run("demo-ab").processed == 0

    def test_posts_with_company_policy(self, database_url, clock, make_job):
        gateway = FakeLedgerGateway()
        context = build_posting_context(gateway=gateway, database_url=database_url, clock=clock)

        result = context.pipeline.post_document("demo-ab", make_job(company_id="demo-ab"))

        assert result.success
        assert result.result_kind == "supplier_invoice"
        assert context.audit.validate_chain("demo-ab")

    def test_voucher_only_company(self, database_url, clock, make_job):
        gateway = FakeLedgerGateway()
        context = build_posting_context(gateway=gateway, database_url=database_url, clock=clock)

        result = context.pipeline.post_document(
            "manual-vouchers-ab", make_job(company_id="manual-vouchers-ab"),
        )

        assert result.result_kind == "voucher"
        assert gateway.count("create_voucher") == 1
        assert context.config.company("manual-vouchers-ab").strategy == VOUCHER_ONLY

    def test_http_gateway_by_default(self, database_url):
        context = build_posting_context(database_url=database_url, access_token="tok")
        assert isinstance(context.gateway, HttpLedgerGateway)

    def test_gateway_url_required_without_gateway(self, tmp_path, database_url):
        path = tmp_path / "pipeline.yaml"
        path.write_text(yaml.safe_dump({"config_id": "no-gateway"}))

        with pytest.raises(ValueError, match="gateway_base_url"):
            build_posting_context(config_path=path, database_url=database_url)

    def test_database_url_required(self, tmp_path):
        path = tmp_path / "pipeline.yaml"
        path.write_text(yaml.safe_dump({"config_id": "no-db"}))

        with pytest.raises(ValueError, match="database_url"):
            build_posting_context(config_path=path, gateway=FakeLedgerGateway())
