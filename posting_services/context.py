"""
posting_services.context -- Central DI container for the posting pipeline.

Responsibility:
    Creates every kernel service exactly once and wires them together.
    No service creates other services internally.  PostingContext is the
    single point of dependency injection for posting.

Architecture position:
    Services -- outer layer.  The only place where configuration
    (posting_config) meets kernel services (posting_kernel).

Invariants enforced:
    - Single-instance lifecycle: one claim ledger, one audit recorder, one
      period service per context.
    - All services share the same sessionmaker and Clock.
    - Immutability listeners are registered before any service runs.

Usage:
    context = build_posting_context(gateway=my_gateway)
    result = context.pipeline.post_document(company_id, job)
    summary = context.worker.run(company_id)
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from posting_config import get_active_config
from posting_config.bridges import (
    build_builder_settings,
    build_retry_policy,
    settings_resolver,
)
from posting_config.schema import PipelineConfig
from posting_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from posting_kernel.db.immutability import register_immutability_listeners
from posting_kernel.domain.builder import LedgerDocumentBuilder
from posting_kernel.domain.clock import Clock, SystemClock
from posting_kernel.domain.guards import GuardChain
from posting_kernel.domain.policy import AccountingPolicyEvaluator
from posting_kernel.domain.validation import ClassificationValidator
from posting_kernel.services.audit_recorder import AuditRecorder
from posting_kernel.services.claim_ledger import SqlClaimLedger
from posting_kernel.services.gateway import LedgerGateway
from posting_kernel.services.job_repository import JobRepository
from posting_kernel.services.period_service import PeriodService
from posting_kernel.services.posting_pipeline import PostingPipeline
from posting_kernel.services.posting_worker import PostingWorker
from posting_kernel.services.reference_data_cache import ReferenceDataCache
from posting_services.http_gateway import HttpLedgerGateway


class PostingContext:
    """
    Central factory for posting services.

    Contract:
        Receives a sessionmaker, a PipelineConfig and a LedgerGateway.
        Constructs every service in dependency order and exposes them as
        public attributes.

    Non-goals:
        - Does NOT own the engine lifecycle.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: PipelineConfig,
        gateway: LedgerGateway,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self._clock = clock or SystemClock()

        register_immutability_listeners()

        # Foundational services
        self.audit = AuditRecorder(session_factory, self._clock)
        self.periods = PeriodService(session_factory, self._clock)
        self.reference_cache = ReferenceDataCache(session_factory, self._clock)
        self.jobs = JobRepository(session_factory, self._clock)
        self.claims = SqlClaimLedger(
            session_factory,
            retry_policy=build_retry_policy(config),
            clock=self._clock,
            lease_seconds=config.claim_lease_seconds,
        )

        # Pure components
        self.builder = LedgerDocumentBuilder(build_builder_settings(config))
        self.guards = GuardChain.default(
            self.periods,
            ClassificationValidator(self._clock, max_age_years=config.max_document_age_years),
            AccountingPolicyEvaluator(),
        )

        # Orchestration
        self.gateway = gateway
        self.pipeline = PostingPipeline(
            claims=self.claims,
            guards=self.guards,
            builder=self.builder,
            gateway=gateway,
            reference_cache=self.reference_cache,
            audit=self.audit,
            jobs=self.jobs,
            settings_for=settings_resolver(config),
            gateway_timeout_seconds=config.gateway_timeout_seconds,
        )
        self.worker = PostingWorker(
            self.pipeline, self.jobs, self.claims, self.audit, clock=self._clock,
        )

    @property
    def clock(self) -> Clock:
        return self._clock


def build_posting_context(
    config_path: Path | str | None = None,
    gateway: LedgerGateway | None = None,
    access_token: str | None = None,
    database_url: str | None = None,
    clock: Clock | None = None,
) -> PostingContext:
    """
    Build a PostingContext from configuration (single entrypoint for production).

    Loads config via get_active_config(), initializes the engine from the
    configured database URL and creates missing tables.  When no gateway is
    given, an HttpLedgerGateway is built from ``gateway_base_url``.

    Raises:
        ValueError: No gateway was given and the config has no gateway_base_url,
            or no database URL is available.
    """
    config = get_active_config(config_path)

    url = database_url or config.database_url
    if not url:
        raise ValueError("No database_url configured")
    init_engine_from_url(url)
    create_tables()

    if gateway is None:
        if not config.gateway_base_url:
            raise ValueError("No gateway given and no gateway_base_url configured")
        gateway = HttpLedgerGateway(
            config.gateway_base_url,
            access_token=access_token,
            timeout=config.gateway_timeout_seconds,
        )

    return PostingContext(get_session_factory(), config, gateway, clock=clock)
