"""
PostingPipeline -- idempotent posting of one classified document.

Responsibility:
    Posts a classified document exactly once into the external ledger:
    claim, guard, build, send, finalize.  Converts every failure into a
    structured PostingResult and an audit event.

Architecture position:
    Kernel > Services -- imperative shell, top of the posting flow.
    Delegates pure logic to domain/ (guards, builder, strategies) and I/O
    to peer services (claim ledger, reference cache, audit, jobs) and the
    gateway.

Posting flow:
    post_document(company_id, job)
      1. Claim (ClaimLedger.claim); anything but CLAIMED returns at once
      2. Load reference snapshot (ReferenceDataCache)
      3. Guard chain: period, fiscal year, currency, required fields,
         line validation, accounting policy
      4. Strategy selection and payload build (may fall back to a voucher)
      5. Gateway call under timeout (supplier lookup, then create)
      6. complete() then job.status = sent

Invariants enforced:
    - The gateway is only called while this caller holds a RUNNING claim.
    - Guard and builder failures never reach the gateway; they dead-letter
      the claim.
    - Transient gateway failures go to fail() (WAIT_RETRY or DEAD_LETTER at
      the ceiling); rejections are not retried.
    - The job becomes "sent" only after complete() has committed.
    - Every complete()/fail()/dead_letter() presents the lease token from
      claim().  An attempt whose claim was taken over gets a CONFLICT result
      and a CLAIM_LEASE_LOST audit event, and leaves the claim and the job
      to the new holder.

Failure modes:
    Every failure returns ``PostingResult(success=False, category, message,
    error_code, claim_outcome)``.  Unexpected exceptions from the gateway
    are recorded as a failed attempt and re-raised.

Audit relevance:
    POSTING_STARTED, JOB_PRECHECK_FAILED / JOB_POLICY_BLOCKED (naming the
    guard), VOUCHER_FALLBACK, POSTING_COMPLETED, POSTING_RETRY_SCHEDULED /
    POSTING_DEAD_LETTERED, CLAIM_CONFLICT, CLAIM_SKIPPED and CLAIM_LEASE_LOST.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from posting_kernel.domain.builder import LedgerDocumentBuilder
from posting_kernel.domain.classification import AccountingJob, JobStatus
from posting_kernel.domain.guards import GuardChain, GuardContext
from posting_kernel.domain.payloads import LedgerPayload, SupplierInvoicePayload
from posting_kernel.domain.policy import AccountingPolicy
from posting_kernel.domain.reference_data import ReferenceSnapshot
from posting_kernel.domain.results import (
    ClaimOutcome,
    ClaimResult,
    PostingResult,
    ResultCategory,
)
from posting_kernel.domain.strategies import (
    INVOICE_WITH_VOUCHER_FALLBACK,
    PostingStrategy,
    select_strategy,
)
from posting_kernel.exceptions import (
    ClaimError,
    ConflictError,
    GatewayRejectedError,
    PolicyBlockedError,
    PostingKernelError,
    TransientGatewayError,
)
from posting_kernel.logging_config import LogContext, get_logger
from posting_kernel.models.audit_event import AuditAction
from posting_kernel.models.posting_claim import ClaimState
from posting_kernel.services.audit_recorder import AuditRecorder
from posting_kernel.services.claim_ledger import ClaimLedger, ClaimRecord
from posting_kernel.services.gateway import LedgerGateway, call_with_timeout
from posting_kernel.services.job_repository import JobRepository
from posting_kernel.services.reference_data_cache import ReferenceDataCache
from posting_kernel.utils.hashing import compute_request_hash

logger = get_logger("services.posting_pipeline")

DEFAULT_GATEWAY_TIMEOUT_SECONDS = 30.0

# Supplier lookup and invoice, then at most two vouchers on the rejection path
MAX_GATEWAY_CALLS_PER_ATTEMPT = 4

_CLAIM_STATE_OUTCOME = {
    ClaimState.WAIT_RETRY: ClaimOutcome.WAIT_RETRY,
    ClaimState.DEAD_LETTER: ClaimOutcome.DEAD_LETTER,
}


@dataclass(frozen=True)
class CompanyPostingSettings:
    """Per-company knobs the pipeline reads on every attempt."""

    base_currency: str = "SEK"
    strategy: str = INVOICE_WITH_VOUCHER_FALLBACK
    voucher_fallback: bool = True
    policy: AccountingPolicy | None = None


class PostingPipeline:
    """
    Orchestrates one posting attempt per call.

    Contract:
        ``post_document`` never raises for business failures.  It may be
        called concurrently for the same job from independent handlers; the
        claim ledger decides which one proceeds.

    Non-goals:
        - Does NOT schedule retries (PostingWorker does).
        - Does NOT resolve conflicts (a human does).
    """

    def __init__(
        self,
        claims: ClaimLedger,
        guards: GuardChain,
        builder: LedgerDocumentBuilder,
        gateway: LedgerGateway,
        reference_cache: ReferenceDataCache,
        audit: AuditRecorder,
        jobs: JobRepository | None = None,
        settings_for: Callable[[str], CompanyPostingSettings] | None = None,
        gateway_timeout_seconds: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS,
    ):
        self._claims = claims
        self._guards = guards
        self._builder = builder
        self._gateway = gateway
        self._reference_cache = reference_cache
        self._audit = audit
        self._jobs = jobs
        self._settings_for = settings_for or (lambda company_id: CompanyPostingSettings())
        self._timeout = gateway_timeout_seconds

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def post_document(
        self,
        company_id: str,
        job: AccountingJob,
        trigger: str = "initial",
    ) -> PostingResult:
        """
        Post ``job`` for ``company_id`` at most once.

        Returns:
            ``PostingResult.ok`` with the ledger id, or a failure with a
            category (validation, policy, period, connectivity, conflict).
        """
        with LogContext.bind(
            correlation_id=str(uuid4()),
            company_id=company_id,
            job_id=job.id,
            trigger=trigger,
        ):
            logger.info("posting_requested", extra={"doc_type": job.classification.doc_type})
            t0 = time.monotonic()
            result = self._post(company_id, job, trigger)
            logger.info(
                "posting_finished",
                extra={
                    "success": result.success,
                    "result_id": result.result_id,
                    "category": result.category,
                    "claim_outcome": result.claim_outcome,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return result

    def _post(self, company_id: str, job: AccountingJob, trigger: str) -> PostingResult:
        if job.company_id != company_id:
            message = f"Job {job.id} belongs to company {job.company_id}, not {company_id}"
            logger.warning("posting_company_mismatch", extra={"job_company_id": job.company_id})
            return PostingResult.failed(ResultCategory.VALIDATION, message, "COMPANY_MISMATCH")

        self._register_job(job)

        request_hash = compute_request_hash(company_id, job.id, job.classification)
        claim = self._claims.claim(company_id, job.id, request_hash)

        with LogContext.bind(claim_state=claim.outcome.value):
            if not claim.is_claimed:
                return self._not_claimed(company_id, job, claim, request_hash)
            return self._attempt(company_id, job, claim, trigger)

    # ------------------------------------------------------------------
    # Claimed attempt
    # ------------------------------------------------------------------

    def _attempt(
        self,
        company_id: str,
        job: AccountingJob,
        claim: ClaimResult,
        trigger: str,
    ) -> PostingResult:
        lease = claim.lease_token
        settings = self._settings_for(company_id)
        strategy = select_strategy(
            job.classification.doc_type, settings.strategy, settings.voucher_fallback,
        )
        self._audit.record_posting_started(
            company_id, job.id, claim.attempts, strategy.name, trigger,
        )

        snapshot = self._reference_cache.snapshot(company_id)
        try:
            report = self._guards.run(GuardContext(
                company_id=company_id,
                job=job,
                snapshot=snapshot,
                base_currency=settings.base_currency,
                policy=settings.policy,
            ))
            plan = strategy.plan(report.job, snapshot, self._builder)
        except PostingKernelError as exc:
            return self._precheck_failed(company_id, job, lease, exc)

        if report.details.get("requires_approval"):
            logger.info(
                "posting_requires_approval",
                extra={"policy_summary": report.details.get("policy_summary")},
            )
        if plan.fell_back:
            self._audit.record_voucher_fallback(company_id, job.id, plan.fallback_reason)

        try:
            result_id, result_kind = self._send(plan.payload)
        except GatewayRejectedError as exc:
            return self._after_rejection(
                company_id, job, lease, report.job, snapshot, strategy, exc,
            )
        except TransientGatewayError as exc:
            return self._attempt_failed(company_id, job, lease, exc, retriable=True)
        except Exception as exc:
            self._record_unexpected(company_id, job, lease, exc)
            raise

        return self._succeeded(company_id, job, lease, result_id, result_kind, report.warnings)

    def _after_rejection(
        self,
        company_id: str,
        job: AccountingJob,
        lease: int | None,
        effective_job: AccountingJob,
        snapshot: ReferenceSnapshot,
        strategy: PostingStrategy,
        rejection: GatewayRejectedError,
    ) -> PostingResult:
        """The ledger refused the payload; try the strategy's voucher form once."""
        try:
            voucher = strategy.fallback_for_rejection(effective_job, snapshot, self._builder)
        except PostingKernelError as exc:
            logger.warning("fallback_build_failed", extra={"error_code": exc.code})
            voucher = None
        if voucher is None:
            return self._attempt_failed(company_id, job, lease, rejection, retriable=False)

        self._audit.record_voucher_fallback(
            company_id, job.id, f"ledger rejected credit invoice: {rejection}",
        )
        try:
            result_id, result_kind = self._send(voucher)
        except GatewayRejectedError as exc:
            return self._attempt_failed(company_id, job, lease, exc, retriable=False)
        except TransientGatewayError as exc:
            return self._attempt_failed(company_id, job, lease, exc, retriable=True)
        except Exception as exc:
            self._record_unexpected(company_id, job, lease, exc)
            raise
        return self._succeeded(company_id, job, lease, result_id, result_kind, ())

    def _send(self, payload: LedgerPayload) -> tuple[str, str]:
        """Send one payload; returns (result_id, result_kind)."""
        if isinstance(payload, SupplierInvoicePayload):
            supplier_ref = call_with_timeout(
                "find_or_create_supplier",
                self._gateway.find_or_create_supplier,
                payload.supplier_name,
                timeout=self._timeout,
            )
            invoice_id = call_with_timeout(
                "create_supplier_invoice",
                self._gateway.create_supplier_invoice,
                payload.with_supplier(supplier_ref),
                timeout=self._timeout,
            )
            return str(invoice_id), payload.kind

        voucher_id = call_with_timeout(
            "create_voucher",
            self._gateway.create_voucher,
            payload,
            timeout=self._timeout,
        )
        return str(voucher_id), payload.kind

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _succeeded(
        self,
        company_id: str,
        job: AccountingJob,
        lease: int | None,
        result_id: str,
        result_kind: str,
        warnings: tuple,
    ) -> PostingResult:
        try:
            self._claims.complete(
                company_id, job.id, result_id, result_kind=result_kind, lease_token=lease,
            )
        except ClaimError as exc:
            return self._lease_lost(company_id, job, exc, result_id)
        if self._jobs is not None:
            self._jobs.mark_sent(job.id, result_id, result_kind)
        self._audit.record_posting_completed(
            company_id, job.id, result_id, result_kind, list(warnings),
        )
        logger.info(
            "posting_completed",
            extra={"result_id": result_id, "result_kind": result_kind},
        )
        return PostingResult.ok(result_id, result_kind, warnings=tuple(warnings))

    def _precheck_failed(
        self,
        company_id: str,
        job: AccountingJob,
        lease: int | None,
        exc: PostingKernelError,
    ) -> PostingResult:
        """Guard or builder failure: dead-letter, never touch the gateway."""
        action = (
            AuditAction.JOB_POLICY_BLOCKED if isinstance(exc, PolicyBlockedError)
            else AuditAction.JOB_PRECHECK_FAILED
        )
        self._audit.record_guard_failure(company_id, job.id, exc, action)
        try:
            record = self._claims.dead_letter(
                company_id, job.id, str(exc), category=exc.category, lease_token=lease,
            )
        except ClaimError as lost:
            return self._lease_lost(company_id, job, lost)
        return self._failed(company_id, job, exc, record)

    def _attempt_failed(
        self,
        company_id: str,
        job: AccountingJob,
        lease: int | None,
        exc: PostingKernelError,
        retriable: bool,
    ) -> PostingResult:
        try:
            record = self._claims.fail(
                company_id, job.id, str(exc),
                retriable=retriable, category=exc.category, lease_token=lease,
            )
        except ClaimError as lost:
            return self._lease_lost(company_id, job, lost)
        return self._failed(company_id, job, exc, record)

    def _failed(
        self,
        company_id: str,
        job: AccountingJob,
        exc: PostingKernelError,
        record: ClaimRecord,
    ) -> PostingResult:
        if self._jobs is not None:
            self._jobs.mark_error(job.id, str(exc))
        self._audit.record_posting_failed(
            company_id, job.id, str(exc), exc.code, record.state.value, record.next_retry_at,
        )
        logger.warning(
            "posting_failed",
            extra={
                "error_code": exc.code,
                "category": exc.category,
                "claim_state": record.state.value,
                "attempts": record.attempts,
            },
        )
        return PostingResult.failed(
            ResultCategory.from_error_category(exc.category),
            str(exc),
            exc.code,
            claim_outcome=_CLAIM_STATE_OUTCOME.get(record.state),
        )

    def _lease_lost(
        self,
        company_id: str,
        job: AccountingJob,
        exc: ClaimError,
        result_id: str | None = None,
    ) -> PostingResult:
        """The claim moved on without this attempt; the job belongs to its new holder."""
        logger.error(
            "posting_lease_lost",
            extra={"error_code": exc.code, "orphan_result_id": result_id},
        )
        self._audit.record_lease_lost(company_id, job.id, exc, result_id)
        return PostingResult.failed(
            ResultCategory.CONFLICT,
            str(exc),
            exc.code,
            claim_outcome=ClaimOutcome.BLOCKED_RUNNING,
        )

    def _record_unexpected(
        self,
        company_id: str,
        job: AccountingJob,
        lease: int | None,
        exc: Exception,
    ) -> None:
        logger.error("posting_unexpected_error", exc_info=True)
        try:
            self._claims.fail(
                company_id, job.id, f"{type(exc).__name__}: {exc}",
                retriable=True, category="connectivity", lease_token=lease,
            )
        except ClaimError as lost:
            self._lease_lost(company_id, job, lost)
            return
        if self._jobs is not None:
            self._jobs.mark_error(job.id, str(exc))
        self._audit.record(
            company_id, AuditAction.POSTING_FAILED, job.id,
            {"error_code": type(exc).__name__, "message": str(exc)},
        )

    # ------------------------------------------------------------------
    # Claim not acquired
    # ------------------------------------------------------------------

    def _not_claimed(
        self,
        company_id: str,
        job: AccountingJob,
        claim: ClaimResult,
        request_hash: str,
    ) -> PostingResult:
        outcome = claim.outcome

        if outcome == ClaimOutcome.ALREADY_COMPLETED:
            record = self._claims.get(company_id, job.id)
            result_kind = record.result_kind if record else None
            if self._jobs is not None and result_kind:
                stored = self._jobs.get(job.id)
                if stored is not None and stored.status != JobStatus.SENT:
                    self._jobs.mark_sent(job.id, claim.result_id, result_kind)
            self._audit.record_claim_not_acquired(
                company_id, job.id, outcome.value, {"result_id": claim.result_id},
            )
            logger.info("posting_already_completed", extra={"result_id": claim.result_id})
            return PostingResult.ok(claim.result_id, result_kind, claim_outcome=outcome)

        if outcome == ClaimOutcome.BLOCKED_CONFLICT:
            conflict = ConflictError(company_id, job.id, claim.stored_hash or "", request_hash)
            if self._jobs is not None:
                self._jobs.mark_error(job.id, str(conflict))
            self._audit.record_claim_not_acquired(
                company_id, job.id, outcome.value,
                {"stored_hash": claim.stored_hash, "request_hash": request_hash},
            )
            return PostingResult.failed(
                ResultCategory.CONFLICT, str(conflict), conflict.code, claim_outcome=outcome,
            )

        if outcome == ClaimOutcome.DEAD_LETTER:
            record = self._claims.get(company_id, job.id)
            category = record.error_category if record and record.error_category else "validation"
            message = claim.last_error or "Posting is dead-lettered"
            if self._jobs is not None:
                self._jobs.mark_error(job.id, message)
            self._audit.record_claim_not_acquired(
                company_id, job.id, outcome.value, {"last_error": claim.last_error},
            )
            return PostingResult.failed(
                ResultCategory.from_error_category(category),
                message,
                "CLAIM_DEAD_LETTER",
                claim_outcome=outcome,
            )

        if outcome == ClaimOutcome.WAIT_RETRY:
            when = claim.next_retry_at.isoformat() if claim.next_retry_at else "unknown"
            message = f"Retry scheduled at {when}: {claim.last_error or 'previous attempt failed'}"
            if self._jobs is not None:
                self._jobs.mark_error(job.id, message)
            self._audit.record_claim_not_acquired(
                company_id, job.id, outcome.value, {"next_retry_at": claim.next_retry_at},
            )
            return PostingResult.failed(
                ResultCategory.CONNECTIVITY, message, "CLAIM_WAIT_RETRY", claim_outcome=outcome,
            )

        # BLOCKED_RUNNING: another handler holds the claim; the job is left as is.
        self._audit.record_claim_not_acquired(company_id, job.id, outcome.value)
        return PostingResult.failed(
            ResultCategory.CONNECTIVITY,
            "Posting already in progress for this document",
            "CLAIM_BLOCKED_RUNNING",
            claim_outcome=outcome,
        )

    def _register_job(self, job: AccountingJob) -> None:
        """Store jobs the repository has not seen so status updates have a row."""
        if self._jobs is not None:
            self._jobs.register(job)
