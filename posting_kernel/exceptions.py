"""
Typed Exception Hierarchy for the Posting Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The pipeline must decide, for every failure, whether retrying can help.
That decision is made by exception TYPE, never by parsing messages:

    try:
        guard_chain.run(ctx)
    except PolicyBlockedError as e:      # non-retriable, dead-letter
        claims.dead_letter(company_id, job_id, str(e), category=e.category)
    except TransientGatewayError as e:   # retriable, back off
        claims.fail(company_id, job_id, str(e))

Every exception carries:
  1. a CODE class attribute (machine-readable, API-safe)
  2. a CATEGORY class attribute (validation/policy/period/connectivity/conflict)
  3. structured DATA as instance attributes

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PostingKernelError (base)
    |
    +-- ValidationError                       non-retriable
    |   +-- MissingInvoiceNumberError
    |   +-- UnbalancedPayloadError
    |   +-- CurrencyNotNormalizedError
    |   +-- LineValidationError
    |   +-- GatewayRejectedError
    |   +-- PeriodError
    |       +-- ClosedPeriodError
    |       +-- OutsideFiscalYearError
    |       +-- InvalidDocumentDateError
    |       +-- PeriodNotFoundError
    |       +-- PeriodAlreadyClosedError
    |
    +-- PolicyBlockedError                    non-retriable
    |
    +-- TransientGatewayError                 retriable
    |
    +-- ConflictError                         human adjudication
    |
    +-- ClaimError
    |   +-- ClaimNotFoundError
    |   +-- InvalidClaimTransitionError
    |   +-- ClaimResultMismatchError
    |   +-- ClaimLeaseLostError
    |
    +-- JobNotFoundError
    |
    +-- ImmutabilityViolationError
    |
    +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
validation      | MISSING_INVOICE_NUMBER      | Invoice/credit note without number
                | UNBALANCED_PAYLOAD          | Rows do not balance within tolerance
                | CURRENCY_NOT_NORMALIZED     | Document not in company base currency
                | LINE_VALIDATION_FAILED      | Critical/error validator finding
                | GATEWAY_REJECTED            | Ledger refused the payload (4xx)
----------------|-----------------------------|-----------------------------------------
period          | CLOSED_PERIOD               | Date in CLOSED or LOCKED period
                | OUTSIDE_FISCAL_YEAR         | Date outside every cached fiscal year
                | INVALID_DOCUMENT_DATE       | Document carries no usable date
                | PERIOD_NOT_FOUND            | close/lock of an unknown period
                | PERIOD_ALREADY_CLOSED       | close of a CLOSED or LOCKED period
----------------|-----------------------------|-----------------------------------------
policy          | POLICY_BLOCKED              | Policy reject or error violation
----------------|-----------------------------|-----------------------------------------
connectivity    | GATEWAY_TRANSIENT           | Timeout, connection error, 429/5xx
----------------|-----------------------------|-----------------------------------------
conflict        | REQUEST_HASH_CONFLICT       | Document changed under a live claim
----------------|-----------------------------|-----------------------------------------
claim           | CLAIM_NOT_FOUND             | Operation on a claim that does not exist
                | INVALID_CLAIM_TRANSITION    | State machine violation
                | CLAIM_RESULT_MISMATCH       | complete() with a different result id
                | CLAIM_LEASE_LOST            | Stale holder finishing a taken-over claim
----------------|-----------------------------|-----------------------------------------
job             | JOB_NOT_FOUND               | Job id unknown
----------------|-----------------------------|-----------------------------------------
immutability    | IMMUTABILITY_VIOLATION      | Write to terminal claim / audit event
----------------|-----------------------------|-----------------------------------------
audit           | AUDIT_CHAIN_BROKEN          | Hash chain validation failed

===============================================================================
"""

from typing import Any


class PostingKernelError(Exception):
    """
    Base exception for all posting kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "POSTING_KERNEL_ERROR"
    category: str = "internal"
    retriable: bool = False
    # Set by the guard chain on the failing guard's error
    guard: str | None = None


# Validation (non-retriable)


class ValidationError(PostingKernelError):
    """A business-rule failure that retrying cannot fix."""

    code: str = "VALIDATION_ERROR"
    category: str = "validation"

    def __init__(self, message: str, rule: str | None = None):
        self.rule = rule or self.code
        super().__init__(message)


class MissingInvoiceNumberError(ValidationError):
    """Invoices and credit notes must carry an invoice number."""

    code: str = "MISSING_INVOICE_NUMBER"

    def __init__(self, doc_type: str):
        self.doc_type = doc_type
        super().__init__(f"Invoice number is required for {doc_type}")


class UnbalancedPayloadError(ValidationError):
    """Payload rows do not balance within tolerance."""

    code: str = "UNBALANCED_PAYLOAD"

    def __init__(self, debits: str, credits: str, tolerance: str, payload_kind: str = "voucher"):
        self.debits = debits
        self.credits = credits
        self.tolerance = tolerance
        self.payload_kind = payload_kind
        super().__init__(
            f"Unbalanced {payload_kind}: rows {debits} vs {credits} "
            f"(tolerance {tolerance})"
        )


class CurrencyNotNormalizedError(ValidationError):
    """Document currency differs from the company base currency."""

    code: str = "CURRENCY_NOT_NORMALIZED"

    def __init__(self, document_currency: str, base_currency: str):
        self.document_currency = document_currency
        self.base_currency = base_currency
        super().__init__(
            f"Document currency {document_currency} must be converted to "
            f"{base_currency} before posting"
        )


class LineValidationError(ValidationError):
    """The deterministic validator reported critical or error findings."""

    code: str = "LINE_VALIDATION_FAILED"

    def __init__(self, findings: list[dict[str, Any]]):
        self.findings = findings
        codes = ", ".join(f["code"] for f in findings)
        super().__init__(f"Validation failed: {codes}")


class GatewayRejectedError(ValidationError):
    """The external ledger refused the request; resending will not help."""

    code: str = "GATEWAY_REJECTED"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PeriodError(ValidationError):
    """Base exception for accounting period errors."""

    code: str = "PERIOD_ERROR"
    category: str = "period"


class ClosedPeriodError(PeriodError):
    """Document date falls in a closed or locked accounting period."""

    code: str = "CLOSED_PERIOD"

    def __init__(self, period_code: str, effective_date: str, status: str = "closed"):
        self.period_code = period_code
        self.effective_date = effective_date
        self.status = status
        super().__init__(
            f"Cannot post to {status} period {period_code} "
            f"(effective date: {effective_date})"
        )


class OutsideFiscalYearError(PeriodError):
    """Document date falls outside every known fiscal year."""

    code: str = "OUTSIDE_FISCAL_YEAR"

    def __init__(self, effective_date: str):
        self.effective_date = effective_date
        super().__init__(
            f"Date {effective_date} is outside every known fiscal year"
        )


class InvalidDocumentDateError(PeriodError):
    """Document has no usable date to place it in a period."""

    code: str = "INVALID_DOCUMENT_DATE"

    def __init__(self, raw_value: str | None):
        self.raw_value = raw_value
        super().__init__(f"Document date is missing or invalid: {raw_value!r}")


class PeriodNotFoundError(PeriodError):
    """No accounting period with this code exists."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, company_id: str, period_code: str):
        self.company_id = company_id
        self.period_code = period_code
        super().__init__(f"Period {period_code} not found for company {company_id}")


class PeriodAlreadyClosedError(PeriodError):
    """Period is already CLOSED or LOCKED."""

    code: str = "PERIOD_ALREADY_CLOSED"

    def __init__(self, period_code: str, status: str):
        self.period_code = period_code
        self.status = status
        super().__init__(f"Period {period_code} is already {status}")


# Policy (non-retriable)


class PolicyBlockedError(PostingKernelError):
    """Per-company accounting policy rejected the document."""

    code: str = "POLICY_BLOCKED"
    category: str = "policy"

    def __init__(self, summary: str, violations: list[dict[str, Any]] | None = None):
        self.summary = summary
        self.violations = violations or []
        super().__init__(summary)


# Connectivity (retriable)


class TransientGatewayError(PostingKernelError):
    """Network failure, timeout or rate limit from the external ledger."""

    code: str = "GATEWAY_TRANSIENT"
    category: str = "connectivity"
    retriable: bool = True

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# Conflict (human adjudication)


class ConflictError(PostingKernelError):
    """Document content changed while a claim is running or completed."""

    code: str = "REQUEST_HASH_CONFLICT"
    category: str = "conflict"

    def __init__(self, company_id: str, job_id: str, stored_hash: str, request_hash: str):
        self.company_id = company_id
        self.job_id = job_id
        self.stored_hash = stored_hash
        self.request_hash = request_hash
        super().__init__(
            f"Request hash conflict for job {job_id}: "
            f"claimed {stored_hash[:12]}, received {request_hash[:12]}"
        )


# Claim ledger


class ClaimError(PostingKernelError):
    """Base exception for claim ledger errors."""

    code: str = "CLAIM_ERROR"
    category: str = "conflict"


class ClaimNotFoundError(ClaimError):
    """No claim exists for the given key."""

    code: str = "CLAIM_NOT_FOUND"

    def __init__(self, company_id: str, job_id: str):
        self.company_id = company_id
        self.job_id = job_id
        super().__init__(f"No posting claim for job {job_id} (company {company_id})")


class InvalidClaimTransitionError(ClaimError):
    """Requested state change is not allowed by the claim state machine."""

    code: str = "INVALID_CLAIM_TRANSITION"

    def __init__(self, job_id: str, from_state: str, to_state: str):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid claim transition for job {job_id}: "
            f"{from_state} -> {to_state}"
        )


class ClaimResultMismatchError(ClaimError):
    """complete() called on a completed claim with a different result id."""

    code: str = "CLAIM_RESULT_MISMATCH"

    def __init__(self, job_id: str, stored_result_id: str, result_id: str):
        self.job_id = job_id
        self.stored_result_id = stored_result_id
        self.result_id = result_id
        super().__init__(
            f"Job {job_id} already completed with {stored_result_id}, "
            f"got {result_id}"
        )


class ClaimLeaseLostError(ClaimError):
    """
    The caller's attempt no longer owns the claim.

    Raised by complete()/fail()/dead_letter() when the lease token handed
    out by claim() does not match the row's current version.  The row is
    left unchanged.
    """

    code: str = "CLAIM_LEASE_LOST"

    def __init__(self, job_id: str, lease_token: int, current_version: int, current_state: str):
        self.job_id = job_id
        self.lease_token = lease_token
        self.current_version = current_version
        self.current_state = current_state
        super().__init__(
            f"Claim for job {job_id} was taken over: lease {lease_token}, "
            f"row is now {current_state} at version {current_version}"
        )


# Jobs


class JobNotFoundError(PostingKernelError):
    """Accounting job does not exist."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Accounting job not found: {job_id}")


# Immutability


class ImmutabilityViolationError(PostingKernelError):
    """Attempted modification of an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditChainBrokenError(PostingKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, seq: int, expected_hash: str, actual_hash: str):
        self.seq = seq
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at seq {seq}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
