"""
Result types for the claim ledger and the posting pipeline.

``ClaimResult`` is the tagged answer of ``ClaimLedger.claim``; only
``CLAIMED`` grants the right to call the gateway, and it carries the
``lease_token`` the holder must present to finish the attempt.
``PostingResult`` is what ``PostingPipeline.post_document`` hands back to
its caller: success with a result id, or failure with a machine-readable
category and a human message.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_COMPLETED = "already_completed"
    BLOCKED_RUNNING = "blocked_running"
    WAIT_RETRY = "wait_retry"
    BLOCKED_CONFLICT = "blocked_conflict"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    attempts: int = 0
    result_id: str | None = None
    next_retry_at: datetime | None = None
    last_error: str | None = None
    stored_hash: str | None = None
    lease_token: int | None = None

    @property
    def is_claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED

    @classmethod
    def claimed(cls, attempts: int, lease_token: int | None = None) -> ClaimResult:
        return cls(ClaimOutcome.CLAIMED, attempts=attempts, lease_token=lease_token)

    @classmethod
    def already_completed(cls, result_id: str | None, attempts: int = 0) -> ClaimResult:
        return cls(ClaimOutcome.ALREADY_COMPLETED, attempts=attempts, result_id=result_id)

    @classmethod
    def blocked_running(cls, attempts: int = 0) -> ClaimResult:
        return cls(ClaimOutcome.BLOCKED_RUNNING, attempts=attempts)

    @classmethod
    def wait_retry(cls, next_retry_at: datetime | None, attempts: int = 0,
                   last_error: str | None = None) -> ClaimResult:
        return cls(ClaimOutcome.WAIT_RETRY, attempts=attempts,
                   next_retry_at=next_retry_at, last_error=last_error)

    @classmethod
    def blocked_conflict(cls, stored_hash: str, attempts: int = 0) -> ClaimResult:
        return cls(ClaimOutcome.BLOCKED_CONFLICT, attempts=attempts, stored_hash=stored_hash)

    @classmethod
    def dead_letter(cls, last_error: str | None, attempts: int = 0) -> ClaimResult:
        return cls(ClaimOutcome.DEAD_LETTER, attempts=attempts, last_error=last_error)


class ResultCategory(str, Enum):
    VALIDATION = "validation"
    POLICY = "policy"
    PERIOD = "period"
    CONNECTIVITY = "connectivity"
    CONFLICT = "conflict"

    @classmethod
    def from_error_category(cls, category: str) -> ResultCategory:
        try:
            return cls(category)
        except ValueError:
            return cls.VALIDATION


@dataclass(frozen=True)
class PostingResult:
    success: bool
    result_id: str | None = None
    result_kind: str | None = None
    category: ResultCategory | None = None
    message: str | None = None
    error_code: str | None = None
    claim_outcome: ClaimOutcome | None = None
    warnings: tuple[dict[str, Any], ...] = ()

    @classmethod
    def ok(
        cls,
        result_id: str,
        result_kind: str | None,
        claim_outcome: ClaimOutcome = ClaimOutcome.CLAIMED,
        warnings: tuple[dict[str, Any], ...] = (),
    ) -> PostingResult:
        return cls(
            success=True,
            result_id=result_id,
            result_kind=result_kind,
            claim_outcome=claim_outcome,
            warnings=warnings,
        )

    @classmethod
    def failed(
        cls,
        category: ResultCategory,
        message: str,
        error_code: str | None = None,
        claim_outcome: ClaimOutcome | None = None,
    ) -> PostingResult:
        return cls(
            success=False,
            category=category,
            message=message,
            error_code=error_code,
            claim_outcome=claim_outcome,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "result_id": self.result_id,
                "result_kind": self.result_kind,
            }
        return {
            "success": False,
            "error": {
                "category": self.category.value if self.category else None,
                "code": self.error_code,
                "message": self.message,
            },
        }
