"""ORM-level immutability of audit events and terminal posting claims."""

import pytest
from sqlalchemy import select

from posting_kernel.exceptions import ImmutabilityViolationError
from posting_kernel.models.audit_event import AuditAction, AuditEvent
from posting_kernel.models.posting_claim import ClaimState, PostingClaim

from tests.conftest import COMPANY_ID

HASH = "a" * 64


def _load_claim(session, job_id="job-1"):
    return session.execute(
        select(PostingClaim).where(
            PostingClaim.company_id == COMPANY_ID, PostingClaim.job_id == job_id,
        )
    ).scalar_one()


class TestAuditEventImmutability:

    def test_update_rejected(self, audit, session_factory):
        audit.record(COMPANY_ID, AuditAction.POSTING_STARTED, "job-1", {"attempts": 1})

        with session_factory() as session:
            event = session.execute(select(AuditEvent)).scalar_one()
            event.payload = {"attempts": 99}
            with pytest.raises(ImmutabilityViolationError) as exc_info:
                session.flush()
            session.rollback()

        assert exc_info.value.entity_type == "AuditEvent"
        assert audit.events_for_job(COMPANY_ID, "job-1")[0].payload == {"attempts": 1}

    def test_delete_rejected(self, audit, session_factory):
        audit.record(COMPANY_ID, AuditAction.POSTING_STARTED, "job-1")

        with session_factory() as session:
            session.delete(session.execute(select(AuditEvent)).scalar_one())
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
            session.rollback()

        assert len(audit.events_for_company(COMPANY_ID)) == 1


class TestClaimImmutability:

    def test_running_claim_editable(self, claims, session_factory):
        claims.claim(COMPANY_ID, "job-1", HASH)

        with session_factory() as session:
            claim = _load_claim(session)
            claim.last_error = "operator note"
            session.commit()

        assert claims.get(COMPANY_ID, "job-1").last_error == "operator note"

    def test_orm_transition_to_terminal_allowed(self, claims, session_factory):
        claims.claim(COMPANY_ID, "job-1", HASH)

        with session_factory() as session:
            claim = _load_claim(session)
            claim.state = ClaimState.DEAD_LETTER.value
            claim.last_error = "withdrawn by operator"
            session.commit()

        assert claims.get(COMPANY_ID, "job-1").state == ClaimState.DEAD_LETTER

    @pytest.mark.parametrize("field, value", [
        ("result_id", "INV-999"),
        ("state", ClaimState.RUNNING.value),
        ("request_hash", "b" * 64),
    ])
    def test_completed_claim_frozen(self, claims, session_factory, field, value):
        claims.claim(COMPANY_ID, "job-1", HASH)
        claims.complete(COMPANY_ID, "job-1", "INV-1", result_kind="supplier_invoice")

        with session_factory() as session:
            claim = _load_claim(session)
            setattr(claim, field, value)
            with pytest.raises(ImmutabilityViolationError) as exc_info:
                session.flush()
            session.rollback()

        assert field in str(exc_info.value)
        assert claims.get(COMPANY_ID, "job-1").result_id == "INV-1"

    def test_dead_letter_claim_cannot_be_deleted(self, claims, session_factory):
        claims.claim(COMPANY_ID, "job-1", HASH)
        claims.dead_letter(COMPANY_ID, "job-1", "closed period", category="period")

        with session_factory() as session:
            session.delete(_load_claim(session))
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
            session.rollback()

        assert claims.get(COMPANY_ID, "job-1") is not None

    def test_violation_logged(self, claims, session_factory, captured_logs):
        claims.claim(COMPANY_ID, "job-1", HASH)
        claims.complete(COMPANY_ID, "job-1", "INV-1", result_kind="supplier_invoice")

        with session_factory() as session:
            _load_claim(session).last_error = "edited"
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
            session.rollback()

        blocked = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"]
        assert blocked[0]["entity_type"] == "PostingClaim"
        assert blocked[0]["field"] == "last_error"
