"""
ORM-level immutability enforcement for posting records.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | When Immutable                         | Why
----------------|----------------------------------------|-------------------------------
AuditEvent      | ALWAYS (from creation)                 | Audit trail is append-only
PostingClaim    | After state = COMPLETED or DEAD_LETTER | Terminal outcomes are final

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements produced by a
flush.  The listeners here inspect attribute history and raise
ImmutabilityViolationError before any SQL reaches the database:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() ---------> ImmutabilityViolationError

Claim transitions are written by services/claim_ledger.py as conditional
UPDATE statements whose WHERE clause excludes terminal states, so the ledger
itself never trips these listeners.  They catch ORM code that loads a claim
and edits it in place.

===============================================================================
USAGE
===============================================================================

    from posting_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that need to corrupt data on purpose (chain validation) call
unregister_immutability_listeners() and re-register afterwards.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from posting_kernel.exceptions import ImmutabilityViolationError
from posting_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_TERMINAL_CLAIM_STATES = frozenset({"completed", "dead_letter"})


def _state_value(value) -> str:
    return getattr(value, "value", value)


def _blocked(entity_type: str, entity_id, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_audit_event_immutability(mapper, connection, target):
    """Prevent any updates to AuditEvent records."""
    _blocked(
        "AuditEvent", target.id, "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    """Prevent deletion of AuditEvent records."""
    _blocked("AuditEvent", target.id, "DELETE", "Audit events cannot be deleted")


def _claim_was_terminal(target) -> bool:
    """
    True when the claim was already terminal before this flush.

    A RUNNING → COMPLETED change made through the ORM is the transition
    itself and is allowed; any change after that is not.
    """
    history = get_history(target, "state")
    if history.deleted:
        return _state_value(history.deleted[0]) in _TERMINAL_CLAIM_STATES
    if not history.added:
        return _state_value(target.state) in _TERMINAL_CLAIM_STATES
    return False


def _check_posting_claim_immutability(mapper, connection, target):
    """Prevent updates to claims in a terminal state."""
    if not _claim_was_terminal(target):
        return

    for attr in inspect(target).attrs:
        if attr.key == "updated_at":
            continue
        if attr.history.has_changes():
            _blocked(
                "PostingClaim", target.id, "UPDATE",
                f"Cannot modify field '{attr.key}' on a "
                f"{_state_value(target.state)} posting claim",
                field=attr.key,
            )


def _check_posting_claim_delete(mapper, connection, target):
    """Prevent deletion of terminal claims."""
    if _state_value(target.state) in _TERMINAL_CLAIM_STATES:
        _blocked(
            "PostingClaim", target.id, "DELETE",
            "Terminal posting claims cannot be deleted",
        )


def _listeners():
    from posting_kernel.models.audit_event import AuditEvent
    from posting_kernel.models.posting_claim import PostingClaim

    return (
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (PostingClaim, "before_update", _check_posting_claim_immutability),
        (PostingClaim, "before_delete", _check_posting_claim_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
