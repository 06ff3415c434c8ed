"""
Audit export for signing transitions.

Every transition and signature event is written to ``signature_audit_entries``
inside the caller's transaction. A JSON copy of each entry is exported to the
external audit sink only after that transaction commits:

- entries are queued on ``Session.info`` while the transaction is open
- ``after_commit`` hands them to Celery (fire-and-forget)
- a rollback discards them, so the sink never sees phantom transitions

Export failures are logged and never reach the signing call.
"""

import hashlib
import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_PENDING_EXPORTS = "signflow.pending_audit_exports"


class AuditEvent(BaseModel):
    """Structured JSON form of an audit entry for the external sink."""

    timestamp: str
    event_id: str
    event_type: str
    action: str
    request_id: str
    signer_id: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    details: Optional[str]
    integrity_hash: str
    severity: str  # info, low, medium, high
    source: str = "signflow"


ACTION_SEVERITY = {
    "created": "info",
    "sent": "info",
    "viewed": "info",
    "signed": "low",
    "completed": "medium",
    "declined": "medium",
    "cancelled": "medium",
    "expired": "low",
    "deadline_extended": "low",
    "reminder_sent": "info",
    "finalized": "medium",
    "finalization_failed": "high",
    "finalization_cancelled": "medium",
}


def compute_integrity_hash(
    event_id: str,
    timestamp: str,
    request_id: str,
    signer_id: Optional[str],
    action: str,
    details: Optional[str],
) -> str:
    """SHA-256 over the entry's identifying fields."""
    payload = f"{event_id}|{timestamp}|{request_id}|{signer_id or ''}|{action}|{details or ''}"
    return hashlib.sha256(payload.encode()).hexdigest()


def build_audit_event(entry) -> AuditEvent:
    event_id = str(entry.id)
    timestamp = entry.timestamp.isoformat()
    request_id = str(entry.request_id)
    signer_id = str(entry.signer_id) if entry.signer_id else None
    return AuditEvent(
        timestamp=timestamp,
        event_id=event_id,
        event_type=f"signing_request.{entry.action}",
        action=entry.action,
        request_id=request_id,
        signer_id=signer_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        details=entry.details,
        integrity_hash=compute_integrity_hash(event_id, timestamp, request_id, signer_id, entry.action, entry.details),
        severity=ACTION_SEVERITY.get(entry.action, "info"),
    )


def queue_audit_export(session, audit_event: AuditEvent) -> None:
    """Hold an export until the session's transaction commits."""
    session.info.setdefault(_PENDING_EXPORTS, []).append(audit_event.model_dump(mode="json"))


def enqueue_audit_push(payload: dict) -> None:
    try:
        from signflow.signing.celery_tasks import push_audit_event

        push_audit_event.delay(payload)
    except Exception as exc:
        logger.warning("Could not enqueue audit export for %s: %s", payload.get("event_id"), exc)


@event.listens_for(Session, "after_commit")
def _export_committed_audit_events(session: Session) -> None:
    for payload in session.info.pop(_PENDING_EXPORTS, []):
        enqueue_audit_push(payload)


@event.listens_for(Session, "after_rollback")
def _discard_rolled_back_audit_events(session: Session) -> None:
    session.info.pop(_PENDING_EXPORTS, None)
