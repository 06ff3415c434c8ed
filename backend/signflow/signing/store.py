"""Persistence primitives for signing requests.

Every write that coordinates concurrent callers is a single conditional
UPDATE (or insert-or-ignore) whose WHERE clause carries the precondition, so
the decision and the mutation happen in one round trip. Callers learn whether
they won from the affected row count or the RETURNING row. None of these
functions commit.
"""

import json
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.common.audit import build_audit_event, queue_audit_export
from signflow.common.base_models import utcnow
from signflow.signing.exceptions import RequestNotFound
from signflow.signing.models import (
    FinalizationJob,
    FinalizationStatus,
    IdempotencyRecord,
    Notification,
    NotificationKind,
    RequestStatus,
    SignatureAuditEntry,
    SignatureEvent,
    Signer,
    SigningRequest,
    SIGNABLE_STATUSES,
)


def _insert(db: AsyncSession, model):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _as_tuple(statuses) -> tuple:
    if isinstance(statuses, (str, bytes)) or not isinstance(statuses, Iterable):
        return (statuses,)
    return tuple(statuses)


# ── Requests ────────────────────────────────────────────────────────────────────


async def get_request(db: AsyncSession, request_id: uuid.UUID, *, fresh: bool = False) -> SigningRequest:
    query = select(SigningRequest).where(SigningRequest.id == request_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    sig_request = result.scalar_one_or_none()
    if sig_request is None:
        raise RequestNotFound(f"Signing request {request_id} not found")
    return sig_request


def get_signer(sig_request: SigningRequest, signer_id: uuid.UUID) -> Signer:
    for signer in sig_request.signers:
        if signer.id == signer_id:
            return signer
    raise RequestNotFound(f"Signer {signer_id} is not part of signing request {sig_request.id}")


async def compare_and_set_status(
    db: AsyncSession,
    request_id: uuid.UUID,
    expected: Union[RequestStatus, Iterable[RequestStatus]],
    new_status: RequestStatus,
    *conditions,
    **values,
) -> bool:
    stmt = (
        update(SigningRequest)
        .where(SigningRequest.id == request_id, SigningRequest.status.in_(_as_tuple(expected)), *conditions)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def update_request_if(db: AsyncSession, request_id: uuid.UUID, *conditions, **values) -> bool:
    stmt = (
        update(SigningRequest)
        .where(SigningRequest.id == request_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def try_increment_completed(
    db: AsyncSession, request_id: uuid.UUID, expected_total: int
) -> Optional[tuple[int, bool]]:
    """Atomically bump ``completed_signers``.

    Returns ``(new_count, reached_total)``, or ``None`` when the request is no
    longer signable or is already full.
    """
    stmt = (
        update(SigningRequest)
        .where(
            SigningRequest.id == request_id,
            SigningRequest.status.in_(SIGNABLE_STATUSES),
            SigningRequest.total_signers == expected_total,
            SigningRequest.completed_signers < expected_total,
        )
        .values(completed_signers=SigningRequest.completed_signers + 1)
        .returning(SigningRequest.completed_signers)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        return None
    new_count = row[0]
    return new_count, new_count == expected_total


async def claim_reminder_slot(
    db: AsyncSession, request_id: uuid.UUID, now: datetime, cooldown: timedelta
) -> bool:
    return await update_request_if(
        db,
        request_id,
        SigningRequest.status.in_(SIGNABLE_STATUSES),
        or_(SigningRequest.last_reminder_sent_at.is_(None), SigningRequest.last_reminder_sent_at <= now - cooldown),
        last_reminder_sent_at=now,
        reminder_count=SigningRequest.reminder_count + 1,
    )


# ── Signers ─────────────────────────────────────────────────────────────────────


async def update_signer_if(db: AsyncSession, signer_id: uuid.UUID, *conditions, **values) -> bool:
    stmt = (
        update(Signer)
        .where(Signer.id == signer_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


# ── Signature events & idempotency ──────────────────────────────────────────────


async def get_signature_event(
    db: AsyncSession, signer_id: uuid.UUID, idempotency_key: str
) -> Optional[SignatureEvent]:
    result = await db.execute(
        select(SignatureEvent).where(
            SignatureEvent.signer_id == signer_id,
            SignatureEvent.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def append_signature_event(
    db: AsyncSession,
    *,
    request_id: uuid.UUID,
    signer_id: uuid.UUID,
    idempotency_key: str,
    artifact_ref: str,
    artifact_sha256: str,
    result_json: str,
    timestamp: datetime,
) -> SignatureEvent:
    sig_event = SignatureEvent(
        request_id=request_id,
        signer_id=signer_id,
        idempotency_key=idempotency_key,
        artifact_ref=artifact_ref,
        artifact_sha256=artifact_sha256,
        result_json=result_json,
        timestamp=timestamp,
    )
    db.add(sig_event)
    await db.flush()
    return sig_event


async def list_signature_events(db: AsyncSession, request_id: uuid.UUID) -> list[SignatureEvent]:
    result = await db.execute(select(SignatureEvent).where(SignatureEvent.request_id == request_id))
    return list(result.scalars().all())


async def get_idempotent_result(
    db: AsyncSession, scope: str, request_id: uuid.UUID, idempotency_key: Optional[str]
) -> Optional[str]:
    if not idempotency_key:
        return None
    result = await db.execute(
        select(IdempotencyRecord.result_json).where(
            IdempotencyRecord.scope == scope,
            IdempotencyRecord.request_id == request_id,
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def save_idempotent_result(
    db: AsyncSession, scope: str, request_id: uuid.UUID, idempotency_key: Optional[str], result_json: str
) -> None:
    if not idempotency_key:
        return
    stmt = (
        _insert(db, IdempotencyRecord)
        .values(
            id=uuid.uuid4(),
            scope=scope,
            request_id=request_id,
            idempotency_key=idempotency_key,
            result_json=result_json,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["scope", "request_id", "idempotency_key"])
    )
    await db.execute(stmt)


# ── Finalization jobs ───────────────────────────────────────────────────────────


async def create_finalization_job(
    db: AsyncSession, request_id: uuid.UUID, max_attempts: int
) -> Optional[uuid.UUID]:
    """Insert the request's single finalization job; ``None`` if one already exists."""
    now = utcnow()
    stmt = (
        _insert(db, FinalizationJob)
        .values(
            id=uuid.uuid4(),
            request_id=request_id,
            status=FinalizationStatus.queued,
            attempts=0,
            max_attempts=max_attempts,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["request_id"])
        .returning(FinalizationJob.id)
    )
    row = (await db.execute(stmt)).first()
    return row[0] if row else None


async def get_finalization_job(db: AsyncSession, job_id: uuid.UUID, *, fresh: bool = True) -> Optional[FinalizationJob]:
    query = select(FinalizationJob).where(FinalizationJob.id == job_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    return (await db.execute(query)).scalar_one_or_none()


async def get_finalization_job_for_request(db: AsyncSession, request_id: uuid.UUID) -> Optional[FinalizationJob]:
    result = await db.execute(
        select(FinalizationJob)
        .where(FinalizationJob.request_id == request_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    expected: Union[FinalizationStatus, Iterable[FinalizationStatus]],
    new_status: FinalizationStatus,
    *conditions,
    **values,
) -> bool:
    stmt = (
        update(FinalizationJob)
        .where(FinalizationJob.id == job_id, FinalizationJob.status.in_(_as_tuple(expected)), *conditions)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def cancel_unfinished_jobs(db: AsyncSession, request_id: uuid.UUID, reason: str) -> Optional[uuid.UUID]:
    stmt = (
        update(FinalizationJob)
        .where(
            FinalizationJob.request_id == request_id,
            FinalizationJob.status.in_(
                (FinalizationStatus.queued, FinalizationStatus.running, FinalizationStatus.failed)
            ),
        )
        .values(status=FinalizationStatus.cancelled, last_error=reason, finished_at=utcnow())
        .returning(FinalizationJob.id)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).first()
    return row[0] if row else None


# ── Notification outbox ─────────────────────────────────────────────────────────


async def enqueue_notification(
    db: AsyncSession,
    *,
    request_id: uuid.UUID,
    recipient: str,
    kind: NotificationKind,
    dedupe_key: str,
    payload: dict,
    signer_id: Optional[uuid.UUID] = None,
) -> bool:
    """Add an outbox row unless one with the same ``dedupe_key`` exists."""
    now = utcnow()
    stmt = (
        _insert(db, Notification)
        .values(
            id=uuid.uuid4(),
            request_id=request_id,
            signer_id=signer_id,
            recipient=recipient,
            kind=kind,
            dedupe_key=dedupe_key,
            payload_json=json.dumps(payload, sort_keys=True, default=str),
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
        .returning(Notification.id)
    )
    row = (await db.execute(stmt)).first()
    return row is not None


# ── Audit trail ─────────────────────────────────────────────────────────────────


async def record_audit(
    db: AsyncSession,
    request_id: uuid.UUID,
    action: str,
    *,
    signer_id: Optional[uuid.UUID] = None,
    details: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> SignatureAuditEntry:
    entry = SignatureAuditEntry(
        id=uuid.uuid4(),
        request_id=request_id,
        signer_id=signer_id,
        action=action,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
        timestamp=utcnow(),
    )
    db.add(entry)
    queue_audit_export(db, build_audit_event(entry))
    return entry
