"""Signing request state machine.

draft → pending → in_progress → {completed | declined | expired | cancelled}

Every transition is a conditional UPDATE issued through ``store``; the loaded
ORM objects are only used to build error messages and notifications. The
functions here flush but never commit: the caller's unit of work decides, and a
raised error means the caller must roll back.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.common.base_models import utcnow
from signflow.common.pagination import PaginatedResponse, PaginationParams
from signflow.config import settings
from signflow.signing import counter, decline, sequencing, store
from signflow.signing.documents import DocumentStore, get_document_store, signature_artifact_key
from signflow.signing.exceptions import (
    ConcurrencyRaceLost,
    RequestNotFound,
    SigningError,
    StateConflictError,
    ValidationError,
)
from signflow.signing.models import (
    AWAITING_SIGNER_STATUSES,
    OPEN_STATUSES,
    SIGNABLE_STATUSES,
    FinalizationJob,
    FinalizationStatus,
    NotificationKind,
    RequestStatus,
    SignatureAuditEntry,
    Signer,
    SignerStatus,
    SigningMode,
    SigningRequest,
)
from signflow.signing.schemas import (
    DeclineResult,
    SignatureArtifact,
    SignatureAuditEntryResponse,
    SignatureInput,
    SigningRequestCreate,
    SigningRequestResponse,
    SignResult,
    TransitionResult,
)

logger = logging.getLogger(__name__)

DECLINE_SCOPE = "decline"
CANCEL_SCOPE = "cancel"
EXTEND_SCOPE = "extend_deadline"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _terminal_conflict(sig_request: SigningRequest) -> StateConflictError:
    return StateConflictError(
        f"Signing request is {sig_request.status.value}",
        StateConflictError.REQUEST_TERMINAL,
    )


def _check_signable(sig_request: SigningRequest, signer: Signer, now: datetime) -> None:
    if sig_request.is_terminal:
        raise _terminal_conflict(sig_request)
    if sig_request.status == RequestStatus.draft:
        raise StateConflictError("Signing request has not been sent", StateConflictError.REQUEST_NOT_SENT)
    if sig_request.expires_at is not None and _as_utc(sig_request.expires_at) <= now:
        raise StateConflictError("Signing request has expired", StateConflictError.REQUEST_EXPIRED)
    if signer.status == SignerStatus.signed:
        raise StateConflictError("Signer has already signed", StateConflictError.ALREADY_SIGNED)
    if signer.status == SignerStatus.declined:
        raise StateConflictError("Signer has declined", StateConflictError.ALREADY_DECLINED)
    if not sequencing.is_eligible(sig_request.signing_mode, sig_request.signers, signer):
        raise StateConflictError(
            f"Signer at order {signer.order} must wait for earlier signers",
            StateConflictError.ORDER_VIOLATION,
        )


# ── Create / send / view ────────────────────────────────────────────────────────


def _assign_orders(data: SigningRequestCreate) -> list[int]:
    if not data.signers:
        raise ValidationError("At least one signer is required")

    seen: set[str] = set()
    for signer_data in data.signers:
        email = signer_data.email.strip().lower()
        if email in seen:
            raise ValidationError(f"Duplicate signer email: {signer_data.email}")
        seen.add(email)

    count = len(data.signers)
    if data.signing_mode != SigningMode.sequential:
        return list(range(1, count + 1))

    orders = [s.order for s in data.signers]
    if all(order is None for order in orders):
        return list(range(1, count + 1))
    if any(order is None for order in orders) or sorted(orders) != list(range(1, count + 1)):
        raise ValidationError("Sequential signer orders must be exactly 1..n with no gaps or repeats")
    return orders


async def create_request(
    db: AsyncSession,
    initiator_id: uuid.UUID,
    data: SigningRequestCreate,
) -> SigningRequest:
    orders = _assign_orders(data)
    now = utcnow()
    expires_at = _as_utc(data.expires_at) or now + timedelta(days=settings.default_expiry_days)
    if expires_at <= now:
        raise ValidationError("Expiry must be in the future")

    sig_request = SigningRequest(
        id=uuid.uuid4(),
        initiator_id=initiator_id,
        title=data.title,
        message=data.message,
        document_ref=data.document_ref,
        signing_mode=data.signing_mode,
        status=RequestStatus.draft,
        total_signers=len(data.signers),
        completed_signers=0,
        expires_at=expires_at,
        signers=[
            Signer(
                id=uuid.uuid4(),
                name=signer_data.name,
                email=signer_data.email.strip().lower(),
                order=order,
                status=SignerStatus.pending,
            )
            for signer_data, order in zip(data.signers, orders)
        ],
    )
    db.add(sig_request)
    await db.flush()
    await store.record_audit(
        db,
        sig_request.id,
        "created",
        details=f"Signing request created with {len(data.signers)} signer(s) in {data.signing_mode.value} mode",
    )
    logger.info("Signing request %s created by %s", sig_request.id, initiator_id)

    if data.send:
        return await send_request(db, sig_request.id)
    return await store.get_request(db, sig_request.id, fresh=True)


async def send_request(db: AsyncSession, request_id: uuid.UUID) -> SigningRequest:
    sig_request = await store.get_request(db, request_id, fresh=True)
    now = utcnow()
    if not await store.compare_and_set_status(db, request_id, RequestStatus.draft, RequestStatus.pending, sent_at=now):
        current = await store.get_request(db, request_id, fresh=True)
        raise StateConflictError(
            f"Only draft requests can be sent (request is {current.status.value})",
            StateConflictError.INVALID_TRANSITION,
        )

    for signer in sequencing.next_eligible_signers(sig_request.signing_mode, sig_request.signers):
        await _notify_signer(db, sig_request, signer, NotificationKind.signature_requested)
        await store.record_audit(
            db, request_id, "sent", signer_id=signer.id, details=f"Signing request sent to {signer.email}"
        )
    logger.info("Signing request %s sent", request_id)
    return await store.get_request(db, request_id, fresh=True)


async def mark_viewed(db: AsyncSession, request_id: uuid.UUID, signer_id: uuid.UUID) -> Signer:
    sig_request = await store.get_request(db, request_id, fresh=True)
    signer = store.get_signer(sig_request, signer_id)
    if sig_request.is_terminal:
        raise _terminal_conflict(sig_request)
    if sig_request.status == RequestStatus.draft:
        raise StateConflictError("Signing request has not been sent", StateConflictError.REQUEST_NOT_SENT)

    now = utcnow()
    if await store.update_signer_if(
        db, signer_id, Signer.status == SignerStatus.pending, status=SignerStatus.viewed, viewed_at=now
    ):
        await store.record_audit(db, request_id, "viewed", signer_id=signer_id, details=f"{signer.email} viewed the document")
    await db.refresh(signer)
    return signer


# ── Sign ────────────────────────────────────────────────────────────────────────


def _build_signature_artifact(
    sig_request: SigningRequest, signer: Signer, signature: SignatureInput, signed_at: datetime
) -> tuple[bytes, str]:
    artifact = SignatureArtifact(
        request_id=sig_request.id,
        signer_id=signer.id,
        signer_email=signer.email,
        signer_order=signer.order,
        signature_type=signature.signature_type,
        signature_data=signature.signature_data,
        ip_address=signature.ip_address,
        user_agent=signature.user_agent,
        signed_at=signed_at.isoformat(),
    )
    data = json.dumps(artifact.model_dump(mode="json"), sort_keys=True, separators=(",", ":")).encode("utf-8")
    return data, hashlib.sha256(data).hexdigest()


async def _sign_rejection(db: AsyncSession, request_id: uuid.UUID, signer_id: uuid.UUID, now: datetime) -> SigningError:
    sig_request = await store.get_request(db, request_id, fresh=True)
    signer = store.get_signer(sig_request, signer_id)
    try:
        _check_signable(sig_request, signer, now)
    except SigningError as exc:
        return exc
    return ConcurrencyRaceLost(f"Signature for signer {signer_id} lost a concurrent update")


async def sign_document(
    db: AsyncSession,
    request_id: uuid.UUID,
    signer_id: uuid.UUID,
    signature: SignatureInput,
    idempotency_key: str,
    document_store: Optional[DocumentStore] = None,
) -> SignResult:
    if not idempotency_key:
        raise ValidationError("An idempotency key is required to sign")

    # Replays are answered before any state check so a retried final signature
    # still gets its original answer once the request is completed.
    prior = await store.get_signature_event(db, signer_id, idempotency_key)
    if prior is not None:
        logger.info("Replaying signature of signer %s for key %s", signer_id, idempotency_key)
        return SignResult.model_validate_json(prior.result_json)

    sig_request = await store.get_request(db, request_id, fresh=True)
    signer = store.get_signer(sig_request, signer_id)
    now = utcnow()
    _check_signable(sig_request, signer, now)

    artifact_bytes, artifact_sha256 = _build_signature_artifact(sig_request, signer, signature, now)
    document_store = document_store or get_document_store()
    artifact_ref = await document_store.put(
        signature_artifact_key(request_id, signer_id, artifact_sha256), artifact_bytes, "application/json"
    )

    if not await sequencing.claim_signature(db, request_id, signer_id, sig_request.signing_mode, now):
        replay = await store.get_signature_event(db, signer_id, idempotency_key)
        if replay is not None:
            return SignResult.model_validate_json(replay.result_json)
        error = await _sign_rejection(db, request_id, signer_id, now)
        logger.info("Signature of signer %s on request %s rejected: %s", signer_id, request_id, error.message)
        raise error

    increment = await counter.try_increment(db, request_id, sig_request.total_signers)
    job_id = None
    if increment.reached_total:
        if not await store.compare_and_set_status(
            db, request_id, SIGNABLE_STATUSES, RequestStatus.completed, completed_at=now
        ):
            raise ConcurrencyRaceLost(f"Signing request {request_id} left the signable states before completion")
        job_id = await store.create_finalization_job(db, request_id, settings.finalization_max_attempts)
        if job_id is None:
            raise ConcurrencyRaceLost(f"Finalization for request {request_id} was already enqueued")
        request_status = RequestStatus.completed
        await store.record_audit(db, request_id, "completed", details="All signers have signed. Request completed.")
        logger.info("Signing request %s completed; finalization job %s queued", request_id, job_id)
    else:
        # Losing this CAS only means an earlier signature already moved the request on.
        await store.compare_and_set_status(db, request_id, RequestStatus.pending, RequestStatus.in_progress)
        request_status = RequestStatus.in_progress
        if sig_request.signing_mode == SigningMode.sequential:
            for next_signer in sig_request.signers:
                if next_signer.order == increment.new_count + 1:
                    await _notify_signer(db, sig_request, next_signer, NotificationKind.your_turn)

    result = SignResult(
        request_id=request_id,
        signer_id=signer_id,
        signer_status=SignerStatus.signed.value,
        signed_at=now,
        artifact_ref=artifact_ref,
        artifact_sha256=artifact_sha256,
        completed_signers=increment.new_count,
        total_signers=sig_request.total_signers,
        request_status=request_status.value,
        finalization_job_id=job_id,
    )
    await store.append_signature_event(
        db,
        request_id=request_id,
        signer_id=signer_id,
        idempotency_key=idempotency_key,
        artifact_ref=artifact_ref,
        artifact_sha256=artifact_sha256,
        result_json=result.model_dump_json(),
        timestamp=now,
    )
    await store.record_audit(
        db,
        request_id,
        "signed",
        signer_id=signer_id,
        ip_address=signature.ip_address,
        user_agent=signature.user_agent,
        details=f"{signer.email} signed the document ({increment.new_count}/{sig_request.total_signers})",
    )
    return result


# ── Decline / cancel / extend ───────────────────────────────────────────────────


async def decline_document(
    db: AsyncSession,
    request_id: uuid.UUID,
    signer_id: uuid.UUID,
    reason: str,
    idempotency_key: Optional[str] = None,
) -> DeclineResult:
    replay = await store.get_idempotent_result(db, DECLINE_SCOPE, request_id, idempotency_key)
    if replay is not None:
        return DeclineResult.model_validate_json(replay)
    if not reason or not reason.strip():
        raise ValidationError("A decline reason is required")

    sig_request = await store.get_request(db, request_id, fresh=True)
    signer = store.get_signer(sig_request, signer_id)
    if sig_request.is_terminal:
        raise await _decline_rejection(db, sig_request)
    if signer.status == SignerStatus.signed:
        raise StateConflictError("Signer has already signed", StateConflictError.ALREADY_SIGNED)
    if signer.status == SignerStatus.declined:
        raise StateConflictError("Signer has already declined", StateConflictError.ALREADY_DECLINED)

    now = utcnow()
    was_sent = sig_request.status != RequestStatus.draft
    # Signer row before request row, the same lock order as sign_document.
    if not await store.update_signer_if(
        db,
        signer_id,
        Signer.status.in_(AWAITING_SIGNER_STATUSES),
        status=SignerStatus.declined,
        declined_at=now,
        decline_reason=reason,
    ):
        raise await _decline_signer_rejection(db, request_id, signer_id)
    if not await decline.guarded_decline(db, request_id, now):
        current = await store.get_request(db, request_id, fresh=True)
        raise await _decline_rejection(db, current)

    outcome = await decline.run_cascade(db, sig_request, signer, reason, was_sent=was_sent)
    await store.record_audit(
        db, request_id, "declined", signer_id=signer_id, details=f"{signer.email} declined to sign. Reason: {reason}"
    )
    logger.info("Signing request %s declined by signer %s", request_id, signer_id)

    result = DeclineResult(
        request_id=request_id,
        signer_id=signer_id,
        request_status=RequestStatus.declined.value,
        declined_at=now,
        reason=reason,
        notified_signer_ids=outcome.notified_signer_ids,
    )
    await store.save_idempotent_result(db, DECLINE_SCOPE, request_id, idempotency_key, result.model_dump_json())
    return result


async def _decline_rejection(db: AsyncSession, sig_request: SigningRequest) -> StateConflictError:
    job = await store.get_finalization_job_for_request(db, sig_request.id)
    if job is not None and job.status == FinalizationStatus.succeeded:
        return StateConflictError(
            "Signing request is already finalized; it can no longer be declined",
            StateConflictError.FINALIZATION_COMPLETE,
        )
    return _terminal_conflict(sig_request)


async def _decline_signer_rejection(db: AsyncSession, request_id: uuid.UUID, signer_id: uuid.UUID) -> SigningError:
    current = await store.get_request(db, request_id, fresh=True)
    if current.is_terminal:
        return await _decline_rejection(db, current)
    signer = store.get_signer(current, signer_id)
    if signer.status == SignerStatus.signed:
        return StateConflictError("Signer has already signed", StateConflictError.ALREADY_SIGNED)
    if signer.status == SignerStatus.declined:
        return StateConflictError("Signer has already declined", StateConflictError.ALREADY_DECLINED)
    return ConcurrencyRaceLost(f"Signer {signer_id} changed state while declining")


async def cancel_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    idempotency_key: Optional[str] = None,
    reason: Optional[str] = None,
) -> TransitionResult:
    replay = await store.get_idempotent_result(db, CANCEL_SCOPE, request_id, idempotency_key)
    if replay is not None:
        return TransitionResult.model_validate_json(replay)

    sig_request = await store.get_request(db, request_id, fresh=True)
    was_sent = sig_request.status != RequestStatus.draft
    now = utcnow()
    if not await store.compare_and_set_status(
        db, request_id, OPEN_STATUSES, RequestStatus.cancelled, terminated_at=now
    ):
        current = await store.get_request(db, request_id, fresh=True)
        raise StateConflictError(
            f"Cannot cancel a {current.status.value} request", StateConflictError.REQUEST_TERMINAL
        )

    notified = []
    if was_sent:
        for signer in sig_request.signers:
            if signer.status in AWAITING_SIGNER_STATUSES and await _notify_signer(
                db, sig_request, signer, NotificationKind.request_cancelled, reason=reason
            ):
                notified.append(signer.id)
    await store.record_audit(
        db, request_id, "cancelled", details=f"Signing request cancelled{': ' + reason if reason else ''}"
    )
    logger.info("Signing request %s cancelled", request_id)

    result = TransitionResult(
        request_id=request_id,
        request_status=RequestStatus.cancelled.value,
        expires_at=sig_request.expires_at,
        notified_signer_ids=notified,
    )
    await store.save_idempotent_result(db, CANCEL_SCOPE, request_id, idempotency_key, result.model_dump_json())
    return result


async def extend_deadline(
    db: AsyncSession,
    request_id: uuid.UUID,
    new_expires_at: datetime,
    idempotency_key: Optional[str] = None,
) -> TransitionResult:
    replay = await store.get_idempotent_result(db, EXTEND_SCOPE, request_id, idempotency_key)
    if replay is not None:
        return TransitionResult.model_validate_json(replay)

    new_expires_at = _as_utc(new_expires_at)
    if new_expires_at is None or new_expires_at <= utcnow():
        raise ValidationError("New deadline must be in the future")

    sig_request = await store.get_request(db, request_id, fresh=True)
    if not await store.update_request_if(
        db,
        request_id,
        SigningRequest.status.in_(OPEN_STATUSES),
        or_(SigningRequest.expires_at.is_(None), SigningRequest.expires_at < new_expires_at),
        expires_at=new_expires_at,
    ):
        current = await store.get_request(db, request_id, fresh=True)
        if current.is_terminal:
            raise _terminal_conflict(current)
        raise ValidationError("New deadline must be later than the current one")

    notified = []
    if sig_request.status != RequestStatus.draft:
        for signer in sig_request.signers:
            if signer.status in AWAITING_SIGNER_STATUSES and await _notify_signer(
                db,
                sig_request,
                signer,
                NotificationKind.deadline_extended,
                dedupe_suffix=new_expires_at.isoformat(),
                expires_at=new_expires_at.isoformat(),
            ):
                notified.append(signer.id)
    await store.record_audit(
        db, request_id, "deadline_extended", details=f"Deadline extended to {new_expires_at.isoformat()}"
    )

    result = TransitionResult(
        request_id=request_id,
        request_status=sig_request.status.value,
        expires_at=new_expires_at,
        notified_signer_ids=notified,
    )
    await store.save_idempotent_result(db, EXTEND_SCOPE, request_id, idempotency_key, result.model_dump_json())
    return result


async def remind_signers(db: AsyncSession, request_id: uuid.UUID, now: Optional[datetime] = None) -> TransitionResult:
    """Nudge the signers who can act now; at most once per cooldown window across all workers."""
    now = now or utcnow()
    sig_request = await store.get_request(db, request_id, fresh=True)
    if sig_request.is_terminal:
        raise _terminal_conflict(sig_request)
    if sig_request.status == RequestStatus.draft:
        raise StateConflictError("Signing request has not been sent", StateConflictError.REQUEST_NOT_SENT)

    cooldown = timedelta(hours=settings.reminder_cooldown_hours)
    if not await store.claim_reminder_slot(db, request_id, now, cooldown):
        current = await store.get_request(db, request_id, fresh=True)
        if current.is_terminal:
            raise _terminal_conflict(current)
        raise StateConflictError(
            f"A reminder was already sent in the last {settings.reminder_cooldown_hours}h",
            StateConflictError.REMINDER_THROTTLED,
        )

    notified = []
    for signer in sequencing.next_eligible_signers(sig_request.signing_mode, sig_request.signers):
        if await _notify_signer(db, sig_request, signer, NotificationKind.reminder, dedupe_suffix=now.isoformat()):
            notified.append(signer.id)
    await store.record_audit(db, request_id, "reminder_sent", details=f"Reminder sent to {len(notified)} signer(s)")
    return TransitionResult(
        request_id=request_id,
        request_status=sig_request.status.value,
        expires_at=sig_request.expires_at,
        notified_signer_ids=notified,
    )


# ── Expiry (driven by the external scheduler) ───────────────────────────────────


async def expire_request(db: AsyncSession, request_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    expired = await store.compare_and_set_status(
        db,
        request_id,
        OPEN_STATUSES,
        RequestStatus.expired,
        SigningRequest.expires_at.is_not(None),
        SigningRequest.expires_at <= now,
        terminated_at=now,
    )
    if expired:
        await store.record_audit(db, request_id, "expired", details="Signing request has expired")
        logger.info("Signing request %s expired", request_id)
    return expired


async def expire_overdue_requests(
    db: AsyncSession, now: Optional[datetime] = None, limit: Optional[int] = None
) -> list[uuid.UUID]:
    now = now or utcnow()
    result = await db.execute(
        select(SigningRequest.id)
        .where(
            SigningRequest.status.in_(OPEN_STATUSES),
            SigningRequest.expires_at.is_not(None),
            SigningRequest.expires_at <= now,
        )
        .limit(limit or settings.worker_batch_size)
    )
    expired = []
    for request_id in result.scalars().all():
        if await expire_request(db, request_id, now):
            expired.append(request_id)
    return expired


# ── Read side ───────────────────────────────────────────────────────────────────


async def get_request(db: AsyncSession, request_id: uuid.UUID) -> SigningRequest:
    return await store.get_request(db, request_id, fresh=True)


async def list_requests(
    db: AsyncSession,
    initiator_id: Optional[uuid.UUID] = None,
    signer_email: Optional[str] = None,
    status: Optional[RequestStatus] = None,
    pagination: Optional[PaginationParams] = None,
) -> PaginatedResponse[SigningRequestResponse]:
    """Requests an initiator sent and/or requests addressed to a signer email.

    Passing both returns the union, so an initiator who is also a signer sees
    each request once.
    """
    query = select(SigningRequest)
    count_query = select(func.count(SigningRequest.id))

    audience = []
    if initiator_id:
        audience.append(SigningRequest.initiator_id == initiator_id)
    if signer_email:
        audience.append(
            SigningRequest.id.in_(select(Signer.request_id).where(Signer.email == signer_email.strip().lower()))
        )
    if audience:
        query = query.where(or_(*audience))
        count_query = count_query.where(or_(*audience))

    if status:
        query = query.where(SigningRequest.status == status)
        count_query = count_query.where(SigningRequest.status == status)

    total = (await db.execute(count_query)).scalar_one()
    pagination = pagination or PaginationParams()
    result = await db.execute(
        query.order_by(SigningRequest.created_at.desc()).offset(pagination.offset).limit(pagination.page_size)
    )
    items = [SigningRequestResponse.model_validate(r) for r in result.scalars().all()]
    return PaginatedResponse[SigningRequestResponse].create(items, total, pagination)


async def get_audit_trail(db: AsyncSession, request_id: uuid.UUID) -> list[SignatureAuditEntryResponse]:
    result = await db.execute(
        select(SignatureAuditEntry)
        .where(SignatureAuditEntry.request_id == request_id)
        .order_by(SignatureAuditEntry.timestamp.asc())
    )
    return [SignatureAuditEntryResponse.model_validate(entry) for entry in result.scalars().all()]


async def get_finalization_job(db: AsyncSession, request_id: uuid.UUID) -> FinalizationJob:
    job = await store.get_finalization_job_for_request(db, request_id)
    if job is None:
        raise RequestNotFound(f"No finalization job for signing request {request_id}")
    return job


# ── Helpers ─────────────────────────────────────────────────────────────────────


async def _notify_signer(
    db: AsyncSession,
    sig_request: SigningRequest,
    signer: Signer,
    kind: NotificationKind,
    dedupe_suffix: Optional[str] = None,
    **extra,
) -> bool:
    dedupe_key = f"{kind.value}:{sig_request.id}:{signer.id}"
    if dedupe_suffix:
        dedupe_key = f"{dedupe_key}:{dedupe_suffix}"
    payload = {"title": sig_request.title, "order": signer.order, "signing_mode": sig_request.signing_mode.value}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return await store.enqueue_notification(
        db,
        request_id=sig_request.id,
        signer_id=signer.id,
        recipient=signer.email,
        kind=kind,
        dedupe_key=dedupe_key,
        payload=payload,
    )
