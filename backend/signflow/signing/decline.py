"""Decline cascade: terminate a request and tell the signers still waiting on it.

A finalization job is only ever created by the transition to ``completed``,
which is terminal, so an open request never has one. A decline therefore wins
outright while the request is open; once it has completed the decline is
refused (``FINALIZATION_COMPLETE`` when the job already succeeded).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.signing import store
from signflow.signing.models import (
    AWAITING_SIGNER_STATUSES,
    OPEN_STATUSES,
    NotificationKind,
    RequestStatus,
    Signer,
    SigningRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class CascadeOutcome:
    notified_signer_ids: list[uuid.UUID] = field(default_factory=list)


async def guarded_decline(db: AsyncSession, request_id: uuid.UUID, now: datetime) -> bool:
    """draft/pending/in_progress → declined."""
    return await store.compare_and_set_status(
        db,
        request_id,
        OPEN_STATUSES,
        RequestStatus.declined,
        terminated_at=now,
    )


async def run_cascade(
    db: AsyncSession,
    sig_request: SigningRequest,
    declined_by: Signer,
    reason: str,
    was_sent: bool = True,
) -> CascadeOutcome:
    """Notify every signer still pending or viewing that the request was declined.

    Must run in the same transaction as a successful ``guarded_decline``.
    Signers of a request that was never sent heard nothing about it and are
    not told. Notifications are keyed per (request, signer), so re-running the
    cascade never sends a second "declined by" message.
    """
    outcome = CascadeOutcome()
    if not was_sent:
        return outcome

    result = await db.execute(
        select(Signer)
        .where(
            Signer.request_id == sig_request.id,
            Signer.id != declined_by.id,
            Signer.status.in_(AWAITING_SIGNER_STATUSES),
        )
        .order_by(Signer.order)
        .execution_options(populate_existing=True)
    )
    for signer in result.scalars().all():
        queued = await store.enqueue_notification(
            db,
            request_id=sig_request.id,
            signer_id=signer.id,
            recipient=signer.email,
            kind=NotificationKind.request_declined,
            dedupe_key=f"request_declined:{sig_request.id}:{signer.id}",
            payload={
                "title": sig_request.title,
                "declined_by": declined_by.email,
                "reason": reason,
            },
        )
        if queued:
            outcome.notified_signer_ids.append(signer.id)
    if outcome.notified_signer_ids:
        logger.info("Decline of request %s notified %d signer(s)", sig_request.id, len(outcome.notified_signer_ids))
    return outcome
