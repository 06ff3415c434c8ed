"""Notification outbox delivery.

Orchestrator operations only insert ``Notification`` rows (inside their own
transaction). This module drains the outbox: each row is claimed with a
compare-and-set so several workers can run side by side, handed to a
``NotificationDispatcher`` and then marked sent, rescheduled with backoff, or
parked as ``failed`` for a manual resend. Delivery errors never propagate.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signflow.common.base_models import utcnow
from signflow.config import settings
from signflow.signing.exceptions import NotificationError
from signflow.signing.models import Notification, NotificationStatus

logger = logging.getLogger(__name__)


class NotificationEvent(BaseModel):
    notification_id: uuid.UUID
    request_id: uuid.UUID
    signer_id: Optional[uuid.UUID]
    recipient: str
    kind: str
    payload: dict


@dataclass
class DeliveryResult:
    delivered: bool
    detail: Optional[str] = None


class NotificationDispatcher(ABC):
    @abstractmethod
    async def notify(self, event: NotificationEvent) -> DeliveryResult:
        ...


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs each notification as signed JSON to a webhook (mail relay, n8n, etc.)."""

    def __init__(self, url: str, secret: str = "", timeout: float = 10.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    async def notify(self, event: NotificationEvent) -> DeliveryResult:
        payload_bytes = json.dumps(event.model_dump(mode="json"), sort_keys=True).encode("utf-8")
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "X-Signflow-Timestamp": timestamp,
            "Idempotency-Key": str(event.notification_id),
        }
        if self.secret:
            sign_payload = timestamp.encode("utf-8") + b"." + payload_bytes
            signature = hmac.new(self.secret.encode("utf-8"), sign_payload, hashlib.sha256).hexdigest()
            headers["X-Signflow-Signature"] = f"sha256={signature}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, content=payload_bytes, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"Webhook delivery to {self.url} failed: {exc}") from exc
        return DeliveryResult(delivered=True, detail=f"HTTP {resp.status_code}")


class LogNotificationDispatcher(NotificationDispatcher):
    """Used when no webhook is configured; records the notification in the log only."""

    async def notify(self, event: NotificationEvent) -> DeliveryResult:
        logger.info("Notification %s (%s) for %s", event.notification_id, event.kind, event.recipient)
        return DeliveryResult(delivered=True, detail="logged")


def get_notification_dispatcher() -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(settings.notification_webhook_url, settings.notification_webhook_secret)
    return LogNotificationDispatcher()


def _to_event(notification: Notification) -> NotificationEvent:
    return NotificationEvent(
        notification_id=notification.id,
        request_id=notification.request_id,
        signer_id=notification.signer_id,
        recipient=notification.recipient,
        kind=notification.kind.value,
        payload=json.loads(notification.payload_json or "{}"),
    )


async def _claim(db: AsyncSession, notification_id: uuid.UUID, now: datetime) -> bool:
    stmt = (
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.status == NotificationStatus.pending,
            Notification.next_attempt_at <= now,
        )
        .values(status=NotificationStatus.sending, attempts=Notification.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    return (await db.execute(stmt)).rowcount == 1


async def _record_outcome(
    db: AsyncSession, notification: Notification, error: Optional[str], now: datetime
) -> NotificationStatus:
    if error is None:
        values = dict(status=NotificationStatus.sent, sent_at=now, last_error=None)
    elif notification.attempts >= settings.notification_max_attempts:
        values = dict(status=NotificationStatus.failed, last_error=error)
    else:
        backoff = timedelta(seconds=settings.notification_backoff_seconds * 2 ** (notification.attempts - 1))
        values = dict(status=NotificationStatus.pending, last_error=error, next_attempt_at=now + backoff)
    await db.execute(
        update(Notification)
        .where(Notification.id == notification.id, Notification.status == NotificationStatus.sending)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return values["status"]


async def deliver_notification(
    session_factory: async_sessionmaker,
    dispatcher: NotificationDispatcher,
    notification_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[NotificationStatus]:
    """Deliver one outbox row. Returns its new status, or ``None`` if another worker holds it."""
    now = now or utcnow()
    async with session_factory() as db:
        if not await _claim(db, notification_id, now):
            return None
        await db.commit()
        notification = (
            await db.execute(
                select(Notification)
                .where(Notification.id == notification_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

    error = None
    try:
        result = await dispatcher.notify(_to_event(notification))
        if not result.delivered:
            raise NotificationError(result.detail or "Dispatcher reported the notification as undelivered")
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        logger.warning(
            "Notification %s (%s) to %s failed on attempt %d: %s",
            notification.id,
            notification.kind.value,
            notification.recipient,
            notification.attempts,
            error,
        )

    async with session_factory() as db:
        status = await _record_outcome(db, notification, error, utcnow())
        await db.commit()
    if status == NotificationStatus.failed:
        logger.error("Notification %s parked as failed after %d attempts", notification.id, notification.attempts)
    return status


async def deliver_pending_notifications(
    session_factory: async_sessionmaker,
    dispatcher: Optional[NotificationDispatcher] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Drain due outbox rows; returns how many were delivered."""
    dispatcher = dispatcher or get_notification_dispatcher()
    now = now or utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(Notification.id)
            .where(Notification.status == NotificationStatus.pending, Notification.next_attempt_at <= now)
            .order_by(Notification.created_at.asc())
            .limit(limit or settings.worker_batch_size)
        )
        due = list(result.scalars().all())

    delivered = 0
    for notification_id in due:
        status = await deliver_notification(session_factory, dispatcher, notification_id, now)
        if status == NotificationStatus.sent:
            delivered += 1
    return delivered


async def resend_notification(db: AsyncSession, notification_id: uuid.UUID) -> bool:
    """Put a parked ``failed`` notification back in the outbox."""
    stmt = (
        update(Notification)
        .where(Notification.id == notification_id, Notification.status == NotificationStatus.failed)
        .values(status=NotificationStatus.pending, attempts=0, next_attempt_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return (await db.execute(stmt)).rowcount == 1
