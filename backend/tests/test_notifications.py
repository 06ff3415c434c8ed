"""
Tests for the notification outbox and its delivery worker.
"""

import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from signflow.common.base_models import utcnow
from signflow.config import settings
from signflow.database import session_scope
from signflow.signing import store
from signflow.signing.exceptions import NotificationError
from signflow.signing.models import Notification, NotificationKind, NotificationStatus
from signflow.signing.notifications import (
    LogNotificationDispatcher,
    NotificationEvent,
    WebhookNotificationDispatcher,
    deliver_notification,
    deliver_pending_notifications,
    get_notification_dispatcher,
    resend_notification,
)


async def _outbox(session_factory, request_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Notification).where(Notification.request_id == request_id).order_by(Notification.created_at)
        )
        return list(result.scalars().all())


class TestOutbox:

    async def test_enqueue_is_deduplicated(self, make_request, session_factory):
        sig_request = await make_request(signer_count=1, send=False)
        signer = sig_request.signers[0]
        async with session_scope(session_factory) as db:
            kwargs = dict(
                request_id=sig_request.id,
                signer_id=signer.id,
                recipient=signer.email,
                kind=NotificationKind.reminder,
                dedupe_key="reminder:once",
                payload={"title": sig_request.title},
            )
            assert await store.enqueue_notification(db, **kwargs) is True
            assert await store.enqueue_notification(db, **kwargs) is False
        assert len(await _outbox(session_factory, sig_request.id)) == 1

    async def test_pending_rows_are_delivered(self, make_request, session_factory, dispatcher):
        sig_request = await make_request(signer_count=2)

        delivered = await deliver_pending_notifications(session_factory, dispatcher)

        assert delivered == 2
        assert {e.recipient for e in dispatcher.events} == {s.email for s in sig_request.signers}
        assert all(e.kind == NotificationKind.signature_requested.value for e in dispatcher.events)
        rows = await _outbox(session_factory, sig_request.id)
        assert all(r.status == NotificationStatus.sent and r.sent_at is not None for r in rows)

        assert await deliver_pending_notifications(session_factory, dispatcher) == 0
        assert len(dispatcher.events) == 2

    async def test_failure_is_rescheduled_with_backoff(self, make_request, session_factory, failing_dispatcher):
        sig_request = await make_request(signer_count=1)
        dispatcher = failing_dispatcher(fail_times=1)

        assert await deliver_pending_notifications(session_factory, dispatcher) == 0
        (row,) = await _outbox(session_factory, sig_request.id)
        assert row.status == NotificationStatus.pending
        assert row.attempts == 1
        assert row.last_error == "relay unavailable"
        assert row.next_attempt_at > utcnow()

        later = utcnow() + timedelta(seconds=settings.notification_backoff_seconds + 1)
        assert await deliver_pending_notifications(session_factory, dispatcher, now=later) == 1
        (row,) = await _outbox(session_factory, sig_request.id)
        assert row.status == NotificationStatus.sent

    async def test_parked_after_max_attempts_and_resend(
        self, make_request, session_factory, dispatcher, failing_dispatcher
    ):
        settings.notification_max_attempts = 1
        sig_request = await make_request(signer_count=1)
        failing = failing_dispatcher(fail_times=100)

        await deliver_pending_notifications(session_factory, failing)
        (row,) = await _outbox(session_factory, sig_request.id)
        assert row.status == NotificationStatus.failed

        async with session_scope(session_factory) as db:
            assert await resend_notification(db, row.id) is True
        async with session_scope(session_factory) as db:
            assert await resend_notification(db, row.id) is False

        assert await deliver_pending_notifications(session_factory, dispatcher) == 1
        (row,) = await _outbox(session_factory, sig_request.id)
        assert row.status == NotificationStatus.sent

    async def test_claimed_row_is_not_delivered_twice(self, make_request, session_factory, dispatcher):
        sig_request = await make_request(signer_count=1)
        (row,) = await _outbox(session_factory, sig_request.id)

        assert await deliver_notification(session_factory, dispatcher, row.id) == NotificationStatus.sent
        assert await deliver_notification(session_factory, dispatcher, row.id) is None
        assert len(dispatcher.events) == 1


class TestDispatchers:

    def _event(self, **overrides):
        import uuid

        data = dict(
            notification_id=uuid.uuid4(),
            request_id=uuid.uuid4(),
            signer_id=uuid.uuid4(),
            recipient="alice@example.com",
            kind="signature_requested",
            payload={"title": "NDA"},
        )
        data.update(overrides)
        return NotificationEvent(**data)

    def test_default_dispatcher_logs(self):
        settings.notification_webhook_url = None
        assert isinstance(get_notification_dispatcher(), LogNotificationDispatcher)

    def test_webhook_dispatcher_when_configured(self):
        settings.notification_webhook_url = "https://hooks.example.com/signflow"
        dispatcher = get_notification_dispatcher()
        assert isinstance(dispatcher, WebhookNotificationDispatcher)
        assert dispatcher.url == "https://hooks.example.com/signflow"

    async def test_webhook_signs_payload(self, monkeypatch):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["body"] = request.content
            return httpx.Response(202)

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport, **kwargs))

        event = self._event()
        result = await WebhookNotificationDispatcher("https://hooks.example.com/n", secret="s3cret").notify(event)

        assert result.delivered is True
        headers = captured["headers"]
        assert headers["Idempotency-Key"] == str(event.notification_id)
        signed = headers["X-Signflow-Timestamp"].encode() + b"." + captured["body"]
        expected = hmac.new(b"s3cret", signed, hashlib.sha256).hexdigest()
        assert headers["X-Signflow-Signature"] == f"sha256={expected}"
        assert json.loads(captured["body"])["recipient"] == "alice@example.com"

    async def test_webhook_error_raises_notification_error(self, monkeypatch):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        real_client = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport, **kwargs))

        with pytest.raises(NotificationError):
            await WebhookNotificationDispatcher("https://hooks.example.com/n").notify(self._event())
