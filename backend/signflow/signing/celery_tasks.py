import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid

import httpx

from signflow.celery_app import celery
from signflow.config import settings
from signflow.database import create_session_factory, create_worker_engine, session_scope
from signflow.signing import orchestrator
from signflow.signing.finalization import FinalizationPipeline
from signflow.signing.notifications import deliver_pending_notifications

logger = logging.getLogger(__name__)


def _run_with_worker_sessions(work):
    """Run ``work(session_factory)`` on a fresh event loop with its own unpooled engine."""

    async def runner():
        engine = create_worker_engine()
        try:
            return await work(create_session_factory(engine))
        finally:
            await engine.dispose()

    return asyncio.run(runner())


@celery.task(name="signing.process_finalization_queue", bind=True, max_retries=3)
def process_finalization_queue(self):
    try:
        succeeded = _run_with_worker_sessions(lambda factory: FinalizationPipeline(factory).process_queue())
        if succeeded:
            logger.info("Finalized %d signing request(s)", succeeded)
        return succeeded
    except Exception as exc:
        logger.error("Finalization queue error: %s", exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


@celery.task(name="signing.run_finalization_job", bind=True, max_retries=3)
def run_finalization_job(self, job_id: str):
    try:
        status = _run_with_worker_sessions(lambda factory: FinalizationPipeline(factory).run(uuid.UUID(job_id)))
        return status.value if status else None
    except Exception as exc:
        logger.error("Finalization job %s error: %s", job_id, exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


@celery.task(name="signing.dispatch_pending_notifications", bind=True, max_retries=3)
def dispatch_pending_notifications(self):
    try:
        return _run_with_worker_sessions(deliver_pending_notifications)
    except Exception as exc:
        logger.error("Notification dispatch error: %s", exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


@celery.task(name="signing.expire_overdue_requests", bind=True, max_retries=3)
def expire_overdue_requests(self):
    async def expire(factory):
        async with session_scope(factory) as db:
            return await orchestrator.expire_overdue_requests(db)

    try:
        expired = _run_with_worker_sessions(expire)
        if expired:
            logger.info("Expired %d overdue signing request(s)", len(expired))
        return [str(request_id) for request_id in expired]
    except Exception as exc:
        logger.error("Expiry sweep error: %s", exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


@celery.task(
    name="signing.push_audit_event",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
)
def push_audit_event(self, payload: dict):
    url = settings.audit_webhook_url
    if not url:
        logger.debug("No audit webhook configured, skipping export of %s", payload.get("event_id"))
        return
    try:
        payload_bytes = json.dumps(payload, sort_keys=True).encode("utf-8")
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "X-Signflow-Timestamp": timestamp,
        }
        if settings.audit_webhook_secret:
            sign_payload = timestamp.encode("utf-8") + b"." + payload_bytes
            signature = hmac.new(
                settings.audit_webhook_secret.encode("utf-8"), sign_payload, hashlib.sha256
            ).hexdigest()
            headers["X-Signflow-Signature"] = f"sha256={signature}"

        with httpx.Client(timeout=10) as client:
            resp = client.post(url, content=payload_bytes, headers=headers)
            resp.raise_for_status()

        logger.info("Audit event %s sent to %s (status %d)", payload.get("event_id"), url, resp.status_code)
    except Exception as exc:
        logger.error("Audit webhook error: %s", exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
