from celery import Celery

from signflow.config import settings

celery = Celery(
    "signflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.celery_task_always_eager,
)

celery.conf.beat_schedule = {
    "process-finalization-queue": {
        "task": "signing.process_finalization_queue",
        "schedule": settings.finalization_poll_seconds,
    },
    "dispatch-pending-notifications": {
        "task": "signing.dispatch_pending_notifications",
        "schedule": settings.notification_poll_seconds,
    },
    "expire-overdue-requests": {
        "task": "signing.expire_overdue_requests",
        "schedule": settings.expiry_poll_seconds,
    },
}

celery.autodiscover_tasks(["signflow.signing"], related_name="celery_tasks")
