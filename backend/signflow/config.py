from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "signflow"
    app_version: str = "1.0.0"
    environment: str = "production"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://signflow:signflow@db:5432/signflow"

    # MinIO (document store)
    minio_endpoint: str = "minio:9000"
    minio_root_user: str = "signflow"
    minio_root_password: str = "CHANGE_ME"
    minio_bucket: str = "signflow-documents"
    minio_use_ssl: bool = False

    # Redis / Celery
    redis_url: str = "redis://redis:6379/0"
    celery_task_always_eager: bool = False

    # Signing requests
    default_expiry_days: int = 30

    # Finalization
    finalization_attempt_timeout_seconds: float = 120.0
    finalization_max_attempts: int = 5
    finalization_backoff_seconds: int = 30
    finalization_lease_seconds: int = 600

    # Notifications
    notification_max_attempts: int = 5
    notification_backoff_seconds: int = 60
    notification_webhook_url: Optional[str] = None
    notification_webhook_secret: str = ""

    # Audit export
    audit_webhook_url: Optional[str] = None
    audit_webhook_secret: str = ""

    # Bulk operations / reminders
    bulk_max_concurrency: int = 8
    reminder_cooldown_hours: int = 24

    # Workers
    worker_batch_size: int = 50
    finalization_poll_seconds: float = 5.0
    notification_poll_seconds: float = 5.0
    expiry_poll_seconds: float = 300.0

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
