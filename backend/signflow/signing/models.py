import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signflow.common.base_models import GUID, TimestampMixin, UTCDateTime, UUIDBase, utcnow


class SigningMode(str, enum.Enum):
    parallel = "parallel"
    sequential = "sequential"


class RequestStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    declined = "declined"
    expired = "expired"
    cancelled = "cancelled"


TERMINAL_STATUSES = (
    RequestStatus.completed,
    RequestStatus.declined,
    RequestStatus.expired,
    RequestStatus.cancelled,
)
SIGNABLE_STATUSES = (RequestStatus.pending, RequestStatus.in_progress)
OPEN_STATUSES = (RequestStatus.draft, RequestStatus.pending, RequestStatus.in_progress)


class SignerStatus(str, enum.Enum):
    pending = "pending"
    viewed = "viewed"
    signed = "signed"
    declined = "declined"


AWAITING_SIGNER_STATUSES = (SignerStatus.pending, SignerStatus.viewed)


class FinalizationStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class NotificationKind(str, enum.Enum):
    signature_requested = "signature_requested"
    your_turn = "your_turn"
    reminder = "reminder"
    request_declined = "request_declined"
    request_cancelled = "request_cancelled"
    deadline_extended = "deadline_extended"
    request_completed = "request_completed"


class NotificationStatus(str, enum.Enum):
    pending = "pending"
    sending = "sending"
    sent = "sent"
    failed = "failed"


class SigningRequest(UUIDBase, TimestampMixin):
    __tablename__ = "signing_requests"
    __table_args__ = (
        CheckConstraint("completed_signers <= total_signers", name="ck_signing_requests_completed_le_total"),
        CheckConstraint("completed_signers >= 0", name="ck_signing_requests_completed_nonnegative"),
    )

    initiator_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    signing_mode: Mapped[SigningMode] = mapped_column(
        Enum(SigningMode, name="signingmode"),
        default=SigningMode.parallel,
        nullable=False,
    )
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="requeststatus"),
        default=RequestStatus.draft,
        nullable=False,
        index=True,
    )
    total_signers: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_signers: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    final_artifact_ref: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    final_artifact_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    terminated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    signers = relationship(
        "Signer",
        back_populates="signing_request",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="Signer.order",
    )
    finalization_job = relationship("FinalizationJob", lazy="selectin", uselist=False, viewonly=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Signer(UUIDBase):
    __tablename__ = "signers"
    __table_args__ = (UniqueConstraint("request_id", "email", name="uq_signers_request_email"),)

    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[SignerStatus] = mapped_column(
        Enum(SignerStatus, name="signerstatus"),
        default=SignerStatus.pending,
        nullable=False,
    )
    viewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)

    signing_request = relationship("SigningRequest", back_populates="signers")


class SignatureEvent(UUIDBase):
    """Append-only record of a completed signature; replay source for retried calls."""

    __tablename__ = "signature_events"
    __table_args__ = (
        UniqueConstraint("signer_id", "idempotency_key", name="uq_signature_events_signer_key"),
        UniqueConstraint("request_id", "signer_id", name="uq_signature_events_request_signer"),
    )

    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signer_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("signers.id", ondelete="CASCADE"), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    artifact_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class FinalizationJob(UUIDBase, TimestampMixin):
    __tablename__ = "finalization_jobs"

    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status: Mapped[FinalizationStatus] = mapped_column(
        Enum(FinalizationStatus, name="finalizationstatus"),
        default=FinalizationStatus.queued,
        nullable=False,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    artifact_ref: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    artifact_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class Notification(UUIDBase):
    """Outbox row; delivered asynchronously by the notification worker."""

    __tablename__ = "notifications"

    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("signers.id", ondelete="CASCADE"), nullable=True
    )
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind, name="notificationkind"), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, name="notificationstatus"),
        default=NotificationStatus.pending,
        nullable=False,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)


class IdempotencyRecord(UUIDBase):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("scope", "request_id", "idempotency_key", name="uq_idempotency_records_scope"),
    )

    # Response snapshot for replaying decline / cancel / extend calls.
    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)


class SignatureAuditEntry(UUIDBase):
    __tablename__ = "signature_audit_entries"

    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("signers.id", ondelete="CASCADE"), nullable=True, index=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)
