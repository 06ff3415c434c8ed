"""Signing orchestrator schema

Revision ID: 0001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_uuid = postgresql.UUID(as_uuid=True).with_variant(sa.String(36), "sqlite")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # ── Requests & signers ────────────────────────────────────────────

    op.create_table(
        "signing_requests",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column("initiator_id", _uuid, nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("document_ref", sa.String(1000), nullable=False),
        sa.Column("signing_mode", sa.Enum("parallel", "sequential", name="signingmode"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "draft", "pending", "in_progress", "completed", "declined", "expired", "cancelled",
                name="requeststatus",
            ),
            nullable=False,
            index=True,
        ),
        sa.Column("total_signers", sa.Integer(), nullable=False),
        sa.Column("completed_signers", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("final_artifact_ref", sa.String(1000), nullable=True),
        sa.Column("final_artifact_sha256", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("completed_signers <= total_signers", name="ck_signing_requests_completed_le_total"),
        sa.CheckConstraint("completed_signers >= 0", name="ck_signing_requests_completed_nonnegative"),
    )

    op.create_table(
        "signers",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum("pending", "viewed", "signed", "declined", name="signerstatus"), nullable=False),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("request_id", "email", name="uq_signers_request_email"),
    )

    # ── Signature events & idempotency ────────────────────────────────

    op.create_table(
        "signature_events",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("signer_id", _uuid, sa.ForeignKey("signers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("artifact_ref", sa.String(1000), nullable=False),
        sa.Column("artifact_sha256", sa.String(64), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("signer_id", "idempotency_key", name="uq_signature_events_signer_key"),
        sa.UniqueConstraint("request_id", "signer_id", name="uq_signature_events_request_signer"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column("scope", sa.String(50), nullable=False),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("scope", "request_id", "idempotency_key", name="uq_idempotency_records_scope"),
    )

    # ── Finalization ──────────────────────────────────────────────────

    op.create_table(
        "finalization_jobs",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column(
            "status",
            sa.Enum("queued", "running", "succeeded", "failed", "cancelled", name="finalizationstatus"),
            nullable=False,
            index=True,
        ),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("artifact_ref", sa.String(1000), nullable=True),
        sa.Column("artifact_sha256", sa.String(64), nullable=True),
        *_timestamps(),
    )

    # ── Notification outbox ───────────────────────────────────────────

    op.create_table(
        "notifications",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("signer_id", _uuid, sa.ForeignKey("signers.id", ondelete="CASCADE"), nullable=True),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "signature_requested", "your_turn", "reminder", "request_declined", "request_cancelled",
                "deadline_extended", "request_completed",
                name="notificationkind",
            ),
            nullable=False,
        ),
        sa.Column("dedupe_key", sa.String(255), nullable=False, unique=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sending", "sent", "failed", name="notificationstatus"),
            nullable=False,
            index=True,
        ),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── Audit trail ───────────────────────────────────────────────────

    op.create_table(
        "signature_audit_entries",
        sa.Column("id", _uuid, primary_key=True),
        sa.Column(
            "request_id", _uuid, sa.ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("signer_id", _uuid, sa.ForeignKey("signers.id", ondelete="CASCADE"), nullable=True, index=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("signature_audit_entries")
    op.drop_table("notifications")
    op.drop_table("finalization_jobs")
    op.drop_table("idempotency_records")
    op.drop_table("signature_events")
    op.drop_table("signers")
    op.drop_table("signing_requests")
    for enum_name in (
        "notificationstatus",
        "notificationkind",
        "finalizationstatus",
        "signerstatus",
        "requeststatus",
        "signingmode",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
