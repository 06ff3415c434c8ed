import uuid
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from signflow.signing.models import SigningMode

# ── Create schemas ──────────────────────────────────────────────────────────────


class SignerCreate(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    order: Optional[int] = Field(default=None, ge=1)


class SigningRequestCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    document_ref: str = Field(min_length=1, max_length=1000)
    signing_mode: SigningMode = SigningMode.parallel
    message: Optional[str] = None
    expires_at: Optional[datetime] = None
    signers: list[SignerCreate] = Field(default_factory=list)
    send: bool = False


class SignatureInput(BaseModel):
    signature_type: Literal["drawn", "typed", "uploaded"] = "typed"
    signature_data: str = Field(min_length=1)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)


# ── Operation results ───────────────────────────────────────────────────────────


class SignResult(BaseModel):
    request_id: uuid.UUID
    signer_id: uuid.UUID
    signer_status: str
    signed_at: datetime
    artifact_ref: str
    artifact_sha256: str
    completed_signers: int
    total_signers: int
    request_status: str
    finalization_job_id: Optional[uuid.UUID] = None


class DeclineResult(BaseModel):
    request_id: uuid.UUID
    signer_id: uuid.UUID
    request_status: str
    declined_at: datetime
    reason: str
    notified_signer_ids: list[uuid.UUID] = []


class TransitionResult(BaseModel):
    request_id: uuid.UUID
    request_status: str
    expires_at: Optional[datetime] = None
    notified_signer_ids: list[uuid.UUID] = []


# ── Response schemas ────────────────────────────────────────────────────────────


class SignerResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    name: Optional[str]
    email: str
    order: int
    status: str
    viewed_at: Optional[datetime]
    signed_at: Optional[datetime]
    declined_at: Optional[datetime]
    decline_reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class FinalizationJobResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    next_attempt_at: Optional[datetime]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    artifact_ref: Optional[str]
    artifact_sha256: Optional[str]

    model_config = {"from_attributes": True}


class SigningRequestResponse(BaseModel):
    id: uuid.UUID
    initiator_id: uuid.UUID
    title: str
    message: Optional[str]
    document_ref: str
    signing_mode: str
    status: str
    total_signers: int
    completed_signers: int
    final_artifact_ref: Optional[str]
    final_artifact_sha256: Optional[str]
    expires_at: Optional[datetime]
    sent_at: Optional[datetime]
    completed_at: Optional[datetime]
    terminated_at: Optional[datetime]
    signers: list[SignerResponse] = []
    finalization_job: Optional[FinalizationJobResponse] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SignatureAuditEntryResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    signer_id: Optional[uuid.UUID]
    action: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    details: Optional[str]
    timestamp: datetime

    model_config = {"from_attributes": True}


# ── Bulk operations ─────────────────────────────────────────────────────────────


class BulkFailure(BaseModel):
    id: Union[uuid.UUID, str]
    error: str
    code: Optional[str] = None


class BulkOperationResult(BaseModel):
    operation: str
    succeeded: list[uuid.UUID] = []
    failed: list[BulkFailure] = []


# ── Certificate of completion ───────────────────────────────────────────────────


class SignatureArtifact(BaseModel):
    request_id: uuid.UUID
    signer_id: uuid.UUID
    signer_email: str
    signer_order: int
    signature_type: str
    signature_data: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    signed_at: str


class CertificateSignerInfo(BaseModel):
    name: Optional[str]
    email: str
    order: int
    signed_at: Optional[str]
    ip_address: Optional[str]
    artifact_sha256: str


class CertificateOfCompletion(BaseModel):
    request_id: uuid.UUID
    request_title: str
    document_ref: str
    document_hash: str
    signing_mode: str
    signers: list[CertificateSignerInfo]
    created_at: str
    completed_at: str
