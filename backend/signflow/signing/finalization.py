"""Finalization: merge signer artifacts into the signed package.

A ``FinalizationJob`` row is created exactly once per request, by the signer
whose increment reached the total. Workers move it through

    queued → running → succeeded
                    ↘ failed → (requeue_due_jobs / retry_finalization) → queued

Each attempt claims the job with a compare-and-set that bumps ``attempts`` and
sets a lease. Every later write is conditioned on ``status == running`` and the
claimed attempt number, so a worker that lost its lease (or whose job was
cancelled by a decline) cannot overwrite anything. The merge is deterministic:
rerunning it over the same stored artifacts yields byte-identical output.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signflow.common.base_models import utcnow
from signflow.config import settings
from signflow.signing import store
from signflow.signing.documents import DocumentStore, final_document_key, get_document_store
from signflow.signing.exceptions import FinalizationError, RequestNotFound, StateConflictError
from signflow.signing.models import (
    FinalizationJob,
    FinalizationStatus,
    NotificationKind,
    RequestStatus,
    SigningRequest,
)
from signflow.signing.schemas import CertificateOfCompletion, CertificateSignerInfo

logger = logging.getLogger(__name__)


def _canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass
class SignedArtifact:
    signer_id: uuid.UUID
    name: Optional[str]
    email: str
    order: int
    signed_at: Optional[datetime]
    artifact_sha256: str
    content: bytes


class DocumentMerger(ABC):
    @abstractmethod
    async def merge(self, sig_request: SigningRequest, source: bytes, artifacts: list[SignedArtifact]) -> bytes:
        ...


class CertificateMerger(DocumentMerger):
    """Bundles the source document hash, a certificate of completion and every signer artifact."""

    async def merge(self, sig_request: SigningRequest, source: bytes, artifacts: list[SignedArtifact]) -> bytes:
        document_hash = hashlib.sha256(source).hexdigest()
        signatures = []
        signer_info = []
        for artifact in sorted(artifacts, key=lambda a: (a.order, a.email)):
            body = json.loads(artifact.content)
            signer_info.append(
                CertificateSignerInfo(
                    name=artifact.name,
                    email=artifact.email,
                    order=artifact.order,
                    signed_at=artifact.signed_at.isoformat() if artifact.signed_at else None,
                    ip_address=body.get("ip_address"),
                    artifact_sha256=artifact.artifact_sha256,
                )
            )
            signatures.append(
                {"signer_id": str(artifact.signer_id), "artifact_sha256": artifact.artifact_sha256, "artifact": body}
            )

        certificate = CertificateOfCompletion(
            request_id=sig_request.id,
            request_title=sig_request.title,
            document_ref=sig_request.document_ref,
            document_hash=document_hash,
            signing_mode=sig_request.signing_mode.value,
            signers=signer_info,
            created_at=sig_request.created_at.isoformat(),
            completed_at=sig_request.completed_at.isoformat() if sig_request.completed_at else "",
        )
        return _canonical_json(
            {
                "certificate": certificate.model_dump(mode="json"),
                "document": {"ref": sig_request.document_ref, "sha256": document_hash},
                "signatures": signatures,
            }
        )


def _request_completed(request_id):
    return (
        select(SigningRequest.id)
        .where(SigningRequest.id == request_id, SigningRequest.status == RequestStatus.completed)
        .exists()
    )


class FinalizationPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        document_store: Optional[DocumentStore] = None,
        merger: Optional[DocumentMerger] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.document_store = document_store or get_document_store()
        self.merger = merger or CertificateMerger()
        self.timeout_seconds = timeout_seconds or settings.finalization_attempt_timeout_seconds

    async def run(self, job_id: uuid.UUID, now: Optional[datetime] = None) -> Optional[FinalizationStatus]:
        """Run one attempt. Returns the job's resulting status, or ``None`` if it could not be claimed."""
        now = now or utcnow()
        job = await self._claim(job_id, now)
        if job is None:
            return None
        attempt = job.attempts
        logger.info("Finalization job %s attempt %d started for request %s", job.id, attempt, job.request_id)

        try:
            artifact_ref, artifact_sha256 = await asyncio.wait_for(
                self._produce(job.request_id), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            error = f"Finalization attempt timed out after {self.timeout_seconds}s"
            return await self._record_failure(job, attempt, error)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            return await self._record_failure(job, attempt, error)

        return await self._persist(job, attempt, artifact_ref, artifact_sha256)

    async def process_queue(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Requeue due jobs, then run queued ones. Returns how many succeeded."""
        now = now or utcnow()
        async with self.session_factory() as db:
            await requeue_due_jobs(db, now)
            result = await db.execute(
                select(FinalizationJob.id)
                .where(FinalizationJob.status == FinalizationStatus.queued)
                .order_by(FinalizationJob.created_at.asc())
                .limit(limit or settings.worker_batch_size)
            )
            queued = list(result.scalars().all())
            await db.commit()

        succeeded = 0
        for job_id in queued:
            # Each claim takes its own lease from the time it actually starts.
            if await self.run(job_id) == FinalizationStatus.succeeded:
                succeeded += 1
        return succeeded

    async def _claim(self, job_id: uuid.UUID, now: datetime) -> Optional[FinalizationJob]:
        async with self.session_factory() as db:
            claimed = await store.transition_job(
                db,
                job_id,
                FinalizationStatus.queued,
                FinalizationStatus.running,
                _request_completed(FinalizationJob.request_id),
                attempts=FinalizationJob.attempts + 1,
                started_at=now,
                finished_at=None,
                lease_expires_at=now + timedelta(seconds=settings.finalization_lease_seconds),
            )
            if not claimed:
                return None
            await db.commit()
            return await store.get_finalization_job(db, job_id)

    async def collect(self, request_id: uuid.UUID) -> tuple[SigningRequest, bytes, list[SignedArtifact]]:
        """Load the request, its source document and every verified signer artifact."""
        async with self.session_factory() as db:
            sig_request = await store.get_request(db, request_id, fresh=True)
            events = {e.signer_id: e for e in await store.list_signature_events(db, request_id)}

        artifacts = []
        for signer in sig_request.signers:
            sig_event = events.get(signer.id)
            if sig_event is None:
                raise FinalizationError(f"Missing signature artifact for signer {signer.id}")
            content = await self.document_store.get(sig_event.artifact_ref)
            if hashlib.sha256(content).hexdigest() != sig_event.artifact_sha256:
                raise FinalizationError(f"Signature artifact for signer {signer.id} does not match its hash")
            artifacts.append(
                SignedArtifact(
                    signer_id=signer.id,
                    name=signer.name,
                    email=signer.email,
                    order=signer.order,
                    signed_at=signer.signed_at,
                    artifact_sha256=sig_event.artifact_sha256,
                    content=content,
                )
            )

        source = await self.document_store.get(sig_request.document_ref)
        return sig_request, source, artifacts

    async def _produce(self, request_id: uuid.UUID) -> tuple[str, str]:
        sig_request, source, artifacts = await self.collect(request_id)
        data = await self.merger.merge(sig_request, source, artifacts)
        sha256 = hashlib.sha256(data).hexdigest()
        ref = await self.document_store.put(final_document_key(request_id), data, "application/json")
        return ref, sha256

    async def _persist(
        self, job: FinalizationJob, attempt: int, artifact_ref: str, artifact_sha256: str
    ) -> FinalizationStatus:
        now = utcnow()
        async with self.session_factory() as db:
            # Cooperative cancellation: only a job still running this attempt on a completed request may publish.
            if not await store.transition_job(
                db,
                job.id,
                FinalizationStatus.running,
                FinalizationStatus.succeeded,
                FinalizationJob.attempts == attempt,
                _request_completed(job.request_id),
                artifact_ref=artifact_ref,
                artifact_sha256=artifact_sha256,
                finished_at=now,
                lease_expires_at=None,
                next_attempt_at=None,
                last_error=None,
            ):
                await db.rollback()
                current = await store.get_finalization_job(db, job.id)
                logger.warning(
                    "Discarding finalization output for request %s: job %s is now %s",
                    job.request_id,
                    job.id,
                    current.status.value if current else "missing",
                )
                return current.status if current else FinalizationStatus.cancelled

            await store.update_request_if(
                db,
                job.request_id,
                SigningRequest.status == RequestStatus.completed,
                final_artifact_ref=artifact_ref,
                final_artifact_sha256=artifact_sha256,
            )
            sig_request = await store.get_request(db, job.request_id, fresh=True)
            for signer in sig_request.signers:
                await store.enqueue_notification(
                    db,
                    request_id=sig_request.id,
                    signer_id=signer.id,
                    recipient=signer.email,
                    kind=NotificationKind.request_completed,
                    dedupe_key=f"request_completed:{sig_request.id}:{signer.id}",
                    payload={"title": sig_request.title, "final_artifact_sha256": artifact_sha256},
                )
            await store.record_audit(
                db, job.request_id, "finalized", details=f"Signed package stored (sha256 {artifact_sha256})"
            )
            await db.commit()

        logger.info("Finalization job %s succeeded for request %s", job.id, job.request_id)
        return FinalizationStatus.succeeded

    async def _record_failure(self, job: FinalizationJob, attempt: int, error: str) -> FinalizationStatus:
        now = utcnow()
        backoff = timedelta(seconds=settings.finalization_backoff_seconds * 2 ** (attempt - 1))
        async with self.session_factory() as db:
            recorded = await store.transition_job(
                db,
                job.id,
                FinalizationStatus.running,
                FinalizationStatus.failed,
                FinalizationJob.attempts == attempt,
                last_error=error,
                next_attempt_at=now + backoff,
                finished_at=now,
                lease_expires_at=None,
            )
            if recorded:
                await store.record_audit(db, job.request_id, "finalization_failed", details=error)
            await db.commit()

        if recorded:
            logger.warning("Finalization job %s attempt %d failed: %s", job.id, attempt, error)
            return FinalizationStatus.failed
        logger.info("Finalization job %s attempt %d no longer owns the job; failure not recorded", job.id, attempt)
        async with self.session_factory() as db:
            current = await store.get_finalization_job(db, job.id)
        return current.status if current else FinalizationStatus.cancelled


async def requeue_due_jobs(db: AsyncSession, now: Optional[datetime] = None) -> list[uuid.UUID]:
    """Scheduled retries: failed jobs past their backoff, and running jobs whose worker lost its lease."""
    now = now or utcnow()
    stale = and_(FinalizationJob.status == FinalizationStatus.running, FinalizationJob.lease_expires_at <= now)

    await db.execute(
        update(FinalizationJob)
        .where(stale, FinalizationJob.attempts >= FinalizationJob.max_attempts)
        .values(
            status=FinalizationStatus.failed,
            last_error="Finalization worker lease expired",
            finished_at=now,
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        update(FinalizationJob)
        .where(
            FinalizationJob.attempts < FinalizationJob.max_attempts,
            or_(
                and_(FinalizationJob.status == FinalizationStatus.failed, FinalizationJob.next_attempt_at <= now),
                stale,
            ),
        )
        .values(status=FinalizationStatus.queued, lease_expires_at=None, next_attempt_at=now)
        .returning(FinalizationJob.id)
        .execution_options(synchronize_session=False)
    )
    requeued = list(result.scalars().all())
    if requeued:
        logger.info("Requeued %d finalization job(s)", len(requeued))
    return requeued


async def retry_finalization(db: AsyncSession, request_id: uuid.UUID) -> FinalizationJob:
    """Manual retry of a failed job, allowed even after its attempts are exhausted."""
    job = await store.get_finalization_job_for_request(db, request_id)
    if job is None:
        raise RequestNotFound(f"No finalization job for signing request {request_id}")
    if not await store.transition_job(
        db, job.id, FinalizationStatus.failed, FinalizationStatus.queued, next_attempt_at=utcnow()
    ):
        current = await store.get_finalization_job(db, job.id)
        if current.status == FinalizationStatus.succeeded:
            raise StateConflictError("Finalization already succeeded", StateConflictError.FINALIZATION_COMPLETE)
        raise StateConflictError(
            f"Only failed finalization jobs can be retried (job is {current.status.value})",
            StateConflictError.INVALID_TRANSITION,
        )
    logger.info("Finalization job %s for request %s queued for manual retry", job.id, request_id)
    return await store.get_finalization_job(db, job.id)


async def cancel_finalization(db: AsyncSession, request_id: uuid.UUID, reason: str) -> uuid.UUID:
    """Operator stop for an unfinished job. A running attempt discards its output when it tries to persist."""
    job = await store.get_finalization_job_for_request(db, request_id)
    if job is None:
        raise RequestNotFound(f"No finalization job for signing request {request_id}")
    job_id = await store.cancel_unfinished_jobs(db, request_id, reason)
    if job_id is None:
        current = await store.get_finalization_job(db, job.id)
        if current.status == FinalizationStatus.succeeded:
            raise StateConflictError("Finalization already succeeded", StateConflictError.FINALIZATION_COMPLETE)
        raise StateConflictError(
            f"Finalization job is already {current.status.value}", StateConflictError.INVALID_TRANSITION
        )
    await store.record_audit(db, request_id, "finalization_cancelled", details=reason)
    logger.info("Finalization job %s for request %s cancelled: %s", job_id, request_id, reason)
    return job_id
