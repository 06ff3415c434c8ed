"""
Tests for the finalization pipeline.

Covers the happy path, failure with backoff and retry, deterministic output,
timeouts, cooperative cancellation and stale-lease recovery.
"""

import asyncio
import hashlib
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from signflow.common.base_models import utcnow
from signflow.config import settings
from signflow.database import session_scope
from signflow.signing import store
from signflow.signing.documents import final_document_key
from signflow.signing.exceptions import RequestNotFound, StateConflictError
from signflow.signing.finalization import (
    CertificateMerger,
    FinalizationPipeline,
    cancel_finalization,
    requeue_due_jobs,
    retry_finalization,
)
from signflow.signing.models import (
    FinalizationStatus,
    Notification,
    NotificationKind,
    RequestStatus,
)


class FlakyMerger(CertificateMerger):
    """Fails the first ``failures`` merges, then behaves normally."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = 0

    async def merge(self, sig_request, source, artifacts):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("merge backend unavailable")
        return await super().merge(sig_request, source, artifacts)


class SlowMerger(CertificateMerger):
    async def merge(self, sig_request, source, artifacts):
        await asyncio.sleep(2)
        return await super().merge(sig_request, source, artifacts)


@pytest.fixture
def completed_request(make_request, sign):
    async def _complete(signer_count: int = 2):
        sig_request = await make_request(signer_count=signer_count)
        result = None
        for signer in sig_request.signers:
            result = await sign(sig_request.id, signer.id)
        return sig_request, result.finalization_job_id

    return _complete


async def _job(session_factory, request_id):
    async with session_factory() as db:
        return await store.get_finalization_job_for_request(db, request_id)


async def _completion_notifications(session_factory, request_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Notification).where(
                Notification.request_id == request_id,
                Notification.kind == NotificationKind.request_completed,
            )
        )
        return list(result.scalars().all())


class TestFinalizationPipeline:

    async def test_success(self, completed_request, session_factory, document_store, fetch):
        sig_request, job_id = await completed_request()
        pipeline = FinalizationPipeline(session_factory, document_store)

        status = await pipeline.run(job_id)

        assert status == FinalizationStatus.succeeded
        final = await fetch(sig_request.id)
        assert final.status == RequestStatus.completed
        assert final.final_artifact_ref == final_document_key(sig_request.id)
        package = document_store.objects[final.final_artifact_ref]
        assert hashlib.sha256(package).hexdigest() == final.final_artifact_sha256

        body = json.loads(package)
        assert body["document"]["sha256"] == hashlib.sha256(document_store.objects[sig_request.document_ref]).hexdigest()
        assert [s["email"] for s in body["certificate"]["signers"]] == [s.email for s in sig_request.signers]

        job = await _job(session_factory, sig_request.id)
        assert job.status == FinalizationStatus.succeeded
        assert job.attempts == 1
        assert job.artifact_sha256 == final.final_artifact_sha256

        notices = await _completion_notifications(session_factory, sig_request.id)
        assert sorted(n.signer_id for n in notices) == sorted(s.id for s in sig_request.signers)

    async def test_second_run_is_a_noop(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        pipeline = FinalizationPipeline(session_factory, document_store)
        await pipeline.run(job_id)

        assert await pipeline.run(job_id) is None
        assert len(await _completion_notifications(session_factory, sig_request.id)) == 2

    async def test_failure_backs_off_and_retry_matches_fresh_run(
        self, completed_request, session_factory, document_store, fetch
    ):
        sig_request, job_id = await completed_request()
        flaky = FinalizationPipeline(session_factory, document_store, merger=FlakyMerger(failures=1))

        assert await flaky.run(job_id) == FinalizationStatus.failed
        job = await _job(session_factory, sig_request.id)
        assert job.last_error == "merge backend unavailable"
        assert job.next_attempt_at > utcnow()
        failed_state = await fetch(sig_request.id)
        assert failed_state.status == RequestStatus.completed
        assert failed_state.final_artifact_ref is None
        assert failed_state.finalization_job.status == FinalizationStatus.failed

        # Not due yet: the scheduled requeue leaves it alone.
        async with session_scope(session_factory) as db:
            assert await requeue_due_jobs(db) == []
        async with session_scope(session_factory) as db:
            assert await requeue_due_jobs(db, now=job.next_attempt_at + timedelta(seconds=1)) == [job.id]

        assert await flaky.run(job_id) == FinalizationStatus.succeeded
        retried = await fetch(sig_request.id)

        fresh_request, source, artifacts = await FinalizationPipeline(session_factory, document_store).collect(
            sig_request.id
        )
        expected = await CertificateMerger().merge(fresh_request, source, artifacts)
        assert retried.final_artifact_sha256 == hashlib.sha256(expected).hexdigest()
        assert len(await _completion_notifications(session_factory, sig_request.id)) == 2
        assert (await _job(session_factory, sig_request.id)).attempts == 2

    async def test_manual_retry(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        await FinalizationPipeline(session_factory, document_store, merger=FlakyMerger(failures=1)).run(job_id)

        async with session_scope(session_factory) as db:
            job = await retry_finalization(db, sig_request.id)
        assert job.status == FinalizationStatus.queued

        status = await FinalizationPipeline(session_factory, document_store).run(job_id)
        assert status == FinalizationStatus.succeeded

    async def test_manual_retry_of_succeeded_job_conflicts(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        await FinalizationPipeline(session_factory, document_store).run(job_id)
        with pytest.raises(StateConflictError) as exc_info:
            async with session_scope(session_factory) as db:
                await retry_finalization(db, sig_request.id)
        assert exc_info.value.code == StateConflictError.FINALIZATION_COMPLETE

    async def test_exhausted_retries_leave_request_completed(
        self, completed_request, session_factory, document_store, fetch
    ):
        settings.finalization_max_attempts = 1
        sig_request, job_id = await completed_request(signer_count=1)
        pipeline = FinalizationPipeline(session_factory, document_store, merger=FlakyMerger(failures=10))

        assert await pipeline.run(job_id) == FinalizationStatus.failed
        async with session_scope(session_factory) as db:
            assert await requeue_due_jobs(db, now=utcnow() + timedelta(days=1)) == []

        final = await fetch(sig_request.id)
        assert final.status == RequestStatus.completed
        assert final.signers[0].signed_at is not None
        assert final.finalization_job.status == FinalizationStatus.failed

    async def test_timeout_marks_attempt_failed(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        pipeline = FinalizationPipeline(session_factory, document_store, merger=SlowMerger(), timeout_seconds=0.3)

        assert await pipeline.run(job_id) == FinalizationStatus.failed
        job = await _job(session_factory, sig_request.id)
        assert "timed out" in job.last_error

    async def test_cancelled_job_discards_output(self, completed_request, session_factory, document_store, fetch):
        sig_request, job_id = await completed_request()

        class CancellingMerger(CertificateMerger):
            async def merge(self, sig_request, source, artifacts):
                data = await super().merge(sig_request, source, artifacts)
                async with session_scope(session_factory) as db:
                    await cancel_finalization(db, sig_request.id, "cancelled by operator")
                return data

        status = await FinalizationPipeline(session_factory, document_store, merger=CancellingMerger()).run(job_id)

        assert status == FinalizationStatus.cancelled
        final = await fetch(sig_request.id)
        assert final.final_artifact_ref is None
        assert await _completion_notifications(session_factory, sig_request.id) == []

    async def test_stale_lease_is_recovered(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        async with session_scope(session_factory) as db:
            await store.transition_job(
                db,
                job_id,
                FinalizationStatus.queued,
                FinalizationStatus.running,
                attempts=1,
                lease_expires_at=utcnow() - timedelta(minutes=1),
            )

        pipeline = FinalizationPipeline(session_factory, document_store)
        assert await pipeline.process_queue() == 1
        job = await _job(session_factory, sig_request.id)
        assert job.status == FinalizationStatus.succeeded
        assert job.attempts == 2

    async def test_process_queue_skips_cancelled_job(self, completed_request, session_factory, document_store, fetch):
        sig_request, job_id = await completed_request()
        async with session_scope(session_factory) as db:
            assert await cancel_finalization(db, sig_request.id, "wrong document") == job_id

        assert await FinalizationPipeline(session_factory, document_store).process_queue() == 0

        job = await _job(session_factory, sig_request.id)
        assert job.status == FinalizationStatus.cancelled
        assert job.attempts == 0
        assert job.last_error == "wrong document"
        assert (await fetch(sig_request.id)).final_artifact_ref is None

    async def test_each_claim_takes_a_fresh_lease(self, completed_request, session_factory, document_store):
        sig_request, _ = await completed_request()
        leases = []

        class LeaseRecordingMerger(CertificateMerger):
            async def merge(self, sig_request, source, artifacts):
                leases.append((await _job(session_factory, sig_request.id)).lease_expires_at)
                return await super().merge(sig_request, source, artifacts)

        pipeline = FinalizationPipeline(session_factory, document_store, merger=LeaseRecordingMerger())
        started = utcnow()
        assert await pipeline.process_queue(now=started - timedelta(hours=1)) == 1

        assert leases[0] >= started + timedelta(seconds=settings.finalization_lease_seconds)


class TestCancelFinalization:

    async def test_cancel_after_success_conflicts(self, completed_request, session_factory, document_store):
        sig_request, job_id = await completed_request()
        await FinalizationPipeline(session_factory, document_store).run(job_id)

        with pytest.raises(StateConflictError) as exc_info:
            async with session_scope(session_factory) as db:
                await cancel_finalization(db, sig_request.id, "too late")
        assert exc_info.value.code == StateConflictError.FINALIZATION_COMPLETE

    async def test_cancel_twice_conflicts(self, completed_request, session_factory):
        sig_request, _ = await completed_request()
        async with session_scope(session_factory) as db:
            await cancel_finalization(db, sig_request.id, "stop")

        with pytest.raises(StateConflictError) as exc_info:
            async with session_scope(session_factory) as db:
                await cancel_finalization(db, sig_request.id, "stop again")
        assert exc_info.value.code == StateConflictError.INVALID_TRANSITION

    async def test_cancel_without_job(self, make_request, session_factory):
        sig_request = await make_request()
        with pytest.raises(RequestNotFound):
            async with session_scope(session_factory) as db:
                await cancel_finalization(db, sig_request.id, "nothing to stop")
