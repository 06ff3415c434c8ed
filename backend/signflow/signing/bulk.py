import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from signflow.config import settings
from signflow.database import session_scope
from signflow.signing import orchestrator
from signflow.signing.exceptions import SigningError, ValidationError
from signflow.signing.schemas import BulkFailure, BulkOperationResult

logger = logging.getLogger(__name__)


async def _remind(db, request_id: uuid.UUID, **params):
    return await orchestrator.remind_signers(db, request_id)


async def _cancel(db, request_id: uuid.UUID, reason: Optional[str] = None, idempotency_key: Optional[str] = None):
    return await orchestrator.cancel_request(db, request_id, idempotency_key=idempotency_key, reason=reason)


async def _extend_deadline(
    db, request_id: uuid.UUID, new_expires_at: datetime = None, idempotency_key: Optional[str] = None
):
    if new_expires_at is None:
        raise ValidationError("extend_deadline requires new_expires_at")
    return await orchestrator.extend_deadline(db, request_id, new_expires_at, idempotency_key=idempotency_key)


OPERATIONS = {
    "remind": _remind,
    "cancel": _cancel,
    "extend_deadline": _extend_deadline,
}


def _normalise_id(request_id) -> Union[uuid.UUID, str]:
    """Parse an id to a UUID; anything unparseable is kept as text and reported as a failure."""
    if isinstance(request_id, uuid.UUID):
        return request_id
    try:
        return uuid.UUID(str(request_id))
    except ValueError:
        return str(request_id)


class BulkOperationsCoordinator:
    """Applies one operation to many requests, each in its own transaction.

    A failure on one id is recorded in the result and never aborts the rest of
    the batch. At most ``max_concurrency`` ids are in flight at once.
    """

    def __init__(self, session_factory: async_sessionmaker, max_concurrency: Optional[int] = None):
        self.session_factory = session_factory
        self.max_concurrency = max_concurrency or settings.bulk_max_concurrency

    async def run(self, operation: str, request_ids: list, **params) -> BulkOperationResult:
        handler = OPERATIONS.get(operation)
        if handler is None:
            raise ValidationError(f"Unknown bulk operation: {operation}")

        semaphore = asyncio.Semaphore(self.max_concurrency)
        # Per-id idempotency keys derive from the batch key so a retried batch replays cleanly.
        batch_key = params.pop("idempotency_key", None)

        async def apply(request_id) -> Optional[BulkFailure]:
            if not isinstance(request_id, uuid.UUID):
                return BulkFailure(id=request_id, error=f"Invalid signing request id: {request_id!r}")
            async with semaphore:
                id_params = dict(params)
                if batch_key and operation != "remind":
                    id_params["idempotency_key"] = f"{batch_key}:{request_id}"
                try:
                    async with session_scope(self.session_factory) as db:
                        await handler(db, request_id, **id_params)
                except SigningError as exc:
                    logger.info("Bulk %s skipped request %s: %s", operation, request_id, exc.message)
                    return BulkFailure(id=request_id, error=exc.message, code=exc.code)
                except Exception as exc:
                    logger.exception("Bulk %s failed for request %s", operation, request_id)
                    return BulkFailure(id=request_id, error=str(exc) or type(exc).__name__)
                return None

        # Deduplicate while keeping the caller's order.
        unique_ids = list(dict.fromkeys(_normalise_id(request_id) for request_id in request_ids))
        outcomes = await asyncio.gather(*(apply(request_id) for request_id in unique_ids))

        result = BulkOperationResult(operation=operation)
        for request_id, failure in zip(unique_ids, outcomes):
            if failure is None:
                result.succeeded.append(request_id)
            else:
                result.failed.append(failure)
        logger.info(
            "Bulk %s finished: %d succeeded, %d failed", operation, len(result.succeeded), len(result.failed)
        )
        return result
