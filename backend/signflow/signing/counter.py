import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from signflow.signing import store
from signflow.signing.exceptions import ConcurrencyRaceLost

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IncrementResult:
    new_count: int
    reached_total: bool


async def try_increment(db: AsyncSession, request_id: uuid.UUID, expected_total: int) -> IncrementResult:
    """Count one more completed signer in a single conditional UPDATE … RETURNING.

    Of N concurrent callers on a request with ``total_signers == N`` exactly one
    sees ``reached_total``. Raises ``ConcurrencyRaceLost`` when the request left
    the signable states (or filled up) between the caller's claim and this call.
    """
    outcome = await store.try_increment_completed(db, request_id, expected_total)
    if outcome is None:
        logger.info("Completion increment refused for request %s", request_id)
        raise ConcurrencyRaceLost(f"Signing request {request_id} is no longer accepting signatures")
    new_count, reached_total = outcome
    return IncrementResult(new_count=new_count, reached_total=reached_total)
