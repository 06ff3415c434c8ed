"""Signer eligibility for sequential signing.

A signer at order ``n`` may sign iff exactly ``n - 1`` signers of the request
are already signed. The rule is enforced inside the same UPDATE that marks the
signer signed (``claim_signature``), so two signers can never both pass the
check before either commits. ``is_eligible`` and ``next_eligible_signers``
apply the same rule to an already-loaded signer list; they are advisory and
used for early rejection and next-signer notification only.
"""

import uuid
from datetime import datetime
from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from signflow.signing import store
from signflow.signing.models import (
    AWAITING_SIGNER_STATUSES,
    SIGNABLE_STATUSES,
    Signer,
    SignerStatus,
    SigningMode,
    SigningRequest,
)


def signed_count(signers: Sequence[Signer]) -> int:
    return sum(1 for s in signers if s.status == SignerStatus.signed)


def is_eligible(mode: SigningMode, signers: Sequence[Signer], signer: Signer) -> bool:
    if signer.status not in AWAITING_SIGNER_STATUSES:
        return False
    if mode == SigningMode.parallel:
        return True
    return signed_count(signers) == signer.order - 1


def next_eligible_signers(mode: SigningMode, signers: Sequence[Signer]) -> list[Signer]:
    return [s for s in signers if is_eligible(mode, signers, s)]


def _eligibility_clause(request_id: uuid.UUID):
    other = aliased(Signer)
    signed_before = (
        select(func.count(other.id))
        .where(other.request_id == request_id, other.status == SignerStatus.signed)
        .scalar_subquery()
    )
    return signed_before == Signer.order - 1


def _request_open_clause(request_id: uuid.UUID, now: datetime):
    return (
        select(SigningRequest.id)
        .where(
            SigningRequest.id == request_id,
            SigningRequest.status.in_(SIGNABLE_STATUSES),
            or_(SigningRequest.expires_at.is_(None), SigningRequest.expires_at > now),
        )
        .exists()
    )


async def claim_signature(
    db: AsyncSession,
    request_id: uuid.UUID,
    signer_id: uuid.UUID,
    mode: SigningMode,
    now: datetime,
) -> bool:
    """Mark the signer signed iff the request is open and the signer may act now.

    One conditional UPDATE: request status, expiry, signer status and (in
    sequential mode) ordering are all checked by the statement that writes.
    """
    conditions = [
        Signer.request_id == request_id,
        Signer.status.in_(AWAITING_SIGNER_STATUSES),
        _request_open_clause(request_id, now),
    ]
    if mode == SigningMode.sequential:
        conditions.append(_eligibility_clause(request_id))
    return await store.update_signer_if(
        db,
        signer_id,
        *conditions,
        status=SignerStatus.signed,
        signed_at=now,
    )
