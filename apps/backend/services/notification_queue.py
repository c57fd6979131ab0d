"""
Staggered notification queue: building, claiming and advancing entries.

Every write that depends on the request's state is a conditional UPDATE
checked by its affected-row count. Functions that change entries or
request state commit, except build_notification_queue, which runs inside
the caller's transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from backend.database.models import (
    NotificationQueueEntry,
    NotificationStatus,
    SpareRequest,
    SpareRequestStatus,
)
from backend.utils.clock import Clock
from backend.utils.constants import NOTIFICATION_CLAIM_LEASE_SECONDS
from backend.utils.shuffle import Shuffler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedEntry:
    id: int
    member_id: int
    queue_order: int
    generation: int


def _active_request(spare_request_id: int, generation: int):
    """Request is open, notifying, and still on the given generation."""
    return and_(
        SpareRequest.id == spare_request_id,
        SpareRequest.status == SpareRequestStatus.OPEN,
        SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
        SpareRequest.notification_generation == generation,
    )


async def build_notification_queue(
    session: AsyncSession,
    spare_request_id: int,
    generation: int,
    candidate_ids: Sequence[int],
    shuffler: Shuffler,
    clock: Clock,
) -> int:
    """
    Replace the request's queue with a shuffled one for generation.

    Queue order 0..N-1 follows the shuffled order. A non-empty queue puts
    notifications in progress with the first send due now; an empty one
    marks notifications completed. Does not commit.

    Returns:
        Number of queued members, or -1 if the request left open or moved
        past this generation while building
    """
    await session.execute(
        delete(NotificationQueueEntry).where(NotificationQueueEntry.spare_request_id == spare_request_id)
    )

    ordered = shuffler(list(candidate_ids))
    if ordered:
        session.add_all(
            NotificationQueueEntry(
                spare_request_id=spare_request_id,
                member_id=member_id,
                notification_generation=generation,
                queue_order=position,
            )
            for position, member_id in enumerate(ordered)
        )
        await session.flush()
        values = dict(
            notification_status=NotificationStatus.IN_PROGRESS,
            next_notification_at=clock.now(),
            notification_paused=False,
        )
    else:
        values = dict(
            notification_status=NotificationStatus.COMPLETED,
            next_notification_at=None,
            notification_paused=False,
        )

    result = await session.execute(
        update(SpareRequest)
        .where(
            SpareRequest.id == spare_request_id,
            SpareRequest.status == SpareRequestStatus.OPEN,
            SpareRequest.notification_generation == generation,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return -1

    logger.info(
        f"Built notification queue for spare request {spare_request_id} "
        f"(generation {generation}, {len(ordered)} member(s))"
    )
    return len(ordered)


def _claimable(cutoff: datetime):
    return and_(
        NotificationQueueEntry.notified_at.is_(None),
        or_(
            NotificationQueueEntry.claimed_at.is_(None),
            NotificationQueueEntry.claimed_at < cutoff,
        ),
    )


async def claim_next_entry(
    session: AsyncSession,
    spare_request_id: int,
    clock: Clock,
    lease_seconds: int = NOTIFICATION_CLAIM_LEASE_SECONDS,
) -> Optional[ClaimedEntry]:
    """
    Atomically claim the lowest-order claimable entry. Commits.

    An entry is claimable when it was never notified and is either
    unclaimed or held by a claim older than the lease. The claim condition
    is repeated in the outer UPDATE, so of two racing dispatchers only one
    gets a row back.
    """
    now = clock.now()
    cutoff = now - timedelta(seconds=lease_seconds)

    next_id = (
        select(NotificationQueueEntry.id)
        .where(NotificationQueueEntry.spare_request_id == spare_request_id, _claimable(cutoff))
        .order_by(NotificationQueueEntry.queue_order)
        .limit(1)
        .scalar_subquery()
    )
    result = await session.execute(
        update(NotificationQueueEntry)
        .where(NotificationQueueEntry.id == next_id, _claimable(cutoff))
        .values(claimed_at=now)
        .returning(
            NotificationQueueEntry.id,
            NotificationQueueEntry.member_id,
            NotificationQueueEntry.queue_order,
            NotificationQueueEntry.notification_generation,
        )
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    await session.commit()

    if row is None:
        return None
    return ClaimedEntry(id=row[0], member_id=row[1], queue_order=row[2], generation=row[3])


async def count_pending_entries(session: AsyncSession, spare_request_id: int) -> int:
    """Entries not yet notified (claimed or not)."""
    result = await session.execute(
        select(func.count())
        .select_from(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.spare_request_id == spare_request_id,
            NotificationQueueEntry.notified_at.is_(None),
        )
    )
    return result.scalar() or 0


async def mark_entry_notified(session: AsyncSession, entry_id: int, clock: Clock) -> None:
    """Record that an entry's member was notified. Commits."""
    await session.execute(
        update(NotificationQueueEntry)
        .where(NotificationQueueEntry.id == entry_id)
        .values(notified_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def release_claim(session: AsyncSession, entry_id: int) -> None:
    """Give an unsent entry back to the queue. Commits."""
    await session.execute(
        update(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.id == entry_id,
            NotificationQueueEntry.notified_at.is_(None),
        )
        .values(claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def complete_notifications(session: AsyncSession, spare_request_id: int, generation: int) -> bool:
    """Mark an exhausted queue completed. Commits. False if the request moved on."""
    result = await session.execute(
        update(SpareRequest)
        .where(_active_request(spare_request_id, generation))
        .values(notification_status=NotificationStatus.COMPLETED, next_notification_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def schedule_next_notification(
    session: AsyncSession,
    spare_request_id: int,
    generation: int,
    next_at: datetime,
) -> bool:
    """Push the request's next send to next_at. Commits. False if the request moved on."""
    result = await session.execute(
        update(SpareRequest)
        .where(_active_request(spare_request_id, generation))
        .values(next_notification_at=next_at)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def stop_notifications(session: AsyncSession, spare_request_id: int) -> bool:
    """Stop an in-progress run on a request that is no longer open. Commits."""
    result = await session.execute(
        update(SpareRequest)
        .where(
            SpareRequest.id == spare_request_id,
            SpareRequest.status != SpareRequestStatus.OPEN,
            SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
        )
        .values(
            notification_status=NotificationStatus.STOPPED,
            next_notification_at=None,
            notification_paused=False,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1
