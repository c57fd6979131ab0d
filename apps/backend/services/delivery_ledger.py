"""
Delivery ledger: the idempotency record for every notification attempt.

A send happens only after this process wins the INSERT of the ledger row
keyed by (request, member, generation, channel, kind). A conflict on that
key means the tuple was already attempted, so the channel is skipped.
Rows are never deleted.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from backend.database.db import dialect_insert
from backend.database.models import DeliveryChannel, Member, NotificationDelivery, SpareRequest
from backend.services.notification_sender import (
    NotificationSender,
    TransientSendError,
    applicable_channels,
)
from backend.utils.clock import Clock
from backend.utils.constants import NOTIFICATION_CLAIM_LEASE_SECONDS

logger = logging.getLogger(__name__)

# error_message column is truncated to this length
MAX_ERROR_MESSAGE_LENGTH = 500

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryKey:
    spare_request_id: int
    member_id: int
    generation: int
    channel: DeliveryChannel
    kind: str

    def where_clause(self):
        return and_(
            NotificationDelivery.spare_request_id == self.spare_request_id,
            NotificationDelivery.member_id == self.member_id,
            NotificationDelivery.notification_generation == self.generation,
            NotificationDelivery.channel == self.channel,
            NotificationDelivery.kind == self.kind,
        )


@dataclass
class DeliveryOutcome:
    channel: DeliveryChannel
    status: str  # sent, failed or skipped
    error: Optional[str] = None


async def claim_delivery(
    session: AsyncSession,
    key: DeliveryKey,
    clock: Clock,
    lease_seconds: int = NOTIFICATION_CLAIM_LEASE_SECONDS,
) -> bool:
    """
    Try to take the right to send for key. Commits.

    Returns True when this caller inserted the row, or reclaimed a row whose
    earlier claimant never recorded an outcome within the lease. Rows with a
    sent_at or failed_at are never reclaimed.
    """
    now = clock.now()
    stmt = (
        dialect_insert(session, NotificationDelivery)
        .values(
            spare_request_id=key.spare_request_id,
            member_id=key.member_id,
            notification_generation=key.generation,
            channel=key.channel,
            kind=key.kind,
            claimed_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[
                "spare_request_id",
                "member_id",
                "notification_generation",
                "channel",
                "kind",
            ]
        )
        .returning(NotificationDelivery.id)
    )
    result = await session.execute(stmt)
    inserted_id = result.scalar_one_or_none()
    await session.commit()
    if inserted_id is not None:
        return True

    cutoff = now - timedelta(seconds=lease_seconds)
    reclaim = await session.execute(
        update(NotificationDelivery)
        .where(
            key.where_clause(),
            NotificationDelivery.sent_at.is_(None),
            NotificationDelivery.failed_at.is_(None),
            NotificationDelivery.claimed_at < cutoff,
        )
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if reclaim.rowcount == 1:
        logger.warning(
            f"Reclaimed stale delivery claim for request {key.spare_request_id}, "
            f"member {key.member_id}, channel {key.channel.value}"
        )
        return True
    return False


async def mark_sent(session: AsyncSession, key: DeliveryKey, clock: Clock) -> None:
    """Record a successful send. Commits."""
    await session.execute(
        update(NotificationDelivery)
        .where(key.where_clause())
        .values(sent_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def mark_failed(session: AsyncSession, key: DeliveryKey, clock: Clock, error: str) -> None:
    """Record a failed send; sent_at stays NULL. Commits."""
    await session.execute(
        update(NotificationDelivery)
        .where(key.where_clause())
        .values(failed_at=clock.now(), error_message=error[:MAX_ERROR_MESSAGE_LENGTH])
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def get_deliveries(
    session: AsyncSession,
    spare_request_id: int,
    generation: Optional[int] = None,
) -> List[NotificationDelivery]:
    """Ledger rows for a request, optionally restricted to one generation."""
    query = select(NotificationDelivery).where(NotificationDelivery.spare_request_id == spare_request_id)
    if generation is not None:
        query = query.where(NotificationDelivery.notification_generation == generation)
    result = await session.execute(query.order_by(NotificationDelivery.id))
    return list(result.scalars().all())


async def deliver_to_member(
    session: AsyncSession,
    sender: NotificationSender,
    clock: Clock,
    spare_request: SpareRequest,
    member: Member,
    generation: int,
    kind: str,
    comment: Optional[str] = None,
) -> List[DeliveryOutcome]:
    """
    Attempt every applicable channel for one member.

    Failures are isolated per channel: a failed or raising send is recorded
    in the ledger and logged, and the remaining channels still go out.
    """
    outcomes = []
    for channel in applicable_channels(member):
        key = DeliveryKey(spare_request.id, member.id, generation, channel, kind)
        if not await claim_delivery(session, key, clock):
            outcomes.append(DeliveryOutcome(channel, SKIPPED))
            continue

        try:
            ok = await sender.send(channel, member, kind, spare_request, generation, comment=comment)
            if not ok:
                raise TransientSendError(f"{channel.value} sender reported failure")
        except Exception as e:
            logger.warning(
                f"Failed to send {kind} {channel.value} notification for spare request "
                f"{spare_request.id} to member {member.id}: {e}"
            )
            await mark_failed(session, key, clock, str(e) or e.__class__.__name__)
            outcomes.append(DeliveryOutcome(channel, FAILED, str(e)))
            continue

        await mark_sent(session, key, clock)
        outcomes.append(DeliveryOutcome(channel, SENT))
    return outcomes
