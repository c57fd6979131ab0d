"""
Notification dispatcher: background worker that advances staggered queues.

Every tick, each due request (open, notifications in progress, not paused,
next_notification_at reached) moves forward by at most one queue entry:

1. take the request's due slot by pushing next_notification_at forward
   (conditional, so concurrent dispatchers cannot both act on one slot)
2. claim the lowest-order claimable queue entry
3. complete the run if no entries remain
4. re-read the request and abandon the claim if it left open, was paused,
   or was reissued meanwhile
5. ledger and send each applicable channel
6. mark the entry notified and schedule the next send after the delay

Multiple dispatcher processes may run against the same database.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.database import db
from backend.database.models import NotificationStatus, SpareRequest, SpareRequestStatus
from backend.services import data_service, delivery_ledger, notification_queue, settings_service
from backend.services.notification_sender import NotificationSender, get_notification_sender
from backend.utils.clock import Clock, get_clock
from backend.utils.constants import (
    DEFAULT_NOTIFICATION_DELAY_SECONDS,
    KIND_SPARE_REQUEST,
    NOTIFICATION_CLAIM_LEASE_SECONDS,
    NOTIFICATION_DELAY_SETTING_KEY,
    NOTIFICATION_TICK_SECONDS,
)

logger = logging.getLogger(__name__)

# Repeated connection errors are logged at most once per interval
DB_ERROR_LOG_INTERVAL_SECONDS = 60

NOTIFIED = "notified"
COMPLETED = "completed"
ABANDONED = "abandoned"
SKIPPED = "skipped"


@dataclass
class TickSummary:
    due: int = 0
    notified: int = 0
    completed: int = 0
    abandoned: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


async def get_notification_delay_seconds(session: Optional[AsyncSession]) -> int:
    """Inter-notification delay: settings table, then env var, then default."""
    delay = await settings_service.get_int_setting(
        session,
        NOTIFICATION_DELAY_SETTING_KEY,
        env_var="NOTIFICATION_DELAY_SECONDS",
        default=DEFAULT_NOTIFICATION_DELAY_SECONDS,
    )
    if delay is None or delay < 0:
        return DEFAULT_NOTIFICATION_DELAY_SECONDS
    return delay


class NotificationDispatcher:
    """Background service that sends staggered spare notifications."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        clock: Optional[Clock] = None,
        sender: Optional[NotificationSender] = None,
        delay_seconds: Optional[int] = None,
        tick_seconds: float = NOTIFICATION_TICK_SECONDS,
        lease_seconds: int = NOTIFICATION_CLAIM_LEASE_SECONDS,
    ):
        self._session_factory = session_factory
        self.clock = clock or get_clock()
        self.sender = sender or get_notification_sender()
        self.delay_seconds = delay_seconds
        self.tick_seconds = tick_seconds
        self.lease_seconds = lease_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_db_error_log: Optional[float] = None
        self._suppressed_db_errors = 0

    def _new_session(self) -> AsyncSession:
        # Resolved per call so a swapped db.AsyncSessionLocal is honoured
        factory = self._session_factory or db.AsyncSessionLocal
        return factory()

    def start(self) -> None:
        """Start the background dispatch worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Notification dispatcher started (tick every {self.tick_seconds}s)")

    def stop(self) -> None:
        """Stop the background dispatch worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Notification dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def _poll_loop(self) -> None:
        """Main loop: tick, then wait for the tick interval. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except (OperationalError, InterfaceError) as e:
                self._log_db_error(e)
            except Exception as e:
                logger.error(f"Error in notification dispatcher: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
                break
            except asyncio.TimeoutError:
                pass

    def _log_db_error(self, error: Exception) -> None:
        """Log connection-level errors, throttled; the next tick retries."""
        now = time.monotonic()
        if self._last_db_error_log is not None and now - self._last_db_error_log < DB_ERROR_LOG_INTERVAL_SECONDS:
            self._suppressed_db_errors += 1
            return
        suffix = f" ({self._suppressed_db_errors} similar error(s) suppressed)" if self._suppressed_db_errors else ""
        logger.warning(f"Database unavailable in notification dispatcher, retrying next tick: {error}{suffix}")
        self._last_db_error_log = now
        self._suppressed_db_errors = 0

    async def _delay(self, session: AsyncSession) -> int:
        if self.delay_seconds is not None:
            return self.delay_seconds
        return await get_notification_delay_seconds(session)

    async def due_request_ids(self, session: AsyncSession) -> List[int]:
        result = await session.execute(
            select(SpareRequest.id)
            .where(
                SpareRequest.status == SpareRequestStatus.OPEN,
                SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
                SpareRequest.notification_paused == False,  # noqa: E712
                SpareRequest.next_notification_at.is_not(None),
                SpareRequest.next_notification_at <= self.clock.now(),
            )
            .order_by(SpareRequest.next_notification_at, SpareRequest.id)
        )
        return list(result.scalars().all())

    async def tick(self) -> TickSummary:
        """Advance every due request by at most one queue entry."""
        summary = TickSummary()
        async with self._new_session() as session:
            due_ids = await self.due_request_ids(session)
        summary.due = len(due_ids)

        for request_id in due_ids:
            try:
                summary.record(await self.advance_request(request_id))
            except (OperationalError, InterfaceError):
                raise
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error dispatching notifications for spare request {request_id}: {e}", exc_info=True)

        if self._last_db_error_log is not None:
            logger.info("Notification dispatcher database connection recovered")
            self._last_db_error_log = None
            self._suppressed_db_errors = 0

        if summary.notified or summary.completed or summary.errors:
            logger.info(
                f"Dispatcher tick: {summary.due} due, {summary.notified} notified, "
                f"{summary.completed} completed, {summary.abandoned} abandoned, {summary.errors} error(s)"
            )
        return summary

    async def _take_due_slot(self, session: AsyncSession, request_id: int, delay: int) -> bool:
        now = self.clock.now()
        result = await session.execute(
            update(SpareRequest)
            .where(
                SpareRequest.id == request_id,
                SpareRequest.status == SpareRequestStatus.OPEN,
                SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
                SpareRequest.notification_paused == False,  # noqa: E712
                SpareRequest.next_notification_at <= now,
            )
            .values(next_notification_at=now + timedelta(seconds=delay))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def advance_request(self, request_id: int) -> str:
        """
        Move one request forward by one queue entry.

        Returns:
            One of notified, completed, abandoned or skipped
        """
        async with self._new_session() as session:
            delay = await self._delay(session)
            if not await self._take_due_slot(session, request_id, delay):
                return SKIPPED

            generation_result = await session.execute(
                select(SpareRequest.notification_generation).where(SpareRequest.id == request_id)
            )
            generation = generation_result.scalar_one()

            entry = await notification_queue.claim_next_entry(
                session, request_id, self.clock, lease_seconds=self.lease_seconds
            )
            if entry is None:
                if await notification_queue.count_pending_entries(session, request_id) == 0:
                    if await notification_queue.complete_notifications(session, request_id, generation):
                        logger.info(f"Notification queue exhausted for spare request {request_id}")
                        return COMPLETED
                # Remaining entries are leased by another dispatcher
                return SKIPPED

            spare_request = await data_service.get_spare_request(session, request_id)
            if spare_request.status != SpareRequestStatus.OPEN:
                await notification_queue.release_claim(session, entry.id)
                await notification_queue.stop_notifications(session, request_id)
                logger.info(f"Spare request {request_id} is {spare_request.status.value}; abandoned claim")
                return ABANDONED
            if (
                spare_request.notification_status != NotificationStatus.IN_PROGRESS
                or spare_request.notification_paused
                or spare_request.notification_generation != entry.generation
            ):
                await notification_queue.release_claim(session, entry.id)
                return ABANDONED

            member = await data_service.get_member(session, entry.member_id)
            if member is None:
                logger.warning(f"Queued member {entry.member_id} no longer exists; skipping")
            else:
                await delivery_ledger.deliver_to_member(
                    session,
                    self.sender,
                    self.clock,
                    spare_request,
                    member,
                    entry.generation,
                    KIND_SPARE_REQUEST,
                )

            await notification_queue.mark_entry_notified(session, entry.id, self.clock)
            await notification_queue.schedule_next_notification(
                session, request_id, entry.generation, self.clock.now() + timedelta(seconds=delay)
            )
            logger.info(
                f"Notified member {entry.member_id} (queue position {entry.queue_order}) "
                f"for spare request {request_id}"
            )
            return NOTIFIED


# Global singleton
_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global notification dispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
