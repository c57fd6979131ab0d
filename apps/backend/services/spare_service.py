"""
Spare request lifecycle: create, respond, cancel-sparing, reissue, pause,
unpause and cancel.

Request status and notification state change only through conditional
UPDATEs whose affected-row count is checked; a guard that no longer holds
raises ConflictError instead of silently succeeding. Notification sends
never raise through these functions: outcomes land in the delivery ledger.
"""

import logging
from datetime import date, time
from typing import Dict, List, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.database import db
from backend.database.models import (
    NotificationDelivery,
    NotificationQueueEntry,
    NotificationStatus,
    SparePosition,
    SpareRequest,
    SpareRequestInvitation,
    SpareRequestStatus,
    SpareRequestType,
    SpareResponse,
)
from backend.services import data_service, delivery_ledger, notification_queue
from backend.services.candidate_service import CandidateSelector, get_candidate_selector
from backend.services.notification_sender import NotificationSender, get_notification_sender
from backend.services.task_supervisor import TaskSupervisor, get_task_supervisor
from backend.utils.clock import Clock, get_clock
from backend.utils.constants import (
    IMMEDIATE_NOTIFICATION_WINDOW_HOURS,
    KIND_SPARE_CANCELLATION,
    KIND_SPARE_FILLED,
    KIND_SPARE_REQUEST,
)
from backend.utils.datetime_utils import as_utc, game_start_utc, hours_until
from backend.utils.shuffle import Shuffler, get_shuffler

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000

IMMEDIATE = "immediate"
STAGGERED = "staggered"


class SpareRequestError(ValueError):
    """Base class for spare request failures."""


class ValidationError(SpareRequestError):
    """Malformed or unacceptable input."""


class NotFoundError(SpareRequestError):
    """Spare request or member does not exist."""


class ConflictError(SpareRequestError):
    """The request is not in the state the operation requires."""


class ForbiddenError(SpareRequestError):
    """The caller may not perform this operation on this request."""


async def _load_request(session: AsyncSession, spare_request_id: int) -> SpareRequest:
    spare_request = await data_service.get_spare_request(session, spare_request_id)
    if spare_request is None:
        raise NotFoundError("Spare request not found")
    return spare_request


def _require_requester(spare_request: SpareRequest, member_id: int) -> None:
    if spare_request.requester_id != member_id:
        raise ForbiddenError("Only the requester can manage this spare request")


def uses_immediate_path(spare_request: SpareRequest, now) -> bool:
    """Private requests, and public ones for games under the window, notify everyone at once."""
    if spare_request.request_type == SpareRequestType.PRIVATE:
        return True
    start = game_start_utc(spare_request.game_date, spare_request.game_time)
    return hours_until(start, now) < IMMEDIATE_NOTIFICATION_WINDOW_HOURS


def _clean_message(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message must be {MAX_MESSAGE_LENGTH} characters or fewer")
    return message or None


async def _fan_out(
    session: AsyncSession,
    spare_request_id: int,
    generation: int,
    candidate_ids: Sequence[int],
    clock: Clock,
    sender: NotificationSender,
) -> int:
    """
    Notify every candidate now, without a queue.

    The in-progress marker is committed together with any pending changes
    of the caller before the first send.

    Returns:
        Number of candidates attempted
    """
    try:
        started = await session.execute(
            update(SpareRequest)
            .where(
                SpareRequest.id == spare_request_id,
                SpareRequest.status == SpareRequestStatus.OPEN,
                SpareRequest.notification_generation == generation,
            )
            .values(
                notification_status=NotificationStatus.IN_PROGRESS,
                next_notification_at=None,
                notification_paused=False,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    if started.rowcount != 1:
        return 0

    spare_request = await data_service.get_spare_request(session, spare_request_id)
    members = await data_service.get_members_by_ids(session, candidate_ids)
    for member_id in candidate_ids:
        member = members.get(member_id)
        if member is None:
            continue
        await delivery_ledger.deliver_to_member(
            session, sender, clock, spare_request, member, generation, KIND_SPARE_REQUEST
        )

    values = dict(notification_status=NotificationStatus.COMPLETED, next_notification_at=None)
    if candidate_ids:
        values["notifications_sent_at"] = clock.now()
    await session.execute(
        update(SpareRequest)
        .where(
            SpareRequest.id == spare_request_id,
            SpareRequest.status == SpareRequestStatus.OPEN,
            SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
            SpareRequest.notification_generation == generation,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(
        f"Immediate notification of {len(candidate_ids)} member(s) for spare request "
        f"{spare_request_id} (generation {generation})"
    )
    return len(candidate_ids)


async def _start_notifications(
    session: AsyncSession,
    spare_request_id: int,
    generation: int,
    candidate_ids: Sequence[int],
    immediate: bool,
    clock: Clock,
    shuffler: Shuffler,
    sender: NotificationSender,
) -> Dict:
    """
    Take the immediate or the staggered path for generation.

    The caller's uncommitted changes (a new request, a generation bump) are
    committed in the same transaction as the new queue or the in-progress
    marker; a failure before that commit rolls all of them back.
    """
    if immediate:
        sent = await _fan_out(session, spare_request_id, generation, candidate_ids, clock, sender)
        path, queued = IMMEDIATE, 0
    else:
        try:
            queued = await notification_queue.build_notification_queue(
                session, spare_request_id, generation, candidate_ids, shuffler, clock
            )
        except Exception:
            await session.rollback()
            raise
        if queued < 0:
            await session.rollback()
            raise ConflictError("Spare request changed while notifications were being queued")
        await session.commit()
        path, sent = STAGGERED, 0

    spare_request = await _load_request(session, spare_request_id)
    return {
        "spare_request_id": spare_request_id,
        "notification_path": path,
        "notifications_sent": sent,
        "notifications_queued": queued,
        "notification_status": spare_request.effective_notification_status.value,
        "notification_generation": generation,
    }


async def create_spare_request(
    session: AsyncSession,
    requester_id: int,
    league_id: int,
    game_date: date,
    game_time: time,
    request_type: SpareRequestType = SpareRequestType.PUBLIC,
    position: SparePosition = SparePosition.UNSPECIFIED,
    message: Optional[str] = None,
    invited_member_ids: Optional[Sequence[int]] = None,
    clock: Optional[Clock] = None,
    selector: Optional[CandidateSelector] = None,
    shuffler: Optional[Shuffler] = None,
    sender: Optional[NotificationSender] = None,
) -> Dict:
    """
    Create a spare request and start notifying candidates.

    Private requests and public requests for games less than
    IMMEDIATE_NOTIFICATION_WINDOW_HOURS away notify every candidate
    immediately; other public requests are queued for the dispatcher.

    Returns:
        Dict with spare_request_id, notification_path, notifications_sent,
        notifications_queued and notification_status

    Raises:
        NotFoundError: Requester, league or an invitee does not exist
        ForbiddenError: Requester is a spare-only member
        ValidationError: Game already started, bad message, or a private
            request without invitees
    """
    clock = clock or get_clock()
    request_type = SpareRequestType(request_type)
    position = SparePosition(position)

    requester = await data_service.get_member(session, requester_id)
    if requester is None:
        raise NotFoundError("Member not found")
    if requester.spare_only:
        raise ForbiddenError("Spare-only members cannot request spares")
    if await data_service.get_league(session, league_id) is None:
        raise NotFoundError("League not found")

    if game_start_utc(game_date, game_time) <= clock.now():
        raise ValidationError("Game has already started")
    message = _clean_message(message)

    invitees: List[int] = []
    if request_type == SpareRequestType.PRIVATE:
        invitees = sorted(set(invited_member_ids or []) - {requester_id})
        if not invitees:
            raise ValidationError("Private spare requests need at least one invited member")
        found = await data_service.get_members_by_ids(session, invitees)
        missing = [m for m in invitees if m not in found]
        if missing:
            raise NotFoundError(f"Invited member(s) not found: {missing}")

    spare_request = SpareRequest(
        requester_id=requester_id,
        league_id=league_id,
        game_date=game_date,
        game_time=game_time,
        position=position,
        message=message,
        request_type=request_type,
        status=SpareRequestStatus.OPEN,
        notification_generation=0,
        notification_status=NotificationStatus.NONE,
        notification_paused=False,
        had_cancellation=False,
    )
    selector = selector or get_candidate_selector()
    try:
        session.add(spare_request)
        await session.flush()
        spare_request_id = spare_request.id
        session.add_all(
            SpareRequestInvitation(spare_request_id=spare_request_id, member_id=member_id)
            for member_id in invitees
        )
        await session.flush()
        candidate_ids = await selector.select_candidates(session, spare_request)
        immediate = uses_immediate_path(spare_request, clock.now())
    except Exception:
        await session.rollback()
        raise

    result = await _start_notifications(
        session,
        spare_request_id,
        0,
        candidate_ids,
        immediate,
        clock,
        shuffler or get_shuffler(),
        sender or get_notification_sender(),
    )
    logger.info(f"Member {requester_id} created {request_type.value} spare request {spare_request_id}")
    return result


async def _notify_requester(
    spare_request_id: int,
    kind: str,
    comment: Optional[str],
    clock: Clock,
    sender: NotificationSender,
) -> None:
    """Lifecycle notice to the requester; runs under the task supervisor with its own session."""
    async with db.AsyncSessionLocal() as session:
        spare_request = await data_service.get_spare_request(session, spare_request_id)
        if spare_request is None:
            return
        requester = await data_service.get_member(session, spare_request.requester_id)
        if requester is None:
            return
        await delivery_ledger.deliver_to_member(
            session,
            sender,
            clock,
            spare_request,
            requester,
            spare_request.notification_generation,
            kind,
            comment=comment,
        )


async def respond_to_spare_request(
    session: AsyncSession,
    spare_request_id: int,
    responder_id: int,
    comment: Optional[str] = None,
    clock: Optional[Clock] = None,
    sender: Optional[NotificationSender] = None,
    supervisor: Optional[TaskSupervisor] = None,
) -> SpareRequest:
    """
    Fill an open request. Stops any notification run.

    Raises:
        NotFoundError: Request or responder missing
        ValidationError: Requester responding to their own request
        ForbiddenError: Responder not invited to a private request
        ConflictError: Request is not open
    """
    clock = clock or get_clock()
    spare_request = await _load_request(session, spare_request_id)
    if await data_service.get_member(session, responder_id) is None:
        raise NotFoundError("Member not found")
    if spare_request.requester_id == responder_id:
        raise ValidationError("You cannot respond to your own spare request")
    if spare_request.request_type == SpareRequestType.PRIVATE:
        if not await data_service.is_invited(session, spare_request_id, responder_id):
            raise ForbiddenError("You were not invited to this spare request")

    now = clock.now()
    result = await session.execute(
        update(SpareRequest)
        .where(SpareRequest.id == spare_request_id, SpareRequest.status == SpareRequestStatus.OPEN)
        .values(
            status=SpareRequestStatus.FILLED,
            filled_by_member_id=responder_id,
            filled_at=now,
            had_cancellation=False,
            notification_status=NotificationStatus.STOPPED,
            next_notification_at=None,
            notification_paused=False,
            fill_count=SpareRequest.fill_count + 1,
        )
        .returning(SpareRequest.fill_count)
        .execution_options(synchronize_session=False)
    )
    fill_number = result.scalar_one_or_none()
    if fill_number is None:
        await session.rollback()
        raise ConflictError("Spare request is no longer open")

    comment = (comment or "").strip() or None
    session.add(SpareResponse(spare_request_id=spare_request_id, member_id=responder_id, comment=comment))
    await session.commit()
    logger.info(f"Member {responder_id} filled spare request {spare_request_id}")

    (supervisor or get_task_supervisor()).spawn(
        _notify_requester(
            spare_request_id,
            f"{KIND_SPARE_FILLED}:{fill_number}",
            comment,
            clock,
            sender or get_notification_sender(),
        ),
        name=f"spare-filled-{spare_request_id}",
    )
    return await _load_request(session, spare_request_id)


async def cancel_sparing(
    session: AsyncSession,
    spare_request_id: int,
    member_id: int,
    comment: str,
    clock: Optional[Clock] = None,
    sender: Optional[NotificationSender] = None,
    supervisor: Optional[TaskSupervisor] = None,
) -> SpareRequest:
    """
    The filling member backs out; the request reopens.

    Notifications are not resumed: notification_status stays stopped until
    the requester reissues.

    Raises:
        ValidationError: No comment given
        NotFoundError: Request missing
        ConflictError: Request is not filled
        ForbiddenError: Caller is not the member who filled it
    """
    clock = clock or get_clock()
    comment = (comment or "").strip()
    if not comment:
        raise ValidationError("A comment is required when cancelling")

    spare_request = await _load_request(session, spare_request_id)
    if spare_request.status != SpareRequestStatus.FILLED:
        raise ConflictError("Spare request is not filled")
    if spare_request.filled_by_member_id != member_id:
        raise ForbiddenError("Only the member who filled this request can cancel")

    result = await session.execute(
        update(SpareRequest)
        .where(
            SpareRequest.id == spare_request_id,
            SpareRequest.status == SpareRequestStatus.FILLED,
            SpareRequest.filled_by_member_id == member_id,
        )
        .values(
            status=SpareRequestStatus.OPEN,
            filled_by_member_id=None,
            filled_at=None,
            had_cancellation=True,
        )
        .returning(SpareRequest.fill_count)
        .execution_options(synchronize_session=False)
    )
    fill_number = result.scalar_one_or_none()
    if fill_number is None:
        await session.rollback()
        raise ConflictError("Spare request is not filled by you")

    await session.execute(
        delete(SpareResponse).where(
            SpareResponse.spare_request_id == spare_request_id,
            SpareResponse.member_id == member_id,
        )
    )
    await session.commit()
    logger.info(f"Member {member_id} cancelled sparing for spare request {spare_request_id}")

    (supervisor or get_task_supervisor()).spawn(
        _notify_requester(
            spare_request_id,
            f"{KIND_SPARE_CANCELLATION}:{fill_number}",
            comment,
            clock,
            sender or get_notification_sender(),
        ),
        name=f"spare-cancellation-{spare_request_id}",
    )
    return await _load_request(session, spare_request_id)


async def reissue_spare_request(
    session: AsyncSession,
    spare_request_id: int,
    requester_id: int,
    message: Optional[str] = None,
    clock: Optional[Clock] = None,
    selector: Optional[CandidateSelector] = None,
    shuffler: Optional[Shuffler] = None,
    sender: Optional[NotificationSender] = None,
) -> Dict:
    """
    Start a fresh notification run under a new generation.

    The queue is rebuilt from a new candidate selection. Ledger rows of
    earlier generations stay but no longer block sends.

    Raises:
        NotFoundError: Request missing
        ForbiddenError: Caller is not the requester, or is spare-only
        ConflictError: Request is not open
    """
    clock = clock or get_clock()
    spare_request = await _load_request(session, spare_request_id)
    _require_requester(spare_request, requester_id)
    requester = await data_service.get_member(session, requester_id)
    if requester is None or requester.spare_only:
        raise ForbiddenError("Spare-only members cannot request spares")
    if spare_request.status != SpareRequestStatus.OPEN:
        raise ConflictError("Only open spare requests can be reissued")

    values = dict(
        notification_generation=SpareRequest.notification_generation + 1,
        had_cancellation=False,
        notification_status=NotificationStatus.NONE,
        next_notification_at=None,
        notification_paused=False,
        notifications_sent_at=None,
    )
    if message is not None:
        values["message"] = _clean_message(message)

    selector = selector or get_candidate_selector()
    try:
        candidate_ids = await selector.select_candidates(session, spare_request)
        immediate = uses_immediate_path(spare_request, clock.now())

        result = await session.execute(
            update(SpareRequest)
            .where(
                SpareRequest.id == spare_request_id,
                SpareRequest.status == SpareRequestStatus.OPEN,
                SpareRequest.requester_id == requester_id,
            )
            .values(**values)
            .returning(SpareRequest.notification_generation)
            .execution_options(synchronize_session=False)
        )
        generation = result.scalar_one_or_none()
        if generation is None:
            raise ConflictError("Only open spare requests can be reissued")

        await session.execute(
            delete(NotificationQueueEntry).where(NotificationQueueEntry.spare_request_id == spare_request_id)
        )
    except Exception:
        await session.rollback()
        raise

    # Generation bump commits together with the new run
    result = await _start_notifications(
        session,
        spare_request_id,
        generation,
        candidate_ids,
        immediate,
        clock,
        shuffler or get_shuffler(),
        sender or get_notification_sender(),
    )
    logger.info(f"Spare request {spare_request_id} reissued as generation {generation}")
    return result


async def _set_paused(session: AsyncSession, spare_request_id: int, requester_id: int, paused: bool,
                      clock: Clock) -> SpareRequest:
    spare_request = await _load_request(session, spare_request_id)
    _require_requester(spare_request, requester_id)

    values = dict(notification_paused=paused)
    if not paused:
        # Next tick acts on the request
        values["next_notification_at"] = clock.now()
    result = await session.execute(
        update(SpareRequest)
        .where(
            SpareRequest.id == spare_request_id,
            SpareRequest.status == SpareRequestStatus.OPEN,
            SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError("Notifications are not in progress for this spare request")
    await session.commit()
    logger.info(f"Notifications {'paused' if paused else 'resumed'} for spare request {spare_request_id}")
    return await _load_request(session, spare_request_id)


async def pause_notifications(session: AsyncSession, spare_request_id: int, requester_id: int,
                              clock: Optional[Clock] = None) -> SpareRequest:
    """Pause the notification run. ConflictError unless open and in progress; pausing twice is a no-op."""
    return await _set_paused(session, spare_request_id, requester_id, True, clock or get_clock())


async def unpause_notifications(session: AsyncSession, spare_request_id: int, requester_id: int,
                                clock: Optional[Clock] = None) -> SpareRequest:
    """Resume the run with the next send due now. ConflictError unless open and in progress."""
    return await _set_paused(session, spare_request_id, requester_id, False, clock or get_clock())


async def cancel_spare_request(session: AsyncSession, spare_request_id: int, requester_id: int) -> SpareRequest:
    """
    Cancel an open request (terminal). An in-progress run is stopped.

    Raises:
        NotFoundError: Request missing
        ForbiddenError: Caller is not the requester
        ConflictError: Request is not open
    """
    spare_request = await _load_request(session, spare_request_id)
    _require_requester(spare_request, requester_id)

    result = await session.execute(
        update(SpareRequest)
        .where(SpareRequest.id == spare_request_id, SpareRequest.status == SpareRequestStatus.OPEN)
        .values(
            status=SpareRequestStatus.CANCELLED,
            cancelled_by_member_id=requester_id,
            notification_status=case(
                (
                    SpareRequest.notification_status == NotificationStatus.IN_PROGRESS,
                    NotificationStatus.STOPPED,
                ),
                else_=SpareRequest.notification_status,
            ),
            next_notification_at=None,
            notification_paused=False,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError("Only open spare requests can be cancelled")
    await session.commit()
    logger.info(f"Spare request {spare_request_id} cancelled by member {requester_id}")
    return await _load_request(session, spare_request_id)


async def get_notification_status_report(session: AsyncSession, spare_request_id: int) -> Dict:
    """Progress of the current generation's notification run."""
    spare_request = await _load_request(session, spare_request_id)
    generation = spare_request.notification_generation

    queue_result = await session.execute(
        select(
            func.count(NotificationQueueEntry.id),
            func.count(NotificationQueueEntry.notified_at),
        ).where(NotificationQueueEntry.spare_request_id == spare_request_id)
    )
    queued, notified = queue_result.one()

    delivery_result = await session.execute(
        select(
            func.count(NotificationDelivery.sent_at),
            func.count(NotificationDelivery.failed_at),
        ).where(
            NotificationDelivery.spare_request_id == spare_request_id,
            NotificationDelivery.notification_generation == generation,
            NotificationDelivery.kind == KIND_SPARE_REQUEST,
        )
    )
    sent, failed = delivery_result.one()

    next_at = as_utc(spare_request.next_notification_at)
    sent_at = as_utc(spare_request.notifications_sent_at)
    return {
        "spare_request_id": spare_request_id,
        "status": spare_request.status.value,
        "notification_status": spare_request.effective_notification_status.value,
        "notification_generation": generation,
        "notification_paused": spare_request.notification_paused,
        "next_notification_at": next_at.isoformat() if next_at else None,
        "notifications_sent_at": sent_at.isoformat() if sent_at else None,
        "members_queued": queued or 0,
        "members_notified": notified or 0,
        "deliveries_sent": sent or 0,
        "deliveries_failed": failed or 0,
    }
