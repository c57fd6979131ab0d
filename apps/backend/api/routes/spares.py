"""Spare request route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth_dependencies import require_member
from backend.api.routes import CREATE_SPARE_LIMIT, RESPOND_LIMIT, limiter
from backend.database.db import get_db_session
from backend.database.models import SpareRequest, SpareRequestType
from backend.models.schemas import (
    CancelSparingRequest,
    NotificationStatusResponse,
    ReissueRequest,
    SpareRequestCreate,
    SpareRequestCreateResponse,
    SpareRequestResponse,
    SpareRespondRequest,
)
from backend.services import auth_service, data_service, spare_service
from backend.utils.datetime_utils import as_utc

logger = logging.getLogger(__name__)
router = APIRouter()


def spare_request_payload(spare_request: SpareRequest) -> dict:
    return {
        "id": spare_request.id,
        "requester_id": spare_request.requester_id,
        "league_id": spare_request.league_id,
        "game_date": spare_request.game_date,
        "game_time": spare_request.game_time,
        "position": spare_request.position,
        "message": spare_request.message,
        "request_type": spare_request.request_type,
        "status": spare_request.status.value,
        "filled_by_member_id": spare_request.filled_by_member_id,
        "filled_at": as_utc(spare_request.filled_at),
        "cancelled_by_member_id": spare_request.cancelled_by_member_id,
        "had_cancellation": spare_request.had_cancellation,
        "notification_generation": spare_request.notification_generation,
        "notification_status": spare_request.effective_notification_status.value,
        "notification_paused": spare_request.notification_paused,
        "next_notification_at": as_utc(spare_request.next_notification_at),
        "notifications_sent_at": as_utc(spare_request.notifications_sent_at),
    }


def to_http_error(error: spare_service.SpareRequestError) -> HTTPException:
    """Map a service failure to its HTTP status."""
    if isinstance(error, spare_service.NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, spare_service.ForbiddenError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, spare_service.ConflictError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


@router.post("/api/spares", response_model=SpareRequestCreateResponse)
@limiter.limit(CREATE_SPARE_LIMIT)
async def create_spare_request(
    request: Request,
    payload: SpareRequestCreate,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a spare request and start notifying candidates."""
    try:
        return await spare_service.create_spare_request(
            session,
            requester_id=member["id"],
            league_id=payload.league_id,
            game_date=payload.game_date,
            game_time=payload.game_time,
            request_type=payload.request_type,
            position=payload.position,
            message=payload.message,
            invited_member_ids=payload.invited_member_ids,
        )
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error creating spare request: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error creating spare request: {str(e)}")


@router.get("/api/spares/{spare_request_id}", response_model=SpareRequestResponse)
async def get_spare_request(
    spare_request_id: int,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a spare request. Private requests are visible to the requester, invitees and admins."""
    spare_request = await data_service.get_spare_request(session, spare_request_id)
    if spare_request is None:
        raise HTTPException(status_code=404, detail="Spare request not found")
    if (
        spare_request.request_type == SpareRequestType.PRIVATE
        and spare_request.requester_id != member["id"]
        and not member.get("is_admin")
        and not await data_service.is_invited(session, spare_request_id, member["id"])
    ):
        raise HTTPException(status_code=403, detail="You were not invited to this spare request")
    return spare_request_payload(spare_request)


@router.get("/api/spares/{spare_request_id}/notification-status", response_model=NotificationStatusResponse)
async def get_notification_status(
    spare_request_id: int,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Progress of the request's current notification run (requester or admin only)."""
    spare_request = await data_service.get_spare_request(session, spare_request_id)
    if spare_request is None:
        raise HTTPException(status_code=404, detail="Spare request not found")
    if spare_request.requester_id != member["id"] and not member.get("is_admin"):
        raise HTTPException(status_code=403, detail="Only the requester can view notification status")
    try:
        return await spare_service.get_notification_status_report(session, spare_request_id)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)


@router.post("/api/spares/{spare_request_id}/respond", response_model=SpareRequestResponse)
@limiter.limit(RESPOND_LIMIT)
async def respond_to_spare_request(
    request: Request,
    spare_request_id: int,
    payload: SpareRespondRequest,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Accept (fill) a spare request."""
    try:
        spare_request = await spare_service.respond_to_spare_request(
            session, spare_request_id, member["id"], comment=payload.comment
        )
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error responding to spare request {spare_request_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error responding to spare request: {str(e)}")


@router.post("/api/spares/{spare_request_id}/cancel-sparing", response_model=SpareRequestResponse)
async def cancel_sparing(
    spare_request_id: int,
    payload: CancelSparingRequest,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Back out of sparing; the request reopens without resuming notifications."""
    try:
        spare_request = await spare_service.cancel_sparing(
            session, spare_request_id, member["id"], payload.comment
        )
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error cancelling sparing for {spare_request_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error cancelling sparing: {str(e)}")


@router.post("/api/spares/{spare_request_id}/reissue", response_model=SpareRequestCreateResponse)
async def reissue_spare_request(
    spare_request_id: int,
    payload: ReissueRequest,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Restart notifications for an open request under a new generation."""
    try:
        return await spare_service.reissue_spare_request(
            session, spare_request_id, member["id"], message=payload.message
        )
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error reissuing spare request {spare_request_id}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error reissuing spare request: {str(e)}")


@router.post("/api/spares/{spare_request_id}/pause-notifications", response_model=SpareRequestResponse)
async def pause_notifications(
    spare_request_id: int,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Pause staggered notifications."""
    try:
        spare_request = await spare_service.pause_notifications(session, spare_request_id, member["id"])
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)


@router.post("/api/spares/{spare_request_id}/unpause-notifications", response_model=SpareRequestResponse)
async def unpause_notifications(
    spare_request_id: int,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Resume staggered notifications; the next member is notified on the next tick."""
    try:
        spare_request = await spare_service.unpause_notifications(session, spare_request_id, member["id"])
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)


@router.post("/api/spares/{spare_request_id}/cancel", response_model=SpareRequestResponse)
async def cancel_spare_request(
    spare_request_id: int,
    member: dict = Depends(require_member),
    session: AsyncSession = Depends(get_db_session),
):
    """Cancel an open spare request."""
    try:
        spare_request = await spare_service.cancel_spare_request(session, spare_request_id, member["id"])
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)


@router.post("/api/spares/{spare_request_id}/accept", response_model=SpareRequestResponse)
@limiter.limit(RESPOND_LIMIT)
async def accept_spare_request(
    request: Request,
    spare_request_id: int,
    token: str,
    session: AsyncSession = Depends(get_db_session),
):
    """Accept a spare request from the signed link in a notification email."""
    claims = auth_service.verify_accept_token(token)
    if claims is None or claims.get("spare_request_id") != spare_request_id:
        raise HTTPException(status_code=401, detail="Invalid or expired accept link")
    try:
        spare_request = await spare_service.respond_to_spare_request(
            session, spare_request_id, claims["member_id"]
        )
        return spare_request_payload(spare_request)
    except spare_service.SpareRequestError as e:
        raise to_http_error(e)
