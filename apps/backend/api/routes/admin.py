"""Admin route handlers: notification delay, time override, manual dispatch."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth_dependencies import require_admin
from backend.database.db import get_db_session
from backend.models.schemas import (
    DispatcherTickResponse,
    NotificationDelayResponse,
    NotificationDelayUpdate,
    TimeOverrideResponse,
    TimeOverrideUpdate,
)
from backend.services import settings_service
from backend.services.notification_dispatcher import (
    get_notification_delay_seconds,
    get_notification_dispatcher,
)
from backend.utils.clock import get_clock
from backend.utils.constants import NOTIFICATION_DELAY_SETTING_KEY, TIME_OVERRIDE_SETTING_KEY
from backend.utils.datetime_utils import as_utc

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/admin/notification-delay", response_model=NotificationDelayResponse)
async def get_notification_delay(
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Current spacing between staggered notifications."""
    return {"seconds": await get_notification_delay_seconds(session)}


@router.put("/api/admin/notification-delay", response_model=NotificationDelayResponse)
async def update_notification_delay(
    payload: NotificationDelayUpdate,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Set the spacing between staggered notifications."""
    try:
        await settings_service.update_setting(session, NOTIFICATION_DELAY_SETTING_KEY, str(payload.seconds))
        logger.info(f"Admin {admin['id']} set notification delay to {payload.seconds}s")
        return {"seconds": payload.seconds}
    except Exception as e:
        logger.error(f"Error updating notification delay: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error updating notification delay: {str(e)}")


@router.get("/api/admin/time-override", response_model=TimeOverrideResponse)
async def get_time_override(admin: dict = Depends(require_admin)):
    """Current time override, if any, and the time the application sees."""
    clock = get_clock()
    return {"override": clock.override, "now": clock.now()}


@router.put("/api/admin/time-override", response_model=TimeOverrideResponse)
async def set_time_override(
    payload: TimeOverrideUpdate,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Pin the application's current time."""
    moment = as_utc(payload.current_time)
    await settings_service.update_setting(session, TIME_OVERRIDE_SETTING_KEY, moment.isoformat())
    clock = get_clock()
    clock.set_override(moment)
    logger.info(f"Admin {admin['id']} set time override to {moment.isoformat()}")
    return {"override": clock.override, "now": clock.now()}


@router.delete("/api/admin/time-override", response_model=TimeOverrideResponse)
async def clear_time_override(
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Return to wall-clock time."""
    await settings_service.remove_setting(session, TIME_OVERRIDE_SETTING_KEY)
    clock = get_clock()
    clock.clear_override()
    logger.info(f"Admin {admin['id']} cleared time override")
    return {"override": None, "now": clock.now()}


@router.post("/api/admin/dispatcher/tick", response_model=DispatcherTickResponse)
async def run_dispatcher_tick(admin: dict = Depends(require_admin)):
    """Run one dispatcher tick now (useful with a time override)."""
    try:
        summary = await get_notification_dispatcher().tick()
        return summary.__dict__
    except Exception as e:
        logger.error(f"Error running dispatcher tick: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error running dispatcher tick: {str(e)}")
