"""
Pydantic models for API request/response validation.
"""

from datetime import date, datetime, time
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, model_validator

from backend.database.models import SparePosition, SpareRequestType


class SpareRequestCreate(BaseModel):
    """Create a spare request."""

    league_id: int
    game_date: date
    game_time: time
    request_type: SpareRequestType = SpareRequestType.PUBLIC
    position: SparePosition = SparePosition.UNSPECIFIED
    message: Optional[str] = Field(default=None, max_length=1000)
    invited_member_ids: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def private_requests_need_invitees(self):
        if self.request_type == SpareRequestType.PRIVATE and not self.invited_member_ids:
            raise ValueError("Private spare requests need at least one invited member")
        return self


class SpareRequestCreateResponse(BaseModel):
    """Outcome of creating or reissuing a spare request."""

    spare_request_id: int
    notification_path: str
    notifications_sent: int
    notifications_queued: int
    notification_status: str
    notification_generation: int


class SpareRespondRequest(BaseModel):
    """Accept a spare request."""

    comment: Optional[str] = Field(default=None, max_length=1000)


class CancelSparingRequest(BaseModel):
    """Back out of a filled spare request."""

    comment: str = Field(min_length=1, max_length=1000)


class ReissueRequest(BaseModel):
    """Restart notifications, optionally with a new message."""

    message: Optional[str] = Field(default=None, max_length=1000)


class SpareRequestResponse(BaseModel):
    """Spare request as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    requester_id: int
    league_id: int
    game_date: date
    game_time: time
    position: SparePosition
    message: Optional[str] = None
    request_type: SpareRequestType
    status: str
    filled_by_member_id: Optional[int] = None
    filled_at: Optional[datetime] = None
    cancelled_by_member_id: Optional[int] = None
    had_cancellation: bool
    notification_generation: int
    notification_status: str
    notification_paused: bool
    next_notification_at: Optional[datetime] = None
    notifications_sent_at: Optional[datetime] = None


class NotificationStatusResponse(BaseModel):
    """Progress of the current notification run."""

    spare_request_id: int
    status: str
    notification_status: str
    notification_generation: int
    notification_paused: bool
    next_notification_at: Optional[str] = None
    notifications_sent_at: Optional[str] = None
    members_queued: int
    members_notified: int
    deliveries_sent: int
    deliveries_failed: int


class NotificationDelayUpdate(BaseModel):
    """Admin: set the spacing between staggered notifications."""

    seconds: int = Field(ge=0, le=86400)


class NotificationDelayResponse(BaseModel):
    seconds: int


class TimeOverrideUpdate(BaseModel):
    """Admin: pin the application's current time."""

    current_time: datetime


class TimeOverrideResponse(BaseModel):
    override: Optional[datetime] = None
    now: datetime


class DispatcherTickResponse(BaseModel):
    due: int
    notified: int
    completed: int
    abandoned: int
    skipped: int
    errors: int
