"""
Channel senders for spare notifications.

The dispatcher and the immediate fan-out only talk to a NotificationSender;
the transport (SendGrid email, Twilio SMS) lives behind it.
"""

import logging
from typing import List, Optional, Protocol
from backend.database.models import DeliveryChannel, Member, SpareRequest
from backend.services import auth_service, email_service, sms_service
from backend.utils.constants import (
    KIND_SPARE_CANCELLATION,
    KIND_SPARE_FILLED,
    KIND_SPARE_REQUEST,
)

logger = logging.getLogger(__name__)


class TransientSendError(Exception):
    """A channel send failed; recorded in the ledger, never retried automatically."""


class NotificationSender(Protocol):
    async def send(
        self,
        channel: DeliveryChannel,
        member: Member,
        kind: str,
        spare_request: SpareRequest,
        generation: int,
        comment: Optional[str] = None,
    ) -> bool:
        ...


def applicable_channels(member: Member) -> List[DeliveryChannel]:
    """Email when reachable and subscribed; SMS when the member opted in."""
    channels = []
    if member.email and member.email_subscribed:
        channels.append(DeliveryChannel.EMAIL)
    if member.phone and member.opted_in_sms:
        channels.append(DeliveryChannel.SMS)
    return channels


def accept_url(spare_request: SpareRequest, member: Member, generation: int) -> str:
    token = auth_service.create_accept_token(spare_request.id, member.id, generation)
    return f"{email_service.APP_BASE_URL}/spares/{spare_request.id}/accept?token={token}"


def template_kind(kind: str) -> str:
    """Lifecycle kinds carry a ":<response id>" suffix; strip it to pick the template."""
    return kind.split(":", 1)[0]


def _position(spare_request: SpareRequest) -> Optional[str]:
    return spare_request.position.value if spare_request.position else None


class ChannelNotificationSender:
    """
    Sends spare notifications through email_service and sms_service.

    Expects the request's requester, filled_by and league relationships to be
    loaded (data_service.get_spare_request does this).
    """

    async def send(
        self,
        channel: DeliveryChannel,
        member: Member,
        kind: str,
        spare_request: SpareRequest,
        generation: int,
        comment: Optional[str] = None,
    ) -> bool:
        if channel == DeliveryChannel.EMAIL:
            return await self._send_email(member, kind, spare_request, generation, comment)
        if channel == DeliveryChannel.SMS:
            return await self._send_sms(member, kind, spare_request, generation)
        raise TransientSendError(f"Unsupported channel {channel}")

    async def _send_email(self, member, kind, spare_request, generation, comment) -> bool:
        kind = template_kind(kind)
        requester_name = spare_request.requester.name if spare_request.requester else "A league member"
        responder_name = spare_request.filled_by.name if spare_request.filled_by else "Your spare"

        if kind == KIND_SPARE_REQUEST:
            return await email_service.send_spare_request_email(
                to_email=member.email,
                recipient_name=member.name,
                requester_name=requester_name,
                league_name=spare_request.league.name if spare_request.league else None,
                game_date=spare_request.game_date,
                game_time=spare_request.game_time,
                position=_position(spare_request),
                message=spare_request.message,
                accept_url=accept_url(spare_request, member, generation),
            )
        if kind == KIND_SPARE_FILLED:
            return await email_service.send_spare_filled_email(
                to_email=member.email,
                requester_name=member.name,
                responder_name=responder_name,
                game_date=spare_request.game_date,
                game_time=spare_request.game_time,
                comment=comment,
            )
        if kind == KIND_SPARE_CANCELLATION:
            return await email_service.send_spare_cancellation_email(
                to_email=member.email,
                requester_name=member.name,
                responder_name=responder_name,
                game_date=spare_request.game_date,
                game_time=spare_request.game_time,
                comment=comment,
            )
        raise TransientSendError(f"Unknown notification kind {kind!r}")

    async def _send_sms(self, member, kind, spare_request, generation) -> bool:
        kind = template_kind(kind)
        requester_name = spare_request.requester.name if spare_request.requester else "A league member"
        responder_name = spare_request.filled_by.name if spare_request.filled_by else "Your spare"

        if kind == KIND_SPARE_REQUEST:
            body = sms_service.spare_request_text(
                requester_name,
                spare_request.game_date,
                spare_request.game_time,
                position=_position(spare_request),
                accept_url=accept_url(spare_request, member, generation),
            )
        elif kind == KIND_SPARE_FILLED:
            body = sms_service.spare_filled_text(responder_name, spare_request.game_date, spare_request.game_time)
        elif kind == KIND_SPARE_CANCELLATION:
            body = sms_service.spare_cancellation_text(
                responder_name, spare_request.game_date, spare_request.game_time
            )
        else:
            raise TransientSendError(f"Unknown notification kind {kind!r}")

        return await sms_service.send_sms(member.phone, body)


# Global sender instance
_sender = ChannelNotificationSender()


def get_notification_sender() -> NotificationSender:
    """Get the global notification sender."""
    return _sender
