"""
SMS service using the Twilio REST API.
"""

import os
import logging
from typing import Optional
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from dotenv import load_dotenv
from backend.services import settings_service
from backend.utils.datetime_utils import format_game_date, format_game_time

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Twilio Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
SMS_TIMEOUT_SECONDS = 10.0
ENABLE_SMS = settings_service.get_bool_env("ENABLE_SMS", default=False)


async def is_enabled(session: Optional[AsyncSession] = None) -> bool:
    """Check if SMS is enabled, checking database first."""
    try:
        return await settings_service.get_bool_setting(
            session, "enable_sms", env_var="ENABLE_SMS", default=False
        )
    except Exception as e:
        logger.warning(f"Error getting ENABLE_SMS from settings, using default: {e}")
        return ENABLE_SMS


async def send_sms(to_number: str, body: str, session: Optional[AsyncSession] = None) -> bool:
    """
    Send a text message.

    Returns:
        True if Twilio accepted the message (or SMS is disabled), False otherwise

    Raises:
        httpx.HTTPError: Transport failures propagate to the caller
    """
    if not await is_enabled(session):
        logger.info("SMS sending is disabled. Message skipped.")
        return True

    if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER):
        logger.warning("Twilio credentials not configured. Message skipped.")
        return True

    url = f"{TWILIO_API_BASE}/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json"
    async with httpx.AsyncClient(timeout=SMS_TIMEOUT_SECONDS) as client:
        response = await client.post(
            url,
            data={"To": to_number, "From": TWILIO_FROM_NUMBER, "Body": body},
            auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
        )

    if response.status_code in (200, 201):
        logger.info(f"SMS sent to {to_number}")
        return True
    logger.error(f"Twilio returned status {response.status_code}: {response.text}")
    return False


def spare_request_text(requester_name: str, game_date, game_time, position: Optional[str] = None,
                       accept_url: Optional[str] = None) -> str:
    text = f"{requester_name} needs a spare {format_game_date(game_date)} at {format_game_time(game_time)}"
    if position and position != "unspecified":
        text += f" ({position})"
    text += "."
    if accept_url:
        text += f" Accept: {accept_url}"
    return text


def spare_filled_text(responder_name: str, game_date, game_time) -> str:
    return f"{responder_name} will spare for you {format_game_date(game_date)} at {format_game_time(game_time)}."


def spare_cancellation_text(responder_name: str, game_date, game_time) -> str:
    return (
        f"{responder_name} can no longer spare {format_game_date(game_date)} at "
        f"{format_game_time(game_time)}. Your request is open again."
    )
