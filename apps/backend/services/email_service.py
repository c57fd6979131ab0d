"""
Email service using SendGrid for sending spare notifications.
"""

import os
import asyncio
import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content
from dotenv import load_dotenv
from backend.services import settings_service
from backend.utils.datetime_utils import format_game_date, format_game_time

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# SendGrid Configuration
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "noreply@curlingspares.com")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
ENABLE_EMAIL = settings_service.get_bool_env("ENABLE_EMAIL", default=True)


async def is_enabled(session: Optional[AsyncSession] = None) -> bool:
    """
    Check if email is enabled, checking database first.

    Args:
        session: Optional database session for checking database settings

    Returns:
        True if email is enabled, False otherwise
    """
    try:
        return await settings_service.get_bool_setting(
            session, "enable_email", env_var="ENABLE_EMAIL", default=True
        )
    except Exception as e:
        logger.warning(f"Error getting ENABLE_EMAIL from settings, using default: {e}")
        return ENABLE_EMAIL


def _describe_game(game_date, game_time, position: Optional[str]) -> str:
    line = f"{format_game_date(game_date)} at {format_game_time(game_time)}"
    if position and position != "unspecified":
        line += f" ({position})"
    return line


async def _deliver(to_email: str, subject: str, body: str) -> bool:
    """Send a plain-text email. Returns True on a 2xx SendGrid response."""
    message = Mail(
        from_email=Email(SENDGRID_FROM_EMAIL),
        to_emails=To(to_email),
        subject=subject,
        plain_text_content=Content("text/plain", body),
    )
    sg = SendGridAPIClient(SENDGRID_API_KEY)
    # The SendGrid client is synchronous; keep it off the event loop
    response = await asyncio.to_thread(sg.send, message)

    if 200 <= response.status_code < 300:
        logger.info(f"Email '{subject}' sent to {to_email}")
        return True
    logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
    return False


async def send_spare_request_email(
    to_email: str,
    recipient_name: str,
    requester_name: str,
    league_name: Optional[str],
    game_date,
    game_time,
    position: Optional[str] = None,
    message: Optional[str] = None,
    accept_url: Optional[str] = None,
    session: Optional[AsyncSession] = None,
) -> bool:
    """
    Ask a candidate to spare for a game.

    Returns:
        bool: True if the email was sent (or email is disabled), False otherwise

    Raises:
        Exception: Transport errors from SendGrid propagate to the caller,
            which records them in the delivery ledger
    """
    if not await is_enabled(session):
        logger.info("Email sending is disabled. Spare request email skipped.")
        return True

    if not SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not configured. Spare request email skipped.")
        return True

    body_lines = [
        f"Hi {recipient_name},",
        "",
        f"{requester_name} needs a spare"
        + (f" in {league_name}" if league_name else "")
        + f": {_describe_game(game_date, game_time, position)}.",
    ]
    if message:
        body_lines.extend(["", f'Message: "{message}"'])
    if accept_url:
        body_lines.extend(["", f"Accept this request: {accept_url}"])
    body_lines.extend(["", "---", "You are receiving this because you are listed as available to spare."])

    return await _deliver(to_email, f"Spare needed: {format_game_date(game_date)}", "\n".join(body_lines))


async def send_spare_filled_email(
    to_email: str,
    requester_name: str,
    responder_name: str,
    game_date,
    game_time,
    comment: Optional[str] = None,
    session: Optional[AsyncSession] = None,
) -> bool:
    """Tell a requester their spare request was filled."""
    if not await is_enabled(session):
        logger.info("Email sending is disabled. Spare filled email skipped.")
        return True

    if not SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not configured. Spare filled email skipped.")
        return True

    body_lines = [
        f"Hi {requester_name},",
        "",
        f"{responder_name} will spare for you on {format_game_date(game_date)} "
        f"at {format_game_time(game_time)}.",
    ]
    if comment:
        body_lines.extend(["", f'Comment: "{comment}"'])

    return await _deliver(to_email, "Your spare request was filled", "\n".join(body_lines))


async def send_spare_cancellation_email(
    to_email: str,
    requester_name: str,
    responder_name: str,
    game_date,
    game_time,
    comment: Optional[str] = None,
    session: Optional[AsyncSession] = None,
) -> bool:
    """Tell a requester that their spare backed out."""
    if not await is_enabled(session):
        logger.info("Email sending is disabled. Spare cancellation email skipped.")
        return True

    if not SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not configured. Spare cancellation email skipped.")
        return True

    body_lines = [
        f"Hi {requester_name},",
        "",
        f"{responder_name} can no longer spare on {format_game_date(game_date)} "
        f"at {format_game_time(game_time)}. Your request is open again.",
        "",
        "Notifications are not resent automatically; re-issue the request to notify members again.",
    ]
    if comment:
        body_lines[3:3] = ["", f'Reason: "{comment}"']

    return await _deliver(to_email, "Your spare cancelled", "\n".join(body_lines))
