"""
Authentication service: JWT access tokens and signed accept-link tokens.
"""

import os
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import jwt
from dotenv import load_dotenv
from backend.utils.datetime_utils import utcnow

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# JWT Configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# Accept links in spare request emails stay valid for a week
ACCEPT_TOKEN_EXPIRE_DAYS = 7
ACCEPT_TOKEN_PURPOSE = "spare_accept"


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode (typically {"member_id": ...})
        expires_delta: Optional custom expiration

    Returns:
        Encoded JWT string
    """
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a JWT token.

    Returns:
        Decoded payload, or None if the token is invalid or expired
    """
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None


def create_accept_token(spare_request_id: int, member_id: int, generation: int, now: Optional[datetime] = None) -> str:
    """Signed token embedded in a spare request email's accept link."""
    issued = now or utcnow()
    payload = {
        "purpose": ACCEPT_TOKEN_PURPOSE,
        "spare_request_id": spare_request_id,
        "member_id": member_id,
        "generation": generation,
        "exp": issued + timedelta(days=ACCEPT_TOKEN_EXPIRE_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_accept_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode an accept-link token; None unless valid and issued for accepting."""
    payload = verify_token(token)
    if payload is None or payload.get("purpose") != ACCEPT_TOKEN_PURPOSE:
        return None
    return payload
