"""
Authentication dependencies for FastAPI routes.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from backend.services import auth_service, data_service
from backend.database.db import get_db_session

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_member(
    session: AsyncSession = Depends(get_db_session),
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Resolve the bearer token to the member making the request.

    Returns:
        dict with id, name, is_admin and spare_only
    """
    claims = auth_service.verify_token(credentials.credentials)
    if claims is None:
        raise _unauthorized("Invalid authentication token")

    member_id = claims.get("member_id")
    if member_id is None:
        raise _unauthorized("Invalid token payload")

    member = await data_service.get_member(session, member_id)
    if member is None:
        raise _unauthorized("Member not found")

    return {
        "id": member.id,
        "name": member.name,
        "is_admin": member.is_admin,
        "spare_only": member.spare_only,
    }


async def require_member(member: dict = Depends(get_current_member)) -> dict:
    return member


async def require_admin(member: dict = Depends(get_current_member)) -> dict:
    """Reject members without the admin flag."""
    if not member.get("is_admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return member
