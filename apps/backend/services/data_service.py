"""
Data access helpers shared by the spare services.
"""

from typing import Dict, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func as sql_func
from sqlalchemy.orm import selectinload
from backend.database.db import dialect_insert
from backend.database.models import (
    League,
    Member,
    Setting,
    SpareRequest,
    SpareRequestInvitation,
)


async def get_setting(session: AsyncSession, key: str) -> Optional[str]:
    """
    Get a setting value.

    Args:
        session: Database session
        key: Setting key

    Returns:
        Setting value or None if not found
    """
    result = await session.execute(
        select(Setting).where(Setting.key == key)
    )
    setting = result.scalar_one_or_none()
    return setting.value if setting else None


async def set_setting(session: AsyncSession, key: str, value: str) -> None:
    """
    Set a setting value (upsert).

    Args:
        session: Database session
        key: Setting key
        value: Setting value
    """
    stmt = dialect_insert(session, Setting).values(key=key, value=value)
    stmt = stmt.on_conflict_do_update(
        index_elements=['key'],
        set_=dict(value=stmt.excluded.value, updated_at=sql_func.now())
    )
    await session.execute(stmt)
    await session.commit()


async def delete_setting(session: AsyncSession, key: str) -> bool:
    """Delete a setting. Returns True if a row was removed."""
    result = await session.execute(select(Setting).where(Setting.key == key))
    setting = result.scalar_one_or_none()
    if setting is None:
        return False
    await session.delete(setting)
    await session.commit()
    return True


async def get_member(session: AsyncSession, member_id: int) -> Optional[Member]:
    """Get a member by ID."""
    result = await session.execute(select(Member).where(Member.id == member_id))
    return result.scalar_one_or_none()


async def get_members_by_ids(session: AsyncSession, member_ids: Sequence[int]) -> Dict[int, Member]:
    """Get members keyed by ID. Missing IDs are simply absent from the result."""
    if not member_ids:
        return {}
    result = await session.execute(select(Member).where(Member.id.in_(list(member_ids))))
    return {m.id: m for m in result.scalars().all()}


async def get_league(session: AsyncSession, league_id: int) -> Optional[League]:
    """Get a league by ID."""
    result = await session.execute(select(League).where(League.id == league_id))
    return result.scalar_one_or_none()


async def get_spare_request(session: AsyncSession, request_id: int) -> Optional[SpareRequest]:
    """
    Load a spare request fresh from the database.

    populate_existing makes sure a stale identity-map copy never hides a
    concurrent write. Requester, filler and league are eager-loaded for
    message rendering.
    """
    result = await session.execute(
        select(SpareRequest)
        .where(SpareRequest.id == request_id)
        .options(
            selectinload(SpareRequest.requester),
            selectinload(SpareRequest.filled_by),
            selectinload(SpareRequest.league),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def is_invited(session: AsyncSession, spare_request_id: int, member_id: int) -> bool:
    """True if member_id is on the invitation list of the spare request."""
    result = await session.execute(
        select(SpareRequestInvitation.id).where(
            SpareRequestInvitation.spare_request_id == spare_request_id,
            SpareRequestInvitation.member_id == member_id,
        )
    )
    return result.scalar_one_or_none() is not None
