"""
Shared pytest configuration for backend tests.

Each test gets its own SQLite database file (aiosqlite) unless
TEST_DATABASE_URL points at a PostgreSQL test database.

SAFETY: a TEST_DATABASE_URL whose database name does not contain "test" is
refused, so a misconfigured environment can never wipe a real database.
"""

import os

# Rate limiting off and no Redis settings cache under test
os.environ["ENV"] = "test"
os.environ.pop("REDIS_URL", None)

from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from backend.database.db import Base  # noqa: E402
from backend.database.models import League, Member, MemberAvailability  # noqa: E402
from backend.services.task_supervisor import TaskSupervisor  # noqa: E402
from backend.tests.helpers import TEST_NOW, RecordingSender  # noqa: E402
from backend.utils.clock import FrozenClock  # noqa: E402


def _resolve_test_database_url(tmp_path) -> str:
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'spares_test.db'}"

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"SAFETY: Refusing to run tests against database '{db_name}'. "
            f"The database name must contain 'test'."
        )
    return url


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a fresh schema and point db.AsyncSessionLocal at it."""
    url = _resolve_test_database_url(tmp_path)
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    # NullPool avoids connection reuse across event loops
    engine = create_async_engine(url, echo=False, poolclass=NullPool, connect_args=connect_args)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (dispatcher, background tasks) uses db.AsyncSessionLocal
    from backend.database import db

    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_maker):
    """Test database session."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture
def clock():
    return FrozenClock(TEST_NOW)


@pytest.fixture
def supervisor():
    return TaskSupervisor()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest_asyncio.fixture
async def league(db_session):
    league = League(name="Tuesday Night Open")
    db_session.add(league)
    await db_session.commit()
    return league


@pytest.fixture
def make_member(db_session, league):
    """Factory: create a member, optionally available in the test league."""

    async def _make(
        name: str,
        available: bool = True,
        email: Optional[str] = "default",
        phone: Optional[str] = None,
        opted_in_sms: bool = False,
        email_subscribed: bool = True,
        can_skip: bool = False,
        spare_only: bool = False,
        is_admin: bool = False,
    ) -> Member:
        member = Member(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com" if email == "default" else email,
            phone=phone,
            opted_in_sms=opted_in_sms,
            email_subscribed=email_subscribed,
            spare_only=spare_only,
            is_admin=is_admin,
        )
        db_session.add(member)
        await db_session.flush()
        if available:
            db_session.add(
                MemberAvailability(member_id=member.id, league_id=league.id, available=True, can_skip=can_skip)
            )
        await db_session.commit()
        return member

    return _make

