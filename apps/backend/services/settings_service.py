"""
Runtime settings for the spares backend.

A setting is resolved from the settings table first, then the Redis cache
(only when REDIS_URL is set), then an environment variable, then a default.
Admin changes go through update_setting/remove_setting so the cache stays
in step with the table.
"""

import os
import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from redis.asyncio import Redis
from redis.exceptions import RedisError
from backend.services import data_service
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes", "on")


def _to_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_bool_env(key: str, default: bool = True) -> bool:
    """Read a boolean flag straight from the environment."""
    return _to_bool(os.getenv(key), default)


class SettingsCache:
    """
    Short-lived Redis copy of settings rows, shared between API instances.

    Every failure is logged and treated as a cache miss; the database stays
    the source of truth.
    """

    key_prefix = "spares:settings:"

    def __init__(self, url: Optional[str], ttl_seconds: int = 60):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._client: Optional[Redis] = None

    async def _connect(self) -> Optional[Redis]:
        if not self.url:
            return None
        if self._client is None:
            self._client = Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._connect()
            if client is None:
                return None
            return await client.get(self.key_prefix + key)
        except RedisError as e:
            logger.warning(f"Settings cache read failed for {key}: {e}")
            await self._reset()
            return None

    async def put(self, key: str, value: Optional[str]) -> None:
        try:
            client = await self._connect()
            if client is None:
                return
            if value is None:
                await client.delete(self.key_prefix + key)
            else:
                await client.setex(self.key_prefix + key, self.ttl_seconds, value)
        except RedisError as e:
            logger.warning(f"Settings cache write failed for {key}: {e}")
            await self._reset()

    async def _reset(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except RedisError as e:
                logger.debug(f"Ignoring error while dropping Redis client: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._reset()
            logger.info("Closed settings cache connection")


_cache: Optional[SettingsCache] = None


def get_settings_cache() -> SettingsCache:
    """Process-wide settings cache, configured from REDIS_URL on first use."""
    global _cache
    if _cache is None:
        _cache = SettingsCache(os.getenv("REDIS_URL"))
    return _cache


async def read_setting(
    session: Optional[AsyncSession],
    key: str,
    env_var: Optional[str] = None,
    default: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve a setting value.

    Args:
        session: Database session; when None only the cache and env are consulted
        key: Key in the settings table
        env_var: Environment variable used when no stored value exists
        default: Returned when nothing else provides a value
    """
    cache = get_settings_cache()

    if session is not None:
        try:
            stored = await data_service.get_setting(session, key)
        except Exception as e:
            logger.warning(f"Could not read setting {key} from database: {e}")
            stored = None
        if stored is not None:
            await cache.put(key, stored)
            return stored

    cached = await cache.get(key)
    if cached is not None:
        return cached

    if env_var and os.getenv(env_var) is not None:
        return os.getenv(env_var)

    return default


async def get_bool_setting(
    session: Optional[AsyncSession],
    key: str,
    env_var: Optional[str] = None,
    default: bool = True,
) -> bool:
    return _to_bool(await read_setting(session, key, env_var), default)


async def get_int_setting(
    session: Optional[AsyncSession],
    key: str,
    env_var: Optional[str] = None,
    default: Optional[int] = None,
) -> Optional[int]:
    """Integer setting; unparseable values are logged and replaced by the default."""
    raw = await read_setting(session, key, env_var)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Setting {key} is not an integer: {raw!r}")
        return default


async def update_setting(session: AsyncSession, key: str, value: str) -> None:
    await data_service.set_setting(session, key, value)
    await get_settings_cache().put(key, value)


async def remove_setting(session: AsyncSession, key: str) -> bool:
    """Delete a stored setting. Returns False if it was not set."""
    removed = await data_service.delete_setting(session, key)
    await get_settings_cache().put(key, None)
    return removed


async def close_redis_connection():
    """Close the settings cache connection on shutdown."""
    global _cache
    if _cache is not None:
        await _cache.close()
        _cache = None
