"""Redis-backed read cache for per-coach automation settings.

Settings are read on every dashboard load and by every batch run, but change
rarely. Reads are served from Redis when warm; every write bumps the key's
version and deletes the entry.

Entries are stamped with the version that was current before the database
read. A reader that loaded rows just before a concurrent write can still
store its snapshot, but the stamp no longer matches and the entry is ignored.

Usage:
    from libs.common.settings_cache import (
        automation_settings_key,
        cache_version,
        get_cached_json,
        invalidate,
        set_cached_json,
    )

    key = automation_settings_key(coach_id)
    rows = await get_cached_json(key)
    if rows is None:
        version = await cache_version(key)
        rows = ...  # load from the database
        await set_cached_json(key, rows, version=version)

    # After any write
    await invalidate(key)

All helpers fail open: when Redis is unavailable the caller simply falls
through to the database.
"""
import json
from typing import Any, Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.redis import get_redis

logger = get_logger(__name__)

AUTOMATION_SETTINGS_PREFIX = "automation_settings"


def automation_settings_key(coach_id) -> str:
    return f"{AUTOMATION_SETTINGS_PREFIX}:{coach_id}"


def _version_key(key: str) -> str:
    return f"{key}:version"


async def cache_version(key: str) -> Optional[int]:
    """Current write version for ``key``; None when the cache is off or down."""
    if not get_settings().AUTOMATION_SETTINGS_CACHE_ENABLED:
        return None
    try:
        redis = await get_redis()
        raw = await redis.get(_version_key(key))
        return int(raw or 0)
    except Exception as e:
        logger.warning(f"Settings cache version read failed for {key}: {e}")
        return None


async def get_cached_json(key: str) -> Optional[Any]:
    """Return the decoded cached value, or None on a miss, stale entry or Redis failure."""
    if not get_settings().AUTOMATION_SETTINGS_CACHE_ENABLED:
        return None
    try:
        redis = await get_redis()
        raw, raw_version = await redis.mget(key, _version_key(key))
    except Exception as e:
        logger.warning(f"Settings cache read failed for {key}: {e}")
        return None
    if raw is None:
        return None
    try:
        entry = json.loads(raw)
        current = int(raw_version or 0)
    except ValueError:
        logger.warning(f"Discarding undecodable cache entry {key}")
        return None
    if not isinstance(entry, dict) or entry.get("version") != current:
        logger.debug(f"Ignoring stale cache entry {key}")
        return None
    return entry.get("value")


async def set_cached_json(
    key: str, value: Any, *, version: Optional[int], ttl: Optional[int] = None
) -> bool:
    settings = get_settings()
    if not settings.AUTOMATION_SETTINGS_CACHE_ENABLED or version is None:
        return False
    try:
        redis = await get_redis()
        await redis.set(
            key,
            json.dumps({"version": version, "value": value}, default=str),
            ex=ttl or settings.AUTOMATION_SETTINGS_CACHE_TTL_SECONDS,
        )
        return True
    except Exception as e:
        logger.warning(f"Settings cache write failed for {key}: {e}")
        return False


async def invalidate(key: str) -> bool:
    """Retire a cached entry. Returns False if Redis was unavailable."""
    if not get_settings().AUTOMATION_SETTINGS_CACHE_ENABLED:
        return False
    try:
        redis = await get_redis()
        await redis.incr(_version_key(key))
        await redis.delete(key)
        logger.debug(f"Invalidated {key}")
        return True
    except Exception as e:
        logger.warning(f"Settings cache invalidation failed for {key}: {e}")
        return False
