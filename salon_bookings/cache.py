import json
from datetime import date

from loguru import logger
from redis.asyncio import Redis

from salon_bookings.settings import DAY_VIEW_TTL, REDIS_URL

_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _day_key(day: date) -> str:
    return f"bookings:day:{day.isoformat()}"


async def get_day_view_cache(day: date) -> dict | None:
    try:
        data = await get_redis().get(_day_key(day))
        return json.loads(data) if data else None
    except Exception:
        logger.warning("Redis get failed, skipping day view cache", exc_info=True)
        return None


async def set_day_view_cache(day: date, view: dict) -> None:
    try:
        await get_redis().setex(_day_key(day), DAY_VIEW_TTL, json.dumps(view))
    except Exception:
        logger.warning("Redis set failed, skipping day view cache", exc_info=True)


async def invalidate_day_view_cache(day: date) -> None:
    try:
        await get_redis().delete(_day_key(day))
    except Exception:
        logger.warning("Redis invalidate failed for day view cache", exc_info=True)


async def publish_change(channel: str, payload: dict) -> None:
    """Best effort: a missed event only delays the board until its next refresh."""
    try:
        await get_redis().publish(channel, json.dumps(payload, default=str))
    except Exception:
        logger.warning("Redis publish failed on {}", channel, exc_info=True)
