import redis.asyncio as redis

from hmarket.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def notification_channel(user_id: str) -> str:
    """Pub/sub channel a user's live connections subscribe to."""
    return f"notifications:{user_id}"


def driver_key(driver_id: str) -> str:
    return f"driver:{driver_id}"


def available_drivers_key(zone: str | None = None) -> str:
    return f"drivers:available:{zone}" if zone else "drivers:available"
