import redis.asyncio as redis_async

from adminbot.config import settings

_redis_client = None
_redis_url = None


def get_redis(redis_url: str | None = None, socket_timeout_seconds: float | None = None):
    """Shared async Redis client; recreated if the URL changes."""
    global _redis_client, _redis_url

    redis_url = redis_url or settings.redis_url
    timeout = socket_timeout_seconds if socket_timeout_seconds is not None else settings.redis_socket_timeout_seconds

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )

    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _redis_url = None
