import redis.asyncio as redis


def get_redis(redis_url: str | None):
    if not redis_url:
        raise RuntimeError("REDIS_URL environment variable is not set")
    return redis.from_url(redis_url, decode_responses=True)
