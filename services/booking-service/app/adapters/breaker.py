import time


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker, shared by every booking-service replica
    that talks to the same upstream.

      CLOSED     requests flow, failures are counted
      OPEN       requests are refused for ``reset_timeout_seconds``
      HALF_OPEN  one probe is let through; its result closes or reopens
    """

    def __init__(self, redis_client, name: str, failure_threshold: int = 5, reset_timeout_seconds: int = 15):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds

    @property
    def _state_key(self) -> str:
        return f"cb:{self.name}:state"

    @property
    def _failures_key(self) -> str:
        return f"cb:{self.name}:failures"

    @property
    def _opened_at_key(self) -> str:
        return f"cb:{self.name}:opened_at"

    async def state(self) -> str:
        return await self.redis.get(self._state_key) or "CLOSED"

    async def allow_request(self) -> None:
        state = await self.state()
        if state != "OPEN":
            return

        opened_at = await self.redis.get(self._opened_at_key)
        if not opened_at:
            await self.close()
            return

        if time.time() - float(opened_at) >= self.reset_timeout_seconds:
            await self.redis.set(self._state_key, "HALF_OPEN")
            return

        raise CircuitBreakerOpen(f"circuit breaker open for {self.name}")

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        if await self.state() == "HALF_OPEN":
            await self.open()
            return

        failures = await self.redis.incr(self._failures_key)
        if failures == 1:
            await self.redis.expire(self._failures_key, 60)
        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self._state_key, "OPEN", ex=ttl)
        pipe.set(self._opened_at_key, str(time.time()), ex=ttl)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._state_key, "CLOSED", ex=3600)
        pipe.delete(self._failures_key, self._opened_at_key)
        await pipe.execute()
