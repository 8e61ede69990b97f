import json

from dateutil.parser import isoparse

from ..domain import BookingStatus, ScheduledTask, TaskKind

TASK_ZSET = "booking_tasks"
TASK_KEY_PREFIX = "booking_task:"


def _dump(task: ScheduledTask) -> str:
    return json.dumps(
        {
            "id": task.id,
            "kind": task.kind.value,
            "booking_id": task.booking_id,
            "due_at": task.due_at.isoformat(),
            "expected_status": task.expected_status.value if task.expected_status else None,
            "status_version": task.status_version,
            "attempts": task.attempts,
        },
        separators=(",", ":"),
    )


def _load(raw: str) -> ScheduledTask:
    data = json.loads(raw)
    return ScheduledTask(
        id=data["id"],
        kind=TaskKind(data["kind"]),
        booking_id=data["booking_id"],
        due_at=isoparse(data["due_at"]),
        expected_status=BookingStatus(data["expected_status"]) if data.get("expected_status") else None,
        status_version=data.get("status_version"),
        attempts=int(data.get("attempts") or 0),
    )


class RedisTaskScheduler:
    """
    Durable task queue: a sorted set of task ids scored by due time, plus one
    JSON payload key per task. Both live in Redis and survive restarts.
    """

    def __init__(self, redis_client, zset: str = TASK_ZSET):
        self.redis = redis_client
        self.zset = zset

    def _key(self, task_id: str) -> str:
        return f"{TASK_KEY_PREFIX}{task_id}"

    async def schedule(self, task: ScheduledTask) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key(task.id), _dump(task))
        pipe.zadd(self.zset, {task.id: task.due_at.timestamp()})
        await pipe.execute()

    async def due(self, now, limit: int = 50) -> list[ScheduledTask]:
        ids = await self.redis.zrangebyscore(self.zset, 0, now.timestamp(), start=0, num=limit)
        if not ids:
            return []
        payloads = await self.redis.mget([self._key(task_id) for task_id in ids])
        tasks = []
        for task_id, raw in zip(ids, payloads):
            if raw is None:
                # payload gone; drop the orphaned id
                await self.redis.zrem(self.zset, task_id)
                continue
            tasks.append(_load(raw))
        return tasks

    async def claim(self, task_id: str) -> bool:
        # ZREM is atomic: exactly one poller removes the id
        removed = await self.redis.zrem(self.zset, task_id)
        if not removed:
            return False
        await self.redis.delete(self._key(task_id))
        return True
