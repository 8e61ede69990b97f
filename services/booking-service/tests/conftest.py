from datetime import datetime, timedelta, timezone

import pytest

from app.adapters.memory import (
    InMemoryDispatcher,
    InMemoryPaymentGateway,
    InMemoryScheduler,
    InMemoryStore,
    InMemoryTracker,
)
from app.coordinator import BookingRequest
from app.domain import Actor, ActorRole, Address, BookingStatus as S, UserAccount, WorkerProfile
from app.service import BookingOrchestrator

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CUSTOMER = Actor(ActorRole.CUSTOMER, "cust-1")
WORKER = Actor(ActorRole.WORKER, "worker-1")
ADMIN = Actor(ActorRole.ADMIN, "admin-1")

WORKER_IDS = [f"worker-{i}" for i in range(1, 6)]

HAPPY_PATH = [S.CONFIRMED, S.ASSIGNED, S.EN_ROUTE, S.ARRIVED, S.IN_PROGRESS, S.COMPLETED]


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock()


def seed(store: InMemoryStore):
    store.add_user(UserAccount("cust-1", ActorRole.CUSTOMER))
    store.add_user(UserAccount("cust-2", ActorRole.CUSTOMER))
    store.add_user(UserAccount("admin-1", ActorRole.ADMIN))
    store.add_address(Address("addr-1", "cust-1"))
    store.add_address(Address("addr-2", "cust-2"))
    for worker_id in WORKER_IDS:
        store.add_user(UserAccount(worker_id, ActorRole.WORKER))
        store.add_worker_profile(
            WorkerProfile(
                user_id=worker_id,
                background_check_status="cleared",
                payout_onboarding_complete=True,
                payout_destination=f"acct_{worker_id}",
            )
        )
    return store


@pytest.fixture
def store():
    return seed(InMemoryStore())


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway()


@pytest.fixture
def dispatcher():
    return InMemoryDispatcher()


@pytest.fixture
def scheduler():
    return InMemoryScheduler()


@pytest.fixture
def tracker():
    return InMemoryTracker()


@pytest.fixture
async def orchestrator(store, gateway, dispatcher, scheduler, tracker, clock):
    orchestrator = BookingOrchestrator(
        store,
        gateway,
        dispatcher,
        scheduler,
        tracker,
        admin_target="ops",
        clock=clock,
    )
    yield orchestrator
    await orchestrator.drain()


def booking_request(clock, worker_id=None, **overrides) -> BookingRequest:
    data = dict(
        customer_id="cust-1",
        address_id="addr-1",
        scheduled_start=clock() + timedelta(days=3),
        duration_minutes=120,
        subtotal=10000,
        tip=0,
        worker_id=worker_id,
    )
    data.update(overrides)
    return BookingRequest(**data)


@pytest.fixture
def create_booking(orchestrator, clock):
    async def _create(worker_id=None, **overrides):
        outcome = await orchestrator.create_booking_with_payment(booking_request(clock, worker_id, **overrides))
        assert outcome.succeeded, outcome.error
        return await orchestrator.get_booking(outcome.booking_id)

    return _create


@pytest.fixture
def advance_to(orchestrator):
    """Walk a booking along the happy path until it reaches ``target``."""

    async def _advance(booking_id, target, actor=WORKER):
        booking = await orchestrator.get_booking(booking_id)
        if booking.status == S.REQUESTED:
            await orchestrator.claim_job(booking_id, actor.user_id)
        for status in HAPPY_PATH[1:]:
            booking = await orchestrator.get_booking(booking_id)
            if booking.status == target:
                break
            await orchestrator.advance_status(booking_id, status, actor)
        return await orchestrator.get_booking(booking_id)

    return _advance


class FakeRedis:
    """The handful of redis.asyncio commands the scheduler and breaker use."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = str(value)
        return True

    async def mget(self, keys):
        return [self.values.get(k) for k in keys]

    async def delete(self, *keys):
        return sum(1 for k in keys if self.values.pop(k, None) is not None)

    async def incr(self, key):
        self.values[key] = str(int(self.values.get(key, 0)) + 1)
        return int(self.values[key])

    async def expire(self, key, seconds):
        return key in self.values

    async def zadd(self, name, mapping):
        self.zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(self, name, low, high, start=None, num=None):
        members = sorted(
            (score, member) for member, score in self.zsets.get(name, {}).items() if low <= score <= high
        )
        ids = [member for _, member in members]
        if start is not None and num is not None:
            ids = ids[start:start + num]
        return ids

    async def zrem(self, name, *members):
        zset = self.zsets.get(name, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    def pipeline(self):
        return _FakePipeline(self)


class _FakePipeline:
    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.calls]


@pytest.fixture
def fake_redis():
    return FakeRedis()
