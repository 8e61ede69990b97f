import itertools
from datetime import timedelta

import pytest

from app.domain import SYSTEM, Booking, BookingStatus as S, PaymentStatus, TaskKind
from app.errors import BookingNotFound, ConflictError, TimeoutFired, ValidationError
from app.policy import WorkflowPolicy
from app.service import BookingOrchestrator
from conftest import ADMIN, CUSTOMER, WORKER, booking_request


def _raw_booking(clock, status: S, booking_id="b-raw") -> Booking:
    return Booking(
        id=booking_id,
        customer_id="cust-1",
        worker_id="worker-1",
        address_id="addr-1",
        scheduled_start=clock() + timedelta(days=2),
        duration_minutes=60,
        subtotal=10000,
        platform_fee=3000,
        worker_amount=7000,
        tip=0,
        total=10000,
        status=status,
        created_at=clock(),
        updated_at=clock(),
    )


@pytest.mark.parametrize("current, target", list(itertools.product(list(S), list(S))))
async def test_transition_succeeds_iff_edge_is_in_table(orchestrator, store, clock, current, target):
    await store.insert_booking(_raw_booking(clock, current))
    allowed = orchestrator.policy.allows(current, target)

    if allowed:
        result = await orchestrator.engine.apply_transition("b-raw", target, ADMIN)
        assert result.booking.status == target
        assert result.update.previous_status == current
        assert len(store.status_updates) == 1
    else:
        with pytest.raises(ValidationError):
            await orchestrator.engine.apply_transition("b-raw", target, ADMIN)
        booking = await store.get_booking("b-raw")
        assert booking.status == current
        assert booking.status_version == 0
        assert store.status_updates == []


async def test_every_transition_writes_exactly_one_history_row(orchestrator, store, create_booking, advance_to):
    booking = await create_booking()
    assert await store.list_status_updates(booking.id) == []

    await advance_to(booking.id, S.COMPLETED)

    updates = await store.list_status_updates(booking.id)
    assert [u.new_status for u in updates] == [
        S.CONFIRMED, S.ASSIGNED, S.EN_ROUTE, S.ARRIVED, S.IN_PROGRESS, S.COMPLETED,
    ]
    for before, after in zip(updates, updates[1:]):
        assert after.previous_status == before.new_status
    assert (await store.get_booking(booking.id)).status_version == len(updates)


async def test_unknown_status_string_is_validation_error(orchestrator, create_booking):
    booking = await create_booking()

    with pytest.raises(ValidationError):
        await orchestrator.engine.apply_transition(booking.id, "teleported", ADMIN)


async def test_status_accepts_plain_string(orchestrator, create_booking):
    booking = await create_booking(worker_id="worker-1")

    result = await orchestrator.engine.apply_transition(booking.id, "confirmed", WORKER)

    assert result.booking.status == S.CONFIRMED


async def test_missing_booking(orchestrator):
    with pytest.raises(BookingNotFound):
        await orchestrator.engine.apply_transition("nope", S.CONFIRMED, ADMIN)


async def test_conditional_write_rejects_stale_status(orchestrator, store, create_booking):
    booking = await create_booking(worker_id="worker-1")
    await orchestrator.advance_status(booking.id, S.CONFIRMED, WORKER)

    with pytest.raises(ConflictError):
        await store.transition_booking(
            booking.id,
            S.REQUESTED,
            booking.status_version,
            (await store.list_status_updates(booking.id))[0],
            {},
        )
    assert len(await store.list_status_updates(booking.id)) == 1


async def test_expected_status_mismatch_is_conflict(orchestrator, create_booking):
    booking = await create_booking(worker_id="worker-1")

    with pytest.raises(ConflictError):
        await orchestrator.engine.apply_transition(booking.id, S.CANCELLED, CUSTOMER, expected_status=S.CONFIRMED)


async def test_entry_timestamps_are_written_with_the_status(orchestrator, create_booking, advance_to, clock):
    booking = await create_booking()
    booking = await advance_to(booking.id, S.COMPLETED)

    assert booking.en_route_at == clock()
    assert booking.arrived_at == clock()
    assert booking.actual_start == clock()
    assert booking.actual_end == clock()


async def test_side_effects_track_location(orchestrator, tracker, create_booking, advance_to):
    booking = await create_booking()

    await advance_to(booking.id, S.EN_ROUTE)
    assert tracker.active == {booking.id: "worker-1"}

    await orchestrator.advance_status(booking.id, S.ARRIVED, WORKER)
    assert tracker.active == {}
    assert tracker.events == [("start", booking.id), ("stop", booking.id)]


async def test_completion_enqueues_settlement(orchestrator, scheduler, create_booking, advance_to, clock):
    booking = await create_booking()
    await advance_to(booking.id, S.COMPLETED)

    settle = [t for t in scheduler.pending_for(booking.id) if t.kind == TaskKind.SETTLE]
    assert len(settle) == 1
    assert settle[0].due_at == clock() + timedelta(seconds=5)


async def test_no_show_penalises_worker(orchestrator, store, create_booking, advance_to):
    booking = await create_booking()
    await advance_to(booking.id, S.ASSIGNED)

    await orchestrator.advance_status(booking.id, S.NO_SHOW, CUSTOMER)

    profile = store.workers["worker-1"]
    assert profile.no_show_count == 1
    assert profile.reliability_score == 80


async def test_side_effect_failure_keeps_transition_and_alerts(orchestrator, tracker, dispatcher, create_booking, advance_to):
    booking = await create_booking()
    await advance_to(booking.id, S.ASSIGNED)
    tracker.fail("start")

    result = await orchestrator.advance_status(booking.id, S.EN_ROUTE, WORKER)

    assert result.booking.status == S.EN_ROUTE
    alerts = dispatcher.of_type("ops.alert")
    assert alerts and alerts[0][2]["kind"] == "side_effect_failed"


async def test_notifications_go_to_configured_recipients(orchestrator, dispatcher, create_booking, advance_to):
    booking = await create_booking()
    await advance_to(booking.id, S.EN_ROUTE)
    await orchestrator.drain()

    en_route = dispatcher.of_type("booking.en_route")
    assert [target for target, _, _ in en_route] == ["cust-1"]
    assert en_route[0][2]["body"] == "Your worker is on the way"


async def test_dispute_notifies_admin(orchestrator, dispatcher, create_booking, advance_to):
    booking = await create_booking()
    await advance_to(booking.id, S.COMPLETED)

    await orchestrator.advance_status(booking.id, S.DISPUTED, CUSTOMER)
    await orchestrator.drain()

    targets = {target for target, _, _ in dispatcher.of_type("booking.disputed")}
    assert targets == {"cust-1", "worker-1", "ops"}


async def test_notification_failure_never_reaches_caller(orchestrator, dispatcher, create_booking):
    booking = await create_booking(worker_id="worker-1")
    dispatcher.fail("send")

    result = await orchestrator.advance_status(booking.id, S.CONFIRMED, WORKER)
    await orchestrator.drain()

    assert result.booking.status == S.CONFIRMED
    assert dispatcher.of_type("booking.confirmed") == []


async def test_requested_booking_times_out_to_cancelled_by_system(orchestrator, store, gateway, create_booking, clock):
    booking = await create_booking()

    clock.advance(minutes=31)
    await orchestrator.tasks.run_once()

    booking = await store.get_booking(booking.id)
    assert booking.status == S.CANCELLED
    assert booking.cancelled_by == "system"
    assert booking.payment_status == PaymentStatus.CANCELLED
    last = (await store.list_status_updates(booking.id))[-1]
    assert last.updated_by == "system"
    assert last.metadata["trigger"] == "timeout"
    assert gateway.counts["cancel"] == 1
    assert gateway.counts["refund"] == 0


async def test_watchdog_does_not_fire_before_dwell_time(orchestrator, store, create_booking, clock):
    booking = await create_booking()

    clock.advance(minutes=29)
    await orchestrator.tasks.run_once()

    assert (await store.get_booking(booking.id)).status == S.REQUESTED


async def test_watchdog_rechecks_status_at_fire_time(orchestrator, store, create_booking, clock):
    booking = await create_booking()
    await orchestrator.claim_job(booking.id, "worker-1")

    clock.advance(minutes=31)
    await orchestrator.tasks.run_once()

    booking = await store.get_booking(booking.id)
    assert booking.status == S.CONFIRMED
    assert [u.new_status for u in await store.list_status_updates(booking.id)] == [S.CONFIRMED]


async def test_watchdog_ignores_other_version(orchestrator, store, create_booking):
    booking = await create_booking()

    result = await orchestrator.engine.handle_timeout(
        TimeoutFired(booking.id, S.REQUESTED, booking.status_version + 3)
    )

    assert result is None
    assert (await store.get_booking(booking.id)).status == S.REQUESTED


async def test_assigned_stall_becomes_no_show(orchestrator, store, create_booking, advance_to, clock):
    booking = await create_booking()
    await advance_to(booking.id, S.ASSIGNED)

    clock.advance(minutes=16)
    await orchestrator.tasks.run_once()

    booking = await store.get_booking(booking.id)
    assert booking.status == S.NO_SHOW
    assert store.workers["worker-1"].no_show_count == 1


async def test_state_without_fallback_only_logs(orchestrator, store, create_booking, advance_to, clock):
    booking = await create_booking()
    await advance_to(booking.id, S.EN_ROUTE)

    clock.advance(hours=2)
    await orchestrator.tasks.run_once()

    assert (await store.get_booking(booking.id)).status == S.EN_ROUTE


async def test_injected_policy_drives_timeouts(store, gateway, dispatcher, scheduler, tracker, clock):
    policy = WorkflowPolicy(dwell_times={S.REQUESTED: timedelta(seconds=1), S.ASSIGNED: timedelta(seconds=1)})
    orchestrator = BookingOrchestrator(store, gateway, dispatcher, scheduler, tracker, policy=policy, clock=clock)
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))
    clock.advance(seconds=2)
    await orchestrator.tasks.run_once()

    assert (await store.get_booking(outcome.booking_id)).status == S.CANCELLED


async def test_timeout_signal_carries_booking_and_status():
    signal = TimeoutFired("b-1", S.REQUESTED, 4)

    assert signal.booking_id == "b-1"
    assert signal.status == S.REQUESTED
    assert signal.status_version == 4
    assert SYSTEM.label == "system"
