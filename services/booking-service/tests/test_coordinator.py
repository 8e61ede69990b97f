import asyncio
from datetime import timedelta

import pytest

from app.domain import ActorRole, BookingStatus as S, PaymentStatus, TransactionStatus as TS, UserAccount
from app.errors import ExternalServiceError, TransactionNotFound, ValidationError
from conftest import booking_request


async def test_saga_success(orchestrator, store, gateway, scheduler, clock):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.succeeded
    assert outcome.error is None
    booking = await store.get_booking(outcome.booking_id)
    assert booking.status == S.REQUESTED
    assert booking.payment_status == PaymentStatus.SUCCEEDED
    assert booking.platform_fee == 3000
    assert booking.worker_amount == 7000

    tx = await store.get_transaction(outcome.transaction_id)
    assert tx.status == TS.COMPLETED
    assert tx.booking_id == booking.id
    assert tx.payment_intent_id == booking.payment_intent_id
    assert tx.completed_at == clock()

    intent = gateway.intents[booking.payment_intent_id]
    assert intent["status"] == "requires_capture"
    assert intent["metadata"]["transaction_id"] == tx.id
    assert [t.kind.value for t in scheduler.pending_for(booking.id)] == ["timeout"]


async def test_creation_writes_no_history_row(orchestrator, store, clock):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert await store.list_status_updates(outcome.booking_id) == []


async def test_direct_booking_notifies_worker(orchestrator, dispatcher, clock):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock, worker_id="worker-2"))
    await orchestrator.drain()

    assert [t for t, _, _ in dispatcher.of_type("booking.requested")] == ["worker-2"]
    assert outcome.succeeded


async def test_confirm_failure_rolls_back(orchestrator, store, gateway, clock):
    gateway.fail("confirm")

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.status == TS.ROLLED_BACK
    assert outcome.booking_id is None
    assert "confirm declined" in outcome.error
    assert store.bookings == {}
    assert gateway.counts["cancel"] == 1

    tx = await store.get_transaction(outcome.transaction_id)
    assert tx.status == TS.ROLLED_BACK
    assert tx.booking_id is not None
    assert tx.error_reason == "confirm declined"


async def test_hold_failure_rolls_back_without_cancel(orchestrator, store, gateway, clock):
    gateway.fail("create_hold")

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.status == TS.ROLLED_BACK
    assert store.bookings == {}
    assert gateway.counts["cancel"] == 0


async def test_booking_insert_failure_cancels_hold(orchestrator, store, gateway, clock):
    store.fail("insert_booking")

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.status == TS.ROLLED_BACK
    assert gateway.counts["cancel"] == 1


async def test_failed_compensation_is_failed_and_alerts(orchestrator, store, gateway, dispatcher, clock):
    gateway.fail("confirm")
    gateway.fail("cancel")

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.status == TS.FAILED
    assert not outcome.succeeded
    assert "cancel declined" in outcome.error
    tx = await store.get_transaction(outcome.transaction_id)
    assert tx.status == TS.FAILED

    alerts = dispatcher.of_type("ops.alert")
    assert len(alerts) == 1
    target, _, payload = alerts[0]
    assert target == "ops"
    assert payload["kind"] == "rollback_failed"
    assert payload["transaction_id"] == tx.id


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"address_id": "addr-2"}, "does not belong"),
        ({"customer_id": "ghost"}, "inactive"),
        ({"worker_id": "cust-2"}, "inactive"),
    ],
)
async def test_precondition_failures_roll_back(orchestrator, store, gateway, clock, overrides, message):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock, **overrides))

    assert outcome.status == TS.ROLLED_BACK
    assert message in outcome.error
    assert gateway.counts["create_hold"] == 0
    assert store.bookings == {}


async def test_inactive_worker_is_rejected(orchestrator, store, gateway, clock):
    store.add_user(UserAccount("worker-5", ActorRole.WORKER, is_active=False))

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock, worker_id="worker-5"))

    assert outcome.status == TS.ROLLED_BACK
    assert gateway.counts["create_hold"] == 0


async def test_overlapping_booking_is_rejected(orchestrator, clock):
    first = await orchestrator.create_booking_with_payment(booking_request(clock, worker_id="worker-1"))
    assert first.succeeded

    overlapping = booking_request(
        clock, worker_id="worker-1", scheduled_start=clock() + timedelta(days=3, minutes=60)
    )
    outcome = await orchestrator.create_booking_with_payment(overlapping)

    assert outcome.status == TS.ROLLED_BACK
    assert "already has a booking" in outcome.error


async def test_adjacent_booking_is_allowed(orchestrator, clock):
    await orchestrator.create_booking_with_payment(booking_request(clock, worker_id="worker-1"))

    after = booking_request(clock, worker_id="worker-1", scheduled_start=clock() + timedelta(days=3, minutes=120))
    outcome = await orchestrator.create_booking_with_payment(after)

    assert outcome.succeeded


async def test_bad_amounts_are_rejected_before_any_write(orchestrator, store, clock):
    with pytest.raises(ValidationError):
        await orchestrator.create_booking_with_payment(booking_request(clock, subtotal=-5))
    with pytest.raises(ValidationError):
        await orchestrator.create_booking_with_payment(booking_request(clock, duration_minutes=0))

    assert store.transactions == {}


async def test_idempotency_key_replays_outcome(orchestrator, store, gateway, clock):
    first = await orchestrator.create_booking_with_payment(booking_request(clock, idempotency_key="req-1"))
    second = await orchestrator.create_booking_with_payment(booking_request(clock, idempotency_key="req-1"))

    assert second == first
    assert len(store.bookings) == 1
    assert gateway.counts["create_hold"] == 1


async def test_idempotency_key_replays_rollback(orchestrator, gateway, clock):
    gateway.fail("confirm")
    first = await orchestrator.create_booking_with_payment(booking_request(clock, idempotency_key="req-2"))
    gateway.heal()

    second = await orchestrator.create_booking_with_payment(booking_request(clock, idempotency_key="req-2"))

    assert second.status == TS.ROLLED_BACK
    assert second.transaction_id == first.transaction_id
    assert gateway.counts["create_hold"] == 1


async def test_confirm_transaction_is_idempotent(orchestrator, store, gateway, clock):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    again = await orchestrator.confirm_transaction(outcome.transaction_id)
    once_more = await orchestrator.confirm_transaction(outcome.transaction_id)

    assert again.succeeded and once_more.succeeded
    assert again.booking_id == outcome.booking_id
    assert gateway.counts["confirm"] == 1
    assert len(store.bookings) == 1


async def test_confirm_transaction_finishes_processing_transaction(orchestrator, store, gateway, clock):
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))
    tx = store.transactions[outcome.transaction_id]
    store.transactions[tx.id] = tx.copy(status=TS.PROCESSING, completed_at=None)
    booking = store.bookings[outcome.booking_id]
    store.bookings[booking.id] = booking.copy(payment_status=PaymentStatus.PENDING)

    confirmed = await orchestrator.confirm_transaction(tx.id)

    assert confirmed.succeeded
    assert (await store.get_transaction(tx.id)).status == TS.COMPLETED
    assert (await store.get_booking(booking.id)).payment_status == PaymentStatus.SUCCEEDED
    assert gateway.counts["confirm"] == 2


async def test_confirm_unknown_transaction(orchestrator):
    with pytest.raises(TransactionNotFound):
        await orchestrator.confirm_transaction("missing")


async def test_confirm_rolled_back_transaction_is_rejected(orchestrator, gateway, clock):
    gateway.fail("confirm")
    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    with pytest.raises(ValidationError):
        await orchestrator.confirm_transaction(outcome.transaction_id)


async def test_hold_is_cancelled_even_when_booking_delete_fails(orchestrator, store, gateway, dispatcher, clock):
    gateway.fail("confirm")
    store.fail("delete_booking")

    outcome = await orchestrator.create_booking_with_payment(booking_request(clock))

    assert outcome.status == TS.FAILED
    assert "delete_booking failed" in outcome.error
    assert gateway.counts["cancel"] == 1
    intent_id = store.transactions[outcome.transaction_id].payment_intent_id
    assert gateway.intents[intent_id]["status"] == "canceled"
    assert [p["kind"] for _, _, p in dispatcher.of_type("ops.alert")] == ["rollback_failed"]


async def test_open_job_is_not_claimable_while_payment_confirms(orchestrator, store, gateway, dispatcher, clock):
    confirming = asyncio.Event()
    release = asyncio.Event()

    async def slow_declined_confirm(intent_id):
        confirming.set()
        await release.wait()
        raise ExternalServiceError("confirm declined")

    gateway.confirm = slow_declined_confirm
    saga = asyncio.create_task(orchestrator.create_booking_with_payment(booking_request(clock)))
    await confirming.wait()

    booking_id = next(iter(store.bookings))
    claim = await orchestrator.claim_job(booking_id, "worker-1")
    release.set()
    outcome = await saga
    await orchestrator.drain()

    assert not claim.claimed
    assert outcome.status == TS.ROLLED_BACK
    assert store.bookings == {}
    assert store.status_updates == []
    assert dispatcher.sent_to("worker-1") == []
