import pytest

from app.domain import SYSTEM, BookingStatus as S, PaymentStatus, PayoutStatus, TaskKind, WorkerProfile
from app.errors import ValidationError
from conftest import ADMIN, CUSTOMER, WORKER


async def _completed(create_booking, advance_to):
    booking = await create_booking()
    return await advance_to(booking.id, S.COMPLETED)


async def test_settle_captures_and_marks_paid(orchestrator, store, gateway, scheduler, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)

    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()

    booking = await store.get_booking(booking.id)
    assert booking.status == S.PAID
    assert booking.payment_status == PaymentStatus.CAPTURED
    assert gateway.intents[booking.payment_intent_id]["captured"] == 10000
    last = (await store.list_status_updates(booking.id))[-1]
    assert last.updated_by == "system"
    assert last.metadata == {"amount": 7000}

    payout_tasks = [t for t in scheduler.pending_for(booking.id) if t.kind == TaskKind.PAYOUT]
    assert payout_tasks[0].due_at == clock() + orchestrator.policy.payout_delay


async def test_settle_skips_disputed_booking(orchestrator, store, gateway, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)
    await orchestrator.advance_status(booking.id, S.DISPUTED, CUSTOMER)

    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()

    assert (await store.get_booking(booking.id)).status == S.DISPUTED
    assert gateway.counts["capture"] == 0


async def test_payout_after_delay(orchestrator, store, gateway, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)
    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()

    clock.advance(hours=23)
    await orchestrator.tasks.run_once()
    assert gateway.counts["transfer"] == 0

    clock.advance(hours=1)
    await orchestrator.tasks.run_once()

    payout = await store.get_payout_for_booking(booking.id)
    assert payout.status == PayoutStatus.COMPLETED
    assert payout.amount == 7000
    assert payout.transfer_id in gateway.transfers
    assert ("transfer", "acct_worker-1", 7000) in gateway.calls


async def test_payout_runs_once(orchestrator, store, gateway, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)
    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()

    first = await orchestrator.settlement.payout(booking.id)
    second = await orchestrator.settlement.payout(booking.id)

    assert first.id == second.id
    assert gateway.counts["transfer"] == 1


async def test_payout_without_onboarding_fails_and_alerts(orchestrator, store, gateway, dispatcher, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)
    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()
    store.add_worker_profile(WorkerProfile("worker-1", "cleared", False, None))

    payout = await orchestrator.settlement.payout(booking.id)

    assert payout.status == PayoutStatus.FAILED
    assert "onboarding" in payout.error_message
    assert gateway.counts["transfer"] == 0
    assert dispatcher.of_type("ops.alert")[-1][2]["kind"] == "payout_failed"


async def test_transfer_failure_marks_payout_failed(orchestrator, store, gateway, dispatcher, create_booking, advance_to, clock):
    booking = await _completed(create_booking, advance_to)
    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()
    gateway.fail("transfer")

    payout = await orchestrator.settlement.payout(booking.id)

    assert payout.status == PayoutStatus.FAILED
    assert dispatcher.of_type("ops.alert")[-1][2]["kind"] == "payout_failed"


async def test_payout_skipped_before_paid(orchestrator, create_booking, advance_to):
    booking = await _completed(create_booking, advance_to)

    assert await orchestrator.settlement.payout(booking.id) is None


@pytest.mark.parametrize("actor", [CUSTOMER, WORKER, ADMIN])
async def test_only_settlement_marks_paid(orchestrator, store, gateway, create_booking, advance_to, clock, actor):
    booking = await _completed(create_booking, advance_to)

    with pytest.raises(ValidationError):
        await orchestrator.advance_status(booking.id, S.PAID, actor)

    clock.advance(seconds=5)
    await orchestrator.tasks.run_once()
    clock.advance(days=1)
    await orchestrator.tasks.run_once()

    booking = await store.get_booking(booking.id)
    assert booking.status == S.PAID
    assert booking.payment_status == PaymentStatus.CAPTURED
    assert gateway.counts["capture"] == 1
    assert gateway.counts["transfer"] == 1


async def test_payout_captures_uncaptured_hold_first(orchestrator, store, gateway, create_booking, advance_to):
    booking = await _completed(create_booking, advance_to)
    await orchestrator.engine.apply_transition(booking.id, S.PAID, SYSTEM)

    payout = await orchestrator.settlement.payout(booking.id)

    assert payout.status == PayoutStatus.COMPLETED
    assert (await store.get_booking(booking.id)).payment_status == PaymentStatus.CAPTURED
    operations = [call[0] for call in gateway.calls]
    assert operations.index("capture") < operations.index("transfer")
