from fastapi import APIRouter, Depends, HTTPException, Request

from .coordinator import BookingRequest
from .domain import Actor, ActorRole, TransactionStatus
from .schemas import (
    AdvanceStatusRequest,
    BookingResponse,
    CancelBookingRequest,
    ClaimResponse,
    CreateBookingRequest,
    CreateBookingResponse,
    StatusUpdateResponse,
    TransactionResponse,
    TransitionResponse,
)
from .security import get_current_actor, require_role
from .service import BookingOrchestrator

router = APIRouter()

JOB_UNAVAILABLE = "This job is no longer available"
PAYMENT_RETRY = "Payment could not be completed. Please check your payment method and try again."
SAGA_FAILED = "Something went wrong while creating your booking. Our team has been alerted."


def get_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.orchestrator


def _saga_response(outcome) -> CreateBookingResponse:
    if outcome.status == TransactionStatus.ROLLED_BACK:
        raise HTTPException(
            status_code=402,
            detail={"message": PAYMENT_RETRY, "transaction_id": outcome.transaction_id, "retryable": True},
        )
    if outcome.status == TransactionStatus.FAILED:
        raise HTTPException(
            status_code=500,
            detail={"message": SAGA_FAILED, "transaction_id": outcome.transaction_id},
        )
    return CreateBookingResponse(
        transaction_id=outcome.transaction_id,
        booking_id=outcome.booking_id,
        status=outcome.status.value,
    )


@router.post("/bookings", response_model=CreateBookingResponse)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(actor, [ActorRole.CUSTOMER, ActorRole.ADMIN])

    customer_id = actor.user_id if actor.role == ActorRole.CUSTOMER else data.customer_id
    if not customer_id:
        raise HTTPException(status_code=400, detail="customer_id is required")

    outcome = await orchestrator.create_booking_with_payment(
        BookingRequest(
            customer_id=customer_id,
            worker_id=data.worker_id,
            address_id=data.address_id,
            scheduled_start=data.scheduled_start,
            duration_minutes=data.duration_minutes,
            subtotal=data.subtotal,
            tip=data.tip,
            notes=data.notes,
            idempotency_key=data.idempotency_key,
        )
    )
    return _saga_response(outcome)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    booking = await orchestrator.get_booking(booking_id)
    return BookingResponse.from_booking(booking)


@router.get("/bookings/{booking_id}/history", response_model=list[StatusUpdateResponse])
async def get_history(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    updates = await orchestrator.timeline(booking_id)
    return [StatusUpdateResponse.from_update(u) for u in updates]


@router.post("/bookings/{booking_id}/claim", response_model=ClaimResponse)
async def claim_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(actor, [ActorRole.WORKER])

    result = await orchestrator.claim_job(booking_id, actor.user_id)
    if not result.claimed:
        raise HTTPException(status_code=409, detail=JOB_UNAVAILABLE)

    return ClaimResponse(booking_id=booking_id, claimed=True, status=result.booking.status.value)


@router.post("/bookings/{booking_id}/status", response_model=TransitionResponse)
async def advance_status(
    booking_id: str,
    data: AdvanceStatusRequest,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.advance_status(booking_id, data.status, actor, notes=data.notes, metadata=data.metadata)
    return TransitionResponse(
        booking=BookingResponse.from_booking(result.booking),
        update=StatusUpdateResponse.from_update(result.update),
    )


@router.post("/bookings/{booking_id}/cancel", response_model=TransitionResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(actor, [ActorRole.CUSTOMER, ActorRole.WORKER, ActorRole.ADMIN])

    result = await orchestrator.cancel_booking(booking_id, actor, data.reason, data.refund_pct_override)
    return TransitionResponse(
        booking=BookingResponse.from_booking(result.booking),
        update=StatusUpdateResponse.from_update(result.update),
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(actor, [ActorRole.CUSTOMER, ActorRole.ADMIN])

    tx = await orchestrator.get_transaction(transaction_id)
    if actor.role == ActorRole.CUSTOMER and tx.customer_id != actor.user_id:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionResponse.from_transaction(tx)


@router.post("/transactions/{transaction_id}/confirm", response_model=CreateBookingResponse)
async def confirm_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    require_role(actor, [ActorRole.CUSTOMER, ActorRole.ADMIN])

    tx = await orchestrator.get_transaction(transaction_id)
    if actor.role == ActorRole.CUSTOMER and tx.customer_id != actor.user_id:
        raise HTTPException(status_code=404, detail="Transaction not found")

    outcome = await orchestrator.confirm_transaction(transaction_id)
    return _saga_response(outcome)
