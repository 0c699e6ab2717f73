"""
Booking API Routes

Every action maps 1:1 onto a BookingService method; a failed result is
turned into the error envelope by ``BookingActionError``.
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.api.routes.serializers import (
    EscrowResponse,
    PaymentAuthorizationResponse,
    TransactionResponse,
    booking_dict,
    transition_payload,
)
from app.core.exceptions import BookingActionError, ReasonCode
from app.core.logging import get_logger
from app.core.validation import amount_validator, sanitized_text_validator
from app.db.database import get_db
from app.db.models.booking import BookingStatus
from app.db.models.user import User
from app.domain.services.booking_service import BookingService, actor_for
from app.state_machine.booking_states import Actor, allowed_actions

logger = get_logger(__name__)

router = APIRouter()


class BookingCreate(BaseModel):
    trip_id: int
    weight_kg: Decimal = Field(gt=0, le=100)
    proposed_price: Decimal
    package_description: Optional[str] = None

    @field_validator("proposed_price")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        return amount_validator(v)

    @field_validator("package_description")
    @classmethod
    def sanitize_description(cls, v: Optional[str]) -> Optional[str]:
        return sanitized_text_validator(v, max_length=500)


class AcceptRequest(BaseModel):
    final_price: Optional[Decimal] = None

    @field_validator("final_price")
    @classmethod
    def validate_price(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return amount_validator(v)


class ConfirmPaymentRequest(BaseModel):
    payment_method_id: Optional[str] = Field(default=None, max_length=100)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        return sanitized_text_validator(v, max_length=500)


async def _visible_booking(service: BookingService, booking_id: int, user: User):
    booking = await service.get_booking(booking_id)
    if booking is None:
        raise BookingActionError(ReasonCode.BOOKING_NOT_FOUND, "Booking not found")
    if actor_for(booking, user) is None:
        raise BookingActionError(ReasonCode.FORBIDDEN, "You are not a party to this booking")
    return booking


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Request a booking on a trip",
    tags=["Bookings"],
)
async def create_booking(
    data: BookingCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = BookingService(db)
    result = await service.create_booking(
        user,
        trip_id=data.trip_id,
        weight_kg=data.weight_kg,
        proposed_price=data.proposed_price,
        package_description=data.package_description,
    )
    return transition_payload(result)


@router.get("", summary="List my bookings (as sender or traveler)", tags=["Bookings"])
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    bookings = await BookingService(db).list_bookings(user.id, status_filter)
    return {"success": True, "bookings": [booking_dict(b) for b in bookings]}


@router.get("/{booking_id}", summary="Get a booking", tags=["Bookings"])
async def get_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    booking = await _visible_booking(BookingService(db), booking_id, user)
    actor = actor_for(booking, user)
    return {
        "success": True,
        "booking": booking_dict(booking),
        "allowed_actions": [a.value for a in allowed_actions(booking.status, actor)],
    }


@router.post(
    "/{booking_id}/accept",
    summary="Accept a booking request (traveler)",
    description=(
        "Fixes the final price and commission, then places a hold on the sender's card. "
        "Answers 202 with `payment_outcome_unknown` when the provider timed out."
    ),
    tags=["Bookings"],
)
async def accept_booking(
    booking_id: int,
    data: AcceptRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    final_price = data.final_price if data else None
    result = await BookingService(db).accept(booking_id, user, final_price=final_price)
    return transition_payload(result)


@router.post("/{booking_id}/reject", summary="Reject a booking request (traveler)", tags=["Bookings"])
async def reject_booking(
    booking_id: int,
    data: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).reject(booking_id, user, reason=data.reason if data else None)
    return transition_payload(result)


@router.post("/{booking_id}/confirm-payment", summary="Confirm the card hold (sender)", tags=["Bookings"])
async def confirm_payment(
    booking_id: int,
    data: ConfirmPaymentRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).confirm_payment(
        booking_id, user, payment_method_id=data.payment_method_id if data else None
    )
    return transition_payload(result)


@router.post("/{booking_id}/capture", summary="Capture the confirmed payment (traveler)", tags=["Bookings"])
async def capture_payment(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).capture(booking_id, user)
    return transition_payload(result)


@router.post("/{booking_id}/cancel", summary="Cancel a booking (sender)", tags=["Bookings"])
async def cancel_booking(
    booking_id: int,
    data: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).cancel(booking_id, user, reason=data.reason if data else None)
    return transition_payload(
        result,
        decision=result.decision.to_dict() if result.decision else None,
        quote=result.quote.to_dict() if result.quote else None,
    )


@router.post("/{booking_id}/no-show", summary="Declare the sender absent (traveler)", tags=["Bookings"])
async def declare_no_show(
    booking_id: int,
    data: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).no_show(booking_id, user, reason=data.reason if data else None)
    return transition_payload(result)


@router.post("/{booking_id}/dispute", summary="Open a dispute on a delivered booking", tags=["Bookings"])
async def open_dispute(
    booking_id: int,
    data: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).dispute(booking_id, user, notes=data.reason if data else None)
    return transition_payload(result)


@router.get(
    "/{booking_id}/payment",
    summary="Payment state of a booking: authorization, escrow and ledger",
    tags=["Bookings"],
)
async def booking_payment(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = BookingService(db)
    booking = await _visible_booking(service, booking_id, user)
    return await payment_overview(service, booking)


async def payment_overview(service: BookingService, booking) -> dict:
    escrow = await service.escrow.get_for_booking(booking.id)
    transactions = await service.payments.get_transactions(booking.id)
    authorization = booking.payment_authorization
    return {
        "success": True,
        "booking": booking_dict(booking),
        "authorization": (
            PaymentAuthorizationResponse.model_validate(authorization).model_dump() if authorization else None
        ),
        "escrow": EscrowResponse.model_validate(escrow).model_dump() if escrow else None,
        "transactions": [TransactionResponse.model_validate(t).model_dump() for t in transactions],
    }


@router.get(
    "/{booking_id}/cancellation-eligibility",
    summary="What cancelling (sender) or declaring a no-show (traveler) would do now",
    tags=["Cancellations"],
)
async def cancellation_eligibility(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).booking_cancellation_eligibility(booking_id, user)
    if not result.success:
        raise BookingActionError.from_result(result)
    actor = actor_for(result.booking, user)
    return {
        "success": True,
        "action": "cancel" if actor == Actor.SENDER else "no_show",
        "eligible": result.decision.allowed,
        "decision": result.decision.to_dict(),
        "quote": result.quote.to_dict() if result.quote else None,
    }
