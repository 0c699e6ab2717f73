"""
Response schemas shared by the booking, payment and admin routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, field_serializer

from app.core.exceptions import BookingActionError


class _Schema(BaseModel):
    model_config = {"from_attributes": True}


class BookingResponse(_Schema):
    id: int
    uuid: str
    trip_id: int
    sender_id: int
    receiver_id: int
    package_description: Optional[str] = None
    weight_kg: Decimal
    proposed_price: Decimal
    final_price: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    status: str
    payment_status: Optional[str] = None
    cancellation_type: Optional[str] = None
    refund_percentage: Optional[int] = None
    refund_amount: Optional[Decimal] = None
    compensation_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    pickup_date: Optional[datetime] = None
    delivery_confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_serializer("status", "payment_status", "cancellation_type")
    def serialize_enum(self, v: Any) -> Optional[str]:
        return getattr(v, "value", v)

    @field_serializer(
        "weight_kg", "proposed_price", "final_price", "commission_rate",
        "commission_amount", "refund_amount", "compensation_amount",
    )
    def serialize_money(self, v: Optional[Decimal]) -> Optional[str]:
        return None if v is None else f"{v:.2f}"


class TripResponse(_Schema):
    id: int
    owner_id: int
    departure_city: str
    arrival_city: str
    departure_at: datetime
    available_weight_kg: Decimal
    price_per_kg: Decimal
    status: str

    @field_serializer("status")
    def serialize_status(self, v: Any) -> str:
        return getattr(v, "value", v)

    @field_serializer("available_weight_kg", "price_per_kg")
    def serialize_money(self, v: Decimal) -> str:
        return f"{v:.2f}"


class PaymentAuthorizationResponse(_Schema):
    id: int
    provider_intent_id: str
    amount: Decimal
    platform_fee: Decimal
    captured_amount: Optional[Decimal] = None
    currency: str
    status: str
    capture_mode: Optional[str] = None
    capture_attempts: int
    expires_at: Optional[datetime] = None

    @field_serializer("status", "capture_mode")
    def serialize_enum(self, v: Any) -> Optional[str]:
        return getattr(v, "value", v)

    @field_serializer("amount", "platform_fee", "captured_amount")
    def serialize_money(self, v: Optional[Decimal]) -> Optional[str]:
        return None if v is None else f"{v:.2f}"


class EscrowResponse(_Schema):
    id: int
    booking_id: int
    amount_held: Decimal
    amount_released: Decimal
    currency: str
    status: str
    release_reason: Optional[str] = None
    held_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    @field_serializer("status", "release_reason")
    def serialize_enum(self, v: Any) -> Optional[str]:
        return getattr(v, "value", v)

    @field_serializer("amount_held", "amount_released")
    def serialize_money(self, v: Decimal) -> str:
        return f"{v:.2f}"


class TransactionResponse(_Schema):
    id: int
    type: str
    status: str
    amount: Decimal
    commission_amount: Optional[Decimal] = None
    receiver_amount: Optional[Decimal] = None
    currency: str
    provider_reference: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_serializer("type", "status")
    def serialize_enum(self, v: Any) -> str:
        return getattr(v, "value", v)

    @field_serializer("amount", "commission_amount", "receiver_amount")
    def serialize_money(self, v: Optional[Decimal]) -> Optional[str]:
        return None if v is None else f"{v:.2f}"


class VerificationCodeResponse(_Schema):
    """Shown to the code's owner only"""
    code: str
    code_type: str
    status: str
    attempts_remaining: int
    expires_at: datetime

    @field_serializer("code_type", "status")
    def serialize_enum(self, v: Any) -> str:
        return getattr(v, "value", v)


class CancellationAttemptResponse(_Schema):
    id: int
    booking_id: Optional[int] = None
    trip_id: Optional[int] = None
    attempt_type: str
    booking_status: Optional[str] = None
    is_allowed: bool
    denial_reason: Optional[str] = None
    severity: Optional[str] = None
    refund_percentage: Optional[int] = None
    created_at: Optional[datetime] = None


def booking_dict(booking) -> dict[str, Any]:
    return BookingResponse.model_validate(booking).model_dump()


def ensure_success(result) -> None:
    """Raise the HTTP error envelope for a failed service result"""
    if not result.success:
        raise BookingActionError.from_result(result)


def transition_payload(result, **extra: Any) -> dict[str, Any]:
    """Success envelope for a TransitionResult"""
    ensure_success(result)
    payload: dict[str, Any] = {"success": True, "message": result.message}
    if result.booking is not None:
        payload["booking"] = booking_dict(result.booking)
    if result.escrow is not None:
        payload["escrow"] = EscrowResponse.model_validate(result.escrow).model_dump()
    if result.details:
        payload["details"] = result.details
    payload.update(extra)
    return payload
