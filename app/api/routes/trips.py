"""
Trip routes (traveler side)
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.api.routes.serializers import TripResponse, ensure_success
from app.core.exceptions import BookingActionError, ReasonCode
from app.core.validation import sanitized_text_validator
from app.db.database import get_db
from app.db.models.trip import Trip
from app.db.models.user import User
from app.domain.services.booking_service import BookingService

router = APIRouter()


class TripCancelRequest(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        return sanitized_text_validator(v, max_length=500)


@router.get("/{trip_id}", summary="Get a trip", tags=["Trips"])
async def get_trip(
    trip_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    trip = await db.get(Trip, trip_id)
    if trip is None:
        raise BookingActionError(ReasonCode.TRIP_NOT_FOUND, "Trip not found")
    return {"success": True, "trip": TripResponse.model_validate(trip).model_dump()}


@router.get(
    "/{trip_id}/cancellation-eligibility",
    summary="Whether the traveler may cancel this trip now",
    tags=["Cancellations"],
)
async def trip_cancellation_eligibility(
    trip_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).trip_cancellation_eligibility(trip_id, user)
    ensure_success(result)
    return {
        "success": True,
        "eligible": result.decision.allowed,
        "decision": result.decision.to_dict(),
    }


@router.post(
    "/{trip_id}/cancel",
    summary="Cancel a trip and refund every open booking in full",
    tags=["Trips"],
)
async def cancel_trip(
    trip_id: int,
    data: TripCancelRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = BookingService(db)
    result = await service.cancel_trip(trip_id, user, reason=data.reason if data else None)
    ensure_success(result)
    trip = await db.get(Trip, trip_id)
    return {
        "success": True,
        "message": result.message,
        "trip": TripResponse.model_validate(trip).model_dump(),
        "decision": result.decision.to_dict(),
    }
