"""
Admin and operations routes.

Authenticated with ``X-Admin-API-Key`` or an admin bearer token. Provider
error text appears in ``details`` here and nowhere else.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_access
from app.api.routes.bookings import payment_overview
from app.api.routes.serializers import transition_payload
from app.core.circuit_breaker import CircuitBreaker
from app.core.exceptions import BookingActionError, ReasonCode
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.booking_service import BookingService
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.state_machine.booking_states import Actor

logger = get_logger(__name__)

router = APIRouter()


def _admin_id(admin: Optional[User]) -> Optional[int]:
    return admin.id if admin else None


@router.post(
    "/bookings/{booking_id}/force-transfer",
    summary="Retry the traveler payout (delivered or no-show) or a late-cancellation compensation",
    tags=["Admin"],
)
async def force_transfer(
    booking_id: int,
    admin: Optional[User] = Depends(require_admin_access),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logger.info("Admin force transfer", extra_data={"booking_id": booking_id, "admin_id": _admin_id(admin)})
    result = await BookingService(db).force_transfer(booking_id)
    return transition_payload(result)


@router.post(
    "/bookings/{booking_id}/capture",
    summary="Capture a confirmed payment on behalf of the traveler",
    tags=["Admin"],
)
async def admin_capture(
    booking_id: int,
    admin: Optional[User] = Depends(require_admin_access),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logger.info("Admin capture", extra_data={"booking_id": booking_id, "admin_id": _admin_id(admin)})
    result = await BookingService(db).capture(booking_id, actor=Actor.ADMIN)
    return transition_payload(result)


@router.post(
    "/bookings/{booking_id}/reconcile",
    summary="Re-drive a booking whose provider outcome is unknown",
    tags=["Admin"],
)
async def reconcile_booking(
    booking_id: int,
    admin: Optional[User] = Depends(require_admin_access),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await PaymentReconciliationService(db).reconcile_booking(booking_id)
    if result is None:
        return {"success": True, "message": "Nothing to reconcile"}
    return transition_payload(result)


@router.get(
    "/bookings/{booking_id}/payment",
    summary="Authorization, escrow and ledger rows of any booking",
    tags=["Admin"],
)
async def admin_booking_payment(
    booking_id: int,
    admin: Optional[User] = Depends(require_admin_access),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = BookingService(db)
    booking = await service.get_booking(booking_id)
    if booking is None:
        raise BookingActionError(ReasonCode.BOOKING_NOT_FOUND, "Booking not found")
    payload = await payment_overview(service, booking)
    authorization = booking.payment_authorization
    if authorization is not None and payload["authorization"] is not None:
        payload["authorization"]["last_error"] = authorization.last_error
    return payload


@router.post(
    "/payments/reconcile",
    summary="Run one reconciliation sweep now",
    tags=["Admin"],
)
async def reconcile_payments(
    admin: Optional[User] = Depends(require_admin_access),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await PaymentReconciliationService(db).reconcile_pending()
    return {"success": True, **summary.to_dict()}


@router.get(
    "/circuit-breakers",
    summary="State of every circuit breaker",
    tags=["Admin"],
)
async def circuit_breakers(
    admin: Optional[User] = Depends(require_admin_access),
) -> dict:
    return {"success": True, "circuit_breakers": CircuitBreaker.snapshot()}
