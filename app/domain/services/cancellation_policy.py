"""
Cancellation Policy - who may cancel, when, and how much money goes back

``CancellationPolicy`` is pure: it decides from the booking/trip, the clock and
the caller's recent history. ``CancellationService`` feeds it from the database
and records every evaluation (allowed or denied) as a CancellationAttempt.

Booking cancellation by the sender:
    status pending                    -> always allowed, full refund, not counted
    >= LATE_CANCEL_HOURS before dep.  -> early_cancel, 100%
    <  LATE_CANCEL_HOURS before dep.  -> late_cancel, LATE_CANCEL_REFUND_PERCENT
                                         of the principal net of commission
    traveler marks no-show            -> no_show, 0%
Fees (commission + processor fee) are deducted only when a confirmed payment
exists; without one nothing was charged and nothing is retained.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.booking import Booking, BookingStatus, CancellationType
from app.db.models.cancellation_attempt import CancellationAttempt
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User
from app.domain.services.pricing import processor_fee, to_money, transfer_amount

logger = get_logger(__name__)

SENDER_CANCELLABLE = frozenset({
    BookingStatus.PENDING,
    BookingStatus.ACCEPTED,
    BookingStatus.PAYMENT_AUTHORIZED,
    BookingStatus.PAYMENT_CONFIRMED,
})
NO_SHOW_STATUSES = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.PAYMENT_AUTHORIZED,
    BookingStatus.PAYMENT_CONFIRMED,
    BookingStatus.PAID,
})
# A parcel is physically with the traveler (or already delivered)
ACTIVE_TRANSPORT_STATUSES = frozenset({
    BookingStatus.IN_TRANSIT,
    BookingStatus.DELIVERED,
    BookingStatus.DISPUTED,
})
OPEN_BOOKING_STATUSES = frozenset({
    BookingStatus.PENDING,
    BookingStatus.ACCEPTED,
    BookingStatus.PAYMENT_AUTHORIZED,
    BookingStatus.PAYMENT_CONFIRMED,
    BookingStatus.PAID,
})

TRIP_CANCEL_WITH_BOOKINGS = "trip_cancel_with_bookings"
TRIP_CANCEL_EMPTY = "trip_cancel"
_COUNTED_BOOKING_TYPES = (CancellationType.EARLY_CANCEL.value, CancellationType.LATE_CANCEL.value)


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def hours_until(departure_at: datetime, now: datetime) -> float:
    return (departure_at - now).total_seconds() / 3600


def classify_severity(hours_before_departure: float) -> Severity:
    """Admin-facing severity: the closer to departure, the worse"""
    if hours_before_departure >= settings.EARLY_CANCEL_HOURS:
        return Severity.LOW
    if hours_before_departure >= settings.LATE_CANCEL_HOURS:
        return Severity.MEDIUM
    return Severity.HIGH


@dataclass
class CancellationDecision:
    allowed: bool
    category: Optional[CancellationType]
    refund_percentage: int
    fees_deducted: bool
    severity: Severity
    hours_before_departure: float
    reason: Optional[ReasonCode] = None
    message: str = ""
    # Counts towards the repeat-canceller limit
    counted: bool = False
    attempt_type: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.allowed

    @property
    def details(self) -> dict[str, Any]:
        return {
            "category": self.category.value if self.category else None,
            "refund_percentage": self.refund_percentage,
            "severity": self.severity.value,
            "hours_before_departure": round(self.hours_before_departure, 2),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "fees_deducted": self.fees_deducted,
            **self.details,
        }


@dataclass
class CancellationQuote:
    """Money consequences of an allowed decision, each rounded once"""
    principal: Decimal
    refund_amount: Decimal
    retained_amount: Decimal
    traveler_compensation: Decimal
    processor_fee: Decimal
    platform_fee: Decimal
    charged: bool = False

    @classmethod
    def for_booking(cls, booking: Booking, decision: CancellationDecision) -> "CancellationQuote":
        principal = Decimal(str(booking.final_price if booking.final_price is not None else booking.proposed_price))
        zero = Decimal("0.00")
        charged = booking.status in (BookingStatus.PAYMENT_CONFIRMED, BookingStatus.PAID)

        if not charged or not decision.allowed:
            # Only a hold (or nothing) exists: releasing it refunds everything
            return cls(to_money(principal), to_money(principal), zero, zero, zero, zero, charged)

        if decision.category == CancellationType.NO_SHOW:
            rate = booking.commission_rate if booking.commission_rate is not None else settings.DEFAULT_COMMISSION_RATE
            return cls(
                principal=to_money(principal),
                refund_amount=zero,
                retained_amount=to_money(principal),
                traveler_compensation=transfer_amount(principal, rate),
                processor_fee=zero,
                platform_fee=to_money(booking.commission_amount or zero),
                charged=charged,
            )

        commission = Decimal(str(booking.commission_amount or 0))
        fee = processor_fee(principal) if decision.fees_deducted else zero
        platform = commission if decision.fees_deducted else zero
        net = principal - platform
        refundable = net * Decimal(decision.refund_percentage) / Decimal("100")
        compensation = net - refundable if decision.category == CancellationType.LATE_CANCEL else Decimal("0")
        refund = max(Decimal("0"), refundable - fee)
        refund = to_money(refund)
        return cls(
            principal=to_money(principal),
            refund_amount=refund,
            retained_amount=to_money(principal) - refund,
            traveler_compensation=to_money(compensation),
            processor_fee=to_money(fee),
            platform_fee=to_money(platform),
            charged=charged,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "principal": str(self.principal),
            "refund_amount": str(self.refund_amount),
            "retained_amount": str(self.retained_amount),
            "traveler_compensation": str(self.traveler_compensation),
            "processor_fee": str(self.processor_fee),
            "platform_fee": str(self.platform_fee),
        }


def _denied(reason: ReasonCode, message: str, hours: float, attempt_type: Optional[str] = None) -> CancellationDecision:
    return CancellationDecision(
        allowed=False,
        category=None,
        refund_percentage=0,
        fees_deducted=False,
        severity=classify_severity(hours),
        hours_before_departure=hours,
        reason=reason,
        message=message,
        attempt_type=attempt_type,
    )


class CancellationPolicy:
    """Pure decision rules; no database access"""

    def evaluate_booking(
        self,
        user: User,
        booking: Booking,
        trip: Trip,
        now: datetime,
        recent_cancellations: int,
    ) -> CancellationDecision:
        hours = hours_until(trip.departure_at, now)

        if booking.status not in SENDER_CANCELLABLE:
            return _denied(
                ReasonCode.CANCELLATION_NOT_ALLOWED,
                f"A booking in status {booking.status.value} cannot be cancelled",
                hours,
                attempt_type="denied",
            )
        if user.is_suspended(now):
            return _denied(ReasonCode.USER_SUSPENDED, "Your account is suspended", hours, attempt_type="denied")

        if booking.status == BookingStatus.PENDING:
            return CancellationDecision(
                allowed=True,
                category=CancellationType.EARLY_CANCEL,
                refund_percentage=100,
                fees_deducted=False,
                severity=classify_severity(hours),
                hours_before_departure=hours,
                message="Request withdrawn",
                attempt_type="withdrawal",
            )

        if recent_cancellations >= settings.MAX_CANCELLATIONS_PER_WINDOW:
            return _denied(
                ReasonCode.CANCELLATION_LIMIT_REACHED,
                f"Cancellation limit reached ({settings.MAX_CANCELLATIONS_PER_WINDOW} "
                f"in {settings.CANCELLATION_WINDOW_DAYS} days)",
                hours,
                attempt_type="denied",
            )

        has_confirmed_payment = booking.status == BookingStatus.PAYMENT_CONFIRMED
        if hours >= settings.LATE_CANCEL_HOURS:
            category = CancellationType.EARLY_CANCEL
            percentage = 100
            message = "Cancelled with full refund"
        else:
            category = CancellationType.LATE_CANCEL
            percentage = settings.LATE_CANCEL_REFUND_PERCENT if has_confirmed_payment else 100
            message = (
                f"Late cancellation: {percentage}% refund" if has_confirmed_payment
                else "Late cancellation, nothing was charged"
            )
        if has_confirmed_payment and percentage == 100:
            message = "Cancelled, refund minus fees"

        return CancellationDecision(
            allowed=True,
            category=category,
            refund_percentage=percentage,
            fees_deducted=has_confirmed_payment,
            severity=classify_severity(hours),
            hours_before_departure=hours,
            message=message,
            counted=True,
            attempt_type=category.value,
        )

    def evaluate_no_show(self, booking: Booking, trip: Trip, now: datetime) -> CancellationDecision:
        hours = hours_until(trip.departure_at, now)
        if booking.status not in NO_SHOW_STATUSES:
            return _denied(
                ReasonCode.CANCELLATION_NOT_ALLOWED,
                f"No-show cannot be declared in status {booking.status.value}",
                hours,
                attempt_type="denied",
            )
        return CancellationDecision(
            allowed=True,
            category=CancellationType.NO_SHOW,
            refund_percentage=0,
            fees_deducted=False,
            severity=classify_severity(hours),
            hours_before_departure=hours,
            message="Sender marked as no-show, no refund",
            attempt_type=CancellationType.NO_SHOW.value,
        )

    def evaluate_trip(
        self,
        user: User,
        trip: Trip,
        bookings: Sequence[Booking],
        now: datetime,
        recent_trip_cancellations: int,
    ) -> CancellationDecision:
        hours = hours_until(trip.departure_at, now)

        if trip.status in (TripStatus.CANCELLED, TripStatus.COMPLETED):
            return _denied(
                ReasonCode.CANCELLATION_NOT_ALLOWED,
                f"A {trip.status.value} trip cannot be cancelled",
                hours,
                attempt_type="denied",
            )
        if trip.status == TripStatus.IN_PROGRESS or any(
            b.status in ACTIVE_TRANSPORT_STATUSES for b in bookings
        ):
            return _denied(
                ReasonCode.TRIP_HAS_ACTIVE_TRANSPORT,
                "Parcels are already in transit on this trip",
                hours,
                attempt_type="denied",
            )
        if user.is_suspended(now):
            return _denied(ReasonCode.USER_SUSPENDED, "Your account is suspended", hours, attempt_type="denied")

        has_bookings = any(b.status in OPEN_BOOKING_STATUSES for b in bookings)
        if has_bookings and recent_trip_cancellations >= settings.MAX_TRIP_CANCELLATIONS_PER_WINDOW:
            return _denied(
                ReasonCode.CANCELLATION_LIMIT_REACHED,
                f"Trip cancellation limit reached ({settings.MAX_TRIP_CANCELLATIONS_PER_WINDOW} "
                f"in {settings.CANCELLATION_WINDOW_DAYS} days)",
                hours,
                attempt_type="denied",
            )

        return CancellationDecision(
            allowed=True,
            category=CancellationType.TRIP_CANCELLED,
            refund_percentage=100,
            fees_deducted=False,
            severity=classify_severity(hours),
            hours_before_departure=hours,
            message="Trip cancelled, senders are fully refunded" if has_bookings else "Trip cancelled",
            counted=has_bookings,
            attempt_type=TRIP_CANCEL_WITH_BOOKINGS if has_bookings else TRIP_CANCEL_EMPTY,
        )


@dataclass
class CancellationHistory:
    attempts: list[CancellationAttempt] = field(default_factory=list)
    counted_in_window: int = 0
    trip_cancellations_in_window: int = 0
    window_days: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_days": self.window_days,
            "booking_cancellations_in_window": self.counted_in_window,
            "booking_cancellations_limit": settings.MAX_CANCELLATIONS_PER_WINDOW,
            "trip_cancellations_in_window": self.trip_cancellations_in_window,
            "trip_cancellations_limit": settings.MAX_TRIP_CANCELLATIONS_PER_WINDOW,
            "attempts": [
                {
                    "id": a.id,
                    "booking_id": a.booking_id,
                    "trip_id": a.trip_id,
                    "attempt_type": a.attempt_type,
                    "booking_status": a.booking_status,
                    "is_allowed": a.is_allowed,
                    "denial_reason": a.denial_reason,
                    "severity": a.severity,
                    "refund_percentage": a.refund_percentage,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in self.attempts
            ],
        }


class CancellationService:
    """Database side of the policy: counting, recording and history"""

    def __init__(self, db: AsyncSession, policy: Optional[CancellationPolicy] = None):
        self.db = db
        self.policy = policy or CancellationPolicy()

    def _window_start(self, now: datetime) -> datetime:
        return now - timedelta(days=settings.CANCELLATION_WINDOW_DAYS)

    async def count_recent_booking_cancellations(self, user_id: int, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(CancellationAttempt.id)).where(
                CancellationAttempt.user_id == user_id,
                CancellationAttempt.is_allowed.is_(True),
                CancellationAttempt.attempt_type.in_(_COUNTED_BOOKING_TYPES),
                CancellationAttempt.booking_status != BookingStatus.PENDING.value,
                CancellationAttempt.created_at >= self._window_start(now),
            )
        )
        return result.scalar() or 0

    async def count_recent_trip_cancellations(self, user_id: int, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(CancellationAttempt.id)).where(
                CancellationAttempt.user_id == user_id,
                CancellationAttempt.is_allowed.is_(True),
                CancellationAttempt.attempt_type == TRIP_CANCEL_WITH_BOOKINGS,
                CancellationAttempt.created_at >= self._window_start(now),
            )
        )
        return result.scalar() or 0

    async def evaluate_booking(self, user: User, booking: Booking, now: Optional[datetime] = None) -> CancellationDecision:
        now = now or datetime.utcnow()
        recent = await self.count_recent_booking_cancellations(user.id, now)
        return self.policy.evaluate_booking(user, booking, booking.trip, now, recent)

    async def evaluate_trip(
        self,
        user: User,
        trip: Trip,
        bookings: Sequence[Booking],
        now: Optional[datetime] = None,
    ) -> CancellationDecision:
        now = now or datetime.utcnow()
        recent = await self.count_recent_trip_cancellations(user.id, now)
        return self.policy.evaluate_trip(user, trip, bookings, now, recent)

    def evaluate_no_show(self, booking: Booking, now: Optional[datetime] = None) -> CancellationDecision:
        return self.policy.evaluate_no_show(booking, booking.trip, now or datetime.utcnow())

    def record(
        self,
        decision: CancellationDecision,
        user_id: int,
        *,
        booking: Optional[Booking] = None,
        trip: Optional[Trip] = None,
    ) -> CancellationAttempt:
        """Add the audit row to the session (committed by the caller)"""
        attempt = CancellationAttempt(
            user_id=user_id,
            booking_id=booking.id if booking else None,
            trip_id=trip.id if trip else (booking.trip_id if booking else None),
            attempt_type=decision.attempt_type or (decision.category.value if decision.category else "denied"),
            booking_status=booking.status.value if booking else None,
            is_allowed=decision.allowed,
            denial_reason=decision.reason.value if decision.reason else None,
            hours_before_departure=round(decision.hours_before_departure, 2),
            severity=decision.severity.value,
            refund_percentage=decision.refund_percentage if decision.allowed else None,
        )
        self.db.add(attempt)
        if not decision.allowed:
            logger.warning(
                "Cancellation denied",
                extra_data={
                    "user_id": user_id,
                    "booking_id": attempt.booking_id,
                    "trip_id": attempt.trip_id,
                    "reason": attempt.denial_reason,
                },
            )
        return attempt

    async def history(self, user_id: int, now: Optional[datetime] = None, limit: int = 50) -> CancellationHistory:
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(CancellationAttempt)
            .where(CancellationAttempt.user_id == user_id)
            .order_by(CancellationAttempt.created_at.desc(), CancellationAttempt.id.desc())
            .limit(limit)
        )
        return CancellationHistory(
            attempts=list(result.scalars().all()),
            counted_in_window=await self.count_recent_booking_cancellations(user_id, now),
            trip_cancellations_in_window=await self.count_recent_trip_cancellations(user_id, now),
            window_days=settings.CANCELLATION_WINDOW_DAYS,
        )
