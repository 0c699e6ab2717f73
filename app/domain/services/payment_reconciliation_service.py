"""
Payment Reconciliation Service - background re-drive of provider calls

A provider timeout leaves ``payment_status = reconciliation_required`` (or an
``accepted`` booking stuck in ``authorizing`` when the worker died mid-saga).
This service asks the provider what actually happened and applies it locally
through BookingService, reusing the original idempotency keys.

Also hosts the two periodic sweeps of the payment flow: expiring holds the
sender never confirmed, and capturing confirmed payments automatically.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.booking import Booking, BookingStatus, CancellationType, PaymentStatus
from app.db.models.escrow_account import ReleaseReason
from app.db.models.payment_authorization import AuthorizationStatus, CaptureMode
from app.domain.services.booking_service import BookingService, TransitionResult
from app.domain.services.cancellation_policy import (
    CancellationDecision,
    CancellationQuote,
    classify_severity,
    hours_until,
)
from app.domain.services.payment_authorization_service import AUTHORIZATION_VALIDITY_DAYS
from app.domain.services.payments import BasePaymentProvider
from app.state_machine.booking_states import Actor

logger = get_logger(__name__)

# An accepted booking still 'authorizing' after this long lost its worker
STUCK_AUTHORIZATION_MINUTES = 10


@dataclass
class SweepSummary:
    """Counters reported by the periodic jobs"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def count(self, result: Optional[TransitionResult]) -> None:
        self.processed += 1
        if result is None:
            self.skipped += 1
        elif result.success:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class PaymentReconciliationService:
    def __init__(self, db: AsyncSession, provider: Optional[BasePaymentProvider] = None):
        self.db = db
        self.bookings = BookingService(db, provider)
        self.payments = self.bookings.payments

    async def find_pending(self, now: Optional[datetime] = None, limit: int = 100) -> list[int]:
        now = now or datetime.utcnow()
        stuck_before = now - timedelta(minutes=STUCK_AUTHORIZATION_MINUTES)
        result = await self.db.execute(
            select(Booking.id)
            .where(
                or_(
                    Booking.payment_status == PaymentStatus.RECONCILIATION_REQUIRED,
                    and_(
                        Booking.status == BookingStatus.ACCEPTED,
                        Booking.payment_status == PaymentStatus.AUTHORIZING,
                        Booking.accepted_at <= stuck_before,
                    ),
                )
            )
            .order_by(Booking.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def reconcile_pending(self, now: Optional[datetime] = None) -> SweepSummary:
        summary = SweepSummary()
        for booking_id in await self.find_pending(now):
            try:
                summary.count(await self.reconcile_booking(booking_id))
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"booking {booking_id}: {e}")
                logger.error(
                    "Reconciliation failed",
                    extra_data={"booking_id": booking_id, "error": str(e)},
                    exc_info=True,
                )
        logger.info("Reconciliation sweep finished", extra_data=summary.to_dict())
        return summary

    async def reconcile_booking(self, booking_id: int) -> Optional[TransitionResult]:
        """Resolve one booking; None when there was nothing to do"""
        booking = await self.bookings.get_booking(booking_id)
        if booking is None:
            return None

        if booking.status == BookingStatus.ACCEPTED:
            return await self._replay_authorization(booking)

        if (
            booking.status in (BookingStatus.DELIVERED, BookingStatus.CANCELLED)
            and booking.payment_status == PaymentStatus.RECONCILIATION_REQUIRED
        ):
            if self.bookings.owes_compensation(booking):
                # Replays the compensation key of the lost request
                return await self.bookings._retry_compensation(booking.id, Actor.SYSTEM)
            if booking.status == BookingStatus.CANCELLED and (
                booking.cancellation_type != CancellationType.NO_SHOW or booking.paid_at is None
            ):
                return await self._release_orphan_hold(booking)
            # Same failed-transfer count, same idempotency key as the lost request
            reason = (
                ReleaseReason.NO_SHOW if booking.status == BookingStatus.CANCELLED
                else ReleaseReason.DELIVERY_COMPLETED
            )
            return await self.bookings._payout(booking.id, Actor.SYSTEM, reason)

        authorization = booking.payment_authorization
        if authorization is None:
            return None

        lookup = await self.payments.reconcile_authorization(authorization)
        if not lookup.success:
            logger.warning(
                "Provider lookup failed during reconciliation",
                extra_data={"booking_id": booking.id, "reason": lookup.reason.value},
            )
            return TransitionResult(False, booking=booking, reason=lookup.reason, message=lookup.message)
        intent = lookup.intent

        if booking.status == BookingStatus.PAID:
            # A trip-cancellation refund timed out: hand the booking back to the traveler's retry
            return await self._restore(booking, PaymentStatus.CAPTURED)

        if booking.status not in (BookingStatus.PAYMENT_AUTHORIZED, BookingStatus.PAYMENT_CONFIRMED):
            return None

        if intent.is_canceled:
            if booking.cancellation_type == CancellationType.NO_SHOW:
                return await self._finish_no_show(booking)
            if booking.cancellation_type is not None:
                return await self._finish_sender_cancellation(booking, PaymentStatus.CANCELLED)
            return await self.bookings.expire_authorization(booking.id, already_cancelled=True)

        if intent.is_succeeded and booking.status == BookingStatus.PAYMENT_CONFIRMED:
            return await self._apply_provider_capture(booking, intent)

        if intent.is_capturable and booking.status == BookingStatus.PAYMENT_AUTHORIZED:
            if booking.cancellation_type is None:
                return await self.bookings.confirm_payment(booking.id, actor=Actor.SYSTEM)

        # Nothing happened at the provider: put the booking back where it was
        restored = (
            PaymentStatus.CONFIRMED if booking.status == BookingStatus.PAYMENT_CONFIRMED
            else PaymentStatus.AUTHORIZED
        )
        return await self._restore(booking, restored, clear_cancellation=True)

    async def _replay_authorization(self, booking: Booking) -> Optional[TransitionResult]:
        if not booking.authorization_idempotency_key:
            return None
        account = await self.bookings._payment_account(booking.receiver_id)
        if account is None:
            return None
        logger.info(
            "Replaying payment authorization",
            extra_data={"booking_id": booking.id},
        )
        return await self.bookings._authorize(booking, account.provider_account_id, Actor.SYSTEM)

    async def _release_orphan_hold(self, booking: Booking) -> Optional[TransitionResult]:
        """A booking cancelled while its authorization was in flight"""
        authorization = booking.payment_authorization
        if authorization is None and booking.authorization_idempotency_key:
            # Replaying the key returns the lost hold (or places one) so it can be released
            account = await self.bookings._payment_account(booking.receiver_id)
            if account is None:
                return None
            replay = await self.payments.create_payment_authorization(
                booking,
                account.provider_account_id,
                booking.final_price,
                booking.authorization_idempotency_key,
            )
            if replay.outcome_unknown:
                await self.db.commit()
                return TransitionResult(False, booking=booking, reason=replay.reason, message=replay.message)
            if replay.success:
                authorization = replay.authorization
                booking.payment_authorization = authorization
        if authorization is not None and authorization.status in (
            AuthorizationStatus.PENDING,
            AuthorizationStatus.CONFIRMED,
        ):
            result = await self.payments.cancel_payment_authorization(authorization, "abandoned")
            if not result.success:
                await self.db.commit()
                return TransitionResult(False, booking=booking, reason=result.reason, message=result.message)
        return await self._restore(booking, PaymentStatus.CANCELLED)

    async def _restore(
        self,
        booking: Booking,
        payment_status: PaymentStatus,
        clear_cancellation: bool = False,
    ) -> TransitionResult:
        try:
            booking = await self.bookings._lock_booking(booking.id)
            booking.payment_status = payment_status
            if clear_cancellation:
                booking.cancellation_type = None
                booking.refund_percentage = None
                booking.cancellation_reason = None
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(
            "Payment status restored after reconciliation",
            extra_data={"booking_id": booking.id, "payment_status": payment_status.value},
        )
        return TransitionResult(True, booking=booking, message="Nothing changed at the provider")

    def _pending_decision(self, booking: Booking, now: datetime) -> CancellationDecision:
        """Rebuild the sender's decision from what ``cancel`` stored on the booking"""
        hours = hours_until(booking.trip.departure_at, now)
        return CancellationDecision(
            allowed=True,
            category=booking.cancellation_type,
            refund_percentage=booking.refund_percentage or 0,
            fees_deducted=booking.status == BookingStatus.PAYMENT_CONFIRMED,
            severity=classify_severity(hours),
            hours_before_departure=hours,
            message="Cancellation completed after reconciliation",
            counted=True,
        )

    async def _finish_sender_cancellation(
        self,
        booking: Booking,
        payment_status: PaymentStatus,
    ) -> TransitionResult:
        try:
            booking = await self.bookings._lock_booking(booking.id)
            decision = self._pending_decision(booking, datetime.utcnow())
            authorization = booking.payment_authorization
            if payment_status == PaymentStatus.CANCELLED and authorization.status != AuthorizationStatus.CANCELLED:
                authorization.status = AuthorizationStatus.CANCELLED
                authorization.cancelled_at = datetime.utcnow()
                authorization.cancellation_reason = "requested_by_customer"
            quote = CancellationQuote.for_booking(booking, decision)
            self.bookings.cancellations.record(decision, booking.sender_id, booking=booking)
            details = await self.bookings._finish_cancellation(
                booking, Actor.SYSTEM, decision, quote, payment_status, booking.cancellation_reason
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(
            True, booking=booking, message=decision.message, details=details, decision=decision, quote=quote
        )

    async def _finish_no_show(self, booking: Booking) -> TransitionResult:
        """The traveler's no-show whose hold release timed out, now confirmed cancelled"""
        try:
            booking = await self.bookings._lock_booking(booking.id)
            authorization = booking.payment_authorization
            if authorization.status != AuthorizationStatus.CANCELLED:
                authorization.status = AuthorizationStatus.CANCELLED
                authorization.cancelled_at = datetime.utcnow()
                authorization.cancellation_reason = "no_show"
            decision = self.bookings.cancellations.evaluate_no_show(booking)
            self.bookings.cancellations.record(decision, booking.receiver_id, booking=booking)
            await self.bookings._apply_no_show(booking, Actor.SYSTEM, booking.cancellation_reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, message=decision.message, decision=decision)

    async def _apply_provider_capture(self, booking: Booking, intent) -> TransitionResult:
        authorization = booking.payment_authorization
        captured = (Decimal(intent.amount_received_cents) / 100).quantize(Decimal("0.01"))

        if booking.cancellation_type is not None:
            self.payments.apply_capture(authorization, CaptureMode.CANCELLATION, captured, intent)
            return await self._finish_sender_cancellation(booking, PaymentStatus.PARTIALLY_CAPTURED)

        try:
            booking = await self.bookings._lock_booking(booking.id)
            authorization = booking.payment_authorization
            result = self.payments.apply_capture(
                authorization, authorization.capture_mode or CaptureMode.MANUAL, captured, intent
            )
            return await self.bookings._apply_paid(booking, result, Actor.SYSTEM)
        except Exception:
            await self.db.rollback()
            raise

    # ==================== periodic sweeps ====================

    async def expire_stale_authorizations(self, now: Optional[datetime] = None) -> SweepSummary:
        """Cancel holds the sender never confirmed, and holds past their provider expiry"""
        now = now or datetime.utcnow()
        unconfirmed_before = now - timedelta(hours=settings.PAYMENT_CONFIRMATION_TIMEOUT_HOURS)
        result = await self.db.execute(
            select(Booking.id)
            .where(
                Booking.payment_status.in_((PaymentStatus.AUTHORIZED, PaymentStatus.CONFIRMED)),
                or_(
                    and_(
                        Booking.status == BookingStatus.PAYMENT_AUTHORIZED,
                        Booking.payment_authorized_at <= unconfirmed_before,
                    ),
                    and_(
                        Booking.status == BookingStatus.PAYMENT_CONFIRMED,
                        Booking.payment_confirmed_at <= now - timedelta(days=AUTHORIZATION_VALIDITY_DAYS),
                    ),
                ),
            )
            .order_by(Booking.id)
        )
        summary = SweepSummary()
        for booking_id in result.scalars().all():
            summary.count(await self.bookings.expire_authorization(booking_id))
        if summary.processed:
            logger.info("Stale authorizations expired", extra_data=summary.to_dict())
        return summary

    async def auto_capture_confirmed(self, now: Optional[datetime] = None) -> SweepSummary:
        summary = SweepSummary()
        if settings.AUTO_CAPTURE_DELAY_HOURS <= 0:
            return summary
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.PAYMENT_CONFIRMED,
                Booking.payment_status == PaymentStatus.CONFIRMED,
                Booking.payment_confirmed_at <= now - timedelta(hours=settings.AUTO_CAPTURE_DELAY_HOURS),
            )
            .order_by(Booking.id)
        )
        for booking_id in result.scalars().all():
            outcome = await self.bookings.capture(booking_id, actor=Actor.SYSTEM, mode=CaptureMode.AUTOMATIC)
            summary.count(outcome)
            if not outcome.success and outcome.reason != ReasonCode.PAYMENT_OUTCOME_UNKNOWN:
                summary.errors.append(f"booking {booking_id}: {outcome.reason.value}")
        if summary.processed:
            logger.info("Automatic capture sweep finished", extra_data=summary.to_dict())
        return summary
