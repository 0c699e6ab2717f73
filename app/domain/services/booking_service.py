"""
Booking Service - the booking state machine orchestrator

Every action follows the same shape:
1. Lock the booking row (SELECT ... FOR UPDATE, optimistic version on top)
2. Check the transition table and the actor
3. Call the payment provider if the step needs it, while holding the lock
4. Write local state only after the provider call succeeded
5. Queue notifications through the outbox in the same transaction
6. Commit, or roll back and re-raise on unexpected errors

Expected failures come back as ``TransitionResult`` with a ``ReasonCode``;
they never raise. A provider timeout leaves the booking where it was with
``payment_status = reconciliation_required`` for the reconciliation job.
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.booking import Booking, BookingStatus, CancellationType, PaymentStatus
from app.db.models.escrow_account import EscrowAccount, EscrowStatus, ReleaseReason
from app.db.models.payment_authorization import AuthorizationStatus, CaptureMode
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User
from app.db.models.user_payment_account import UserPaymentAccount
from app.db.models.verification_code import CodeType, RegenerationReason, VerificationCode
from app.domain.services.cancellation_policy import (
    CancellationDecision,
    CancellationQuote,
    CancellationService,
    OPEN_BOOKING_STATUSES,
)
from app.domain.services.escrow_service import EscrowService
from app.domain.services.outbox_service import (
    NotificationEvent,
    OutboxService,
    URGENT_OPTIONS,
)
from app.domain.services.payment_authorization_service import (
    PaymentAuthorizationService,
    PaymentResult,
)
from app.domain.services.payments import BasePaymentProvider
from app.domain.services.pricing import commission_amount, to_money, transfer_amount
from app.domain.services.verification_code_service import VerificationCodeService
from app.state_machine.booking_states import (
    Actor,
    BookingAction,
    allowed_actions,
    get_transition,
)

logger = get_logger(__name__)

# Statuses in which the parcel still needs the traveler; a delivered parcel is done even before its payout
TRIP_ACTIVE_BOOKING_STATUSES = (BookingStatus.PAID, BookingStatus.IN_TRANSIT)
# Only a hold exists, nothing has been charged yet
HOLD_STATUSES = (BookingStatus.PAYMENT_AUTHORIZED, BookingStatus.PAYMENT_CONFIRMED)
# Provider request outstanding: money-moving actions must wait for reconciliation
UNSETTLED_PAYMENT_STATUSES = (PaymentStatus.AUTHORIZING, PaymentStatus.RECONCILIATION_REQUIRED)

CODE_OWNER = {
    CodeType.PICKUP: Actor.SENDER,
    CodeType.DELIVERY: Actor.RECEIVER,
}
CODE_STATUSES = {
    CodeType.PICKUP: (BookingStatus.PAID,),
    CodeType.DELIVERY: (BookingStatus.PAID, BookingStatus.IN_TRANSIT),
}


class BookingTransitionError(Exception):
    """A write the transition table does not allow (programming error)"""


@dataclass
class TransitionResult:
    success: bool
    booking: Optional[Booking] = None
    reason: Optional[ReasonCode] = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    escrow: Optional[EscrowAccount] = None
    code: Optional[VerificationCode] = None
    decision: Optional[CancellationDecision] = None
    quote: Optional[CancellationQuote] = None


def actor_for(booking: Booking, user: Optional[User]) -> Optional[Actor]:
    """Role of ``user`` on ``booking``; admins who are not a party act as admin"""
    if user is None:
        return None
    role = booking.role_of(user.id)
    if role == "sender":
        return Actor.SENDER
    if role == "receiver":
        return Actor.RECEIVER
    if user.is_admin:
        return Actor.ADMIN
    return None


class BookingService:
    def __init__(self, db: AsyncSession, provider: Optional[BasePaymentProvider] = None):
        self.db = db
        self.payments = PaymentAuthorizationService(db, provider)
        self.escrow = EscrowService(db)
        self.codes = VerificationCodeService(db)
        self.cancellations = CancellationService(db)
        self.outbox = OutboxService(db)

    # ==================== helpers ====================

    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_bookings(self, user_id: int, status: Optional[BookingStatus] = None) -> list[Booking]:
        query = select(Booking).where(
            (Booking.sender_id == user_id) | (Booking.receiver_id == user_id)
        )
        if status is not None:
            query = query.where(Booking.status == status)
        result = await self.db.execute(query.order_by(Booking.created_at.desc(), Booking.id.desc()))
        return list(result.scalars().all())

    async def _lock_booking(self, booking_id: int) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _lock_trip(self, trip_id: int) -> Optional[Trip]:
        result = await self.db.execute(
            select(Trip)
            .where(Trip.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _payment_account(self, user_id: int) -> Optional[UserPaymentAccount]:
        result = await self.db.execute(
            select(UserPaymentAccount)
            .where(UserPaymentAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _fail(
        self,
        reason: ReasonCode,
        message: str,
        booking: Optional[Booking] = None,
        **kwargs: Any,
    ) -> TransitionResult:
        """End the transaction (keeping attempt counters and audit rows) and report"""
        await self.db.commit()
        logger.warning(
            "Booking action rejected",
            extra_data={
                "booking_id": booking.id if booking else None,
                "status": booking.status.value if booking else None,
                "reason": reason.value,
            },
        )
        return TransitionResult(False, booking=booking, reason=reason, message=message, **kwargs)

    async def _provider_fail(
        self,
        booking: Booking,
        result: PaymentResult,
        actor: Optional[Actor],
    ) -> TransitionResult:
        details = dict(result.details)
        if actor in (Actor.ADMIN, Actor.SYSTEM) and result.provider_error:
            details["provider_error"] = result.provider_error
        if result.outcome_unknown:
            booking.payment_status = PaymentStatus.RECONCILIATION_REQUIRED
        return await self._fail(result.reason, result.message, booking, details=details)

    async def _begin(
        self,
        booking_id: int,
        action: BookingAction,
        user: Optional[User] = None,
        actor: Optional[Actor] = None,
    ) -> tuple[Optional[Booking], Optional[Actor], Optional[TransitionResult]]:
        """Lock the booking and check the transition table for ``action``"""
        booking = await self._lock_booking(booking_id)
        if booking is None:
            return None, None, await self._fail(ReasonCode.BOOKING_NOT_FOUND, "Booking not found")

        if actor is None:
            actor = actor_for(booking, user)
            if actor is None:
                return booking, None, await self._fail(
                    ReasonCode.FORBIDDEN, "You are not a party to this booking", booking
                )

        transition = get_transition(booking.status, action)
        if transition is None:
            return booking, actor, await self._fail(
                ReasonCode.INVALID_STATUS,
                f"Cannot {action.value} a booking in status {booking.status.value}",
                booking,
                details={
                    "status": booking.status.value,
                    "allowed_actions": [a.value for a in allowed_actions(booking.status, actor)],
                },
            )
        if actor not in transition.actors:
            return booking, actor, await self._fail(
                ReasonCode.FORBIDDEN,
                f"A {actor.value} cannot {action.value} this booking",
                booking,
            )
        return booking, actor, None

    def _move(self, booking: Booking, action: BookingAction, actor: Actor) -> None:
        transition = get_transition(booking.status, action)
        if transition is None or actor not in transition.actors:
            raise BookingTransitionError(
                f"{actor.value} cannot {action.value} from {booking.status.value}"
            )
        old_status = booking.status
        booking.status = transition.target
        logger.info(
            "Booking transitioned",
            extra_data={
                "booking_id": booking.id,
                "from": old_status.value,
                "to": booking.status.value,
                "action": action.value,
                "actor": actor.value,
            },
        )

    # ==================== creation ====================

    async def create_booking(
        self,
        sender: User,
        trip_id: int,
        weight_kg: Decimal,
        proposed_price: Decimal,
        package_description: Optional[str] = None,
        receiver_id: Optional[int] = None,
    ) -> TransitionResult:
        try:
            trip = await self._lock_trip(trip_id)
            if trip is None:
                return await self._fail(ReasonCode.TRIP_NOT_FOUND, "Trip not found")
            if receiver_id is not None and receiver_id != trip.owner_id:
                return await self._fail(ReasonCode.VALIDATION_ERROR, "The receiver must be the trip owner")
            if trip.owner_id == sender.id:
                return await self._fail(ReasonCode.VALIDATION_ERROR, "You cannot book your own trip")
            if sender.is_suspended():
                return await self._fail(ReasonCode.USER_SUSPENDED, "Your account is suspended")
            if not trip.is_open_for_booking:
                return await self._fail(
                    ReasonCode.INVALID_STATUS, f"Trip is {trip.status.value}, not open for booking"
                )
            if Decimal(str(weight_kg)) > trip.available_weight_kg:
                return await self._fail(
                    ReasonCode.VALIDATION_ERROR,
                    "Not enough capacity left on this trip",
                    details={"available_weight_kg": str(trip.available_weight_kg)},
                )

            booking = Booking(
                trip=trip,
                sender_id=sender.id,
                receiver_id=trip.owner_id,
                package_description=package_description,
                weight_kg=to_money(weight_kg),
                proposed_price=to_money(proposed_price),
                status=BookingStatus.PENDING,
                payment_authorization=None,
            )
            self.db.add(booking)
            await self.db.flush()
            await self.outbox.queue_booking_notification(
                booking, NotificationEvent.BOOKING_REQUESTED, notify_sender=False
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Booking requested",
            extra_data={"booking_id": booking.id, "trip_id": trip_id, "sender_id": sender.id},
        )
        return TransitionResult(True, booking=booking, message="Booking request sent")

    # ==================== acceptance saga ====================

    async def accept(
        self,
        booking_id: int,
        user: User,
        final_price: Optional[Decimal] = None,
    ) -> TransitionResult:
        """
        pending -> accepted -> payment_authorized, as a saga.

        Step 1 commits ``accepted`` before the provider call; step 3 either
        completes the authorization or compensates back to ``pending``.
        """
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.ACCEPT, user)
            if error:
                return error

            account = await self._payment_account(booking.receiver_id)
            if account is None or not account.can_accept_payments:
                return await self._fail(
                    ReasonCode.STRIPE_ACCOUNT_REQUIRED,
                    "Set up your payout account before accepting bookings",
                    booking,
                    details={"account_status": "missing" if account is None else "incomplete"},
                )

            trip = booking.trip
            if trip.status not in (TripStatus.ACTIVE, TripStatus.BOOKED):
                return await self._fail(
                    ReasonCode.INVALID_STATUS, f"Trip is {trip.status.value}", booking
                )
            if booking.weight_kg > trip.available_weight_kg:
                return await self._fail(
                    ReasonCode.VALIDATION_ERROR, "Not enough capacity left on this trip", booking
                )

            price = to_money(final_price if final_price is not None else booking.proposed_price)
            if price <= 0:
                return await self._fail(ReasonCode.VALIDATION_ERROR, "Final price must be positive", booking)

            rate = settings.DEFAULT_COMMISSION_RATE
            booking.final_price = price
            booking.commission_rate = rate
            booking.commission_amount = commission_amount(price, rate)
            booking.accepted_at = datetime.utcnow()
            booking.payment_status = PaymentStatus.AUTHORIZING
            booking.authorization_idempotency_key = f"authorize-{booking.id}-{uuid.uuid4().hex}"
            self._move(booking, BookingAction.ACCEPT, actor)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return await self._authorize(booking, account.provider_account_id, actor)

    async def _authorize(
        self,
        booking: Booking,
        destination_account_id: str,
        actor: Optional[Actor],
    ) -> TransitionResult:
        """Steps 2 and 3 of the acceptance saga (also replayed by reconciliation)"""
        result = await self.payments.create_payment_authorization(
            booking,
            destination_account_id,
            booking.final_price,
            booking.authorization_idempotency_key,
        )

        try:
            booking = await self._lock_booking(booking.id)
            if booking.status != BookingStatus.ACCEPTED:
                # Cancelled while the provider call was in flight: drop the new hold
                if result.success:
                    booking.payment_authorization = result.authorization
                    released = await self.payments.cancel_payment_authorization(result.authorization, "abandoned")
                    booking.payment_status = (
                        PaymentStatus.CANCELLED if released.success else PaymentStatus.RECONCILIATION_REQUIRED
                    )
                return await self._fail(
                    ReasonCode.INVALID_STATUS,
                    f"Booking is {booking.status.value}",
                    booking,
                )

            if result.success:
                booking.payment_authorization = result.authorization
                booking.payment_status = PaymentStatus.AUTHORIZED
                booking.payment_authorized_at = datetime.utcnow()
                self._move(booking, BookingAction.AUTHORIZE, Actor.SYSTEM)
                await self.outbox.queue_booking_notification(
                    booking, NotificationEvent.BOOKING_ACCEPTED, notify_receiver=False
                )
                await self.db.commit()
                return TransitionResult(True, booking=booking, message="Booking accepted, payment authorized")

            if result.outcome_unknown:
                return await self._provider_fail(booking, result, actor)

            self._compensate_accept(booking)
            return await self._provider_fail(booking, result, actor)
        except Exception:
            await self.db.rollback()
            logger.critical(
                "Payment authorization applied at the provider but not recorded locally",
                extra_data={"booking_id": booking.id, "provider_reference": result.provider_reference},
            )
            raise

    def _compensate_accept(self, booking: Booking) -> None:
        """accepted -> pending after a definite authorization failure"""
        self._move(booking, BookingAction.REVERT_ACCEPT, Actor.SYSTEM)
        booking.final_price = None
        booking.commission_rate = None
        booking.commission_amount = None
        booking.accepted_at = None
        booking.payment_status = None
        booking.authorization_idempotency_key = None

    async def reject(self, booking_id: int, user: User, reason: Optional[str] = None) -> TransitionResult:
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.REJECT, user)
            if error:
                return error

            booking.rejection_reason = reason
            self._move(booking, BookingAction.REJECT, actor)
            await self.outbox.queue_booking_notification(
                booking, NotificationEvent.BOOKING_REJECTED, notify_receiver=False, reason=reason
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, message="Booking rejected")

    # ==================== payment ====================

    async def confirm_payment(
        self,
        booking_id: int,
        user: Optional[User] = None,
        payment_method_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> TransitionResult:
        """payment_authorized -> payment_confirmed once the hold is capturable"""
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.CONFIRM_PAYMENT, user, actor)
            if error:
                return error

            authorization = booking.payment_authorization
            if authorization is None:
                return await self._fail(
                    ReasonCode.PAYMENT_AUTHORIZATION_MISSING, "No payment authorization for this booking", booking
                )

            result = await self.payments.confirm_payment_authorization(authorization, payment_method_id)
            if not result.success:
                return await self._provider_fail(booking, result, actor)

            self._apply_confirmation(booking, actor)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, message="Payment confirmed")

    def _apply_confirmation(self, booking: Booking, actor: Actor) -> None:
        booking.payment_status = PaymentStatus.CONFIRMED
        booking.payment_confirmed_at = datetime.utcnow()
        self._move(booking, BookingAction.CONFIRM_PAYMENT, actor)

    async def capture(
        self,
        booking_id: int,
        user: Optional[User] = None,
        actor: Optional[Actor] = None,
        mode: CaptureMode = CaptureMode.MANUAL,
    ) -> TransitionResult:
        """payment_confirmed -> paid: capture, escrow hold, codes, capacity"""
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.CAPTURE, user, actor)
            if error:
                return error

            if booking.payment_status in UNSETTLED_PAYMENT_STATUSES:
                return await self._fail(
                    ReasonCode.PAYMENT_RECONCILIATION_PENDING,
                    "A previous payment request is still being reconciled",
                    booking,
                )
            authorization = booking.payment_authorization
            if authorization is None or authorization.status != AuthorizationStatus.CONFIRMED:
                return await self._fail(
                    ReasonCode.PAYMENT_AUTHORIZATION_MISSING, "There is no confirmed authorization to capture", booking
                )

            result = await self.payments.capture_payment_authorization(authorization, mode)
            if not result.success:
                if (
                    not result.outcome_unknown
                    and authorization.capture_attempts >= settings.CAPTURE_MAX_ATTEMPTS
                ):
                    booking.payment_status = PaymentStatus.CAPTURE_FAILED
                    logger.error(
                        "Capture attempts exhausted",
                        extra_data={"booking_id": booking.id, "attempts": authorization.capture_attempts},
                    )
                return await self._provider_fail(booking, result, actor)

            return await self._apply_paid(booking, result, actor)
        except Exception:
            await self.db.rollback()
            raise

    async def _apply_paid(self, booking: Booking, result: PaymentResult, actor: Actor) -> TransitionResult:
        """Local half of a successful capture (also used by reconciliation)"""
        hold = await self.escrow.hold(booking, result.transaction, booking.final_price)
        if not hold.success:
            logger.critical(
                "Captured payment could not be put in escrow",
                extra_data={"booking_id": booking.id, "reason": hold.reason.value},
            )
            booking.payment_status = PaymentStatus.CAPTURED
            return await self._fail(hold.reason, hold.message, booking)

        booking.payment_status = PaymentStatus.CAPTURED
        booking.paid_at = datetime.utcnow()
        self._move(booking, BookingAction.CAPTURE, actor)

        pickup = await self.codes.generate(booking.sender_id, CodeType.PICKUP, booking.id)
        delivery = await self.codes.generate(booking.receiver_id, CodeType.DELIVERY, booking.id)

        trip = await self._lock_trip(booking.trip_id)
        trip.available_weight_kg = max(Decimal("0.00"), trip.available_weight_kg - booking.weight_kg)
        if trip.available_weight_kg == 0 and trip.status == TripStatus.ACTIVE:
            trip.status = TripStatus.BOOKED

        await self.outbox.queue_booking_notification(booking, NotificationEvent.PAYMENT_CAPTURED)
        await self.outbox.queue_notification(
            booking.sender_id,
            NotificationEvent.PICKUP_CODE_ISSUED,
            {"booking_id": booking.id, "code_id": pickup.id, "expires_at": pickup.expires_at.isoformat()},
        )
        await self.outbox.queue_notification(
            booking.receiver_id,
            NotificationEvent.DELIVERY_CODE_ISSUED,
            {"booking_id": booking.id, "code_id": delivery.id, "expires_at": delivery.expires_at.isoformat()},
        )
        await self.db.commit()
        return TransitionResult(True, booking=booking, escrow=hold.escrow, message="Payment captured")

    # ==================== custody ====================

    async def validate_pickup(self, booking_id: int, user: User, code: str) -> TransitionResult:
        """paid -> in_transit when the traveler enters the sender's pickup code"""
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.VALIDATE_PICKUP, user)
            if error:
                return error

            check = await self.codes.check(booking.id, CodeType.PICKUP, code)
            if not check.success:
                return await self._fail(check.reason, check.message, booking, details=check.details)

            booking.pickup_date = datetime.utcnow()
            self._move(booking, BookingAction.VALIDATE_PICKUP, actor)
            await self.codes.mark_used(check.code)

            trip = await self._lock_trip(booking.trip_id)
            if trip.status in (TripStatus.ACTIVE, TripStatus.BOOKED):
                trip.status = TripStatus.IN_PROGRESS

            await self.outbox.queue_booking_notification(
                booking, NotificationEvent.PACKAGE_PICKED_UP, notify_receiver=False
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, message="Package picked up")

    async def validate_delivery(self, booking_id: int, user: User, code: str) -> TransitionResult:
        """
        in_transit -> delivered -> completed.

        The code is consumed together with ``delivered``; the payout is a
        separate step so a failing transfer never un-delivers the parcel.
        """
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.VALIDATE_DELIVERY, user)
            if error:
                return error

            check = await self.codes.check(booking.id, CodeType.DELIVERY, code)
            if not check.success:
                return await self._fail(check.reason, check.message, booking, details=check.details)

            booking.delivery_confirmed_at = datetime.utcnow()
            self._move(booking, BookingAction.VALIDATE_DELIVERY, actor)
            await self.codes.mark_used(check.code)
            await self._maybe_complete_trip(booking.trip_id)
            await self.outbox.queue_booking_notification(booking, NotificationEvent.PACKAGE_DELIVERED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        payout = await self._payout(booking.id, Actor.SYSTEM, ReleaseReason.DELIVERY_COMPLETED)
        if payout.success:
            return TransitionResult(
                True, booking=payout.booking, escrow=payout.escrow, message="Delivery confirmed, booking completed"
            )
        return TransitionResult(
            True,
            booking=payout.booking,
            message="Delivery confirmed; the payout will be retried",
            details={"payout_reason": payout.reason.value if payout.reason else None},
        )

    # ==================== payout ====================

    async def force_transfer(self, booking_id: int) -> TransitionResult:
        """Admin retry of a failed payout or late-cancellation compensation"""
        booking = await self.get_booking(booking_id)
        if booking is None:
            return TransitionResult(False, reason=ReasonCode.BOOKING_NOT_FOUND, message="Booking not found")
        if self.owes_compensation(booking):
            return await self._retry_compensation(booking_id, Actor.ADMIN)
        release_reason = (
            ReleaseReason.NO_SHOW if booking.cancellation_type == CancellationType.NO_SHOW
            else ReleaseReason.ADMIN_ACTION
        )
        return await self._payout(booking_id, Actor.ADMIN, release_reason)

    async def _payout_key(self, booking: Booking) -> str:
        result = await self.db.execute(
            select(func.count(Transaction.id)).where(
                Transaction.booking_id == booking.id,
                Transaction.type == TransactionType.TRANSFER,
                Transaction.status == TransactionStatus.FAILED,
            )
        )
        return f"payout-{booking.id}-{result.scalar() or 0}"

    async def _payout(self, booking_id: int, actor: Actor, release_reason: ReleaseReason) -> TransitionResult:
        """
        Transfer the traveler's share and release the escrow.

        Runs for delivered bookings (then completes them) and for no-show
        cancellations of paid bookings.
        """
        try:
            booking = await self._lock_booking(booking_id)
            if booking is None:
                return await self._fail(ReasonCode.BOOKING_NOT_FOUND, "Booking not found")

            is_no_show = (
                booking.status == BookingStatus.CANCELLED
                and booking.cancellation_type == CancellationType.NO_SHOW
            )
            if booking.status != BookingStatus.DELIVERED and not is_no_show:
                return await self._fail(
                    ReasonCode.INVALID_STATUS, f"No payout is due for a {booking.status.value} booking", booking
                )

            escrow = await self.escrow.get_for_booking(booking.id)
            if escrow is None:
                return await self._fail(ReasonCode.ESCROW_NOT_FOUND, "No escrow for this booking", booking)
            if escrow.status != EscrowStatus.HOLDING:
                return await self._fail(
                    ReasonCode.ESCROW_NOT_HOLDING, f"Escrow is {escrow.status.value}", booking
                )

            account = await self._payment_account(booking.receiver_id)
            if account is None:
                booking.payment_status = PaymentStatus.TRANSFER_FAILED
                return await self._fail(
                    ReasonCode.STRIPE_ACCOUNT_REQUIRED, "The traveler has no payout account", booking
                )
            if not account.payouts_enabled:
                booking.payment_status = PaymentStatus.TRANSFER_FAILED
                return await self._fail(
                    ReasonCode.STRIPE_ACCOUNT_INCOMPLETE, "The traveler's payout account cannot receive payouts", booking
                )

            amount = transfer_amount(booking.final_price, booking.commission_rate)
            result = await self.payments.transfer_to_account(
                booking,
                account.provider_account_id,
                amount,
                idempotency_key=await self._payout_key(booking),
                description=f"Payout for booking #{booking.id}",
            )
            if not result.success:
                if not result.outcome_unknown:
                    booking.payment_status = PaymentStatus.TRANSFER_FAILED
                    await self.outbox.queue_notification(
                        booking.receiver_id,
                        NotificationEvent.PAYOUT_FAILED,
                        {"booking_id": booking.id, "amount": str(amount)},
                    )
                return await self._provider_fail(booking, result, actor)

            released = await self.escrow.release(
                escrow.id, release_reason, notes=f"transfer {result.provider_reference}"
            )
            if not released.success:
                logger.critical(
                    "Transfer sent but escrow could not be released",
                    extra_data={"booking_id": booking.id, "escrow_id": escrow.id},
                )
                return await self._fail(released.reason, released.message, booking)

            booking.payment_status = PaymentStatus.TRANSFERRED
            if booking.status == BookingStatus.DELIVERED:
                booking.completed_at = datetime.utcnow()
                self._move(booking, BookingAction.COMPLETE, Actor.ADMIN if actor == Actor.ADMIN else Actor.SYSTEM)
                await self._maybe_complete_trip(booking.trip_id)

            await self.outbox.queue_notification(
                booking.receiver_id,
                NotificationEvent.PAYOUT_SENT,
                {"booking_id": booking.id, "amount": str(amount)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, escrow=released.escrow, message="Payout sent")

    async def _maybe_complete_trip(self, trip_id: int) -> None:
        """An in-progress trip completes once no parcel is left on it"""
        trip = await self._lock_trip(trip_id)
        if trip is None or trip.status != TripStatus.IN_PROGRESS:
            return
        result = await self.db.execute(
            select(func.count(Booking.id)).where(
                Booking.trip_id == trip_id,
                Booking.status.in_(TRIP_ACTIVE_BOOKING_STATUSES),
            )
        )
        if (result.scalar() or 0) == 0:
            trip.status = TripStatus.COMPLETED
            trip.completed_at = datetime.utcnow()
            logger.info("Trip completed", extra_data={"trip_id": trip_id})

    # ==================== dispute ====================

    async def dispute(self, booking_id: int, user: User, notes: Optional[str] = None) -> TransitionResult:
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.DISPUTE, user)
            if error:
                return error

            escrow = await self.escrow.get_for_booking(booking.id)
            if escrow is None:
                return await self._fail(ReasonCode.ESCROW_NOT_FOUND, "No escrow for this booking", booking)
            frozen = await self.escrow.mark_disputed(escrow.id, notes)
            if not frozen.success:
                return await self._fail(frozen.reason, frozen.message, booking)

            self._move(booking, BookingAction.DISPUTE, actor)
            await self.outbox.queue_booking_notification(
                booking, NotificationEvent.BOOKING_DISPUTED, options=URGENT_OPTIONS, opened_by=actor.value
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, escrow=frozen.escrow, message="Dispute opened")

    # ==================== cancellation ====================

    def _apply_cancellation(
        self,
        booking: Booking,
        action: BookingAction,
        actor: Actor,
        cancellation_type: CancellationType,
        refund_percentage: int,
        refund_amount: Optional[Decimal],
        reason: Optional[str],
    ) -> None:
        booking.cancellation_type = cancellation_type
        booking.cancellation_reason = reason
        booking.refund_percentage = refund_percentage
        booking.refund_amount = refund_amount
        booking.cancelled_at = datetime.utcnow()
        self._move(booking, action, actor)

    async def cancel(self, booking_id: int, user: User, reason: Optional[str] = None) -> TransitionResult:
        """Sender cancellation, priced by the cancellation policy"""
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.CANCEL, user)
            if error:
                return error

            if booking.payment_status in UNSETTLED_PAYMENT_STATUSES:
                return await self._fail(
                    ReasonCode.PAYMENT_RECONCILIATION_PENDING,
                    "A payment request for this booking is still in flight",
                    booking,
                )

            decision = await self.cancellations.evaluate_booking(user, booking)
            if not decision.allowed:
                self.cancellations.record(decision, user.id, booking=booking)
                return await self._fail(
                    decision.reason, decision.message, booking, details=decision.details, decision=decision
                )

            quote = CancellationQuote.for_booking(booking, decision)
            payment_status = booking.payment_status
            authorization = booking.payment_authorization

            if booking.status == BookingStatus.PAYMENT_AUTHORIZED:
                result = await self.payments.cancel_payment_authorization(authorization, "requested_by_customer")
                payment_status = PaymentStatus.CANCELLED
            elif booking.status == BookingStatus.PAYMENT_CONFIRMED:
                if quote.retained_amount > 0:
                    result = await self.payments.capture_payment_authorization(
                        authorization, CaptureMode.CANCELLATION, amount=quote.retained_amount
                    )
                    payment_status = PaymentStatus.PARTIALLY_CAPTURED
                else:
                    result = await self.payments.cancel_payment_authorization(authorization, "requested_by_customer")
                    payment_status = PaymentStatus.CANCELLED
            else:
                result = PaymentResult.ok("Nothing to release")

            if not result.success:
                if result.outcome_unknown:
                    # Remember what was asked so reconciliation can finish the cancellation
                    booking.cancellation_type = decision.category
                    booking.refund_percentage = decision.refund_percentage
                    booking.cancellation_reason = reason
                else:
                    self.cancellations.record(
                        replace(
                            decision,
                            allowed=False,
                            reason=ReasonCode.PAYMENT_PROVIDER_ERROR,
                            attempt_type="denied",
                        ),
                        user.id,
                        booking=booking,
                    )
                return await self._provider_fail(booking, result, actor)

            self.cancellations.record(decision, user.id, booking=booking)
            details = await self._finish_cancellation(booking, actor, decision, quote, payment_status, reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return TransitionResult(
            True,
            booking=booking,
            message=decision.message,
            details=details,
            decision=decision,
            quote=quote,
        )

    async def _finish_cancellation(
        self,
        booking: Booking,
        actor: Actor,
        decision: CancellationDecision,
        quote: CancellationQuote,
        payment_status: Optional[PaymentStatus],
        reason: Optional[str],
    ) -> dict[str, Any]:
        """Local half of a sender cancellation, once the money side is settled"""
        booking.payment_status = payment_status
        self._apply_cancellation(
            booking,
            BookingAction.CANCEL,
            actor,
            decision.category,
            decision.refund_percentage,
            quote.refund_amount if quote.charged else None,
            reason,
        )

        details: dict[str, Any] = {}
        if quote.traveler_compensation > 0 and quote.charged:
            booking.compensation_amount = quote.traveler_compensation
            sent = await self._transfer_compensation(booking)
            details["compensation_transferred"] = sent.success

        await self.outbox.queue_booking_notification(
            booking,
            NotificationEvent.BOOKING_CANCELLED,
            cancellation_type=decision.category.value,
            refund_percentage=decision.refund_percentage,
        )
        return details

    async def _compensation_key(self, booking: Booking) -> str:
        """Same key until a transfer definitely failed; each failed row moves to the next one"""
        result = await self.db.execute(
            select(func.count(Transaction.id)).where(
                Transaction.booking_id == booking.id,
                Transaction.type == TransactionType.COMPENSATION,
                Transaction.status == TransactionStatus.FAILED,
            )
        )
        failed = result.scalar() or 0
        return f"compensation-{booking.id}" if failed == 0 else f"compensation-{booking.id}-{failed}"

    async def _transfer_compensation(self, booking: Booking) -> PaymentResult:
        """
        Late cancellation: the traveler keeps their share of the retained amount.

        A failed transfer leaves the amount owed on the booking:
        ``transfer_failed`` waits for an admin retry, ``reconciliation_required``
        for the sweep, which replays the same idempotency key.
        """
        amount = booking.compensation_amount
        account = await self._payment_account(booking.receiver_id)
        if account is None:
            result = PaymentResult.failed(
                ReasonCode.STRIPE_ACCOUNT_REQUIRED, "The traveler has no payout account"
            )
        elif not account.payouts_enabled:
            result = PaymentResult.failed(
                ReasonCode.STRIPE_ACCOUNT_INCOMPLETE, "The traveler's payout account cannot receive payouts"
            )
        else:
            result = await self.payments.transfer_to_account(
                booking,
                account.provider_account_id,
                amount,
                idempotency_key=await self._compensation_key(booking),
                description=f"Late cancellation compensation for booking #{booking.id}",
                tx_type=TransactionType.COMPENSATION,
            )
        if result.success:
            return result

        logger.error(
            "Late cancellation compensation failed",
            extra_data={
                "booking_id": booking.id,
                "amount": str(amount),
                "reason": result.reason.value,
                "outcome_unknown": result.outcome_unknown,
            },
        )
        if result.outcome_unknown:
            booking.payment_status = PaymentStatus.RECONCILIATION_REQUIRED
        else:
            booking.payment_status = PaymentStatus.TRANSFER_FAILED
            await self.outbox.queue_notification(
                booking.receiver_id,
                NotificationEvent.PAYOUT_FAILED,
                {"booking_id": booking.id, "amount": str(amount)},
            )
        return result

    @staticmethod
    def owes_compensation(booking: Booking) -> bool:
        return (
            booking.status == BookingStatus.CANCELLED
            and booking.cancellation_type == CancellationType.LATE_CANCEL
            and booking.compensation_amount is not None
            and booking.payment_status in (PaymentStatus.TRANSFER_FAILED, PaymentStatus.RECONCILIATION_REQUIRED)
        )

    async def _retry_compensation(self, booking_id: int, actor: Actor) -> TransitionResult:
        """Send a late-cancellation compensation that did not go through"""
        try:
            booking = await self._lock_booking(booking_id)
            if booking is None:
                return await self._fail(ReasonCode.BOOKING_NOT_FOUND, "Booking not found")
            if not self.owes_compensation(booking):
                return await self._fail(
                    ReasonCode.INVALID_STATUS, "No compensation is owed for this booking", booking
                )

            result = await self._transfer_compensation(booking)
            if not result.success:
                return await self._provider_fail(booking, result, actor)

            # Back to where the cancellation left the money
            booking.payment_status = PaymentStatus.PARTIALLY_CAPTURED
            await self.outbox.queue_notification(
                booking.receiver_id,
                NotificationEvent.PAYOUT_SENT,
                {"booking_id": booking.id, "amount": str(booking.compensation_amount)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(
            "Late cancellation compensation sent on retry",
            extra_data={"booking_id": booking.id, "actor": actor.value},
        )
        return TransitionResult(
            True, booking=booking, message="Compensation sent", details={"compensation_transferred": True}
        )

    async def no_show(self, booking_id: int, user: User, reason: Optional[str] = None) -> TransitionResult:
        """
        The traveler declares the sender absent: 0% refund.

        Before capture only a hold exists and it is released. From ``paid``
        the escrow is paid out to the traveler as compensation. An
        ``accepted`` booking whose authorization is still in flight is left
        to the reconciliation sweep, which releases any hold the provider made.
        """
        try:
            booking, actor, error = await self._begin(booking_id, BookingAction.NO_SHOW, user)
            if error:
                return error

            decision = self.cancellations.evaluate_no_show(booking)
            if not decision.allowed:
                self.cancellations.record(decision, user.id, booking=booking)
                return await self._fail(decision.reason, decision.message, booking, decision=decision)

            if booking.status != BookingStatus.ACCEPTED and booking.payment_status in UNSETTLED_PAYMENT_STATUSES:
                return await self._fail(
                    ReasonCode.PAYMENT_RECONCILIATION_PENDING,
                    "A payment request for this booking is still in flight",
                    booking,
                )

            if booking.status in HOLD_STATUSES:
                result = await self.payments.cancel_payment_authorization(booking.payment_authorization, "no_show")
                if not result.success:
                    if result.outcome_unknown:
                        # Reconciliation finishes the no-show once the provider answers
                        booking.cancellation_type = CancellationType.NO_SHOW
                        booking.refund_percentage = 0
                        booking.cancellation_reason = reason
                    else:
                        self.cancellations.record(
                            replace(
                                decision,
                                allowed=False,
                                reason=ReasonCode.PAYMENT_PROVIDER_ERROR,
                                attempt_type="denied",
                            ),
                            user.id,
                            booking=booking,
                        )
                    return await self._provider_fail(booking, result, actor)

            self.cancellations.record(decision, user.id, booking=booking)
            was_paid = await self._apply_no_show(booking, actor, reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not was_paid:
            return TransitionResult(True, booking=booking, message=decision.message, decision=decision)

        payout = await self._payout(booking.id, actor, ReleaseReason.NO_SHOW)
        return TransitionResult(
            True,
            booking=payout.booking or booking,
            escrow=payout.escrow,
            message=decision.message,
            decision=decision,
            details={} if payout.success else {"payout_reason": payout.reason.value},
        )

    async def _apply_no_show(self, booking: Booking, actor: Actor, reason: Optional[str]) -> bool:
        """Local half of a no-show once any hold is released; True when a payout is due"""
        was_paid = booking.status == BookingStatus.PAID
        if booking.status in HOLD_STATUSES:
            booking.payment_status = PaymentStatus.CANCELLED
        elif booking.payment_status == PaymentStatus.AUTHORIZING:
            # Worker died mid-authorization: the sweep looks for a hold to release
            booking.payment_status = PaymentStatus.RECONCILIATION_REQUIRED

        self._apply_cancellation(
            booking,
            BookingAction.NO_SHOW,
            actor,
            CancellationType.NO_SHOW,
            0,
            Decimal("0.00") if was_paid else None,
            reason,
        )
        if was_paid:
            await self.codes.invalidate_for_booking(booking.id)
            trip = await self._lock_trip(booking.trip_id)
            trip.available_weight_kg = trip.available_weight_kg + booking.weight_kg
            if trip.status == TripStatus.BOOKED:
                trip.status = TripStatus.ACTIVE

        await self.outbox.queue_booking_notification(
            booking, NotificationEvent.BOOKING_NO_SHOW, notify_receiver=False
        )
        return was_paid

    async def cancel_trip(self, trip_id: int, user: User, reason: Optional[str] = None) -> TransitionResult:
        """
        The traveler cancels a whole trip; every open booking is fully refunded.

        Bookings are settled one by one. If any provider call fails the trip
        stays open so the traveler can retry; settled bookings are skipped then.
        """
        now = datetime.utcnow()
        try:
            trip = await self._lock_trip(trip_id)
            if trip is None:
                return await self._fail(ReasonCode.TRIP_NOT_FOUND, "Trip not found")
            if trip.owner_id != user.id:
                return await self._fail(ReasonCode.FORBIDDEN, "Only the trip owner can cancel it")

            result = await self.db.execute(
                select(Booking)
                .where(Booking.trip_id == trip_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            bookings = list(result.scalars().all())

            decision = await self.cancellations.evaluate_trip(user, trip, bookings, now)
            if not decision.allowed:
                self.cancellations.record(decision, user.id, trip=trip)
                return await self._fail(decision.reason, decision.message, details=decision.details, decision=decision)

            failed: list[int] = []
            for booking in bookings:
                if booking.status not in OPEN_BOOKING_STATUSES:
                    continue
                if not await self._cancel_for_trip(booking, reason):
                    failed.append(booking.id)

            if failed:
                denied = CancellationDecision(
                    allowed=False,
                    category=decision.category,
                    refund_percentage=0,
                    fees_deducted=False,
                    severity=decision.severity,
                    hours_before_departure=decision.hours_before_departure,
                    reason=ReasonCode.PAYMENT_PROVIDER_ERROR,
                    message="Some refunds could not be processed",
                    attempt_type="denied",
                )
                self.cancellations.record(denied, user.id, trip=trip)
                return await self._fail(
                    ReasonCode.PAYMENT_PROVIDER_ERROR,
                    "Some bookings could not be refunded, try again later",
                    details={"failed_bookings": failed},
                )

            self.cancellations.record(decision, user.id, trip=trip)
            trip.status = TripStatus.CANCELLED
            trip.cancelled_at = now
            trip.cancellation_reason = reason
            await self.outbox.queue_notification(
                trip.owner_id, NotificationEvent.TRIP_CANCELLED, {"trip_id": trip.id}
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Trip cancelled", extra_data={"trip_id": trip_id, "bookings": len(bookings)})
        return TransitionResult(True, message=decision.message, decision=decision, details={"trip_id": trip_id})

    async def _cancel_for_trip(self, booking: Booking, reason: Optional[str]) -> bool:
        """Full refund of one booking of a cancelled trip; False on provider failure"""
        authorization = booking.payment_authorization
        refund_amount: Optional[Decimal] = None

        if booking.status in (BookingStatus.PAYMENT_AUTHORIZED, BookingStatus.PAYMENT_CONFIRMED):
            result = await self.payments.cancel_payment_authorization(authorization, "trip_cancelled")
            if not result.success:
                if result.outcome_unknown:
                    booking.payment_status = PaymentStatus.RECONCILIATION_REQUIRED
                return False
            booking.payment_status = PaymentStatus.CANCELLED
        elif booking.status == BookingStatus.PAID:
            escrow = await self.escrow.get_for_booking(booking.id)
            refund_amount = to_money(authorization.captured_amount or booking.final_price)
            result = await self.payments.refund_payment(authorization, refund_amount, "Trip cancelled by traveler")
            if not result.success:
                if result.outcome_unknown:
                    booking.payment_status = PaymentStatus.RECONCILIATION_REQUIRED
                return False
            if escrow is not None:
                await self.escrow.refund(escrow.id, notes="trip cancelled")
            await self.codes.invalidate_for_booking(booking.id)
            booking.payment_status = PaymentStatus.REFUNDED

        self._apply_cancellation(
            booking,
            BookingAction.CANCEL_BY_TRAVELER,
            Actor.RECEIVER,
            CancellationType.TRIP_CANCELLED,
            100,
            refund_amount,
            reason,
        )
        await self.outbox.queue_booking_notification(
            booking,
            NotificationEvent.BOOKING_CANCELLED,
            notify_receiver=False,
            cancellation_type=CancellationType.TRIP_CANCELLED.value,
            refund_percentage=100,
        )
        return True

    # ==================== eligibility ====================

    async def booking_cancellation_eligibility(self, booking_id: int, user: User) -> TransitionResult:
        """What cancelling (sender) or declaring a no-show (traveler) would do now"""
        booking = await self.get_booking(booking_id)
        if booking is None:
            return TransitionResult(False, reason=ReasonCode.BOOKING_NOT_FOUND, message="Booking not found")
        actor = actor_for(booking, user)
        if actor not in (Actor.SENDER, Actor.RECEIVER):
            return TransitionResult(False, booking=booking, reason=ReasonCode.FORBIDDEN, message="Not your booking")

        if actor == Actor.SENDER:
            decision = await self.cancellations.evaluate_booking(user, booking)
        else:
            decision = self.cancellations.evaluate_no_show(booking)
        quote = CancellationQuote.for_booking(booking, decision) if decision.allowed else None
        return TransitionResult(True, booking=booking, message=decision.message, decision=decision, quote=quote)

    async def trip_cancellation_eligibility(self, trip_id: int, user: User) -> TransitionResult:
        trip = await self.db.get(Trip, trip_id)
        if trip is None:
            return TransitionResult(False, reason=ReasonCode.TRIP_NOT_FOUND, message="Trip not found")
        if trip.owner_id != user.id:
            return TransitionResult(False, reason=ReasonCode.FORBIDDEN, message="Not your trip")
        result = await self.db.execute(select(Booking).where(Booking.trip_id == trip_id))
        decision = await self.cancellations.evaluate_trip(user, trip, list(result.scalars().all()))
        return TransitionResult(True, message=decision.message, decision=decision, details={"trip_id": trip_id})

    # ==================== verification codes ====================

    async def _code_context(
        self,
        booking_id: int,
        user: Optional[User],
        code_type: CodeType,
        *,
        lock: bool,
        allow_admin: bool = False,
    ) -> tuple[Optional[Booking], Optional[TransitionResult]]:
        booking = await (self._lock_booking(booking_id) if lock else self.get_booking(booking_id))
        if booking is None:
            return None, TransitionResult(False, reason=ReasonCode.BOOKING_NOT_FOUND, message="Booking not found")
        actor = actor_for(booking, user)
        if actor != CODE_OWNER[code_type] and not (allow_admin and actor == Actor.ADMIN):
            return booking, TransitionResult(
                False, booking=booking, reason=ReasonCode.FORBIDDEN, message="This code belongs to the other party"
            )
        return booking, None

    async def get_code(self, booking_id: int, user: User, code_type: CodeType) -> TransitionResult:
        booking, error = await self._code_context(booking_id, user, code_type, lock=False)
        if error:
            return error
        code = await self.codes.get_active(booking.id, code_type)
        if code is None:
            return TransitionResult(False, booking=booking, reason=ReasonCode.CODE_NOT_FOUND, message="No active code")
        return TransitionResult(True, booking=booking, code=code, message="Active code")

    async def generate_code(self, booking_id: int, user: User, code_type: CodeType) -> TransitionResult:
        """Issue a code where none is active (e.g. after expiry)"""
        return await self._issue_code(booking_id, user, code_type, reason=None)

    async def regenerate_code(
        self,
        booking_id: int,
        user: User,
        code_type: CodeType,
        reason: RegenerationReason = RegenerationReason.LOST,
    ) -> TransitionResult:
        """Supersede the current code (lost, exhausted or expired) with a fresh one"""
        return await self._issue_code(booking_id, user, code_type, reason=reason)

    async def _issue_code(
        self,
        booking_id: int,
        user: User,
        code_type: CodeType,
        reason: Optional[RegenerationReason],
    ) -> TransitionResult:
        try:
            booking, error = await self._code_context(
                booking_id, user, code_type, lock=True, allow_admin=reason is not None
            )
            if error:
                await self.db.commit()
                return error

            if booking.status not in CODE_STATUSES[code_type]:
                return await self._fail(
                    ReasonCode.INVALID_STATUS,
                    f"No {code_type.value} is needed for a {booking.status.value} booking",
                    booking,
                )
            if reason is None and await self.codes.get_active(booking.id, code_type) is not None:
                return await self._fail(
                    ReasonCode.CODE_ALREADY_ACTIVE, "A code is already active, regenerate it instead", booking
                )

            owner_id = booking.sender_id if code_type == CodeType.PICKUP else booking.receiver_id
            if reason is None:
                reason = RegenerationReason.EXPIRED
            code = await self.codes.regenerate(booking.id, code_type, owner_id, reason)
            await self.outbox.queue_notification(
                owner_id,
                NotificationEvent.VERIFICATION_CODE_REGENERATED,
                {"booking_id": booking.id, "code_type": code_type.value, "reason": reason.value},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, code=code, message="New code issued")

    # ==================== provider-driven updates ====================

    async def _booking_for_intent(self, intent_id: str) -> Optional[Booking]:
        from app.db.models.payment_authorization import PaymentAuthorization

        result = await self.db.execute(
            select(Booking)
            .join(PaymentAuthorization, Booking.payment_authorization_id == PaymentAuthorization.id)
            .where(PaymentAuthorization.provider_intent_id == intent_id)
        )
        return result.scalar_one_or_none()

    async def handle_intent_capturable(self, intent_id: str) -> Optional[TransitionResult]:
        """Webhook: the sender confirmed on the client side, the hold is in place"""
        booking = await self._booking_for_intent(intent_id)
        if booking is None or booking.status != BookingStatus.PAYMENT_AUTHORIZED:
            return None
        return await self.confirm_payment(booking.id, actor=Actor.SYSTEM)

    async def handle_intent_canceled(self, intent_id: str) -> Optional[TransitionResult]:
        """Webhook: the provider dropped the hold (expired or cancelled elsewhere)"""
        booking = await self._booking_for_intent(intent_id)
        if booking is None:
            return None
        return await self.expire_authorization(booking.id, already_cancelled=True)

    async def expire_authorization(self, booking_id: int, *, already_cancelled: bool = False) -> TransitionResult:
        """System cancellation of an unconfirmed or lapsed hold"""
        try:
            booking, actor, error = await self._begin(
                booking_id, BookingAction.CANCEL, actor=Actor.SYSTEM
            )
            if error:
                return error

            authorization = booking.payment_authorization
            if authorization is not None and authorization.status != AuthorizationStatus.CANCELLED:
                if already_cancelled:
                    authorization.status = AuthorizationStatus.CANCELLED
                    authorization.cancelled_at = datetime.utcnow()
                    authorization.cancellation_reason = "provider_cancelled"
                else:
                    result = await self.payments.cancel_payment_authorization(authorization, "payment_expired")
                    if not result.success:
                        return await self._provider_fail(booking, result, actor)

            booking.payment_status = PaymentStatus.CANCELLED
            self._apply_cancellation(
                booking, BookingAction.CANCEL, actor, CancellationType.PAYMENT_EXPIRED, 100, None, "payment_expired"
            )
            await self.outbox.queue_booking_notification(
                booking, NotificationEvent.BOOKING_CANCELLED, cancellation_type=CancellationType.PAYMENT_EXPIRED.value
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return TransitionResult(True, booking=booking, message="Authorization expired, booking cancelled")
