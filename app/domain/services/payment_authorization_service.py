"""
Payment Authorization Service - wrapper between bookings and the payment provider

Translates booking data into provider calls and provider answers into
``PaymentResult`` objects. Never commits: the caller (BookingService) owns the
transaction and decides what to persist after looking at the result.

Outcome mapping:
    provider returned             -> success
    PaymentProviderError          -> failure, payment_provider_error
    PaymentProviderUnavailable    -> failure, payment_provider_error
    CircuitBreakerOpenError       -> failure, payment_provider_error
    PaymentOutcomeUnknown         -> failure, payment_outcome_unknown (reconcile!)
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    PaymentOutcomeUnknown,
    PaymentProviderError,
    PaymentProviderUnavailable,
    ReasonCode,
)
from app.core.logging import get_logger
from app.db.models.booking import Booking
from app.db.models.payment_authorization import (
    AuthorizationStatus,
    CaptureMode,
    PaymentAuthorization,
)
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.domain.services.payments import (
    BasePaymentProvider,
    ProviderIntent,
    get_payment_provider,
)
from app.domain.services.pricing import to_cents, to_money

logger = get_logger(__name__)

# Card holds lapse at the provider after about a week
AUTHORIZATION_VALIDITY_DAYS = 7

_DEFINITE_FAILURES = (PaymentProviderError, PaymentProviderUnavailable, CircuitBreakerOpenError)


def transfer_group_for(booking: Booking) -> str:
    return f"booking-{booking.id}"


@dataclass
class PaymentResult:
    """Uniform outcome of every wrapper operation"""
    success: bool
    authorization: Optional[PaymentAuthorization] = None
    reason: Optional[ReasonCode] = None
    message: str = ""
    # Raw provider text; only ever shown to admins
    provider_error: Optional[str] = None
    outcome_unknown: bool = False
    provider_reference: Optional[str] = None
    transaction: Optional[Transaction] = None
    intent: Optional[ProviderIntent] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **kwargs) -> "PaymentResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failed(cls, reason: ReasonCode, message: str, **kwargs) -> "PaymentResult":
        return cls(success=False, reason=reason, message=message, **kwargs)


class PaymentAuthorizationService:
    """authorize -> confirm -> capture | cancel, plus refunds and payouts"""

    def __init__(self, db: AsyncSession, provider: Optional[BasePaymentProvider] = None):
        self.db = db
        self.provider = provider or get_payment_provider()

    # ── error translation ──

    def _from_exception(self, operation: str, exc: Exception, **context) -> PaymentResult:
        if isinstance(exc, PaymentOutcomeUnknown):
            logger.error(
                f"Payment provider outcome unknown for {operation}",
                extra_data={"operation": operation, "cause": exc.cause, **context},
            )
            return PaymentResult.failed(
                ReasonCode.PAYMENT_OUTCOME_UNKNOWN,
                "The payment provider did not answer in time; the request will be reconciled",
                provider_error=exc.message,
                outcome_unknown=True,
            )

        provider_code = getattr(exc, "provider_code", None)
        logger.error(
            f"Payment provider refused {operation}",
            extra_data={
                "operation": operation,
                "error_type": type(exc).__name__,
                "provider_code": provider_code,
                "error": str(exc),
                **context,
            },
        )
        return PaymentResult.failed(
            ReasonCode.PAYMENT_PROVIDER_ERROR,
            "The payment could not be processed",
            provider_error=str(exc),
            details={"provider_code": provider_code} if provider_code else {},
        )

    def _audit(
        self,
        booking_id: int,
        authorization: Optional[PaymentAuthorization],
        tx_type: TransactionType,
        amount: Decimal,
        *,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        provider_reference: Optional[str] = None,
        description: Optional[str] = None,
        commission: Optional[Decimal] = None,
        receiver_amount: Optional[Decimal] = None,
    ) -> Transaction:
        transaction = Transaction(
            booking_id=booking_id,
            payment_authorization_id=authorization.id if authorization else None,
            type=tx_type,
            status=status,
            amount=to_money(amount),
            commission_amount=commission,
            receiver_amount=receiver_amount,
            currency=authorization.currency if authorization else settings.PAYMENT_CURRENCY,
            provider_reference=provider_reference,
            description=description,
        )
        self.db.add(transaction)
        return transaction

    # ── authorization ──

    async def create_payment_authorization(
        self,
        booking: Booking,
        destination_account_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> PaymentResult:
        """Place a manual-capture hold of ``amount`` for ``booking``.

        Replaying with the same idempotency key (reconciliation) returns the
        intent created the first time and reuses its local row.
        """
        amount = to_money(amount)
        try:
            intent = await self.provider.create_payment_intent(
                amount_cents=to_cents(amount),
                currency=settings.PAYMENT_CURRENCY,
                idempotency_key=idempotency_key,
                transfer_group=transfer_group_for(booking),
                metadata={
                    "booking_id": str(booking.id),
                    "booking_uuid": booking.uuid,
                    "destination_account": destination_account_id,
                },
            )
        except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,) as exc:
            return self._from_exception("create_payment_authorization", exc, booking_id=booking.id)

        existing = await self.db.execute(
            select(PaymentAuthorization).where(PaymentAuthorization.provider_intent_id == intent.id)
        )
        authorization = existing.scalar_one_or_none()
        if authorization is None:
            authorization = PaymentAuthorization(
                booking_id=booking.id,
                provider_intent_id=intent.id,
                destination_account_id=destination_account_id,
                amount=amount,
                platform_fee=booking.commission_amount or Decimal("0.00"),
                currency=settings.PAYMENT_CURRENCY,
                status=AuthorizationStatus.PENDING,
                expires_at=datetime.utcnow() + timedelta(days=AUTHORIZATION_VALIDITY_DAYS),
            )
            self.db.add(authorization)
            await self.db.flush()
            self._audit(
                booking.id,
                authorization,
                TransactionType.AUTHORIZATION,
                amount,
                provider_reference=intent.id,
                description=f"Authorization for booking #{booking.id}",
            )

        logger.info(
            "Payment authorization created",
            extra_data={
                "booking_id": booking.id,
                "authorization_id": authorization.id,
                "intent_id": intent.id,
                "amount": str(amount),
            },
        )
        return PaymentResult.ok(
            "Payment authorization created",
            authorization=authorization,
            provider_reference=intent.id,
            intent=intent,
        )

    async def confirm_payment_authorization(
        self,
        authorization: PaymentAuthorization,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        """Sender-side confirmation; succeeds only once the hold is capturable."""
        if authorization.status == AuthorizationStatus.CONFIRMED:
            return PaymentResult.ok("Payment already confirmed", authorization=authorization)
        if authorization.status != AuthorizationStatus.PENDING:
            return PaymentResult.failed(
                ReasonCode.INVALID_STATUS,
                f"Authorization cannot be confirmed in status {authorization.status.value}",
                authorization=authorization,
            )

        try:
            if payment_method_id:
                intent = await self.provider.confirm_payment_intent(
                    authorization.provider_intent_id,
                    payment_method_id,
                    idempotency_key=f"confirm-{authorization.id}-{payment_method_id}",
                )
            else:
                intent = await self.provider.retrieve_payment_intent(authorization.provider_intent_id)
        except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,) as exc:
            return self._from_exception(
                "confirm_payment_authorization", exc, authorization_id=authorization.id
            )

        if not intent.is_capturable:
            return PaymentResult.failed(
                ReasonCode.PAYMENT_PROVIDER_ERROR,
                "The payment has not been confirmed with the provider yet",
                authorization=authorization,
                intent=intent,
                details={"intent_status": intent.status},
            )

        authorization.status = AuthorizationStatus.CONFIRMED
        authorization.confirmed_at = datetime.utcnow()
        authorization.last_error = None
        return PaymentResult.ok("Payment confirmed", authorization=authorization, intent=intent)

    # ── capture / cancel ──

    async def capture_payment_authorization(
        self,
        authorization: PaymentAuthorization,
        mode: CaptureMode,
        amount: Optional[Decimal] = None,
    ) -> PaymentResult:
        """Turn the hold into a charge; ``amount`` captures part and releases the rest."""
        if authorization.status != AuthorizationStatus.CONFIRMED:
            return PaymentResult.failed(
                ReasonCode.PAYMENT_AUTHORIZATION_MISSING,
                "There is no confirmed authorization to capture",
                authorization=authorization,
            )

        capture_amount = to_money(amount) if amount is not None else to_money(authorization.amount)
        authorization.capture_attempts = (authorization.capture_attempts or 0) + 1
        try:
            intent = await self.provider.capture_payment_intent(
                authorization.provider_intent_id,
                idempotency_key=f"capture-{authorization.id}-{authorization.capture_attempts}",
                amount_cents=to_cents(capture_amount) if amount is not None else None,
            )
        except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,) as exc:
            authorization.last_error = str(exc)[:1000]
            return self._from_exception(
                "capture_payment_authorization", exc, authorization_id=authorization.id
            )

        return self.apply_capture(authorization, mode, capture_amount, intent)

    def apply_capture(
        self,
        authorization: PaymentAuthorization,
        mode: CaptureMode,
        amount: Decimal,
        intent: ProviderIntent,
    ) -> PaymentResult:
        """Write a provider-side capture locally (also used by reconciliation)"""
        authorization.status = AuthorizationStatus.CAPTURED
        authorization.capture_mode = mode
        authorization.captured_amount = amount
        authorization.captured_at = datetime.utcnow()
        authorization.last_error = None

        tx_type = (
            TransactionType.CANCELLATION_RETENTION if mode == CaptureMode.CANCELLATION
            else TransactionType.CAPTURE
        )
        transaction = self._audit(
            authorization.booking_id,
            authorization,
            tx_type,
            amount,
            provider_reference=intent.id,
            description=f"{mode.value} capture",
        )
        logger.info(
            "Payment captured",
            extra_data={
                "authorization_id": authorization.id,
                "booking_id": authorization.booking_id,
                "amount": str(amount),
                "mode": mode.value,
            },
        )
        return PaymentResult.ok(
            "Payment captured",
            authorization=authorization,
            transaction=transaction,
            provider_reference=intent.id,
            intent=intent,
        )

    async def cancel_payment_authorization(
        self,
        authorization: PaymentAuthorization,
        reason: str,
    ) -> PaymentResult:
        """Release the hold without charging the sender."""
        if authorization.status == AuthorizationStatus.CANCELLED:
            return PaymentResult.ok("Authorization already cancelled", authorization=authorization)
        if authorization.status not in (AuthorizationStatus.PENDING, AuthorizationStatus.CONFIRMED):
            return PaymentResult.failed(
                ReasonCode.INVALID_STATUS,
                f"Authorization cannot be cancelled in status {authorization.status.value}",
                authorization=authorization,
            )

        provider_reason = "abandoned" if reason in ("payment_expired", "abandoned") else "requested_by_customer"
        try:
            intent = await self.provider.cancel_payment_intent(
                authorization.provider_intent_id,
                idempotency_key=f"cancel-{authorization.id}",
                reason=provider_reason,
            )
        except PaymentProviderError as exc:
            # Cancelling an intent the provider already cancelled is not an error
            try:
                intent = await self.provider.retrieve_payment_intent(authorization.provider_intent_id)
            except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,):
                return self._from_exception(
                    "cancel_payment_authorization", exc, authorization_id=authorization.id
                )
            if not intent.is_canceled:
                return self._from_exception(
                    "cancel_payment_authorization", exc, authorization_id=authorization.id
                )
        except (PaymentProviderUnavailable, CircuitBreakerOpenError, PaymentOutcomeUnknown) as exc:
            return self._from_exception(
                "cancel_payment_authorization", exc, authorization_id=authorization.id
            )

        authorization.status = AuthorizationStatus.CANCELLED
        authorization.cancelled_at = datetime.utcnow()
        authorization.cancellation_reason = reason[:100]
        logger.info(
            "Payment authorization cancelled",
            extra_data={"authorization_id": authorization.id, "reason": reason},
        )
        return PaymentResult.ok("Authorization cancelled", authorization=authorization, intent=intent)

    # ── money out ──

    async def refund_payment(
        self,
        authorization: PaymentAuthorization,
        amount: Decimal,
        reason: str,
    ) -> PaymentResult:
        """Refund part or all of a captured payment to the sender."""
        amount = to_money(amount)
        if authorization.status != AuthorizationStatus.CAPTURED:
            return PaymentResult.failed(
                ReasonCode.INVALID_STATUS,
                "Only captured payments can be refunded",
                authorization=authorization,
            )
        if amount <= 0:
            return PaymentResult.ok("Nothing to refund", authorization=authorization)

        try:
            refund = await self.provider.create_refund(
                authorization.provider_intent_id,
                amount_cents=to_cents(amount),
                idempotency_key=f"refund-{authorization.id}",
            )
        except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,) as exc:
            return self._from_exception("refund_payment", exc, authorization_id=authorization.id)

        transaction = self._audit(
            authorization.booking_id,
            authorization,
            TransactionType.REFUND,
            amount,
            provider_reference=refund.id,
            description=reason,
        )
        return PaymentResult.ok(
            "Payment refunded",
            authorization=authorization,
            transaction=transaction,
            provider_reference=refund.id,
        )

    async def transfer_to_account(
        self,
        booking: Booking,
        destination_account_id: str,
        amount: Decimal,
        idempotency_key: str,
        description: str,
        tx_type: TransactionType = TransactionType.TRANSFER,
    ) -> PaymentResult:
        """Pay ``amount`` out to a connected account (traveler payout/compensation)."""
        amount = to_money(amount)
        authorization = booking.payment_authorization
        try:
            transfer = await self.provider.create_transfer(
                amount_cents=to_cents(amount),
                currency=authorization.currency if authorization else settings.PAYMENT_CURRENCY,
                destination_account_id=destination_account_id,
                idempotency_key=idempotency_key,
                transfer_group=transfer_group_for(booking),
                metadata={"booking_id": str(booking.id)},
            )
        except PaymentOutcomeUnknown as exc:
            return self._from_exception("transfer_to_account", exc, booking_id=booking.id)
        except _DEFINITE_FAILURES as exc:
            # A failed row moves the next attempt onto a fresh idempotency key
            self._audit(
                booking.id,
                authorization,
                tx_type,
                amount,
                status=TransactionStatus.FAILED,
                description=f"{description} (failed)",
            )
            return self._from_exception("transfer_to_account", exc, booking_id=booking.id)

        transaction = self._audit(
            booking.id,
            authorization,
            tx_type,
            amount,
            provider_reference=transfer.id,
            description=description,
            commission=booking.commission_amount,
            receiver_amount=amount,
        )
        logger.info(
            "Transfer sent",
            extra_data={"booking_id": booking.id, "transfer_id": transfer.id, "amount": str(amount)},
        )
        return PaymentResult.ok(
            "Transfer sent",
            authorization=authorization,
            transaction=transaction,
            provider_reference=transfer.id,
        )

    async def get_transactions(self, booking_id: int) -> list[Transaction]:
        """Every money movement of a booking, oldest first"""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.booking_id == booking_id)
            .order_by(Transaction.id)
        )
        return list(result.scalars().all())

    # ── reconciliation ──

    async def reconcile_authorization(self, authorization: PaymentAuthorization) -> PaymentResult:
        """Read the provider's view of the intent; the caller decides what to apply."""
        try:
            intent = await self.provider.retrieve_payment_intent(authorization.provider_intent_id)
        except _DEFINITE_FAILURES + (PaymentOutcomeUnknown,) as exc:
            return self._from_exception("reconcile_authorization", exc, authorization_id=authorization.id)
        return PaymentResult.ok(
            f"Provider reports {intent.status}",
            authorization=authorization,
            intent=intent,
            details={"intent_status": intent.status},
        )
