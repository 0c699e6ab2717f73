"""
Tests for BookingService - the booking lifecycle against the in-memory provider
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.exceptions import PaymentOutcomeUnknown, PaymentProviderError, ReasonCode
from app.db.models.booking import BookingStatus, CancellationType, PaymentStatus
from app.db.models.escrow_account import EscrowStatus, ReleaseReason
from app.db.models.outbox_message import OutboxMessage
from app.db.models.payment_authorization import AuthorizationStatus
from app.db.models.trip import TripStatus
from app.db.models.user_payment_account import UserPaymentAccount
from app.db.models.verification_code import CodeStatus, CodeType
from app.domain.services.escrow_service import EscrowService


async def _events_for(db_session, user_id: int) -> list[str]:
    result = await db_session.execute(
        select(OutboxMessage.event_type).where(OutboxMessage.user_id == user_id).order_by(OutboxMessage.id)
    )
    return list(result.scalars().all())


class TestCreateBooking:

    @pytest.mark.unit
    async def test_request_notifies_traveler(self, flow, db_session):
        booking = await flow.requested(weight_kg="3.50", price="45.00")

        assert booking.status == BookingStatus.PENDING
        assert booking.receiver_id == flow.traveler.id
        assert booking.proposed_price == Decimal("45.00")
        assert booking.final_price is None
        assert await _events_for(db_session, flow.traveler.id) == ["booking_requested"]
        assert await _events_for(db_session, flow.sender.id) == []

    @pytest.mark.unit
    async def test_cannot_book_own_trip(self, flow):
        result = await flow.service.create_booking(flow.traveler, flow.trip.id, Decimal("1"), Decimal("10"))

        assert result.reason == ReasonCode.VALIDATION_ERROR

    @pytest.mark.unit
    async def test_over_capacity(self, flow):
        result = await flow.service.create_booking(flow.sender, flow.trip.id, Decimal("25"), Decimal("10"))

        assert result.reason == ReasonCode.VALIDATION_ERROR
        assert result.details == {"available_weight_kg": "20.00"}

    @pytest.mark.unit
    async def test_unknown_trip(self, flow):
        result = await flow.service.create_booking(flow.sender, 999, Decimal("1"), Decimal("10"))

        assert result.reason == ReasonCode.TRIP_NOT_FOUND


class TestAccept:

    @pytest.mark.unit
    async def test_accept_authorizes_payment(self, flow, fake_provider, db_session):
        booking = await flow.authorized()

        assert booking.status == BookingStatus.PAYMENT_AUTHORIZED
        assert booking.payment_status == PaymentStatus.AUTHORIZED
        assert booking.final_price == Decimal("100.00")
        assert booking.commission_rate == Decimal("15")
        assert booking.commission_amount == Decimal("15.00")
        assert booking.payment_authorization.status == AuthorizationStatus.PENDING
        assert booking.authorization_idempotency_key.startswith(f"authorize-{booking.id}-")
        assert len(fake_provider.intents) == 1
        assert "booking_accepted" in await _events_for(db_session, flow.sender.id)

    @pytest.mark.unit
    async def test_accept_with_negotiated_price(self, flow):
        booking = await flow.requested()

        result = await flow.service.accept(booking.id, flow.traveler, final_price=Decimal("80"))

        assert result.booking.final_price == Decimal("80.00")
        assert result.booking.commission_amount == Decimal("12.00")

    @pytest.mark.unit
    async def test_sender_cannot_accept(self, flow):
        booking = await flow.requested()

        result = await flow.service.accept(booking.id, flow.sender)

        assert result.reason == ReasonCode.FORBIDDEN

    @pytest.mark.unit
    async def test_stranger_cannot_accept(self, flow, user_factory):
        booking = await flow.requested()
        stranger = await user_factory()

        result = await flow.service.accept(booking.id, stranger)

        assert result.reason == ReasonCode.FORBIDDEN

    @pytest.mark.unit
    async def test_accept_twice(self, flow):
        booking = await flow.authorized()

        result = await flow.service.accept(booking.id, flow.traveler)

        assert result.reason == ReasonCode.INVALID_STATUS
        assert "payment_authorized" in result.message

    @pytest.mark.unit
    async def test_traveler_without_payout_account(self, flow, user_factory, trip_factory):
        traveler = await user_factory()
        trip = await trip_factory(traveler)
        created = await flow.service.create_booking(flow.sender, trip.id, Decimal("1"), Decimal("30"))

        result = await flow.service.accept(created.booking.id, traveler)

        assert result.reason == ReasonCode.STRIPE_ACCOUNT_REQUIRED
        assert result.details == {"account_status": "missing"}
        assert result.booking.status == BookingStatus.PENDING

    @pytest.mark.unit
    async def test_traveler_with_incomplete_account(
        self, flow, user_factory, trip_factory, payment_account_factory
    ):
        traveler = await user_factory()
        await payment_account_factory(traveler, payouts_enabled=False)
        trip = await trip_factory(traveler)
        created = await flow.service.create_booking(flow.sender, trip.id, Decimal("1"), Decimal("30"))

        result = await flow.service.accept(created.booking.id, traveler)

        assert result.reason == ReasonCode.STRIPE_ACCOUNT_REQUIRED
        assert result.details == {"account_status": "incomplete"}

    @pytest.mark.unit
    async def test_declined_authorization_reverts_to_pending(self, flow, fake_provider):
        booking = await flow.requested()
        fake_provider.fail("create_payment_intent", PaymentProviderError("declined", provider_code="card_declined"))

        result = await flow.service.accept(booking.id, flow.traveler)

        assert result.reason == ReasonCode.PAYMENT_PROVIDER_ERROR
        reloaded = await flow.reload(booking.id)
        assert reloaded.status == BookingStatus.PENDING
        assert reloaded.final_price is None
        assert reloaded.commission_amount is None
        assert reloaded.payment_status is None
        assert reloaded.authorization_idempotency_key is None

        retry = await flow.service.accept(booking.id, flow.traveler)
        assert retry.success

    @pytest.mark.unit
    async def test_unknown_authorization_outcome_waits_for_reconciliation(self, flow, fake_provider):
        booking = await flow.requested()
        fake_provider.fail(
            "create_payment_intent",
            PaymentOutcomeUnknown("create_payment_intent", "timeout"),
            after_apply=True,
        )

        result = await flow.service.accept(booking.id, flow.traveler)

        assert result.reason == ReasonCode.PAYMENT_OUTCOME_UNKNOWN
        reloaded = await flow.reload(booking.id)
        assert reloaded.status == BookingStatus.ACCEPTED
        assert reloaded.payment_status == PaymentStatus.RECONCILIATION_REQUIRED
        assert reloaded.final_price == Decimal("100.00")

    @pytest.mark.unit
    async def test_reject(self, flow, db_session):
        booking = await flow.requested()

        result = await flow.service.reject(booking.id, flow.traveler, reason="Bag is full")

        assert result.booking.status == BookingStatus.REJECTED
        assert result.booking.rejection_reason == "Bag is full"
        assert "booking_rejected" in await _events_for(db_session, flow.sender.id)


class TestPayment:

    @pytest.mark.unit
    async def test_sender_confirms(self, flow):
        booking = await flow.confirmed()

        assert booking.status == BookingStatus.PAYMENT_CONFIRMED
        assert booking.payment_status == PaymentStatus.CONFIRMED
        assert booking.payment_authorization.status == AuthorizationStatus.CONFIRMED

    @pytest.mark.unit
    async def test_traveler_cannot_confirm(self, flow):
        booking = await flow.authorized()

        result = await flow.service.confirm_payment(booking.id, flow.traveler, payment_method_id="pm_card_visa")

        assert result.reason == ReasonCode.FORBIDDEN

    @pytest.mark.unit
    async def test_capture_holds_escrow_and_issues_codes(self, flow, db_session):
        booking = await flow.paid()

        assert booking.status == BookingStatus.PAID
        assert booking.payment_status == PaymentStatus.CAPTURED
        escrow = await EscrowService(db_session).get_for_booking(booking.id)
        assert escrow.status == EscrowStatus.HOLDING
        assert escrow.amount_held == Decimal("100.00")
        assert await flow.service.codes.get_active(booking.id, CodeType.PICKUP) is not None
        assert await flow.service.codes.get_active(booking.id, CodeType.DELIVERY) is not None
        await db_session.refresh(flow.trip)
        assert flow.trip.available_weight_kg == Decimal("18.00")

    @pytest.mark.unit
    async def test_capture_by_admin(self, flow, admin):
        booking = await flow.confirmed()

        result = await flow.service.capture(booking.id, admin)

        assert result.success
        assert result.booking.status == BookingStatus.PAID

    @pytest.mark.unit
    async def test_full_capacity_books_trip(self, flow, db_session):
        await flow.paid(weight_kg="20.00")

        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.BOOKED

    @pytest.mark.unit
    async def test_capture_attempts_exhausted(self, flow, fake_provider):
        booking = await flow.confirmed()
        fake_provider.fail("capture_payment_intent", PaymentProviderError("processing_error"), times=3)

        for attempt in range(1, 4):
            result = await flow.service.capture(booking.id, flow.traveler)
            assert result.reason == ReasonCode.PAYMENT_PROVIDER_ERROR
            reloaded = await flow.reload(booking.id)
            expected = PaymentStatus.CAPTURE_FAILED if attempt == 3 else PaymentStatus.CONFIRMED
            assert reloaded.payment_status == expected

        assert reloaded.status == BookingStatus.PAYMENT_CONFIRMED

    @pytest.mark.unit
    async def test_provider_error_visible_to_admin_only(self, flow, fake_provider, admin):
        booking = await flow.confirmed()
        fake_provider.fail("capture_payment_intent", PaymentProviderError("raw provider text"), times=2)

        as_traveler = await flow.service.capture(booking.id, flow.traveler)
        as_admin = await flow.service.capture(booking.id, admin)

        assert "provider_error" not in as_traveler.details
        assert "raw provider text" in as_admin.details["provider_error"]


class TestCustody:

    @pytest.mark.unit
    async def test_pickup(self, flow, db_session):
        booking = await flow.paid()
        pickup = await flow.service.codes.get_active(booking.id, CodeType.PICKUP)

        result = await flow.service.validate_pickup(booking.id, flow.traveler, pickup.code)

        assert result.booking.status == BookingStatus.IN_TRANSIT
        assert result.booking.pickup_date is not None
        assert pickup.status == CodeStatus.USED
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.IN_PROGRESS

    @pytest.mark.unit
    async def test_wrong_pickup_code_counts(self, flow):
        booking = await flow.paid()
        pickup = await flow.code(booking.id, CodeType.PICKUP)
        wrong = "000000" if pickup != "000000" else "111111"

        result = await flow.service.validate_pickup(booking.id, flow.traveler, wrong)

        assert result.reason == ReasonCode.CODE_INVALID
        assert result.details == {"attempts_remaining": 2}
        assert (await flow.reload(booking.id)).status == BookingStatus.PAID

    @pytest.mark.unit
    async def test_sender_cannot_enter_pickup_code(self, flow):
        booking = await flow.paid()
        pickup = await flow.code(booking.id, CodeType.PICKUP)

        result = await flow.service.validate_pickup(booking.id, flow.sender, pickup)

        assert result.reason == ReasonCode.FORBIDDEN

    @pytest.mark.unit
    async def test_delivery_completes_and_pays_out(self, flow, fake_provider, db_session):
        booking = await flow.completed()

        assert booking.status == BookingStatus.COMPLETED
        assert booking.payment_status == PaymentStatus.TRANSFERRED
        assert booking.completed_at is not None
        transfer = fake_provider.transfers[0]
        assert transfer.amount_cents == 8500
        assert transfer.destination == f"acct_test{flow.traveler.id}"
        escrow = await EscrowService(db_session).get_for_booking(booking.id)
        assert escrow.status == EscrowStatus.FULLY_RELEASED
        assert escrow.release_reason == ReleaseReason.DELIVERY_COMPLETED
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.COMPLETED
        assert "payout_sent" in await _events_for(db_session, flow.traveler.id)

    @pytest.mark.unit
    async def test_failed_payout_keeps_delivery(self, flow, fake_provider):
        booking = await flow.in_transit()
        delivery = await flow.code(booking.id, CodeType.DELIVERY)
        fake_provider.fail("create_transfer", PaymentProviderError("insufficient balance"))

        result = await flow.service.validate_delivery(booking.id, flow.sender, delivery)

        assert result.success
        assert result.details == {"payout_reason": "payment_provider_error"}
        reloaded = await flow.reload(booking.id)
        assert reloaded.status == BookingStatus.DELIVERED
        assert reloaded.payment_status == PaymentStatus.TRANSFER_FAILED

    @pytest.mark.unit
    async def test_trip_completes_on_last_delivery_even_if_payout_fails(self, flow, fake_provider, db_session):
        first = await flow.paid()
        second = await flow.paid()
        for booking in (first, second):
            pickup = await flow.code(booking.id, CodeType.PICKUP)
            assert (await flow.service.validate_pickup(booking.id, flow.traveler, pickup)).success
        fake_provider.fail("create_transfer", PaymentProviderError("insufficient balance"), times=2)

        delivery = await flow.code(first.id, CodeType.DELIVERY)
        await flow.service.validate_delivery(first.id, flow.sender, delivery)
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.IN_PROGRESS

        delivery = await flow.code(second.id, CodeType.DELIVERY)
        await flow.service.validate_delivery(second.id, flow.sender, delivery)

        assert (await flow.reload(second.id)).status == BookingStatus.DELIVERED
        assert (await flow.reload(second.id)).payment_status == PaymentStatus.TRANSFER_FAILED
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.COMPLETED
        assert flow.trip.completed_at is not None

    @pytest.mark.unit
    async def test_force_transfer_uses_fresh_key(self, flow, fake_provider):
        booking = await flow.in_transit()
        delivery = await flow.code(booking.id, CodeType.DELIVERY)
        fake_provider.fail("create_transfer", PaymentProviderError("insufficient balance"))
        await flow.service.validate_delivery(booking.id, flow.sender, delivery)

        result = await flow.service.force_transfer(booking.id)

        assert result.success
        assert result.booking.status == BookingStatus.COMPLETED
        keys = [c["idempotency_key"] for c in fake_provider.calls_of("create_transfer")]
        assert keys == [f"payout-{booking.id}-0", f"payout-{booking.id}-1"]

    @pytest.mark.unit
    async def test_disabled_payouts_at_delivery(self, flow, db_session):
        booking = await flow.in_transit()
        delivery = await flow.code(booking.id, CodeType.DELIVERY)
        account = (await db_session.execute(
            select(UserPaymentAccount).where(UserPaymentAccount.user_id == flow.traveler.id)
        )).scalar_one()
        account.payouts_enabled = False
        await db_session.commit()

        result = await flow.service.validate_delivery(booking.id, flow.sender, delivery)

        assert result.details == {"payout_reason": "stripe_account_incomplete"}
        assert (await flow.reload(booking.id)).payment_status == PaymentStatus.TRANSFER_FAILED

    @pytest.mark.unit
    async def test_dispute_freezes_escrow(self, flow, fake_provider, db_session):
        booking = await flow.in_transit()
        delivery = await flow.code(booking.id, CodeType.DELIVERY)
        fake_provider.fail("create_transfer", PaymentProviderError("insufficient balance"))
        await flow.service.validate_delivery(booking.id, flow.sender, delivery)

        disputed = await flow.service.dispute(booking.id, flow.sender, notes="Parcel arrived damaged")
        retry = await flow.service.force_transfer(booking.id)

        assert disputed.booking.status == BookingStatus.DISPUTED
        assert disputed.escrow.status == EscrowStatus.DISPUTED
        assert retry.reason == ReasonCode.INVALID_STATUS
        assert len(fake_provider.transfers) == 0

    @pytest.mark.unit
    async def test_cannot_dispute_in_transit(self, flow):
        booking = await flow.in_transit()

        result = await flow.service.dispute(booking.id, flow.sender)

        assert result.reason == ReasonCode.INVALID_STATUS


class TestSenderCancellation:

    @pytest.mark.unit
    async def test_withdraw_pending_request(self, flow):
        booking = await flow.requested()

        result = await flow.service.cancel(booking.id, flow.sender)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.refund_percentage == 100
        history = await flow.service.cancellations.history(flow.sender.id)
        assert history.counted_in_window == 0

    @pytest.mark.unit
    async def test_cancel_authorized_releases_hold(self, flow, fake_provider):
        booking = await flow.authorized()

        result = await flow.service.cancel(booking.id, flow.sender, reason="Plans changed")

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_type == CancellationType.EARLY_CANCEL
        assert result.booking.payment_status == PaymentStatus.CANCELLED
        assert result.booking.refund_amount is None
        assert result.booking.payment_authorization.status == AuthorizationStatus.CANCELLED
        intent_id = result.booking.payment_authorization.provider_intent_id
        assert fake_provider.intents[intent_id].status == "canceled"

    @pytest.mark.unit
    async def test_early_cancel_of_confirmed_payment_keeps_fees(self, flow, fake_provider):
        booking = await flow.confirmed()

        result = await flow.service.cancel(booking.id, flow.sender)

        assert result.booking.payment_status == PaymentStatus.PARTIALLY_CAPTURED
        assert result.booking.refund_amount == Decimal("81.80")
        assert result.quote.retained_amount == Decimal("18.20")
        assert fake_provider.calls_of("capture_payment_intent")[0]["amount_cents"] == 1820
        assert fake_provider.transfers == []

    @pytest.mark.unit
    async def test_late_cancel_compensates_traveler(self, late_flow, fake_provider):
        booking = await late_flow.confirmed()

        result = await late_flow.service.cancel(booking.id, late_flow.sender)

        assert result.booking.cancellation_type == CancellationType.LATE_CANCEL
        assert result.booking.refund_percentage == 50
        assert result.booking.refund_amount == Decimal("39.30")
        assert result.details == {"compensation_transferred": True}
        call = fake_provider.calls_of("create_transfer")[0]
        assert call["amount_cents"] == 4250
        assert call["idempotency_key"] == f"compensation-{booking.id}"
        assert result.booking.compensation_amount == Decimal("42.50")
        assert result.booking.payment_status == PaymentStatus.PARTIALLY_CAPTURED

    @pytest.mark.unit
    async def test_failed_compensation_stays_owed_until_retried(self, late_flow, fake_provider, db_session):
        booking = await late_flow.confirmed()
        fake_provider.fail("create_transfer", PaymentProviderError("insufficient balance"))

        result = await late_flow.service.cancel(booking.id, late_flow.sender)

        assert result.success
        assert result.details == {"compensation_transferred": False}
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.payment_status == PaymentStatus.TRANSFER_FAILED
        assert result.booking.compensation_amount == Decimal("42.50")
        assert "payout_failed" in await _events_for(db_session, late_flow.traveler.id)

        retry = await late_flow.service.force_transfer(booking.id)

        assert retry.success
        assert retry.booking.payment_status == PaymentStatus.PARTIALLY_CAPTURED
        assert fake_provider.transfers[0].amount_cents == 4250
        keys = [c["idempotency_key"] for c in fake_provider.calls_of("create_transfer")]
        assert keys == [f"compensation-{booking.id}", f"compensation-{booking.id}-1"]
        assert (await _events_for(db_session, late_flow.traveler.id))[-1] == "payout_sent"

        again = await late_flow.service.force_transfer(booking.id)
        assert again.reason == ReasonCode.INVALID_STATUS
        assert len(fake_provider.transfers) == 1

    @pytest.mark.unit
    async def test_compensation_without_payout_account(self, late_flow, db_session):
        booking = await late_flow.confirmed()
        account = (await db_session.execute(
            select(UserPaymentAccount).where(UserPaymentAccount.user_id == late_flow.traveler.id)
        )).scalar_one()
        account.payouts_enabled = False
        await db_session.commit()

        result = await late_flow.service.cancel(booking.id, late_flow.sender)

        assert result.details == {"compensation_transferred": False}
        assert result.booking.payment_status == PaymentStatus.TRANSFER_FAILED

        retry = await late_flow.service.force_transfer(booking.id)

        assert retry.reason == ReasonCode.STRIPE_ACCOUNT_INCOMPLETE
        assert (await late_flow.reload(booking.id)).payment_status == PaymentStatus.TRANSFER_FAILED

    @pytest.mark.unit
    async def test_cannot_cancel_after_capture(self, flow):
        booking = await flow.paid()

        result = await flow.service.cancel(booking.id, flow.sender)

        assert result.reason == ReasonCode.INVALID_STATUS

    @pytest.mark.unit
    async def test_cancellation_limit(self, flow):
        for _ in range(3):
            booking = await flow.authorized()
            assert (await flow.service.cancel(booking.id, flow.sender)).success

        fourth = await flow.authorized()
        result = await flow.service.cancel(fourth.id, flow.sender)

        assert result.reason == ReasonCode.CANCELLATION_LIMIT_REACHED
        assert (await flow.reload(fourth.id)).status == BookingStatus.PAYMENT_AUTHORIZED
        history = await flow.service.cancellations.history(flow.sender.id)
        assert history.counted_in_window == 3
        assert history.attempts[0].is_allowed is False

    @pytest.mark.unit
    async def test_provider_failure_keeps_booking(self, flow, fake_provider):
        booking = await flow.authorized()
        fake_provider.fail("cancel_payment_intent", PaymentProviderError("api_error"))
        fake_provider.fail("retrieve_payment_intent", PaymentProviderError("api_error"))

        result = await flow.service.cancel(booking.id, flow.sender)

        assert result.reason == ReasonCode.PAYMENT_PROVIDER_ERROR
        assert (await flow.reload(booking.id)).status == BookingStatus.PAYMENT_AUTHORIZED


class TestNoShow:

    @pytest.mark.unit
    async def test_no_show_on_paid_booking_pays_traveler(self, flow, fake_provider, db_session):
        booking = await flow.paid()

        result = await flow.service.no_show(booking.id, flow.traveler)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_type == CancellationType.NO_SHOW
        assert result.booking.refund_percentage == 0
        assert result.booking.payment_status == PaymentStatus.TRANSFERRED
        assert result.escrow.release_reason == ReleaseReason.NO_SHOW
        assert fake_provider.transfers[0].amount_cents == 8500
        assert await flow.service.codes.get_active(booking.id, CodeType.PICKUP) is None
        await db_session.refresh(flow.trip)
        assert flow.trip.available_weight_kg == Decimal("20.00")

    @pytest.mark.unit
    @pytest.mark.parametrize("stage", ["authorized", "confirmed"])
    async def test_no_show_before_capture_releases_hold(self, flow, fake_provider, db_session, stage):
        booking = await getattr(flow, stage)()

        result = await flow.service.no_show(booking.id, flow.traveler, reason="Never came to the meeting point")

        assert result.success
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_type == CancellationType.NO_SHOW
        assert result.booking.refund_percentage == 0
        assert result.booking.refund_amount is None
        assert result.booking.payment_status == PaymentStatus.CANCELLED
        assert result.booking.payment_authorization.status == AuthorizationStatus.CANCELLED
        intent_id = result.booking.payment_authorization.provider_intent_id
        assert fake_provider.intents[intent_id].status == "canceled"
        assert fake_provider.transfers == []
        assert (await _events_for(db_session, flow.sender.id))[-1] == "booking_no_show"

    @pytest.mark.unit
    async def test_no_show_keeps_hold_when_provider_refuses(self, flow, fake_provider):
        booking = await flow.authorized()
        fake_provider.fail("cancel_payment_intent", PaymentProviderError("api_error"))
        fake_provider.fail("retrieve_payment_intent", PaymentProviderError("api_error"))

        result = await flow.service.no_show(booking.id, flow.traveler)

        assert result.reason == ReasonCode.PAYMENT_PROVIDER_ERROR
        reloaded = await flow.reload(booking.id)
        assert reloaded.status == BookingStatus.PAYMENT_AUTHORIZED
        assert reloaded.cancellation_type is None

    @pytest.mark.unit
    async def test_no_show_while_authorization_in_flight(self, flow, fake_provider):
        booking = await flow.requested()
        fake_provider.fail("create_payment_intent", PaymentOutcomeUnknown("create_payment_intent", "timeout"))
        await flow.service.accept(booking.id, flow.traveler)

        result = await flow.service.no_show(booking.id, flow.traveler)

        assert result.success
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_type == CancellationType.NO_SHOW
        # The sweep still has to make sure no hold was left at the provider
        assert result.booking.payment_status == PaymentStatus.RECONCILIATION_REQUIRED

    @pytest.mark.unit
    async def test_no_show_waits_for_unsettled_capture(self, flow, fake_provider):
        booking = await flow.confirmed()
        fake_provider.fail("capture_payment_intent", PaymentOutcomeUnknown("capture_payment_intent", "timeout"))
        await flow.service.capture(booking.id, flow.traveler)

        result = await flow.service.no_show(booking.id, flow.traveler)

        assert result.reason == ReasonCode.PAYMENT_RECONCILIATION_PENDING
        assert (await flow.reload(booking.id)).status == BookingStatus.PAYMENT_CONFIRMED

    @pytest.mark.unit
    async def test_sender_cannot_declare_no_show(self, flow):
        booking = await flow.paid()

        result = await flow.service.no_show(booking.id, flow.sender)

        assert result.reason == ReasonCode.FORBIDDEN


class TestTripCancellation:

    @pytest.mark.unit
    async def test_cancel_trip_refunds_everyone(self, flow, fake_provider, db_session):
        paid = await flow.paid()
        authorized = await flow.authorized()

        result = await flow.service.cancel_trip(flow.trip.id, flow.traveler, reason="Flight cancelled")

        assert result.success
        paid = await flow.reload(paid.id)
        authorized = await flow.reload(authorized.id)
        assert paid.status == BookingStatus.CANCELLED
        assert paid.cancellation_type == CancellationType.TRIP_CANCELLED
        assert paid.payment_status == PaymentStatus.REFUNDED
        assert paid.refund_amount == Decimal("100.00")
        assert authorized.payment_status == PaymentStatus.CANCELLED
        escrow = await EscrowService(db_session).get_for_booking(paid.id)
        assert escrow.status == EscrowStatus.REFUNDED
        assert fake_provider.refunds[0].amount_cents == 10000
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.CANCELLED

    @pytest.mark.unit
    async def test_refund_failure_keeps_trip_open(self, flow, fake_provider, db_session):
        paid = await flow.paid()
        authorized = await flow.authorized()
        fake_provider.fail("create_refund", PaymentProviderError("api_error"))

        failed = await flow.service.cancel_trip(flow.trip.id, flow.traveler)

        assert failed.reason == ReasonCode.PAYMENT_PROVIDER_ERROR
        assert failed.details == {"failed_bookings": [paid.id]}
        assert (await flow.reload(authorized.id)).status == BookingStatus.CANCELLED
        assert (await flow.reload(paid.id)).status == BookingStatus.PAID
        await db_session.refresh(flow.trip)
        assert flow.trip.status == TripStatus.ACTIVE

        retry = await flow.service.cancel_trip(flow.trip.id, flow.traveler)
        assert retry.success
        assert (await flow.reload(paid.id)).status == BookingStatus.CANCELLED

    @pytest.mark.unit
    async def test_parcel_in_transit_blocks_trip_cancel(self, flow):
        await flow.in_transit()

        result = await flow.service.cancel_trip(flow.trip.id, flow.traveler)

        assert result.reason == ReasonCode.TRIP_HAS_ACTIVE_TRANSPORT

    @pytest.mark.unit
    async def test_only_owner_cancels_trip(self, flow):
        result = await flow.service.cancel_trip(flow.trip.id, flow.sender)

        assert result.reason == ReasonCode.FORBIDDEN


class TestEligibility:

    @pytest.mark.unit
    async def test_sender_sees_refund_quote(self, flow):
        booking = await flow.confirmed()

        result = await flow.service.booking_cancellation_eligibility(booking.id, flow.sender)

        assert result.decision.allowed
        assert result.quote.refund_amount == Decimal("81.80")
        # Read-only: nothing moved
        assert (await flow.reload(booking.id)).status == BookingStatus.PAYMENT_CONFIRMED

    @pytest.mark.unit
    async def test_traveler_sees_no_show_decision(self, flow):
        booking = await flow.paid()

        result = await flow.service.booking_cancellation_eligibility(booking.id, flow.traveler)

        assert result.decision.category == CancellationType.NO_SHOW

    @pytest.mark.unit
    async def test_trip_eligibility(self, flow):
        await flow.paid()

        result = await flow.service.trip_cancellation_eligibility(flow.trip.id, flow.traveler)

        assert result.decision.allowed
        assert result.decision.counted


class TestCodesThroughBookings:

    @pytest.mark.unit
    async def test_only_owner_reads_code(self, flow):
        booking = await flow.paid()

        own = await flow.service.get_code(booking.id, flow.sender, CodeType.PICKUP)
        other = await flow.service.get_code(booking.id, flow.traveler, CodeType.PICKUP)

        assert own.success
        assert other.reason == ReasonCode.FORBIDDEN

    @pytest.mark.unit
    async def test_generate_while_active(self, flow):
        booking = await flow.paid()

        result = await flow.service.generate_code(booking.id, flow.sender, CodeType.PICKUP)

        assert result.reason == ReasonCode.CODE_ALREADY_ACTIVE

    @pytest.mark.unit
    async def test_regenerate_lost_code(self, flow):
        booking = await flow.paid()
        old = await flow.service.codes.get_active(booking.id, CodeType.DELIVERY)

        result = await flow.service.regenerate_code(booking.id, flow.traveler, CodeType.DELIVERY)

        assert result.success
        assert result.code.id != old.id
        assert old.status == CodeStatus.SUPERSEDED

    @pytest.mark.unit
    async def test_no_pickup_code_once_in_transit(self, flow):
        booking = await flow.in_transit()

        result = await flow.service.regenerate_code(booking.id, flow.sender, CodeType.PICKUP)

        assert result.reason == ReasonCode.INVALID_STATUS


class TestProviderEvents:

    @pytest.mark.unit
    async def test_capturable_webhook_confirms(self, flow, fake_provider):
        booking = await flow.authorized()
        intent_id = booking.payment_authorization.provider_intent_id
        fake_provider.set_status(intent_id, "requires_capture")

        result = await flow.service.handle_intent_capturable(intent_id)

        assert result.success
        assert result.booking.status == BookingStatus.PAYMENT_CONFIRMED

    @pytest.mark.unit
    async def test_unknown_intent_is_ignored(self, flow):
        assert await flow.service.handle_intent_capturable("pi_unknown") is None

    @pytest.mark.unit
    async def test_canceled_webhook_expires_booking(self, flow, fake_provider):
        booking = await flow.authorized()
        intent_id = booking.payment_authorization.provider_intent_id

        result = await flow.service.handle_intent_canceled(intent_id)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_type == CancellationType.PAYMENT_EXPIRED
        assert fake_provider.calls_of("cancel_payment_intent") == []
