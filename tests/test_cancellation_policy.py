"""
Tests for the cancellation policy (pure rules) and its refund quotes
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from app.core.exceptions import ReasonCode
from app.db.models.booking import Booking, BookingStatus, CancellationType
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User
from app.domain.services.cancellation_policy import (
    CancellationPolicy,
    CancellationQuote,
    Severity,
    classify_severity,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_trip(hours_before_departure: float, status: TripStatus = TripStatus.ACTIVE) -> Trip:
    return Trip(
        id=1,
        owner_id=2,
        departure_city="Lyon",
        arrival_city="Berlin",
        departure_at=NOW + timedelta(hours=hours_before_departure),
        available_weight_kg=Decimal("20.00"),
        price_per_kg=Decimal("10.00"),
        status=status,
    )


def make_booking(status: BookingStatus, price: str = "100.00") -> Booking:
    booking = Booking(
        id=10,
        trip_id=1,
        sender_id=1,
        receiver_id=2,
        weight_kg=Decimal("2.00"),
        proposed_price=Decimal(price),
        status=status,
    )
    if status != BookingStatus.PENDING:
        booking.final_price = Decimal(price)
        booking.commission_rate = Decimal("15")
        booking.commission_amount = (Decimal(price) * Decimal("0.15")).quantize(Decimal("0.01"))
    return booking


def make_user(suspended_until: datetime | None = None) -> User:
    return User(id=1, email="someone@example.com", suspended_until=suspended_until)


@pytest.fixture
def policy() -> CancellationPolicy:
    return CancellationPolicy()


class TestSeverity:

    @pytest.mark.unit
    @pytest.mark.parametrize("hours,expected", [
        (72, Severity.LOW),
        (48, Severity.LOW),
        (30, Severity.MEDIUM),
        (24, Severity.MEDIUM),
        (12, Severity.HIGH),
        (-1, Severity.HIGH),
    ])
    def test_closer_to_departure_is_worse(self, hours, expected):
        assert classify_severity(hours) == expected


class TestBookingCancellation:

    @pytest.mark.unit
    def test_pending_withdrawal_is_free_and_not_counted(self, policy):
        decision = policy.evaluate_booking(
            make_user(), make_booking(BookingStatus.PENDING), make_trip(2), NOW, recent_cancellations=99
        )
        assert decision.allowed
        assert decision.refund_percentage == 100
        assert not decision.fees_deducted
        assert not decision.counted

    @pytest.mark.unit
    def test_early_cancel_of_confirmed_payment(self, policy):
        decision = policy.evaluate_booking(
            make_user(), make_booking(BookingStatus.PAYMENT_CONFIRMED), make_trip(72), NOW, 0
        )
        assert decision.allowed
        assert decision.category == CancellationType.EARLY_CANCEL
        assert decision.refund_percentage == 100
        assert decision.fees_deducted
        assert decision.counted

    @pytest.mark.unit
    def test_late_cancel_of_confirmed_payment(self, policy):
        decision = policy.evaluate_booking(
            make_user(), make_booking(BookingStatus.PAYMENT_CONFIRMED), make_trip(12), NOW, 0
        )
        assert decision.category == CancellationType.LATE_CANCEL
        assert decision.refund_percentage == 50
        assert decision.severity == Severity.HIGH

    @pytest.mark.unit
    def test_late_cancel_without_charge_refunds_everything(self, policy):
        decision = policy.evaluate_booking(
            make_user(), make_booking(BookingStatus.PAYMENT_AUTHORIZED), make_trip(12), NOW, 0
        )
        assert decision.category == CancellationType.LATE_CANCEL
        assert decision.refund_percentage == 100
        assert not decision.fees_deducted

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [
        BookingStatus.PAID,
        BookingStatus.IN_TRANSIT,
        BookingStatus.DELIVERED,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    ])
    def test_not_cancellable_after_capture(self, policy, status):
        decision = policy.evaluate_booking(make_user(), make_booking(status), make_trip(72), NOW, 0)
        assert not decision.allowed
        assert decision.reason == ReasonCode.CANCELLATION_NOT_ALLOWED

    @pytest.mark.unit
    def test_limit_reached(self, policy):
        decision = policy.evaluate_booking(
            make_user(), make_booking(BookingStatus.ACCEPTED), make_trip(72), NOW, recent_cancellations=3
        )
        assert not decision.allowed
        assert decision.reason == ReasonCode.CANCELLATION_LIMIT_REACHED

    @pytest.mark.unit
    def test_suspended_user(self, policy):
        user = make_user(suspended_until=NOW + timedelta(days=3))
        decision = policy.evaluate_booking(user, make_booking(BookingStatus.ACCEPTED), make_trip(72), NOW, 0)
        assert not decision.allowed
        assert decision.reason == ReasonCode.USER_SUSPENDED

    @pytest.mark.unit
    @given(hours=st.integers(min_value=-48, max_value=500))
    def test_category_follows_late_threshold(self, hours):
        decision = CancellationPolicy().evaluate_booking(
            make_user(), make_booking(BookingStatus.PAYMENT_CONFIRMED), make_trip(hours), NOW, 0
        )
        expected = CancellationType.EARLY_CANCEL if hours >= 24 else CancellationType.LATE_CANCEL
        assert decision.category == expected


class TestNoShow:

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [
        BookingStatus.ACCEPTED,
        BookingStatus.PAYMENT_AUTHORIZED,
        BookingStatus.PAYMENT_CONFIRMED,
        BookingStatus.PAID,
    ])
    def test_allowed_statuses(self, policy, status):
        decision = policy.evaluate_no_show(make_booking(status), make_trip(1), NOW)
        assert decision.allowed
        assert decision.category == CancellationType.NO_SHOW
        assert decision.refund_percentage == 0

    @pytest.mark.unit
    def test_not_after_pickup(self, policy):
        decision = policy.evaluate_no_show(make_booking(BookingStatus.IN_TRANSIT), make_trip(1), NOW)
        assert not decision.allowed


class TestTripCancellation:

    @pytest.mark.unit
    def test_empty_trip_is_not_counted(self, policy):
        decision = policy.evaluate_trip(make_user(), make_trip(72), [], NOW, recent_trip_cancellations=5)
        assert decision.allowed
        assert not decision.counted

    @pytest.mark.unit
    def test_trip_with_open_bookings_is_counted(self, policy):
        bookings = [make_booking(BookingStatus.PAID)]
        decision = policy.evaluate_trip(make_user(), make_trip(72), bookings, NOW, 0)
        assert decision.allowed
        assert decision.counted
        assert decision.category == CancellationType.TRIP_CANCELLED

    @pytest.mark.unit
    def test_limit_applies_only_with_bookings(self, policy):
        bookings = [make_booking(BookingStatus.PENDING)]
        decision = policy.evaluate_trip(make_user(), make_trip(72), bookings, NOW, recent_trip_cancellations=1)
        assert not decision.allowed
        assert decision.reason == ReasonCode.CANCELLATION_LIMIT_REACHED

    @pytest.mark.unit
    def test_parcel_in_transit_blocks(self, policy):
        bookings = [make_booking(BookingStatus.PAID), make_booking(BookingStatus.IN_TRANSIT)]
        decision = policy.evaluate_trip(make_user(), make_trip(72), bookings, NOW, 0)
        assert not decision.allowed
        assert decision.reason == ReasonCode.TRIP_HAS_ACTIVE_TRANSPORT

    @pytest.mark.unit
    def test_cancelled_trip(self, policy):
        decision = policy.evaluate_trip(make_user(), make_trip(72, TripStatus.CANCELLED), [], NOW, 0)
        assert not decision.allowed
        assert decision.reason == ReasonCode.CANCELLATION_NOT_ALLOWED


class TestQuote:

    @pytest.mark.unit
    def test_early_cancel_refunds_principal_minus_fees(self, policy):
        booking = make_booking(BookingStatus.PAYMENT_CONFIRMED)
        decision = policy.evaluate_booking(make_user(), booking, make_trip(72), NOW, 0)
        quote = CancellationQuote.for_booking(booking, decision)

        assert quote.platform_fee == Decimal("15.00")
        assert quote.processor_fee == Decimal("3.20")
        assert quote.refund_amount == Decimal("81.80")
        assert quote.retained_amount == Decimal("18.20")
        assert quote.traveler_compensation == Decimal("0.00")

    @pytest.mark.unit
    def test_late_cancel_splits_net_with_traveler(self, policy):
        booking = make_booking(BookingStatus.PAYMENT_CONFIRMED)
        decision = policy.evaluate_booking(make_user(), booking, make_trip(12), NOW, 0)
        quote = CancellationQuote.for_booking(booking, decision)

        assert quote.refund_amount == Decimal("39.30")
        assert quote.retained_amount == Decimal("60.70")
        assert quote.traveler_compensation == Decimal("42.50")

    @pytest.mark.unit
    def test_hold_only_is_released_in_full(self, policy):
        booking = make_booking(BookingStatus.PAYMENT_AUTHORIZED)
        decision = policy.evaluate_booking(make_user(), booking, make_trip(12), NOW, 0)
        quote = CancellationQuote.for_booking(booking, decision)

        assert not quote.charged
        assert quote.refund_amount == Decimal("100.00")
        assert quote.retained_amount == Decimal("0.00")

    @pytest.mark.unit
    def test_no_show_on_paid_booking(self, policy):
        booking = make_booking(BookingStatus.PAID)
        decision = policy.evaluate_no_show(booking, make_trip(1), NOW)
        quote = CancellationQuote.for_booking(booking, decision)

        assert quote.refund_amount == Decimal("0.00")
        assert quote.retained_amount == Decimal("100.00")
        assert quote.traveler_compensation == Decimal("85.00")

    @pytest.mark.unit
    @given(
        price=st.decimals(min_value=Decimal("1.00"), max_value=Decimal("5000"), places=2),
        hours=st.integers(min_value=0, max_value=200),
    )
    def test_refund_and_retained_add_up(self, price, hours):
        booking = make_booking(BookingStatus.PAYMENT_CONFIRMED, price=str(price))
        decision = CancellationPolicy().evaluate_booking(make_user(), booking, make_trip(hours), NOW, 0)
        quote = CancellationQuote.for_booking(booking, decision)

        assert quote.refund_amount >= 0
        assert quote.refund_amount <= quote.principal
        assert quote.refund_amount + quote.retained_amount == quote.principal
