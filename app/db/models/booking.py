"""
Booking Model - one request to ship a parcel on one trip

Status changes go exclusively through BookingService, which consults the
transition table in app.state_machine.booking_states.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.db.database import Base


def generate_booking_uuid() -> str:
    return str(uuid.uuid4())


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAID = "paid"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatus(str, enum.Enum):
    """Where the money of a booking stands, independent of the booking status"""
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    CONFIRMED = "confirmed"
    CAPTURED = "captured"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    CAPTURE_FAILED = "capture_failed"
    TRANSFERRED = "transferred"
    TRANSFER_FAILED = "transfer_failed"
    CANCELLED = "cancelled"
    PARTIALLY_CAPTURED = "partially_captured"
    REFUNDED = "refunded"


class CancellationType(str, enum.Enum):
    EARLY_CANCEL = "early_cancel"
    LATE_CANCEL = "late_cancel"
    NO_SHOW = "no_show"
    PAYMENT_EXPIRED = "payment_expired"
    TRIP_CANCELLED = "trip_cancelled"


class Booking(Base):
    """Booking record with its commercial terms and payment linkage"""

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, nullable=False, default=generate_booking_uuid, index=True)

    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    # Both parties are immutable after creation
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    package_description = Column(Text, nullable=True)
    weight_kg = Column(Numeric(10, 2), nullable=False)
    proposed_price = Column(Numeric(10, 2), nullable=False)
    # Set on acceptance, together with the commission terms
    final_price = Column(Numeric(10, 2), nullable=True)
    commission_rate = Column(Numeric(5, 2), nullable=True)
    commission_amount = Column(Numeric(10, 2), nullable=True)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True)

    payment_authorization_id = Column(Integer, ForeignKey("payment_authorizations.id"), nullable=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=True, index=True)
    # Reused when an authorization request has to be replayed after a timeout
    authorization_idempotency_key = Column(String(100), nullable=True)

    rejection_reason = Column(Text, nullable=True)
    cancellation_type = Column(SQLEnum(CancellationType), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refund_percentage = Column(Integer, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    # Traveler's share of a late cancellation; still owed while payment_status is transfer_failed
    compensation_amount = Column(Numeric(10, 2), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    accepted_at = Column(DateTime, nullable=True)
    payment_authorized_at = Column(DateTime, nullable=True)
    payment_confirmed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    pickup_date = Column(DateTime, nullable=True)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Optimistic check on top of the row lock
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    trip = relationship("Trip", lazy="selectin")
    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])
    payment_authorization = relationship(
        "PaymentAuthorization", foreign_keys=[payment_authorization_id], lazy="selectin"
    )

    def role_of(self, user_id: int) -> str | None:
        """'sender' / 'receiver' for the two parties, None for anybody else"""
        if user_id == self.sender_id:
            return "sender"
        if user_id == self.receiver_id:
            return "receiver"
        return None
