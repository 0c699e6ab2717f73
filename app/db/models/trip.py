"""
Trip Model - a traveler's journey with spare luggage capacity
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.db.database import Base


class TripStatus(str, enum.Enum):
    ACTIVE = "active"
    BOOKED = "booked"            # no capacity left
    IN_PROGRESS = "in_progress"  # first parcel picked up
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Trip(Base):
    """Trip listing owned by a traveler"""

    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    departure_city = Column(String(100), nullable=False)
    arrival_city = Column(String(100), nullable=False)
    departure_at = Column(DateTime, nullable=False, index=True)
    arrival_at = Column(DateTime, nullable=True)

    available_weight_kg = Column(Numeric(10, 2), nullable=False)
    price_per_kg = Column(Numeric(10, 2), nullable=False)

    status = Column(SQLEnum(TripStatus), default=TripStatus.ACTIVE, nullable=False, index=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User", foreign_keys=[owner_id])

    @property
    def is_open_for_booking(self) -> bool:
        return self.status == TripStatus.ACTIVE
