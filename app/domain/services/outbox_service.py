"""
Outbox Service - Transactional Outbox Pattern for Async Messaging

Booking transitions queue their notifications in the same database
transaction as the state change. Background workers dispatch them later, so a
failing dispatcher can never roll back a committed transition.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select

from app.core.config import settings
from app.db.models.booking import Booking
from app.db.models.outbox_message import MessageStatus, NotificationPriority, OutboxMessage


class NotificationEvent(str, enum.Enum):
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_CAPTURED = "payment_captured"
    PICKUP_CODE_ISSUED = "pickup_code_issued"
    DELIVERY_CODE_ISSUED = "delivery_code_issued"
    PACKAGE_PICKED_UP = "package_picked_up"
    PACKAGE_DELIVERED = "package_delivered"
    PAYOUT_SENT = "payout_sent"
    PAYOUT_FAILED = "payout_failed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_NO_SHOW = "booking_no_show"
    BOOKING_DISPUTED = "booking_disputed"
    TRIP_CANCELLED = "trip_cancelled"
    VERIFICATION_CODE_REGENERATED = "verification_code_regenerated"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


@dataclass(frozen=True)
class NotificationOptions:
    """Recognized delivery options for one notification"""
    channels: tuple[NotificationChannel, ...] = (NotificationChannel.IN_APP, NotificationChannel.PUSH)
    priority: NotificationPriority = NotificationPriority.NORMAL


DEFAULT_OPTIONS = NotificationOptions()
URGENT_OPTIONS = NotificationOptions(
    channels=(NotificationChannel.IN_APP, NotificationChannel.PUSH, NotificationChannel.EMAIL),
    priority=NotificationPriority.HIGH,
)


def _calculate_backoff_seconds(retry_count: int, *, base_seconds: int, max_backoff_seconds: int) -> int:
    """``base_seconds * 2**retry_count``, never above ``max_backoff_seconds``"""
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    # Beyond this exponent the doubling is past the cap anyway
    exponent = min(max(retry_count, 0), max_backoff_seconds.bit_length())
    return min(base_seconds << exponent, max_backoff_seconds)


def booking_variables(booking: Booking, **extra: Any) -> dict[str, Any]:
    """Template variables shared by every booking notification"""
    variables: dict[str, Any] = {
        "booking_id": booking.id,
        "booking_uuid": booking.uuid,
        "trip_id": booking.trip_id,
        "status": booking.status.value if booking.status else None,
    }
    if booking.final_price is not None:
        variables["final_price"] = str(booking.final_price)
    variables.update(extra)
    return variables


class OutboxService:
    """
    Service for managing outbox messages.

    queue_* methods only add rows to the session; the caller commits them
    together with its own changes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_notification(
        self,
        user_id: int,
        event_type: NotificationEvent,
        variables: dict[str, Any],
        options: NotificationOptions = DEFAULT_OPTIONS,
    ) -> OutboxMessage:
        """Queue a single notification for delivery"""
        message = OutboxMessage(
            user_id=user_id,
            event_type=event_type.value,
            variables=variables,
            channels=[channel.value for channel in options.channels],
            priority=options.priority,
            status=MessageStatus.PENDING,
        )
        self.db.add(message)
        return message

    async def queue_booking_notification(
        self,
        booking: Booking,
        event_type: NotificationEvent,
        *,
        notify_sender: bool = True,
        notify_receiver: bool = True,
        options: NotificationOptions = DEFAULT_OPTIONS,
        **extra: Any,
    ) -> List[OutboxMessage]:
        """Queue the same event for one or both booking parties"""
        recipients = []
        if notify_sender:
            recipients.append(booking.sender_id)
        if notify_receiver:
            recipients.append(booking.receiver_id)

        variables = booking_variables(booking, **extra)
        return [
            await self.queue_notification(user_id, event_type, dict(variables), options)
            for user_id in recipients
        ]

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending messages that are due (no retry scheduled, or its time has come)"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> OutboxMessage | None:
        return await self.db.get(OutboxMessage, message_id)

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message is not None:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message is not None:
            message.status = MessageStatus.SENT
            message.processed_at = datetime.utcnow()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """
        Record a failed delivery.

        The row goes back to PENDING with ``next_retry_at`` pushed out by the
        backoff, or to FAILED once ``max_retries`` deliveries have failed.
        """
        message = await self._get(message_id)
        if message is None:
            return

        message.retry_count += 1
        message.last_error = error[:1000]
        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.next_retry_at = None
        else:
            delay = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.status = MessageStatus.PENDING
            message.next_retry_at = datetime.utcnow() + timedelta(seconds=delay)
        await self.db.commit()
