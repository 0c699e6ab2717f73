"""
Celery tasks.

Outbox delivery to the notification dispatcher, plus the periodic jobs:
payment reconciliation, expiry of unconfirmed holds, automatic capture,
verification code expiry and table cleanup.

Tasks are sync (Celery); each one runs its coroutine on a private event
loop through ``run_async``.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterator

import httpx
from sqlalchemy import delete as sa_delete, select

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from app.workers.celery_app import celery_app
from app.core.circuit_breaker import get_notification_circuit_breaker
from app.core.config import settings
from app.core.exceptions import NotificationDispatchError
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import close_redis, sweep_lock
from app.db.database import get_task_session
from app.db.models.outbox_message import OutboxMessage, MessageStatus
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.domain.services.verification_code_service import VerificationCodeService

logger = get_logger(__name__)

NOTIFICATION_TIMEOUT_SECONDS = 30.0


@contextmanager
def task_event_loop() -> Iterator[asyncio.AbstractEventLoop]:
    """A fresh loop for one task; closed with everything bound to it"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis client belongs to this loop and must not outlive it
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning("Redis close failed at task end", extra_data={"error": str(e)})

        leftovers = asyncio.all_tasks(loop)
        for task in leftovers:
            task.cancel()
        if leftovers:
            loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()


def run_async(coro):
    """Run ``coro`` to completion under its own correlation ID"""
    set_correlation_id()
    with task_event_loop() as loop:
        return loop.run_until_complete(coro)


def notification_payload(message: OutboxMessage) -> dict:
    priority = message.priority
    return {
        "user_id": message.user_id,
        "event_type": message.event_type,
        "variables": message.variables or {},
        "channels": message.channels or [],
        "priority": getattr(priority, "value", priority),
    }


async def _post_notification(message: OutboxMessage) -> None:
    """POST one message to the dispatcher; any non-2xx answer raises"""

    async def _send() -> None:
        async with httpx.AsyncClient(timeout=NOTIFICATION_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.NOTIFICATION_DISPATCHER_URL, json=notification_payload(message))
        if not 200 <= response.status_code < 300:
            raise NotificationDispatchError(
                f"dispatcher returned status {response.status_code}",
                details={"status_code": response.status_code},
            )

    await get_notification_circuit_breaker().execute(_send)


async def deliver_message(db: "AsyncSession", message: OutboxMessage) -> tuple[bool, str]:
    """
    Hand one outbox row to the dispatcher.

    Returns ``(True, "sent")`` or ``(False, error)``; a failure leaves the
    row pending with its retry scheduled by ``OutboxService.mark_as_failed``.
    """
    outbox = OutboxService(db)
    await outbox.mark_as_processing(message.id)

    try:
        await _post_notification(message)
    except Exception as e:
        error = str(e) or type(e).__name__
        logger.error(
            "Notification dispatch failed",
            extra_data={
                "message_id": message.id,
                "user_id": message.user_id,
                "event_type": message.event_type,
                "retry_count": message.retry_count,
                "error": error,
            },
        )
        await outbox.mark_as_failed(message.id, error)
        return False, error

    await outbox.mark_as_sent(message.id)
    return True, "sent"


async def dispatch_pending_messages(db: "AsyncSession", limit: int = 50) -> list[dict]:
    """Deliver every due message, oldest first"""
    messages = await OutboxService(db).get_pending_messages(limit=limit)
    results = []
    for message in messages:
        success, detail = await deliver_message(db, message)
        results.append({"message_id": message.id, "success": success, "result": detail})
    return results


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():

    async def _process():
        async with get_task_session() as db:
            return await dispatch_pending_messages(db)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.send_message")
def send_message(message_id: int):
    """Deliver one message right away instead of waiting for the next sweep"""

    async def _send():
        async with get_task_session() as db:
            message = (
                await db.execute(select(OutboxMessage).where(OutboxMessage.id == message_id))
            ).scalar_one_or_none()
            if message is None:
                return {"error": "Message not found"}
            success, detail = await deliver_message(db, message)
            return {"success": success, "result": detail}

    return run_async(_send())


async def run_sweep(name: str, sweep) -> dict:
    """Run one payment sweep unless another worker is already on it"""
    async with sweep_lock(name, settings.SWEEP_LOCK_TTL_SECONDS) as acquired:
        if not acquired:
            return {"skipped": True}
        async with get_task_session() as db:
            summary = await sweep(PaymentReconciliationService(db))
            return summary.to_dict()


@celery_app.task(name="app.workers.tasks.reconcile_payments")
def reconcile_payments():
    """Re-drive bookings whose last provider call ended with an unknown outcome"""
    return run_async(run_sweep("reconcile_payments", lambda service: service.reconcile_pending()))


@celery_app.task(name="app.workers.tasks.expire_stale_authorizations")
def expire_stale_authorizations():
    """Cancel holds the sender never confirmed, releasing the funds"""
    return run_async(
        run_sweep("expire_stale_authorizations", lambda service: service.expire_stale_authorizations())
    )


@celery_app.task(name="app.workers.tasks.auto_capture_confirmed_payments")
def auto_capture_confirmed_payments():
    """Capture confirmed payments once AUTO_CAPTURE_DELAY_HOURS have passed"""
    return run_async(run_sweep("auto_capture_confirmed_payments", lambda service: service.auto_capture_confirmed()))


async def expire_codes(db: "AsyncSession") -> int:
    expired = await VerificationCodeService(db).expire_stale()
    await db.commit()
    logger.info("Expired verification codes", extra_data={"expired": expired})
    return expired


@celery_app.task(name="app.workers.tasks.expire_verification_codes")
def expire_verification_codes():

    async def _expire():
        async with get_task_session() as db:
            return {"expired": await expire_codes(db)}

    return run_async(_expire())


async def delete_old_messages(db: "AsyncSession", days: int = 30) -> int:
    cutoff = datetime.utcnow() - timedelta(days=days)
    result = await db.execute(
        sa_delete(OutboxMessage).where(
            OutboxMessage.status == MessageStatus.SENT,
            OutboxMessage.processed_at < cutoff
        )
    )
    await db.commit()
    return result.rowcount or 0


@celery_app.task(name="app.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old processed messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            return {"deleted": await delete_old_messages(db, days)}

    return run_async(_cleanup())


async def delete_old_webhook_events(db: "AsyncSession", days: int = 7) -> int:
    cutoff = datetime.utcnow() - timedelta(days=days)
    result = await db.execute(
        sa_delete(WebhookEvent).where(
            WebhookEvent.status == "completed",
            WebhookEvent.created_at < cutoff,
        )
    )
    await db.commit()
    deleted = result.rowcount or 0
    logger.info(
        "Cleaned up old webhook events",
        extra_data={"deleted": deleted, "cutoff_days": days},
    )
    return deleted


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7):
    """Drop completed webhook idempotency rows past the redelivery window"""

    async def _cleanup():
        async with get_task_session() as db:
            return {"deleted": await delete_old_webhook_events(db, days)}

    return run_async(_cleanup())
