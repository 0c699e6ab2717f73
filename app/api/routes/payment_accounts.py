"""
Payout accounts and the payment provider webhook
"""
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.api.dependencies.webhook_auth import verify_stripe_signature
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.booking_service import BookingService
from app.domain.services.payment_account_service import PaymentAccountService
from app.domain.services.payments import ProviderAccount

logger = get_logger(__name__)

router = APIRouter()

# An event stuck in "processing" this long is treated as crashed and retried
_STALE_PROCESSING_SECONDS = 120

HANDLED_EVENTS = (
    "account.updated",
    "payment_intent.canceled",
    "payment_intent.amount_capturable_updated",
)


class LinkAccountRequest(BaseModel):
    provider_account_id: str = Field(min_length=3, max_length=100, pattern=r"^acct_[A-Za-z0-9]+$")


def _account_dict(account) -> dict[str, Any]:
    return {
        "provider_account_id": account.provider_account_id,
        "charges_enabled": account.charges_enabled,
        "payouts_enabled": account.payouts_enabled,
        "details_submitted": account.details_submitted,
        "can_accept_payments": account.can_accept_payments,
    }


@router.get("/me", summary="My payout account", tags=["Payment Accounts"])
async def get_my_account(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account = await PaymentAccountService(db).get_for_user(user.id)
    reason = PaymentAccountService.status_reason(account)
    return {
        "success": True,
        "account": _account_dict(account) if account else None,
        "status_reason": reason.value if reason else None,
    }


@router.post("", summary="Link a connected payout account", tags=["Payment Accounts"])
async def link_account(
    data: LinkAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account = await PaymentAccountService(db).link(user.id, data.provider_account_id)
    return {"success": True, "account": _account_dict(account)}


async def _try_acquire_event(db: AsyncSession, event_id: str, event_type: str) -> bool:
    """
    Claim a provider event for processing.

    Insert first; on a duplicate key the event is skipped when completed or
    still being processed, and re-claimed when its processing went stale.
    """
    try:
        async with db.begin_nested():
            db.add(WebhookEvent(
                event_id=event_id,
                provider="stripe",
                event_type=event_type,
                status="processing",
                created_at=datetime.utcnow(),
            ))
        # Committed right away so a crash during processing still blocks
        # immediate redelivery until the stale threshold passes
        await db.commit()
        return True
    except IntegrityError:
        pass

    result = await db.execute(
        select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)
    )
    row = result.one_or_none()
    if row is None or row.status == "completed":
        logger.info("Skipping duplicate webhook event", extra_data={"event_id": event_id})
        return False

    threshold = datetime.utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.event_id == event_id,
            WebhookEvent.status == "processing",
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=datetime.utcnow())
    )
    if update_result.rowcount > 0:
        await db.commit()
        logger.warning("Retrying stale webhook event", extra_data={"event_id": event_id})
        return True

    logger.info("Skipping in-progress webhook event", extra_data={"event_id": event_id})
    return False


async def _mark_event_completed(db: AsyncSession, event_id: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(status="completed")
    )
    await db.commit()


async def _dispatch_event(db: AsyncSession, event_type: str, obj: dict[str, Any]) -> str:
    if event_type == "account.updated":
        account = await PaymentAccountService(db).sync(
            ProviderAccount(
                id=obj.get("id", ""),
                charges_enabled=bool(obj.get("charges_enabled")),
                payouts_enabled=bool(obj.get("payouts_enabled")),
                details_submitted=bool(obj.get("details_submitted")),
            )
        )
        return "processed" if account else "unknown_account"

    service = BookingService(db)
    if event_type == "payment_intent.canceled":
        result = await service.handle_intent_canceled(obj.get("id", ""))
    else:
        result = await service.handle_intent_capturable(obj.get("id", ""))

    if result is None:
        return "no_matching_booking"
    if not result.success:
        logger.warning(
            "Webhook did not change the booking",
            extra_data={"event_type": event_type, "reason": result.reason.value if result.reason else None},
        )
        return "not_applied"
    return "processed"


@router.post(
    "/webhook",
    summary="Payment provider webhook",
    description=(
        "Signed with `Stripe-Signature`. Each event id is processed once; "
        "unknown event types are acknowledged and ignored."
    ),
    tags=["Webhooks"],
)
async def payment_webhook(
    event: dict = Depends(verify_stripe_signature),
    db: AsyncSession = Depends(get_db),
) -> dict:
    event_id = event.get("id")
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type not in HANDLED_EVENTS or not event_id:
        return {"success": True, "status": "ignored"}

    if not await _try_acquire_event(db, event_id, event_type):
        return {"success": True, "status": "duplicate"}

    # An exception leaves the event in "processing" so the redelivery is retried
    outcome = await _dispatch_event(db, event_type, obj)
    await _mark_event_completed(db, event_id)

    logger.info(
        "Webhook event handled",
        extra_data={"event_id": event_id, "event_type": event_type, "outcome": outcome},
    )
    return {"success": True, "status": outcome}
