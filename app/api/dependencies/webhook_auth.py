"""
Signature check for incoming payment provider webhooks.

The provider signs every delivery with the endpoint secret and sends
``Stripe-Signature: t=<unix ts>,v1=<hex hmac>``. The signed payload is
``"<t>.<raw body>"`` hashed with HMAC-SHA256.

Usage:
    @router.post("/webhook")
    async def webhook(payload: dict = Depends(verify_stripe_signature)):
        ...
"""
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_signature_header(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int,
    now: Optional[float] = None,
) -> bool:
    if not header:
        return False
    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        return False
    now = now if now is not None else time.time()
    if abs(now - timestamp) > tolerance_seconds:
        return False
    expected = compute_signature(payload, timestamp, secret)
    # Constant-time comparison
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


async def verify_stripe_signature(
    request: Request,
    stripe_signature: str | None = Header(None),
) -> dict[str, Any]:
    """
    Verify ``Stripe-Signature`` and return the parsed event.

    - STRIPE_WEBHOOK_SECRET unset: every webhook is rejected (403).
    - Missing, stale or wrong signature: 400.
    """
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.warning("Webhook rejected, STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Webhook secret is not configured",
        )

    body = await request.body()
    if not verify_signature_header(
        body, stripe_signature, secret, settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
    ):
        logger.warning("Webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    try:
        return json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload is not JSON",
        )
