"""
Stripe provider - implementation of BasePaymentProvider over the Stripe REST API.

Uses plain httpx with form-encoded bodies. Mutating calls are sent exactly once
with an Idempotency-Key and are never retried in-band: a timeout is reported as
an unknown outcome and left to reconciliation. Read-only calls are retried with
exponential backoff on transient failures.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    PaymentOutcomeUnknown,
    PaymentProviderError,
    PaymentProviderUnavailable,
)
from app.core.logging import get_logger, log_async_operation
from app.domain.services.payments.base_provider import (
    BasePaymentProvider,
    ProviderAccount,
    ProviderIntent,
    ProviderRefund,
    ProviderTransfer,
)

logger = get_logger(__name__)

_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def _flatten_metadata(metadata: Optional[dict[str, str]]) -> dict[str, str]:
    return {f"metadata[{key}]": str(value) for key, value in (metadata or {}).items()}


def _parse_intent(data: dict[str, Any]) -> ProviderIntent:
    return ProviderIntent(
        id=data["id"],
        status=data.get("status", ""),
        amount_cents=int(data.get("amount") or 0),
        currency=data.get("currency", ""),
        amount_capturable_cents=int(data.get("amount_capturable") or 0),
        amount_received_cents=int(data.get("amount_received") or 0),
        client_secret=data.get("client_secret"),
        metadata=dict(data.get("metadata") or {}),
    )


class StripePaymentProvider(BasePaymentProvider):
    """
    Stripe with separate charges and transfers.

    The sender's card is authorized on the platform account with
    ``capture_method=manual``; the traveler's share is moved later with a
    transfer to their connected account, linked through ``transfer_group``.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_read_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self._base_url = base_url or settings.STRIPE_API_BASE_URL
        self._timeout = timeout_seconds or settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
        self._max_read_retries = max_read_retries
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "stripe"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._api_key}"},
            transport=self._transport,
        )

    # ── transport ──

    async def _post(
        self,
        path: str,
        data: dict[str, Any],
        operation: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Single mutating request. Never retried here."""
        if not self._api_key:
            raise PaymentProviderUnavailable(operation, "STRIPE_SECRET_KEY is not configured")

        async def _send() -> dict[str, Any]:
            async with self._client() as client:
                try:
                    response = await client.post(
                        path,
                        data=data,
                        headers={"Idempotency-Key": idempotency_key},
                    )
                except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                    raise PaymentProviderUnavailable(operation, str(exc)) from exc
                except httpx.TimeoutException as exc:
                    raise PaymentOutcomeUnknown(operation, "timeout", self._timeout) from exc
                except httpx.RequestError as exc:
                    raise PaymentOutcomeUnknown(operation, f"network_error: {exc}") from exc

            if response.status_code >= 500:
                raise PaymentOutcomeUnknown(operation, f"status_{response.status_code}")
            if response.status_code >= 400:
                raise PaymentProviderError.from_response(operation, response)
            return response.json()

        return await self._circuit_breaker.execute(_send)

    async def _get(self, path: str, operation: str) -> dict[str, Any]:
        """Read-only request with retry and exponential backoff."""
        if not self._api_key:
            raise PaymentProviderUnavailable(operation, "STRIPE_SECRET_KEY is not configured")

        async def _send() -> dict[str, Any]:
            async with self._client() as client:
                for attempt in range(self._max_read_retries):
                    last_attempt = attempt >= self._max_read_retries - 1
                    try:
                        response = await client.get(path)
                    except httpx.RequestError as exc:
                        if not last_attempt:
                            backoff = 2 ** attempt
                            logger.warning(
                                f"Network error on {operation}, retrying",
                                extra_data={
                                    "operation": operation,
                                    "error": str(exc),
                                    "attempt": attempt + 1,
                                    "backoff_seconds": backoff,
                                },
                            )
                            await asyncio.sleep(backoff)
                            continue
                        raise PaymentProviderUnavailable(operation, str(exc)) from exc

                    if response.status_code in _TRANSIENT_STATUS_CODES and not last_attempt:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"Transient status on {operation}, retrying",
                            extra_data={
                                "operation": operation,
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue

                    if response.status_code >= 500:
                        raise PaymentProviderUnavailable(
                            operation, f"status {response.status_code} after retries"
                        )
                    if response.status_code >= 400:
                        raise PaymentProviderError.from_response(operation, response)
                    return response.json()

            raise PaymentProviderUnavailable(operation, "no attempts made")

        return await self._circuit_breaker.execute(_send)

    # ── payment intents ──

    @log_async_operation("stripe.create_payment_intent")
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        transfer_group: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> ProviderIntent:
        data = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "payment_method_types[]": "card",
            "transfer_group": transfer_group,
            **_flatten_metadata(metadata),
        }
        payload = await self._post("/payment_intents", data, "create_payment_intent", idempotency_key)
        return _parse_intent(payload)

    async def retrieve_payment_intent(self, intent_id: str) -> ProviderIntent:
        payload = await self._get(f"/payment_intents/{intent_id}", "retrieve_payment_intent")
        return _parse_intent(payload)

    @log_async_operation("stripe.confirm_payment_intent")
    async def confirm_payment_intent(
        self,
        intent_id: str,
        payment_method_id: str,
        idempotency_key: str,
    ) -> ProviderIntent:
        payload = await self._post(
            f"/payment_intents/{intent_id}/confirm",
            {"payment_method": payment_method_id},
            "confirm_payment_intent",
            idempotency_key,
        )
        return _parse_intent(payload)

    @log_async_operation("stripe.capture_payment_intent")
    async def capture_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
    ) -> ProviderIntent:
        data: dict[str, Any] = {}
        if amount_cents is not None:
            data["amount_to_capture"] = amount_cents
        payload = await self._post(
            f"/payment_intents/{intent_id}/capture", data, "capture_payment_intent", idempotency_key
        )
        return _parse_intent(payload)

    @log_async_operation("stripe.cancel_payment_intent")
    async def cancel_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        reason: str = "requested_by_customer",
    ) -> ProviderIntent:
        payload = await self._post(
            f"/payment_intents/{intent_id}/cancel",
            {"cancellation_reason": reason},
            "cancel_payment_intent",
            idempotency_key,
        )
        return _parse_intent(payload)

    # ── money movement ──

    @log_async_operation("stripe.create_refund")
    async def create_refund(
        self,
        intent_id: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> ProviderRefund:
        payload = await self._post(
            "/refunds",
            {"payment_intent": intent_id, "amount": amount_cents},
            "create_refund",
            idempotency_key,
        )
        return ProviderRefund(
            id=payload["id"],
            amount_cents=int(payload.get("amount") or amount_cents),
            status=payload.get("status", ""),
        )

    @log_async_operation("stripe.create_transfer")
    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> ProviderTransfer:
        data: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination_account_id,
            **_flatten_metadata(metadata),
        }
        if transfer_group:
            data["transfer_group"] = transfer_group
        payload = await self._post("/transfers", data, "create_transfer", idempotency_key)
        return ProviderTransfer(
            id=payload["id"],
            amount_cents=int(payload.get("amount") or amount_cents),
            destination=payload.get("destination", destination_account_id),
        )

    async def retrieve_account(self, account_id: str) -> ProviderAccount:
        payload = await self._get(f"/accounts/{account_id}", "retrieve_account")
        return ProviderAccount(
            id=payload["id"],
            charges_enabled=bool(payload.get("charges_enabled")),
            payouts_enabled=bool(payload.get("payouts_enabled")),
            details_submitted=bool(payload.get("details_submitted")),
        )
