"""
Provider factory - builds the payment provider selected by PAYMENT_PROVIDER.

Tests swap the provider with ``set_payment_provider`` and restore it with
``reset_payment_provider``.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_payment_provider_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.payments.base_provider import BasePaymentProvider

logger = get_logger(__name__)

_provider: BasePaymentProvider | None = None
_lock = threading.Lock()


def _create_provider(provider_type: str) -> BasePaymentProvider:
    if provider_type == "stripe":
        from app.domain.services.payments.stripe_provider import StripePaymentProvider

        return StripePaymentProvider(circuit_breaker=get_payment_provider_circuit_breaker())

    raise ValueError(f"Unknown payment provider: {provider_type}")


def get_payment_provider() -> BasePaymentProvider:
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = _create_provider(settings.PAYMENT_PROVIDER)
                logger.info(
                    "Payment provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def set_payment_provider(provider: BasePaymentProvider) -> None:
    """Install a specific provider instance (tests, local sandboxes)."""
    global _provider
    with _lock:
        _provider = provider


def reset_payment_provider() -> None:
    """Drop the cached provider - for tests only."""
    global _provider
    with _lock:
        _provider = None
