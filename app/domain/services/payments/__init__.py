"""
Payment provider abstraction layer.

Lets the booking flow switch providers without touching business logic.
"""
from app.domain.services.payments.base_provider import (
    BasePaymentProvider,
    ProviderAccount,
    ProviderIntent,
    ProviderRefund,
    ProviderTransfer,
)
from app.domain.services.payments.provider_factory import (
    get_payment_provider,
    reset_payment_provider,
    set_payment_provider,
)

__all__ = [
    "BasePaymentProvider",
    "ProviderAccount",
    "ProviderIntent",
    "ProviderRefund",
    "ProviderTransfer",
    "get_payment_provider",
    "reset_payment_provider",
    "set_payment_provider",
]
