"""
Payment provider interface.

Business services depend on this interface only. A provider implementation
owns the HTTP transport, the circuit breaker and the mapping of transport
errors onto the three outcomes the rest of the code understands:

- a normal return value: the provider applied the request
- ``PaymentProviderError`` / ``PaymentProviderUnavailable``: definitely not applied
- ``PaymentOutcomeUnknown``: may have been applied, must be reconciled

All amounts cross this interface as integer minor units (cents).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ProviderIntent:
    """A payment intent as the provider reports it"""
    id: str
    status: str
    amount_cents: int
    currency: str
    amount_capturable_cents: int = 0
    amount_received_cents: int = 0
    client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_capturable(self) -> bool:
        return self.status == "requires_capture"

    @property
    def is_canceled(self) -> bool:
        return self.status == "canceled"

    @property
    def is_succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class ProviderRefund:
    id: str
    amount_cents: int
    status: str


@dataclass
class ProviderTransfer:
    id: str
    amount_cents: int
    destination: str


@dataclass
class ProviderAccount:
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class BasePaymentProvider(ABC):
    """
    Uniform interface to a card-payment provider with connected payout accounts.

    Mutating calls take an ``idempotency_key``. Replaying a call with the same
    key must return the original result instead of charging twice.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short provider name for logs and audit rows"""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        transfer_group: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> ProviderIntent:
        """Place a manual-capture authorization of ``amount_cents``."""

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> ProviderIntent:
        """Read the current provider-side state of an intent."""

    @abstractmethod
    async def confirm_payment_intent(
        self,
        intent_id: str,
        payment_method_id: str,
        idempotency_key: str,
    ) -> ProviderIntent:
        """Attach a payment method and confirm; on success the hold is placed."""

    @abstractmethod
    async def capture_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
    ) -> ProviderIntent:
        """
        Capture a confirmed intent.

        Args:
            intent_id: provider intent id
            idempotency_key: key for replay protection
            amount_cents: capture only part of the hold (rest is released)
        """

    @abstractmethod
    async def cancel_payment_intent(
        self,
        intent_id: str,
        idempotency_key: str,
        reason: str = "requested_by_customer",
    ) -> ProviderIntent:
        """Release the hold without charging."""

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> ProviderRefund:
        """Refund part or all of a captured intent."""

    @abstractmethod
    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> ProviderTransfer:
        """Move funds from the platform balance to a connected account."""

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> ProviderAccount:
        """Read onboarding flags of a connected account."""
