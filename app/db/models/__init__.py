"""
Database Models
"""
from app.db.models.user import User
from app.db.models.user_payment_account import UserPaymentAccount
from app.db.models.trip import Trip
from app.db.models.booking import Booking
from app.db.models.payment_authorization import PaymentAuthorization
from app.db.models.verification_code import VerificationCode
from app.db.models.transaction import Transaction
from app.db.models.escrow_account import EscrowAccount
from app.db.models.cancellation_attempt import CancellationAttempt
from app.db.models.outbox_message import OutboxMessage
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "UserPaymentAccount",
    "Trip",
    "Booking",
    "PaymentAuthorization",
    "VerificationCode",
    "Transaction",
    "EscrowAccount",
    "CancellationAttempt",
    "OutboxMessage",
    "WebhookEvent",
]
