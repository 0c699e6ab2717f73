"""
Domain Services
"""
from app.domain.services.booking_service import BookingService, TransitionResult
from app.domain.services.cancellation_policy import CancellationPolicy, CancellationService
from app.domain.services.escrow_service import EscrowService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_account_service import PaymentAccountService
from app.domain.services.payment_authorization_service import PaymentAuthorizationService
from app.domain.services.payment_reconciliation_service import PaymentReconciliationService
from app.domain.services.verification_code_service import VerificationCodeService

__all__ = [
    "BookingService",
    "TransitionResult",
    "CancellationPolicy",
    "CancellationService",
    "EscrowService",
    "OutboxService",
    "PaymentAccountService",
    "PaymentAuthorizationService",
    "PaymentReconciliationService",
    "VerificationCodeService",
]
