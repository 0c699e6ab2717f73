"""
Escrow Service - local ledger of captured money withheld from the traveler

Independent of the provider's own ledger. Every mutation locks the escrow row
(SELECT ... FOR UPDATE), checks the status and writes an audit transaction.
The unique (escrow_account_id, type) constraint on transactions rejects a
second release or refund even if two callers slip past the status check.

Does not commit; the booking flow owns the transaction.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.booking import Booking
from app.db.models.escrow_account import EscrowAccount, EscrowStatus, ReleaseReason
from app.db.models.transaction import Transaction, TransactionType
from app.domain.services.pricing import to_money

logger = get_logger(__name__)


@dataclass
class EscrowResult:
    success: bool
    escrow: Optional[EscrowAccount] = None
    reason: Optional[ReasonCode] = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class EscrowService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _lock(self, escrow_id: int) -> Optional[EscrowAccount]:
        result = await self.db.execute(
            select(EscrowAccount).where(EscrowAccount.id == escrow_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_for_booking(self, booking_id: int) -> Optional[EscrowAccount]:
        result = await self.db.execute(
            select(EscrowAccount).where(EscrowAccount.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def get_transactions(self, escrow_id: int) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.escrow_account_id == escrow_id)
            .order_by(Transaction.id)
        )
        return list(result.scalars().all())

    def _audit(self, escrow: EscrowAccount, tx_type: TransactionType, description: str) -> None:
        self.db.add(Transaction(
            booking_id=escrow.booking_id,
            escrow_account_id=escrow.id,
            type=tx_type,
            amount=escrow.amount_held,
            currency=escrow.currency,
            description=description,
        ))

    async def hold(
        self,
        booking: Booking,
        transaction: Transaction,
        amount: Decimal,
        reason: str = "payment_captured",
    ) -> EscrowResult:
        """
        Create the holding record for a capture.

        Idempotent per transaction: holding twice for the same capture returns
        the existing account. A different capture for a booking that already
        has escrow is an integrity error.
        """
        if transaction.id is None:
            await self.db.flush()

        existing = await self.db.execute(
            select(EscrowAccount).where(
                (EscrowAccount.transaction_id == transaction.id)
                | (EscrowAccount.booking_id == booking.id)
            )
        )
        escrow = existing.scalars().first()
        if escrow is not None:
            if escrow.transaction_id == transaction.id:
                return EscrowResult(True, escrow=escrow, message="Escrow already holding")
            logger.error(
                "Escrow already exists for booking",
                extra_data={"booking_id": booking.id, "escrow_id": escrow.id},
            )
            return EscrowResult(
                False,
                escrow=escrow,
                reason=ReasonCode.ESCROW_ALREADY_EXISTS,
                message="This booking already has an escrow account",
            )

        escrow = EscrowAccount(
            booking_id=booking.id,
            transaction_id=transaction.id,
            amount_held=to_money(amount),
            amount_released=Decimal("0.00"),
            currency=transaction.currency,
            status=EscrowStatus.HOLDING,
            held_reason=reason,
            held_at=datetime.utcnow(),
        )
        self.db.add(escrow)
        await self.db.flush()
        transaction.escrow_account_id = escrow.id
        self._audit(escrow, TransactionType.HOLD, f"Held for booking #{booking.id}")
        await self.db.flush()

        logger.info(
            "Escrow holding",
            extra_data={"booking_id": booking.id, "escrow_id": escrow.id, "amount": str(escrow.amount_held)},
        )
        return EscrowResult(True, escrow=escrow, message="Funds held in escrow")

    async def _transition(
        self,
        escrow_id: int,
        action: str,
    ) -> tuple[Optional[EscrowAccount], Optional[EscrowResult]]:
        escrow = await self._lock(escrow_id)
        if escrow is None:
            return None, EscrowResult(False, reason=ReasonCode.ESCROW_NOT_FOUND, message="Escrow not found")
        if escrow.status != EscrowStatus.HOLDING:
            logger.warning(
                f"Escrow {action} rejected",
                extra_data={"escrow_id": escrow.id, "status": escrow.status.value},
            )
            return escrow, EscrowResult(
                False,
                escrow=escrow,
                reason=ReasonCode.ESCROW_NOT_HOLDING,
                message=f"Escrow is {escrow.status.value}, cannot {action}",
            )
        return escrow, None

    async def release(
        self,
        escrow_id: int,
        reason: ReleaseReason,
        notes: Optional[str] = None,
    ) -> EscrowResult:
        """holding -> fully_released; the full held amount goes to the traveler"""
        escrow, error = await self._transition(escrow_id, "release")
        if error:
            return error

        escrow.status = EscrowStatus.FULLY_RELEASED
        escrow.amount_released = escrow.amount_held
        escrow.release_reason = reason
        escrow.release_notes = notes
        escrow.released_at = datetime.utcnow()
        self._audit(escrow, TransactionType.RELEASE, notes or reason.value)
        await self.db.flush()

        logger.info(
            "Escrow released",
            extra_data={"escrow_id": escrow.id, "booking_id": escrow.booking_id, "reason": reason.value},
        )
        return EscrowResult(True, escrow=escrow, message="Escrow released")

    async def refund(self, escrow_id: int, notes: Optional[str] = None) -> EscrowResult:
        """holding -> refunded; the held amount goes back to the sender"""
        escrow, error = await self._transition(escrow_id, "refund")
        if error:
            return error

        escrow.status = EscrowStatus.REFUNDED
        escrow.release_notes = notes
        escrow.refunded_at = datetime.utcnow()
        self._audit(escrow, TransactionType.REFUND, notes or "refund")
        await self.db.flush()

        logger.info("Escrow refunded", extra_data={"escrow_id": escrow.id, "booking_id": escrow.booking_id})
        return EscrowResult(True, escrow=escrow, message="Escrow refunded")

    async def mark_disputed(self, escrow_id: int, notes: Optional[str] = None) -> EscrowResult:
        escrow, error = await self._transition(escrow_id, "dispute")
        if error:
            return error

        escrow.status = EscrowStatus.DISPUTED
        escrow.release_notes = notes
        escrow.disputed_at = datetime.utcnow()
        await self.db.flush()

        logger.warning("Escrow disputed", extra_data={"escrow_id": escrow.id, "booking_id": escrow.booking_id})
        return EscrowResult(True, escrow=escrow, message="Escrow frozen pending dispute")
