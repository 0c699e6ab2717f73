"""
Payment Account Service - travelers' connected payout accounts

Rows are created when a traveler links an account and then kept in sync by
the provider's ``account.updated`` webhook.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.user_payment_account import UserPaymentAccount
from app.domain.services.payments import ProviderAccount

logger = get_logger(__name__)


class PaymentAccountService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_user(self, user_id: int) -> Optional[UserPaymentAccount]:
        result = await self.db.execute(
            select(UserPaymentAccount).where(UserPaymentAccount.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_id(self, provider_account_id: str) -> Optional[UserPaymentAccount]:
        result = await self.db.execute(
            select(UserPaymentAccount).where(UserPaymentAccount.provider_account_id == provider_account_id)
        )
        return result.scalar_one_or_none()

    async def link(self, user_id: int, provider_account_id: str) -> UserPaymentAccount:
        """Attach a connected account to a user (capabilities arrive by webhook)"""
        account = await self.get_for_user(user_id)
        if account is None:
            account = UserPaymentAccount(user_id=user_id, provider_account_id=provider_account_id)
            self.db.add(account)
        else:
            account.provider_account_id = provider_account_id
            account.charges_enabled = False
            account.payouts_enabled = False
            account.details_submitted = False
        await self.db.commit()
        logger.info("Payout account linked", extra_data={"user_id": user_id, "account_id": provider_account_id})
        return account

    async def sync(self, provider_account: ProviderAccount) -> Optional[UserPaymentAccount]:
        """Mirror the provider's capability flags; None for accounts we never linked"""
        account = await self.get_by_provider_id(provider_account.id)
        if account is None:
            logger.warning(
                "account.updated for unknown account",
                extra_data={"account_id": provider_account.id},
            )
            return None

        account.charges_enabled = provider_account.charges_enabled
        account.payouts_enabled = provider_account.payouts_enabled
        account.details_submitted = provider_account.details_submitted
        await self.db.commit()

        logger.info(
            "Payout account synced",
            extra_data={
                "user_id": account.user_id,
                "charges_enabled": account.charges_enabled,
                "payouts_enabled": account.payouts_enabled,
            },
        )
        return account

    @staticmethod
    def status_reason(account: Optional[UserPaymentAccount]) -> Optional[ReasonCode]:
        """Why a traveler cannot receive payouts yet (None when they can)"""
        if account is None:
            return ReasonCode.STRIPE_ACCOUNT_REQUIRED
        if not account.can_accept_payments:
            return ReasonCode.STRIPE_ACCOUNT_INCOMPLETE
        return None
