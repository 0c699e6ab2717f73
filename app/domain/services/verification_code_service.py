"""
Verification Code Service - single-use pickup and delivery codes

Lookup (``verify``/``check``) is separate from consumption (``mark_used``):
the booking flow consumes a code only after the transition it gates has been
applied, so a failure halfway never burns the code.

At most one active code exists per (booking, type). Generating a new one
supersedes the previous code first.
"""
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ReasonCode
from app.core.logging import get_logger
from app.db.models.verification_code import (
    CodeStatus,
    CodeType,
    RegenerationReason,
    VerificationCode,
)

logger = get_logger(__name__)

_MAX_GENERATION_TRIES = 20


@dataclass
class CodeCheck:
    """Outcome of one validation attempt"""
    success: bool
    code: Optional[VerificationCode] = None
    reason: Optional[ReasonCode] = None
    message: str = ""
    attempts_remaining: int = 0

    @property
    def details(self) -> dict:
        return {"attempts_remaining": self.attempts_remaining}


class VerificationCodeService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _random_code(self) -> str:
        length = settings.VERIFICATION_CODE_LENGTH
        return str(secrets.randbelow(10 ** length)).zfill(length)

    async def _find_active(self, booking_id: int, code_type: CodeType, *, lock: bool = False):
        query = select(VerificationCode).where(
            VerificationCode.booking_id == booking_id,
            VerificationCode.code_type == code_type,
            VerificationCode.status == CodeStatus.ACTIVE,
        ).order_by(VerificationCode.id.desc())
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalars().first()

    async def _is_in_use(self, value: str, code_type: CodeType, now: datetime) -> bool:
        result = await self.db.execute(
            select(VerificationCode.id).where(
                VerificationCode.code == value,
                VerificationCode.code_type == code_type,
                VerificationCode.status == CodeStatus.ACTIVE,
                VerificationCode.expires_at > now,
            )
        )
        return result.first() is not None

    async def generate(
        self,
        user_id: int,
        code_type: CodeType,
        booking_id: Optional[int],
        reason: Optional[RegenerationReason] = None,
    ) -> VerificationCode:
        """
        Issue a new code, superseding any active code for the same booking and type.

        The value is unique among currently active codes of the same type.
        """
        now = datetime.utcnow()

        if booking_id is not None:
            await self.db.execute(
                update(VerificationCode)
                .where(
                    VerificationCode.booking_id == booking_id,
                    VerificationCode.code_type == code_type,
                    VerificationCode.status == CodeStatus.ACTIVE,
                )
                .values(status=CodeStatus.SUPERSEDED, superseded_at=now)
                .execution_options(synchronize_session="fetch")
            )

        for _ in range(_MAX_GENERATION_TRIES):
            value = self._random_code()
            if not await self._is_in_use(value, code_type, now):
                break
        else:
            raise RuntimeError("Could not generate a unique verification code")

        code = VerificationCode(
            user_id=user_id,
            booking_id=booking_id,
            code=value,
            code_type=code_type,
            status=CodeStatus.ACTIVE,
            attempts=0,
            max_attempts=settings.VERIFICATION_CODE_MAX_ATTEMPTS,
            expires_at=now + timedelta(days=settings.VERIFICATION_CODE_TTL_DAYS),
            regeneration_reason=reason,
            created_at=now,
        )
        self.db.add(code)
        await self.db.flush()

        logger.info(
            "Verification code issued",
            extra_data={
                "booking_id": booking_id,
                "code_type": code_type.value,
                "code_id": code.id,
                "regeneration_reason": reason.value if reason else None,
            },
        )
        return code

    async def verify(
        self,
        code: str,
        code_type: CodeType,
        booking_id: int,
    ) -> Optional[VerificationCode]:
        """Find an active, unexpired, not exhausted code matching all three keys.

        Pure lookup: neither counts an attempt nor marks the code used.
        """
        active = await self._find_active(booking_id, code_type)
        if active is None or active.is_expired() or active.is_exhausted:
            return None
        if not hmac.compare_digest(active.code, str(code)):
            return None
        return active

    async def check(
        self,
        booking_id: int,
        code_type: CodeType,
        submitted: str,
        now: Optional[datetime] = None,
    ) -> CodeCheck:
        """Attempt-limited validation.

        A wrong submission against an existing code counts an attempt; once
        attempts reach the maximum the code stays unusable until regenerated,
        even for the correct value.
        """
        now = now or datetime.utcnow()
        code = await self._find_active(booking_id, code_type, lock=True)

        if code is None:
            return CodeCheck(False, reason=ReasonCode.CODE_NOT_FOUND, message="No active code for this booking")

        if code.is_expired(now):
            code.status = CodeStatus.EXPIRED
            return CodeCheck(
                False,
                code=code,
                reason=ReasonCode.CODE_EXPIRED,
                message="The code has expired, request a new one",
            )

        if code.is_exhausted:
            return CodeCheck(
                False,
                code=code,
                reason=ReasonCode.CODE_ATTEMPTS_EXHAUSTED,
                message="Too many wrong attempts, request a new code",
            )

        if not hmac.compare_digest(code.code, str(submitted).strip()):
            code.attempts += 1
            logger.warning(
                "Wrong verification code submitted",
                extra_data={
                    "booking_id": booking_id,
                    "code_type": code_type.value,
                    "attempts": code.attempts,
                    "max_attempts": code.max_attempts,
                },
            )
            return CodeCheck(
                False,
                code=code,
                reason=ReasonCode.CODE_INVALID,
                message="Wrong code",
                attempts_remaining=code.attempts_remaining,
            )

        return CodeCheck(True, code=code, message="Code accepted", attempts_remaining=code.attempts_remaining)

    async def mark_used(self, code: VerificationCode) -> None:
        code.status = CodeStatus.USED
        code.used_at = datetime.utcnow()

    async def get_active(self, booking_id: int, code_type: CodeType) -> Optional[VerificationCode]:
        code = await self._find_active(booking_id, code_type)
        if code is None or code.is_expired():
            return None
        return code

    async def regenerate(
        self,
        booking_id: int,
        code_type: CodeType,
        user_id: int,
        reason: RegenerationReason,
    ) -> VerificationCode:
        """Replace the current code (exhausted, expired or lost) with a fresh one"""
        return await self.generate(user_id, code_type, booking_id, reason=reason)

    async def invalidate_for_booking(self, booking_id: int) -> int:
        """Supersede every active code of a booking that left the custody flow"""
        result = await self.db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.booking_id == booking_id,
                VerificationCode.status == CodeStatus.ACTIVE,
            )
            .values(status=CodeStatus.SUPERSEDED, superseded_at=datetime.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Flip every active code past its expiry to expired; returns the count"""
        now = now or datetime.utcnow()
        result = await self.db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.status == CodeStatus.ACTIVE,
                VerificationCode.expires_at <= now,
            )
            .values(status=CodeStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
