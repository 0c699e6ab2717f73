"""
Verification code routes: viewing, issuing and validating custody codes.

A code value is only ever returned to its owner. Validation responses carry
the remaining attempts, never the expected value.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.api.routes.serializers import VerificationCodeResponse, ensure_success, transition_payload
from app.core.config import settings
from app.core.validation import VerificationCodeValidator
from app.db.database import get_db
from app.db.models.user import User
from app.db.models.verification_code import CodeType, RegenerationReason
from app.domain.services.booking_service import BookingService

router = APIRouter()


class CodeSubmission(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        is_valid, error = VerificationCodeValidator.validate(v, settings.VERIFICATION_CODE_LENGTH)
        if not is_valid:
            raise ValueError(error)
        return VerificationCodeValidator.normalize(v)


class RegenerateRequest(BaseModel):
    reason: RegenerationReason = RegenerationReason.LOST


def _code_payload(result) -> dict:
    ensure_success(result)
    return {
        "success": True,
        "message": result.message,
        "code": VerificationCodeResponse.model_validate(result.code).model_dump(),
    }


@router.get(
    "/{booking_id}/codes/{code_type}",
    summary="Show my active code (pickup code: sender, delivery code: traveler)",
    tags=["Verification Codes"],
)
async def get_code(
    booking_id: int,
    code_type: CodeType,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).get_code(booking_id, user, code_type)
    return _code_payload(result)


@router.post(
    "/{booking_id}/codes/{code_type}/generate",
    summary="Issue a code when none is active",
    tags=["Verification Codes"],
)
async def generate_code(
    booking_id: int,
    code_type: CodeType,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).generate_code(booking_id, user, code_type)
    return _code_payload(result)


@router.post(
    "/{booking_id}/codes/{code_type}/regenerate",
    summary="Replace a lost, expired or exhausted code",
    tags=["Verification Codes"],
)
async def regenerate_code(
    booking_id: int,
    code_type: CodeType,
    data: RegenerateRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    reason = data.reason if data else RegenerationReason.LOST
    result = await BookingService(db).regenerate_code(booking_id, user, code_type, reason=reason)
    return _code_payload(result)


@router.post(
    "/{booking_id}/pickup/validate",
    summary="Traveler enters the sender's pickup code",
    tags=["Verification Codes"],
)
async def validate_pickup(
    booking_id: int,
    data: CodeSubmission,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).validate_pickup(booking_id, user, data.code)
    return transition_payload(result)


@router.post(
    "/{booking_id}/delivery/validate",
    summary="Sender enters the traveler's delivery code",
    description="Marks the parcel delivered and pays the traveler out of escrow.",
    tags=["Verification Codes"],
)
async def validate_delivery(
    booking_id: int,
    data: CodeSubmission,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await BookingService(db).validate_delivery(booking_id, user, data.code)
    return transition_payload(result)
