"""
Cancellation history of the calling user
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.cancellation_policy import CancellationService

router = APIRouter()


@router.get(
    "/history",
    summary="My cancellation attempts and how many count against the limit",
    tags=["Cancellations"],
)
async def cancellation_history(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    history = await CancellationService(db).history(user.id, limit=limit)
    return {"success": True, **history.to_dict()}
