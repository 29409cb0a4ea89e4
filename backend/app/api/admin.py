from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.permissions import Capability, Principal
from app.core.security import require_capability
from app.services import JobQueue
from app.schemas.video import DeadLetterResponse

router = APIRouter()


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_capability(Capability.queue_inspect)),
    db: AsyncSession = Depends(get_db),
):
    """Jobs that exhausted their retries, newest first."""
    return await JobQueue().list_dead_letters(db, limit=limit)
