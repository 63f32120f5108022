from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from mentor.config import settings
from mentor.db.session import get_db_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    await db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "model": settings.default_model,
        "generation_configured": bool(settings.anthropic_api_key),
    }
