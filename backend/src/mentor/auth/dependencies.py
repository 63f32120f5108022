from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mentor.db.models import User
from mentor.db.session import get_db_session


DEV_USER_ID = "dev-user-001"
DEV_USER_EMAIL = "dev@mentor.local"


async def get_current_user(db: AsyncSession = Depends(get_db_session)) -> User:
    """Stubbed auth: returns a dev learner, creating one if it doesn't exist."""
    result = await db.execute(select(User).where(User.id == DEV_USER_ID))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(id=DEV_USER_ID, email=DEV_USER_EMAIL)
        db.add(user)
        await db.flush()
    return user
