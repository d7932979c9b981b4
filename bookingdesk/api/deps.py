"""FastAPI dependencies."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookingdesk.core.store import SchedulingStore
from bookingdesk.infra.database import get_db
from bookingdesk.infra.store import SqlSchedulingStore


async def get_store(db: AsyncSession = Depends(get_db)) -> SchedulingStore:
    """Scheduling store bound to the request's database session."""
    return SqlSchedulingStore(db)
