"""Base repository and storage error translation."""

from typing import Any, cast
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

# serialization_failure, deadlock_detected, lock_not_available
_CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}


def is_contention_error(exc: DBAPIError) -> bool:
    """Tell lock/serialization contention apart from genuine constraint failures."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    # SQLite reports writer contention as an OperationalError
    return "database is locked" in str(orig).lower()


class BaseRepository[T]:
    """Base repository over a request-scoped session."""

    model_class: type[T]

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, id: UUID) -> T | None:
        """Get entity by ID."""
        model = cast(Any, self.model_class)
        result = await self.session.execute(select(model).where(model.id == id))
        return result.scalar_one_or_none()

    async def create(self, entity: T) -> T:
        """Create a new entity."""
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity
