"""Deal and deal event repositories."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, cast
from uuid import UUID

from sqlalchemy import CursorResult, select, update

from countersign.infrastructure.database.models.deal import (
    Deal,
    DealEvent,
    DealEventType,
    DealStage,
)
from countersign.infrastructure.database.repositories.base import BaseRepository


class DealRepository(BaseRepository[Deal]):
    """Repository for Deal entities."""

    model_class = Deal

    async def get_by_id(self, id: UUID) -> Deal | None:
        """Get a deal, refreshing any stale copy held by the session."""
        query = select(Deal).where(Deal.id == id).execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_esign_document_id(self, document_id: str) -> Deal | None:
        query = (
            select(Deal)
            .where(Deal.esign_document_id == document_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def compare_and_set_stage(
        self,
        deal_id: UUID,
        expected: DealStage,
        new_stage: DealStage,
        changed_at: datetime,
        **values: Any,
    ) -> bool:
        """Move a deal from `expected` to `new_stage` in one statement.

        Returns False when the stored stage no longer equals `expected`.
        Extra column values are written in the same statement.
        """
        result = await self.session.execute(
            update(Deal)
            .where(Deal.id == deal_id, Deal.stage == expected)
            .values(stage=new_stage, stage_changed_at=changed_at, **values)
            .execution_options(synchronize_session=False)
        )
        return cast(CursorResult[Any], result).rowcount == 1

    async def list_awaiting_provider(self, limit: int = 100) -> Sequence[Deal]:
        """Deals waiting on signatures that have a provider session attached."""
        query = (
            select(Deal)
            .where(
                Deal.stage == DealStage.CONTRACT_READY,
                Deal.esign_document_id.is_not(None),
            )
            .order_by(Deal.stage_changed_at)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return result.scalars().all()


class DealEventRepository(BaseRepository[DealEvent]):
    """Append-only audit events."""

    model_class = DealEvent

    async def record(
        self,
        deal_id: UUID,
        event: DealEventType,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> DealEvent:
        entry = DealEvent(
            deal_id=deal_id,
            event=event,
            event_metadata=metadata or {},
            occurred_at=occurred_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_deal(self, deal_id: UUID) -> Sequence[DealEvent]:
        query = (
            select(DealEvent)
            .where(DealEvent.deal_id == deal_id)
            .order_by(DealEvent.occurred_at)
        )
        result = await self.session.execute(query)
        return result.scalars().all()
