"""Signature record repository."""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from countersign.infrastructure.database.models.deal import SignerRole
from countersign.infrastructure.database.models.signing import SignatureRecord
from countersign.infrastructure.database.repositories.base import BaseRepository
from countersign.shared.exceptions import AlreadySignedError


class SignatureRepository(BaseRepository[SignatureRecord]):
    """Repository for SignatureRecord entities.

    Records are insert-only; there is no update path.
    """

    model_class = SignatureRecord

    async def get_signed(
        self,
        deal_id: UUID,
        role: SignerRole,
        contract_version: str,
    ) -> SignatureRecord | None:
        query = select(SignatureRecord).where(
            SignatureRecord.deal_id == deal_id,
            SignatureRecord.role == role,
            SignatureRecord.contract_version == contract_version,
            SignatureRecord.signed.is_(True),
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_version(
        self,
        deal_id: UUID,
        contract_version: str,
    ) -> Sequence[SignatureRecord]:
        query = select(SignatureRecord).where(
            SignatureRecord.deal_id == deal_id,
            SignatureRecord.contract_version == contract_version,
            SignatureRecord.signed.is_(True),
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def list_for_deal(self, deal_id: UUID) -> Sequence[SignatureRecord]:
        query = (
            select(SignatureRecord)
            .where(SignatureRecord.deal_id == deal_id)
            .order_by(SignatureRecord.signed_at)
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def add_signed(self, record: SignatureRecord) -> SignatureRecord:
        """Insert a signed record inside its own savepoint.

        Raises:
            AlreadySignedError: The (deal, role, version) slot is already taken.
                The enclosing transaction stays usable.
        """
        try:
            async with self.session.begin_nested():
                self.session.add(record)
                await self.session.flush()
        except IntegrityError as exc:
            raise AlreadySignedError(
                deal_id=str(record.deal_id),
                role=SignerRole(record.role).value,
                contract_version=record.contract_version,
            ) from exc
        return record
