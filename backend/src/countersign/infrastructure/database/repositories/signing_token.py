"""Signing token store.

Every state change on a token is a single conditional UPDATE so concurrent
requests serialize on the row instead of on application locks.
"""

from datetime import datetime
from typing import Any, cast
from uuid import UUID

from sqlalchemy import CursorResult, delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from countersign.infrastructure.database.models.deal import SignerRole
from countersign.infrastructure.database.models.signing import (
    SigningToken,
    TokenInvalidationReason,
)
from countersign.infrastructure.database.repositories.base import (
    BaseRepository,
    is_contention_error,
)
from countersign.shared.exceptions import StorageConflictError


def _rowcount(result: Any) -> int:
    return cast(CursorResult[Any], result).rowcount


class SigningTokenRepository(BaseRepository[SigningToken]):
    """Repository for SigningToken entities."""

    model_class = SigningToken

    async def get_by_hash(self, token_hash: str) -> SigningToken | None:
        """Look up a token by its hash, always reading the committed row state."""
        query = (
            select(SigningToken)
            .where(SigningToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_valid_for(self, deal_id: UUID, role: SignerRole) -> SigningToken | None:
        query = select(SigningToken).where(
            SigningToken.deal_id == deal_id,
            SigningToken.role == role,
            SigningToken.is_valid.is_(True),
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def add(self, token: SigningToken) -> SigningToken:
        """Insert a token.

        Raises:
            StorageConflictError: A concurrent issuance won the valid-token slot.
        """
        try:
            async with self.session.begin_nested():
                self.session.add(token)
                await self.session.flush()
        except IntegrityError as exc:
            raise StorageConflictError(
                "Concurrent token issuance for the same deal and role",
                details={"deal_id": str(token.deal_id), "role": SignerRole(token.role).value},
            ) from exc
        return token

    async def invalidate_valid(
        self,
        deal_id: UUID,
        role: SignerRole,
        reason: TokenInvalidationReason,
    ) -> int:
        """Invalidate the valid token(s) for a deal and role."""
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.deal_id == deal_id,
                SigningToken.role == role,
                SigningToken.is_valid.is_(True),
            )
            .values(is_valid=False, invalidated_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result)

    async def invalidate_all_for_deal(
        self,
        deal_id: UUID,
        reason: TokenInvalidationReason,
    ) -> int:
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.deal_id == deal_id,
                SigningToken.is_valid.is_(True),
            )
            .values(is_valid=False, invalidated_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result)

    async def mark_expired(self, token_id: UUID) -> bool:
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.id == token_id,
                SigningToken.is_valid.is_(True),
                SigningToken.consumed_at.is_(None),
            )
            .values(is_valid=False, invalidated_reason=TokenInvalidationReason.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    async def set_otp(self, token_id: UUID, otp_hash: str, expires_at: datetime) -> bool:
        """Store a new one-time code, replacing any earlier one.

        Resets the attempt counter and any earlier verification. Only a
        valid, unconsumed token accepts a code.
        """
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.id == token_id,
                SigningToken.is_valid.is_(True),
                SigningToken.consumed_at.is_(None),
            )
            .values(
                otp_hash=otp_hash,
                otp_expires_at=expires_at,
                otp_attempts=0,
                otp_verified_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    async def record_otp_failure(self, token_id: UUID, max_attempts: int) -> bool:
        """Count one wrong code. False once the attempt budget is spent."""
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.id == token_id,
                SigningToken.otp_attempts < max_attempts,
            )
            .values(otp_attempts=SigningToken.otp_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    async def mark_otp_verified(self, token_id: UUID, now: datetime) -> bool:
        result = await self.session.execute(
            update(SigningToken)
            .where(
                SigningToken.id == token_id,
                SigningToken.is_valid.is_(True),
                SigningToken.otp_hash.is_not(None),
                SigningToken.otp_verified_at.is_(None),
            )
            .values(otp_verified_at=now)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result) == 1

    async def consume(
        self,
        token_id: UUID,
        now: datetime,
        *,
        require_otp: bool = False,
    ) -> bool:
        """Atomically mark a token consumed.

        Returns True for exactly one caller per token. The check
        (valid, unconsumed, unexpired and, when required, one-time code
        verified) and the write happen in one statement.

        Raises:
            StorageConflictError: The database reported lock contention.
        """
        conditions = [
            SigningToken.id == token_id,
            SigningToken.is_valid.is_(True),
            SigningToken.consumed_at.is_(None),
            SigningToken.expires_at > now,
        ]
        if require_otp:
            conditions.append(SigningToken.otp_verified_at.is_not(None))
        try:
            result = await self.session.execute(
                update(SigningToken)
                .where(*conditions)
                .values(
                    consumed_at=now,
                    is_valid=False,
                    invalidated_reason=TokenInvalidationReason.CONSUMED,
                )
                .execution_options(synchronize_session=False)
            )
        except DBAPIError as exc:
            if is_contention_error(exc):
                raise StorageConflictError(
                    "Signing token is being redeemed concurrently",
                    details={"token_id": str(token_id)},
                ) from exc
            raise
        return _rowcount(result) == 1

    async def purge_expired(self, before: datetime) -> int:
        """Delete token rows that expired before the given instant."""
        result = await self.session.execute(
            delete(SigningToken)
            .where(SigningToken.expires_at < before)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(result)
