"""Ports for signing workflow dependencies."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, AsyncContextManager, Protocol
from uuid import UUID

from countersign.infrastructure.database.models.deal import (
    Deal,
    DealEvent,
    DealEventType,
    DealStage,
    SignerRole,
)
from countersign.infrastructure.database.models.signing import (
    SignatureRecord,
    SigningToken,
    TokenInvalidationReason,
)


class SigningTokenRepositoryPort(Protocol):
    """Token store interface."""

    async def get_by_hash(self, token_hash: str) -> SigningToken | None:
        """Find a token by the hash of its value."""

    async def get_valid_for(self, deal_id: UUID, role: SignerRole) -> SigningToken | None:
        """Get the currently valid token for a deal and role, if any."""

    async def add(self, token: SigningToken) -> SigningToken:
        """Persist a new token."""

    async def invalidate_valid(
        self,
        deal_id: UUID,
        role: SignerRole,
        reason: TokenInvalidationReason,
    ) -> int:
        """Invalidate valid tokens for a deal and role."""

    async def invalidate_all_for_deal(
        self,
        deal_id: UUID,
        reason: TokenInvalidationReason,
    ) -> int:
        """Invalidate every valid token of a deal."""

    async def mark_expired(self, token_id: UUID) -> bool:
        """Invalidate a token observed past its expiry."""

    async def set_otp(self, token_id: UUID, otp_hash: str, expires_at: datetime) -> bool:
        """Store a fresh one-time code and reset its attempts."""

    async def record_otp_failure(self, token_id: UUID, max_attempts: int) -> bool:
        """Count a wrong code; False once no attempts are left."""

    async def mark_otp_verified(self, token_id: UUID, now: datetime) -> bool:
        """Record a successful one-time code check."""

    async def consume(
        self,
        token_id: UUID,
        now: datetime,
        *,
        require_otp: bool = False,
    ) -> bool:
        """Atomically consume a token; True for exactly one caller."""

    async def purge_expired(self, before: datetime) -> int:
        """Delete tokens that expired before the given instant."""


class SignatureRepositoryPort(Protocol):
    """Signature ledger storage interface."""

    async def get_signed(
        self,
        deal_id: UUID,
        role: SignerRole,
        contract_version: str,
    ) -> SignatureRecord | None:
        """Get the signed record for a deal, role and version."""

    async def list_for_version(
        self,
        deal_id: UUID,
        contract_version: str,
    ) -> Sequence[SignatureRecord]:
        """List signed records for one contract version."""

    async def add_signed(self, record: SignatureRecord) -> SignatureRecord:
        """Insert a signed record."""


class DealRepositoryPort(Protocol):
    """Deal storage interface."""

    async def get_by_id(self, id: UUID) -> Deal | None:
        """Get deal by ID."""

    async def create(self, entity: Deal) -> Deal:
        """Persist a new deal."""

    async def get_by_esign_document_id(self, document_id: str) -> Deal | None:
        """Get deal by its e-signature provider document ID."""

    async def compare_and_set_stage(
        self,
        deal_id: UUID,
        expected: DealStage,
        new_stage: DealStage,
        changed_at: datetime,
        **values: Any,
    ) -> bool:
        """Change the stage only if it still equals `expected`."""

    async def list_awaiting_provider(self, limit: int = 100) -> Sequence[Deal]:
        """List contract-ready deals with a provider document."""


class DealEventRepositoryPort(Protocol):
    """Deal audit log interface."""

    async def record(
        self,
        deal_id: UUID,
        event: DealEventType,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> DealEvent:
        """Append an audit event."""


class ESignStatusPort(Protocol):
    """E-signature provider status lookup."""

    name: str

    async def get_status(self, document_id: str) -> ProviderStatusPort:
        """Fetch the signing status of a provider document."""


class ProviderStatusPort(Protocol):
    """Status reported by an e-signature provider."""

    status: str
    signed_at: datetime | None
    reference: str | None


class TransactionPort(Protocol):
    """Transaction control used by the services."""

    def begin_nested(self) -> AsyncContextManager[Any]:
        """Create a nested transaction context."""
