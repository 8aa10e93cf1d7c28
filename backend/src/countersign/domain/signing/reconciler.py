"""Consensus reconciler: merge provider signing status into the ledger.

The ledger is the single source of truth. A signed local record always wins;
the provider is only consulted while no record exists, and a "signed" answer
is promoted into the ledger exactly once. A failed provider lookup can hide a
signature that has not been promoted yet, but it can never un-sign one that
has, so the answer only ever moves from unsigned to signed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from countersign.domain.signing.ledger import SignatureLedger, SignerIdentity, SigningProof
from countersign.domain.signing.ports import (
    DealEventRepositoryPort,
    DealRepositoryPort,
    ESignStatusPort,
)
from countersign.infrastructure.database.models.deal import Deal, DealEventType, SignerRole
from countersign.infrastructure.database.models.signing import SignatureSource
from countersign.infrastructure.esign.base import ProviderSigningStatus, normalize_status
from countersign.observability.metrics import RECONCILIATIONS
from countersign.shared.clock import Clock, utc_now
from countersign.shared.exceptions import (
    AlreadySignedError,
    NotFoundError,
    ProviderUnavailableError,
)
from countersign.shared.logging import get_logger

logger = get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    LOCAL = "local"  # Signed record already in the ledger
    PROMOTED = "promoted"  # Provider confirmed; recorded now
    DUPLICATE = "duplicate"  # Provider confirmed; another caller recorded it first
    PENDING = "pending"
    DECLINED = "declined"
    UNAVAILABLE = "unavailable"  # Provider lookup failed this attempt
    SKIPPED = "skipped"  # No contract version or no provider session


@dataclass(frozen=True)
class ReconciliationResult:
    deal_id: UUID
    role: SignerRole
    signed: bool
    outcome: ReconciliationOutcome
    checked_at: datetime

    @property
    def degraded(self) -> bool:
        """True when the provider could not be asked; `signed` may be stale."""
        return self.outcome == ReconciliationOutcome.UNAVAILABLE


def _document_matches_version(deal: Deal) -> bool:
    """A provider answer only speaks for the version its document was made for."""
    return deal.esign_contract_version == deal.contract_version


class ConsensusReconciler:
    """Produces a monotonic "party signed" fact from ledger + provider."""

    def __init__(
        self,
        ledger: SignatureLedger,
        deal_repo: DealRepositoryPort,
        event_repo: DealEventRepositoryPort,
        provider: ESignStatusPort | None,
        *,
        timeout_seconds: float = 5.0,
        clock: Clock = utc_now,
    ) -> None:
        self.ledger = ledger
        self.deal_repo = deal_repo
        self.event_repo = event_repo
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def reconcile(
        self,
        deal_id: UUID,
        role: SignerRole = SignerRole.COUNTERPARTY,
    ) -> ReconciliationResult:
        """Decide whether `role` has signed the deal's current contract version."""
        deal = await self.deal_repo.get_by_id(deal_id)
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))

        if deal.contract_version is None:
            return self._result(deal, role, False, ReconciliationOutcome.SKIPPED)

        existing = await self.ledger.get_signed_record(deal.id, role, deal.contract_version)
        if existing is not None:
            return self._result(deal, role, True, ReconciliationOutcome.LOCAL)

        if self.provider is None or not deal.esign_document_id:
            return self._result(deal, role, False, ReconciliationOutcome.SKIPPED)
        if not _document_matches_version(deal):
            return self._stale_document(deal, role)

        try:
            async with asyncio.timeout(self.timeout_seconds):
                status = await self.provider.get_status(deal.esign_document_id)
        except (ProviderUnavailableError, TimeoutError) as exc:
            logger.warning(
                "provider_status_unavailable",
                deal_id=str(deal.id),
                document_id=deal.esign_document_id,
                error=str(exc) or type(exc).__name__,
            )
            return self._result(deal, role, False, ReconciliationOutcome.UNAVAILABLE)

        normalized = normalize_status(status.status)
        if normalized == ProviderSigningStatus.SIGNED:
            return await self._promote(deal, role, status.signed_at, status.reference)
        if normalized == ProviderSigningStatus.DECLINED:
            logger.warning(
                "provider_reports_declined",
                deal_id=str(deal.id),
                document_id=deal.esign_document_id,
            )
            return self._result(deal, role, False, ReconciliationOutcome.DECLINED)
        return self._result(deal, role, False, ReconciliationOutcome.PENDING)

    async def apply_provider_event(
        self,
        document_id: str,
        status: str,
        *,
        signed_at: datetime | None = None,
        reference: str | None = None,
    ) -> ReconciliationResult:
        """Apply a pushed (webhook) provider status for a document.

        Safe to receive more than once and in any order relative to polling.
        """
        deal = await self.deal_repo.get_by_esign_document_id(document_id)
        if deal is None:
            raise NotFoundError("Deal", document_id)

        role = SignerRole.COUNTERPARTY
        normalized = normalize_status(status)

        if normalized == ProviderSigningStatus.SIGNED:
            if deal.contract_version is None:
                return self._result(deal, role, False, ReconciliationOutcome.SKIPPED)
            if await self.ledger.get_signed_record(deal.id, role, deal.contract_version):
                return self._result(deal, role, True, ReconciliationOutcome.LOCAL)
            if not _document_matches_version(deal):
                return self._stale_document(deal, role)
            return await self._promote(deal, role, signed_at, reference or document_id)

        if normalized == ProviderSigningStatus.DECLINED:
            await self.event_repo.record(
                deal.id,
                DealEventType.PROVIDER_DECLINED,
                self.clock(),
                {"document_id": document_id, "status": status},
            )
            logger.warning("provider_reports_declined", deal_id=str(deal.id), document_id=document_id)
            return self._result(deal, role, False, ReconciliationOutcome.DECLINED)

        signed = await self.ledger.get_signed_record(deal.id, role) is not None
        outcome = ReconciliationOutcome.LOCAL if signed else ReconciliationOutcome.PENDING
        return self._result(deal, role, signed, outcome)

    async def _promote(
        self,
        deal: Deal,
        role: SignerRole,
        signed_at: datetime | None,
        reference: str | None,
    ) -> ReconciliationResult:
        signer = SignerIdentity(
            name=deal.name_for(role) or deal.email_for(role) or role.value,
            email=deal.email_for(role),
        )
        proof = SigningProof(
            source=SignatureSource.PROVIDER,
            provider_reference=reference,
            signed_at=signed_at,
        )
        try:
            await self.ledger.record_signature(
                deal.id,
                role,
                signer,
                proof,
                contract_version=deal.contract_version,
            )
        except AlreadySignedError:
            return self._result(deal, role, True, ReconciliationOutcome.DUPLICATE)

        await self.event_repo.record(
            deal.id,
            DealEventType.COUNTERPARTY_SIGNED
            if role == SignerRole.COUNTERPARTY
            else DealEventType.CREATOR_SIGNED,
            self.clock(),
            {"source": SignatureSource.PROVIDER.value, "reference": reference},
        )
        return self._result(deal, role, True, ReconciliationOutcome.PROMOTED)

    def _stale_document(self, deal: Deal, role: SignerRole) -> ReconciliationResult:
        logger.warning(
            "provider_document_stale",
            deal_id=str(deal.id),
            document_id=deal.esign_document_id,
            document_version=deal.esign_contract_version,
            contract_version=deal.contract_version,
        )
        return self._result(deal, role, False, ReconciliationOutcome.SKIPPED)

    def _result(
        self,
        deal: Deal,
        role: SignerRole,
        signed: bool,
        outcome: ReconciliationOutcome,
    ) -> ReconciliationResult:
        RECONCILIATIONS.labels(outcome=outcome.value).inc()
        return ReconciliationResult(
            deal_id=deal.id,
            role=role,
            signed=signed,
            outcome=outcome,
            checked_at=self.clock(),
        )
