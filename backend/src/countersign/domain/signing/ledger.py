"""Signature ledger: who signed which contract version of a deal."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from countersign.domain.signing.ports import DealRepositoryPort, SignatureRepositoryPort
from countersign.infrastructure.database.models.deal import Deal, DealStage, SignerRole
from countersign.infrastructure.database.models.signing import SignatureRecord, SignatureSource
from countersign.shared.clock import Clock, utc_now
from countersign.shared.exceptions import AlreadySignedError, DealNotReadyError, NotFoundError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignerIdentity:
    name: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class SigningProof:
    """Audit evidence attached to a signature."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_info: dict[str, Any] | None = None
    source: SignatureSource = SignatureSource.LOCAL
    provider_reference: str | None = None
    signed_at: datetime | None = None
    otp_verified_at: datetime | None = None  # Email one-time code check before signing


@dataclass(frozen=True)
class DealSigningState:
    """Derived signing state of a deal's current contract version. Never stored."""

    deal_id: UUID
    contract_version: str | None
    signed_roles: frozenset[SignerRole] = field(default_factory=frozenset)

    @classmethod
    def from_records(
        cls,
        deal_id: UUID,
        contract_version: str | None,
        records: Iterable[SignatureRecord],
    ) -> "DealSigningState":
        roles = frozenset(
            SignerRole(record.role)
            for record in records
            if record.signed and record.contract_version == contract_version
        )
        return cls(deal_id=deal_id, contract_version=contract_version, signed_roles=roles)

    @property
    def awaiting_creator(self) -> bool:
        return SignerRole.CREATOR not in self.signed_roles

    @property
    def awaiting_counterparty(self) -> bool:
        return SignerRole.COUNTERPARTY not in self.signed_roles

    @property
    def both_signed(self) -> bool:
        return not self.awaiting_creator and not self.awaiting_counterparty

    def has_signed(self, role: SignerRole) -> bool:
        return role in self.signed_roles


class SignatureLedger:
    """Records signatures and answers the two-party completion question.

    The only writer of signature records. Recording never touches the deal
    stage; the stage machine observes the ledger instead.
    """

    def __init__(
        self,
        signature_repo: SignatureRepositoryPort,
        deal_repo: DealRepositoryPort,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.signature_repo = signature_repo
        self.deal_repo = deal_repo
        self.clock = clock

    async def record_signature(
        self,
        deal_id: UUID,
        role: SignerRole,
        signer: SignerIdentity,
        proof: SigningProof,
        *,
        contract_version: str | None = None,
    ) -> SignatureRecord:
        """Record one party's signature on the deal's current contract version.

        Raises:
            NotFoundError: Unknown deal
            DealNotReadyError: The deal has no contract version yet
            AlreadySignedError: A signed record already exists; callers treat
                this as success
        """
        deal = await self._load_deal(deal_id)
        version = contract_version or deal.contract_version
        if version is None:
            raise DealNotReadyError(str(deal_id), DealStage(deal.stage).value, role.value)

        if await self.signature_repo.get_signed(deal.id, role, version):
            raise AlreadySignedError(str(deal.id), role.value, version)

        record = SignatureRecord(
            deal_id=deal.id,
            role=role,
            contract_version=version,
            signer_name=signer.name,
            signer_email=signer.email,
            signer_phone=signer.phone,
            signed=True,
            signed_at=proof.signed_at or self.clock(),
            ip_address=proof.ip_address,
            user_agent=proof.user_agent,
            device_info=proof.device_info,
            otp_verified_at=proof.otp_verified_at,
            source=proof.source,
            provider_reference=proof.provider_reference,
        )
        # The unique constraint decides concurrent inserts.
        record = await self.signature_repo.add_signed(record)

        logger.info(
            "signature_recorded",
            deal_id=str(deal.id),
            role=role.value,
            contract_version=version,
            source=SignatureSource(proof.source).value,
        )
        return record

    async def get_signed_record(
        self,
        deal_id: UUID,
        role: SignerRole,
        contract_version: str | None = None,
    ) -> SignatureRecord | None:
        """Get the signed record for a role on the current (or given) version."""
        version = contract_version
        if version is None:
            deal = await self._load_deal(deal_id)
            version = deal.contract_version
        if version is None:
            return None
        return await self.signature_repo.get_signed(deal_id, role, version)

    async def get_signature_state(self, deal_id: UUID) -> DealSigningState:
        deal = await self._load_deal(deal_id)
        return await self.state_for_deal(deal)

    async def state_for_deal(self, deal: Deal) -> DealSigningState:
        if deal.contract_version is None:
            return DealSigningState(deal_id=deal.id, contract_version=None)
        records = await self.signature_repo.list_for_version(deal.id, deal.contract_version)
        return DealSigningState.from_records(deal.id, deal.contract_version, records)

    async def _load_deal(self, deal_id: UUID) -> Deal:
        deal = await self.deal_repo.get_by_id(deal_id)
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))
        return deal
