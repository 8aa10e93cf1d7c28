"""Deal stage machine.

The only writer of ``deals.stage``. Every transition is a compare-and-set on
the stage the decision was based on, so re-running a check after a concurrent
writer moved the deal is a no-op instead of a regression.
"""

from uuid import UUID

from countersign.domain.signing.ledger import SignatureLedger
from countersign.domain.signing.ports import DealEventRepositoryPort, DealRepositoryPort
from countersign.infrastructure.database.models.deal import Deal, DealEventType, DealStage
from countersign.observability.metrics import STAGE_TRANSITIONS
from countersign.shared.clock import Clock, utc_now
from countersign.shared.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[DealStage, frozenset[DealStage]] = {
    DealStage.AWAITING_DETAILS: frozenset({DealStage.CONTRACT_READY, DealStage.DECLINED}),
    DealStage.CONTRACT_READY: frozenset({DealStage.SIGNED, DealStage.DECLINED}),
    DealStage.SIGNED: frozenset(
        {DealStage.NEEDS_CHANGES, DealStage.COMPLETED, DealStage.DECLINED}
    ),
    DealStage.NEEDS_CHANGES: frozenset({DealStage.CONTRACT_READY, DealStage.DECLINED}),
    DealStage.DECLINED: frozenset(),
    DealStage.COMPLETED: frozenset(),
}

# Attempts for transitions that may race with other writers (decline)
_MAX_CAS_ATTEMPTS = 3


class DealStageMachine:
    """Applies deal stage transitions."""

    def __init__(
        self,
        deal_repo: DealRepositoryPort,
        ledger: SignatureLedger,
        event_repo: DealEventRepositoryPort,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.deal_repo = deal_repo
        self.ledger = ledger
        self.event_repo = event_repo
        self.clock = clock

    async def mark_contract_ready(
        self,
        deal_id: UUID,
        contract_version: str,
        *,
        contract_ref: str | None = None,
        esign_provider: str | None = None,
        esign_document_id: str | None = None,
    ) -> Deal:
        """Attach a contract version and open the deal for signatures.

        Allowed from awaiting_details, and from needs_changes with a new
        version. Repeating the call with the version already in place is a
        no-op.

        The provider document is bound to this contract version. A revision
        without a new document detaches the old one, and a revision may not
        reuse the previous version's document.
        """
        deal = await self._load(deal_id)
        current = DealStage(deal.stage)

        if current == DealStage.CONTRACT_READY and deal.contract_version == contract_version:
            return deal
        if current == DealStage.NEEDS_CHANGES:
            if deal.contract_version == contract_version:
                raise ValidationError(
                    "A revised contract needs a new version identifier",
                    details={"deal_id": str(deal_id), "contract_version": contract_version},
                )
            if esign_document_id is not None and esign_document_id == deal.esign_document_id:
                raise ValidationError(
                    "A revised contract needs a new e-signature document",
                    details={"deal_id": str(deal_id), "esign_document_id": esign_document_id},
                )

        values: dict[str, object] = {
            "contract_version": contract_version,
            "contract_ref": contract_ref,
            "esign_document_id": esign_document_id,
            "esign_provider": esign_provider if esign_document_id else None,
            "esign_contract_version": contract_version if esign_document_id else None,
        }

        await self._transition(deal, DealStage.CONTRACT_READY, strict=True, **values)
        return await self._load(deal_id)

    async def advance_if_signed(self, deal_id: UUID) -> bool:
        """Move contract_ready -> signed when both parties have signed.

        Re-runnable: returns False without writing when the deal is not in
        contract_ready, when a signature is missing, or when another caller
        applied the transition first.
        """
        deal = await self._load(deal_id)
        if DealStage(deal.stage) != DealStage.CONTRACT_READY:
            return False

        state = await self.ledger.state_for_deal(deal)
        if not state.both_signed:
            return False

        return await self._transition(deal, DealStage.SIGNED, strict=False)

    async def raise_dispute(self, deal_id: UUID, reason: str | None = None) -> Deal:
        """signed -> needs_changes."""
        deal = await self._load(deal_id)
        await self._transition(deal, DealStage.NEEDS_CHANGES, strict=True, reason=reason)
        return await self._load(deal_id)

    async def complete(self, deal_id: UUID) -> Deal:
        """signed -> completed."""
        deal = await self._load(deal_id)
        await self._transition(deal, DealStage.COMPLETED, strict=True)
        return await self._load(deal_id)

    async def decline(self, deal_id: UUID, reason: str | None = None) -> Deal:
        """Any non-terminal stage -> declined. Declining twice is a no-op."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            deal = await self._load(deal_id)
            current = DealStage(deal.stage)
            if current == DealStage.DECLINED:
                return deal
            if await self._transition(deal, DealStage.DECLINED, strict=True, reason=reason):
                return await self._load(deal_id)
        raise InvalidTransitionError(str(deal_id), "unknown", DealStage.DECLINED.value)

    async def _transition(
        self,
        deal: Deal,
        target: DealStage,
        *,
        strict: bool,
        reason: str | None = None,
        **values: object,
    ) -> bool:
        current = DealStage(deal.stage)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(str(deal.id), current.value, target.value)

        now = self.clock()
        changed = await self.deal_repo.compare_and_set_stage(
            deal.id, current, target, now, **values
        )
        if not changed:
            logger.info(
                "deal_stage_change_skipped",
                deal_id=str(deal.id),
                expected=current.value,
                target=target.value,
            )
            if strict and target != DealStage.DECLINED:
                refreshed = await self._load(deal.id)
                if DealStage(refreshed.stage) != target:
                    raise InvalidTransitionError(
                        str(deal.id), DealStage(refreshed.stage).value, target.value
                    )
            return False

        metadata: dict[str, object] = {"from": current.value, "to": target.value}
        if reason:
            metadata["reason"] = reason
        if "contract_version" in values:
            metadata["contract_version"] = values["contract_version"]
        await self.event_repo.record(deal.id, DealEventType.STAGE_CHANGED, now, metadata)
        STAGE_TRANSITIONS.labels(from_stage=current.value, to_stage=target.value).inc()

        logger.info(
            "deal_stage_changed",
            deal_id=str(deal.id),
            from_stage=current.value,
            to_stage=target.value,
        )
        return True

    async def _load(self, deal_id: UUID) -> Deal:
        deal = await self.deal_repo.get_by_id(deal_id)
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))
        return deal
