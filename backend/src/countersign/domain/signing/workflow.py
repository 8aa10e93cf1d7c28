"""Signing workflow service - entry point for the signing API and worker.

Orchestrates the token manager, one-time code delivery, ledger, reconciler and stage machine. Each of
those owns its own table; this service only sequences them and writes the
audit trail.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from countersign.domain.signing.ledger import (
    DealSigningState,
    SignatureLedger,
    SignerIdentity,
    SigningProof,
)
from countersign.domain.signing.ports import (
    DealEventRepositoryPort,
    DealRepositoryPort,
    TransactionPort,
)
from countersign.domain.signing.reconciler import (
    ConsensusReconciler,
    ReconciliationResult,
)
from countersign.domain.signing.stage_machine import DealStageMachine
from countersign.domain.signing.tokens import IssuedToken, TokenContext, TokenLifecycleManager
from countersign.infrastructure.database.models.deal import (
    Deal,
    DealEventType,
    DealStage,
    SignerRole,
)
from countersign.infrastructure.database.models.signing import (
    SignatureRecord,
    TokenInvalidationReason,
)
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.observability.metrics import OTP_CHECKS, TOKEN_REDEMPTIONS, TOKENS_ISSUED
from countersign.shared.clock import Clock, utc_now
from countersign.shared.exceptions import (
    AlreadySignedError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    SigningLinkError,
    StorageConflictError,
)
from countersign.shared.logging import get_logger

logger = get_logger(__name__)

_SIGNED_EVENTS = {
    SignerRole.CREATOR: DealEventType.CREATOR_SIGNED,
    SignerRole.COUNTERPARTY: DealEventType.COUNTERPARTY_SIGNED,
}


@dataclass(frozen=True)
class SigningLinkPreview:
    """What the link holder sees before committing to sign."""

    token: TokenContext
    deal: Deal


@dataclass(frozen=True)
class RedemptionResult:
    deal_id: UUID
    role: SignerRole
    signature: SignatureRecord
    already_signed: bool
    stage: DealStage


@dataclass(frozen=True)
class SignatureStatus:
    """Polling view: derived state plus the persisted stage."""

    state: DealSigningState
    stage: DealStage
    reconciliation: ReconciliationResult | None = None


class SigningWorkflowService:
    """Service for the dual-party signing workflow."""

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        ledger: SignatureLedger,
        reconciler: ConsensusReconciler,
        stage_machine: DealStageMachine,
        deal_repo: DealRepositoryPort,
        event_repo: DealEventRepositoryPort,
        transaction: TransactionPort,
        *,
        otp_delivery: OtpDelivery | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.tokens = tokens
        self.ledger = ledger
        self.reconciler = reconciler
        self.stage_machine = stage_machine
        self.deal_repo = deal_repo
        self.event_repo = event_repo
        self.transaction = transaction
        self.otp_delivery = otp_delivery
        self.clock = clock

    # ----- Deals -----

    async def open_deal(
        self,
        *,
        title: str,
        creator_email: str,
        counterparty_name: str,
        creator_name: str | None = None,
        counterparty_email: str | None = None,
    ) -> Deal:
        """Create a deal in awaiting_details."""
        deal = Deal(
            title=title,
            creator_name=creator_name,
            creator_email=creator_email,
            counterparty_name=counterparty_name,
            counterparty_email=counterparty_email,
            stage=DealStage.AWAITING_DETAILS,
            stage_changed_at=self.clock(),
        )
        deal = await self.deal_repo.create(deal)
        logger.info("deal_opened", deal_id=str(deal.id))
        return deal

    async def get_deal(self, deal_id: UUID) -> Deal:
        deal = await self.deal_repo.get_by_id(deal_id)
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))
        return deal

    async def mark_contract_ready(
        self,
        deal_id: UUID,
        contract_version: str,
        *,
        contract_ref: str | None = None,
        esign_provider: str | None = None,
        esign_document_id: str | None = None,
    ) -> Deal:
        return await self.stage_machine.mark_contract_ready(
            deal_id,
            contract_version,
            contract_ref=contract_ref,
            esign_provider=esign_provider,
            esign_document_id=esign_document_id,
        )

    async def decline(self, deal_id: UUID, reason: str | None = None) -> Deal:
        deal = await self.stage_machine.decline(deal_id, reason)
        await self.tokens.invalidate_for_deal(deal_id, TokenInvalidationReason.DEAL_DECLINED)
        return deal

    async def raise_dispute(self, deal_id: UUID, reason: str | None = None) -> Deal:
        deal = await self.stage_machine.raise_dispute(deal_id, reason)
        await self.tokens.invalidate_for_deal(deal_id, TokenInvalidationReason.CONTRACT_REVISED)
        return deal

    async def complete(self, deal_id: UUID) -> Deal:
        return await self.stage_machine.complete(deal_id)

    # ----- Tokens -----

    async def issue_token(
        self,
        deal_id: UUID,
        role: SignerRole,
        signer_email: str | None = None,
    ) -> IssuedToken:
        issued = await self.tokens.issue(deal_id, role, signer_email)
        await self.event_repo.record(
            deal_id,
            DealEventType.TOKEN_ISSUED,
            self.clock(),
            {
                "role": role.value,
                "token_id": str(issued.token_id),
                "superseded": issued.superseded,
            },
        )
        TOKENS_ISSUED.labels(role=role.value).inc()
        return issued

    async def preview_link(self, token_value: str) -> SigningLinkPreview:
        """Validate a link without consuming it."""
        context = await self.tokens.validate(token_value)
        deal = await self.get_deal(context.deal_id)
        return SigningLinkPreview(token=context, deal=deal)

    async def request_otp(self, token_value: str, email: str) -> datetime:
        """Send a one-time code to the link's signer. Returns when the code expires.

        A new request replaces the previous code and resets its attempts.

        Raises:
            SigningLinkError: Unusable link or an email that is not the signer's
            ExternalServiceError: The code could not be sent
        """
        try:
            issued = await self.tokens.request_otp(token_value, email)
        except SigningLinkError as exc:
            OTP_CHECKS.labels(step="request", outcome=exc.code).inc()
            raise
        context = issued.context
        if self.otp_delivery is None:
            raise ExternalServiceError("Code delivery is not configured")
        try:
            await self.otp_delivery.send_otp(
                context.signer_email,
                issued.code,
                issued.expires_at,
                deal_id=context.deal_id,
                role=context.role,
            )
        except ExternalServiceError:
            OTP_CHECKS.labels(step="request", outcome="delivery_failed").inc()
            raise

        await self.event_repo.record(
            context.deal_id,
            DealEventType.OTP_SENT,
            self.clock(),
            {"role": context.role.value, "token_id": str(context.token_id)},
        )
        OTP_CHECKS.labels(step="request", outcome="sent").inc()
        return issued.expires_at

    async def verify_otp(self, token_value: str, code: str) -> TokenContext:
        """Check the one-time code the signer received."""
        try:
            context = await self.tokens.verify_otp(token_value, code)
        except SigningLinkError as exc:
            OTP_CHECKS.labels(step="verify", outcome=exc.code).inc()
            raise

        await self.event_repo.record(
            context.deal_id,
            DealEventType.OTP_VERIFIED,
            self.clock(),
            {"role": context.role.value, "token_id": str(context.token_id)},
        )
        OTP_CHECKS.labels(step="verify", outcome="verified").inc()
        return context

    async def redeem_and_sign(
        self,
        token_value: str,
        signer: SignerIdentity,
        proof: SigningProof,
    ) -> RedemptionResult:
        """Spend a signing link and record the holder's signature.

        Consumption and recording form one unit inside a savepoint: either
        both apply or neither does. Storage contention is retried once.
        After the unit commits the deal is advanced if both parties signed.
        """
        try:
            # Surfaces expired links (and persists their invalidation) up front.
            await self.tokens.validate(token_value)
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(StorageConflictError),
                stop=stop_after_attempt(2),
                reraise=True,
            ):
                with attempt:
                    context, record, already_signed = await self._redeem_once(
                        token_value, signer, proof
                    )
        except SigningLinkError as exc:
            TOKEN_REDEMPTIONS.labels(outcome=exc.code).inc()
            raise
        except StorageConflictError:
            TOKEN_REDEMPTIONS.labels(outcome="conflict").inc()
            raise

        TOKEN_REDEMPTIONS.labels(outcome="success").inc()

        await self.stage_machine.advance_if_signed(context.deal_id)
        deal = await self.get_deal(context.deal_id)

        return RedemptionResult(
            deal_id=context.deal_id,
            role=context.role,
            signature=record,
            already_signed=already_signed,
            stage=DealStage(deal.stage),
        )

    async def _redeem_once(
        self,
        token_value: str,
        signer: SignerIdentity,
        proof: SigningProof,
    ) -> tuple[TokenContext, SignatureRecord, bool]:
        async with self.transaction.begin_nested():
            context = await self.tokens.redeem(token_value)
            if context.otp_verified_at is not None:
                proof = replace(proof, otp_verified_at=context.otp_verified_at)
            identity = SignerIdentity(
                name=signer.name,
                email=signer.email or context.signer_email,
                phone=signer.phone,
            )

            already_signed = False
            try:
                record = await self.ledger.record_signature(
                    context.deal_id, context.role, identity, proof
                )
            except AlreadySignedError:
                # Retried submission: the token is spent, the signature stands.
                existing = await self.ledger.get_signed_record(context.deal_id, context.role)
                if existing is None:
                    raise ConflictError(
                        "Signature state changed during redemption",
                        details={"deal_id": str(context.deal_id)},
                    ) from None
                record = existing
                already_signed = True

            now = self.clock()
            await self.event_repo.record(
                context.deal_id,
                DealEventType.TOKEN_REDEEMED,
                now,
                {"token_id": str(context.token_id), "role": context.role.value},
            )
            if not already_signed:
                await self.event_repo.record(
                    context.deal_id,
                    _SIGNED_EVENTS[context.role],
                    now,
                    {
                        "source": "local",
                        "ip_address": proof.ip_address,
                        "otp_verified": proof.otp_verified_at is not None,
                    },
                )
        return context, record, already_signed

    # ----- Signature state -----

    async def signature_status(self, deal_id: UUID, *, reconcile: bool = True) -> SignatureStatus:
        """Current signing state, reconciling with the provider when useful.

        Polling clients call this repeatedly; each call may promote a
        provider signature and advance the deal.
        """
        deal = await self.get_deal(deal_id)
        state = await self.ledger.state_for_deal(deal)
        stage = DealStage(deal.stage)

        reconciliation = None
        if (
            reconcile
            and stage == DealStage.CONTRACT_READY
            and state.awaiting_counterparty
            and deal.esign_document_id
        ):
            reconciliation = await self.reconciler.reconcile(deal.id, SignerRole.COUNTERPARTY)
            if reconciliation.signed:
                state = await self.ledger.get_signature_state(deal.id)

        if stage == DealStage.CONTRACT_READY and state.both_signed:
            await self.stage_machine.advance_if_signed(deal.id)
            stage = DealStage((await self.get_deal(deal.id)).stage)

        return SignatureStatus(state=state, stage=stage, reconciliation=reconciliation)

    async def handle_provider_event(
        self,
        document_id: str,
        status: str,
        *,
        signed_at: datetime | None = None,
        reference: str | None = None,
    ) -> ReconciliationResult:
        """Apply a provider webhook, then advance the deal if it is now fully signed."""
        result = await self.reconciler.apply_provider_event(
            document_id, status, signed_at=signed_at, reference=reference
        )
        if result.signed:
            await self.stage_machine.advance_if_signed(result.deal_id)
        return result

    async def pending_provider_deal_ids(self, limit: int = 100) -> list[UUID]:
        """Contract-ready deals that still wait on a provider session."""
        return [deal.id for deal in await self.deal_repo.list_awaiting_provider(limit=limit)]

    async def reconcile_deal(self, deal_id: UUID) -> tuple[ReconciliationResult, bool]:
        """Reconcile the counterparty of one deal and advance it if fully signed.

        Returns the reconciliation result and whether the deal moved to signed.
        """
        result = await self.reconciler.reconcile(deal_id, SignerRole.COUNTERPARTY)
        advanced = False
        if result.signed:
            advanced = await self.stage_machine.advance_if_signed(deal_id)
        return result, advanced

    async def purge_expired_tokens(self) -> int:
        return await self.tokens.purge_expired()
