"""Wiring for the signing workflow over a database session."""

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from countersign.config import Settings, get_settings
from countersign.domain.signing.ledger import SignatureLedger
from countersign.domain.signing.ports import ESignStatusPort
from countersign.domain.signing.reconciler import ConsensusReconciler
from countersign.domain.signing.stage_machine import DealStageMachine
from countersign.domain.signing.tokens import TokenLifecycleManager
from countersign.domain.signing.workflow import SigningWorkflowService
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.infrastructure.database.repositories import (
    DealEventRepository,
    DealRepository,
    SignatureRepository,
    SigningTokenRepository,
)
from countersign.shared.clock import Clock, utc_now


def build_signing_service(
    session: AsyncSession,
    provider: ESignStatusPort | None,
    *,
    otp_delivery: OtpDelivery | None = None,
    settings: Settings | None = None,
    clock: Clock = utc_now,
) -> SigningWorkflowService:
    """Build a workflow service whose components share one session."""
    settings = settings or get_settings()

    deal_repo = DealRepository(session)
    event_repo = DealEventRepository(session)
    signature_repo = SignatureRepository(session)

    tokens = TokenLifecycleManager(
        SigningTokenRepository(session),
        deal_repo,
        signature_repo,
        session,
        ttl=timedelta(days=settings.signing_token_ttl_days),
        retention=timedelta(days=settings.token_retention_days),
        require_otp=settings.signing_otp_required,
        otp_ttl=timedelta(minutes=settings.signing_otp_ttl_minutes),
        otp_max_attempts=settings.signing_otp_max_attempts,
        clock=clock,
    )
    ledger = SignatureLedger(signature_repo, deal_repo, clock=clock)
    reconciler = ConsensusReconciler(
        ledger,
        deal_repo,
        event_repo,
        provider,
        timeout_seconds=settings.esign_timeout_seconds,
        clock=clock,
    )
    stage_machine = DealStageMachine(deal_repo, ledger, event_repo, clock=clock)

    return SigningWorkflowService(
        tokens=tokens,
        ledger=ledger,
        reconciler=reconciler,
        stage_machine=stage_machine,
        deal_repo=deal_repo,
        event_repo=event_repo,
        transaction=session,
        otp_delivery=otp_delivery,
        clock=clock,
    )
