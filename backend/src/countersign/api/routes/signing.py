"""Signing link and signature state API routes.

The validate, one-time code and redeem endpoints are public: the token in the path is the
caller's only credential. Their error bodies never describe deal state.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from countersign.api.deps import (
    ESignProviderDep,
    ServiceCaller,
    SigningProofDep,
    SigningServiceDep,
)
from countersign.api.ratelimit import (
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_OTP,
    RATE_LIMIT_POLL,
    RATE_LIMIT_REDEEM,
    RATE_LIMIT_TOKEN_PREVIEW,
    RATE_LIMIT_WEBHOOK,
    limiter,
)
from countersign.api.schemas import APIRequestModel
from countersign.domain.signing.ledger import SignerIdentity
from countersign.infrastructure.database.models.deal import DealStage, SignerRole
from countersign.shared.exceptions import AuthenticationError, ValidationError
from countersign.shared.logging import get_logger
from countersign.shared.signing_tokens import build_signing_link

logger = get_logger(__name__)

router = APIRouter(prefix="/signing", tags=["Signing"])


# ----- Request Schemas -----


class IssueTokenRequest(APIRequestModel):
    deal_id: UUID
    role: SignerRole = SignerRole.CREATOR
    signer_email: str | None = Field(default=None, max_length=320)


class RedeemTokenRequest(APIRequestModel):
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_email: str | None = Field(default=None, max_length=320)
    signer_phone: str | None = Field(default=None, max_length=32)
    consent: bool


class RequestOtpRequest(APIRequestModel):
    email: str = Field(..., min_length=3, max_length=320)


class VerifyOtpRequest(APIRequestModel):
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")


class ProviderWebhookRequest(BaseModel):
    """Provider webhook payload. Unknown fields are ignored."""

    document_id: str
    status: str | None = None
    event: str | None = None
    signed_at: datetime | None = None
    invitation_id: str | None = None


# ----- Response Schemas -----


class IssueTokenResponse(BaseModel):
    token: str
    signing_link: str
    deal_id: str
    role: SignerRole
    signer_email: str
    expires_at: datetime


class DealSummary(BaseModel):
    """What a link holder may see about the deal."""

    id: str
    title: str
    creator_name: str | None
    counterparty_name: str
    contract_version: str | None
    contract_ref: str | None


class ValidateTokenResponse(BaseModel):
    valid: bool = True
    role: SignerRole
    signer_email: str
    expires_at: datetime
    deal: DealSummary


class RequestOtpResponse(BaseModel):
    sent: bool
    expires_at: datetime


class VerifyOtpResponse(BaseModel):
    verified: bool
    verified_at: datetime


class SignatureResponse(BaseModel):
    role: SignerRole
    signer_name: str
    contract_version: str
    signed_at: datetime


class RedeemTokenResponse(BaseModel):
    deal_id: str
    already_signed: bool
    stage: DealStage
    signature: SignatureResponse


class ReconciliationResponse(BaseModel):
    outcome: str
    degraded: bool
    checked_at: datetime


class SignatureStateResponse(BaseModel):
    deal_id: str
    contract_version: str | None
    awaiting_creator: bool
    awaiting_counterparty: bool
    both_signed: bool
    stage: DealStage
    reconciliation: ReconciliationResponse | None = None


class WebhookResponse(BaseModel):
    received: bool
    signed: bool


# ----- Routes -----


@router.post("/issue-token", response_model=IssueTokenResponse, status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def issue_token(
    request: Request,
    body: IssueTokenRequest,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> IssueTokenResponse:
    """Issue a signing link for one party. The raw token is returned only here."""
    _ = request, caller
    issued = await service.issue_token(body.deal_id, body.role, body.signer_email)
    return IssueTokenResponse(
        token=issued.value,
        signing_link=build_signing_link(issued.value),
        deal_id=str(issued.deal_id),
        role=issued.role,
        signer_email=issued.signer_email,
        expires_at=issued.expires_at,
    )


@router.get("/validate-token/{token}", response_model=ValidateTokenResponse)
@limiter.limit(RATE_LIMIT_TOKEN_PREVIEW)
async def validate_token(
    request: Request,
    token: str,
    service: SigningServiceDep,
) -> ValidateTokenResponse:
    """Preview a signing link without using it up."""
    _ = request
    preview = await service.preview_link(token)
    deal = preview.deal
    return ValidateTokenResponse(
        role=preview.token.role,
        signer_email=preview.token.signer_email,
        expires_at=preview.token.expires_at,
        deal=DealSummary(
            id=str(deal.id),
            title=deal.title,
            creator_name=deal.creator_name,
            counterparty_name=deal.counterparty_name,
            contract_version=deal.contract_version,
            contract_ref=deal.contract_ref,
        ),
    )


@router.post("/request-otp/{token}", response_model=RequestOtpResponse)
@limiter.limit(RATE_LIMIT_OTP)
async def request_otp(
    request: Request,
    token: str,
    body: RequestOtpRequest,
    service: SigningServiceDep,
) -> RequestOtpResponse:
    """Email a one-time code to the link's signer. Replaces any earlier code."""
    _ = request
    expires_at = await service.request_otp(token, body.email)
    return RequestOtpResponse(sent=True, expires_at=expires_at)


@router.post("/verify-otp/{token}", response_model=VerifyOtpResponse)
@limiter.limit(RATE_LIMIT_OTP)
async def verify_otp(
    request: Request,
    token: str,
    body: VerifyOtpRequest,
    service: SigningServiceDep,
) -> VerifyOtpResponse:
    """Check the one-time code. The link can be redeemed once this succeeds."""
    _ = request
    context = await service.verify_otp(token, body.code)
    assert context.otp_verified_at is not None
    return VerifyOtpResponse(verified=True, verified_at=context.otp_verified_at)


@router.post("/redeem-token/{token}", response_model=RedeemTokenResponse)
@limiter.limit(RATE_LIMIT_REDEEM)
async def redeem_token(
    request: Request,
    token: str,
    body: RedeemTokenRequest,
    service: SigningServiceDep,
    proof: SigningProofDep,
) -> RedeemTokenResponse:
    """Sign through a link. Spends the link and records the signature together."""
    _ = request
    if not body.consent:
        raise ValidationError("Consent is required to sign the contract")

    result = await service.redeem_and_sign(
        token,
        SignerIdentity(
            name=body.signer_name.strip(),
            email=body.signer_email,
            phone=body.signer_phone,
        ),
        proof,
    )
    return RedeemTokenResponse(
        deal_id=str(result.deal_id),
        already_signed=result.already_signed,
        stage=result.stage,
        signature=SignatureResponse(
            role=result.role,
            signer_name=result.signature.signer_name,
            contract_version=result.signature.contract_version,
            signed_at=result.signature.signed_at,
        ),
    )


@router.get("/signature-state/{deal_id}", response_model=SignatureStateResponse)
@limiter.limit(RATE_LIMIT_POLL)
async def get_signature_state(
    request: Request,
    deal_id: UUID,
    service: SigningServiceDep,
) -> SignatureStateResponse:
    """Polling endpoint. May reconcile with the provider and advance the deal."""
    _ = request
    status = await service.signature_status(deal_id)
    reconciliation = None
    if status.reconciliation is not None:
        reconciliation = ReconciliationResponse(
            outcome=status.reconciliation.outcome.value,
            degraded=status.reconciliation.degraded,
            checked_at=status.reconciliation.checked_at,
        )
    return SignatureStateResponse(
        deal_id=str(status.state.deal_id),
        contract_version=status.state.contract_version,
        awaiting_creator=status.state.awaiting_creator,
        awaiting_counterparty=status.state.awaiting_counterparty,
        both_signed=status.state.both_signed,
        stage=status.stage,
        reconciliation=reconciliation,
    )


@router.post("/webhooks/esign", response_model=WebhookResponse)
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def esign_webhook(
    request: Request,
    service: SigningServiceDep,
    provider: ESignProviderDep,
) -> WebhookResponse:
    """Provider push notification. Idempotent; polling covers missed deliveries."""
    raw_body = await request.body()
    signature = request.headers.get("x-leegality-signature") or request.headers.get(
        "x-signature"
    )
    if not provider.verify_webhook(raw_body, signature):
        logger.warning("esign_webhook_rejected", provider=provider.name)
        raise AuthenticationError("Invalid webhook signature")

    try:
        payload = ProviderWebhookRequest.model_validate_json(raw_body)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed webhook payload") from exc

    result = await service.handle_provider_event(
        payload.document_id,
        payload.status or payload.event or "",
        signed_at=payload.signed_at,
        reference=payload.invitation_id,
    )
    logger.info(
        "esign_webhook_processed",
        deal_id=str(result.deal_id),
        outcome=result.outcome.value,
    )
    return WebhookResponse(received=True, signed=result.signed)
