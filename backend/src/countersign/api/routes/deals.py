"""Deal management API routes (service-authenticated).

Stage triggers owned by external collaborators: the contract renderer marks a
deal contract-ready, the dashboard records disputes, withdrawals and
completion. The signed stage is never set here; it follows signatures.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from countersign.api.deps import ServiceCaller, SigningServiceDep
from countersign.api.ratelimit import RATE_LIMIT_DEFAULT, limiter
from countersign.api.schemas import APIRequestModel
from countersign.infrastructure.database.models.deal import Deal, DealStage

router = APIRouter(prefix="/deals", tags=["Deals"])


# ----- Request Schemas -----


class CreateDealRequest(APIRequestModel):
    title: str = Field(..., min_length=1, max_length=255)
    creator_email: str = Field(..., min_length=3, max_length=320)
    creator_name: str | None = Field(default=None, max_length=255)
    counterparty_name: str = Field(..., min_length=1, max_length=255)
    counterparty_email: str | None = Field(default=None, max_length=320)


class ContractReadyRequest(APIRequestModel):
    contract_version: str = Field(..., min_length=1, max_length=100)
    contract_ref: str | None = Field(default=None, max_length=500)
    esign_provider: str | None = Field(default=None, max_length=50)
    esign_document_id: str | None = Field(default=None, max_length=255)


class StageReasonRequest(APIRequestModel):
    reason: str | None = Field(default=None, max_length=1000)


# ----- Response Schemas -----


class DealResponse(BaseModel):
    """Deal response schema."""

    id: str
    title: str
    creator_name: str | None
    creator_email: str
    counterparty_name: str
    counterparty_email: str | None
    stage: DealStage
    stage_changed_at: datetime | None
    contract_version: str | None
    contract_ref: str | None
    esign_document_id: str | None

    @classmethod
    def from_deal(cls, deal: Deal) -> "DealResponse":
        return cls(
            id=str(deal.id),
            title=deal.title,
            creator_name=deal.creator_name,
            creator_email=deal.creator_email,
            counterparty_name=deal.counterparty_name,
            counterparty_email=deal.counterparty_email,
            stage=DealStage(deal.stage),
            stage_changed_at=deal.stage_changed_at,
            contract_version=deal.contract_version,
            contract_ref=deal.contract_ref,
            esign_document_id=deal.esign_document_id,
        )


# ----- Routes -----


@router.post("", response_model=DealResponse, status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_deal(
    request: Request,
    body: CreateDealRequest,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    _ = request, caller
    deal = await service.open_deal(
        title=body.title,
        creator_email=body.creator_email,
        creator_name=body.creator_name,
        counterparty_name=body.counterparty_name,
        counterparty_email=body.counterparty_email,
    )
    return DealResponse.from_deal(deal)


@router.get("/{deal_id}", response_model=DealResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_deal(
    request: Request,
    deal_id: UUID,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    _ = request, caller
    return DealResponse.from_deal(await service.get_deal(deal_id))


@router.post("/{deal_id}/contract-ready", response_model=DealResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def mark_contract_ready(
    request: Request,
    deal_id: UUID,
    body: ContractReadyRequest,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    """Attach a rendered contract version and open the deal for signing."""
    _ = request, caller
    deal = await service.mark_contract_ready(
        deal_id,
        body.contract_version,
        contract_ref=body.contract_ref,
        esign_provider=body.esign_provider,
        esign_document_id=body.esign_document_id,
    )
    return DealResponse.from_deal(deal)


@router.post("/{deal_id}/decline", response_model=DealResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def decline_deal(
    request: Request,
    deal_id: UUID,
    body: StageReasonRequest,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    """A party withdrew. Outstanding signing links stop working."""
    _ = request, caller
    return DealResponse.from_deal(await service.decline(deal_id, body.reason))


@router.post("/{deal_id}/dispute", response_model=DealResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def raise_dispute(
    request: Request,
    deal_id: UUID,
    body: StageReasonRequest,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    _ = request, caller
    return DealResponse.from_deal(await service.raise_dispute(deal_id, body.reason))


@router.post("/{deal_id}/complete", response_model=DealResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def complete_deal(
    request: Request,
    deal_id: UUID,
    caller: ServiceCaller,
    service: SigningServiceDep,
) -> DealResponse:
    _ = request, caller
    return DealResponse.from_deal(await service.complete(deal_id))
