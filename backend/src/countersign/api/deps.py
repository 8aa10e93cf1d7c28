"""FastAPI dependencies for API routes."""

from typing import Annotated

from fastapi import Depends, Request

from countersign.api.middleware.auth import ServiceCaller, require_service_key
from countersign.api.ratelimit import get_client_ip
from countersign.config import get_settings
from countersign.domain.signing.factory import build_signing_service
from countersign.domain.signing.ledger import SigningProof
from countersign.domain.signing.workflow import SigningWorkflowService
from countersign.infrastructure.database.connection import SessionDep, get_session
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.infrastructure.delivery.factory import build_otp_delivery
from countersign.infrastructure.esign.base import ESignProvider
from countersign.infrastructure.esign.factory import build_esign_provider
from countersign.shared.clock import Clock, utc_now
from countersign.shared.user_agent import get_device_info


def get_esign_provider(request: Request) -> ESignProvider:
    """Get the shared provider instance (per FastAPI app)."""
    provider = getattr(request.app.state, "esign_provider", None)
    if provider is None:
        provider = build_esign_provider(get_settings())
        request.app.state.esign_provider = provider
    return provider


def get_otp_delivery(request: Request) -> OtpDelivery:
    """Get the shared one-time code delivery (per FastAPI app)."""
    delivery = getattr(request.app.state, "otp_delivery", None)
    if delivery is None:
        delivery = build_otp_delivery(get_settings())
        request.app.state.otp_delivery = delivery
    return delivery


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or utc_now


ESignProviderDep = Annotated[ESignProvider, Depends(get_esign_provider)]
OtpDeliveryDep = Annotated[OtpDelivery, Depends(get_otp_delivery)]


async def get_signing_service(
    session: SessionDep,
    provider: ESignProviderDep,
    otp_delivery: OtpDeliveryDep,
    clock: Annotated[Clock, Depends(get_clock)],
) -> SigningWorkflowService:
    """Get the signing workflow service for this request."""
    return build_signing_service(session, provider, otp_delivery=otp_delivery, clock=clock)


SigningServiceDep = Annotated[SigningWorkflowService, Depends(get_signing_service)]


def get_signing_proof(request: Request) -> SigningProof:
    """Audit evidence for a signature submitted through this request."""
    user_agent = request.headers.get("user-agent")
    return SigningProof(
        ip_address=get_client_ip(request),
        user_agent=user_agent[:512] if user_agent else None,
        device_info=get_device_info(user_agent),
    )


SigningProofDep = Annotated[SigningProof, Depends(get_signing_proof)]


__all__ = [
    "ESignProviderDep",
    "OtpDeliveryDep",
    "ServiceCaller",
    "SessionDep",
    "SigningProofDep",
    "SigningServiceDep",
    "get_esign_provider",
    "get_otp_delivery",
    "get_session",
    "get_signing_service",
    "require_service_key",
]
