"""Factory for the e-signature provider.

Providers hold an httpx.AsyncClient, so one instance is built at startup and
closed on shutdown rather than created per request.
"""

from __future__ import annotations

from countersign.config import Settings
from countersign.infrastructure.esign.base import ESignProvider
from countersign.infrastructure.esign.leegality import LeegalityProvider
from countersign.infrastructure.esign.mock_provider import MockESignProvider


def build_esign_provider(settings: Settings) -> ESignProvider:
    if settings.esign_provider == "leegality":
        return LeegalityProvider(
            base_url=settings.leegality_base_url,
            auth_token=settings.leegality_auth_token,
            private_salt=settings.leegality_private_salt,
            webhook_secret=settings.leegality_webhook_secret,
            timeout=settings.esign_timeout_seconds,
        )
    return MockESignProvider(webhook_secret=settings.leegality_webhook_secret or "mock-webhook-secret")


async def close_esign_provider(provider: ESignProvider | None) -> None:
    if provider is None:
        return
    await provider.close()
