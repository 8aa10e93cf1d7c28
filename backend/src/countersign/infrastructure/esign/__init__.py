"""E-signature provider integrations."""

from countersign.infrastructure.esign.base import (
    ESignProvider,
    ProviderSigningStatus,
    ProviderStatus,
    normalize_status,
)

__all__ = [
    "ESignProvider",
    "ProviderSigningStatus",
    "ProviderStatus",
    "normalize_status",
]
