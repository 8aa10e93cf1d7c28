"""Base classes for e-signature providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ProviderSigningStatus(str, Enum):
    """Normalized provider document status."""

    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"


# Raw provider vocabularies mapped onto the three statuses above
_SIGNED_ALIASES = {"signed", "completed", "complete", "document.signed"}
_DECLINED_ALIASES = {"declined", "rejected", "failed", "expired", "cancelled", "document.failed"}


def normalize_status(raw: Any) -> ProviderSigningStatus:
    """Map a provider status (typed or raw vocabulary) onto ProviderSigningStatus."""
    if isinstance(raw, ProviderSigningStatus):
        return raw
    # str() of a str-mixin enum member is "Class.MEMBER" on current Pythons
    value = str(getattr(raw, "value", raw) or "").strip().lower()
    if value in _SIGNED_ALIASES:
        return ProviderSigningStatus.SIGNED
    if value in _DECLINED_ALIASES:
        return ProviderSigningStatus.DECLINED
    return ProviderSigningStatus.PENDING


@dataclass
class ProviderStatus:
    """Status of one provider signing session."""

    document_id: str
    status: ProviderSigningStatus
    signed_at: datetime | None = None
    reference: str | None = None  # Provider-side invitation/signer ID
    raw_data: dict[str, Any] | None = None


class ESignProvider(ABC):
    """Base class for e-signature providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        pass

    @abstractmethod
    async def get_status(self, document_id: str) -> ProviderStatus:
        """Look up the signing status of a document.

        Raises:
            ProviderUnavailableError: The provider gave no usable answer.
        """
        pass

    @abstractmethod
    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        """Check a webhook payload signature."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
