"""In-memory e-signature provider for development and testing."""

import hashlib
import hmac
from datetime import datetime

from countersign.infrastructure.esign.base import (
    ESignProvider,
    ProviderSigningStatus,
    ProviderStatus,
)
from countersign.shared.exceptions import ProviderUnavailableError


class MockESignProvider(ESignProvider):
    """Mock provider.

    Documents are pending until `mark_signed` or `mark_declined` is called.
    Setting `available = False` simulates an outage.
    """

    def __init__(self, webhook_secret: str = "mock-webhook-secret"):
        self.webhook_secret = webhook_secret
        self.available = True
        self.calls: list[str] = []
        self._statuses: dict[str, ProviderStatus] = {}

    @property
    def name(self) -> str:
        return "mock"

    def mark_signed(self, document_id: str, signed_at: datetime | None = None) -> None:
        self._statuses[document_id] = ProviderStatus(
            document_id=document_id,
            status=ProviderSigningStatus.SIGNED,
            signed_at=signed_at,
            reference=f"mock-{document_id}",
        )

    def mark_declined(self, document_id: str) -> None:
        self._statuses[document_id] = ProviderStatus(
            document_id=document_id,
            status=ProviderSigningStatus.DECLINED,
        )

    async def get_status(self, document_id: str) -> ProviderStatus:
        self.calls.append(document_id)
        if not self.available:
            raise ProviderUnavailableError("Mock provider is unavailable")
        return self._statuses.get(
            document_id,
            ProviderStatus(document_id=document_id, status=ProviderSigningStatus.PENDING),
        )

    def sign_payload(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign_payload(body), signature)
