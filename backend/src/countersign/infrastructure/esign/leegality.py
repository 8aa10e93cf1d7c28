"""Leegality e-signature client.

Only the status lookup and webhook verification are used here; document
upload and invitation creation belong to the contract renderer.

API: GET {base_url}/invite/{invitation_id}
Auth: ``Authorization: token <auth token>`` plus the private ``salt`` header.
Webhooks carry a hex HMAC-SHA256 of the raw body in ``x-leegality-signature``.
"""

import hashlib
import hmac
from datetime import datetime
from typing import Any

import httpx

from countersign.infrastructure.esign.base import (
    ESignProvider,
    ProviderStatus,
    ProviderSigningStatus,
    normalize_status,
)
from countersign.shared.exceptions import ProviderUnavailableError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)

LEEGALITY_SANDBOX_URL = "https://sandbox.leegality.com/api/v3"


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class LeegalityProvider(ESignProvider):
    """Status lookups against the Leegality API."""

    def __init__(
        self,
        base_url: str = LEEGALITY_SANDBOX_URL,
        auth_token: str = "",
        private_salt: str = "",
        webhook_secret: str = "",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.private_salt = private_salt
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return "leegality"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/json",
                "Authorization": f"token {self.auth_token}",
            }
            if self.private_salt:
                headers["salt"] = self.private_salt
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_status(self, document_id: str) -> ProviderStatus:
        if not self.auth_token:
            raise ProviderUnavailableError("Leegality is not configured")

        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/invite/{document_id}")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "leegality_status_http_error",
                document_id=document_id,
                status_code=exc.response.status_code,
            )
            raise ProviderUnavailableError(
                "Leegality status lookup failed",
                details={"status_code": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "leegality_status_request_failed",
                document_id=document_id,
                error=str(exc),
            )
            raise ProviderUnavailableError("Leegality is unreachable") from exc

        if not isinstance(payload, dict):
            raise ProviderUnavailableError("Unexpected Leegality response")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        # A numeric top-level "status" is the API call result, not the document status
        top_status = payload.get("status")
        raw_status = (
            (top_status if isinstance(top_status, str) else None)
            or data.get("status")
            or payload.get("invitationStatus")
        )
        status = normalize_status(raw_status)
        signed_at = None
        if status == ProviderSigningStatus.SIGNED:
            signed_at = _parse_timestamp(data.get("signedAt") or payload.get("signedAt"))

        return ProviderStatus(
            document_id=document_id,
            status=status,
            signed_at=signed_at,
            reference=data.get("invitationId") or document_id,
            raw_data=payload,
        )

    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        """Verify the HMAC-SHA256 signature of a webhook body."""
        if not self.webhook_secret or not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())
