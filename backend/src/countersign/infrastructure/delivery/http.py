"""One-time code delivery through an HTTP mail relay.

POST {otp_delivery_url} with a bearer token. The relay owns templates and
retries; a non-2xx answer means the code was not handed off.
"""

from datetime import datetime
from uuid import UUID

import httpx

from countersign.infrastructure.database.models.deal import SignerRole
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.shared.exceptions import ExternalServiceError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)


class HttpOtpDelivery(OtpDelivery):
    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return "http"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_otp(
        self,
        email: str,
        code: str,
        expires_at: datetime,
        *,
        deal_id: UUID,
        role: SignerRole,
    ) -> None:
        if not self.url:
            raise ExternalServiceError("Code delivery is not configured")

        client = await self._get_client()
        payload = {
            "template": "signing_otp",
            "to": email,
            "code": code,
            "expires_at": expires_at.isoformat(),
            "deal_id": str(deal_id),
            "role": role.value,
        }
        try:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "otp_delivery_http_error",
                deal_id=str(deal_id),
                status_code=exc.response.status_code,
            )
            raise ExternalServiceError(
                "Could not send the verification code",
                details={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("otp_delivery_request_failed", deal_id=str(deal_id), error=str(exc))
            raise ExternalServiceError("Could not send the verification code") from exc
