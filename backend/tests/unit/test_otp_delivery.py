"""Unit tests for signer one-time code delivery."""

import json
import uuid
from datetime import UTC, datetime

import httpx
import pytest

from countersign.config import Settings
from countersign.infrastructure.database.models import SignerRole
from countersign.infrastructure.delivery.factory import build_otp_delivery, close_otp_delivery
from countersign.infrastructure.delivery.http import HttpOtpDelivery
from countersign.infrastructure.delivery.mock import MockOtpDelivery
from countersign.shared.exceptions import ExternalServiceError

EXPIRES_AT = datetime(2026, 3, 2, 9, 10, tzinfo=UTC)
DEAL_ID = uuid.UUID("6f1c2a52-8f4e-4a39-9b57-0d3f3c1d2e11")


def _delivery(handler, **kwargs) -> HttpOtpDelivery:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpOtpDelivery(url="https://mail.test/otp", client=client, **kwargs)


async def _send(delivery) -> None:
    await delivery.send_otp(
        "brand@example.com", "042917", EXPIRES_AT, deal_id=DEAL_ID, role=SignerRole.COUNTERPARTY
    )


class TestHttpDelivery:
    @pytest.mark.asyncio
    async def test_posts_code_to_relay(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"queued": True})

        await _send(_delivery(handler))

        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == "https://mail.test/otp"
        payload = json.loads(request.content)
        assert payload["to"] == "brand@example.com"
        assert payload["code"] == "042917"
        assert payload["role"] == "counterparty"
        assert payload["deal_id"] == str(DEAL_ID)
        assert payload["expires_at"] == EXPIRES_AT.isoformat()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        delivery = _delivery(lambda request: httpx.Response(503))

        with pytest.raises(ExternalServiceError) as exc_info:
            await _send(delivery)

        assert exc_info.value.details == {"status_code": 503}

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExternalServiceError):
            await _send(_delivery(handler))

    @pytest.mark.asyncio
    async def test_not_configured(self):
        with pytest.raises(ExternalServiceError):
            await _send(HttpOtpDelivery(url=""))

    @pytest.mark.asyncio
    async def test_default_client_sends_bearer_token(self):
        delivery = HttpOtpDelivery(url="https://mail.test/otp", token="relay-token")

        client = await delivery._get_client()

        assert client.headers["Authorization"] == "Bearer relay-token"
        await delivery.close()


class TestMockDelivery:
    @pytest.mark.asyncio
    async def test_records_codes(self):
        delivery = MockOtpDelivery()

        await _send(delivery)

        assert delivery.last_code_for("brand@example.com") == "042917"
        assert delivery.last_code_for("creator@example.com") is None

    @pytest.mark.asyncio
    async def test_outage(self):
        delivery = MockOtpDelivery()
        delivery.available = False

        with pytest.raises(ExternalServiceError):
            await _send(delivery)
        assert delivery.sent == []


class TestFactory:
    @pytest.mark.asyncio
    async def test_builds_http(self):
        settings = Settings(
            _env_file=None,
            app_secret_key="k",
            otp_delivery="http",
            otp_delivery_url="https://mail.test/otp",
            otp_delivery_timeout_seconds=3.0,
        )

        delivery = build_otp_delivery(settings)

        assert isinstance(delivery, HttpOtpDelivery)
        assert delivery.timeout == 3.0
        await close_otp_delivery(delivery)

    @pytest.mark.asyncio
    async def test_builds_mock(self):
        delivery = build_otp_delivery(Settings(_env_file=None, app_secret_key="k"))

        assert delivery.name == "mock"
        await close_otp_delivery(delivery)
        await close_otp_delivery(None)
