"""Factory for one-time code delivery. Built once at startup, closed on shutdown."""

from __future__ import annotations

from countersign.config import Settings
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.infrastructure.delivery.http import HttpOtpDelivery
from countersign.infrastructure.delivery.mock import MockOtpDelivery


def build_otp_delivery(settings: Settings) -> OtpDelivery:
    if settings.otp_delivery == "http":
        return HttpOtpDelivery(
            url=settings.otp_delivery_url,
            token=settings.otp_delivery_token,
            timeout=settings.otp_delivery_timeout_seconds,
        )
    return MockOtpDelivery()


async def close_otp_delivery(delivery: OtpDelivery | None) -> None:
    if delivery is None:
        return
    await delivery.close()
