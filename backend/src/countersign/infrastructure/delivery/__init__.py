"""Delivery of signer one-time codes."""

from countersign.infrastructure.delivery.base import OtpDelivery

__all__ = ["OtpDelivery"]
