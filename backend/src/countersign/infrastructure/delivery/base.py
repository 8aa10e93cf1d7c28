"""One-time code delivery interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from countersign.infrastructure.database.models.deal import SignerRole


class OtpDelivery(ABC):
    """Sends a signer's one-time code to their email address."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def send_otp(
        self,
        email: str,
        code: str,
        expires_at: datetime,
        *,
        deal_id: UUID,
        role: SignerRole,
    ) -> None:
        """Hand the code to the mail channel.

        Raises:
            ExternalServiceError: The code could not be handed off.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
