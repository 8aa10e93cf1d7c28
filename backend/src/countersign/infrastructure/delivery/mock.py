"""In-memory one-time code delivery for development and testing."""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from countersign.infrastructure.database.models.deal import SignerRole
from countersign.infrastructure.delivery.base import OtpDelivery
from countersign.shared.exceptions import ExternalServiceError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SentOtp:
    email: str
    code: str
    expires_at: datetime
    deal_id: UUID
    role: SignerRole


class MockOtpDelivery(OtpDelivery):
    """Keeps sent codes in memory. Setting `available = False` simulates an outage."""

    def __init__(self) -> None:
        self.available = True
        self.sent: list[SentOtp] = []

    @property
    def name(self) -> str:
        return "mock"

    def last_code_for(self, email: str) -> str | None:
        for sent in reversed(self.sent):
            if sent.email == email:
                return sent.code
        return None

    async def send_otp(
        self,
        email: str,
        code: str,
        expires_at: datetime,
        *,
        deal_id: UUID,
        role: SignerRole,
    ) -> None:
        if not self.available:
            raise ExternalServiceError("Mock code delivery is unavailable")
        self.sent.append(SentOtp(email, code, expires_at, deal_id, role))
        logger.debug("mock_otp_sent", deal_id=str(deal_id), role=role.value)
