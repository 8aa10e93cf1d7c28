"""SQLAlchemy ORM models."""

from countersign.infrastructure.database.models.base import Base, TimestampMixin
from countersign.infrastructure.database.models.deal import (
    TERMINAL_STAGES,
    Deal,
    DealEvent,
    DealEventType,
    DealStage,
    SignerRole,
)
from countersign.infrastructure.database.models.signing import (
    SignatureRecord,
    SignatureSource,
    SigningToken,
    TokenInvalidationReason,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Deal",
    "DealEvent",
    "DealEventType",
    "DealStage",
    "SignerRole",
    "TERMINAL_STAGES",
    "SigningToken",
    "TokenInvalidationReason",
    "SignatureRecord",
    "SignatureSource",
]
