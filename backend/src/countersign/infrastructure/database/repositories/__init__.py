"""Database repositories."""

from countersign.infrastructure.database.repositories.base import (
    BaseRepository,
    is_contention_error,
)
from countersign.infrastructure.database.repositories.deal import (
    DealEventRepository,
    DealRepository,
)
from countersign.infrastructure.database.repositories.signature import SignatureRepository
from countersign.infrastructure.database.repositories.signing_token import (
    SigningTokenRepository,
)

__all__ = [
    "BaseRepository",
    "is_contention_error",
    "DealRepository",
    "DealEventRepository",
    "SignatureRepository",
    "SigningTokenRepository",
]
