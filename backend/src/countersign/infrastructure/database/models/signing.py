"""Signing token and signature record models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from countersign.infrastructure.database.models.base import Base, JSONType, TimestampMixin
from countersign.infrastructure.database.models.deal import SignerRole


class TokenInvalidationReason(str, Enum):
    """Why a signing token stopped being valid."""

    CONSUMED = "consumed"  # Redeemed by its holder
    SUPERSEDED = "superseded"  # A newer token was issued for the same deal and role
    EXPIRED = "expired"  # Observed past expiry
    DEAL_DECLINED = "deal_declined"
    CONTRACT_REVISED = "contract_revised"


class SignatureSource(str, Enum):
    """Where a confirmed signature was observed."""

    LOCAL = "local"  # Signed through a redeemed signing link
    PROVIDER = "provider"  # Confirmed by the e-signature provider


class SigningToken(Base):
    """One issuance of a redeemable signing link.

    Only the HMAC of the token value is stored. At most one row per
    (deal, role) is valid at a time; the partial unique index enforces it.
    """

    __tablename__ = "signing_tokens"
    __table_args__ = (
        Index(
            "uq_signing_tokens_valid_deal_role",
            "deal_id",
            "role",
            unique=True,
            postgresql_where=text("is_valid"),
            sqlite_where=text("is_valid"),
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    deal_id: Mapped[UUID] = mapped_column(
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[SignerRole] = mapped_column(String(20), nullable=False)
    signer_email: Mapped[str] = mapped_column(String(320), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    invalidated_reason: Mapped[TokenInvalidationReason | None] = mapped_column(
        String(30), nullable=True
    )

    # Email one-time code step-up; only the HMAC of the code is stored
    otp_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    otp_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    otp_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    otp_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SigningToken deal={self.deal_id} role={self.role} valid={self.is_valid}>"


class SignatureRecord(Base, TimestampMixin):
    """One party's completed signature on one contract version of a deal.

    Rows are never updated once written. A corrected contract gets a new
    version and new rows.
    """

    __tablename__ = "signature_records"
    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "role",
            "contract_version",
            name="uq_signature_records_deal_role_version",
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)

    deal_id: Mapped[UUID] = mapped_column(
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[SignerRole] = mapped_column(String(20), nullable=False)
    contract_version: Mapped[str] = mapped_column(String(100), nullable=False)

    # Signer identity
    signer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    signer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    signer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    signed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Audit trail
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    device_info: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    otp_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    source: Mapped[SignatureSource] = mapped_column(
        String(20), default=SignatureSource.LOCAL, nullable=False
    )
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<SignatureRecord deal={self.deal_id} role={self.role} v={self.contract_version}>"
