"""Deal and deal event models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from countersign.infrastructure.database.models.base import Base, JSONType, TimestampMixin


class DealStage(str, Enum):
    """Coarse, persisted lifecycle label of a deal."""

    AWAITING_DETAILS = "awaiting_details"  # Contract content not yet available
    CONTRACT_READY = "contract_ready"  # Waiting for both signatures
    SIGNED = "signed"  # Both parties signed the current version
    NEEDS_CHANGES = "needs_changes"  # Dispute raised after signing
    DECLINED = "declined"  # Terminal: a party withdrew
    COMPLETED = "completed"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({DealStage.DECLINED, DealStage.COMPLETED})


class SignerRole(str, Enum):
    """The two signing parties of a deal."""

    CREATOR = "creator"
    COUNTERPARTY = "counterparty"  # The brand

    @property
    def other(self) -> "SignerRole":
        if self is SignerRole.CREATOR:
            return SignerRole.COUNTERPARTY
        return SignerRole.CREATOR


class DealEventType(str, Enum):
    """Audit events recorded against a deal."""

    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_REDEEMED = "TOKEN_REDEEMED"
    CREATOR_SIGNED = "CREATOR_SIGNED"
    COUNTERPARTY_SIGNED = "COUNTERPARTY_SIGNED"
    STAGE_CHANGED = "STAGE_CHANGED"
    PROVIDER_DECLINED = "PROVIDER_DECLINED"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"


class Deal(Base, TimestampMixin):
    """A brand deal that needs both parties' signatures."""

    __tablename__ = "deals"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    # Parties
    creator_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    creator_email: Mapped[str] = mapped_column(String(320), nullable=False)
    counterparty_name: Mapped[str] = mapped_column(String(255), nullable=False)
    counterparty_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Stage (written only by the stage machine)
    stage: Mapped[DealStage] = mapped_column(
        String(50),
        default=DealStage.AWAITING_DETAILS,
        nullable=False,
        index=True,
    )
    stage_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Contract supplied by the renderer
    contract_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contract_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # E-signature provider session for the counterparty
    esign_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    esign_document_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    # Contract version the provider document was created for
    esign_contract_version: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def email_for(self, role: SignerRole) -> str | None:
        if role == SignerRole.CREATOR:
            return self.creator_email
        return self.counterparty_email

    def name_for(self, role: SignerRole) -> str | None:
        if role == SignerRole.CREATOR:
            return self.creator_name
        return self.counterparty_name

    def __repr__(self) -> str:
        return f"<Deal {self.id} {self.stage}>"


class DealEvent(Base):
    """Append-only audit log entry for a deal."""

    __tablename__ = "deal_events"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event: Mapped[DealEventType] = mapped_column(String(50), nullable=False)
    event_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<DealEvent {self.event} deal={self.deal_id}>"
