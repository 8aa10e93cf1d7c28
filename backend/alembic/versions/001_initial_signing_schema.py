"""Initial signing schema: deals, deal events, signing tokens, signature records.

Revision ID: 001_initial_signing_schema
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic
revision: str = "001_initial_signing_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "deals",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("creator_name", sa.String(255), nullable=True),
        sa.Column("creator_email", sa.String(320), nullable=False),
        sa.Column("counterparty_name", sa.String(255), nullable=False),
        sa.Column("counterparty_email", sa.String(320), nullable=True),
        sa.Column("stage", sa.String(50), nullable=False, server_default="awaiting_details"),
        sa.Column("stage_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contract_version", sa.String(100), nullable=True),
        sa.Column("contract_ref", sa.String(500), nullable=True),
        sa.Column("esign_provider", sa.String(50), nullable=True),
        sa.Column("esign_document_id", sa.String(255), nullable=True),
        sa.Column("esign_contract_version", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("esign_document_id", name="uq_deals_esign_document_id"),
    )
    op.create_index("ix_deals_stage", "deals", ["stage"])

    op.create_table(
        "deal_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("deal_id", sa.UUID(), nullable=False),
        sa.Column("event", sa.String(50), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_deal_events_deal_id", "deal_events", ["deal_id"])

    op.create_table(
        "signing_tokens",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("deal_id", sa.UUID(), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("signer_email", sa.String(320), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("invalidated_reason", sa.String(30), nullable=True),
        sa.Column("otp_hash", sa.String(64), nullable=True),
        sa.Column("otp_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("otp_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("otp_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash", name="uq_signing_tokens_token_hash"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_signing_tokens_deal_id", "signing_tokens", ["deal_id"])
    op.create_index("ix_signing_tokens_expires_at", "signing_tokens", ["expires_at"])
    # At most one valid token per (deal, role)
    op.create_index(
        "uq_signing_tokens_valid_deal_role",
        "signing_tokens",
        ["deal_id", "role"],
        unique=True,
        postgresql_where=sa.text("is_valid"),
    )

    op.create_table(
        "signature_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("deal_id", sa.UUID(), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("contract_version", sa.String(100), nullable=False),
        sa.Column("signer_name", sa.String(255), nullable=False),
        sa.Column("signer_email", sa.String(320), nullable=True),
        sa.Column("signer_phone", sa.String(32), nullable=True),
        sa.Column("signed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("device_info", postgresql.JSONB(), nullable=True),
        sa.Column("otp_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="local"),
        sa.Column("provider_reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deal_id",
            "role",
            "contract_version",
            name="uq_signature_records_deal_role_version",
        ),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_signature_records_deal_id", "signature_records", ["deal_id"])


def downgrade() -> None:
    op.drop_index("ix_signature_records_deal_id", table_name="signature_records")
    op.drop_table("signature_records")
    op.drop_index("uq_signing_tokens_valid_deal_role", table_name="signing_tokens")
    op.drop_index("ix_signing_tokens_expires_at", table_name="signing_tokens")
    op.drop_index("ix_signing_tokens_deal_id", table_name="signing_tokens")
    op.drop_table("signing_tokens")
    op.drop_index("ix_deal_events_deal_id", table_name="deal_events")
    op.drop_table("deal_events")
    op.drop_index("ix_deals_stage", table_name="deals")
    op.drop_table("deals")
