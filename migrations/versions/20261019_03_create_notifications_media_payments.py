"""create booking notifications, media items and payments

Revision ID: 20261019_03
Revises: 20261019_02
Create Date: 2026-10-19 09:20:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_03"
down_revision: Union[str, None] = "20261019_02"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "booking_notifications",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=True),
        sa.Column("caregiver_profile_id", sa.Integer(), nullable=True),
        sa.Column("channel", sa.String(length=10), nullable=False, server_default="email"),
        sa.Column("status", sa.String(length=10), nullable=False, server_default="pending"),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["caregiver_profile_id"], ["caregiver_profiles.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("booking_id", "caregiver_profile_id", "channel", name="booking_notify_unique"),
    )
    op.create_index("ix_booking_notifications_booking_id", "booking_notifications", ["booking_id"], unique=False)
    op.create_index(
        "ix_booking_notifications_caregiver_profile_id",
        "booking_notifications",
        ["caregiver_profile_id"],
        unique=False,
    )
    op.create_index(
        "ix_booking_notifications_status_scheduled_for",
        "booking_notifications",
        ["status", "scheduled_for"],
        unique=False,
    )

    op.create_table(
        "media_items",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("uuid", sa.String(length=36), nullable=False),
        sa.Column("owner_kind", sa.String(length=20), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("file_url", sa.String(length=1024), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("conversions", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("uploaded_by", sa.Integer(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("uuid", name="uq_media_items_uuid"),
    )
    op.create_index("ix_media_items_owner", "media_items", ["owner_kind", "owner_id"], unique=False)
    op.create_index("ix_media_items_status", "media_items", ["status"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("receipt_url", sa.String(length=1024), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("stripe_payment_intent_id", name="uq_payments_stripe_payment_intent_id"),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_payments_booking_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_media_items_status", table_name="media_items")
    op.drop_index("ix_media_items_owner", table_name="media_items")
    op.drop_table("media_items")
    op.drop_index("ix_booking_notifications_status_scheduled_for", table_name="booking_notifications")
    op.drop_index("ix_booking_notifications_caregiver_profile_id", table_name="booking_notifications")
    op.drop_index("ix_booking_notifications_booking_id", table_name="booking_notifications")
    op.drop_table("booking_notifications")
