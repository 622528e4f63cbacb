"""create booking slots, bookings, status history and slot reservations

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19 09:10:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "booking_slots",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("service_id", sa.Integer(), nullable=False),
        sa.Column("facility_id", sa.Integer(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("available_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("lock_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("service_id", "facility_id", "start_at", "end_at", name="booking_slots_unique_time"),
        sa.CheckConstraint(
            "available_count >= 0 AND available_count <= capacity",
            name="ck_booking_slots_available_count_bounds",
        ),
    )
    op.create_index("ix_booking_slots_service_id", "booking_slots", ["service_id"], unique=False)
    op.create_index("ix_booking_slots_facility_id", "booking_slots", ["facility_id"], unique=False)
    op.create_index("ix_booking_slots_start_at", "booking_slots", ["start_at"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("uuid", sa.String(length=36), nullable=False),
        sa.Column("slot_id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("guest_email", sa.String(length=254), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_via", sa.String(length=20), nullable=False, server_default="web"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["slot_id"], ["booking_slots.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("(client_id IS NULL) <> (guest_email IS NULL)", name="ck_bookings_single_requester"),
    )
    op.create_index("ix_bookings_uuid", "bookings", ["uuid"], unique=True)
    op.create_index("ix_bookings_slot_id", "bookings", ["slot_id"], unique=False)
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)

    op.create_table(
        "booking_status_history",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=False),
        sa.Column("changed_by", sa.Integer(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["changed_by"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_booking_status_history_booking_id", "booking_status_history", ["booking_id"], unique=False)

    op.create_table(
        "slot_reservations",
        sa.Column("id", sa.Integer(), sa.Identity(), primary_key=True, nullable=False),
        sa.Column("slot_id", sa.Integer(), nullable=False),
        sa.Column("reserved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("reserved_for_client_id", sa.Integer(), nullable=True),
        sa.Column("guest_email", sa.String(length=254), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["slot_id"], ["booking_slots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reserved_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["reserved_for_client_id"], ["clients.id"]),
        sa.UniqueConstraint("slot_id", "reserved_for_client_id", name="uq_slot_reservations_slot_client"),
        sa.UniqueConstraint("slot_id", "guest_email", name="uq_slot_reservations_slot_guest"),
    )
    op.create_index("ix_slot_reservations_slot_id", "slot_reservations", ["slot_id"], unique=False)
    op.create_index("ix_slot_reservations_expires_at", "slot_reservations", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_slot_reservations_expires_at", table_name="slot_reservations")
    op.drop_index("ix_slot_reservations_slot_id", table_name="slot_reservations")
    op.drop_table("slot_reservations")
    op.drop_index("ix_booking_status_history_booking_id", table_name="booking_status_history")
    op.drop_table("booking_status_history")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_client_id", table_name="bookings")
    op.drop_index("ix_bookings_slot_id", table_name="bookings")
    op.drop_index("ix_bookings_uuid", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_booking_slots_start_at", table_name="booking_slots")
    op.drop_index("ix_booking_slots_facility_id", table_name="booking_slots")
    op.drop_index("ix_booking_slots_service_id", table_name="booking_slots")
    op.drop_table("booking_slots")
