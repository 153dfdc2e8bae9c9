"""Initial schema for card delivery tracking.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- delivery_requests (delivery lifecycle state, one row per card delivery job)
- delivery_status_history (append-only status timeline)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: Initial card delivery schema."""
    # Create enum types first
    delivery_type = postgresql.ENUM(
        "delivery", "pickup", name="delivery_type", create_type=False
    )
    delivery_type.create(op.get_bind(), checkfirst=True)

    time_slot = postgresql.ENUM(
        "morning", "afternoon", "evening", name="time_slot", create_type=False
    )
    time_slot.create(op.get_bind(), checkfirst=True)

    delivery_state = postgresql.ENUM(
        "requested",
        "printing",
        "printed",
        "out_for_delivery",
        "delivered",
        "delivery_failed",
        "pickup_required",
        name="delivery_state",
        create_type=False,
    )
    delivery_state.create(op.get_bind(), checkfirst=True)

    failure_reason = postgresql.ENUM(
        "not_home", "wrong_address", "refused", name="failure_reason", create_type=False
    )
    failure_reason.create(op.get_bind(), checkfirst=True)

    actor_type = postgresql.ENUM(
        "resident", "staff", "system", name="actor_type", create_type=False
    )
    actor_type.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # Delivery requests
    # =========================================================================
    op.create_table(
        "delivery_requests",
        sa.Column(
            "request_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("card_id", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("service_area_code", sa.String(50), nullable=False),
        sa.Column("delivery_type", delivery_type, nullable=False),
        # Destination (nullable for pickup requests)
        sa.Column("region", sa.String(255), nullable=True),
        sa.Column("region_code", sa.String(50), nullable=True),
        sa.Column("city", sa.String(255), nullable=True),
        sa.Column("city_code", sa.String(50), nullable=True),
        sa.Column("area", sa.String(255), nullable=True),
        sa.Column("area_code", sa.String(50), nullable=True),
        sa.Column("street", sa.String(500), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("landmark", sa.String(500), nullable=True),
        sa.Column("preferred_date", sa.Date(), nullable=True),
        sa.Column("preferred_time_slot", time_slot, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("state", delivery_state, nullable=False),
        sa.Column("failure_reason", failure_reason, nullable=True),
        sa.Column("failed_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("updated_photo_ref", sa.String(1000), nullable=True),
        sa.Column("delivery_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_photo_proof", sa.String(1000), nullable=True),
        sa.Column("delivery_signature", sa.String(1000), nullable=True),
        sa.Column("assigned_staff_id", sa.String(100), nullable=True),
        sa.Column("assigned_staff_name", sa.String(255), nullable=True),
        sa.Column("print_batch_id", sa.String(100), nullable=True),
        sa.Column("sent_to_print_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("printed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("out_for_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.PrimaryKeyConstraint("request_id", name=op.f("pk_delivery_requests")),
    )
    for column in (
        "card_id",
        "owner_id",
        "service_area_code",
        "state",
        "created_at",
        "print_batch_id",
    ):
        op.create_index(
            op.f(f"ix_delivery_requests_{column}"),
            "delivery_requests",
            [column],
            unique=False,
        )

    # =========================================================================
    # Status history (append-only)
    # =========================================================================
    op.create_table(
        "delivery_status_history",
        sa.Column(
            "entry_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        _timestamp("created_at"),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("previous_state", delivery_state, nullable=True),
        sa.Column("new_state", delivery_state, nullable=False),
        sa.Column("actor_type", actor_type, nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=False),
        sa.Column("actor_name", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("batch_id", sa.String(100), nullable=True),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["delivery_requests.request_id"],
            name=op.f("fk_delivery_status_history_request_id_delivery_requests"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_delivery_status_history")),
    )
    op.create_index(
        op.f("ix_delivery_status_history_request_id"),
        "delivery_status_history",
        ["request_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_delivery_status_history_created_at"),
        "delivery_status_history",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: Initial card delivery schema."""
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("delivery_status_history")
    op.drop_table("delivery_requests")

    op.execute("DROP TYPE IF EXISTS actor_type")
    op.execute("DROP TYPE IF EXISTS failure_reason")
    op.execute("DROP TYPE IF EXISTS delivery_state")
    op.execute("DROP TYPE IF EXISTS time_slot")
    op.execute("DROP TYPE IF EXISTS delivery_type")
