"""init handoff schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    interaction_direction = sa.Enum("inbound", "outbound", name="interaction_direction")
    queue_status = sa.Enum("waiting", "locked", "done", "cancelled", name="queue_status")
    escalation_priority = sa.Enum("high", "medium", "low", name="escalation_priority")

    bind = op.get_bind()
    interaction_direction.create(bind, checkfirst=True)
    queue_status.create(bind, checkfirst=True)
    escalation_priority.create(bind, checkfirst=True)

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("address", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("metadata_json", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "address", name="uq_customers_workspace_address"),
    )
    op.create_index("ix_customers_workspace_id", "customers", ["workspace_id"], unique=False)

    op.create_table(
        "conversation_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("state", sa.String(length=100), nullable=False),
        sa.Column("context", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workspace_id", "customer_id", name="uq_conversation_states_workspace_customer"
        ),
    )

    op.create_table(
        "interactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("inbound", "outbound", name="interaction_direction", create_type=False),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=50), nullable=False),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("state", sa.String(length=100), nullable=False),
        sa.Column("operator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("external_event_id", sa.String(length=200), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_interactions_customer_created",
        "interactions",
        ["workspace_id", "customer_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_interactions_external_event",
        "interactions",
        ["workspace_id", "customer_id", "external_event_id"],
        unique=True,
        postgresql_where=sa.text("external_event_id IS NOT NULL"),
    )

    op.create_table(
        "queue_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "waiting", "locked", "done", "cancelled", name="queue_status", create_type=False
            ),
            nullable=False,
            server_default=sa.text("'waiting'"),
        ),
        sa.Column(
            "priority",
            sa.Enum("high", "medium", "low", name="escalation_priority", create_type=False),
            nullable=False,
            server_default=sa.text("'medium'"),
        ),
        sa.Column("operator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("resolved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
        sa.CheckConstraint(
            "(status = 'locked' AND operator_id IS NOT NULL AND lock_expires_at IS NOT NULL)"
            " OR (status <> 'locked' AND operator_id IS NULL AND lock_expires_at IS NULL)",
            name="ck_queue_entries_lock_fields",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_queue_entries_active_customer",
        "queue_entries",
        ["workspace_id", "customer_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('waiting', 'locked')"),
    )
    op.create_index(
        "ix_queue_entries_workspace_status_created",
        "queue_entries",
        ["workspace_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_queue_entries_lock_expires_at", "queue_entries", ["lock_expires_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_queue_entries_lock_expires_at", table_name="queue_entries")
    op.drop_index("ix_queue_entries_workspace_status_created", table_name="queue_entries")
    op.drop_index("uq_queue_entries_active_customer", table_name="queue_entries")
    op.drop_table("queue_entries")

    op.drop_index("uq_interactions_external_event", table_name="interactions")
    op.drop_index("ix_interactions_customer_created", table_name="interactions")
    op.drop_table("interactions")

    op.drop_table("conversation_states")

    op.drop_index("ix_customers_workspace_id", table_name="customers")
    op.drop_table("customers")

    bind = op.get_bind()
    sa.Enum(name="escalation_priority").drop(bind, checkfirst=True)
    sa.Enum(name="queue_status").drop(bind, checkfirst=True)
    sa.Enum(name="interaction_direction").drop(bind, checkfirst=True)
