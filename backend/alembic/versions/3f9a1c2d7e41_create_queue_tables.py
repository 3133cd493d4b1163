"""create_ticket_accounts_concurrency_limits_and_queue_items

Revision ID: 3f9a1c2d7e41
Revises:
Create Date: 2026-10-17 09:12:31.408215

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7e41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLModel's default Enum mapping.
# Types are created once up front; columns reference them without re-creating.
model_type_enum = postgresql.ENUM("IMAGE", "VIDEO", name="modeltype", create_type=False)
queue_status_enum = postgresql.ENUM(
    "QUEUED",
    "PROCESSING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    name="queuestatus",
    create_type=False,
)


def upgrade() -> None:
    """Create ticket_accounts, concurrency_limits and queue_items tables."""
    model_type_enum.create(op.get_bind(), checkfirst=True)
    queue_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "ticket_accounts",
        sa.Column("user_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("reserved", sa.Integer(), nullable=False),
        sa.Column("total_bought", sa.Integer(), nullable=False),
        sa.Column("total_used", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_ticket_accounts_balance_non_negative"),
        sa.CheckConstraint("reserved >= 0", name="ck_ticket_accounts_reserved_non_negative"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "concurrency_limits",
        sa.Column("model_id", sa.String(length=100), nullable=False),
        sa.Column("model_type", model_type_enum, nullable=False),
        sa.Column("max_concurrent", sa.Integer(), nullable=False),
        sa.Column("current_active", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "max_concurrent BETWEEN 1 AND 999", name="ck_concurrency_limits_max_range"
        ),
        sa.CheckConstraint(
            "current_active >= 0", name="ck_concurrency_limits_active_non_negative"
        ),
        sa.PrimaryKeyConstraint("model_id"),
    )

    op.create_table(
        "queue_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.String(length=100), nullable=False),
        sa.Column("model_type", model_type_enum, nullable=False),
        sa.Column("status", queue_status_enum, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("ticket_cost", sa.Integer(), nullable=False),
        sa.Column("reservation_held", sa.Boolean(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("result_image_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_items_user_id", "queue_items", ["user_id"])
    op.create_index("ix_queue_items_status", "queue_items", ["status"])
    op.create_index("ix_queue_items_model_status", "queue_items", ["model_id", "status"])


def downgrade() -> None:
    """Drop queue tables and their enum types."""
    op.drop_index("ix_queue_items_model_status", table_name="queue_items")
    op.drop_index("ix_queue_items_status", table_name="queue_items")
    op.drop_index("ix_queue_items_user_id", table_name="queue_items")
    op.drop_table("queue_items")
    op.drop_table("concurrency_limits")
    op.drop_table("ticket_accounts")
    queue_status_enum.drop(op.get_bind(), checkfirst=True)
    model_type_enum.drop(op.get_bind(), checkfirst=True)
