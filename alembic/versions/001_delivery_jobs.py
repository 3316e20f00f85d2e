"""Delivery jobs and product catalog.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Delivery jobs - shared store polled by every worker process
    op.create_table(
        "delivery_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("queue_name", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("state", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="2"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("stalled_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delay_until", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("worker_id", sa.String(100)),
        sa.Column("progress", postgresql.JSONB),
        sa.Column("result", postgresql.JSONB),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_delivery_jobs_claim", "delivery_jobs",
        ["queue_name", "state", "priority", "delay_until"],
    )
    op.create_index(
        "ix_delivery_jobs_retention", "delivery_jobs",
        ["queue_name", "state", "completed_at"],
    )

    # Product catalog
    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("category", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("price", sa.Float),
        sa.Column("tags", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_products_owner_created", "products", ["owner_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_products_owner_created", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_delivery_jobs_retention", table_name="delivery_jobs")
    op.drop_index("ix_delivery_jobs_claim", table_name="delivery_jobs")
    op.drop_table("delivery_jobs")
