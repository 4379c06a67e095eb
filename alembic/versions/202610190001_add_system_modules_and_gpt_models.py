"""add system modules and gpt models

Revision ID: 202610190001
Revises: 202610180001
Create Date: 2026-10-19 00:01:00
"""

import uuid
from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


DEFAULT_MODULES = (
    "crm",
    "projects",
    "emails",
    "employee",
    "invoice",
    "reports",
    "documents",
    "databox",
    "openai",
)


def upgrade() -> None:
    system_modules = op.create_table(
        "system_modules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_system_modules_name"),
    )
    op.bulk_insert(
        system_modules,
        [
            {"id": uuid.uuid4(), "name": name, "enabled": True, "position": position}
            for position, name in enumerate(DEFAULT_MODULES)
        ],
    )

    op.create_table(
        "ai_gpt_models",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="INACTIVE"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("model", name="uq_ai_gpt_models_model"),
    )
    op.create_index("ix_ai_gpt_models_status", "ai_gpt_models", ["status"])


def downgrade() -> None:
    op.drop_index("ix_ai_gpt_models_status", table_name="ai_gpt_models")
    op.drop_table("ai_gpt_models")
    op.drop_table("system_modules")
