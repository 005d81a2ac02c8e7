"""Create link visitor totals table.

Revision ID: 003
Revises: 002
Create Date: 2025-03-09

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the cached per-link unique visitor table."""
    op.create_table(
        "link_visitor_totals",
        sa.Column(
            "link_id",
            UUID(as_uuid=True),
            nullable=False,
            comment="UUID of the link",
        ),
        sa.Column(
            "unique_visitors",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Distinct hashed IPs across the last aggregated window",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("link_id", name=op.f("pk_link_visitor_totals")),
        schema="analytics",
    )


def downgrade() -> None:
    """Drop the link visitor totals table."""
    op.drop_table("link_visitor_totals", schema="analytics")
