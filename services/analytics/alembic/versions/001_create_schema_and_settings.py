"""Create analytics schema and settings table.

Revision ID: 001
Revises:
Create Date: 2025-03-02

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the analytics schema and the key/value settings table."""
    op.execute("CREATE SCHEMA IF NOT EXISTS analytics")

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column(
            "value",
            JSONB(),
            nullable=False,
            comment='JSON document, e.g. {"enabled": true}',
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_by",
            sa.String(255),
            nullable=True,
            comment="Who last changed the setting",
        ),
        sa.PrimaryKeyConstraint("key", name=op.f("pk_settings")),
        schema="analytics",
    )

    # Aggregation ships disabled with an 83-day threshold
    op.execute(
        """
        INSERT INTO analytics.settings (key, value) VALUES
            ('analytics_aggregation_enabled', '{"enabled": false}'),
            ('analytics_thresholds', '{"threshold_days": 83}')
        ON CONFLICT (key) DO NOTHING
        """
    )


def downgrade() -> None:
    """Drop the settings table and the analytics schema."""
    op.drop_table("settings", schema="analytics")
    # WARNING: This will delete all data in the analytics schema!
    op.execute("DROP SCHEMA IF EXISTS analytics CASCADE")
