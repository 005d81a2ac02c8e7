"""Create durable aggregate rollup tables.

Revision ID: 002
Revises: 001
Create Date: 2025-03-02

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Dimension columns per table; every one is part of the primary key
ROLLUP_TABLES: dict[str, list[sa.Column]] = {
    "analytics_daily": [],
    "analytics_geo": [
        sa.Column("country", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("city", sa.Text(), nullable=False, server_default=""),
    ],
    "analytics_referrers": [
        sa.Column(
            "referrer_domain",
            sa.String(255),
            nullable=False,
            comment="Referrer host without www., or 'direct' / 'unknown'",
        ),
    ],
    "analytics_devices": [
        sa.Column("device_type", sa.String(32), nullable=False, server_default="unknown"),
        sa.Column("browser", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("os", sa.String(64), nullable=False, server_default="unknown"),
    ],
    "analytics_utm": [
        sa.Column("utm_source", sa.Text(), nullable=False, server_default=""),
        sa.Column("utm_medium", sa.Text(), nullable=False, server_default=""),
        sa.Column("utm_campaign", sa.Text(), nullable=False, server_default=""),
    ],
    "analytics_custom_params": [
        sa.Column(
            "param_name",
            sa.String(32),
            nullable=False,
            comment="custom_param1, custom_param2 or custom_param3",
        ),
        sa.Column("param_value", sa.Text(), nullable=False),
    ],
}


def upgrade() -> None:
    """Create one rollup table per report dimension."""
    for table_name, dimensions in ROLLUP_TABLES.items():
        op.create_table(
            table_name,
            sa.Column(
                "link_id",
                UUID(as_uuid=True),
                nullable=False,
                comment="UUID of the link",
            ),
            sa.Column(
                "date",
                sa.Date(),
                nullable=False,
                comment="UTC calendar day of the clicks",
            ),
            *dimensions,
            sa.Column(
                "clicks",
                sa.Integer(),
                nullable=False,
                server_default="0",
                comment="Exact number of clicks",
            ),
            sa.Column(
                "unique_visitors",
                sa.Integer(),
                nullable=False,
                server_default="0",
                comment="Approximate unique visitors (distinct hashed IPs)",
            ),
            sa.PrimaryKeyConstraint(
                "link_id",
                "date",
                *(column.name for column in dimensions),
                name=op.f(f"pk_{table_name}"),
            ),
            schema="analytics",
        )

        op.create_index(
            f"ix_{table_name}_date",
            table_name,
            ["date"],
            schema="analytics",
        )


def downgrade() -> None:
    """Drop the rollup tables."""
    for table_name in reversed(list(ROLLUP_TABLES)):
        op.drop_index(f"ix_{table_name}_date", table_name=table_name, schema="analytics")
        op.drop_table(table_name, schema="analytics")
