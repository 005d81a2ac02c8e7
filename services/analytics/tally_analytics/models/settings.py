"""Key/value settings persisted in the analytics schema."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tally_analytics.core.database import Base


class Setting(Base):
    """A single tenant-wide setting stored as a JSON document."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        comment="JSON document, e.g. {\"enabled\": true}",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    updated_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Who last changed the setting",
    )

    __table_args__ = ({"schema": "analytics"},)

    def __repr__(self) -> str:
        return f"<Setting {self.key}={self.value}>"
