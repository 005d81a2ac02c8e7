"""Durable aggregate rollups of telemetry click events.

Every table is keyed by (link_id, date, dimension...) and the full primary key
is the conflict target for upserts. Dimension columns are NOT NULL: an absent
value is stored as ``''`` (or ``'unknown'``) so that two rows for the same
missing value collide instead of coexisting as distinct NULLs.
"""

import datetime as dt
from uuid import UUID

from sqlalchemy import Date, DateTime, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from tally_analytics.core.database import Base


class AggregateColumns:
    """Columns shared by every per-day rollup table."""

    link_id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        comment="UUID of the link",
    )
    date: Mapped[dt.date] = mapped_column(
        Date,
        primary_key=True,
        comment="UTC calendar day of the clicks",
    )
    clicks: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Exact number of clicks",
    )
    unique_visitors: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Approximate unique visitors (distinct hashed IPs)",
    )


class DailyAggregate(AggregateColumns, Base):
    """Clicks per link per day."""

    __tablename__ = "analytics_daily"

    __table_args__ = (
        Index("ix_analytics_daily_date", "date"),
        {"schema": "analytics"},
    )

    def __repr__(self) -> str:
        return f"<DailyAggregate {self.link_id} date={self.date} clicks={self.clicks}>"


class GeoAggregate(AggregateColumns, Base):
    __tablename__ = "analytics_geo"

    country: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default="unknown",
        comment="ISO 3166-1 alpha-2 country code or 'unknown'",
    )
    city: Mapped[str] = mapped_column(
        Text,
        primary_key=True,
        default="",
        comment="City name, empty when unknown",
    )

    __table_args__ = (
        Index("ix_analytics_geo_date", "date"),
        {"schema": "analytics"},
    )


class ReferrerAggregate(AggregateColumns, Base):
    __tablename__ = "analytics_referrers"

    referrer_domain: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Referrer host without www., or 'direct' / 'unknown'",
    )

    __table_args__ = (
        Index("ix_analytics_referrers_date", "date"),
        {"schema": "analytics"},
    )


class DeviceAggregate(AggregateColumns, Base):
    __tablename__ = "analytics_devices"

    device_type: Mapped[str] = mapped_column(String(32), primary_key=True, default="unknown")
    browser: Mapped[str] = mapped_column(String(64), primary_key=True, default="unknown")
    os: Mapped[str] = mapped_column(String(64), primary_key=True, default="unknown")

    __table_args__ = (
        Index("ix_analytics_devices_date", "date"),
        {"schema": "analytics"},
    )


class UtmAggregate(AggregateColumns, Base):
    """Campaign rollup. Only clicks carrying at least one UTM value are counted."""

    __tablename__ = "analytics_utm"

    utm_source: Mapped[str] = mapped_column(Text, primary_key=True, default="")
    utm_medium: Mapped[str] = mapped_column(Text, primary_key=True, default="")
    utm_campaign: Mapped[str] = mapped_column(Text, primary_key=True, default="")

    __table_args__ = (
        Index("ix_analytics_utm_date", "date"),
        {"schema": "analytics"},
    )


class CustomParamAggregate(AggregateColumns, Base):
    __tablename__ = "analytics_custom_params"

    param_name: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="custom_param1, custom_param2 or custom_param3",
    )
    param_value: Mapped[str] = mapped_column(Text, primary_key=True)

    __table_args__ = (
        Index("ix_analytics_custom_params_date", "date"),
        {"schema": "analytics"},
    )


class LinkVisitorTotal(Base):
    """Cached all-time unique visitor count per link, refreshed by the aggregation job."""

    __tablename__ = "link_visitor_totals"

    link_id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        comment="UUID of the link",
    )
    unique_visitors: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Distinct hashed IPs across the last aggregated window",
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = ({"schema": "analytics"},)

    def __repr__(self) -> str:
        return f"<LinkVisitorTotal {self.link_id} unique_visitors={self.unique_visitors}>"
