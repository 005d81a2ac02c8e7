"""Analytics SQLAlchemy models."""

from tally_analytics.core.database import Base
from tally_analytics.models.aggregates import (
    CustomParamAggregate,
    DailyAggregate,
    DeviceAggregate,
    GeoAggregate,
    LinkVisitorTotal,
    ReferrerAggregate,
    UtmAggregate,
)
from tally_analytics.models.settings import Setting

__all__ = [
    "Base",
    "CustomParamAggregate",
    "DailyAggregate",
    "DeviceAggregate",
    "GeoAggregate",
    "LinkVisitorTotal",
    "ReferrerAggregate",
    "Setting",
    "UtmAggregate",
]
