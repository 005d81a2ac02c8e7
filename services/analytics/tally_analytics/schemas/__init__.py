"""Pydantic schemas for analytics."""

from tally_analytics.schemas.analytics import (
    AggregationRunRequest,
    AggregationRunResponse,
    AggregationSettingsResponse,
    AggregationSettingsUpdate,
    CustomParamStats,
    DataSourceLabel,
    DateRange,
    DeviceBreakdown,
    DeviceStats,
    DimensionRow,
    GeoStats,
    LinkReport,
    MissingRange,
    RawClickEvent,
    ReferrerStats,
    ReportMeta,
    ReportSummary,
    SourceStatus,
    SummaryStats,
    TelemetryStatusResponse,
    TimeseriesPoint,
    UtmBreakdown,
    UtmStats,
)

__all__ = [
    "AggregationRunRequest",
    "AggregationRunResponse",
    "AggregationSettingsResponse",
    "AggregationSettingsUpdate",
    "CustomParamStats",
    "DataSourceLabel",
    "DateRange",
    "DeviceBreakdown",
    "DeviceStats",
    "DimensionRow",
    "GeoStats",
    "LinkReport",
    "MissingRange",
    "RawClickEvent",
    "ReferrerStats",
    "ReportMeta",
    "ReportSummary",
    "SourceStatus",
    "SummaryStats",
    "TelemetryStatusResponse",
    "TimeseriesPoint",
    "UtmBreakdown",
    "UtmStats",
]
