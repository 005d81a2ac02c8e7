"""Pydantic schemas for analytics rows, reports and API payloads."""

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

from tally_analytics.utils.referrers import ReferrerCategory

DataSourceLabel = Literal["telemetry", "durable", "mixed", "durable_partial", "none"]


class DimensionRow(BaseModel):
    """A report row: exact clicks plus an approximate distinct-visitor count."""

    clicks: int = Field(default=0, ge=0, description="Exact number of clicks")
    unique_visitors: int = Field(
        default=0,
        ge=0,
        description="Approximate unique visitors (distinct hashed IPs)",
    )

    def key(self) -> tuple:
        """Natural key used when merging rows from different batches or sources."""
        raise NotImplementedError

    def attribute_updates(self, other: "DimensionRow") -> dict:
        """Non-key fields to take from a row with the same key."""
        return {}


class TimeseriesPoint(DimensionRow):
    """Clicks on a single UTC calendar day."""

    date: date

    def key(self) -> tuple:
        return (self.date,)


class GeoStats(DimensionRow):
    country: str = Field(description="ISO 3166-1 alpha-2 country code or 'unknown'")
    city: str | None = None

    def key(self) -> tuple:
        return (self.country, self.city or "")


class ReferrerStats(DimensionRow):
    referrer_domain: str = Field(description="Referrer host without leading www.")
    category: ReferrerCategory

    def key(self) -> tuple:
        return (self.referrer_domain,)


class DeviceStats(DimensionRow):
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None

    def key(self) -> tuple:
        return (self.device_type or "", self.browser or "", self.os or "")


class UtmStats(DimensionRow):
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    group_by: Literal["source", "medium", "campaign"] | None = Field(default=None, exclude=True)

    def key(self) -> tuple:
        if self.group_by is not None:
            return (getattr(self, f"utm_{self.group_by}") or "",)
        return (self.utm_source or "", self.utm_medium or "", self.utm_campaign or "")

    def attribute_updates(self, other: "UtmStats") -> dict:
        # Source and medium only describe a campaign-grouped row
        if self.group_by != "campaign":
            return {}
        return {
            name: getattr(other, name)
            for name in ("utm_source", "utm_medium")
            if not getattr(self, name) and getattr(other, name)
        }


class CustomParamStats(DimensionRow):
    param_name: Literal["custom_param1", "custom_param2", "custom_param3"]
    param_value: str | None = None

    def key(self) -> tuple:
        return (self.param_name, self.param_value or "")


class SummaryStats(BaseModel):
    """Totals over a date range."""

    total_clicks: int = 0
    unique_visitors: int = 0


class RawClickEvent(BaseModel):
    """One telemetry data point as read back for aggregation."""

    timestamp: int = Field(description="Epoch seconds")
    link_id: str
    country: str = "unknown"
    city: str = "unknown"
    referrer: str = ""
    ip_hash: str = ""
    device_type: str = "unknown"
    browser: str = "unknown"
    os: str = "unknown"
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    custom_param1: str | None = None
    custom_param2: str | None = None
    custom_param3: str | None = None


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class DateRange(BaseModel):
    """Inclusive range of calendar days."""

    start: date
    end: date


class MissingRange(DateRange):
    reason: str = Field(description="Why the range could not be served")


class SourceStatus(BaseModel):
    """Outcome of reading one source for a report."""

    source: Literal["telemetry", "durable"]
    status: Literal["ok", "partial", "unavailable"]
    range: DateRange | None = None
    reason: str | None = None


class ReportMeta(BaseModel):
    """Where the numbers in a report came from and what is missing."""

    data_source: DataSourceLabel
    aggregation_enabled: bool
    threshold_days: int
    live_range: DateRange | None = Field(
        default=None,
        description="Days served from the real-time telemetry store",
    )
    archived_range: DateRange | None = Field(
        default=None,
        description="Days served from durable aggregates",
    )
    sources: list[SourceStatus] = Field(default_factory=list)
    missing_ranges: list[MissingRange] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def incomplete(self) -> bool:
        return bool(self.missing_ranges)


class ReportSummary(SummaryStats):
    avg_clicks_per_day: float = 0.0
    last_click_date: date | None = Field(
        default=None,
        description="Most recent day in the range with at least one click",
    )


class DeviceBreakdown(BaseModel):
    device_types: list[DeviceStats] = Field(default_factory=list)
    browsers: list[DeviceStats] = Field(default_factory=list)
    operating_systems: list[DeviceStats] = Field(default_factory=list)


class UtmBreakdown(BaseModel):
    sources: list[UtmStats] = Field(default_factory=list)
    mediums: list[UtmStats] = Field(default_factory=list)
    campaigns: list[UtmStats] = Field(default_factory=list)


class LinkReport(BaseModel):
    """Full analytics report for a set of links over a date range."""

    start_date: date
    end_date: date
    summary: ReportSummary
    timeseries: list[TimeseriesPoint] = Field(default_factory=list)
    geography: list[GeoStats] = Field(default_factory=list)
    referrers: list[ReferrerStats] = Field(default_factory=list)
    devices: DeviceBreakdown = Field(default_factory=DeviceBreakdown)
    utm: UtmBreakdown = Field(default_factory=UtmBreakdown)
    custom_params: list[CustomParamStats] = Field(default_factory=list)
    meta: ReportMeta


# ---------------------------------------------------------------------------
# Settings and aggregation endpoints
# ---------------------------------------------------------------------------


class AggregationSettingsResponse(BaseModel):
    enabled: bool
    threshold_days: int
    batch_size: int
    enabled_source: Literal["env", "database", "default"]
    threshold_source: Literal["env", "database", "default"]


class AggregationSettingsUpdate(BaseModel):
    enabled: bool | None = None
    threshold_days: int | None = Field(default=None, ge=1, le=3650)
    updated_by: str | None = Field(default=None, max_length=255)


class AggregationRunRequest(BaseModel):
    """Run the aggregation job for one date, or backfill a window when no date is given."""

    target_date: date | None = None
    days_back: int = Field(default=180, ge=1, le=3650)
    link_ids: list[UUID] | None = None


class AggregationRunResponse(BaseModel):
    processed: int
    errors: int
    skipped: int
    dates: int = 1


class TelemetryStatusResponse(BaseModel):
    success: bool
    message: str
    checked_at: datetime
