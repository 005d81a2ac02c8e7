"""Build link analytics reports from one or both stores.

The report service asks the source selector which store serves which days,
fetches every dimension from each chosen store, and merges the halves. Each
store's fetch is reduced to a tagged result:

* :class:`Ok` -- every dimension came back.
* :class:`PartiallyAvailable` -- some dimensions failed, or the store only
  covers part of the requested days.
* :class:`Unavailable` -- nothing came back.

Only validation errors and fail-closed source decisions raise. Any other
store failure is logged and surfaces in ``report.meta`` instead.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, fields
from datetime import date, timedelta
from typing import Any, Generic, TypeVar, Union
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from tally_analytics.core.errors import SourceUnavailableError, TelemetryQueryError
from tally_analytics.core.observability import record_source_decision
from tally_analytics.routing.date_range import DayRange, utc_today
from tally_analytics.routing.merger import merge_ranges, merge_summaries
from tally_analytics.routing.source_selector import DataSourcePreference, select_sources
from tally_analytics.schemas.analytics import (
    CustomParamStats,
    DataSourceLabel,
    DateRange,
    DeviceBreakdown,
    DeviceStats,
    GeoStats,
    LinkReport,
    MissingRange,
    ReferrerStats,
    ReportMeta,
    ReportSummary,
    SourceStatus,
    SummaryStats,
    TimeseriesPoint,
    UtmBreakdown,
    UtmStats,
)
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.settings_provider import AggregationSettingsProvider
from tally_analytics.telemetry.query import TelemetryFilters, TelemetryQueryClient
from tally_analytics.telemetry.sql import validate_domain, validate_link_id

logger = structlog.get_logger()

DEFAULT_REPORT_DAYS = 30

REASON_DOMAIN_FILTER_UNSUPPORTED = "domain_filter_unsupported"

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T


@dataclass(frozen=True)
class PartiallyAvailable(Generic[T]):
    data: T
    missing_ranges: tuple[MissingRange, ...] = ()
    failed_dimensions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unavailable:
    reason: str


SourceResult = Union[Ok[T], PartiallyAvailable[T], Unavailable]


@dataclass
class ReportData:
    """Every dimension of a report as read from one store."""

    summary: SummaryStats = field(default_factory=SummaryStats)
    timeseries: list[TimeseriesPoint] = field(default_factory=list)
    geography: list[GeoStats] = field(default_factory=list)
    referrers: list[ReferrerStats] = field(default_factory=list)
    device_types: list[DeviceStats] = field(default_factory=list)
    browsers: list[DeviceStats] = field(default_factory=list)
    operating_systems: list[DeviceStats] = field(default_factory=list)
    utm_sources: list[UtmStats] = field(default_factory=list)
    utm_mediums: list[UtmStats] = field(default_factory=list)
    utm_campaigns: list[UtmStats] = field(default_factory=list)
    custom_params: list[CustomParamStats] = field(default_factory=list)


_LIMITED = {"geography", "referrers"}


def _date_range(day_range: DayRange | None) -> DateRange | None:
    if day_range is None:
        return None
    return DateRange(start=day_range.start, end=day_range.end)


def _merge(live: ReportData | None, archived: ReportData | None, limit: int) -> ReportData:
    merged = ReportData()
    present = [data for data in (live, archived) if data is not None]
    if not present:
        return merged

    merged.summary = merge_summaries(*(data.summary for data in present))
    for f in fields(ReportData):
        if f.name == "summary":
            continue
        rows = merge_ranges(
            getattr(live, f.name) if live else [],
            getattr(archived, f.name) if archived else [],
        )
        if f.name in _LIMITED:
            rows = rows[:limit]
        setattr(merged, f.name, rows)
    return merged


class ReportService:
    """Serves :class:`LinkReport` objects for a set of links.

    Usage:
        service = ReportService(telemetry_client, AggregateStore(), settings_provider)
        report = await service.link_report(link_ids=[...], start_date=..., end_date=...)
    """

    def __init__(
        self,
        telemetry: TelemetryQueryClient,
        store: AggregateStore,
        settings_provider: AggregationSettingsProvider,
        clock: Callable[[], date] = utc_today,
    ):
        self._telemetry = telemetry
        self._store = store
        self._settings_provider = settings_provider
        self._clock = clock

    async def link_report(
        self,
        link_ids: Sequence[Any] | None = None,
        domains: Sequence[str] | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        preference: DataSourcePreference = DataSourcePreference.AUTO,
        limit: int = 20,
    ) -> LinkReport:
        """Build a report for ``start_date..end_date`` (default: the last 30 days).

        Raises:
            ValidationError: Malformed link ID, domain or date range.
            SourceUnavailableError: A forced source cannot serve the range.
        """
        today = self._clock()
        end = end_date or today
        start = start_date or end - timedelta(days=DEFAULT_REPORT_DAYS - 1)
        requested = DayRange(start, end)

        validated_ids = [validate_link_id(link_id) for link_id in link_ids or ()]
        validated_domains = [validate_domain(domain) for domain in domains or ()]

        settings = await self._settings_provider.get()
        decision = select_sources(
            start,
            end,
            settings,
            preference=preference,
            has_credentials=self._telemetry.is_configured,
            today=today,
        )

        missing = [
            MissingRange(start=u.range.start, end=u.range.end, reason=u.reason)
            for u in decision.unavailable
        ]

        if decision.fail_closed:
            record_source_decision("none")
            raise SourceUnavailableError(
                f"Data source '{preference.value}' cannot serve "
                f"{start.isoformat()}..{end.isoformat()}",
                details={"missing_ranges": [m.model_dump(mode="json") for m in missing]},
            )

        warnings: list[str] = []
        fetches: dict[str, Awaitable[SourceResult]] = {}

        if decision.use_telemetry:
            filters = TelemetryFilters(
                link_ids=tuple(validated_ids),
                domains=tuple(validated_domains),
            )
            fetches["telemetry"] = self._fetch_telemetry(decision.telemetry_range, filters, limit)

        durable_range = decision.durable_range
        if decision.use_durable:
            if validated_domains and not validated_ids:
                # Rollup tables carry link IDs only
                missing.append(MissingRange(
                    start=durable_range.start,
                    end=durable_range.end,
                    reason=REASON_DOMAIN_FILTER_UNSUPPORTED,
                ))
                warnings.append("Durable aggregates cannot be filtered by domain; pass link IDs")
            else:
                # Days the durable store was asked for but may not hold yet
                not_covered = tuple(
                    m for m in missing
                    if m.start >= durable_range.start and m.end <= durable_range.end
                )
                fetches["durable"] = self._fetch_durable(
                    durable_range,
                    [UUID(link_id) for link_id in validated_ids],
                    limit,
                    not_covered,
                )

        names = list(fetches)
        results: dict[str, SourceResult] = dict(zip(names, await asyncio.gather(*fetches.values())))

        ranges = {"telemetry": decision.telemetry_range, "durable": durable_range}
        sources: list[SourceStatus] = []
        served: dict[str, ReportData] = {}

        for name, result in results.items():
            day_range = ranges[name]
            if isinstance(result, Unavailable):
                sources.append(SourceStatus(
                    source=name,
                    status="unavailable",
                    range=_date_range(day_range),
                    reason=result.reason,
                ))
                missing.append(MissingRange(start=day_range.start, end=day_range.end, reason=result.reason))
                continue

            served[name] = result.data
            if isinstance(result, PartiallyAvailable):
                sources.append(SourceStatus(source=name, status="partial", range=_date_range(day_range)))
                if result.failed_dimensions:
                    warnings.append(f"{name} dimensions unavailable: {', '.join(result.failed_dimensions)}")
            else:
                sources.append(SourceStatus(source=name, status="ok", range=_date_range(day_range)))

        label = self._label(served, missing)
        record_source_decision(label)

        data = _merge(served.get("telemetry"), served.get("durable"), limit)
        active_days = [point.date for point in data.timeseries if point.clicks > 0]

        logger.info(
            "Report built",
            data_source=label,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            links=len(validated_ids),
            domains=len(validated_domains),
            missing_ranges=len(missing),
        )

        return LinkReport(
            start_date=start,
            end_date=end,
            summary=ReportSummary(
                total_clicks=data.summary.total_clicks,
                unique_visitors=data.summary.unique_visitors,
                avg_clicks_per_day=round(data.summary.total_clicks / requested.days, 2),
                last_click_date=max(active_days) if active_days else None,
            ),
            timeseries=data.timeseries,
            geography=data.geography,
            referrers=data.referrers,
            devices=DeviceBreakdown(
                device_types=data.device_types,
                browsers=data.browsers,
                operating_systems=data.operating_systems,
            ),
            utm=UtmBreakdown(
                sources=data.utm_sources,
                mediums=data.utm_mediums,
                campaigns=data.utm_campaigns,
            ),
            custom_params=data.custom_params,
            meta=ReportMeta(
                data_source=label,
                aggregation_enabled=settings.enabled,
                threshold_days=settings.threshold_days,
                live_range=_date_range(decision.telemetry_range) if "telemetry" in served else None,
                archived_range=_date_range(durable_range) if "durable" in served else None,
                sources=sources,
                missing_ranges=sorted(missing, key=lambda m: m.start),
                warnings=warnings,
            ),
        )

    @staticmethod
    def _label(served: dict[str, ReportData], missing: list[MissingRange]) -> DataSourceLabel:
        if "telemetry" in served and "durable" in served:
            return "mixed"
        if "telemetry" in served:
            return "telemetry"
        if "durable" in served:
            return "durable_partial" if missing else "durable"
        return "none"

    async def _fetch_telemetry(
        self,
        day_range: DayRange,
        filters: TelemetryFilters,
        limit: int,
    ) -> SourceResult:
        t = self._telemetry
        start, end = day_range.start, day_range.end
        plan = {
            "summary": lambda: t.summary_batched(start, end, filters),
            "timeseries": lambda: t.timeseries_batched(start, end, filters),
            "geography": lambda: t.geography_batched(start, end, filters, limit=limit),
            "referrers": lambda: t.referrers_batched(start, end, filters, limit=limit),
            "device_types": lambda: t.devices_batched(start, end, filters, group_by="device_type"),
            "browsers": lambda: t.devices_batched(start, end, filters, group_by="browser"),
            "operating_systems": lambda: t.devices_batched(start, end, filters, group_by="os"),
            "utm_sources": lambda: t.utm_batched(start, end, filters, group_by="source"),
            "utm_mediums": lambda: t.utm_batched(start, end, filters, group_by="medium"),
            "utm_campaigns": lambda: t.utm_batched(start, end, filters, group_by="campaign"),
            "custom_params": lambda: t.custom_params_batched(start, end, filters),
        }
        return await self._collect("telemetry", plan, TelemetryQueryError, concurrent=True)

    async def _fetch_durable(
        self,
        day_range: DayRange,
        link_ids: list[UUID],
        limit: int,
        not_covered: tuple[MissingRange, ...] = (),
    ) -> SourceResult:
        s = self._store
        start, end = day_range.start, day_range.end
        ids = link_ids or None
        plan = {
            "summary": lambda: s.summary(start, end, ids),
            "timeseries": lambda: s.timeseries(start, end, ids),
            "geography": lambda: s.geography(start, end, ids, limit=limit),
            "referrers": lambda: s.referrers(start, end, ids, limit=limit),
            "device_types": lambda: s.devices(start, end, ids, group_by="device_type"),
            "browsers": lambda: s.devices(start, end, ids, group_by="browser"),
            "operating_systems": lambda: s.devices(start, end, ids, group_by="os"),
            "utm_sources": lambda: s.utm(start, end, ids, group_by="source"),
            "utm_mediums": lambda: s.utm(start, end, ids, group_by="medium"),
            "utm_campaigns": lambda: s.utm(start, end, ids, group_by="campaign"),
            "custom_params": lambda: s.custom_params(start, end, ids),
        }
        result = await self._collect("durable", plan, SQLAlchemyError, concurrent=False)
        if isinstance(result, Ok) and not_covered:
            return PartiallyAvailable(result.data, missing_ranges=not_covered)
        return result

    async def _collect(
        self,
        source: str,
        plan: dict[str, Callable[[], Awaitable[Any]]],
        recoverable: type[Exception],
        concurrent: bool,
    ) -> SourceResult:
        names = list(plan)
        if concurrent:
            outcomes = await asyncio.gather(*(plan[name]() for name in names), return_exceptions=True)
        else:
            outcomes = []
            for name in names:
                try:
                    outcomes.append(await plan[name]())
                except recoverable as e:
                    outcomes.append(e)

        data = ReportData()
        failed: list[str] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, recoverable):
                failed.append(name)
                logger.warning(
                    "Report dimension unavailable",
                    source=source,
                    dimension=name,
                    error=str(outcome),
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            setattr(data, name, outcome)

        if len(failed) == len(names):
            return Unavailable(reason=f"{source}_query_failed")
        if failed:
            return PartiallyAvailable(data, failed_dimensions=tuple(failed))
        return Ok(data)
