"""Client for the telemetry store's SQL API.

Every query method validates its inputs and builds the SQL text before the
request is sent, so a malformed link ID or domain never reaches the network.
The ``*_batched`` variants split link-ID filters that exceed the store's
IN-list cap into chunks and merge the partial results.
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Hashable, Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal, TypeVar

import httpx
import structlog

from tally_analytics.core.config import Settings, get_settings
from tally_analytics.core.errors import (
    ConfigurationError,
    TelemetryNotConfiguredError,
    TelemetryQueryError,
    ValidationError,
)
from tally_analytics.core.observability import record_telemetry_batches, record_telemetry_query
from tally_analytics.routing.merger import merge_batches, merge_summary_batches, sort_rows
from tally_analytics.schemas.analytics import (
    CustomParamStats,
    DeviceStats,
    DimensionRow,
    GeoStats,
    RawClickEvent,
    ReferrerStats,
    SummaryStats,
    TimeseriesPoint,
    UtmStats,
)
from tally_analytics.telemetry.sql import (
    CUSTOM_PARAM_COLUMNS,
    DEVICE_GROUP_COLUMNS,
    MAX_FILTER_IDS,
    UTM_GROUP_COLUMNS,
    Column,
    Dimension,
    QueryBuilder,
    batch_link_ids,
    build_where,
    day_from_number,
    validate_dataset,
    validate_link_id,
)
from tally_analytics.utils.referrers import categorize_referrer, extract_referrer_domain

logger = structlog.get_logger()

DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"

DeviceGroup = Literal["device_type", "browser", "os"]
UtmGroup = Literal["source", "medium", "campaign"]
CustomParamName = Literal["custom_param1", "custom_param2", "custom_param3"]

RowT = TypeVar("RowT", bound=DimensionRow)


@dataclass(frozen=True)
class TelemetryConfig:
    account_id: str = ""
    api_token: str = ""
    dataset: str = "link-clicks"
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TelemetryConfig":
        settings = settings or get_settings()
        return cls(
            account_id=settings.cloudflare_account_id.strip(),
            api_token=settings.cloudflare_api_token.strip(),
            dataset=settings.analytics_dataset_name.strip(),
            api_base=settings.telemetry_api_base.rstrip("/"),
            timeout_seconds=settings.telemetry_timeout_seconds,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.account_id.strip() and self.api_token.strip())

    @property
    def dataset_error(self) -> str | None:
        try:
            validate_dataset(self.dataset)
        except ValidationError as e:
            return e.message
        return None

    @property
    def is_configured(self) -> bool:
        """Credentials are present and the dataset name is usable."""
        return self.has_credentials and self.dataset_error is None

    def validate(self) -> None:
        error = self.dataset_error
        if error is not None:
            raise ConfigurationError(error, field="dataset")

    @property
    def sql_url(self) -> str:
        return f"{self.api_base}/accounts/{self.account_id.strip()}/analytics_engine/sql"


@dataclass(frozen=True)
class TelemetryFilters:
    """Restrict a query to some links. Domains take precedence over link IDs."""

    link_ids: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        link_ids: Iterable[Any] | None = None,
        domains: Iterable[str] | None = None,
    ) -> "TelemetryFilters":
        return cls(
            link_ids=tuple(str(link_id) for link_id in link_ids or ()),
            domains=tuple(domains or ()),
        )

    @property
    def needs_batching(self) -> bool:
        return not self.domains and len(self.link_ids) > MAX_FILTER_IDS


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(float(value))


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class _VisitorTally:
    """Click totals and distinct IP hashes per key."""

    def __init__(self) -> None:
        self.clicks: dict[Hashable, int] = defaultdict(int)
        self.visitors: dict[Hashable, set[str]] = defaultdict(set)
        self.extra: dict[Hashable, dict[str, str]] = {}

    def add(self, key: Hashable, ip_hash: Any, clicks: int) -> None:
        self.clicks[key] += clicks
        if ip_hash:
            self.visitors[key].add(str(ip_hash))

    def items(self):
        for key, clicks in self.clicks.items():
            yield key, clicks, len(self.visitors.get(key, ()))


def _limited(rows: list[RowT], limit: int | None) -> list[RowT]:
    rows = sort_rows(rows)
    return rows[:limit] if limit is not None else rows


class TelemetryQueryClient:
    """Runs analytics queries against the telemetry store.

    Usage:
        client = TelemetryQueryClient(TelemetryConfig.from_settings())
        points = await client.timeseries_batched(start, end, filters)
        await client.aclose()
    """

    def __init__(
        self,
        config: TelemetryConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = http_client is None

    @property
    def has_credentials(self) -> bool:
        return self.config.has_credentials

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TelemetryQueryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def execute(self, sql: str, kind: str = "sql") -> list[dict[str, Any]]:
        """POST one SQL statement and return its ``data`` rows."""
        if not self.config.has_credentials:
            raise TelemetryNotConfiguredError()

        started = time.perf_counter()

        def fail(message: str, status: int | None = None) -> TelemetryQueryError:
            record_telemetry_query(kind, "error", time.perf_counter() - started)
            logger.warning("Telemetry query failed", kind=kind, status=status, error=message)
            return TelemetryQueryError(message, status=status)

        try:
            response = await self._client.post(
                self.config.sql_url,
                content=sql.encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {self.config.api_token.strip()}",
                    "Content-Type": "text/plain",
                },
            )
        except httpx.HTTPError as e:
            raise fail(f"Telemetry request failed: {e}") from e

        if not response.is_success:
            raise fail(
                f"Telemetry query returned HTTP {response.status_code}: {response.text[:200]}",
                response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise fail("Telemetry query returned a non-JSON body", response.status_code) from e

        if not isinstance(payload, dict):
            raise fail("Telemetry query returned an unexpected body", response.status_code)

        errors = payload.get("errors")
        if errors:
            raise fail(f"Telemetry query reported errors: {errors}", response.status_code)

        data = payload.get("data") or []
        record_telemetry_query(kind, "success", time.perf_counter() - started)
        logger.debug("Telemetry query complete", kind=kind, rows=len(data))
        return list(data)

    async def test_connection(self) -> tuple[bool, str]:
        """Check credentials and reachability with a trivial statement."""
        try:
            await self.execute("SHOW TABLES", kind="status")
        except (ConfigurationError, TelemetryQueryError) as e:
            return False, e.message
        return True, "Connected to telemetry store"

    def _where(self, start: date, end: date, filters: TelemetryFilters | None) -> str:
        filters = filters or TelemetryFilters()
        where, dropped = build_where(start, end, filters.link_ids, filters.domains)
        if dropped:
            logger.warning(
                "Link filter exceeds cap, querying all links",
                link_ids=len(filters.link_ids),
                cap=MAX_FILTER_IDS,
            )
        return where

    def _builder(self) -> QueryBuilder:
        self.config.validate()
        return QueryBuilder(self.config.dataset)

    # ------------------------------------------------------------------
    # Single queries
    # ------------------------------------------------------------------

    async def timeseries(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> list[TimeseriesPoint]:
        sql = self._builder().timeseries(self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.TIMESERIES.value)

        tally = _VisitorTally()
        for row in rows:
            day = day_from_number(_as_int(row.get("day_number")))
            tally.add(day, row.get(Column.IP_HASH.value), _as_int(row.get("clicks")))

        return sort_rows(
            TimeseriesPoint(date=day, clicks=clicks, unique_visitors=visitors)
            for day, clicks, visitors in tally.items()
        )

    async def geography(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        limit: int | None = 20,
    ) -> list[GeoStats]:
        sql = self._builder().grouped(
            [Column.COUNTRY, Column.CITY],
            self._where(start, end, filters),
        )
        rows = await self.execute(sql, kind=Dimension.GEOGRAPHY.value)

        tally = _VisitorTally()
        for row in rows:
            key = (
                _text(row.get(Column.COUNTRY.value)) or "unknown",
                _text(row.get(Column.CITY.value)) or None,
            )
            tally.add(key, row.get(Column.IP_HASH.value), _as_int(row.get("clicks")))

        return _limited(
            [
                GeoStats(country=country, city=city, clicks=clicks, unique_visitors=visitors)
                for (country, city), clicks, visitors in tally.items()
            ],
            limit,
        )

    async def referrers(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        limit: int | None = 20,
    ) -> list[ReferrerStats]:
        sql = self._builder().grouped([Column.REFERRER], self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.REFERRERS.value)

        tally = _VisitorTally()
        for row in rows:
            domain = extract_referrer_domain(_text(row.get(Column.REFERRER.value)))
            tally.add(domain, row.get(Column.IP_HASH.value), _as_int(row.get("clicks")))

        return _limited(
            [
                ReferrerStats(
                    referrer_domain=domain,
                    category=categorize_referrer(domain),
                    clicks=clicks,
                    unique_visitors=visitors,
                )
                for domain, clicks, visitors in tally.items()
            ],
            limit,
        )

    async def devices(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        group_by: DeviceGroup | None = None,
        limit: int | None = 100,
    ) -> list[DeviceStats]:
        names = [group_by] if group_by else list(DEVICE_GROUP_COLUMNS)
        columns = [DEVICE_GROUP_COLUMNS[name] for name in names]
        sql = self._builder().grouped(columns, self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.DEVICES.value)

        tally = _VisitorTally()
        for row in rows:
            key = tuple(_text(row.get(column.value)) or "unknown" for column in columns)
            tally.add(key, row.get(Column.IP_HASH.value), _as_int(row.get("clicks")))

        return _limited(
            [
                DeviceStats(**dict(zip(names, key)), clicks=clicks, unique_visitors=visitors)
                for key, clicks, visitors in tally.items()
            ],
            limit,
        )

    async def utm(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        group_by: UtmGroup | None = None,
        limit: int | None = 100,
    ) -> list[UtmStats]:
        if group_by in ("source", "medium"):
            columns = [UTM_GROUP_COLUMNS[group_by]]
        else:
            columns = [Column.UTM_SOURCE, Column.UTM_MEDIUM, Column.UTM_CAMPAIGN]
        sql = self._builder().utm(columns, self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.UTM.value)

        tally = _VisitorTally()
        for row in rows:
            values = {column: _text(row.get(column.value)) for column in columns}
            ip_hash = row.get(Column.IP_HASH.value)
            clicks = _as_int(row.get("clicks"))

            if group_by is None:
                key = (
                    values[Column.UTM_SOURCE] or None,
                    values[Column.UTM_MEDIUM] or None,
                    values[Column.UTM_CAMPAIGN] or None,
                )
            elif group_by == "campaign":
                campaign = values[Column.UTM_CAMPAIGN]
                if not campaign:
                    continue
                key = campaign
                # First non-empty source/medium seen for the campaign wins
                seen = tally.extra.setdefault(key, {})
                for name, column in (("utm_source", Column.UTM_SOURCE), ("utm_medium", Column.UTM_MEDIUM)):
                    if values[column] and name not in seen:
                        seen[name] = values[column]
            else:
                key = values[UTM_GROUP_COLUMNS[group_by]]
                if not key:
                    continue
            tally.add(key, ip_hash, clicks)

        stats = []
        for key, clicks, visitors in tally.items():
            if group_by is None:
                fields = dict(zip(("utm_source", "utm_medium", "utm_campaign"), key))
            elif group_by == "campaign":
                fields = {"utm_campaign": key, **tally.extra.get(key, {})}
            else:
                fields = {f"utm_{group_by}": key}
            stats.append(UtmStats(**fields, group_by=group_by, clicks=clicks, unique_visitors=visitors))
        return _limited(stats, limit)

    async def custom_params(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        param_name: CustomParamName | None = None,
        limit: int | None = 100,
    ) -> list[CustomParamStats]:
        if param_name is None:
            combined: list[CustomParamStats] = []
            for name in CUSTOM_PARAM_COLUMNS:
                combined.extend(await self.custom_params(start, end, filters, name, None))
            return _limited(combined, limit)

        column = CUSTOM_PARAM_COLUMNS[param_name]
        sql = self._builder().custom_param(param_name, self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.CUSTOM_PARAMS.value)

        tally = _VisitorTally()
        for row in rows:
            tally.add(
                _text(row.get(column.value)),
                row.get(Column.IP_HASH.value),
                _as_int(row.get("clicks")),
            )

        return _limited(
            [
                CustomParamStats(
                    param_name=param_name,
                    param_value=value,
                    clicks=clicks,
                    unique_visitors=visitors,
                )
                for value, clicks, visitors in tally.items()
            ],
            limit,
        )

    async def summary(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> SummaryStats:
        sql = self._builder().summary(self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.SUMMARY.value)

        visitors = {
            str(row[Column.IP_HASH.value])
            for row in rows
            if row.get(Column.IP_HASH.value)
        }
        return SummaryStats(
            total_clicks=sum(_as_int(row.get("clicks")) for row in rows),
            unique_visitors=len(visitors),
        )

    async def raw_events(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> list[RawClickEvent]:
        """Individual data points, oldest first. Used by the aggregation job."""
        sql = self._builder().raw_events(self._where(start, end, filters))
        rows = await self.execute(sql, kind=Dimension.RAW_EVENTS.value)

        def optional(row: dict, column: Column) -> str | None:
            return _text(row.get(column.value)) or None

        return [
            RawClickEvent(
                timestamp=_as_int(row.get(Column.TIMESTAMP.value)),
                link_id=_text(row.get(Column.LINK_ID.value)),
                country=_text(row.get(Column.COUNTRY.value)) or "unknown",
                city=_text(row.get(Column.CITY.value)) or "unknown",
                referrer=_text(row.get(Column.REFERRER.value)),
                ip_hash=_text(row.get(Column.IP_HASH.value)),
                device_type=_text(row.get(Column.DEVICE_TYPE.value)) or "unknown",
                browser=_text(row.get(Column.BROWSER.value)) or "unknown",
                os=_text(row.get(Column.OS.value)) or "unknown",
                utm_source=optional(row, Column.UTM_SOURCE),
                utm_medium=optional(row, Column.UTM_MEDIUM),
                utm_campaign=optional(row, Column.UTM_CAMPAIGN),
                custom_param1=optional(row, Column.CUSTOM_PARAM1),
                custom_param2=optional(row, Column.CUSTOM_PARAM2),
                custom_param3=optional(row, Column.CUSTOM_PARAM3),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Batched queries
    # ------------------------------------------------------------------

    def _chunks(self, kind: Dimension, filters: TelemetryFilters) -> list[TelemetryFilters]:
        # Reject any bad ID before the first chunk is sent
        for link_id in filters.link_ids:
            validate_link_id(link_id)
        chunks = [TelemetryFilters(link_ids=tuple(chunk)) for chunk in batch_link_ids(filters.link_ids)]
        record_telemetry_batches(kind.value, len(chunks))
        logger.debug("Batching telemetry query", kind=kind.value, batches=len(chunks))
        return chunks

    async def _batched(
        self,
        kind: Dimension,
        filters: TelemetryFilters | None,
        fetch: Callable[[TelemetryFilters], Awaitable[list[RowT]]],
        *,
        concurrent: bool,
        limit: int | None = None,
    ) -> list[RowT]:
        filters = filters or TelemetryFilters()
        if not filters.needs_batching:
            return await fetch(filters)

        chunks = self._chunks(kind, filters)
        if concurrent:
            results = await asyncio.gather(*(fetch(chunk) for chunk in chunks))
        else:
            results = [await fetch(chunk) for chunk in chunks]
        return merge_batches(results, limit)

    async def timeseries_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> list[TimeseriesPoint]:
        return await self._batched(
            Dimension.TIMESERIES,
            filters,
            lambda f: self.timeseries(start, end, f),
            concurrent=False,
        )

    async def geography_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        limit: int = 20,
    ) -> list[GeoStats]:
        return await self._batched(
            Dimension.GEOGRAPHY,
            filters,
            lambda f: self.geography(start, end, f, limit * 2),
            concurrent=True,
            limit=limit,
        )

    async def referrers_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        limit: int = 20,
    ) -> list[ReferrerStats]:
        return await self._batched(
            Dimension.REFERRERS,
            filters,
            lambda f: self.referrers(start, end, f, limit * 2),
            concurrent=True,
            limit=limit,
        )

    async def devices_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        group_by: DeviceGroup | None = None,
        limit: int = 100,
    ) -> list[DeviceStats]:
        return await self._batched(
            Dimension.DEVICES,
            filters,
            lambda f: self.devices(start, end, f, group_by, limit * 2),
            concurrent=True,
            limit=limit,
        )

    async def utm_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        group_by: UtmGroup | None = None,
        limit: int = 100,
    ) -> list[UtmStats]:
        return await self._batched(
            Dimension.UTM,
            filters,
            lambda f: self.utm(start, end, f, group_by, limit * 2),
            concurrent=True,
            limit=limit,
        )

    async def custom_params_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
        param_name: CustomParamName | None = None,
        limit: int = 100,
    ) -> list[CustomParamStats]:
        return await self._batched(
            Dimension.CUSTOM_PARAMS,
            filters,
            lambda f: self.custom_params(start, end, f, param_name, limit * 2),
            concurrent=True,
            limit=limit,
        )

    async def summary_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> SummaryStats:
        filters = filters or TelemetryFilters()
        if not filters.needs_batching:
            return await self.summary(start, end, filters)

        results = [
            await self.summary(start, end, chunk)
            for chunk in self._chunks(Dimension.SUMMARY, filters)
        ]
        return merge_summary_batches(results)

    async def raw_events_batched(
        self,
        start: date,
        end: date,
        filters: TelemetryFilters | None = None,
    ) -> list[RawClickEvent]:
        """Raw events need no merging: chunks cover disjoint links."""
        filters = filters or TelemetryFilters()
        if not filters.needs_batching:
            return await self.raw_events(start, end, filters)

        events: list[RawClickEvent] = []
        for chunk in self._chunks(Dimension.RAW_EVENTS, filters):
            events.extend(await self.raw_events(start, end, chunk))
        events.sort(key=lambda event: event.timestamp)
        return events


# Global client instance
_client: TelemetryQueryClient | None = None


def get_telemetry_client() -> TelemetryQueryClient:
    """Get the global telemetry query client, creating it if necessary."""
    global _client
    if _client is None:
        _client = TelemetryQueryClient(TelemetryConfig.from_settings())
    return _client


async def close_telemetry_client() -> None:
    """Close the global client's HTTP connections."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
