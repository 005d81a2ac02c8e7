"""Durable aggregate store: batched upserts and report reads.

Two write modes share the same tables:

* ``replace`` (aggregation job): the incoming counts overwrite whatever is
  stored, so re-running a day converges on the same values.
* ``increment`` (real-time dual-write): clicks are added, and the visitor
  count is 1 on insert and left alone afterwards.

Replace writes are split into batches of at most ``batch_size`` rows. Each
batch commits on its own; a failing batch is rolled back and raised as
:class:`AggregateWriteError`, while earlier batches stay committed.
"""

import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tally_analytics.core.errors import AggregateWriteError
from tally_analytics.core.observability import record_upsert_batch
from tally_analytics.models.aggregates import (
    CustomParamAggregate,
    DailyAggregate,
    DeviceAggregate,
    GeoAggregate,
    LinkVisitorTotal,
    ReferrerAggregate,
    UtmAggregate,
)
from tally_analytics.schemas.analytics import (
    CustomParamStats,
    DeviceStats,
    GeoStats,
    ReferrerStats,
    SummaryStats,
    TimeseriesPoint,
    UtmStats,
)
from tally_analytics.services.settings_provider import DEFAULT_BATCH_SIZE
from tally_analytics.utils.referrers import categorize_referrer

logger = structlog.get_logger()


@dataclass
class AggregateRows:
    """Rows to upsert, one list of column dicts per rollup table."""

    daily: list[dict[str, Any]] = field(default_factory=list)
    geo: list[dict[str, Any]] = field(default_factory=list)
    referrers: list[dict[str, Any]] = field(default_factory=list)
    devices: list[dict[str, Any]] = field(default_factory=list)
    utm: list[dict[str, Any]] = field(default_factory=list)
    custom_params: list[dict[str, Any]] = field(default_factory=list)

    def by_model(self) -> list[tuple[type, list[dict[str, Any]]]]:
        return [
            (DailyAggregate, self.daily),
            (GeoAggregate, self.geo),
            (ReferrerAggregate, self.referrers),
            (DeviceAggregate, self.devices),
            (UtmAggregate, self.utm),
            (CustomParamAggregate, self.custom_params),
        ]

    def __len__(self) -> int:
        return sum(len(rows) for _, rows in self.by_model())


def _insert(session: AsyncSession, model: type):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def _primary_key(model: type) -> list[str]:
    return [column.name for column in model.__table__.primary_key.columns]


def _chunks(rows: Sequence[dict[str, Any]], size: int) -> Iterable[Sequence[dict[str, Any]]]:
    for offset in range(0, len(rows), size):
        yield rows[offset:offset + size]


class AggregateStore:
    """Reads and writes the ``analytics_*`` rollup tables.

    Usage:
        store = AggregateStore()
        await store.replace(rows, target_date=day)
        points = await store.timeseries(start, end, link_ids=[...])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if session_factory is None:
            from tally_analytics.core.database import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self.batch_size = max(1, min(batch_size, DEFAULT_BATCH_SIZE))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def replace(
        self,
        rows: AggregateRows,
        target_date: date | None = None,
        batch_size: int | None = None,
    ) -> int:
        """Upsert rows, overwriting stored counts. Returns the number of rows written."""
        size = max(1, min(batch_size or self.batch_size, DEFAULT_BATCH_SIZE))
        written = 0
        batch_index = 0

        for model, table_rows in rows.by_model():
            for batch in _chunks(table_rows, size):
                started = time.perf_counter()
                async with self._session_factory() as session:
                    try:
                        stmt = _insert(session, model).values(list(batch))
                        stmt = stmt.on_conflict_do_update(
                            index_elements=_primary_key(model),
                            set_={
                                "clicks": stmt.excluded.clicks,
                                "unique_visitors": stmt.excluded.unique_visitors,
                            },
                        )
                        await session.execute(stmt)
                        await session.commit()
                    except SQLAlchemyError as e:
                        await session.rollback()
                        record_upsert_batch("replace", "error", time.perf_counter() - started)
                        logger.error(
                            "Aggregate batch upsert failed",
                            table=model.__tablename__,
                            batch_index=batch_index,
                            rows=len(batch),
                            error=str(e),
                        )
                        raise AggregateWriteError(
                            f"Upsert into {model.__tablename__} failed",
                            batch_index=batch_index,
                            target_date=target_date,
                        ) from e

                record_upsert_batch("replace", "success", time.perf_counter() - started)
                written += len(batch)
                batch_index += 1

        logger.debug("Aggregate rows replaced", rows=written, batches=batch_index)
        return written

    async def increment(self, rows: AggregateRows) -> None:
        """Add click counts in one transaction (real-time dual-write path)."""
        started = time.perf_counter()
        async with self._session_factory() as session:
            try:
                for model, table_rows in rows.by_model():
                    if not table_rows:
                        continue
                    stmt = _insert(session, model).values(table_rows)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=_primary_key(model),
                        set_={"clicks": model.clicks + stmt.excluded.clicks},
                    )
                    await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                record_upsert_batch("increment", "error", time.perf_counter() - started)
                raise AggregateWriteError("Aggregate increment failed", batch_index=0) from e

        record_upsert_batch("increment", "success", time.perf_counter() - started)

    async def update_link_visitor_totals(self, totals: dict[UUID, int]) -> bool:
        """Refresh cached per-link visitor counts. Failures are logged, not raised."""
        if not totals:
            return True

        values = [
            {"link_id": link_id, "unique_visitors": count}
            for link_id, count in totals.items()
        ]
        async with self._session_factory() as session:
            try:
                for batch in _chunks(values, self.batch_size):
                    stmt = _insert(session, LinkVisitorTotal).values(list(batch))
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["link_id"],
                        set_={
                            "unique_visitors": stmt.excluded.unique_visitors,
                            "updated_at": func.now(),
                        },
                    )
                    await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.warning("Failed to update link visitor totals", links=len(totals), error=str(e))
                return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _scoped(query, model: type, start: date, end: date, link_ids: Sequence[UUID] | None):
        query = query.where(model.date >= start).where(model.date <= end)
        if link_ids:
            query = query.where(model.link_id.in_(list(link_ids)))
        return query

    async def _rows(self, query) -> list:
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.all())

    async def timeseries(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
    ) -> list[TimeseriesPoint]:
        model = DailyAggregate
        query = self._scoped(
            select(
                model.date,
                func.sum(model.clicks).label("clicks"),
                func.max(model.unique_visitors).label("unique_visitors"),
            ),
            model, start, end, link_ids,
        ).group_by(model.date).order_by(model.date)

        return [
            TimeseriesPoint(date=row.date, clicks=row.clicks or 0, unique_visitors=row.unique_visitors or 0)
            for row in await self._rows(query)
        ]

    async def _grouped(
        self,
        model: type,
        columns: Sequence,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None,
        limit: int | None,
        extra=None,
    ) -> list:
        clicks = func.sum(model.clicks).label("clicks")
        visitors = func.max(model.unique_visitors).label("unique_visitors")
        query = self._scoped(
            select(*columns, *(extra or ()), clicks, visitors),
            model, start, end, link_ids,
        ).group_by(*columns).order_by(clicks.desc())
        if limit is not None:
            query = query.limit(limit)
        return await self._rows(query)

    async def geography(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
        limit: int | None = 20,
    ) -> list[GeoStats]:
        model = GeoAggregate
        rows = await self._grouped(model, [model.country, model.city], start, end, link_ids, limit)
        return [
            GeoStats(
                country=row.country or "unknown",
                city=row.city or None,
                clicks=row.clicks or 0,
                unique_visitors=row.unique_visitors or 0,
            )
            for row in rows
        ]

    async def referrers(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
        limit: int | None = 20,
    ) -> list[ReferrerStats]:
        model = ReferrerAggregate
        rows = await self._grouped(model, [model.referrer_domain], start, end, link_ids, limit)
        return [
            ReferrerStats(
                referrer_domain=row.referrer_domain,
                category=categorize_referrer(row.referrer_domain),
                clicks=row.clicks or 0,
                unique_visitors=row.unique_visitors or 0,
            )
            for row in rows
        ]

    async def devices(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
        group_by: str | None = None,
        limit: int | None = 100,
    ) -> list[DeviceStats]:
        model = DeviceAggregate
        names = [group_by] if group_by else ["device_type", "browser", "os"]
        rows = await self._grouped(
            model, [getattr(model, name) for name in names], start, end, link_ids, limit,
        )
        return [
            DeviceStats(
                **{name: getattr(row, name) for name in names},
                clicks=row.clicks or 0,
                unique_visitors=row.unique_visitors or 0,
            )
            for row in rows
        ]

    async def utm(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
        group_by: str | None = None,
        limit: int | None = 100,
    ) -> list[UtmStats]:
        model = UtmAggregate
        extra = None
        if group_by is None:
            names = ["utm_source", "utm_medium", "utm_campaign"]
        else:
            names = [f"utm_{group_by}"]
        if group_by == "campaign":
            # '' sorts first, so MAX picks a non-empty value when one exists
            extra = [
                func.max(model.utm_source).label("utm_source"),
                func.max(model.utm_medium).label("utm_medium"),
            ]

        columns = [getattr(model, name) for name in names]
        query_rows = await self._grouped(model, columns, start, end, link_ids, None, extra)

        stats = []
        for row in query_rows:
            fields = {name: getattr(row, name) or None for name in names}
            if group_by is not None and not fields[names[0]]:
                continue
            if group_by == "campaign":
                fields["utm_source"] = row.utm_source or None
                fields["utm_medium"] = row.utm_medium or None
            stats.append(UtmStats(
                **fields,
                group_by=group_by,
                clicks=row.clicks or 0,
                unique_visitors=row.unique_visitors or 0,
            ))
        return stats[:limit] if limit is not None else stats

    async def custom_params(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
        param_name: str | None = None,
        limit: int | None = 100,
    ) -> list[CustomParamStats]:
        model = CustomParamAggregate
        query = self._scoped(
            select(
                model.param_name,
                model.param_value,
                func.sum(model.clicks).label("clicks"),
                func.max(model.unique_visitors).label("unique_visitors"),
            ),
            model, start, end, link_ids,
        )
        if param_name is not None:
            query = query.where(model.param_name == param_name)
        query = query.group_by(model.param_name, model.param_value).order_by(func.sum(model.clicks).desc())
        if limit is not None:
            query = query.limit(limit)

        return [
            CustomParamStats(
                param_name=row.param_name,
                param_value=row.param_value,
                clicks=row.clicks or 0,
                unique_visitors=row.unique_visitors or 0,
            )
            for row in await self._rows(query)
        ]

    async def summary(
        self,
        start: date,
        end: date,
        link_ids: Sequence[UUID] | None = None,
    ) -> SummaryStats:
        model = DailyAggregate
        query = self._scoped(
            select(
                func.coalesce(func.sum(model.clicks), 0).label("clicks"),
                func.coalesce(func.sum(model.unique_visitors), 0).label("unique_visitors"),
            ),
            model, start, end, link_ids,
        )
        rows = await self._rows(query)
        row = rows[0] if rows else None
        return SummaryStats(
            total_clicks=int(row.clicks) if row else 0,
            unique_visitors=int(row.unique_visitors) if row else 0,
        )

    async def link_visitor_total(self, link_id: UUID) -> int | None:
        async with self._session_factory() as session:
            row = await session.get(LinkVisitorTotal, link_id)
            return row.unique_visitors if row is not None else None
