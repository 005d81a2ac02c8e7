"""Unit tests for durable aggregate upserts and reads."""

from uuid import UUID

import pytest
from sqlalchemy.exc import OperationalError

from tally_analytics.aggregators.rollup import ClickRollup
from tally_analytics.core.errors import AggregateWriteError
from tally_analytics.schemas.analytics import RawClickEvent, SummaryStats
from tally_analytics.services.aggregate_store import AggregateRows, AggregateStore
from tally_analytics.telemetry.sql import day_start_timestamp

from conftest import LINK_ID, OTHER_LINK_ID, days_ago

LINK = UUID(LINK_ID)
OTHER = UUID(OTHER_LINK_ID)


def daily(day, clicks, visitors, link_id=LINK) -> dict:
    return {"link_id": link_id, "date": day, "clicks": clicks, "unique_visitors": visitors}


def event(day, ip_hash="ip-a", link_id=LINK_ID, **fields) -> RawClickEvent:
    return RawClickEvent(timestamp=day_start_timestamp(day) + 60, link_id=link_id, ip_hash=ip_hash, **fields)


# ---- writes ----


class TestReplace:
    async def test_rerun_overwrites(self, session_factory):
        store = AggregateStore(session_factory)
        day = days_ago(20)
        await store.replace(AggregateRows(daily=[daily(day, 5, 3)]))
        await store.replace(AggregateRows(daily=[daily(day, 5, 3)]))
        points = await store.timeseries(day, day)
        assert [(p.clicks, p.unique_visitors) for p in points] == [(5, 3)]

    async def test_returns_rows_written(self, session_factory):
        store = AggregateStore(session_factory)
        rows = AggregateRows(daily=[daily(days_ago(n), 1, 1) for n in range(20, 27)])
        assert await store.replace(rows, batch_size=3) == 7
        assert len(await store.timeseries(days_ago(30), days_ago(1))) == 7

    async def test_failed_batch_raises_with_index(self, session_factory):
        class FailingSession:
            def __init__(self, session):
                self._session = session
                self.bind = session.bind

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                await self._session.close()

            async def execute(self, stmt):
                raise OperationalError("INSERT", {}, Exception("disk full"))

            async def rollback(self):
                await self._session.rollback()

        store = AggregateStore(lambda: FailingSession(session_factory()))
        with pytest.raises(AggregateWriteError) as exc:
            await store.replace(AggregateRows(daily=[daily(days_ago(20), 1, 1)]), target_date=days_ago(20))
        assert exc.value.batch_index == 0
        assert exc.value.target_date == days_ago(20)


class TestIncrement:
    async def test_adds_clicks_keeps_visitors(self, session_factory):
        store = AggregateStore(session_factory)
        day = days_ago(1)
        await store.increment(AggregateRows(daily=[daily(day, 1, 1)]))
        await store.increment(AggregateRows(daily=[daily(day, 1, 1)]))
        points = await store.timeseries(day, day)
        assert [(p.clicks, p.unique_visitors) for p in points] == [(2, 1)]

    async def test_replace_after_increment_converges(self, session_factory):
        store = AggregateStore(session_factory)
        day = days_ago(20)
        await store.increment(AggregateRows(daily=[daily(day, 1, 1)]))
        await store.replace(AggregateRows(daily=[daily(day, 9, 4)]))
        assert (await store.summary(day, day)) == SummaryStats(total_clicks=9, unique_visitors=4)


class TestLinkVisitorTotals:
    async def test_upsert(self, session_factory):
        store = AggregateStore(session_factory)
        assert await store.update_link_visitor_totals({LINK: 3})
        assert await store.update_link_visitor_totals({LINK: 5})
        assert await store.link_visitor_total(LINK) == 5
        assert await store.link_visitor_total(OTHER) is None

    async def test_empty_is_noop(self, session_factory):
        assert await AggregateStore(session_factory).update_link_visitor_totals({})


# ---- reads ----


@pytest.fixture
async def populated_store(session_factory) -> AggregateStore:
    rollup = ClickRollup()
    day = days_ago(20)
    rollup.add(event(day, "ip-a", country="NO", city="Oslo", referrer="https://www.google.com/",
                     utm_source="newsletter", utm_medium="email", utm_campaign="spring",
                     custom_param1="blue", device_type="mobile", browser="safari", os="ios"))
    rollup.add(event(day, "ip-b", country="NO", city="Oslo", referrer="",
                     utm_campaign="spring", device_type="desktop", browser="chrome", os="windows"))
    rollup.add(event(day, "ip-a", country="SE", referrer="https://t.co/x"))
    rollup.add(event(days_ago(21), "ip-c", link_id=OTHER_LINK_ID, country="DK"))
    store = AggregateStore(session_factory)
    await store.replace(rollup.rows())
    return store


class TestReads:
    async def test_timeseries_filtered_by_link(self, populated_store):
        points = await populated_store.timeseries(days_ago(30), days_ago(1), [LINK])
        assert [(p.date, p.clicks, p.unique_visitors) for p in points] == [(days_ago(20), 3, 2)]

    async def test_timeseries_all_links(self, populated_store):
        points = await populated_store.timeseries(days_ago(30), days_ago(1))
        assert [p.date for p in points] == [days_ago(21), days_ago(20)]

    async def test_geography(self, populated_store):
        geo = await populated_store.geography(days_ago(30), days_ago(1), [LINK])
        assert [(g.country, g.city, g.clicks) for g in geo] == [("NO", "Oslo", 2), ("SE", None, 1)]

    async def test_geography_limit(self, populated_store):
        assert len(await populated_store.geography(days_ago(30), days_ago(1), limit=1)) == 1

    async def test_referrers_categorized(self, populated_store):
        referrers = {r.referrer_domain: r for r in await populated_store.referrers(days_ago(30), days_ago(1), [LINK])}
        assert referrers["google.com"].category == "search"
        assert referrers["direct"].category == "direct"
        assert referrers["t.co"].category == "other"

    async def test_devices_by_browser(self, populated_store):
        browsers = await populated_store.devices(days_ago(30), days_ago(1), [LINK], group_by="browser")
        assert {b.browser: b.clicks for b in browsers} == {"safari": 1, "chrome": 1, "unknown": 1}

    async def test_utm_only_tagged_clicks(self, populated_store):
        rows = await populated_store.utm(days_ago(30), days_ago(1), [LINK])
        assert sum(r.clicks for r in rows) == 2

    async def test_utm_campaign_picks_source(self, populated_store):
        campaigns = await populated_store.utm(days_ago(30), days_ago(1), [LINK], group_by="campaign")
        assert len(campaigns) == 1
        assert campaigns[0].utm_campaign == "spring"
        assert campaigns[0].utm_source == "newsletter"
        assert campaigns[0].clicks == 2

    async def test_utm_source_skips_untagged(self, populated_store):
        sources = await populated_store.utm(days_ago(30), days_ago(1), [LINK], group_by="source")
        assert [s.utm_source for s in sources] == ["newsletter"]

    async def test_custom_params(self, populated_store):
        params = await populated_store.custom_params(days_ago(30), days_ago(1), [LINK])
        assert [(p.param_name, p.param_value, p.clicks) for p in params] == [("custom_param1", "blue", 1)]

    async def test_summary(self, populated_store):
        summary = await populated_store.summary(days_ago(30), days_ago(1), [LINK])
        assert summary == SummaryStats(total_clicks=3, unique_visitors=2)

    async def test_empty_range(self, populated_store):
        assert await populated_store.summary(days_ago(5), days_ago(1)) == SummaryStats()
        assert await populated_store.timeseries(days_ago(5), days_ago(1)) == []
