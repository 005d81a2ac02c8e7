"""Unit tests for building reports across the live and archived stores."""

from uuid import UUID

import httpx
import pytest

from tally_analytics.core.errors import SourceUnavailableError, ValidationError
from tally_analytics.routing.source_selector import DataSourcePreference
from tally_analytics.services.aggregate_store import AggregateRows, AggregateStore
from tally_analytics.services.report import ReportService
from tally_analytics.telemetry.sql import day_start_timestamp

from conftest import (
    LINK_ID,
    TODAY,
    TelemetryStub,
    days_ago,
    make_provider,
    make_telemetry_client,
)

LINK = UUID(LINK_ID)


def live_clicks(sql: str):
    """Three clicks from two visitors five days ago."""
    day_number = day_start_timestamp(days_ago(5)) // 86400
    if "day_number" in sql:
        return {"data": [
            {"blob1": LINK_ID, "day_number": day_number, "blob9": "ip-a", "clicks": 2},
            {"blob1": LINK_ID, "day_number": day_number, "blob9": "ip-b", "clicks": 1},
        ]}
    if sql.startswith("SELECT blob1, blob9,"):
        return {"data": [
            {"blob1": LINK_ID, "blob9": "ip-a", "clicks": 2},
            {"blob1": LINK_ID, "blob9": "ip-b", "clicks": 1},
        ]}
    if sql.startswith("SELECT blob5, blob6, blob9,"):
        return {"data": [{"blob5": "NO", "blob6": "", "blob9": "ip-a", "clicks": 3}]}
    return {"data": []}


async def seed_archive(session_factory) -> None:
    """Five clicks from three visitors twenty days ago."""
    day = days_ago(20)
    await AggregateStore(session_factory).replace(AggregateRows(
        daily=[{"link_id": LINK, "date": day, "clicks": 5, "unique_visitors": 3}],
        geo=[{"link_id": LINK, "date": day, "country": "NO", "city": "", "clicks": 5, "unique_visitors": 3}],
    ))


def make_service(session_factory, stub, enabled=True, **client_kwargs) -> ReportService:
    return ReportService(
        make_telemetry_client(stub, **client_kwargs),
        AggregateStore(session_factory),
        make_provider(enabled=enabled, threshold_days=10),
        clock=lambda: TODAY,
    )


class TestMixedReport:
    async def test_merges_live_and_archived_days(self, session_factory):
        await seed_archive(session_factory)
        service = make_service(session_factory, TelemetryStub(live_clicks))

        report = await service.link_report(link_ids=[LINK_ID])

        assert report.start_date == days_ago(29)
        assert report.end_date == TODAY
        assert [(p.date, p.clicks) for p in report.timeseries] == [(days_ago(20), 5), (days_ago(5), 3)]
        assert report.summary.total_clicks == 8
        assert report.summary.unique_visitors == 3
        assert report.summary.avg_clicks_per_day == round(8 / 30, 2)
        assert report.summary.last_click_date == days_ago(5)

        assert report.meta.data_source == "mixed"
        assert report.meta.missing_ranges == []
        assert not report.meta.incomplete
        assert report.meta.live_range.start == days_ago(10)
        assert report.meta.archived_range.end == days_ago(11)

    async def test_dimensions_merged_by_key(self, session_factory):
        await seed_archive(session_factory)
        report = await make_service(session_factory, TelemetryStub(live_clicks)).link_report(link_ids=[LINK_ID])
        assert [(g.country, g.clicks, g.unique_visitors) for g in report.geography] == [("NO", 8, 3)]

    async def test_live_only_range(self, session_factory):
        report = await make_service(session_factory, TelemetryStub(live_clicks)).link_report(
            link_ids=[LINK_ID], start_date=days_ago(7), end_date=TODAY,
        )
        assert report.meta.data_source == "telemetry"
        assert report.summary.total_clicks == 3
        assert report.meta.archived_range is None


class TestDegradedReports:
    async def test_aggregation_disabled_marks_archive_missing(self, session_factory):
        await seed_archive(session_factory)
        report = await make_service(session_factory, TelemetryStub(live_clicks), enabled=False).link_report(
            link_ids=[LINK_ID],
        )
        assert report.summary.total_clicks == 3
        assert report.meta.incomplete
        missing = report.meta.missing_ranges[0]
        assert (missing.start, missing.end, missing.reason) == (days_ago(29), days_ago(10), "aggregation_disabled")

    async def test_no_credentials_serves_archive(self, session_factory):
        await seed_archive(session_factory)
        stub = TelemetryStub(live_clicks)
        report = await make_service(session_factory, stub, api_token="").link_report(link_ids=[LINK_ID])
        assert stub.statements == []
        assert report.summary.total_clicks == 5
        assert report.meta.data_source == "durable_partial"
        assert report.meta.missing_ranges[0].reason == "telemetry_not_configured"

    async def test_telemetry_outage_reported_not_raised(self, session_factory):
        await seed_archive(session_factory)
        stub = TelemetryStub(lambda sql: httpx.Response(503))
        report = await make_service(session_factory, stub).link_report(link_ids=[LINK_ID])
        assert report.summary.total_clicks == 5
        telemetry = next(s for s in report.meta.sources if s.source == "telemetry")
        assert telemetry.status == "unavailable"
        assert report.meta.missing_ranges[-1].reason == "telemetry_query_failed"

    async def test_partial_telemetry_failure(self, session_factory):
        def geography_fails(sql):
            if sql.startswith("SELECT blob5, blob6, blob9,"):
                return httpx.Response(500)
            return live_clicks(sql)

        report = await make_service(session_factory, TelemetryStub(geography_fails)).link_report(
            link_ids=[LINK_ID], start_date=days_ago(7),
        )
        assert report.summary.total_clicks == 3
        assert report.geography == []
        assert report.meta.sources[0].status == "partial"
        assert any("geography" in warning for warning in report.meta.warnings)

    async def test_domain_filter_cannot_use_archive(self, session_factory):
        await seed_archive(session_factory)
        report = await make_service(session_factory, TelemetryStub(live_clicks)).link_report(
            domains=["go.example.com"],
        )
        assert report.meta.data_source == "telemetry"
        assert report.meta.missing_ranges[0].reason == "domain_filter_unsupported"
        assert report.meta.warnings

    async def test_invalid_dataset_marks_live_days_missing(self, session_factory):
        stub = TelemetryStub(live_clicks)
        service = make_service(session_factory, stub, dataset="bad name;drop")

        report = await service.link_report(link_ids=[LINK_ID], start_date=days_ago(7))

        assert stub.statements == []
        assert report.meta.data_source == "none"
        missing = report.meta.missing_ranges[0]
        assert (missing.start, missing.end, missing.reason) == (days_ago(7), TODAY, "telemetry_not_configured")


class TestForcedSources:
    async def test_forced_telemetry_with_invalid_dataset_fails_closed(self, session_factory):
        stub = TelemetryStub(live_clicks)
        service = make_service(session_factory, stub, dataset="bad name;drop")
        with pytest.raises(SourceUnavailableError):
            await service.link_report(link_ids=[LINK_ID], preference=DataSourcePreference.TELEMETRY)
        assert stub.statements == []

    async def test_forced_telemetry_without_credentials_fails_closed(self, session_factory):
        service = make_service(session_factory, TelemetryStub(), api_token="")
        with pytest.raises(SourceUnavailableError) as exc:
            await service.link_report(link_ids=[LINK_ID], preference=DataSourcePreference.TELEMETRY)
        assert exc.value.status_code == 503

    async def test_forced_durable_when_disabled_fails_closed(self, session_factory):
        service = make_service(session_factory, TelemetryStub(), enabled=False)
        with pytest.raises(SourceUnavailableError):
            await service.link_report(link_ids=[LINK_ID], preference=DataSourcePreference.DURABLE)

    async def test_forced_durable_reads_whole_range(self, session_factory):
        await seed_archive(session_factory)
        stub = TelemetryStub(live_clicks)
        report = await make_service(session_factory, stub).link_report(
            link_ids=[LINK_ID], preference=DataSourcePreference.DURABLE,
        )
        assert stub.statements == []
        assert report.summary.total_clicks == 5
        assert report.meta.data_source == "durable_partial"
        assert report.meta.missing_ranges[0].reason == "not_yet_aggregated"

    async def test_forced_telemetry_excludes_archive(self, session_factory):
        await seed_archive(session_factory)
        report = await make_service(session_factory, TelemetryStub(live_clicks)).link_report(
            link_ids=[LINK_ID], preference=DataSourcePreference.TELEMETRY,
        )
        assert report.summary.total_clicks == 3
        assert report.meta.missing_ranges[0].reason == "excluded_by_preference"


class TestValidation:
    async def test_bad_link_id_rejected_before_queries(self, session_factory):
        stub = TelemetryStub()
        with pytest.raises(ValidationError):
            await make_service(session_factory, stub).link_report(link_ids=["not-a-uuid"])
        assert stub.statements == []

    async def test_inverted_range_rejected(self, session_factory):
        with pytest.raises(ValidationError):
            await make_service(session_factory, TelemetryStub()).link_report(
                start_date=TODAY, end_date=days_ago(3),
            )
