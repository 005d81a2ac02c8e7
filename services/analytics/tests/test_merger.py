"""Unit tests for merging batched and split query results."""

from datetime import date

from tally_analytics.routing.merger import (
    merge_batches,
    merge_ranges,
    merge_summaries,
    merge_summary_batches,
    sort_rows,
)
from tally_analytics.schemas.analytics import GeoStats, ReferrerStats, SummaryStats, TimeseriesPoint, UtmStats


def geo(country: str, clicks: int, visitors: int, city: str | None = None) -> GeoStats:
    return GeoStats(country=country, city=city, clicks=clicks, unique_visitors=visitors)


class TestSortRows:
    def test_timeseries_by_date(self):
        rows = [
            TimeseriesPoint(date=date(2025, 1, 3), clicks=1),
            TimeseriesPoint(date=date(2025, 1, 1), clicks=9),
        ]
        assert [r.date.day for r in sort_rows(rows)] == [1, 3]

    def test_dimensions_by_clicks_desc(self):
        rows = [geo("NO", 1, 1), geo("SE", 5, 2), geo("DK", 3, 1)]
        assert [r.country for r in sort_rows(rows)] == ["SE", "DK", "NO"]

    def test_empty(self):
        assert sort_rows([]) == []


class TestMergeBatches:
    def test_sums_clicks_and_averages_visitors(self):
        merged = merge_batches([[geo("NO", 10, 4)], [geo("NO", 6, 3)]])
        assert merged == [geo("NO", 16, 4)]

    def test_mean_counts_only_batches_containing_key(self):
        merged = merge_batches([[geo("NO", 2, 2), geo("SE", 1, 1)], [geo("NO", 2, 2)], [geo("NO", 2, 2)]])
        by_country = {row.country: row for row in merged}
        assert by_country["SE"].unique_visitors == 1
        assert by_country["NO"].unique_visitors == 2

    def test_mean_rounds_up(self):
        merged = merge_batches([[geo("NO", 1, 1)], [geo("NO", 1, 2)]])
        assert merged[0].unique_visitors == 2

    def test_limit_after_sort(self):
        batches = [[geo("NO", 1, 1), geo("SE", 9, 1)], [geo("DK", 5, 1)]]
        assert [row.country for row in merge_batches(batches, limit=2)] == ["SE", "DK"]

    def test_city_is_part_of_key(self):
        merged = merge_batches([[geo("NO", 1, 1, "Oslo")], [geo("NO", 1, 1, "Bergen")]])
        assert len(merged) == 2


class TestMergeRanges:
    def test_sums_clicks_keeps_max_visitors(self):
        live = [TimeseriesPoint(date=date(2025, 1, 2), clicks=3, unique_visitors=2)]
        archived = [TimeseriesPoint(date=date(2025, 1, 2), clicks=5, unique_visitors=3)]
        assert merge_ranges(live, archived) == [
            TimeseriesPoint(date=date(2025, 1, 2), clicks=8, unique_visitors=3),
        ]

    def test_disjoint_keys_are_kept(self):
        live = [ReferrerStats(referrer_domain="google.com", category="search", clicks=2)]
        archived = [ReferrerStats(referrer_domain="direct", category="direct", clicks=7)]
        merged = merge_ranges(live, archived)
        assert [row.referrer_domain for row in merged] == ["direct", "google.com"]

    def test_none_city_matches_empty_city(self):
        merged = merge_ranges([geo("NO", 1, 1, None)], [geo("NO", 2, 1, "")])
        assert len(merged) == 1
        assert merged[0].clicks == 3


class TestSummaries:
    def test_batches_average_visitors(self):
        merged = merge_summary_batches([
            SummaryStats(total_clicks=10, unique_visitors=3),
            SummaryStats(total_clicks=5, unique_visitors=4),
        ])
        assert merged == SummaryStats(total_clicks=15, unique_visitors=4)

    def test_ranges_keep_max_visitors(self):
        merged = merge_summaries(
            SummaryStats(total_clicks=3, unique_visitors=2),
            SummaryStats(total_clicks=5, unique_visitors=3),
        )
        assert merged == SummaryStats(total_clicks=8, unique_visitors=3)

    def test_empty(self):
        assert merge_summary_batches([]) == SummaryStats()
        assert merge_summaries() == SummaryStats()


def campaign(name: str, source: str | None, medium: str | None, clicks: int, visitors: int) -> UtmStats:
    return UtmStats(
        utm_campaign=name,
        utm_source=source,
        utm_medium=medium,
        group_by="campaign",
        clicks=clicks,
        unique_visitors=visitors,
    )


class TestCampaignGrouping:
    def test_ranges_merge_by_campaign_only(self):
        merged = merge_ranges(
            [campaign("spring", "google", None, 3, 2)],
            [campaign("spring", "newsletter", "email", 5, 4)],
        )
        assert len(merged) == 1
        assert merged[0].utm_campaign == "spring"
        assert merged[0].clicks == 8
        assert merged[0].unique_visitors == 4

    def test_ranges_keep_first_source_and_fill_medium(self):
        merged = merge_ranges(
            [campaign("spring", "google", None, 3, 2)],
            [campaign("spring", "newsletter", "email", 5, 4)],
        )
        assert merged[0].utm_source == "google"
        assert merged[0].utm_medium == "email"

    def test_batches_merge_by_campaign_only(self):
        merged = merge_batches([
            [campaign("spring", "google", None, 3, 2)],
            [campaign("spring", None, "email", 4, 4)],
        ])
        assert len(merged) == 1
        assert merged[0].clicks == 7
        assert merged[0].unique_visitors == 3
        assert (merged[0].utm_source, merged[0].utm_medium) == ("google", "email")

    def test_group_by_not_serialized(self):
        assert "group_by" not in campaign("spring", None, None, 1, 1).model_dump()

    def test_ungrouped_rows_keep_full_key(self):
        merged = merge_ranges(
            [UtmStats(utm_source="google", utm_campaign="spring", clicks=3, unique_visitors=2)],
            [UtmStats(utm_source="newsletter", utm_campaign="spring", clicks=5, unique_visitors=4)],
        )
        assert len(merged) == 2
