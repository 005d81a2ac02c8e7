"""Unit tests for choosing which store serves which days."""

import pytest

from tally_analytics.routing.date_range import DayRange
from tally_analytics.routing.source_selector import (
    REASON_AGGREGATION_DISABLED,
    REASON_EXCLUDED_BY_PREFERENCE,
    REASON_NOT_YET_AGGREGATED,
    REASON_TELEMETRY_NOT_CONFIGURED,
    DataSourcePreference,
    select_sources,
)
from tally_analytics.services.settings_provider import AggregationSettings

from conftest import TODAY, days_ago

ENABLED = AggregationSettings(enabled=True, threshold_days=10)
DISABLED = AggregationSettings(enabled=False, threshold_days=10)


def reasons(decision) -> list[str]:
    return [u.reason for u in decision.unavailable]


class TestAutoPreference:
    def test_straddling_reads_both_stores(self):
        decision = select_sources(days_ago(29), TODAY, ENABLED, has_credentials=True, today=TODAY)
        assert decision.use_telemetry and decision.use_durable
        assert decision.telemetry_range == DayRange(days_ago(10), TODAY)
        assert decision.durable_range == DayRange(days_ago(29), days_ago(11))
        assert decision.unavailable == ()
        assert not decision.fail_closed

    def test_boundary_day_read_once(self):
        decision = select_sources(days_ago(29), TODAY, ENABLED, has_credentials=True, today=TODAY)
        telemetry_days = set(decision.telemetry_range.iter_days())
        durable_days = set(decision.durable_range.iter_days())
        assert telemetry_days.isdisjoint(durable_days)

    def test_archived_only_reads_full_range_from_durable(self):
        decision = select_sources(days_ago(40), days_ago(20), ENABLED, has_credentials=True, today=TODAY)
        assert not decision.use_telemetry
        assert decision.durable_range == DayRange(days_ago(40), days_ago(20))

    def test_aggregation_disabled_reports_archived_days_missing(self):
        decision = select_sources(days_ago(29), TODAY, DISABLED, has_credentials=True, today=TODAY)
        assert decision.use_telemetry
        assert not decision.use_durable
        assert decision.unavailable[0].range == DayRange(days_ago(29), days_ago(10))
        assert reasons(decision) == [REASON_AGGREGATION_DISABLED]
        assert decision.aggregation_enabled is False

    def test_missing_credentials_degrades_to_durable(self):
        decision = select_sources(days_ago(29), TODAY, ENABLED, has_credentials=False, today=TODAY)
        assert not decision.use_telemetry
        assert decision.use_durable
        assert reasons(decision) == [REASON_TELEMETRY_NOT_CONFIGURED]
        assert not decision.fail_closed

    def test_nothing_available(self):
        decision = select_sources(days_ago(29), TODAY, DISABLED, has_credentials=False, today=TODAY)
        assert not decision.use_telemetry and not decision.use_durable
        assert reasons(decision) == [REASON_TELEMETRY_NOT_CONFIGURED, REASON_AGGREGATION_DISABLED]


class TestForcedTelemetry:
    def test_excludes_archived_days(self):
        decision = select_sources(
            days_ago(29), TODAY, ENABLED, DataSourcePreference.TELEMETRY, has_credentials=True, today=TODAY,
        )
        assert decision.use_telemetry and not decision.use_durable
        assert decision.telemetry_range == DayRange(days_ago(10), TODAY)
        assert reasons(decision) == [REASON_EXCLUDED_BY_PREFERENCE]

    def test_fails_closed_without_credentials(self):
        decision = select_sources(
            days_ago(5), TODAY, ENABLED, DataSourcePreference.TELEMETRY, has_credentials=False, today=TODAY,
        )
        assert decision.fail_closed
        assert not decision.use_durable
        assert reasons(decision) == [REASON_TELEMETRY_NOT_CONFIGURED]

    def test_archived_only_range_reads_nothing(self):
        decision = select_sources(
            days_ago(40), days_ago(20), ENABLED, DataSourcePreference.TELEMETRY, has_credentials=True, today=TODAY,
        )
        assert not decision.use_telemetry and not decision.use_durable
        assert not decision.fail_closed
        assert reasons(decision) == [REASON_EXCLUDED_BY_PREFERENCE]


class TestForcedDurable:
    def test_reads_whole_range(self):
        decision = select_sources(
            days_ago(29), TODAY, ENABLED, DataSourcePreference.DURABLE, has_credentials=True, today=TODAY,
        )
        assert decision.use_durable and not decision.use_telemetry
        assert decision.durable_range == DayRange(days_ago(29), TODAY)
        assert reasons(decision) == [REASON_NOT_YET_AGGREGATED]

    def test_fails_closed_when_disabled(self):
        decision = select_sources(
            days_ago(29), TODAY, DISABLED, DataSourcePreference.DURABLE, has_credentials=True, today=TODAY,
        )
        assert decision.fail_closed
        assert not decision.use_telemetry
        assert reasons(decision) == [REASON_AGGREGATION_DISABLED]


@pytest.mark.parametrize("preference", list(DataSourcePreference), ids=lambda p: p.value)
def test_decision_keeps_split(preference):
    decision = select_sources(days_ago(29), TODAY, ENABLED, preference, has_credentials=True, today=TODAY)
    assert decision.preference is preference
    assert decision.live_range == DayRange(days_ago(10), TODAY)
    assert decision.archived_range == DayRange(days_ago(29), days_ago(10))
