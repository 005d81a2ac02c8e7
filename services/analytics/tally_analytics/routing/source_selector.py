"""Decide which store(s) serve a report request."""

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum

import structlog

from tally_analytics.routing.date_range import DayRange, SplitDateRange, split_date_range
from tally_analytics.services.settings_provider import AggregationSettings

logger = structlog.get_logger()

REASON_AGGREGATION_DISABLED = "aggregation_disabled"
REASON_TELEMETRY_NOT_CONFIGURED = "telemetry_not_configured"
REASON_EXCLUDED_BY_PREFERENCE = "excluded_by_preference"
REASON_NOT_YET_AGGREGATED = "not_yet_aggregated"


class DataSourcePreference(str, Enum):
    AUTO = "auto"
    TELEMETRY = "telemetry"
    DURABLE = "durable"


@dataclass(frozen=True)
class UnavailableRange:
    range: DayRange
    reason: str


@dataclass(frozen=True)
class SourceDecision:
    """Which stores to read, and for which days. Never persisted."""

    use_telemetry: bool
    use_durable: bool
    split: SplitDateRange
    aggregation_enabled: bool
    preference: DataSourcePreference
    telemetry_range: DayRange | None = None
    durable_range: DayRange | None = None
    fail_closed: bool = False
    unavailable: tuple[UnavailableRange, ...] = field(default_factory=tuple)

    @property
    def live_range(self) -> DayRange | None:
        return self.split.live_range

    @property
    def archived_range(self) -> DayRange | None:
        return self.split.archived_range


def select_sources(
    start: date,
    end: date,
    settings: AggregationSettings,
    preference: DataSourcePreference = DataSourcePreference.AUTO,
    has_credentials: bool = False,
    today: date | None = None,
) -> SourceDecision:
    """Combine the split, the settings, credentials and caller preference.

    Rules:
    - Aggregation disabled: the durable store is never read and any archived
      days are reported unavailable rather than returned as zeros.
    - Forced telemetry without credentials while live days exist: fail closed,
      no fallback to the durable store.
    - Forced durable: read the durable store for the whole range. Live days
      only have whatever the dual-write path has recorded.
    - Auto: telemetry for live days when credentials exist, durable for
      archived days whenever there are any.
    """
    split = split_date_range(start, end, settings.threshold_days, today)
    live = split.live_range
    archived = split.archived_range
    enabled = settings.enabled

    def decide(**kwargs) -> SourceDecision:
        decision = SourceDecision(
            split=split,
            aggregation_enabled=enabled,
            preference=preference,
            **kwargs,
        )
        logger.debug(
            "Data sources selected",
            preference=preference.value,
            use_telemetry=decision.use_telemetry,
            use_durable=decision.use_durable,
            fail_closed=decision.fail_closed,
            threshold_date=split.threshold_date.isoformat(),
        )
        return decision

    if preference is DataSourcePreference.TELEMETRY:
        unavailable = []
        if archived is not None:
            unavailable.append(UnavailableRange(archived, REASON_EXCLUDED_BY_PREFERENCE))
        if live is not None and not has_credentials:
            unavailable.insert(0, UnavailableRange(live, REASON_TELEMETRY_NOT_CONFIGURED))
            return decide(
                use_telemetry=False,
                use_durable=False,
                fail_closed=True,
                unavailable=tuple(unavailable),
            )
        return decide(
            use_telemetry=live is not None,
            use_durable=False,
            telemetry_range=live,
            unavailable=tuple(unavailable),
        )

    if preference is DataSourcePreference.DURABLE:
        requested = DayRange(start, end)
        if not enabled:
            return decide(
                use_telemetry=False,
                use_durable=False,
                fail_closed=True,
                unavailable=(UnavailableRange(requested, REASON_AGGREGATION_DISABLED),),
            )
        unavailable = ()
        if live is not None:
            unavailable = (UnavailableRange(live, REASON_NOT_YET_AGGREGATED),)
        return decide(
            use_telemetry=False,
            use_durable=True,
            durable_range=requested,
            unavailable=unavailable,
        )

    unavailable = []
    use_telemetry = live is not None and has_credentials
    if live is not None and not has_credentials:
        unavailable.append(UnavailableRange(live, REASON_TELEMETRY_NOT_CONFIGURED))

    durable_range = None
    if archived is not None:
        if enabled:
            durable_range = archived
            if split.is_split:
                # The boundary day is read live only
                durable_range = DayRange(archived.start, split.threshold_date - timedelta(days=1))
        else:
            unavailable.append(UnavailableRange(archived, REASON_AGGREGATION_DISABLED))

    return decide(
        use_telemetry=use_telemetry,
        use_durable=durable_range is not None,
        telemetry_range=live if use_telemetry else None,
        durable_range=durable_range,
        unavailable=tuple(unavailable),
    )
