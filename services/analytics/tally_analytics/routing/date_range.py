"""Split a reporting range at the aggregation threshold.

Vocabulary
----------
The threshold boundary is ``today - threshold_days``. Days on or after it are
still inside the telemetry store's retention window and are read live; days
before it have been rolled up into durable aggregates.

``split_date_range`` returns the historical ``recent`` / ``old`` pair, and
that shape is kept for compatibility:

* entirely before the boundary: ``recent=None, old=[start, end]``
* entirely on/after the boundary: ``recent=[start, end], old=None``
* straddling: ``recent=[start, boundary]``, ``old=[boundary, end]``

In the straddling case the names are inverted relative to the stores. Use
``live_range`` (telemetry-served) and ``archived_range`` (durable-served)
everywhere outside this module; they resolve the inversion.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from tally_analytics.core.errors import ValidationError


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class DayRange:
    """Inclusive range of UTC calendar days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError(
                f"start date {self.start.isoformat()} is after end date {self.end.isoformat()}",
                field="start_date",
            )

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    def iter_days(self):
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)


@dataclass(frozen=True)
class SplitDateRange:
    recent: DayRange | None
    old: DayRange | None
    threshold_date: date

    @property
    def is_split(self) -> bool:
        return self.recent is not None and self.old is not None

    @property
    def live_range(self) -> DayRange | None:
        """Days served by the telemetry store."""
        return self.old if self.is_split else self.recent

    @property
    def archived_range(self) -> DayRange | None:
        """Days served by the durable aggregate store."""
        return self.recent if self.is_split else self.old


def threshold_date_for(threshold_days: int, today: date | None = None) -> date:
    """Return the first day still served live for the given threshold."""
    if threshold_days < 0:
        raise ValidationError("threshold_days must not be negative", field="threshold_days")
    return (today or utc_today()) - timedelta(days=threshold_days)


def split_date_range(
    start: date,
    end: date,
    threshold_days: int,
    today: date | None = None,
) -> SplitDateRange:
    """Partition ``[start, end]`` at the threshold boundary.

    When the range straddles the boundary, both halves include the boundary
    day and ``recent`` is the earlier half. See the module docstring.
    """
    requested = DayRange(start, end)
    threshold_date = threshold_date_for(threshold_days, today)

    if requested.end < threshold_date:
        return SplitDateRange(recent=None, old=requested, threshold_date=threshold_date)

    if requested.start >= threshold_date:
        return SplitDateRange(recent=requested, old=None, threshold_date=threshold_date)

    return SplitDateRange(
        recent=DayRange(requested.start, threshold_date),
        old=DayRange(threshold_date, requested.end),
        threshold_date=threshold_date,
    )


def should_aggregate_date(target: date, threshold_days: int, today: date | None = None) -> bool:
    """A day may be rolled up once it is strictly older than the threshold boundary."""
    return target < threshold_date_for(threshold_days, today)
