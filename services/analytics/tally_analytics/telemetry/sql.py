"""SQL text for the telemetry store's HTTP SQL API.

The store only accepts SQL as a plain string, so every value that ends up in
a query passes through one of the validators below first. Column and
dimension names come from enums, never from caller input.
"""

import math
import re
from collections.abc import Iterator, Sequence
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from uuid import UUID

from tally_analytics.core.errors import ValidationError

# The store rejects IN lists longer than this
MAX_FILTER_IDS = 100

SECONDS_PER_DAY = 86400
MIN_TIMESTAMP = 946684800  # 2000-01-01T00:00:00Z
MAX_TIMESTAMP = 4102444800  # 2100-01-01T00:00:00Z

_DATASET_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?$")


class Column(str, Enum):
    """Fixed positional layout of a click data point."""

    LINK_ID = "blob1"
    DOMAIN = "blob2"
    SLUG = "blob3"
    DESTINATION_URL = "blob4"
    COUNTRY = "blob5"
    CITY = "blob6"
    USER_AGENT = "blob7"
    REFERRER = "blob8"
    IP_HASH = "blob9"
    DEVICE_TYPE = "blob10"
    BROWSER = "blob11"
    OS = "blob12"
    UTM_SOURCE = "blob13"
    UTM_MEDIUM = "blob14"
    UTM_CAMPAIGN = "blob15"
    GCLID = "blob16"
    FBCLID = "blob17"
    CUSTOM_PARAM1 = "blob18"
    CUSTOM_PARAM2 = "blob19"
    CUSTOM_PARAM3 = "blob20"
    TIMESTAMP = "double1"


# Write order of the blobs array; blob N is BLOB_ORDER[N - 1]
BLOB_ORDER = tuple(column for column in Column if column.value.startswith("blob"))


class Dimension(str, Enum):
    TIMESERIES = "timeseries"
    GEOGRAPHY = "geography"
    REFERRERS = "referrers"
    DEVICES = "devices"
    UTM = "utm"
    CUSTOM_PARAMS = "custom_params"
    SUMMARY = "summary"
    RAW_EVENTS = "raw_events"


DEVICE_GROUP_COLUMNS = {
    "device_type": Column.DEVICE_TYPE,
    "browser": Column.BROWSER,
    "os": Column.OS,
}

UTM_GROUP_COLUMNS = {
    "source": Column.UTM_SOURCE,
    "medium": Column.UTM_MEDIUM,
    "campaign": Column.UTM_CAMPAIGN,
}

CUSTOM_PARAM_COLUMNS = {
    "custom_param1": Column.CUSTOM_PARAM1,
    "custom_param2": Column.CUSTOM_PARAM2,
    "custom_param3": Column.CUSTOM_PARAM3,
}

RAW_EVENT_COLUMNS = (
    Column.TIMESTAMP,
    Column.LINK_ID,
    Column.COUNTRY,
    Column.CITY,
    Column.REFERRER,
    Column.IP_HASH,
    Column.DEVICE_TYPE,
    Column.BROWSER,
    Column.OS,
    Column.UTM_SOURCE,
    Column.UTM_MEDIUM,
    Column.UTM_CAMPAIGN,
    Column.CUSTOM_PARAM1,
    Column.CUSTOM_PARAM2,
    Column.CUSTOM_PARAM3,
)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_dataset(name: str) -> str:
    if not name or len(name) > 100 or not _DATASET_RE.match(name):
        raise ValidationError(f"Invalid dataset name: {name!r}", field="dataset")
    return name


def validate_link_id(link_id: str | UUID) -> str:
    value = str(link_id)
    if not _UUID_RE.match(value):
        raise ValidationError(f"Invalid link ID: {value!r}", field="link_id")
    return value.lower()


def validate_domain(domain: str) -> str:
    if not domain or len(domain) > 253 or not _DOMAIN_RE.match(domain):
        raise ValidationError(f"Invalid domain: {domain!r}", field="domain")
    return domain.lower()


def validate_timestamp(value: float) -> int:
    """Accept whole epoch seconds between 2000-01-01 and 2100-01-01."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"Invalid timestamp: {value!r}", field="timestamp")
    if value < MIN_TIMESTAMP or value > MAX_TIMESTAMP:
        raise ValidationError(f"Timestamp out of range: {value!r}", field="timestamp")
    return int(value)


# ---------------------------------------------------------------------------
# Quoting
# ---------------------------------------------------------------------------


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def day_start_timestamp(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


def day_bounds(start: date, end: date) -> tuple[int, int]:
    """Half-open epoch-second window covering the whole days ``start..end``."""
    return (
        validate_timestamp(day_start_timestamp(start)),
        validate_timestamp(day_start_timestamp(end) + SECONDS_PER_DAY),
    )


def day_from_number(day_number: int) -> date:
    return date(1970, 1, 1) + timedelta(days=day_number)


def batch_link_ids(link_ids: Sequence[str], size: int = MAX_FILTER_IDS) -> Iterator[list[str]]:
    """Yield consecutive chunks of at most ``size`` link IDs."""
    for offset in range(0, len(link_ids), size):
        yield list(link_ids[offset:offset + size])


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def build_where(
    start: date,
    end: date,
    link_ids: Sequence[str] = (),
    domains: Sequence[str] = (),
) -> tuple[str, bool]:
    """Build the shared WHERE clause.

    Returns the clause and whether a requested link filter had to be dropped
    because it exceeded the IN-list cap without a domain filter to fall back on.
    """
    start_ts, end_ts = day_bounds(start, end)
    conditions = [
        f"{Column.TIMESTAMP.value} >= {start_ts}",
        f"{Column.TIMESTAMP.value} < {end_ts}",
    ]

    dropped = False
    if domains:
        values = ", ".join(quote_literal(validate_domain(d)) for d in domains)
        conditions.append(f"{Column.DOMAIN.value} IN ({values})")
    elif link_ids:
        validated = [validate_link_id(link_id) for link_id in link_ids]
        if len(validated) <= MAX_FILTER_IDS:
            values = ", ".join(quote_literal(link_id) for link_id in validated)
            conditions.append(f"{Column.LINK_ID.value} IN ({values})")
        else:
            dropped = True

    return " AND ".join(conditions), dropped


class QueryBuilder:
    """Produces SQL text for one dataset."""

    def __init__(self, dataset: str):
        self.dataset = validate_dataset(dataset)
        self._table = quote_identifier(self.dataset)

    def grouped(
        self,
        columns: Sequence[Column],
        where: str,
        extra_conditions: Sequence[str] = (),
    ) -> str:
        """Click counts grouped by ``columns`` plus the IP hash.

        The store has no COUNT(DISTINCT), so distinct visitors are counted in
        memory from the per-IP groups this query returns.
        """
        group_columns = [column.value for column in columns] + [Column.IP_HASH.value]
        conditions = " AND ".join([where, *extra_conditions])
        select_list = ", ".join(group_columns)
        return (
            f"SELECT {select_list}, COUNT() AS clicks "
            f"FROM {self._table} "
            f"WHERE {conditions} "
            f"GROUP BY {select_list}"
        )

    def timeseries(self, where: str) -> str:
        link, ip = Column.LINK_ID.value, Column.IP_HASH.value
        return (
            f"SELECT {link}, floor({Column.TIMESTAMP.value} / {SECONDS_PER_DAY}) AS day_number, "
            f"{ip}, COUNT() AS clicks "
            f"FROM {self._table} "
            f"WHERE {where} "
            f"GROUP BY {link}, day_number, {ip} "
            f"ORDER BY day_number"
        )

    def summary(self, where: str) -> str:
        return self.grouped([Column.LINK_ID], where)

    def utm(self, columns: Sequence[Column], where: str) -> str:
        any_utm = " OR ".join(
            f"{column.value} != ''"
            for column in (Column.UTM_SOURCE, Column.UTM_MEDIUM, Column.UTM_CAMPAIGN)
        )
        return self.grouped(columns, where, [f"({any_utm})"])

    def custom_param(self, param_name: str, where: str) -> str:
        column = CUSTOM_PARAM_COLUMNS[param_name]
        return self.grouped([column], where, [f"{column.value} != ''"])

    def raw_events(self, where: str) -> str:
        select_list = ", ".join(column.value for column in RAW_EVENT_COLUMNS)
        return (
            f"SELECT {select_list} "
            f"FROM {self._table} "
            f"WHERE {where} "
            f"ORDER BY {Column.TIMESTAMP.value}"
        )
