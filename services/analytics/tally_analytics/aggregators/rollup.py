"""Fold raw click events into per-day rollup rows."""

from collections import defaultdict
from datetime import datetime, timezone
from uuid import UUID

import structlog

from tally_analytics.schemas.analytics import RawClickEvent
from tally_analytics.services.aggregate_store import AggregateRows
from tally_analytics.utils.referrers import extract_referrer_domain

logger = structlog.get_logger()

# Dimension columns of each rollup table, in primary-key order
TABLE_DIMENSIONS: dict[str, tuple[str, ...]] = {
    "daily": (),
    "geo": ("country", "city"),
    "referrers": ("referrer_domain",),
    "devices": ("device_type", "browser", "os"),
    "utm": ("utm_source", "utm_medium", "utm_campaign"),
    "custom_params": ("param_name", "param_value"),
}

_CUSTOM_PARAMS = ("custom_param1", "custom_param2", "custom_param3")


class ClickRollup:
    """Accumulates click counts and distinct IP hashes per rollup key.

    Keys are ``(table, link_id, date, *dimension values)``. Absent dimension
    values are stored as ``''`` so they match the tables' NOT NULL keys.
    """

    def __init__(self) -> None:
        self._clicks: dict[tuple, int] = defaultdict(int)
        self._visitors: dict[tuple, set[str]] = defaultdict(set)
        self._link_visitors: dict[UUID, set[str]] = defaultdict(set)
        self.events = 0
        self.rejected = 0

    def add(self, event: RawClickEvent) -> bool:
        try:
            link_id = UUID(event.link_id)
        except ValueError:
            self.rejected += 1
            logger.warning("Skipping event with malformed link ID", link_id=event.link_id)
            return False

        day = datetime.fromtimestamp(event.timestamp, tz=timezone.utc).date()
        ip_hash = event.ip_hash
        base = (link_id, day)

        self._count(("daily", *base), ip_hash)
        city = "" if event.city == "unknown" else event.city
        self._count(("geo", *base, event.country or "unknown", city or ""), ip_hash)
        self._count(("referrers", *base, extract_referrer_domain(event.referrer)), ip_hash)
        self._count(
            (
                "devices",
                *base,
                event.device_type or "unknown",
                event.browser or "unknown",
                event.os or "unknown",
            ),
            ip_hash,
        )

        if event.utm_source or event.utm_medium or event.utm_campaign:
            self._count(
                (
                    "utm",
                    *base,
                    event.utm_source or "",
                    event.utm_medium or "",
                    event.utm_campaign or "",
                ),
                ip_hash,
            )

        for name in _CUSTOM_PARAMS:
            value = getattr(event, name)
            if value:
                self._count(("custom_params", *base, name, value), ip_hash)

        if ip_hash:
            self._link_visitors[link_id].add(ip_hash)
        self.events += 1
        return True

    def _count(self, key: tuple, ip_hash: str) -> None:
        self._clicks[key] += 1
        if ip_hash:
            self._visitors[key].add(ip_hash)

    def rows(self) -> AggregateRows:
        rows = AggregateRows()
        for key, clicks in self._clicks.items():
            table, link_id, day, *values = key
            row = {
                "link_id": link_id,
                "date": day,
                **dict(zip(TABLE_DIMENSIONS[table], values)),
                "clicks": clicks,
                "unique_visitors": len(self._visitors.get(key, ())),
            }
            getattr(rows, table).append(row)
        return rows

    def link_visitor_totals(self) -> dict[UUID, int]:
        """Distinct IP hashes per link across every day folded in."""
        return {link_id: len(ips) for link_id, ips in self._link_visitors.items()}
