"""Append click events to the telemetry store.

The store is write-only from this side: each click becomes one data point
with a fixed blob layout (see :class:`tally_analytics.telemetry.sql.Column`).
Writes are fire-and-forget. A failing sink is logged and counted but never
raises into the caller, so a telemetry outage cannot break click handling.
"""

from dataclasses import dataclass
from datetime import timezone
from typing import Protocol

import httpx
import structlog
from tally_shared import ClickEvent

from tally_analytics.core.config import Settings, get_settings
from tally_analytics.core.observability import record_telemetry_write
from tally_analytics.schemas.analytics import RawClickEvent
from tally_analytics.telemetry.sql import BLOB_ORDER, Column
from tally_analytics.utils.referrers import extract_referrer_domain
from tally_analytics.utils.urls import (
    extract_tracking_params,
    hash_ip_address,
    strip_sensitive_params,
)
from tally_analytics.utils.user_agents import is_bot, parse_user_agent

logger = structlog.get_logger()

_TRACKING_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "gclid",
    "fbclid",
    "custom_param1",
    "custom_param2",
    "custom_param3",
)


@dataclass(frozen=True)
class DataPoint:
    blobs: tuple[str, ...]
    doubles: tuple[float, ...]
    indexes: tuple[str, ...]

    def blob(self, column: Column) -> str:
        return self.blobs[BLOB_ORDER.index(column)]

    def to_raw_event(self) -> RawClickEvent:
        """The event as the aggregation job would read it back from the store."""

        def optional(column: Column) -> str | None:
            return self.blob(column) or None

        return RawClickEvent(
            timestamp=int(self.doubles[0]),
            link_id=self.blob(Column.LINK_ID),
            country=self.blob(Column.COUNTRY) or "unknown",
            city=self.blob(Column.CITY) or "unknown",
            referrer=self.blob(Column.REFERRER),
            ip_hash=self.blob(Column.IP_HASH),
            device_type=self.blob(Column.DEVICE_TYPE) or "unknown",
            browser=self.blob(Column.BROWSER) or "unknown",
            os=self.blob(Column.OS) or "unknown",
            utm_source=optional(Column.UTM_SOURCE),
            utm_medium=optional(Column.UTM_MEDIUM),
            utm_campaign=optional(Column.UTM_CAMPAIGN),
            custom_param1=optional(Column.CUSTOM_PARAM1),
            custom_param2=optional(Column.CUSTOM_PARAM2),
            custom_param3=optional(Column.CUSTOM_PARAM3),
        )

    def to_dict(self) -> dict:
        return {
            "blobs": list(self.blobs),
            "doubles": list(self.doubles),
            "indexes": list(self.indexes),
        }


class DataPointSink(Protocol):
    async def write(self, point: DataPoint) -> None: ...


class HttpDataPointSink:
    """Posts data points as JSON to an ingest endpoint (e.g. a Worker binding proxy)."""

    def __init__(
        self,
        ingest_url: str,
        api_token: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ):
        self.ingest_url = ingest_url
        self._headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def write(self, point: DataPoint) -> None:
        response = await self._client.post(self.ingest_url, json=point.to_dict(), headers=self._headers)
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class TelemetryWriter:
    """Turns click events into data points and hands them to a sink.

    Usage:
        writer = TelemetryWriter(HttpDataPointSink(url, token), ip_hash_salt="...")
        consumer.register_handler(writer.handle_click)
    """

    def __init__(self, sink: DataPointSink | None, ip_hash_salt: str = ""):
        self._sink = sink
        self._ip_hash_salt = ip_hash_salt
        self._written = 0
        self._dropped = 0
        self._failed = 0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TelemetryWriter":
        settings = settings or get_settings()
        sink = None
        if settings.telemetry_ingest_url:
            sink = HttpDataPointSink(
                settings.telemetry_ingest_url,
                settings.cloudflare_api_token.strip(),
            )
        return cls(sink, ip_hash_salt=settings.ip_hash_salt)

    def build_data_point(self, event: ClickEvent) -> DataPoint | None:
        """Return the data point for an event, or None for bot traffic."""
        if is_bot(event.user_agent):
            return None

        destination_url = strip_sensitive_params(event.destination_url)
        referrer = strip_sensitive_params(event.referrer)

        ua = parse_user_agent(event.user_agent)

        ip_hash = event.ip_hash or ""
        if not ip_hash and event.ip_address:
            ip_hash = hash_ip_address(event.ip_address, self._ip_hash_salt)

        # Explicit event fields win over parameters found on the destination URL
        tracking = extract_tracking_params(event.destination_url)
        for name in _TRACKING_FIELDS:
            value = getattr(event, name)
            if value:
                tracking[name] = value

        clicked_at = event.clicked_at
        if clicked_at.tzinfo is None:
            clicked_at = clicked_at.replace(tzinfo=timezone.utc)

        link_id = str(event.link_id)
        values = {
            Column.LINK_ID: link_id,
            Column.DOMAIN: event.domain.lower(),
            Column.SLUG: event.slug,
            Column.DESTINATION_URL: destination_url,
            Column.COUNTRY: event.country or "",
            Column.CITY: event.city or "",
            Column.USER_AGENT: event.user_agent or "",
            Column.REFERRER: referrer,
            Column.IP_HASH: ip_hash,
            Column.DEVICE_TYPE: event.device_type or ua.device_type,
            Column.BROWSER: event.browser or ua.browser,
            Column.OS: event.os or ua.os,
            Column.UTM_SOURCE: tracking.get("utm_source", ""),
            Column.UTM_MEDIUM: tracking.get("utm_medium", ""),
            Column.UTM_CAMPAIGN: tracking.get("utm_campaign", ""),
            Column.GCLID: tracking.get("gclid", ""),
            Column.FBCLID: tracking.get("fbclid", ""),
            Column.CUSTOM_PARAM1: tracking.get("custom_param1", ""),
            Column.CUSTOM_PARAM2: tracking.get("custom_param2", ""),
            Column.CUSTOM_PARAM3: tracking.get("custom_param3", ""),
        }

        return DataPoint(
            blobs=tuple(values[column] for column in BLOB_ORDER),
            doubles=(float(int(clicked_at.timestamp())),),
            indexes=(link_id,),
        )

    async def write(self, event: ClickEvent) -> bool:
        """Write one click. Returns True if a data point was handed to the sink."""
        point = self.build_data_point(event)
        if point is None:
            self._dropped += 1
            record_telemetry_write("dropped_bot")
            logger.debug("Bot click dropped", link_id=str(event.link_id))
            return False

        if self._sink is None:
            record_telemetry_write("disabled")
            return False

        try:
            await self._sink.write(point)
        except Exception as e:
            self._failed += 1
            record_telemetry_write("error")
            logger.warning(
                "Telemetry write failed",
                link_id=str(event.link_id),
                referrer_domain=extract_referrer_domain(point.blob(Column.REFERRER)),
                error=str(e),
            )
            return False

        self._written += 1
        record_telemetry_write("success")
        return True

    async def handle_click(self, event: ClickEvent) -> None:
        await self.write(event)

    async def aclose(self) -> None:
        if isinstance(self._sink, HttpDataPointSink):
            await self._sink.aclose()

    @property
    def stats(self) -> dict:
        return {
            "sink_configured": self._sink is not None,
            "written": self._written,
            "dropped_bots": self._dropped,
            "failed": self._failed,
        }


# Global writer instance
_writer: TelemetryWriter | None = None


def get_telemetry_writer() -> TelemetryWriter:
    """Get the global telemetry writer, creating it if necessary."""
    global _writer
    if _writer is None:
        _writer = TelemetryWriter.from_settings()
    return _writer
