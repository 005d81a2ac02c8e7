"""Tenant-wide aggregation settings with environment overrides.

Two settings drive query routing: whether durable aggregation is enabled and
the age threshold (in days) that separates live from archived data. Each is
resolved in order: environment variable, ``settings`` table row, default.

The provider caches the resolved values for a fixed TTL. Writers go through
the provider, which invalidates its own cache; other processes see the
change once their TTL expires.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tally_analytics.core.config import Settings, get_settings
from tally_analytics.core.errors import ValidationError
from tally_analytics.models.settings import Setting

logger = structlog.get_logger()

SETTING_AGGREGATION_ENABLED = "analytics_aggregation_enabled"
SETTING_THRESHOLDS = "analytics_thresholds"

# Stays inside the telemetry store's 90-day retention with a safety margin
DEFAULT_THRESHOLD_DAYS = 83
DEFAULT_BATCH_SIZE = 500

_THRESHOLD_KEYS = ("threshold_days", "aggregation_threshold_days", "engine_threshold_days")

SettingSource = Literal["env", "database", "default"]


@dataclass(frozen=True)
class AggregationSettings:
    enabled: bool = False
    threshold_days: int = DEFAULT_THRESHOLD_DAYS
    batch_size: int = DEFAULT_BATCH_SIZE
    enabled_source: SettingSource = "default"
    threshold_source: SettingSource = "default"


class SettingsStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, key: str, value: dict[str, Any], updated_by: str | None = None) -> None: ...


class DatabaseSettingsStore:
    """Reads and writes JSON rows in the ``settings`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        if session_factory is None:
            from tally_analytics.core.database import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.get(Setting, key)
            return dict(row.value) if row is not None else None

    async def put(self, key: str, value: dict[str, Any], updated_by: str | None = None) -> None:
        async with self._session_factory() as session:
            row = await session.get(Setting, key)
            if row is None:
                session.add(Setting(key=key, value=value, updated_by=updated_by))
            else:
                row.value = value
                row.updated_by = updated_by
            await session.commit()


def _parse_threshold(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        days = int(value)
    except (TypeError, ValueError):
        return None
    return days if days >= 1 else None


class AggregationSettingsProvider:
    """Resolves :class:`AggregationSettings` with a TTL cache.

    Usage:
        provider = AggregationSettingsProvider(DatabaseSettingsStore())
        settings = await provider.get()
        await provider.set_enabled(True, updated_by="admin@example.com")
    """

    def __init__(
        self,
        store: SettingsStore,
        *,
        env_enabled: bool | None = None,
        env_threshold_days: int | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._env_enabled = env_enabled
        self._env_threshold_days = env_threshold_days
        self._batch_size = min(batch_size, DEFAULT_BATCH_SIZE)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cached: AggregationSettings | None = None
        self._cached_at = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        store: SettingsStore | None = None,
    ) -> "AggregationSettingsProvider":
        settings = settings or get_settings()
        return cls(
            store or DatabaseSettingsStore(),
            env_enabled=settings.analytics_aggregation_enabled,
            env_threshold_days=settings.analytics_aggregation_threshold_days,
            batch_size=settings.aggregation_batch_size,
            ttl_seconds=settings.settings_cache_ttl_seconds,
        )

    async def get(self) -> AggregationSettings:
        """Return the current settings, reloading when the cache has expired."""
        if self._cached is not None and self._clock() - self._cached_at < self._ttl_seconds:
            return self._cached

        resolved, complete = await self._load()
        if complete:
            self._cached = resolved
            self._cached_at = self._clock()
        return resolved

    def invalidate(self) -> None:
        """Drop the cached value so the next read goes to the store."""
        self._cached = None

    async def set_enabled(self, enabled: bool, updated_by: str | None = None) -> None:
        await self._store.put(SETTING_AGGREGATION_ENABLED, {"enabled": enabled}, updated_by)
        self.invalidate()
        logger.info("Aggregation enabled setting updated", enabled=enabled, updated_by=updated_by)

    async def set_threshold_days(self, threshold_days: int, updated_by: str | None = None) -> None:
        if _parse_threshold(threshold_days) is None:
            raise ValidationError("threshold_days must be a positive integer", field="threshold_days")
        await self._store.put(SETTING_THRESHOLDS, {"threshold_days": threshold_days}, updated_by)
        self.invalidate()
        logger.info("Aggregation threshold updated", threshold_days=threshold_days, updated_by=updated_by)

    async def _load(self) -> tuple[AggregationSettings, bool]:
        """Resolve both settings. The flag is False when the store could not be read."""
        complete = True

        enabled, enabled_source = False, "default"
        if self._env_enabled is not None:
            enabled, enabled_source = self._env_enabled, "env"
        else:
            stored = await self._read(SETTING_AGGREGATION_ENABLED)
            if stored is None:
                complete = False
            elif stored and "enabled" in stored:
                enabled, enabled_source = bool(stored["enabled"]), "database"

        threshold_days, threshold_source = DEFAULT_THRESHOLD_DAYS, "default"
        env_threshold = _parse_threshold(self._env_threshold_days)
        if env_threshold is not None:
            threshold_days, threshold_source = env_threshold, "env"
        else:
            stored = await self._read(SETTING_THRESHOLDS)
            if stored is None:
                complete = False
            for key in _THRESHOLD_KEYS:
                parsed = _parse_threshold((stored or {}).get(key))
                if parsed is not None:
                    threshold_days, threshold_source = parsed, "database"
                    break

        return AggregationSettings(
            enabled=enabled,
            threshold_days=threshold_days,
            batch_size=self._batch_size,
            enabled_source=enabled_source,
            threshold_source=threshold_source,
        ), complete

    async def _read(self, key: str) -> dict[str, Any] | None:
        """Read a settings row. Returns ``{}`` when absent and ``None`` on a store error."""
        try:
            return await self._store.get(key) or {}
        except SQLAlchemyError as e:
            logger.warning("Failed to read setting, using default", key=key, error=str(e))
            return None


# Global provider instance
_provider: AggregationSettingsProvider | None = None


def get_settings_provider() -> AggregationSettingsProvider:
    """Get the global settings provider, creating it if necessary."""
    global _provider
    if _provider is None:
        _provider = AggregationSettingsProvider.from_settings()
    return _provider
