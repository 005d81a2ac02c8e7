"""Unit tests for aggregation settings resolution and caching."""

import pytest
from sqlalchemy.exc import OperationalError

from tally_analytics.core.errors import ValidationError
from tally_analytics.services.settings_provider import (
    DEFAULT_THRESHOLD_DAYS,
    SETTING_AGGREGATION_ENABLED,
    SETTING_THRESHOLDS,
    AggregationSettingsProvider,
    DatabaseSettingsStore,
)

from conftest import InMemorySettingsStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def provider_for(store, clock=None, **kwargs) -> AggregationSettingsProvider:
    return AggregationSettingsProvider(store, ttl_seconds=60, clock=clock or FakeClock(), **kwargs)


class TestResolution:
    async def test_defaults(self, settings_store):
        settings = await provider_for(settings_store).get()
        assert settings.enabled is False
        assert settings.threshold_days == DEFAULT_THRESHOLD_DAYS
        assert settings.enabled_source == "default"
        assert settings.threshold_source == "default"

    async def test_database_values(self):
        store = InMemorySettingsStore({
            SETTING_AGGREGATION_ENABLED: {"enabled": True},
            SETTING_THRESHOLDS: {"threshold_days": 30},
        })
        settings = await provider_for(store).get()
        assert settings.enabled is True
        assert settings.threshold_days == 30
        assert settings.threshold_source == "database"

    async def test_env_wins_over_database(self):
        store = InMemorySettingsStore({
            SETTING_AGGREGATION_ENABLED: {"enabled": True},
            SETTING_THRESHOLDS: {"threshold_days": 30},
        })
        settings = await provider_for(store, env_enabled=False, env_threshold_days=45).get()
        assert settings.enabled is False
        assert settings.threshold_days == 45
        assert settings.enabled_source == "env"
        assert settings.threshold_source == "env"

    @pytest.mark.parametrize("key", ["aggregation_threshold_days", "engine_threshold_days"])
    async def test_legacy_threshold_keys(self, key):
        store = InMemorySettingsStore({SETTING_THRESHOLDS: {key: 14}})
        assert (await provider_for(store).get()).threshold_days == 14

    @pytest.mark.parametrize("value", [0, -3, "abc", True, None])
    async def test_invalid_threshold_falls_back(self, value):
        store = InMemorySettingsStore({SETTING_THRESHOLDS: {"threshold_days": value}})
        assert (await provider_for(store).get()).threshold_days == DEFAULT_THRESHOLD_DAYS

    async def test_invalid_env_threshold_ignored(self):
        store = InMemorySettingsStore({SETTING_THRESHOLDS: {"threshold_days": 20}})
        settings = await provider_for(store, env_threshold_days=0).get()
        assert settings.threshold_days == 20

    async def test_batch_size_capped(self, settings_store):
        settings = await provider_for(settings_store, batch_size=5000).get()
        assert settings.batch_size == 500

    async def test_store_error_uses_defaults(self, settings_store):
        settings_store.error = OperationalError("SELECT", {}, Exception("db down"))
        settings = await provider_for(settings_store).get()
        assert settings.enabled is False
        assert settings.threshold_days == DEFAULT_THRESHOLD_DAYS


class TestCaching:
    async def test_cached_within_ttl(self, settings_store):
        clock = FakeClock()
        provider = provider_for(settings_store, clock)
        await provider.get()
        reads = settings_store.reads
        clock.now += 59
        await provider.get()
        assert settings_store.reads == reads

    async def test_reloaded_after_ttl(self, settings_store):
        clock = FakeClock()
        provider = provider_for(settings_store, clock)
        await provider.get()
        settings_store.values[SETTING_AGGREGATION_ENABLED] = {"enabled": True}
        clock.now += 61
        assert (await provider.get()).enabled is True

    async def test_failed_read_not_cached(self, settings_store):
        provider = provider_for(settings_store)
        settings_store.error = OperationalError("SELECT", {}, Exception("db down"))
        await provider.get()
        settings_store.error = None
        settings_store.values[SETTING_AGGREGATION_ENABLED] = {"enabled": True}
        assert (await provider.get()).enabled is True

    async def test_writes_invalidate(self, settings_store):
        provider = provider_for(settings_store)
        assert (await provider.get()).enabled is False
        await provider.set_enabled(True, updated_by="ops@example.com")
        await provider.set_threshold_days(21)
        settings = await provider.get()
        assert settings.enabled is True
        assert settings.threshold_days == 21

    async def test_threshold_must_be_positive(self, settings_store):
        with pytest.raises(ValidationError):
            await provider_for(settings_store).set_threshold_days(0)


class TestDatabaseSettingsStore:
    async def test_put_and_get(self, session_factory):
        store = DatabaseSettingsStore(session_factory)
        assert await store.get(SETTING_AGGREGATION_ENABLED) is None
        await store.put(SETTING_AGGREGATION_ENABLED, {"enabled": True}, updated_by="ops")
        await store.put(SETTING_AGGREGATION_ENABLED, {"enabled": False})
        assert await store.get(SETTING_AGGREGATION_ENABLED) == {"enabled": False}

    async def test_provider_over_database(self, session_factory):
        provider = AggregationSettingsProvider(DatabaseSettingsStore(session_factory))
        await provider.set_threshold_days(30)
        settings = await provider.get()
        assert settings.threshold_days == 30
        assert settings.threshold_source == "database"
