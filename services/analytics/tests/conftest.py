"""
Shared test configuration.

Patches dotenv so pydantic-settings never reads a developer's .env file, and
provides an on-disk SQLite database with the analytics tables plus an
in-memory stand-in for the telemetry SQL API.
"""

from datetime import date, timedelta
from typing import Any, Callable

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tally_analytics.models import Base
from tally_analytics.services.settings_provider import AggregationSettingsProvider
from tally_analytics.telemetry.query import TelemetryConfig, TelemetryQueryClient
from tally_analytics.telemetry.sql import Column, day_start_timestamp

TODAY = date(2025, 6, 30)
LINK_ID = "3f2a8c1e-9b7d-4e6f-a5c4-1d2e3f4a5b6c"
OTHER_LINK_ID = "7c6b5a4d-3e2f-4a1b-9c8d-7e6f5a4b3c2d"


@pytest.fixture(autouse=True)
def disable_dotenv_loading(monkeypatch):
    """Prevent pydantic-settings from loading .env files in all tests."""
    import pydantic_settings.sources.providers.dotenv as ps_dotenv

    monkeypatch.setattr(ps_dotenv, "dotenv_values", lambda *a, **kw: {})


@pytest.fixture
def today() -> date:
    return TODAY


def days_ago(n: int) -> date:
    return TODAY - timedelta(days=n)


# ---- database ----


@pytest.fixture
async def session_factory(tmp_path):
    """A fresh SQLite file per test; the analytics schema maps to SQLite's default."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}",
        execution_options={"schema_translate_map": {"analytics": None}},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


# ---- settings ----


class InMemorySettingsStore:
    """Settings store backed by a dict, with optional read failures."""

    def __init__(self, values: dict[str, dict] | None = None):
        self.values: dict[str, dict] = dict(values or {})
        self.reads = 0
        self.error: Exception | None = None

    async def get(self, key: str) -> dict | None:
        self.reads += 1
        if self.error is not None:
            raise self.error
        return self.values.get(key)

    async def put(self, key: str, value: dict, updated_by: str | None = None) -> None:
        self.values[key] = dict(value)


@pytest.fixture
def settings_store() -> InMemorySettingsStore:
    return InMemorySettingsStore()


def make_provider(
    enabled: bool = True,
    threshold_days: int = 10,
    store: InMemorySettingsStore | None = None,
    batch_size: int = 500,
) -> AggregationSettingsProvider:
    return AggregationSettingsProvider(
        store or InMemorySettingsStore(),
        env_enabled=enabled,
        env_threshold_days=threshold_days,
        batch_size=batch_size,
    )


# ---- telemetry ----


class TelemetryStub:
    """Answers telemetry SQL requests and records every statement received."""

    def __init__(self, handler: Callable[[str], Any] | None = None):
        self.statements: list[str] = []
        self.headers: list[httpx.Headers] = []
        self._handler = handler or (lambda sql: {"data": []})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        sql = request.content.decode("utf-8")
        self.statements.append(sql)
        self.headers.append(request.headers)
        result = self._handler(sql)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)


def make_telemetry_client(
    stub: TelemetryStub,
    account_id: str = "acct-123",
    api_token: str = "token-abc",
    dataset: str = "link-clicks",
) -> TelemetryQueryClient:
    config = TelemetryConfig(account_id=account_id, api_token=api_token, dataset=dataset)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return TelemetryQueryClient(config, http_client=http_client)


def raw_event_row(
    day: date,
    link_id: str = LINK_ID,
    ip_hash: str = "ip-a",
    seconds: int = 3600,
    **blobs: str,
) -> dict:
    """A raw_events result row, with named columns passed as keyword arguments."""
    row = {column.value: "" for column in Column if column is not Column.TIMESTAMP}
    row[Column.TIMESTAMP.value] = day_start_timestamp(day) + seconds
    row[Column.LINK_ID.value] = link_id
    row[Column.IP_HASH.value] = ip_hash
    for name, value in blobs.items():
        row[Column[name.upper()].value] = value
    return row
