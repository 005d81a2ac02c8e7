"""
Analytics error hierarchy and FastAPI exception handlers.

AnalyticsError is the base for all typed errors raised by the query
routing and aggregation code. The exception handler registered on the app
converts them to consistent JSON responses; anything else bubbles up as a 500.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AnalyticsError(Exception):
    """Base analytics error. All typed errors inherit from this."""

    status_code: int = 500
    error_code: str = "analytics_error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message, "code": self.error_code}
        if self.field is not None:
            payload["field"] = self.field
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AnalyticsError):
    """Malformed identifier, timestamp or date range. Raised before any query runs."""

    status_code = 422
    error_code = "validation_error"


class ConfigurationError(AnalyticsError):
    status_code = 503
    error_code = "configuration_error"


class TelemetryNotConfiguredError(ConfigurationError):
    """Telemetry query credentials are missing."""

    error_code = "telemetry_not_configured"

    def __init__(self, message: str = "Telemetry store credentials are not configured") -> None:
        super().__init__(message)


class TelemetryQueryError(AnalyticsError):
    """The telemetry SQL API rejected a query or returned something unusable."""

    status_code = 502
    error_code = "telemetry_query_failed"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message, details={"status": status} if status else None)
        self.status = status


class AggregateWriteError(AnalyticsError):
    """A batch of durable aggregate upserts failed and was rolled back."""

    error_code = "aggregate_write_failed"

    def __init__(self, message: str, *, batch_index: int, target_date: date | None = None) -> None:
        super().__init__(message, details={"batch_index": batch_index})
        self.batch_index = batch_index
        self.target_date = target_date


class SourceUnavailableError(AnalyticsError):
    """A forced data source cannot serve the request and fallback is not allowed."""

    status_code = 503
    error_code = "source_unavailable"


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(AnalyticsError)
    async def analytics_error_handler(request: Request, exc: AnalyticsError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
