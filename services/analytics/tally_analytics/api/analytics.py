"""Analytics API endpoints."""

from datetime import date, datetime, timezone
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query

from tally_analytics.aggregators.aggregation_job import AggregationJob
from tally_analytics.aggregators.scheduler import get_scheduler
from tally_analytics.core.config import get_settings
from tally_analytics.routing.source_selector import DataSourcePreference
from tally_analytics.schemas import (
    AggregationRunRequest,
    AggregationRunResponse,
    AggregationSettingsResponse,
    AggregationSettingsUpdate,
    LinkReport,
    TelemetryStatusResponse,
)
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.report import ReportService
from tally_analytics.services.settings_provider import (
    AggregationSettings,
    AggregationSettingsProvider,
    get_settings_provider,
)
from tally_analytics.telemetry.query import TelemetryQueryClient, get_telemetry_client

logger = structlog.get_logger()

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_report_service() -> ReportService:
    return ReportService(
        get_telemetry_client(),
        AggregateStore(batch_size=get_settings().aggregation_batch_size),
        get_settings_provider(),
    )


def get_aggregation_job() -> AggregationJob:
    return get_scheduler().job


SettingsProviderDep = Annotated[AggregationSettingsProvider, Depends(get_settings_provider)]
ReportServiceDep = Annotated[ReportService, Depends(get_report_service)]
AggregationJobDep = Annotated[AggregationJob, Depends(get_aggregation_job)]
TelemetryClientDep = Annotated[TelemetryQueryClient, Depends(get_telemetry_client)]


def _settings_response(settings: AggregationSettings) -> AggregationSettingsResponse:
    return AggregationSettingsResponse(
        enabled=settings.enabled,
        threshold_days=settings.threshold_days,
        batch_size=settings.batch_size,
        enabled_source=settings.enabled_source,
        threshold_source=settings.threshold_source,
    )


@router.get("/report", response_model=LinkReport)
async def get_report(
    service: ReportServiceDep,
    link_id: Annotated[list[str] | None, Query(description="Link UUID, repeatable")] = None,
    domain: Annotated[list[str] | None, Query(description="Short domain, repeatable")] = None,
    start_date: Annotated[date | None, Query(description="Start date (default: 29 days before end)")] = None,
    end_date: Annotated[date | None, Query(description="End date (default: today, UTC)")] = None,
    data_source: Annotated[
        DataSourcePreference,
        Query(description="Force a store, or let the threshold decide"),
    ] = DataSourcePreference.AUTO,
    limit: Annotated[int, Query(ge=1, le=100, description="Rows for geography and referrers")] = 20,
) -> LinkReport:
    """Get a full analytics report for links over a date range.

    Days newer than the aggregation threshold are read from the telemetry
    store, older days from durable aggregates. ``meta`` reports which store
    served which days and which days could not be served.
    """
    report = await service.link_report(
        link_ids=link_id,
        domains=domain,
        start_date=start_date,
        end_date=end_date,
        preference=data_source,
        limit=limit,
    )
    logger.debug(
        "Report fetched",
        data_source=report.meta.data_source,
        total_clicks=report.summary.total_clicks,
    )
    return report


@router.get("/settings", response_model=AggregationSettingsResponse)
async def get_aggregation_settings(provider: SettingsProviderDep) -> AggregationSettingsResponse:
    """Get effective aggregation settings and where each value came from."""
    return _settings_response(await provider.get())


@router.put("/settings", response_model=AggregationSettingsResponse)
async def update_aggregation_settings(
    update: AggregationSettingsUpdate,
    provider: SettingsProviderDep,
) -> AggregationSettingsResponse:
    """Persist aggregation settings.

    Environment overrides still win; the response shows the effective values.
    """
    if update.enabled is not None:
        await provider.set_enabled(update.enabled, updated_by=update.updated_by)
    if update.threshold_days is not None:
        await provider.set_threshold_days(update.threshold_days, updated_by=update.updated_by)
    return _settings_response(await provider.get())


@router.post("/aggregation/run", response_model=AggregationRunResponse)
async def run_aggregation(
    request: AggregationRunRequest,
    job: AggregationJobDep,
) -> AggregationRunResponse:
    """Aggregate one date, or backfill ``days_back`` days when no date is given."""
    if request.target_date is not None:
        result = await job.aggregate_date(request.target_date, request.link_ids)
        return AggregationRunResponse(
            processed=result.processed,
            errors=result.errors,
            skipped=int(result.skipped),
            dates=1,
        )

    backfill = await job.backfill(request.days_back, request.link_ids)
    return AggregationRunResponse(
        processed=backfill.processed,
        errors=backfill.errors,
        skipped=backfill.skipped,
        dates=backfill.dates,
    )


@router.get("/telemetry/status", response_model=TelemetryStatusResponse)
async def telemetry_status(client: TelemetryClientDep) -> TelemetryStatusResponse:
    """Check that the telemetry SQL API accepts our credentials."""
    success, message = await client.test_connection()
    return TelemetryStatusResponse(
        success=success,
        message=message,
        checked_at=datetime.now(timezone.utc),
    )
