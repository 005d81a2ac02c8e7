"""HTTP API routers."""

from tally_analytics.api.analytics import router as analytics_router

__all__ = ["analytics_router"]
