"""Shared Pydantic schemas for inter-service communication."""

from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClickEvent(BaseModel):
    """Click event published by the redirect layer to the Analytics service via Redis Pub/Sub.

    One event is emitted per resolved redirect. Events are immutable: the
    analytics service appends them to the telemetry store and never updates
    or deletes them individually.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={"example": {
            "link_id": "550e8400-e29b-41d4-a716-446655440000",
            "domain": "go.example.com",
            "slug": "abc123",
            "destination_url": "https://example.com/landing?utm_source=newsletter",
            "clicked_at": "2024-01-15T10:30:00Z",
            "country": "NO",
            "city": "Oslo",
            "referrer": "https://www.google.com/",
            "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
            "ip_address": "192.168.1.1",
            "utm_source": "newsletter",
        }},
    )

    link_id: UUID = Field(description="UUID of the shortened link")
    domain: str = Field(description="Short domain the link was served from")
    slug: str = Field(description="The slug that was accessed")
    destination_url: str = Field(default="", description="URL the visitor was redirected to")
    clicked_at: datetime = Field(
        default_factory=_utcnow,
        description="Timestamp when the click occurred",
    )

    # Visitor
    country: str | None = Field(default=None, description="ISO 3166-1 alpha-2 country code")
    city: str | None = Field(default=None, description="City name")
    referrer: str | None = Field(default=None, description="HTTP Referer header")
    user_agent: str | None = Field(default=None, description="HTTP User-Agent header")
    ip_address: str | None = Field(
        default=None,
        description="Client IP address, hashed by the consumer and never stored raw",
    )
    ip_hash: str | None = Field(default=None, description="Pre-hashed client IP address")
    device_type: str | None = Field(default=None, description="desktop, mobile or tablet")
    browser: str | None = Field(default=None, description="Browser family")
    os: str | None = Field(default=None, description="Operating system family")

    # Campaign tracking
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    gclid: str | None = Field(default=None, description="Google Ads click identifier")
    fbclid: str | None = Field(default=None, description="Meta click identifier")
    custom_param1: str | None = None
    custom_param2: str | None = None
    custom_param3: str | None = None
