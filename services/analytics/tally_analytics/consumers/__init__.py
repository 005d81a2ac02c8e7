"""Redis Pub/Sub consumers for click events."""

from tally_analytics.consumers.click_consumer import (
    ClickEventConsumer,
    get_consumer,
    start_consumer,
    stop_consumer,
)

__all__ = [
    "ClickEventConsumer",
    "get_consumer",
    "start_consumer",
    "stop_consumer",
]
