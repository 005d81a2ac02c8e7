"""Redis Pub/Sub consumer feeding click events to the telemetry write path."""

import asyncio
import json
import time
from typing import Callable, Coroutine

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from tally_shared import ClickEvent

from tally_analytics.core.config import get_settings
from tally_analytics.core.observability import (
    record_click_failed,
    record_click_processed,
    record_click_processing_time,
    record_click_received,
    set_consumer_running,
)

logger = structlog.get_logger()

ClickEventHandler = Callable[[ClickEvent], Coroutine[None, None, object]]


class ClickEventConsumer:
    """Subscribes to the click channel and fans each event out to handlers.

    Malformed messages are logged and counted, never raised. A failing
    handler does not stop the remaining handlers from seeing the event.

    Usage:
        consumer = ClickEventConsumer()
        consumer.register_handler(writer.handle_click)
        await consumer.start()
        # ... later ...
        await consumer.stop()
    """

    def __init__(self, redis_url: str | None = None, channel: str | None = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.redis_channel
        self._client: redis.Redis | None = None
        self._pubsub: redis.client.PubSub | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._handlers: list[ClickEventHandler] = []
        self._events_processed = 0
        self._events_failed = 0
        self._handler_errors = 0

    def register_handler(self, handler: ClickEventHandler) -> None:
        """Add a handler. Handlers run in registration order."""
        self._handlers.append(handler)
        logger.debug("Handler registered", handler=getattr(handler, "__qualname__", repr(handler)))

    async def start(self) -> None:
        if self._running:
            logger.warning("Consumer already running")
            return

        self._client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)

        self._running = True
        set_consumer_running(True)
        self._task = asyncio.create_task(self._consume_loop())

        logger.info("Click event consumer started", channel=self.channel, handlers=len(self._handlers))

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        set_consumer_running(False)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.close()
            self._pubsub = None

        if self._client:
            await self._client.close()
            self._client = None

        logger.info(
            "Click event consumer stopped",
            events_processed=self._events_processed,
            events_failed=self._events_failed,
        )

    async def _consume_loop(self) -> None:
        if not self._pubsub:
            return

        try:
            async for message in self._pubsub.listen():
                if not self._running:
                    break
                # Subscription confirmations and pings
                if message["type"] != "message":
                    continue
                await self.process_message(message["data"])
        except asyncio.CancelledError:
            raise
        except redis.RedisError as e:
            logger.error("Redis error in consumer loop", error=str(e))
            set_consumer_running(False)
            raise

    def _parse(self, data: str | bytes) -> ClickEvent | None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in click event", error=str(e), data=str(data)[:100])
            record_click_failed("invalid_json")
            return None

        try:
            return ClickEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Invalid click event schema", error=str(e), errors=e.error_count())
            record_click_failed("invalid_schema")
            return None

    async def process_message(self, data: str | bytes) -> bool:
        """Parse one raw message and dispatch it. Returns True if it was valid."""
        started = time.perf_counter()
        record_click_received()

        event = self._parse(data)
        if event is None:
            self._events_failed += 1
            return False

        await self.dispatch(event)

        self._events_processed += 1
        record_click_processed()
        duration = time.perf_counter() - started
        record_click_processing_time(duration)

        logger.debug(
            "Click event processed",
            link_id=str(event.link_id),
            slug=event.slug,
            duration_ms=round(duration * 1000, 2),
        )
        return True

    async def dispatch(self, event: ClickEvent) -> None:
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception as e:
                self._handler_errors += 1
                record_click_failed("handler_error")
                logger.error(
                    "Handler error",
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    link_id=str(event.link_id),
                )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {
            "running": self._running,
            "channel": self.channel,
            "events_processed": self._events_processed,
            "events_failed": self._events_failed,
            "handler_errors": self._handler_errors,
            "handlers_count": len(self._handlers),
        }


# Global consumer instance
_consumer: ClickEventConsumer | None = None


def get_consumer() -> ClickEventConsumer:
    """Get the global consumer instance, creating it if necessary."""
    global _consumer
    if _consumer is None:
        _consumer = ClickEventConsumer()
    return _consumer


async def start_consumer() -> None:
    await get_consumer().start()


async def stop_consumer() -> None:
    await get_consumer().stop()
