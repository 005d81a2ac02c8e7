"""Unit tests for parsing and dispatching click messages."""

import json

from tally_analytics.consumers.click_consumer import ClickEventConsumer

from conftest import LINK_ID

VALID = json.dumps({
    "link_id": LINK_ID,
    "domain": "go.example.com",
    "slug": "abc123",
    "clicked_at": "2025-06-20T12:00:00Z",
})


class TestProcessMessage:
    async def test_valid_message_dispatched(self):
        consumer = ClickEventConsumer(redis_url="redis://unused", channel="test:clicks")
        seen = []

        async def handler(event):
            seen.append(event)

        consumer.register_handler(handler)
        assert await consumer.process_message(VALID)
        assert str(seen[0].link_id) == LINK_ID
        assert consumer.stats["events_processed"] == 1

    async def test_invalid_json(self):
        consumer = ClickEventConsumer(redis_url="redis://unused")
        assert await consumer.process_message("{not json") is False
        assert consumer.stats["events_failed"] == 1

    async def test_invalid_schema(self):
        consumer = ClickEventConsumer(redis_url="redis://unused")
        assert await consumer.process_message(json.dumps({"slug": "x"})) is False
        assert consumer.stats["events_failed"] == 1

    async def test_failing_handler_does_not_block_others(self):
        consumer = ClickEventConsumer(redis_url="redis://unused")
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event)

        consumer.register_handler(broken)
        consumer.register_handler(working)
        assert await consumer.process_message(VALID)
        assert len(seen) == 1
        assert consumer.stats["handler_errors"] == 1
