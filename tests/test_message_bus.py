"""Tests for the in-memory message bus."""
from __future__ import annotations

import asyncio

import pytest

from fleetmaster.core.errors import RequestFailedError, RequestTimeoutError
from fleetmaster.core.message_bus import WILDCARD, MessageBus


def test_exact_subscribers_run_before_wildcard() -> None:
    bus = MessageBus()
    seen = []
    bus.subscribe(WILDCARD, lambda m: seen.append(("wildcard", m.topic)))
    bus.subscribe("agent.booted", lambda m: seen.append(("exact", m.topic)))

    bus.publish("orchestrator", "agent.booted", {"name": "a"})

    assert seen == [("exact", "agent.booted"), ("wildcard", "agent.booted")]


def test_failing_subscriber_does_not_stop_delivery() -> None:
    bus = MessageBus()
    received = []

    def broken(message):
        raise RuntimeError("boom")

    bus.subscribe("topic", broken)
    bus.subscribe("topic", received.append)

    bus.publish("a", "topic", 1)

    assert [m.payload for m in received] == [1]


def test_unsubscribe_removes_handler() -> None:
    bus = MessageBus()
    received = []
    unsubscribe = bus.subscribe("topic", received.append)
    assert bus.subscriber_count("topic") == 1

    unsubscribe()
    unsubscribe()
    bus.publish("a", "topic")

    assert received == []
    assert bus.subscriber_count("topic") == 0


def test_log_is_truncated_to_newest_half() -> None:
    bus = MessageBus(max_log_size=10)
    for index in range(15):
        bus.publish("a", "tick", index)

    recent = bus.get_recent(100)
    assert len(recent) <= 10
    assert recent[-1].payload == 14
    payloads = [m.payload for m in recent]
    assert payloads == sorted(payloads)

    tiny = MessageBus(max_log_size=1)
    for index in range(20):
        tiny.publish("a", "tick", index)
    assert len(tiny) == 1
    assert tiny.get_recent(5)[0].payload == 19


def test_get_recent_returns_oldest_first() -> None:
    bus = MessageBus()
    for index in range(5):
        bus.publish("a", "tick", index)

    assert [m.payload for m in bus.get_recent(3)] == [2, 3, 4]
    assert bus.get_recent(0) == []
    assert bus.get_recent(3)[0].to_dict()["from"] == "a"


@pytest.mark.anyio
async def test_request_response_returns_data() -> None:
    bus = MessageBus()

    def responder(message):
        body = message.payload
        bus.respond_to_request("worker", body["request_id"], body["response_topic"], data=body["payload"] * 2)

    bus.subscribe("agent.request.worker", responder)

    assert await bus.request_response("client", "worker", 21, timeout_ms=500) == 42
    assert bus.subscriber_count("agent.request.worker") == 1


@pytest.mark.anyio
async def test_request_response_raises_on_error_reply() -> None:
    bus = MessageBus()

    def responder(message):
        body = message.payload
        bus.respond_to_request("worker", body["request_id"], body["response_topic"], error="nope")

    bus.subscribe("agent.request.worker", responder)

    with pytest.raises(RequestFailedError, match="nope"):
        await bus.request_response("client", "worker", timeout_ms=500)


@pytest.mark.anyio
async def test_request_response_times_out_without_leaking_subscriptions() -> None:
    bus = MessageBus()
    response_topics = []
    bus.subscribe("agent.request.silent", lambda m: response_topics.append(m.payload["response_topic"]))

    for _ in range(3):
        with pytest.raises(RequestTimeoutError) as excinfo:
            await bus.request_response("client", "silent", timeout_ms=20)
        assert "silent" in str(excinfo.value)
        assert isinstance(excinfo.value, TimeoutError)

    assert len(set(response_topics)) == 3
    assert all(bus.subscriber_count(topic) == 0 for topic in response_topics)


@pytest.mark.anyio
async def test_deliver_feeds_queue() -> None:
    bus = MessageBus()
    async with bus.deliver("events") as inbox:
        bus.publish("a", "events", "hello")
        message = await asyncio.wait_for(inbox.get(), timeout=1)
    assert message.payload == "hello"
    assert bus.subscriber_count("events") == 0
