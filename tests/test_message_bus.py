"""Tests for the store-backed message bus."""
from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import List

import pytest

from agent_team.core.errors import QueueFullError, RequestTimeoutError
from agent_team.core.message_bus import MessageBus
from agent_team.core.models import AgentMessage, MessagePriority, MessageType, utcnow


def make_message(
    message_id: str,
    receiver: str | None = "worker",
    priority: MessagePriority = MessagePriority.NORMAL,
    **extra,
) -> AgentMessage:
    return AgentMessage(
        id=message_id,
        type=MessageType.COORDINATION,
        priority=priority,
        sender_id="tester",
        receiver_id=receiver,
        **extra,
    )


@pytest.mark.anyio
async def test_publish_rejects_full_mailbox_without_mutation(store) -> None:
    bus = MessageBus(store, max_queue_size=3)
    for index in range(3):
        await bus.publish(make_message(f"m{index}"))
    before = [message.id for message in await bus.get_messages("worker")]

    with pytest.raises(QueueFullError) as excinfo:
        await bus.publish(make_message("overflow", priority=MessagePriority.URGENT))

    assert excinfo.value.agent_id == "worker"
    assert await bus.queue_size("worker") == 3
    assert [message.id for message in await bus.get_messages("worker")] == before


@pytest.mark.anyio
async def test_higher_priority_then_older_messages_surface_first(store) -> None:
    bus = MessageBus(store)
    now = utcnow()
    await bus.publish(make_message("low", priority=MessagePriority.LOW, timestamp=now))
    await bus.publish(make_message("newer", timestamp=now + timedelta(seconds=5)))
    await bus.publish(make_message("older", timestamp=now))
    await bus.publish(make_message("urgent", priority=MessagePriority.URGENT, timestamp=now))

    assert [message.id for message in await bus.get_messages("worker")] == [
        "urgent",
        "older",
        "newer",
        "low",
    ]


@pytest.mark.anyio
async def test_subscriber_processes_in_score_order(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    await bus.publish(make_message("low", priority=MessagePriority.LOW))
    await bus.publish(make_message("high", priority=MessagePriority.HIGH))
    seen: List[str] = []

    async def handler(message: AgentMessage) -> None:
        seen.append(message.id)

    await bus.subscribe("worker", handler)
    await wait_until(lambda: len(seen) == 2)
    await bus.stop()

    assert seen == ["high", "low"]
    assert bus.get_stats("worker").messages_received == 2


@pytest.mark.anyio
async def test_failed_handler_still_acknowledges(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    calls: List[str] = []

    async def handler(message: AgentMessage) -> None:
        calls.append(message.id)
        raise RuntimeError("boom")

    await bus.subscribe("worker", handler)
    await bus.publish(make_message("m1"))
    await wait_until(lambda: calls == ["m1"])
    await wait_until(lambda: _is_empty(bus))
    await bus.stop()
    assert calls == ["m1"]


async def _is_empty(bus: MessageBus) -> bool:
    return await bus.queue_size("worker") == 0


async def _unlocked(bus: MessageBus) -> bool:
    return await bus.check_deadlocks() == []


@pytest.mark.anyio
async def test_broadcast_skips_sender(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    received: dict = {}

    def recorder(agent_id: str):
        async def handler(message: AgentMessage) -> None:
            received.setdefault(agent_id, []).append(message.id)

        return handler

    for agent_id in ("tester", "a", "b"):
        await bus.subscribe(agent_id, recorder(agent_id))

    await bus.publish(make_message("hello", receiver=None))
    await wait_until(lambda: len(received) == 2)
    await bus.stop()

    assert received == {"a": ["hello-broadcast-a"], "b": ["hello-broadcast-b"]}


@pytest.mark.anyio
async def test_request_times_out_after_deadline(store) -> None:
    bus = MessageBus(store, poll_interval=0.01)
    started = time.perf_counter()

    with pytest.raises(RequestTimeoutError):
        await bus.request("nobody", {"ping": True}, "tester", timeout=0.05)

    elapsed = time.perf_counter() - started
    assert 0.045 <= elapsed < 1.0


@pytest.mark.anyio
async def test_request_receives_correlated_response(store) -> None:
    bus = MessageBus(store, poll_interval=0.005)

    async def responder(message: AgentMessage) -> None:
        await bus.respond(message, {"pong": message.payload["ping"]}, "responder")

    await bus.subscribe("responder", responder)
    response = await bus.request("responder", {"ping": 7}, "client", timeout=2.0)
    await bus.stop()

    assert response.type is MessageType.RESPONSE
    assert response.payload == {"pong": 7}
    assert response.sender_id == "responder"
    assert response.receiver_id == "client"


@pytest.mark.anyio
async def test_ack_removes_specific_message(store) -> None:
    bus = MessageBus(store)
    await bus.publish(make_message("keep"))
    await bus.publish(make_message("drop"))

    assert await bus.ack("worker", "drop") is True
    assert await bus.ack("worker", "drop") is False
    assert [message.id for message in await bus.get_messages("worker")] == ["keep"]


@pytest.mark.anyio
async def test_deadlock_check_reports_held_lock(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(message: AgentMessage) -> None:
        started.set()
        await release.wait()

    await bus.subscribe("worker", slow)
    await bus.publish(make_message("slow"))
    await asyncio.wait_for(started.wait(), timeout=2)

    assert await bus.check_deadlocks() == ["worker"]

    release.set()
    await wait_until(lambda: _unlocked(bus))
    assert await bus.queue_size("worker") == 0
    await bus.stop()


@pytest.mark.anyio
async def test_clear_queue_empties_mailbox(store) -> None:
    bus = MessageBus(store)
    await bus.publish(make_message("short", ttl=60))

    assert await bus.queue_size("worker") == 1
    await bus.clear_queue("worker")
    assert await bus.queue_size("worker") == 0


@pytest.mark.anyio
async def test_resubscribe_waits_for_in_flight_handler(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    started = asyncio.Event()
    release = asyncio.Event()
    seen: List[tuple] = []

    async def slow(message: AgentMessage) -> None:
        seen.append(("slow", message.id))
        started.set()
        await release.wait()

    async def fast(message: AgentMessage) -> None:
        seen.append(("fast", message.id))

    await bus.subscribe("worker", slow)
    await bus.publish(make_message("m1"))
    await asyncio.wait_for(started.wait(), timeout=2)

    await bus.unsubscribe("worker")
    await bus.subscribe("worker", fast)
    await asyncio.sleep(0.05)
    assert seen == [("slow", "m1")]

    release.set()
    await wait_until(lambda: _is_empty(bus))
    await bus.publish(make_message("m2"))
    await wait_until(lambda: len(seen) == 2)
    await bus.stop()

    assert seen == [("slow", "m1"), ("fast", "m2")]


@pytest.mark.anyio
async def test_unsubscribed_loop_exits_after_handler(store, wait_until) -> None:
    bus = MessageBus(store, poll_interval=0.005)
    handled: List[str] = []

    async def handler(message: AgentMessage) -> None:
        handled.append(message.id)

    await bus.subscribe("worker", handler)
    await bus.publish(make_message("m1"))
    await wait_until(lambda: handled == ["m1"])
    await bus.unsubscribe("worker")
    await wait_until(lambda: not bus._loops)

    await bus.publish(make_message("m2"))
    await asyncio.sleep(0.03)

    assert handled == ["m1"]
    assert await bus.queue_size("worker") == 1
    assert await bus.check_deadlocks() == []


@pytest.mark.anyio
async def test_request_uses_configured_default_timeout(store) -> None:
    bus = MessageBus(store, poll_interval=0.01, request_timeout=0.05)

    with pytest.raises(RequestTimeoutError) as excinfo:
        await bus.request("nobody", {"ping": True}, "tester")

    assert excinfo.value.timeout == 0.05
