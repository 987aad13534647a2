"""Tests for team metrics, health checks and agent audit logs."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from agent_team.agents.retrieval import RETRIEVAL_WORKER_ID, RetrievalWorker
from agent_team.agents.worker import heartbeat_key
from agent_team.core.message_bus import queue_key
from agent_team.core.models import AgentRole, AgentStatus, Heartbeat
from agent_team.monitoring.team_monitor import TeamMonitor
from agent_team.services.retrieval import KeywordRetriever

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


async def put_heartbeat(store, agent_id: str, *, age: timedelta = timedelta(0), **fields) -> None:
    fields.setdefault("role", AgentRole.ANALYSIS_WORKER)
    fields.setdefault("status", AgentStatus.IDLE)
    beat = Heartbeat(agent_id=agent_id, timestamp=NOW - age, **fields)
    await store.set(heartbeat_key(agent_id), beat.model_dump_json())


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("age", "healthy"),
    [
        (timedelta(seconds=59), True),
        (timedelta(seconds=60), True),
        (timedelta(seconds=60, microseconds=1), False),
        (timedelta(minutes=5), False),
    ],
)
async def test_health_boundary_is_sixty_seconds(store, settings, age, healthy) -> None:
    monitor = TeamMonitor(store, settings, clock=lambda: NOW)
    await put_heartbeat(store, "worker-1", age=age)

    [status] = await monitor.perform_health_checks()

    assert status.is_healthy is healthy
    assert (await monitor.get_agent_health("worker-1")).is_healthy is healthy


@pytest.mark.anyio
async def test_health_error_rate_comes_from_self_reported_counts(store, settings) -> None:
    monitor = TeamMonitor(store, settings, clock=lambda: NOW)
    await put_heartbeat(store, "worker-1", completed_tasks=3, failed_tasks=1)
    await put_heartbeat(store, "worker-2")

    statuses = {status.agent_id: status for status in await monitor.perform_health_checks()}

    assert statuses["worker-1"].error_rate == 0.25
    assert statuses["worker-2"].error_rate == 0.0


@pytest.mark.anyio
async def test_collect_metrics_tallies_heartbeats_and_queues(store, settings) -> None:
    monitor = TeamMonitor(store, settings, clock=lambda: NOW)
    await put_heartbeat(store, "a", status=AgentStatus.BUSY, completed_tasks=4, failed_tasks=1)
    await put_heartbeat(store, "b", completed_tasks=2)
    await put_heartbeat(store, "c", status=AgentStatus.ERROR, failed_tasks=3)
    await store.zadd(queue_key("a"), 1.0, "m1")
    await store.zadd(queue_key("a"), 2.0, "m2")
    await store.zadd(queue_key("b"), 1.0, "m3")

    metrics = await monitor.collect_metrics()

    assert metrics.total_agents == 3
    assert (metrics.active_agents, metrics.idle_agents, metrics.error_agents) == (1, 1, 1)
    assert metrics.total_tasks_processed == 6
    assert metrics.total_tasks_failed == 4
    assert metrics.queue_depth == 3
    assert await monitor.get_latest_metrics() == metrics
    assert monitor.get_metrics_history() == [metrics]


@pytest.mark.anyio
async def test_metrics_history_is_bounded(store, settings) -> None:
    monitor = TeamMonitor(store, replace(settings, max_metrics_history=3), clock=lambda: NOW)

    for _ in range(5):
        await monitor.collect_metrics()

    assert len(monitor.get_metrics_history()) == 3


@pytest.mark.anyio
async def test_agent_logs_are_newest_first_and_trimmed(store, settings) -> None:
    monitor = TeamMonitor(store, replace(settings, max_agent_logs=5), clock=lambda: NOW)

    for index in range(8):
        await monitor.log_agent_event("leader", "task_completed", {"n": index})

    logs = await monitor.get_agent_logs("leader", limit=50)
    assert [entry["details"]["n"] for entry in logs] == [7, 6, 5, 4, 3]
    assert [entry["details"]["n"] for entry in await monitor.get_agent_logs("leader", limit=2)] == [7, 6]


@pytest.mark.anyio
async def test_unreadable_heartbeat_is_skipped(store, settings) -> None:
    monitor = TeamMonitor(store, settings, clock=lambda: NOW)
    await store.set(heartbeat_key("broken"), "{not json")
    await put_heartbeat(store, "ok")

    metrics = await monitor.collect_metrics()

    assert metrics.total_agents == 1


@pytest.mark.anyio
async def test_registry_lookups_follow_worker_registration(store, settings) -> None:
    monitor = TeamMonitor(store, settings)
    worker = RetrievalWorker(KeywordRetriever(), store, settings=settings)
    await worker.initialize()
    try:
        info = await monitor.get_agent_info(RETRIEVAL_WORKER_ID)
        summary = await monitor.get_team_summary()
    finally:
        await worker.stop_heartbeat()

    assert info.role is AgentRole.RETRIEVAL_WORKER
    assert info.max_concurrent_tasks == 5
    assert [agent.id for agent in summary["agents"]] == [RETRIEVAL_WORKER_ID]
    assert summary["metrics"] is None
    assert await monitor.get_agent_info("nobody") is None
