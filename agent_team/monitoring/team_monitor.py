"""Team monitor: metrics, per-agent health and audit logs built from heartbeats."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError

from agent_team.agents.worker import heartbeat_key, info_key
from agent_team.config import TeamSettings
from agent_team.core.models import (
    AgentHealthStatus,
    AgentInfo,
    AgentLogEntry,
    AgentStatus,
    Heartbeat,
    TeamMetrics,
    utcnow,
)
from agent_team.core.store import SharedStore
from agent_team.core.ticker import Ticker

logger = logging.getLogger(__name__)

METRICS_KEY = "team:metrics:latest"


def health_key(agent_id: str) -> str:
    return f"agent:health:{agent_id}"


def logs_key(agent_id: str) -> str:
    return f"agent:logs:{agent_id}"


class TeamMonitor:
    """Aggregates self-reported heartbeats into team metrics and agent health."""

    def __init__(
        self,
        store: SharedStore,
        settings: Optional[TeamSettings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or TeamSettings()
        self._clock = clock
        self._history: Deque[TeamMetrics] = deque(maxlen=self._settings.max_metrics_history)
        self._metrics_ticker = Ticker(
            "team-metrics", self._settings.monitoring_interval, self.collect_metrics, run_immediately=True
        )
        self._health_ticker = Ticker(
            "team-health",
            self._settings.health_check_interval,
            self.perform_health_checks,
            run_immediately=True,
        )

    async def start(self) -> None:
        self._metrics_ticker.start()
        self._health_ticker.start()
        logger.info("Team monitor started")

    async def stop(self) -> None:
        await self._metrics_ticker.stop()
        await self._health_ticker.stop()

    async def collect_metrics(self) -> TeamMetrics:
        metrics = TeamMetrics(timestamp=self._clock())
        for beat in await self._heartbeats():
            metrics.total_agents += 1
            if beat.status is AgentStatus.BUSY:
                metrics.active_agents += 1
            elif beat.status is AgentStatus.IDLE:
                metrics.idle_agents += 1
            elif beat.status is AgentStatus.ERROR:
                metrics.error_agents += 1
            metrics.total_tasks_processed += beat.completed_tasks
            metrics.total_tasks_failed += beat.failed_tasks

        metrics.queue_depth = await self._total_queue_depth()
        self._history.append(metrics)
        await self._store.set(METRICS_KEY, metrics.model_dump_json(), self._settings.metrics_ttl)
        return metrics

    async def perform_health_checks(self) -> List[AgentHealthStatus]:
        now = self._clock()
        timeout = timedelta(seconds=self._settings.agent_timeout)
        statuses: List[AgentHealthStatus] = []

        for beat in await self._heartbeats():
            since = now - beat.timestamp
            finished = beat.completed_tasks + beat.failed_tasks
            health = AgentHealthStatus(
                agent_id=beat.agent_id,
                role=beat.role,
                status=beat.status,
                is_healthy=since <= timeout,
                last_heartbeat=beat.timestamp,
                current_task_count=beat.current_task_count,
                completed_tasks=beat.completed_tasks,
                failed_tasks=beat.failed_tasks,
                error_rate=beat.failed_tasks / finished if finished else 0.0,
            )
            statuses.append(health)
            if not health.is_healthy:
                logger.warning(
                    "Agent %s is unhealthy - last heartbeat %ds ago",
                    beat.agent_id,
                    round(since.total_seconds()),
                )
            await self._store.set(
                health_key(beat.agent_id), health.model_dump_json(), self._settings.metrics_ttl
            )

        return statuses

    async def get_agent_info(self, agent_id: str) -> Optional[AgentInfo]:
        raw = await self._store.get(info_key(agent_id))
        return AgentInfo.model_validate_json(raw) if raw else None

    async def get_all_agents(self) -> List[AgentInfo]:
        agents: List[AgentInfo] = []
        for key in await self._store.keys(info_key("*")):
            raw = await self._store.get(key)
            if raw is None:
                continue
            try:
                agents.append(AgentInfo.model_validate_json(raw))
            except ValidationError:
                logger.warning("Failed to parse agent info from %s", key)
        return agents

    def get_metrics_history(self) -> List[TeamMetrics]:
        return list(self._history)

    async def get_latest_metrics(self) -> Optional[TeamMetrics]:
        raw = await self._store.get(METRICS_KEY)
        return TeamMetrics.model_validate_json(raw) if raw else None

    async def get_agent_health(self, agent_id: str) -> Optional[AgentHealthStatus]:
        raw = await self._store.get(health_key(agent_id))
        return AgentHealthStatus.model_validate_json(raw) if raw else None

    async def log_agent_event(
        self,
        agent_id: str,
        event: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AgentLogEntry(agent_id=agent_id, event=event, details=details, timestamp=self._clock())
        key = logs_key(agent_id)
        await self._store.lpush(key, entry.model_dump_json())
        await self._store.ltrim(key, 0, self._settings.max_agent_logs - 1)
        logger.debug("Agent %s event: %s", agent_id, event)

    async def get_agent_logs(self, agent_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        for raw in await self._store.lrange(logs_key(agent_id), 0, limit - 1):
            try:
                logs.append(AgentLogEntry.model_validate_json(raw).model_dump(mode="json"))
            except ValidationError:
                logs.append({"raw": raw})
        return logs

    async def get_team_summary(self) -> Dict[str, Any]:
        metrics, agents = await asyncio.gather(self.get_latest_metrics(), self.get_all_agents())
        healths = await asyncio.gather(*(self.get_agent_health(agent.id) for agent in agents))
        return {
            "metrics": metrics,
            "agents": agents,
            "health_statuses": [health for health in healths if health is not None],
        }

    async def _heartbeats(self) -> List[Heartbeat]:
        beats: List[Heartbeat] = []
        for key in await self._store.keys(heartbeat_key("*")):
            raw = await self._store.get(key)
            if raw is None:
                continue
            try:
                beats.append(Heartbeat.model_validate_json(raw))
            except ValidationError:
                logger.warning("Failed to parse heartbeat data from %s", key)
        return beats

    async def _total_queue_depth(self) -> int:
        depth = 0
        for key in await self._store.keys("message:queue:*"):
            depth += await self._store.zcard(key)
        return depth
