"""Worker contract and the bookkeeping every worker role composes.

A worker role implements ``Worker`` on its own and delegates counters,
registration, heartbeats and result reporting to a ``WorkerRuntime``.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from agent_team.config import TeamSettings
from agent_team.core.models import (
    AgentCapability,
    AgentInfo,
    AgentRole,
    AgentStatus,
    Heartbeat,
    Task,
    TaskOutput,
    TaskResult,
    utcnow,
)
from agent_team.core.store import SharedStore
from agent_team.core.ticker import Ticker

logger = logging.getLogger(__name__)

RoleHandler = Callable[[Task], Awaitable[Dict[str, Any]]]


def info_key(agent_id: str) -> str:
    return f"agent:info:{agent_id}"


def heartbeat_key(agent_id: str) -> str:
    return f"agent:heartbeat:{agent_id}"


def result_key(task_id: str) -> str:
    return f"task:result:{task_id}"


class Worker(Protocol):
    """Role-tagged executor with bounded concurrent-task capacity."""

    @property
    def agent_id(self) -> str: ...

    @property
    def role(self) -> AgentRole: ...

    async def initialize(self) -> None: ...

    async def execute(self, task: Task) -> TaskResult: ...

    def get_status(self) -> AgentStatus: ...

    async def heartbeat(self) -> None: ...

    async def stop_heartbeat(self) -> None: ...

    def agent_info(self) -> AgentInfo: ...


class WorkerRuntime:
    """Counters, status, registry record and heartbeat shared by all worker roles."""

    def __init__(
        self,
        *,
        agent_id: str,
        role: AgentRole,
        capabilities: List[AgentCapability],
        max_concurrent_tasks: int,
        store: SharedStore,
        settings: Optional[TeamSettings] = None,
    ) -> None:
        self.agent_id = agent_id
        self.role = role
        self.capabilities = capabilities
        self.max_concurrent_tasks = max_concurrent_tasks
        self._store = store
        self._settings = settings or TeamSettings()
        self.status = AgentStatus.OFFLINE
        self.current_task_count = 0
        self.completed_tasks = 0
        self.failed_tasks = 0
        self._ticker = Ticker(
            f"heartbeat:{agent_id}", self._settings.heartbeat_interval, self.heartbeat
        )

    async def initialize(self) -> None:
        logger.info("Initializing %s...", self.agent_id)
        self.status = AgentStatus.IDLE
        await self.register()
        await self.heartbeat()
        self._ticker.start()
        logger.info("%s initialized successfully", self.agent_id)

    def agent_info(self) -> AgentInfo:
        return AgentInfo(
            id=self.agent_id,
            role=self.role,
            status=self.status,
            capabilities=self.capabilities,
            max_concurrent_tasks=self.max_concurrent_tasks,
            current_task_count=self.current_task_count,
            completed_tasks=self.completed_tasks,
            failed_tasks=self.failed_tasks,
            last_heartbeat=utcnow(),
        )

    async def register(self) -> None:
        await self._store.set(
            info_key(self.agent_id), self.agent_info().model_dump_json(), self._settings.agent_info_ttl
        )

    async def heartbeat(self) -> None:
        beat = Heartbeat(
            agent_id=self.agent_id,
            role=self.role,
            status=self.status,
            current_task_count=self.current_task_count,
            completed_tasks=self.completed_tasks,
            failed_tasks=self.failed_tasks,
        )
        await self._store.set(
            heartbeat_key(self.agent_id),
            beat.model_dump_json(exclude_none=True),
            self._settings.heartbeat_interval + 10,
        )
        await self.register()

    async def stop_heartbeat(self) -> None:
        await self._ticker.stop()
        self.status = AgentStatus.OFFLINE

    async def run(self, task: Task, handler: RoleHandler) -> TaskResult:
        """Execute role logic with bookkeeping; role errors become failed results."""
        logger.info("%s executing task %s", self.agent_id, task.id)
        self.current_task_count += 1
        self._refresh_status()
        started = time.perf_counter()

        try:
            data = await handler(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s failed task %s: %s", self.agent_id, task.id, exc)
            result = self._error_result(task, exc, _elapsed_ms(started))
        else:
            result = self._success_result(task, data, _elapsed_ms(started))

        await self.report_result(result)
        return result

    async def report_result(self, result: TaskResult) -> None:
        try:
            await self._store.set(
                result_key(result.task_id), result.model_dump_json(), self._settings.result_ttl
            )
        except Exception:  # noqa: BLE001
            logger.exception("%s could not store result for task %s", self.agent_id, result.task_id)

    def _success_result(self, task: Task, data: Dict[str, Any], execution_time_ms: int) -> TaskResult:
        self.completed_tasks += 1
        self._finish()
        return TaskResult(
            task_id=task.id,
            success=True,
            output=TaskOutput(success=True, data=data),
            execution_time_ms=execution_time_ms,
            agent_id=self.agent_id,
            retryable=False,
        )

    def _error_result(
        self,
        task: Task,
        error: Exception,
        execution_time_ms: int,
        retryable: bool = True,
    ) -> TaskResult:
        self.failed_tasks += 1
        self._finish()
        message = str(error) or type(error).__name__
        return TaskResult(
            task_id=task.id,
            success=False,
            output=TaskOutput(success=False, error=message),
            execution_time_ms=execution_time_ms,
            agent_id=self.agent_id,
            error=message,
            retryable=retryable,
        )

    def _finish(self) -> None:
        self.current_task_count = max(0, self.current_task_count - 1)
        self._refresh_status()

    def _refresh_status(self) -> None:
        if self.current_task_count >= self.max_concurrent_tasks:
            self.status = AgentStatus.BUSY
        else:
            self.status = AgentStatus.IDLE


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
