"""Team orchestrator: owns the team lifecycle and the task ledger."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from agent_team.agents.leader import LeaderAgent
from agent_team.agents.worker import Worker, result_key
from agent_team.config import TeamSettings
from agent_team.core.errors import MessageBusError
from agent_team.core.message_bus import MessageBus, MessageHandler, new_message_id
from agent_team.core.models import (
    AgentMessage,
    AgentStatus,
    MessagePriority,
    MessageType,
    Task,
    TaskInput,
    TaskOutput,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    utcnow,
)
from agent_team.core.payloads import TaskAssignmentPayload, TaskResultPayload
from agent_team.core.store import SharedStore
from agent_team.monitoring.team_monitor import TeamMonitor

logger = logging.getLogger(__name__)


def task_key(task_id: str) -> str:
    return f"task:{task_id}"


class TeamOrchestrator:
    """Start and stop the team, keep the task ledger and mediate execution through the leader."""

    def __init__(
        self,
        *,
        leader: LeaderAgent,
        workers: Iterable[Worker],
        bus: MessageBus,
        monitor: TeamMonitor,
        store: SharedStore,
        settings: Optional[TeamSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._leader = leader
        self._initial_workers = list(workers)
        self._workers: Dict[str, Worker] = {}
        self._bus = bus
        self._monitor = monitor
        self._store = store
        self._settings = settings or TeamSettings()
        self._clock = clock
        self._counter = itertools.count(1)
        self._initialized = False
        self._executing: Set[str] = set()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def start(self) -> None:
        logger.info("Initializing Team Orchestrator...")
        await self._bus.start()
        await self._leader.initialize()
        for worker in self._initial_workers:
            await self.register_worker_agent(worker)
        await self._monitor.start()
        self._initialized = True
        logger.info("Team Orchestrator initialized with %d workers", len(self._workers))

    async def stop(self) -> None:
        logger.info("Shutting down Team Orchestrator...")
        self._initialized = False
        await self._monitor.stop()
        await self._leader.shutdown()
        await asyncio.gather(*(worker.stop_heartbeat() for worker in self._workers.values()))
        await self._bus.stop()
        logger.info("Team Orchestrator shut down complete")

    async def register_worker_agent(self, worker: Worker) -> None:
        """Bring a worker online, announce it to the leader and start its mailbox loop."""
        if worker.get_status() is AgentStatus.OFFLINE:
            await worker.initialize()
        self._workers[worker.agent_id] = worker
        self._leader.register_worker_agent(worker.agent_info())
        await self._bus.subscribe(worker.agent_id, self._assignment_handler(worker))
        logger.info("Worker %s (%s) joined the team", worker.agent_id, worker.role.value)

    async def unregister_worker_agent(self, agent_id: str) -> bool:
        worker = self._workers.pop(agent_id, None)
        if worker is None:
            return False
        await self._bus.unsubscribe(agent_id)
        self._leader.unregister_worker_agent(agent_id)
        await worker.stop_heartbeat()
        logger.info("Worker %s left the team", agent_id)
        return True

    def get_worker(self, agent_id: str) -> Optional[Worker]:
        return self._workers.get(agent_id)

    async def submit_task(
        self,
        task_type: TaskType,
        data: Dict[str, Any],
        priority: TaskPriority = TaskPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = Task(
            id=self._next_task_id(),
            type=task_type,
            priority=priority,
            input=TaskInput(type=task_type, data=data),
            metadata=metadata or {},
        )
        await self._save(task)
        logger.info("Task %s submitted: %s", task.id, task_type.value)
        return task

    async def execute_task(self, task: Task) -> TaskResult:
        """Run a task through the leader; always returns a result, never raises."""
        logger.info("Executing task %s", task.id)
        stored = await self.get_task_status(task.id)
        if stored is not None and stored.is_terminal and not task.is_terminal:
            task.status = stored.status
        if task.is_terminal:
            logger.warning("Task %s is already %s, not executing", task.id, task.status.value)
            return self._failed_result(task.id, f"Task {task.id} is already {task.status.value}", retryable=False)
        if task.id in self._executing:
            logger.warning("Task %s is already executing, not executing again", task.id)
            return self._failed_result(task.id, f"Task {task.id} is already executing", retryable=False)

        self._executing.add(task.id)
        try:
            task.mark(TaskStatus.IN_PROGRESS)
            task.started_at = utcnow()
            await self._save(task)

            try:
                result = await self._leader.execute(task)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Task %s failed in the leader", task.id)
                result = self._failed_result(task.id, str(exc) or type(exc).__name__, retryable=True)

            await self._write_back(task, result)
        finally:
            self._executing.discard(task.id)
        try:
            await self._monitor.log_agent_event(
                self._leader.agent_id,
                "task_completed" if result.success else "task_failed",
                {"taskId": task.id, "executionTime": result.execution_time_ms},
            )
        except Exception:  # noqa: BLE001
            logger.exception("Could not record monitor event for task %s", task.id)
        return result

    async def get_task_status(self, task_id: str) -> Optional[Task]:
        raw = await self._store.get(task_key(task_id))
        return Task.model_validate_json(raw) if raw else None

    async def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        raw = await self._store.get(result_key(task_id))
        return TaskResult.model_validate_json(raw) if raw else None

    async def cancel_task(self, task_id: str) -> bool:
        """Advisory cancel: flips the ledger record, does not interrupt running work."""
        task = await self.get_task_status(task_id)
        if task is None or task.is_terminal:
            return False
        task.mark(TaskStatus.CANCELLED)
        await self._save(task)
        logger.info("Task %s cancelled", task_id)
        return True

    async def get_team_status(self) -> Dict[str, Any]:
        summary = await self._monitor.get_team_summary()
        metrics = summary["metrics"]
        return {
            "leader": self._leader.status_snapshot(),
            "workers": [
                {
                    "id": agent.id,
                    "role": agent.role.value,
                    "status": agent.status.value,
                    "currentTaskCount": agent.current_task_count,
                }
                for agent in summary["agents"]
            ],
            "metrics": metrics.model_dump(mode="json") if metrics else None,
        }

    async def health_check(self) -> Dict[str, Any]:
        agents = await self._monitor.get_all_agents()
        healths = await asyncio.gather(*(self._monitor.get_agent_health(agent.id) for agent in agents))
        agent_health: List[Dict[str, Any]] = [
            {"id": agent.id, "healthy": bool(health and health.is_healthy)}
            for agent, health in zip(agents, healths)
        ]
        return {
            "healthy": self._initialized and all(entry["healthy"] for entry in agent_health),
            "agents": agent_health,
            "messageQueue": self._initialized,
        }

    def _assignment_handler(self, worker: Worker) -> MessageHandler:
        async def handle(message: AgentMessage) -> None:
            if message.type is not MessageType.TASK_ASSIGNMENT:
                logger.debug("%s ignoring %s message %s", worker.agent_id, message.type.value, message.id)
                return
            task = TaskAssignmentPayload.model_validate(message.payload).task
            result = await worker.execute(task)
            await self._report_result(result)

        return handle

    async def _report_result(self, result: TaskResult) -> None:
        message = AgentMessage(
            id=new_message_id("result"),
            type=MessageType.TASK_RESULT,
            priority=MessagePriority.HIGH,
            sender_id=result.agent_id,
            receiver_id=self._leader.agent_id,
            payload=TaskResultPayload(result=result).to_payload(),
        )
        try:
            await self._bus.publish(message)
        except MessageBusError as exc:
            logger.warning("Could not notify leader about task %s: %s", result.task_id, exc)

    async def _write_back(self, task: Task, result: TaskResult) -> None:
        current = await self.get_task_status(task.id)
        if current is not None and current.is_terminal:
            logger.info("Task %s became %s while executing; keeping it", task.id, current.status.value)
            task.status = current.status
        else:
            task.output = result.output or TaskOutput(success=result.success, error=result.error)
            task.mark(TaskStatus.COMPLETED if result.success else TaskStatus.FAILED)
            await self._save(task)
        await self._store.set(result_key(task.id), result.model_dump_json(), self._settings.result_ttl)

    async def _save(self, task: Task) -> None:
        await self._store.set(task_key(task.id), task.model_dump_json(), self._settings.task_ttl)

    def _next_task_id(self) -> str:
        return f"task-{int(self._clock() * 1000)}-{next(self._counter):06d}"

    def _failed_result(self, task_id: str, error: str, *, retryable: bool) -> TaskResult:
        return TaskResult(
            task_id=task_id,
            success=False,
            output=TaskOutput(success=False, error=error),
            execution_time_ms=0,
            agent_id=self._leader.agent_id,
            error=error,
            retryable=retryable,
        )
