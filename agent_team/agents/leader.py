"""Leader agent: decomposes tasks, assigns subtasks, collects and aggregates results."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from agent_team.agents.replies import parse_json_object
from agent_team.agents.worker import heartbeat_key, result_key
from agent_team.config import TeamSettings
from agent_team.core.errors import QueueFullError, TaskStateError
from agent_team.core.message_bus import MessageBus, new_message_id
from agent_team.core.models import (
    AgentCapability,
    AgentInfo,
    AgentMessage,
    AgentRole,
    AgentStatus,
    ErrorRecoveryStrategy,
    Heartbeat,
    MessagePriority,
    MessageType,
    RecoveryAction,
    Task,
    TaskDecomposition,
    TaskInput,
    TaskOutput,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    WorkerType,
)
from agent_team.core.payloads import TaskAssignmentPayload, TaskResultPayload
from agent_team.core.store import SharedStore
from agent_team.core.ticker import Ticker
from agent_team.monitoring.team_monitor import TeamMonitor
from agent_team.services.completion import CompletionRequest, CompletionService

logger = logging.getLogger(__name__)

LEADER_AGENT_ID = "leader-agent-001"

CAPABILITIES = [
    AgentCapability(name="task_decomposition", description="Decompose complex tasks into subtasks"),
    AgentCapability(name="resource_allocation", description="Allocate tasks to appropriate worker agents"),
    AgentCapability(name="progress_monitoring", description="Monitor task execution progress"),
    AgentCapability(name="result_aggregation", description="Aggregate results from worker agents"),
    AgentCapability(name="error_recovery", description="Handle errors and apply recovery strategies"),
]

DECOMPOSITION_PROMPT = """You are a task decomposition expert. Break the task below into smaller, executable subtasks.

Task Type: {task_type}
Task Input: {task_input}
Task Priority: {priority}

Available Worker Types:
- analysis_worker: resume analysis, JD analysis, skill extraction
- generation_worker: content generation, optimization suggestions
- retrieval_worker: RAG queries, knowledge base retrieval
- validation_worker: quality checks, scoring, validation

Answer with a JSON object:
{{
  "subtasks": [
    {{
      "type": "resume_analysis | jd_analysis | content_generation | rag_query | validation | optimization",
      "description": "brief description",
      "priority": 1,
      "dependencies": [0],
      "assignedWorkerType": "analysis_worker | generation_worker | retrieval_worker | validation_worker"
    }}
  ],
  "executionOrder": [0]
}}

"priority" is 1-4, "dependencies" and "executionOrder" hold zero-based subtask indices.
Return JSON only."""


class LeaderAgent:
    """Coordinates one task at a time through decompose, assign, monitor and aggregate."""

    role = AgentRole.LEADER
    capabilities = CAPABILITIES

    def __init__(
        self,
        completion: CompletionService,
        bus: MessageBus,
        store: SharedStore,
        monitor: TeamMonitor,
        settings: Optional[TeamSettings] = None,
        *,
        agent_id: str = LEADER_AGENT_ID,
    ) -> None:
        self.agent_id = agent_id
        self._completion = completion
        self._bus = bus
        self._store = store
        self._monitor = monitor
        self._settings = settings or TeamSettings()
        self.status = AgentStatus.IDLE
        self.completed_tasks = 0
        self.failed_tasks = 0
        self._worker_agents: Dict[str, AgentInfo] = {}
        self._task_queue: Deque[Task] = deque()
        self._active_tasks: Dict[str, Task] = {}
        self._task_results: Dict[str, TaskResult] = {}
        self._decomposing: Set[str] = set()
        self._redispatched: Set[str] = set()
        self._ticker = Ticker(f"heartbeat:{agent_id}", self._settings.heartbeat_interval, self.heartbeat)

    async def initialize(self) -> None:
        logger.info("Initializing Leader Agent...")
        await self._load_worker_agents()
        await self._bus.subscribe(self.agent_id, self.handle_message)
        self.status = AgentStatus.IDLE
        await self.heartbeat()
        self._ticker.start()
        logger.info("Leader Agent initialized successfully")

    async def shutdown(self) -> None:
        await self.stop_heartbeat()
        await self._bus.unsubscribe(self.agent_id)

    def get_status(self) -> AgentStatus:
        return self.status

    async def heartbeat(self) -> None:
        beat = Heartbeat(
            agent_id=self.agent_id,
            role=self.role,
            status=self.status,
            completed_tasks=self.completed_tasks,
            failed_tasks=self.failed_tasks,
            active_task_count=len(self._active_tasks),
            queued_task_count=len(self._task_queue),
        )
        await self._store.set(
            heartbeat_key(self.agent_id),
            beat.model_dump_json(),
            self._settings.heartbeat_interval + 10,
        )

    async def stop_heartbeat(self) -> None:
        await self._ticker.stop()

    async def execute(self, task: Task) -> TaskResult:
        """Run one full decompose / assign / monitor / aggregate cycle.

        Never raises: any failure yields a failed, retryable result and leaves
        the leader in ERROR until the next successful cycle.
        """
        logger.info("Leader Agent executing task: %s", task.id)
        if task.id in self._decomposing:
            return self._failed_result(task, f"Task {task.id} already has a decomposition in flight")

        self.status = AgentStatus.BUSY
        self._decomposing.add(task.id)
        try:
            decomposition = await self.decompose_task(task)
            logger.debug("Task decomposed into %d subtasks", len(decomposition.sub_tasks))

            plan = await self.create_assignment_plan(decomposition)
            logger.debug("Assignment plan created for %d of %d subtasks", len(plan), len(decomposition.sub_tasks))

            await self.assign_tasks_to_workers(plan)
            results = await self.monitor_and_collect_results(decomposition)
            aggregated = self.aggregate_results(task, results, decomposition)
        except Exception as exc:  # noqa: BLE001
            self.status = AgentStatus.ERROR
            self.failed_tasks += 1
            logger.exception("Leader Agent execution failed for task %s", task.id)
            return self._failed_result(task, str(exc) or type(exc).__name__)
        finally:
            self._decomposing.discard(task.id)
            self._release_subtasks(task)

        if aggregated.success:
            self.completed_tasks += 1
        else:
            self.failed_tasks += 1
        self.status = AgentStatus.IDLE
        return aggregated

    async def decompose_task(self, task: Task) -> TaskDecomposition:
        """Ask the completion service for a plan; fall back to analysis then generation."""
        logger.debug("Decomposing task: %s", task.id)
        prompt = DECOMPOSITION_PROMPT.format(
            task_type=task.type.value,
            task_input=json.dumps(task.input.model_dump(mode="json"), indent=2),
            priority=int(task.priority),
        )
        response = await self._completion.complete(
            CompletionRequest(prompt=prompt, temperature=0.3, max_tokens=1000)
        )

        try:
            decomposition = self._build_decomposition(task, parse_json_object(response.content))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to parse decomposition, using fallback: %s", exc)
            decomposition = self.create_fallback_decomposition(task)

        task.child_task_ids = [subtask.id for subtask in decomposition.sub_tasks]
        for subtask in decomposition.sub_tasks:
            self._active_tasks[subtask.id] = subtask
        return decomposition

    def create_fallback_decomposition(self, task: Task) -> TaskDecomposition:
        analysis = self._subtask(
            task, 0, TaskType.RESUME_ANALYSIS, TaskPriority.HIGH, WorkerType.ANALYSIS.value, []
        )
        generation = self._subtask(
            task, 1, TaskType.CONTENT_GENERATION, TaskPriority.MEDIUM, WorkerType.GENERATION.value, [analysis.id]
        )
        return TaskDecomposition(
            parent_task=task,
            sub_tasks=[analysis, generation],
            dependencies={analysis.id: [], generation.id: [analysis.id]},
            execution_order=[analysis.id, generation.id],
        )

    async def create_assignment_plan(self, decomposition: TaskDecomposition) -> Dict[str, str]:
        """Map subtask ids to worker ids, in execution order; unassignable subtasks are skipped."""
        await self._refresh_worker_agents()
        plan: Dict[str, str] = {}
        planned_load: Dict[str, int] = {}

        for subtask in decomposition.ordered_subtasks():
            worker_type = WorkerType.parse(subtask.metadata.get("assigned_worker_type"))
            worker = self.select_best_worker(worker_type, planned_load)
            if worker is None:
                logger.warning("No available worker for task %s (%s)", subtask.id, worker_type.value)
                continue
            plan[subtask.id] = worker.id
            planned_load[worker.id] = planned_load.get(worker.id, 0) + 1

        return plan

    def select_best_worker(
        self,
        worker_type: WorkerType,
        planned_load: Optional[Dict[str, int]] = None,
    ) -> Optional[AgentInfo]:
        """Idle worker of the right role with spare capacity: least loaded, then most proven."""
        role = worker_type.role
        if role is None:
            return None
        planned_load = planned_load or {}

        def load(agent: AgentInfo) -> int:
            return agent.current_task_count + planned_load.get(agent.id, 0)

        candidates = [
            agent
            for agent in self._worker_agents.values()
            if agent.role is role
            and agent.status is AgentStatus.IDLE
            and load(agent) < agent.max_concurrent_tasks
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda agent: (load(agent), -agent.completed_tasks))
        return candidates[0]

    async def assign_tasks_to_workers(self, plan: Dict[str, str]) -> None:
        await asyncio.gather(
            *(self._assign(task_id, worker_id) for task_id, worker_id in plan.items())
        )

    async def monitor_and_collect_results(self, decomposition: TaskDecomposition) -> Dict[str, TaskResult]:
        """Poll the result ledger until every subtask reported or the timeout elapsed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.result_timeout
        results: Dict[str, TaskResult] = {}
        total = len(decomposition.sub_tasks)

        while True:
            for subtask in decomposition.sub_tasks:
                if subtask.id in results:
                    continue
                result = await self._lookup_result(subtask.id)
                if result is not None:
                    results[subtask.id] = result
                    logger.debug("Collected result for task %s", subtask.id)

            if len(results) >= total:
                break
            if loop.time() >= deadline:
                logger.warning(
                    "Task monitoring timeout reached with %d of %d results", len(results), total
                )
                break
            await asyncio.sleep(self._settings.result_poll_interval)

        return results

    def aggregate_results(
        self,
        parent_task: Task,
        results: Dict[str, TaskResult],
        decomposition: TaskDecomposition,
    ) -> TaskResult:
        logger.info("Aggregating results from worker agents for task %s", parent_task.id)
        total = len(decomposition.sub_tasks)
        successful = [result for result in results.values() if result.success]
        failed = [result for result in results.values() if not result.success]
        missing = total - len(results)
        if failed or missing:
            logger.warning("%d subtasks failed, %d never reported", len(failed), missing)

        data: Dict[str, Any] = {}
        for subtask in decomposition.sub_tasks:
            result = results.get(subtask.id)
            if result is not None and result.success and result.output and result.output.data:
                data[subtask.type.value] = result.output.data

        for subtask_id, result in results.items():
            if result.success:
                self._active_tasks.pop(subtask_id, None)

        success = len(successful) == total
        error = None if success else f"{total - len(successful)} of {total} subtasks did not complete successfully"
        return TaskResult(
            task_id=parent_task.id,
            success=success,
            output=TaskOutput(
                success=success,
                data=data,
                error=error,
                metadata={
                    "totalSubtasks": total,
                    "successfulSubtasks": len(successful),
                    "failedSubtasks": len(failed),
                    "missingSubtasks": missing,
                },
            ),
            execution_time_ms=sum(result.execution_time_ms for result in results.values()),
            agent_id=self.agent_id,
            error=error,
            retryable=not success,
        )

    async def handle_error(self, task_id: str, error: Exception, strategy: ErrorRecoveryStrategy) -> None:
        """Apply a recovery strategy to a subtask the leader knows about."""
        logger.error("Handling error for task %s: %s", task_id, error)
        task = self._active_tasks.get(task_id)
        if task is None:
            logger.warning("Task %s not found for error handling", task_id)
            return

        try:
            if strategy.type is RecoveryAction.RETRY:
                if task.retry_count >= strategy.max_attempts:
                    logger.warning("Task %s exhausted %d retry attempts", task_id, strategy.max_attempts)
                    return
                if strategy.backoff_seconds:
                    await asyncio.sleep(strategy.backoff_seconds)
                task.mark(TaskStatus.RETRYING)
                task.retry_count += 1
                self._task_queue.append(task)
                logger.info("Retrying task %s (attempt %d)", task_id, task.retry_count)
            elif strategy.type is RecoveryAction.REASSIGN:
                if not strategy.fallback_agent_id:
                    logger.warning("Reassign requested for task %s without a fallback agent", task_id)
                    return
                task.mark(TaskStatus.PENDING)
                task.assigned_agent_id = strategy.fallback_agent_id
                self._task_queue.append(task)
                logger.info("Reassigning task %s to %s", task_id, strategy.fallback_agent_id)
            elif strategy.type is RecoveryAction.FALLBACK:
                logger.info("Using fallback for task %s", task_id)
            elif strategy.type is RecoveryAction.ABORT:
                task.mark(TaskStatus.FAILED)
                logger.error("Aborting task %s", task_id)
        except TaskStateError as exc:
            logger.warning("Cannot recover task %s: %s", task_id, exc)

    async def dispatch_queued(self) -> List[str]:
        """Publish queued retry and reassign tasks; undeliverable ones stay queued."""
        await self._refresh_worker_agents()
        dispatched: List[str] = []
        leftover: List[Task] = []
        planned_load: Dict[str, int] = {}

        while self._task_queue:
            task = self._task_queue.popleft()
            if task.is_terminal:
                logger.info("Dropping queued task %s: already %s", task.id, task.status.value)
                continue
            worker_id = task.assigned_agent_id if task.status is TaskStatus.PENDING else None
            if worker_id is None:
                worker = self.select_best_worker(
                    WorkerType.parse(task.metadata.get("assigned_worker_type")), planned_load
                )
                worker_id = worker.id if worker else None
            if worker_id is None:
                leftover.append(task)
                continue
            await self._store.delete(result_key(task.id))
            self._task_results.pop(task.id, None)
            if await self._assign(task.id, worker_id):
                dispatched.append(task.id)
                self._redispatched.add(task.id)
                planned_load[worker_id] = planned_load.get(worker_id, 0) + 1
            else:
                leftover.append(task)

        self._task_queue.extend(leftover)
        return dispatched

    async def handle_message(self, message: AgentMessage) -> None:
        """Mailbox handler: record worker results and answer status requests."""
        if message.type is MessageType.TASK_RESULT:
            result = TaskResultPayload.model_validate(message.payload).result
            task = self._active_tasks.get(result.task_id)
            if task is None:
                logger.debug("Ignoring result for untracked task %s", result.task_id)
                return
            if result.task_id in self._redispatched and task.parent_id not in self._decomposing:
                # Nobody is collecting for this parent any more; the worker already stored the result.
                self._redispatched.discard(result.task_id)
                self._active_tasks.pop(result.task_id, None)
                logger.info("Recovered task %s finished: success=%s", result.task_id, result.success)
                return
            self._redispatched.discard(result.task_id)
            self._task_results[result.task_id] = result
            logger.debug("Leader received result for task %s from %s", result.task_id, message.sender_id)
        elif message.type is MessageType.REQUEST:
            await self._bus.respond(message, self.status_snapshot(), self.agent_id)

    def status_snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.agent_id,
            "status": self.status.value,
            "activeTasks": self.get_active_task_count(),
            "queueLength": self.get_queue_length(),
            "workers": len(self._worker_agents),
        }

    def register_worker_agent(self, agent_info: AgentInfo) -> None:
        self._worker_agents[agent_info.id] = agent_info
        logger.info("Registered worker agent: %s (%s)", agent_info.id, agent_info.role.value)

    def unregister_worker_agent(self, agent_id: str) -> None:
        self._worker_agents.pop(agent_id, None)
        logger.info("Unregistered worker agent: %s", agent_id)

    def get_worker_stats(self) -> Dict[str, AgentInfo]:
        return dict(self._worker_agents)

    def get_active_task(self, task_id: str) -> Optional[Task]:
        return self._active_tasks.get(task_id)

    def get_queue_length(self) -> int:
        return len(self._task_queue)

    def get_active_task_count(self) -> int:
        return len(self._active_tasks)

    async def _assign(self, task_id: str, worker_id: str) -> bool:
        task = self._active_tasks.get(task_id)
        if task is None:
            logger.warning("Cannot assign unknown task %s", task_id)
            return False
        if task.is_terminal:
            logger.warning("Not assigning task %s: already %s", task_id, task.status.value)
            return False

        message = AgentMessage(
            id=new_message_id(),
            type=MessageType.TASK_ASSIGNMENT,
            priority=MessagePriority(int(task.priority)),
            sender_id=self.agent_id,
            receiver_id=worker_id,
            payload=TaskAssignmentPayload(task=task).to_payload(),
        )
        try:
            await self._bus.publish(message)
        except QueueFullError as exc:
            logger.warning("Could not assign task %s: %s", task_id, exc)
            return False

        try:
            task.mark(TaskStatus.ASSIGNED)
        except TaskStateError as exc:
            logger.warning("Task %s changed while being assigned: %s", task_id, exc)
            return False
        task.assigned_agent_id = worker_id
        logger.debug("Assigned task %s to worker %s", task_id, worker_id)
        return True

    def _release_subtasks(self, task: Task) -> None:
        """Forget a finished cycle's subtasks, except those queued for recovery."""
        queued = {queued_task.id for queued_task in self._task_queue}
        for subtask_id in task.child_task_ids:
            self._task_results.pop(subtask_id, None)
            if subtask_id not in queued and subtask_id not in self._redispatched:
                self._active_tasks.pop(subtask_id, None)

    async def _lookup_result(self, task_id: str) -> Optional[TaskResult]:
        result = self._task_results.get(task_id)
        if result is not None:
            return result
        raw = await self._store.get(result_key(task_id))
        if raw is None:
            return None
        try:
            return TaskResult.model_validate_json(raw)
        except ValueError:
            logger.warning("Failed to parse result for task %s", task_id)
            return None

    async def _load_worker_agents(self) -> None:
        for agent in await self._monitor.get_all_agents():
            if agent.id != self.agent_id:
                self._worker_agents[agent.id] = agent
        logger.info("Loaded %d worker agents", len(self._worker_agents))

    async def _refresh_worker_agents(self) -> None:
        snapshot = {agent.id: agent for agent in await self._monitor.get_all_agents()}
        for agent_id in list(self._worker_agents):
            if agent_id in snapshot:
                self._worker_agents[agent_id] = snapshot[agent_id]

    def _build_decomposition(self, task: Task, plan: Dict[str, Any]) -> TaskDecomposition:
        entries = plan["subtasks"]
        if not isinstance(entries, list) or not entries:
            raise ValueError("Plan has no subtasks")

        count = len(entries)
        subtasks: List[Task] = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise TypeError(f"Subtask {index} is not an object")
            depends_on = [_index(ref, count) for ref in entry.get("dependencies") or []]
            subtasks.append(
                self._subtask(
                    task,
                    index,
                    TaskType.parse(entry.get("type")),
                    _priority(entry.get("priority")),
                    entry.get("assignedWorkerType"),
                    [f"{task.id}-sub-{ref}" for ref in depends_on],
                    description=entry.get("description"),
                )
            )

        order = [subtasks[_index(ref, count)].id for ref in plan.get("executionOrder") or []]
        return TaskDecomposition(
            parent_task=task,
            sub_tasks=subtasks,
            dependencies={subtask.id: subtask.metadata["dependencies"] for subtask in subtasks},
            execution_order=order,
        )

    @staticmethod
    def _subtask(
        parent: Task,
        index: int,
        task_type: TaskType,
        priority: TaskPriority,
        worker_type: Optional[str],
        depends_on: List[str],
        *,
        description: Optional[str] = None,
    ) -> Task:
        context: Dict[str, Any] = {"parentTaskId": parent.id}
        if description:
            context["description"] = description
        return Task(
            id=f"{parent.id}-sub-{index}",
            type=task_type,
            priority=priority,
            input=TaskInput(type=task_type, data=dict(parent.input.data), context=context),
            parent_id=parent.id,
            metadata={"assigned_worker_type": worker_type, "dependencies": depends_on},
        )

    def _failed_result(self, task: Task, error: str) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            success=False,
            output=TaskOutput(success=False, error=error),
            execution_time_ms=0,
            agent_id=self.agent_id,
            error=error,
            retryable=True,
        )


def _index(value: Any, count: int) -> int:
    if isinstance(value, bool):
        raise TypeError(f"Invalid subtask index {value!r}")
    index = int(value)
    if not 0 <= index < count:
        raise ValueError(f"Subtask index {index} out of range")
    return index


def _priority(value: Any) -> TaskPriority:
    try:
        return TaskPriority(int(value))
    except (TypeError, ValueError):
        return TaskPriority.MEDIUM
