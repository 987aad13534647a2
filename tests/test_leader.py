"""Tests for leader decomposition, assignment, collection and recovery."""
from __future__ import annotations

import json
import random
from dataclasses import replace
from typing import List, Optional

import pytest

from agent_team.agents.leader import LEADER_AGENT_ID, LeaderAgent
from agent_team.agents.worker import result_key
from agent_team.core.message_bus import MessageBus
from agent_team.core.models import (
    AgentInfo,
    AgentMessage,
    AgentRole,
    AgentStatus,
    ErrorRecoveryStrategy,
    MessageType,
    RecoveryAction,
    Task,
    TaskInput,
    TaskOutput,
    TaskResult,
    TaskStatus,
    TaskType,
)
from agent_team.core.payloads import TaskAssignmentPayload, TaskResultPayload
from agent_team.monitoring.team_monitor import TeamMonitor

DECOMPOSITION_MARKER = "task decomposition expert"


def plan_reply(subtasks: list, order: Optional[list] = None) -> str:
    return "```json\n" + json.dumps({"subtasks": subtasks, "executionOrder": order or []}) + "\n```"


def make_task(task_id: str = "task-1", task_type: TaskType = TaskType.OPTIMIZATION) -> Task:
    return Task(id=task_id, type=task_type, input=TaskInput(type=task_type, data={"resumeContent": "CV"}))


def worker_info(agent_id: str, role: AgentRole, **fields) -> AgentInfo:
    fields.setdefault("max_concurrent_tasks", 3)
    return AgentInfo(id=agent_id, role=role, status=AgentStatus.IDLE, **fields)


def success(task_id: str, data: dict, elapsed: int = 10) -> TaskResult:
    return TaskResult(
        task_id=task_id,
        success=True,
        output=TaskOutput(success=True, data=data),
        execution_time_ms=elapsed,
        agent_id="worker",
    )


@pytest.fixture
def bus(store, settings) -> MessageBus:
    return MessageBus(store, poll_interval=settings.mailbox_poll_interval)


@pytest.fixture
def leader(completion, bus, store, settings) -> LeaderAgent:
    return LeaderAgent(completion, bus, store, TeamMonitor(store, settings), settings)


def generated_plan(seed: int) -> tuple:
    rng = random.Random(seed)
    count = rng.randint(1, 6)
    worker_types = ["analysis_worker", "generation_worker", "retrieval_worker", "validation_worker"]
    task_types = ["resume_analysis", "jd_analysis", "content_generation", "rag_query", "validation"]
    subtasks = [
        {
            "type": rng.choice(task_types),
            "description": f"step {index}",
            "priority": rng.randint(1, 4),
            "dependencies": sorted(rng.sample(range(index), rng.randint(0, index))),
            "assignedWorkerType": rng.choice(worker_types),
        }
        for index in range(count)
    ]
    order = list(range(count))
    rng.shuffle(order)
    return subtasks, order


@pytest.mark.anyio
@pytest.mark.parametrize("seed", range(25))
async def test_decomposition_references_only_its_own_subtasks(leader, completion, seed) -> None:
    subtasks, order = generated_plan(seed)
    completion.when(DECOMPOSITION_MARKER, plan_reply(subtasks, order))
    task = make_task()

    decomposition = await leader.decompose_task(task)

    ids = [subtask.id for subtask in decomposition.sub_tasks]
    assert ids == [f"task-1-sub-{index}" for index in range(len(subtasks))]
    assert task.child_task_ids == ids
    for subtask_id, depends_on in decomposition.dependencies.items():
        assert subtask_id in ids
        assert set(depends_on) <= set(ids)
    assert set(decomposition.execution_order) <= set(ids)
    assert decomposition.execution_order == [ids[index] for index in order]
    for subtask in decomposition.sub_tasks:
        assert subtask.parent_id == "task-1"
        assert subtask.input.data == task.input.data


@pytest.mark.anyio
@pytest.mark.parametrize(
    "reply",
    [
        "I cannot help with that",
        plan_reply([]),
        plan_reply([{"type": "validation", "dependencies": [7]}]),
        plan_reply([{"type": "validation"}], order=[3]),
        '{"steps": []}',
    ],
)
async def test_unusable_plan_falls_back_to_analysis_then_generation(leader, completion, reply) -> None:
    completion.when(DECOMPOSITION_MARKER, reply)

    decomposition = await leader.decompose_task(make_task())

    analysis, generation = decomposition.sub_tasks
    assert analysis.type is TaskType.RESUME_ANALYSIS
    assert generation.type is TaskType.CONTENT_GENERATION
    assert decomposition.dependencies[generation.id] == [analysis.id]
    assert decomposition.execution_order == [analysis.id, generation.id]


@pytest.mark.anyio
async def test_unknown_task_type_parses_as_coordination(leader, completion) -> None:
    completion.when(DECOMPOSITION_MARKER, plan_reply([{"type": "teleport", "priority": 9}]))

    decomposition = await leader.decompose_task(make_task())

    assert decomposition.sub_tasks[0].type is TaskType.COORDINATION
    assert int(decomposition.sub_tasks[0].priority) == 2


@pytest.mark.anyio
async def test_plan_prefers_least_loaded_then_most_proven(leader, completion) -> None:
    leader.register_worker_agent(worker_info("a-busy", AgentRole.ANALYSIS_WORKER, current_task_count=2))
    leader.register_worker_agent(worker_info("a-new", AgentRole.ANALYSIS_WORKER, completed_tasks=1))
    leader.register_worker_agent(worker_info("a-proven", AgentRole.ANALYSIS_WORKER, completed_tasks=9))
    leader.register_worker_agent(
        worker_info("a-offline", AgentRole.ANALYSIS_WORKER).model_copy(update={"status": AgentStatus.OFFLINE})
    )
    completion.when(
        DECOMPOSITION_MARKER,
        plan_reply([{"type": "resume_analysis", "assignedWorkerType": "analysis_worker"}] * 3),
    )

    decomposition = await leader.decompose_task(make_task())
    plan = await leader.create_assignment_plan(decomposition)

    assert list(plan.values()) == ["a-proven", "a-new", "a-proven"]


@pytest.mark.anyio
async def test_plan_respects_tentative_capacity_and_unknown_tags(leader, completion) -> None:
    leader.register_worker_agent(worker_info("gen", AgentRole.GENERATION_WORKER, max_concurrent_tasks=1))
    completion.when(
        DECOMPOSITION_MARKER,
        plan_reply(
            [
                {"type": "content_generation", "assignedWorkerType": "generation_worker"},
                {"type": "content_generation", "assignedWorkerType": "generation_worker"},
                {"type": "validation", "assignedWorkerType": "quantum_worker"},
            ]
        ),
    )

    decomposition = await leader.decompose_task(make_task())
    plan = await leader.create_assignment_plan(decomposition)

    assert plan == {"task-1-sub-0": "gen"}


@pytest.mark.anyio
async def test_dependent_subtask_is_assigned_without_waiting_for_its_dependency(
    leader, completion, bus, store
) -> None:
    leader.register_worker_agent(worker_info("analysis", AgentRole.ANALYSIS_WORKER))
    leader.register_worker_agent(worker_info("generation", AgentRole.GENERATION_WORKER))
    completion.when(
        DECOMPOSITION_MARKER,
        plan_reply(
            [
                {"type": "resume_analysis", "assignedWorkerType": "analysis_worker"},
                {"type": "content_generation", "assignedWorkerType": "generation_worker", "dependencies": [0]},
            ],
            order=[0, 1],
        ),
    )

    decomposition = await leader.decompose_task(make_task())
    first, second = decomposition.sub_tasks
    plan = await leader.create_assignment_plan(decomposition)
    assert list(plan) == [first.id, second.id]

    await leader.assign_tasks_to_workers(plan)

    # B goes out even though A has produced no result yet.
    assert await store.get(result_key(first.id)) is None
    assert first.status is TaskStatus.ASSIGNED and first.assigned_agent_id == "analysis"
    assert second.status is TaskStatus.ASSIGNED and second.assigned_agent_id == "generation"
    [message] = await bus.get_messages("generation")
    assert message.type is MessageType.TASK_ASSIGNMENT
    payload = TaskAssignmentPayload.model_validate(message.payload)
    assert payload.schema_version == 1
    assert payload.task.id == second.id
    assert payload.task.metadata["dependencies"] == [first.id]


@pytest.mark.anyio
async def test_aggregate_reports_success_with_one_entry_per_subtask(leader, completion) -> None:
    completion.when(
        DECOMPOSITION_MARKER,
        plan_reply([{"type": "resume_analysis"}, {"type": "jd_analysis"}, {"type": "rag_query"}]),
    )
    parent = make_task()
    decomposition = await leader.decompose_task(parent)
    results = {
        subtask.id: success(subtask.id, {"from": subtask.type.value}, elapsed=5 * (index + 1))
        for index, subtask in enumerate(decomposition.sub_tasks)
    }

    aggregated = leader.aggregate_results(parent, results, decomposition)

    assert aggregated.success is True
    assert aggregated.retryable is False
    assert aggregated.output.data == {
        "resume_analysis": {"from": "resume_analysis"},
        "jd_analysis": {"from": "jd_analysis"},
        "rag_query": {"from": "rag_query"},
    }
    assert aggregated.execution_time_ms == 30
    assert aggregated.output.metadata["totalSubtasks"] == 3
    assert leader.get_active_task_count() == 0


@pytest.mark.anyio
async def test_missing_result_times_out_as_retryable_failure(completion, bus, store, settings) -> None:
    quick = replace(settings, result_timeout=0.05)
    leader = LeaderAgent(completion, bus, store, TeamMonitor(store, quick), quick)
    completion.when(DECOMPOSITION_MARKER, plan_reply([{"type": "resume_analysis"}, {"type": "jd_analysis"}]))
    parent = make_task()
    decomposition = await leader.decompose_task(parent)
    first = decomposition.sub_tasks[0]
    await store.set(result_key(first.id), success(first.id, {"ok": True}).model_dump_json())

    results = await leader.monitor_and_collect_results(decomposition)
    aggregated = leader.aggregate_results(parent, results, decomposition)

    assert list(results) == [first.id]
    assert aggregated.success is False
    assert aggregated.retryable is True
    assert aggregated.output.metadata["missingSubtasks"] == 1
    assert aggregated.output.data == {"resume_analysis": {"ok": True}}


@pytest.mark.anyio
async def test_execute_without_workers_returns_failed_result(completion, bus, store, settings) -> None:
    quick = replace(settings, result_timeout=0.05)
    leader = LeaderAgent(completion, bus, store, TeamMonitor(store, quick), quick)
    completion.when(DECOMPOSITION_MARKER, "not a plan")

    result = await leader.execute(make_task())

    assert result.success is False
    assert result.retryable is True
    assert result.agent_id == LEADER_AGENT_ID
    assert leader.get_status() is AgentStatus.IDLE


@pytest.mark.anyio
async def test_execute_failure_sets_error_until_next_success(leader, completion, store) -> None:
    completion.when(DECOMPOSITION_MARKER, RuntimeError("completion service down"))

    result = await leader.execute(make_task())

    assert result.success is False
    assert result.retryable is True
    assert result.error == "completion service down"
    assert leader.get_status() is AgentStatus.ERROR

    completion.rules.clear()
    completion.when(DECOMPOSITION_MARKER, plan_reply([{"type": "rag_query"}]))
    await store.set(result_key("task-2-sub-0"), success("task-2-sub-0", {"hits": []}).model_dump_json())

    assert (await leader.execute(make_task("task-2"))).success is True
    assert leader.get_status() is AgentStatus.IDLE


@pytest.mark.anyio
async def test_mailbox_results_are_collected(leader, completion, store) -> None:
    completion.when(DECOMPOSITION_MARKER, plan_reply([{"type": "validation"}]))
    decomposition = await leader.decompose_task(make_task())
    subtask = decomposition.sub_tasks[0]

    await leader.handle_message(
        AgentMessage(
            id="result-1",
            type=MessageType.TASK_RESULT,
            sender_id="validation-worker-001",
            receiver_id=LEADER_AGENT_ID,
            payload=TaskResultPayload(result=success(subtask.id, {"isValid": True})).to_payload(),
        )
    )
    results = await leader.monitor_and_collect_results(decomposition)

    assert results[subtask.id].output.data == {"isValid": True}


@pytest.mark.anyio
async def test_leader_answers_status_requests(leader, bus) -> None:
    await leader.initialize()
    try:
        response = await bus.request(LEADER_AGENT_ID, {"query": "status"}, "operator", timeout=2.0)
    finally:
        await leader.shutdown()
        await bus.stop()

    assert response.payload["id"] == LEADER_AGENT_ID
    assert response.payload["status"] == "idle"


async def _decomposed(leader: LeaderAgent, completion, subtasks: List[dict]) -> list:
    completion.when(DECOMPOSITION_MARKER, plan_reply(subtasks))
    return (await leader.decompose_task(make_task())).sub_tasks


@pytest.mark.anyio
async def test_retry_strategy_requeues_until_attempts_run_out(leader, completion) -> None:
    [subtask] = await _decomposed(leader, completion, [{"type": "rag_query"}])
    strategy = ErrorRecoveryStrategy(type=RecoveryAction.RETRY, max_attempts=2)

    await leader.handle_error(subtask.id, RuntimeError("flaky"), strategy)
    await leader.handle_error(subtask.id, RuntimeError("flaky"), strategy)
    await leader.handle_error(subtask.id, RuntimeError("flaky"), strategy)

    assert subtask.retry_count == 2
    assert subtask.status is TaskStatus.RETRYING
    assert leader.get_queue_length() == 2


@pytest.mark.anyio
async def test_reassign_and_dispatch_queued(leader, completion, bus, store) -> None:
    [subtask] = await _decomposed(leader, completion, [{"type": "rag_query", "assignedWorkerType": "retrieval_worker"}])
    await store.set(result_key(subtask.id), "stale")
    strategy = ErrorRecoveryStrategy(type=RecoveryAction.REASSIGN, fallback_agent_id="retrieval-backup")

    await leader.handle_error(subtask.id, RuntimeError("worker crashed"), strategy)
    assert subtask.status is TaskStatus.PENDING
    assert subtask.assigned_agent_id == "retrieval-backup"

    dispatched = await leader.dispatch_queued()

    assert dispatched == [subtask.id]
    assert leader.get_queue_length() == 0
    assert await store.get(result_key(subtask.id)) is None
    [message] = await bus.get_messages("retrieval-backup")
    assert TaskAssignmentPayload.model_validate(message.payload).task.id == subtask.id


@pytest.mark.anyio
async def test_abort_and_fallback_strategies(leader, completion) -> None:
    first, second = await _decomposed(leader, completion, [{"type": "rag_query"}, {"type": "validation"}])

    await leader.handle_error(first.id, RuntimeError("fatal"), ErrorRecoveryStrategy(type=RecoveryAction.ABORT))
    await leader.handle_error(second.id, RuntimeError("meh"), ErrorRecoveryStrategy(type=RecoveryAction.FALLBACK))
    await leader.handle_error(first.id, RuntimeError("again"), ErrorRecoveryStrategy(type=RecoveryAction.RETRY))

    assert first.status is TaskStatus.FAILED
    assert first.retry_count == 0
    assert second.status is TaskStatus.PENDING
    assert leader.get_queue_length() == 0


@pytest.mark.anyio
async def test_aborted_task_is_not_dispatched_again(leader, completion, bus) -> None:
    leader.register_worker_agent(worker_info("r1", AgentRole.RETRIEVAL_WORKER))
    [subtask] = await _decomposed(leader, completion, [{"type": "rag_query", "assignedWorkerType": "retrieval_worker"}])

    await leader.handle_error(subtask.id, RuntimeError("flaky"), ErrorRecoveryStrategy(type=RecoveryAction.RETRY))
    await leader.handle_error(subtask.id, RuntimeError("fatal"), ErrorRecoveryStrategy(type=RecoveryAction.ABORT))
    dispatched = await leader.dispatch_queued()

    assert dispatched == []
    assert subtask.status is TaskStatus.FAILED
    assert leader.get_queue_length() == 0
    assert await bus.get_messages("r1") == []


@pytest.mark.anyio
async def test_finished_cycles_release_subtask_bookkeeping(completion, bus, store, settings) -> None:
    quick = replace(settings, result_timeout=0.02)
    leader = LeaderAgent(completion, bus, store, TeamMonitor(store, quick), quick)
    completion.when(DECOMPOSITION_MARKER, "not a plan")

    for index in range(5):
        result = await leader.execute(make_task(f"task-{index}"))
        assert result.success is False

    assert leader.get_active_task_count() == 0
    assert leader.status_snapshot()["activeTasks"] == 0
    assert leader._task_results == {}


@pytest.mark.anyio
async def test_late_result_for_finished_cycle_is_ignored(leader) -> None:
    await leader.handle_message(
        AgentMessage(
            id="late",
            type=MessageType.TASK_RESULT,
            sender_id="analysis-worker-001",
            receiver_id=LEADER_AGENT_ID,
            payload=TaskResultPayload(result=success("task-9-sub-0", {"ok": True})).to_payload(),
        )
    )

    assert leader._task_results == {}
    assert leader.get_active_task_count() == 0


@pytest.mark.anyio
async def test_recovered_task_is_released_when_its_result_arrives(leader, completion) -> None:
    leader.register_worker_agent(worker_info("r1", AgentRole.RETRIEVAL_WORKER))
    [subtask] = await _decomposed(leader, completion, [{"type": "rag_query", "assignedWorkerType": "retrieval_worker"}])
    await leader.handle_error(subtask.id, RuntimeError("flaky"), ErrorRecoveryStrategy(type=RecoveryAction.RETRY))
    assert await leader.dispatch_queued() == [subtask.id]

    await leader.handle_message(
        AgentMessage(
            id="retry-result",
            type=MessageType.TASK_RESULT,
            sender_id="r1",
            receiver_id=LEADER_AGENT_ID,
            payload=TaskResultPayload(result=success(subtask.id, {"results": []})).to_payload(),
        )
    )

    assert leader.get_active_task(subtask.id) is None
    assert leader._task_results == {}
