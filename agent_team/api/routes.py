"""HTTP API exposing team task and monitoring capabilities."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agent_team.core.models import (
    AgentHealthStatus,
    TaskOutput,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    TeamMetrics,
)
from agent_team.monitoring.team_monitor import TeamMonitor
from agent_team.orchestration.complex_tasks import ComplexTaskRequest, ComplexTaskResult, TeamTaskService
from agent_team.orchestration.orchestrator import TeamOrchestrator
from agent_team.runtime import get_monitor, get_orchestrator, get_task_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/team", tags=["team"])

MAX_LOG_LIMIT = 100


class SubmitTaskRequest(BaseModel):
    type: TaskType = Field(..., description="Kind of work requested")
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskSubmittedResponse(BaseModel):
    task_id: str
    status: TaskStatus
    message: str = "Task submitted successfully"


class TaskExecutionResponse(BaseModel):
    task_id: str
    success: bool
    output: Optional[TaskOutput]
    execution_time_ms: int
    error: Optional[str]

    @classmethod
    def from_result(cls, result: TaskResult) -> "TaskExecutionResponse":
        return cls(
            task_id=result.task_id,
            success=result.success,
            output=result.output,
            execution_time_ms=result.execution_time_ms,
            error=result.error,
        )


class TaskStatusResponse(BaseModel):
    task_id: str
    type: TaskType
    status: TaskStatus
    priority: TaskPriority
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    output: Optional[TaskOutput]


class CancelResponse(BaseModel):
    success: bool
    message: str


class TeamStatusResponse(BaseModel):
    healthy: bool
    leader: Dict[str, Any]
    agents: List[Dict[str, Any]]
    metrics: Optional[Dict[str, Any]]


class HealthResponse(BaseModel):
    healthy: bool
    agents: List[Dict[str, Any]]
    message_queue: bool


class MetricsResponse(BaseModel):
    current: Optional[TeamMetrics]
    history: List[TeamMetrics]


class AgentSummary(BaseModel):
    id: str
    role: str
    status: str
    capabilities: List[str]
    max_concurrent_tasks: int
    current_task_count: int
    health: Optional[AgentHealthStatus]


@router.post("/tasks", response_model=TaskSubmittedResponse, status_code=status.HTTP_201_CREATED)
async def submit_task(
    request: SubmitTaskRequest,
    orchestrator: TeamOrchestrator = Depends(get_orchestrator),
) -> TaskSubmittedResponse:
    task = await orchestrator.submit_task(request.type, request.data, request.priority, request.metadata)
    return TaskSubmittedResponse(task_id=task.id, status=task.status)


@router.post("/tasks/execute", response_model=TaskExecutionResponse)
async def submit_and_execute_task(
    request: SubmitTaskRequest,
    orchestrator: TeamOrchestrator = Depends(get_orchestrator),
) -> TaskExecutionResponse:
    task = await orchestrator.submit_task(request.type, request.data, request.priority, request.metadata)
    result = await orchestrator.execute_task(task)
    return TaskExecutionResponse.from_result(result)


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str,
    orchestrator: TeamOrchestrator = Depends(get_orchestrator),
) -> TaskStatusResponse:
    task = await orchestrator.get_task_status(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} not found")
    return TaskStatusResponse(
        task_id=task.id,
        type=task.type,
        status=task.status,
        priority=task.priority,
        created_at=task.created_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
        output=task.output,
    )


@router.get("/tasks/{task_id}/result", response_model=TaskResult)
async def get_task_result(
    task_id: str,
    orchestrator: TeamOrchestrator = Depends(get_orchestrator),
) -> TaskResult:
    result = await orchestrator.get_task_result(task_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Result for task {task_id} not found"
        )
    return result


@router.post("/tasks/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(
    task_id: str,
    orchestrator: TeamOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    if not await orchestrator.cancel_task(task_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Task {task_id} cannot be cancelled (not found or already completed)",
        )
    return CancelResponse(success=True, message="Task cancelled successfully")


@router.post("/complex-tasks", response_model=ComplexTaskResult)
async def run_complex_task(
    request: ComplexTaskRequest,
    service: TeamTaskService = Depends(get_task_service),
) -> ComplexTaskResult:
    return await service.execute(request)


@router.get("/status", response_model=TeamStatusResponse)
async def get_team_status(orchestrator: TeamOrchestrator = Depends(get_orchestrator)) -> TeamStatusResponse:
    team = await orchestrator.get_team_status()
    return TeamStatusResponse(
        healthy=team["metrics"] is not None,
        leader=team["leader"],
        agents=team["workers"],
        metrics=team["metrics"],
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(orchestrator: TeamOrchestrator = Depends(get_orchestrator)) -> HealthResponse:
    try:
        report = await orchestrator.health_check()
    except Exception:  # noqa: BLE001
        logger.exception("Team health check failed")
        return HealthResponse(healthy=False, agents=[], message_queue=False)
    return HealthResponse(
        healthy=report["healthy"], agents=report["agents"], message_queue=report["messageQueue"]
    )


@router.get("/metrics", response_model=MetricsResponse)
async def get_team_metrics(monitor: TeamMonitor = Depends(get_monitor)) -> MetricsResponse:
    return MetricsResponse(
        current=await monitor.get_latest_metrics(),
        history=monitor.get_metrics_history()[-10:],
    )


@router.get("/agents", response_model=List[AgentSummary])
async def list_agents(monitor: TeamMonitor = Depends(get_monitor)) -> List[AgentSummary]:
    summaries = []
    for agent in await monitor.get_all_agents():
        summaries.append(
            AgentSummary(
                id=agent.id,
                role=agent.role.value,
                status=agent.status.value,
                capabilities=[capability.name for capability in agent.capabilities],
                max_concurrent_tasks=agent.max_concurrent_tasks,
                current_task_count=agent.current_task_count,
                health=await monitor.get_agent_health(agent.id),
            )
        )
    return summaries


@router.get("/agents/{agent_id}/logs", response_model=List[Dict[str, Any]])
async def get_agent_logs(
    agent_id: str,
    limit: int = Query(50, ge=1),
    monitor: TeamMonitor = Depends(get_monitor),
) -> List[Dict[str, Any]]:
    return await monitor.get_agent_logs(agent_id, min(limit, MAX_LOG_LIMIT))
