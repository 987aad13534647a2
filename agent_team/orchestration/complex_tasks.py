"""Multi-step recipes that chain several team tasks into one career workflow."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from agent_team.core.models import Task, TaskPriority, TaskResult, TaskType
from agent_team.orchestration.orchestrator import TeamOrchestrator

logger = logging.getLogger(__name__)

DISABLED_ERROR = "Team task service is disabled or not available"


class ComplexTaskType(str, Enum):
    FULL_RESUME_OPTIMIZATION = "full_resume_optimization"
    INTERVIEW_PREPARATION = "interview_preparation"
    CAREER_TRANSITION_ANALYSIS = "career_transition_analysis"
    COMPETITIVE_ANALYSIS = "competitive_analysis"


class ComplexTaskRequest(BaseModel):
    user_id: str
    task_type: ComplexTaskType
    resume_content: Optional[str] = None
    job_description: Optional[str] = None
    additional_context: Dict[str, Any] = Field(default_factory=dict)


class ComplexTaskResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    execution_time_ms: int = 0
    error: Optional[str] = None


def _data(result: Optional[TaskResult]) -> Optional[Dict[str, Any]]:
    if result is None or result.output is None:
        return None
    return result.output.data


def _combine(results: List[TaskResult], data: Dict[str, Any]) -> ComplexTaskResult:
    failed = [result for result in results if not result.success]
    error = None
    if failed:
        error = "; ".join(f"{result.task_id}: {result.error or 'failed'}" for result in failed)
    return ComplexTaskResult(
        success=not failed,
        data=data,
        execution_time_ms=sum(result.execution_time_ms for result in results),
        error=error,
    )


class TeamTaskService:
    """Runs the composite recipes on top of a team orchestrator."""

    def __init__(self, orchestrator: Optional[TeamOrchestrator], *, enabled: bool = True) -> None:
        self._orchestrator = orchestrator
        self._enabled = enabled
        self._recipes: Dict[ComplexTaskType, Callable[[ComplexTaskRequest], Awaitable[ComplexTaskResult]]] = {
            ComplexTaskType.FULL_RESUME_OPTIMIZATION: self._full_resume_optimization,
            ComplexTaskType.INTERVIEW_PREPARATION: self._interview_preparation,
            ComplexTaskType.CAREER_TRANSITION_ANALYSIS: self._career_transition_analysis,
            ComplexTaskType.COMPETITIVE_ANALYSIS: self._competitive_analysis,
        }

    def is_enabled(self) -> bool:
        return self._enabled and self._orchestrator is not None

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("TeamTaskService enabled: %s", enabled)

    async def execute(self, request: ComplexTaskRequest) -> ComplexTaskResult:
        logger.info("Executing %s for user %s", request.task_type.value, request.user_id)
        if not self.is_enabled():
            return ComplexTaskResult(success=False, error=DISABLED_ERROR)
        try:
            return await self._recipes[request.task_type](request)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed for user %s", request.task_type.value, request.user_id)
            return ComplexTaskResult(success=False, error=str(exc) or type(exc).__name__)

    async def get_task_status(self, task_id: str) -> Optional[Task]:
        if not self.is_enabled():
            return None
        return await self._orchestrator.get_task_status(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        if not self.is_enabled():
            return False
        return await self._orchestrator.cancel_task(task_id)

    async def _run(
        self,
        task_type: TaskType,
        data: Dict[str, Any],
        priority: TaskPriority,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        task = await self._orchestrator.submit_task(task_type, data, priority, metadata)
        return await self._orchestrator.execute_task(task)

    async def _full_resume_optimization(self, request: ComplexTaskRequest) -> ComplexTaskResult:
        result = await self._run(
            TaskType.OPTIMIZATION,
            {
                "userId": request.user_id,
                "resumeContent": request.resume_content,
                "jobDescription": request.job_description,
                "context": request.additional_context,
            },
            TaskPriority.HIGH,
            {"complexTaskType": ComplexTaskType.FULL_RESUME_OPTIMIZATION.value},
        )
        return ComplexTaskResult(
            success=result.success,
            data=_data(result),
            execution_time_ms=result.execution_time_ms,
            error=result.error,
        )

    async def _interview_preparation(self, request: ComplexTaskRequest) -> ComplexTaskResult:
        resume, jd = await asyncio.gather(
            self._run(
                TaskType.RESUME_ANALYSIS,
                {"userId": request.user_id, "resumeContent": request.resume_content},
                TaskPriority.HIGH,
            ),
            self._run(
                TaskType.JD_ANALYSIS,
                {"userId": request.user_id, "jobDescription": request.job_description},
                TaskPriority.HIGH,
            ),
        )
        analysis = {"resumeAnalysis": _data(resume), "jdAnalysis": _data(jd)}

        generation = await self._run(
            TaskType.CONTENT_GENERATION,
            {
                "userId": request.user_id,
                "contentType": "interview_answers",
                "analysisData": analysis,
                "context": request.additional_context,
            },
            TaskPriority.MEDIUM,
        )
        validation = await self._run(
            TaskType.VALIDATION,
            {"userId": request.user_id, "content": _data(generation), "type": "interview_questions"},
            TaskPriority.LOW,
        )
        return _combine(
            [resume, jd, generation, validation],
            {
                "analysis": analysis,
                "suggestions": _data(generation),
                "validation": _data(validation),
                "finalOutput": _data(generation),
            },
        )

    async def _career_transition_analysis(self, request: ComplexTaskRequest) -> ComplexTaskResult:
        context = request.additional_context
        analysis = await self._run(
            TaskType.RESUME_ANALYSIS,
            {
                "userId": request.user_id,
                "resumeContent": request.resume_content,
                "analysisType": "career_transition",
            },
            TaskPriority.HIGH,
        )
        current_field = context.get("currentField") or "current"
        target_field = context.get("targetField") or "target field"
        retrieval = await self._run(
            TaskType.RAG_QUERY,
            {
                "userId": request.user_id,
                "query": f"career transition skills from {current_field} to {target_field}",
                "topK": 5,
            },
            TaskPriority.MEDIUM,
        )
        generation = await self._run(
            TaskType.CONTENT_GENERATION,
            {
                "userId": request.user_id,
                "contentType": "career_transition_plan",
                "resumeAnalysis": _data(analysis),
                "retrievedContext": _data(retrieval),
                "targetField": context.get("targetField"),
            },
            TaskPriority.MEDIUM,
        )
        return _combine(
            [analysis, retrieval, generation],
            {
                "analysis": _data(analysis),
                "retrievedContext": _data(retrieval),
                "suggestions": _data(generation),
                "finalOutput": _data(generation),
            },
        )

    async def _competitive_analysis(self, request: ComplexTaskRequest) -> ComplexTaskResult:
        resume, jd = await asyncio.gather(
            self._run(
                TaskType.RESUME_ANALYSIS,
                {
                    "userId": request.user_id,
                    "resumeContent": request.resume_content,
                    "analysisType": "skill_extraction",
                },
                TaskPriority.HIGH,
            ),
            self._run(
                TaskType.JD_ANALYSIS,
                {
                    "userId": request.user_id,
                    "jobDescription": request.job_description,
                    "analysisType": "requirement_extraction",
                },
                TaskPriority.HIGH,
            ),
        )
        generation = await self._run(
            TaskType.CONTENT_GENERATION,
            {
                "userId": request.user_id,
                "contentType": "competitive_analysis",
                "resumeAnalysis": _data(resume),
                "jdAnalysis": _data(jd),
            },
            TaskPriority.MEDIUM,
        )
        validation = await self._run(
            TaskType.VALIDATION,
            {"userId": request.user_id, "content": _data(generation), "type": "competitive_analysis"},
            TaskPriority.LOW,
        )
        return _combine(
            [resume, jd, generation, validation],
            {
                "analysis": {"resume": _data(resume), "jd": _data(jd)},
                "suggestions": _data(generation),
                "validation": _data(validation),
                "finalOutput": _data(generation),
            },
        )
