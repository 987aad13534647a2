"""Analysis worker: structured extraction from resumes, job descriptions and free data."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from agent_team.agents.replies import parse_json_reply
from agent_team.agents.worker import WorkerRuntime
from agent_team.config import TeamSettings
from agent_team.core.models import (
    AgentCapability,
    AgentInfo,
    AgentRole,
    AgentStatus,
    Task,
    TaskResult,
    TaskType,
)
from agent_team.core.store import SharedStore
from agent_team.services.completion import CompletionRequest, CompletionService

ANALYSIS_WORKER_ID = "analysis-worker-001"

CAPABILITIES = [
    AgentCapability(
        name="resume_analysis",
        description="Analyze resume content and extract key information",
        input_schema={"type": "object", "properties": {"resumeContent": {"type": "string"}}},
    ),
    AgentCapability(
        name="jd_analysis",
        description="Analyze a job description and extract requirements",
        input_schema={"type": "object", "properties": {"jobDescription": {"type": "string"}}},
    ),
    AgentCapability(
        name="skill_extraction",
        description="Extract and categorize skills from text",
        input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
    ),
    AgentCapability(
        name="keyword_matching",
        description="Match keywords between a resume and a job description",
        input_schema={
            "type": "object",
            "properties": {
                "resumeContent": {"type": "string"},
                "jobDescription": {"type": "string"},
            },
        },
    ),
]

RESUME_PROMPT = """Analyze the resume below and extract its key information.

Resume Content:
{resume}

Answer with a JSON object shaped like:
{{
  "personalInfo": {{"name": "", "email": "", "phone": "", "location": ""}},
  "summary": "short professional summary",
  "skills": ["skill"],
  "experience": [
    {{"company": "", "position": "", "duration": "", "highlights": ["achievement"]}}
  ],
  "education": [
    {{"institution": "", "degree": "", "field": "", "year": ""}}
  ],
  "strengths": ["strength"],
  "areasForImprovement": ["area"],
  "overallScore": 0
}}

Return JSON only."""

JD_PROMPT = """Analyze the job description below and extract its requirements.

Job Description:
{job_description}

Answer with a JSON object shaped like:
{{
  "title": "",
  "company": "",
  "location": "",
  "employmentType": "full-time | part-time | contract",
  "requiredSkills": ["skill"],
  "preferredSkills": ["skill"],
  "responsibilities": ["responsibility"],
  "qualifications": ["qualification"],
  "experience": {{"min": 0, "max": 0, "level": "junior | mid | senior"}},
  "salary": {{"min": 0, "max": 0, "currency": "USD"}},
  "keywords": ["keyword"],
  "industry": ""
}}

Return JSON only."""

GENERIC_PROMPT = """Analyze the following data and extract the relevant information.

Data:
{data}

Describe key findings, patterns and insights. Return JSON."""


class AnalysisWorker:
    """Calls the completion service with extraction prompts and parses the JSON reply."""

    role = AgentRole.ANALYSIS_WORKER

    def __init__(
        self,
        completion: CompletionService,
        store: SharedStore,
        *,
        agent_id: str = ANALYSIS_WORKER_ID,
        max_concurrent_tasks: int = 3,
        settings: Optional[TeamSettings] = None,
    ) -> None:
        self._completion = completion
        self.runtime = WorkerRuntime(
            agent_id=agent_id,
            role=self.role,
            capabilities=CAPABILITIES,
            max_concurrent_tasks=max_concurrent_tasks,
            store=store,
            settings=settings,
        )

    @property
    def agent_id(self) -> str:
        return self.runtime.agent_id

    async def initialize(self) -> None:
        await self.runtime.initialize()

    async def execute(self, task: Task) -> TaskResult:
        return await self.runtime.run(task, self._analyze)

    def get_status(self) -> AgentStatus:
        return self.runtime.status

    async def heartbeat(self) -> None:
        await self.runtime.heartbeat()

    async def stop_heartbeat(self) -> None:
        await self.runtime.stop_heartbeat()

    def agent_info(self) -> AgentInfo:
        return self.runtime.agent_info()

    async def _analyze(self, task: Task) -> Dict[str, Any]:
        data = task.input.data
        if task.type is TaskType.RESUME_ANALYSIS:
            return await self._analyze_resume(data)
        if task.type is TaskType.JD_ANALYSIS:
            return await self._analyze_job_description(data)
        return await self._analyze_generic(data)

    async def _analyze_resume(self, data: Dict[str, Any]) -> Dict[str, Any]:
        resume = data.get("resumeContent")
        if not resume:
            raise ValueError("Resume content is required")
        content = await self._complete(RESUME_PROMPT.format(resume=resume), data, max_tokens=1500)
        return _structured_or_raw(content)

    async def _analyze_job_description(self, data: Dict[str, Any]) -> Dict[str, Any]:
        job_description = data.get("jobDescription")
        if not job_description:
            raise ValueError("Job description is required")
        content = await self._complete(
            JD_PROMPT.format(job_description=job_description), data, max_tokens=1200
        )
        return _structured_or_raw(content)

    async def _analyze_generic(self, data: Dict[str, Any]) -> Dict[str, Any]:
        prompt = GENERIC_PROMPT.format(data=json.dumps(data, indent=2, default=str))
        content = await self._complete(prompt, data, max_tokens=1000)
        try:
            parsed = parse_json_reply(content)
        except ValueError:
            return {"analysis": content}
        return parsed if isinstance(parsed, dict) else {"analysis": parsed}

    async def _complete(self, prompt: str, data: Dict[str, Any], *, max_tokens: int) -> str:
        response = await self._completion.complete(
            CompletionRequest(
                prompt=prompt,
                temperature=0.3,
                max_tokens=max_tokens,
                user_id=str(data.get("userId") or "system"),
            )
        )
        return response.content


def _structured_or_raw(content: str) -> Dict[str, Any]:
    try:
        parsed = parse_json_reply(content)
    except ValueError:
        return {"rawAnalysis": content, "parseError": "Failed to parse analysis result"}
    if not isinstance(parsed, dict):
        return {"rawAnalysis": content, "parseError": "Analysis result is not a JSON object"}
    return parsed
