"""Generation worker: template-driven content, optimization suggestions and free-form text."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Callable, Dict, Optional

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
    utcnow,
)
from agent_team.core.store import SharedStore
from agent_team.services.completion import CompletionRequest, CompletionService

GENERATION_WORKER_ID = "generation-worker-001"

CAPABILITIES = [
    AgentCapability(
        name="content_generation",
        description="Generate optimized content for resumes and profiles",
        input_schema={
            "type": "object",
            "properties": {"contentType": {"type": "string"}, "context": {"type": "object"}},
        },
    ),
    AgentCapability(
        name="optimization_suggestions",
        description="Generate suggestions for improvement",
        input_schema={
            "type": "object",
            "properties": {"content": {"type": "string"}, "targetType": {"type": "string"}},
        },
    ),
    AgentCapability(
        name="interview_questions",
        description="Generate interview questions based on context",
        input_schema={
            "type": "object",
            "properties": {
                "resumeContent": {"type": "string"},
                "jobDescription": {"type": "string"},
            },
        },
    ),
    AgentCapability(
        name="cover_letter",
        description="Generate cover letter content",
        input_schema={
            "type": "object",
            "properties": {
                "resumeContent": {"type": "string"},
                "jobDescription": {"type": "string"},
            },
        },
    ),
]


class ContentType(str, Enum):
    RESUME_SUMMARY = "resume_summary"
    EXPERIENCE_BULLET = "experience_bullet"
    COVER_LETTER = "cover_letter"
    INTERVIEW_ANSWERS = "interview_answers"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ContentType:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


def _target_job(job_description: Optional[str]) -> str:
    return f"Target Job Description:\n{job_description}" if job_description else ""


def build_summary_prompt(data: Dict[str, Any]) -> str:
    return f"""Write a compelling professional summary for a resume.

Resume Content:
{data.get("resumeContent", "")}

{_target_job(data.get("jobDescription"))}

Requirements:
- 3-5 sentences
- Highlight key achievements and skills
- Tailor it to the target role
- Use action verbs and quantify achievements where possible

Provide the summary only."""


def build_experience_bullet_prompt(data: Dict[str, Any]) -> str:
    return f"""Turn the following work experience into impactful resume bullet points.

Context:
{json.dumps(data.get("context"), indent=2, default=str)}

Requirements:
- Start with strong action verbs
- Include quantifiable results
- Follow the STAR format (Situation, Task, Action, Result)
- 3-5 bullet points

Provide bullet points only, one per line, starting with •"""


def build_cover_letter_prompt(data: Dict[str, Any]) -> str:
    return f"""Write a professional cover letter from the resume and job description.

Resume:
{data.get("resumeContent", "")}

Job Description:
{data.get("jobDescription", "")}

Requirements:
- Professional tone, 3-4 paragraphs
- Highlight relevant experience
- Show enthusiasm for the role
- Close with a call to action

Provide the cover letter only."""


def build_interview_answers_prompt(data: Dict[str, Any]) -> str:
    return f"""Suggest answers for likely interview questions.

Context:
{json.dumps(data.get("context"), indent=2, default=str)}

For each question provide:
1. The question
2. A structured answer in STAR format
3. Key points to emphasize
4. Common pitfalls to avoid"""


def build_generic_generation_prompt(data: Dict[str, Any]) -> str:
    return f"""Generate professional content based on the following:

{json.dumps(data, indent=2, default=str)}

Provide high-quality, well-structured content."""


PROMPT_BUILDERS: Dict[ContentType, Callable[[Dict[str, Any]], str]] = {
    ContentType.RESUME_SUMMARY: build_summary_prompt,
    ContentType.EXPERIENCE_BULLET: build_experience_bullet_prompt,
    ContentType.COVER_LETTER: build_cover_letter_prompt,
    ContentType.INTERVIEW_ANSWERS: build_interview_answers_prompt,
    ContentType.UNKNOWN: build_generic_generation_prompt,
}

OPTIMIZATION_PROMPT = """You are a professional resume optimization expert. Analyze the content below and give specific, actionable optimization suggestions.

Content to optimize:
{content}

Target: {target}
{job}

Answer with a JSON object shaped like:
{{
  "overallScore": 0,
  "suggestions": [
    {{"section": "", "issue": "", "suggestion": "", "priority": "high | medium | low", "example": ""}}
  ],
  "keywords": {{"present": ["keyword"], "missing": ["keyword"]}},
  "improvedContent": "improved version of the content"
}}

Return JSON only."""


class GenerationWorker:
    """Renders a prompt template per content type and returns the generated text."""

    role = AgentRole.GENERATION_WORKER

    def __init__(
        self,
        completion: CompletionService,
        store: SharedStore,
        *,
        agent_id: str = GENERATION_WORKER_ID,
        max_concurrent_tasks: int = 2,
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
        return await self.runtime.run(task, self._generate)

    def get_status(self) -> AgentStatus:
        return self.runtime.status

    async def heartbeat(self) -> None:
        await self.runtime.heartbeat()

    async def stop_heartbeat(self) -> None:
        await self.runtime.stop_heartbeat()

    def agent_info(self) -> AgentInfo:
        return self.runtime.agent_info()

    async def _generate(self, task: Task) -> Dict[str, Any]:
        data = task.input.data
        if task.type is TaskType.CONTENT_GENERATION:
            return await self._generate_content(data)
        if task.type is TaskType.OPTIMIZATION:
            return await self._generate_optimization(data)
        return await self._generate_generic(data)

    async def _generate_content(self, data: Dict[str, Any]) -> Dict[str, Any]:
        content_type = ContentType.parse(data.get("contentType"))
        prompt = PROMPT_BUILDERS[content_type](data)
        response = await self._completion.complete(
            CompletionRequest(prompt=prompt, temperature=0.7, max_tokens=1500, user_id=_user(data))
        )
        return {
            "contentType": data.get("contentType"),
            "content": response.content,
            "metadata": {
                "generatedAt": utcnow().isoformat(),
                "tokensUsed": response.output_tokens,
            },
        }

    async def _generate_optimization(self, data: Dict[str, Any]) -> Dict[str, Any]:
        job_description = data.get("jobDescription")
        prompt = OPTIMIZATION_PROMPT.format(
            content=data.get("content") or data.get("resumeContent", ""),
            target=data.get("targetType") or "General improvement",
            job=_target_job(job_description),
        )
        response = await self._completion.complete(
            CompletionRequest(prompt=prompt, temperature=0.5, max_tokens=2000, user_id=_user(data))
        )
        try:
            parsed = parse_json_reply(response.content)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            return {
                "suggestions": response.content,
                "parseError": "Failed to parse optimization result",
            }
        return parsed

    async def _generate_generic(self, data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._completion.complete(
            CompletionRequest(
                prompt=build_generic_generation_prompt(data),
                temperature=0.7,
                max_tokens=1500,
                user_id=_user(data),
            )
        )
        return {
            "content": response.content,
            "metadata": {"generatedAt": utcnow().isoformat()},
        }


def _user(data: Dict[str, Any]) -> str:
    return str(data.get("userId") or "system")
