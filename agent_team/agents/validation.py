"""Validation worker: LLM quality review and local rule-based checks."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

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

VALIDATION_WORKER_ID = "validation-worker-001"

MAX_LENGTH_PENALTY = 10
MIN_LENGTH_PENALTY = 20
MISSING_KEYWORD_PENALTY = 5

CAPABILITIES = [
    AgentCapability(
        name="quality_check",
        description="Validate quality of generated content",
        input_schema={
            "type": "object",
            "properties": {"content": {"type": "string"}, "criteria": {"type": "array"}},
        },
    ),
    AgentCapability(
        name="scoring",
        description="Score content against benchmarks",
        input_schema={
            "type": "object",
            "properties": {"content": {"type": "string"}, "rubric": {"type": "object"}},
        },
    ),
    AgentCapability(
        name="consistency_check",
        description="Check consistency across multiple pieces of content",
        input_schema={"type": "object", "properties": {"contents": {"type": "array"}}},
    ),
    AgentCapability(
        name="fact_verification",
        description="Verify factual claims in content",
        input_schema={
            "type": "object",
            "properties": {"content": {"type": "string"}, "claims": {"type": "array"}},
        },
    ),
]

DEFAULT_CRITERIA = {
    "resume": [
        "Clear and professional formatting",
        "Quantifiable achievements",
        "Relevant skills highlighted",
        "No spelling or grammar errors",
        "Consistent tense and voice",
        "Appropriate length (1-2 pages)",
    ],
    "cover_letter": [
        "Professional greeting and closing",
        "Clear introduction of purpose",
        "Relevant experience highlighted",
        "Specific company and role references",
        "Call to action included",
        "Appropriate length (3-4 paragraphs)",
    ],
    "default": [
        "Clear and coherent content",
        "No spelling or grammar errors",
        "Appropriate tone and style",
        "Relevant information included",
    ],
}

VALIDATION_PROMPT = """Validate the content below against the quality criteria.

Content:
{content}

Validation Criteria:
{criteria}

Answer with a JSON object shaped like:
{{
  "isValid": true,
  "overallScore": 0,
  "criteria": [{{"name": "", "passed": true, "score": 0, "feedback": ""}}],
  "issues": [{{"severity": "error | warning | info", "message": "", "location": "", "suggestion": ""}}],
  "recommendations": ["recommendation"],
  "passedChecks": 0,
  "failedChecks": 0
}}

Return JSON only."""

SCORING_PROMPT = """Score the content below against the rubric.

Content:
{content}

Rubric:
{rubric}

Answer with a JSON object shaped like:
{{
  "totalScore": 0,
  "dimensions": [{{"name": "", "score": 0, "weight": 0.0, "justification": ""}}],
  "strengths": ["strength"],
  "areasForImprovement": ["area"],
  "overallFeedback": ""
}}

Return JSON only."""


def default_criteria(content_type: Optional[str]) -> List[str]:
    return DEFAULT_CRITERIA.get(content_type or "default", DEFAULT_CRITERIA["default"])


def check_rules(content: str, rules: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deterministic length and keyword checks with fixed score penalties."""
    rules = rules or {}
    issues: List[Dict[str, Any]] = []
    score = 100

    max_length = rules.get("maxLength")
    if max_length and len(content) > max_length:
        issues.append(
            {
                "severity": "warning",
                "message": f"Content exceeds maximum length of {max_length}",
                "currentLength": len(content),
            }
        )
        score -= MAX_LENGTH_PENALTY

    min_length = rules.get("minLength")
    if min_length and len(content) < min_length:
        issues.append(
            {
                "severity": "error",
                "message": f"Content is below minimum length of {min_length}",
                "currentLength": len(content),
            }
        )
        score -= MIN_LENGTH_PENALTY

    required = rules.get("requiredKeywords") or []
    lowered = content.lower()
    missing = [keyword for keyword in required if keyword.lower() not in lowered]
    if missing:
        issues.append(
            {
                "severity": "warning",
                "message": "Missing required keywords",
                "missingKeywords": missing,
            }
        )
        score -= MISSING_KEYWORD_PENALTY * len(missing)

    return {
        "isValid": not any(issue["severity"] == "error" for issue in issues),
        "overallScore": max(0, score),
        "issues": issues,
        "metadata": {"validatedAt": utcnow().isoformat(), "contentLength": len(content)},
    }


class ValidationWorker:
    role = AgentRole.VALIDATION_WORKER

    def __init__(
        self,
        completion: CompletionService,
        store: SharedStore,
        *,
        agent_id: str = VALIDATION_WORKER_ID,
        max_concurrent_tasks: int = 4,
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
        return await self.runtime.run(task, self._validate)

    def get_status(self) -> AgentStatus:
        return self.runtime.status

    async def heartbeat(self) -> None:
        await self.runtime.heartbeat()

    async def stop_heartbeat(self) -> None:
        await self.runtime.stop_heartbeat()

    def agent_info(self) -> AgentInfo:
        return self.runtime.agent_info()

    async def score_content(self, content: str, rubric: Dict[str, float]) -> Dict[str, Any]:
        """Ask the completion service to score content against a weighted rubric."""
        response = await self._completion.complete(
            CompletionRequest(
                prompt=SCORING_PROMPT.format(content=content, rubric=json.dumps(rubric, indent=2)),
                temperature=0.3,
                max_tokens=1000,
            )
        )
        try:
            parsed = parse_json_reply(response.content)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            return {"totalScore": 0, "error": "Failed to parse scoring result"}
        return parsed

    async def _validate(self, task: Task) -> Dict[str, Any]:
        data = task.input.data
        if task.type is TaskType.VALIDATION:
            return await self._validate_content(data)
        return check_rules(_as_text(data.get("content")), data.get("rules"))

    async def _validate_content(self, data: Dict[str, Any]) -> Dict[str, Any]:
        criteria = data.get("criteria") or default_criteria(data.get("type"))
        prompt = VALIDATION_PROMPT.format(
            content=_as_text(data.get("content")),
            criteria="\n".join(f"- {criterion}" for criterion in criteria),
        )
        response = await self._completion.complete(
            CompletionRequest(
                prompt=prompt,
                temperature=0.3,
                max_tokens=1500,
                user_id=str(data.get("userId") or "system"),
            )
        )
        try:
            parsed = parse_json_reply(response.content)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            return {
                "isValid": False,
                "error": "Failed to parse validation result",
                "rawResponse": response.content,
            }
        return parsed


def _as_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)
