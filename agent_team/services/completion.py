"""Completion service the leader and the workers call with a plain prompt."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from agent_team.services.llm_pool import LLMPool


@dataclass(slots=True)
class CompletionRequest:
    prompt: str
    temperature: float = 0.7
    max_tokens: int = 1000
    user_id: str = "system"


@dataclass(slots=True)
class CompletionResponse:
    content: str
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def output_tokens(self) -> int:
        return self.usage.get("output_tokens", 0)


class CompletionService(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


class PooledCompletionService:
    """Completion service backed by a chat-completions client from the LLM pool."""

    def __init__(
        self,
        llm_pool: LLMPool,
        model_name: str,
        system_prompt: Optional[str] = None,
    ) -> None:
        self._llm_pool = llm_pool
        self.model_name = model_name
        self.system_prompt = system_prompt

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        async with self._llm_pool.acquire(self.model_name) as client:
            response = await client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                user=request.user_id,
            )

        usage: Dict[str, int] = {}
        if response.usage is not None:
            usage = {
                "input_tokens": response.usage.prompt_tokens or 0,
                "output_tokens": response.usage.completion_tokens or 0,
            }
        return CompletionResponse(content=response.choices[0].message.content or "", usage=usage)
