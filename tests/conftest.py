"""Shared fixtures and fakes for the team tests."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Union

import pytest

from agent_team.config import TeamSettings
from agent_team.core.store import InMemoryStore
from agent_team.services.completion import CompletionRequest, CompletionResponse

Reply = Union[str, Exception, Callable[[CompletionRequest], str]]


class ScriptedCompletion:
    """Completion service answering from rules matched against the prompt."""

    def __init__(self, default: Reply = "{}") -> None:
        self.default = default
        self.rules: List[tuple] = []
        self.requests: List[CompletionRequest] = []

    def when(self, needle: str, reply: Reply) -> ScriptedCompletion:
        self.rules.append((needle, reply))
        return self

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        reply = next((reply for needle, reply in self.rules if needle in request.prompt), self.default)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        return CompletionResponse(content=reply, usage={"input_tokens": 10, "output_tokens": 42})


async def _wait_until(predicate: Callable[[], Union[bool, Awaitable[bool]]], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def settings() -> TeamSettings:
    return TeamSettings(
        mailbox_poll_interval=0.005,
        result_timeout=1.0,
        result_poll_interval=0.01,
        deadlock_check_interval=60.0,
    )


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    return _wait_until
