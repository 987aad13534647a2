"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from agent_team.agents.analysis import AnalysisWorker
from agent_team.agents.generation import GenerationWorker
from agent_team.agents.leader import LeaderAgent
from agent_team.agents.retrieval import RetrievalWorker
from agent_team.agents.validation import ValidationWorker
from agent_team.config import config
from agent_team.core.message_bus import MessageBus
from agent_team.core.store import InMemoryStore, SharedStore
from agent_team.monitoring.team_monitor import TeamMonitor
from agent_team.orchestration.complex_tasks import TeamTaskService
from agent_team.orchestration.orchestrator import TeamOrchestrator
from agent_team.services.completion import CompletionService, PooledCompletionService
from agent_team.services.llm_pool import LLMPool
from agent_team.services.retrieval import KeywordRetriever, RetrievalService

DEFAULT_MODEL = "gpt-4o-mini"


@lru_cache
def get_store() -> SharedStore:
    return InMemoryStore()


@lru_cache
def get_bus() -> MessageBus:
    settings = config.team
    return MessageBus(
        get_store(),
        max_queue_size=settings.max_queue_size,
        priority_weight=settings.priority_weight,
        poll_interval=settings.mailbox_poll_interval,
        deadlock_check_interval=settings.deadlock_check_interval,
        request_timeout=settings.request_timeout,
    )


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    if config.azure_openai:
        pool.register_azure_openai(config.azure_openai.deployment_name, config.azure_openai)
    if config.openai:
        pool.register_openai(config.openai.model, config.openai)

    return pool


def default_model_name() -> str:
    if config.openai:
        return config.openai.model
    if config.azure_openai:
        return config.azure_openai.deployment_name
    return DEFAULT_MODEL


@lru_cache
def get_completion_service() -> CompletionService:
    return PooledCompletionService(get_llm_pool(), default_model_name())


@lru_cache
def get_retriever() -> RetrievalService:
    return KeywordRetriever()


@lru_cache
def get_monitor() -> TeamMonitor:
    return TeamMonitor(get_store(), config.team)


@lru_cache
def get_orchestrator() -> TeamOrchestrator:
    store = get_store()
    completion = get_completion_service()
    settings = config.team
    leader = LeaderAgent(completion, get_bus(), store, get_monitor(), settings)
    workers = [
        AnalysisWorker(completion, store, settings=settings),
        GenerationWorker(completion, store, settings=settings),
        RetrievalWorker(get_retriever(), store, settings=settings),
        ValidationWorker(completion, store, settings=settings),
    ]
    return TeamOrchestrator(
        leader=leader,
        workers=workers,
        bus=get_bus(),
        monitor=get_monitor(),
        store=store,
        settings=settings,
    )


@lru_cache
def get_task_service() -> TeamTaskService:
    return TeamTaskService(get_orchestrator())
