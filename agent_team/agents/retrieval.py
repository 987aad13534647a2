"""Retrieval worker: knowledge-base lookups through the retrieval collaborator."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

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
from agent_team.services.retrieval import RetrievalService

logger = logging.getLogger(__name__)

RETRIEVAL_WORKER_ID = "retrieval-worker-001"

CAPABILITIES = [
    AgentCapability(
        name="rag_query",
        description="Query knowledge base using RAG",
        input_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}, "topK": {"type": "number"}},
        },
    ),
    AgentCapability(
        name="document_search",
        description="Search for relevant documents",
        input_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}, "filters": {"type": "object"}},
        },
    ),
    AgentCapability(
        name="context_retrieval",
        description="Retrieve context for a given topic",
        input_schema={
            "type": "object",
            "properties": {"topic": {"type": "string"}, "depth": {"type": "number"}},
        },
    ),
]


class RetrievalWorker:
    role = AgentRole.RETRIEVAL_WORKER

    def __init__(
        self,
        retriever: RetrievalService,
        store: SharedStore,
        *,
        agent_id: str = RETRIEVAL_WORKER_ID,
        max_concurrent_tasks: int = 5,
        settings: Optional[TeamSettings] = None,
    ) -> None:
        self._retriever = retriever
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
        return await self.runtime.run(task, self._retrieve)

    def get_status(self) -> AgentStatus:
        return self.runtime.status

    async def heartbeat(self) -> None:
        await self.runtime.heartbeat()

    async def stop_heartbeat(self) -> None:
        await self.runtime.stop_heartbeat()

    def agent_info(self) -> AgentInfo:
        return self.runtime.agent_info()

    async def _retrieve(self, task: Task) -> Dict[str, Any]:
        if task.type is TaskType.RAG_QUERY:
            return await self._rag_query(task.input.data)
        return self._generic_retrieval(task.input.data)

    async def _rag_query(self, data: Dict[str, Any]) -> Dict[str, Any]:
        query = data.get("query")
        if not query:
            raise ValueError("Query is required for RAG retrieval")
        top_k = int(data.get("topK") or 5)

        try:
            items = await self._retriever.retrieve(query, top_k)
        except Exception as exc:  # noqa: BLE001
            logger.warning("RAG query failed, returning empty results: %s", exc)
            return {
                "query": query,
                "results": [],
                "error": str(exc) or type(exc).__name__,
                "metadata": {"totalResults": 0, "retrievedAt": utcnow().isoformat()},
            }

        results = [item.model_dump() for item in items or []]
        return {
            "query": query,
            "results": results,
            "metadata": {"totalResults": len(results), "retrievedAt": utcnow().isoformat()},
        }

    @staticmethod
    def _generic_retrieval(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "query": data.get("query"),
            "type": data.get("type"),
            "results": [],
            "metadata": {"retrievedAt": utcnow().isoformat()},
        }
