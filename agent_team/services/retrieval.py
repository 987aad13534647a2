"""Retrieval collaborator used by the retrieval worker."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class ScoredItem(BaseModel):
    id: str
    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetrievalService(Protocol):
    async def retrieve(self, query: str, top_k: int = 5) -> List[ScoredItem]: ...


class KeywordRetriever:
    """Lexical-overlap retriever over an in-memory document set."""

    def __init__(self, documents: Optional[Dict[str, str]] = None, min_score: float = 0.0) -> None:
        self._documents: Dict[str, str] = dict(documents or {})
        self.min_score = min_score

    def add_document(self, doc_id: str, content: str) -> None:
        self._documents[doc_id] = content

    async def retrieve(self, query: str, top_k: int = 5) -> List[ScoredItem]:
        query_tokens = _tokenize(query)
        if not query_tokens:
            return []

        ranked: List[ScoredItem] = []
        for doc_id, content in self._documents.items():
            doc_tokens = _tokenize(content)
            if not doc_tokens:
                continue
            score = len(query_tokens & doc_tokens) / len(query_tokens)
            if score <= self.min_score:
                continue
            ranked.append(ScoredItem(id=doc_id, content=content, score=round(score, 4)))

        ranked.sort(key=lambda item: (-item.score, item.id))
        return ranked[:top_k]


def _tokenize(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))
