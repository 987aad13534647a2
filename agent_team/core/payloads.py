"""Versioned payload schemas for messages the team publishes on the bus."""
from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel

from .models import Task, TaskResult

SCHEMA_VERSION = 1


class TaskAssignmentPayload(BaseModel):
    schema_version: Literal[1] = SCHEMA_VERSION
    task: Task

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class TaskResultPayload(BaseModel):
    schema_version: Literal[1] = SCHEMA_VERSION
    result: TaskResult

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
