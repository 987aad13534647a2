"""Core data models shared across team components.

Every record that travels through the shared store is a pydantic model so it
can be serialized with ``model_dump_json`` and read back with
``model_validate_json``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .errors import TaskStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskType(str, Enum):
    RESUME_ANALYSIS = "resume_analysis"
    JD_ANALYSIS = "jd_analysis"
    CONTENT_GENERATION = "content_generation"
    RAG_QUERY = "rag_query"
    VALIDATION = "validation"
    OPTIMIZATION = "optimization"
    COORDINATION = "coordination"

    @classmethod
    def parse(cls, value: Any) -> TaskType:
        """Map a planner string onto a task type; anything unrecognised is coordination."""
        try:
            return cls(value)
        except ValueError:
            return cls.COORDINATION


class AgentRole(str, Enum):
    LEADER = "leader"
    ANALYSIS_WORKER = "analysis_worker"
    GENERATION_WORKER = "generation_worker"
    RETRIEVAL_WORKER = "retrieval_worker"
    VALIDATION_WORKER = "validation_worker"


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class WorkerType(str, Enum):
    """Worker-type tag emitted by the planner for each subtask."""

    ANALYSIS = "analysis_worker"
    GENERATION = "generation_worker"
    RETRIEVAL = "retrieval_worker"
    VALIDATION = "validation_worker"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> WorkerType:
        if value is None or value == "":
            return cls.ANALYSIS
        try:
            worker_type = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return worker_type

    @property
    def role(self) -> Optional[AgentRole]:
        return _WORKER_ROLES.get(self)


_WORKER_ROLES = {
    WorkerType.ANALYSIS: AgentRole.ANALYSIS_WORKER,
    WorkerType.GENERATION: AgentRole.GENERATION_WORKER,
    WorkerType.RETRIEVAL: AgentRole.RETRIEVAL_WORKER,
    WorkerType.VALIDATION: AgentRole.VALIDATION_WORKER,
}


class MessageType(str, Enum):
    TASK_ASSIGNMENT = "task_assignment"
    TASK_RESULT = "task_result"
    STATUS_UPDATE = "status_update"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    COORDINATION = "coordination"
    BROADCAST = "broadcast"
    REQUEST = "request"
    RESPONSE = "response"


class MessagePriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


class TaskInput(BaseModel):
    type: TaskType
    data: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None


class TaskOutput(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class Task(BaseModel):
    """A unit of requested work with a lifecycle status."""

    id: str
    type: TaskType
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    input: TaskInput
    output: Optional[TaskOutput] = None
    parent_id: Optional[str] = None
    child_task_ids: List[str] = Field(default_factory=list)
    assigned_agent_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark(self, status: TaskStatus) -> None:
        """Move the task to ``status``; terminal states are set exactly once."""
        if self.status.is_terminal:
            raise TaskStateError(
                f"Task {self.id} is already {self.status.value}; cannot move to {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()


class TaskResult(BaseModel):
    task_id: str
    success: bool
    output: Optional[TaskOutput] = None
    execution_time_ms: int = 0
    agent_id: str
    error: Optional[str] = None
    retryable: bool = False


class TaskDecomposition(BaseModel):
    """Plan mapping a task to its subtasks, their dependencies and an execution order."""

    parent_task: Task
    sub_tasks: List[Task]
    dependencies: Dict[str, List[str]] = Field(default_factory=dict)
    execution_order: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _references_known_subtasks(self) -> TaskDecomposition:
        known = {subtask.id for subtask in self.sub_tasks}
        for task_id, depends_on in self.dependencies.items():
            unknown = [ref for ref in [task_id, *depends_on] if ref not in known]
            if unknown:
                raise ValueError(f"Dependency map references unknown subtasks: {unknown}")
        unknown = [ref for ref in self.execution_order if ref not in known]
        if unknown:
            raise ValueError(f"Execution order references unknown subtasks: {unknown}")
        return self

    def get_subtask(self, task_id: str) -> Optional[Task]:
        return next((subtask for subtask in self.sub_tasks if subtask.id == task_id), None)

    def ordered_subtasks(self) -> List[Task]:
        """Subtasks in execution order, followed by any the order does not mention."""
        by_id = {subtask.id: subtask for subtask in self.sub_tasks}
        ordered = [by_id[task_id] for task_id in dict.fromkeys(self.execution_order)]
        seen = {subtask.id for subtask in ordered}
        ordered.extend(subtask for subtask in self.sub_tasks if subtask.id not in seen)
        return ordered


class AgentCapability(BaseModel):
    name: str
    description: str
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None


class AgentInfo(BaseModel):
    """Registration record of a worker or of the leader."""

    id: str
    role: AgentRole
    status: AgentStatus = AgentStatus.IDLE
    capabilities: List[AgentCapability] = Field(default_factory=list)
    max_concurrent_tasks: int = 1
    current_task_count: int = 0
    last_heartbeat: datetime = Field(default_factory=utcnow)
    completed_tasks: int = 0
    failed_tasks: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_capacity(self) -> bool:
        return self.current_task_count < self.max_concurrent_tasks


class Heartbeat(BaseModel):
    """Self-reported liveness record persisted under ``agent:heartbeat:{id}``."""

    agent_id: str
    role: AgentRole
    status: AgentStatus
    current_task_count: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    active_task_count: Optional[int] = None
    queued_task_count: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AgentMessage(BaseModel):
    id: str
    type: MessageType
    priority: MessagePriority = MessagePriority.NORMAL
    sender_id: str
    receiver_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    ttl: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class RecoveryAction(str, Enum):
    RETRY = "retry"
    REASSIGN = "reassign"
    FALLBACK = "fallback"
    ABORT = "abort"


class ErrorRecoveryStrategy(BaseModel):
    type: RecoveryAction
    max_attempts: int = 3
    backoff_seconds: float = 0.0
    fallback_agent_id: Optional[str] = None


class CommunicationStats(BaseModel):
    messages_sent: int = 0
    messages_received: int = 0
    last_message_at: Optional[datetime] = None


class TeamMetrics(BaseModel):
    total_agents: int = 0
    active_agents: int = 0
    idle_agents: int = 0
    error_agents: int = 0
    total_tasks_processed: int = 0
    total_tasks_failed: int = 0
    queue_depth: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class AgentHealthStatus(BaseModel):
    agent_id: str
    role: AgentRole
    status: AgentStatus
    is_healthy: bool
    last_heartbeat: datetime
    current_task_count: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    error_rate: float = 0.0


class AgentLogEntry(BaseModel):
    agent_id: str
    event: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
