"""Core data structures for promptchain."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Task Graph
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """One unit of generation work with declared dependencies."""

    id: str = field(default_factory=generate_id)
    title: str = ""
    description: str = ""
    kind: str = "feature"  # open tag: feature | component | schema | python | json | ...
    status: str = "pending"  # pending | in_progress | completed | failed
    dependencies: list[str] = field(default_factory=list)
    prompt_template: str | None = None  # reference into a template library
    prompt: str | None = None  # inline template text
    variables: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    requires_previous_results: bool = False
    result: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_atomic(self) -> bool:
        return not self.children

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "kind": self.kind,
            "status": self.status,
            "dependencies": list(self.dependencies),
            "prompt_template": self.prompt_template,
            "prompt": self.prompt,
            "variables": dict(self.variables),
            "parent_id": self.parent_id,
            "children": list(self.children),
            "requires_previous_results": self.requires_previous_results,
            "result": self.result[:200] if self.result else None,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Task:
        return cls(
            id=data.get("id") or generate_id(),
            title=data.get("title", ""),
            description=data.get("description", ""),
            kind=data.get("kind", data.get("type", "feature")),
            status=data.get("status", "pending"),
            dependencies=list(data.get("dependencies") or []),
            prompt_template=data.get("prompt_template"),
            prompt=data.get("prompt"),
            variables=dict(data.get("variables") or {}),
            parent_id=data.get("parent_id"),
            children=list(data.get("children") or []),
            requires_previous_results=bool(data.get("requires_previous_results", False)),
            result=data.get("result"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TaskGraph:
    """A named collection of tasks with one designated root. Owns its tasks."""

    name: str = ""
    tasks: dict[str, Task] = field(default_factory=dict)
    root_id: str | None = None
    id: str = field(default_factory=generate_id)
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def add(self, task: Task):
        self.tasks[task.id] = task
        if self.root_id is None:
            self.root_id = task.id

    def get(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    @property
    def root(self) -> Task | None:
        return self.tasks.get(self.root_id) if self.root_id else None

    def atomic_tasks(self) -> list[Task]:
        return [t for t in self.tasks.values() if t.is_atomic]

    def missing_dependencies(self) -> list[tuple[str, str]]:
        """(task_id, missing_dependency_id) pairs, in task order."""
        missing = []
        for task in self.tasks.values():
            for dep_id in task.dependencies:
                if dep_id not in self.tasks:
                    missing.append((task.id, dep_id))
        return missing

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "root_id": self.root_id,
            "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> TaskGraph:
        """Build a graph from a dict. `tasks` may be a list or an id -> task mapping."""
        raw_tasks = data.get("tasks") or []
        if isinstance(raw_tasks, dict):
            items = []
            for tid, raw in raw_tasks.items():
                items.append({"id": tid, **raw})
        else:
            items = list(raw_tasks)

        graph = cls(
            id=data.get("id") or generate_id(),
            name=data.get("name", ""),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
        )
        for raw in items:
            graph.add(Task.from_dict(raw))
        if data.get("root_id"):
            graph.root_id = data["root_id"]
        return graph


# ---------------------------------------------------------------------------
# Dependency Graph / Execution Plan
# ---------------------------------------------------------------------------


@dataclass
class DependencyNode:
    id: str
    task: Task
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    depth: int = 0  # longest path from a root


@dataclass
class DependencyGraph:
    nodes: dict[str, DependencyNode] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)  # dependency -> dependents
    roots: list[str] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParallelBatch:
    batch_number: int
    task_ids: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"batch_number": self.batch_number, "task_ids": list(self.task_ids)}


@dataclass(frozen=True)
class ExecutionPlan:
    """Immutable once produced. Recomputed only when the graph changes."""

    batches: tuple[ParallelBatch, ...]
    total_tasks: int
    max_parallelism: int
    critical_path: tuple[str, ...]

    def ordered_task_ids(self) -> list[str]:
        return [tid for batch in self.batches for tid in batch.task_ids]

    def to_dict(self) -> dict:
        return {
            "batches": [b.to_dict() for b in self.batches],
            "total_tasks": self.total_tasks,
            "max_parallelism": self.max_parallelism,
            "critical_path": list(self.critical_path),
        }


# ---------------------------------------------------------------------------
# Capability I/O
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ModelResponse:
    text: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: Any = None


@dataclass
class Generation:
    """What a capability returns for one prompt."""

    text: str
    artifact: str | None = None
    capability_name: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Job:
    chain_id: str
    task_id: str
    prompt: str
    capability_id: str
    timeout: float = 60.0
    id: str = field(default_factory=generate_id)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ResultMetadata:
    capability_name: str = ""
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    completed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "capability_name": self.capability_name,
            "duration_ms": self.duration_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "completed_at": self.completed_at,
        }


@dataclass
class Result:
    """Outcome of one task execution. Never mutated after it is written."""

    task_id: str
    status: str  # success | failure
    output: str = ""
    artifact: str | None = None
    metadata: ResultMetadata = field(default_factory=ResultMetadata)
    error: str | None = None
    warning: str | None = None
    id: str = field(default_factory=generate_id)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "status": self.status,
            "output": self.output,
            "artifact": self.artifact,
            "metadata": self.metadata.to_dict(),
            "error": self.error,
            "warning": self.warning,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Result:
        meta = data.get("metadata") or {}
        return cls(
            id=data.get("id") or generate_id(),
            task_id=data["task_id"],
            status=data["status"],
            output=data.get("output", ""),
            artifact=data.get("artifact"),
            metadata=ResultMetadata(
                capability_name=meta.get("capability_name", ""),
                duration_ms=int(meta.get("duration_ms", 0)),
                input_tokens=int(meta.get("input_tokens", 0)),
                output_tokens=int(meta.get("output_tokens", 0)),
                completed_at=float(meta.get("completed_at", 0.0)),
            ),
            error=data.get("error"),
            warning=data.get("warning"),
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class Finding:
    category: str  # syntax | type | import | export | lint | schema
    message: str
    line: int | None = None
    column: int | None = None
    code: str | None = None
    severity: str = "error"  # error | critical

    def label(self) -> str:
        return f"[{self.category}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "message": self.message,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "severity": self.severity,
        }


@dataclass
class Advisory:
    category: str  # style | performance | best-practice
    message: str
    line: int | None = None
    suggestion: str | None = None

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "message": self.message,
            "line": self.line,
            "suggestion": self.suggestion,
        }


@dataclass
class ValidationOutcome:
    passed: bool
    findings: list[Finding] = field(default_factory=list)
    warnings: list[Advisory] = field(default_factory=list)
    kind: str = "text"
    validated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "findings": [f.to_dict() for f in self.findings],
            "warnings": [w.to_dict() for w in self.warnings],
            "kind": self.kind,
            "validated_at": self.validated_at,
        }


# ---------------------------------------------------------------------------
# Self-correction
# ---------------------------------------------------------------------------


@dataclass
class CorrectionAttempt:
    attempt_number: int
    prompt: str
    output: str
    validation: ValidationOutcome | None  # None when the capability call itself failed
    successful: bool
    artifact: str | None = None
    error_type: str | None = None
    correction_applied: str | None = None
    duration_ms: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def findings(self) -> list[Finding]:
        return self.validation.findings if self.validation else []

    def to_dict(self) -> dict:
        return {
            "attempt_number": self.attempt_number,
            "prompt": self.prompt,
            "output": self.output,
            "artifact": self.artifact,
            "validation": self.validation.to_dict() if self.validation else None,
            "successful": self.successful,
            "error_type": self.error_type,
            "correction_applied": self.correction_applied,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class CorrectionHistory:
    task_id: str
    chain_id: str = ""
    attempts: list[CorrectionAttempt] = field(default_factory=list)
    disposition: str = "failed"  # success | failed | escalated | cancelled

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def successful_attempt(self) -> int | None:
        for attempt in self.attempts:
            if attempt.successful:
                return attempt.attempt_number
        return None

    @property
    def last_attempt(self) -> CorrectionAttempt | None:
        return self.attempts[-1] if self.attempts else None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "chain_id": self.chain_id,
            "attempts": [a.to_dict() for a in self.attempts],
            "disposition": self.disposition,
            "total_attempts": self.total_attempts,
            "successful_attempt": self.successful_attempt,
        }


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


FEEDBACK_KINDS = ("clarification", "manual_artifact", "skip", "retry")


@dataclass
class Feedback:
    kind: str  # clarification | manual_artifact | skip | retry
    content: str = ""
    received_at: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in FEEDBACK_KINDS:
            raise ValueError(f"Unknown feedback kind: {self.kind}. Use one of {', '.join(FEEDBACK_KINDS)}.")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "content": self.content,
            "received_at": self.received_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class ClarificationRequest:
    chain_id: str
    task_id: str
    question: str
    attempted_artifact: str | None = None
    findings: list[str] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "task_id": self.task_id,
            "question": self.question,
            "attempted_artifact": self.attempted_artifact,
            "findings": list(self.findings),
            "attempts": self.attempts,
        }


@dataclass
class PausedTask:
    chain_id: str
    task_id: str
    reason: str
    history: CorrectionHistory
    paused_at: float = field(default_factory=time.time)
    awaiting_input: bool = True
    resolved: bool = False
    feedback: Feedback | None = None
    resolved_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "task_id": self.task_id,
            "reason": self.reason,
            "paused_at": self.paused_at,
            "awaiting_input": self.awaiting_input,
            "resolved": self.resolved,
            "feedback": self.feedback.to_dict() if self.feedback else None,
            "resolved_at": self.resolved_at,
            "total_attempts": self.history.total_attempts,
        }


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


@dataclass
class Chain:
    """One execution of a full task graph. Mutated only by the orchestrator."""

    graph: TaskGraph
    name: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = "pending"  # pending | running | completed | failed
    progress: int = 0
    started_at: float | None = None
    ended_at: float | None = None
    results: dict[str, Result] = field(default_factory=dict)
    error: str | None = None
    error_category: str | None = None  # planning | transport | escalation_timeout | store | cancelled
    paused: bool = False
    current_task_id: str | None = None
    correction_histories: dict[str, CorrectionHistory] = field(default_factory=dict)
    plan: ExecutionPlan | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def completed_atomic_count(self) -> int:
        return sum(
            1
            for t in self.graph.atomic_tasks()
            if t.id in self.results and self.results[t.id].ok
        )

    def to_dict(self) -> dict:
        atomic = self.graph.atomic_tasks()
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "paused": self.paused,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "error_category": self.error_category,
            "current_task_id": self.current_task_id,
            "completed_tasks": self.completed_atomic_count(),
            "total_tasks": len(atomic),
            "tasks": {tid: t.to_dict() for tid, t in self.graph.tasks.items()},
            "results": {tid: r.to_dict() for tid, r in self.results.items()},
            "correction_histories": {
                tid: h.to_dict() for tid, h in self.correction_histories.items()
            },
            "plan": self.plan.to_dict() if self.plan else None,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    chain_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "chain_id": self.chain_id, "ts": self.ts, "data": self.data}
