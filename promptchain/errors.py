"""Shared error types for the promptchain package."""

from __future__ import annotations


class PromptChainError(Exception):
    """Base exception for promptchain errors.

    Use this for caller-facing errors that should have actionable messages.
    """

    category = "internal"


# ---------------------------------------------------------------------------
# Planning (fatal, raised before any dispatch)
# ---------------------------------------------------------------------------


class PlanningError(PromptChainError):
    category = "planning"


class CycleError(PlanningError):
    def __init__(self, cycle: list[str] | None = None):
        self.cycle = cycle or []
        detail = " -> ".join(self.cycle) if self.cycle else "unknown"
        super().__init__(f"Dependency graph contains a cycle: {detail}")


class MissingDependencyError(PlanningError):
    def __init__(self, missing: list[tuple[str, str]]):
        self.missing = missing
        refs = ", ".join(f"{task_id} -> {dep_id}" for task_id, dep_id in missing)
        super().__init__(f"Tasks reference non-existent dependencies: {refs}")


class UnreachableBatchError(PlanningError):
    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(
            f"Cannot progress execution plan: no schedulable task among {', '.join(remaining)}"
        )


# ---------------------------------------------------------------------------
# Transport (recovered inside the execution queue)
# ---------------------------------------------------------------------------


class TransportError(PromptChainError):
    """The capability was unreachable or failed mid-call."""

    category = "transport"


class MalformedResponseError(TransportError):
    """The capability answered, but not with something usable."""


class QueueClosedError(PromptChainError):
    pass


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(PromptChainError):
    category = "store"


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class EscalationTimeout(PromptChainError):
    category = "escalation_timeout"

    def __init__(self, chain_id: str, task_id: str, timeout: float):
        self.chain_id = chain_id
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Timeout waiting for human input on task {task_id} after {timeout}s")


class EscalationCancelled(PromptChainError):
    category = "cancelled"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class ChainNotFoundError(PromptChainError, KeyError):
    def __init__(self, chain_id: str):
        self.chain_id = chain_id
        super().__init__(f"Chain {chain_id} not found")

    def __str__(self) -> str:
        return f"Chain {self.chain_id} not found"
