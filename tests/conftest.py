"""Shared fakes for engine tests (no real LLM calls)."""

import asyncio

import pytest

from promptchain.config import EngineConfig
from promptchain.models import Generation, Task, TaskGraph
from promptchain.providers.base import Capability


class ScriptedCapability(Capability):
    """Answers prompts from a per-task script.

    A task is recognised by the marker `TASK:<id>` in its prompt. Each script
    entry is a list of responses used in order, the last one repeating. A
    response is a text, a Generation, or an exception instance to raise.
    """

    def __init__(self, script: dict | None = None, default: str = "ok", delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.calls: list[tuple[str, str]] = []  # (task_id, prompt)
        self.gates: dict[str, asyncio.Event] = {}
        self.active = 0
        self.max_active = 0

    def calls_for(self, task_id: str) -> list[str]:
        return [prompt for tid, prompt in self.calls if tid == task_id]

    def gate(self, task_id: str) -> asyncio.Event:
        """Block calls for `task_id` until the returned event is set."""
        event = asyncio.Event()
        self.gates[task_id] = event
        return event

    async def generate(self, prompt: str, capability_id: str, timeout: float) -> Generation:
        task_id = _task_marker(prompt)
        self.calls.append((task_id, prompt))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            gate = self.gates.get(task_id)
            if gate is not None:
                await gate.wait()
            response = self._next(task_id)
        finally:
            self.active -= 1

        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Generation):
            return response
        return Generation(text=response, capability_name="scripted")

    def _next(self, task_id: str):
        responses = self.script.get(task_id)
        if not responses:
            return self.default
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]


def _task_marker(prompt: str) -> str:
    for token in prompt.split():
        if token.startswith("TASK:"):
            return token[len("TASK:"):]
    return ""


def make_graph(edges: dict[str, list[str]], kind: str = "text", name: str = "test") -> TaskGraph:
    """Build a graph of atomic tasks from {task_id: [dependency ids]}."""
    graph = TaskGraph(name=name)
    for task_id, deps in edges.items():
        graph.add(Task(id=task_id, title=task_id, kind=kind, dependencies=list(deps), prompt=f"TASK:{task_id}"))
    return graph


@pytest.fixture
def fast_config():
    return EngineConfig(
        default_capability="scripted/model",
        concurrency=3,
        transport_attempts=3,
        backoff_base=0.0,
        max_backoff=0.0,
        timeout=5.0,
        max_attempts=3,
        human_timeout=0,
        context_ttl=3600,
    )


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
