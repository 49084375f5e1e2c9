"""Chain orchestrator — drives a planned task graph to completion.

State machine per chain: pending -> running -> completed | failed.

The driver walks the execution plan in batch order and dispatches every task
whose dependencies all have a success Result. A composite task also waits for
its children. Each dispatched task runs as its own asyncio task:
generate/validate/refine through the self-correcting loop, then escalate to a
human if the loop exhausts. A task waiting on a human only holds back its own
dependents.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace

from promptchain.config import CAPABILITY_BACKEND, EngineConfig
from promptchain.context_store import ContextStore, MemoryContextStore, accumulate_variables
from promptchain.correction import SelfCorrectingLoop
from promptchain.errors import (
    EscalationCancelled,
    EscalationTimeout,
    PlanningError,
    QueueClosedError,
    StoreError,
)
from promptchain.escalation import HumanInTheLoop
from promptchain.events import (
    CHAIN_PROGRESS,
    CHAIN_STATE,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_STARTED,
    EventBus,
)
from promptchain.execution_queue import ExecutionQueue
from promptchain.models import (
    Chain,
    DependencyGraph,
    Feedback,
    Job,
    Result,
    ResultMetadata,
    Task,
    TaskGraph,
)
from promptchain.prompts import TemplateLibrary, render_task_prompt
from promptchain.providers.base import Capability
from promptchain.refinement import RefinementEngine
from promptchain.registry import ChainRegistry
from promptchain.resolver import DependencyResolver
from promptchain.validation import ValidatorRegistry

logger = logging.getLogger(__name__)

SKIP_WARNING = "skipped by reviewer"


class TaskFailure(Exception):
    """Internal: a task ended without a success Result."""

    def __init__(self, category: str, detail: str, result: Result | None = None):
        self.category = category
        self.detail = detail
        self.result = result
        super().__init__(detail)


class ChainOrchestrator:
    """Owns chains, plans them, and runs their tasks through the engine components."""

    def __init__(
        self,
        capability: Capability | None = None,
        *,
        config: EngineConfig | None = None,
        store: ContextStore | None = None,
        event_bus: EventBus | None = None,
        validators: ValidatorRegistry | None = None,
        refinement: RefinementEngine | None = None,
        templates: TemplateLibrary | None = None,
        registry: ChainRegistry | None = None,
        resolver: DependencyResolver | None = None,
        escalation: HumanInTheLoop | None = None,
    ):
        self.config = config or EngineConfig()
        if capability is None:
            from promptchain.providers.factory import create_capability
            capability = create_capability(CAPABILITY_BACKEND)

        self.resolver = resolver or DependencyResolver()
        self.store = store or MemoryContextStore(ttl=self.config.context_ttl)
        self.event_bus = event_bus or EventBus()
        self.validators = validators or ValidatorRegistry.default()
        self.refinement = refinement or RefinementEngine()
        self.templates = templates
        self.registry = registry or ChainRegistry()
        self.queue = ExecutionQueue(
            capability,
            concurrency=self.config.concurrency,
            max_attempts=self.config.transport_attempts,
            backoff_base=self.config.backoff_base,
            max_backoff=self.config.max_backoff,
        )
        self.correction = SelfCorrectingLoop(
            self.queue, self.validators, self.refinement, max_attempts=self.config.max_attempts
        )
        self.escalation = escalation or HumanInTheLoop(self.event_bus, timeout=self.config.human_timeout)

        self._dep_graphs: dict[str, DependencyGraph] = {}
        self._active: dict[str, dict[str, asyncio.Task]] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._cancelled: set[str] = set()

    # ------------------------------------------------------------------
    # Caller interface
    # ------------------------------------------------------------------

    def submit(self, graph: TaskGraph, name: str | None = None) -> str:
        """Register and plan a graph. Planning errors leave the chain failed, never dispatched."""
        chain = self.registry.add(Chain(graph=graph, name=name or graph.name))
        try:
            dep_graph, plan = self.resolver.plan(graph)
        except PlanningError as e:
            chain.status = "failed"
            chain.error = f"Planning failed: {e}"
            chain.error_category = e.category
            chain.ended_at = time.time()
            logger.error(f"Chain {chain.id} rejected: {chain.error}")
            self._publish(chain)
            return chain.id

        chain.plan = plan
        self._dep_graphs[chain.id] = dep_graph
        logger.info(f"Chain {chain.id} submitted: {plan.total_tasks} tasks, {len(plan.batches)} batches")
        self._publish(chain)
        return chain.id

    async def start(self, chain_id: str) -> dict:
        """Move a pending chain to running and launch its driver in the background."""
        chain = self.registry.get(chain_id)
        if chain.status != "pending":
            logger.info(f"Chain {chain_id} is {chain.status}, not starting")
            return self.get_state(chain_id)

        chain.status = "running"
        chain.started_at = time.time()
        self._active[chain_id] = {}
        self._wakeups[chain_id] = asyncio.Event()
        logger.info(f"Chain {chain_id} started")
        self._publish(chain)

        driver = asyncio.create_task(self._drive(chain))
        self.registry.set_driver(chain_id, driver)
        return self.get_state(chain_id)

    async def run(self, chain_id: str, timeout: float | None = None) -> dict:
        """Start a chain and wait for it to reach a terminal state."""
        await self.start(chain_id)
        return await self.wait(chain_id, timeout=timeout)

    async def wait(self, chain_id: str, timeout: float | None = None) -> dict:
        self.registry.get(chain_id)
        driver = self.registry.get_driver(chain_id)
        if driver is not None:
            await asyncio.wait_for(asyncio.shield(driver), timeout=timeout)
        return self.get_state(chain_id)

    def get_chain(self, chain_id: str) -> Chain:
        return self.registry.get(chain_id)

    def get_state(self, chain_id: str) -> dict:
        chain = self.registry.get(chain_id)
        state = chain.to_dict()
        state["in_flight"] = sorted(self.registry.in_flight(chain_id))
        state["paused_tasks"] = [p.to_dict() for p in self.escalation.get_paused_tasks(chain_id)]
        return state

    def list_chains(self) -> list[dict]:
        return [
            {
                "id": c.id,
                "name": c.name,
                "status": c.status,
                "progress": c.progress,
                "paused": c.paused,
                "created_at": c.created_at,
            }
            for c in self.registry.list()
        ]

    def get_plan(self, chain_id: str) -> dict | None:
        chain = self.registry.get(chain_id)
        return chain.plan.to_dict() if chain.plan else None

    def visualize(self, chain_id: str) -> str:
        self.registry.get(chain_id)
        dep_graph = self._dep_graphs.get(chain_id)
        return self.resolver.visualize(dep_graph) if dep_graph else ""

    def pause(self, chain_id: str) -> bool:
        """Stop dispatching new tasks. In-flight tasks keep running."""
        chain = self.registry.get(chain_id)
        if chain.status != "running" or chain.paused:
            return False
        chain.paused = True
        logger.info(f"Chain {chain_id} paused")
        self._publish(chain)
        return True

    def resume(self, chain_id: str) -> bool:
        chain = self.registry.get(chain_id)
        if not chain.paused:
            return False
        chain.paused = False
        logger.info(f"Chain {chain_id} resumed")
        self._publish(chain)
        self._wake(chain_id)
        return True

    def cancel(self, chain_id: str) -> bool:
        """Stop dispatching, cancel pending escalations, let in-flight jobs finish."""
        chain = self.registry.get(chain_id)
        if chain.is_terminal or chain_id in self._cancelled:
            return False

        self._cancelled.add(chain_id)
        chain.paused = False
        if chain.error is None:
            chain.error = "Chain cancelled by caller"
            chain.error_category = "cancelled"
        logger.info(f"Chain {chain_id} cancelled")

        if chain.status == "pending":
            self._finish(chain)
            return True

        self.escalation.cancel_chain(chain_id)
        self._wake(chain_id)
        return True

    async def dispatch(self, chain_id: str, task_id: str) -> bool:
        """Launch one ready task. False (and no action) when it is in flight, done, or not ready."""
        chain = self.registry.get(chain_id)
        task = chain.graph.get(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found in chain {chain_id}")
        if chain.status != "running" or chain_id in self._cancelled:
            return False
        if task_id in chain.results or not self._dependencies_met(chain, task):
            return False

        if not await self.registry.claim(chain_id, task_id):
            logger.debug(f"Duplicate dispatch of {task_id} ignored")
            return False
        if task_id in chain.results:
            await self.registry.release(chain_id, task_id)
            return False

        chain.current_task_id = task_id
        self._active.setdefault(chain_id, {})[task_id] = asyncio.create_task(self._run_task(chain, task))
        return True

    def subscribe(self, chain_id: str) -> asyncio.Queue:
        self.registry.get(chain_id)
        return self.event_bus.subscribe(chain_id)

    def unsubscribe(self, q: asyncio.Queue):
        self.event_bus.unsubscribe(q)

    def provide_feedback(self, chain_id: str, task_id: str, feedback: Feedback) -> bool:
        self.registry.get(chain_id)
        return self.escalation.provide_feedback(chain_id, task_id, feedback)

    async def get_history(self, chain_id: str) -> list[dict]:
        self.registry.get(chain_id)
        return await self.store.get_history(chain_id)

    async def close(self):
        """Cancel every live chain, wait for drivers, and release the store."""
        for chain in self.registry.list():
            if not chain.is_terminal:
                self.cancel(chain.id)
        drivers = self.registry.drivers()
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)
        self.queue.close()
        await self.store.close()

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, chain: Chain):
        wakeup = self._wakeups[chain.id]
        active = self._active[chain.id]
        try:
            while True:
                wakeup.clear()
                cancelled = chain.id in self._cancelled
                if not chain.paused and not cancelled:
                    for task_id in self._ready_task_ids(chain):
                        await self.dispatch(chain.id, task_id)

                if not active and (cancelled or not chain.paused):
                    break
                await wakeup.wait()
        except Exception:
            logger.error(f"Driver for chain {chain.id} crashed", exc_info=True)
            if chain.error is None:
                chain.error = "Chain driver crashed"
                chain.error_category = "internal"
        finally:
            self._finish(chain)
            try:
                await self.store.put_chain_results(chain.id, chain.results)
            except StoreError as e:
                logger.warning(f"Could not persist results for chain {chain.id}: {e}")

    def _ready_task_ids(self, chain: Chain) -> list[str]:
        in_flight = self.registry.in_flight(chain.id)
        return [
            task_id
            for task_id in chain.plan.ordered_task_ids()
            if task_id not in chain.results
            and task_id not in in_flight
            and self._dependencies_met(chain, chain.graph.tasks[task_id])
        ]

    @staticmethod
    def _dependencies_met(chain: Chain, task: Task) -> bool:
        """Every dependency succeeded and, for a composite, every child too."""
        required = list(task.dependencies)
        for child_id in task.children:
            child = chain.graph.tasks.get(child_id)
            # a child that depends on its own parent cannot gate it
            if child is not None and task.id not in child.dependencies:
                required.append(child_id)
        return all(dep in chain.results and chain.results[dep].ok for dep in required)

    def _finish(self, chain: Chain):
        if chain.is_terminal:
            return
        all_done = all(tid in chain.results and chain.results[tid].ok for tid in chain.graph.tasks)
        if all_done and chain.id not in self._cancelled:
            chain.status = "completed"
            chain.progress = 100
        else:
            chain.status = "failed"
            if chain.error is None:
                chain.error = "Chain ended with unfinished tasks"
                chain.error_category = "internal"
        chain.paused = False
        chain.current_task_id = None
        chain.ended_at = time.time()
        logger.info(f"Chain {chain.id} {chain.status}" + (f": {chain.error}" if chain.error else ""))
        self._publish(chain)

    def _wake(self, chain_id: str):
        wakeup = self._wakeups.get(chain_id)
        if wakeup:
            wakeup.set()

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def _run_task(self, chain: Chain, task: Task):
        task.status = "in_progress"
        task.updated_at = time.time()
        self.event_bus.emit_simple(TASK_STARTED, chain.id, task_id=task.id)
        await self._append_history(chain.id, task.id, "start", {"title": task.title})
        try:
            if task.is_atomic:
                result = await self._execute_atomic(chain, task)
            else:
                result = Result(
                    task_id=task.id,
                    status="success",
                    metadata=ResultMetadata(capability_name="composite"),
                )
            await self._record_success(chain, task, result)
        except TaskFailure as e:
            await self._record_failure(chain, task, e)
        except Exception as e:
            logger.error(f"Task {task.id} crashed", exc_info=True)
            await self._record_failure(chain, task, TaskFailure("internal", str(e)))
        finally:
            await self.registry.release(chain.id, task.id)
            self._active.get(chain.id, {}).pop(task.id, None)
            self._wake(chain.id)

    async def _execute_atomic(self, chain: Chain, task: Task) -> Result:
        variables = await accumulate_variables(self.store, chain.id, task.variables, task.dependencies)
        dependency_results = [chain.results[d] for d in task.dependencies if d in chain.results]
        prompt = render_task_prompt(task, variables, self.templates, dependency_results)

        job = Job(
            chain_id=chain.id,
            task_id=task.id,
            prompt=prompt,
            capability_id=task.metadata.get("capability") or self.config.default_capability,
            timeout=float(task.metadata.get("timeout", self.config.timeout)),
        )
        kind = task.metadata.get("validator") or task.kind
        history = None
        context = None

        while True:
            try:
                history, result = await self.correction.run(
                    job, kind, history=history, context=context,
                    should_stop=lambda: chain.id in self._cancelled,
                )
            except QueueClosedError as e:
                raise TaskFailure("cancelled", str(e))
            chain.correction_histories[task.id] = history

            if history.disposition == "success":
                return result
            if history.disposition == "failed":
                raise TaskFailure("transport", result.error if result else "capability unavailable", result)
            if history.disposition == "cancelled":
                raise TaskFailure("cancelled", "Chain cancelled during self-correction")

            if chain.id in self._cancelled:
                raise TaskFailure("cancelled", "Chain cancelled before escalation")
            try:
                feedback = await self.escalation.pause_for_clarification(
                    chain.id, task, history, timeout=self.config.human_timeout
                )
            except EscalationTimeout as e:
                raise TaskFailure("escalation_timeout", str(e))
            except EscalationCancelled as e:
                raise TaskFailure("cancelled", str(e))

            if feedback.kind == "clarification":
                context = f"{context}\n\n{feedback.content}" if context else feedback.content
            elif feedback.kind == "retry":
                pass
            elif feedback.kind == "manual_artifact":
                return Result(
                    task_id=task.id,
                    status="success",
                    output=feedback.content,
                    artifact=feedback.content,
                    metadata=ResultMetadata(capability_name="human"),
                )
            elif feedback.kind == "skip":
                return Result(
                    task_id=task.id,
                    status="success",
                    warning=SKIP_WARNING,
                    metadata=ResultMetadata(capability_name="human"),
                )

    async def _record_success(self, chain: Chain, task: Task, result: Result):
        try:
            await self.store.put_result(chain.id, result)
        except StoreError as e:
            raise TaskFailure("store", f"Result write failed: {e}")

        chain.results[task.id] = result
        task.status = "completed"
        task.result = result.artifact or result.output
        task.updated_at = time.time()
        logger.info(f"Task {task.id} completed in chain {chain.id}")

        await self._append_history(chain.id, task.id, "complete", {
            "capability_name": result.metadata.capability_name,
            "duration_ms": result.metadata.duration_ms,
            "warning": result.warning,
        })
        self.event_bus.emit_simple(TASK_COMPLETED, chain.id, task_id=task.id, warning=result.warning)
        self._publish(chain)

    async def _record_failure(self, chain: Chain, task: Task, failure: TaskFailure):
        result = failure.result
        if result is None or result.ok:
            result = Result(task_id=task.id, status="failure", error=failure.detail)
        elif not result.error:
            result = replace(result, error=failure.detail)

        chain.results[task.id] = result
        task.status = "failed"
        task.updated_at = time.time()
        if chain.error is None:
            chain.error = f"Task {task.id} failed ({failure.category}): {failure.detail}"
            chain.error_category = failure.category
        logger.warning(f"Task {task.id} failed in chain {chain.id} ({failure.category}): {failure.detail}")

        if failure.category != "store":
            try:
                await self.store.put_result(chain.id, result)
            except StoreError as e:
                logger.warning(f"Could not persist failure of {task.id}: {e}")
        await self._append_history(chain.id, task.id, "fail", {
            "category": failure.category,
            "error": failure.detail,
        })
        self.event_bus.emit_simple(TASK_FAILED, chain.id, task_id=task.id, category=failure.category, error=failure.detail)
        self._publish(chain)

    async def _append_history(self, chain_id: str, task_id: str, event_type: str, data: dict):
        try:
            await self.store.append_history(chain_id, task_id, event_type, data)
        except StoreError as e:
            logger.warning(f"Could not append history for {task_id}: {e}")

    # ------------------------------------------------------------------
    # Progress / publishing
    # ------------------------------------------------------------------

    def _update_progress(self, chain: Chain):
        total = len(chain.graph.atomic_tasks())
        if total == 0:
            return
        progress = chain.completed_atomic_count() * 100 // total
        chain.progress = max(chain.progress, progress)

    def _publish(self, chain: Chain):
        """Recompute progress and push progress + snapshot to subscribers."""
        self._update_progress(chain)
        self.event_bus.emit_simple(
            CHAIN_PROGRESS, chain.id,
            progress=chain.progress,
            completed_tasks=chain.completed_atomic_count(),
            total_tasks=len(chain.graph.atomic_tasks()),
        )
        self.event_bus.emit_simple(CHAIN_STATE, chain.id, state=self.get_state(chain.id))
