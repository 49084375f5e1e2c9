"""Human-in-the-loop escalation — pause a task, ask a reviewer, wait for feedback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from promptchain.errors import EscalationCancelled, EscalationTimeout
from promptchain.events import CLARIFICATION_NEEDED, EXECUTION_RESUMED, TASK_PAUSED, EventBus
from promptchain.models import ClarificationRequest, CorrectionHistory, Feedback, PausedTask, Task

logger = logging.getLogger(__name__)

QUESTION_PREFIX = "Automatic generation keeps producing invalid output. "

QUESTIONS = {
    "type": "There are type errors. Can you provide more specific type requirements or examples?",
    "import": "There are import/dependency issues. Which specific libraries should be used?",
    "schema": "The data model structure has errors. Can you clarify the schema requirements?",
    "syntax": "The output is not well-formed. Can you provide an example of the expected format?",
}
GENERIC_QUESTION = (
    "Can you provide additional context, constraints, or requirements to help resolve these issues?"
)

PAUSE_REASON = "Validation failures exceeded retry threshold"


def dominant_category(categories: list[str]) -> str | None:
    """Most frequent category. Ties go to the one seen first."""
    counts: dict[str, int] = {}
    for category in categories:
        counts[category] = counts.get(category, 0) + 1
    best = None
    for category, count in counts.items():
        if best is None or count > counts[best]:
            best = category
    return best


class HumanInTheLoop:
    """Tracks paused tasks and one pending feedback future per (chain, task)."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        timeout: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.event_bus = event_bus
        self.timeout = timeout
        self._clock = clock
        self._paused: dict[tuple[str, str], PausedTask] = {}
        self._waiters: dict[tuple[str, str], asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def pause_for_clarification(
        self,
        chain_id: str,
        task: Task,
        history: CorrectionHistory,
        timeout: float | None = None,
    ) -> Feedback:
        """Publish a clarification request and wait for feedback.

        Raises EscalationTimeout when nobody answers in time and
        EscalationCancelled when the wait is cancelled.
        """
        key = (chain_id, task.id)
        timeout = self.timeout if timeout is None else timeout

        paused = PausedTask(
            chain_id=chain_id,
            task_id=task.id,
            reason=PAUSE_REASON,
            history=history,
            paused_at=self._clock(),
        )
        self._paused[key] = paused
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[key] = future

        request = self.build_clarification_request(chain_id, task.id, history)
        logger.warning(f"Task {task.id} in chain {chain_id} paused for human input: {request.question}")
        self._emit(
            TASK_PAUSED, chain_id,
            task_id=task.id,
            description=task.description or task.title,
            reason=PAUSE_REASON,
            total_attempts=history.total_attempts,
            paused_at=paused.paused_at,
        )
        data = request.to_dict()
        data.pop("chain_id")
        self._emit(CLARIFICATION_NEEDED, chain_id, **data)

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self._paused.pop(key, None)
            logger.warning(f"No human input for task {task.id} within {timeout}s")
            raise EscalationTimeout(chain_id, task.id, timeout)
        finally:
            if self._waiters.get(key) is future:
                del self._waiters[key]

    def build_clarification_request(
        self, chain_id: str, task_id: str, history: CorrectionHistory
    ) -> ClarificationRequest:
        last = history.last_attempt
        findings = last.findings if last else []
        category = dominant_category([f.category for f in findings])
        question = QUESTION_PREFIX + QUESTIONS.get(category, GENERIC_QUESTION)
        return ClarificationRequest(
            chain_id=chain_id,
            task_id=task_id,
            question=question,
            attempted_artifact=(last.artifact or last.output) if last else None,
            findings=[f.label() for f in findings],
            attempts=history.total_attempts,
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def provide_feedback(self, chain_id: str, task_id: str, feedback: Feedback) -> bool:
        """Resolve a pending wait. Returns False when the task is not awaiting input."""
        key = (chain_id, task_id)
        paused = self._paused.get(key)
        future = self._waiters.get(key)
        if paused is None or not paused.awaiting_input or future is None or future.done():
            logger.warning(f"Received feedback for non-paused task: {task_id} (chain {chain_id})")
            return False

        paused.resolved = True
        paused.awaiting_input = False
        paused.feedback = feedback
        paused.resolved_at = self._clock()
        future.set_result(feedback)

        logger.info(f"Task {task_id} resumed with {feedback.kind}")
        self._emit(
            EXECUTION_RESUMED, chain_id,
            task_id=task_id,
            resumed_with=feedback.kind,
            resumed_at=paused.resolved_at,
        )
        return True

    def cancel_wait(self, chain_id: str, task_id: str) -> bool:
        key = (chain_id, task_id)
        self._paused.pop(key, None)
        future = self._waiters.pop(key, None)
        if future is None or future.done():
            return False
        future.set_exception(EscalationCancelled(f"Escalation for task {task_id} was cancelled"))
        return True

    def cancel_chain(self, chain_id: str) -> int:
        keys = [k for k in list(self._waiters) if k[0] == chain_id]
        cancelled = sum(1 for _, task_id in keys if self.cancel_wait(chain_id, task_id))
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending escalations for chain {chain_id}")
        return cancelled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_paused_tasks(self, chain_id: str) -> list[PausedTask]:
        return [p for p in self._paused.values() if p.chain_id == chain_id and p.awaiting_input]

    def get_paused_task(self, chain_id: str, task_id: str) -> PausedTask | None:
        return self._paused.get((chain_id, task_id))

    def is_waiting(self, chain_id: str, task_id: str) -> bool:
        future = self._waiters.get((chain_id, task_id))
        return future is not None and not future.done()

    def intervention_stats(self) -> dict:
        tasks = list(self._paused.values())
        resolved = [t for t in tasks if t.resolved and t.resolved_at is not None]
        total_wait = sum(t.resolved_at - t.paused_at for t in resolved)
        return {
            "total_paused": len(tasks),
            "awaiting_input": sum(1 for t in tasks if t.awaiting_input),
            "resolved": len(resolved),
            "average_wait_time": round(total_wait / len(resolved)) if resolved else 0,
        }

    def clear_resolved(self, older_than: float = 3600) -> int:
        now = self._clock()
        stale = [k for k, t in self._paused.items() if t.resolved and now - t.paused_at > older_than]
        for key in stale:
            del self._paused[key]
        return len(stale)

    def _emit(self, type: str, chain_id: str, **data):
        if self.event_bus:
            self.event_bus.emit_simple(type, chain_id, **data)
