"""Self-correcting loop — generate, validate, refine, retry up to a fixed cap."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from promptchain.execution_queue import ExecutionQueue
from promptchain.models import CorrectionAttempt, CorrectionHistory, Job, Result
from promptchain.refinement import RefinementEngine
from promptchain.validation import ValidatorRegistry

logger = logging.getLogger(__name__)

REFINEMENT_NOTE = "Adaptive prompt refinement with validation feedback"


class SelfCorrectingLoop:
    """Runs one task through at most `max_attempts` generate/validate rounds.

    Outcomes are reported through the history's disposition, never raised:
      success    an attempt passed validation
      failed     the execution queue gave up at the transport level
      escalated  every attempt failed validation
      cancelled  `should_stop` turned true before a follow-up attempt
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        validators: ValidatorRegistry,
        refinement: RefinementEngine | None = None,
        max_attempts: int = 3,
    ):
        self.queue = queue
        self.validators = validators
        self.refinement = refinement or RefinementEngine()
        self.max_attempts = max(1, max_attempts)

    async def run(
        self,
        job: Job,
        kind: str,
        history: CorrectionHistory | None = None,
        context: str | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> tuple[CorrectionHistory, Result | None]:
        """Run the loop. A passed-in history is continued, so attempt numbers keep counting."""
        if history is None:
            history = CorrectionHistory(task_id=job.task_id, chain_id=job.chain_id)

        original_prompt = job.prompt
        prompt = original_prompt
        if context:
            prompt = f"{original_prompt}\n\n**Reviewer Clarification:**\n{context}"

        result: Result | None = None
        for round_index in range(self.max_attempts):
            if history.attempts and should_stop is not None and should_stop():
                history.disposition = "cancelled"
                logger.info(f"Task {job.task_id} stopped after {history.total_attempts} attempts")
                return history, None

            number = history.total_attempts + 1
            started = time.monotonic()
            result = await self.queue.submit(replace(job, prompt=prompt))
            duration_ms = int((time.monotonic() - started) * 1000)
            correction = REFINEMENT_NOTE if round_index > 0 else None

            if not result.ok:
                history.attempts.append(CorrectionAttempt(
                    attempt_number=number,
                    prompt=prompt,
                    output="",
                    validation=None,
                    successful=False,
                    error_type="transport",
                    correction_applied=correction,
                    duration_ms=duration_ms,
                ))
                history.disposition = "failed"
                logger.warning(f"Task {job.task_id} attempt {number}: transport failure, giving up")
                return history, result

            outcome = self.validators.validate(result.artifact or result.output, kind)
            history.attempts.append(CorrectionAttempt(
                attempt_number=number,
                prompt=prompt,
                output=result.output,
                artifact=result.artifact,
                validation=outcome,
                successful=outcome.passed,
                error_type=outcome.findings[0].category if outcome.findings else None,
                correction_applied=correction,
                duration_ms=duration_ms,
            ))

            if outcome.passed:
                history.disposition = "success"
                logger.info(f"Task {job.task_id} passed validation on attempt {number}")
                return history, result

            logger.info(
                f"Task {job.task_id} attempt {number} failed validation "
                f"with {len(outcome.findings)} findings"
            )
            if round_index < self.max_attempts - 1:
                prompt = self.refinement.refine_prompt(
                    original_prompt, outcome.findings, history.attempts, context
                )

        history.disposition = "escalated"
        logger.warning(f"Task {job.task_id} exhausted {self.max_attempts} attempts, escalating")
        return history, result
