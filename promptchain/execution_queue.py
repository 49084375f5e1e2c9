"""Execution queue — bounded-concurrency dispatch to the generation capability."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass

from promptchain.errors import MalformedResponseError, QueueClosedError
from promptchain.models import Generation, Job, Result, ResultMetadata
from promptchain.providers.base import Capability

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```[\w+.-]*\n(.*?)```", re.DOTALL)


def extract_code(text: str) -> str | None:
    """Largest fenced code block in the text, or None when there is none."""
    blocks = _CODE_BLOCK.findall(text or "")
    if not blocks:
        return None
    longest = blocks[0]
    for block in blocks[1:]:
        if len(block) > len(longest):
            longest = block
    return longest


@dataclass
class QueueStats:
    active: int = 0
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retries": self.retries,
        }


class ExecutionQueue:
    """Runs at most `concurrency` capability calls at once, with transport-level retry.

    Knows nothing about validation: a job either yields text (success) or
    exhausts its transport attempts (failure Result, never an exception).
    """

    def __init__(
        self,
        capability: Capability,
        concurrency: int = 3,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        max_backoff: float = 30.0,
    ):
        self.capability = capability
        self.concurrency = concurrency
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.stats = QueueStats()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        self._closed = True

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.max_backoff)

    async def submit(self, job: Job) -> Result:
        if self._closed:
            raise QueueClosedError("Execution queue is closed")

        self.stats.submitted += 1
        async with self._semaphore:
            self.stats.active += 1
            try:
                return await self._run(job)
            finally:
                self.stats.active -= 1

    async def _run(self, job: Job) -> Result:
        started = time.monotonic()
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            try:
                generation = await asyncio.wait_for(
                    self.capability.generate(job.prompt, job.capability_id, job.timeout),
                    timeout=job.timeout,
                )
                if not isinstance(generation, Generation) or not isinstance(generation.text, str):
                    raise MalformedResponseError(
                        f"Capability {job.capability_id} returned no text"
                    )
            except asyncio.TimeoutError:
                last_error = f"Capability {job.capability_id} timed out after {job.timeout}s"
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                self.stats.succeeded += 1
                return Result(
                    task_id=job.task_id,
                    status="success",
                    output=generation.text,
                    artifact=generation.artifact or extract_code(generation.text),
                    metadata=ResultMetadata(
                        capability_name=generation.capability_name or job.capability_id,
                        duration_ms=int((time.monotonic() - started) * 1000),
                        input_tokens=generation.input_tokens,
                        output_tokens=generation.output_tokens,
                    ),
                )

            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                self.stats.retries += 1
                logger.warning(
                    f"Transport failure on task {job.task_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {last_error}. Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        self.stats.failed += 1
        logger.error(f"Task {job.task_id} failed after {self.max_attempts} transport attempts: {last_error}")
        return Result(
            task_id=job.task_id,
            status="failure",
            error=last_error,
            metadata=ResultMetadata(
                capability_name=job.capability_id,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
        )
