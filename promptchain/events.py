"""Event channel — append-only log with per-chain subscriptions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Callable

from promptchain.models import Event

logger = logging.getLogger(__name__)

# Event types published by the engine
CHAIN_PROGRESS = "chain.progress"
CHAIN_STATE = "chain.state"
TASK_STARTED = "task.started"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"
TASK_PAUSED = "task.paused"
CLARIFICATION_NEEDED = "clarification.needed"
EXECUTION_RESUMED = "execution.resumed"


class EventBus:
    """Append-only event log. Subscribers get a queue, optionally scoped to one chain."""

    def __init__(self, log_file: Path | None = None):
        self._log_file = log_file
        self._subscribers: list[tuple[str | None, asyncio.Queue]] = []
        self._handlers: list[tuple[str | None, Callable[[Event], None]]] = []
        self._history: list[Event] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event — log and notify subscribers."""
        self._history.append(event)
        self._persist(event)
        self._notify(event)
        logger.debug(f"Event: {event.type} [{event.chain_id}] {event.data}")

    def emit_simple(self, type: str, chain_id: str, **data):
        """Convenience: emit with keyword args."""
        self.emit(Event(type=type, chain_id=chain_id, data=data))

    def recent(self, limit: int = 50, offset: int = 0, chain_id: str | None = None) -> list[Event]:
        """Get recent events (paginated), optionally for one chain."""
        history = self._history
        if chain_id is not None:
            history = [e for e in history if e.chain_id == chain_id]
        start = max(0, len(history) - offset - limit)
        end = len(history) - offset
        return history[start:end]

    def subscribe(self, chain_id: str | None = None) -> asyncio.Queue:
        """Subscribe to live events. chain_id=None receives every chain."""
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append((chain_id, q))
        return q

    def unsubscribe(self, q: asyncio.Queue):
        self._subscribers = [(cid, sub) for cid, sub in self._subscribers if sub is not q]

    def add_handler(self, handler: Callable[[Event], None], chain_id: str | None = None):
        """Register a synchronous callback. Called inline on emit."""
        self._handlers.append((chain_id, handler))

    def remove_handler(self, handler: Callable[[Event], None]):
        self._handlers = [(cid, h) for cid, h in self._handlers if h is not handler]

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for chain_id, q in self._subscribers:
            if chain_id is not None and chain_id != event.chain_id:
                continue
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                pass
        for chain_id, handler in self._handlers:
            if chain_id is not None and chain_id != event.chain_id:
                continue
            try:
                handler(event)
            except Exception:
                logger.error(f"Event handler failed for {event.type}", exc_info=True)
