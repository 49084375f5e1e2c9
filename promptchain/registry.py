"""Chain registry — owned map of chains plus per-chain in-flight tracking."""

from __future__ import annotations

import asyncio
import logging

from promptchain.errors import ChainNotFoundError
from promptchain.models import Chain

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Holds every chain an orchestrator knows about.

    The in-flight sets are mutated only under the lock, since several task
    completions can race to release their ids.
    """

    def __init__(self):
        self._chains: dict[str, Chain] = {}
        self._in_flight: dict[str, set[str]] = {}
        self._drivers: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def add(self, chain: Chain) -> Chain:
        self._chains[chain.id] = chain
        self._in_flight[chain.id] = set()
        return chain

    def get(self, chain_id: str) -> Chain:
        chain = self._chains.get(chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)
        return chain

    def __contains__(self, chain_id: str) -> bool:
        return chain_id in self._chains

    def list(self) -> list[Chain]:
        return list(self._chains.values())

    # -- in-flight tracking --

    async def claim(self, chain_id: str, task_id: str) -> bool:
        """Mark a task in flight. False when it already is."""
        async with self._lock:
            in_flight = self._in_flight.setdefault(chain_id, set())
            if task_id in in_flight:
                return False
            in_flight.add(task_id)
            return True

    async def release(self, chain_id: str, task_id: str):
        async with self._lock:
            self._in_flight.get(chain_id, set()).discard(task_id)

    def in_flight(self, chain_id: str) -> frozenset[str]:
        return frozenset(self._in_flight.get(chain_id, ()))

    # -- driver tasks --

    def set_driver(self, chain_id: str, task: asyncio.Task):
        self._drivers[chain_id] = task
        task.add_done_callback(lambda _: self._drivers.pop(chain_id, None))

    def get_driver(self, chain_id: str) -> asyncio.Task | None:
        return self._drivers.get(chain_id)

    def drivers(self) -> list[asyncio.Task]:
        return list(self._drivers.values())
