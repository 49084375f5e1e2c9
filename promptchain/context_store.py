"""Context store — TTL-bounded per-chain results, history, and variable accumulation.

Layout, per chain:
    promptchain:chain:<id>:result:<task_id>   one Result
    promptchain:chain:<id>:results:all         task_id -> Result mapping
    promptchain:chain:<id>:history             append-only list of history entries

Backends implement a handful of key/value primitives; the chain-level operations
are shared in ContextStore.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from promptchain.errors import StoreError
from promptchain.models import Result

logger = logging.getLogger(__name__)

KEY_PREFIX = "promptchain:chain"
HISTORY_EVENTS = ("start", "complete", "fail")

_JSON_BLOCK = re.compile(r"```json\n(.*?)\n```", re.DOTALL)


def result_key(chain_id: str, task_id: str) -> str:
    return f"{KEY_PREFIX}:{chain_id}:result:{task_id}"


def chain_results_key(chain_id: str) -> str:
    return f"{KEY_PREFIX}:{chain_id}:results:all"


def history_key(chain_id: str) -> str:
    return f"{KEY_PREFIX}:{chain_id}:history"


def chain_prefix(chain_id: str) -> str:
    return f"{KEY_PREFIX}:{chain_id}:"


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class ContextStore(ABC):
    """Durable key/value storage scoped by chain id, with a default TTL."""

    def __init__(self, ttl: int = 3600, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock

    # -- primitives (backend-specific) --

    @abstractmethod
    async def _set(self, key: str, value: str, ttl: int): ...

    @abstractmethod
    async def _get(self, key: str) -> str | None: ...

    @abstractmethod
    async def _append(self, key: str, value: str, ttl: int):
        """Append to a list record and reset its TTL."""

    @abstractmethod
    async def _list(self, key: str) -> list[str]: ...

    @abstractmethod
    async def _keys(self, prefix: str) -> list[str]: ...

    @abstractmethod
    async def _delete(self, keys: list[str]): ...

    @abstractmethod
    async def _extend(self, key: str, seconds: int):
        """Add seconds to the remaining lifetime of a live key."""

    async def close(self):
        pass

    # -- results --

    async def put_result(self, chain_id: str, result: Result):
        await self._set(result_key(chain_id, result.task_id), _dumps(result.to_dict()), self.ttl)

    async def get_result(self, chain_id: str, task_id: str) -> Result | None:
        raw = await self._get(result_key(chain_id, task_id))
        if raw is None:
            return None
        return Result.from_dict(json.loads(raw))

    async def put_chain_results(self, chain_id: str, results: dict[str, Result]):
        payload = {tid: r.to_dict() for tid, r in results.items()}
        await self._set(chain_results_key(chain_id), _dumps(payload), self.ttl)

    async def get_chain_results(self, chain_id: str) -> dict[str, Result]:
        raw = await self._get(chain_results_key(chain_id))
        if raw is None:
            return {}
        return {tid: Result.from_dict(d) for tid, d in json.loads(raw).items()}

    async def get_dependency_results(self, chain_id: str, dependency_ids: Iterable[str]) -> list[Result]:
        results = []
        for dep_id in dependency_ids:
            result = await self.get_result(chain_id, dep_id)
            if result is not None:
                results.append(result)
        return results

    # -- history --

    async def append_history(self, chain_id: str, task_id: str, event_type: str, data: dict | None = None):
        if event_type not in HISTORY_EVENTS:
            raise ValueError(f"Unknown history event: {event_type}")
        entry = {
            "task_id": task_id,
            "event_type": event_type,
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "data": data or {},
        }
        await self._append(history_key(chain_id), _dumps(entry), self.ttl)

    async def get_history(self, chain_id: str) -> list[dict]:
        return [json.loads(raw) for raw in await self._list(history_key(chain_id))]

    # -- lifecycle --

    async def extend_ttl(self, chain_id: str, seconds: int):
        for key in await self._keys(chain_prefix(chain_id)):
            await self._extend(key, seconds)

    async def cleanup_chain(self, chain_id: str):
        keys = await self._keys(chain_prefix(chain_id))
        if keys:
            await self._delete(keys)
        logger.info(f"Cleaned up {len(keys)} keys for chain {chain_id}")

    async def chain_stats(self, chain_id: str) -> dict:
        keys = await self._keys(chain_prefix(chain_id))
        history = await self.get_history(chain_id)
        return {
            "total_results": sum(1 for k in keys if ":result:" in k),
            "history_length": len(history),
            "oldest_timestamp": history[0]["timestamp"] if history else None,
            "newest_timestamp": history[-1]["timestamp"] if history else None,
        }


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise StoreError(f"Value is not serializable: {e}") from e


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryContextStore(ContextStore):
    """Dict-backed store with per-key expiry. Values are kept serialized."""

    def __init__(self, ttl: int = 3600, clock: Callable[[], float] = time.time):
        super().__init__(ttl=ttl, clock=clock)
        self._values: dict[str, tuple[Any, float]] = {}  # key -> (str | list[str], expires_at)

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._values[key]
            return None
        return entry

    async def _set(self, key: str, value: str, ttl: int):
        self._values[key] = (value, self._clock() + ttl)

    async def _get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def _append(self, key: str, value: str, ttl: int):
        entry = self._live(key)
        items = list(entry[0]) if entry else []
        items.append(value)
        self._values[key] = (items, self._clock() + ttl)

    async def _list(self, key: str) -> list[str]:
        entry = self._live(key)
        return list(entry[0]) if entry else []

    async def _keys(self, prefix: str) -> list[str]:
        return [k for k in list(self._values) if k.startswith(prefix) and self._live(k)]

    async def _delete(self, keys: list[str]):
        for key in keys:
            self._values.pop(key, None)

    async def _extend(self, key: str, seconds: int):
        entry = self._live(key)
        if entry:
            self._values[key] = (entry[0], entry[1] + seconds)


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------


_SCHEMA = """
CREATE TABLE IF NOT EXISTS context_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
)
"""


class SqliteContextStore(ContextStore):
    """Durable store on a single SQLite file. Blocking calls run in a worker thread."""

    def __init__(self, db_path: Path | str, ttl: int = 3600, clock: Callable[[], float] = time.time):
        super().__init__(ttl=ttl, clock=clock)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._connection.execute(_SCHEMA)
        self._connection.commit()

    async def close(self):
        with self._lock:
            self._connection.close()

    async def _run(self, fn: Callable, *args):
        try:
            return await asyncio.to_thread(self._locked, fn, *args)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite store failure: {e}") from e

    def _locked(self, fn: Callable, *args):
        with self._lock:
            self._purge_expired()
            result = fn(*args)
            self._connection.commit()
            return result

    def _purge_expired(self):
        self._connection.execute("DELETE FROM context_entries WHERE expires_at <= ?", (self._clock(),))

    def _put_row(self, key: str, value: str, ttl: int):
        self._connection.execute(
            "INSERT INTO context_entries (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
            (key, value, self._clock() + ttl),
        )

    def _get_row(self, key: str) -> str | None:
        row = self._connection.execute(
            "SELECT value FROM context_entries WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _append_row(self, key: str, value: str, ttl: int):
        current = self._get_row(key)
        items = json.loads(current) if current else []
        items.append(value)
        self._put_row(key, json.dumps(items), ttl)

    def _keys_rows(self, prefix: str) -> list[str]:
        rows = self._connection.execute(
            "SELECT key FROM context_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [r[0] for r in rows]

    def _delete_rows(self, keys: list[str]):
        self._connection.executemany("DELETE FROM context_entries WHERE key = ?", [(k,) for k in keys])

    def _extend_row(self, key: str, seconds: int):
        self._connection.execute(
            "UPDATE context_entries SET expires_at = expires_at + ? WHERE key = ?", (seconds, key)
        )

    async def _set(self, key: str, value: str, ttl: int):
        await self._run(self._put_row, key, value, ttl)

    async def _get(self, key: str) -> str | None:
        return await self._run(self._get_row, key)

    async def _append(self, key: str, value: str, ttl: int):
        await self._run(self._append_row, key, value, ttl)

    async def _list(self, key: str) -> list[str]:
        raw = await self._get(key)
        return json.loads(raw) if raw else []

    async def _keys(self, prefix: str) -> list[str]:
        return await self._run(self._keys_rows, prefix)

    async def _delete(self, keys: list[str]):
        await self._run(self._delete_rows, keys)

    async def _extend(self, key: str, seconds: int):
        await self._run(self._extend_row, key, seconds)


def create_store(path: str = "", ttl: int = 3600) -> ContextStore:
    """SQLite store when a path is configured, in-memory otherwise."""
    if path:
        return SqliteContextStore(path, ttl=ttl)
    return MemoryContextStore(ttl=ttl)


# ---------------------------------------------------------------------------
# Context accumulation
# ---------------------------------------------------------------------------


def extract_variables(output: str) -> dict[str, Any]:
    """Merge every ```json fenced object in the output. Anything unparseable is skipped."""
    variables: dict[str, Any] = {}
    for match in _JSON_BLOCK.finditer(output or ""):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.debug(f"Skipping unparseable json block: {e}")
            continue
        if isinstance(data, dict):
            variables.update(data)
    return variables


def merge_dependency_variables(
    base: dict[str, Any],
    dependency_results: Iterable[tuple[str, Result | None]],
) -> dict[str, Any]:
    """Pure merge of a task's variables with its completed dependencies.

    Dependencies apply in declared order, later ones overwriting earlier ones.
    Explicit task variables are applied last and always win.
    """
    merged: dict[str, Any] = {}
    for dep_id, result in dependency_results:
        if result is None or not result.ok:
            continue
        merged[f"{dep_id}_output"] = result.output
        if result.artifact:
            merged[f"{dep_id}_code"] = result.artifact
        merged.update(extract_variables(result.output))
    merged.update(base)
    return merged


async def accumulate_variables(
    store: ContextStore,
    chain_id: str,
    base: dict[str, Any],
    dependency_ids: Iterable[str],
) -> dict[str, Any]:
    """Read dependency results from the store and merge them. Read failures skip that dependency."""
    pairs: list[tuple[str, Result | None]] = []
    for dep_id in dependency_ids:
        try:
            pairs.append((dep_id, await store.get_result(chain_id, dep_id)))
        except StoreError as e:
            logger.warning(f"Could not read result of {dep_id} for chain {chain_id}: {e}")
    return merge_dependency_variables(base, pairs)
