"""Test context stores and variable accumulation."""

import asyncio

import pytest

from conftest import FakeClock
from promptchain.context_store import (
    MemoryContextStore,
    SqliteContextStore,
    accumulate_variables,
    create_store,
    extract_variables,
    merge_dependency_variables,
)
from promptchain.errors import StoreError
from promptchain.models import Result


def _ok(task_id, output, artifact=None):
    return Result(task_id=task_id, status="success", output=output, artifact=artifact)


@pytest.fixture(params=["memory", "sqlite"])
def make_store(request, tmp_path):
    def factory(ttl=3600, clock=None):
        kwargs = {"ttl": ttl}
        if clock is not None:
            kwargs["clock"] = clock
        if request.param == "memory":
            return MemoryContextStore(**kwargs)
        return SqliteContextStore(tmp_path / "context.db", **kwargs)
    return factory


def test_put_and_get_result(make_store):
    store = make_store()

    async def run():
        await store.put_result("c1", _ok("A", "hello", "code"))
        got = await store.get_result("c1", "A")
        missing = await store.get_result("c1", "B")
        other_chain = await store.get_result("c2", "A")
        await store.close()
        return got, missing, other_chain

    got, missing, other_chain = asyncio.run(run())
    assert got.task_id == "A"
    assert got.output == "hello"
    assert got.artifact == "code"
    assert got.ok
    assert missing is None
    assert other_chain is None


def test_chain_results(make_store):
    store = make_store()

    async def run():
        await store.put_chain_results("c1", {"A": _ok("A", "a"), "B": _ok("B", "b")})
        results = await store.get_chain_results("c1")
        deps = await store.get_dependency_results("c1", ["B", "A"])
        await store.close()
        return results, deps

    results, deps = asyncio.run(run())
    assert sorted(results) == ["A", "B"]
    assert deps == []  # per-task keys were never written


def test_entries_expire(make_store):
    clock = FakeClock()
    store = make_store(ttl=10, clock=clock)

    async def run():
        await store.put_result("c1", _ok("A", "x"))
        clock.advance(5)
        before = await store.get_result("c1", "A")
        clock.advance(6)
        after = await store.get_result("c1", "A")
        await store.close()
        return before, after

    before, after = asyncio.run(run())
    assert before is not None
    assert after is None


def test_extend_ttl(make_store):
    clock = FakeClock()
    store = make_store(ttl=10, clock=clock)

    async def run():
        await store.put_result("c1", _ok("A", "x"))
        await store.append_history("c1", "A", "start")
        await store.extend_ttl("c1", 100)
        clock.advance(50)
        result = await store.get_result("c1", "A")
        history = await store.get_history("c1")
        await store.close()
        return result, history

    result, history = asyncio.run(run())
    assert result is not None
    assert len(history) == 1


def test_history_is_ordered(make_store):
    store = make_store()

    async def run():
        await store.append_history("c1", "A", "start", {"title": "a"})
        await store.append_history("c1", "A", "complete")
        await store.append_history("c1", "B", "start")
        await store.append_history("c1", "B", "fail", {"category": "transport"})
        history = await store.get_history("c1")
        await store.close()
        return history

    history = asyncio.run(run())
    assert [(h["task_id"], h["event_type"]) for h in history] == [
        ("A", "start"), ("A", "complete"), ("B", "start"), ("B", "fail"),
    ]
    assert history[0]["data"] == {"title": "a"}
    assert history[1]["data"] == {}
    assert history[0]["timestamp"].endswith("+00:00")


def test_history_rejects_unknown_event(make_store):
    store = make_store()
    with pytest.raises(ValueError):
        asyncio.run(store.append_history("c1", "A", "exploded"))


def test_cleanup_and_stats(make_store):
    store = make_store()

    async def run():
        await store.put_result("c1", _ok("A", "x"))
        await store.put_result("c1", _ok("B", "y"))
        await store.append_history("c1", "A", "start")
        await store.append_history("c1", "A", "complete")
        await store.put_result("c2", _ok("A", "z"))
        stats = await store.chain_stats("c1")
        await store.cleanup_chain("c1")
        after = await store.chain_stats("c1")
        survivor = await store.get_result("c2", "A")
        await store.close()
        return stats, after, survivor

    stats, after, survivor = asyncio.run(run())
    assert stats["total_results"] == 2
    assert stats["history_length"] == 2
    assert stats["oldest_timestamp"] is not None
    assert after == {"total_results": 0, "history_length": 0, "oldest_timestamp": None, "newest_timestamp": None}
    assert survivor is not None


def test_unserializable_history_raises_store_error():
    store = MemoryContextStore()
    with pytest.raises(StoreError):
        asyncio.run(store.append_history("c1", "A", "start", {"bad": object()}))


def test_sqlite_store_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "context.db"

    async def write():
        store = SqliteContextStore(path)
        await store.put_result("c1", _ok("A", "persisted"))
        await store.close()

    async def read():
        store = SqliteContextStore(path)
        result = await store.get_result("c1", "A")
        await store.close()
        return result

    asyncio.run(write())
    assert asyncio.run(read()).output == "persisted"


def test_create_store(tmp_path):
    assert isinstance(create_store(""), MemoryContextStore)
    store = create_store(str(tmp_path / "s.db"), ttl=5)
    assert isinstance(store, SqliteContextStore)
    assert store.ttl == 5
    asyncio.run(store.close())


# ---------------------------------------------------------------------------
# Variable accumulation
# ---------------------------------------------------------------------------


def test_extract_variables():
    output = (
        "Here you go\n"
        "```json\n{\"table\": \"users\", \"count\": 2}\n```\n"
        "and a broken one\n"
        "```json\n{not json}\n```\n"
        "and a list\n"
        "```json\n[1, 2]\n```\n"
        "```json\n{\"count\": 3}\n```"
    )
    assert extract_variables(output) == {"table": "users", "count": 3}
    assert extract_variables("") == {}
    assert extract_variables("no blocks here") == {}


def test_merge_later_dependencies_win_and_explicit_wins_last():
    a = _ok("A", "```json\n{\"name\": \"from-a\", \"only_a\": 1}\n```", artifact="code-a")
    b = _ok("B", "```json\n{\"name\": \"from-b\"}\n```")
    merged = merge_dependency_variables({"only_a": "explicit"}, [("A", a), ("B", b)])

    assert merged["name"] == "from-b"
    assert merged["only_a"] == "explicit"
    assert merged["A_output"] == a.output
    assert merged["A_code"] == "code-a"
    assert "B_code" not in merged


def test_merge_ignores_failed_and_missing_results():
    failed = Result(task_id="A", status="failure", output="```json\n{\"x\": 1}\n```")
    merged = merge_dependency_variables({"y": 2}, [("A", failed), ("B", None)])
    assert merged == {"y": 2}


def test_merge_is_deterministic():
    pairs = [("A", _ok("A", "```json\n{\"k\": 1}\n```")), ("B", _ok("B", "plain"))]
    first = merge_dependency_variables({"v": 1}, pairs)
    second = merge_dependency_variables({"v": 1}, pairs)
    assert first == second
    assert list(first) == list(second)


class FlakyStore(MemoryContextStore):
    def __init__(self, broken_key_part):
        super().__init__()
        self.broken_key_part = broken_key_part

    async def _get(self, key):
        if self.broken_key_part in key:
            raise StoreError("read failed")
        return await super()._get(key)


def test_accumulate_skips_unreadable_dependency():
    store = FlakyStore(":result:A")

    async def run():
        await store.put_result("c1", _ok("A", "a-out"))
        await store.put_result("c1", _ok("B", "b-out"))
        return await accumulate_variables(store, "c1", {"base": True}, ["A", "B"])

    merged = asyncio.run(run())
    assert merged == {"B_output": "b-out", "base": True}
