"""Test core data structures."""

import pytest

from promptchain.models import (
    Chain,
    CorrectionAttempt,
    CorrectionHistory,
    Feedback,
    Finding,
    Result,
    Task,
    TaskGraph,
    ValidationOutcome,
    generate_id,
)


def test_generate_id():
    id1 = generate_id()
    id2 = generate_id()
    assert len(id1) == 12
    assert id1 != id2


def test_task_defaults():
    task = Task(title="test task")
    assert task.status == "pending"
    assert task.dependencies == []
    assert task.is_atomic
    assert task.id  # auto-generated


def test_task_graph():
    graph = TaskGraph()
    a = Task(id="a", title="first")
    b = Task(id="b", title="second", dependencies=["a", "z"])
    graph.add(a)
    graph.add(b)

    assert graph.root_id == "a"  # first task added becomes the root
    assert graph.root is a
    assert graph.get("b") is b
    assert graph.get("c") is None
    assert graph.missing_dependencies() == [("b", "z")]


def test_task_graph_from_dict_accepts_list_or_mapping():
    as_list = TaskGraph.from_dict({
        "name": "g",
        "tasks": [
            {"id": "a", "type": "python"},
            {"id": "b", "dependencies": ["a"], "prompt": "use {{a_output}}"},
        ],
    })
    assert as_list.name == "g"
    assert as_list.get("a").kind == "python"
    assert as_list.get("b").dependencies == ["a"]

    as_mapping = TaskGraph.from_dict({
        "root_id": "b",
        "tasks": {"a": {"title": "A"}, "b": {"title": "B", "children": ["a"]}},
    })
    assert as_mapping.root_id == "b"
    assert not as_mapping.get("b").is_atomic
    assert [t.id for t in as_mapping.atomic_tasks()] == ["a"]


def test_result_round_trip_through_dict():
    result = Result(task_id="a", status="success", output="out", artifact="code", warning="w")
    restored = Result.from_dict(result.to_dict())
    assert restored.ok
    assert restored.id == result.id
    assert restored.artifact == "code"
    assert restored.warning == "w"
    assert not Result(task_id="a", status="failure").ok


def test_correction_history_helpers():
    history = CorrectionHistory(task_id="a")
    assert history.total_attempts == 0
    assert history.last_attempt is None
    assert history.successful_attempt is None

    history.attempts.append(CorrectionAttempt(
        attempt_number=1, prompt="p", output="o", validation=None, successful=False,
    ))
    history.attempts.append(CorrectionAttempt(
        attempt_number=2, prompt="p", output="o",
        validation=ValidationOutcome(passed=True), successful=True,
    ))
    assert history.total_attempts == 2
    assert history.successful_attempt == 2
    assert history.attempts[0].findings == []
    assert history.to_dict()["attempts"][0]["validation"] is None


def test_feedback_kind_is_checked():
    assert Feedback(kind="skip").content == ""
    with pytest.raises(ValueError):
        Feedback(kind="ignore")


def test_finding_label():
    assert Finding(category="type", message="bad").label() == "[type] bad"


def test_chain_counts_only_atomic_tasks():
    graph = TaskGraph.from_dict({"tasks": [
        {"id": "parent", "children": ["a", "b"]},
        {"id": "a", "parent_id": "parent"},
        {"id": "b", "parent_id": "parent"},
    ]})
    chain = Chain(graph=graph)
    chain.results["parent"] = Result(task_id="parent", status="success")
    chain.results["a"] = Result(task_id="a", status="success")
    chain.results["b"] = Result(task_id="b", status="failure")

    data = chain.to_dict()
    assert data["completed_tasks"] == 1
    assert data["total_tasks"] == 2
    assert data["status"] == "pending"
    assert not chain.is_terminal
    chain.status = "failed"
    assert chain.is_terminal
