"""Test HumanInTheLoop pause/feedback handling."""

import asyncio

import pytest

from conftest import FakeClock
from promptchain.errors import EscalationCancelled, EscalationTimeout
from promptchain.escalation import GENERIC_QUESTION, QUESTIONS, HumanInTheLoop, dominant_category
from promptchain.events import CLARIFICATION_NEEDED, EXECUTION_RESUMED, TASK_PAUSED, EventBus
from promptchain.models import (
    CorrectionAttempt,
    CorrectionHistory,
    Feedback,
    Finding,
    Task,
    ValidationOutcome,
)


def _history(categories=("type", "type", "import")):
    findings = [Finding(category=c, message=f"{c} problem") for c in categories]
    return CorrectionHistory(task_id="T", chain_id="c1", attempts=[
        CorrectionAttempt(
            attempt_number=n,
            prompt="p",
            output=f"attempt {n}",
            validation=ValidationOutcome(passed=False, findings=findings),
            successful=False,
        )
        for n in (1, 2, 3)
    ], disposition="escalated")


def test_dominant_category():
    assert dominant_category(["type", "import", "type"]) == "type"
    assert dominant_category(["import", "type"]) == "import"
    assert dominant_category([]) is None


def test_clarification_request_content():
    hitl = HumanInTheLoop()
    request = hitl.build_clarification_request("c1", "T", _history())
    assert request.question.endswith(QUESTIONS["type"])
    assert request.attempted_artifact == "attempt 3"
    assert request.findings == ["[type] type problem", "[type] type problem", "[import] import problem"]
    assert request.attempts == 3

    request = hitl.build_clarification_request("c1", "T", _history(("lint",)))
    assert request.question.endswith(GENERIC_QUESTION)


def test_timeout_raises_and_drops_pause():
    bus = EventBus()
    hitl = HumanInTheLoop(bus)

    with pytest.raises(EscalationTimeout) as exc:
        asyncio.run(hitl.pause_for_clarification("c1", Task(id="T"), _history(), timeout=0.01))
    assert exc.value.task_id == "T"
    assert exc.value.category == "escalation_timeout"
    assert hitl.get_paused_tasks("c1") == []
    assert [e.type for e in bus.recent()] == [TASK_PAUSED, CLARIFICATION_NEEDED]


def test_feedback_resumes_waiting_task():
    bus = EventBus()
    hitl = HumanInTheLoop(bus, timeout=5)

    async def run():
        waiter = asyncio.create_task(hitl.pause_for_clarification("c1", Task(id="T"), _history()))
        await asyncio.sleep(0)
        assert hitl.is_waiting("c1", "T")
        assert [p.task_id for p in hitl.get_paused_tasks("c1")] == ["T"]
        delivered = hitl.provide_feedback("c1", "T", Feedback(kind="clarification", content="use int"))
        return delivered, await waiter

    delivered, feedback = asyncio.run(run())
    assert delivered
    assert feedback.content == "use int"
    assert not hitl.is_waiting("c1", "T")

    paused = hitl.get_paused_task("c1", "T")
    assert paused.resolved
    assert not paused.awaiting_input
    assert paused.feedback.kind == "clarification"
    assert hitl.get_paused_tasks("c1") == []

    resumed = bus.recent(limit=1)[0]
    assert resumed.type == EXECUTION_RESUMED
    assert resumed.data["resumed_with"] == "clarification"


def test_feedback_for_task_not_waiting_is_rejected():
    hitl = HumanInTheLoop()
    assert not hitl.provide_feedback("c1", "nobody", Feedback(kind="retry"))


def test_feedback_is_delivered_once():
    hitl = HumanInTheLoop(timeout=5)

    async def run():
        waiter = asyncio.create_task(hitl.pause_for_clarification("c1", Task(id="T"), _history()))
        await asyncio.sleep(0)
        first = hitl.provide_feedback("c1", "T", Feedback(kind="retry"))
        second = hitl.provide_feedback("c1", "T", Feedback(kind="skip"))
        return first, second, await waiter

    first, second, feedback = asyncio.run(run())
    assert first and not second
    assert feedback.kind == "retry"


def test_cancel_chain_interrupts_waits():
    hitl = HumanInTheLoop(timeout=5)

    async def run():
        waiters = [
            asyncio.create_task(hitl.pause_for_clarification("c1", Task(id=tid), _history()))
            for tid in ("T1", "T2")
        ]
        other = asyncio.create_task(hitl.pause_for_clarification("c2", Task(id="T1"), _history()))
        await asyncio.sleep(0)
        count = hitl.cancel_chain("c1")
        outcomes = await asyncio.gather(*waiters, return_exceptions=True)
        still_waiting = hitl.is_waiting("c2", "T1")
        hitl.cancel_chain("c2")
        await asyncio.gather(other, return_exceptions=True)
        return count, outcomes, still_waiting

    count, outcomes, still_waiting = asyncio.run(run())
    assert count == 2
    assert all(isinstance(o, EscalationCancelled) for o in outcomes)
    assert still_waiting


def test_intervention_stats_and_clear_resolved():
    clock = FakeClock()
    hitl = HumanInTheLoop(timeout=5, clock=clock)

    async def run():
        waiter = asyncio.create_task(hitl.pause_for_clarification("c1", Task(id="T"), _history()))
        await asyncio.sleep(0)
        clock.advance(30)
        hitl.provide_feedback("c1", "T", Feedback(kind="retry"))
        await waiter

    asyncio.run(run())
    stats = hitl.intervention_stats()
    assert stats == {"total_paused": 1, "awaiting_input": 0, "resolved": 1, "average_wait_time": 30}

    assert hitl.clear_resolved(older_than=3600) == 0
    clock.advance(4000)
    assert hitl.clear_resolved(older_than=3600) == 1
    assert hitl.intervention_stats()["total_paused"] == 0


def test_clarification_event_carries_request():
    bus = EventBus()
    hitl = HumanInTheLoop(bus, timeout=0)

    with pytest.raises(EscalationTimeout):
        asyncio.run(hitl.pause_for_clarification("c1", Task(id="T"), _history()))

    event = next(e for e in bus.recent() if e.type == CLARIFICATION_NEEDED)
    assert event.chain_id == "c1"
    assert "chain_id" not in event.data
    assert event.data["task_id"] == "T"
    assert event.data["question"].endswith(QUESTIONS["type"])
    assert event.data["attempts"] == 3


def test_clarification_request_prefers_extracted_artifact():
    history = _history()
    history.attempts[-1].artifact = "def f(x: int) -> int: ..."
    request = HumanInTheLoop().build_clarification_request("c1", "T", history)
    assert request.attempted_artifact == "def f(x: int) -> int: ..."

    history.attempts[-1].artifact = None
    request = HumanInTheLoop().build_clarification_request("c1", "T", history)
    assert request.attempted_artifact == "attempt 3"
