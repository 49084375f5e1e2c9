"""Command-line interface: plan or run a task graph file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from promptchain.config import EVENT_LOG, STORE_PATH, EngineConfig
from promptchain.context_store import create_store
from promptchain.errors import PlanningError
from promptchain.events import CHAIN_PROGRESS, CLARIFICATION_NEEDED, EventBus
from promptchain.models import Feedback, TaskGraph
from promptchain.orchestrator import ChainOrchestrator
from promptchain.resolver import DependencyResolver

console = Console()
logger = logging.getLogger(__name__)


def load_graph(path: Path) -> TaskGraph:
    with open(path) as f:
        return TaskGraph.from_dict(json.load(f))


def print_plan(graph: TaskGraph, resolver: DependencyResolver):
    dep_graph, plan = resolver.plan(graph)

    table = Table(show_header=True, header_style="bold magenta", title=f"Execution Plan: {graph.name or graph.id}")
    table.add_column("Batch", style="cyan")
    table.add_column("Tasks", style="green")
    for batch in plan.batches:
        table.add_row(str(batch.batch_number), ", ".join(batch.task_ids))
    console.print(table)

    console.print(f"\n[bold]Total tasks:[/bold] {plan.total_tasks}")
    console.print(f"[bold]Max parallelism:[/bold] {plan.max_parallelism}")
    console.print(f"[bold]Critical path:[/bold] {' -> '.join(plan.critical_path)}")
    console.print(Panel(resolver.visualize(dep_graph), title="Dependency Graph"))


def print_state(state: dict):
    color = "green" if state["status"] == "completed" else "red"
    console.print(Panel(
        f"[bold]Status:[/bold] [{color}]{state['status']}[/{color}]\n"
        f"[bold]Progress:[/bold] {state['progress']}% "
        f"({state['completed_tasks']}/{state['total_tasks']} tasks)\n"
        f"[bold]Error:[/bold] {state['error'] or 'none'}",
        title=f"Chain {state['id']}",
    ))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Task", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Attempts", style="yellow")
    table.add_column("Capability", style="blue")
    table.add_column("Note")
    for task_id, task in state["tasks"].items():
        result = state["results"].get(task_id) or {}
        history = state["correction_histories"].get(task_id) or {}
        note = result.get("warning") or result.get("error") or ""
        table.add_row(
            task_id,
            task["status"],
            str(history.get("total_attempts", "")),
            (result.get("metadata") or {}).get("capability_name", ""),
            note[:80],
        )
    console.print(table)


async def _answer_clarifications(orchestrator: ChainOrchestrator, chain_id: str, queue: asyncio.Queue):
    """Ask the operator on the terminal whenever a task escalates."""
    while True:
        event = await queue.get()
        if event.type != CLARIFICATION_NEEDED:
            continue
        data = event.data
        console.print(Panel(
            f"{data['question']}\n\n" + "\n".join(data["findings"]),
            title=f"Task {data['task_id']} needs input ({data['attempts']} attempts)",
            style="yellow",
        ))
        kind = await asyncio.to_thread(
            Prompt.ask, "Feedback kind", choices=["clarification", "manual_artifact", "skip", "retry"],
            default="clarification",
        )
        content = ""
        if kind in ("clarification", "manual_artifact"):
            content = await asyncio.to_thread(Prompt.ask, "Content")
        orchestrator.provide_feedback(chain_id, data["task_id"], Feedback(kind=kind, content=content))


async def run_graph(graph: TaskGraph, echo: bool = False, interactive: bool = False) -> dict:
    config = EngineConfig()
    capability = None
    if echo:
        from promptchain.providers.echo import EchoCapability
        capability = EchoCapability()

    orchestrator = ChainOrchestrator(
        capability,
        config=config,
        store=create_store(STORE_PATH, ttl=config.context_ttl),
        event_bus=EventBus(Path(EVENT_LOG) if EVENT_LOG else None),
    )
    chain_id = orchestrator.submit(graph)
    queue = orchestrator.subscribe(chain_id)
    helper = None
    if interactive:
        helper = asyncio.create_task(
            _answer_clarifications(orchestrator, chain_id, orchestrator.subscribe(chain_id))
        )

    try:
        await orchestrator.start(chain_id)
        driver = orchestrator.registry.get_driver(chain_id)
        last_progress = -1
        while driver and not driver.done():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            if event.type == CHAIN_PROGRESS and event.data["progress"] != last_progress:
                last_progress = event.data["progress"]
                console.print(f"[dim]progress {last_progress}%[/dim]")
        return await orchestrator.wait(chain_id)
    finally:
        if helper:
            helper.cancel()
        orchestrator.unsubscribe(queue)
        await orchestrator.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="promptchain", description="Prompt-chain execution engine")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    plan_cmd = sub.add_parser("plan", help="Show the execution plan for a graph file")
    plan_cmd.add_argument("graph", type=Path)

    run_cmd = sub.add_parser("run", help="Execute a graph file")
    run_cmd.add_argument("graph", type=Path)
    run_cmd.add_argument("--echo", action="store_true", help="Use the offline echo capability")
    run_cmd.add_argument("--interactive", action="store_true", help="Answer escalations on the terminal")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    graph = load_graph(args.graph)

    if args.command == "plan":
        try:
            print_plan(graph, DependencyResolver())
        except PlanningError as e:
            console.print(f"[red]Planning failed:[/red] {e}")
            return 1
        return 0

    state = asyncio.run(run_graph(graph, echo=args.echo, interactive=args.interactive))
    print_state(state)
    return 0 if state["status"] == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
