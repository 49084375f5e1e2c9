"""Dependency resolver — builds the DAG and the batched execution plan."""

from __future__ import annotations

import logging
from collections import deque

from promptchain.errors import CycleError, MissingDependencyError, UnreachableBatchError
from promptchain.models import (
    DependencyGraph,
    DependencyNode,
    ExecutionPlan,
    ParallelBatch,
    Task,
    TaskGraph,
)

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Turns a task graph into a dependency graph and a Kahn-batched plan."""

    def plan(self, graph: TaskGraph) -> tuple[DependencyGraph, ExecutionPlan]:
        """Validate references, build the DAG and plan it. Raises PlanningError."""
        missing = graph.missing_dependencies()
        if missing:
            raise MissingDependencyError(missing)
        dep_graph = self.build_dependency_graph(graph)
        plan = self.create_execution_plan(dep_graph)
        logger.info(
            f"Planned graph '{graph.name or graph.id}': {plan.total_tasks} tasks in "
            f"{len(plan.batches)} batches, critical path {len(plan.critical_path)}"
        )
        return dep_graph, plan

    def build_dependency_graph(self, graph: TaskGraph) -> DependencyGraph:
        nodes: dict[str, DependencyNode] = {}
        edges: dict[str, list[str]] = {}

        for task in graph.tasks.values():
            nodes[task.id] = DependencyNode(
                id=task.id,
                task=task,
                dependencies=list(dict.fromkeys(task.dependencies)),
            )
            edges.setdefault(task.id, [])

        for node in nodes.values():
            for dep_id in node.dependencies:
                edges.setdefault(dep_id, []).append(node.id)
                dep_node = nodes.get(dep_id)
                if dep_node and node.id not in dep_node.dependents:
                    dep_node.dependents.append(node.id)

        self._assign_depths(nodes)

        roots = [nid for nid, n in nodes.items() if not n.dependencies]
        leaves = [nid for nid, n in nodes.items() if not n.dependents]
        return DependencyGraph(nodes=nodes, edges=edges, roots=roots, leaves=leaves)

    def create_execution_plan(self, dep_graph: DependencyGraph) -> ExecutionPlan:
        cycle = self.find_cycle(dep_graph)
        if cycle:
            raise CycleError(cycle)

        in_degree = {nid: len(n.dependencies) for nid, n in dep_graph.nodes.items()}
        scheduled: set[str] = set()
        batches: list[ParallelBatch] = []

        while len(scheduled) < len(dep_graph.nodes):
            current = [
                nid for nid in dep_graph.nodes
                if nid not in scheduled and in_degree[nid] == 0
            ]
            if not current:
                remaining = [nid for nid in dep_graph.nodes if nid not in scheduled]
                raise UnreachableBatchError(remaining)

            batches.append(ParallelBatch(batch_number=len(batches), task_ids=tuple(current)))
            for nid in current:
                scheduled.add(nid)
                for dependent in dep_graph.nodes[nid].dependents:
                    in_degree[dependent] -= 1

        return ExecutionPlan(
            batches=tuple(batches),
            total_tasks=len(dep_graph.nodes),
            max_parallelism=max((len(b.task_ids) for b in batches), default=0),
            critical_path=tuple(self.find_critical_path(dep_graph)),
        )

    def has_cycle(self, dep_graph: DependencyGraph) -> bool:
        return self.find_cycle(dep_graph) is not None

    def find_cycle(self, dep_graph: DependencyGraph) -> list[str] | None:
        """DFS over dependents. Returns the first cycle found, closed on its start node."""
        visited: set[str] = set()
        on_path: list[str] = []
        on_path_set: set[str] = set()

        # Roots first, then everything else to catch disconnected cyclic components
        start_order = list(dep_graph.roots) + [
            nid for nid in dep_graph.nodes if nid not in dep_graph.roots
        ]

        for start in start_order:
            if start in visited:
                continue
            stack = [(start, iter(dep_graph.nodes[start].dependents))]
            visited.add(start)
            on_path.append(start)
            on_path_set.add(start)

            while stack:
                node_id, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in dep_graph.nodes:
                        continue
                    if child in on_path_set:
                        # Back edge
                        return on_path[on_path.index(child):] + [child]
                    if child not in visited:
                        visited.add(child)
                        on_path.append(child)
                        on_path_set.add(child)
                        stack.append((child, iter(dep_graph.nodes[child].dependents)))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    on_path.pop()
                    on_path_set.discard(node_id)
        return None

    def find_critical_path(self, dep_graph: DependencyGraph) -> list[str]:
        """Longest root-to-leaf chain by node count. Ties keep the first-discovered root."""
        order = self._topological_order(dep_graph)
        longest: dict[str, list[str]] = {}

        for nid in reversed(order):
            best: list[str] = []
            for dependent in dep_graph.nodes[nid].dependents:
                path = longest[dependent]
                if len(path) > len(best):
                    best = path
            longest[nid] = [nid] + best

        critical: list[str] = []
        for root in dep_graph.roots:
            path = longest.get(root, [root])
            if len(path) > len(critical):
                critical = path
        return critical

    def get_ready_tasks(self, dep_graph: DependencyGraph, completed_ids) -> list[Task]:
        """Tasks not yet completed whose dependencies all are."""
        completed = set(completed_ids)
        return [
            node.task
            for nid, node in dep_graph.nodes.items()
            if nid not in completed and all(d in completed for d in node.dependencies)
        ]

    def validate_dependencies(self, graph: TaskGraph) -> tuple[bool, list[str]]:
        errors = [
            f'Task "{task_id}" references non-existent dependency: {dep_id}'
            for task_id, dep_id in graph.missing_dependencies()
        ]
        cycle = self.find_cycle(self.build_dependency_graph(graph))
        if cycle:
            errors.append(f"Dependency graph contains cycles: {' -> '.join(cycle)}")
        return not errors, errors

    def add_dependency(self, graph: TaskGraph, task_id: str, dependency_id: str) -> TaskGraph:
        """Add an edge, rolling back if it would create a cycle."""
        task = graph.get(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found")
        if graph.get(dependency_id) is None:
            raise KeyError(f"Dependency task {dependency_id} not found")
        if dependency_id in task.dependencies:
            return graph

        task.dependencies.append(dependency_id)
        cycle = self.find_cycle(self.build_dependency_graph(graph))
        if cycle:
            task.dependencies.remove(dependency_id)
            raise CycleError(cycle)
        return graph

    def visualize(self, dep_graph: DependencyGraph) -> str:
        lines = ["Dependency Graph:", "================", ""]
        by_depth: dict[int, list[DependencyNode]] = {}
        for node in dep_graph.nodes.values():
            by_depth.setdefault(node.depth, []).append(node)

        for depth in sorted(by_depth):
            lines.append(f"Level {depth}:")
            for node in by_depth[depth]:
                indent = "  " * depth
                deps = f" (depends on: {', '.join(node.dependencies)})" if node.dependencies else ""
                lines.append(f"{indent}- {node.task.title or node.id}{deps}")
            lines.append("")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _topological_order(self, dep_graph: DependencyGraph) -> list[str]:
        in_degree = {nid: len(n.dependencies) for nid, n in dep_graph.nodes.items()}
        ready = deque(nid for nid, deg in in_degree.items() if deg == 0)
        order: list[str] = []
        while ready:
            nid = ready.popleft()
            order.append(nid)
            for dependent in dep_graph.nodes[nid].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
        if len(order) < len(dep_graph.nodes):
            raise CycleError(self.find_cycle(dep_graph))
        return order

    def _assign_depths(self, nodes: dict[str, DependencyNode]):
        """Depth = longest path from any root. Nodes on a cycle keep a partial depth."""
        in_degree = {
            nid: sum(1 for d in n.dependencies if d in nodes) for nid, n in nodes.items()
        }
        ready = deque(nid for nid, deg in in_degree.items() if deg == 0)
        while ready:
            nid = ready.popleft()
            node = nodes[nid]
            for dependent in node.dependents:
                child = nodes[dependent]
                child.depth = max(child.depth, node.depth + 1)
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
