"""
Task graph model: subtasks, dependency edges and status.

Tasks are created in bulk from a decomposition, never deleted, and only the
scheduler changes their status. Every status change is recorded as a
``TaskTransition`` so an attempt history can be inspected afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from .errors import InvalidGraphError
from .roles import BaseRole, parse_role

logger = logging.getLogger(__name__)


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Interaction:
    role: str  # 'agent' | 'critique'
    content: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TaskTransition:
    from_status: TaskStatus
    to_status: TaskStatus
    reason: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Task:
    id: str
    title: str
    description: str
    role: BaseRole
    dependencies: tuple[str, ...] = ()
    agent_name_hint: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None
    retry_count: int = 0
    interactions: list[Interaction] = field(default_factory=list)
    transitions: list[TaskTransition] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def add_interaction(self, role: str, content: str) -> Interaction:
        interaction = Interaction(role=role, content=content)
        self.interactions.append(interaction)
        return interaction

    def transition(self, to_status: TaskStatus, reason: str) -> TaskTransition:
        if self.is_terminal:
            raise RuntimeError(f"Task {self.id} is already {self.status.value}")
        record = TaskTransition(from_status=self.status, to_status=to_status, reason=reason)
        self.transitions.append(record)
        self.status = to_status
        return record

    def visited(self, status: TaskStatus) -> bool:
        return any(t.to_status == status for t in self.transitions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "role": self.role.value,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "agent_name_hint": self.agent_name_hint,
            "result": self.result,
            "retry_count": self.retry_count,
            "interactions": [
                {"role": i.role, "content": i.content, "created_at": i.created_at.isoformat()}
                for i in self.interactions
            ],
            "transitions": [
                {
                    "from": t.from_status.value,
                    "to": t.to_status.value,
                    "reason": t.reason,
                    "created_at": t.created_at.isoformat(),
                }
                for t in self.transitions
            ],
        }


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class TaskProposal:
    """A subtask as returned by the decomposition call, before validation."""

    title: str
    description: str = ""
    role: str | None = None
    dependencies: list[str] = field(default_factory=list)
    id: str | None = None
    agent_name_hint: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskProposal:
        deps = data.get("dependencies") or []
        if not isinstance(deps, list):
            deps = []
        return cls(
            id=str(data["id"]) if data.get("id") not in (None, "") else None,
            title=str(data.get("title") or "Untitled task"),
            description=str(data.get("description") or ""),
            role=_optional_text(data.get("role") or data.get("assignedTo")),
            dependencies=[str(d) for d in deps],
            agent_name_hint=_optional_text(
                data.get("agent_name_hint") or data.get("dynamicAgentName")
            ),
        )


class TaskGraph:
    """Insertion-ordered set of tasks whose dependency edges form a DAG."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def add_tasks(self, tasks: Iterable[Task]) -> list[Task]:
        """Add tasks atomically; raise InvalidGraphError and change nothing if invalid."""
        new_tasks = list(tasks)

        combined: dict[str, Task] = dict(self._tasks)
        duplicates: list[str] = []
        for task in new_tasks:
            if task.id in combined:
                duplicates.append(task.id)
            combined[task.id] = task
        if duplicates:
            raise InvalidGraphError(
                f"Duplicate task ids: {', '.join(duplicates)}", offending=duplicates
            )

        dangling = [
            f"{task.id} -> {dep}"
            for task in new_tasks
            for dep in task.dependencies
            if dep not in combined
        ]
        if dangling:
            raise InvalidGraphError(
                f"Unknown dependency ids: {', '.join(dangling)}", offending=dangling
            )

        cycle = find_cycle(combined)
        if cycle:
            raise InvalidGraphError(
                f"Dependency cycle: {' -> '.join(cycle)}", offending=cycle
            )

        for task in new_tasks:
            self._tasks[task.id] = task
        return new_tasks

    def _dependencies_of(self, task: Task) -> list[Task]:
        return [self._tasks[dep] for dep in task.dependencies]

    def find_ready(self) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and all(dep.status == TaskStatus.COMPLETED for dep in self._dependencies_of(task))
        ]

    def find_blocked(self) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and any(dep.status == TaskStatus.FAILED for dep in self._dependencies_of(task))
        ]

    def is_resolved(self) -> bool:
        return all(task.is_terminal for task in self._tasks.values())

    def clear(self) -> None:
        self._tasks = {}

    def snapshot(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self._tasks.values()]


def find_cycle(tasks: dict[str, Task]) -> list[str] | None:
    """Return one dependency cycle as a list of ids, or None if the graph is acyclic."""
    WHITE, GRAY, BLACK = 0, 1, 2  # unvisited, in-progress, done
    color = {task_id: WHITE for task_id in tasks}

    def dfs(task_id: str, path: list[str]) -> list[str] | None:
        color[task_id] = GRAY
        path.append(task_id)
        for dep in tasks[task_id].dependencies:
            if dep not in tasks:
                continue
            if color[dep] == GRAY:
                return path[path.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = dfs(dep, path)
                if found:
                    return found
        path.pop()
        color[task_id] = BLACK
        return None

    for task_id in tasks:
        if color[task_id] == WHITE:
            cycle = dfs(task_id, [])
            if cycle:
                return cycle
    return None


def sanitize_proposals(proposals: Iterable[TaskProposal]) -> tuple[list[Task], list[str]]:
    """Turn raw decomposition output into tasks that form a valid DAG.

    Returns the tasks plus a human-readable note for every repair made.
    """
    proposals = list(proposals)
    notes: list[str] = []
    tasks: list[Task] = []
    seen: set[str] = set()
    # Explicit ids win over generated and renamed ones.
    reserved = {p.id for p in proposals if p.id}

    for index, proposal in enumerate(proposals, start=1):
        task_id = proposal.id or f"task-{index}"
        taken = seen if proposal.id else seen | reserved
        if task_id in taken:
            renamed = f"{task_id}-{index}"
            while renamed in seen or renamed in reserved:
                renamed = f"{renamed}-{index}"
            if proposal.id:
                notes.append(f"Duplicate task id {task_id}; renamed to {renamed}")
            task_id = renamed
        if proposal.id is None:
            notes.append(f"Task '{proposal.title}' had no id; assigned {task_id}")
        seen.add(task_id)

        role = parse_role(proposal.role)
        if proposal.role is None or role.value != str(proposal.role).strip().upper():
            notes.append(f"Task {task_id} has unknown role {proposal.role!r}; using {role.value}")

        tasks.append(
            Task(
                id=task_id,
                title=proposal.title,
                description=proposal.description,
                role=role,
                dependencies=tuple(dict.fromkeys(proposal.dependencies)),
                agent_name_hint=proposal.agent_name_hint,
            )
        )

    by_id = {task.id: task for task in tasks}
    for task in tasks:
        kept = tuple(dep for dep in task.dependencies if dep in by_id and dep != task.id)
        for dep in task.dependencies:
            if dep not in kept:
                notes.append(f"Dropped dependency {task.id} -> {dep}")
        task.dependencies = kept

    while True:
        cycle = find_cycle(by_id)
        if not cycle:
            break
        # cycle = [a, b, ..., a]; remove the edge closing it
        parent, child = cycle[-2], cycle[-1]
        parent_task = by_id[parent]
        parent_task.dependencies = tuple(d for d in parent_task.dependencies if d != child)
        notes.append(f"Broke dependency cycle by removing {parent} -> {child}")
        logger.warning("Cycle detected: %s", " -> ".join(cycle))

    return tasks, notes
