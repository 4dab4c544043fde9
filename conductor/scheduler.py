"""
Orchestration scheduler.

Drives the task graph to resolution: fails tasks whose dependencies failed,
claims ready tasks into worker slots, assigns each one a reused or
synthesized agent, runs the attempt state machine and applies the outcome
(knowledge base, registry, retry policy).
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

from .events import EventEmitter, EventType, Severity
from .knowledge import KnowledgeBase
from .lifecycle import AgentRun, AttemptResult, TaskAttempt
from .registry import AgentRegistry
from .roles import ActorType, actor_for_role, default_agent_label, resolve_role
from .services import ServiceGateway
from .tasks import Task, TaskGraph, TaskStatus

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "Orchestrator"


class Scheduler:
    def __init__(
        self,
        graph: TaskGraph,
        registry: AgentRegistry,
        gateway: ServiceGateway,
        knowledge: KnowledgeBase,
        events: EventEmitter,
        *,
        reuse_threshold: float = 0.5,
        max_plan_attempts: int = 3,
        max_task_retries: int = 2,
        max_workers: int = 1,
        plan_context_chars: int = 5000,
        execute_context_chars: int = 10000,
    ) -> None:
        if max_task_retries < 1:
            raise ValueError("max_task_retries must be at least 1")
        if max_plan_attempts < 1:
            raise ValueError("max_plan_attempts must be at least 1")
        self.graph = graph
        self.registry = registry
        self.gateway = gateway
        self.knowledge = knowledge
        self.events = events
        self.reuse_threshold = reuse_threshold
        self.max_plan_attempts = max_plan_attempts
        self.max_task_retries = max_task_retries
        self.max_workers = max(1, max_workers)
        self.plan_context_chars = plan_context_chars
        self.execute_context_chars = execute_context_chars

        self.agents: list[AgentRun] = []
        self._inflight: dict[asyncio.Task[None], Task] = {}
        self._cancelled = False

    @classmethod
    def from_settings(
        cls,
        graph: TaskGraph,
        registry: AgentRegistry,
        gateway: ServiceGateway,
        knowledge: KnowledgeBase,
        events: EventEmitter,
        settings: Settings,
    ) -> Scheduler:
        return cls(
            graph,
            registry,
            gateway,
            knowledge,
            events,
            reuse_threshold=settings.reuse_threshold,
            max_plan_attempts=settings.max_plan_attempts,
            max_task_retries=settings.max_task_retries,
            max_workers=settings.max_workers,
            plan_context_chars=settings.plan_context_chars,
            execute_context_chars=settings.execute_context_chars,
        )

    @property
    def active_agents(self) -> list[AgentRun]:
        return [agent for agent in self.agents if agent.status == "active"]

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(self) -> list[Task]:
        """Schedule until every task is completed or failed (or until cancelled)."""
        self._cancelled = False
        try:
            while not self._cancelled:
                await self._fail_blocked()
                if self._cancelled or self.graph.is_resolved():
                    break

                self._fill_slots()
                if not self._inflight:
                    stuck = [t.id for t in self.graph.tasks if not t.is_terminal]
                    logger.warning("No schedulable tasks left; unresolved: %s", ", ".join(stuck))
                    break

                done, _ = await asyncio.wait(
                    set(self._inflight), return_when=asyncio.FIRST_COMPLETED
                )
                for worker in done:
                    self._inflight.pop(worker, None)
                    if not worker.cancelled():
                        worker.result()
        finally:
            await self._drain()
        return self.graph.tasks

    async def step(self) -> Task | None:
        """Run the first ready task through one attempt; None when nothing is ready."""
        await self._fail_blocked()
        ready = self.graph.find_ready()
        if not ready:
            return None
        task = ready[0]
        self._claim(task)
        await self._run_task(task)
        return task

    async def cancel(self) -> None:
        """Stop scheduling new work and cancel in-flight attempts."""
        self._cancelled = True
        for worker in list(self._inflight):
            worker.cancel()
        await self._drain()

    async def _drain(self) -> None:
        workers = dict(self._inflight)
        for worker in workers:
            if not worker.done():
                worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        # A worker cancelled before it started never released its claim.
        for task in workers.values():
            if not task.is_terminal and task.status != TaskStatus.PENDING:
                task.transition(TaskStatus.PENDING, "attempt cancelled")
        self._inflight.clear()

    def _fill_slots(self) -> None:
        if self._cancelled:
            return
        for task in self.graph.find_ready():
            if len(self._inflight) >= self.max_workers:
                break
            self._claim(task)
            worker = asyncio.create_task(self._run_task(task), name=f"task:{task.id}")
            self._inflight[worker] = task

    def _claim(self, task: Task) -> None:
        # Synchronous so no other worker can pick the same task.
        task.transition(TaskStatus.IN_PROGRESS, "claimed by worker")

    async def _fail_blocked(self) -> None:
        # A failure can cascade down a dependency chain.
        blocked = self.graph.find_blocked()
        while blocked:
            for task in blocked:
                failed_deps = [
                    dep
                    for dep in task.dependencies
                    if (dep_task := self.graph.get(dep)) and dep_task.status == TaskStatus.FAILED
                ]
                task.add_interaction(
                    "critique", f"Blocked by failed dependency: {', '.join(failed_deps)}"
                )
                task.transition(TaskStatus.FAILED, "dependency failed")
                await self.events.log(
                    EventType.TASK_BLOCKED,
                    ActorType.ORCHESTRATOR,
                    ORCHESTRATOR_NAME,
                    f"Task {task.title} blocked by failed dependency. Marking failed.",
                    Severity.ERROR,
                    task_id=task.id,
                )
            blocked = self.graph.find_blocked()

    async def _assign(self, task: Task) -> AgentRun:
        match = self.registry.find_match(task)
        role_text = resolve_role(task.role).get("description", task.role.value)

        if match is not None and match.score >= self.reuse_threshold:
            stored = match.agent
            agent = AgentRun(
                id=f"run_{uuid4().hex[:8]}",
                name=stored.name,
                parent_role=task.role,
                role_text=role_text,
                task_id=task.id,
                system_prompt=stored.system_prompt,
                registry_id=stored.id,
                is_reused=True,
                reuse_score=match.score,
            )
            await self.events.log(
                EventType.AGENT_REUSED,
                ActorType.ORCHESTRATOR,
                ORCHESTRATOR_NAME,
                f"Reusing existing agent: {stored.name} ({round(match.score * 100)}% match: {match.reason})",
                Severity.SUCCESS,
                task_id=task.id,
            )
        else:
            name = task.agent_name_hint or default_agent_label(task.role)
            agent = AgentRun(
                id=f"run_{uuid4().hex[:8]}",
                name=name,
                parent_role=task.role,
                role_text=role_text,
                task_id=task.id,
                system_prompt=f"You are {name}. Parent: {task.role.value}.",
            )
            await self.events.log(
                EventType.AGENT_SPAWNED,
                actor_for_role(task.role),
                task.role.value,
                f"Spawning new agent: {name}",
                task_id=task.id,
            )

        self.agents.append(agent)
        return agent

    async def _run_task(self, task: Task) -> None:
        agent: AgentRun | None = None
        try:
            agent = await self._assign(task)
            attempt = TaskAttempt(
                task,
                agent,
                self.gateway,
                self.knowledge,
                self.events,
                max_plan_attempts=self.max_plan_attempts,
                plan_context_chars=self.plan_context_chars,
                execute_context_chars=self.execute_context_chars,
            )
            result = await attempt.run()
        except asyncio.CancelledError:
            if agent is not None:
                agent.status = "terminated"
            if not task.is_terminal:
                task.transition(TaskStatus.PENDING, "attempt cancelled")
            raise
        except Exception as exc:
            logger.exception("Attempt for task %s crashed", task.id)
            result = AttemptResult(outcome="failed", plan_attempts=0, reason=f"unexpected error: {exc}")

        if result.succeeded and agent is not None:
            await self._complete(task, agent, result)
        else:
            await self._fail_attempt(task, agent, result.reason or "attempt failed")

    async def _complete(self, task: Task, agent: AgentRun, result: AttemptResult) -> None:
        task.result = result.result
        task.transition(TaskStatus.COMPLETED, "result approved")
        agent.status = "completed"
        await self.knowledge.append_result(task.title, result.result or "")

        if agent.is_reused and agent.registry_id:
            updated = await self.registry.update_metrics(agent.registry_id, True)
            if updated is not None:
                await self.events.log(
                    EventType.AGENT_METRICS_UPDATED,
                    ActorType.ORCHESTRATOR,
                    ORCHESTRATOR_NAME,
                    f"Updated metrics for {updated.name}: usage {updated.usage_count}, "
                    f"success {updated.success_rate:.0%}",
                    task_id=task.id,
                )
        else:
            registered = await self.registry.register(task, agent.name, agent.system_prompt)
            agent.registry_id = registered.id
            await self.events.log(
                EventType.AGENT_REGISTERED,
                ActorType.ORCHESTRATOR,
                ORCHESTRATOR_NAME,
                f"Registered new agent: {registered.name} for future reuse",
                Severity.SUCCESS,
                task_id=task.id,
            )

    async def _fail_attempt(self, task: Task, agent: AgentRun | None, reason: str) -> None:
        if agent is not None:
            agent.status = "terminated"
            if agent.is_reused and agent.registry_id:
                await self.registry.update_metrics(agent.registry_id, False)

        task.retry_count += 1
        if task.retry_count < self.max_task_retries:
            task.add_interaction(
                "critique", f"Attempt {task.retry_count} failed: {reason}. Retrying."
            )
            task.transition(TaskStatus.PENDING, reason)
            await self.events.log(
                EventType.TASK_RETRYING,
                ActorType.ORCHESTRATOR,
                ORCHESTRATOR_NAME,
                f"Retrying task {task.title} (attempt {task.retry_count + 1}/{self.max_task_retries})",
                Severity.WARNING,
                task_id=task.id,
            )
            return

        task.add_interaction("critique", f"Task failed after {task.retry_count} attempts: {reason}")
        task.transition(TaskStatus.FAILED, reason)
        await self.events.log(
            EventType.TASK_FAILED,
            ActorType.ORCHESTRATOR,
            ORCHESTRATOR_NAME,
            f"Task {task.title} failed: {reason}",
            Severity.ERROR,
            task_id=task.id,
        )
