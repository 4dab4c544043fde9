"""Shared test fixtures and configuration for pytest."""

import asyncio
from collections import defaultdict

import pytest

from conductor.config import Settings
from conductor.events import EventEmitter
from conductor.intake import RequirementsDoc
from conductor.knowledge import KnowledgeBase
from conductor.registry import AgentRegistry
from conductor.roles import BaseRole
from conductor.services import (
    CritiqueVerdict,
    ExecutionOutcome,
    RequirementsReply,
    ServiceGateway,
)
from conductor.storage import InMemoryStore
from conductor.tasks import Task, TaskGraph, TaskProposal


class ScriptedService:
    """In-process LanguageModelService whose answers are queued per task.

    Anything not scripted succeeds: plans and results are derived from the
    task title and every critique approves.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.plan_feedback: dict[str, list[str]] = defaultdict(list)
        self.executed_plans: dict[str, list[str]] = defaultdict(list)
        self.plan_verdicts: dict[str, list[CritiqueVerdict]] = defaultdict(list)
        self.result_verdicts: dict[str, list[CritiqueVerdict]] = defaultdict(list)
        self.errors: dict[tuple[str, str], list[BaseException]] = defaultdict(list)
        self.delays: dict[str, float] = {}
        self.proposals: list[TaskProposal] = []
        self.replies: list[RequirementsReply | BaseException] = []
        self.seen_knowledge: dict[str, list[str]] = defaultdict(list)
        self.user_messages: list[str] = []

    def _record(self, call: str, key: str) -> None:
        self.calls.append((call, key))
        queue = self.errors.get((call, key))
        if queue:
            raise queue.pop(0)

    def count(self, call: str, key: str | None = None) -> int:
        return sum(1 for c, k in self.calls if c == call and (key is None or k == key))

    async def _maybe_sleep(self, task_id: str) -> None:
        delay = self.delays.get(task_id)
        if delay:
            await asyncio.sleep(delay)

    async def draft_requirements(self, transcript, current_draft, *, turn, max_turns):
        self._record("draft_requirements", str(turn))
        self.user_messages.append(transcript[-1].content)
        reply = self.replies.pop(0) if self.replies else None
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            reply = RequirementsReply(
                response_text="Which platform?",
                requirements=RequirementsDoc(user_story=transcript[-1].content),
                options=["Web", "Mobile"],
            )
        return reply

    async def decompose_requirements(self, requirements):
        self._record("decompose_requirements", "")
        return list(self.proposals)

    async def generate_plan(self, task, role_label, knowledge_excerpt, feedback):
        self._record("generate_plan", task.id)
        self.plan_feedback[task.id].append(feedback)
        self.seen_knowledge[task.id].append(knowledge_excerpt)
        await self._maybe_sleep(task.id)
        return f"Plan v{len(self.plan_feedback[task.id])} for {task.title}"

    async def critique_plan(self, task, plan, role_label):
        self._record("critique_plan", task.id)
        queue = self.plan_verdicts[task.id]
        return queue.pop(0) if queue else CritiqueVerdict(approved=True)

    async def execute_task(self, task, role_label, plan, knowledge_excerpt):
        self._record("execute_task", task.id)
        self.executed_plans[task.id].append(plan)
        await self._maybe_sleep(task.id)
        return ExecutionOutcome(result=f"Result of {task.title}", reasoning="followed the plan")

    async def critique_result(self, task, result):
        self._record("critique_result", task.id)
        queue = self.result_verdicts[task.id]
        return queue.pop(0) if queue else CritiqueVerdict(approved=True)


class FailingStore(InMemoryStore):
    """Store whose reads and/or writes raise."""

    def __init__(self, *, fail_load: bool = False, fail_save: bool = False) -> None:
        super().__init__()
        self.fail_load = fail_load
        self.fail_save = fail_save

    async def load(self, key):
        if self.fail_load:
            raise ConnectionError("storage offline")
        return await super().load(key)

    async def save(self, key, value):
        if self.fail_save:
            raise ConnectionError("storage offline")
        await super().save(key, value)


def make_task(
    task_id: str,
    title: str | None = None,
    *,
    role: BaseRole = BaseRole.SYNTHESIZER,
    deps: tuple[str, ...] = (),
    description: str = "",
    hint: str | None = None,
) -> Task:
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        description=description,
        role=role,
        dependencies=deps,
        agent_name_hint=hint,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(service_timeout_seconds=1.0, redis_events_enabled=False)


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter(run_id="test-run")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def service() -> ScriptedService:
    return ScriptedService()


@pytest.fixture
def gateway(service: ScriptedService, events: EventEmitter) -> ServiceGateway:
    return ServiceGateway(service, timeout_seconds=1.0, events=events)


@pytest.fixture
def registry(store: InMemoryStore, events: EventEmitter) -> AgentRegistry:
    return AgentRegistry(store, events=events)


@pytest.fixture
def knowledge() -> KnowledgeBase:
    return KnowledgeBase()


@pytest.fixture
def graph() -> TaskGraph:
    return TaskGraph()
