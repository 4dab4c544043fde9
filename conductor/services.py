"""
Language-model service contract and the gateway that guards every call.

The core never talks to a model directly. It goes through ``ServiceGateway``,
which applies a per-call timeout and the fallback policy for that call type:

* critique calls fail open (approved, with a warning event),
* plan / execute calls raise ``PhaseFailure`` so the scheduler records a failed attempt,
* decomposition raises ``DecompositionError``,
* requirements drafting raises ``ServiceError`` to the intake loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeVar

from .errors import DecompositionError, PhaseFailure, ServiceError
from .events import EventEmitter, EventType, Severity
from .roles import ActorType

if TYPE_CHECKING:
    from .intake import ChatMessage, RequirementsDoc
    from .tasks import Task, TaskProposal

logger = logging.getLogger(__name__)

T = TypeVar("T")

PLAN_CRITIQUE_FALLBACK = "Critique service unavailable, proceeding."
RESULT_CRITIQUE_FALLBACK = "Critique service unavailable."


@dataclass
class CritiqueVerdict:
    approved: bool
    feedback: str = ""
    fallback: bool = False


@dataclass
class ExecutionOutcome:
    result: str
    reasoning: str = ""


@dataclass
class RequirementsReply:
    response_text: str
    requirements: RequirementsDoc
    options: list[str] = field(default_factory=list)


class LanguageModelService(Protocol):
    async def draft_requirements(
        self,
        transcript: list[ChatMessage],
        current_draft: RequirementsDoc | None,
        *,
        turn: int,
        max_turns: int,
    ) -> RequirementsReply: ...

    async def decompose_requirements(self, requirements: RequirementsDoc) -> list[TaskProposal]: ...

    async def generate_plan(
        self, task: Task, role_label: str, knowledge_excerpt: str, feedback: str
    ) -> str: ...

    async def critique_plan(self, task: Task, plan: str, role_label: str) -> CritiqueVerdict: ...

    async def execute_task(
        self, task: Task, role_label: str, plan: str, knowledge_excerpt: str
    ) -> ExecutionOutcome: ...

    async def critique_result(self, task: Task, result: str) -> CritiqueVerdict: ...


class ServiceGateway:
    """Timeout + fallback wrapper around a ``LanguageModelService``."""

    def __init__(
        self,
        service: LanguageModelService,
        *,
        timeout_seconds: float | None = 120.0,
        events: EventEmitter | None = None,
    ) -> None:
        self.service = service
        self.timeout_seconds = timeout_seconds
        self._events = events

    async def _call(self, name: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise ServiceError(f"{name} timed out after {self.timeout_seconds}s") from exc
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(f"{name} failed: {exc}") from exc

    async def _fallback(self, task: Task, message: str) -> None:
        logger.warning("%s (task %s)", message, task.id)
        if self._events is not None:
            await self._events.log(
                EventType.SERVICE_FALLBACK,
                ActorType.CRITIQUE,
                "Sentinel",
                message,
                Severity.WARNING,
                task_id=task.id,
            )

    async def draft_requirements(
        self,
        transcript: list[ChatMessage],
        current_draft: RequirementsDoc | None,
        *,
        turn: int,
        max_turns: int,
    ) -> RequirementsReply:
        return await self._call(
            "draft_requirements",
            self.service.draft_requirements(
                transcript, current_draft, turn=turn, max_turns=max_turns
            ),
        )

    async def decompose(self, requirements: RequirementsDoc) -> list[TaskProposal]:
        try:
            proposals = await self._call(
                "decompose_requirements", self.service.decompose_requirements(requirements)
            )
        except ServiceError as exc:
            raise DecompositionError(str(exc)) from exc
        if not proposals:
            raise DecompositionError("Decomposition returned no tasks")
        return list(proposals)

    async def generate_plan(
        self, task: Task, role_label: str, knowledge_excerpt: str, feedback: str
    ) -> str:
        try:
            plan = await self._call(
                "generate_plan",
                self.service.generate_plan(task, role_label, knowledge_excerpt, feedback),
            )
        except ServiceError as exc:
            raise PhaseFailure("planning", str(exc)) from exc
        if not plan or not plan.strip():
            raise PhaseFailure("planning", "plan service returned an empty plan")
        return plan

    async def critique_plan(self, task: Task, plan: str, role_label: str) -> CritiqueVerdict:
        try:
            return await self._call(
                "critique_plan", self.service.critique_plan(task, plan, role_label)
            )
        except ServiceError as exc:
            await self._fallback(task, f"Plan critique unavailable ({exc}); auto-approving")
            return CritiqueVerdict(approved=True, feedback=PLAN_CRITIQUE_FALLBACK, fallback=True)

    async def execute_task(
        self, task: Task, role_label: str, plan: str, knowledge_excerpt: str
    ) -> ExecutionOutcome:
        try:
            return await self._call(
                "execute_task",
                self.service.execute_task(task, role_label, plan, knowledge_excerpt),
            )
        except ServiceError as exc:
            raise PhaseFailure("execution", str(exc)) from exc

    async def critique_result(self, task: Task, result: str) -> CritiqueVerdict:
        try:
            return await self._call("critique_result", self.service.critique_result(task, result))
        except ServiceError as exc:
            await self._fallback(task, f"Result critique unavailable ({exc}); auto-approving")
            return CritiqueVerdict(approved=True, feedback=RESULT_CRITIQUE_FALLBACK, fallback=True)
