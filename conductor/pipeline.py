"""
End-to-end workflow: requirements intake -> decomposition -> scheduled execution.

``Pipeline`` owns one run's in-memory state (transcript, task graph, agent
views, event log) plus the long-lived knowledge base and registry that are
handed to it.
"""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import Any

from .config import Settings
from .errors import DecompositionError, InvalidGraphError
from .events import EventEmitter, EventType, Severity
from .intake import ChatMessage, IntakeLoop, RequirementsDoc
from .knowledge import KnowledgeBase
from .registry import AgentRegistry
from .roles import ActorType
from .scheduler import Scheduler
from .services import LanguageModelService, ServiceGateway
from .storage import KeyValueStore
from .tasks import Task, TaskGraph, sanitize_proposals

logger = logging.getLogger(__name__)

PLANNER_NAME = "Master Planner"


class WorkflowState(StrEnum):
    REFLECTING = "REFLECTING"
    ORCHESTRATING = "ORCHESTRATING"
    EXECUTING = "EXECUTING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"


class Pipeline:
    def __init__(
        self,
        gateway: ServiceGateway,
        registry: AgentRegistry,
        *,
        settings: Settings | None = None,
        events: EventEmitter | None = None,
        knowledge: KnowledgeBase | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.events = events or EventEmitter()
        self.gateway = gateway
        self.registry = registry
        self.knowledge = knowledge or KnowledgeBase()
        self.graph = TaskGraph()
        self.intake = IntakeLoop(gateway, self.events, max_turns=self.settings.max_intake_turns)
        self.scheduler = Scheduler.from_settings(
            self.graph, registry, gateway, self.knowledge, self.events, self.settings
        )
        self.state = WorkflowState.REFLECTING
        self.error: str | None = None

    @classmethod
    async def create(
        cls,
        service: LanguageModelService,
        store: KeyValueStore,
        *,
        settings: Settings | None = None,
        events: EventEmitter | None = None,
        knowledge: KnowledgeBase | None = None,
    ) -> Pipeline:
        """Build a pipeline around a model service and load the registry once."""
        settings = settings or Settings()
        events = events or EventEmitter()
        gateway = ServiceGateway(
            service, timeout_seconds=settings.service_timeout_seconds, events=events
        )
        registry = AgentRegistry.from_settings(store, settings, events)
        await registry.load()
        return cls(gateway, registry, settings=settings, events=events, knowledge=knowledge)

    @property
    def requirements(self) -> RequirementsDoc | None:
        return self.intake.requirements

    async def submit_message(self, text: str) -> ChatMessage:
        """Feed one user turn to the intake loop; advances to ORCHESTRATING when complete."""
        reply = await self.intake.submit(text)
        if self.intake.is_complete:
            self.state = WorkflowState.ORCHESTRATING
        return reply

    async def decompose(self) -> list[Task]:
        requirements = self.intake.requirements
        if requirements is None or not requirements.is_complete:
            raise RuntimeError("Requirements must be finalized before decomposition")

        self.state = WorkflowState.ORCHESTRATING
        await self.events.log(
            EventType.DECOMPOSITION_STARTED,
            ActorType.ORCHESTRATOR,
            PLANNER_NAME,
            "Breaking down requirements into tasks...",
        )

        try:
            proposals = await self.gateway.decompose(requirements)
            tasks, notes = sanitize_proposals(proposals)
            for note in notes:
                logger.warning(note)
                await self.events.log(
                    EventType.GRAPH_SANITIZED,
                    ActorType.ORCHESTRATOR,
                    PLANNER_NAME,
                    note,
                    Severity.WARNING,
                )
            self.graph.add_tasks(tasks)
        except (DecompositionError, InvalidGraphError) as exc:
            self.state = WorkflowState.FAILED
            self.error = exc.format_message()
            await self.events.log(
                EventType.DECOMPOSITION_FAILED,
                ActorType.ORCHESTRATOR,
                PLANNER_NAME,
                f"Decomposition failed: {self.error}",
                Severity.ERROR,
            )
            raise

        await self.events.log(
            EventType.DECOMPOSITION_COMPLETED,
            ActorType.ORCHESTRATOR,
            PLANNER_NAME,
            f"Created {len(tasks)} high-level tasks.",
            Severity.SUCCESS,
            details=json.dumps([t.to_dict() for t in tasks], indent=2),
        )
        self.state = WorkflowState.EXECUTING
        return tasks

    async def execute(self) -> list[Task]:
        if self.state != WorkflowState.EXECUTING:
            raise RuntimeError(f"Cannot execute from state {self.state.value}")

        await self.events.log(
            EventType.RUN_STARTED,
            ActorType.ORCHESTRATOR,
            PLANNER_NAME,
            f"Executing {len(self.graph)} tasks.",
        )
        tasks = await self.scheduler.run()
        if self.scheduler.cancelled:
            return tasks

        self.state = WorkflowState.FINISHED
        await self.events.log(
            EventType.RUN_FINISHED,
            ActorType.ORCHESTRATOR,
            PLANNER_NAME,
            "All tasks execution cycle finished.",
            Severity.SUCCESS,
        )
        return tasks

    async def run_from_requirements(self, requirements: RequirementsDoc) -> list[Task]:
        """Skip the interview: decompose and execute an already written document."""
        self.intake.requirements = requirements.finalized()
        self.state = WorkflowState.ORCHESTRATING
        await self.decompose()
        return await self.execute()

    async def reset(self, preserve_knowledge: bool = True) -> None:
        """Abort the current run and return to REFLECTING.

        The persisted registry is never touched; the knowledge base is kept
        unless ``preserve_knowledge`` is False.
        """
        await self.scheduler.cancel()
        self.graph.clear()
        self.scheduler.agents.clear()
        self.intake.reset()
        self.events.clear()
        if not preserve_knowledge:
            self.knowledge.clear()
        self.state = WorkflowState.REFLECTING
        self.error = None
        await self.events.log(
            EventType.RUN_RESET,
            ActorType.ORCHESTRATOR,
            PLANNER_NAME,
            "Workflow reset.",
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.events.run_id,
            "state": self.state.value,
            "error": self.error,
            "requirements": self.requirements.to_dict() if self.requirements else None,
            "transcript": [m.to_dict() for m in self.intake.transcript],
            "tasks": self.graph.snapshot(),
            "active_agents": [a.to_dict() for a in self.scheduler.active_agents],
            "agents": [a.to_dict() for a in self.scheduler.agents],
            "registry": [a.to_dict() for a in self.registry.get_all()],
            "knowledge_base": self.knowledge.text,
            "logs": [e.to_dict() for e in self.events.history],
        }
