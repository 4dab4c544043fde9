"""LangGraph state machine for a single task attempt.

One attempt is: plan -> critique_plan (loop back to plan with feedback while
attempts remain) -> execute -> critique_result. The graph never reaches
``execute`` without an approved plan. Agent assignment before the attempt,
and bookkeeping after it (knowledge base, registry, retries), belong to the
scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Literal, TypedDict

from langgraph.graph import END, StateGraph

from .errors import PhaseFailure
from .events import EventEmitter, EventType, Severity
from .knowledge import KnowledgeBase
from .roles import ActorType, BaseRole
from .services import ServiceGateway
from .tasks import Task, TaskStatus

Outcome = Literal["completed", "failed"]


class AgentPhase(StrEnum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"


@dataclass
class AgentRun:
    """The agent working on one task attempt, as shown to the presentation layer."""

    id: str
    name: str
    parent_role: BaseRole
    role_text: str
    task_id: str
    system_prompt: str
    status: str = "active"  # 'active' | 'completed' | 'terminated'
    registry_id: str | None = None
    is_reused: bool = False
    reuse_score: float | None = None
    current_phase: AgentPhase = AgentPhase.PLANNING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent_role": self.parent_role.value,
            "role_text": self.role_text,
            "task_id": self.task_id,
            "status": self.status,
            "registry_id": self.registry_id,
            "is_reused": self.is_reused,
            "reuse_score": self.reuse_score,
            "current_phase": self.current_phase.value,
        }


class AttemptState(TypedDict, total=False):
    plan: str
    feedback: str
    plan_attempts: int
    plan_approved: bool
    result: str
    reasoning: str
    outcome: Outcome
    failure_reason: str


@dataclass
class AttemptResult:
    outcome: Outcome
    plan_attempts: int
    plan: str | None = None
    result: str | None = None
    reasoning: str = ""
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == "completed"


class TaskAttempt:
    """Runs one plan/critique/execute/critique cycle for a task."""

    def __init__(
        self,
        task: Task,
        agent: AgentRun,
        gateway: ServiceGateway,
        knowledge: KnowledgeBase,
        events: EventEmitter,
        *,
        max_plan_attempts: int = 3,
        plan_context_chars: int = 5000,
        execute_context_chars: int = 10000,
    ) -> None:
        self.task = task
        self.agent = agent
        self.gateway = gateway
        self.knowledge = knowledge
        self.events = events
        self.max_plan_attempts = max_plan_attempts
        self.plan_context_chars = plan_context_chars
        self.execute_context_chars = execute_context_chars

    async def _log(
        self,
        event_type: EventType,
        actor_type: ActorType,
        actor_name: str,
        message: str,
        severity: Severity = Severity.INFO,
    ) -> None:
        await self.events.log(
            event_type, actor_type, actor_name, message, severity, task_id=self.task.id
        )

    async def node_plan(self, state: AttemptState) -> AttemptState:
        attempt = int(state.get("plan_attempts", 0)) + 1
        self.agent.current_phase = AgentPhase.PLANNING
        if attempt == 1:
            await self._log(
                EventType.PLAN_DRAFTED, ActorType.DYNAMIC, self.agent.name, "Drafting execution plan..."
            )

        try:
            plan = await self.gateway.generate_plan(
                self.task,
                self.agent.name,
                self.knowledge.excerpt(self.plan_context_chars),
                state.get("feedback", ""),
            )
        except PhaseFailure as exc:
            self.task.add_interaction("agent", f"Plan generation failed: {exc.reason}")
            return {"plan_attempts": attempt, "outcome": "failed", "failure_reason": str(exc)}

        self.task.add_interaction("agent", f"Proposed Plan (v{attempt}):\n{plan}")
        return {"plan": plan, "plan_attempts": attempt, "plan_approved": False}

    async def node_critique_plan(self, state: AttemptState) -> AttemptState:
        attempt = int(state["plan_attempts"])
        await self._log(
            EventType.PLAN_DRAFTED,
            ActorType.CRITIQUE,
            "Sentinel",
            f"Reviewing plan v{attempt}...",
            Severity.CRITIQUE,
        )
        verdict = await self.gateway.critique_plan(self.task, state["plan"], self.agent.name)

        if verdict.approved:
            self.task.add_interaction("critique", "Plan Approved. Proceed with execution.")
            await self._log(
                EventType.PLAN_APPROVED, ActorType.CRITIQUE, "Sentinel", f"Plan v{attempt} approved."
            )
            return {"plan_approved": True}

        self.task.add_interaction("critique", f"Plan Rejected. Issues: {verdict.feedback}")
        await self._log(
            EventType.PLAN_REJECTED,
            ActorType.CRITIQUE,
            "Sentinel",
            "Plan rejected. Requesting revision.",
            Severity.WARNING,
        )
        update: AttemptState = {"plan_approved": False, "feedback": verdict.feedback}
        if attempt >= self.max_plan_attempts:
            reason = f"Could not agree on a valid plan after {self.max_plan_attempts} attempts."
            await self._log(
                EventType.PLAN_REJECTED,
                ActorType.CRITIQUE,
                "Sentinel",
                f"Task failed: {reason}",
                Severity.ERROR,
            )
            update.update({"outcome": "failed", "failure_reason": reason})
        return update

    async def node_execute(self, state: AttemptState) -> AttemptState:
        self.agent.current_phase = AgentPhase.EXECUTING
        await self._log(
            EventType.TASK_EXECUTING, ActorType.DYNAMIC, self.agent.name, "Executing approved plan..."
        )
        try:
            outcome = await self.gateway.execute_task(
                self.task,
                self.agent.name,
                state["plan"],
                self.knowledge.excerpt(self.execute_context_chars),
            )
        except PhaseFailure as exc:
            self.task.add_interaction("agent", f"Execution failed: {exc.reason}")
            return {"outcome": "failed", "failure_reason": str(exc)}

        self.task.add_interaction("agent", f"Execution Result:\n{outcome.result}")
        return {"result": outcome.result, "reasoning": outcome.reasoning}

    async def node_critique_result(self, state: AttemptState) -> AttemptState:
        self.agent.current_phase = AgentPhase.REVIEWING
        self.task.transition(TaskStatus.REVIEWING, "execution result submitted for review")
        await self._log(
            EventType.TASK_EXECUTING, ActorType.CRITIQUE, "Sentinel", "Reviewing execution result..."
        )
        verdict = await self.gateway.critique_result(self.task, state["result"])

        if verdict.approved:
            self.task.add_interaction("critique", "Result Validated.")
            logic = (state.get("reasoning") or "")[:50]
            await self._log(
                EventType.TASK_COMPLETED,
                ActorType.CRITIQUE,
                "Sentinel",
                f"Result validated. Logic: {logic}...",
                Severity.SUCCESS,
            )
            return {"outcome": "completed"}

        self.task.add_interaction("critique", f"Result Unsatisfactory: {verdict.feedback}")
        await self._log(
            EventType.TASK_FAILED, ActorType.CRITIQUE, "Sentinel", "Result sub-par.", Severity.ERROR
        )
        return {
            "outcome": "failed",
            "failure_reason": f"Result rejected: {verdict.feedback}",
        }

    def _route_after_plan(self, state: AttemptState) -> str:
        return "end" if state.get("outcome") == "failed" else "critique_plan"

    def _route_after_plan_critique(self, state: AttemptState) -> str:
        if state.get("plan_approved"):
            return "execute"
        if state.get("outcome") == "failed":
            return "end"
        return "plan"

    def _route_after_execute(self, state: AttemptState) -> str:
        return "end" if state.get("outcome") == "failed" else "critique_result"

    def build_graph(self):
        graph = StateGraph(AttemptState)
        graph.add_node("plan", self.node_plan)
        graph.add_node("critique_plan", self.node_critique_plan)
        graph.add_node("execute", self.node_execute)
        graph.add_node("critique_result", self.node_critique_result)

        graph.set_entry_point("plan")
        graph.add_conditional_edges(
            "plan", self._route_after_plan, {"critique_plan": "critique_plan", "end": END}
        )
        graph.add_conditional_edges(
            "critique_plan",
            self._route_after_plan_critique,
            {"execute": "execute", "plan": "plan", "end": END},
        )
        graph.add_conditional_edges(
            "execute",
            self._route_after_execute,
            {"critique_result": "critique_result", "end": END},
        )
        graph.add_edge("critique_result", END)
        return graph.compile()

    async def run(self) -> AttemptResult:
        app = self.build_graph()
        initial_state: AttemptState = {"plan_attempts": 0, "feedback": ""}
        final_state = await app.ainvoke(
            initial_state,
            config={"recursion_limit": 2 * self.max_plan_attempts + 10},
        )
        return AttemptResult(
            outcome=final_state.get("outcome", "failed"),
            plan_attempts=int(final_state.get("plan_attempts", 0)),
            plan=final_state.get("plan") if final_state.get("plan_approved") else None,
            result=final_state.get("result"),
            reasoning=final_state.get("reasoning", ""),
            reason=final_state.get("failure_reason", ""),
        )
