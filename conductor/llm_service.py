"""``LanguageModelService`` implementation backed by ``LLMClient``.

Each call opens a fresh session, sends a system instruction plus a prompt,
and parses the JSON block the model is asked to return.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from .errors import ServiceError
from .intake import ChatMessage, RequirementsDoc
from .llm_client import LLMClient
from .services import CritiqueVerdict, ExecutionOutcome, RequirementsReply
from .tasks import Task, TaskProposal

if TYPE_CHECKING:
    from .config import Settings

_FENCED_JSON_RE = re.compile(r"```json(?::structured_output)?\s*(.*?)\s*```", re.DOTALL)


def extract_json(output: str) -> Any:
    """Extract the first JSON value from model output.

    Prefers a ```json fenced block; otherwise decodes from the first ``{`` or ``[``.
    """
    for match in _FENCED_JSON_RE.finditer(output):
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            continue

    decoder = json.JSONDecoder()
    for index, char in enumerate(output):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(output, index)
            return value
        except json.JSONDecodeError:
            continue

    raise ServiceError(f"No JSON found in model output: {output[:200]!r}")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "approved", "1")
    return bool(value)


REFLECTOR_SYSTEM = """You are the Reflector Agent, acting as a Requirements Engineer.
Interview the user until the requirements are complete:
1. User Story
2. System Requirements
3. Functional Requirements
4. Non-Functional Requirements (performance, security, etc.)

Guidelines:
- If the request is vague or ambiguous, ask one clarifying question and give 3-5
  distinct "options" (multiple-choice answers) to help the user reply quickly.
- You may ask at most {max_turns} questions. Current question count: {turn}.
- If the count is >= {max_turns}, stop asking. Make reasonable assumptions for any
  missing details, fill in the requirements fully and set "isComplete" to true.
- If the requirements are solid before the limit, set "isComplete" to true.

Reply with a single JSON object inside a ```json block:
{{
  "responseToUser": "...",
  "options": ["...", "..."],
  "requirements": {{
    "userStory": "...",
    "systemRequirements": ["..."],
    "functionalRequirements": ["..."],
    "nonFunctionalRequirements": ["..."],
    "isComplete": false
  }}
}}"""

ORCHESTRATOR_SYSTEM = """You are the Orchestrator Agent.
Break the finalized requirements down into high-level subtasks and assign each to
one of the four base agents:
- COLLECTOR: gathers data and research.
- CONTEXTUALIZER: maps, structures and clusters data.
- SYNTHESIZER: reasoning, coding, creating content, decision making.
- REFLECTOR: final polishing, user interaction, UI/UX refinement.

Define dependencies: if task B needs the output of task A, list A's id in B's
"dependencies". The graph must be acyclic.

Reply with a JSON array inside a ```json block. Each item:
{"id": "...", "title": "...", "description": "...", "assignedTo": "SYNTHESIZER",
 "dependencies": ["..."], "dynamicAgentName": "specific role, e.g. Python Architect"}"""

PLAN_SYSTEM = """You are a dynamically created agent. Role: {role_label}.
Parent type: {parent_role}.
Create a detailed, step-by-step execution plan for the assigned task.
If you received critique feedback you MUST adjust the plan to address it."""

EXECUTE_SYSTEM = """You are a dynamically created agent. Role: {role_label}.
You have an APPROVED PLAN. Execute it now.
Task: {title}
Details: {description}

Reply with a JSON object inside a ```json block:
{{"result": "the actual output of the work", "logic": "explanation of execution steps"}}"""

PLAN_CRITIQUE_SYSTEM = """You are the Critique Agent (the Sentinel). Review the agent's plan.
Reject it if it is vague, over-engineered when a simple solution exists, or misses
the core objective. Otherwise approve it.
Reply with a JSON object inside a ```json block: {"approved": true, "feedback": "..."}"""

RESULT_CRITIQUE_SYSTEM = """You are the Critique Agent. Review the FINAL OUTPUT of the task.
Does it meet the requirements?
Reply with a JSON object inside a ```json block: {"approved": true, "feedback": "..."}"""


class HttpLanguageModelService:
    def __init__(
        self,
        client: LLMClient,
        *,
        agent: str = "general",
        model: dict[str, str] | None = None,
    ) -> None:
        self.client = client
        self.agent = agent
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpLanguageModelService:
        model: dict[str, str] | None = None
        if settings.llm_model and settings.llm_provider:
            model = {"providerID": settings.llm_provider, "modelID": settings.llm_model}
        elif settings.llm_model:
            model = {"id": settings.llm_model}
        client = LLMClient(
            base_url=settings.llm_api_url,
            directory=settings.llm_directory,
            timeout_seconds=settings.service_timeout_seconds,
        )
        return cls(client, agent=settings.llm_agent, model=model)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _ask(self, title: str, system: str, text: str) -> str:
        output = await self.client.complete(
            title=title, agent=self.agent, text=text, system=system, model=self.model
        )
        if not output:
            raise ServiceError(f"Empty response for {title}")
        return output

    async def draft_requirements(
        self,
        transcript: list[ChatMessage],
        current_draft: RequirementsDoc | None,
        *,
        turn: int,
        max_turns: int,
    ) -> RequirementsReply:
        history = "\n".join(f"{m.role}: {m.content}" for m in transcript)
        draft = json.dumps(current_draft.to_dict() if current_draft else {})
        prompt = (
            f"Current conversation history:\n{history}\n\n"
            f"Current draft requirements:\n{draft}\n\n"
            f"Analyze the latest user input. Current interaction count: {turn}.\n"
            f"If count >= {max_turns}, set isComplete: true."
        )
        output = await self._ask(
            "requirements", REFLECTOR_SYSTEM.format(turn=turn, max_turns=max_turns), prompt
        )
        data = extract_json(output)
        if not isinstance(data, dict):
            raise ServiceError("Requirements reply is not a JSON object")

        requirements = RequirementsDoc.from_dict(data.get("requirements") or {})
        options = data.get("options") or []
        return RequirementsReply(
            response_text=str(data.get("responseToUser") or data.get("response_text") or ""),
            requirements=requirements,
            options=[str(o) for o in options] if isinstance(options, list) else [],
        )

    async def decompose_requirements(self, requirements: RequirementsDoc) -> list[TaskProposal]:
        prompt = (
            f"Requirements:\n{json.dumps(requirements.to_dict(), indent=2)}\n\n"
            "Create a dependency graph of tasks."
        )
        data = extract_json(await self._ask("decomposition", ORCHESTRATOR_SYSTEM, prompt))
        if isinstance(data, dict):
            data = data.get("tasks", [])
        if not isinstance(data, list):
            raise ServiceError("Decomposition reply is not a JSON array")
        return [TaskProposal.from_dict(item) for item in data if isinstance(item, dict)]

    async def generate_plan(
        self, task: Task, role_label: str, knowledge_excerpt: str, feedback: str
    ) -> str:
        if feedback:
            ask = (
                "PREVIOUS PLAN WAS REJECTED.\n"
                f"CRITIQUE FEEDBACK: {feedback}\n\n"
                "You MUST rewrite the plan to address this."
            )
        else:
            ask = "Propose your initial plan."
        prompt = (
            f"Task: {task.title}\nDescription: {task.description}\n\n"
            f"Context summary: {knowledge_excerpt}\n\n{ask}\n\nProvide a step-by-step plan."
        )
        system = PLAN_SYSTEM.format(role_label=role_label, parent_role=task.role.value)
        return await self._ask(f"plan:{task.id}", system, prompt)

    async def critique_plan(self, task: Task, plan: str, role_label: str) -> CritiqueVerdict:
        prompt = (
            f"Task: {task.title}\nDescription: {task.description}\n"
            f"Agent role: {role_label}\n\nProposed plan:\n{plan}"
        )
        return self._verdict(await self._ask(f"plan-review:{task.id}", PLAN_CRITIQUE_SYSTEM, prompt))

    async def execute_task(
        self, task: Task, role_label: str, plan: str, knowledge_excerpt: str
    ) -> ExecutionOutcome:
        system = EXECUTE_SYSTEM.format(
            role_label=role_label, title=task.title, description=task.description
        )
        prompt = (
            f"Approved plan:\n{plan}\n\nContext/knowledge base:\n{knowledge_excerpt}\n\n"
            "Execute the plan. Return the result and the reasoning logic."
        )
        output = await self._ask(f"execute:{task.id}", system, prompt)
        try:
            data = extract_json(output)
        except ServiceError:
            return ExecutionOutcome(result=output)
        if not isinstance(data, dict) or "result" not in data:
            return ExecutionOutcome(result=output)
        result = data["result"]
        if not isinstance(result, str):
            result = json.dumps(result)
        return ExecutionOutcome(
            result=result, reasoning=str(data.get("logic") or data.get("reasoning") or "")
        )

    async def critique_result(self, task: Task, result: str) -> CritiqueVerdict:
        prompt = f"Task: {task.title}\nExpected: {task.description}\nActual result: {result}"
        return self._verdict(
            await self._ask(f"result-review:{task.id}", RESULT_CRITIQUE_SYSTEM, prompt)
        )

    @staticmethod
    def _verdict(output: str) -> CritiqueVerdict:
        data = extract_json(output)
        if not isinstance(data, dict) or "approved" not in data:
            raise ServiceError("Critique reply lacks an 'approved' field")
        return CritiqueVerdict(
            approved=_as_bool(data["approved"]), feedback=str(data.get("feedback") or "")
        )
