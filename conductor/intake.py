"""
Requirements intake: a bounded interview that produces a finalized
``RequirementsDoc`` for decomposition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import IntakeClosedError, ServiceError
from .events import EventEmitter, EventType, Severity
from .roles import ActorType
from .services import ServiceGateway

logger = logging.getLogger(__name__)

GREETING = "Hello. I am the Reflector Agent. Please describe the task or software you wish to build."
INTAKE_ACTOR = "Requirements Engineer"


@dataclass
class ChatMessage:
    role: str  # 'user' | 'assistant'
    content: str
    options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.options:
            data["options"] = list(self.options)
        return data


def _str_list(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class RequirementsDoc:
    user_story: str = ""
    system_requirements: tuple[str, ...] = ()
    functional_requirements: tuple[str, ...] = ()
    non_functional_requirements: tuple[str, ...] = ()
    is_complete: bool = False

    def finalized(self) -> RequirementsDoc:
        return self if self.is_complete else replace(self, is_complete=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_story": self.user_story,
            "system_requirements": list(self.system_requirements),
            "functional_requirements": list(self.functional_requirements),
            "non_functional_requirements": list(self.non_functional_requirements),
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequirementsDoc:
        """Build from model output; accepts snake_case or camelCase keys."""

        def pick(snake: str, camel: str) -> Any:
            return data.get(snake, data.get(camel))

        return cls(
            user_story=str(pick("user_story", "userStory") or ""),
            system_requirements=_str_list(pick("system_requirements", "systemRequirements")),
            functional_requirements=_str_list(
                pick("functional_requirements", "functionalRequirements")
            ),
            non_functional_requirements=_str_list(
                pick("non_functional_requirements", "nonFunctionalRequirements")
            ),
            is_complete=bool(pick("is_complete", "isComplete")),
        )


class IntakeLoop:
    """Conversational requirements interview with a hard ceiling on user turns."""

    def __init__(
        self,
        gateway: ServiceGateway,
        events: EventEmitter,
        *,
        max_turns: int = 5,
        greeting: str = GREETING,
    ) -> None:
        self.gateway = gateway
        self.events = events
        self.max_turns = max_turns
        self.greeting = greeting
        self.transcript: list[ChatMessage] = [ChatMessage("assistant", greeting)]
        self.requirements: RequirementsDoc | None = None
        self.turns = 0

    @property
    def is_complete(self) -> bool:
        return self.requirements is not None and self.requirements.is_complete

    @property
    def ceiling_reached(self) -> bool:
        return self.turns >= self.max_turns

    def reset(self) -> None:
        self.transcript = [ChatMessage("assistant", self.greeting)]
        self.requirements = None
        self.turns = 0

    async def submit(self, text: str) -> ChatMessage:
        """Process one user turn and return the assistant reply.

        Raises IntakeClosedError once requirements are final, and ServiceError
        when the drafting call fails before the turn ceiling (the user may retry).
        """
        if self.is_complete:
            raise IntakeClosedError("Requirements are already finalized")

        self.turns += 1
        self.transcript.append(ChatMessage("user", text))
        await self.events.log(
            EventType.INTAKE_TURN,
            ActorType.REFLECTOR,
            INTAKE_ACTOR,
            f'Processing user input: "{text[:30]}..."',
        )

        try:
            reply = await self.gateway.draft_requirements(
                list(self.transcript),
                self.requirements,
                turn=self.turns,
                max_turns=self.max_turns,
            )
        except ServiceError as exc:
            await self.events.log(
                EventType.INTAKE_FAILED,
                ActorType.REFLECTOR,
                INTAKE_ACTOR,
                "Error connecting to the requirements service.",
                Severity.ERROR,
                details=str(exc),
            )
            if not self.ceiling_reached:
                raise
            self.requirements = (self.requirements or RequirementsDoc()).finalized()
            message = ChatMessage(
                "assistant", "Turn limit reached. Proceeding with the current requirements draft."
            )
            self.transcript.append(message)
            await self._log_finalized()
            return message

        requirements = reply.requirements
        if self.ceiling_reached:
            requirements = requirements.finalized()
        self.requirements = requirements

        message = ChatMessage("assistant", reply.response_text, list(reply.options))
        self.transcript.append(message)

        if requirements.is_complete:
            await self._log_finalized()
        else:
            await self.events.log(
                EventType.INTAKE_TURN,
                ActorType.REFLECTOR,
                INTAKE_ACTOR,
                "Updated requirements draft. Continuing interview.",
            )
        return message

    async def _log_finalized(self) -> None:
        await self.events.log(
            EventType.INTAKE_COMPLETED,
            ActorType.REFLECTOR,
            INTAKE_ACTOR,
            "Requirements finalized. Handing over to Orchestrator.",
            Severity.SUCCESS,
        )
