"""
Agent registry: remembers agents that succeeded so similar tasks can reuse them.

The whole collection lives under one storage key. It is read once by
``load()`` and written back in full after every mutation. Persistence
problems are logged and never undo the in-memory change.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .events import EventEmitter, EventType, Severity
from .matcher import MatchBreakdown, MatchWeights, extract_capabilities, score_candidate
from .roles import ActorType, BaseRole
from .storage import KeyValueStore

if TYPE_CHECKING:
    from .config import Settings
    from .tasks import Task

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "agent_registry"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RegisteredAgent:
    id: str
    name: str
    parent_role: BaseRole
    task_pattern: str
    capabilities: list[str] = field(default_factory=list)
    usage_count: int = 1
    success_rate: float = 1.0
    last_used_at: int = field(default_factory=_now_ms)
    system_prompt: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["parent_role"] = self.parent_role.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegisteredAgent:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            parent_role=BaseRole(data["parent_role"]),
            task_pattern=str(data.get("task_pattern", "")),
            capabilities=[str(c) for c in data.get("capabilities", [])],
            usage_count=int(data.get("usage_count", 1)),
            success_rate=float(data.get("success_rate", 1.0)),
            last_used_at=int(data.get("last_used_at", 0)),
            system_prompt=str(data.get("system_prompt", "")),
        )


@dataclass
class AgentMatch:
    agent: RegisteredAgent
    score: float
    reason: str
    breakdown: MatchBreakdown | None = None


class AgentRegistry:
    """Registry of reusable agents backed by a key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
        min_success_rate: float = 0.6,
        match_floor: float = 0.4,
        weights: MatchWeights | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self._store = store
        self._storage_key = storage_key
        self._min_success_rate = min_success_rate
        self._match_floor = match_floor
        self._weights = weights or MatchWeights()
        self._events = events
        self._agents: list[RegisteredAgent] = []
        self._lock = asyncio.Lock()
        self.loaded = False

    @classmethod
    def from_settings(
        cls, store: KeyValueStore, settings: Settings, events: EventEmitter | None = None
    ) -> AgentRegistry:
        return cls(
            store,
            storage_key=settings.registry_storage_key,
            min_success_rate=settings.min_success_rate,
            match_floor=settings.match_floor,
            weights=MatchWeights(
                capability=settings.capability_weight, pattern=settings.pattern_weight
            ),
            events=events,
        )

    async def load(self) -> list[RegisteredAgent]:
        """Read the persisted collection; start empty if it cannot be read."""
        async with self._lock:
            agents: list[RegisteredAgent] = []
            try:
                raw = await self._store.load(self._storage_key)
            except Exception as exc:
                await self._warn(f"Failed to load agent registry: {exc}")
                raw = None

            if raw is not None and not isinstance(raw, list):
                await self._warn("Agent registry payload is not a list; starting empty")
                raw = None

            for item in raw or []:
                try:
                    agents.append(RegisteredAgent.from_dict(item))
                except (KeyError, TypeError, ValueError) as exc:
                    await self._warn(f"Skipping malformed registry record: {exc}")

            self._agents = agents
            self.loaded = True
            return list(self._agents)

    def get_all(self) -> list[RegisteredAgent]:
        return list(self._agents)

    def get(self, agent_id: str) -> RegisteredAgent | None:
        return next((a for a in self._agents if a.id == agent_id), None)

    async def register(self, task: Task, name: str, system_prompt: str) -> RegisteredAgent:
        agent = RegisteredAgent(
            id=f"agent_{_now_ms()}_{uuid4().hex[:5]}",
            name=name,
            parent_role=task.role,
            task_pattern=task.title,
            capabilities=extract_capabilities(f"{task.title} {task.description} {name}"),
            usage_count=1,
            success_rate=1.0,
            last_used_at=_now_ms(),
            system_prompt=system_prompt,
        )
        async with self._lock:
            self._agents.append(agent)
            await self._persist()
        return agent

    def find_match(self, task: Task) -> AgentMatch | None:
        task_caps = extract_capabilities(f"{task.title} {task.description}")

        matches: list[AgentMatch] = []
        for agent in self._agents:
            if agent.parent_role != task.role or agent.success_rate < self._min_success_rate:
                continue
            breakdown = score_candidate(
                task_caps,
                task.title,
                agent.capabilities,
                agent.task_pattern,
                agent.usage_count,
                self._weights,
            )
            score = breakdown.weighted_total
            if score < self._match_floor:
                continue
            matches.append(
                AgentMatch(agent=agent, score=score, reason=breakdown.reason(), breakdown=breakdown)
            )

        # sorted() is stable, so equal scores keep registration order
        matches = sorted(matches, key=lambda m: m.score, reverse=True)
        return matches[0] if matches else None

    async def update_metrics(self, agent_id: str, success: bool) -> RegisteredAgent | None:
        async with self._lock:
            agent = self.get(agent_id)
            if agent is None:
                logger.info("update_metrics ignored for unknown agent id %s", agent_id)
                return None

            old_count = agent.usage_count
            agent.usage_count = old_count + 1
            agent.success_rate = (agent.success_rate * old_count + (1 if success else 0)) / agent.usage_count
            agent.last_used_at = _now_ms()
            await self._persist()
            return agent

    async def clear(self) -> None:
        async with self._lock:
            self._agents = []
            await self._persist()

    async def _persist(self) -> None:
        payload = [a.to_dict() for a in self._agents]
        try:
            await self._store.save(self._storage_key, payload)
        except Exception as exc:
            await self._warn(f"Failed to save agent registry: {exc}")

    async def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._events is not None:
            await self._events.log(
                EventType.REGISTRY_WARNING,
                ActorType.ORCHESTRATOR,
                "Registry",
                message,
                Severity.WARNING,
            )
