"""
Standardized event system for the conductor pipeline.

Every component reports progress through an injected ``EventEmitter``; the
emitter keeps the log in memory for read-only display and fans events out to
any registered handlers (console, Redis Pub/Sub).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from rich.console import Console
from rich.markup import escape

from .roles import ActorType

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_STARTED = "run.started"
    RUN_FINISHED = "run.finished"
    RUN_RESET = "run.reset"

    INTAKE_TURN = "intake.turn"
    INTAKE_COMPLETED = "intake.completed"
    INTAKE_FAILED = "intake.failed"

    DECOMPOSITION_STARTED = "decomposition.started"
    DECOMPOSITION_COMPLETED = "decomposition.completed"
    DECOMPOSITION_FAILED = "decomposition.failed"
    GRAPH_SANITIZED = "graph.sanitized"

    AGENT_REUSED = "agent.reused"
    AGENT_SPAWNED = "agent.spawned"
    AGENT_REGISTERED = "agent.registered"
    AGENT_METRICS_UPDATED = "agent.metrics_updated"

    PLAN_DRAFTED = "plan.drafted"
    PLAN_APPROVED = "plan.approved"
    PLAN_REJECTED = "plan.rejected"

    TASK_EXECUTING = "task.executing"
    TASK_COMPLETED = "task.completed"
    TASK_RETRYING = "task.retrying"
    TASK_FAILED = "task.failed"
    TASK_BLOCKED = "task.blocked"

    SERVICE_FALLBACK = "service.fallback"
    REGISTRY_WARNING = "registry.warning"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITIQUE = "critique"


@dataclass
class ConductorEvent:
    """Discrete, timestamped log record for the presentation layer."""

    type: EventType
    actor_type: ActorType
    actor_name: str
    message: str
    severity: Severity = Severity.INFO
    details: Optional[str] = None
    task_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "actor_type": self.actor_type.value,
            "actor_name": self.actor_name,
            "message": self.message,
            "severity": self.severity.value,
            "details": self.details,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ConductorEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers and keeps the run log."""

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid4().hex[:12]
        self._handlers: list[EventHandler] = []
        self._history: list[ConductorEvent] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    @property
    def history(self) -> list[ConductorEvent]:
        return list(self._history)

    def clear(self) -> None:
        self._history.clear()

    async def emit(self, event: ConductorEvent) -> ConductorEvent:
        self._history.append(event)
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error: %s", exc)
        return event

    async def log(
        self,
        event_type: EventType,
        actor_type: ActorType,
        actor_name: str,
        message: str,
        severity: Severity = Severity.INFO,
        *,
        details: str | None = None,
        task_id: str | None = None,
    ) -> ConductorEvent:
        return await self.emit(
            ConductorEvent(
                type=event_type,
                actor_type=actor_type,
                actor_name=actor_name,
                message=message,
                severity=severity,
                details=details,
                task_id=task_id,
            )
        )


_SEVERITY_STYLE = {
    Severity.INFO: "white",
    Severity.SUCCESS: "green",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITIQUE: "magenta",
}


def console_handler(console: Console) -> EventHandler:
    """Handler that prints events to a rich console."""

    def _print(event: ConductorEvent) -> None:
        style = _SEVERITY_STYLE[event.severity]
        stamp = event.timestamp.strftime("%H:%M:%S")
        console.print(
            f"[dim]{stamp}[/dim] [{style}]{escape(f'[{event.actor_type.value}]')} "
            f"{escape(event.actor_name)}:[/{style}] {escape(event.message)}",
            highlight=False,
        )

    return _print


def redis_publish_handler(emitter: EventEmitter, redis_url: str) -> EventHandler:
    """Handler that publishes events to Redis Pub/Sub."""
    from redis.asyncio import Redis

    redis = Redis.from_url(redis_url, decode_responses=True)
    channel = f"channel:run:{emitter.run_id}"

    async def _publish(event: ConductorEvent) -> None:
        try:
            await redis.publish(channel, json.dumps(event.to_dict()))
        except Exception as exc:
            logger.warning("Redis publish failed: %s", exc)

    return _publish
