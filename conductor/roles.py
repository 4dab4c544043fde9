from __future__ import annotations

import os
from enum import StrEnum
from typing import TypedDict


class BaseRole(StrEnum):
    COLLECTOR = "COLLECTOR"
    CONTEXTUALIZER = "CONTEXTUALIZER"
    SYNTHESIZER = "SYNTHESIZER"
    REFLECTOR = "REFLECTOR"


class ActorType(StrEnum):
    """Who emitted a log event."""

    COLLECTOR = "COLLECTOR"
    CONTEXTUALIZER = "CONTEXTUALIZER"
    SYNTHESIZER = "SYNTHESIZER"
    REFLECTOR = "REFLECTOR"
    CRITIQUE = "CRITIQUE"
    ORCHESTRATOR = "ORCHESTRATOR"
    DYNAMIC = "DYNAMIC"


class RoleConfig(TypedDict, total=False):
    label: str
    description: str
    capabilities: list[str]


DEFAULT_ROLE_CONFIG: dict[str, RoleConfig] = {
    "COLLECTOR": {
        "label": "COLLECTOR Sub-Unit",
        "description": "Gathers data and research material",
        "capabilities": ["data_collection"],
    },
    "CONTEXTUALIZER": {
        "label": "CONTEXTUALIZER Sub-Unit",
        "description": "Maps, structures and clusters collected data",
        "capabilities": ["analysis", "planning"],
    },
    "SYNTHESIZER": {
        "label": "SYNTHESIZER Sub-Unit",
        "description": "Reasoning, coding, content creation and decision making",
        "capabilities": ["code_generation", "synthesis"],
    },
    "REFLECTOR": {
        "label": "REFLECTOR Sub-Unit",
        "description": "Final polishing, user interaction and UI/UX refinement",
        "capabilities": ["documentation", "optimization"],
    },
}


def get_env_key(role: BaseRole) -> str:
    return f"ROLE_{role.value}_LABEL"


def parse_role(value: object, default: BaseRole = BaseRole.SYNTHESIZER) -> BaseRole:
    """Map free-form role text from the model onto a base role."""
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        return BaseRole(value.strip().upper())
    except ValueError:
        return default


def resolve_role(role: BaseRole) -> RoleConfig:
    merged = RoleConfig(**DEFAULT_ROLE_CONFIG[role.value])
    label = os.getenv(get_env_key(role))
    if label:
        merged["label"] = label
    return merged


def default_agent_label(role: BaseRole) -> str:
    """Label used for a synthesized agent when the task carries no name hint."""
    match role:
        case BaseRole.COLLECTOR:
            return resolve_role(BaseRole.COLLECTOR)["label"]
        case BaseRole.CONTEXTUALIZER:
            return resolve_role(BaseRole.CONTEXTUALIZER)["label"]
        case BaseRole.SYNTHESIZER:
            return resolve_role(BaseRole.SYNTHESIZER)["label"]
        case BaseRole.REFLECTOR:
            return resolve_role(BaseRole.REFLECTOR)["label"]


def actor_for_role(role: BaseRole) -> ActorType:
    return ActorType(role.value)
