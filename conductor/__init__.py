"""
Conductor

Multi-agent task pipeline: a requirements interview, decomposition into a
dependency graph of subtasks, and execution of every subtask through a
plan / critique / execute / critique cycle with retries and agent reuse.
"""

__version__ = "0.1.0"

# Configuration
from conductor.config import Settings

# Errors
from conductor.errors import (
    DecompositionError,
    IntakeClosedError,
    InvalidGraphError,
    PhaseFailure,
    ServiceError,
)

# Events
from conductor.events import ConductorEvent, EventEmitter, EventType, Severity

# Intake
from conductor.intake import ChatMessage, IntakeLoop, RequirementsDoc
from conductor.knowledge import KnowledgeBase
from conductor.lifecycle import AgentRun, TaskAttempt

# Matching and registry
from conductor.matcher import MatchWeights, extract_capabilities
from conductor.pipeline import Pipeline, WorkflowState
from conductor.registry import AgentMatch, AgentRegistry, RegisteredAgent
from conductor.roles import BaseRole

# Scheduling
from conductor.scheduler import Scheduler
from conductor.services import (
    CritiqueVerdict,
    ExecutionOutcome,
    LanguageModelService,
    RequirementsReply,
    ServiceGateway,
)
from conductor.storage import DatabaseStore, InMemoryStore, KeyValueStore

# Task graph
from conductor.tasks import Task, TaskGraph, TaskProposal, TaskStatus, sanitize_proposals

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Errors
    "InvalidGraphError",
    "DecompositionError",
    "IntakeClosedError",
    "PhaseFailure",
    "ServiceError",
    # Events
    "ConductorEvent",
    "EventEmitter",
    "EventType",
    "Severity",
    # Task graph
    "Task",
    "TaskGraph",
    "TaskProposal",
    "TaskStatus",
    "sanitize_proposals",
    "BaseRole",
    # Registry
    "AgentRegistry",
    "RegisteredAgent",
    "AgentMatch",
    "MatchWeights",
    "extract_capabilities",
    # Services
    "LanguageModelService",
    "ServiceGateway",
    "CritiqueVerdict",
    "ExecutionOutcome",
    "RequirementsReply",
    # Storage
    "KeyValueStore",
    "InMemoryStore",
    "DatabaseStore",
    # Orchestration
    "KnowledgeBase",
    "AgentRun",
    "TaskAttempt",
    "Scheduler",
    "IntakeLoop",
    "ChatMessage",
    "RequirementsDoc",
    "Pipeline",
    "WorkflowState",
]
