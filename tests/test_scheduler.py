import asyncio

import pytest

from conductor.events import EventEmitter, EventType
from conductor.knowledge import KnowledgeBase
from conductor.registry import AgentMatch, AgentRegistry, RegisteredAgent
from conductor.roles import BaseRole
from conductor.scheduler import Scheduler
from conductor.services import CritiqueVerdict, ServiceGateway
from conductor.storage import InMemoryStore
from conductor.tasks import TaskGraph, TaskStatus
from conftest import ScriptedService, make_task

REJECT = CritiqueVerdict(approved=False, feedback="missing error handling")


class FixedMatchRegistry(AgentRegistry):
    """Registry that always proposes one stored agent with a fixed score."""

    def __init__(self, stored: RegisteredAgent, score: float) -> None:
        super().__init__(InMemoryStore())
        self._agents.append(stored)
        self.score = score

    def find_match(self, task):
        return AgentMatch(agent=self._agents[0], score=self.score, reason="partial match")


def _stored_agent(**overrides) -> RegisteredAgent:
    data = {
        "id": "agent_stored",
        "name": "Veteran Builder",
        "parent_role": BaseRole.SYNTHESIZER,
        "task_pattern": "Build the thing",
        "capabilities": ["code_generation"],
        "system_prompt": "You are Veteran Builder. Parent: SYNTHESIZER.",
    }
    data.update(overrides)
    return RegisteredAgent(**data)


def _scheduler(graph, registry, gateway, knowledge, events, **kwargs) -> Scheduler:
    return Scheduler(graph, registry, gateway, knowledge, events, **kwargs)


@pytest.mark.asyncio
async def test_three_task_scenario_with_exhausted_retries(
    service: ScriptedService,
    gateway: ServiceGateway,
    registry: AgentRegistry,
    knowledge: KnowledgeBase,
    events: EventEmitter,
    graph: TaskGraph,
) -> None:
    graph.add_tasks(
        [
            make_task("a", "Alpha", role=BaseRole.COLLECTOR),
            make_task("b", "Beta", role=BaseRole.SYNTHESIZER, deps=("a",)),
            make_task("c", "Gamma", role=BaseRole.REFLECTOR, deps=("a",)),
        ]
    )
    service.result_verdicts["c"] = [REJECT, REJECT]

    scheduler = _scheduler(graph, registry, gateway, knowledge, events)
    await scheduler.run()

    a, b, c = graph.get("a"), graph.get("b"), graph.get("c")
    assert a.status == TaskStatus.COMPLETED
    assert b.status == TaskStatus.COMPLETED
    assert c.status == TaskStatus.FAILED
    assert c.retry_count == 2
    assert graph.is_resolved()
    assert service.count("execute_task", "c") == 2
    assert not any(e.type == EventType.TASK_BLOCKED for e in events.history)

    assert "Task: Alpha\nResult: Result of Alpha" in knowledge.text
    assert "Task: Beta\nResult: Result of Beta" in knowledge.text
    assert "Gamma" not in knowledge.text

    # Only successful synthesized agents are registered.
    assert sorted(agent.task_pattern for agent in registry.get_all()) == ["Alpha", "Beta"]


@pytest.mark.asyncio
async def test_successful_attempt_records_interactions_and_transitions(
    gateway, registry, knowledge, events, graph
) -> None:
    graph.add_tasks([make_task("a", "Alpha", hint="Data Wrangler")])
    scheduler = _scheduler(graph, registry, gateway, knowledge, events)

    assert await scheduler.step() is graph.get("a")

    task = graph.get("a")
    contents = [i.content for i in task.interactions]
    assert contents[0].startswith("Proposed Plan (v1):\n")
    assert contents[1] == "Plan Approved. Proceed with execution."
    assert contents[2] == "Execution Result:\nResult of Alpha"
    assert contents[3] == "Result Validated."
    assert [t.to_status for t in task.transitions] == [
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEWING,
        TaskStatus.COMPLETED,
    ]
    assert task.result == "Result of Alpha"

    agent = scheduler.agents[0]
    assert agent.name == "Data Wrangler"
    assert agent.status == "completed"
    assert agent.registry_id == registry.get_all()[0].id
    assert registry.get_all()[0].system_prompt == "You are Data Wrangler. Parent: SYNTHESIZER."
    assert await scheduler.step() is None


@pytest.mark.asyncio
async def test_failed_dependency_blocks_without_execution(
    service, gateway, registry, knowledge, events, graph
) -> None:
    graph.add_tasks(
        [
            make_task("a", "Alpha"),
            make_task("b", "Beta", deps=("a",)),
            make_task("c", "Gamma", deps=("b",)),
        ]
    )
    service.plan_verdicts["a"] = [REJECT] * 6

    await _scheduler(graph, registry, gateway, knowledge, events).run()

    a, b, c = graph.get("a"), graph.get("b"), graph.get("c")
    assert a.status == TaskStatus.FAILED
    for blocked in (b, c):
        assert blocked.status == TaskStatus.FAILED
        assert not blocked.visited(TaskStatus.IN_PROGRESS)
        assert blocked.retry_count == 0
    assert service.count("generate_plan", "b") == 0
    assert service.count("generate_plan", "c") == 0
    blocked_events = [e for e in events.history if e.type == EventType.TASK_BLOCKED]
    assert [e.message for e in blocked_events] == [
        "Task Beta blocked by failed dependency. Marking failed.",
        "Task Gamma blocked by failed dependency. Marking failed.",
    ]


@pytest.mark.asyncio
async def test_planning_is_bounded_and_unapproved_plans_never_execute(
    service, gateway, registry, knowledge, events, graph
) -> None:
    graph.add_tasks([make_task("a", "Alpha")])
    service.plan_verdicts["a"] = [REJECT] * 6

    await _scheduler(graph, registry, gateway, knowledge, events).run()

    task = graph.get("a")
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert service.count("generate_plan", "a") == 6
    assert service.count("execute_task", "a") == 0
    feedback = "missing error handling"
    assert service.plan_feedback["a"] == ["", feedback, feedback, "", feedback, feedback]
    assert not task.visited(TaskStatus.REVIEWING)


@pytest.mark.asyncio
async def test_plan_revision_after_rejection_is_executed(
    service, gateway, registry, knowledge, events, graph
) -> None:
    graph.add_tasks([make_task("a", "Alpha")])
    service.plan_verdicts["a"] = [REJECT]

    await _scheduler(graph, registry, gateway, knowledge, events).run()

    assert graph.get("a").status == TaskStatus.COMPLETED
    assert service.executed_plans["a"] == ["Plan v2 for Alpha"]
    assert graph.get("a").retry_count == 0


@pytest.mark.asyncio
async def test_execution_failure_is_retried(
    service, gateway, registry, knowledge, events, graph
) -> None:
    graph.add_tasks([make_task("a", "Alpha")])
    service.errors[("execute_task", "a")].append(RuntimeError("socket closed"))

    await _scheduler(graph, registry, gateway, knowledge, events).run()

    task = graph.get("a")
    assert task.status == TaskStatus.COMPLETED
    assert task.retry_count == 1
    assert any("Execution failed" in i.content for i in task.interactions)
    assert any(e.type == EventType.TASK_RETRYING for e in events.history)


@pytest.mark.asyncio
@pytest.mark.parametrize(("score", "reused"), [(0.5, True), (0.49, False)])
async def test_reuse_threshold_is_inclusive(
    gateway, knowledge, events, graph, score: float, reused: bool
) -> None:
    registry = FixedMatchRegistry(_stored_agent(), score)
    graph.add_tasks([make_task("a", "Build the thing")])
    scheduler = _scheduler(graph, registry, gateway, knowledge, events)

    await scheduler.step()

    agent = scheduler.agents[0]
    assert agent.is_reused is reused
    if reused:
        assert agent.name == "Veteran Builder"
        assert agent.reuse_score == 0.5
        assert agent.system_prompt == "You are Veteran Builder. Parent: SYNTHESIZER."
        assert registry.get("agent_stored").usage_count == 2
        assert len(registry.get_all()) == 1
    else:
        assert agent.name == "SYNTHESIZER Sub-Unit"
        assert len(registry.get_all()) == 2


@pytest.mark.asyncio
async def test_reused_agent_failures_lower_success_rate(
    service, gateway, knowledge, events, graph
) -> None:
    registry = FixedMatchRegistry(_stored_agent(), 0.9)
    graph.add_tasks([make_task("a", "Build the thing")])
    service.result_verdicts["a"] = [REJECT, REJECT]

    await _scheduler(graph, registry, gateway, knowledge, events).run()

    stored = registry.get("agent_stored")
    assert graph.get("a").status == TaskStatus.FAILED
    assert stored.usage_count == 3
    assert stored.success_rate == pytest.approx(1 / 3)


@pytest.mark.asyncio
async def test_workers_run_ready_tasks_concurrently(registry, knowledge, events, graph) -> None:
    class TrackingService(ScriptedService):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.peak = 0

        async def execute_task(self, task, role_label, plan, knowledge_excerpt):
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.05)
            self.active -= 1
            return await super().execute_task(task, role_label, plan, knowledge_excerpt)

    service = TrackingService()
    gateway = ServiceGateway(service, timeout_seconds=1.0)
    graph.add_tasks([make_task("a", "Alpha"), make_task("b", "Beta"), make_task("c", "Gamma")])

    await _scheduler(graph, registry, gateway, knowledge, events, max_workers=2).run()

    assert service.peak == 2
    assert all(t.status == TaskStatus.COMPLETED for t in graph.tasks)
    assert len(knowledge.text.split("\n\nTask: ")) == 4


@pytest.mark.asyncio
async def test_cancel_releases_claimed_tasks(registry, knowledge, events, graph) -> None:
    service = ScriptedService()
    service.delays["a"] = 5
    gateway = ServiceGateway(service, timeout_seconds=None)
    graph.add_tasks([make_task("a", "Alpha")])
    scheduler = _scheduler(graph, registry, gateway, knowledge, events)

    runner = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    await scheduler.cancel()
    await asyncio.wait_for(runner, timeout=1)

    task = graph.get("a")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0
    assert scheduler.agents[0].status == "terminated"
    assert scheduler.active_agents == []


def test_scheduler_rejects_zero_task_retries(gateway, registry, knowledge, events, graph) -> None:
    with pytest.raises(ValueError):
        _scheduler(graph, registry, gateway, knowledge, events, max_task_retries=0)


class BrokenMatchRegistry(AgentRegistry):
    def __init__(self) -> None:
        super().__init__(InMemoryStore())

    def find_match(self, task):
        raise RuntimeError("registry index corrupted")


@pytest.mark.asyncio
async def test_assignment_error_counts_as_failed_attempt(
    service: ScriptedService,
    gateway: ServiceGateway,
    knowledge: KnowledgeBase,
    events: EventEmitter,
    graph: TaskGraph,
) -> None:
    graph.add_tasks([make_task("a", "Alpha")])
    scheduler = _scheduler(graph, BrokenMatchRegistry(), gateway, knowledge, events)

    await asyncio.wait_for(scheduler.run(), timeout=1)

    task = graph.get("a")
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert "registry index corrupted" in task.interactions[-1].content
    assert scheduler.agents == []
    assert service.count("generate_plan") == 0


@pytest.mark.asyncio
async def test_cancel_from_event_handler_spawns_no_new_workers(
    service: ScriptedService,
    gateway: ServiceGateway,
    registry: AgentRegistry,
    knowledge: KnowledgeBase,
    events: EventEmitter,
    graph: TaskGraph,
) -> None:
    graph.add_tasks(
        [
            make_task("x", "Upstream"),
            make_task("b", "Blocked", deps=("x",)),
            make_task("c", "Independent"),
        ]
    )
    graph.get("x").transition(TaskStatus.FAILED, "failed earlier")
    scheduler = _scheduler(graph, registry, gateway, knowledge, events, max_workers=2)

    async def cancel_on_block(event) -> None:
        if event.type == EventType.TASK_BLOCKED:
            await scheduler.cancel()

    events.on_event(cancel_on_block)

    await asyncio.wait_for(scheduler.run(), timeout=1)

    assert graph.get("b").status == TaskStatus.FAILED
    assert graph.get("c").status == TaskStatus.PENDING
    assert scheduler.agents == []
    assert service.count("generate_plan") == 0
