import asyncio
import json

import pytest
from click.testing import CliRunner

from conductor import cli
from conductor.config import Settings
from conductor.registry import AgentRegistry
from conductor.storage import DatabaseStore
from conductor.tasks import TaskProposal
from conftest import ScriptedService, make_task


@pytest.fixture
def scripted(monkeypatch: pytest.MonkeyPatch) -> ScriptedService:
    service = ScriptedService()

    async def aclose() -> None:
        return None

    service.aclose = aclose  # type: ignore[attr-defined]
    monkeypatch.setattr(cli.HttpLanguageModelService, "from_settings", lambda cfg: service)
    return service


def test_start_with_requirements_file(tmp_path, scripted: ScriptedService) -> None:
    scripted.proposals = [
        TaskProposal(id="a", title="Gather sources", role="COLLECTOR"),
        TaskProposal(id="b", title="Write summary", role="REFLECTOR", dependencies=["a"]),
    ]
    requirements = tmp_path / "requirements.json"
    requirements.write_text(json.dumps({"userStory": "Weekly digest", "isComplete": True}))

    result = CliRunner().invoke(
        cli.main, ["start", "--memory", "--requirements", str(requirements)]
    )

    assert result.exit_code == 0, result.output
    assert "2/2 tasks completed" in result.output


def test_start_interview_picks_numbered_option(scripted: ScriptedService) -> None:
    scripted.proposals = [TaskProposal(id="a", title="Gather sources", role="COLLECTOR")]

    result = CliRunner().invoke(
        cli.main,
        ["start", "--memory", "--workers", "2", "Build a digest"],
        input="1\n2\n3\n4\n",
    )

    assert result.exit_code == 0, result.output
    # Numbers pick from the options offered in the previous reply.
    assert scripted.user_messages == ["Build a digest", "Web", "Mobile", "3", "4"]
    assert "1/1 tasks completed" in result.output


def test_roles_lists_every_base_role() -> None:
    result = CliRunner().invoke(cli.main, ["roles"])

    assert result.exit_code == 0
    for role in ("COLLECTOR", "CONTEXTUALIZER", "SYNTHESIZER", "REFLECTOR"):
        assert role in result.output


def test_agents_reports_missing_schema(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = Settings(db_url_override=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    monkeypatch.setattr(cli, "settings", cfg)

    result = CliRunner().invoke(cli.main, ["agents"])

    assert result.exit_code == 1
    assert "kv_entries" in result.output
    assert "conductor init-db" in result.output
    assert "No registered agents" not in result.output


def test_agents_lists_registered_agent(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = Settings(db_url_override=f"sqlite+aiosqlite:///{tmp_path / 'agents.db'}")
    monkeypatch.setattr(cli, "settings", cfg)

    async def seed() -> None:
        store = DatabaseStore.from_settings(cfg)
        try:
            await store.init_db()
            registry = AgentRegistry.from_settings(store, cfg)
            await registry.load()
            await registry.register(make_task("t", "Write report"), "Report Writer", "prompt")
        finally:
            await store.dispose()

    asyncio.run(seed())
    result = CliRunner().invoke(cli.main, ["agents"])

    assert result.exit_code == 0, result.output
    assert "Report" in result.output
    assert "No registered agents" not in result.output
