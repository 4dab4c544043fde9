import pytest

from conductor.config import Settings
from conductor.roles import (
    ActorType,
    BaseRole,
    actor_for_role,
    default_agent_label,
    get_env_key,
    parse_role,
)


@pytest.mark.parametrize("role", list(BaseRole))
def test_default_labels(role: BaseRole, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(get_env_key(role), raising=False)
    assert default_agent_label(role) == f"{role.value} Sub-Unit"
    assert actor_for_role(role) == ActorType(role.value)


def test_env_override_label(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ROLE_COLLECTOR_LABEL", "Field Researcher")
    assert default_agent_label(BaseRole.COLLECTOR) == "Field Researcher"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("collector", BaseRole.COLLECTOR),
        (" REFLECTOR ", BaseRole.REFLECTOR),
        ("ARCHITECT", BaseRole.SYNTHESIZER),
        (None, BaseRole.SYNTHESIZER),
        (3, BaseRole.SYNTHESIZER),
    ],
)
def test_parse_role_falls_back(value: object, expected: BaseRole) -> None:
    assert parse_role(value) == expected


def test_settings_defaults_and_env_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONDUCTOR_MAX_WORKERS", "3")
    monkeypatch.setenv("CONDUCTOR_DB_URL_OVERRIDE", "sqlite+aiosqlite:///x.db")

    cfg = Settings()

    assert cfg.max_workers == 3
    assert cfg.reuse_threshold == 0.5
    assert cfg.max_plan_attempts == 3
    assert cfg.max_task_retries == 2
    assert cfg.max_intake_turns == 5
    assert cfg.async_database_url == "sqlite+aiosqlite:///x.db"
