"""Main CLI entry point for conductor."""

import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .config import Settings, settings
from .errors import ServiceError
from .events import EventEmitter, console_handler, redis_publish_handler
from .intake import ChatMessage, RequirementsDoc
from .llm_service import HttpLanguageModelService
from .pipeline import Pipeline, WorkflowState
from .registry import AgentRegistry
from .roles import BaseRole, get_env_key, resolve_role
from .storage import DatabaseStore, InMemoryStore, KeyValueStore
from .tasks import TaskStatus

console = Console()

_STATUS_STYLE = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.REVIEWING: "magenta",
}


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Multi-agent task pipeline CLI.

    Interview for requirements, decompose them into a task graph and run every
    task through a plan / critique / execute / critique cycle.
    """
    pass


def _print_reply(message: ChatMessage) -> None:
    console.print(Panel(escape(message.content), title="Reflector", border_style="blue"))
    for index, option in enumerate(message.options, start=1):
        console.print(f"  [cyan]{index}.[/cyan] {escape(option)}")


def _resolve_answer(answer: str, options: list[str]) -> str:
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return options[int(answer) - 1]
    return answer


def _print_summary(pipeline: Pipeline) -> None:
    agent_by_task = {a.task_id: a for a in pipeline.scheduler.agents}
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Role")
    table.add_column("Agent")
    table.add_column("Retries")
    table.add_column("Status")

    for task in pipeline.graph.tasks:
        agent = agent_by_task.get(task.id)
        agent_label = "-"
        if agent is not None:
            agent_label = escape(agent.name) + (" [green](reused)[/green]" if agent.is_reused else "")
        style = _STATUS_STYLE[task.status]
        table.add_row(
            task.id,
            escape(task.title),
            task.role.value,
            agent_label,
            str(task.retry_count),
            f"[{style}]{task.status.value}[/{style}]",
        )
    console.print(table)

    completed = sum(1 for t in pipeline.graph.tasks if t.status == TaskStatus.COMPLETED)
    console.print(
        f"[bold]{completed}/{len(pipeline.graph)} tasks completed[/bold], "
        f"knowledge base: {len(pipeline.knowledge)} chars"
    )


def _build_store(cfg: Settings, memory: bool) -> KeyValueStore:
    if memory:
        return InMemoryStore()
    return DatabaseStore.from_settings(cfg)


async def _interview(pipeline: Pipeline, request: str | None) -> None:
    _print_reply(pipeline.intake.transcript[0])
    text = request or Prompt.ask("[bold]You[/bold]")
    options: list[str] = []

    while pipeline.state == WorkflowState.REFLECTING:
        try:
            reply = await pipeline.submit_message(_resolve_answer(text, options))
        except ServiceError as exc:
            console.print(f"[red]Requirements service error: {exc}[/red]")
        else:
            _print_reply(reply)
            options = reply.options
        if pipeline.state != WorkflowState.REFLECTING:
            break
        text = Prompt.ask("[bold]You[/bold]")

    if pipeline.requirements is not None:
        console.print(
            Panel(
                escape(json.dumps(pipeline.requirements.to_dict(), indent=2)),
                title="Finalized requirements",
                border_style="green",
            )
        )


@main.command()
@click.argument("request", required=False)
@click.option(
    "--requirements",
    "requirements_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON requirements document; skips the interview",
)
@click.option("--workers", default=None, type=int, help="Concurrent task slots")
@click.option("--memory", is_flag=True, help="Keep the agent registry in memory only")
def start(
    request: str | None, requirements_file: Path | None, workers: int | None, memory: bool
) -> None:
    """Start a new run.

    REQUEST: Optional first message for the requirements interview
    """
    cfg = settings.model_copy(update={"max_workers": workers}) if workers else settings

    async def do_start() -> None:
        store = _build_store(cfg, memory)
        service = HttpLanguageModelService.from_settings(cfg)
        events = EventEmitter()
        events.on_event(console_handler(console))
        if cfg.redis_events_enabled:
            events.on_event(redis_publish_handler(events, cfg.redis_url))

        try:
            pipeline = await Pipeline.create(service, store, settings=cfg, events=events)
            console.print(f"[dim]Run {events.run_id}[/dim]")

            if requirements_file is not None:
                data = json.loads(requirements_file.read_text())
                await pipeline.run_from_requirements(RequirementsDoc.from_dict(data))
            else:
                await _interview(pipeline, request)
                await pipeline.decompose()
                await pipeline.execute()

            _print_summary(pipeline)
        finally:
            await service.aclose()
            if isinstance(store, DatabaseStore):
                await store.dispose()

    asyncio.run(do_start())


@main.command()
def agents() -> None:
    """List registered agents."""

    async def do_list() -> bool:
        store = DatabaseStore.from_settings(settings)
        try:
            # load() falls back to an empty registry on store errors
            if not await store.schema_ready():
                return False
            registry = AgentRegistry.from_settings(store, settings)
            await registry.load()
            registered = registry.get_all()
        finally:
            await store.dispose()

        if not registered:
            console.print("[yellow]No registered agents[/yellow]")
            return True

        table = Table(title="Agent Registry")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Role")
        table.add_column("Capabilities", style="magenta")
        table.add_column("Uses")
        table.add_column("Success")
        table.add_column("Pattern", style="dim")

        for agent in registered:
            table.add_row(
                agent.id,
                agent.name,
                agent.parent_role.value,
                ", ".join(agent.capabilities) or "-",
                str(agent.usage_count),
                f"{agent.success_rate:.0%}",
                agent.task_pattern,
            )
        console.print(table)
        return True

    if not asyncio.run(do_list()):
        console.print("[red]Registry table `kv_entries` is missing[/red]")
        console.print("Run: `conductor init-db`")
        raise SystemExit(1)


@main.command(name="clear-agents")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def clear_agents(yes: bool) -> None:
    """Remove every agent from the registry."""
    if not yes:
        click.confirm("Clear the agent registry?", abort=True)

    async def do_clear() -> None:
        store = DatabaseStore.from_settings(settings)
        try:
            registry = AgentRegistry.from_settings(store, settings)
            await registry.clear()
        finally:
            await store.dispose()
        console.print("[green]Agent registry cleared[/green]")

    asyncio.run(do_clear())


@main.command()
def roles() -> None:
    """Show base roles and their resolved labels."""
    table = Table(title="Base Roles")
    table.add_column("Role", style="cyan")
    table.add_column("Label", style="green")
    table.add_column("Description")
    table.add_column("ENV override", style="dim")

    for role in BaseRole:
        config = resolve_role(role)
        table.add_row(
            role.value, config.get("label", ""), config.get("description", ""), get_env_key(role)
        )
    console.print(table)


@main.command(name="init-db")
def init_db() -> None:
    """Create the registry table."""

    async def do_init() -> None:
        store = DatabaseStore.from_settings(settings)
        try:
            await store.init_db()
        finally:
            await store.dispose()
        console.print("[green]Database initialized[/green]")

    asyncio.run(do_init())


@main.command(name="schema-check", help="Check that the registry table exists.")
def schema_check() -> None:
    async def check() -> bool:
        store = DatabaseStore.from_settings(settings)
        try:
            return await store.schema_ready()
        finally:
            await store.dispose()

    if not asyncio.run(check()):
        console.print("[red]Registry table `kv_entries` is missing[/red]")
        console.print("Run: `conductor init-db`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


if __name__ == "__main__":
    main()
