"""Command-line entry point for backlog-agent."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from ..core.config import ConfigurationError, OrchestratorConfig, load_config
from ..core.worker import WorkerLoop
from ..deploy.deployer import VercelDeployer
from ..executors.router import ExecutorRouter
from ..integrations.github.client import RepositoryClient, RepositoryError
from ..integrations.tracker.client import TrackerClient
from ..sessions.manager import SessionManager
from ..sessions.store import FileSessionStore
from ..utils.rich_logging import ContextLogger, setup_rich_logging
from ..webhooks.handlers import WebhookEventHandler
from ..webhooks.server import create_app, run_server
from ..workspace.isolator import WorkspaceIsolator

console = Console()


@dataclass
class Components:
    tracker: TrackerClient
    router: ExecutorRouter
    sessions: SessionManager
    worker: WorkerLoop


def build_components(config: OrchestratorConfig, log: Optional[ContextLogger] = None) -> Components:
    """Wire the worker and its collaborators from configuration."""
    session_store = FileSessionStore(config.worker.session_store_path)
    sessions = SessionManager(config.worker.sessions_path)
    router = ExecutorRouter.from_config(config, session_store)
    tracker = TrackerClient(config.tracker)

    repo_client = None
    if config.github.token or config.github.installation_tokens:
        repo_client = RepositoryClient(config.github)
    deployer = VercelDeployer(config.deploy) if config.deploy.enabled else None

    worker = WorkerLoop(
        config=config,
        tracker=tracker,
        router=router,
        isolator=WorkspaceIsolator(
            config.worker.repository_path, config.worktree, branch_prefix=config.workflow.branch_prefix,
        ),
        session_store=session_store,
        sessions=sessions,
        repo_client=repo_client,
        deployer=deployer,
        log=log,
    )
    return Components(tracker=tracker, router=router, sessions=sessions, worker=worker)


class TaskIdGroup(click.Group):
    """Group where an unknown first argument is a task id for ``run``."""

    def resolve_command(self, ctx, args):
        if args and args[0] not in self.commands and not args[0].startswith("-"):
            args = ["run", *args]
        return super().resolve_command(ctx, args)


@click.group(cls=TaskIdGroup, invoke_without_command=True)
@click.option("--config", "-c", "config_path", default="backlog-agent.yaml", help="Config file")
@click.option("--terminal", is_flag=True, help="Run Claude through the local CLI instead of the API")
@click.option("--model", help="Model override for every provider")
@click.option("--cwd", type=click.Path(file_okay=False, path_type=Path), help="Repository checkout to work in")
@click.option("--max-turns", type=int, help="Maximum agent turns per run")
@click.option("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
@click.pass_context
def cli(ctx, config_path, terminal, model, cwd, max_turns, log_level):
    """Autonomous coding agent for tracker tasks.

    With no command, polls the tracker for assigned tasks. Pass a task id
    to process that task immediately.
    """
    load_dotenv()
    config = load_config(Path(config_path)).model_copy(deep=True)
    if terminal:
        config.executor.mode = "terminal"
    if model:
        config.executor.model = model
    if cwd:
        config.worker.repository_path = cwd.expanduser().resolve()
    if max_turns:
        config.executor.max_turns = max_turns

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["log"] = setup_rich_logging("backlog-agent", Path(config.workspace), log_level=log_level)

    if ctx.invoked_subcommand is None:
        ctx.invoke(poll)


def _require(config: OrchestratorConfig, webhooks: bool = False) -> None:
    try:
        config.validate_for_polling()
        if webhooks:
            config.validate_for_webhooks()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise SystemExit(1)


@cli.command()
@click.pass_context
def poll(ctx):
    """Poll the tracker and process assigned tasks (default)."""
    config: OrchestratorConfig = ctx.obj["config"]
    _require(config)
    components = build_components(config, ctx.obj["log"])

    mode = "local Claude CLI" if config.executor.mode == "terminal" else "provider APIs"
    console.print(f"[bold cyan]🤖 backlog-agent polling every {config.worker.poll_interval}s ({mode})[/]")
    console.print(f"[dim]Agents: {', '.join(config.tracker.agent_identities)}[/]")

    async def _run():
        try:
            await components.worker.run_forever()
        finally:
            await components.tracker.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/]")


@cli.command()
@click.argument("task_id")
@click.pass_context
def run(ctx, task_id):
    """Process TASK_ID now, regardless of its comment state."""
    config: OrchestratorConfig = ctx.obj["config"]
    _require(config)
    components = build_components(config, ctx.obj["log"])
    console.print(f"[bold]Processing task: {task_id}[/]")

    async def _run():
        try:
            return await components.worker.process_task_by_id(task_id, force=True)
        finally:
            await components.tracker.aclose()

    status = asyncio.run(_run())
    color = "green" if status.should_process else "yellow"
    console.print(f"[{color}]{status.reason}[/]")


@cli.command()
@click.option("--port", "-p", type=int, help="Port to listen on")
@click.option("--host", help="Interface to bind")
@click.pass_context
def serve(ctx, port, host):
    """Listen for signed tracker webhooks."""
    config: OrchestratorConfig = ctx.obj["config"]
    _require(config, webhooks=True)
    components = build_components(config, ctx.obj["log"])
    components.sessions.recover()

    handler = WebhookEventHandler(components.worker, components.sessions)
    app = create_app(config, handler, components.sessions, components.router)
    run_server(app, host=host or config.webhook.host, port=port or config.webhook.port)


@cli.command()
@click.pass_context
def sessions(ctx):
    """Show recorded agent sessions."""
    config: OrchestratorConfig = ctx.obj["config"]
    records = SessionManager(config.worker.sessions_path).all()
    if not records:
        console.print("[dim]No sessions recorded[/]")
        return

    table = Table(title="Agent Sessions")
    table.add_column("Task", style="cyan")
    table.add_column("Title")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for s in sorted(records, key=lambda r: r.updated_at, reverse=True):
        table.add_row(
            s.task_id[:8], s.title[:50], str(s.provider), str(s.status),
            str(s.message_count), s.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)



def _repo_client(config: OrchestratorConfig) -> RepositoryClient:
    if not (config.github.token or config.github.installation_tokens):
        console.print("[red]Configuration error:[/] github.token is required")
        raise SystemExit(1)
    return RepositoryClient(config.github)


@cli.command()
@click.argument("repository")
@click.argument("path", default="")
@click.option("--ref", help="Branch, tag or commit to read from")
@click.pass_context
def files(ctx, repository, path, ref):
    """List files under PATH in REPOSITORY (owner/repo)."""
    client = _repo_client(ctx.obj["config"])
    try:
        entries = client.list_files(repository, path, ref=ref)
    except RepositoryError as e:
        console.print(f"[red]{e}[/]")
        raise SystemExit(1)

    table = Table(title=f"{repository}:{path or '/'}" + (f" @ {ref}" if ref else ""))
    table.add_column("Path", style="cyan")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for entry in sorted(entries, key=lambda e: (e.type != "dir", e.path)):
        table.add_row(entry.path, entry.type, str(entry.size) if entry.type == "file" else "")
    console.print(table)


@cli.command()
@click.argument("repository")
@click.argument("path")
@click.option("--ref", help="Branch, tag or commit to read from")
@click.pass_context
def show(ctx, repository, path, ref):
    """Print the contents of PATH in REPOSITORY (owner/repo)."""
    client = _repo_client(ctx.obj["config"])
    try:
        content = client.get_file(repository, path, ref=ref)
    except RepositoryError as e:
        console.print(f"[red]{e}[/]")
        raise SystemExit(1)
    click.echo(content, nl=not content.endswith("\n"))


if __name__ == "__main__":
    cli()
