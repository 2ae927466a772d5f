"""CLI interface for devsuite."""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from devsuite.catalog.store import CatalogStore
from devsuite.config import DevsuiteConfig, load_config, merge_cli_overrides
from devsuite.errors import DevsuiteError
from devsuite.sessions.models import DurationSummary, Session, SessionDetail
from devsuite.sessions.services import SessionService, wall_clock_ms
from devsuite.sessions.store import SessionStore

app = typer.Typer(
    name="devsuite",
    help="Track work sessions and see where the time went.",
    no_args_is_help=True,
)
session_app = typer.Typer(help="Session lifecycle and activity.", no_args_is_help=True)
task_app = typer.Typer(help="Tasks that sessions track time against.", no_args_is_help=True)
project_app = typer.Typer(help="Projects that group tasks.", no_args_is_help=True)
app.add_typer(session_app, name="session")
app.add_typer(task_app, name="task")
app.add_typer(project_app, name="project")

console = Console()

SessionOption = Annotated[
    Optional[str],
    typer.Option("--session", "-s", help="Session id (defaults to the active session)."),
]


@dataclass
class _State:
    config: DevsuiteConfig
    catalog: CatalogStore
    service: SessionService
    tenant: str
    actor: str


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from devsuite import __version__

        console.print(f"devsuite {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    config: Annotated[
        Optional[Path], typer.Option("--config", help="Path to a .devsuite.toml file.")
    ] = None,
    data_dir: Annotated[
        Optional[Path], typer.Option("--data-dir", help="Directory holding the JSON stores.")
    ] = None,
    tenant: Annotated[Optional[str], typer.Option("--tenant", help="Tenant to act in.")] = None,
    actor: Annotated[Optional[str], typer.Option("--actor", help="Acting user.")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Enable debug logging.")] = False,
) -> None:
    """devsuite - event-sourced work session tracking."""
    cfg = merge_cli_overrides(
        load_config(config),
        data_dir=data_dir,
        tenant=tenant,
        actor=actor,
        log_level="DEBUG" if verbose else None,
    )
    logging.basicConfig(
        level=cfg.logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    catalog = CatalogStore(cfg.storage.path)
    store = SessionStore(cfg.storage.path)
    ctx.obj = _State(
        config=cfg,
        catalog=catalog,
        service=SessionService(store, catalog, clock=wall_clock_ms),
        tenant=cfg.identity.tenant,
        actor=cfg.identity.resolve_actor(),
    )


# ── Helpers ──────────────────────────────────────────────────────


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Turn domain errors into a red message and exit code 1."""
    try:
        yield
    except DevsuiteError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)


def format_duration(ms: int) -> str:
    """Render milliseconds as ``1h 02m 03s`` (hours omitted when zero)."""
    seconds = max(0, ms) // 1000
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


def format_instant(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _resolve_session(state: _State, session_id: str | None) -> str:
    if session_id:
        return session_id
    active = state.service.get_active_session(state.tenant, state.actor)
    if active is None:
        console.print("[yellow]No active session.[/yellow]")
        raise typer.Exit(1)
    return active.id


def _print_durations(summary: DurationSummary) -> None:
    console.print(f"Effective:   {format_duration(summary.effective_duration_ms)}")
    console.print(f"On tasks:    {format_duration(summary.active_task_duration_ms)}")
    console.print(f"Unallocated: {format_duration(summary.unallocated_duration_ms)}")
    if summary.has_overlap:
        console.print("[yellow]Overlapping task activity detected.[/yellow]")


def _print_session_header(session: Session) -> None:
    console.print(f"[bold]Session {session.id}[/bold] ({session.status})")
    console.print(f"Started:     {format_instant(session.start_at)}")
    if session.end_at is not None:
        console.print(f"Ended:       {format_instant(session.end_at)}")
    if session.summary:
        console.print(f"Summary:     {session.summary}")


def _print_detail(state: _State, detail: SessionDetail) -> None:
    _print_session_header(detail.session)
    _print_durations(detail.duration_summary)

    if detail.task_summaries:
        table = Table(title="Tasks")
        table.add_column("Task")
        table.add_column("Active", justify="right")
        table.add_column("Done")
        for summary in detail.task_summaries:
            task = state.catalog.get_task(summary.task_id)
            table.add_row(
                task.title if task else summary.task_id,
                format_duration(summary.active_duration_ms),
                "yes" if summary.was_completed else "",
            )
        console.print(table)

    if detail.project_summaries:
        table = Table(title="Projects")
        table.add_column("Project")
        table.add_column("Active", justify="right")
        for summary in detail.project_summaries:
            project = state.catalog.get_project(summary.project_id)
            table.add_row(
                project.name if project else summary.project_id,
                format_duration(summary.active_duration_ms),
            )
        console.print(table)


# ── project ──────────────────────────────────────────────────────


@project_app.command("add")
def project_add(ctx: typer.Context, name: str) -> None:
    """Create a project."""
    state: _State = ctx.obj
    with _domain_errors():
        project = state.catalog.add_project(state.tenant, name)
    console.print(f"[green]Created project[/green] {project.id} {project.name}")


# ── task ─────────────────────────────────────────────────────────


@task_app.command("add")
def task_add(
    ctx: typer.Context,
    title: str,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Project id.")] = None,
) -> None:
    """Create a task."""
    state: _State = ctx.obj
    with _domain_errors():
        task = state.catalog.add_task(state.tenant, title, project_id=project)
    console.print(f"[green]Created task[/green] {task.id} {task.title}")


@task_app.command("list")
def task_list(
    ctx: typer.Context,
    project: Annotated[Optional[str], typer.Option("--project", "-p", help="Project id.")] = None,
) -> None:
    """List tasks in the tenant."""
    state: _State = ctx.obj
    tasks = state.catalog.list_tasks(state.tenant, project_id=project)
    if not tasks:
        console.print("[yellow]No tasks.[/yellow]")
        return
    table = Table()
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Project")
    for task in tasks:
        table.add_row(task.id, task.title, task.status, task.project_id or "")
    console.print(table)


@task_app.command("stats")
def task_stats(
    ctx: typer.Context,
    task_id: str,
    as_json: Annotated[bool, typer.Option("--json", help="Emit JSON.")] = False,
) -> None:
    """Show tracked time for a task across your sessions."""
    state: _State = ctx.obj
    with _domain_errors():
        metadata = state.service.get_task_session_metadata(state.tenant, state.actor, task_id)
    if as_json:
        typer.echo(metadata.model_dump_json(indent=2))
        return
    console.print(f"Tracked:      {format_duration(metadata.total_tracked_ms)}")
    console.print(f"Paused:       {format_duration(metadata.total_paused_ms)}")
    console.print(f"Pauses:       {metadata.pause_count}")
    console.print(f"Sessions:     {metadata.session_count}")
    console.print(f"Last session: {format_instant(metadata.last_session_at)}")


# ── session lifecycle ────────────────────────────────────────────


@session_app.command("start")
def session_start(
    ctx: typer.Context,
    project: Annotated[
        Optional[list[str]], typer.Option("--project", "-p", help="Project id (repeatable).")
    ] = None,
    summary: Annotated[Optional[str], typer.Option("--summary", help="What this session is for.")] = None,
) -> None:
    """Start a session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = state.service.start_session(
            state.tenant, state.actor, project_ids=project, summary=summary
        )
    console.print(f"[green]Started session[/green] {session_id}")


@session_app.command("pause")
def session_pause(ctx: typer.Context, session: SessionOption = None) -> None:
    """Pause the running session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.pause_session(state.tenant, state.actor, session_id)
    console.print(f"Paused session {session_id}")


@session_app.command("resume")
def session_resume(ctx: typer.Context, session: SessionOption = None) -> None:
    """Resume the paused session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.resume_session(state.tenant, state.actor, session_id)
    console.print(f"Resumed session {session_id}")


@session_app.command("finish")
def session_finish(
    ctx: typer.Context,
    session: SessionOption = None,
    summary: Annotated[Optional[str], typer.Option("--summary", help="What got done.")] = None,
) -> None:
    """Finish the session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.finish_session(state.tenant, state.actor, session_id, summary=summary)
    console.print(f"[green]Finished session[/green] {session_id}")


@session_app.command("cancel")
def session_cancel(
    ctx: typer.Context,
    session: SessionOption = None,
    mode: Annotated[
        str, typer.Option("--mode", help="discard or keep-excluded.")
    ] = "keep-excluded",
) -> None:
    """Cancel the session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.cancel_session(state.tenant, state.actor, session_id, mode)
    console.print(f"Cancelled session {session_id}")


@session_app.command("status")
def session_status(ctx: typer.Context) -> None:
    """Show the active session, if any."""
    state: _State = ctx.obj
    active = state.service.get_active_session(state.tenant, state.actor)
    if active is None:
        console.print("[yellow]No active session.[/yellow]")
        return
    with _domain_errors():
        detail = state.service.get_session(state.tenant, state.actor, active.id)
    if detail is not None:
        _print_detail(state, detail)


@session_app.command("list")
def session_list(
    ctx: typer.Context,
    status: Annotated[Optional[str], typer.Option("--status", help="Filter by status.")] = None,
    include_discarded: Annotated[
        bool, typer.Option("--include-discarded", help="Also show discarded sessions.")
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Emit JSON.")] = False,
) -> None:
    """List your sessions, newest first."""
    state: _State = ctx.obj
    with _domain_errors():
        items = state.service.list_sessions(
            state.tenant, state.actor, status=status, include_discarded=include_discarded
        )
    if as_json:
        typer.echo(json.dumps([item.model_dump(mode="json") for item in items], indent=2))
        return
    if not items:
        console.print("[yellow]No sessions found.[/yellow]")
        return
    table = Table()
    table.add_column("Id")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Effective", justify="right")
    table.add_column("Unallocated", justify="right")
    for item in items:
        table.add_row(
            item.session.id,
            item.session.status,
            format_instant(item.session.start_at),
            format_duration(item.duration_summary.effective_duration_ms),
            format_duration(item.duration_summary.unallocated_duration_ms),
        )
    console.print(table)


@session_app.command("show")
def session_show(
    ctx: typer.Context,
    session_id: str,
    include_discarded: Annotated[
        bool, typer.Option("--include-discarded", help="Allow discarded sessions.")
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Emit JSON.")] = False,
) -> None:
    """Show one session with its task and project breakdown."""
    state: _State = ctx.obj
    with _domain_errors():
        detail = state.service.get_session(
            state.tenant, state.actor, session_id, include_discarded=include_discarded
        )
    if detail is None:
        console.print(f"[yellow]Session {session_id} not found.[/yellow]")
        raise typer.Exit(1)
    if as_json:
        typer.echo(detail.model_dump_json(indent=2))
        return
    _print_detail(state, detail)


# ── session activity ─────────────────────────────────────────────


@session_app.command("activate")
def session_activate(ctx: typer.Context, task_id: str, session: SessionOption = None) -> None:
    """Start counting time against a task."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.activate_task(state.tenant, state.actor, session_id, task_id)
    console.print(f"Activated task {task_id}")


@session_app.command("deactivate")
def session_deactivate(ctx: typer.Context, task_id: str, session: SessionOption = None) -> None:
    """Stop counting time against a task."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.deactivate_task(state.tenant, state.actor, session_id, task_id)
    console.print(f"Deactivated task {task_id}")


@session_app.command("done")
def session_done(ctx: typer.Context, task_id: str, session: SessionOption = None) -> None:
    """Mark a task done."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.mark_task_done(state.tenant, state.actor, session_id, task_id)
    console.print(f"[green]Marked task {task_id} done[/green]")


@session_app.command("reset")
def session_reset(ctx: typer.Context, task_id: str, session: SessionOption = None) -> None:
    """Put a task back to todo."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.reset_task(state.tenant, state.actor, session_id, task_id)
    console.print(f"Reset task {task_id}")


@session_app.command("step")
def session_step(
    ctx: typer.Context,
    text: str,
    task: Annotated[Optional[str], typer.Option("--task", "-t", help="Task id.")] = None,
    session: SessionOption = None,
) -> None:
    """Log a progress note."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.log_step(state.tenant, state.actor, session_id, text, task_id=task)
    console.print("Logged step")


@session_app.command("assign")
def session_assign(ctx: typer.Context, project_id: str, session: SessionOption = None) -> None:
    """Attach a project to the session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.assign_project(state.tenant, state.actor, session_id, project_id)
    console.print(f"Assigned project {project_id}")


@session_app.command("unassign")
def session_unassign(ctx: typer.Context, project_id: str, session: SessionOption = None) -> None:
    """Detach a project from the session."""
    state: _State = ctx.obj
    with _domain_errors():
        session_id = _resolve_session(state, session)
        state.service.unassign_project(state.tenant, state.actor, session_id, project_id)
    console.print(f"Unassigned project {project_id}")


if __name__ == "__main__":
    app()
