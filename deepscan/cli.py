from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from deepscan import services
from deepscan.config import get_settings
from deepscan.db import get_session_factory, init_db, session_scope
from deepscan.models import SourceType, Stage
from deepscan.pipeline import PipelineOrchestrator, SessionNotRunnable
from deepscan.results import ResultStore

app = typer.Typer(help="DeepScan scan-to-score lead pipeline")
console = Console()

_BUCKET_STYLES = {"hot": "bold red", "warm": "yellow", "cold": "cyan"}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy database URL."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_url:
        os.environ["DEEPSCAN_DATABASE_URL"] = db_url
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _orchestrator() -> PipelineOrchestrator:
    init_db()
    return PipelineOrchestrator(get_session_factory())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8001, help="Bind port"),
) -> None:
    """Run the HTTP API."""
    import uvicorn
    uvicorn.run("deepscan.app:app", host=host, port=port)


@app.command("scan")
def scan_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Payload file"),
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    source: SourceType = typer.Option(SourceType.PASTED_TEXT, "--source", "-s", help="Payload source type"),
) -> None:
    """Scan FILE and print the session summary."""
    orchestrator = _orchestrator()
    payload = file.read_text(encoding="utf-8", errors="replace")
    with session_scope() as session:
        scan = services.create_session(session, user, source, payload)
        session.commit()
        session_id = scan.id

    started = time.perf_counter()
    if _wants_json(ctx):
        final = orchestrator.run(session_id)
    else:
        with console.status(f"[bold cyan]Scanning {file.name}[/bold cyan]", spinner="dots"):
            final = orchestrator.run(session_id)
    elapsed = time.perf_counter() - started

    with session_scope() as session:
        detail = services.session_detail(services.get_scan(session, session_id))
    detail["elapsed_seconds"] = round(elapsed, 3)
    _print("scan", detail, ctx)
    if final is Stage.FAILED:
        raise typer.Exit(code=1)


@app.command("status")
def status_command(ctx: typer.Context, session_id: str = typer.Argument(..., help="Scan session id")) -> None:
    """Show stage, progress and error message of a session."""
    init_db()
    with session_scope() as session:
        try:
            detail = services.session_detail(services.get_scan(session, session_id))
        except services.SessionNotFound as exc:
            raise typer.BadParameter(str(exc)) from exc
    _print("status", detail, ctx)


@app.command("results")
def results_command(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Scan session id"),
    limit: int = typer.Option(20, min=1, help="Max rows"),
) -> None:
    """List scored prospects, highest score first."""
    init_db()
    with session_scope() as session:
        try:
            rows = services.list_results(session, ResultStore(get_session_factory()), session_id)[:limit]
        except services.SessionNotFound as exc:
            raise typer.BadParameter(str(exc)) from exc

    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False, default=str))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("#", "Score", "Bucket", "Name", "Contact", "Occupation"):
        table.add_column(column)
    for row in rows:
        entity = row["prospect"].get("entity", {})
        enrichment = row["prospect"].get("enrichment", {})
        bucket = row["bucket"]
        table.add_row(
            str(row["position"]), str(row["composite_score"]),
            f"[{_BUCKET_STYLES.get(bucket, 'white')}]{bucket}[/]",
            entity.get("name") or "-",
            entity.get("email") or entity.get("phone") or "-",
            enrichment.get("likely_occupation") or "-",
        )
    console.print(Panel(table, title=f"results · {session_id}", border_style="cyan"))


@app.command("reconcile")
def reconcile_command(
    ctx: typer.Context,
    minutes: float | None = typer.Option(None, "--minutes", help="Stale timeout in minutes (> 0)"),
) -> None:
    """Force-complete stuck sessions whose last event shows completion."""
    if minutes is not None and minutes <= 0:
        raise typer.BadParameter("--minutes must be greater than 0", param_hint="--minutes")
    fixed = services.reconcile_stale_sessions(_orchestrator(), minutes)
    _print("reconcile", {"reconciled": fixed}, ctx)


@app.command("weights")
def weights_command(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id"),
    reset: bool = typer.Option(False, "--reset", help="Restore the default weights first"),
) -> None:
    """Show a user's scoring weights."""
    store = _orchestrator().weight_store
    weights = store.reset(user) if reset else store.get(user)
    _print(f"weights · {user}", weights, ctx)


@app.command("run")
def run_command(ctx: typer.Context, session_id: str = typer.Argument(..., help="Idle scan session id")) -> None:
    """Run an idle session that was created but never started."""
    orchestrator = _orchestrator()
    try:
        final = orchestrator.run(session_id)
    except (LookupError, SessionNotRunnable) as exc:
        raise typer.BadParameter(str(exc)) from exc
    _print("run", {"session_id": session_id, "stage": final.value}, ctx)


if __name__ == "__main__":
    app()
