from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from arcwatch.config import get_settings
from arcwatch.db import init_db, session_scope
from arcwatch.errors import ServiceError
from arcwatch.services import ObserverService

app = typer.Typer(help="Observer read models for collaborative drafts: arcs, digests and prediction markets")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
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
    project_root: str | None = typer.Option(
        None,
        "--project-root",
        help="Directory holding data/ (the default SQLite location).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["ARCWATCH_HOME"] = str(Path(project_root).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    scalar_rows: list[tuple[str, str]] = []
    nested_rows: list[tuple[str, Any]] = []

    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            scalar_rows.append((key, _format_scalar(value)))
        else:
            nested_rows.append((key, value))

    if scalar_rows:
        _render_table(title, scalar_rows)
    else:
        console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))

    for key, value in nested_rows:
        if isinstance(value, dict):
            _render_table(
                f"{title} · {key}",
                [(nested_key, _format_scalar(nested_value)) for nested_key, nested_value in value.items()],
                border_style="magenta",
            )
        else:
            _render_table(f"{title} · {key}", [("value", _format_scalar(value))], border_style="yellow")


def _run(ctx: typer.Context, db_url: str | None, call: Callable[[ObserverService, Any], Any]) -> Any:
    """Open one transaction, run *call* against the service, and turn service errors into exit code 1."""
    init_db(db_url)
    service = ObserverService(get_settings())
    try:
        with session_scope() as session:
            return call(service, session)
    except ServiceError as exc:
        if _wants_json(ctx):
            typer.echo(json.dumps(exc.to_dict(), indent=2))
        else:
            console.print(f"[red]{exc.code}[/red] {exc.message}")
        raise typer.Exit(code=1) from exc


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    init_db(db_url)
    _print("init-db", {"status": "ok", "database_url_override": db_url}, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8001, help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
) -> None:
    import uvicorn

    uvicorn.run("arcwatch.app:app", host=host, port=port, reload=reload,
                log_level=get_settings().log_level.lower())


@app.command("arc")
def arc_command(
    ctx: typer.Context,
    draft_id: int = typer.Argument(..., help="Draft id"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    view = _run(ctx, db_url, lambda service, session: service.get_draft_arc(session, draft_id))
    payload = view.model_dump(mode="json")
    _print(f"arc · draft {draft_id}", {**payload["summary"], "recap_24h": payload["recap_24h"]}, ctx)


@app.command("record-event")
def record_event_command(
    ctx: typer.Context,
    draft_id: int = typer.Argument(..., help="Draft id"),
    event_type: str = typer.Option(
        "manual", "--event-type",
        help="fix_request, pull_request, pull_request_decision, draft_released or manual",
    ),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    summary = _run(ctx, db_url, lambda service, session: service.record_draft_event(session, draft_id, event_type))
    _print("record-event", summary.model_dump(mode="json"), ctx)


@app.command("digest")
def digest_command(
    ctx: typer.Context,
    observer_id: int = typer.Option(..., "--observer-id", help="Observer id"),
    unseen_only: bool | None = typer.Option(None, "--unseen-only/--all", help="Defaults to the stored preference"),
    limit: int = typer.Option(20, help="Max entries (1-100)"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    entries = _run(
        ctx, db_url,
        lambda service, session: service.list_digest(session, observer_id, unseen_only=unseen_only, limit=limit),
    )
    if _wants_json(ctx):
        typer.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("ID", "Draft", "Studio", "Title", "Summary", "Seen"):
        table.add_column(column)
    for e in entries:
        studio = f"{e.studio_name} ★" if e.from_following_studio else (e.studio_name or "-")
        table.add_row(str(e.id), str(e.draft_id), studio, e.title, e.summary, "yes" if e.is_seen else "no")
    console.print(Panel(table, title=f"digest · observer {observer_id}", border_style="cyan"))


@app.command("market-profile")
def market_profile_command(
    ctx: typer.Context,
    observer_id: int = typer.Option(..., "--observer-id", help="Observer id"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    profile = _run(ctx, db_url, lambda service, session: service.get_prediction_market_profile(session, observer_id))
    _print("market-profile", profile.model_dump(mode="json"), ctx)


@app.command("settle")
def settle_command(
    ctx: typer.Context,
    pull_request_id: int = typer.Argument(..., help="Merged or rejected pull request id"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    settled = _run(
        ctx, db_url, lambda service, session: service.settle_pull_request_predictions(session, pull_request_id),
    )
    _print("settle", {"pull_request_id": pull_request_id, "settled": settled}, ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
