"""CLI commands for imibot."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer

from imibot.agent.factory import Services, build_services
from imibot.config.loader import load_config
from imibot.errors import ImibotError
from imibot.logging import setup_logging
from imibot.storage.models import ThreadMessage, new_id

app = typer.Typer(name="imibot", help="Conversational assistant orchestration", no_args_is_help=True)
sessions_app = typer.Typer(help="Inspect and manage per-user tool sessions", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")


def _services(workspace: Path | None = None) -> Services:
    config = load_config()
    setup_logging(json_output=config.logging.json_output, level=config.logging.level)
    return build_services(config, workspace)


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _fail(error: Exception) -> None:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1)


@app.command()
def route(
    thread_id: str = typer.Argument(..., help="Thread to reply in"),
    user_id: str = typer.Argument(..., help="Owner of the thread"),
    message: str = typer.Argument(..., help="User message"),
    prompt_message_id: Optional[str] = typer.Option(None, "--prompt-message-id", help="Id for the stored user message"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace directory"),
) -> None:
    """Store a user message and route it through the generation paths."""
    services = _services(workspace)
    stores = services.stores
    prompt = stores.messages.add(ThreadMessage(
        thread_id=thread_id,
        role="user",
        content=message,
        id=prompt_message_id or new_id("msg"),
    ))
    stores.threads.touch(thread_id, user_id)
    try:
        result = asyncio.run(services.router.route(thread_id, prompt.id, user_id, message))
    except ImibotError as e:
        _fail(e)
        return
    reply = next((m for m in reversed(stores.messages.list(thread_id)) if m.role == "assistant"), None)
    _print_json({**result.to_dict(), "reply": reply.content if reply else None})


@sessions_app.command("show")
def sessions_show(
    user_id: str = typer.Argument(...),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Show one user's tool session, including expiry."""
    info = _services(workspace).sessions.describe(user_id)
    _print_json(info)
    if not info.get("found"):
        raise typer.Exit(code=1)


@sessions_app.command("list")
def sessions_list(workspace: Optional[Path] = typer.Option(None, "--workspace", "-w")) -> None:
    """List every tool session."""
    sessions = _services(workspace).sessions.list_sessions()
    _print_json({"total_sessions": len(sessions), "sessions": sessions})


@sessions_app.command("delete")
def sessions_delete(
    user_id: str = typer.Argument(...),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Delete a user's tool session. A new one is opened on next use."""
    _print_json(_services(workspace).sessions.delete_by_user(user_id).to_dict())


@app.command("stale-connections")
def stale_connections(
    user_id: str = typer.Argument(...),
    older_than_minutes: Optional[int] = typer.Option(
        None, "--older-than-minutes", help="Only report connections at least this old (default from config)",
    ),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Report OAuth connections that were started but never completed."""
    services = _services(workspace)
    if older_than_minutes is None:
        older_than_minutes = services.config.tool_router.stale_after_minutes
    try:
        report = asyncio.run(services.sessions.list_stale_connections(user_id, older_than_minutes))
    except ImibotError as e:
        _fail(e)
        return
    _print_json(report.to_dict())


@app.command()
def tasks(
    user_id: str = typer.Argument(...),
    limit: int = typer.Option(10, "--limit", "-n"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Show a user's background tasks, most recent first."""
    recent = _services(workspace).task_log.get_recent_by_user(user_id, limit)
    _print_json([t.to_dict() for t in recent])


@app.command("worker-tick")
def worker_tick(workspace: Optional[Path] = typer.Option(None, "--workspace", "-w")) -> None:
    """Run every enabled background worker once."""
    recorded = asyncio.run(_services(workspace).monitor.tick_once())
    _print_json({
        "tasks": len(recorded),
        "completed": sum(1 for t in recorded if t.status == "completed"),
        "failed": sum(1 for t in recorded if t.status == "failed"),
    })


if __name__ == "__main__":
    app()
