# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail queue.

This module provides a CLI for enqueueing, inspecting and controlling
tasks directly on the database, without going through the HTTP API.

Usage:
    mail-queue serve --port 8000
    mail-queue enqueue user@example.com --subject "Hi" --content "Hello"
    mail-queue enqueue user@example.com --template WELCOME --var name=Ada
    mail-queue list --status FAILED
    mail-queue retry <queue_id>
    mail-queue templates add WELCOME --subject "Hi {{ name }}" --content "..."

Example:
    $ mail-queue --db ./queue.db enqueue ada@example.com \\
        --subject "Report" --content "<p>Attached</p>" \\
        --attach report.pdf --priority 2

    $ mail-queue --db ./queue.db stats --json
"""

from __future__ import annotations

import asyncio
import base64
import json
import mimetypes
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import QueueConfig, StorageConfig, load_config
from .exceptions import MailQueueError
from .models import TaskStatus
from .queue import EmailQueue

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    TaskStatus.PENDING.value: "blue",
    TaskStatus.SENDING.value: "yellow",
    TaskStatus.SENT.value: "green",
    TaskStatus.FAILED.value: "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _parse_schedule(value: str) -> int:
    """Accept epoch seconds or an ISO 8601 datetime."""
    if value.isdigit():
        return int(value)
    try:
        return int(datetime.fromisoformat(value).timestamp())
    except ValueError:
        raise click.BadParameter(f"expected epoch seconds or ISO datetime, got {value!r}") from None


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    variables = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}")
        variables[key] = value
    return variables


def _read_attachment(path: str) -> dict[str, str]:
    file_path = Path(path)
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return {
        "filename": file_path.name,
        "content": base64.b64encode(file_path.read_bytes()).decode("ascii"),
        "mime_type": mime_type or "application/octet-stream",
    }


@asynccontextmanager
async def open_queue(config: QueueConfig):
    """Open the queue for a single command, without poll loops."""
    queue = EmailQueue(replace(config, scheduler_active=False))
    await queue.init()
    try:
        yield queue
    finally:
        await queue.stop()


def _run(ctx: click.Context, operation) -> Any:
    """Run ``operation(queue)`` against the configured database; exit 1 on queue errors."""
    config: QueueConfig = ctx.obj["config"]

    async def _call():
        async with open_queue(config) as queue:
            return await operation(queue)

    try:
        return run_async(_call())
    except MailQueueError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), envvar="MQ_CONFIG",
              help="Path to the INI configuration file.")
@click.option("--db", "db_path", envvar="MQ_DB_PATH", help="Database path or PostgreSQL DSN.")
@click.version_option(package_name="mail-queue")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """mail-queue: durable asynchronous email delivery queue."""
    config = load_config(config_path)
    if db_path:
        config = replace(config, storage=StorageConfig(db_path=os.path.expanduser(db_path)))
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


# ============================================================================
# Server
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP API with the poll loops."""
    import uvicorn

    config: QueueConfig = ctx.obj["config"]
    host = host or config.server.host
    port = port or config.server.port

    # Read back by mail_queue.server at import time
    os.environ["MQ_DB_PATH"] = config.storage.db_path
    if ctx.obj["config_path"]:
        os.environ["MQ_CONFIG"] = ctx.obj["config_path"]

    console.print("\n[bold cyan]Starting mail queue[/bold cyan]")
    console.print(f"  DB:        {config.storage.db_path}")
    console.print(f"  Listen:    {host}:{port}")
    console.print(f"  Scheduler: {'active' if config.scheduler_active else 'inactive'}")
    console.print()

    uvicorn.run(
        "mail_queue.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower(),
    )


# ============================================================================
# Tasks
# ============================================================================

@main.command("enqueue")
@click.argument("recipient")
@click.option("--subject", "-s", help="Subject line (required without --template).")
@click.option("--content", "-c", help="Body, plain text or HTML (required without --template).")
@click.option("--template", "-t", "template_code", help="Template code to render.")
@click.option("--var", "variables", multiple=True, help="Template variable as key=value (repeatable).")
@click.option("--name", "recipient_name", help="Recipient display name.")
@click.option("--attach", "attachments", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="File to attach (repeatable).")
@click.option("--priority", type=int, help="1 (highest) to 10 (lowest).")
@click.option("--max-retry", type=int, help="Maximum retry attempts.")
@click.option("--origin", help="Origin label used by the per-origin rate limit.")
@click.option("--schedule-at", help="Do not send before this time (epoch seconds or ISO datetime).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def enqueue(
    ctx: click.Context,
    recipient: str,
    subject: Optional[str],
    content: Optional[str],
    template_code: Optional[str],
    variables: tuple[str, ...],
    recipient_name: Optional[str],
    attachments: tuple[str, ...],
    priority: Optional[int],
    max_retry: Optional[int],
    origin: Optional[str],
    schedule_at: Optional[str],
    as_json: bool,
) -> None:
    """Add an email to the queue."""
    payload: dict[str, Any] = {
        "recipient_email": recipient,
        "recipient_name": recipient_name,
        "subject": subject,
        "content": content,
        "template_code": template_code,
        "variables": _parse_vars(variables),
        "attachments": [_read_attachment(p) for p in attachments] or None,
        "priority": priority,
        "max_retry": max_retry,
        "origin": origin,
        "schedule_ts": _parse_schedule(schedule_at) if schedule_at else None,
    }
    payload = {k: v for k, v in payload.items() if v is not None}

    queue_id = _run(ctx, lambda queue: queue.enqueue(payload))

    if as_json:
        print_json({"ok": True, "queue_id": queue_id})
        return
    print_success(f"Enqueued {queue_id}")


@main.command("cancel")
@click.argument("queue_id")
@click.pass_context
def cancel(ctx: click.Context, queue_id: str) -> None:
    """Cancel a PENDING task."""
    if _run(ctx, lambda queue: queue.cancel(queue_id)):
        print_success(f"Task {queue_id} cancelled")
        return
    print_error(f"Task {queue_id} is not PENDING")
    sys.exit(1)


@main.command("retry")
@click.argument("queue_id")
@click.pass_context
def retry(ctx: click.Context, queue_id: str) -> None:
    """Move a FAILED task with retries left back to PENDING."""
    if _run(ctx, lambda queue: queue.retry(queue_id)):
        print_success(f"Task {queue_id} queued for retry")
        return
    print_error(f"Task {queue_id} is not retryable")
    sys.exit(1)


@main.command("status")
@click.argument("queue_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, queue_id: str, as_json: bool) -> None:
    """Show one task and its delivery attempts."""

    async def load(queue):
        task = await queue.get_task(queue_id)
        return task.to_dict(), await queue.get_attempts(queue_id)

    task, attempts = _run(ctx, load)

    if as_json:
        print_json({**task, "attempts": attempts})
        return

    style = STATUS_STYLES.get(task["status"], "white")
    console.print(f"\n[bold]Task {task['queue_id']}[/bold]\n")
    console.print(f"  Status:     [{style}]{task['status']}[/{style}]")
    console.print(f"  Recipient:  {task['recipient_email']}")
    console.print(f"  Subject:    {task['subject'] or '-'}")
    console.print(f"  Priority:   {task['priority']}")
    console.print(f"  Retries:    {task['retry_count']}/{task['max_retry']}")
    console.print(f"  Scheduled:  {_format_ts(task['schedule_ts'])}")
    console.print(f"  Next retry: {_format_ts(task['next_retry_ts'])}")
    console.print(f"  Sent:       {_format_ts(task['sent_ts'])}")
    if task["error_message"]:
        console.print(f"  Error:      [red]{task['error_message']}[/red]")
    console.print()

    if not attempts:
        return
    table = Table(title="Attempts")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Server")
    table.add_column("Duration", justify="right")
    table.add_column("At")
    table.add_column("Error", max_width=40)
    for attempt in attempts:
        style = STATUS_STYLES.get(attempt["status"], "white")
        table.add_row(
            str(attempt["attempt"]),
            f"[{style}]{attempt['status']}[/{style}]",
            attempt["server"] or "-",
            f"{attempt['duration_ms']} ms",
            _format_ts(attempt["created_ts"]),
            attempt["error_message"] or "",
        )
    console.print(table)


@main.command("list")
@click.option("--status", "-s", "status_filter", type=click.Choice([s.value for s in TaskStatus]),
              help="Filter by status.")
@click.option("--limit", "-l", type=int, default=50, help="Max tasks to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_tasks(ctx: click.Context, status_filter: Optional[str], limit: int, as_json: bool) -> None:
    """List tasks, most recent first."""
    tasks = [t.to_dict() for t in _run(ctx, lambda queue: queue.list_tasks(status_filter, limit))]

    if as_json:
        print_json(tasks)
        return

    if not tasks:
        console.print("[dim]No tasks found.[/dim]")
        return

    table = Table(title=f"Tasks (showing up to {limit})")
    table.add_column("Queue ID", style="cyan", max_width=36)
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Prio", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Subject", max_width=30)
    table.add_column("Created")

    for task in tasks:
        style = STATUS_STYLES.get(task["status"], "white")
        table.add_row(
            task["queue_id"],
            task["recipient_email"],
            f"[{style}]{task['status']}[/{style}]",
            str(task["priority"]),
            f"{task['retry_count']}/{task['max_retry']}",
            (task["subject"] or "-")[:30],
            _format_ts(task["created_ts"]),
        )

    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show task counts per status."""
    counts = _run(ctx, lambda queue: queue.stats())

    if as_json:
        print_json(counts)
        return

    console.print("\n[bold]Queue stats[/bold]\n")
    for name, value in counts.items():
        style = STATUS_STYLES.get(name, "white")
        console.print(f"  [{style}]{name:<8}[/{style}] {value}")
    console.print(f"  {'TOTAL':<8} {sum(counts.values())}")
    console.print()


@main.command("purge")
@click.option("--older-than-days", type=int, default=30, show_default=True,
              help="Delete SENT tasks delivered before this many days ago.")
@click.pass_context
def purge(ctx: click.Context, older_than_days: int) -> None:
    """Delete old SENT tasks."""
    removed = _run(ctx, lambda queue: queue.purge_sent(older_than_days))
    print_success(f"Removed {removed} sent task(s)")


@main.command("run-now")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run_now(ctx: click.Context, as_json: bool) -> None:
    """Run one retry sweep and one dispatch cycle, then exit."""
    result = _run(ctx, lambda queue: queue.run_now())

    if as_json:
        print_json(result)
        return
    print_success(
        f"Dispatched {result['pending']} pending and {result['scheduled']} scheduled task(s), "
        f"{result['retried']} requeued for retry"
    )


# ============================================================================
# Templates
# ============================================================================

@main.group("templates")
def templates() -> None:
    """Manage email templates."""


@templates.command("add")
@click.argument("template_code")
@click.option("--subject", "-s", required=True, help="Subject template.")
@click.option("--content", "-c", help="Body template.")
@click.option("--content-file", type=click.Path(exists=True, dir_okay=False),
              help="Read the body template from a file.")
@click.option("--name", "-n", help="Human-readable name.")
@click.option("--disabled", is_flag=True, help="Store the template as disabled.")
@click.pass_context
def templates_add(
    ctx: click.Context,
    template_code: str,
    subject: str,
    content: Optional[str],
    content_file: Optional[str],
    name: Optional[str],
    disabled: bool,
) -> None:
    """Create or replace a template."""
    if content_file:
        content = Path(content_file).read_text(encoding="utf-8")
    if not content:
        print_error("--content or --content-file is required")
        sys.exit(1)

    template = {
        "template_code": template_code,
        "name": name,
        "subject": subject,
        "content": content,
        "enabled": not disabled,
    }
    _run(ctx, lambda queue: queue.db.templates.add(template))
    print_success(f"Template '{template_code}' saved")


@templates.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def templates_list(ctx: click.Context, as_json: bool) -> None:
    """List templates."""
    rows = _run(ctx, lambda queue: queue.db.templates.list_all())

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No templates found.[/dim]")
        return

    table = Table(title="Templates")
    table.add_column("Code", style="cyan")
    table.add_column("Name")
    table.add_column("Subject", max_width=40)
    table.add_column("Enabled", justify="center")
    for row in rows:
        table.add_row(
            row["template_code"],
            row.get("name") or "-",
            row["subject"],
            "[green]yes[/green]" if row.get("enabled") else "[red]no[/red]",
        )
    console.print(table)


@templates.command("remove")
@click.argument("template_code")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def templates_remove(ctx: click.Context, template_code: str, force: bool) -> None:
    """Delete a template."""
    if not force and not click.confirm(f"Delete template '{template_code}'?"):
        console.print("[dim]Cancelled.[/dim]")
        return
    if _run(ctx, lambda queue: queue.db.templates.remove(template_code)):
        print_success(f"Template '{template_code}' removed")
        return
    print_error(f"Template '{template_code}' not found")
    sys.exit(1)


if __name__ == "__main__":
    main()
