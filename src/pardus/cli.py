"""CLI entry point for pardus."""

import functools
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from datetime import datetime, timezone

import click

from pardus.config import get_config, save_settings
from pardus.core import memory as memory_mod
from pardus.core import tasks as tasks_mod
from pardus.core import workspace as workspace_mod
from pardus.core.agents import AGENT_TYPES, get_agent, terminate_active_agents
from pardus.core.logs import LogStore, follow_log
from pardus.core.trigger import TriggerSignal
from pardus.db.engine import get_db
from pardus.db.models import RECURRENCE_TYPES, TASK_STATUSES

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_time(value: str | None) -> int | None:
    """Parse epoch milliseconds or an ISO-8601 datetime (local time if naive)."""
    if value is None:
        return None
    if value.isdigit():
        return int(value)
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"Not epoch milliseconds or an ISO datetime: {value}")
    return int(dt.timestamp() * 1000)


def _format_time(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """pardus - scheduled agent task runner"""
    pass


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", required=True, help="What the agent should do")
@click.option("--due", default=None, help="Due time: epoch ms or ISO datetime (default: now)")
@click.option("--recurrence", "-r", type=click.Choice(RECURRENCE_TYPES), default="none")
@click.option("--interval", "-i", type=int, default=1, help="Recurrence interval")
@click.option("--until", default=None, help="Recurrence end: epoch ms or ISO datetime")
def task_add(title, description, due, recurrence, interval, until):
    """Queue a new task."""
    config = get_config()
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db,
                title,
                description,
                due_time=_parse_time(due),
                recurrence_type=recurrence,
                recurrence_interval=interval,
                recurrence_end_time=_parse_time(until),
            )
        except ValueError as e:
            _fail(f"Error: {e}")
    TriggerSignal(config.trigger_path).fire()
    click.echo(f"Created task: {task.id}")
    click.echo(f"  UUID: {task.uuid}")
    click.echo(f"  Due: {_format_time(task.due_time)}")
    if task.is_recurring:
        click.echo(f"  Repeats: every {task.recurrence_interval} {task.recurrence_type}")


STATUS_ICONS = {
    "pending": "○",
    "processing": "●",
    "completed": "✓",
    "failed": "✗",
}


def _echo_task_line(task):
    icon = STATUS_ICONS.get(task.status, "?")
    repeat = f" [every {task.recurrence_interval} {task.recurrence_type}]" if task.is_recurring else ""
    click.echo(f"  {icon} {task.id}: {task.title} ({task.status}, due {_format_time(task.due_time)}){repeat}")


@task_group.command("list")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List tasks, newest first."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status)

    if json_output:
        click.echo(json.dumps([asdict(t) for t in tasks], indent=2))
        return
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        _echo_task_line(task)


@task_group.command("search")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--title", default=None, help="Title substring")
@click.option("--due-before", default=None, help="Epoch ms or ISO datetime")
@click.option("--due-after", default=None, help="Epoch ms or ISO datetime")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_search(status, title, due_before, due_after, json_output):
    """Search tasks, earliest due first."""
    with _get_db() as db:
        tasks = tasks_mod.search_tasks(
            db,
            status=status,
            title_contains=title,
            due_before=_parse_time(due_before),
            due_after=_parse_time(due_after),
        )

    if json_output:
        click.echo(json.dumps([asdict(t) for t in tasks], indent=2))
        return
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        _echo_task_line(task)


@task_group.command("show")
@click.argument("task_id", type=int)
def task_show(task_id):
    """Show task details."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
    if not task:
        _fail(f"Task not found: {task_id}")

    click.echo(f"Task: {task.id}")
    click.echo(f"  UUID: {task.uuid}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Due: {_format_time(task.due_time)}")
    click.echo(f"  Description: {task.description}")
    if task.is_recurring:
        click.echo(f"  Repeats: every {task.recurrence_interval} {task.recurrence_type}")
        if task.recurrence_end_time:
            click.echo(f"  Until: {_format_time(task.recurrence_end_time)}")
    click.echo(f"  Created: {_format_time(task.created_at)}")
    click.echo(f"  Updated: {_format_time(task.updated_at)}")
    if memory_mod.memory_exists(config.memory_dir, task.uuid):
        click.echo(f"  Memory: {memory_mod.memory_path(config.memory_dir, task.uuid)}")
    files = workspace_mod.list_workspace_files(config.workspaces_dir, task.uuid)
    if files:
        click.echo(f"  Workspace files: {', '.join(files)}")


@task_group.command("edit")
@click.argument("task_id", type=int)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--due", default=None, help="Epoch ms or ISO datetime")
def task_edit(task_id, title, description, due):
    """Edit a task's title, description or due time."""
    due_time = _parse_time(due)
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        if title is not None:
            task = tasks_mod.update_task_title(db, task_id, title)
        if description is not None:
            task = tasks_mod.update_task_description(db, task_id, description)
        if due_time is not None:
            task = tasks_mod.update_task_due_time(db, task_id, due_time)
    click.echo(f"Updated task {task.id}: {task.title} (due {_format_time(task.due_time)})")


def _operator_action(task_id: int, action, verb: str, fire: bool):
    config = get_config()
    with _get_db() as db:
        try:
            task = action(db, task_id)
        except ValueError as e:
            _fail(f"Error: {e}")
    if fire:
        TriggerSignal(config.trigger_path).fire()
    click.echo(f"{verb} task {task.id}: {task.title} ({task.status})")


@task_group.command("force")
@click.argument("task_id", type=int)
def task_force(task_id):
    """Run a task now."""
    _operator_action(task_id, tasks_mod.force_task, "Forced", fire=True)


@task_group.command("restart")
@click.argument("task_id", type=int)
def task_restart(task_id):
    """Re-run a completed or failed task now."""
    _operator_action(task_id, tasks_mod.restart_task, "Restarted", fire=True)


@task_group.command("cancel")
@click.argument("task_id", type=int)
def task_cancel(task_id):
    """Return a processing task to pending."""
    _operator_action(task_id, tasks_mod.cancel_task, "Cancelled", fire=False)


@task_group.command("delete")
@click.argument("task_id", type=int)
def task_delete(task_id):
    """Delete a task and its memory. The workspace and log are kept."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        tasks_mod.delete_task(db, task_id)
    try:
        memory_mod.delete_memory(config.memory_dir, task.uuid)
    except OSError as e:
        click.echo(f"Warning: could not delete memory for {task.uuid}: {e}", err=True)
    click.echo(f"Deleted task {task_id}")


# ── Memory Commands ───────────────────────────────────────────────────────────


@main.group("memory")
def memory_group():
    """Read and replace task memory."""
    pass


@memory_group.command("get")
@click.argument("task_uuid")
def memory_get(task_uuid):
    """Print a task's memory."""
    config = get_config()
    content = memory_mod.load_memory(config.memory_dir, task_uuid)
    if content is None:
        _fail(f"No memory for task: {task_uuid}")
    click.echo(content)


@memory_group.command("set")
@click.argument("task_uuid")
@click.argument("content", required=False)
@click.option("--file", "file_", type=click.File("r"), default=None, help="Read content from a file ('-' for stdin)")
def memory_set(task_uuid, content, file_):
    """Replace a task's memory."""
    if file_ is not None:
        content = file_.read()
    if content is None:
        _fail("Provide CONTENT or --file")
    config = get_config()
    memory_mod.save_memory(config.memory_dir, task_uuid, content)
    click.echo(f"Memory saved for {task_uuid} ({len(content)} chars)")


# ── Log Commands ──────────────────────────────────────────────────────────────


@main.group("logs")
def logs_group():
    """Read task execution logs."""
    pass


@logs_group.command("show")
@click.argument("task_uuid")
def logs_show(task_uuid):
    """Print a task's log."""
    config = get_config()
    lines = LogStore(config.logs_dir).read(task_uuid)
    if not lines:
        click.echo("No log entries.")
        return
    for line in lines:
        click.echo(line)


@logs_group.command("follow")
@click.argument("task_uuid")
def logs_follow(task_uuid):
    """Print a task's log and keep printing new lines until interrupted."""
    config = get_config()
    path = LogStore(config.logs_dir).path(task_uuid)
    try:
        for line in follow_log(path, poll_interval=config.log_poll_ms / 1000):
            click.echo(line)
    except KeyboardInterrupt:
        pass


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Inspect task workspaces."""
    pass


@workspace_group.command("list")
def workspace_list():
    """List workspaces with their task titles."""
    config = get_config()
    with _get_db() as db:
        titles = tasks_mod.get_uuid_title_map(db)
    uuids = workspace_mod.list_workspaces(config.workspaces_dir)
    if not uuids:
        click.echo("No workspaces found.")
        return
    for ws_uuid in uuids:
        click.echo(f"  {ws_uuid}: {titles.get(ws_uuid, '(deleted task)')}")


@workspace_group.command("files")
@click.argument("task_uuid")
def workspace_files(task_uuid):
    """List files in a task's workspace."""
    config = get_config()
    files = workspace_mod.list_workspace_files(config.workspaces_dir, task_uuid)
    if files is None:
        _fail(f"Workspace not found: {task_uuid}")
    if not files:
        click.echo("Workspace is empty.")
        return
    for name in files:
        click.echo(f"  {name}")


@workspace_group.command("delete")
@click.argument("task_uuid")
@click.confirmation_option(prompt="Delete this workspace and its memory?")
def workspace_delete(task_uuid):
    """Delete a task's workspace and memory."""
    config = get_config()
    if not workspace_mod.delete_workspace(config.workspaces_dir, task_uuid):
        _fail(f"Workspace not found: {task_uuid}")
    memory_mod.delete_memory(config.memory_dir, task_uuid)
    click.echo(f"Deleted workspace {task_uuid}")


# ── Config Commands ───────────────────────────────────────────────────────────


@main.group("config")
def config_group():
    """Show or change runtime settings."""
    pass


@config_group.command("show")
def config_show():
    """Show the effective configuration."""
    config = get_config()
    click.echo(f"  Data dir: {config.data_dir}")
    click.echo(f"  Heartbeat: {config.heartbeat_ms}ms")
    click.echo(f"  Agent: {config.agent_type}")
    click.echo(f"  Agent timeout: {config.agent_timeout_ms}ms")
    click.echo(f"  API: http://{config.api_host}:{config.api_port}")
    click.echo(f"  Slack: {'configured' if config.slack_bot_token and config.slack_channel else 'not configured'}")


@config_group.command("set")
@click.option("--heartbeat-ms", type=click.IntRange(min=1), default=None)
@click.option("--agent", type=click.Choice(AGENT_TYPES), default=None)
def config_set(heartbeat_ms, agent):
    """Persist heartbeat or agent type. A running worker picks them up on restart."""
    changes = {}
    if heartbeat_ms is not None:
        changes["heartbeat_ms"] = heartbeat_ms
    if agent is not None:
        changes["agent_type"] = agent
    if not changes:
        _fail("Nothing to set: pass --heartbeat-ms and/or --agent")
    config = get_config()
    saved = save_settings(config.settings_path, changes)
    for key, value in saved.items():
        click.echo(f"  {key} = {value}")


# ── Server Commands ───────────────────────────────────────────────────────────


def _build_scheduler(config, mcp_config):
    from pardus.core.events import EventBus
    from pardus.core.scheduler import Scheduler
    from pardus.integrations.slack import notifier_from_config

    bus = EventBus()
    notifier = notifier_from_config(config)
    if notifier:
        notifier.attach(bus)
    factory = functools.partial(get_agent, mcp_config_path=mcp_config) if mcp_config else None
    return Scheduler(config, bus=bus, agent_factory=factory)


log_level_option = click.option(
    "--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="INFO"
)
mcp_config_option = click.option(
    "--mcp-config", default=None, help="MCP config file passed to the claude-code agent"
)


@main.command("worker")
@log_level_option
@mcp_config_option
def worker_command(log_level, mcp_config):
    """Run the scheduler until interrupted."""
    _setup_logging(log_level)
    config = get_config()
    scheduler = _build_scheduler(config, mcp_config)

    done = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: done.set())

    click.echo(f"Worker started (heartbeat {config.heartbeat_ms}ms, agent {config.agent_type})")
    scheduler.start()
    try:
        while not done.wait(1):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        terminate_active_agents()
        click.echo("Worker stopped")


@main.command("api")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@log_level_option
def api_command(host, port, log_level):
    """Serve the HTTP API without running tasks."""
    from pardus.web.app import run_server

    _setup_logging(log_level)
    config = get_config()
    run_server(host=host or config.api_host, port=port or config.api_port, config=config)


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@log_level_option
@mcp_config_option
def serve_command(host, port, log_level, mcp_config):
    """Serve the HTTP API and run the scheduler in the same process."""
    from pardus.web.app import run_server

    _setup_logging(log_level)
    config = get_config()
    scheduler = _build_scheduler(config, mcp_config)
    try:
        run_server(
            host=host or config.api_host,
            port=port or config.api_port,
            config=config,
            scheduler=scheduler,
        )
    finally:
        terminate_active_agents()


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from pardus.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
