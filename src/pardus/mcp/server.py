"""MCP server giving a running agent access to its task, memory and log."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from pardus.config import Config, get_config
from pardus.core import memory as memory_mod
from pardus.core import tasks as tasks_mod
from pardus.core import workspace as workspace_mod
from pardus.core.logs import LogStore
from pardus.core.trigger import TriggerSignal
from pardus.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    logs: LogStore


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config, logs=LogStore(config.logs_dir))
    finally:
        db.close()


mcp = FastMCP("pardus", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Memory Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def get_memory(ctx: Context, task_uuid: str) -> dict:
    """Read the memory (running summary) of a task."""
    app = _ctx(ctx)
    try:
        content = memory_mod.load_memory(app.config.memory_dir, task_uuid)
    except ValueError as e:
        return {"error": str(e)}
    return {"uuid": task_uuid, "memory": content or "", "exists": content is not None}


@mcp.tool()
def update_memory(ctx: Context, task_uuid: str, content: str) -> dict:
    """Replace the memory of a task with a new summary."""
    app = _ctx(ctx)
    if not tasks_mod.get_task_by_uuid(app.db, task_uuid):
        return {"error": f"Task not found: {task_uuid}"}
    memory_mod.save_memory(app.config.memory_dir, task_uuid, content)
    return {"success": True, "uuid": task_uuid, "length": len(content)}


# ── Log Tools ─────────────────────────────────────────────────────────────────


@mcp.tool()
def append_log(ctx: Context, task_uuid: str, message: str) -> dict:
    """Append a progress note to a task's execution log."""
    app = _ctx(ctx)
    try:
        line = app.logs.append(task_uuid, message)
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "line": line}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_uuid: str) -> dict:
    """Get a task by its UUID."""
    app = _ctx(ctx)
    task = tasks_mod.get_task_by_uuid(app.db, task_uuid)
    if not task:
        return {"error": f"Task not found: {task_uuid}"}
    return _task_to_dict(task)


@mcp.tool()
def enqueue_task(
    ctx: Context,
    title: str,
    description: str,
    due_time: int | None = None,
    recurrence_type: str = "none",
    recurrence_interval: int = 1,
    recurrence_end_time: int | None = None,
) -> dict:
    """Queue a follow-up task. due_time is epoch milliseconds (default: now).

    recurrence_type: none, seconds, minutes, hours, days, weeks or months.
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db,
            title,
            description,
            due_time=due_time,
            recurrence_type=recurrence_type,
            recurrence_interval=recurrence_interval,
            recurrence_end_time=recurrence_end_time,
        )
    except ValueError as e:
        return {"error": str(e)}
    TriggerSignal(app.config.trigger_path).fire()
    return _task_to_dict(task)


# ── Workspace Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def list_workspace_files(ctx: Context, task_uuid: str) -> dict:
    """List the files an earlier run left in a task's workspace."""
    app = _ctx(ctx)
    try:
        files = workspace_mod.list_workspace_files(app.config.workspaces_dir, task_uuid)
    except ValueError as e:
        return {"error": str(e)}
    if files is None:
        return {"error": f"Workspace not found: {task_uuid}"}
    return {"uuid": task_uuid, "files": files}


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "uuid": task.uuid,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "due_time": task.due_time,
    }
    if task.is_recurring:
        d["recurrence"] = {
            "type": task.recurrence_type,
            "interval": task.recurrence_interval,
            "end_time": task.recurrence_end_time,
        }
    return d
