"""HTTP API for the task queue, memory, logs and workspaces."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.routing import Route

from pardus.config import Config, get_config, save_settings
from pardus.core import memory as memory_mod
from pardus.core import tasks as tasks_mod
from pardus.core import workspace as workspace_mod
from pardus.core.agents import AGENT_TYPES
from pardus.core.events import (
    LOG_STREAM,
    QUEUE_EMPTY,
    TASK_COMPLETED,
    TASK_CREATED,
    TASK_FAILED,
    TASK_UPDATE,
    EventBus,
)
from pardus.core.logs import LogStore, follow_log_async
from pardus.core.trigger import TriggerSignal
from pardus.db.engine import get_db

logger = logging.getLogger(__name__)

DEFAULT_DUE_OFFSET_MS = 60 * 60 * 1000
SSE_KEEPALIVE_SECONDS = 30
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

STREAMED_EVENTS = (TASK_UPDATE, TASK_CREATED, TASK_COMPLETED, TASK_FAILED, LOG_STREAM, QUEUE_EMPTY)


def _config(request: Request) -> Config:
    return request.app.state.config


def _get_db(request: Request):
    return get_db(_config(request).db_path)


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _fire_trigger(request: Request):
    TriggerSignal(_config(request).trigger_path).fire()


# ── Task Handlers ─────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    with _get_db(request) as db:
        return JSONResponse([_task_dict(t) for t in tasks_mod.list_tasks(db, status=status_filter)])


async def api_create_task(request: Request):
    try:
        body = await _json_body(request)
        title = (body.get("title") or "").strip()
        description = (body.get("description") or "").strip()
        if not title or not description:
            return _error("title and description are required")
        due_time = _optional_int(body.get("due_time"))
        if due_time is None:
            due_time = tasks_mod.now_ms() + DEFAULT_DUE_OFFSET_MS
        with _get_db(request) as db:
            task = tasks_mod.create_task(
                db,
                title,
                description,
                due_time=due_time,
                recurrence_type=body.get("recurrence_type") or "none",
                recurrence_interval=_optional_int(body.get("recurrence_interval")) or 1,
                recurrence_end_time=_optional_int(body.get("recurrence_end_time")),
            )
    except (TypeError, ValueError) as e:
        return _error(str(e))

    _fire_trigger(request)
    request.app.state.bus.emit(TASK_CREATED, asdict(task))
    return JSONResponse(_task_dict(task), status_code=201)


async def api_search_tasks(request: Request):
    params = request.query_params
    try:
        due_before = _optional_int(params.get("due_before"))
        due_after = _optional_int(params.get("due_after"))
    except ValueError:
        return _error("due_before and due_after must be epoch milliseconds")
    with _get_db(request) as db:
        tasks = tasks_mod.search_tasks(
            db,
            status=params.get("status"),
            title_contains=params.get("title"),
            due_before=due_before,
            due_after=due_after,
        )
        return JSONResponse([_task_dict(t) for t in tasks])


async def api_uuid_map(request: Request):
    with _get_db(request) as db:
        return JSONResponse(tasks_mod.get_uuid_title_map(db))


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _error("Task not found", 404)
        return JSONResponse(_task_dict(task))


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    try:
        body = await _json_body(request)
        if "status" in body:
            return _error("Status cannot be set directly; use force, restart or cancel")
        with _get_db(request) as db:
            if not tasks_mod.get_task(db, task_id):
                return _error("Task not found", 404)
            due_time = int(body["due_time"]) if "due_time" in body else None
            if "title" in body:
                tasks_mod.update_task_title(db, task_id, body["title"])
            if "description" in body:
                tasks_mod.update_task_description(db, task_id, body["description"])
            if due_time is not None:
                tasks_mod.update_task_due_time(db, task_id, due_time)
            task = tasks_mod.get_task(db, task_id)
    except (TypeError, ValueError) as e:
        return _error(str(e))

    request.app.state.bus.emit(TASK_UPDATE, asdict(task))
    return JSONResponse(_task_dict(task))


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    config = _config(request)
    with _get_db(request) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task or not tasks_mod.delete_task(db, task_id):
            return _error("Task not found", 404)
    try:
        memory_mod.delete_memory(config.memory_dir, task.uuid)
    except OSError as e:
        logger.warning("Could not delete memory for %s: %s", task.uuid, e)
    return JSONResponse({"success": True, "id": task_id})


async def _apply_operator_action(request: Request, action, fire_trigger: bool):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        if not tasks_mod.get_task(db, task_id):
            return _error("Task not found", 404)
        try:
            task = action(db, task_id)
        except ValueError as e:
            return _error(str(e))
    if fire_trigger:
        _fire_trigger(request)
    request.app.state.bus.emit(TASK_UPDATE, asdict(task))
    return JSONResponse(_task_dict(task))


async def api_force_task(request: Request):
    return await _apply_operator_action(request, tasks_mod.force_task, fire_trigger=True)


async def api_restart_task(request: Request):
    return await _apply_operator_action(request, tasks_mod.restart_task, fire_trigger=True)


async def api_cancel_task(request: Request):
    return await _apply_operator_action(request, tasks_mod.cancel_task, fire_trigger=False)


async def api_update_due_time(request: Request):
    task_id = request.path_params["task_id"]
    try:
        body = await _json_body(request)
        due_time = int(body["due_time"])
    except KeyError:
        return _error("due_time is required")
    except (TypeError, ValueError) as e:
        return _error(str(e))
    with _get_db(request) as db:
        task = tasks_mod.update_task_due_time(db, task_id, due_time)
        if not task:
            return _error("Task not found", 404)
    request.app.state.bus.emit(TASK_UPDATE, asdict(task))
    return JSONResponse(_task_dict(task))


# ── Workspace Handlers ────────────────────────────────────────────────────────


async def api_list_workspaces(request: Request):
    config = _config(request)
    with _get_db(request) as db:
        titles = tasks_mod.get_uuid_title_map(db)
    result = []
    for ws_uuid in workspace_mod.list_workspaces(config.workspaces_dir):
        files = workspace_mod.list_workspace_files(config.workspaces_dir, ws_uuid) or []
        result.append({"uuid": ws_uuid, "title": titles.get(ws_uuid), "file_count": len(files)})
    return JSONResponse(result)


async def api_list_workspace_files(request: Request):
    ws_uuid = request.path_params["uuid"]
    try:
        files = workspace_mod.list_workspace_files(_config(request).workspaces_dir, ws_uuid)
    except ValueError as e:
        return _error(str(e))
    if files is None:
        return _error("Workspace not found", 404)
    return JSONResponse({"uuid": ws_uuid, "files": files})


async def api_get_workspace_file(request: Request):
    try:
        path = workspace_mod.workspace_file(
            _config(request).workspaces_dir,
            request.path_params["uuid"],
            request.path_params["filename"],
        )
    except ValueError as e:
        return _error(str(e))
    if not path.is_file():
        return _error("File not found", 404)
    return FileResponse(path)


async def api_delete_workspace_file(request: Request):
    try:
        deleted = workspace_mod.delete_workspace_file(
            _config(request).workspaces_dir,
            request.path_params["uuid"],
            request.path_params["filename"],
        )
    except ValueError as e:
        return _error(str(e))
    if not deleted:
        return _error("File not found", 404)
    return JSONResponse({"success": True})


async def api_delete_workspace(request: Request):
    ws_uuid = request.path_params["uuid"]
    config = _config(request)
    try:
        if not workspace_mod.delete_workspace(config.workspaces_dir, ws_uuid):
            return _error("Workspace not found", 404)
    except ValueError as e:
        return _error(str(e))
    try:
        memory_mod.delete_memory(config.memory_dir, ws_uuid)
    except OSError as e:
        logger.warning("Could not delete memory for %s: %s", ws_uuid, e)
    return JSONResponse({"success": True, "uuid": ws_uuid})


# ── Memory Handlers ───────────────────────────────────────────────────────────


async def api_get_memory(request: Request):
    mem_uuid = request.path_params["uuid"]
    try:
        content = memory_mod.load_memory(_config(request).memory_dir, mem_uuid)
    except ValueError as e:
        return _error(str(e))
    return JSONResponse({"uuid": mem_uuid, "memory": content or "", "exists": content is not None})


async def api_update_memory(request: Request):
    mem_uuid = request.path_params["uuid"]
    try:
        body = await _json_body(request)
        content = body.get("memory", body.get("content"))
        if not isinstance(content, str):
            return _error("memory must be a string")
        memory_mod.save_memory(_config(request).memory_dir, mem_uuid, content)
    except ValueError as e:
        return _error(str(e))
    return JSONResponse({"uuid": mem_uuid, "memory": content, "exists": True})


# ── Config & Status Handlers ──────────────────────────────────────────────────


async def api_get_config(request: Request):
    return JSONResponse(_config(request).runtime_settings())


async def api_update_config(request: Request):
    config = _config(request)
    scheduler = request.app.state.scheduler
    try:
        body = await _json_body(request)
        changes = {}
        if "heartbeat_ms" in body:
            heartbeat_ms = int(body["heartbeat_ms"])
            if heartbeat_ms <= 0:
                raise ValueError("heartbeat_ms must be positive")
            changes["heartbeat_ms"] = heartbeat_ms
        if "agent_type" in body:
            if body["agent_type"] not in AGENT_TYPES:
                raise ValueError(f"Unknown agent type: {body['agent_type']}")
            changes["agent_type"] = body["agent_type"]
    except (TypeError, ValueError) as e:
        return _error(str(e))

    save_settings(config.settings_path, changes)
    config.apply_settings(changes)
    if scheduler is not None:
        if "heartbeat_ms" in changes:
            scheduler.set_heartbeat(changes["heartbeat_ms"])
        if "agent_type" in changes:
            scheduler.set_agent(changes["agent_type"])
    return JSONResponse(config.runtime_settings())


async def api_server_status(request: Request):
    config = _config(request)
    scheduler = request.app.state.scheduler
    with _get_db(request) as db:
        counts = tasks_mod.count_by_status(db)
    return JSONResponse({
        "scheduler_running": bool(scheduler and scheduler.is_running()),
        "heartbeat_ms": config.heartbeat_ms,
        "agent_type": config.agent_type,
        "counts": counts,
    })


# ── Log Handlers ──────────────────────────────────────────────────────────────


async def api_get_logs(request: Request):
    log_uuid = request.path_params["uuid"]
    try:
        lines = LogStore(_config(request).logs_dir).read(log_uuid)
    except ValueError as e:
        return _error(str(e))
    return JSONResponse({"uuid": log_uuid, "lines": lines})


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def api_stream_logs(request: Request):
    """Replay a task's log, then tail it. ``?follow=false`` stops after the replay."""
    log_uuid = request.path_params["uuid"]
    config = _config(request)
    try:
        path = LogStore(config.logs_dir).path(log_uuid)
    except ValueError as e:
        return _error(str(e))
    follow = request.query_params.get("follow", "true").lower() not in ("0", "false", "no")

    async def event_stream():
        batches = follow_log_async(path, poll_interval=config.log_poll_ms / 1000)
        try:
            for line in await anext(batches):
                yield _sse({"type": "log", "message": line})
            yield _sse({"type": "ready"})
            if not follow:
                return
            async for lines in batches:
                if await request.is_disconnected():
                    break
                for line in lines:
                    yield _sse({"type": "log", "message": line})
        finally:
            await batches.aclose()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


async def api_stream_events(request: Request):
    """Relay events published in this process to the client."""
    bus: EventBus = request.app.state.bus
    loop = asyncio.get_running_loop()
    q: asyncio.Queue = asyncio.Queue(maxsize=100)

    def enqueue(payload: str):
        try:
            q.put_nowait(payload)
        except asyncio.QueueFull:
            logger.debug("Event subscriber queue full, dropping event")

    def make_listener(event: str):
        def listener(data):
            payload = json.dumps({"type": event, "data": data}, default=str)
            loop.call_soon_threadsafe(enqueue, payload)
        return listener

    listeners = {event: make_listener(event) for event in STREAMED_EVENTS}
    for event, listener in listeners.items():
        bus.on(event, listener)

    async def event_stream():
        try:
            yield _sse({"type": "connected"})
            while True:
                try:
                    payload = await asyncio.wait_for(q.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    yield f"data: {payload}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            for event, listener in listeners.items():
                bus.off(event, listener)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    d = asdict(t)
    d["is_recurring"] = t.is_recurring
    return d


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, scheduler=None, bus: EventBus | None = None) -> Starlette:
    """Build the API app. When a scheduler is given it runs for the app's lifetime."""
    config = config or get_config()
    if scheduler is not None:
        bus = scheduler.bus
    bus = bus or EventBus()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        workspace_mod.ensure_data_dirs(config)
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/search", api_search_tasks, methods=["GET"]),
        Route("/api/tasks/uuid-map", api_uuid_map, methods=["GET"]),
        Route("/api/tasks/{task_id:int}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id:int}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id:int}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id:int}/force", api_force_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/restart", api_restart_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/cancel", api_cancel_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/due-time", api_update_due_time, methods=["PATCH"]),
        Route("/api/workspaces", api_list_workspaces, methods=["GET"]),
        Route("/api/workspaces/{uuid}", api_delete_workspace, methods=["DELETE"]),
        Route("/api/workspaces/{uuid}/files", api_list_workspace_files, methods=["GET"]),
        Route("/api/workspaces/{uuid}/files/{filename:path}", api_get_workspace_file, methods=["GET"]),
        Route(
            "/api/workspaces/{uuid}/files/{filename:path}",
            api_delete_workspace_file,
            methods=["DELETE"],
        ),
        Route("/api/memory/{uuid}", api_get_memory, methods=["GET"]),
        Route("/api/memory/{uuid}", api_update_memory, methods=["PATCH"]),
        Route("/api/config", api_get_config, methods=["GET"]),
        Route("/api/config", api_update_config, methods=["PATCH"]),
        Route("/api/server/status", api_server_status, methods=["GET"]),
        Route("/api/logs/{uuid}", api_get_logs, methods=["GET"]),
        Route("/api/logs/{uuid}/stream", api_stream_logs, methods=["GET"]),
        Route("/api/events", api_stream_events, methods=["GET"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.bus = bus
    app.state.scheduler = scheduler
    return app


def run_server(
    host: str = "127.0.0.1",
    port: int = 13337,
    config: Config | None = None,
    scheduler=None,
):
    app = create_app(config, scheduler=scheduler)
    uvicorn.run(app, host=host, port=port)
