"""Scheduler: decides when tasks run and drives one agent execution at a time.

Two background threads wake the scheduler: a heartbeat on a fixed interval and
a fast poll of the trigger file that other processes raise to ask for an
immediate cycle. Either way the work happens in ``tick()``, which is guarded so
that only one cycle runs at once.
"""

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone

from pardus.config import Config
from pardus.core.agents import AgentCapability, get_agent
from pardus.core.events import (
    QUEUE_EMPTY,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_UPDATE,
    EventBus,
)
from pardus.core.logs import LogStore
from pardus.core.memory import load_memory, memory_exists, memory_path, save_memory
from pardus.core.prompt import build_prompt
from pardus.core.recurrence import reschedule_task
from pardus.core.tasks import (
    claim_next_task,
    get_task,
    reset_processing_to_pending,
    update_task_status,
)
from pardus.core.trigger import TriggerSignal
from pardus.core.workspace import create_workspace, ensure_data_dirs
from pardus.db.engine import get_db
from pardus.db.models import AgentResult, Task

logger = logging.getLogger(__name__)

# Outcomes of a single tick()
BUSY = "busy"
EMPTY = "empty"
COMPLETED = "completed"
FAILED = "failed"
ERROR = "error"

AgentFactory = Callable[[str], AgentCapability]


class Scheduler:
    """Runs due tasks through an agent, one at a time."""

    def __init__(
        self,
        config: Config,
        bus: EventBus | None = None,
        agent: AgentCapability | None = None,
        agent_factory: AgentFactory | None = None,
        prompt_builder: Callable[..., str] = build_prompt,
        agent_timeout_ms: int | None = None,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.logs = LogStore(config.logs_dir, self.bus)
        self.trigger = TriggerSignal(config.trigger_path)
        self.prompt_builder = prompt_builder
        self.heartbeat_ms = config.heartbeat_ms
        self.agent_type = config.agent_type
        self.agent_timeout_ms = agent_timeout_ms or config.agent_timeout_ms

        self._agent_factory = agent_factory or get_agent
        self._agent = agent or self._agent_factory(self.agent_type)

        self._guard = threading.Lock()
        self._lifecycle = threading.Lock()
        self._stop_event = threading.Event()
        self._rearm_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self):
        """Recover interrupted tasks, then start the heartbeat and trigger loops.

        Does nothing if already running. The first cycle runs right away on the
        heartbeat thread.
        """
        with self._lifecycle:
            if self.is_running():
                return
            ensure_data_dirs(self.config)
            self.recover()

            # Fresh events per run so loops left over from a previous run stay stopped
            self._stop_event = threading.Event()
            self._rearm_event = threading.Event()
            stop, rearm = self._stop_event, self._rearm_event
            self._threads = [
                threading.Thread(
                    target=self._heartbeat_loop, args=(stop, rearm), name="pardus-heartbeat", daemon=True
                ),
                threading.Thread(
                    target=self._trigger_loop, args=(stop,), name="pardus-trigger", daemon=True
                ),
            ]
            for t in self._threads:
                t.start()
            logger.info(
                "Scheduler started (heartbeat %sms, agent %s)", self.heartbeat_ms, self.agent_type
            )

    def stop(self, timeout: float = 2.0):
        """Stop both loops. A cycle already running is allowed to finish on its own."""
        with self._lifecycle:
            if not self._threads:
                return
            self._stop_event.set()
            self._rearm_event.set()
            for t in self._threads:
                if t is not threading.current_thread():
                    t.join(timeout=timeout)
            self._threads = []
            logger.info("Scheduler stopped")

    def recover(self) -> int:
        """Return tasks left in 'processing' by a previous run to 'pending'."""
        with get_db(self.config.db_path) as db:
            count = reset_processing_to_pending(db)
        if count:
            logger.info("Recovered %d interrupted task(s)", count)
        return count

    def set_heartbeat(self, heartbeat_ms: int):
        """Change the heartbeat interval. A running heartbeat loop is re-armed."""
        if heartbeat_ms <= 0:
            raise ValueError("Heartbeat must be a positive number of milliseconds")
        self.heartbeat_ms = heartbeat_ms
        self._rearm_event.set()
        logger.info("Heartbeat set to %sms", heartbeat_ms)

    def set_agent(self, agent_type: str, agent: AgentCapability | None = None):
        """Switch the agent used for subsequent cycles."""
        self._agent = agent or self._agent_factory(agent_type)
        self.agent_type = agent_type
        logger.info("Agent set to %s", agent_type)

    def _heartbeat_loop(self, stop: threading.Event, rearm: threading.Event):
        self.tick()
        while not stop.is_set():
            rearmed = rearm.wait(self.heartbeat_ms / 1000)
            if stop.is_set():
                break
            if rearmed:
                rearm.clear()
                continue
            self.tick()

    def _trigger_loop(self, stop: threading.Event):
        interval = self.config.trigger_poll_ms / 1000
        while not stop.wait(interval):
            # Leave the marker in place while busy so the request is not lost
            if self._guard.locked() or not self.trigger.is_raised():
                continue
            if self.trigger.consume():
                logger.debug("Trigger received")
                self.tick()

    # ── Cycle ────────────────────────────────────────────────────────────────

    def tick(self, now: int | None = None) -> str:
        """Run one claim cycle. Returns the cycle outcome.

        A cycle started while another is in flight returns BUSY immediately.
        """
        if not self._guard.acquire(blocking=False):
            logger.debug("Cycle already in progress, skipping")
            return BUSY
        try:
            return self._run_cycle(now)
        except Exception:
            logger.exception("Scheduler cycle failed")
            return ERROR
        finally:
            self._guard.release()

    def _run_cycle(self, now: int | None) -> str:
        with get_db(self.config.db_path) as db:
            task = claim_next_task(db, now)
            if task is None:
                logger.debug("No due tasks")
                self.bus.emit(QUEUE_EMPTY)
                return EMPTY

            logger.info("Claimed task %s (%s): %s", task.id, task.uuid, task.title)
            try:
                self.bus.emit(TASK_UPDATE, asdict(task))
                try:
                    result = self._execute(task)
                except Exception as e:
                    logger.exception("Execution of task %s failed", task.id)
                    result = AgentResult(success=False, error=str(e))

                if result.success:
                    self._complete(db, task, result, now)
                    return COMPLETED
                self._fail(db, task, result)
                return FAILED
            except Exception:
                self._release_claim(db, task)
                raise

    def _release_claim(self, db, task: Task):
        """Mark a claimed task failed if an error left it in 'processing'."""
        try:
            current = get_task(db, task.id)
            if current is not None and current.status == "processing":
                update_task_status(db, task.id, "failed")
                logger.warning("Task %s marked failed after a scheduler error", task.id)
        except sqlite3.Error:
            logger.exception("Could not release task %s", task.id)

    def _execute(self, task: Task) -> AgentResult:
        workspace = create_workspace(self.config.workspaces_dir, task.uuid)
        memory = load_memory(self.config.memory_dir, task.uuid) or ""
        prompt = self.prompt_builder(
            memory,
            task.description,
            memory_file=str(memory_path(self.config.memory_dir, task.uuid).resolve()),
        )

        self.logs.append(task.uuid, f"Starting task: {task.title}")
        self.logs.append(task.uuid, f"Agent: {self.agent_type}")
        result = self._invoke_agent(workspace, prompt, self.logs.stream_sink(task.uuid))

        if result.success and not memory_exists(self.config.memory_dir, task.uuid):
            content = "\n\n".join(p for p in (memory, result.output or "") if p)
            save_memory(self.config.memory_dir, task.uuid, content)
        return result

    def _invoke_agent(self, workspace, prompt: str, on_stream) -> AgentResult:
        """Call the agent on a worker thread, giving up after agent_timeout_ms.

        A timed-out agent thread is abandoned; it cannot be interrupted.
        """
        agent = self._agent
        box: dict[str, AgentResult] = {}

        def run():
            try:
                box["result"] = agent(workspace, prompt, on_stream)
            except Exception as e:
                logger.warning("Agent raised: %s", e)
                box["result"] = AgentResult(success=False, error=str(e) or type(e).__name__)

        worker = threading.Thread(target=run, name="pardus-agent", daemon=True)
        worker.start()
        worker.join(self.agent_timeout_ms / 1000)
        if worker.is_alive():
            return AgentResult(
                success=False,
                error=f"Agent timed out after {self.agent_timeout_ms} ms",
                timed_out=True,
            )
        return box.get("result") or AgentResult(success=False, error="Agent returned no result")

    def _complete(self, db, task: Task, result: AgentResult, now: int | None):
        output = result.output or ""
        updated = update_task_status(db, task.id, "completed")
        rescheduled = None
        if updated is not None and updated.is_recurring:
            rescheduled = reschedule_task(db, updated, now)
        self.logs.append(task.uuid, f"Task completed ({len(output)} chars of output)")
        logger.info("Task %s completed", task.id)
        if updated is None:
            # Deleted while running
            return

        self.bus.emit(TASK_UPDATE, asdict(updated))
        self.bus.emit(TASK_COMPLETED, {**asdict(updated), "output": output})

        if not updated.is_recurring:
            return
        if rescheduled is None:
            logger.info("Recurring task %s has no further occurrences", task.id)
            return
        when = datetime.fromtimestamp(rescheduled.due_time / 1000, tz=timezone.utc).isoformat()
        self.logs.append(task.uuid, f"Rescheduled for {when}")
        logger.info("Rescheduled task %s for %s", task.id, when)
        self.bus.emit(TASK_UPDATE, asdict(rescheduled))
        self.trigger.fire()

    def _fail(self, db, task: Task, result: AgentResult):
        updated = update_task_status(db, task.id, "failed")
        if result.timed_out:
            self.logs.append(task.uuid, f"Timed out: {result.error}")
        else:
            self.logs.append(task.uuid, f"Task failed: {result.error}")
        logger.info("Task %s failed: %s", task.id, result.error)
        if updated is None:
            return
        self.bus.emit(TASK_UPDATE, asdict(updated))
        self.bus.emit(TASK_FAILED, {**asdict(updated), "error": result.error})
