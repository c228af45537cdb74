"""Per-task execution logs.

Each task UUID has one append-only file of ``[timestamp] message`` lines.
Readers follow a log by polling its size and reading only the bytes appended
since their last offset, so a reader in another process sees the same stream
as one in the writer's process.
"""

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path

from pardus.core.events import LOG_STREAM, EventBus
from pardus.core.workspace import check_key

logger = logging.getLogger(__name__)


class LogStore:
    """Appends to and reads per-task log files."""

    def __init__(self, logs_dir: Path, bus: EventBus | None = None):
        self.logs_dir = logs_dir
        self.bus = bus
        self._lock = threading.Lock()

    def path(self, task_uuid: str) -> Path:
        return self.logs_dir / f"{check_key(task_uuid)}.log"

    def append(self, task_uuid: str, message: str) -> str:
        """Append one timestamped entry and return the written line."""
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        line = f"[{stamp}] {message.rstrip()}"
        with self._lock:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path(task_uuid), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        return line

    def stream_sink(self, task_uuid: str) -> Callable[[str], None]:
        """Callback that logs an agent output chunk and broadcasts it live.

        Each line of a multi-line chunk becomes its own timestamped entry.
        """

        def on_stream(chunk: str):
            for raw in chunk.split("\n"):
                text = raw.strip()
                if not text:
                    continue
                self.append(task_uuid, text)
                if self.bus:
                    self.bus.emit(
                        LOG_STREAM,
                        {"uuid": task_uuid, "message": text, "timestamp": int(time.time() * 1000)},
                    )

        return on_stream

    def read(self, task_uuid: str) -> list[str]:
        """All non-empty lines of a task's log."""
        path = self.path(task_uuid)
        if not path.exists():
            return []
        content = path.read_text(encoding="utf-8", errors="replace")
        return [line for line in content.split("\n") if line.strip()]

    def delete(self, task_uuid: str) -> bool:
        path = self.path(task_uuid)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        return True


class LogTail:
    """Incremental reader for a single log file.

    The first call to ``read_new`` returns every existing line; later calls
    return only lines appended since. A trailing partial line is held back
    until its newline arrives.
    """

    def __init__(self, path: Path):
        self.path = path
        self.offset = 0
        self._pending = b""

    def read_new(self) -> list[str]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []

        if size < self.offset:
            # File was deleted and recreated
            self.offset = 0
            self._pending = b""
        if size == self.offset:
            return []

        with open(self.path, "rb") as f:
            f.seek(self.offset)
            chunk = f.read(size - self.offset)
        self.offset += len(chunk)

        *complete, self._pending = (self._pending + chunk).split(b"\n")
        lines = [raw.decode("utf-8", errors="replace") for raw in complete]
        return [line for line in lines if line.strip()]


def follow_log(
    path: Path,
    poll_interval: float = 0.1,
    stop: threading.Event | None = None,
) -> Iterator[str]:
    """Yield existing lines, then new lines as they are appended, until stopped."""
    stop = stop or threading.Event()
    tail = LogTail(path)
    yield from tail.read_new()
    while not stop.wait(poll_interval):
        yield from tail.read_new()


async def follow_log_async(path: Path, poll_interval: float = 0.1) -> AsyncIterator[list[str]]:
    """Async variant of follow_log yielding batches; the first batch is the replay."""
    tail = LogTail(path)
    yield tail.read_new()
    while True:
        await asyncio.sleep(poll_interval)
        lines = tail.read_new()
        if lines:
            yield lines
