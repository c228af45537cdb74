"""Agent capabilities: the pluggable executors that carry out a task.

Every agent is a callable ``agent(workspace_path, prompt, on_stream) -> AgentResult``.
Executors never raise; failures come back as ``AgentResult(success=False)``.
"""

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pardus.db.models import AgentResult

logger = logging.getLogger(__name__)

AGENT_TYPES = ("claude-code", "cursor", "opencode", "test")

DEFAULT_CLI_TIMEOUT_MS = 10 * 60 * 1000

StreamCallback = Callable[[str], None]

# Registry of running agent subprocesses (keyed by PID)
_active_processes: dict[int, subprocess.Popen] = {}
_active_lock = threading.Lock()


class AgentCapability(Protocol):
    def __call__(
        self, workspace_path: Path, prompt: str, on_stream: StreamCallback | None = None
    ) -> AgentResult: ...


# ── CLI agents ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CliAgent:
    """Agent backed by a third-party command-line coding tool.

    The prompt is either appended to ``argv`` or, with ``prompt_via_stdin``,
    written to the process's stdin so large prompts do not hit argv limits.
    """

    kind: str
    argv: tuple[str, ...]
    prompt_via_stdin: bool = False
    timeout_ms: int = DEFAULT_CLI_TIMEOUT_MS
    extra_args: tuple[str, ...] = field(default=())

    def command(self, prompt: str) -> list[str]:
        cmd = list(self.argv) + list(self.extra_args)
        if not self.prompt_via_stdin:
            cmd.append(prompt)
        return cmd

    def __call__(
        self, workspace_path: Path, prompt: str, on_stream: StreamCallback | None = None
    ) -> AgentResult:
        logger.info("Starting %s agent in %s", self.kind, workspace_path)
        try:
            output = _run_streaming(
                self.command(prompt),
                cwd=Path(workspace_path),
                stdin_text=prompt if self.prompt_via_stdin else None,
                timeout_ms=self.timeout_ms,
                on_stream=on_stream,
            )
        except subprocess.TimeoutExpired:
            msg = f"Agent timed out after {self.timeout_ms}ms"
            logger.warning("%s agent: %s", self.kind, msg)
            return AgentResult(success=False, error=msg, timed_out=True)
        except Exception as e:
            logger.error("%s agent failed: %s", self.kind, e)
            return AgentResult(success=False, error=str(e))
        return AgentResult(success=True, output=output)


class AgentProcessError(Exception):
    """Raised when an agent subprocess exits with a non-zero code."""


def _run_streaming(
    cmd: list[str],
    cwd: Path,
    stdin_text: str | None,
    timeout_ms: int,
    on_stream: StreamCallback | None,
) -> str:
    """Run a command, streaming stdout/stderr lines, and return stdout.

    Kills the process and raises TimeoutExpired if it runs past timeout_ms.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    with _active_lock:
        _active_processes[proc.pid] = proc

    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    def pump(stream, parts: list[str], prefix: str):
        for line in stream:
            parts.append(line)
            if on_stream:
                try:
                    on_stream(prefix + line)
                except Exception:
                    logger.exception("Stream callback failed")
        stream.close()

    readers = [
        threading.Thread(target=pump, args=(proc.stdout, stdout_parts, ""), daemon=True),
        threading.Thread(target=pump, args=(proc.stderr, stderr_parts, "[STDERR] "), daemon=True),
    ]
    for t in readers:
        t.start()

    try:
        if stdin_text is not None:
            try:
                proc.stdin.write(stdin_text)
                proc.stdin.close()
            except BrokenPipeError:
                pass  # Process exited before reading its input
        try:
            code = proc.wait(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            _terminate(proc)
            raise
    finally:
        with _active_lock:
            _active_processes.pop(proc.pid, None)

    for t in readers:
        t.join(timeout=5)

    logger.info("Agent process %s exited with code %s", proc.pid, code)
    if code != 0:
        raise AgentProcessError("".join(stderr_parts).strip() or f"Process exited with code {code}")
    return "".join(stdout_parts)


def _terminate(proc: subprocess.Popen, grace: float = 5.0):
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def terminate_active_agents() -> int:
    """Terminate every agent subprocess still running. Returns how many were signalled."""
    with _active_lock:
        procs = list(_active_processes.values())
    for proc in procs:
        if proc.poll() is None:
            logger.info("Terminating agent process %s", proc.pid)
            proc.terminate()
    return len(procs)


# ── Test agent ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TestAgent:
    """Local agent that does no real work. Useful for exercising recurring tasks."""

    __test__ = False  # not a pytest test class

    kind: str = "test"

    def __call__(
        self, workspace_path: Path, prompt: str, on_stream: StreamCallback | None = None
    ) -> AgentResult:
        try:
            started = datetime.now(timezone.utc).isoformat()
            if on_stream:
                on_stream(f"[TEST] Starting execution at {started}")
                on_stream("[TEST] Processing task...")

            Path(workspace_path, "test_output.txt").write_text(
                f"Test execution completed at {started}\n"
            )

            if on_stream:
                on_stream(f"[TEST] Task completed at {datetime.now(timezone.utc).isoformat()}")

            output = (
                f"[TEST AGENT] Execution at {started}\n"
                f"[TEST AGENT] Workspace: {workspace_path}\n"
                f"[TEST AGENT] Task: {prompt[:50]}...\n"
            )
            return AgentResult(success=True, output=output)
        except Exception as e:
            return AgentResult(success=False, error=str(e))


# ── Registry ─────────────────────────────────────────────────────────────────


def get_agent(
    agent_type: str,
    timeout_ms: int = DEFAULT_CLI_TIMEOUT_MS,
    mcp_config_path: str | None = None,
) -> AgentCapability:
    """Build the agent capability for an agent type."""
    if agent_type == "claude-code":
        extra = ("--mcp-config", mcp_config_path) if mcp_config_path else ()
        return CliAgent(
            kind=agent_type,
            argv=("claude", "--dangerously-skip-permissions", "-p"),
            prompt_via_stdin=True,
            timeout_ms=timeout_ms,
            extra_args=extra,
        )
    if agent_type == "cursor":
        return CliAgent(
            kind=agent_type,
            argv=("cursor", "--yolo", "ai", "--prompt"),
            timeout_ms=timeout_ms,
        )
    if agent_type == "opencode":
        return CliAgent(kind=agent_type, argv=("opencode", "run"), timeout_ms=timeout_ms)
    if agent_type == "test":
        return TestAgent()
    raise ValueError(f"Unknown agent type: {agent_type}")
