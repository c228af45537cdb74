"""Tests for agent executors."""

import subprocess
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from pardus.core import agents as agents_mod
from pardus.core.agents import CliAgent, TestAgent, get_agent


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


def _python_agent(script: str, **kwargs) -> CliAgent:
    return CliAgent(kind="python", argv=(sys.executable, "-c", script), **kwargs)


class TestRegistry:
    def test_claude_code(self):
        agent = get_agent("claude-code", timeout_ms=1000)
        assert agent.argv == ("claude", "--dangerously-skip-permissions", "-p")
        assert agent.prompt_via_stdin is True
        assert agent.timeout_ms == 1000
        assert agent.command("hi") == ["claude", "--dangerously-skip-permissions", "-p"]

    def test_claude_code_with_mcp_config(self):
        agent = get_agent("claude-code", mcp_config_path="/etc/mcp.json")
        assert agent.command("hi")[-2:] == ["--mcp-config", "/etc/mcp.json"]

    def test_cursor_and_opencode_take_prompt_as_argument(self):
        assert get_agent("cursor").command("do it") == ["cursor", "--yolo", "ai", "--prompt", "do it"]
        assert get_agent("opencode").command("do it") == ["opencode", "run", "do it"]

    def test_test_agent(self):
        assert isinstance(get_agent("test"), TestAgent)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown agent type"):
            get_agent("gpt-shell")

    def test_all_types_resolve(self):
        for agent_type in agents_mod.AGENT_TYPES:
            assert callable(get_agent(agent_type))


class TestTestAgent:
    def test_writes_file_and_streams(self, workspace):
        chunks = []
        result = TestAgent()(workspace, "Summarize things", chunks.append)
        assert result.success
        assert "[TEST AGENT]" in result.output
        assert (workspace / "test_output.txt").exists()
        assert len(chunks) == 3
        assert all(c.startswith("[TEST]") for c in chunks)

    def test_missing_workspace_fails_without_raising(self, workspace):
        result = TestAgent()(workspace / "nope", "x")
        assert not result.success
        assert result.error


class TestCliAgent:
    def test_streams_stdout_and_stderr(self, workspace):
        script = (
            "import sys\n"
            "print('line one', flush=True)\n"
            "print('warning', file=sys.stderr, flush=True)\n"
            "print(sys.argv[1], flush=True)\n"
        )
        chunks = []
        result = _python_agent(script)(workspace, "the prompt", chunks.append)

        assert result.success
        assert result.output == "line one\nthe prompt\n"
        assert "line one\n" in chunks
        assert "the prompt\n" in chunks
        assert "[STDERR] warning\n" in chunks

    def test_runs_in_workspace(self, workspace):
        script = "import os; print(os.getcwd())"
        result = _python_agent(script)(workspace, "")
        assert Path(result.output.strip()).resolve() == workspace.resolve()

    def test_large_prompt_via_stdin(self, workspace):
        prompt = "x" * 1_000_000
        script = "import sys; print(len(sys.stdin.read()))"
        result = _python_agent(script, prompt_via_stdin=True)(workspace, prompt)
        assert result.success
        assert result.output.strip() == str(len(prompt))

    def test_nonzero_exit_is_failure(self, workspace):
        script = "import sys; print('bad input', file=sys.stderr); sys.exit(3)"
        result = _python_agent(script)(workspace, "x")
        assert not result.success
        assert result.error == "bad input"
        assert not result.timed_out

    def test_nonzero_exit_without_stderr(self, workspace):
        result = _python_agent("import sys; sys.exit(2)")(workspace, "x")
        assert result.error == "Process exited with code 2"

    def test_timeout_kills_process(self, workspace):
        result = _python_agent("import time; time.sleep(30)", timeout_ms=200)(workspace, "x")
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.error
        assert agents_mod._active_processes == {}

    def test_missing_binary_fails_without_raising(self, workspace):
        agent = CliAgent(kind="ghost", argv=("definitely-not-a-real-binary-xyz",))
        result = agent(workspace, "x")
        assert not result.success
        assert result.error

    @patch("pardus.core.agents.subprocess.Popen")
    def test_stdin_closed_when_prompt_is_an_argument(self, mock_popen, workspace):
        mock_proc = MagicMock()
        mock_proc.pid = 4242
        mock_proc.wait.return_value = 0
        mock_popen.return_value = mock_proc

        result = get_agent("cursor")(workspace, "hello")

        assert result.success
        args, kwargs = mock_popen.call_args
        assert args[0] == ["cursor", "--yolo", "ai", "--prompt", "hello"]
        assert kwargs["cwd"] == workspace
        assert kwargs["stdin"] == subprocess.DEVNULL


class TestTerminateActiveAgents:
    def test_signals_running_processes(self):
        proc = MagicMock()
        proc.pid = 999_999
        proc.poll.return_value = None
        agents_mod._active_processes[proc.pid] = proc
        try:
            assert agents_mod.terminate_active_agents() == 1
            proc.terminate.assert_called_once()
        finally:
            agents_mod._active_processes.pop(proc.pid, None)
