"""Configuration loading from environment variables and persisted runtime settings."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HEARTBEAT_MS = 60_000
DEFAULT_AGENT_TIMEOUT_MS = 15 * 60 * 1000

RUNTIME_SETTINGS = ("heartbeat_ms", "agent_type")


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path("pardus_data"))
    heartbeat_ms: int = DEFAULT_HEARTBEAT_MS
    trigger_poll_ms: int = 1000
    agent_type: str = "claude-code"
    agent_timeout_ms: int = DEFAULT_AGENT_TIMEOUT_MS
    log_poll_ms: int = 100
    api_host: str = "127.0.0.1"
    api_port: int = 13337
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def db_path(self) -> Path:
        return self.data_dir / "pardus_queue.db"

    @property
    def memory_dir(self) -> Path:
        return self.data_dir / "memory"

    @property
    def workspaces_dir(self) -> Path:
        return self.data_dir / "workspaces"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def trigger_path(self) -> Path:
        return self.data_dir / ".task-trigger"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if data_dir := os.environ.get("PARDUS_DATA_DIR"):
            config.data_dir = Path(data_dir)

        if heartbeat := os.environ.get("PARDUS_HEARTBEAT_MS"):
            config.heartbeat_ms = int(heartbeat)

        if poll := os.environ.get("PARDUS_TRIGGER_POLL_MS"):
            config.trigger_poll_ms = int(poll)

        if agent := os.environ.get("PARDUS_AGENT"):
            config.agent_type = agent

        if timeout := os.environ.get("PARDUS_AGENT_TIMEOUT_MS"):
            config.agent_timeout_ms = int(timeout)

        if log_poll := os.environ.get("PARDUS_LOG_POLL_MS"):
            config.log_poll_ms = int(log_poll)

        if host := os.environ.get("PARDUS_API_HOST"):
            config.api_host = host

        if port := os.environ.get("PARDUS_API_PORT"):
            config.api_port = int(port)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("PARDUS_SLACK_CHANNEL")

        config.apply_settings(load_settings(config.settings_path))
        return config

    def apply_settings(self, settings: dict):
        """Overlay runtime settings (heartbeat, agent type) onto this config."""
        if "heartbeat_ms" in settings:
            self.heartbeat_ms = int(settings["heartbeat_ms"])
        if "agent_type" in settings:
            self.agent_type = str(settings["agent_type"])

    def runtime_settings(self) -> dict:
        return {"heartbeat_ms": self.heartbeat_ms, "agent_type": self.agent_type}


def load_settings(path: Path) -> dict:
    """Read the persisted runtime settings file. Missing file means no overrides."""
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if k in RUNTIME_SETTINGS}


def save_settings(path: Path, settings: dict) -> dict:
    """Merge runtime settings into the settings file and return the merged result."""
    current = load_settings(path)
    current.update({k: v for k, v in settings.items() if k in RUNTIME_SETTINGS})
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(current, indent=2))
    return current


def get_config() -> Config:
    return Config.from_env()
