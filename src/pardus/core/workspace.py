"""Per-task workspace directories."""

import logging
import shutil
from pathlib import Path

from pardus.config import Config

logger = logging.getLogger(__name__)


def ensure_data_dirs(config: Config):
    """Create the data directory tree if missing."""
    for path in (config.data_dir, config.memory_dir, config.workspaces_dir, config.logs_dir):
        path.mkdir(parents=True, exist_ok=True)


def check_key(task_uuid: str) -> str:
    """Reject UUID keys that could escape their storage directory."""
    if not task_uuid or task_uuid in (".", "..") or "/" in task_uuid or "\\" in task_uuid:
        raise ValueError(f"Invalid task UUID: {task_uuid!r}")
    return task_uuid


def workspace_path(workspaces_dir: Path, task_uuid: str) -> Path:
    return workspaces_dir / check_key(task_uuid)


def create_workspace(workspaces_dir: Path, task_uuid: str) -> Path:
    """Create the workspace for a task if it does not exist yet."""
    path = workspace_path(workspaces_dir, task_uuid)
    path.mkdir(parents=True, exist_ok=True)
    return path


def workspace_exists(workspaces_dir: Path, task_uuid: str) -> bool:
    return workspace_path(workspaces_dir, task_uuid).is_dir()


def list_workspaces(workspaces_dir: Path) -> list[str]:
    """List the UUIDs that have a workspace directory."""
    if not workspaces_dir.exists():
        return []
    return sorted(p.name for p in workspaces_dir.iterdir() if p.is_dir())


def delete_workspace(workspaces_dir: Path, task_uuid: str) -> bool:
    """Remove a workspace and everything in it."""
    path = workspace_path(workspaces_dir, task_uuid)
    if not path.exists():
        return False
    shutil.rmtree(path)
    logger.info("Deleted workspace %s", task_uuid)
    return True


def list_workspace_files(workspaces_dir: Path, task_uuid: str) -> list[str] | None:
    """List visible file names in a workspace, or None if it does not exist."""
    path = workspace_path(workspaces_dir, task_uuid)
    if not path.is_dir():
        return None
    return sorted(p.name for p in path.iterdir() if not p.name.startswith("."))


def workspace_file(workspaces_dir: Path, task_uuid: str, filename: str) -> Path:
    """Resolve a file inside a workspace, refusing paths that leave it."""
    root = workspace_path(workspaces_dir, task_uuid).resolve()
    candidate = (root / filename).resolve()
    if candidate == root or root not in candidate.parents:
        raise ValueError(f"Invalid file name: {filename!r}")
    return candidate


def delete_workspace_file(workspaces_dir: Path, task_uuid: str, filename: str) -> bool:
    path = workspace_file(workspaces_dir, task_uuid, filename)
    if not path.is_file():
        return False
    path.unlink()
    return True
