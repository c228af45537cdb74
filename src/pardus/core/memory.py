"""Per-task memory: the agent's running summary, one text file per task UUID."""

from pathlib import Path

from pardus.core.workspace import check_key


def memory_path(memory_dir: Path, task_uuid: str) -> Path:
    return memory_dir / f"{check_key(task_uuid)}.md"


def save_memory(memory_dir: Path, task_uuid: str, content: str):
    """Replace a task's memory with new content."""
    memory_dir.mkdir(parents=True, exist_ok=True)
    memory_path(memory_dir, task_uuid).write_text(content, encoding="utf-8")


def load_memory(memory_dir: Path, task_uuid: str) -> str | None:
    """Read a task's memory, or None if it has none."""
    path = memory_path(memory_dir, task_uuid)
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def memory_exists(memory_dir: Path, task_uuid: str) -> bool:
    return memory_path(memory_dir, task_uuid).exists()


def delete_memory(memory_dir: Path, task_uuid: str) -> bool:
    """Delete a task's memory file."""
    path = memory_path(memory_dir, task_uuid)
    if not path.exists():
        return False
    path.unlink()
    return True
