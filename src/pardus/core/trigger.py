"""File-based trigger asking the scheduler to run a cycle ahead of its heartbeat.

Any process sharing the data directory can raise it; the scheduler polls for
the file and deletes it when it acts on it.
"""

import time
from pathlib import Path


class TriggerSignal:
    def __init__(self, path: Path):
        self.path = path

    def fire(self):
        """Write the trigger marker with the current timestamp."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(int(time.time() * 1000)))

    def is_raised(self) -> bool:
        return self.path.exists()

    def consume(self) -> bool:
        """Delete the marker. Returns True if it was present."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
