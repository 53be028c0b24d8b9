"""PID file guarding against two engines sharing one database.

The engine's in-memory locks are per process, so only one daemon may
run against a database at a time.
"""

import os
from pathlib import Path
from typing import Optional

from dockwatch.exceptions import DockwatchError
from dockwatch.cli.exit_codes import ExitCode


class PIDFile:
    """Single-instance guard backed by a file holding the daemon's PID.

    Example:
        pid_file = PIDFile(config.data_dir / "dockwatch.pid")
        pid_file.acquire()
        try:
            ...
        finally:
            pid_file.release()
    """

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> Optional[int]:
        """Read the stored PID, or None if missing or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError, OSError):
            return None

    def is_running(self) -> bool:
        """Whether the stored PID belongs to a live process."""
        pid = self.read()
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user
            return True
        return True

    def acquire(self) -> None:
        """Write this process's PID, replacing a stale file.

        Raises:
            DockwatchError: If another live daemon holds the file
        """
        if self.is_running() and self.read() != os.getpid():
            raise DockwatchError(
                "dockwatch daemon is already running",
                exit_code=ExitCode.ALREADY_RUNNING,
                details={"pid": self.read(), "pid_file": str(self.path)},
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))

    def release(self) -> None:
        """Remove the file if it still names this process."""
        if self.read() == os.getpid():
            self.path.unlink(missing_ok=True)
