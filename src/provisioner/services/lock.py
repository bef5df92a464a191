"""PID lock ensuring one provisioning process per host."""

import logging
import os
from pathlib import Path
from typing import Optional

from provisioner.errors import AlreadyRunningError
from provisioner.models.state import LockRecord


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class LockHandle:
    """Held lock; releases on context exit whatever the exit path."""

    def __init__(self, manager: "LockManager", pid: int):
        self.manager = manager
        self.pid = pid
        self.released = False

    def release(self) -> None:
        if not self.released:
            self.manager.release(self)
            self.released = True

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LockManager:
    """Manages the PID-stamped lock file."""

    def __init__(self, lock_file: Path):
        self.logger = logging.getLogger("provisioner.lock")
        self.lock_file_path = Path(lock_file)

    def read(self) -> Optional[LockRecord]:
        """Read the lock record, None if absent or unparseable."""
        try:
            text = self.lock_file_path.read_text(encoding="utf-8").strip()
            return LockRecord(pid=int(text))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.logger.warning(f"Unreadable lock file {self.lock_file_path}: {e}")
            return None

    def acquire(self) -> LockHandle:
        """Take the lock for the current process.

        Returns:
            LockHandle usable as a context manager

        Raises:
            AlreadyRunningError: If the lock is held by a live process
        """
        existing = self.read()
        if existing is not None:
            if existing.pid != os.getpid() and pid_alive(existing.pid):
                self.logger.error(f"Script already running with PID {existing.pid}")
                raise AlreadyRunningError(existing.pid)
            self.logger.warning(f"Removing stale lock file (PID {existing.pid})")

        pid = os.getpid()
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file_path.write_text(f"{pid}\n", encoding="utf-8")
        self.logger.info(f"Created lock file with PID {pid}")
        return LockHandle(self, pid)

    def release(self, handle: Optional[LockHandle] = None) -> None:
        """Delete the lock file unconditionally."""
        self.lock_file_path.unlink(missing_ok=True)
        self.logger.debug("Lock released")
