"""Single instance locking via a PID lock file."""

import logging
import os
import signal
import time
from pathlib import Path

from mkvauto.error_handling import LockError

logger = logging.getLogger(__name__)


class ProcessLock:
    """Prevents two mkvauto instances from running against the same state."""

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = lock_file
        self.lock_fd: int | None = None

    def acquire(self) -> None:
        """Create the lock file holding our PID.

        A lock file whose recorded PID is no longer alive is treated as stale
        and replaced.

        Raises:
            LockError: If another live process holds the lock.
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            self.lock_fd = self._create()
        except FileExistsError:
            pid = self.read_pid()
            if pid is not None and self.is_process_running(pid):
                msg = f"Another instance of mkvauto is already running (PID {pid}, lock file {self.lock_file})"
                raise LockError(msg)

            logger.warning("Removing stale lock file %s (PID %s)", self.lock_file, pid)
            self.lock_file.unlink(missing_ok=True)
            try:
                self.lock_fd = self._create()
            except FileExistsError as e:
                msg = f"Failed to create lock file {self.lock_file}"
                raise LockError(msg, original_error=e)

        os.write(self.lock_fd, f"{os.getpid()}\n".encode())
        os.fsync(self.lock_fd)

    def _create(self) -> int:
        return os.open(
            str(self.lock_file),
            os.O_CREAT | os.O_EXCL | os.O_WRONLY,
            0o600,
        )

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self.lock_fd is not None:
            try:
                os.close(self.lock_fd)
                self.lock_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove lock file %s: %s", self.lock_file, e)
            finally:
                self.lock_fd = None

    def read_pid(self) -> int | None:
        """PID recorded in the lock file, if readable."""
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def holder(self) -> int | None:
        """PID of the live process holding the lock, or None."""
        pid = self.read_pid()
        if pid is not None and self.is_process_running(pid):
            return pid
        return None

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Check if a process with given PID is running."""
        try:
            os.kill(pid, 0)
            return True
        except PermissionError:
            # Exists but owned by another user
            return True
        except (OSError, ProcessLookupError):
            return False

    @staticmethod
    def stop_process(pid: int, timeout: int = 10) -> bool:
        """Stop a process gracefully, then forcefully if needed."""
        try:
            os.kill(pid, signal.SIGTERM)

            for _ in range(timeout):
                if not ProcessLock.is_process_running(pid):
                    return True
                time.sleep(1)

            os.kill(pid, signal.SIGKILL)
            time.sleep(0.5)
            return not ProcessLock.is_process_running(pid)

        except (OSError, ProcessLookupError):
            return True  # Process already stopped
