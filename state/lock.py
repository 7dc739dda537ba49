"""
Single-instance process lock: a PID file under logs/.

A running foreign holder is sent SIGTERM and the lock taken over; stale or
garbage lock files are reclaimed.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LOCK_PATH = Path("logs/monitor.lock")


class LockError(Exception):
    """Raised when the lock file cannot be created."""
    pass


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def _read_pid(path: Path) -> int | None:
    try:
        text = path.read_text().strip()
    except OSError:
        return None
    try:
        pid = int(text)
    except ValueError:
        return None
    return pid if pid > 0 else None


class ProcessLock:
    """
    Usage:
        with ProcessLock("logs/monitor.lock"):
            ...  # only one monitor runs at a time
    """

    def __init__(self, path: str | Path = DEFAULT_LOCK_PATH) -> None:
        self._path = Path(path)
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock, terminating a live previous holder. Raises LockError on failure."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if self._path.exists():
            pid = _read_pid(self._path)
            if pid is not None and pid != os.getpid() and _pid_alive(pid):
                logger.warning("Another monitor (PID %d) holds %s; sending SIGTERM", pid, self._path)
                try:
                    os.kill(pid, signal.SIGTERM)
                except OSError as e:
                    logger.warning("Could not terminate PID %d: %s", pid, e)
            else:
                logger.debug("Reclaiming stale lock %s (pid=%s)", self._path, pid)
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise LockError(f"Cannot remove existing lock {self._path}: {e}") from e

        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except OSError as e:
            raise LockError(f"Cannot create lock {self._path}: {e}") from e
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        self._held = True
        logger.info("Lock acquired: %s (PID %d)", self._path, os.getpid())

    def release(self) -> None:
        """Remove the lock file if this process still owns it. Missing file is fine."""
        self._held = False
        pid = _read_pid(self._path)
        if pid is not None and pid != os.getpid():
            logger.warning("Lock %s now held by PID %d; leaving it in place", self._path, pid)
            return
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove lock %s: %s", self._path, e)

    def __enter__(self) -> ProcessLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
