"""
Single Instance Lock

PID-file lock guaranteeing one exit monitor per risk budget. Two monitors
on the same budget would double-gate entries and race each other on exits,
and the circuit breaker state is process-local.

Signal handling is left to the runner so the current tick can finish
before the lock is released.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    Usage:
        lock = SingleInstanceLock("risk-monitor-default")
        if not lock.acquire():
            sys.exit(1)
        ...
        lock.release()  # also released at interpreter exit
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    "Another monitor is running (PID=%s). Lock file: %s",
                    existing_pid, self.lock_file,
                )
                return False
            logger.warning("Removing stale lock file %s (PID=%s)", self.lock_file, existing_pid)
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            # O_EXCL so two starters racing on a stale file cannot both win
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error("Lost race for lock file %s", self.lock_file)
            return False
        except OSError as e:
            logger.error("Failed to create lock file: %s", e)
            return False

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True
        logger.info("Lock acquired (PID=%s, file=%s)", os.getpid(), self.lock_file)
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.lock_file.exists() and self.holder_pid() == os.getpid():
                self.lock_file.unlink()
                logger.info("Lock released (file=%s)", self.lock_file)
        except OSError as e:
            logger.warning("Failed to release lock: %s", e)
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
