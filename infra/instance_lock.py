"""
Single Instance Lock - One Daemon per Workspace

PID-file liveness record. The recorded process counts as holding the lock
only while it is alive; a record left behind by a dead process is stale
and is cleared on the next acquire.

Liveness checks go through a ProcessProbe so tests can fake which PIDs
are alive without spawning processes.
"""

import atexit
import os
import signal
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class ProcessProbe(ABC):
    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        ...

    @abstractmethod
    def terminate(self, pid: int) -> None:
        ...


class OsProcessProbe(ProcessProbe):
    def is_alive(self, pid: int) -> bool:
        try:
            # Signal 0 checks existence without delivering anything
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user
            return True
        except OSError:
            return False

    def terminate(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("daemon", workspace_root())
        if not lock.acquire():
            raise SystemExit("Daemon already running")
        ...
        lock.release()  # Also released at interpreter exit
    """

    def __init__(
        self,
        name: str,
        lock_dir: Path,
        probe: Optional[ProcessProbe] = None,
        pid: Optional[int] = None,
    ):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.probe = probe or OsProcessProbe()
        self.pid = pid if pid is not None else os.getpid()
        self.acquired = False

    def read_pid(self) -> Optional[int]:
        """PID in the record, or None when there is no (readable) record."""
        try:
            return int(self.lock_file.read_text().strip())
        except FileNotFoundError:
            return None
        except (ValueError, OSError) as e:
            logger.warning(f"Unreadable lock file {self.lock_file}: {e}")
            return None

    def clear(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    def is_held_by_live_process(self) -> bool:
        pid = self.read_pid()
        return pid is not None and self.probe.is_alive(pid)

    def acquire(self) -> bool:
        """
        Record this process as the holder.

        Returns:
            True if the lock was acquired, False if a live process holds it
        """
        if self.acquired:
            logger.warning("Lock already acquired by this instance")
            return True

        if self.lock_file.exists():
            existing_pid = self.read_pid()
            if existing_pid is not None and self.probe.is_alive(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False
            logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
            self.clear()

        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            self.lock_file.write_text(str(self.pid))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        atexit.register(self.release)
        logger.info(f"Lock acquired (PID={self.pid}, file={self.lock_file})")
        return True

    def release(self) -> None:
        """Delete the record if this instance still owns it."""
        if not self.acquired:
            return
        try:
            if self.read_pid() == self.pid:
                self.clear()
                logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
