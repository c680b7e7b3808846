"""
Host-local run lock based on a pid file
"""
import os
from pathlib import Path
from typing import Optional

from .errors import AlreadyRunning
from .logging_config import get_logger


class RunLock:
    """Advisory pid-file lock allowing one backup process per host.

    There is no fencing or lease expiry. A record whose process is gone, or
    that cannot be parsed, is considered stale and overwritten.
    """

    def __init__(self, lock_file: str):
        self.path = Path(lock_file)
        self.pid = os.getpid()
        self.held = False
        self.logger = get_logger("kvm_borg_backup.run_lock")

    def acquire(self) -> 'RunLock':
        holder = self._read_holder()
        if holder is not None and holder != self.pid and _is_pid_alive(holder):
            self.logger.warning("Backup process already running, exiting.",
                                holder_pid=holder, lock_file=str(self.path))
            raise AlreadyRunning(holder, str(self.path))
        if holder is not None:
            self.logger.info("Replacing stale lock", holder_pid=holder, lock_file=str(self.path))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{self.pid}\n")
        self.held = True
        self.logger.debug("Run lock acquired", lock_file=str(self.path), pid=self.pid)
        return self

    def release(self) -> None:
        """Remove the pid file if this process holds it; safe to call repeatedly"""
        if not self.held:
            return
        if self._read_holder() in (self.pid, None):
            self.path.unlink(missing_ok=True)
        self.held = False
        self.logger.debug("Run lock released", lock_file=str(self.path))

    def _read_holder(self) -> Optional[int]:
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            # Unparseable record, treat as stale
            return -1

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


def _is_pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to someone else
        return True
