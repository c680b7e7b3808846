"""
Error taxonomy for the KVM borg backup system

Every fatal condition of a run maps to one of these exceptions. The
orchestrator never swallows them; the CLI turns any BackupError into
exit status 1.
"""


class BackupError(RuntimeError):
    """Base exception for all backup failures"""


class ConfigurationError(BackupError, ValueError):
    """Invalid configuration value"""


class AlreadyRunning(BackupError):
    """Another backup process holds the run lock"""

    def __init__(self, pid: int, lock_file: str):
        super().__init__(f"Backup process already running (pid {pid}, lock {lock_file})")
        self.pid = pid
        self.lock_file = lock_file


class InventoryError(BackupError):
    """Listing domains or block devices failed"""


class SnapshotCreateFailed(BackupError):
    """External snapshot could not be created"""


class ExportFailed(BackupError):
    """Streaming an image or descriptor into the archive failed"""


class PruneFailed(BackupError):
    """Applying the retention policy failed"""


class CommitFailed(BackupError):
    """Block commit failed; the live domain may reference a broken chain"""


class CorruptChain(BackupError):
    """The backing chain is in a state that needs manual intervention"""


class CompactFailed(BackupError):
    """Compacting the archive repository failed"""


class VirtualizationError(RuntimeError):
    """A libvirt call failed"""


class RbdError(RuntimeError):
    """An rbd command failed"""
