"""
KVM Borg Backup - live backups of libvirt domains into a borg repository

- External disk-only snapshots, no domain downtime
- Crash recovery of overlays left behind by an interrupted run
- Ceph RBD pool images through named snapshots
- Retention and compaction delegated to borg
"""

__version__ = "1.0.0"

from .models import BackupMode, BackupStatus, DomainState, RetentionPolicy
from .errors import BackupError
from .config import BackupSettings, load_settings

__all__ = [
    'BackupMode',
    'BackupStatus',
    'DomainState',
    'RetentionPolicy',
    'BackupError',
    'BackupSettings',
    'load_settings',
]
