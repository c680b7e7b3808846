"""
Core models for KVM borg backup system
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import List, Optional, Tuple

from .errors import ConfigurationError


class BackupMode(Enum):
    """Which backing storage the run backs up"""
    IMAGE = "image"
    RBD = "rbd"


class DomainState(Enum):
    """Domain run-state as far as the backup protocol cares"""
    RUNNING = "running"
    STOPPED = "stopped"


class BackupStatus(Enum):
    """Backup run status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CoordinatorState(Enum):
    """Per-device snapshot protocol state"""
    CLEAN = "clean"
    CRASH_DETECTED = "crash_detected"
    SNAPSHOT_PENDING = "snapshot_pending"
    EXPORTED = "exported"
    COMMITTED = "committed"


# libvirt virDomainState value for a running domain
_LIBVIRT_RUNNING = 1


@dataclass
class Device:
    """One virtual block device attached to a domain"""
    domain_name: str
    tag: str
    locator: str
    image_format: str = ""
    source_type: str = "file"

    def has_extension(self, extension: str) -> bool:
        return PurePosixPath(self.locator).suffix == f".{extension}"

    def with_extension(self, extension: str) -> str:
        """Locator with its final extension replaced"""
        return str(PurePosixPath(self.locator).with_suffix(f".{extension}"))


@dataclass
class Domain:
    """Virtual machine as reported by the virtualization layer"""
    name: str
    state: DomainState
    devices: List[Device] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state == DomainState.RUNNING

    @classmethod
    def from_libvirt_domain(cls, domain) -> 'Domain':
        """Create Domain from libvirt domain object"""
        info = domain.info()
        state = DomainState.RUNNING if info[0] == _LIBVIRT_RUNNING else DomainState.STOPPED
        return cls(name=domain.name(), state=state)


@dataclass
class SnapshotInfo:
    """Ephemeral external overlay on top of a device's base image"""
    name: str
    domain_name: str
    device_tag: str
    parent_locator: str
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class RbdSnapshot:
    """Named snapshot of an RBD image"""
    id: int
    name: str
    created_at: Optional[str] = None


@dataclass
class ArchiveEntry:
    """An archive written to the borg repository during this run"""
    key: str
    scope: str
    source: str
    created_at: datetime = field(default_factory=datetime.now)


_COUNT_PERIODS = (
    "last", "secondly", "minutely", "hourly",
    "daily", "weekly", "monthly", "yearly",
)


@dataclass
class RetentionPolicy:
    """Keep-count rules per time bucket, bucketed by borg itself"""
    keep_within: Optional[str] = None
    keep_counts: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.keep_within or self.keep_counts)

    @classmethod
    def from_string(cls, options: str) -> 'RetentionPolicy':
        """Parse a borg style string such as '--keep-daily 7 --keep-weekly 4'.

        An empty string yields a disabled policy. Both '--keep-daily 7' and
        '--keep-daily=7' are accepted.
        """
        tokens: List[str] = []
        for token in (options or "").split():
            tokens.extend(token.split("=", 1))

        policy = cls()
        seen = set()
        index = 0
        while index < len(tokens):
            option = tokens[index]
            if not option.startswith("--keep-"):
                raise ConfigurationError(f"Unknown retention option: {option}")
            if index + 1 >= len(tokens):
                raise ConfigurationError(f"Missing value for retention option: {option}")
            period = option[len("--keep-"):]
            value = tokens[index + 1]
            if period in seen:
                raise ConfigurationError(f"Duplicate retention option: {option}")
            seen.add(period)

            if period == "within":
                policy.keep_within = value
            elif period in _COUNT_PERIODS:
                try:
                    count = int(value)
                except ValueError:
                    raise ConfigurationError(
                        f"Retention count for {option} must be an integer, got {value!r}")
                if count < 0:
                    raise ConfigurationError(f"Retention count for {option} must not be negative")
                policy.keep_counts.append((period, count))
            else:
                raise ConfigurationError(f"Unknown retention option: {option}")
            index += 2

        return policy

    def to_borg_args(self) -> List[str]:
        args = []
        if self.keep_within:
            args.extend(["--keep-within", self.keep_within])
        for period, count in self.keep_counts:
            args.extend([f"--keep-{period}", str(count)])
        return args

    def __str__(self) -> str:
        return " ".join(self.to_borg_args())


@dataclass
class BackupResult:
    """Backup run result"""
    mode: BackupMode
    status: BackupStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    domains: List[str] = field(default_factory=list)
    entries: List[ArchiveEntry] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate run duration in seconds"""
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None
