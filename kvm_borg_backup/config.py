"""
Configuration settings for KVM borg backup
"""
from typing import Dict, List, Optional
from pathlib import Path
import os
from dataclasses import dataclass, field, fields

from .errors import ConfigurationError
from .models import BackupMode, RetentionPolicy


def load_env_file(env_file: Optional[Path] = None) -> None:
    """Load KEY=VALUE lines into the environment, keeping values already set"""
    env_file = Path(env_file) if env_file else Path.cwd() / '.env'
    if not env_file.exists():
        return
    with open(env_file, 'r') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def _env(name: str, default: str = ""):
    return field(default_factory=lambda: os.getenv(name, default))


def _env_flag(name: str, default: str):
    return field(default_factory=lambda: os.getenv(name, default).lower() in ('true', '1', 'yes'))


@dataclass
class BackupSettings:
    """Main configuration for KVM borg backup"""

    # Borg repository
    borg_repo: str = _env("BORG_REPO", "/media/Storage/Backup/kvm")
    borg_passphrase: str = _env("BORG_PASSPHRASE")
    borg_passcommand: str = _env("BORG_PASSCOMMAND")
    borg_binary: str = "borg"

    # Automation answers for borg prompts
    unknown_unencrypted_repo_access_is_ok: bool = _env_flag(
        "BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK", "yes")
    relocated_repo_access_is_ok: bool = _env_flag("BORG_RELOCATED_REPO_ACCESS_IS_OK", "yes")
    check_i_know_what_i_am_doing: bool = _env_flag("BORG_CHECK_I_KNOW_WHAT_I_AM_DOING", "no")
    delete_i_know_what_i_am_doing: bool = _env_flag("BORG_DELETE_I_KNOW_WHAT_I_AM_DOING", "no")

    # Retention, empty string disables pruning
    prune_options: str = "--keep-daily 7 --keep-weekly 4 --keep-monthly 6"

    # Run
    backup_mode: str = "image"
    lock_file: str = "/tmp/kvm-borg-backup.pid"
    libvirt_uri: str = "qemu:///system"

    # Image-file mode
    snapshot_name: str = "backup"
    overlay_extension: str = "backup"
    base_image_extension: str = "qcow2"
    managed_image_dirs: List[str] = field(default_factory=list)
    block_job_poll_interval: float = 1.0

    # RBD mode
    rbd_binary: str = "rbd"
    ceph_conf: str = ""
    ceph_user: str = ""
    ceph_keyring: str = ""
    rbd_pool: str = "libvirt"
    rbd_snapshot_prefix: str = "backup"
    rbd_keep_snapshots: int = 3

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"
    log_dir: str = "./logs"
    log_file_max_size: int = 10485760  # 10MB

    def __post_init__(self):
        """Load configuration from environment variables"""
        for f in fields(self):
            env_value = os.getenv(f"KVM_BACKUP_{f.name.upper()}")
            if env_value is None:
                continue
            try:
                if f.type == int:
                    setattr(self, f.name, int(env_value))
                elif f.type == float:
                    setattr(self, f.name, float(env_value))
                elif f.type == bool:
                    setattr(self, f.name, env_value.lower() in ('true', '1', 'yes'))
                elif f.type == List[str]:
                    setattr(self, f.name, [p for p in env_value.replace(',', ':').split(':') if p])
                else:
                    setattr(self, f.name, env_value)
            except ValueError:
                raise ConfigurationError(
                    f"KVM_BACKUP_{f.name.upper()} has an invalid value: {env_value!r}")

        self.validate()

    def validate(self) -> None:
        try:
            BackupMode(self.backup_mode)
        except ValueError:
            raise ConfigurationError(f"Unknown backup mode: {self.backup_mode!r}")
        if self.rbd_keep_snapshots < 0:
            raise ConfigurationError("rbd_keep_snapshots must not be negative")
        if self.overlay_extension == self.base_image_extension:
            raise ConfigurationError("overlay_extension must differ from base_image_extension")
        if self.borg_passphrase and self.borg_passcommand:
            raise ConfigurationError("Set either BORG_PASSPHRASE or BORG_PASSCOMMAND, not both")
        # Parse once so a bad string fails at start-up instead of mid-run
        RetentionPolicy.from_string(self.prune_options)

    @property
    def mode(self) -> BackupMode:
        return BackupMode(self.backup_mode)

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy.from_string(self.prune_options)

    def borg_environment(self) -> Dict[str, str]:
        """Environment variables handed to every borg invocation"""
        def answer(flag: bool) -> str:
            return "yes" if flag else "NO"

        env = {
            "BORG_REPO": self.borg_repo,
            "BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK": answer(self.unknown_unencrypted_repo_access_is_ok),
            "BORG_RELOCATED_REPO_ACCESS_IS_OK": answer(self.relocated_repo_access_is_ok),
            "BORG_CHECK_I_KNOW_WHAT_I_AM_DOING": answer(self.check_i_know_what_i_am_doing),
            "BORG_DELETE_I_KNOW_WHAT_I_AM_DOING": answer(self.delete_i_know_what_i_am_doing),
        }
        if self.borg_passphrase:
            env["BORG_PASSPHRASE"] = self.borg_passphrase
        if self.borg_passcommand:
            env["BORG_PASSCOMMAND"] = self.borg_passcommand
        return env


def load_settings(env_file: Optional[Path] = None) -> BackupSettings:
    """Build the settings once at process start"""
    load_env_file(env_file)
    return BackupSettings()
