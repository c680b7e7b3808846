"""
Borg archive client
"""
from typing import List, Optional

from .command_runner import CommandResult, run_command
from .config import BackupSettings
from .logging_config import get_logger, LogOperation
from .models import RetentionPolicy
from .protocols import ArchiveSource


# borg expands this placeholder to a sortable timestamp when the archive is created
NOW_PLACEHOLDER = "{now}"

# Matches the timestamp borg substitutes for {now}, e.g. 2026-10-17T02:00:01
TIMESTAMP_GLOB = "[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]T*"


def archive_key(scope: str) -> str:
    return f"{scope}-{NOW_PLACEHOLDER}"


def archive_glob(scope: str) -> str:
    """Glob selecting the archives of exactly one scope"""
    return f"{scope}-{TIMESTAMP_GLOB}"


class BorgArchiveClient:
    """Thin adapter over the borg command line.

    Each call returns the CommandResult untouched. Deciding whether a
    failure is fatal belongs to the caller.
    """

    def __init__(self, settings: BackupSettings):
        self.settings = settings
        self.logger = get_logger("kvm_borg_backup.archive_client")

    def _borg(self, *args: str) -> List[str]:
        return [self.settings.borg_binary, *args]

    def create_entry(self, key: str, source: ArchiveSource,
                     stdin_name: Optional[str] = None) -> CommandResult:
        """Create archive KEY from a byte stream read on stdin"""
        command = self._borg("create", "--verbose", "--stats", "--show-rc")
        if stdin_name:
            command.extend(["--stdin-name", stdin_name])
        command.extend([f"::{key}", "-"])

        with LogOperation(self.logger, "borg_create", key=key):
            if isinstance(source, (bytes, bytearray)):
                result = run_command(command, env=self.settings.borg_environment(), input=bytes(source))
            else:
                result = run_command(command, env=self.settings.borg_environment(), stdin=source)

        self._log_output(result, key=key)
        return result

    def prune(self, key_glob: str, policy: RetentionPolicy) -> CommandResult:
        command = self._borg("prune", "--list", "--show-rc", "--glob-archives", key_glob)
        command.extend(policy.to_borg_args())

        with LogOperation(self.logger, "borg_prune", glob=key_glob, policy=str(policy)):
            result = run_command(command, env=self.settings.borg_environment())

        self._log_output(result, glob=key_glob)
        return result

    def compact(self) -> CommandResult:
        with LogOperation(self.logger, "borg_compact"):
            result = run_command(self._borg("compact"), env=self.settings.borg_environment())

        self._log_output(result)
        return result

    def _log_output(self, result: CommandResult, **context) -> None:
        # borg writes --stats, --list and --show-rc output to stderr
        for line in result.stderr.splitlines():
            if line.strip():
                self.logger.info(line.rstrip(), source="borg", **context)
