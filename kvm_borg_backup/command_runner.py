"""
Blocking subprocess execution with explicit exit status
"""
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .logging_config import get_logger


logger = get_logger("kvm_borg_backup.command_runner")


@dataclass
class CommandResult:
    """Outcome of one external command"""
    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def error_message(self) -> str:
        return self.stderr.strip() or f"exit status {self.exit_code}"


def run_command(command: List[str], env: Optional[Dict[str, str]] = None,
                stdin: Any = None, input: Optional[bytes] = None) -> CommandResult:
    """Run a command to completion.

    A command that cannot be started reports exit code -1, so callers never
    see a missing status as success. No timeout is applied.
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug("Running command", command=" ".join(command))
    try:
        completed = subprocess.run(
            command,
            stdin=stdin,
            input=input,
            capture_output=True,
            env=full_env,
            check=False,
        )
    except OSError as e:
        logger.error("Command could not be started", command=" ".join(command), error=str(e))
        return CommandResult(command=command, exit_code=-1, stderr=str(e))

    result = CommandResult(
        command=command,
        exit_code=completed.returncode,
        stdout=completed.stdout.decode('utf-8', errors='replace') if completed.stdout else "",
        stderr=completed.stderr.decode('utf-8', errors='replace') if completed.stderr else "",
    )

    if result.success:
        logger.debug("Command executed successfully", command=" ".join(command))
    else:
        logger.error("Command failed", command=" ".join(command),
                     exit_code=result.exit_code, stderr=result.stderr.strip())
    return result
