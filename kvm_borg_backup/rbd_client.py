"""
RBD (Ceph) pool adapter built on the rbd command line
"""
import json
import subprocess
import tempfile
from contextlib import contextmanager
from typing import BinaryIO, Iterator, List

from .command_runner import run_command
from .config import BackupSettings
from .errors import RbdError
from .logging_config import get_logger, LogOperation
from .models import RbdSnapshot


class RbdClient:
    """Pool operations needed by the RBD backup mode"""

    def __init__(self, settings: BackupSettings):
        self.settings = settings
        self.logger = get_logger("kvm_borg_backup.rbd_client")

    def _build_rbd_command(self, *args: str) -> List[str]:
        """Build rbd command with authentication arguments"""
        cmd = [self.settings.rbd_binary]
        if self.settings.ceph_conf:
            cmd.extend(["--conf", self.settings.ceph_conf])
        if self.settings.ceph_user:
            cmd.extend(["--id", self.settings.ceph_user])
        if self.settings.ceph_keyring:
            cmd.extend(["--keyring", self.settings.ceph_keyring])
        cmd.extend(args)
        return cmd

    def _run(self, *args: str) -> str:
        result = run_command(self._build_rbd_command(*args))
        if not result.success:
            raise RbdError(f"rbd {' '.join(args)} failed: {result.error_message}")
        return result.stdout

    def _run_json(self, *args: str):
        output = self._run(*args, "--format", "json")
        try:
            return json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise RbdError(f"rbd {' '.join(args)} returned invalid JSON: {e}")

    def list_images(self, pool: str) -> List[str]:
        images = self._run_json("ls", "--pool", pool)
        self.logger.info(f"Found {len(images)} images", pool=pool, image_count=len(images))
        return [str(image) for image in images]

    def create_snapshot(self, image_spec: str, snapshot_name: str) -> None:
        with LogOperation(self.logger, "rbd_snapshot_create", image=image_spec, snapshot=snapshot_name):
            self._run("snap", "create", f"{image_spec}@{snapshot_name}")

    def list_snapshots(self, image_spec: str) -> List[RbdSnapshot]:
        """Snapshots of one image, oldest first.

        Snapshot ids grow monotonically, so ordering by id is creation order.
        """
        snapshots = [
            RbdSnapshot(id=int(snap["id"]), name=snap["name"], created_at=snap.get("timestamp"))
            for snap in self._run_json("snap", "ls", image_spec)
        ]
        return sorted(snapshots, key=lambda snap: snap.id)

    def delete_snapshot(self, image_spec: str, snapshot_name: str) -> None:
        with LogOperation(self.logger, "rbd_snapshot_delete", image=image_spec, snapshot=snapshot_name):
            self._run("snap", "rm", f"{image_spec}@{snapshot_name}")

    @contextmanager
    def open_export(self, image_spec: str) -> Iterator[BinaryIO]:
        """Yield the stdout of 'rbd export SPEC -'.

        The export process is always waited for on exit, and a non-zero
        exit status raises RbdError even if the consumer read everything.
        """
        cmd = self._build_rbd_command("export", "--no-progress", image_spec, "-")
        self.logger.info("Starting rbd export", image=image_spec)

        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file)
            except OSError as e:
                raise RbdError(f"rbd export {image_spec} could not be started: {e}")

            try:
                yield process.stdout
            finally:
                process.stdout.close()
                exit_code = process.wait()

            if exit_code != 0:
                stderr_file.seek(0)
                message = stderr_file.read().decode('utf-8', errors='replace').strip()
                raise RbdError(f"rbd export {image_spec} failed with status {exit_code}: {message}")
