"""
Snapshot-coordinated backup of single devices.

A running domain is backed up by redirecting its writes to an external
overlay, streaming the now frozen base image into borg and committing the
overlay back. Whatever fails between snapshot and commit, the commit is
still attempted so the domain is never left on a dangling overlay. A run
that died before committing leaves the domain pointing at the overlay;
the next run notices the overlay extension and commits before anything
else.
"""
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence

from .archive_client import archive_glob, archive_key
from .config import BackupSettings
from .errors import (
    CommitFailed, CorruptChain, ExportFailed, PruneFailed, RbdError,
    SnapshotCreateFailed, VirtualizationError,
)
from .logging_config import get_logger
from .models import ArchiveEntry, CoordinatorState, Device, Domain, RbdSnapshot, SnapshotInfo
from .protocols import ArchiveSource, ArchiveStore, BlockStoragePool, VirtualizationLayer


class _Coordinator:

    def __init__(self, virt: VirtualizationLayer, archive: ArchiveStore, settings: BackupSettings):
        self.virt = virt
        self.archive = archive
        self.settings = settings
        self.policy = settings.retention_policy
        self.state = CoordinatorState.CLEAN
        self.logger = get_logger("kvm_borg_backup.snapshot_coordinator")

    def _transition(self, state: CoordinatorState, **context) -> None:
        self.logger.debug("State transition", from_state=self.state.value, to_state=state.value, **context)
        self.state = state

    def _create_entry(self, scope: str, source: ArchiveSource, origin: str,
                      stdin_name: Optional[str] = None) -> ArchiveEntry:
        key = archive_key(scope)
        result = self.archive.create_entry(key, source, stdin_name=stdin_name)
        if not result.success:
            raise ExportFailed(f"Failed to backup {scope}: {result.error_message}")
        return ArchiveEntry(key=key, scope=scope, source=origin)

    def _apply_retention(self, scope: str) -> None:
        if not self.policy.enabled:
            return
        self.logger.info(f"Pruning backups for {scope}", scope=scope, policy=str(self.policy))
        result = self.archive.prune(archive_glob(scope), self.policy)
        if not result.success:
            raise PruneFailed(f"Failed to prune {scope}: {result.error_message}")

    def backup_descriptor(self, domain: Domain) -> ArchiveEntry:
        """Archive the domain XML as '<domain>-xml-{now}' and prune its history"""
        scope = f"{domain.name}-xml"
        self.logger.info(f"Backing up {domain.name} xml", domain=domain.name)
        try:
            descriptor = self.virt.dump_config(domain.name)
        except VirtualizationError as e:
            raise ExportFailed(f"Failed to backup {domain.name}: {e}") from e

        entry = self._create_entry(scope, descriptor, origin=f"{domain.name}.xml",
                                   stdin_name=f"{domain.name}.xml")
        self._apply_retention(scope)
        return entry


class ImageSnapshotCoordinator(_Coordinator):
    """Protocol for file-backed images (qcow2 and friends)"""

    def __init__(self, virt: VirtualizationLayer, archive: ArchiveStore, settings: BackupSettings):
        super().__init__(virt, archive, settings)
        # Overlay created by this run and not yet committed
        self.snapshot: Optional[SnapshotInfo] = None

    def backup_device(self, domain: Domain, device: Device) -> ArchiveEntry:
        self.state = CoordinatorState.CLEAN
        image = self._recover_interrupted_run(domain, device)
        scope = f"{domain.name}-{device.tag}"

        if not domain.is_running:
            # A stopped domain's disk is quiescent, read it directly
            entry = self._export_image(scope, image, domain, device)
            self._apply_retention(scope)
            return entry

        self._create_snapshot(domain, device, image)
        try:
            entry = self._export_image(scope, image, domain, device)
            self._transition(CoordinatorState.EXPORTED, domain=domain.name, device=device.tag)
            self._apply_retention(scope)
        except Exception as e:
            self._commit(domain, device, image, cause=e)
            raise
        self._commit(domain, device, image)
        self._transition(CoordinatorState.CLEAN, domain=domain.name, device=device.tag)
        return entry

    def _recover_interrupted_run(self, domain: Domain, device: Device) -> str:
        """Return the base image path, committing a leftover overlay first"""
        overlay_ext = self.settings.overlay_extension
        base_ext = self.settings.base_image_extension

        if device.has_extension(overlay_ext):
            self._transition(CoordinatorState.CRASH_DETECTED, domain=domain.name, device=device.tag)
            self.logger.warning("Domain still references a backup overlay, committing it first",
                                domain=domain.name, device=device.tag, locator=device.locator)
            if not domain.is_running:
                raise CorruptChain(
                    f"{domain.name} ({device.tag}) is stopped on overlay {device.locator}; "
                    "commit it manually before the next backup")

            base = device.with_extension(base_ext)
            locator = self._commit(domain, device, None)
            if locator != base or not Path(base).is_file():
                raise CorruptChain(
                    f"Unable to determine image name for {domain.name} ({device.tag}): "
                    f"expected {base} after commit, domain uses {locator}")
            self._transition(CoordinatorState.CLEAN, domain=domain.name, device=device.tag)
            return base

        overlay = device.with_extension(overlay_ext)
        if domain.is_running and Path(overlay).exists():
            raise CorruptChain(
                f"Stale overlay {overlay} exists for {domain.name} ({device.tag}) "
                "but the domain does not use it")
        return device.locator

    def _create_snapshot(self, domain: Domain, device: Device, image: str) -> None:
        if self.snapshot is not None:
            raise CorruptChain(
                f"Snapshot {self.snapshot.name} of {self.snapshot.domain_name} "
                f"({self.snapshot.device_tag}) was never committed")

        self.logger.info(f"Creating snapshot for {domain.name} ({device.tag})",
                         domain=domain.name, device=device.tag)
        try:
            self.virt.create_external_snapshot(domain.name, device.tag, self.settings.snapshot_name)
        except VirtualizationError as e:
            raise SnapshotCreateFailed(
                f"Failed to create snapshot for {domain.name} ({device.tag}): {e}") from e
        self.snapshot = SnapshotInfo(name=self.settings.snapshot_name, domain_name=domain.name,
                                     device_tag=device.tag, parent_locator=image)
        self._transition(CoordinatorState.SNAPSHOT_PENDING, domain=domain.name,
                         device=device.tag, parent=image)

    def _export_image(self, scope: str, image: str, domain: Domain, device: Device) -> ArchiveEntry:
        self.logger.info(f"Creating backup for {domain.name} ({device.tag} [{image}])",
                         domain=domain.name, device=device.tag, image=image)
        try:
            with open(image, 'rb') as stream:
                return self._create_entry(scope, stream, origin=image,
                                          stdin_name=PurePosixPath(image).name)
        except OSError as e:
            raise ExportFailed(f"Failed to backup {domain.name} ({device.tag}): {e}") from e

    def _commit(self, domain: Domain, device: Device, base: Optional[str],
                cause: Optional[Exception] = None) -> str:
        """Commit the overlay and return the locator the device points at afterwards.

        With a base given, anything but that base is a failed commit. Without
        one only a locator still carrying the overlay extension is.
        """
        self.logger.info(f"Commit changes for {domain.name} ({device.tag})",
                         domain=domain.name, device=device.tag)
        try:
            self.virt.commit_snapshot(domain.name, device.tag)
            locator = self._current_locator(domain, device)
        except (VirtualizationError, CommitFailed) as e:
            self.logger.critical(
                f"Could not commit changes {domain.name} ({device.tag}). "
                "This may be a major issue and VM may be broken now.",
                domain=domain.name, device=device.tag, error=str(e))
            raise CommitFailed(f"Could not commit changes {domain.name} ({device.tag}): {e}") from (cause or e)

        on_overlay = PurePosixPath(locator).suffix == f".{self.settings.overlay_extension}"
        if on_overlay or (base is not None and locator != base):
            self.logger.critical(
                f"{domain.name} ({device.tag}) does not point at its base image after commit",
                domain=domain.name, device=device.tag, locator=locator, expected=base)
            raise CommitFailed(
                f"{domain.name} ({device.tag}) references {locator} after commit, "
                f"expected {base or 'its backing image'}") from cause
        self.snapshot = None
        self._transition(CoordinatorState.COMMITTED, domain=domain.name, device=device.tag)
        return locator

    def _current_locator(self, domain: Domain, device: Device) -> str:
        for current in self.virt.list_block_devices(domain.name):
            if current.tag == device.tag:
                return current.locator
        raise CommitFailed(f"{domain.name} ({device.tag}) disappeared after commit")


def select_snapshots_to_prune(snapshots: Sequence[RbdSnapshot], keep: int) -> List[RbdSnapshot]:
    """Everything but the newest `keep` snapshots; input is oldest first"""
    if keep <= 0:
        return list(snapshots)
    return list(snapshots[:-keep])


class RbdSnapshotCoordinator(_Coordinator):
    """Protocol for Ceph RBD images using named pool snapshots"""

    def __init__(self, pool: BlockStoragePool, virt: VirtualizationLayer,
                 archive: ArchiveStore, settings: BackupSettings):
        super().__init__(virt, archive, settings)
        self.pool = pool

    def backup_image(self, image: str) -> ArchiveEntry:
        self.state = CoordinatorState.CLEAN
        image_spec = f"{self.settings.rbd_pool}/{image}"
        snapshot_name = f"{self.settings.rbd_snapshot_prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"

        self.logger.info(f"Creating snapshot for {image_spec}", image=image_spec, snapshot=snapshot_name)
        try:
            self.pool.create_snapshot(image_spec, snapshot_name)
        except RbdError as e:
            raise SnapshotCreateFailed(f"Failed to create snapshot for {image_spec}: {e}") from e
        self._transition(CoordinatorState.SNAPSHOT_PENDING, image=image_spec)

        self.logger.info(f"Creating backup for {image}", image=image_spec, snapshot=snapshot_name)
        try:
            with self.pool.open_export(f"{image_spec}@{snapshot_name}") as stream:
                result = self.archive.create_entry(archive_key(image), stream, stdin_name=image)
        except RbdError as e:
            raise ExportFailed(f"Failed to backup {image}: {e}") from e
        if not result.success:
            raise ExportFailed(f"Failed to backup {image}: {result.error_message}")
        self._transition(CoordinatorState.EXPORTED, image=image_spec)

        self._apply_retention(image)
        self._prune_snapshots(image_spec)
        self._transition(CoordinatorState.CLEAN, image=image_spec)
        return ArchiveEntry(key=archive_key(image), scope=image, source=f"{image_spec}@{snapshot_name}")

    def _prune_snapshots(self, image_spec: str) -> None:
        prefix = f"{self.settings.rbd_snapshot_prefix}-"
        keep = self.settings.rbd_keep_snapshots
        try:
            ours = [s for s in self.pool.list_snapshots(image_spec) if s.name.startswith(prefix)]
            for snapshot in select_snapshots_to_prune(ours, keep):
                self.logger.info(f"Removing snapshot {snapshot.name}", image=image_spec,
                                 snapshot=snapshot.name, keep=keep)
                self.pool.delete_snapshot(image_spec, snapshot.name)
        except RbdError as e:
            raise PruneFailed(f"Failed to prune snapshots of {image_spec}: {e}") from e
