"""
Backup orchestrator driving a whole run
"""
from datetime import datetime
from typing import List, Optional

from .config import BackupSettings
from .errors import BackupError, CompactFailed, InventoryError, RbdError
from .inventory import InventoryEnumerator
from .logging_config import get_logger, LogOperation
from .models import BackupMode, BackupResult, BackupStatus, Domain
from .protocols import ArchiveStore, BlockStoragePool, VirtualizationLayer
from .run_lock import RunLock
from .snapshot_coordinator import ImageSnapshotCoordinator, RbdSnapshotCoordinator


class BackupOrchestrator:
    """Runs every selected domain and device strictly one after another.

    The first fatal error ends the run: later devices and domains are not
    touched, the run lock is released and the error propagates.
    """

    def __init__(self, settings: BackupSettings, virt: VirtualizationLayer,
                 archive: ArchiveStore, pool: Optional[BlockStoragePool] = None):
        self.settings = settings
        self.mode = settings.mode
        self.virt = virt
        self.archive = archive
        self.pool = pool
        self.inventory = InventoryEnumerator(virt, settings)
        self.logger = get_logger("kvm_borg_backup.backup_manager")

        if self.mode == BackupMode.RBD:
            if pool is None:
                raise ValueError("RBD mode needs a block storage pool client")
            self.coordinator = RbdSnapshotCoordinator(pool, virt, archive, settings)
        else:
            self.coordinator = ImageSnapshotCoordinator(virt, archive, settings)

    def run(self, domain_filter: Optional[str] = None) -> BackupResult:
        """Back up everything selected; raises AlreadyRunning before touching anything"""
        result = BackupResult(mode=self.mode, status=BackupStatus.RUNNING, start_time=datetime.now())

        with RunLock(self.settings.lock_file):
            try:
                with LogOperation(self.logger, "backup_run", mode=self.mode.value,
                                  domain_filter=domain_filter or ""):
                    if self.mode == BackupMode.RBD:
                        self._run_rbd(domain_filter, result)
                    else:
                        self._run_images(domain_filter, result)
                    self._compact()
                result.status = BackupStatus.COMPLETED
            except BackupError as e:
                result.status = BackupStatus.FAILED
                result.error_message = str(e)
                self.logger.error("Backup run failed", error=str(e), error_type=type(e).__name__)
                raise
            finally:
                result.end_time = datetime.now()

        self.logger.info("Backup completed successfully", entry_count=len(result.entries),
                         domain_count=len(result.domains), duration=result.duration_seconds)
        return result

    def _run_images(self, domain_filter: Optional[str], result: BackupResult) -> None:
        for domain in self.inventory.list_domains(domain_filter):
            domain.devices = self.inventory.list_devices(domain)
            self.logger.info(f"Processing {domain.name}", domain=domain.name,
                             state=domain.state.value, device_count=len(domain.devices))
            for device in domain.devices:
                result.entries.append(self.coordinator.backup_device(domain, device))
            result.entries.append(self.coordinator.backup_descriptor(domain))
            result.domains.append(domain.name)

    def _run_rbd(self, domain_filter: Optional[str], result: BackupResult) -> None:
        domains = self.inventory.list_domains(domain_filter)
        for image in self._select_images(domains, domain_filter):
            result.entries.append(self.coordinator.backup_image(image))
        for domain in domains:
            result.entries.append(self.coordinator.backup_descriptor(domain))
            result.domains.append(domain.name)

    def _select_images(self, domains: List[Domain], domain_filter: Optional[str]) -> List[str]:
        """All pool images, or only those attached to the filtered domain"""
        pool_name = self.settings.rbd_pool
        if domain_filter:
            images = []
            for domain in domains:
                domain.devices = self.inventory.list_devices(domain)
                for device in domain.devices:
                    image = device.locator.split("/", 1)[1]
                    if image not in images:
                        images.append(image)
            return images

        try:
            return self.pool.list_images(pool_name)
        except RbdError as e:
            raise InventoryError(f"Image listing for pool {pool_name} failed: {e}") from e

    def _compact(self) -> None:
        self.logger.info("Compacting repository")
        outcome = self.archive.compact()
        if not outcome.success:
            raise CompactFailed(f"Failed to compact repository: {outcome.error_message}")
