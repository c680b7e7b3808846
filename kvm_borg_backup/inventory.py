"""
Domain and block device enumeration with backup eligibility
"""
from pathlib import PurePosixPath
from typing import List, Optional, Tuple

from .config import BackupSettings
from .errors import InventoryError, VirtualizationError
from .logging_config import get_logger
from .models import BackupMode, Device, Domain
from .protocols import VirtualizationLayer


class InventoryEnumerator:
    """Lists the work for one run.

    A query that fails, or that produces no result at all, aborts the run
    with InventoryError.
    """

    def __init__(self, virt: VirtualizationLayer, settings: BackupSettings):
        self.virt = virt
        self.settings = settings
        self.mode = settings.mode
        self.logger = get_logger("kvm_borg_backup.inventory")

    def list_domains(self, domain_filter: Optional[str] = None) -> List[Domain]:
        try:
            domains = self.virt.list_domains()
        except VirtualizationError as e:
            raise InventoryError(f"Domain listing failed: {e}") from e
        if domains is None:
            raise InventoryError("Domain listing failed: no status reported")

        if domain_filter:
            domains = [d for d in domains if d.name == domain_filter]
            if not domains:
                self.logger.warning("No domain matches filter", domain_filter=domain_filter)
        return domains

    def list_devices(self, domain: Domain) -> List[Device]:
        return [device for device, reason in self.classify_devices(domain) if reason is None]

    def classify_devices(self, domain: Domain) -> List[Tuple[Device, Optional[str]]]:
        """Every block device paired with its skip reason, None if eligible"""
        try:
            devices = self.virt.list_block_devices(domain.name)
        except VirtualizationError as e:
            raise InventoryError(f"Domain block listing failed for {domain.name}: {e}") from e
        if devices is None:
            raise InventoryError(f"Domain block listing failed for {domain.name}: no status reported")

        classified = []
        for device in devices:
            reason = self.skip_reason(device)
            if reason:
                self.logger.debug("Skipping device", domain=domain.name, device=device.tag,
                                  locator=device.locator, reason=reason)
            classified.append((device, reason))
        return classified

    def skip_reason(self, device: Device) -> Optional[str]:
        locator = device.locator
        if not locator or locator == "-":
            return "no media"
        if locator.lower().endswith(".iso"):
            return "iso media"

        if self.mode == BackupMode.RBD:
            if device.source_type != "network":
                return "not an rbd volume"
            if not locator.startswith(f"{self.settings.rbd_pool}/"):
                return "outside pool"
            return None

        if device.source_type != "file" or not PurePosixPath(locator).is_absolute():
            return "not an image file"
        managed = self.settings.managed_image_dirs
        if managed and not any(_is_under(locator, directory) for directory in managed):
            return "unmanaged path"
        return None


def _is_under(path: str, directory: str) -> bool:
    try:
        PurePosixPath(path).relative_to(PurePosixPath(directory))
        return True
    except ValueError:
        return False
