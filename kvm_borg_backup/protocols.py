"""
Interfaces of the external collaborators.

The snapshot coordinator and the orchestrator only talk to these, so the
libvirt bindings, the rbd CLI and borg can each be replaced by a fake in
tests. Every method either returns a typed value or raises; none of them
reports failure by returning a default.
"""
from typing import BinaryIO, ContextManager, List, Optional, Protocol, Union

from .command_runner import CommandResult
from .models import Domain, Device, RbdSnapshot, RetentionPolicy


class VirtualizationLayer(Protocol):

    def list_domains(self) -> List[Domain]:
        """All defined domains with their run-state. Raises VirtualizationError."""
        ...

    def list_block_devices(self, domain_name: str) -> List[Device]:
        """Unfiltered block devices of one domain. Raises VirtualizationError."""
        ...

    def dump_config(self, domain_name: str) -> bytes:
        """Domain XML descriptor. Raises VirtualizationError."""
        ...

    def create_external_snapshot(self, domain_name: str, device_tag: str, snapshot_name: str) -> None:
        """Disk-only, metadata-less, atomic overlay on a single device."""
        ...

    def commit_snapshot(self, domain_name: str, device_tag: str) -> None:
        """Active commit of the top overlay, pivot, delete the overlay."""
        ...


class BlockStoragePool(Protocol):

    def list_images(self, pool: str) -> List[str]:
        ...

    def open_export(self, image_spec: str) -> ContextManager[BinaryIO]:
        """Stream of the exported image; raises RbdError on a failed export."""
        ...

    def create_snapshot(self, image_spec: str, snapshot_name: str) -> None:
        ...

    def list_snapshots(self, image_spec: str) -> List[RbdSnapshot]:
        """Snapshots oldest first"""
        ...

    def delete_snapshot(self, image_spec: str, snapshot_name: str) -> None:
        ...


ArchiveSource = Union[bytes, BinaryIO]


class ArchiveStore(Protocol):

    def create_entry(self, key: str, source: ArchiveSource, stdin_name: Optional[str] = None) -> CommandResult:
        ...

    def prune(self, key_glob: str, policy: RetentionPolicy) -> CommandResult:
        ...

    def compact(self) -> CommandResult:
        ...


