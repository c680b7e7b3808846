"""
Libvirt manager with external snapshot and block commit support
"""
import libvirt
import time
import xml.etree.ElementTree as ET
from typing import List, Optional

from .errors import VirtualizationError
from .models import Domain, Device
from .logging_config import get_logger, LogOperation


class LibvirtManager:
    """Virtualization layer backed by the libvirt bindings"""

    def __init__(self, uri: str = "qemu:///system", poll_interval: float = 1.0):
        self.uri = uri
        self.poll_interval = poll_interval
        self.conn: Optional[libvirt.virConnect] = None
        self.logger = get_logger("kvm_borg_backup.vm_manager")

    def connect(self) -> libvirt.virConnect:
        """Connect to libvirt daemon"""
        try:
            if self.conn is None or not self.conn.isAlive():
                self.conn = libvirt.open(self.uri)
                self.logger.info("Connected to libvirt", uri=self.uri)
            return self.conn
        except libvirt.libvirtError as e:
            self.conn = None
            self.logger.error("Failed to connect to libvirt", uri=self.uri, error=str(e))
            raise VirtualizationError(f"Cannot connect to {self.uri}: {e}")

    def disconnect(self) -> None:
        """Disconnect from libvirt daemon"""
        if self.conn is not None:
            try:
                self.conn.close()
            finally:
                self.conn = None
            self.logger.info("Disconnected from libvirt")

    def __enter__(self):
        # Connects on first use
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def _lookup(self, domain_name: str):
        try:
            return self.connect().lookupByName(domain_name)
        except libvirt.libvirtError as e:
            raise VirtualizationError(f"Domain {domain_name} not found: {e}")

    def list_domains(self) -> List[Domain]:
        """List all domains, running and stopped"""
        try:
            domains = [Domain.from_libvirt_domain(d) for d in self.connect().listAllDomains()]
        except libvirt.libvirtError as e:
            self.logger.error("Failed to list domains", error=str(e))
            raise VirtualizationError(f"Domain listing failed: {e}")

        self.logger.info(f"Found {len(domains)} domains", domain_count=len(domains))
        return domains

    def list_block_devices(self, domain_name: str) -> List[Device]:
        """Block devices of a domain as (target, source) records, unfiltered"""
        try:
            xml_desc = self._lookup(domain_name).XMLDesc(0)
        except libvirt.libvirtError as e:
            raise VirtualizationError(f"Block listing for {domain_name} failed: {e}")
        return parse_block_devices(domain_name, xml_desc)

    def dump_config(self, domain_name: str) -> bytes:
        try:
            return self._lookup(domain_name).XMLDesc(0).encode('utf-8')
        except libvirt.libvirtError as e:
            raise VirtualizationError(f"Could not dump XML of {domain_name}: {e}")

    def create_external_snapshot(self, domain_name: str, device_tag: str, snapshot_name: str) -> None:
        """Create a disk-only external overlay on one device.

        The overlay lands next to the base image as '<stem>.<snapshot_name>'.
        All other disks of the domain are excluded from the snapshot.
        """
        domain = self._lookup(domain_name)
        flags = (libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_DISK_ONLY |
                 libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_ATOMIC |
                 libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_NO_METADATA)

        with LogOperation(self.logger, "create_snapshot", domain=domain_name,
                          device=device_tag, snapshot=snapshot_name):
            try:
                others = [d.tag for d in parse_block_devices(domain_name, domain.XMLDesc(0))
                          if d.tag != device_tag]
                domain.snapshotCreateXML(
                    build_snapshot_xml(snapshot_name, device_tag, others), flags)
            except libvirt.libvirtError as e:
                raise VirtualizationError(
                    f"Snapshot {snapshot_name} of {domain_name} ({device_tag}) failed: {e}")

    def commit_snapshot(self, domain_name: str, device_tag: str) -> None:
        """Merge the active overlay into its backing image and pivot onto it.

        Blocks until the commit job is ready, with no timeout. The overlay
        file is deleted by libvirt after the pivot.
        """
        domain = self._lookup(domain_name)
        flags = libvirt.VIR_DOMAIN_BLOCK_COMMIT_ACTIVE | libvirt.VIR_DOMAIN_BLOCK_COMMIT_DELETE

        with LogOperation(self.logger, "block_commit", domain=domain_name, device=device_tag):
            try:
                domain.blockCommit(device_tag, None, None, 0, flags)
                self._wait_for_block_job(domain, domain_name, device_tag)
                domain.blockJobAbort(device_tag, libvirt.VIR_DOMAIN_BLOCK_JOB_ABORT_PIVOT)
            except libvirt.libvirtError as e:
                raise VirtualizationError(f"Block commit of {domain_name} ({device_tag}) failed: {e}")

    def _wait_for_block_job(self, domain, domain_name: str, device_tag: str) -> None:
        while True:
            info = domain.blockJobInfo(device_tag, 0)
            if not info:
                raise VirtualizationError(
                    f"Block job of {domain_name} ({device_tag}) ended before it was ready to pivot")
            # A job that has not started yet reports cur == end == 0
            if info['end'] > 0 and info['cur'] == info['end']:
                return
            self.logger.debug("Waiting for block commit", domain=domain_name, device=device_tag,
                              cur=info['cur'], end=info['end'])
            time.sleep(self.poll_interval)


def parse_block_devices(domain_name: str, xml_desc: str) -> List[Device]:
    """Extract every disk target and its source from a domain XML"""
    try:
        root = ET.fromstring(xml_desc)
    except ET.ParseError as e:
        raise VirtualizationError(f"Invalid XML for {domain_name}: {e}")

    devices = []
    for disk in root.findall("./devices/disk"):
        target = disk.find("target")
        if target is None or not target.get("dev"):
            continue

        source = disk.find("source")
        locator = ""
        if source is not None:
            locator = source.get("file") or source.get("dev") or source.get("name") or ""
        driver = disk.find("driver")

        devices.append(Device(
            domain_name=domain_name,
            tag=target.get("dev"),
            locator=locator,
            image_format=driver.get("type", "") if driver is not None else "",
            source_type=disk.get("type", "file"),
        ))
    return devices


def build_snapshot_xml(snapshot_name: str, device_tag: str, excluded: List[str]) -> str:
    root = ET.Element("domainsnapshot")
    ET.SubElement(root, "name").text = snapshot_name
    disks = ET.SubElement(root, "disks")
    ET.SubElement(disks, "disk", name=device_tag, snapshot="external")
    for tag in excluded:
        ET.SubElement(disks, "disk", name=tag, snapshot="no")
    return ET.tostring(root, encoding="unicode")
