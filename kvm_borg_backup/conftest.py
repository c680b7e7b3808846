"""
Shared fixtures and fake collaborators for the test suite
"""
import io
import os
import subprocess
from contextlib import contextmanager
from dataclasses import replace
from pathlib import PurePosixPath

import pytest

from kvm_borg_backup.command_runner import CommandResult
from kvm_borg_backup.config import BackupSettings
from kvm_borg_backup.models import Device, Domain, DomainState, RbdSnapshot


class FakeVirt:
    """In-memory virtualization layer that moves locators like libvirt does.

    A commit pivots the device onto the backing file recorded for its
    overlay, whether or not that file has the expected extension.
    """

    def __init__(self, calls):
        self.calls = calls
        self.domains = []
        self.devices = {}
        self.backing = {}
        self.failures = {}
        self.pivot = True

    def add_domain(self, name, state=DomainState.RUNNING, devices=()):
        """devices are (tag, locator) or (tag, overlay, backing file) tuples"""
        self.domains.append(Domain(name=name, state=state))
        self.devices[name] = []
        for tag, locator, *backing in devices:
            self.devices[name].append(
                Device(domain_name=name, tag=tag, locator=locator, image_format="qcow2"))
            if backing:
                self.backing[(name, tag)] = backing[0]

    def _maybe_fail(self, method):
        if method in self.failures:
            raise self.failures[method]

    def _device(self, domain_name, tag):
        return next(d for d in self.devices[domain_name] if d.tag == tag)

    def list_domains(self):
        self.calls.append(("list_domains",))
        self._maybe_fail("list_domains")
        return [replace(d) for d in self.domains]

    def list_block_devices(self, domain_name):
        self.calls.append(("list_block_devices", domain_name))
        self._maybe_fail("list_block_devices")
        return [replace(d) for d in self.devices[domain_name]]

    def dump_config(self, domain_name):
        self.calls.append(("dump_config", domain_name))
        self._maybe_fail("dump_config")
        return f"<domain><name>{domain_name}</name></domain>".encode()

    def create_external_snapshot(self, domain_name, device_tag, snapshot_name):
        self.calls.append(("snapshot", domain_name, device_tag))
        self._maybe_fail("create_external_snapshot")
        device = self._device(domain_name, device_tag)
        self.backing[(domain_name, device_tag)] = device.locator
        device.locator = str(PurePosixPath(device.locator).with_suffix(f".{snapshot_name}"))

    def commit_snapshot(self, domain_name, device_tag):
        self.calls.append(("commit", domain_name, device_tag))
        self._maybe_fail("commit_snapshot")
        device = self._device(domain_name, device_tag)
        if self.pivot and (domain_name, device_tag) in self.backing:
            device.locator = self.backing.pop((domain_name, device_tag))


class FakeArchive:
    """Records borg calls; exit codes are configurable per operation"""

    def __init__(self, calls):
        self.calls = calls
        self.entries = {}
        self.stdin_names = {}
        self.exit_codes = {"create_entry": 0, "prune": 0, "compact": 0}
        self.failing_keys = set()

    def _result(self, operation, failed=False):
        code = 2 if failed else self.exit_codes[operation]
        return CommandResult(command=["borg", operation], exit_code=code,
                             stderr="" if code == 0 else f"{operation} exploded")

    def create_entry(self, key, source, stdin_name=None):
        self.calls.append(("create", key))
        data = source if isinstance(source, bytes) else source.read()
        failed = key in self.failing_keys
        if not failed and self.exit_codes["create_entry"] == 0:
            self.entries[key] = data
            self.stdin_names[key] = stdin_name
        return self._result("create_entry", failed)

    def prune(self, key_glob, policy):
        self.calls.append(("prune", key_glob))
        return self._result("prune")

    def compact(self):
        self.calls.append(("compact",))
        return self._result("compact")


class FakePool:
    """Block storage pool with numbered snapshots"""

    def __init__(self, calls):
        self.calls = calls
        self.images = []
        self.snapshots = {}
        self.failures = {}
        self.next_id = 1

    def _maybe_fail(self, method):
        if method in self.failures:
            raise self.failures[method]

    def add_snapshot(self, image_spec, name):
        self.snapshots.setdefault(image_spec, []).append(RbdSnapshot(id=self.next_id, name=name))
        self.next_id += 1

    def list_images(self, pool):
        self.calls.append(("list_images", pool))
        self._maybe_fail("list_images")
        return list(self.images)

    @contextmanager
    def open_export(self, image_spec):
        self.calls.append(("export", image_spec))
        self._maybe_fail("open_export")
        yield io.BytesIO(f"data of {image_spec}".encode())

    def create_snapshot(self, image_spec, snapshot_name):
        self.calls.append(("rbd_snapshot", image_spec))
        self._maybe_fail("create_snapshot")
        self.add_snapshot(image_spec, snapshot_name)

    def list_snapshots(self, image_spec):
        self._maybe_fail("list_snapshots")
        return list(self.snapshots.get(image_spec, []))

    def delete_snapshot(self, image_spec, snapshot_name):
        self.calls.append(("rbd_snapshot_rm", image_spec, snapshot_name))
        self._maybe_fail("delete_snapshot")
        self.snapshots[image_spec] = [s for s in self.snapshots[image_spec] if s.name != snapshot_name]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("KVM_BACKUP_") or key.startswith("BORG_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings(tmp_path):
    return BackupSettings(lock_file=str(tmp_path / "backup.pid"), log_dir=str(tmp_path / "logs"))


@pytest.fixture
def calls():
    return []


@pytest.fixture
def virt(calls):
    return FakeVirt(calls)


@pytest.fixture
def archive(calls):
    return FakeArchive(calls)


@pytest.fixture
def pool(calls):
    return FakePool(calls)


@pytest.fixture
def disk(tmp_path):
    """A base image on disk"""
    path = tmp_path / "vm1.qcow2"
    path.write_bytes(b"frozen disk content")
    return path


@pytest.fixture
def live_pid():
    """Pid of a process that stays alive for the duration of a test"""
    process = subprocess.Popen(["sleep", "60"])
    yield process.pid
    process.kill()
    process.wait()
