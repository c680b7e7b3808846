"""
Test suite for the backup orchestrator
"""
from pathlib import Path

import pytest

from kvm_borg_backup.backup_manager import BackupOrchestrator
from kvm_borg_backup.errors import (
    AlreadyRunning, CommitFailed, CompactFailed, CorruptChain, ExportFailed, InventoryError,
    PruneFailed, RbdError, SnapshotCreateFailed, VirtualizationError,
)
from kvm_borg_backup.models import BackupStatus, Device, DomainState


@pytest.fixture
def two_domains(virt, tmp_path):
    for name in ("vm1", "vm2"):
        for tag in ("vda", "vdb"):
            (tmp_path / f"{name}-{tag}.qcow2").write_bytes(f"{name} {tag}".encode())
    virt.add_domain("vm1", DomainState.RUNNING, [
        ("vda", str(tmp_path / "vm1-vda.qcow2")),
        ("vdb", str(tmp_path / "vm1-vdb.qcow2")),
        ("hdc", str(tmp_path / "install.iso")),
    ])
    virt.add_domain("vm2", DomainState.STOPPED, [("vda", str(tmp_path / "vm2-vda.qcow2"))])
    return virt


def touched(calls, *names):
    return [call for call in calls if any(name in str(arg) for arg in call for name in names)]


class TestImageRun:

    def test_single_running_domain(self, settings, virt, archive, calls, disk):
        virt.add_domain("vm1", DomainState.RUNNING, [("vda", str(disk))])

        result = BackupOrchestrator(settings, virt, archive).run()

        assert result.status == BackupStatus.COMPLETED
        assert [e.key for e in result.entries] == ["vm1-vda-{now}", "vm1-xml-{now}"]
        assert sorted(archive.entries) == ["vm1-vda-{now}", "vm1-xml-{now}"]
        assert calls.count(("compact",)) == 1
        assert calls[-1] == ("compact",)
        assert virt.list_block_devices("vm1")[0].locator == str(disk)
        assert not Path(settings.lock_file).exists()

    def test_stopped_domain_has_no_snapshot_or_commit(self, settings, virt, archive, calls, disk):
        virt.add_domain("vm1", DomainState.STOPPED, [("vda", str(disk))])

        BackupOrchestrator(settings, virt, archive).run()

        assert not [c for c in calls if c[0] in ("snapshot", "commit")]
        assert archive.entries["vm1-vda-{now}"] == b"frozen disk content"

    def test_devices_and_domains_in_order(self, settings, two_domains, archive, calls):
        result = BackupOrchestrator(settings, two_domains, archive).run()

        assert [e.key for e in result.entries] == [
            "vm1-vda-{now}", "vm1-vdb-{now}", "vm1-xml-{now}",
            "vm2-vda-{now}", "vm2-xml-{now}",
        ]
        assert result.domains == ["vm1", "vm2"]
        assert not touched(calls, "hdc")

    def test_domain_filter(self, settings, two_domains, archive, calls):
        result = BackupOrchestrator(settings, two_domains, archive).run("vm2")

        assert result.domains == ["vm2"]
        assert not [c for c in calls if c[0] == "create" and c[1].startswith("vm1")]

    def test_unmatched_filter_is_empty_run(self, settings, two_domains, archive, calls):
        result = BackupOrchestrator(settings, two_domains, archive).run("nope")

        assert result.status == BackupStatus.COMPLETED
        assert result.entries == []
        assert calls[-1] == ("compact",)

    def test_fail_fast(self, settings, two_domains, archive, calls):
        archive.failing_keys.add("vm1-vda-{now}")

        with pytest.raises(ExportFailed):
            BackupOrchestrator(settings, two_domains, archive).run()

        assert not touched(calls, "vdb", "vm2", "xml")
        assert ("compact",) not in calls
        assert not Path(settings.lock_file).exists()

    def test_domain_listing_without_status(self, settings, virt, archive, calls, monkeypatch):
        monkeypatch.setattr(virt, "list_domains", lambda: None)

        with pytest.raises(InventoryError):
            BackupOrchestrator(settings, virt, archive).run()

        assert archive.entries == {}
        assert not [c for c in calls if c[0] == "create"]
        assert not Path(settings.lock_file).exists()

    def test_domain_listing_failure(self, settings, virt, archive):
        virt.failures["list_domains"] = VirtualizationError("libvirtd is down")

        with pytest.raises(InventoryError):
            BackupOrchestrator(settings, virt, archive).run()
        assert archive.entries == {}

    def test_block_listing_failure(self, settings, virt, archive):
        virt.add_domain("vm1", DomainState.RUNNING, [("vda", "/data/vm1.qcow2")])
        virt.failures["list_block_devices"] = VirtualizationError("domain vanished")

        with pytest.raises(InventoryError):
            BackupOrchestrator(settings, virt, archive).run()

    def test_compact_failure(self, settings, virt, archive, disk):
        virt.add_domain("vm1", DomainState.STOPPED, [("vda", str(disk))])
        archive.exit_codes["compact"] = 2

        with pytest.raises(CompactFailed):
            BackupOrchestrator(settings, virt, archive).run()
        assert not Path(settings.lock_file).exists()


class TestRunLockInteraction:

    def test_second_invocation_touches_nothing(self, settings, virt, archive, calls, disk, live_pid):
        virt.add_domain("vm1", DomainState.RUNNING, [("vda", str(disk))])
        holder = live_pid
        Path(settings.lock_file).write_text(f"{holder}\n")

        with pytest.raises(AlreadyRunning):
            BackupOrchestrator(settings, virt, archive).run()

        assert calls == []
        assert Path(settings.lock_file).read_text().strip() == str(holder)

    @pytest.mark.parametrize("failure, expected", [
        ("create_external_snapshot", SnapshotCreateFailed),
        ("commit_snapshot", CommitFailed),
        ("prune", PruneFailed),
        ("create_entry", ExportFailed),
        ("compact", CompactFailed),
        ("list_domains", InventoryError),
        ("list_block_devices", InventoryError),
        ("stale_overlay", CorruptChain),
    ])
    def test_lock_released_on_every_failure(self, settings, virt, archive, disk, failure, expected):
        virt.add_domain("vm1", DomainState.RUNNING, [("vda", str(disk))])
        if failure == "stale_overlay":
            disk.with_suffix(".backup").write_bytes(b"leftover")
        elif failure in archive.exit_codes:
            archive.exit_codes[failure] = 2
        else:
            virt.failures[failure] = VirtualizationError("boom")

        with pytest.raises(expected):
            BackupOrchestrator(settings, virt, archive).run()

        assert not Path(settings.lock_file).exists()

    def test_lock_released_on_unexpected_error(self, settings, virt, archive, disk, monkeypatch):
        virt.add_domain("vm1", DomainState.STOPPED, [("vda", str(disk))])

        def explode():
            raise RuntimeError("unexpected")
        monkeypatch.setattr(archive, "compact", explode)

        with pytest.raises(RuntimeError):
            BackupOrchestrator(settings, virt, archive).run()
        assert not Path(settings.lock_file).exists()


class TestRbdRun:

    @pytest.fixture
    def rbd_settings(self, settings):
        settings.backup_mode = "rbd"
        return settings

    def test_all_pool_images_then_descriptors(self, rbd_settings, virt, archive, pool, calls):
        pool.images = ["vm1-disk", "vm2-disk"]
        virt.add_domain("vm1")
        virt.add_domain("vm2", DomainState.STOPPED)

        result = BackupOrchestrator(rbd_settings, virt, archive, pool=pool).run()

        assert [e.key for e in result.entries] == [
            "vm1-disk-{now}", "vm2-disk-{now}", "vm1-xml-{now}", "vm2-xml-{now}",
        ]
        assert ("list_images", "libvirt") in calls
        assert calls[-1] == ("compact",)

    def test_filter_limits_images_to_attached(self, rbd_settings, virt, archive, pool, calls):
        pool.images = ["vm1-disk", "vm2-disk"]
        virt.add_domain("vm1")
        virt.add_domain("vm2")
        virt.devices["vm2"] = [
            Device(domain_name="vm2", tag="vda", locator="libvirt/vm2-disk", source_type="network"),
            Device(domain_name="vm2", tag="vdb", locator="other/vm2-data", source_type="network"),
        ]

        result = BackupOrchestrator(rbd_settings, virt, archive, pool=pool).run("vm2")

        assert [e.key for e in result.entries] == ["vm2-disk-{now}", "vm2-xml-{now}"]
        assert not touched(calls, "vm1")

    def test_image_listing_failure(self, rbd_settings, virt, archive, pool):
        pool.failures["list_images"] = RbdError("cluster unreachable")

        with pytest.raises(InventoryError):
            BackupOrchestrator(rbd_settings, virt, archive, pool=pool).run()
        assert not Path(rbd_settings.lock_file).exists()

    def test_rbd_mode_requires_pool(self, rbd_settings, virt, archive):
        with pytest.raises(ValueError):
            BackupOrchestrator(rbd_settings, virt, archive)
