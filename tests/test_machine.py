"""Tests for vmkeeper.machine module."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import yaml

from vmkeeper.exceptions import IOFailureError, ManagerError, StaleMachineError
from vmkeeper.machine import Machine, PendingMachine, PlaceholderMachine, load_config
from vmkeeper.models import MachineConfig


class TestMachineSave:
    def test_first_save_moves_staged_images(self, tmp_path):
        config = MachineConfig(name="alpha")
        staged = config.images_path
        staged.mkdir(parents=True)
        (staged / "disk-0.qcow2").write_bytes(b"qcow")
        config.new_drive("drive0", "disk-0.qcow2")
        vm = Machine.new(config, tmp_path)

        vm.save()

        assert vm.path == tmp_path / "alpha.vm"
        assert (vm.path / "Images" / "disk-0.qcow2").read_bytes() == b"qcow"
        assert not staged.parent.exists()
        assert config.existing_path == vm.path
        data = yaml.safe_load((vm.path / "config.yaml").read_text())
        assert data["name"] == "alpha"
        assert data["drives"][0]["image_path"] == "disk-0.qcow2"

    def test_save_without_path(self):
        vm = Machine(MachineConfig(name="alpha"))
        with pytest.raises(ManagerError, match="no bundle path"):
            vm.save()

    def test_save_wraps_os_errors(self, tmp_path):
        vm = Machine.new(MachineConfig(name="alpha"), tmp_path)
        with patch("vmkeeper.machine.atomic_write_text", side_effect=PermissionError("read-only")):
            with pytest.raises(IOFailureError, match="read-only") as exc:
                vm.save()
        assert isinstance(exc.value.__cause__, PermissionError)


class TestMachineLoad:
    def test_from_path_round_trip(self, tmp_path, write_bundle, disk_drive):
        path = write_bundle(tmp_path, "beta", drives=[disk_drive()], images=["disk.qcow2"])
        vm = Machine.from_path(path, is_shortcut=True)
        assert vm.name == "beta"
        assert vm.is_shortcut is True
        assert vm.config.existing_path == path
        assert vm.config.drive_image_path(0) == path / "Images" / "disk.qcow2"

    def test_is_bundle(self, tmp_path, write_bundle):
        path = write_bundle(tmp_path, "beta")
        assert Machine.is_bundle(path)
        assert not Machine.is_bundle(tmp_path)
        (tmp_path / "plain.vm").mkdir()
        assert not Machine.is_bundle(tmp_path / "plain.vm")

    def test_unreadable_config_is_stale(self, tmp_path):
        path = tmp_path / "broken.vm"
        path.mkdir()
        (path / "config.yaml").write_text("name: [")
        with pytest.raises(StaleMachineError, match="Cannot load machine"):
            load_config(path)

    def test_reload_reverts_memory_changes(self, tmp_path, write_bundle):
        vm = Machine.from_path(write_bundle(tmp_path, "beta"))
        vm.config.notes = "edited"
        vm.reload_configuration()
        assert vm.config.notes == ""

    def test_reload_unsaved_machine(self):
        with pytest.raises(StaleMachineError):
            Machine(MachineConfig(name="alpha")).reload_configuration()


class TestCapabilities:
    def test_qemu_machine(self, tmp_path):
        vm = Machine.new(MachineConfig(name="q"), tmp_path)
        assert vm.has_drives and vm.is_editable and vm.supports_shortcut
        assert not vm.is_placeholder
        assert vm.backing_path == tmp_path / "q.vm"

    def test_apple_machine(self, tmp_path):
        vm = Machine.new(MachineConfig(name="a", backend="apple"), tmp_path)
        assert not vm.has_drives
        assert not vm.supports_shortcut

    def test_deleted_machine_not_editable(self, tmp_path):
        vm = Machine.new(MachineConfig(name="q"), tmp_path)
        vm.is_deleted = True
        assert not vm.is_editable


class TestChangeMedium:
    def test_binds_removable_drive(self, tmp_path):
        config = MachineConfig(name="q")
        drive = config.new_removable_drive("drive0")
        vm = Machine.new(config, tmp_path)
        vm.change_medium(drive, tmp_path / "install.iso")
        assert vm.removable_media == {"drive0": tmp_path / "install.iso"}

    def test_rejects_fixed_drive(self, tmp_path):
        config = MachineConfig(name="q")
        drive = config.new_drive("drive0", "disk.qcow2")
        with pytest.raises(ManagerError, match="not removable"):
            Machine.new(config, tmp_path).change_medium(drive, tmp_path / "x.iso")


class TestPlaceholderMachine:
    def test_for_machine_without_path(self):
        assert PlaceholderMachine.for_machine(Machine(MachineConfig(name="q"))) is None

    def test_for_machine_keeps_reference(self, tmp_path):
        vm = Machine(MachineConfig(name="q"), path=tmp_path / "q.vm", is_shortcut=True)
        placeholder = PlaceholderMachine.for_machine(vm)
        assert placeholder.reference() == {"path": str(tmp_path / "q.vm"), "name": "q", "shortcut": True}
        assert placeholder.is_placeholder and not placeholder.is_editable
        assert placeholder.config is None

    def test_unwrap_when_bundle_returns(self, tmp_path, write_bundle):
        placeholder = PlaceholderMachine(tmp_path / "q.vm", "q")
        assert placeholder.unwrap() is None
        write_bundle(tmp_path, "q")
        vm = placeholder.unwrap()
        assert isinstance(vm, Machine)
        assert vm.name == "q"

    def test_from_reference_rejects_garbage(self):
        assert PlaceholderMachine.from_reference("nope") is None
        assert PlaceholderMachine.from_reference({"name": "x"}) is None


def test_pending_machine_cancel():
    pending = PendingMachine(name="dl", url="https://example.com/a.zip")
    assert not pending.is_cancelled
    pending.cancel()
    assert pending.is_cancelled
    assert pending.id != PendingMachine(name="dl", url="x").id
