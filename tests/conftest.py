"""Shared test fixtures."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml

from vmkeeper.exceptions import ConversionError
from vmkeeper.library import Library
from vmkeeper.models import DriveImage, LibrarySettings, MachineConfig


class FakeQemuImage:
    """In-process stand-in for qemu-img that records every call."""

    def __init__(self) -> None:
        self.calls = []
        self.is_available = True
        self.fail_convert = False

    def available(self) -> bool:
        return self.is_available

    async def convert(self, source: Path, destination: Path, compress: bool = False) -> Path:
        self.calls.append(("convert", source, destination, compress))
        if self.fail_convert:
            destination.unlink(missing_ok=True)
            raise ConversionError("qemu-img convert failed")
        destination.write_bytes(b"QFI\xfb" + source.read_bytes()[:16])
        return destination

    async def resize(self, image: Path, size_bytes: int) -> None:
        self.calls.append(("resize", image, size_bytes))

    async def size(self, image: Path) -> int:
        if not image.exists():
            raise ConversionError(f"cannot open {image}")
        return image.stat().st_size

    async def create(self, path: Path, size_mib: int) -> Path:
        self.calls.append(("create", path, size_mib))
        path.write_bytes(b"QFI\xfb")
        return path


@pytest.fixture(autouse=True)
def isolated_tempdir(monkeypatch, tmp_path):
    """Keep staging directories for unsaved machines inside the test's tmp_path."""
    scratch = tmp_path / "tmp"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


@pytest.fixture
def settings(tmp_path) -> LibrarySettings:
    state_dir = tmp_path / "state"
    return LibrarySettings(
        storage_dir=tmp_path / "machines",
        state_dir=state_dir,
        preferences_path=state_dir / "preferences.yaml",
    )


@pytest.fixture
def fake_qemu() -> FakeQemuImage:
    return FakeQemuImage()


@pytest.fixture
def library(settings, fake_qemu) -> Library:
    return Library(settings, image_backend=fake_qemu)


@pytest.fixture
def write_bundle():
    """Write a machine bundle directly to disk, bypassing the library."""

    def _write(parent: Path, name: str, backend: str = "qemu", drives=None, images=()) -> Path:
        path = parent / f"{name}.vm"
        (path / "Images").mkdir(parents=True)
        config = MachineConfig(name=name, backend=backend, drives=list(drives or []))
        (path / "config.yaml").write_text(yaml.safe_dump(config.to_dict()))
        for image in images:
            (path / "Images" / image).write_bytes(b"image-data")
        return path

    return _write


@pytest.fixture
def disk_drive():
    def _drive(name: str = "drive0", image_path: str = "disk.qcow2") -> DriveImage:
        return DriveImage(name=name, image_path=image_path, image_type="disk", interface="virtio")

    return _drive


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "VMKEEPER_STORAGE_DIR",
    "VMKEEPER_STATE_DIR",
    "QEMU_IMG",
    "DOWNLOAD_RETRIES",
    "DOWNLOAD_TIMEOUT",
    "CONVERT_ON_IMPORT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
