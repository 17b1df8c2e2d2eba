"""Tests for vmkeeper.downloads module."""

from __future__ import annotations

import asyncio
import threading
import zipfile
from unittest.mock import patch

import pytest
import yaml

from vmkeeper.downloads import find_bundle, safe_extract
from vmkeeper.exceptions import DownloadCancelledError, DownloadError
from vmkeeper.models import MachineConfig


def _zip_bytes(tmp_path, members):
    archive = tmp_path / "source.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return archive.read_bytes()


def _bundle_members(prefix, name):
    config = yaml.safe_dump(MachineConfig(name=name).to_dict())
    return {
        f"{prefix}{name}.vm/config.yaml": config,
        f"{prefix}{name}.vm/Images/disk.img": "image-data",
    }


def _serving(payload):
    def _download(url, destination, **kwargs):
        destination.write_bytes(payload)
        return destination

    return _download


def _run_download(library, start):
    async def scenario():
        pending = start()
        if pending is None:
            return None, []
        during = list(library.registry.pending)
        await pending.task
        return pending, during

    return asyncio.run(scenario())


class TestZipDownload:
    def test_bundle_is_registered(self, library, tmp_path, settings):
        payload = _zip_bytes(tmp_path, _bundle_members("pack/", "beta"))
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(payload)):
            pending, during = _run_download(
                library, lambda: library.downloads.start_zip_download("https://example.com/files/beta.zip")
            )
        assert pending.name == "beta"
        assert during == [pending]
        assert library.registry.pending == []
        vm = library.registry.machines[0]
        assert vm.name == "beta"
        assert vm.path == settings.storage_dir / "beta.vm"
        assert (vm.path / "Images" / "disk.img").exists()
        assert library.tasks.alert is None

    def test_name_collision_renames(self, library, tmp_path, settings):
        asyncio.run(library.create(MachineConfig(name="beta")))
        payload = _zip_bytes(tmp_path, _bundle_members("", "beta"))
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(payload)):
            _run_download(library, lambda: library.downloads.start_zip_download("https://example.com/beta.zip"))
        vm = library.registry.machines[1]
        assert vm.path == settings.storage_dir / "beta 2.vm"
        assert vm.name == "beta 2"
        on_disk = yaml.safe_load((vm.path / "config.yaml").read_text())
        assert on_disk["name"] == "beta 2"

    def test_failure_is_alerted(self, library):
        with patch(
            "vmkeeper.downloads.download_file_with_retry",
            side_effect=DownloadError("HTTP error downloading https://example.com/x.zip: 404"),
        ):
            _run_download(library, lambda: library.downloads.start_zip_download("https://example.com/x.zip"))
        assert library.tasks.alert.message == "HTTP error downloading https://example.com/x.zip: 404"
        assert library.registry.pending == []
        assert library.registry.machines == []

    def test_not_a_zip(self, library):
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(b"<html>")):
            _run_download(library, lambda: library.downloads.start_zip_download("https://example.com/x.zip"))
        assert "not a zip archive" in library.tasks.alert.message

    def test_archive_without_bundle(self, library, tmp_path):
        payload = _zip_bytes(tmp_path, {"README.txt": "hello"})
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(payload)):
            _run_download(library, lambda: library.downloads.start_zip_download("https://example.com/x.zip"))
        assert "No virtual machine found" in library.tasks.alert.message

    def test_cancellation_is_silent(self, library):
        def _download(url, destination, cancel_event=None, **kwargs):
            if cancel_event.wait(timeout=5):
                raise DownloadCancelledError(f"Download cancelled: {url}")
            raise AssertionError("download was not cancelled")

        def _start():
            pending = library.downloads.start_zip_download("https://example.com/x.zip")
            library.downloads.cancel(pending)
            return pending

        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_download):
            pending, _ = _run_download(library, _start)
        assert pending.is_cancelled
        assert library.tasks.alert is None
        assert library.registry.pending == []

    def test_link_with_encoded_url(self, library, tmp_path):
        payload = _zip_bytes(tmp_path, _bundle_members("", "beta"))
        link = "vmkeeper://downloadVM?url=https%3A%2F%2Fexample.com%2Fbeta.zip"
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(payload)) as fetch:
            pending, _ = _run_download(library, lambda: library.downloads.start_zip_download_from_link(link))
        assert pending.url == "https://example.com/beta.zip"
        assert fetch.call_args[0][0] == "https://example.com/beta.zip"

    @pytest.mark.parametrize(
        "link",
        ["vmkeeper://downloadVM?url=not-a-url", "vmkeeper://downloadVM", "vmkeeper://downloadVM?url="],
    )
    def test_unparseable_link(self, library, link):
        assert library.downloads.start_zip_download_from_link(link) is None
        assert library.tasks.alert.message == "Failed to parse download URL."
        assert library.registry.pending == []


class TestImageDownload:
    def test_machine_created_around_image(self, library, settings):
        config = MachineConfig(name="ubuntu", arch="x86_64")
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(b"ISO")):
            _run_download(
                library, lambda: library.downloads.start_image_download(config, "https://example.com/ubuntu.iso")
            )
        vm = library.registry.machines[0]
        assert vm.path == settings.storage_dir / "ubuntu.vm"
        drive = vm.config.drives[0]
        assert (drive.name, drive.image_path, drive.image_type, drive.interface) == (
            "drive0",
            "ubuntu.iso",
            "cd",
            "ide",
        )
        assert (vm.path / "Images" / "ubuntu.iso").read_bytes() == b"ISO"
        assert library.tasks.alert is None

    def test_failure_removes_staging(self, library):
        config = MachineConfig(name="ubuntu")
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=DownloadError("timed out")):
            _run_download(
                library, lambda: library.downloads.start_image_download(config, "https://example.com/disk.qcow2")
            )
        assert library.tasks.alert.message == "timed out"
        assert not config.staging_dir.exists()
        assert library.registry.machines == []

    def test_unlisted_bundle_is_not_overwritten(self, library, settings, write_bundle):
        existing = write_bundle(settings.storage_dir, "Foo", images=("keep.img",))
        before = (existing / "config.yaml").read_text()
        config = MachineConfig(name="Foo")
        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_serving(b"disk")):
            _run_download(library, lambda: library.downloads.start_image_download(config, "https://example.com/disk.img"))
        assert "bundle already exists" in library.tasks.alert.message
        assert (existing / "config.yaml").read_text() == before
        assert sorted(p.name for p in (existing / "Images").iterdir()) == ["keep.img"]
        assert not config.staging_dir.exists()
        assert library.registry.machines == []

    def test_name_taken_during_download(self, library):
        config = MachineConfig(name="alpha")
        created = threading.Event()

        def _download(url, destination, **kwargs):
            assert created.wait(timeout=5)
            destination.write_bytes(b"disk")
            return destination

        async def scenario():
            pending = library.downloads.start_image_download(config, "https://example.com/disk.img")
            await library.create(MachineConfig(name="alpha"))
            created.set()
            await pending.task

        with patch("vmkeeper.downloads.download_file_with_retry", side_effect=_download):
            asyncio.run(scenario())
        assert library.tasks.alert.message == "An existing virtual machine already exists with this name."
        assert len(library.registry.machines) == 1
        assert not config.staging_dir.exists()

    def test_duplicate_name_alerted(self, library):
        asyncio.run(library.create(MachineConfig(name="alpha")))
        result = library.downloads.start_image_download(MachineConfig(name="alpha"), "https://example.com/a.img")
        assert result is None
        assert library.tasks.alert.message == "An existing virtual machine already exists with this name."


class TestArchiveHelpers:
    def test_safe_extract_rejects_traversal(self, tmp_path):
        archive_path = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive_path, "w") as zf:
            zf.writestr("../escaped.txt", "x")
        destination = tmp_path / "out"
        with zipfile.ZipFile(archive_path) as archive:
            with pytest.raises(DownloadError, match="escapes"):
                safe_extract(archive, destination)
        assert not (tmp_path / "escaped.txt").exists()

    def test_find_bundle_prefers_outermost(self, tmp_path, write_bundle):
        write_bundle(tmp_path / "a" / "b", "inner")
        outer = write_bundle(tmp_path / "a", "outer")
        write_bundle(tmp_path / "__MACOSX", "shadow")
        assert find_bundle(tmp_path) == outer

    def test_find_bundle_none(self, tmp_path):
        (tmp_path / "junk.vm").mkdir()
        assert find_bundle(tmp_path) is None
