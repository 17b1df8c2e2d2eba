"""Background downloads that materialize new machines."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Awaitable, Optional
from urllib.parse import parse_qs, unquote, urlparse

from vmkeeper.constants import BUNDLE_EXTENSION, CD_IMAGE_EXTENSIONS
from vmkeeper.exceptions import DownloadCancelledError, DownloadError, IOFailureError
from vmkeeper.machine import Machine, PendingMachine
from vmkeeper.models import MachineConfig
from vmkeeper.naming import bundle_path, new_default_drive_name, new_default_vm_name, reserve_imported_image
from vmkeeper.utils import download_file_with_retry, ensure_directory, log, remove_path

if TYPE_CHECKING:  # pragma: no cover
    from vmkeeper.library import Library


def _url_filename(url: str, default: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or default


def safe_extract(archive: zipfile.ZipFile, destination: Path) -> None:
    """Extract ``archive`` refusing members that would land outside ``destination``."""
    root = destination.resolve()
    for member in archive.infolist():
        target = (destination / member.filename).resolve()
        if target != root and root not in target.parents:
            raise DownloadError(f"Archive member escapes extraction directory: {member.filename}")
    archive.extractall(destination)


def find_bundle(directory: Path) -> Optional[Path]:
    """First machine bundle inside an extracted archive, outermost first."""
    candidates = sorted(directory.rglob(f"*{BUNDLE_EXTENSION}"), key=lambda p: (len(p.parts), str(p)))
    for candidate in candidates:
        if "__MACOSX" in candidate.parts:
            continue
        if Machine.is_bundle(candidate):
            return candidate
    return None


class DownloadManager:
    def __init__(self, library: "Library") -> None:
        self.library = library

    @property
    def _retries(self) -> int:
        return self.library.settings.download_retries

    @property
    def _timeout(self) -> int:
        return self.library.settings.download_timeout

    def _start(self, pending: PendingMachine, work: Awaitable[Any]) -> PendingMachine:
        self.library.registry.add_pending(pending)
        pending.task = self.library.tasks.run(self._complete(pending, work))
        return pending

    async def _complete(self, pending: PendingMachine, work: Awaitable[Any]) -> Any:
        try:
            return await work
        finally:
            self.library.registry.remove_pending(pending)

    def cancel(self, pending: PendingMachine) -> None:
        log("INFO", f"Cancelling download of '{pending.name}'")
        pending.cancel()

    # -- zipped bundles ------------------------------------------------------

    def start_zip_download_from_link(self, link: str) -> Optional[PendingMachine]:
        """Start a bundle download from a ``vmkeeper://downloadVM?url=...`` link."""
        urls = parse_qs(urlparse(link).query).get("url")
        url = urls[0] if urls else ""
        if not urlparse(url).scheme:
            self.library.tasks.show_alert("Failed to parse download URL.")
            return None
        return self.start_zip_download(url)

    def start_zip_download(self, url: str) -> PendingMachine:
        name = Path(_url_filename(url, "download.zip")).stem
        pending = PendingMachine(name=name, url=url)
        return self._start(pending, self._download_zip(pending))

    async def _download_zip(self, pending: PendingMachine) -> Machine:
        storage_dir = self.library.storage_dir

        def _fetch() -> Path:
            with tempfile.TemporaryDirectory(prefix="vmkeeper-download-") as tmp:
                archive_path = Path(tmp) / "download.zip"
                download_file_with_retry(
                    pending.url,
                    archive_path,
                    label=f"Downloading {pending.name}",
                    retries=self._retries,
                    cancel_event=pending.cancel_event,
                    timeout=self._timeout,
                )
                if pending.is_cancelled:
                    raise DownloadCancelledError(f"Download cancelled: {pending.url}")
                extract_dir = Path(tmp) / "extracted"
                try:
                    with zipfile.ZipFile(archive_path) as archive:
                        safe_extract(archive, extract_dir)
                except zipfile.BadZipFile as exc:
                    raise DownloadError(f"{pending.url} is not a zip archive") from exc
                bundle = find_bundle(extract_dir)
                if bundle is None:
                    raise DownloadError(f"No virtual machine found in {pending.url}")
                ensure_directory(storage_dir)
                destination = bundle_path(new_default_vm_name(storage_dir, bundle.stem), storage_dir)
                try:
                    shutil.move(str(bundle), str(destination))
                except OSError as exc:
                    raise IOFailureError(f"Failed to move {bundle.name} into {storage_dir}: {exc}") from exc
                return destination

        destination = await asyncio.to_thread(_fetch)
        machine = await asyncio.to_thread(Machine.from_path, destination)
        await self.library.claim_unique_name(machine)
        self.library.registry.add(machine)
        log("SUCCESS", f"Downloaded '{machine.name}' to {destination}")
        return machine

    # -- single images ---------------------------------------------------------

    def start_image_download(self, config: MachineConfig, url: str) -> Optional[PendingMachine]:
        """Download a disk image and create a machine around it from ``config``."""
        if self.library.registry.contains_name(config.name):
            self.library.tasks.show_alert("An existing virtual machine already exists with this name.")
            return None
        pending = PendingMachine(name=config.name, url=url)
        return self._start(pending, self._download_image(pending, config))

    async def _download_image(self, pending: PendingMachine, config: MachineConfig) -> Machine:
        images_path = config.images_path
        staging = config.staging_dir if config.existing_path is None else None
        filename = _url_filename(pending.url, "disk.img")

        def _fetch() -> str:
            ensure_directory(images_path)
            name = reserve_imported_image(images_path, filename)
            try:
                download_file_with_retry(
                    pending.url,
                    images_path / name,
                    label=f"Downloading {pending.name}",
                    retries=self._retries,
                    cancel_event=pending.cancel_event,
                    timeout=self._timeout,
                )
            except BaseException:
                (images_path / name).unlink(missing_ok=True)
                raise
            return name

        try:
            name = await asyncio.to_thread(_fetch)
            image_type = "cd" if Path(name).suffix.lower() in CD_IMAGE_EXTENSIONS else "disk"
            config.new_drive(new_default_drive_name(config), name, image_type, config.default_interface(image_type))
            # The name or the bundle path may have been taken while downloading
            machine = await self.library.create(config)
        except BaseException:
            if staging is not None:
                await asyncio.to_thread(remove_path, staging)
            raise
        log("SUCCESS", f"Created '{machine.name}' from {filename}")
        return machine
