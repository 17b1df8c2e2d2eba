"""Drive image lifecycle: import, create, remove, resize and reclaim."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from vmkeeper.constants import BYTES_PER_MIB, CD_IMAGE_EXTENSIONS
from vmkeeper.exceptions import InvalidSizeError, InvalidSourceError, IOFailureError
from vmkeeper.machine import Machine
from vmkeeper.models import DriveImage, DriveSpec, MachineConfig
from vmkeeper.naming import (
    new_default_drive_name,
    new_imported_image,
    reserve_drive_path,
    reserve_imported_image,
)
from vmkeeper.qemu_image import QemuImage
from vmkeeper.utils import ensure_directory, log, remove_path


@dataclass(eq=False)
class EditSession:
    """Side effects of editing one configuration that are not yet saved.

    ``unsaved_images`` holds files created during the session (safe to delete
    on discard); ``removable_cache`` maps removable drive names to the media
    chosen for them. Both are cleared at every save or discard.
    """

    config: MachineConfig
    unsaved_images: List[Path] = field(default_factory=list)
    removable_cache: Dict[str, Path] = field(default_factory=dict)

    def add_unsaved(self, path: Path) -> None:
        if path not in self.unsaved_images:
            self.unsaved_images.append(path)

    def discard_unsaved(self, path: Path) -> None:
        if path in self.unsaved_images:
            self.unsaved_images.remove(path)

    def clear(self) -> None:
        self.unsaved_images.clear()
        self.removable_cache.clear()


class DriveManager:
    def __init__(self, image_backend: QemuImage) -> None:
        self.image_backend = image_backend

    # -- import ------------------------------------------------------------

    @staticmethod
    def _check_source(source: Path) -> None:
        if Machine.is_bundle(source):
            raise InvalidSourceError(f"Cannot import a virtual machine ({source.name}) as a drive")
        if source.is_dir():
            raise InvalidSourceError(f"Cannot import a directory ({source}) as a drive")
        if not source.exists():
            raise InvalidSourceError(f"Drive image {source} does not exist")

    def _place_image(self, source: Path, images_path: Path, copy: bool) -> Path:
        ensure_directory(images_path)
        name = reserve_imported_image(images_path, source.name)
        destination = images_path / name
        try:
            if copy:
                shutil.copyfile(source, destination)
            else:
                shutil.move(str(source), str(destination))
        except OSError as exc:
            destination.unlink(missing_ok=True)
            raise IOFailureError(f"Failed to import {source}: {exc}") from exc
        return destination

    async def import_drive(
        self,
        source: Path,
        session: EditSession,
        image_type: str = "disk",
        interface: str = "none",
        raw: bool = True,
        copy: bool = True,
    ) -> DriveImage:
        """Bring ``source`` into the configuration's images directory and attach it.

        Conversion to qcow2 happens only for a copy that is not raw, and only
        when qemu-img is available; otherwise the bytes are copied or moved.
        """
        source = Path(source)
        self._check_source(source)
        config = session.config
        images_path = config.images_path
        convert = copy and not raw and self.image_backend.available()
        if convert:
            await asyncio.to_thread(ensure_directory, images_path)
            name = await asyncio.to_thread(reserve_imported_image, images_path, source.name, "qcow2")
            destination = images_path / name
            await self.image_backend.convert(source, destination)
        else:
            destination = await asyncio.to_thread(self._place_image, source, images_path, copy)
        session.add_unsaved(destination)
        drive = config.new_drive(new_default_drive_name(config), destination.name, image_type, interface)
        log("SUCCESS", f"Imported {source.name} as '{drive.name}' ({destination.name})")
        return drive

    async def import_drive_auto(self, source: Path, session: EditSession, copy: bool = True) -> DriveImage:
        source = Path(source)
        image_type = "cd" if source.suffix.lower() in CD_IMAGE_EXTENSIONS else "disk"
        interface = session.config.default_interface(image_type)
        return await self.import_drive(source, session, image_type, interface, raw=True, copy=copy)

    # -- create ------------------------------------------------------------

    @staticmethod
    def _allocate_raw(images_path: Path, image_type: str, size_mib: int) -> Path:
        ensure_directory(images_path)
        path = images_path / reserve_drive_path(images_path, image_type, "raw")
        try:
            with path.open("wb") as handle:
                handle.truncate(size_mib * BYTES_PER_MIB)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise IOFailureError(f"Failed to allocate {path}: {exc}") from exc
        return path

    @staticmethod
    def _reserve_qcow2(images_path: Path, image_type: str) -> Path:
        ensure_directory(images_path)
        return images_path / reserve_drive_path(images_path, image_type, "qcow2")

    async def create_drive(
        self, spec: DriveSpec, session: EditSession, source: Optional[Path] = None
    ) -> DriveImage:
        config = session.config
        interface = spec.interface or "none"
        name = new_default_drive_name(config)
        if spec.removable:
            drive = config.new_removable_drive(name, spec.image_type, interface)
            if source is not None:
                session.removable_cache[name] = Path(source)
            log("INFO", f"Added removable drive '{name}'")
            return drive

        if spec.size_mib <= 0:
            raise InvalidSizeError(f"Drive size must be positive (got {spec.size_mib} MiB)")
        images_path = config.images_path
        if spec.raw:
            path = await asyncio.to_thread(self._allocate_raw, images_path, spec.image_type, spec.size_mib)
        else:
            path = await asyncio.to_thread(self._reserve_qcow2, images_path, spec.image_type)
            try:
                await self.image_backend.create(path, spec.size_mib)
            except BaseException:
                path.unlink(missing_ok=True)
                raise
        session.add_unsaved(path)
        drive = config.new_drive(name, path.name, spec.image_type, interface)
        log("SUCCESS", f"Created drive '{name}' ({path.name}, {spec.size_mib} MiB)")
        return drive

    # -- remove ------------------------------------------------------------

    async def remove_drive(self, index: int, session: EditSession) -> DriveImage:
        config = session.config
        drive = config.drives[index]
        path = config.drive_image_path(index)
        if path is not None:
            removed = await asyncio.to_thread(remove_path, path)
            if not removed and path.exists():
                log("WARN", f"Drive file {path} was left on disk")
            session.discard_unsaved(path)
        session.removable_cache.pop(drive.name, None)
        config.remove_drive(index)
        log("INFO", f"Removed drive '{drive.name}'")
        return drive

    # -- maintenance -------------------------------------------------------

    async def resize_drive(self, path: Path, size_mib: int) -> None:
        await self.image_backend.resize(Path(path), size_mib * BYTES_PER_MIB)

    async def drive_size(self, path: Path) -> int:
        """Virtual size in bytes, 0 when it cannot be determined."""
        try:
            return await self.image_backend.size(Path(path))
        except Exception as exc:  # noqa: BLE001
            log("DEBUG", f"Cannot read size of {path}: {exc}")
            return 0

    async def reclaim_space(self, path: Path, compress: bool = False) -> Path:
        """Re-encode ``path`` as qcow2 and swap it in place of the original."""
        path = Path(path)
        temp_name = await asyncio.to_thread(new_imported_image, path.parent, path.name, "qcow2")
        temp_path = path.parent / temp_name
        try:
            await self.image_backend.convert(path, temp_path, compress=compress)
            await asyncio.to_thread(os.replace, temp_path, path)
        except BaseException:
            await asyncio.to_thread(remove_path, temp_path)
            raise
        log("SUCCESS", f"Reclaimed space in {path.name}")
        return path

    # -- session boundaries --------------------------------------------------

    def commit_removable_images(self, machine: Machine, session: EditSession) -> None:
        """Bind cached removable media to ``machine``; the cache is emptied after one pass."""
        try:
            for name, source in session.removable_cache.items():
                drive = machine.find_drive(name)
                if drive is None:
                    log("WARN", f"No drive named '{name}' on '{machine.name}'")
                    continue
                try:
                    machine.change_medium(drive, source)
                except Exception as exc:  # noqa: BLE001
                    log("ERROR", f"Failed to insert {source} into '{name}': {exc}")
        finally:
            session.removable_cache.clear()

    async def recover_orphaned_drives(self, session: EditSession) -> List[DriveImage]:
        """Attach image files that no drive references so they can be removed."""
        config = session.config
        images_path = config.images_path

        def _scan() -> List[str]:
            if not images_path.is_dir():
                return []
            return sorted(
                item.name for item in images_path.iterdir() if item.is_file() and not item.name.startswith(".")
            )

        referenced = config.referenced_images()
        recovered = []
        for name in await asyncio.to_thread(_scan):
            if name in referenced:
                continue
            drive = config.new_drive(new_default_drive_name(config), name, "disk", "none")
            log("WARN", f"Recovered orphaned image {name} as '{drive.name}'")
            recovered.append(drive)
        return recovered

    async def discard_unsaved(self, session: EditSession) -> None:
        paths = list(session.unsaved_images)
        for path in paths:
            await asyncio.to_thread(remove_path, path)
        session.unsaved_images.clear()
