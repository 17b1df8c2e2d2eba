"""Machine library: save/discard coordination and bundle-level operations."""

from __future__ import annotations

import asyncio
import shutil
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from vmkeeper.constants import CONFIG_FILENAME, DEFAULT_VM_NAME, IMAGES_DIRNAME, INBOX_DIRNAME
from vmkeeper.downloads import DownloadManager
from vmkeeper.drives import DriveManager, EditSession
from vmkeeper.exceptions import (
    DuplicateNameError,
    IOFailureError,
    NotSupportedError,
    StaleMachineError,
)
from vmkeeper.machine import Machine
from vmkeeper.models import LibrarySettings, MachineConfig
from vmkeeper.naming import bundle_path, new_default_vm_name
from vmkeeper.preferences import Preferences
from vmkeeper.qemu_image import QemuImage
from vmkeeper.registry import MachineRegistry
from vmkeeper.tasks import TaskRunner
from vmkeeper.utils import copy_tree, ensure_directory, log, remove_path, same_path


class SaveState(Enum):
    SAVED = "saved"
    SAVE_FAILED = "save_failed"
    RELOADED = "reloaded"
    RECONSTRUCTED = "reconstructed"
    UNRECOVERABLE = "unrecoverable"


class Library:
    """Entry point tying the registry, drive manager, task runner and downloads together.

    Coroutines here run on the event loop, which is the only context allowed
    to mutate the registry or an edit session. Blocking filesystem work is
    pushed to worker threads and its results are applied after ``await``.
    """

    def __init__(
        self,
        settings: LibrarySettings,
        image_backend: Optional[QemuImage] = None,
    ) -> None:
        self.settings = settings
        ensure_directory(settings.storage_dir)
        self.preferences = Preferences(settings.preferences_path)
        self.registry = MachineRegistry(settings.storage_dir, self.preferences)
        self.image_backend = image_backend or QemuImage(settings.qemu_img)
        self.drives = DriveManager(self.image_backend)
        self.tasks = TaskRunner()
        self.downloads = DownloadManager(self)
        self.last_save_state: Optional[SaveState] = None

    @property
    def storage_dir(self) -> Path:
        return self.settings.storage_dir

    def refresh(self) -> None:
        self.registry.refresh()

    def new_session(self, config: MachineConfig) -> EditSession:
        return EditSession(config)

    # -- save / discard ------------------------------------------------------

    async def save(self, machine: Machine, session: Optional[EditSession] = None) -> SaveState:
        """Persist ``machine``; on failure revert in-memory state and re-raise."""
        staged_images = None if machine.config.existing_path is not None else machine.config.images_path
        try:
            await asyncio.to_thread(machine.save)
        except Exception:
            self.last_save_state = SaveState.SAVE_FAILED
            log("ERROR", f"Saving '{machine.name}' failed; reverting")
            if session is not None and staged_images is not None:
                self._track_moved_images(machine, session, staged_images)
            self.last_save_state = await self._recover(machine, session)
            if staged_images is not None:
                await asyncio.to_thread(self._remove_partial_bundle, machine)
            raise
        if session is not None:
            self.drives.commit_removable_images(machine, session)
            session.unsaved_images.clear()
            session.config = machine.config
        self.last_save_state = SaveState.SAVED
        return SaveState.SAVED

    @staticmethod
    def _track_moved_images(machine: Machine, session: EditSession, staged_images: Path) -> None:
        # A failed first save may already have moved staged images into the bundle
        if machine.path is None:
            return
        bundle_images = machine.path / IMAGES_DIRNAME
        for i, path in enumerate(session.unsaved_images):
            moved = bundle_images / path.name
            if path.parent == staged_images and not path.exists() and moved.exists():
                session.unsaved_images[i] = moved

    @staticmethod
    def _remove_partial_bundle(machine: Machine) -> None:
        # Bundle directory left by a first save that never wrote config.yaml
        if machine.path is None or (machine.path / CONFIG_FILENAME).exists():
            return
        machine.config.existing_path = None
        if remove_path(machine.path):
            log("INFO", f"Removed incomplete bundle {machine.path}")

    async def _recover(self, machine: Machine, session: Optional[EditSession]) -> SaveState:
        try:
            await self.discard(machine, session)
            return SaveState.RELOADED
        except Exception as exc:  # noqa: BLE001
            log("WARN", f"Cannot reload '{machine.name}': {exc}")
        if machine.path is None:
            log("ERROR", f"Attempting to refresh unsaved machine '{machine.name}'")
            return SaveState.UNRECOVERABLE
        try:
            rebuilt = await asyncio.to_thread(Machine.from_path, machine.path, machine.is_shortcut)
        except StaleMachineError as exc:
            log("DEBUG", f"Cannot rebuild machine from {machine.path}: {exc}")
            return SaveState.UNRECOVERABLE
        index = self.registry.index_of(machine)
        if index is None:
            return SaveState.UNRECOVERABLE
        self.registry.remove(machine)
        self.registry.add(rebuilt, index)
        self.registry.select(rebuilt)
        return SaveState.RECONSTRUCTED

    async def discard(
        self, machine: Optional[Machine] = None, session: Optional[EditSession] = None
    ) -> MachineConfig:
        """Reload the on-disk configuration and delete every unsaved image."""
        try:
            if machine is not None and not machine.is_placeholder and machine.path is not None:
                await asyncio.to_thread(machine.reload_configuration)
                config = machine.config
            else:
                config = MachineConfig(name=DEFAULT_VM_NAME)
        finally:
            if session is not None:
                await self.drives.discard_unsaved(session)
                session.removable_cache.clear()
                staging = session.config.staging_dir
                if session.config.existing_path is None and staging is not None:
                    await asyncio.to_thread(remove_path, staging)
        if session is not None:
            session.config = config
        return config

    # -- machine lifecycle ---------------------------------------------------

    async def create(self, config: MachineConfig, session: Optional[EditSession] = None) -> Machine:
        if self.registry.contains_name(config.name):
            raise DuplicateNameError("An existing virtual machine already exists with this name.")
        machine = Machine.new(config, self.storage_dir)
        if machine.path.exists():
            raise DuplicateNameError(f"A bundle already exists at {machine.path}")
        await self.save(machine, session)
        self.registry.add(machine)
        self.registry.select(machine)
        log("SUCCESS", f"Created '{machine.name}' at {machine.path}")
        return machine

    async def delete(self, machine: Any) -> Optional[int]:
        if not machine.is_placeholder and machine.path is not None:
            try:
                await asyncio.to_thread(shutil.rmtree, machine.path)
            except FileNotFoundError:
                log("WARN", f"{machine.path} was already gone")
            except OSError as exc:
                raise IOFailureError(f"Failed to delete {machine.path}: {exc}") from exc
        index = self.registry.remove(machine)
        log("INFO", f"Deleted '{machine.name}'")
        return index

    @staticmethod
    def _require_live(machine: Any) -> None:
        if machine.is_placeholder or machine.path is None:
            raise StaleMachineError(f"'{machine.name}' is not available on disk")

    async def clone(self, machine: Machine) -> Machine:
        self._require_live(machine)
        new_name = new_default_vm_name(self.storage_dir, machine.name)
        new_path = bundle_path(new_name, self.storage_dir)

        def _clone() -> Machine:
            copy_tree(machine.path, new_path)
            try:
                cloned = Machine.from_path(new_path)
            except StaleMachineError as exc:
                remove_path(new_path)
                raise StaleMachineError("Failed to clone VM.") from exc
            cloned.config.name = new_name
            cloned.config.uuid = str(uuid.uuid4())
            cloned.save()
            return cloned

        cloned = await asyncio.to_thread(_clone)
        index = self.registry.index_of(machine)
        self.registry.add(cloned, None if index is None else index + 1)
        self.registry.select(cloned)
        log("SUCCESS", f"Cloned '{machine.name}' to '{new_name}'")
        return cloned

    async def export(self, machine: Machine, destination: Path) -> Path:
        """Copy the bundle to ``destination``, replacing whatever is there."""
        self._require_live(machine)
        destination = Path(destination)

        def _export() -> None:
            if destination.exists() or destination.is_symlink():
                if not remove_path(destination):
                    raise IOFailureError(f"Cannot replace {destination}")
            copy_tree(machine.path, destination)

        await asyncio.to_thread(_export)
        log("SUCCESS", f"Exported '{machine.name}' to {destination}")
        return destination

    async def move(self, machine: Machine, destination: Path) -> Machine:
        """Relocate the bundle and keep it listed as a shortcut in the same position."""
        destination = Path(destination)
        await self.export(machine, destination)
        try:
            moved = await asyncio.to_thread(Machine.from_path, destination, True)
        except StaleMachineError as exc:
            raise StaleMachineError("Unable to add a shortcut to the new location.") from exc
        was_selected = self.registry.selected is machine
        index = await self.delete(machine)
        self.registry.add(moved, index)
        if was_selected:
            self.registry.select(moved)
        if not moved.supports_shortcut:
            raise NotSupportedError(
                f"Shortcuts to '{moved.config.backend}' machines cannot be stored; "
                f"open {destination} again after restarting"
            )
        return moved

    async def template(self, machine: Machine) -> Machine:
        """New machine with the same settings but no drives."""
        if machine.is_placeholder or not machine.has_drives:
            raise NotSupportedError("This virtual machine does not support templating.")
        config = machine.config.copy()
        config.uuid = str(uuid.uuid4())
        config.drives.clear()
        config.existing_path = None
        config.staging_dir = None
        config.name = new_default_vm_name(self.storage_dir, config.name)
        return await self.create(config)

    async def edit(self, machine: Any) -> EditSession:
        """Select ``machine`` and open an edit session, surfacing orphaned images as drives."""
        if machine.is_placeholder or not machine.is_editable:
            raise NotSupportedError(f"'{machine.name}' cannot be edited")
        self.registry.select(machine)
        session = EditSession(machine.config)
        if machine.has_drives:
            await self.drives.recover_orphaned_drives(session)
        return session

    async def import_bundle(self, path: Path, as_shortcut: bool = True) -> Any:
        """Open a bundle from anywhere on disk.

        Already listed bundles are just selected. Bundles in the storage
        ``Inbox/`` are moved into storage, others become shortcuts or copies.
        """
        path = Path(path)
        log("INFO", f"Importing {path}")
        existing = self.registry.find_by_path(path)
        if existing is not None:
            if existing.is_placeholder:
                live = await asyncio.to_thread(existing.unwrap)
                if live is not None:
                    index = self.registry.remove(existing)
                    self.registry.add(live, index)
                    self.registry.select(live)
                    return live
            else:
                self.registry.select(existing)
            return existing

        try:
            await asyncio.to_thread(Machine.from_path, path)
        except StaleMachineError as exc:
            raise StaleMachineError(
                f"Cannot import {path.name}: the configuration is invalid or unsupported"
            ) from exc

        destination = bundle_path(new_default_vm_name(self.storage_dir, path.stem), self.storage_dir)
        if same_path(path.parent, self.storage_dir / INBOX_DIRNAME):
            log("INFO", "Moving from Inbox")

            def _move() -> Machine:
                try:
                    shutil.move(str(path), str(destination))
                except OSError as exc:
                    raise IOFailureError(f"Failed to move {path} to {destination}: {exc}") from exc
                return Machine.from_path(destination)

            machine = await asyncio.to_thread(_move)
        elif as_shortcut:
            log("INFO", "Loading as a shortcut")
            machine = await asyncio.to_thread(Machine.from_path, path, True)
        else:
            log("INFO", f"Copying to {self.storage_dir}")

            def _copy() -> Machine:
                copy_tree(path, destination)
                return Machine.from_path(destination)

            machine = await asyncio.to_thread(_copy)
        if not machine.is_shortcut:
            await self.claim_unique_name(machine)
        self.registry.add(machine)
        self.registry.select(machine)
        return machine

    async def claim_unique_name(self, machine: Machine) -> str:
        """Rename an unlisted machine when a listed non-shortcut machine already uses its name."""
        base = machine.name
        name, i = base, 1
        while self.registry.contains_name(name):
            i += 1
            name = f"{base} {i}"
        if name != base:
            log("WARN", f"'{base}' is already listed; renaming the new machine to '{name}'")
            machine.config.name = name
            await asyncio.to_thread(machine.save)
        return name

    # -- sizes -----------------------------------------------------------------

    def compute_size(self, machine: Any) -> int:
        return self.registry.compute_size(machine)

    def compute_file_size(self, path: Path) -> int:
        return self.registry.compute_file_size(path)
