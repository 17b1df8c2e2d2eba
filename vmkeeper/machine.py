"""Machine bundles: live machines, placeholders for vanished bundles and pending downloads."""

from __future__ import annotations

import asyncio
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmkeeper.constants import BUNDLE_EXTENSION, CONFIG_FILENAME, IMAGES_DIRNAME
from vmkeeper.exceptions import IOFailureError, ManagerError, StaleMachineError
from vmkeeper.models import DriveImage, MachineConfig
from vmkeeper.naming import bundle_path
from vmkeeper.utils import atomic_write_text, ensure_directory, log, remove_path


def load_config(path: Path) -> MachineConfig:
    """Read ``config.yaml`` from a bundle directory."""
    config_file = path / CONFIG_FILENAME
    try:
        data = yaml.safe_load(config_file.read_text())
        config = MachineConfig.from_dict(data)
    except (OSError, yaml.YAMLError, ManagerError) as exc:
        raise StaleMachineError(f"Cannot load machine at {path}: {exc}") from exc
    config.existing_path = path
    return config


class Machine:
    """A live machine backed by a bundle directory."""

    is_placeholder = False

    def __init__(self, config: MachineConfig, path: Optional[Path] = None, is_shortcut: bool = False) -> None:
        self.config = config
        self.path = path
        self.is_shortcut = is_shortcut
        self.is_deleted = False
        # Media bound to removable drives for this run; never written to config.yaml
        self.removable_media: Dict[str, Path] = {}

    def __repr__(self) -> str:
        return f"Machine(name={self.name!r}, path={self.path}, shortcut={self.is_shortcut})"

    @classmethod
    def new(cls, config: MachineConfig, parent: Path) -> "Machine":
        """Machine for a fresh configuration, rooted at ``<parent>/<name>.vm`` (not yet written)."""
        return cls(config, path=bundle_path(config.name, parent))

    @classmethod
    def from_path(cls, path: Path, is_shortcut: bool = False) -> "Machine":
        return cls(load_config(path), path=path, is_shortcut=is_shortcut)

    @staticmethod
    def is_bundle(path: Path) -> bool:
        return path.suffix == BUNDLE_EXTENSION and path.is_dir() and (path / CONFIG_FILENAME).is_file()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def has_drives(self) -> bool:
        return self.config.backend == "qemu"

    @property
    def is_editable(self) -> bool:
        return not self.is_deleted

    @property
    def supports_shortcut(self) -> bool:
        return self.config.backend != "apple"

    @property
    def backing_path(self) -> Optional[Path]:
        return self.path

    def save(self) -> None:
        """Write the configuration into the bundle, moving staged images in on first save."""
        if self.path is None:
            raise ManagerError(f"Machine '{self.name}' has no bundle path")
        images_dir = self.path / IMAGES_DIRNAME
        try:
            ensure_directory(images_dir)
            staging = self.config.staging_dir
            if self.config.existing_path is None and staging is not None:
                staged_images = staging / IMAGES_DIRNAME
                if staged_images.is_dir():
                    for item in staged_images.iterdir():
                        shutil.move(str(item), str(images_dir / item.name))
                remove_path(staging)
                self.config.staging_dir = None
            self.config.existing_path = self.path
            content = yaml.safe_dump(self.config.to_dict(), sort_keys=False)
            atomic_write_text(self.path / CONFIG_FILENAME, content)
        except OSError as exc:
            raise IOFailureError(f"Failed to save '{self.name}' to {self.path}: {exc}") from exc
        log("DEBUG", f"Saved configuration for '{self.name}' to {self.path}")

    def reload_configuration(self) -> None:
        if self.path is None:
            raise StaleMachineError(f"Machine '{self.name}' has never been saved")
        self.config = load_config(self.path)

    def change_medium(self, drive: DriveImage, source: Path) -> None:
        if not drive.removable:
            raise ManagerError(f"Drive '{drive.name}' is not removable")
        self.removable_media[drive.name] = Path(source)
        log("INFO", f"Inserted {source} into '{drive.name}' of '{self.name}'")

    def find_drive(self, name: str) -> Optional[DriveImage]:
        for drive in self.config.drives:
            if drive.name == name:
                return drive
        return None

    def reference(self) -> Dict[str, Any]:
        return {"path": str(self.path), "name": self.name, "shortcut": self.is_shortcut}


class PlaceholderMachine:
    """Stand-in for a listed machine whose bundle is gone, keeping its list position."""

    is_placeholder = True
    has_drives = False
    is_editable = False
    supports_shortcut = True
    config = None

    def __init__(self, path: Path, name: str, is_shortcut: bool = False) -> None:
        self.path = path
        self.name = name
        self.is_shortcut = is_shortcut
        self.is_deleted = False

    def __repr__(self) -> str:
        return f"PlaceholderMachine(name={self.name!r}, path={self.path})"

    @property
    def backing_path(self) -> Path:
        return self.path

    @classmethod
    def for_machine(cls, vm) -> Optional["PlaceholderMachine"]:
        if vm.path is None:
            return None
        if isinstance(vm, PlaceholderMachine):
            return vm
        return cls(vm.path, vm.name, vm.is_shortcut)

    @classmethod
    def from_reference(cls, data: Any) -> Optional["PlaceholderMachine"]:
        if not isinstance(data, dict) or not data.get("path"):
            return None
        path = Path(data["path"])
        return cls(path, str(data.get("name") or path.stem), bool(data.get("shortcut", False)))

    def unwrap(self) -> Optional[Machine]:
        if not Machine.is_bundle(self.path):
            return None
        try:
            return Machine.from_path(self.path, is_shortcut=self.is_shortcut)
        except StaleMachineError as exc:
            log("DEBUG", str(exc))
            return None

    def reference(self) -> Dict[str, Any]:
        return {"path": str(self.path), "name": self.name, "shortcut": self.is_shortcut}


@dataclass(eq=False)
class PendingMachine:
    """A machine still being downloaded."""

    name: str
    url: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()
