"""Data models for vmkeeper."""

from __future__ import annotations

import copy as _copy
import tempfile
import uuid as _uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from vmkeeper.constants import (
    ARCH_ALIASES,
    BACKENDS,
    DEFAULT_DRIVE_INTERFACES,
    DISK_IMAGE_TYPES,
    DRIVE_INTERFACES,
    IMAGES_DIRNAME,
    STAGING_PREFIX,
)
from vmkeeper.exceptions import ManagerError


@dataclass
class DriveImage:
    name: str
    image_path: Optional[str]  # relative to the bundle Images/ directory
    image_type: str = "disk"
    interface: str = "none"
    removable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "image_type": self.image_type,
            "interface": self.interface,
            "removable": self.removable,
        }
        if not self.removable and self.image_path:
            data["image_path"] = self.image_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DriveImage":
        if not isinstance(data, dict) or not data.get("name"):
            raise ManagerError(f"Invalid drive entry: {data!r}")
        removable = bool(data.get("removable", False))
        image_path = None if removable else data.get("image_path")
        if not removable and not image_path:
            raise ManagerError(f"Drive '{data['name']}' has no image path")
        return cls(
            name=str(data["name"]),
            image_path=image_path,
            image_type=validate_image_type(data.get("image_type", "disk")),
            interface=validate_interface(data.get("interface", "none")),
            removable=removable,
        )


@dataclass
class DriveSpec:
    """Parameters for a drive created from scratch."""

    image_type: str = "disk"
    interface: Optional[str] = None
    size_mib: int = 0
    removable: bool = False
    raw: bool = False


@dataclass
class MachineConfig:
    name: str
    arch: Optional[str] = "x86_64"
    backend: str = "qemu"
    uuid: str = field(default_factory=lambda: str(_uuid.uuid4()))
    notes: str = ""
    drives: List[DriveImage] = field(default_factory=list)
    # Runtime only, never serialized
    existing_path: Optional[Path] = field(default=None, compare=False)
    staging_dir: Optional[Path] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ManagerError(f"Unsupported backend '{self.backend}'")
        if self.arch:
            self.arch = ARCH_ALIASES.get(self.arch.lower(), self.arch.lower())

    @property
    def images_path(self) -> Path:
        """Images directory of the bundle, or a staging directory before the first save."""
        if self.existing_path is not None:
            return self.existing_path / IMAGES_DIRNAME
        if self.staging_dir is None:
            self.staging_dir = Path(tempfile.gettempdir()) / f"{STAGING_PREFIX}{self.uuid}"
        return self.staging_dir / IMAGES_DIRNAME

    @property
    def count_drives(self) -> int:
        return len(self.drives)

    def drive_names(self) -> List[str]:
        return [drive.name for drive in self.drives]

    def drive_image_path(self, index: int) -> Optional[Path]:
        drive = self.drives[index]
        if drive.removable or not drive.image_path:
            return None
        return self.images_path / drive.image_path

    def referenced_images(self) -> Set[str]:
        return {drive.image_path for drive in self.drives if drive.image_path and not drive.removable}

    def default_interface(self, image_type: str) -> str:
        if not self.arch:
            return "none"
        return DEFAULT_DRIVE_INTERFACES.get(self.arch, {}).get(image_type, "none")

    def new_drive(self, name: str, path: str, image_type: str = "disk", interface: str = "none") -> DriveImage:
        drive = DriveImage(
            name=name,
            image_path=path,
            image_type=validate_image_type(image_type),
            interface=validate_interface(interface),
        )
        self.drives.append(drive)
        return drive

    def new_removable_drive(self, name: str, image_type: str = "cd", interface: str = "none") -> DriveImage:
        drive = DriveImage(
            name=name,
            image_path=None,
            image_type=validate_image_type(image_type),
            interface=validate_interface(interface),
            removable=True,
        )
        self.drives.append(drive)
        return drive

    def remove_drive(self, index: int) -> DriveImage:
        return self.drives.pop(index)

    def copy(self) -> "MachineConfig":
        return _copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "arch": self.arch,
            "backend": self.backend,
            "uuid": self.uuid,
            "notes": self.notes,
            "drives": [drive.to_dict() for drive in self.drives],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MachineConfig":
        if not isinstance(data, dict):
            raise ManagerError("Configuration must be a mapping")
        name = data.get("name")
        if not name or not isinstance(name, str):
            raise ManagerError("Configuration is missing a name")
        drives = data.get("drives") or []
        if not isinstance(drives, list):
            raise ManagerError("'drives' must be a list")
        return cls(
            name=name,
            arch=data.get("arch"),
            backend=data.get("backend", "qemu"),
            uuid=str(data.get("uuid") or _uuid.uuid4()),
            notes=data.get("notes") or "",
            drives=[DriveImage.from_dict(item) for item in drives],
        )


@dataclass
class AlertMessage:
    message: str

    @property
    def id(self) -> str:
        return self.message


@dataclass
class LibrarySettings:
    storage_dir: Path
    state_dir: Path
    preferences_path: Path
    qemu_img: str = "qemu-img"
    download_retries: int = 3
    download_timeout: int = 60
    convert_on_import: bool = False


def validate_image_type(value: str) -> str:
    value = (value or "none").lower()
    if value not in DISK_IMAGE_TYPES:
        raise ManagerError(f"Unsupported image type '{value}'. Choose from: {', '.join(DISK_IMAGE_TYPES)}")
    return value


def validate_interface(value: str) -> str:
    value = (value or "none").lower()
    if value not in DRIVE_INTERFACES:
        raise ManagerError(f"Unsupported drive interface '{value}'. Choose from: {', '.join(DRIVE_INTERFACES)}")
    return value
