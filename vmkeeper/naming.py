"""Collision-free names for new machines, drives and imported image files."""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional

from vmkeeper.constants import BUNDLE_EXTENSION, DEFAULT_VM_NAME, MAX_NAME_ATTEMPTS
from vmkeeper.models import MachineConfig


def _unique_token() -> str:
    return str(uuid.uuid4()).upper()


def bundle_path(name: str, parent: Path) -> Path:
    return parent / f"{name}{BUNDLE_EXTENSION}"


def new_default_vm_name(parent: Path, base: str = DEFAULT_VM_NAME) -> str:
    """First of ``base``, ``base 2``, ``base 3`` ... without an existing bundle in ``parent``."""
    for i in range(1, MAX_NAME_ATTEMPTS):
        name = base if i <= 1 else f"{base} {i}"
        if not bundle_path(name, parent).exists():
            return name
    return _unique_token()


def new_default_drive_path(images_path: Path, image_type: str, extension: str) -> str:
    """First free ``<type>-<i>.<ext>`` file name in ``images_path``."""
    for i in range(MAX_NAME_ATTEMPTS):
        name = f"{image_type}-{i}.{extension}"
        if not (images_path / name).exists():
            return name
    return _unique_token()


def new_default_drive_name(config: MachineConfig) -> str:
    """First ``drive<i>`` not already used by a drive in ``config``."""
    taken = set(config.drive_names())
    for i in range(MAX_NAME_ATTEMPTS):
        name = f"drive{i}"
        if name not in taken:
            return name
    return _unique_token()


def _imported_candidates(filename: str, extension: Optional[str]):
    source = Path(filename)
    stem = source.stem if source.suffix else source.name
    ext = extension if extension is not None else source.suffix.lstrip(".")
    for i in range(1, MAX_NAME_ATTEMPTS):
        attempt = stem if i == 1 else f"{stem}-{i}"
        yield f"{attempt}.{ext}" if ext else attempt


def new_imported_image(images_path: Path, filename: str, extension: Optional[str] = None) -> str:
    """First free name among ``base.ext``, ``base-2.ext``, ``base-3.ext`` ...

    ``extension`` replaces the source extension when given (e.g. ``qcow2`` after conversion).
    """
    for candidate in _imported_candidates(filename, extension):
        if not (images_path / candidate).exists():
            return candidate
    return _unique_token()


def reserve_imported_image(images_path: Path, filename: str, extension: Optional[str] = None) -> str:
    """Like ``new_imported_image`` but creates an empty placeholder file so that
    concurrent callers resolving in other threads cannot pick the same name."""
    for candidate in _imported_candidates(filename, extension):
        try:
            fd = os.open(images_path / candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate
    token = _unique_token()
    (images_path / token).touch(exist_ok=False)
    return token


def reserve_drive_path(images_path: Path, image_type: str, extension: str) -> str:
    """Exclusive-create variant of ``new_default_drive_path``."""
    for i in range(MAX_NAME_ATTEMPTS):
        name = f"{image_type}-{i}.{extension}"
        try:
            fd = os.open(images_path / name, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            continue
        os.close(fd)
        return name
    token = _unique_token()
    (images_path / token).touch(exist_ok=False)
    return token
