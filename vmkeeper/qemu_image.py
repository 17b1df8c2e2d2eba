"""qemu-img backed image operations for vmkeeper."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from pathlib import Path
from typing import List

from vmkeeper.constants import BYTES_PER_MIB
from vmkeeper.exceptions import ConversionError
from vmkeeper.utils import log, run


class QemuImage:
    """Async facade over the ``qemu-img`` tool.

    Every call runs the blocking subprocess in a worker thread and returns a
    plain value, so callers on the event loop can apply results after ``await``.
    """

    def __init__(self, binary: str = "qemu-img") -> None:
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _invoke(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        try:
            return run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise ConversionError(f"{self.binary} not found") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise ConversionError(f"{self.binary} {args[0]} failed: {detail}") from exc

    def _convert(self, source: Path, destination: Path, compress: bool) -> Path:
        args = ["convert", "-O", "qcow2"]
        if compress:
            args.append("-c")
        args.extend([str(source), str(destination)])
        log("INFO", f"Converting {source.name} to {destination.name}")
        try:
            self._invoke(args)
        except ConversionError:
            destination.unlink(missing_ok=True)
            raise
        return destination

    def _resize(self, image: Path, size_bytes: int) -> None:
        log("INFO", f"Resizing {image.name} to {size_bytes // BYTES_PER_MIB} MiB")
        self._invoke(["resize", str(image), str(size_bytes)])

    def _size(self, image: Path) -> int:
        result = self._invoke(["info", "--output=json", str(image)])
        try:
            return int(json.loads(result.stdout).get("virtual-size", 0))
        except (ValueError, TypeError) as exc:
            raise ConversionError(f"Unreadable qemu-img info output for {image}") from exc

    def _create(self, path: Path, size_mib: int) -> Path:
        log("INFO", f"Creating qcow2 image {path.name} ({size_mib} MiB)")
        try:
            self._invoke(["create", "-f", "qcow2", str(path), f"{size_mib}M"])
        except ConversionError:
            path.unlink(missing_ok=True)
            raise
        return path

    async def convert(self, source: Path, destination: Path, compress: bool = False) -> Path:
        """Convert ``source`` into a qcow2 image at ``destination``.

        A partially written destination is removed before the error propagates.
        """
        return await asyncio.to_thread(self._convert, source, destination, compress)

    async def resize(self, image: Path, size_bytes: int) -> None:
        await asyncio.to_thread(self._resize, image, size_bytes)

    async def size(self, image: Path) -> int:
        return await asyncio.to_thread(self._size, image)

    async def create(self, path: Path, size_mib: int) -> Path:
        return await asyncio.to_thread(self._create, path, size_mib)
