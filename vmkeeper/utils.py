"""Utility functions for vmkeeper."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional

try:
    import requests
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from vmkeeper.constants import (
    _LOG_VERBOSE,
    DOWNLOAD_CHUNK_SIZE,
    TRUTHY,
    USER_AGENT,
)
from vmkeeper.exceptions import DownloadCancelledError, DownloadError, IOFailureError, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def same_path(a: Optional[Path], b: Optional[Path]) -> bool:
    """Compare two paths after resolving symlinks and relative segments."""
    if a is None or b is None:
        return False
    return Path(a).resolve() == Path(b).resolve()


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and rename it into place."""
    ensure_directory(path.parent)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(path)


def remove_path(path: Path) -> bool:
    """Best-effort delete of a file or directory tree. Returns True if something was removed."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        else:
            return False
    except OSError as exc:
        log("WARN", f"Failed to remove {path}: {exc}")
        return False
    return True


def copy_tree(source: Path, destination: Path) -> None:
    """Copy a bundle directory (or single file) to ``destination``."""
    try:
        if source.is_dir():
            shutil.copytree(source, destination, symlinks=True)
        else:
            shutil.copy2(source, destination)
    except OSError as exc:
        raise IOFailureError(f"Failed to copy {source} to {destination}: {exc}") from exc


def file_size(path: Path) -> int:
    """Allocated size of a file in bytes, 0 if it cannot be read."""
    try:
        st = path.stat()
    except OSError:
        return 0
    blocks = getattr(st, "st_blocks", None)
    if blocks is not None:
        return blocks * 512
    return st.st_size


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            total += file_size(Path(root) / name)
    return total


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    cancel_event: Optional[threading.Event] = None,
    timeout: int = 60,
) -> Path:
    """Stream ``url`` into ``destination`` through a temp file in the same directory."""
    log("INFO", f"{label}: {url}")
    try:
        response = requests.get(url, stream=True, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "?"
        raise DownloadError(f"HTTP error downloading {url}: {status}") from exc
    except requests.RequestException as exc:
        raise DownloadError(f"Failed to download {url}: {exc}") from exc

    downloaded = 0
    start_time = time.time()
    ensure_directory(destination.parent)
    with response, tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".download-") as tmp:
        tmp_path = Path(tmp.name)
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if cancel_event is not None and cancel_event.is_set():
                    raise DownloadCancelledError(f"Download cancelled: {url}")
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)
        except requests.RequestException as exc:
            tmp_path.unlink(missing_ok=True)
            raise DownloadError(f"Failed to download {url}: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
    return destination


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    cancel_event: Optional[threading.Event] = None,
    timeout: int = 60,
    delay: float = 2.0,
) -> Path:
    """Retry ``download_file`` on transport failures. Cancellation is never retried."""
    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            return download_file(url, destination, label=label, cancel_event=cancel_event, timeout=timeout)
        except DownloadCancelledError:
            raise
        except DownloadError as exc:
            if attempt == attempts:
                raise
            log("WARN", f"Download attempt {attempt}/{attempts} failed: {exc}; retrying")
            if cancel_event is not None and cancel_event.wait(delay * attempt):
                raise DownloadCancelledError(f"Download cancelled: {url}") from exc
            if cancel_event is None:
                time.sleep(delay * attempt)
    raise DownloadError(f"Failed to download {url}")  # pragma: no cover
