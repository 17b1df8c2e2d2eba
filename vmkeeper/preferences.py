"""Durable key/value preferences for vmkeeper."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmkeeper.exceptions import IOFailureError
from vmkeeper.utils import atomic_write_text, log


class Preferences:
    """YAML mapping stored in a single file, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                loaded = yaml.safe_load(self.path.read_text())
            except (OSError, yaml.YAMLError) as exc:
                log("WARN", f"Ignoring unreadable preferences {self.path}: {exc}")
                loaded = None
            if isinstance(loaded, dict):
                data = loaded
            elif loaded is not None:
                log("WARN", f"Ignoring malformed preferences {self.path}")
        self._data = data
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        try:
            atomic_write_text(self.path, yaml.safe_dump(data, sort_keys=False))
        except OSError as exc:
            raise IOFailureError(f"Failed to write preferences {self.path}: {exc}") from exc
