"""Settings loading and environment variable parsing for vmkeeper."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmkeeper.constants import (
    DEFAULT_SETTINGS_PATH,
    PREFERENCES_PATH,
    STATE_DIR,
    STORAGE_DIR,
    TRUTHY,
)
from vmkeeper.exceptions import ManagerError
from vmkeeper.models import LibrarySettings
from vmkeeper.utils import get_env, get_env_bool, log, parse_int_env

_SETTINGS_KEYS = {
    "storage_dir",
    "state_dir",
    "qemu_img",
    "download_retries",
    "download_timeout",
    "convert_on_import",
}


def load_settings_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML settings file. A missing file yields no overrides."""
    if config_path is None:
        config_path = DEFAULT_SETTINGS_PATH
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid settings file {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Settings file {config_path} must contain a mapping")
    unknown = sorted(set(data) - _SETTINGS_KEYS)
    if unknown:
        log("WARN", f"Ignoring unknown settings in {config_path}: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in _SETTINGS_KEYS}


def _file_int(file_settings: Dict[str, Any], key: str, default: int) -> str:
    value = file_settings.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ManagerError(f"Setting '{key}' must be an integer (got {value!r})")
    return str(value)


def parse_env(config_path: Optional[Path] = None) -> LibrarySettings:
    file_settings = load_settings_file(config_path)

    storage_raw = get_env("VMKEEPER_STORAGE_DIR") or file_settings.get("storage_dir")
    storage_dir = Path(storage_raw).expanduser() if storage_raw else STORAGE_DIR

    state_raw = get_env("VMKEEPER_STATE_DIR") or file_settings.get("state_dir")
    if state_raw:
        state_dir = Path(state_raw).expanduser()
        preferences_path = state_dir / PREFERENCES_PATH.name
    else:
        state_dir = STATE_DIR
        preferences_path = PREFERENCES_PATH

    qemu_img = (get_env("QEMU_IMG") or file_settings.get("qemu_img") or "qemu-img").strip()
    if not qemu_img:
        raise ManagerError("QEMU_IMG must not be empty")

    download_retries = parse_int_env(
        "DOWNLOAD_RETRIES", _file_int(file_settings, "download_retries", 3), min_val=1, max_val=10
    )
    download_timeout = parse_int_env(
        "DOWNLOAD_TIMEOUT", _file_int(file_settings, "download_timeout", 60), min_val=1
    )

    file_convert = file_settings.get("convert_on_import", False)
    if isinstance(file_convert, str):
        file_convert = file_convert.lower() in TRUTHY
    convert_on_import = get_env_bool("CONVERT_ON_IMPORT", bool(file_convert))

    return LibrarySettings(
        storage_dir=storage_dir,
        state_dir=state_dir,
        preferences_path=preferences_path,
        qemu_img=qemu_img,
        download_retries=download_retries,
        download_timeout=download_timeout,
        convert_on_import=convert_on_import,
    )
