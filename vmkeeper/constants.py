"""Global constants and path configuration for vmkeeper."""

from __future__ import annotations

import os
from pathlib import Path

# DATA_DIR provides a single root for all persistent data.
# When set, machine bundles and preferences both live under it.
_DATA_DIR = os.environ.get("VMKEEPER_DATA_DIR")
if _DATA_DIR:
    DATA_DIR = Path(_DATA_DIR)
else:
    DATA_DIR = Path.home() / ".local" / "share" / "vmkeeper"
STORAGE_DIR = DATA_DIR / "machines"
STATE_DIR = DATA_DIR / "state"
PREFERENCES_PATH = STATE_DIR / "preferences.yaml"
DEFAULT_SETTINGS_PATH = Path(os.environ.get("VMKEEPER_CONFIG", str(DATA_DIR / "settings.yaml")))

BUNDLE_EXTENSION = ".vm"
CONFIG_FILENAME = "config.yaml"
IMAGES_DIRNAME = "Images"
INBOX_DIRNAME = "Inbox"
STAGING_PREFIX = "vmkeeper-staging-"

# Preferences key holding the ordered machine list
LIST_PREFERENCES_KEY = "VMList"

BYTES_PER_MIB = 1_048_576
MAX_NAME_ATTEMPTS = 1000
DEFAULT_VM_NAME = "Virtual Machine"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

BACKENDS = {"qemu", "apple"}

DISK_IMAGE_TYPES = ("none", "disk", "cd", "bios", "kernel", "initrd", "dtb")
DRIVE_INTERFACES = ("none", "ide", "scsi", "sd", "mtd", "floppy", "pflash", "virtio", "nvme", "usb")

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "ppc64le": "ppc64",
    "ppc64el": "ppc64",
    "powerpc64": "ppc64",
    "riscv": "riscv64",
}

# Default interface per architecture, keyed by image type
DEFAULT_DRIVE_INTERFACES = {
    "x86_64": {"disk": "ide", "cd": "ide"},
    "i386": {"disk": "ide", "cd": "ide"},
    "aarch64": {"disk": "virtio", "cd": "usb"},
    "arm": {"disk": "virtio", "cd": "usb"},
    "ppc64": {"disk": "scsi", "cd": "scsi"},
    "riscv64": {"disk": "virtio", "cd": "virtio"},
    "s390x": {"disk": "virtio", "cd": "virtio"},
}

CD_IMAGE_EXTENSIONS = {".iso", ".cdr"}

DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
USER_AGENT = "vmkeeper/1.0"
