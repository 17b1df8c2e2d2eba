"""vmkeeper package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "downloads",
    "drives",
    "exceptions",
    "library",
    "machine",
    "models",
    "naming",
    "preferences",
    "qemu_image",
    "registry",
    "tasks",
    "utils",
]
