"""vmhost package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "crypto",
    "exceptions",
    "executor",
    "models",
    "network",
    "paths",
    "spdk",
    "storage",
    "systemd",
    "utils",
    "vm",
]
