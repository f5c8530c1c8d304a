"""openbsd-up package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "context",
    "exceptions",
    "host",
    "images",
    "launch",
    "models",
    "network",
    "process",
    "registry",
    "store",
    "utils",
    "vm",
]
