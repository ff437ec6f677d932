"""vmctl package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "credentials",
    "exceptions",
    "images",
    "models",
    "monitor",
    "network",
    "qemu",
    "registry",
    "retry",
    "runtime",
    "ssh",
    "state",
    "status",
    "tmux",
    "utils",
    "vm",
]
