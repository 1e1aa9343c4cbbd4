"""Route modules for the LabGuard API."""

from . import backup

__all__ = [
    "backup",
]
