"""Access to the live SQLite store."""

from .connection import Database, check_snapshot_structure

__all__ = [
    "Database",
    "check_snapshot_structure",
]
