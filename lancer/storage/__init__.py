"""Lancer storage.

Local job ledger backed by SQLite.
"""

from .schema import SCHEMA_VERSION
from .sqlite import SQLiteLedger, default_db_path

__all__ = ["SQLiteLedger", "SCHEMA_VERSION", "default_db_path"]
