"""State helpers for deployctl."""
from __future__ import annotations

from .environment import (
    EnvironmentStore,
    FileEnvironmentStore,
    MemoryEnvironmentStore,
)
from .ledger import LedgerRefresh, ReleaseLedger, sort_tags

__all__ = [
    "EnvironmentStore",
    "FileEnvironmentStore",
    "LedgerRefresh",
    "MemoryEnvironmentStore",
    "ReleaseLedger",
    "sort_tags",
]
