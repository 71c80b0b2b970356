"""Persistence capability for audit records and runs.

Key Components:
    - AuditStore / RunStore: Protocols the core depends on
    - InMemoryStore: Volatile implementation
    - FileStore: Atomic JSON-file implementation that survives restarts
"""

from canonflow.persistence.base import AuditStore, RunStore, build_snapshot
from canonflow.persistence.file import FileStore
from canonflow.persistence.memory import InMemoryStore

__all__ = ["AuditStore", "FileStore", "InMemoryStore", "RunStore", "build_snapshot"]
