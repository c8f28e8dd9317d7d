"""Vault package: proof-of-life and inheritance release core.

Contract:
- Canonical persistence in SQLite (CHRONOVAULT_DB_PATH), one row per (owner, field).
- Every entity is scoped to exactly one owner address (lowercase 0x + 40 hex).
- Vault state is derived, never stored. It is recomputed from the activity
  ledger, the heir registry and the liveness profile on every read.
- Read-modify-write sequences are serialized per owner (see service.py).
- Riddle answers and liveness tags are stored as digests only.
- This core never moves funds. It publishes a verdict for the contract relay.
"""
from __future__ import annotations

from .errors import (
    ConflictError,
    NotFoundError,
    PartialWriteError,
    PersistenceFailure,
    ValidationError,
    VaultError,
)
from .policy import VaultPolicy
from .service import VaultService
from .types import (
    ActivityEvent,
    ActivityKind,
    HeirRecord,
    LivenessProfile,
    NextCheck,
    Riddle,
    Verdict,
    VaultState,
)

__all__ = [
    "ActivityEvent",
    "ActivityKind",
    "ConflictError",
    "HeirRecord",
    "LivenessProfile",
    "NextCheck",
    "NotFoundError",
    "PartialWriteError",
    "PersistenceFailure",
    "Riddle",
    "ValidationError",
    "VaultError",
    "VaultPolicy",
    "VaultService",
    "VaultState",
    "Verdict",
]
