from __future__ import annotations

from typing import Any, Dict, Optional


class VaultError(Exception):
    """Base for every error the vault core reports to callers."""

    code = "VaultError"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    def to_detail(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class ValidationError(VaultError):
    """Malformed input. Raised before any mutation."""

    code = "InvalidInput"


class NotFoundError(VaultError):
    code = "NotFound"


class ConflictError(VaultError):
    """The request contradicts stored state. Nothing was written."""

    code = "Conflict"


class PersistenceFailure(VaultError):
    """The store did not confirm a write (or a read failed). Safe to retry."""

    code = "PersistenceFailure"
    retryable = True


class PartialWriteError(PersistenceFailure):
    """
    The primary write was durable but the activity append was not.

    The caller should retry appending `pending_event` only; repeating the
    whole operation would hit a conflict (e.g. DuplicateHeir).
    """

    code = "PartialWrite"

    def __init__(self, message: str, *, committed: str, pending_event: Any, result: Any = None) -> None:
        super().__init__(message)
        self.committed = committed
        self.pending_event = pending_event
        # What the operation would have returned; set where it cannot be re-read
        self.result = result

    def to_detail(self) -> Dict[str, Any]:
        d = super().to_detail()
        d["committed"] = self.committed
        d["pending_event"] = self.pending_event.to_dict() if self.pending_event is not None else None
        return d
