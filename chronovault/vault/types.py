"""
vault/types.py

Data model for the vault core.

Design goals:
- Immutable records (frozen dataclasses)
- JSON-safe round trip through the owner store (to_dict / from_dict)
- No I/O, no framework dependencies

This module is safe to import anywhere.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ActivityKind(str, Enum):
    """
    Kinds of ledger events.

    The first five are the historical event types. The rest were added for
    biometric checks, audited release proofs and cycle reopening.
    """

    VOICE_VERIFICATION = "VoiceVerification"
    RIDDLE_VERIFICATION = "RiddleVerification"
    RIDDLE_CREATION = "RiddleCreation"
    HEIR_ADDITION = "HeirAddition"
    HEIR_APPROVAL = "HeirApproval"
    LIVENESS_VERIFICATION = "LivenessVerification"
    QUORUM_RELEASE = "QuorumRelease"
    HEIR_RIDDLE_RELEASE = "HeirRiddleRelease"
    CYCLE_REOPENED = "CycleReopened"


# Owner-originated events. Only these reset the inactivity timer.
PROOF_OF_LIFE_KINDS = frozenset(
    {
        ActivityKind.VOICE_VERIFICATION,
        ActivityKind.RIDDLE_VERIFICATION,
        ActivityKind.LIVENESS_VERIFICATION,
        ActivityKind.RIDDLE_CREATION,
        ActivityKind.HEIR_ADDITION,
    }
)

RELEASE_KINDS = frozenset({ActivityKind.QUORUM_RELEASE, ActivityKind.HEIR_RIDDLE_RELEASE})

# Kinds a caller may append directly (retrying the failed half of a partial write).
APPENDABLE_KINDS = frozenset(
    {
        ActivityKind.HEIR_ADDITION,
        ActivityKind.HEIR_APPROVAL,
        ActivityKind.RIDDLE_CREATION,
    }
)


class VaultState(str, Enum):
    ACTIVE = "Active"
    WARNING = "Warning"
    OVERDUE = "Overdue"
    RELEASED = "Released"


class Custody(str, Enum):
    OWNER = "owner"
    HEIRS = "heirs"


@dataclass(frozen=True)
class ActivityEvent:
    """
    One ledger entry. Never modified after it is written.

    `seq` is the insertion index within the owner's ledger and breaks
    timestamp ties. `flagged` marks an event whose timestamp is earlier than
    the latest event recorded before it (clock skew).
    """

    timestamp: int  # ms since epoch
    kind: ActivityKind
    completed: bool = True
    id: str = ""
    description: str = ""
    seq: int = 0
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ActivityEvent":
        return cls(
            timestamp=int(raw["timestamp"]),
            kind=ActivityKind(raw["kind"]),
            completed=bool(raw.get("completed", True)),
            id=str(raw.get("id") or ""),
            description=str(raw.get("description") or ""),
            seq=int(raw.get("seq") or 0),
            flagged=bool(raw.get("flagged", False)),
        )


@dataclass(frozen=True)
class Riddle:
    """
    The owner's active riddle.

    Only the salted commitment of the answer is kept. `public()` is the
    shape every read path returns.
    """

    id: str
    question: str
    answer_commitment: str
    salt: str
    created_at: int

    def public(self) -> Dict[str, Any]:
        return {"id": self.id, "question": self.question, "created_at": self.created_at}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Riddle":
        return cls(
            id=str(raw["id"]),
            question=str(raw["question"]),
            answer_commitment=str(raw["answer_commitment"]),
            salt=str(raw["salt"]),
            created_at=int(raw.get("created_at") or 0),
        )


@dataclass(frozen=True)
class IssuedRiddle:
    """Creation-time result. The only place a plaintext answer leaves the engine."""

    riddle: Riddle
    answer: Optional[str] = None


@dataclass(frozen=True)
class HeirRecord:
    address: str
    share: int  # percent, 1..100
    approved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HeirRecord":
        return cls(
            address=str(raw["address"]).lower(),
            share=int(raw["share"]),
            approved=bool(raw.get("approved", False)),
        )


@dataclass(frozen=True)
class LivenessProfile:
    """
    Enrolled reference fingerprint and the owner's fund lock.

    `reference_digest` is a SHA-256 of the enrolled tag; None means nothing
    is enrolled.
    """

    reference_digest: Optional[str] = None
    funds_locked: bool = True

    @property
    def has_reference(self) -> bool:
        return bool(self.reference_digest)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LivenessProfile":
        return cls(
            reference_digest=raw.get("reference_digest") or None,
            funds_locked=bool(raw.get("funds_locked", True)),
        )


@dataclass(frozen=True)
class NextCheck:
    """
    Countdown toward a deadline measured from the last proof of life.

    remaining_ms may be negative once the deadline has passed.
    """

    remaining_ms: int
    overdue: bool
    urgent: bool
    last_activity_at: Optional[int] = None
    deadline_at: Optional[int] = None
    interval_ms: int = 0

    @property
    def days(self) -> int:
        return max(0, self.remaining_ms) // 86_400_000

    @property
    def hours(self) -> int:
        return (max(0, self.remaining_ms) % 86_400_000) // 3_600_000

    @property
    def minutes(self) -> int:
        return (max(0, self.remaining_ms) % 3_600_000) // 60_000

    @property
    def progress(self) -> float:
        """Percent of the interval already elapsed, capped at 100."""
        if self.last_activity_at is None or self.interval_ms <= 0:
            return 100.0
        elapsed = self.interval_ms - self.remaining_ms
        return min(100.0, max(0.0, elapsed * 100.0 / self.interval_ms))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remaining_ms": self.remaining_ms,
            "overdue": self.overdue,
            "urgent": self.urgent,
            "last_activity_at": self.last_activity_at,
            "deadline_at": self.deadline_at,
            "days": self.days,
            "hours": self.hours,
            "minutes": self.minutes,
            "progress": round(self.progress, 2),
        }


@dataclass(frozen=True)
class Verdict:
    """
    Recommended fund-lock decision for one owner at one instant.

    This is what callers receive and what the contract relay mirrors.
    """

    owner: str
    state: VaultState
    funds_locked: bool
    custody: Custody
    release_eligible: bool
    released_by: Optional[ActivityKind]
    approved_heirs: int
    effective_quorum: int
    next_check: NextCheck
    evaluated_at: int
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "state": self.state.value,
            "funds_locked": self.funds_locked,
            "custody": self.custody.value,
            "release_eligible": self.release_eligible,
            "released_by": self.released_by.value if self.released_by else None,
            "approved_heirs": self.approved_heirs,
            "effective_quorum": self.effective_quorum,
            "next_check": self.next_check.to_dict(),
            "evaluated_at": self.evaluated_at,
            "meta": dict(self.meta),
        }
