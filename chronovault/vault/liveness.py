"""
vault/liveness.py

Proof-of-life challenges: riddles and biometric-style reference tags.

Hard constraints:
- Riddle answers are stored only as salted SHA-256 commitments.
- Read paths never return the answer or its commitment.
- Verification fails closed and returns False for wrong answers, wrong
  riddle ids, or no active riddle. Those are outcomes, not errors.
- Comparisons use hmac.compare_digest.
- Empty answers or tags raise ValidationError (InvalidInput) before any read or write.

Tag matching is a pluggable LivenessVerifier. The default compares digests
for equality; it is a stand-in, not real biometric verification.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import replace
from typing import Optional, Protocol, runtime_checkable

from .db import FIELD_LIVENESS, FIELD_RIDDLE, OwnerStore
from .errors import ConflictError, NotFoundError, ValidationError
from .types import IssuedRiddle, LivenessProfile, Riddle

logger = logging.getLogger(__name__)

# Words for generated riddles: "What's the SHA-256 of '<word>'?"
RIDDLE_WORDS = (
    "Vitalik",
    "Satoshi",
    "Ada",
    "Hal",
    "Nakamoto",
    "Merkle",
    "Lovelace",
    "Turing",
)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def commit_answer(answer: str, salt: str) -> str:
    return "sha256:" + _sha256_hex(f"{salt}:{answer}")


def tag_digest(tag: str) -> str:
    return "sha256:" + _sha256_hex(tag)


def _require_text(value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", code="InvalidInput")
    return value


@runtime_checkable
class LivenessVerifier(Protocol):
    @property
    def name(self) -> str:
        ...

    def matches(self, reference_digest: str, presented_tag: str) -> bool:
        """Compare a presented tag against the enrolled reference. Must not do I/O."""
        ...


class TagEqualityVerifier:
    """Simulated face match: the presented tag must equal the enrolled one."""

    @property
    def name(self) -> str:
        return "tag.equality"

    def matches(self, reference_digest: str, presented_tag: str) -> bool:
        return hmac.compare_digest(reference_digest, tag_digest(presented_tag))


class LivenessChallengeEngine:
    def __init__(self, store: OwnerStore, verifier: Optional[LivenessVerifier] = None) -> None:
        self._store = store
        self._verifier = verifier or TagEqualityVerifier()

    # ----------------------------
    # Riddles
    # ----------------------------

    def get_riddle(self, owner: str) -> Optional[Riddle]:
        raw = self._store.get(owner, FIELD_RIDDLE)
        if not raw:
            return None
        try:
            return Riddle.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            # Pre-commitment records (plaintext answer) are not trusted
            logger.warning("Discarding unreadable riddle record for %s", owner)
            return None

    def issue_riddle(
        self,
        owner: str,
        question: Optional[str] = None,
        answer: Optional[str] = None,
        *,
        now: int,
    ) -> IssuedRiddle:
        """
        Create a new active riddle, superseding any previous one.

        With no question/answer a riddle is generated and its answer is
        returned once, here. An owner-authored riddle returns no answer.
        """
        generated = question is None and answer is None
        if generated:
            word = secrets.choice(RIDDLE_WORDS)
            question = f"What's the SHA-256 of '{word}'?"
            answer = "0x" + _sha256_hex(word)
        else:
            question = _require_text(question, "question").strip()
            answer = _require_text(answer, "answer")

        salt = secrets.token_hex(16)
        riddle = Riddle(
            id=str(uuid.uuid4()),
            question=question,
            answer_commitment=commit_answer(answer, salt),
            salt=salt,
            created_at=int(now),
        )
        self._store.put(owner, FIELD_RIDDLE, riddle.to_dict())
        return IssuedRiddle(riddle=riddle, answer=answer if generated else None)

    def verify_riddle(self, owner: str, riddle_id: str, answer: str) -> bool:
        riddle_id = _require_text(riddle_id, "riddle id")
        answer = _require_text(answer, "answer")

        riddle = self.get_riddle(owner)
        if riddle is None:
            return False
        # Evaluate both comparisons before deciding
        id_ok = hmac.compare_digest(riddle.id.encode("utf-8"), riddle_id.encode("utf-8"))
        answer_ok = hmac.compare_digest(riddle.answer_commitment, commit_answer(answer, riddle.salt))
        return id_ok and answer_ok

    def consume_riddle(self, owner: str, riddle_id: str) -> None:
        riddle = self.get_riddle(owner)
        if riddle is not None and riddle.id == riddle_id:
            self._store.delete(owner, FIELD_RIDDLE)

    # ----------------------------
    # Reference tags
    # ----------------------------

    def get_profile(self, owner: str) -> LivenessProfile:
        raw = self._store.get(owner, FIELD_LIVENESS)
        if not raw:
            return LivenessProfile()
        return LivenessProfile.from_dict(raw)

    def _save_profile(self, owner: str, profile: LivenessProfile) -> LivenessProfile:
        self._store.put(owner, FIELD_LIVENESS, profile.to_dict())
        return profile

    def set_reference(self, owner: str, reference_tag: str) -> LivenessProfile:
        """
        Enroll a reference tag. Enrollment always re-locks funds.

        An existing reference must be removed first (riddle-gated, see service).
        """
        reference_tag = _require_text(reference_tag, "reference tag")
        profile = self.get_profile(owner)
        if profile.has_reference:
            raise ConflictError("A reference tag is already enrolled", code="ReferenceAlreadySet")
        return self._save_profile(owner, LivenessProfile(reference_digest=tag_digest(reference_tag), funds_locked=True))

    def clear_reference(self, owner: str) -> LivenessProfile:
        profile = self.get_profile(owner)
        return self._save_profile(owner, replace(profile, reference_digest=None))

    def verify_liveness(self, owner: str, presented_tag: str) -> bool:
        presented_tag = _require_text(presented_tag, "presented tag")
        profile = self.get_profile(owner)
        if not profile.has_reference:
            raise NotFoundError("No reference tag enrolled", code="NoReference")
        return bool(self._verifier.matches(str(profile.reference_digest), presented_tag))

    def lock_funds(self, owner: str) -> LivenessProfile:
        profile = self.get_profile(owner)
        if profile.funds_locked:
            return profile
        return self._save_profile(owner, replace(profile, funds_locked=True))

    def unlock_funds(self, owner: str) -> LivenessProfile:
        profile = self.get_profile(owner)
        if not profile.funds_locked:
            return profile
        return self._save_profile(owner, replace(profile, funds_locked=False))
