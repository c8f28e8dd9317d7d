"""
vault/heirs.py

Heir registry and approval bookkeeping for one owner at a time.

Contract:
- sum(share) over an owner's heirs never exceeds 100.
- Addresses are unique per owner (case-insensitive) and never the owner itself.
- New heirs start unapproved; approving twice is a no-op.
- Every mutation appends its activity event (HeirAddition / HeirApproval).
  If the heir list was saved but the event was not, PartialWriteError
  is raised so the caller can retry the append alone.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, List, Tuple

from .address import canonical_address, short_address
from .db import FIELD_HEIRS, OwnerStore
from .errors import ConflictError, NotFoundError, PartialWriteError, PersistenceFailure, ValidationError
from .ledger import ActivityLedger, make_event
from .policy import VaultPolicy
from .types import ActivityEvent, ActivityKind, HeirRecord

logger = logging.getLogger(__name__)

MAX_TOTAL_SHARE = 100


def _validate_share(share: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(share, bool) or not isinstance(share, int):
        raise ValidationError("share must be an integer percentage", code="InvalidShare")
    if share < 1 or share > 100:
        raise ValidationError("share must be between 1 and 100", code="InvalidShare")
    return share


def quorum_met_for(heirs: List[HeirRecord], policy: VaultPolicy) -> bool:
    if not heirs:
        return False
    approved = sum(1 for h in heirs if h.approved)
    return approved >= policy.effective_quorum(len(heirs))


class HeirQuorumManager:
    def __init__(self, store: OwnerStore, ledger: ActivityLedger) -> None:
        self._store = store
        self._ledger = ledger

    def heirs(self, owner: str) -> List[HeirRecord]:
        """
        Registered heirs. An unreadable record raises PersistenceFailure; it is
        never skipped, since shares and the quorum count every entry.
        """
        raw = self._store.get(owner, FIELD_HEIRS) or []
        if not isinstance(raw, list):
            logger.error("Heirs for %s are not a list", owner)
            raise PersistenceFailure("Stored heir list is unreadable")
        try:
            return [HeirRecord.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Malformed heir record for %s: %s", owner, exc)
            raise PersistenceFailure(f"Stored heir record is unreadable: {exc}") from exc

    def _save(self, owner: str, heirs: List[HeirRecord]) -> None:
        self._store.put(owner, FIELD_HEIRS, [h.to_dict() for h in heirs])

    def _append_or_partial(self, owner: str, event: ActivityEvent, committed: str, result: Any = None) -> ActivityEvent:
        try:
            return self._ledger.record(owner, event)
        except PersistenceFailure as exc:
            raise PartialWriteError(
                f"{committed} saved but activity append failed: {exc}",
                committed=committed,
                pending_event=event,
                result=result,
            ) from exc

    def add_heir(self, owner: str, heir_address: str, share: Any, *, now: int) -> HeirRecord:
        address = canonical_address(heir_address, label="heir address")
        if address == owner:
            raise ValidationError("An owner cannot be their own heir", code="InvalidAddress")
        pct = _validate_share(share)

        heirs = self.heirs(owner)
        if any(h.address == address for h in heirs):
            raise ConflictError(f"Heir {address} is already registered", code="DuplicateHeir")

        total = sum(h.share for h in heirs) + pct
        if total > MAX_TOTAL_SHARE:
            raise ConflictError(
                f"Cumulative share would be {total}%, above {MAX_TOTAL_SHARE}%",
                code="InvalidShare",
            )

        record = HeirRecord(address=address, share=pct, approved=False)
        self._save(owner, heirs + [record])

        self._append_or_partial(
            owner,
            make_event(
                ActivityKind.HEIR_ADDITION,
                now,
                f"Added heir: {short_address(address)} with {pct}% share",
            ),
            committed="heirs",
            result=record,
        )
        return record

    def approve(self, owner: str, heir_address: str, *, now: int) -> Tuple[HeirRecord, bool]:
        """
        Mark an heir approved. Returns (record, changed).

        An already-approved heir returns changed=False and records nothing.
        """
        address = canonical_address(heir_address, label="heir address")
        heirs = self.heirs(owner)
        idx = next((i for i, h in enumerate(heirs) if h.address == address), None)
        if idx is None:
            raise NotFoundError(f"Heir {address} not found", code="HeirNotFound")

        current = heirs[idx]
        if current.approved:
            return current, False

        updated = replace(current, approved=True)
        heirs[idx] = updated
        self._save(owner, heirs)

        self._append_or_partial(
            owner,
            make_event(ActivityKind.HEIR_APPROVAL, now, f"Approved heir: {short_address(address)}"),
            committed="heirs",
            result=updated,
        )
        return updated, True

    def reset_approvals(self, owner: str) -> List[HeirRecord]:
        """Clear every approval (new inheritance cycle). Records no activity."""
        heirs = self.heirs(owner)
        if not any(h.approved for h in heirs):
            return heirs
        cleared = [replace(h, approved=False) for h in heirs]
        self._save(owner, cleared)
        return cleared

    def is_heir(self, owner: str, address: str) -> bool:
        return any(h.address == address for h in self.heirs(owner))

    def quorum_met(self, owner: str, policy: VaultPolicy) -> bool:
        return quorum_met_for(self.heirs(owner), policy)
