"""
vault/ledger.py

Append-only activity ledger per owner, plus the countdown math derived from it.

Rules:
- Events are never rewritten or reordered in storage.
- A timestamp earlier than the latest recorded one is accepted and flagged.
- Display order is (timestamp, seq), so skewed events sort where they claim to be.
- No recorded proof of life means the next check is already overdue.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any, Iterable, List, Optional

from .db import FIELD_ACTIVITIES, OwnerStore
from .errors import PersistenceFailure
from .types import PROOF_OF_LIFE_KINDS, ActivityEvent, ActivityKind, NextCheck

logger = logging.getLogger(__name__)

# A reopened cycle restarts the inactivity timer as well.
TIMER_KINDS = PROOF_OF_LIFE_KINDS | {ActivityKind.CYCLE_REOPENED}


def make_event(kind: ActivityKind, timestamp: int, description: str = "", *, completed: bool = True) -> ActivityEvent:
    return ActivityEvent(
        timestamp=int(timestamp),
        kind=kind,
        completed=completed,
        id=f"activity-{uuid.uuid4().hex[:12]}",
        description=description,
    )


def display_order(events: Iterable[ActivityEvent]) -> List[ActivityEvent]:
    return sorted(events, key=lambda e: (e.timestamp, e.seq))


def current_cycle(events: List[ActivityEvent]) -> List[ActivityEvent]:
    """Events recorded after the most recent CycleReopened (insertion order)."""
    start = 0
    for idx, ev in enumerate(events):
        if ev.kind == ActivityKind.CYCLE_REOPENED:
            start = idx + 1
    return events[start:]


def last_activity_at(events: Iterable[ActivityEvent]) -> Optional[int]:
    stamps = [e.timestamp for e in events if e.completed and e.kind in TIMER_KINDS]
    return max(stamps) if stamps else None


def next_check_from(
    events: Iterable[ActivityEvent],
    *,
    now: int,
    interval_ms: int,
    urgent_threshold_ms: int,
) -> NextCheck:
    """
    Countdown to (last proof of life + interval).

    - remaining <= 0                        -> overdue
    - 0 < remaining <= urgent_threshold_ms  -> urgent
    - no proof of life at all               -> overdue immediately
    """
    last = last_activity_at(events)
    if last is None:
        return NextCheck(
            remaining_ms=0,
            overdue=True,
            urgent=False,
            last_activity_at=None,
            deadline_at=None,
            interval_ms=int(interval_ms),
        )

    deadline = last + int(interval_ms)
    remaining = deadline - int(now)
    overdue = remaining <= 0
    urgent = (not overdue) and remaining <= int(urgent_threshold_ms)
    return NextCheck(
        remaining_ms=remaining,
        overdue=overdue,
        urgent=urgent,
        last_activity_at=last,
        deadline_at=deadline,
        interval_ms=int(interval_ms),
    )


class ActivityLedger:
    def __init__(self, store: OwnerStore) -> None:
        self._store = store

    def _raw(self, owner: str) -> Optional[List[Any]]:
        raw = self._store.get(owner, FIELD_ACTIVITIES)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Activities for %s are not a list", owner)
            return None
        return raw

    def _parse(self, owner: str, raw: List[Any]) -> List[ActivityEvent]:
        out: List[ActivityEvent] = []
        for item in raw:
            try:
                out.append(ActivityEvent.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed activity for %s: %s", owner, exc)
        return out

    def events(self, owner: str) -> List[ActivityEvent]:
        """All events in insertion order. Malformed stored entries are skipped, not removed."""
        return self._parse(owner, self._raw(owner) or [])

    def history(self, owner: str) -> List[ActivityEvent]:
        return display_order(self.events(owner))

    def record(self, owner: str, event: ActivityEvent) -> ActivityEvent:
        """
        Append one event and return it as stored (seq and flag assigned).

        Raises PersistenceFailure if the append was not durably written; the
        ledger is then unchanged.
        """
        raw = self._raw(owner)
        if raw is None:
            raise PersistenceFailure("Stored activity log is not a list; refusing to overwrite it")
        existing = self._parse(owner, raw)
        latest = max((e.timestamp for e in existing), default=None)
        stored = replace(
            event,
            id=event.id or f"activity-{uuid.uuid4().hex[:12]}",
            seq=len(raw),
            flagged=latest is not None and event.timestamp < latest,
        )
        if stored.flagged:
            logger.warning(
                "Out-of-order activity for %s: %s at %d precedes latest %d",
                owner,
                stored.kind.value,
                stored.timestamp,
                latest,
            )
        # unreadable entries stay in place
        payload = list(raw) + [stored.to_dict()]
        try:
            self._store.put(owner, FIELD_ACTIVITIES, payload)
        except PersistenceFailure:
            logger.error("Activity append failed for %s (%s)", owner, stored.kind.value)
            raise
        return stored

    def time_since_last_activity(self, owner: str, now: int) -> Optional[int]:
        """Milliseconds since the latest proof of life, or None if there is none."""
        last = last_activity_at(self.events(owner))
        return None if last is None else int(now) - last

    def time_until_next_check(self, owner: str, now: int, interval_ms: int, urgent_threshold_ms: int) -> NextCheck:
        return next_check_from(
            self.events(owner),
            now=now,
            interval_ms=interval_ms,
            urgent_threshold_ms=urgent_threshold_ms,
        )
