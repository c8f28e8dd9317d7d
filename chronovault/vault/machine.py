"""
vault/machine.py

Inheritance state machine.

States:
- Active    -> owner inside the inactivity window
- Warning   -> inside urgent_threshold_ms of the inactivity deadline
- Overdue   -> inactivity threshold exceeded; heirs may claim
- Released  -> Overdue with the heir quorum met, or a release proof
               (QuorumRelease / HeirRiddleRelease) recorded this cycle

The state is a pure function of (activity events, heirs, liveness profile,
policy, now). Nothing here is cached or written. A quorum release is Released
as soon as it is derivable; `release_eligible` stays true until the service
latches it by recording QuorumRelease, after which later owner activity
cannot undo it.

Released is terminal until a CycleReopened event starts a new cycle.
"""

from __future__ import annotations

from typing import List, Optional

from .heirs import HeirQuorumManager, quorum_met_for
from .ledger import ActivityLedger, current_cycle, next_check_from
from .liveness import LivenessChallengeEngine
from .policy import VaultPolicy
from .types import (
    RELEASE_KINDS,
    ActivityEvent,
    ActivityKind,
    Custody,
    HeirRecord,
    LivenessProfile,
    Verdict,
    VaultState,
)


def release_event(events: List[ActivityEvent]) -> Optional[ActivityEvent]:
    for ev in current_cycle(events):
        if ev.kind in RELEASE_KINDS and ev.completed:
            return ev
    return None


def derive_verdict(
    owner: str,
    *,
    events: List[ActivityEvent],
    heirs: List[HeirRecord],
    profile: LivenessProfile,
    policy: VaultPolicy,
    now: int,
) -> Verdict:
    inactivity = next_check_from(
        events,
        now=now,
        interval_ms=policy.inactivity_threshold_ms,
        urgent_threshold_ms=policy.urgent_threshold_ms,
    )
    released = release_event(events)
    quorum = quorum_met_for(heirs, policy)
    # derivable but not yet recorded
    pending_quorum = released is None and inactivity.overdue and quorum

    if released is not None or pending_quorum:
        state = VaultState.RELEASED
    elif inactivity.overdue:
        state = VaultState.OVERDUE
    elif inactivity.urgent:
        state = VaultState.WARNING
    else:
        state = VaultState.ACTIVE

    routine = next_check_from(
        events,
        now=now,
        interval_ms=policy.check_interval_ms,
        urgent_threshold_ms=policy.urgent_threshold_ms,
    )

    return Verdict(
        owner=owner,
        state=state,
        funds_locked=profile.funds_locked or state == VaultState.RELEASED,
        custody=Custody.HEIRS if state == VaultState.RELEASED else Custody.OWNER,
        release_eligible=pending_quorum,
        released_by=released.kind if released is not None else (ActivityKind.QUORUM_RELEASE if pending_quorum else None),
        approved_heirs=sum(1 for h in heirs if h.approved),
        effective_quorum=policy.effective_quorum(len(heirs)),
        next_check=inactivity,
        evaluated_at=int(now),
        meta={
            "heir_count": len(heirs),
            "has_reference": profile.has_reference,
            "routine_check": routine.to_dict(),
            "released_at": released.timestamp if released is not None else None,
            "latched": released is not None,
        },
    )


class InheritanceStateMachine:
    """Reads the three components and derives a verdict. Holds no state of its own."""

    def __init__(
        self,
        ledger: ActivityLedger,
        heirs: HeirQuorumManager,
        liveness: LivenessChallengeEngine,
    ) -> None:
        self._ledger = ledger
        self._heirs = heirs
        self._liveness = liveness

    def current_state(self, owner: str, policy: VaultPolicy, now: int) -> Verdict:
        return derive_verdict(
            owner,
            events=self._ledger.events(owner),
            heirs=self._heirs.heirs(owner),
            profile=self._liveness.get_profile(owner),
            policy=policy,
            now=now,
        )