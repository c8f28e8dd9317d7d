"""
State derivation: Active / Warning / Overdue / Released
"""

from chronovault.vault.ledger import make_event
from chronovault.vault.machine import derive_verdict, release_event
from chronovault.vault.policy import DAY_MS, HOUR_MS, VaultPolicy
from chronovault.vault.types import ActivityKind, Custody, HeirRecord, LivenessProfile, VaultState

from conftest import HEIR_1, HEIR_2, OWNER, START_MS

POLICY = VaultPolicy(
    check_interval_ms=DAY_MS,
    inactivity_threshold_ms=10 * DAY_MS,
    urgent_threshold_ms=HOUR_MS,
    quorum_threshold=2,
)


def _verdict(events, now, heirs=(), profile=None, policy=POLICY):
    return derive_verdict(
        OWNER,
        events=list(events),
        heirs=list(heirs),
        profile=profile or LivenessProfile(),
        policy=policy,
        now=now,
    )


def test_no_activity_is_overdue():
    v = _verdict([], START_MS)
    assert v.state == VaultState.OVERDUE
    assert v.release_eligible is False
    assert v.custody == Custody.OWNER


def test_active_warning_overdue_progression():
    events = [make_event(ActivityKind.RIDDLE_VERIFICATION, START_MS)]
    assert _verdict(events, START_MS + DAY_MS).state == VaultState.ACTIVE
    assert _verdict(events, START_MS + 10 * DAY_MS - HOUR_MS).state == VaultState.WARNING
    assert _verdict(events, START_MS + 10 * DAY_MS).state == VaultState.OVERDUE


def test_overdue_with_quorum_is_released_before_latch():
    events = [make_event(ActivityKind.HEIR_ADDITION, START_MS)]
    heirs = [HeirRecord(HEIR_1, 50, True), HeirRecord(HEIR_2, 50, True)]

    active = _verdict(events, START_MS + DAY_MS, heirs)
    assert active.state == VaultState.ACTIVE
    assert active.release_eligible is False

    due = _verdict(events, START_MS + 11 * DAY_MS, heirs)
    assert due.state == VaultState.RELEASED
    assert due.released_by == ActivityKind.QUORUM_RELEASE
    assert due.custody == Custody.HEIRS
    # still waiting for QuorumRelease to be recorded
    assert due.release_eligible is True
    assert due.meta["latched"] is False
    assert due.approved_heirs == 2
    assert due.effective_quorum == 2


def test_overdue_without_quorum_stays_overdue():
    events = [make_event(ActivityKind.HEIR_ADDITION, START_MS)]
    heirs = [HeirRecord(HEIR_1, 50, True), HeirRecord(HEIR_2, 50, False)]
    v = _verdict(events, START_MS + 11 * DAY_MS, heirs)
    assert v.state == VaultState.OVERDUE
    assert v.release_eligible is False
    assert v.released_by is None


def test_release_event_latches_released():
    events = [
        make_event(ActivityKind.HEIR_ADDITION, START_MS),
        make_event(ActivityKind.QUORUM_RELEASE, START_MS + 11 * DAY_MS),
        # owner activity after release does not undo it
        make_event(ActivityKind.VOICE_VERIFICATION, START_MS + 12 * DAY_MS),
    ]
    v = _verdict(events, START_MS + 12 * DAY_MS, profile=LivenessProfile(funds_locked=False))
    assert v.state == VaultState.RELEASED
    assert v.released_by == ActivityKind.QUORUM_RELEASE
    assert v.custody == Custody.HEIRS
    assert v.funds_locked is True
    assert v.release_eligible is False
    assert v.meta["released_at"] == START_MS + 11 * DAY_MS


def test_reopened_cycle_clears_release():
    events = [
        make_event(ActivityKind.QUORUM_RELEASE, START_MS),
        make_event(ActivityKind.CYCLE_REOPENED, START_MS + DAY_MS),
    ]
    assert release_event(events) is None
    v = _verdict(events, START_MS + 2 * DAY_MS)
    assert v.state == VaultState.ACTIVE


def test_funds_lock_follows_profile():
    events = [make_event(ActivityKind.LIVENESS_VERIFICATION, START_MS)]
    assert _verdict(events, START_MS, profile=LivenessProfile("sha256:x", funds_locked=True)).funds_locked is True
    assert _verdict(events, START_MS, profile=LivenessProfile("sha256:x", funds_locked=False)).funds_locked is False


def test_routine_check_uses_check_interval():
    events = [make_event(ActivityKind.RIDDLE_VERIFICATION, START_MS)]
    v = _verdict(events, START_MS + 2 * DAY_MS)
    assert v.state == VaultState.ACTIVE
    assert v.meta["routine_check"]["overdue"] is True
    assert v.next_check.overdue is False
    assert v.to_dict()["state"] == "Active"
