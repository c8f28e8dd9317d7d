"""
vault/service.py

Coordination layer over the vault components.

Rules:
- Every read-modify-write for an owner runs under that owner's lock.
  Different owners never contend.
- Pure reads (current_state, next_check, listings) take no lock.
- Durable first: state is reported changed only after the store confirmed it.
- Only successful verify_riddle / verify_liveness unlock funds.
- Release is latched by recording QuorumRelease or HeirRiddleRelease, once per cycle.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .address import canonical_address, short_address
from .contract import ContractMirror, NullContractMirror
from .db import FIELD_POLICY, OwnerStore
from .errors import ConflictError, NotFoundError, PartialWriteError, PersistenceFailure, ValidationError
from .heirs import HeirQuorumManager
from .ledger import ActivityLedger, make_event
from .liveness import LivenessChallengeEngine, LivenessVerifier
from .machine import InheritanceStateMachine
from .policy import VaultPolicy
from .types import (
    APPENDABLE_KINDS,
    ActivityEvent,
    ActivityKind,
    HeirRecord,
    IssuedRiddle,
    LivenessProfile,
    NextCheck,
    Riddle,
    Verdict,
    VaultState,
)

logger = logging.getLogger(__name__)

# Unreplayed partial-write events kept for record_event; oldest dropped first
MAX_PENDING_EVENTS = 1024


def now_ms() -> int:
    return int(time.time() * 1000)


class OwnerLocks:
    """
    Registry of one lock per owner address.

    Entries are weak: a lock lives only while some caller holds a reference,
    so the registry is bounded by the owners currently in flight.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, owner: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(owner)
            if lock is None:
                lock = threading.Lock()
                self._locks[owner] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        lock = self.get(owner)
        with lock:
            yield


class VaultService:
    def __init__(
        self,
        store: OwnerStore,
        *,
        default_policy: Optional[VaultPolicy] = None,
        clock: Optional[Callable[[], int]] = None,
        verifier: Optional[LivenessVerifier] = None,
        mirror: Optional[ContractMirror] = None,
    ) -> None:
        self.store = store
        self.default_policy = (default_policy or VaultPolicy()).validate()
        self.clock = clock or now_ms
        self.mirror: ContractMirror = mirror or NullContractMirror()

        self.ledger = ActivityLedger(store)
        self.heirs = HeirQuorumManager(store, self.ledger)
        self.liveness = LivenessChallengeEngine(store, verifier)
        self.machine = InheritanceStateMachine(self.ledger, self.heirs, self.liveness)
        self._locks = OwnerLocks()
        self._pending: "OrderedDict[str, Tuple[str, ActivityEvent]]" = OrderedDict()
        self._pending_guard = threading.Lock()

    # ----------------------------
    # Helpers
    # ----------------------------

    @staticmethod
    def _owner(owner: str) -> str:
        return canonical_address(owner, label="owner address")

    def _record(
        self,
        owner: str,
        event: ActivityEvent,
        *,
        committed: Optional[str] = None,
        result: Any = None,
    ) -> ActivityEvent:
        """
        Append an event. When another write already landed for this operation
        (`committed`), a failed append becomes a PartialWriteError carrying `result`.
        """
        try:
            return self.ledger.record(owner, event)
        except PersistenceFailure as exc:
            if committed is None:
                raise
            self._remember_pending(owner, event)
            raise PartialWriteError(
                f"{committed} saved but activity append failed: {exc}",
                committed=committed,
                pending_event=event,
                result=result,
            ) from exc

    def _remember_pending(self, owner: str, event: ActivityEvent) -> None:
        with self._pending_guard:
            self._pending[event.id] = (owner, event)
            while len(self._pending) > MAX_PENDING_EVENTS:
                self._pending.popitem(last=False)

    def _log_transition(self, before: Verdict, after: Verdict) -> None:
        if before.state != after.state:
            logger.info("Vault %s: %s -> %s", after.owner, before.state.value, after.state.value)

    # ----------------------------
    # Policy
    # ----------------------------

    def policy_for(self, owner: str) -> VaultPolicy:
        owner = self._owner(owner)
        overrides = self.store.get(owner, FIELD_POLICY)
        if not isinstance(overrides, dict):
            return self.default_policy
        return self.default_policy.merged(overrides)

    def get_policy(self, owner: str) -> VaultPolicy:
        return self.policy_for(owner)

    def set_policy(self, owner: str, overrides: Dict[str, Any]) -> VaultPolicy:
        owner = self._owner(owner)
        policy = self.default_policy.merged(overrides)
        with self._locks.hold(owner):
            self.store.put(owner, FIELD_POLICY, policy.to_dict())
        return policy

    # ----------------------------
    # Reads (no lock)
    # ----------------------------

    def current_state(self, owner: str) -> Verdict:
        owner = self._owner(owner)
        return self.machine.current_state(owner, self.policy_for(owner), self.clock())

    def list_activity(self, owner: str) -> List[ActivityEvent]:
        return self.ledger.history(self._owner(owner))

    def next_check(self, owner: str) -> NextCheck:
        owner = self._owner(owner)
        policy = self.policy_for(owner)
        return self.ledger.time_until_next_check(owner, self.clock(), policy.check_interval_ms, policy.urgent_threshold_ms)

    def list_heirs(self, owner: str) -> List[HeirRecord]:
        return self.heirs.heirs(self._owner(owner))

    def get_riddle(self, owner: str) -> Riddle:
        riddle = self.liveness.get_riddle(self._owner(owner))
        if riddle is None:
            raise NotFoundError("No active riddle", code="RiddleNotFound")
        return riddle

    def get_liveness(self, owner: str) -> LivenessProfile:
        return self.liveness.get_profile(self._owner(owner))

    # ----------------------------
    # Activity
    # ----------------------------

    def append_activity(self, owner: str, kind: ActivityKind, description: str = "") -> ActivityEvent:
        """Direct append, limited to the kinds whose append can fail after a committed write."""
        owner = self._owner(owner)
        if kind not in APPENDABLE_KINDS:
            raise ValidationError(f"Activity kind {kind.value} cannot be appended directly", code="InvalidInput")
        with self._locks.hold(owner):
            self._latch_quorum(owner)
            return self.ledger.record(owner, make_event(kind, self.clock(), description))

    def record_event(self, owner: str, event: ActivityEvent) -> ActivityEvent:
        """
        Append the pending event of a PartialWriteError raised by this service.

        Any other event is rejected: replay cannot forge a proof of life.
        """
        owner = self._owner(owner)
        with self._pending_guard:
            pending = self._pending.get(event.id)
        if pending is None or pending != (owner, event):
            raise NotFoundError("No matching pending activity to replay", code="PendingEventNotFound")
        with self._locks.hold(owner):
            self._latch_quorum(owner)
            stored = self.ledger.record(owner, event)
        with self._pending_guard:
            self._pending.pop(event.id, None)
        return stored

    def record_voice_verification(self, owner: str, verified: bool) -> Verdict:
        """Webhook from the external voice verifier. Resets the timer; does not unlock funds."""
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            if verified:
                self._record(owner, make_event(ActivityKind.VOICE_VERIFICATION, self.clock(), "Voice verification passed"))
            after = self.current_state(owner)
        self._log_transition(before, after)
        return after

    # ----------------------------
    # Heirs
    # ----------------------------

    def add_heir(self, owner: str, heir_address: str, share: Any) -> Tuple[HeirRecord, Verdict]:
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            if before.state == VaultState.RELEASED:
                raise ConflictError("Vault is released; heirs are frozen for this cycle", code="AlreadyReleased")
            try:
                record = self.heirs.add_heir(owner, heir_address, share, now=self.clock())
            except PartialWriteError as exc:
                self._remember_pending(owner, exc.pending_event)
                exc.result = (exc.result, None)
                raise
            after = self.current_state(owner)
        self._log_transition(before, after)
        return record, after

    def approve_heir(self, owner: str, heir_address: str) -> Tuple[HeirRecord, bool, Verdict]:
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            try:
                record, changed = self.heirs.approve(owner, heir_address, now=self.clock())
            except PartialWriteError as exc:
                self._remember_pending(owner, exc.pending_event)
                exc.result = (exc.result, True, None)
                raise
            after = self._latch_quorum(owner)
        self._log_transition(before, after)
        return record, changed, after

    def _latch_quorum(self, owner: str) -> Verdict:
        """
        Record QuorumRelease for a derived but unrecorded quorum release.

        Runs before any owner activity is accepted, so a proof of life cannot
        erase a release that was already due. Caller holds the owner lock.
        """
        verdict = self.current_state(owner)
        if not verdict.release_eligible:
            return verdict
        self._record(
            owner,
            make_event(
                ActivityKind.QUORUM_RELEASE,
                self.clock(),
                f"Release authorized by {verdict.approved_heirs} of {verdict.meta.get('heir_count')} heirs",
            ),
        )
        logger.warning("Vault %s released by heir quorum", owner)
        return self.current_state(owner)

    def evaluate(self, owner: str) -> Verdict:
        """Recompute the verdict and latch a quorum release if one is due."""
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self.current_state(owner)
            after = self._latch_quorum(owner)
        self._log_transition(before, after)
        return after

    # ----------------------------
    # Riddles
    # ----------------------------

    def issue_riddle(self, owner: str, question: Optional[str] = None, answer: Optional[str] = None) -> IssuedRiddle:
        owner = self._owner(owner)
        with self._locks.hold(owner):
            self._latch_quorum(owner)
            issued = self.liveness.issue_riddle(owner, question, answer, now=self.clock())
            self._record(
                owner,
                make_event(ActivityKind.RIDDLE_CREATION, self.clock(), f"Created riddle: {issued.riddle.question}"),
                committed="riddle",
                result=issued,
            )
        return issued

    def generate_riddle(self, owner: str) -> IssuedRiddle:
        """Generated riddle; the answer is returned here and nowhere else."""
        return self.issue_riddle(owner)

    def verify_riddle(self, owner: str, riddle_id: str, answer: str) -> Tuple[bool, Verdict]:
        """Owner proof of life. Success unlocks funds and resets the inactivity timer."""
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            if not self.liveness.verify_riddle(owner, riddle_id, answer):
                return False, before
            self.liveness.unlock_funds(owner)
            riddle = self.liveness.get_riddle(owner)
            self._record(
                owner,
                make_event(
                    ActivityKind.RIDDLE_VERIFICATION,
                    self.clock(),
                    f"Verified riddle: {riddle.question if riddle else riddle_id}",
                ),
                committed="liveness",
                result=(True, None),
            )
            after = self.current_state(owner)
        self._log_transition(before, after)
        return True, after

    def claim_with_riddle(self, owner: str, heir_address: str, riddle_id: str, answer: str) -> Tuple[bool, Verdict]:
        """
        Heir-side release proof: answer the owner's riddle while the vault is Overdue.

        Success records HeirRiddleRelease and consumes the riddle.
        """
        owner = self._owner(owner)
        heir = canonical_address(heir_address, label="heir address")
        with self._locks.hold(owner):
            if not self.heirs.is_heir(owner, heir):
                raise NotFoundError(f"Heir {heir} not found", code="HeirNotFound")
            before = self._latch_quorum(owner)
            if before.state == VaultState.RELEASED:
                raise ConflictError("Vault is already released", code="AlreadyReleased")
            if before.state != VaultState.OVERDUE:
                raise ConflictError("Vault is not overdue; heirs cannot claim yet", code="NotOverdue")
            if not self.liveness.verify_riddle(owner, riddle_id, answer):
                return False, before

            self._record(
                owner,
                make_event(
                    ActivityKind.HEIR_RIDDLE_RELEASE,
                    self.clock(),
                    f"Release proven by heir {short_address(heir)} via riddle",
                ),
            )
            try:
                self.liveness.consume_riddle(owner, riddle_id)
            except PersistenceFailure as exc:
                # Release is already latched; a leftover riddle cannot reopen it
                logger.error("Riddle for %s not consumed after release: %s", owner, exc)
            after = self.current_state(owner)
        logger.warning("Vault %s released by heir riddle claim", owner)
        self._log_transition(before, after)
        return True, after

    # ----------------------------
    # Reference tags
    # ----------------------------

    def set_reference(self, owner: str, reference_tag: str) -> LivenessProfile:
        owner = self._owner(owner)
        with self._locks.hold(owner):
            return self.liveness.set_reference(owner, reference_tag)

    def remove_reference(self, owner: str, riddle_id: str, answer: str) -> bool:
        """Riddle-gated removal. Clears the enrolled tag; leaves the fund lock as it is."""
        owner = self._owner(owner)
        with self._locks.hold(owner):
            if not self.liveness.verify_riddle(owner, riddle_id, answer):
                return False
            self.liveness.clear_reference(owner)
        return True

    def verify_liveness(self, owner: str, presented_tag: str) -> Tuple[bool, Verdict]:
        """
        Owner proof of life by tag match.

        A failed check changes nothing: funds already unlocked stay unlocked.
        """
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            if not self.liveness.verify_liveness(owner, presented_tag):
                return False, before
            self.liveness.unlock_funds(owner)
            self._record(
                owner,
                make_event(ActivityKind.LIVENESS_VERIFICATION, self.clock(), "Liveness check passed"),
                committed="liveness",
                result=(True, None),
            )
            after = self.current_state(owner)
        self._log_transition(before, after)
        return True, after

    # ----------------------------
    # Cycle
    # ----------------------------

    def reopen_cycle(self, owner: str) -> Verdict:
        """
        Start a new inheritance cycle after a release.

        Invoked by the contract collaborator once the owner has re-enrolled
        on-chain. Heir approvals from the closed cycle are cleared and funds are
        locked again until the owner passes a fresh riddle or liveness check.
        """
        owner = self._owner(owner)
        with self._locks.hold(owner):
            before = self._latch_quorum(owner)
            if before.state != VaultState.RELEASED:
                raise ConflictError("Only a released vault can be reopened", code="NotReleased")
            self.liveness.lock_funds(owner)
            self.heirs.reset_approvals(owner)
            self._record(
                owner,
                make_event(ActivityKind.CYCLE_REOPENED, self.clock(), "Owner re-enrolled; new inheritance cycle"),
                committed="heirs",
            )
            after = self.current_state(owner)
        self._log_transition(before, after)
        return after
