"""
vault/policy.py

Timing and quorum policy.

Defaults come from the environment; any owner may persist an override under
the `policy` field. Nothing here is hardcoded into the ledger or the machine.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional

from .errors import ValidationError

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def _int_env(name: str, default: int) -> int:
    try:
        raw = (os.getenv(name) or "").strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


def _is_truthy(v: Optional[str]) -> bool:
    return bool(v and str(v).strip().lower() in {"1", "true", "yes", "on"})


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _is_truthy(raw)


@dataclass(frozen=True)
class VaultPolicy:
    """
    check_interval_ms       -> cadence of routine liveness checks (display countdown)
    inactivity_threshold_ms -> silence after which the vault is Overdue
    urgent_threshold_ms     -> window before a deadline that counts as urgent
    quorum_threshold        -> approved heirs needed for release
    clamp_quorum            -> lower the threshold to the heir count when fewer heirs exist
    """

    check_interval_ms: int = DAY_MS
    inactivity_threshold_ms: int = 90 * DAY_MS
    urgent_threshold_ms: int = HOUR_MS
    quorum_threshold: int = 3
    clamp_quorum: bool = True

    def validate(self) -> "VaultPolicy":
        if self.check_interval_ms <= 0 or self.inactivity_threshold_ms <= 0 or self.urgent_threshold_ms <= 0:
            raise ValidationError("Policy durations must be positive", code="InvalidPolicy")
        if self.urgent_threshold_ms >= self.inactivity_threshold_ms:
            raise ValidationError(
                "urgent_threshold_ms must be shorter than inactivity_threshold_ms",
                code="InvalidPolicy",
            )
        if self.quorum_threshold < 1:
            raise ValidationError("quorum_threshold must be at least 1", code="InvalidPolicy")
        return self

    def effective_quorum(self, heir_count: int) -> int:
        """
        Approvals required for release with `heir_count` registered heirs.

        With clamping, an owner with fewer heirs than the nominal threshold
        needs every heir; the result never drops below 1.
        """
        if self.clamp_quorum and heir_count > 0:
            return max(1, min(self.quorum_threshold, heir_count))
        return self.quorum_threshold

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "VaultPolicy":
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in asdict(self)}
        try:
            merged = replace(
                self,
                **{k: (bool(v) if k == "clamp_quorum" else int(v)) for k, v in known.items()},
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid policy value: {exc}", code="InvalidPolicy") from exc
        return merged.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def policy_from_env() -> VaultPolicy:
    base = VaultPolicy()
    return VaultPolicy(
        check_interval_ms=_int_env("CHRONOVAULT_CHECK_INTERVAL_MS", base.check_interval_ms),
        inactivity_threshold_ms=_int_env("CHRONOVAULT_INACTIVITY_THRESHOLD_MS", base.inactivity_threshold_ms),
        urgent_threshold_ms=_int_env("CHRONOVAULT_URGENT_THRESHOLD_MS", base.urgent_threshold_ms),
        quorum_threshold=_int_env("CHRONOVAULT_QUORUM_THRESHOLD", base.quorum_threshold),
        clamp_quorum=_bool_env("CHRONOVAULT_CLAMP_QUORUM", base.clamp_quorum),
    ).validate()
