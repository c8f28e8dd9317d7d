"""
ChronoVault test fixtures
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

# main.py builds its module-level app at import; keep it off the working tree
os.environ.setdefault(
    "CHRONOVAULT_DB_PATH",
    str(Path(tempfile.gettempdir()) / "chronovault-tests" / "chronovault.db"),
)

from chronovault.vault.db import MemoryOwnerStore
from chronovault.vault.errors import PersistenceFailure
from chronovault.vault.policy import DAY_MS, HOUR_MS, VaultPolicy
from chronovault.vault.service import VaultService

OWNER = "0x" + "a1" * 20
HEIR_1 = "0x" + "b2" * 20
HEIR_2 = "0x" + "c3" * 20
HEIR_3 = "0x" + "d4" * 20

START_MS = 1_704_067_200_000  # 2024-01-01 00:00:00 UTC


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FailingStore(MemoryOwnerStore):
    """MemoryOwnerStore whose put() fails a set number of times per field."""

    def __init__(self) -> None:
        super().__init__()
        self.failures: Dict[str, int] = {}
        self.put_calls = 0

    def fail_next(self, field: str, times: int = 1) -> None:
        self.failures[field] = times

    def put(self, owner: str, field: str, value: Any) -> None:
        self.put_calls += 1
        remaining = self.failures.get(field, 0)
        if remaining > 0:
            self.failures[field] = remaining - 1
            raise PersistenceFailure(f"simulated failure writing {field}")
        super().put(owner, field, value)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> VaultPolicy:
    return VaultPolicy(
        check_interval_ms=DAY_MS,
        inactivity_threshold_ms=90 * DAY_MS,
        urgent_threshold_ms=HOUR_MS,
        quorum_threshold=3,
        clamp_quorum=True,
    )


@pytest.fixture
def store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def service(store, clock, policy) -> VaultService:
    return VaultService(store, default_policy=policy, clock=clock)


@pytest.fixture
def client(service):
    from fastapi.testclient import TestClient

    from chronovault.main import create_app

    app = create_app(service, api_key="")
    with TestClient(app) as c:
        yield c


def add_three_heirs(svc: VaultService, owner: Optional[str] = None) -> None:
    owner = owner or OWNER
    svc.add_heir(owner, HEIR_1, 40)
    svc.add_heir(owner, HEIR_2, 30)
    svc.add_heir(owner, HEIR_3, 30)
