import pytest

from chronovault.vault.errors import ValidationError
from chronovault.vault.policy import DAY_MS, HOUR_MS, VaultPolicy, policy_from_env


def test_defaults():
    p = VaultPolicy()
    assert p.check_interval_ms == DAY_MS
    assert p.inactivity_threshold_ms == 90 * DAY_MS
    assert p.urgent_threshold_ms == HOUR_MS
    assert p.quorum_threshold == 3
    assert p.clamp_quorum is True


@pytest.mark.parametrize(
    "heirs,clamp,expected",
    [(0, True, 3), (1, True, 1), (2, True, 2), (5, True, 3), (2, False, 3)],
)
def test_effective_quorum(heirs, clamp, expected):
    assert VaultPolicy(quorum_threshold=3, clamp_quorum=clamp).effective_quorum(heirs) == expected


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CHRONOVAULT_INACTIVITY_THRESHOLD_MS", str(7 * DAY_MS))
    monkeypatch.setenv("CHRONOVAULT_QUORUM_THRESHOLD", "2")
    monkeypatch.setenv("CHRONOVAULT_CLAMP_QUORUM", "off")
    monkeypatch.setenv("CHRONOVAULT_CHECK_INTERVAL_MS", "not-a-number")
    p = policy_from_env()
    assert p.inactivity_threshold_ms == 7 * DAY_MS
    assert p.quorum_threshold == 2
    assert p.clamp_quorum is False
    assert p.check_interval_ms == DAY_MS


def test_invalid_env_policy_is_rejected(monkeypatch):
    monkeypatch.setenv("CHRONOVAULT_QUORUM_THRESHOLD", "0")
    with pytest.raises(ValidationError):
        policy_from_env()


def test_merged_ignores_unknown_keys():
    p = VaultPolicy().merged({"quorum_threshold": 1, "color": "blue"})
    assert p.quorum_threshold == 1
    assert VaultPolicy().merged(None) == VaultPolicy()


def test_merged_rejects_bad_values():
    with pytest.raises(ValidationError):
        VaultPolicy().merged({"check_interval_ms": "soon"})
    with pytest.raises(ValidationError):
        VaultPolicy().merged({"check_interval_ms": 0})
