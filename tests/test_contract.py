"""
Contract relay mirroring over httpx (MockTransport, no network)
"""

import httpx
import pytest

from chronovault.vault import contract as contract_mod
from chronovault.vault.contract import (
    ContractRelayConfig,
    HttpContractMirror,
    NullContractMirror,
    create_contract_mirror,
)
from chronovault.vault.ledger import make_event
from chronovault.vault.machine import derive_verdict
from chronovault.vault.policy import VaultPolicy
from chronovault.vault.types import ActivityKind, LivenessProfile

from conftest import OWNER, START_MS


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("chronovault.vault.retry.time.sleep", lambda s: None)


@pytest.fixture
def verdict():
    return derive_verdict(
        OWNER,
        events=[make_event(ActivityKind.RIDDLE_VERIFICATION, START_MS)],
        heirs=[],
        profile=LivenessProfile(),
        policy=VaultPolicy(),
        now=START_MS,
    )


def test_publish_posts_verdict(verdict):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    mirror = HttpContractMirror(
        ContractRelayConfig(base_url="http://relay.local/", token="s3cret"),
        transport=httpx.MockTransport(handler),
    )
    mirror.publish(verdict)

    assert len(seen) == 1
    req = seen[0]
    assert req.method == "POST"
    assert str(req.url) == f"http://relay.local/verdicts/{OWNER}"
    assert req.headers["Authorization"] == "Bearer s3cret"
    assert b'"state":"Active"' in req.content.replace(b" ", b"")


def test_server_errors_are_retried_then_dropped(verdict, caplog):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502)

    mirror = HttpContractMirror(
        ContractRelayConfig(base_url="http://relay.local", attempts=3),
        transport=httpx.MockTransport(handler),
    )
    mirror.publish(verdict)
    assert calls["n"] == 3
    assert "not mirrored" in caplog.text


def test_recovers_after_transient_error(verdict):
    responses = iter([httpx.Response(503), httpx.Response(200, json={})])
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return next(responses)

    mirror = HttpContractMirror(ContractRelayConfig(base_url="http://relay.local"), transport=httpx.MockTransport(handler))
    mirror.publish(verdict)
    assert calls["n"] == 2


def test_client_errors_are_not_retried(verdict):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(422, text="bad verdict")

    mirror = HttpContractMirror(ContractRelayConfig(base_url="http://relay.local"), transport=httpx.MockTransport(handler))
    mirror.publish(verdict)
    assert calls["n"] == 1


def test_null_mirror_keeps_recent(verdict):
    mirror = NullContractMirror(keep=2)
    for _ in range(3):
        mirror.publish(verdict)
    assert len(mirror.published) == 2


def test_factory_uses_env(monkeypatch):
    monkeypatch.delenv("CHRONOVAULT_CONTRACT_RELAY_URL", raising=False)
    assert isinstance(create_contract_mirror(), NullContractMirror)

    monkeypatch.setenv("CHRONOVAULT_CONTRACT_RELAY_URL", "http://relay.local")
    mirror = create_contract_mirror()
    assert isinstance(mirror, HttpContractMirror)
    assert mirror.config.base_url == "http://relay.local"
    assert contract_mod.load_relay_config().token == ""
