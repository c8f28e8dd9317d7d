"""
vault/contract.py

Boundary to the on-chain contract, which is the system of record for fund
transfer. This core never moves funds; it only publishes its verdict to a
relay that submits it to the contract.

Configuration:
- CHRONOVAULT_CONTRACT_RELAY_URL   (unset -> verdicts are not mirrored)
- CHRONOVAULT_CONTRACT_RELAY_TOKEN (optional bearer token)
"""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Protocol, runtime_checkable

import httpx

from .retry import call_with_retries
from .types import Verdict

logger = logging.getLogger(__name__)


class ContractRelayError(Exception):
    pass


def _env(name: str) -> str:
    return (os.getenv(name, "") or "").strip()


@dataclass(frozen=True)
class ContractRelayConfig:
    base_url: str
    token: str = ""
    timeout: float = 10.0
    attempts: int = 3


def load_relay_config() -> Optional[ContractRelayConfig]:
    base_url = _env("CHRONOVAULT_CONTRACT_RELAY_URL")
    if not base_url:
        return None
    return ContractRelayConfig(base_url=base_url, token=_env("CHRONOVAULT_CONTRACT_RELAY_TOKEN"))


@runtime_checkable
class ContractMirror(Protocol):
    def publish(self, verdict: Verdict) -> None:
        ...


class NullContractMirror:
    """Used when no relay is configured. Keeps the most recent verdicts for inspection."""

    def __init__(self, keep: int = 100) -> None:
        self.published: Deque[Verdict] = deque(maxlen=keep)

    def publish(self, verdict: Verdict) -> None:
        self.published.append(verdict)


class HttpContractMirror:
    """POSTs verdicts to {base_url}/verdicts/{owner}."""

    def __init__(self, config: ContractRelayConfig, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.config = config
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _post(self, verdict: Verdict) -> Any:
        url = f"{self.config.base_url.rstrip('/')}/verdicts/{verdict.owner}"
        with httpx.Client(timeout=self.config.timeout, transport=self._transport) as client:
            try:
                resp = client.post(url, headers=self._headers(), json=verdict.to_dict())
            except httpx.RequestError as exc:
                raise ContractRelayError(f"Request error talking to contract relay: {exc}") from exc

        if resp.status_code >= 500:
            raise ContractRelayError(f"Contract relay returned {resp.status_code}")
        if resp.status_code >= 400:
            # Client errors are not retried
            logger.warning("Contract relay rejected verdict for %s: %s %s", verdict.owner, resp.status_code, resp.text)
            return None
        return resp.json() if resp.content else None

    def publish(self, verdict: Verdict) -> None:
        try:
            call_with_retries(
                self._post,
                verdict,
                attempts=self.config.attempts,
                retry_on=(ContractRelayError,),
            )
        except ContractRelayError as exc:
            # Mirroring is best effort; the verdict is recomputable at any time
            logger.warning("Verdict for %s not mirrored: %s", verdict.owner, exc)


def create_contract_mirror() -> ContractMirror:
    cfg = load_relay_config()
    if cfg is None:
        logger.info("No contract relay configured; verdicts stay local")
        return NullContractMirror()
    return HttpContractMirror(cfg)
