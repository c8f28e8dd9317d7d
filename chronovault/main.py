from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from chronovault import __version__
from chronovault.vault.contract import create_contract_mirror
from chronovault.vault.db import SqliteOwnerStore
from chronovault.vault.errors import PersistenceFailure
from chronovault.vault.policy import policy_from_env
from chronovault.vault.router import register_error_handlers, router as vault_router
from chronovault.vault.service import VaultService

# ----------------------------
# Environment & configuration
# ----------------------------

DB_PATH = os.getenv("CHRONOVAULT_DB_PATH", "./data/chronovault.db")
API_KEY = os.getenv("CHRONOVAULT_API_KEY")
LOG_LEVEL = os.getenv("CHRONOVAULT_LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("chronovault")


# ----------------------------
# API key dependency
# ----------------------------


def require_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)) -> None:
    """
    Simple header-based API key check. If no key is configured,
    this becomes a no-op (open access).
    """
    expected = getattr(request.app.state, "api_key", None)
    if not expected:
        return

    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ----------------------------
# Health
# ----------------------------

health_router = APIRouter(prefix="/health", tags=["health"])


@health_router.get("/ping")
async def ping() -> Dict[str, Any]:
    return {"status": "ok", "message": "ChronoVault is alive"}


@health_router.get("/database")
def database_health(request: Request) -> Dict[str, Any]:
    service: VaultService = request.app.state.vault_service
    start = time.time()
    try:
        service.store.get("0x" + "0" * 40, "policy")
    except PersistenceFailure as exc:
        return {
            "status": "error",
            "message": f"Error accessing store: {exc}",
            "duration_seconds": time.time() - start,
        }

    return {
        "status": "ok",
        "message": "Store accessible",
        "duration_seconds": time.time() - start,
    }


# ----------------------------
# FastAPI app setup
# ----------------------------


def build_service() -> VaultService:
    return VaultService(
        SqliteOwnerStore(DB_PATH),
        default_policy=policy_from_env(),
        mirror=create_contract_mirror(),
    )


def create_app(service: Optional[VaultService] = None, *, api_key: Optional[str] = None) -> FastAPI:
    app = FastAPI(
        title="ChronoVault",
        version=__version__,
    )

    # Allow CORS from anywhere for now. Adjust in production if needed.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.vault_service = service or build_service()
    app.state.api_key = api_key if api_key is not None else API_KEY

    register_error_handlers(app)

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {"name": "chronovault", "version": __version__}

    app.include_router(health_router)
    app.include_router(vault_router, dependencies=[Depends(require_api_key)])
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "chronovault.main:app",
        host=os.getenv("CHRONOVAULT_HOST", "0.0.0.0"),
        port=int(os.getenv("CHRONOVAULT_PORT", "8000")),
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
