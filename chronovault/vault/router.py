
"""
vault/router.py

HTTP surface for the vault core.

- Every owner/heir address is checked against 0x + 40 hex here, and again in the core.
- Request bodies are typed pydantic models; anything malformed is a 400 before the core runs.
- Mutations mirror the resulting verdict to the contract relay in the background.
- A PartialWriteError (primary write saved, activity append failed) is finished
  here: the pending event is re-appended with bounded retries.
"""

import logging
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictBool, StrictInt

from .address import ADDRESS_RE, is_address
from .errors import ConflictError, NotFoundError, PartialWriteError, PersistenceFailure, ValidationError, VaultError
from .policy import _int_env
from .retry import call_with_retries
from .service import VaultService
from .types import ActivityEvent, ActivityKind, HeirRecord, Verdict

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = ADDRESS_RE.pattern
PERSIST_RETRIES = _int_env("CHRONOVAULT_PERSIST_RETRIES", 3)

router = APIRouter(prefix="/api", tags=["vault"])


# ----------------------------
# Helpers
# ----------------------------

def _service_from_request(request: Request) -> VaultService:
    # main.py sets app.state.vault_service
    state = getattr(getattr(request, "app", None), "state", None)
    service = getattr(state, "vault_service", None) if state else None
    if service is None:
        raise HTTPException(status_code=503, detail="Vault service not initialized")
    return service


def _owner_or_400(owner: str) -> str:
    if not is_address(owner):
        raise HTTPException(status_code=400, detail={"ok": False, "error": "InvalidAddress", "message": "Invalid Ethereum address"})
    return owner.lower()


def _mirror(background: BackgroundTasks, service: VaultService, verdict: Verdict) -> None:
    background.add_task(service.mirror.publish, verdict)


def _run_mutation(service: VaultService, owner: str, fn: Callable[..., Any], *args: Any) -> Any:
    """
    Run a service mutation; on PartialWriteError retry only the missing activity append.

    If the append still fails, the original PartialWriteError propagates (503).
    """
    try:
        return fn(*args)
    except PartialWriteError as exc:
        try:
            call_with_retries(service.record_event, owner, exc.pending_event, attempts=PERSIST_RETRIES)
        except PersistenceFailure:
            raise exc
        logger.info("Recovered partial write for %s (%s)", owner, exc.committed)
        result = exc.result
        if result is None:
            return service.evaluate(owner)
        if isinstance(result, tuple) and result and result[-1] is None:
            return result[:-1] + (service.evaluate(owner),)
        return result


def _event_out(ev: ActivityEvent) -> Dict[str, Any]:
    return ev.to_dict()


def _heir_out(h: HeirRecord) -> Dict[str, Any]:
    return h.to_dict()


# ----------------------------
# Models
# ----------------------------

class ActivityAppendRequest(BaseModel):
    kind: Literal["HeirAddition", "HeirApproval", "RiddleCreation"]
    description: str = Field(default="", max_length=500)


class HeirAddRequest(BaseModel):
    heir_address: str = Field(..., pattern=ADDRESS_PATTERN, description="0x-prefixed account address")
    share: StrictInt = Field(..., ge=1, le=100, description="Percent of funds, 1..100")


class HeirApproveRequest(BaseModel):
    heir_address: str = Field(..., pattern=ADDRESS_PATTERN)


class RiddleCreateRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
    answer: str = Field(..., min_length=1, max_length=500)


class RiddleVerifyRequest(BaseModel):
    riddle_id: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)


class RiddleClaimRequest(BaseModel):
    heir_address: str = Field(..., pattern=ADDRESS_PATTERN)
    riddle_id: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)


class ReferenceSetRequest(BaseModel):
    reference_tag: str = Field(..., min_length=1, description="Opaque identity fingerprint captured at enrollment")


class LivenessVerifyRequest(BaseModel):
    presented_tag: str = Field(..., min_length=1)


class VoiceWebhookRequest(BaseModel):
    user_address: str = Field(..., pattern=ADDRESS_PATTERN)
    verified: StrictBool


class PolicyUpdateRequest(BaseModel):
    check_interval_ms: Optional[StrictInt] = Field(default=None, gt=0)
    inactivity_threshold_ms: Optional[StrictInt] = Field(default=None, gt=0)
    urgent_threshold_ms: Optional[StrictInt] = Field(default=None, gt=0)
    quorum_threshold: Optional[StrictInt] = Field(default=None, ge=1)
    clamp_quorum: Optional[StrictBool] = None


# ----------------------------
# Activity
# ----------------------------

@router.get("/activity/{owner}")
def get_activity(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    items = service.list_activity(owner)
    return {
        "items": [_event_out(e) for e in items],
        "next_check": service.next_check(owner).to_dict(),
        "meta": {"count": len(items)},
    }


@router.post("/activity/{owner}")
def append_activity(request: Request, owner: str, body: ActivityAppendRequest) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    event = service.append_activity(owner, ActivityKind(body.kind), body.description)
    return {"success": True, "event": _event_out(event)}


# ----------------------------
# Heirs
# ----------------------------

@router.get("/heirs/{owner}")
def get_heirs(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    heirs = service.list_heirs(owner)
    return {
        "items": [_heir_out(h) for h in heirs],
        "meta": {
            "count": len(heirs),
            "total_share": sum(h.share for h in heirs),
            "approved": sum(1 for h in heirs if h.approved),
        },
    }


@router.post("/heirs/{owner}")
def add_heir(request: Request, owner: str, body: HeirAddRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    record, verdict = _run_mutation(service, owner, service.add_heir, owner, body.heir_address, body.share)
    _mirror(background, service, verdict)
    return {"success": True, "heir": _heir_out(record), "verdict": verdict.to_dict()}


@router.post("/heirs/approve/{owner}")
def approve_heir(request: Request, owner: str, body: HeirApproveRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    record, changed, verdict = _run_mutation(service, owner, service.approve_heir, owner, body.heir_address)
    if changed:
        _mirror(background, service, verdict)
    return {"success": True, "changed": changed, "heir": _heir_out(record), "verdict": verdict.to_dict()}


# ----------------------------
# Riddles
# ----------------------------

@router.get("/riddle/{owner}")
def get_riddle(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    # id + question only; never the answer or its commitment
    return service.get_riddle(owner).public()


@router.post("/riddle/{owner}")
def create_riddle(request: Request, owner: str, body: RiddleCreateRequest) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    issued = _run_mutation(service, owner, service.issue_riddle, owner, body.question, body.answer)
    return {"success": True, "riddle": issued.riddle.public()}


@router.post("/riddle/generate/{owner}")
def generate_riddle(request: Request, owner: str) -> Dict[str, Any]:
    """The generated answer is returned once, to the owner, in this response only."""
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    issued = _run_mutation(service, owner, service.generate_riddle, owner)
    return {"success": True, "riddle": issued.riddle.public(), "answer": issued.answer}


@router.post("/riddle/verify/{owner}")
def verify_riddle(request: Request, owner: str, body: RiddleVerifyRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    ok, verdict = _run_mutation(service, owner, service.verify_riddle, owner, body.riddle_id, body.answer)
    if ok:
        _mirror(background, service, verdict)
    return {"success": ok, "verdict": verdict.to_dict()}


@router.post("/riddle/claim/{owner}")
def claim_with_riddle(request: Request, owner: str, body: RiddleClaimRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    ok, verdict = service.claim_with_riddle(owner, body.heir_address, body.riddle_id, body.answer)
    if ok:
        _mirror(background, service, verdict)
    return {"success": ok, "verdict": verdict.to_dict()}


# ----------------------------
# Liveness reference
# ----------------------------

@router.get("/liveness/{owner}")
def get_liveness(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    profile = service.get_liveness(owner)
    return {"has_reference": profile.has_reference, "funds_locked": profile.funds_locked}


@router.post("/liveness/reference/{owner}")
def set_reference(request: Request, owner: str, body: ReferenceSetRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    profile = service.set_reference(owner, body.reference_tag)
    _mirror(background, service, service.current_state(owner))
    return {"success": True, "has_reference": profile.has_reference, "funds_locked": profile.funds_locked}


@router.delete("/liveness/reference/{owner}")
def remove_reference(request: Request, owner: str, body: RiddleVerifyRequest) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    ok = service.remove_reference(owner, body.riddle_id, body.answer)
    return {"success": ok}


@router.post("/liveness/verify/{owner}")
def verify_liveness(request: Request, owner: str, body: LivenessVerifyRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    ok, verdict = _run_mutation(service, owner, service.verify_liveness, owner, body.presented_tag)
    if ok:
        _mirror(background, service, verdict)
    return {"success": ok, "verdict": verdict.to_dict()}


# ----------------------------
# State, policy, cycle
# ----------------------------

@router.get("/state/{owner}")
def get_state(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    return service.current_state(owner).to_dict()


@router.post("/state/evaluate/{owner}")
def evaluate_state(request: Request, owner: str, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    verdict = service.evaluate(owner)
    _mirror(background, service, verdict)
    return verdict.to_dict()


@router.get("/policy/{owner}")
def get_policy(request: Request, owner: str) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    return service.get_policy(owner).to_dict()


@router.put("/policy/{owner}")
def put_policy(request: Request, owner: str, body: PolicyUpdateRequest) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    overrides = {**service.policy_for(owner).to_dict(), **body.model_dump(exclude_none=True)}
    return {"success": True, "policy": service.set_policy(owner, overrides).to_dict()}


@router.post("/cycle/reopen/{owner}")
def reopen_cycle(request: Request, owner: str, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    owner = _owner_or_400(owner)
    verdict = _run_mutation(service, owner, service.reopen_cycle, owner)
    _mirror(background, service, verdict)
    return {"success": True, "verdict": verdict.to_dict()}


@router.post("/webhook/voice")
def voice_webhook(request: Request, body: VoiceWebhookRequest, background: BackgroundTasks) -> Dict[str, Any]:
    service = _service_from_request(request)
    verdict = service.record_voice_verification(body.user_address, body.verified)
    if body.verified:
        _mirror(background, service, verdict)
    return {"success": body.verified, "verdict": verdict.to_dict()}


# ----------------------------
# Error mapping
# ----------------------------

_STATUS_BY_ERROR: List[Any] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PersistenceFailure, 503),
]


def status_for(exc: VaultError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": exc.to_detail()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "ok": False,
                    "error": "InvalidInput",
                    "message": "Request body failed validation",
                    "errors": jsonable_encoder(exc.errors()),
                }
            },
        )
