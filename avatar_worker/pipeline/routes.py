"""
FastAPI routes for the generation saga.

Generation Endpoints:
  POST /generate                    : Start a generation (router + fallback)
  GET  /generations/{id}            : Current record
  POST /generations/{id}/poll       : Reconcile with provider status
  POST /generations/{id}/retry      : Re-run the failed phase
  POST /generations/{id}/stitch     : Re-run a failed stitch
  POST /generations/{id}/cancel     : Stop advancing to further scenes

Callback Endpoints:
  POST /callbacks/{provider}        : Provider webhooks (kie, sora2, kling, runway)

Billing Endpoints:
  POST /billing/retroactive-charge  : Charge completed, uncharged generations
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import metrics
from .errors import (
    ErrorType,
    GenerationNotFound,
    InvalidCallback,
    ProviderError,
    SagaError,
    StitchError,
)
from .models import GenerateRequest, RetryRequest
from .services import Services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorType.CREDIT_EXHAUSTED.value: 402,
    ErrorType.AUTH_ERROR.value: 401,
    ErrorType.RATE_LIMITED.value: 429,
    ErrorType.INVALID_PARAMS.value: 400,
}


def _services(request: Request) -> Services:
    return request.app.state.services


# ═════════════════════════════════════════════════════════════════════════════
# Generation Router
# ═════════════════════════════════════════════════════════════════════════════

generation_router = APIRouter(tags=["generation"])


@generation_router.post("/generate")
def start_generation(body: GenerateRequest, request: Request):
    """
    Start scene 1 on the requested model, falling back if allowed.

    Errors:
      - 402: CREDIT_EXHAUSTED
      - 400: INVALID_PARAMS / unknown model
      - 409: generation_id already started
      - 502: provider failure after all fallbacks
    """
    metrics.inc_counter("requests.generate")
    try:
        result = _services(request).router.generate(body)
    except SagaError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Generate failed: {e}", exc_info=True)
        metrics.record_error("generate", type(e).__name__, str(e))
        raise HTTPException(status_code=500, detail=str(e))

    payload = result.model_dump()
    if result.success:
        return payload
    return JSONResponse(status_code=ERROR_STATUS.get(result.error_type, 502), content=payload)


@generation_router.get("/generations/{generation_id}")
def get_generation(generation_id: str, request: Request):
    try:
        record = _services(request).store.get(generation_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    return record.model_dump(mode="json")


@generation_router.post("/generations/{generation_id}/poll")
def poll_generation(generation_id: str, request: Request):
    """Ask the provider directly; safe to call any number of times."""
    metrics.inc_counter("requests.poll")
    try:
        return _services(request).poller.poll(generation_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")


@generation_router.post("/generations/{generation_id}/retry")
def retry_generation(generation_id: str, request: Request, body: Optional[RetryRequest] = None):
    body = body or RetryRequest()
    metrics.inc_counter("requests.retry")
    try:
        return _services(request).retry.retry(generation_id, body.edited_prompt, body.edited_script)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    except SagaError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderError as e:
        status = ERROR_STATUS.get(e.error.type.value, 502)
        return JSONResponse(status_code=status, content={"success": False, **e.error.to_dict()})
    except StitchError as e:
        raise HTTPException(status_code=502, detail=str(e))


@generation_router.post("/generations/{generation_id}/stitch")
def stitch_generation(generation_id: str, request: Request):
    services = _services(request)
    try:
        record = services.store.get(generation_id)
        record = services.orchestrator.stitch_trigger.stitch(record, force=True)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    except SagaError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StitchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "final_video_url": record.final_video_url}


@generation_router.post("/generations/{generation_id}/cancel")
def cancel_generation(generation_id: str, request: Request):
    try:
        record = _services(request).retry.cancel(generation_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    return {"success": True, "generation_id": record.id, "cancelled": record.cancelled}


# ═════════════════════════════════════════════════════════════════════════════
# Callback Router: provider webhooks
# ═════════════════════════════════════════════════════════════════════════════

callback_router = APIRouter(prefix="/callbacks", tags=["callbacks"])


@callback_router.post("/{provider}")
async def provider_callback(provider: str, request: Request, background_tasks: BackgroundTasks):
    """
    ACK with 200 whenever the payload maps to a generation, even if the
    generation itself failed; that failure is recorded on the row.

    The segment is stored in the threadpool before answering; the advance,
    stitch or finalize it triggers runs as a background task.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Callback body is not JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Callback body must be an object")

    orchestrator = _services(request).orchestrator
    try:
        outcome = await run_in_threadpool(
            orchestrator.handle_callback, provider, payload, schedule=background_tasks.add_task
        )
    except InvalidCallback as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GenerationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "success": True,
        "generation_id": outcome.generation_id,
        "applied": outcome.applied,
        "next_step": outcome.next_step.value,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Billing Router
# ═════════════════════════════════════════════════════════════════════════════

billing_router = APIRouter(prefix="/billing", tags=["billing"])


class RetroactiveChargeRequest(BaseModel):
    user_id: Optional[str] = None
    limit: int = 200


@billing_router.post("/retroactive-charge")
def retroactive_charge(body: RetroactiveChargeRequest, request: Request):
    return _services(request).ledger.retroactive_charge(user_id=body.user_id, limit=body.limit)
