"""
Router / Fallback Controller: the single entry point for starting a generation.

Each step either submits scene 1 to the current model's adapter or, when the
model cannot serve the request or fails in a model-level way, moves to that
model's statically configured fallback. The number of steps is bounded by
1 + max_retries, so a cyclic fallback map cannot loop.
"""

import logging
import uuid
from typing import Optional

from .. import metrics
from .catalog import FALLBACK_MODELS, MODEL_CATALOG, credits_for, get_model, unsupported_reason
from .errors import (
    ClassifiedError,
    ErrorType,
    InsufficientCredits,
    ProviderError,
    SagaError,
    fallback_reason,
)
from .ledger import CreditLedger
from .models import GenerateRequest, GenerateResponse, GenerationRecord, Phase, PhaseStatus
from .store import GenerationStore

logger = logging.getLogger(__name__)

MAX_RETRIES_CAP = 3
DEFAULT_MAX_RETRIES = 2
UNSUPPORTED_GEN_TYPE = "unsupported_gen_type"


def _failure(error: ClassifiedError, generation_id: Optional[str], attempted: list[str]) -> GenerateResponse:
    return GenerateResponse(
        success=False,
        generation_id=generation_id,
        attempted_models=list(attempted),
        **error.to_dict(),
    )


def _invalid(message: str) -> ClassifiedError:
    return ClassifiedError(ErrorType.INVALID_PARAMS, message, "Check your video settings and try again.")


class GenerationRouter:
    def __init__(self, store: GenerationStore, providers, ledger: CreditLedger):
        self.store = store
        self.providers = providers
        self.ledger = ledger

    # ── Record setup ──

    def _scene_count(self, request: GenerateRequest, model: str) -> int:
        scenes = len(request.scenes())
        if scenes == 1 and self.providers.get_provider(model).extends_single_scene:
            return 2
        return scenes

    def _record_fields(self, request: GenerateRequest, model: str) -> dict:
        spec = get_model(model)
        scenes = request.scenes()
        return {
            "model": model,
            "duration": request.duration or spec.default_duration,
            "number_of_scenes": self._scene_count(request, model),
            "is_multi_scene": len(scenes) > 1,
        }

    def _create_record(self, request: GenerateRequest, model: str) -> GenerationRecord:
        scenes = request.scenes()
        fields = {
            "id": request.generation_id or str(uuid.uuid4()),
            "user_id": request.user_id,
            "image_url": request.image_url if request.has_image else "text-only-mode",
            "aspect_ratio": request.aspect_ratio,
            "resolution": request.resolution,
            "watermark": request.watermark,
            "ai_prompt": request.prompt or scenes[0].prompt,
            "avatar_name": request.avatar_name,
            "industry": request.industry,
            "avatar_identity_prefix": request.avatar_identity_prefix,
            "scene_prompts": [s.model_dump() for s in scenes],
            "current_scene": 1,
            "video_segments": [],
            "initial_status": PhaseStatus.PENDING,
            "extended_status": PhaseStatus.PENDING,
            "final_video_status": PhaseStatus.PENDING,
            "is_final": False,
            "cancelled": False,
            "retry_count": 0,
            "metadata": {},
            **self._record_fields(request, model),
        }
        return self.store.create(fields)

    # ── Entry ──

    def generate(self, request: GenerateRequest) -> GenerateResponse:
        requested = request.model
        if requested not in MODEL_CATALOG:
            return _failure(_invalid(f"Unknown model: {requested}"), request.generation_id, [])

        scenes = request.scenes()
        if not scenes[0].prompt.strip():
            return _failure(_invalid("A prompt is required for scene 1"), request.generation_id, [])

        max_retries = min(MAX_RETRIES_CAP, request.max_retries if request.max_retries is not None else DEFAULT_MAX_RETRIES)
        max_retries = max(0, max_retries)

        record = self._load_or_create(request, requested)
        model = requested
        attempted: list[str] = []
        reason: Optional[str] = None
        last_error: Optional[ClassifiedError] = None

        for step in range(max_retries + 1):
            spec = get_model(model)
            problem = unsupported_reason(spec, request.has_image, len(scenes))
            if problem:
                logger.info(f"{record.id}: {model} cannot serve request ({problem})")
                last_error = _invalid(problem)
                if not request.enable_fallback:
                    return _failure(last_error, record.id, attempted)
                reason = UNSUPPORTED_GEN_TYPE
            else:
                attempted.append(model)
                try:
                    task_id = self._attempt(record, request, model)
                except InsufficientCredits as e:
                    logger.warning(f"{record.id}: {e}")
                    error = ClassifiedError(
                        ErrorType.CREDIT_EXHAUSTED,
                        f"Insufficient credits: this video needs {e.required}, you have {e.available}.",
                        "Purchase more credits to continue generating videos.",
                    )
                    self.store.mark_failed(record.id, Phase.INITIAL, error.message,
                                           extra={"metadata": {**record.metadata, "error_type": error.type.value}})
                    return _failure(error, record.id, attempted)
                except ProviderError as e:
                    last_error = e.error
                    reason = fallback_reason(e.error)
                    if not request.enable_fallback or reason is None:
                        logger.warning(f"{record.id}: {model} failed with {e.error.type.value}, not falling back")
                        return _failure(e.error, record.id, attempted)
                    logger.warning(f"{record.id}: {model} failed ({reason})")
                else:
                    return self._success(record, requested, model, task_id, reason, attempted)

            if step == max_retries:
                break
            fallback = FALLBACK_MODELS.get(model)
            if not fallback:
                break
            metrics.inc_counter("router.fallbacks")
            logger.info(f"{record.id}: falling back {model} -> {fallback} ({reason})")
            record = self._switch_model(record, request, requested, fallback, reason, step + 1)
            model = fallback

        error = last_error or _invalid("No model could serve this request")
        summary = ClassifiedError(
            error.type,
            f"All models failed after {len(attempted)} attempts. Last error: {error.message}",
            error.user_action,
        )
        self.store.update(record.id, {"metadata": {**record.metadata, "attempted_models": attempted,
                                                   "error_type": error.type.value}})
        metrics.record_error("router", error.type.value, summary.message, record.id)
        return _failure(summary, record.id, attempted)

    def _load_or_create(self, request: GenerateRequest, model: str) -> GenerationRecord:
        if request.generation_id:
            try:
                existing = self.store.get(request.generation_id)
            except LookupError:
                existing = None
            if existing is not None:
                if existing.status_of(Phase.INITIAL) != PhaseStatus.PENDING:
                    raise SagaError(f"Generation {existing.id} was already started")
                return self.store.update(existing.id, {
                    "scene_prompts": [s.model_dump() for s in request.scenes()],
                    **self._record_fields(request, model),
                })
        return self._create_record(request, model)

    def _attempt(self, record: GenerationRecord, request: GenerateRequest, model: str) -> str:
        required = credits_for(model, record.number_of_scenes)
        self.ledger.ensure_balance(record.user_id, required)
        adapter = self.providers.get_provider(model)
        return adapter.generate(record, request.scenes()[0])

    def _switch_model(self, record, request, requested, fallback, reason, retry_count) -> GenerationRecord:
        """Fallback is a retry of the initial phase, so it resets it to pending."""
        return self.store.reset_phase(record.id, Phase.INITIAL, extra={
            **self._record_fields(request, fallback),
            "original_model": requested,
            "fallback_reason": reason,
            "retry_count": retry_count,
        })

    def _success(self, record, requested, model, task_id, reason, attempted) -> GenerateResponse:
        record = self.store.get(record.id)
        credits = credits_for(model, record.number_of_scenes)
        try:
            self.ledger.reserve(record, credits)
        except Exception as e:
            logger.error(f"Reserving credits failed for {record.id}: {e}", exc_info=True)
            metrics.record_error("billing", type(e).__name__, str(e), record.id)

        fallback_used = model != requested
        metrics.inc_counter("router.started")
        logger.info(f"{record.id}: started on {model} task={task_id} (fallback_used={fallback_used})")
        return GenerateResponse(
            success=True,
            generation_id=record.id,
            task_id=task_id,
            model_used=model,
            fallback_used=fallback_used,
            original_model=requested if fallback_used else None,
            fallback_model=model if fallback_used else None,
            fallback_reason=reason if fallback_used else None,
            attempted_models=attempted,
        )
