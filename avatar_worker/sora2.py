"""
Sora 2 Pro on the Kie.ai jobs API.

Sora cannot continue a video, so every scene is an independent
image-to-video job keyed by the same reference image. Continuity comes
from the prompt alone, and the stitcher trims the first second of each
later segment to hide the restart.
"""

import json
import logging
from typing import Optional

from .adapter_base import ProviderAdapter, as_dict, first_url
from .pipeline.catalog import get_model
from .pipeline.errors import ProviderError, SagaError
from .pipeline.models import GenerationRecord, Phase, ProviderResult, ResultState, ScenePrompt
from .pipeline.prompts import (
    AVATAR_DISCLAIMER,
    sanitize_for_provider,
    speech_delivery_block,
    voice_continuity_block,
    voice_identity_block,
)

logger = logging.getLogger(__name__)

SORA_FRAMES = {10, 15, 25}
SUCCESS_STATES = {"success", "succeeded", "completed"}
FAILED_STATES = {"fail", "failed", "error"}


def _load_result_json(value) -> dict:
    """resultJson arrives either as an object or as a JSON string."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning(f"Unparseable resultJson: {value[:200]}")
            return {}
    return as_dict(value)


def parse_market_payload(payload: dict, task_id: Optional[str] = None) -> ProviderResult:
    """Normalize a jobs-API callback or recordInfo body (Sora 2, Kling)."""
    payload = as_dict(payload)
    data = as_dict(payload.get("data")) or payload

    task_id = data.get("taskId") or data.get("task_id") or payload.get("taskId") or task_id
    state = str(data.get("state") or data.get("status") or "").lower()
    result = _load_result_json(data.get("resultJson"))

    url = first_url(
        result.get("resultUrls"), result.get("result_urls"),
        data.get("resultUrls"), as_dict(data.get("response")).get("resultUrls"),
        data.get("videoUrl"),
    )
    error = data.get("failMsg") or data.get("errorMessage") or data.get("error")

    code = payload.get("code")
    if code not in (None, 0, 200) and not error:
        error = payload.get("msg") or f"Kie.ai error code {code}"

    if state in SUCCESS_STATES and not error:
        result_state = ResultState.SUCCESS
    elif state in FAILED_STATES or error:
        result_state = ResultState.FAILED
        error = error or data.get("failCode") or "Generation failed"
    else:
        result_state = ResultState.RUNNING

    return ProviderResult(
        task_id=str(task_id) if task_id else None,
        state=result_state,
        video_url=url,
        error=str(error) if error else None,
    )


class MarketJobAdapter(ProviderAdapter):
    """Shared plumbing for models served through /jobs/createTask."""

    def fetch_status(self, task_id: str) -> ProviderResult:
        response = self.client.get("jobs/recordInfo", {"taskId": task_id})
        if not response.ok:
            raise ProviderError(self._classify(response))
        return parse_market_payload(response.body, task_id=task_id)

    def parse_callback(self, payload: dict) -> ProviderResult:
        return parse_market_payload(payload)

    def _require_image(self, record: GenerationRecord):
        if not record.has_image:
            raise SagaError(f"{get_model(record.model).label} requires a reference image")

    def _create_task(self, record: GenerationRecord, phase: Phase, api_model: str, task_input: dict, scene_number: int = 1) -> str:
        payload = {
            "model": api_model,
            "callBackUrl": self.callback_url,
            "input": task_input,
        }
        return self._submit(record, phase, "jobs/createTask", payload, scene_number)


class Sora2Adapter(MarketJobAdapter):
    name = "sora2"
    stitch_trim_seconds = 1.0

    def scene_duration(self, record: GenerationRecord, scene_number: int) -> int:
        return record.duration if record.duration in SORA_FRAMES else 10

    def _input(self, record: GenerationRecord, prompt: str) -> dict:
        return {
            "prompt": prompt,
            "image_urls": [record.image_url],
            "aspect_ratio": "landscape" if record.aspect_ratio == "16:9" else "portrait",
            "n_frames": str(self.scene_duration(record, 1)),
            "size": "high" if record.model == "sora2_pro_1080" else "standard",
            "remove_watermark": True,
        }

    def _identity(self, record: GenerationRecord) -> str:
        return f"{record.avatar_identity_prefix}\n\n" if record.avatar_identity_prefix else ""

    def generate(self, record: GenerationRecord, scene: ScenePrompt) -> str:
        self._require_image(record)
        speaker = record.avatar_name or "The presenter"
        body = (
            self._identity(record)
            + voice_identity_block(record.avatar_name, record.industry)
            + "SCENE 1 ACTION:\n"
            + scene.prompt
            + speech_delivery_block(scene.script, speaker)
        )
        prompt = f"{AVATAR_DISCLAIMER}{sanitize_for_provider(body)}"
        spec = get_model(record.model)
        return self._create_task(record, Phase.INITIAL, spec.api_model, self._input(record, prompt))

    def extend(
        self,
        record: GenerationRecord,
        scene_number: int,
        scene: Optional[ScenePrompt],
        previous_task_id: Optional[str],
    ) -> str:
        self._require_image(record)
        if scene is None:
            raise SagaError("missing scene prompt")

        body = (
            self._identity(record)
            + voice_continuity_block(scene_number, record.industry)
            + f"SCENE {scene_number} OF {record.number_of_scenes} - DIRECT CONTINUATION:\n"
            + "The same presenter from the previous scene continues in the same setting, "
            + "same clothing, same framing and lighting. Do not re-introduce the presenter.\n\n"
            + "SCENE ACTION:\n"
            + scene.prompt
            + speech_delivery_block(scene.script, "The same presenter", same_voice=True)
        )
        prompt = f"{AVATAR_DISCLAIMER}{sanitize_for_provider(body)}"
        spec = get_model(record.model)
        logger.info(f"Sora2 scene {scene_number}/{record.number_of_scenes} for {record.id} (independent job)")
        return self._create_task(record, Phase.EXTENDED, spec.api_model, self._input(record, prompt), scene_number)
