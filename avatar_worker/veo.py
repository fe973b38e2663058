"""
Veo 3.1 on Kie.ai.

Scene 1 is a generate call; every later scene extends the previous task
(video-to-video), so the extend call must carry the previous task id.
A single-scene Veo job is generated and then extended once.
"""

import logging
from typing import Optional

from .adapter_base import ProviderAdapter, as_dict, first_url
from .pipeline.catalog import get_model
from .pipeline.errors import ProviderError, SagaError
from .pipeline.models import GenerationRecord, Phase, ProviderResult, ResultState, ScenePrompt
from .pipeline.prompts import (
    CONTENT_POLICY_DISCLAIMER,
    hard_cut_continuation,
    seed_for,
    single_scene_continuation,
    speech_delivery_block,
    voice_continuity_block,
    voice_identity_block,
)

logger = logging.getLogger(__name__)

FIRST_SCENE_SECONDS = 8
EXTEND_SCENE_SECONDS = 6


def parse_veo_payload(payload: dict, task_id: Optional[str] = None) -> ProviderResult:
    """
    Normalize a Veo callback or record-info body.

    Kie.ai sends these flat or nested under "data", with the result either
    under data.info or data.response depending on the API version.
    """
    payload = as_dict(payload)
    data = as_dict(payload.get("data")) or payload
    info = as_dict(data.get("info"))
    response = as_dict(data.get("response"))

    task_id = (
        data.get("taskId") or data.get("task_id")
        or payload.get("taskId") or payload.get("task_id")
        or task_id
    )

    flag = None
    for source in (info, data, payload):
        if source.get("successFlag") is not None:
            flag = source.get("successFlag")
            break
    try:
        flag = int(flag) if flag is not None else None
    except (TypeError, ValueError):
        flag = None

    url = first_url(
        info.get("resultUrls"), info.get("result_urls"),
        response.get("resultUrls"), response.get("result_urls"),
        data.get("resultUrls"),
    )
    error = info.get("errorMessage") or data.get("errorMessage") or payload.get("errorMessage")

    code = payload.get("code")
    if code not in (None, 0, 200) and not error:
        error = payload.get("msg") or f"Kie.ai error code {code}"

    if error or flag in (2, 3) or (flag == 0 and data.get("completeTime")):
        state = ResultState.FAILED
        error = error or "Generation failed"
    elif flag == 1 or (flag is None and url):
        state = ResultState.SUCCESS
    else:
        state = ResultState.RUNNING

    return ProviderResult(task_id=str(task_id) if task_id else None, state=state, video_url=url, error=error)


class VeoAdapter(ProviderAdapter):
    name = "kie"
    chains_extend = True
    extends_single_scene = True

    def scene_duration(self, record: GenerationRecord, scene_number: int) -> int:
        return FIRST_SCENE_SECONDS if scene_number <= 1 else EXTEND_SCENE_SECONDS

    def _seed(self, record: GenerationRecord) -> int:
        return record.seeds or seed_for(record.id)

    def generate(self, record: GenerationRecord, scene: ScenePrompt) -> str:
        spec = get_model(record.model)
        speaker = record.avatar_name or "The presenter"

        prompt = voice_identity_block(record.avatar_name, record.industry)
        if record.avatar_identity_prefix:
            prompt += f"SPOKESPERSON VISUAL (use this description in the video): {record.avatar_identity_prefix}\n\n"
        prompt += scene.prompt
        prompt += speech_delivery_block(scene.script, speaker)

        payload = {
            "prompt": f"{CONTENT_POLICY_DISCLAIMER}{prompt}",
            "model": spec.api_model,
            "watermark": record.watermark or "",
            "callBackUrl": self.callback_url,
            "aspectRatio": record.aspect_ratio if record.aspect_ratio in ("16:9", "9:16") else "16:9",
            "seeds": self._seed(record),
            "enableFallback": False,
            "enableTranslation": True,
            "generationType": "REFERENCE_2_VIDEO" if record.has_image else "TEXT_2_VIDEO",
        }
        if record.has_image:
            payload["imageUrls"] = [record.image_url]

        logger.info(f"Veo generate for {record.id}: model={spec.api_model}, type={payload['generationType']}")
        return self._submit(record, Phase.INITIAL, "veo/generate", payload)

    def extend(
        self,
        record: GenerationRecord,
        scene_number: int,
        scene: Optional[ScenePrompt],
        previous_task_id: Optional[str],
    ) -> str:
        if not previous_task_id:
            raise SagaError("No previous task ID found")

        duration = self.scene_duration(record, scene_number)
        if scene is not None:
            prompt = voice_continuity_block(scene_number, record.industry) + hard_cut_continuation(
                scene, scene_number, duration
            )
        else:
            original = record.ai_prompt or (record.scene_prompt(1).prompt if record.scene_prompt(1) else "")
            prompt = single_scene_continuation(original, duration)

        payload = {
            "taskId": previous_task_id,
            "prompt": f"{CONTENT_POLICY_DISCLAIMER}{prompt}",
            "duration": duration,
            "seeds": self._seed(record),
            "callBackUrl": self.callback_url,
            "watermark": record.watermark or "",
        }
        logger.info(f"Veo extend for {record.id}: scene {scene_number}, chained on {previous_task_id}")
        return self._submit(record, Phase.EXTENDED, "veo/extend", payload, scene_number)

    def fetch_status(self, task_id: str) -> ProviderResult:
        response = self.client.get("veo/record-info", {"taskId": task_id})
        if not response.ok:
            raise ProviderError(self._classify(response))
        return parse_veo_payload(response.body, task_id=task_id)

    def parse_callback(self, payload: dict) -> ProviderResult:
        return parse_veo_payload(payload)
