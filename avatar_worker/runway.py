"""
Runway on Kie.ai: generate, then extend scene by scene from the previous task.
"""

import logging
from typing import Optional

from .adapter_base import ProviderAdapter, as_dict, first_url
from .pipeline.errors import ProviderError, SagaError
from .pipeline.models import GenerationRecord, Phase, ProviderResult, ResultState, ScenePrompt
from .pipeline.prompts import AVATAR_DISCLAIMER, speech_delivery_block

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"completed", "success"}
FAILED_STATES = {"failed", "fail", "error"}


def parse_runway_payload(payload: dict, task_id: Optional[str] = None) -> ProviderResult:
    payload = as_dict(payload)
    data = as_dict(payload.get("data")) or payload
    video_info = as_dict(data.get("videoInfo")) or as_dict(data.get("video_info"))

    task_id = payload.get("taskId") or data.get("taskId") or data.get("task_id") or task_id
    status = str(payload.get("status") or data.get("status") or data.get("state") or "").lower()
    url = first_url(
        payload.get("videoUrl"), data.get("videoUrl"), data.get("video_url"),
        as_dict(data.get("output")).get("video_url"),
        video_info.get("videoUrl"), video_info.get("video_url"),
    )
    error = payload.get("error") or data.get("failMsg") or data.get("errorMessage") or data.get("error")

    code = payload.get("code")
    if code not in (None, 0, 200) and not error:
        error = payload.get("msg") or f"Kie.ai error code {code}"

    if status in FAILED_STATES or error:
        state = ResultState.FAILED
        error = error or "Generation failed"
    elif status in SUCCESS_STATES or (not status and url):
        state = ResultState.SUCCESS
    else:
        state = ResultState.RUNNING

    return ProviderResult(task_id=str(task_id) if task_id else None, state=state, video_url=url, error=error)


class RunwayAdapter(ProviderAdapter):
    name = "runway"
    chains_extend = True

    def _quality(self, record: GenerationRecord) -> str:
        # Kie.ai only renders 1080p for the 5s clip length.
        return "1080p" if record.resolution == "1080p" and record.duration != 10 else "720p"

    def _scene_text(self, record: GenerationRecord, scene_number: int, scene: ScenePrompt) -> str:
        identity = f"{record.avatar_identity_prefix}\n\n" if record.avatar_identity_prefix else ""
        if scene_number == 1:
            header = "SCENE 1 - INITIAL SHOT:\n"
            speaker = record.avatar_name or "The presenter"
        else:
            header = (
                f"SCENE {scene_number} - CONTINUATION:\n"
                "The same presenter continues seamlessly from the previous shot, "
                "same position, same clothing, camera locked.\n"
            )
            speaker = "The same presenter"
        return (
            f"{AVATAR_DISCLAIMER}{identity}{header}{scene.prompt}"
            f"{speech_delivery_block(scene.script, speaker, same_voice=scene_number > 1)}"
        )

    def generate(self, record: GenerationRecord, scene: ScenePrompt) -> str:
        payload = {
            "prompt": self._scene_text(record, 1, scene),
            "duration": record.duration,
            "quality": self._quality(record),
            "aspectRatio": record.aspect_ratio,
            "waterMark": "",
            "callBackUrl": self.callback_url,
        }
        if record.has_image:
            payload["imageUrl"] = record.image_url
        return self._submit(record, Phase.INITIAL, "runway/generate", payload)

    def extend(
        self,
        record: GenerationRecord,
        scene_number: int,
        scene: Optional[ScenePrompt],
        previous_task_id: Optional[str],
    ) -> str:
        if not previous_task_id:
            raise SagaError("No previous task ID found")
        if scene is None:
            raise SagaError("missing scene prompt")
        payload = {
            "taskId": previous_task_id,
            "prompt": self._scene_text(record, scene_number, scene),
            "quality": self._quality(record),
            "waterMark": "",
            "callBackUrl": self.callback_url,
        }
        logger.info(f"Runway extend for {record.id}: scene {scene_number}, chained on {previous_task_id}")
        return self._submit(record, Phase.EXTENDED, "runway/extend", payload, scene_number)

    def fetch_status(self, task_id: str) -> ProviderResult:
        response = self.client.get("runway/record-detail", {"taskId": task_id})
        if not response.ok:
            raise ProviderError(self._classify(response))
        return parse_runway_payload(response.body, task_id=task_id)

    def parse_callback(self, payload: dict) -> ProviderResult:
        return parse_runway_payload(payload)
