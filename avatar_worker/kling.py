import logging

from .pipeline.catalog import get_model
from .pipeline.models import GenerationRecord, Phase, ScenePrompt
from .pipeline.prompts import CONTENT_POLICY_DISCLAIMER, speech_delivery_block
from .sora2 import MarketJobAdapter

logger = logging.getLogger(__name__)


class KlingAdapter(MarketJobAdapter):
    """Kling 2.6 image-to-video: one 10s shot per job, no extension."""

    name = "kling"

    def scene_duration(self, record: GenerationRecord, scene_number: int) -> int:
        return 10

    def generate(self, record: GenerationRecord, scene: ScenePrompt) -> str:
        self._require_image(record)
        speaker = record.avatar_name or "The presenter"
        prompt = f"{CONTENT_POLICY_DISCLAIMER}{scene.prompt}{speech_delivery_block(scene.script, speaker)}"
        task_input = {
            "prompt": prompt,
            "image_urls": [record.image_url],
            "sound": False,
            "duration": "10",
        }
        logger.info(f"Kling generate for {record.id}")
        return self._create_task(record, Phase.INITIAL, get_model(record.model).api_model, task_input)
