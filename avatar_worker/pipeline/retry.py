"""
Operator actions on a generation: manual retry of the failed phase and
administrative cancellation.
"""

import logging
from typing import Optional

from .errors import SagaError
from .models import GenerationRecord, Phase, PhaseStatus
from .orchestrator import SagaOrchestrator

logger = logging.getLogger(__name__)


class RetryService:
    def __init__(self, orchestrator: SagaOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.providers = orchestrator.providers

    def failed_phase(self, record: GenerationRecord) -> Optional[Phase]:
        for phase in (Phase.FINAL, Phase.EXTENDED, Phase.INITIAL):
            if record.status_of(phase) == PhaseStatus.FAILED:
                return phase
        return None

    def _apply_edits(self, record: GenerationRecord, phase: Phase, prompt: Optional[str], script: Optional[str]) -> dict:
        if not prompt and not script:
            return {}
        scene_number = 1 if phase == Phase.INITIAL else record.current_scene
        scene_prompts = [dict(s) if isinstance(s, dict) else {"prompt": str(s)} for s in record.scene_prompts]
        while len(scene_prompts) < scene_number:
            scene_prompts.append({"prompt": "", "script": ""})
        scene = scene_prompts[scene_number - 1]
        if prompt:
            scene["prompt"] = prompt
        if script:
            scene["script"] = script
        fields = {"scene_prompts": scene_prompts}
        if scene_number == 1 and prompt:
            fields["ai_prompt"] = prompt
        logger.info(f"{record.id}: edited scene {scene_number} before retry")
        return fields

    def retry(self, generation_id: str, edited_prompt: Optional[str] = None, edited_script: Optional[str] = None) -> dict:
        """Re-run only the failed phase; completed segments are kept."""
        record = self.store.get(generation_id)
        if record.cancelled:
            raise SagaError(f"Generation {generation_id} is cancelled")
        phase = self.failed_phase(record)
        if phase is None:
            raise SagaError(f"Generation {generation_id} has no failed phase to retry")

        if phase == Phase.FINAL:
            if record.number_of_scenes == 1 and len(record.video_segments) == 1:
                record = self.orchestrator.finalize_single(record) or self.store.get(record.id)
                self.orchestrator.charge(record)
            else:
                record = self.orchestrator.stitch_trigger.stitch(record, force=True)
            return {"success": True, "phase": phase.value, "final_video_url": record.final_video_url}

        edits = self._apply_edits(record, phase, edited_prompt, edited_script)
        record = self.store.reset_phase(record.id, phase, extra={
            **edits,
            "retry_count": record.retry_count + 1,
        })
        logger.info(f"Retrying {record.id} {phase.value} (attempt {record.retry_count})")

        if phase == Phase.INITIAL:
            scene = record.scene_prompt(1)
            if scene is None:
                message = "Scene 1: missing scene prompt"
                self.store.mark_failed(record.id, Phase.INITIAL, message)
                raise SagaError(message)
            task_id = self.providers.get_provider(record.model).generate(record, scene)
        else:
            if record.current_scene != len(record.video_segments) + 1:
                raise SagaError(
                    f"Cannot retry scene {record.current_scene}: {len(record.video_segments)} segment(s) present"
                )
            task_id = self.orchestrator.advancer.start_scene(record, record.current_scene)

        return {"success": True, "phase": phase.value, "task_id": task_id, "scene": record.current_scene}

    def cancel(self, generation_id: str) -> GenerationRecord:
        """Stop further scene advancement; in-flight provider jobs still finish."""
        record = self.store.update(generation_id, {"cancelled": True})
        logger.info(f"Generation {generation_id} cancelled")
        return record
