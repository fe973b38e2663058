"""
Provider Adapter base.

An adapter translates a scene into one provider request, records the task
id it gets back, and turns the provider's callback / status payloads into a
ProviderResult. It holds no business logic: what happens after a result is
decided in pipeline.orchestrator.
"""

import logging
from typing import Optional

import requests

from .config import Settings
from .kie import KieClient, KieResponse, extract_task_id
from .pipeline.errors import (
    ClassifiedError,
    ErrorClassifier,
    ErrorType,
    ProviderError,
    SagaError,
    default_classifier,
)
from .pipeline.models import GenerationRecord, Phase, ProviderResult, ScenePrompt
from .pipeline.store import GenerationStore

logger = logging.getLogger(__name__)


def first_url(*candidates) -> Optional[str]:
    """First non-empty URL among strings and lists of strings."""
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            candidate = candidate[0]
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


class ProviderAdapter:
    name = ""
    # Extend calls continue the previous task (video-to-video) rather than
    # starting an independent job from the reference image.
    chains_extend = False
    # Single-scene jobs get one automatic extension.
    extends_single_scene = False
    # Seconds trimmed from the start of each spliced segment when stitching.
    stitch_trim_seconds: Optional[float] = None

    def __init__(
        self,
        client: KieClient,
        store: GenerationStore,
        settings: Settings,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.classifier = classifier or default_classifier

    @property
    def callback_url(self) -> str:
        return self.settings.callback_url(self.name)

    # ── Operations ──

    def generate(self, record: GenerationRecord, scene: ScenePrompt) -> str:
        raise NotImplementedError

    def extend(
        self,
        record: GenerationRecord,
        scene_number: int,
        scene: Optional[ScenePrompt],
        previous_task_id: Optional[str],
    ) -> str:
        raise SagaError(f"{self.name} does not support extending a video")

    def fetch_status(self, task_id: str) -> ProviderResult:
        raise NotImplementedError

    def parse_callback(self, payload: dict) -> ProviderResult:
        raise NotImplementedError

    def scene_duration(self, record: GenerationRecord, scene_number: int) -> int:
        return record.duration

    # ── Submission ──

    def _classify(self, response: KieResponse) -> ClassifiedError:
        return self.classifier.classify(response.error_status, response.error_text)

    def _submit(
        self,
        record: GenerationRecord,
        phase: Phase,
        path: str,
        payload: dict,
        scene_number: int = 1,
    ) -> str:
        """POST to the provider and persist the outcome on the phase."""
        try:
            response = self.client.submit(path, payload)
        except requests.exceptions.RequestException as e:
            error = ClassifiedError(
                ErrorType.API_ERROR,
                f"Kie.ai API error (network): {e}",
                "Please try again. If the issue persists, check Kie.ai service status.",
            )
            logger.error(f"{self.name} {phase.value} call for {record.id} did not complete: {e}")
            self._fail(record, phase, error, scene_number)
            raise ProviderError(error) from e

        if not response.ok:
            error = self._classify(response)
            logger.error(
                f"{self.name} {phase.value} call failed for {record.id} "
                f"(status {response.status_code}): {error.type.value} {response.text[:300]}"
            )
            self._fail(record, phase, error, scene_number)
            raise ProviderError(error)

        task_id = extract_task_id(response.body)
        if not task_id:
            error = ClassifiedError(
                ErrorType.API_ERROR,
                "No task ID returned from Kie.ai",
                "Please try again. If the issue persists, check Kie.ai service status.",
                status=response.status_code,
                details=response.text,
            )
            logger.error(f"{self.name} returned no task id for {record.id}: {response.text[:300]}")
            self._fail(record, phase, error, scene_number)
            raise ProviderError(error)

        self.store.mark_generating(record.id, phase, task_id)
        logger.info(f"{self.name} {phase.value} task {task_id} started for {record.id} (scene {scene_number})")
        return task_id

    def _fail(self, record: GenerationRecord, phase: Phase, error: ClassifiedError, scene_number: int):
        message = error.describe()
        if phase == Phase.EXTENDED:
            message = f"Scene {scene_number}: {message}"
        metadata = {**record.metadata, "error_type": error.type.value, "user_action": error.user_action}
        self.store.mark_failed(record.id, phase, message, extra={"metadata": metadata})
