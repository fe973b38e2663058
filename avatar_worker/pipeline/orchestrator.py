"""
Saga orchestration for multi-scene avatar videos.

There is no long-lived process: every step runs inside a webhook, poll or
user request and coordinates with the others only through the generation
row. All state transitions live here:

    initial generating ──callback──▶ initial completed ─┬─▶ advance (scene 2..N)
                                                        ├─▶ stitch  (all scenes in)
                                                        └─▶ final   (one-shot jobs)
    extended generating ──callback──▶ extended completed ──▶ advance / stitch

Every phase write is a compare-and-set on (task id, 'generating'), so a
duplicate webhook or a poller racing a late callback is a no-op.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .. import metrics
from .errors import GenerationNotFound, InvalidCallback, SagaError, StitchError, rewrite_provider_failure
from .ledger import CreditLedger
from .models import (
    CallbackOutcome,
    GenerationRecord,
    NextStep,
    Phase,
    PhaseStatus,
    ProviderResult,
    ResultState,
    VideoSegment,
    phase_columns,
)
from .store import GenerationStore

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def next_step(record: GenerationRecord) -> NextStep:
    """What a just-completed segment should trigger."""
    if record.cancelled or record.is_final:
        return NextStep.NONE
    segments = len(record.video_segments)
    total = record.number_of_scenes
    if segments < total:
        return NextStep.ADVANCE
    if segments == total and total >= 2:
        return NextStep.STITCH
    if total == 1 and segments == 1:
        return NextStep.FINALIZE
    return NextStep.NONE


def previous_task_id(record: GenerationRecord) -> Optional[str]:
    """Task the next extension continues from: the last successfully rendered segment."""
    for segment in reversed(sorted(record.video_segments, key=lambda s: s.scene)):
        if segment.task_id:
            return segment.task_id
    return record.extended_task_id or record.initial_task_id


# ═════════════════════════════════════════════════════════════════════════════
# Scene Advancer
# ═════════════════════════════════════════════════════════════════════════════

class SceneAdvancer:
    def __init__(self, store: GenerationStore, providers):
        self.store = store
        self.providers = providers

    def advance(self, record: GenerationRecord) -> str:
        """Move the record to its next scene and submit the extension."""
        next_scene = record.current_scene + 1
        if next_scene != len(record.video_segments) + 1:
            raise SagaError(
                f"Scene counter out of sync: current_scene={record.current_scene}, "
                f"segments={len(record.video_segments)}"
            )
        if next_scene > record.number_of_scenes:
            raise SagaError(f"All {record.number_of_scenes} scenes already generated")

        chain_from = previous_task_id(record)
        updated = self.store.compare_and_set(
            record.id,
            {
                "current_scene": next_scene,
                "extended_status": PhaseStatus.PENDING,
                "extended_task_id": None,
                "extended_error": None,
            },
            expected={"current_scene": record.current_scene},
        )
        if updated is None:
            raise SagaError(f"Scene {next_scene} was already started by another handler")

        logger.info(f"Advancing {record.id} to scene {next_scene}/{record.number_of_scenes}")
        return self._start(updated, next_scene, chain_from)

    def start_scene(self, record: GenerationRecord, scene_number: int) -> str:
        """Re-submit a scene without moving the counter (manual retry)."""
        return self._start(record, scene_number, previous_task_id(record))

    def _start(self, record: GenerationRecord, scene_number: int, chain_from: Optional[str]) -> str:
        adapter = self.providers.get_provider(record.model)
        scene = None
        if record.is_multi_scene:
            scene = record.scene_prompt(scene_number)
            if scene is None:
                message = f"Scene {scene_number}: missing scene prompt"
                logger.error(f"{record.id}: {message} (have {len(record.scene_prompts)} prompt(s))")
                self.store.mark_failed(record.id, Phase.EXTENDED, message)
                raise SagaError(message)

        try:
            return adapter.extend(
                record,
                scene_number,
                scene,
                chain_from if adapter.chains_extend else None,
            )
        except SagaError as e:
            self.store.mark_failed(record.id, Phase.EXTENDED, f"Scene {scene_number}: {e}")
            raise


# ═════════════════════════════════════════════════════════════════════════════
# Stitcher Trigger
# ═════════════════════════════════════════════════════════════════════════════

class StitcherTrigger:
    def __init__(self, store: GenerationStore, providers, stitcher):
        self.store = store
        self.providers = providers
        self.stitcher = stitcher

    def stitch(self, record: GenerationRecord, force: bool = False) -> GenerationRecord:
        """
        Concatenate every segment into the final video.

        Claims the final phase first so two handlers never stitch the same
        record. `force` lets an operator re-run a failed stitch.
        """
        segments = sorted(record.video_segments, key=lambda s: s.scene)
        total = record.number_of_scenes
        if total < 2 or len(segments) != total:
            raise StitchError(f"Cannot stitch {record.id}: {len(segments)}/{total} segments")
        if any(not s.url for s in segments):
            raise StitchError(f"Cannot stitch {record.id}: a segment has no video URL")

        claimable = {PhaseStatus.PENDING, PhaseStatus.FAILED} if force else {PhaseStatus.PENDING}
        if record.final_video_status not in claimable:
            raise SagaError(f"Final video for {record.id} is already {record.final_video_status.value}")

        claimed = self.store.compare_and_set(
            record.id,
            {"final_video_status": PhaseStatus.GENERATING, "final_video_error": None},
            expected={"final_video_status": record.final_video_status},
        )
        if claimed is None:
            raise SagaError(f"Stitching for {record.id} was already claimed")

        trim = self.providers.get_provider(record.model).stitch_trim_seconds
        try:
            final_url = self.stitcher.concatenate(record.id, [s.url for s in segments], trim)
        except Exception as e:
            logger.error(f"Stitching failed for {record.id}: {e}", exc_info=True)
            self.store.update(record.id, {
                "final_video_status": PhaseStatus.FAILED,
                "final_video_error": str(e),
            })
            raise StitchError(str(e)) from e

        metrics.inc_counter("saga.stitched")
        return self.store.update(record.id, {
            "final_video_url": final_url,
            "final_video_status": PhaseStatus.COMPLETED,
            "final_video_completed_at": _now_iso(),
            "final_video_error": None,
            "is_final": True,
        })


# ═════════════════════════════════════════════════════════════════════════════
# Saga
# ═════════════════════════════════════════════════════════════════════════════

class SagaOrchestrator:
    def __init__(
        self,
        store: GenerationStore,
        providers,
        ledger: CreditLedger,
        stitcher,
    ):
        self.store = store
        self.providers = providers
        self.ledger = ledger
        self.advancer = SceneAdvancer(store, providers)
        self.stitch_trigger = StitcherTrigger(store, providers, stitcher)

    # ── Entry: provider webhook ──

    def handle_callback(self, provider: str, payload: dict, schedule=None) -> CallbackOutcome:
        """
        Apply a provider webhook to its generation.

        `schedule(fn, *args)` defers the downstream step (advance, stitch,
        finalize) so the webhook is acknowledged once the segment is stored.
        """
        adapter = self.providers.by_name(provider)
        if adapter is None:
            raise InvalidCallback(f"Unknown provider: {provider}")

        metrics.inc_counter(f"callbacks.{provider}")
        result = adapter.parse_callback(payload)
        if not result.task_id:
            logger.error(f"{provider} callback without task id: {str(payload)[:300]}")
            raise InvalidCallback("No task ID in callback payload")

        record = self.store.find_by_task_id(result.task_id)
        if record is None:
            logger.error(f"{provider} callback for unknown task {result.task_id}")
            raise GenerationNotFound(f"No generation found for task {result.task_id}")

        logger.info(f"{provider} callback for {record.id}: task={result.task_id} state={result.state.value}")
        return self.reconcile(record, result, schedule=schedule)

    # ── Shared by callbacks and the poller ──

    def reconcile(self, record: GenerationRecord, result: ProviderResult, schedule=None) -> CallbackOutcome:
        phase = record.phase_for_task(result.task_id)
        outcome = CallbackOutcome(generation_id=record.id, task_id=result.task_id, phase=phase)

        if phase is None:
            logger.info(f"Task {result.task_id} no longer owns a phase on {record.id}, ignoring")
            return outcome

        status = record.status_of(phase)
        if status != PhaseStatus.GENERATING:
            logger.info(f"{record.id} {phase.value} already {status.value}, ignoring task {result.task_id}")
            return outcome

        if result.state == ResultState.RUNNING:
            return outcome
        if result.state == ResultState.SUCCESS and not result.video_url:
            logger.warning(f"{record.id} {phase.value} reported success without a video URL, still generating")
            return outcome

        if result.state == ResultState.SUCCESS:
            updated = self._complete_phase(record, phase, result)
        else:
            updated = self._fail_phase(record, phase, result)

        if updated is None:
            return outcome

        outcome.applied = True
        if result.state == ResultState.SUCCESS:
            outcome.next_step = next_step(updated)
            if schedule is not None and outcome.next_step != NextStep.NONE:
                schedule(self.run_next_step, updated, outcome.next_step)
            else:
                outcome.downstream_error = self.run_next_step(updated, outcome.next_step)
        return outcome

    def _complete_phase(self, record: GenerationRecord, phase: Phase, result: ProviderResult) -> Optional[GenerationRecord]:
        cols = phase_columns(phase)
        now = _now_iso()
        scene = record.current_scene
        segments = list(record.video_segments)

        if len(segments) >= record.number_of_scenes:
            logger.warning(f"{record.id} already has {len(segments)} segment(s), not appending scene {scene}")
        elif any(s.scene == scene for s in segments):
            logger.warning(f"{record.id} already has a segment for scene {scene}")
        else:
            adapter = self.providers.get_provider(record.model)
            segments.append(VideoSegment(
                url=result.video_url,
                scene=scene,
                type=phase.value,
                duration=adapter.scene_duration(record, scene) * 1000,
                task_id=result.task_id,
                completed_at=now,
            ))

        updated = self.store.compare_and_set(
            record.id,
            {
                cols["status"]: PhaseStatus.COMPLETED,
                cols["url"]: result.video_url,
                cols["error"]: None,
                cols["completed_at"]: now,
                "video_segments": segments,
            },
            expected={cols["task_id"]: result.task_id, cols["status"]: PhaseStatus.GENERATING},
        )
        if updated is not None:
            metrics.inc_counter("saga.segments_appended")
            logger.info(f"{record.id} scene {scene} completed ({len(updated.video_segments)}/{updated.number_of_scenes})")
        return updated

    def _fail_phase(self, record: GenerationRecord, phase: Phase, result: ProviderResult) -> Optional[GenerationRecord]:
        cols = phase_columns(phase)
        raw = (result.error or "").strip() or "Unknown error"
        message = rewrite_provider_failure(raw)
        if phase == Phase.INITIAL:
            if message == raw:
                message = f"Generation failed at Kie.ai: {message}"
        else:
            message = f"Scene {record.current_scene}: {message}"

        updated = self.store.compare_and_set(
            record.id,
            {cols["status"]: PhaseStatus.FAILED, cols["error"]: message},
            expected={cols["task_id"]: result.task_id, cols["status"]: PhaseStatus.GENERATING},
        )
        if updated is not None:
            metrics.record_error("provider", "generation_failed", message, record.id)
            logger.warning(f"{record.id} {phase.value} failed: {message}")
        return updated

    # ── Downstream triggers ──

    def run_next_step(self, record: GenerationRecord, step: NextStep) -> Optional[str]:
        """
        Run the step a completed segment calls for.

        The segment is already persisted; a failure here is written to the
        phase the step was driving and returned, never raised, so a manual
        retry can resume from exactly this point.
        """
        try:
            if step == NextStep.ADVANCE:
                self.advancer.advance(record)
            elif step == NextStep.STITCH:
                self.charge(record)
                self.stitch_trigger.stitch(record)
            elif step == NextStep.FINALIZE:
                self.finalize_single(record)
                self.charge(record)
        except Exception as e:
            logger.error(f"{record.id}: {step.value} step failed: {e}", exc_info=True)
            metrics.record_error("saga", type(e).__name__, str(e), record.id)
            # SagaError means another handler owns the step or the row is already marked
            if not isinstance(e, SagaError):
                self._record_step_failure(record.id, step, str(e))
            return str(e)
        return None

    def _record_step_failure(self, generation_id: str, step: NextStep, message: str):
        """Leave a failed phase on the row so RetryService can pick the saga up."""
        try:
            record = self.store.get(generation_id)
            if step == NextStep.ADVANCE:
                scene = len(record.video_segments) + 1
                if record.current_scene == scene and record.extended_status in (
                    PhaseStatus.GENERATING, PhaseStatus.FAILED
                ):
                    return
                if record.current_scene not in (scene - 1, scene):
                    return
                self.store.compare_and_set(
                    record.id,
                    {
                        "current_scene": scene,
                        "extended_status": PhaseStatus.FAILED,
                        "extended_task_id": None,
                        "extended_error": f"Scene {scene}: {message}",
                    },
                    expected={
                        "current_scene": record.current_scene,
                        "extended_status": record.extended_status,
                    },
                )
            elif step in (NextStep.STITCH, NextStep.FINALIZE):
                if record.is_final or record.final_video_status != PhaseStatus.PENDING:
                    return
                self.store.compare_and_set(
                    record.id,
                    {"final_video_status": PhaseStatus.FAILED, "final_video_error": message},
                    expected={"final_video_status": PhaseStatus.PENDING},
                )
        except Exception as e:
            logger.error(f"{generation_id}: could not record {step.value} failure: {e}", exc_info=True)

    def finalize_single(self, record: GenerationRecord) -> Optional[GenerationRecord]:
        """One-shot jobs: the only segment is the final video."""
        segment = record.video_segments[0]
        updated = self.store.compare_and_set(
            record.id,
            {
                "final_video_url": segment.url,
                "final_video_status": PhaseStatus.COMPLETED,
                "final_video_completed_at": _now_iso(),
                "is_final": True,
            },
            expected={"is_final": False},
        )
        if updated is not None:
            logger.info(f"{record.id} finalized from its single segment")
        return updated

    def charge(self, record: GenerationRecord):
        """Debit the rendered video. Billing problems never block delivery."""
        try:
            result = self.ledger.charge_generation(record)
        except Exception as e:
            logger.error(f"Charging credits failed for {record.id}: {e}", exc_info=True)
            metrics.record_error("billing", type(e).__name__, str(e), record.id)
            return None
        if result.charged:
            metrics.inc_counter("billing.charged")
        return result
