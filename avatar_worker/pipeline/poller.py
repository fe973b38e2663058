"""
Status Poller: pull-based substitute for a lost or late webhook.
"""

import logging

from .. import metrics
from .models import Phase, PhaseStatus
from .orchestrator import SagaOrchestrator

logger = logging.getLogger(__name__)

POLLED_PHASES = (Phase.INITIAL, Phase.EXTENDED)


class StatusPoller:
    def __init__(self, orchestrator: SagaOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.providers = orchestrator.providers

    def poll(self, generation_id: str) -> dict:
        """
        Re-query the provider for every phase stuck in 'generating'.

        Results go through the same reconcile() a callback uses, so polling
        twice, or polling after the callback already landed, changes nothing.
        """
        record = self.store.get(generation_id)
        adapter = self.providers.get_provider(record.model)
        updated = False
        errors = {}

        for phase in POLLED_PHASES:
            task_id = record.task_id_of(phase)
            if record.status_of(phase) != PhaseStatus.GENERATING or not task_id:
                continue

            try:
                result = adapter.fetch_status(task_id)
            except Exception as e:
                logger.warning(f"Status check failed for {generation_id} {phase.value} task {task_id}: {e}")
                errors[phase.value] = str(e)
                continue

            if not result.task_id:
                result.task_id = task_id
            outcome = self.orchestrator.reconcile(record, result)
            if outcome.applied:
                updated = True
                metrics.inc_counter("poller.reconciled")
                logger.info(f"Poller reconciled {generation_id} {phase.value}: {result.state.value}")
            # A reconcile may have started the next scene; later phases must see it.
            record = self.store.get(generation_id)

        return {
            "generation_id": generation_id,
            "updated": updated,
            "phases": {
                "initial": record.initial_status.value,
                "extended": record.extended_status.value,
                "final": record.final_video_status.value,
            },
            "current_scene": record.current_scene,
            "segments": len(record.video_segments),
            "final_video_url": record.final_video_url,
            "errors": errors,
        }
