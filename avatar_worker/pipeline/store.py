"""
Generation Record Store.

Thin wrapper over the kie_video_generations table. Every saga step reads the
row, decides, and writes back through here; compare_and_set() is what keeps
duplicate webhooks and poller/callback races from applying twice.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from supabase import Client

from .errors import GenerationNotFound
from .models import GenerationRecord, Phase, PhaseStatus, phase_columns

logger = logging.getLogger(__name__)

GENERATIONS_TABLE = "kie_video_generations"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _jsonable(fields: dict) -> dict:
    """Enums and embedded models to plain JSON values."""
    out = {}
    for key, value in fields.items():
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        elif isinstance(value, list):
            value = [v.model_dump(mode="json") if hasattr(v, "model_dump") else v for v in value]
        elif isinstance(value, PhaseStatus):
            value = value.value
        out[key] = value
    return out


class GenerationStore:
    def __init__(self, client: Client, table: str = GENERATIONS_TABLE):
        self.client = client
        self.table = table

    def _rows(self, response) -> list[dict]:
        return list(response.data or [])

    # ── Reads ──

    def get(self, generation_id: str) -> GenerationRecord:
        rows = self._rows(
            self.client.table(self.table).select("*").eq("id", generation_id).limit(1).execute()
        )
        if not rows:
            raise GenerationNotFound(f"Generation {generation_id} not found")
        return GenerationRecord(**rows[0])

    def find_by_task_id(self, task_id: str) -> Optional[GenerationRecord]:
        rows = self._rows(
            self.client.table(self.table)
            .select("*")
            .or_(f"initial_task_id.eq.{task_id},extended_task_id.eq.{task_id}")
            .limit(1)
            .execute()
        )
        if not rows:
            # extended columns are reused per scene; older tasks live on their segment
            rows = self._rows(
                self.client.table(self.table)
                .select("*")
                .contains("video_segments", [{"task_id": task_id}])
                .limit(1)
                .execute()
            )
        return GenerationRecord(**rows[0]) if rows else None

    def list_completed(self, user_id: Optional[str] = None, limit: int = 200) -> list[GenerationRecord]:
        query = self.client.table(self.table).select("*").eq("is_final", True)
        if user_id:
            query = query.eq("user_id", user_id)
        rows = self._rows(query.order("created_at", desc=True).limit(limit).execute())
        return [GenerationRecord(**row) for row in rows]

    # ── Writes ──

    def create(self, fields: dict) -> GenerationRecord:
        payload = _jsonable({**fields, "created_at": _now_iso(), "updated_at": _now_iso()})
        rows = self._rows(self.client.table(self.table).insert(payload).execute())
        if not rows:
            raise RuntimeError("Generation insert returned no row")
        logger.info(f"Created generation {rows[0]['id']} model={rows[0].get('model')}")
        return GenerationRecord(**rows[0])

    def update(self, generation_id: str, fields: dict) -> GenerationRecord:
        payload = _jsonable({**fields, "updated_at": _now_iso()})
        rows = self._rows(
            self.client.table(self.table).update(payload).eq("id", generation_id).execute()
        )
        if not rows:
            raise GenerationNotFound(f"Generation {generation_id} not found")
        return GenerationRecord(**rows[0])

    def compare_and_set(self, generation_id: str, fields: dict, expected: dict) -> Optional[GenerationRecord]:
        """Apply fields only if every expected column still holds its value."""
        query = self.client.table(self.table).update(_jsonable({**fields, "updated_at": _now_iso()}))
        query = query.eq("id", generation_id)
        for column, value in _jsonable(expected).items():
            if value is None:
                query = query.is_(column, "null")
            else:
                query = query.eq(column, value)
        rows = self._rows(query.execute())
        if not rows:
            logger.info(f"Generation {generation_id}: conditional update skipped, expected {expected}")
            return None
        return GenerationRecord(**rows[0])

    # ── Phase helpers ──

    def mark_generating(self, generation_id: str, phase: Phase, task_id: str, extra: Optional[dict] = None) -> GenerationRecord:
        cols = phase_columns(phase)
        fields = {cols["task_id"]: task_id, cols["status"]: PhaseStatus.GENERATING, cols["error"]: None}
        fields.update(extra or {})
        return self.update(generation_id, fields)

    def mark_failed(self, generation_id: str, phase: Phase, error: str, extra: Optional[dict] = None) -> GenerationRecord:
        cols = phase_columns(phase)
        fields = {cols["status"]: PhaseStatus.FAILED, cols["error"]: error}
        fields.update(extra or {})
        return self.update(generation_id, fields)

    def reset_phase(self, generation_id: str, phase: Phase, extra: Optional[dict] = None) -> GenerationRecord:
        """Operator retry: a failed phase goes back to pending with no task, error or URL."""
        cols = phase_columns(phase)
        fields = {cols["status"]: PhaseStatus.PENDING, cols["error"]: None, cols["url"]: None}
        if cols["task_id"]:
            fields[cols["task_id"]] = None
        if phase == Phase.FINAL:
            fields["is_final"] = False
        fields.update(extra or {})
        return self.update(generation_id, fields)
