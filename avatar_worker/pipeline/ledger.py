"""
Credit Ledger.

Balance checks and reservations happen at submission; the debit happens
once the video is rendered. The debit itself runs inside the
charge_generation_credits Postgres function (sql/charge_generation_credits.sql),
which locks the balance row and refuses a second debit for the same
generation id, so concurrent callbacks cannot double charge.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from supabase import Client

from .catalog import MODEL_CATALOG, credits_for
from .errors import InsufficientCredits
from .models import GenerationRecord
from .store import GenerationStore

logger = logging.getLogger(__name__)

CHARGE_FUNCTION = "charge_generation_credits"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChargeResult:
    generation_id: str
    charged: bool
    amount: int = 0
    balance_after: Optional[int] = None
    reason: str = ""


class CreditLedger:
    def __init__(self, client: Client, store: GenerationStore):
        self.client = client
        self.store = store

    # ═════════════════════════════════════════════════════════════════════════
    # Balance & reservation
    # ═════════════════════════════════════════════════════════════════════════

    def get_balance(self, user_id: str) -> int:
        result = self.client.table("credit_balance").select("credits").eq("user_id", user_id).limit(1).execute()
        rows = result.data or []
        return int(rows[0].get("credits") or 0) if rows else 0

    def ensure_balance(self, user_id: Optional[str], required: int) -> int:
        """Raise InsufficientCredits unless the user can pay `required` credits."""
        if not user_id:
            return 0
        available = self.get_balance(user_id)
        if available < required:
            raise InsufficientCredits(required, available)
        return available

    def reserve(self, record: GenerationRecord, credits: int) -> Optional[dict]:
        if not record.user_id:
            return None
        spec = MODEL_CATALOG.get(record.model)
        estimated_minutes = math.ceil(record.number_of_scenes * record.duration / 60)
        row = {
            "user_id": record.user_id,
            "status": "pending",
            "provider": spec.provider if spec else None,
            "model": record.model,
            "scenes": record.number_of_scenes,
            "credits_reserved": credits,
            "estimated_credits": credits,
            "estimated_minutes": estimated_minutes,
            "metadata": {"generation_id": record.id},
        }
        result = self.client.table("video_jobs").insert(row).execute()
        logger.info(f"Reserved {credits} credit(s) for generation {record.id}")
        return (result.data or [None])[0]

    # ═════════════════════════════════════════════════════════════════════════
    # Charging
    # ═════════════════════════════════════════════════════════════════════════

    def amount_for(self, record: GenerationRecord) -> int:
        scenes = max(len(record.video_segments), 1)
        scenes = min(scenes, record.number_of_scenes)
        return credits_for(record.model, scenes)

    def charge_generation(self, record: GenerationRecord) -> ChargeResult:
        """Debit a rendered generation exactly once."""
        if not record.user_id:
            return ChargeResult(record.id, charged=False, reason="no_user")

        amount = self.amount_for(record)
        params = {
            "p_user_id": record.user_id,
            "p_generation_id": record.id,
            "p_amount": amount,
            "p_description": f"Video generation ({record.model}, {record.number_of_scenes} scene(s))",
            "p_metadata": {
                "generation_id": record.id,
                "model": record.model,
                "scenes": record.number_of_scenes,
            },
        }
        result = self.client.rpc(CHARGE_FUNCTION, params).execute()
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else {}
        data = data or {}

        if not data.get("charged"):
            reason = data.get("reason") or "already_charged"
            logger.info(f"Generation {record.id} not charged: {reason}")
            return ChargeResult(record.id, charged=False, reason=reason,
                                balance_after=data.get("balance_after"))

        self.client.table("video_jobs").update({
            "status": "completed",
            "completed_at": _now_iso(),
        }).eq("user_id", record.user_id).eq("metadata->>generation_id", record.id).execute()

        logger.info(f"Charged {amount} credit(s) for generation {record.id}, balance now {data.get('balance_after')}")
        return ChargeResult(record.id, charged=True, amount=amount, balance_after=data.get("balance_after"))

    def retroactive_charge(self, user_id: Optional[str] = None, limit: int = 200) -> dict:
        """Charge completed generations that slipped through without a debit."""
        summary = {"checked": 0, "charged": 0, "skipped": 0, "failed": 0, "credits": 0, "errors": []}
        for record in self.store.list_completed(user_id=user_id, limit=limit):
            summary["checked"] += 1
            try:
                result = self.charge_generation(record)
            except Exception as e:
                logger.error(f"Retroactive charge failed for {record.id}: {e}", exc_info=True)
                summary["failed"] += 1
                summary["errors"].append({"generation_id": record.id, "error": str(e)})
                continue
            if result.charged:
                summary["charged"] += 1
                summary["credits"] += result.amount
            else:
                summary["skipped"] += 1
        logger.info(f"Retroactive charge: {summary['charged']} charged, {summary['skipped']} skipped, {summary['failed']} failed")
        return summary
