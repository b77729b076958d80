"""Stripe event ledger - one record per verified event id.

PROCESSING -> PROCESSED | FAILED. A PROCESSED event is acknowledged again
without re-running its handler; a FAILED one is re-run when Stripe redelivers.
The ledger is bookkeeping only: its own failures are logged and never fail a
webhook.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from models import StripeEventRecord, StripeEventStatus

logger = logging.getLogger(__name__)


class StripeEventLedger:
    def __init__(self, db):
        self.db = db

    async def is_processed(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        try:
            existing = await self.db.stripe_events.find_one({"event_id": event_id}, {"_id": 0, "status": 1})
        except Exception as e:
            logger.warning("Stripe event ledger lookup failed for %s: %s", event_id, e)
            return False
        return bool(existing) and existing.get("status") == StripeEventStatus.PROCESSED.value

    async def mark_processing(self, event_id: Optional[str], event_type: Optional[str]) -> None:
        if not event_id:
            return
        record = StripeEventRecord(event_id=event_id, type=event_type).model_dump(mode="json")
        record.pop("event_id")
        await self._set(event_id, record, upsert=True)

    async def mark_processed(self, event_id: Optional[str], user_id: Optional[str] = None) -> None:
        await self._set(event_id, {
            "status": StripeEventStatus.PROCESSED.value,
            "processed_at": datetime.now(timezone.utc),
            "related_user_id": user_id,
            "error": None,
        })

    async def mark_failed(self, event_id: Optional[str], error: str) -> None:
        await self._set(event_id, {
            "status": StripeEventStatus.FAILED.value,
            "processed_at": datetime.now(timezone.utc),
            "error": error,
        })

    async def _set(self, event_id: Optional[str], fields: dict, upsert: bool = False) -> None:
        if not event_id:
            return
        try:
            await self.db.stripe_events.update_one({"event_id": event_id}, {"$set": fields}, upsert=upsert)
        except Exception as e:
            logger.warning("Stripe event ledger write failed for %s: %s", event_id, e)
