"""Server-side analytics - product events recorded to the analytics_events collection.

record() never blocks and never raises: the insert runs as a background task
and its failures are only logged. shutdown() waits for pending inserts so
events are not lost when the process stops.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from models import AnalyticsEvent

logger = logging.getLogger(__name__)

# Single source of truth for analytics event names
ANALYTICS_EVENTS = {
    # Auth
    "SIGNUP": "signup",
    "LOGIN": "login",
    "LOGOUT": "logout",

    # Biens
    "BIEN_CREATED": "bien_created",
    "BIEN_UPDATED": "bien_updated",
    "BIEN_DELETED": "bien_deleted",
    "BIEN_LIMIT_REACHED": "bien_limit_reached",

    # Documents
    "QUITTANCE_GENERATED": "quittance_generated",
    "QUITTANCE_SENT": "quittance_sent",
    "EXPORT_EXCEL": "export_excel",
    "EXPORT_PDF": "export_pdf",
    "IMPORT_CSV": "import_csv",

    # Stripe / Abonnement
    "CHECKOUT_STARTED": "checkout_started",
    "PAYMENT_SUCCEEDED": "payment_succeeded",
    "PAYMENT_FAILED": "payment_failed",
    "PLAN_UPGRADED": "plan_upgraded",
    "SUBSCRIPTION_CANCELED": "subscription_canceled",
    "PORTAL_OPENED": "portal_opened",

    # Performance
    "WEB_VITAL": "web_vital",
    "ERROR": "error",
}

KNOWN_EVENTS = frozenset(ANALYTICS_EVENTS.values())


class AnalyticsSink:
    """Fire-and-forget event recorder with an explicit init/shutdown lifecycle."""

    def __init__(self, db=None):
        self.db = db
        self._pending: Set[asyncio.Task] = set()
        self._enabled = False

    def init(self, db=None) -> None:
        if db is not None:
            self.db = db
        self._enabled = self.db is not None
        if not self._enabled:
            logger.warning("[Analytics] No database configured - events will be dropped")

    def record(self, user_id: Optional[str], event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        if not self._enabled or not user_id:
            return
        if event not in KNOWN_EVENTS:
            logger.warning("[Analytics] Unknown event name: %s", event)
        doc = AnalyticsEvent(user_id=user_id, event=event, properties=properties or {}).model_dump()
        try:
            task = asyncio.get_running_loop().create_task(self._insert(doc))
        except RuntimeError:
            logger.warning("[Analytics] No running event loop - dropping %s", event)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _insert(self, doc: Dict[str, Any]) -> None:
        try:
            await self.db.analytics_events.insert_one(doc)
        except Exception as e:
            # Never fail the main operation due to analytics failure
            logger.error(f"[Analytics] Error tracking server event {doc.get('event')}: {e}")

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.flush()
        self._enabled = False
        logger.info("[Analytics] Sink shut down")
