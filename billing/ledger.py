"""Webhook event ledger.

Provider delivery is at-least-once. Every delivery is written to the
``webhook_events`` ledger under ``(provider, event_id)`` before anything else
happens, and the row moves ``received -> processing -> processed | failed |
ignored``. A delivery whose key already exists is a no-op, except that an
entry left ``failed``, ``received`` or stuck in ``processing`` is taken over
by the next delivery so a crash mid-processing gets retried.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from billing.datastore import Datastore
from billing.errors import BillingError
from billing.schemas import EventStatus, WebhookEvent, new_id, utcnow

logger = logging.getLogger(__name__)

STALE_PROCESSING = timedelta(minutes=5)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"


@dataclass
class InboundEvent:
    provider: str
    event_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[str] = None


# returns None when the event turned out to carry nothing to apply
Action = Callable[[], Any]


class WebhookLedger:
    def __init__(self, store: Datastore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def record_rejected(self, provider: str, reason: str, payload: Optional[Dict[str, Any]] = None) -> WebhookEvent:
        """Log a delivery that failed authentication.

        The claimed event id is untrusted, so the entry gets a synthetic one and
        never blocks a genuine delivery of the same event.
        """
        entry = WebhookEvent(
            provider=provider,
            event_id=f"rejected_{new_id()}",
            event_type="unverified",
            status=EventStatus.FAILED,
            payload=payload or {},
            error_message=reason,
        )
        self.store.append_ledger(entry)
        return entry

    def _reclaimable(self, entry: WebhookEvent) -> bool:
        if entry.status in (EventStatus.FAILED.value, EventStatus.RECEIVED.value):
            return True
        if entry.status == EventStatus.PROCESSING.value:
            return entry.updated_at < self.clock() - STALE_PROCESSING
        return False

    def _claim(self, event: InboundEvent) -> bool:
        now = self.clock()
        entry = WebhookEvent(
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
            transaction_id=event.transaction_id,
            payload=event.payload,
            created_at=now,
            updated_at=now,
        )
        if self.store.append_ledger(entry):
            return True
        existing = self.store.find_one(WebhookEvent, provider=event.provider, event_id=event.event_id)
        if existing is None or not self._reclaimable(existing):
            return False
        logger.warning(
            "retrying unfinished webhook",
            extra={"provider": event.provider, "event_id": event.event_id, "previous_status": existing.status},
        )
        return self.store.update_where(
            WebhookEvent,
            {"provider": event.provider, "event_id": event.event_id},
            {"status": existing.status},
            {"status": EventStatus.RECEIVED.value, "error_message": None, "updated_at": now},
        )

    def _mark(self, event: InboundEvent, status: EventStatus, error: Optional[str] = None) -> None:
        now = self.clock()
        changes = {"status": status.value, "error_message": error, "updated_at": now}
        if status in (EventStatus.PROCESSED, EventStatus.IGNORED):
            changes["processed_at"] = now
        self.store.update_where(WebhookEvent, {"provider": event.provider, "event_id": event.event_id}, {}, changes)

    def process(self, event: InboundEvent, action: Optional[Action]) -> str:
        """Run ``action`` at most once per event.

        ``action`` is ``None`` for event types nothing is reconciled against.
        Errors are recorded on the entry and re-raised so the provider sees a
        failure and redelivers.
        """
        context = {"provider": event.provider, "event_id": event.event_id, "event_type": event.event_type}
        if not self._claim(event):
            logger.info("duplicate webhook ignored", extra=context)
            return DUPLICATE

        if action is None:
            self._mark(event, EventStatus.IGNORED)
            logger.info("webhook type not handled", extra=context)
            return IGNORED

        self._mark(event, EventStatus.PROCESSING)
        try:
            result = action()
        except BillingError as exc:
            self._mark(event, EventStatus.FAILED, exc.message)
            logger.error("webhook processing failed: %s", exc.message, extra={**context, **exc.context})
            raise
        except Exception as exc:
            self._mark(event, EventStatus.FAILED, str(exc) or type(exc).__name__)
            logger.exception("webhook processing crashed", extra=context)
            raise

        if result is None:
            self._mark(event, EventStatus.IGNORED)
            return IGNORED
        self._mark(event, EventStatus.PROCESSED)
        logger.info("webhook processed", extra=context)
        return PROCESSED
