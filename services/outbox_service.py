"""
Outbox for asynchronous side effects.

Events are appended inside the transaction that produced them and delivered
later by the scheduler, so a slow or failing email provider never blocks a
payment or withdrawal transition.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import OutboxEvent, OutboxEventType
from services.email_service import EmailService, get_email_service
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import error_message

logger = logging.getLogger(__name__)


class OutboxService:
    def __init__(self, email_service: Optional[EmailService] = None, max_retries: Optional[int] = None):
        self._email_service = email_service
        self.max_retries = max_retries if max_retries is not None else Config.OUTBOX_MAX_RETRIES

    @property
    def email_service(self) -> EmailService:
        if self._email_service is None:
            self._email_service = get_email_service()
        return self._email_service

    def append(self, session: Session, event_type: OutboxEventType, aggregate_id: Any,
               event_data: Dict[str, Any]) -> OutboxEvent:
        """Queue an event in the caller's transaction"""
        event = OutboxEvent(
            event_type=event_type.value,
            aggregate_id=str(aggregate_id),
            event_data=event_data,
            processed=False,
            retry_count=0,
        )
        session.add(event)
        logger.debug(f"📤 OUTBOX_APPENDED: {event_type.value} for {aggregate_id}")
        return event

    async def drain(self, batch_size: int = 50) -> Dict[str, int]:
        """Deliver pending events; failures are retried until max_retries"""
        with managed_session() as session:
            events: List[OutboxEvent] = (
                session.query(OutboxEvent)
                .filter(OutboxEvent.processed.is_(False), OutboxEvent.retry_count < self.max_retries)
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(batch_size)
                .all()
            )
            batch = [(event.id, event.event_type, dict(event.event_data or {})) for event in events]

        stats = {"processed": 0, "skipped": 0, "failed": 0}
        for event_id, event_type, data in batch:
            try:
                delivered = await self._dispatch(event_type, data)
                outcome = None if delivered else "skipped: email not configured or no recipient"
                self._mark_processed(event_id, outcome)
                stats["processed" if delivered else "skipped"] += 1
            except Exception as e:
                self._mark_failed(event_id, e)
                stats["failed"] += 1
                logger.error(f"❌ OUTBOX_ERROR: event {event_id} ({event_type}) failed: {e}")

        if batch:
            logger.info(
                f"📤 OUTBOX_PROCESSED: {stats['processed']} delivered, "
                f"{stats['skipped']} skipped, {stats['failed']} failed"
            )
        return stats

    async def _dispatch(self, event_type: str, data: Dict[str, Any]) -> bool:
        to_email = data.get("email")
        if not to_email:
            return False
        if event_type == OutboxEventType.PAYMENT_CONFIRMATION_EMAIL.value:
            return await self.email_service.send_payment_confirmation(to_email, data.get("name"), data)
        if event_type == OutboxEventType.WITHDRAWAL_STATUS_EMAIL.value:
            return await self.email_service.send_withdrawal_status(to_email, data.get("name"), data)
        raise ValueError(f"Unknown outbox event type: {event_type}")

    def _mark_processed(self, event_id: int, note: Optional[str]) -> None:
        with managed_session() as session:
            event = session.get(OutboxEvent, event_id)
            if event is None:
                return
            event.processed = True
            event.processed_at = get_naive_utc_now()
            event.last_error = note

    def _mark_failed(self, event_id: int, error: Exception) -> None:
        with managed_session() as session:
            event = session.get(OutboxEvent, event_id)
            if event is None:
                return
            event.retry_count = (event.retry_count or 0) + 1
            event.last_error = error_message(error)
            if event.retry_count >= self.max_retries:
                logger.critical(
                    f"🚨 OUTBOX_GAVE_UP: event {event_id} ({event.event_type}) after {event.retry_count} attempts"
                )


_outbox_service: Optional[OutboxService] = None


def get_outbox_service() -> OutboxService:
    global _outbox_service
    if _outbox_service is None:
        _outbox_service = OutboxService()
    return _outbox_service
