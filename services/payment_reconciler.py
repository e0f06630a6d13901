"""
Payment Status Reconciler

Brings pending payments to a terminal state from three directions:
- gateway webhooks (collecting gateway and card gateway)
- explicit polls from the client (GET /payments/momo/{id}, POST /payments/{id}/confirm)
- the background sweep over stale pending mobile money payments

A collecting-gateway webhook is never trusted on its own: the status is
re-read from the gateway before any transition. Every path ends in
PaymentSideEffects, whose conditional claim makes concurrent webhook and
poll deliveries safe.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from config import Config, MonetizationSettings, get_settings
from database import managed_session
from models import Payment, PaymentProvider, PaymentState, WebhookEventLedger
from services.lanari_pay_service import GatewayStatus, LanariPayService, get_lanari_pay_service
from services.ledger_service import LedgerService
from services.payment_side_effects import PaymentOutcome, PaymentSideEffects
from services.stripe_service import StripeService, get_stripe_service
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    GatewayFailure, GatewayTimeout, MonetizationError, NotFound, ValidationError, error_message,
)

logger = logging.getLogger(__name__)

COLLECTING_PROVIDER = PaymentProvider.LANARI_PAY.value
CARD_PROVIDER = PaymentProvider.STRIPE.value

CARD_SUCCEEDED_EVENT = "payment_intent.succeeded"
CARD_FAILED_EVENT = "payment_intent.payment_failed"
CARD_CANCELED_EVENT = "payment_intent.canceled"


class WebhookEventStatus:
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class RecordedEvent:
    ledger_id: Optional[int]
    is_duplicate: bool
    previous_status: Optional[str] = None


def _first(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def outcome_to_dict(outcome: PaymentOutcome) -> Dict[str, Any]:
    return {
        "success": True,
        "paymentId": outcome.payment_id,
        "transactionId": outcome.reference_id or outcome.client_reference,
        "referenceId": outcome.client_reference,
        "status": outcome.gateway_status,
        "state": outcome.state.value,
        "expiresAt": outcome.expires_at.isoformat() if outcome.expires_at else None,
        "failureReason": outcome.failure_reason,
    }


class PaymentReconciler:
    def __init__(
        self,
        settings: Optional[MonetizationSettings] = None,
        lanari_pay: Optional[LanariPayService] = None,
        stripe_service: Optional[StripeService] = None,
        ledger: Optional[LedgerService] = None,
        side_effects: Optional[PaymentSideEffects] = None,
    ):
        self.settings = settings or get_settings()
        self._lanari_pay = lanari_pay
        self._stripe = stripe_service
        self.ledger = ledger or LedgerService(self.settings)
        self.side_effects = side_effects or PaymentSideEffects(self.settings, ledger=self.ledger)

    @property
    def lanari_pay(self) -> LanariPayService:
        if self._lanari_pay is None:
            self._lanari_pay = get_lanari_pay_service()
        return self._lanari_pay

    @property
    def stripe(self) -> StripeService:
        if self._stripe is None:
            self._stripe = get_stripe_service()
        return self._stripe

    # ------------------------------------------------------------------
    # Polling

    def _snapshot(self, payment_id: int) -> Payment:
        with managed_session() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFound(f"Payment {payment_id} not found", payment_id=payment_id)
            session.expunge(payment)
            return payment

    def resolve_payment_id(self, transaction_id: str) -> int:
        """Map a gateway reference, client reference or numeric id to a payment id"""
        with managed_session() as session:
            payment = self.ledger.find_payment(session, transaction_id)
            if payment is None and str(transaction_id).isdigit():
                payment = session.get(Payment, int(transaction_id))
            if payment is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            return payment.id

    async def poll_status(self, payment_id: int) -> PaymentOutcome:
        """Re-read a payment's status from its gateway and apply the result"""
        payment = self._snapshot(payment_id)
        if payment.is_terminal:
            return PaymentOutcome.of(payment)

        if payment.provider == CARD_PROVIDER:
            return await self.confirm_card_payment(payment_id)

        if payment.provider != COLLECTING_PROVIDER or not payment.reference_id:
            logger.info(f"⏳ POLL_SKIPPED: payment #{payment_id} has no gateway reference yet")
            return PaymentOutcome.of(payment)

        result = await self.lanari_pay.check_status(payment.reference_id)
        if result.gateway_status == GatewayStatus.SUCCESSFUL:
            return self.side_effects.apply_success(payment_id, result.provider_tx_id)
        if result.gateway_status == GatewayStatus.FAILED:
            return self.side_effects.mark_failed(payment_id, result.failure, result.provider_tx_id)
        return PaymentOutcome.of(payment)

    async def poll_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """GET /payments/momo/{transaction_id}"""
        outcome = await self.poll_status(self.resolve_payment_id(transaction_id))
        return outcome_to_dict(outcome)

    async def confirm_card_payment(self, payment_id: int) -> PaymentOutcome:
        """Re-check a card payment's intent with the card gateway"""
        payment = self._snapshot(payment_id)
        if payment.provider != CARD_PROVIDER:
            raise ValidationError(f"Payment {payment_id} is not a card payment", payment_id=payment_id)
        if payment.is_terminal:
            return PaymentOutcome.of(payment)
        if not payment.reference_id:
            raise ValidationError(f"Payment {payment_id} has no card intent", payment_id=payment_id)

        status = await self.stripe.retrieve_intent_status(payment.reference_id)
        if status.gateway_status == GatewayStatus.SUCCESSFUL:
            return self.side_effects.apply_success(payment_id, status.intent_id)
        if status.gateway_status == GatewayStatus.FAILED:
            return self.side_effects.mark_failed(payment_id, status.failure or "Card payment failed")
        return PaymentOutcome.of(payment)

    # ------------------------------------------------------------------
    # Webhooks

    def _record_event(self, provider: str, event_id: str, event_type: Optional[str],
                      reference: Optional[str], payload: Any) -> RecordedEvent:
        try:
            with atomic_transaction() as session:
                existing = (
                    session.query(WebhookEventLedger)
                    .filter(
                        WebhookEventLedger.event_provider == provider,
                        WebhookEventLedger.event_id == event_id,
                    )
                    .first()
                )
                if existing is not None:
                    session.execute(
                        update(WebhookEventLedger)
                        .where(WebhookEventLedger.id == existing.id)
                        .values(duplicate_count=WebhookEventLedger.duplicate_count + 1)
                        .execution_options(synchronize_session=False)
                    )
                    logger.info(
                        f"🔍 WEBHOOK_DUPLICATE: {provider} event {event_id} (previous status {existing.status})"
                    )
                    return RecordedEvent(existing.id, True, existing.status)

                event = WebhookEventLedger(
                    event_provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    reference=reference,
                    status=WebhookEventStatus.RECEIVED,
                    payload=payload,
                    duplicate_count=0,
                )
                session.add(event)
                session.flush()
                logger.info(f"📝 WEBHOOK_RECORDED: {provider} event {event_id} ref {reference}")
                return RecordedEvent(event.id, False)
        except IntegrityError:
            # Concurrent delivery of the same event
            logger.warning(f"⚠️ WEBHOOK_RACE: {provider} event {event_id} recorded concurrently")
            return RecordedEvent(None, True)

    def _finish_event(self, ledger_id: Optional[int], status: str, result: Optional[str]) -> None:
        if ledger_id is None:
            return
        with atomic_transaction() as session:
            event = session.get(WebhookEventLedger, ledger_id)
            if event is None:
                return
            event.status = status
            event.processing_result = result
            event.processed_at = get_naive_utc_now()

    async def handle_collecting_webhook(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Collecting gateway callback: record, locate, re-verify, apply"""
        if not isinstance(payload, Mapping):
            raise ValidationError("Webhook body must be a JSON object")

        data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
        reference = _first(payload, "transaction_ref", "transaction_id", "referenceId", "reference_id") \
            or _first(data, "transaction_ref", "transaction_id", "reference_id")
        if not reference:
            raise ValidationError("Webhook is missing the transaction reference")
        reported = (_first(payload, "status", "payment_status") or _first(data, "status") or "unknown").lower()

        recorded = self._record_event(
            COLLECTING_PROVIDER, f"{reference}:{reported}", "collection.status", reference, dict(payload)
        )
        if recorded.is_duplicate and recorded.previous_status == WebhookEventStatus.PROCESSED:
            payment_id = self.resolve_payment_id(reference)
            return outcome_to_dict(PaymentOutcome.of(self._snapshot(payment_id)))

        with managed_session() as session:
            payment = self.ledger.find_payment(session, reference)
            payment_id = payment.id if payment else None

        if payment_id is None:
            logger.warning(f"⚠️ WEBHOOK_UNMATCHED: no payment for reference {reference}")
            self._finish_event(recorded.ledger_id, WebhookEventStatus.IGNORED, "no matching payment")
            return {"success": True, "matched": False, "transactionId": reference}

        try:
            outcome = await self.poll_status(payment_id)
        except MonetizationError as e:
            self._finish_event(recorded.ledger_id, WebhookEventStatus.FAILED, e.message)
            raise

        self._finish_event(recorded.ledger_id, WebhookEventStatus.PROCESSED, outcome.state.value)
        logger.info(
            f"📨 WEBHOOK_PROCESSED: ref {reference} reported {reported}, payment #{payment_id} is {outcome.state.value}"
        )
        return outcome_to_dict(outcome)

    async def handle_card_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Card gateway callback; the signature is verified before anything is recorded"""
        event = self.stripe.construct_webhook_event(payload, signature)
        event_id = event["id"]
        event_type = event["type"]
        intent = event["data"]["object"]
        intent_id = intent.get("id")

        recorded = self._record_event(CARD_PROVIDER, event_id, event_type, intent_id, {"type": event_type, "intent": intent_id})
        if recorded.is_duplicate and recorded.previous_status == WebhookEventStatus.PROCESSED:
            return {"received": True, "duplicate": True}

        if event_type not in (CARD_SUCCEEDED_EVENT, CARD_FAILED_EVENT, CARD_CANCELED_EVENT):
            self._finish_event(recorded.ledger_id, WebhookEventStatus.IGNORED, "unhandled event type")
            return {"received": True, "handled": False}

        with managed_session() as session:
            payment = self.ledger.find_payment(session, intent_id)
            if payment is None:
                metadata_id = (intent.get("metadata") or {}).get("payment_id")
                if metadata_id and str(metadata_id).isdigit():
                    payment = session.get(Payment, int(metadata_id))
            payment_id = payment.id if payment else None

        if payment_id is None:
            logger.warning(f"⚠️ CARD_WEBHOOK_UNMATCHED: no payment for intent {intent_id}")
            self._finish_event(recorded.ledger_id, WebhookEventStatus.IGNORED, "no matching payment")
            return {"received": True, "handled": False}

        last_error = intent.get("last_payment_error") or {}
        if event_type == CARD_SUCCEEDED_EVENT:
            outcome = self.side_effects.apply_success(payment_id, intent_id)
        elif event_type == CARD_FAILED_EVENT:
            # The customer may still retry the same intent with another card
            outcome = self.side_effects.record_decline(payment_id, last_error.get("message"))
        else:
            reason = intent.get("cancellation_reason") or last_error.get("message") or "Card payment canceled"
            outcome = self.side_effects.mark_failed(payment_id, reason)

        self._finish_event(recorded.ledger_id, WebhookEventStatus.PROCESSED, outcome.state.value)
        return {"received": True, "handled": True, "paymentId": payment_id, "status": outcome.gateway_status}

    # ------------------------------------------------------------------
    # Background sweep

    async def reconcile_stale_payments(self, batch_size: int = 100) -> Dict[str, int]:
        """Poll pending mobile money payments; expire the ones nobody will ever confirm"""
        now = get_naive_utc_now()
        min_age = now - timedelta(seconds=Config.PENDING_PAYMENT_MIN_AGE_SECONDS)
        max_age = now - timedelta(hours=Config.PENDING_PAYMENT_MAX_AGE_HOURS)

        with managed_session() as session:
            rows = (
                session.query(Payment.id, Payment.reference_id, Payment.created_at)
                .filter(
                    Payment.state == PaymentState.PENDING.value,
                    Payment.provider == COLLECTING_PROVIDER,
                    Payment.created_at <= min_age,
                )
                .order_by(Payment.created_at)
                .limit(batch_size)
                .all()
            )
            batch = [(row.id, row.reference_id, row.created_at) for row in rows]

        stats = {"checked": 0, "succeeded": 0, "failed": 0, "expired": 0, "pending": 0, "errors": 0}
        for payment_id, reference_id, created_at in batch:
            stats["checked"] += 1
            try:
                outcome = await self.poll_status(payment_id) if reference_id else None
            except (GatewayTimeout, GatewayFailure) as e:
                stats["errors"] += 1
                logger.warning(f"⚠️ RECONCILE_POLL_FAILED: payment #{payment_id}: {error_message(e)}")
                continue
            except MonetizationError as e:
                stats["errors"] += 1
                logger.error(f"❌ RECONCILE_ERROR: payment #{payment_id}: {e.message}")
                continue

            if outcome is not None and outcome.state == PaymentState.SUCCEEDED:
                stats["succeeded"] += 1
            elif outcome is not None and outcome.state == PaymentState.FAILED:
                stats["failed"] += 1
            elif created_at <= max_age:
                self.side_effects.mark_failed(payment_id, "Payment expired without gateway confirmation")
                stats["expired"] += 1
            else:
                stats["pending"] += 1

        if batch:
            logger.info(
                f"🔁 RECONCILE_COMPLETE: checked {stats['checked']}, succeeded {stats['succeeded']}, "
                f"failed {stats['failed']}, expired {stats['expired']}, errors {stats['errors']}"
            )
        return stats


_payment_reconciler: Optional[PaymentReconciler] = None


def get_payment_reconciler() -> PaymentReconciler:
    global _payment_reconciler
    if _payment_reconciler is None:
        _payment_reconciler = PaymentReconciler()
    return _payment_reconciler
