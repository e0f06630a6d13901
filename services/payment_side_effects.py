"""
Payment side effects
Everything that follows a payment becoming successful, applied exactly once
in a single database transaction:

1. pending -> succeeded, claiming side_effects_applied (conditional UPDATE)
2. entitlement grant (title, series or subscription)
3. creator credit (guarded by ledger_applied)
4. content revenue accumulator
5. completed split tracking withdrawals (mobile money only)
6. confirmation email appended to the outbox

If any step fails the transaction rolls back and the payment stays pending
for the reconciler to retry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import MonetizationSettings, get_settings
from models import (
    AccessPeriod, Content, OutboxEventType, Payment, PaymentKind, PaymentProvider,
    PaymentState, SubscriptionPeriod, User,
)
from services.entitlement_service import EntitlementService
from services.ledger_service import LedgerService
from services.outbox_service import OutboxService, get_outbox_service
from utils.atomic_transactions import atomic_transaction, locked_payment
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    InvalidStateTransition, MonetizationError, SideEffectFailure,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    """Snapshot of a payment after an orchestration or reconciliation step"""
    payment_id: int
    state: PaymentState
    reference_id: Optional[str]
    client_reference: str
    expires_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    applied_now: bool = False

    @classmethod
    def of(cls, payment: Payment, applied_now: bool = False) -> "PaymentOutcome":
        return cls(
            payment_id=payment.id,
            state=PaymentState(payment.state),
            reference_id=payment.reference_id,
            client_reference=payment.client_reference,
            expires_at=payment.expires_at,
            failure_reason=payment.failure_reason,
            applied_now=applied_now,
        )

    @property
    def gateway_status(self) -> str:
        return {
            PaymentState.SUCCEEDED: "SUCCESSFUL",
            PaymentState.FAILED: "FAILED",
        }.get(self.state, "PENDING")


class PaymentSideEffects:
    def __init__(
        self,
        settings: Optional[MonetizationSettings] = None,
        entitlements: Optional[EntitlementService] = None,
        ledger: Optional[LedgerService] = None,
        outbox: Optional[OutboxService] = None,
    ):
        self.settings = settings or get_settings()
        self.entitlements = entitlements or EntitlementService(self.settings)
        self.ledger = ledger or LedgerService(self.settings)
        self.outbox = outbox or get_outbox_service()

    def apply_success(
        self,
        payment_id: int,
        gateway_tx_id: Optional[str] = None,
        record_split: bool = True,
    ) -> PaymentOutcome:
        """Mark a payment succeeded and run its side effects, once"""
        try:
            with atomic_transaction() as session:
                claimed = self.ledger.claim_success(session, payment_id, gateway_tx_id)
                payment = locked_payment(session, payment_id)
                if not claimed:
                    if payment.state == PaymentState.FAILED.value:
                        raise InvalidStateTransition(
                            f"Payment {payment_id} already failed", payment_id=payment_id
                        )
                    logger.info(f"⏭️ SIDE_EFFECTS_ALREADY_APPLIED: payment #{payment_id}")
                    return PaymentOutcome.of(payment)

                self._apply(session, payment, record_split)
                outcome = PaymentOutcome.of(payment, applied_now=True)
        except MonetizationError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"❌ SIDE_EFFECTS_FAILED: payment #{payment_id}: {e}")
            raise SideEffectFailure(
                "Payment confirmed but access could not be granted yet; it will be retried",
                payment_id=payment_id,
            )

        logger.info(
            f"✅ PAYMENT_SUCCEEDED: #{payment_id} side effects applied (expires {outcome.expires_at})"
        )
        return outcome

    def _apply(self, session: Session, payment: Payment, record_split: bool) -> None:
        now = get_naive_utc_now()
        kind = payment.payment_kind

        self._grant(session, payment, kind, now)

        if payment.creator_share > 0 and payment.owner_id is not None:
            self.ledger.credit_creator(session, payment.id, payment.owner_id, payment.creator_share)

        revenue_content_id = payment.series_id if kind == PaymentKind.SERIES_ACCESS else payment.content_id
        if revenue_content_id is not None:
            session.execute(
                update(Content)
                .where(Content.id == revenue_content_id)
                .values(
                    total_revenue=Content.total_revenue + payment.creator_share,
                    total_views=Content.total_views + 1,
                )
                .execution_options(synchronize_session=False)
            )

        if record_split and payment.provider == PaymentProvider.LANARI_PAY.value:
            creator_phone = None
            if payment.owner_id is not None:
                owner = session.get(User, payment.owner_id)
                creator_phone = owner.payout_phone if owner else None
            self.ledger.record_split_withdrawals(
                session, payment, self.settings.admin_momo_number, creator_phone
            )

        self._queue_confirmation(session, payment)
        session.flush()

    def _grant(self, session: Session, payment: Payment, kind: PaymentKind, now) -> None:
        if kind in (PaymentKind.MOVIE_WATCH, PaymentKind.MOVIE_DOWNLOAD, PaymentKind.SERIES_EPISODE):
            watch = kind == PaymentKind.MOVIE_WATCH
            if kind == PaymentKind.SERIES_EPISODE:
                watch = (payment.payment_metadata or {}).get("purchase_type", "watch") == "watch"
            entitlement = self.entitlements.grant_title(
                session,
                payment.user_id,
                payment.content_id,
                AccessPeriod(payment.access_period or AccessPeriod.ONE_TIME.value),
                payment.amount,
                payment.id,
                watch=watch,
                now=now,
            )
            payment.expires_at = entitlement.expires_at

        elif kind == PaymentKind.SERIES_ACCESS:
            series_entitlement, _ = self.entitlements.grant_series(
                session,
                payment.user_id,
                payment.series_id,
                AccessPeriod(payment.access_period),
                payment.amount,
                payment.id,
                now=now,
            )
            payment.expires_at = series_entitlement.expires_at

        else:
            user = session.get(User, payment.user_id)
            _, start_at, end_at = EntitlementService.subscription_window(
                user, payment.plan_id, SubscriptionPeriod(payment.subscription_period), now
            )
            self.entitlements.grant_subscription(
                session, payment.user_id, payment.plan_id, payment.subscription_period, end_at, start_at
            )
            payment.expires_at = end_at

    def _queue_confirmation(self, session: Session, payment: Payment) -> None:
        user = session.get(User, payment.user_id)
        email = payment.payer_email or (user.email if user else None)
        if not email:
            return
        title = None
        content_id = payment.series_id if payment.kind == PaymentKind.SERIES_ACCESS.value else payment.content_id
        if content_id is not None:
            content = session.get(Content, content_id)
            title = content.title if content else None
        self.outbox.append(
            session,
            OutboxEventType.PAYMENT_CONFIRMATION_EMAIL,
            payment.id,
            {
                "email": email,
                "name": user.name if user else None,
                "kind": payment.kind,
                "title": title,
                "planId": payment.plan_id,
                "amount": str(payment.amount),
                "reference": payment.reference_id or payment.client_reference,
                "expiresAt": payment.expires_at.isoformat() if payment.expires_at else None,
            },
        )

    def record_decline(self, payment_id: int, reason: Optional[str]) -> PaymentOutcome:
        """Note a declined card attempt; the intent stays open for another card, so the payment stays pending"""
        with atomic_transaction() as session:
            payment = locked_payment(session, payment_id)
            if payment.state == PaymentState.PENDING.value:
                payment.failure_reason = (reason or "Card payment declined")[:500]
                payment.updated_at = get_naive_utc_now()
            outcome = PaymentOutcome.of(payment)
        logger.info(f"💳 CARD_ATTEMPT_DECLINED: payment #{payment_id}: {reason}")
        return outcome

    def mark_failed(self, payment_id: int, reason: Optional[str], gateway_tx_id: Optional[str] = None) -> PaymentOutcome:
        """Record a gateway failure; a payment that already succeeded is left as is"""
        with atomic_transaction() as session:
            payment = locked_payment(session, payment_id)
            if payment.state == PaymentState.SUCCEEDED.value:
                logger.warning(f"⚠️ LATE_FAILURE_IGNORED: payment #{payment_id} already succeeded")
                return PaymentOutcome.of(payment)
            payment = self.ledger.advance_payment(
                session, payment_id, PaymentState.FAILED,
                failure_reason=reason or "Payment failed", gateway_tx_id=gateway_tx_id,
            )
            outcome = PaymentOutcome.of(payment)
        logger.info(f"❌ PAYMENT_FAILED: #{payment_id}: {reason}")
        return outcome
