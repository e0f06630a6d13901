"""
Ledger Service
Records payments and keeps creator balances consistent with them.

Every balance mutation is a single SQL increment guarded in its WHERE clause,
executed in the caller's transaction together with the row it accounts for:

    credit_creator          pending += x, total_earned += x   (once per payment)
    reserve_for_withdrawal  pending -= x, processing += x     (pending >= x)
    complete_withdrawal     processing -= x, available += x   (processing >= x)
    reject_withdrawal       processing -= x, pending += x     (processing >= x)

so total_earned == pending + processing + available holds after every commit.
"""

import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.orm import Session

from config import MonetizationSettings, get_settings
from database import managed_session
from models import (
    Content, Payment, PaymentMethod, PaymentState, User, Withdrawal,
    WithdrawalKind, WithdrawalState,
)
from utils.atomic_transactions import locked_payment
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InsufficientBalance, InvalidStateTransition, NotFound, ValidationError,
)
from utils.payment_state_validator import PaymentStateValidator

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _paginate(page: Any, limit: Any, default_limit: int = 20):
    """Normalise page/limit query values; limit is capped at MAX_PAGE_SIZE"""
    try:
        page = int(page) if page not in (None, "") else 1
        limit = int(limit) if limit not in (None, "") else default_limit
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0}


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "userId": payment.user_id,
        "contentId": payment.content_id,
        "seriesId": payment.series_id,
        "planId": payment.plan_id,
        "kind": payment.kind,
        "method": payment.method,
        "provider": payment.provider,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "originalAmount": float(payment.original_amount),
        "originalCurrency": payment.original_currency,
        "exchangeRate": float(payment.exchange_rate),
        "filmmakerAmount": float(payment.creator_share),
        "adminAmount": float(payment.platform_share),
        "ownerId": payment.owner_id,
        "accessPeriod": payment.access_period,
        "subscriptionPeriod": payment.subscription_period,
        "expiresAt": _iso(payment.expires_at),
        "status": payment.state,
        "referenceId": payment.reference_id,
        "clientReference": payment.client_reference,
        "gatewayTransactionId": payment.gateway_tx_id,
        "failureReason": payment.failure_reason,
        "createdAt": _iso(payment.created_at),
        "updatedAt": _iso(payment.updated_at),
    }


def withdrawal_to_dict(withdrawal: Withdrawal) -> Dict[str, Any]:
    return {
        "id": withdrawal.id,
        "userId": withdrawal.user_id,
        "amount": float(withdrawal.amount),
        "currency": withdrawal.currency,
        "method": withdrawal.method,
        "destination": withdrawal.destination,
        "kind": withdrawal.kind,
        "status": withdrawal.state,
        "paymentId": withdrawal.payment_id,
        "gatewayRef": withdrawal.gateway_ref,
        "transactionId": withdrawal.transaction_id,
        "description": withdrawal.description,
        "failureReason": withdrawal.failure_reason,
        "payoutUnconfirmed": bool(withdrawal.payout_unconfirmed),
        "requestedAt": _iso(withdrawal.requested_at),
        "processedAt": _iso(withdrawal.processed_at),
        "completedAt": _iso(withdrawal.completed_at),
    }


class LedgerService:
    """Payment records, creator balances and withdrawal accounting"""

    def __init__(self, settings: Optional[MonetizationSettings] = None):
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(self, session: Session, payment: Payment) -> Payment:
        """Insert a new payment in pending"""
        payment.state = PaymentState.PENDING.value
        payment.ledger_applied = False
        payment.side_effects_applied = False
        session.add(payment)
        session.flush()
        logger.info(
            f"📝 PAYMENT_RECORDED: #{payment.id} {payment.kind} {payment.amount} RWF "
            f"user {payment.user_id} ref {payment.client_reference}"
        )
        return payment

    def find_payment(self, session: Session, reference: str) -> Optional[Payment]:
        """Look a payment up by gateway reference or our own client reference"""
        if not reference:
            return None
        return (
            session.query(Payment)
            .filter(or_(Payment.reference_id == reference, Payment.client_reference == reference))
            .first()
        )

    def advance_payment(
        self,
        session: Session,
        payment_id: int,
        new_state: PaymentState,
        failure_reason: Optional[str] = None,
        gateway_tx_id: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Payment:
        """Move a payment forward under a row lock; repeating the current state is a no-op"""
        payment = locked_payment(session, payment_id)
        current = PaymentState(payment.state)
        if current == new_state:
            return payment

        PaymentStateValidator.ensure_transition(current, new_state, payment_id)

        payment.state = new_state.value
        if failure_reason is not None:
            payment.failure_reason = failure_reason[:500]
        if gateway_tx_id:
            payment.gateway_tx_id = gateway_tx_id
        if reference_id and not payment.reference_id:
            payment.reference_id = reference_id
        payment.updated_at = get_naive_utc_now()
        session.flush()
        logger.info(f"🔄 PAYMENT_ADVANCED: #{payment_id} {current.value} -> {new_state.value}")
        return payment

    def claim_success(self, session: Session, payment_id: int, gateway_tx_id: Optional[str] = None) -> bool:
        """
        Conditional pending -> succeeded transition that also claims the side effects.
        Returns False when another caller already claimed them.
        """
        values = {
            "state": PaymentState.SUCCEEDED.value,
            "side_effects_applied": True,
            "failure_reason": None,
            "updated_at": get_naive_utc_now(),
        }
        if gateway_tx_id:
            values["gateway_tx_id"] = gateway_tx_id
        result = session.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.state == PaymentState.PENDING.value,
                Payment.side_effects_applied.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Creator balances
    # ------------------------------------------------------------------

    def credit_creator(self, session: Session, payment_id: int, owner_id: int, amount: Decimal) -> bool:
        """Credit a creator's pending balance for a payment, at most once"""
        claimed = session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.ledger_applied.is_(False))
            .values(ledger_applied=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"⏭️ CREATOR_CREDIT_SKIPPED: payment #{payment_id} already applied")
            return False

        credited = session.execute(
            update(User)
            .where(User.id == owner_id)
            .values(
                pending_balance=User.pending_balance + amount,
                total_earned=User.total_earned + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if credited.rowcount != 1:
            raise NotFound(f"Owner {owner_id} not found", payment_id=payment_id)

        logger.info(f"💰 CREATOR_CREDITED: user {owner_id} +{amount} RWF (payment #{payment_id})")
        return True

    def reserve_for_withdrawal(self, session: Session, user_id: int, amount: Decimal) -> None:
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.pending_balance >= amount)
            .values(
                pending_balance=User.pending_balance - amount,
                processing_balance=User.processing_balance + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientBalance(
                f"Insufficient balance for a withdrawal of {amount} RWF", user_id=user_id
            )
        logger.info(f"🔒 BALANCE_RESERVED: user {user_id} {amount} RWF pending -> processing")

    def complete_withdrawal(self, session: Session, user_id: int, amount: Decimal) -> None:
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.processing_balance >= amount)
            .values(
                processing_balance=User.processing_balance - amount,
                available_balance=User.available_balance + amount,
                last_withdrawal_at=get_naive_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Processing balance of user {user_id} does not cover {amount} RWF", user_id=user_id
            )
        logger.info(f"✅ BALANCE_WITHDRAWN: user {user_id} {amount} RWF processing -> available")

    def reject_withdrawal(self, session: Session, user_id: int, amount: Decimal) -> None:
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.processing_balance >= amount)
            .values(
                processing_balance=User.processing_balance - amount,
                pending_balance=User.pending_balance + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Processing balance of user {user_id} does not cover {amount} RWF", user_id=user_id
            )
        logger.info(f"↩️ BALANCE_RELEASED: user {user_id} {amount} RWF processing -> pending")

    def record_split_withdrawals(
        self,
        session: Session,
        payment: Payment,
        admin_destination: str,
        creator_destination: Optional[str],
    ) -> List[Withdrawal]:
        """
        Completed tracking rows for a split the collecting gateway already settled:
        admin_fee (booked against the paying customer) and automatic_payout (owner).
        Tracking rows never touch balances.
        """
        now = get_naive_utc_now()
        existing = {
            kind for (kind,) in session.query(Withdrawal.kind).filter(Withdrawal.payment_id == payment.id).all()
        }

        planned = []
        if payment.platform_share > 0:
            planned.append((
                WithdrawalKind.ADMIN_FEE, payment.user_id, payment.platform_share,
                admin_destination, f"admin_{payment.id}",
            ))
        if payment.creator_share > 0 and payment.owner_id is not None:
            planned.append((
                WithdrawalKind.AUTOMATIC_PAYOUT, payment.owner_id, payment.creator_share,
                creator_destination, f"filmmaker_{payment.id}",
            ))

        rows = []
        for kind, user_id, amount, destination, gateway_ref in planned:
            if kind.value in existing:
                continue
            row = Withdrawal(
                user_id=user_id,
                amount=amount,
                currency=payment.currency,
                method=PaymentMethod.MOMO.value,
                destination=destination,
                kind=kind.value,
                state=WithdrawalState.COMPLETED.value,
                payment_id=payment.id,
                gateway_ref=gateway_ref,
                description=f"{kind.value.replace('_', ' ')} for payment {payment.id}",
                requested_at=now,
                processed_at=now,
                completed_at=now,
            )
            session.add(row)
            rows.append(row)

        session.flush()
        if rows:
            logger.info(
                f"🧾 SPLIT_RECORDED: payment #{payment.id} "
                + ", ".join(f"{row.kind}={row.amount}" for row in rows)
            )
        return rows

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_withdrawals(
        self,
        user_id: Optional[int] = None,
        state: Optional[str] = None,
        kind: Optional[str] = None,
        page: Any = 1,
        limit: Any = 20,
    ) -> Dict[str, Any]:
        page, limit = _paginate(page, limit)
        if state is not None:
            try:
                state = WithdrawalState(state).value
            except ValueError:
                raise ValidationError(f"Invalid withdrawal state: {state}")
        if kind is not None:
            try:
                kind = WithdrawalKind(kind).value
            except ValueError:
                raise ValidationError(f"Invalid withdrawal kind: {kind}")

        with managed_session() as session:
            query = session.query(Withdrawal)
            if user_id is not None:
                query = query.filter(Withdrawal.user_id == user_id)
            if state is not None:
                query = query.filter(Withdrawal.state == state)
            if kind is not None:
                query = query.filter(Withdrawal.kind == kind)

            total = query.count()
            withdrawals = (
                query.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return {
                "withdrawals": [withdrawal_to_dict(w) for w in withdrawals],
                "pagination": _pagination(page, limit, total),
            }

    def get_withdrawal(self, withdrawal_id: int) -> Dict[str, Any]:
        with managed_session() as session:
            withdrawal = session.get(Withdrawal, withdrawal_id)
            if withdrawal is None:
                raise NotFound(f"Withdrawal {withdrawal_id} not found")
            details = withdrawal_to_dict(withdrawal)
            user = session.get(User, withdrawal.user_id)
            details["user"] = {"id": user.id, "name": user.name, "email": user.email} if user else None
            details["payment"] = payment_to_dict(withdrawal.payment) if withdrawal.payment else None
            return details

    def finance_summary(self, user_id: int) -> Dict[str, Any]:
        """Balances and withdrawal eligibility for a creator"""
        with managed_session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            minimum = self.settings.minimum_withdrawal
            return {
                "userId": user.id,
                "pending": float(user.pending_balance),
                "processing": float(user.processing_balance),
                "withdrawn": float(user.available_balance),
                "totalEarned": float(user.total_earned),
                "minimumAmount": float(minimum),
                "payoutMethod": user.payout_method,
                "payoutPhone": user.payout_phone,
                "lastWithdrawalDate": _iso(user.last_withdrawal_at),
                "canWithdraw": user.pending_balance >= minimum,
                "currency": "RWF",
            }

    def list_user_payments(
        self, user_id: int, page: Any = 1, limit: Any = 20, state: Optional[str] = None
    ) -> Dict[str, Any]:
        page, limit = _paginate(page, limit)
        if state is not None:
            try:
                state = PaymentState(state).value
            except ValueError:
                raise ValidationError(f"Invalid payment state: {state}")

        with managed_session() as session:
            query = session.query(Payment).filter(Payment.user_id == user_id)
            if state is not None:
                query = query.filter(Payment.state == state)
            total = query.count()
            payments = (
                query.order_by(Payment.created_at.desc(), Payment.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            items = []
            for payment in payments:
                item = payment_to_dict(payment)
                item["contentTitle"] = payment.content.title if payment.content else None
                items.append(item)
            return {"payments": items, "pagination": _pagination(page, limit, total)}

    def movie_analytics(self, movie_id: int) -> Dict[str, Any]:
        """Sales figures for one title from its succeeded payments"""
        with managed_session() as session:
            content = session.get(Content, movie_id)
            if content is None:
                raise NotFound(f"Content {movie_id} not found")

            totals = (
                session.query(
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.amount), 0),
                    func.coalesce(func.sum(Payment.creator_share), 0),
                    func.coalesce(func.sum(Payment.platform_share), 0),
                    func.coalesce(func.sum(case((Payment.method == PaymentMethod.MOMO.value, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((Payment.method == PaymentMethod.CARD.value, 1), else_=0)), 0),
                )
                .filter(
                    Payment.content_id == movie_id,
                    Payment.state == PaymentState.SUCCEEDED.value,
                )
                .one()
            )
            sales, revenue, creator_total, platform_total, momo_count, card_count = totals
            revenue = MonetaryDecimal.quantize(revenue)
            average = MonetaryDecimal.quantize(revenue / sales) if sales else Decimal("0")

            return {
                "movieId": content.id,
                "title": content.title,
                "totalRevenue": float(revenue),
                "totalSales": int(sales),
                "averageSalePrice": float(average),
                "paymentMethods": {"momo": int(momo_count), "card": int(card_count)},
                "filmmakerShare": float(MonetaryDecimal.quantize(creator_total)),
                "platformShare": float(MonetaryDecimal.quantize(platform_total)),
                "creatorRevenue": float(content.total_revenue),
                "totalViews": content.total_views,
            }


_ledger_service: Optional[LedgerService] = None


def get_ledger_service() -> LedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = LedgerService()
    return _ledger_service
