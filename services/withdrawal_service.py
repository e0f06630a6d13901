"""
Withdrawal Orchestrator
Creator payouts: request -> approve (disbursement) -> complete, or reject.

Balance movements per step:
    request   pending -> processing
    approve   none (money leaves through the disbursing gateway)
    complete  processing -> available
    reject    processing -> pending

An approval claim whose payout outcome is unknown (gateway timeout, or a
failed write after the money left) is held and blocks reject until
reconcile_claimed_withdrawals has checked the payout with the gateway.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from config import Config, MonetizationSettings, get_settings
from database import managed_session
from models import (
    OutboxEventType, PayoutMethod, User, Withdrawal, WithdrawalKind, WithdrawalState,
)
from services.lanari_pay_service import LanariPayService, get_lanari_pay_service
from services.ledger_service import LedgerService, withdrawal_to_dict
from services.outbox_service import OutboxService, get_outbox_service
from utils.atomic_transactions import atomic_transaction, locked_user, locked_withdrawal
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    GatewayFailure, GatewayTimeout, InsufficientBalance, InvalidStateTransition,
    MonetizationError, SideEffectFailure, ValidationError, error_message,
)
from utils.input_validation import InputValidator
from utils.payment_state_validator import WithdrawalStateValidator

logger = logging.getLogger(__name__)

ACTIONS = ("approve", "complete", "reject")


def payout_reference(withdrawal_id: int) -> str:
    return f"withdrawal_{withdrawal_id}"


class WithdrawalService:
    def __init__(
        self,
        settings: Optional[MonetizationSettings] = None,
        lanari_pay: Optional[LanariPayService] = None,
        ledger: Optional[LedgerService] = None,
        outbox: Optional[OutboxService] = None,
    ):
        self.settings = settings or get_settings()
        self._lanari_pay = lanari_pay
        self.ledger = ledger or LedgerService(self.settings)
        self.outbox = outbox or get_outbox_service()

    @property
    def lanari_pay(self) -> LanariPayService:
        if self._lanari_pay is None:
            self._lanari_pay = get_lanari_pay_service()
        return self._lanari_pay

    def request(
        self,
        user_id: int,
        amount: Decimal,
        method: PayoutMethod = PayoutMethod.MOMO,
        destination: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Reserve part of a creator's pending balance for payout"""
        minimum = self.settings.minimum_withdrawal
        if amount < minimum:
            raise ValidationError(
                f"Minimum withdrawal is {minimum} RWF", minimum=float(minimum)
            )

        with atomic_transaction() as session:
            user = locked_user(session, user_id)
            if user.pending_balance < amount:
                logger.warning(
                    f"❌ WITHDRAWAL_INSUFFICIENT_BALANCE: user {user_id} requested {amount}, "
                    f"pending {user.pending_balance}"
                )
                raise InsufficientBalance(
                    f"Insufficient balance: requested {amount} RWF, available {user.pending_balance} RWF",
                    available=float(user.pending_balance),
                )

            destination = destination or user.payout_phone
            if method == PayoutMethod.MOMO:
                if not destination:
                    raise ValidationError("No mobile money number configured for payouts")
                destination = InputValidator.normalize_momo_phone(destination)
            elif not destination:
                raise ValidationError(f"A destination is required for {method.value} payouts")

            self.ledger.reserve_for_withdrawal(session, user_id, amount)
            now = get_naive_utc_now()
            withdrawal = Withdrawal(
                user_id=user_id,
                amount=amount,
                method=method.value,
                destination=destination,
                kind=WithdrawalKind.MANUAL_WITHDRAWAL.value,
                state=WithdrawalState.PENDING.value,
                description=f"Creator withdrawal via {method.value}",
                requested_at=now,
                updated_at=now,
            )
            session.add(withdrawal)
            session.flush()
            result = withdrawal_to_dict(withdrawal)

        logger.info(f"💸 WITHDRAWAL_REQUESTED: #{result['id']} user {user_id} {amount} RWF via {method.value}")
        return result

    async def approve(self, withdrawal_id: int) -> Dict[str, Any]:
        """Claim a pending withdrawal and disburse it"""
        claim_time = get_naive_utc_now()
        with atomic_transaction() as session:
            claimed = session.execute(
                update(Withdrawal)
                .where(
                    Withdrawal.id == withdrawal_id,
                    Withdrawal.kind == WithdrawalKind.MANUAL_WITHDRAWAL.value,
                    Withdrawal.state == WithdrawalState.PENDING.value,
                    Withdrawal.approval_claimed_at.is_(None),
                )
                .values(approval_claimed_at=claim_time)
                .execution_options(synchronize_session=False)
            )
            withdrawal = locked_withdrawal(session, withdrawal_id)
            if claimed.rowcount != 1:
                self._raise_unclaimable(withdrawal, WithdrawalState.PROCESSING)
            amount = withdrawal.amount
            method = PayoutMethod(withdrawal.method)
            destination = withdrawal.destination

        gateway_ref = payout_reference(withdrawal_id)
        provider_tx_id = None
        if method == PayoutMethod.MOMO:
            try:
                result = await self.lanari_pay.send_money(
                    amount, destination, gateway_ref, f"CinemaRwa creator payout {withdrawal_id}"
                )
            except GatewayTimeout as e:
                # The money may already be on its way; the claim stays until the gateway answers
                self._hold_unconfirmed(withdrawal_id, f"Payout outcome unknown: {e.message}")
                raise GatewayTimeout(
                    "Payout not confirmed by the gateway; it will be verified before any further action",
                    withdrawal_id=withdrawal_id,
                )
            except GatewayFailure as e:
                self._release_claim(withdrawal_id, error_message(e))
                raise GatewayFailure(f"Payout could not be sent: {e.message}", withdrawal_id=withdrawal_id)

            if not result.accepted:
                self._release_claim(withdrawal_id, result.failure)
                raise GatewayFailure(f"Payout rejected: {result.failure}", withdrawal_id=withdrawal_id)
            provider_tx_id = result.provider_tx_id
        else:
            logger.info(f"🏦 MANUAL_PAYOUT: withdrawal #{withdrawal_id} via {method.value} settled off-platform")

        try:
            response = self._mark_processing(withdrawal_id, gateway_ref, provider_tx_id)
        except SQLAlchemyError as e:
            logger.critical(
                f"🚨 WITHDRAWAL_RECORD_FAILED: #{withdrawal_id} payout {gateway_ref} (tx {provider_tx_id}) "
                f"was sent but could not be recorded: {e}"
            )
            try:
                self._hold_unconfirmed(withdrawal_id, f"Payout sent (tx {provider_tx_id}) but not recorded")
            except SQLAlchemyError as hold_error:
                # The claim itself stays set, so the stale-claim sweep still picks it up
                logger.error(f"❌ WITHDRAWAL_HOLD_FAILED: #{withdrawal_id}: {hold_error}")
            raise SideEffectFailure(
                "Payout sent but the withdrawal could not be updated; it will be reconciled",
                withdrawal_id=withdrawal_id,
                gateway_ref=gateway_ref,
            )

        logger.info(f"✅ WITHDRAWAL_APPROVED: #{withdrawal_id} {amount} RWF sent (tx {provider_tx_id})")
        return response

    async def verify_payout(self, withdrawal_id: int) -> Dict[str, Any]:
        """Resolve a claimed withdrawal whose disbursement outcome was never recorded"""
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            if withdrawal.state != WithdrawalState.PENDING.value or withdrawal.approval_claimed_at is None:
                return withdrawal_to_dict(withdrawal)
            method = PayoutMethod(withdrawal.method)
            gateway_ref = withdrawal.gateway_ref or payout_reference(withdrawal_id)

        if method != PayoutMethod.MOMO:
            # Off-platform payouts never reach a gateway; only the approval write was lost
            return self._release_claim(withdrawal_id, "Approval interrupted; approve again")

        result = await self.lanari_pay.check_status(gateway_ref)
        if result.is_successful:
            response = self._mark_processing(withdrawal_id, gateway_ref, result.provider_tx_id)
            logger.info(f"✅ WITHDRAWAL_PAYOUT_CONFIRMED: #{withdrawal_id} tx {result.provider_tx_id}")
            return response
        if result.is_failed:
            return self._release_claim(withdrawal_id, result.failure or "Payout failed at the gateway")

        logger.warning(f"⏳ WITHDRAWAL_PAYOUT_UNRESOLVED: #{withdrawal_id} still pending at the gateway")
        return self._hold_unconfirmed(withdrawal_id, "Payout still pending at the gateway")

    async def reconcile_claimed_withdrawals(self, batch_size: int = 50) -> Dict[str, int]:
        """Background sweep over unconfirmed payouts and approval claims that never finished"""
        stale_before = get_naive_utc_now() - timedelta(minutes=Config.WITHDRAWAL_CLAIM_TIMEOUT_MINUTES)
        with managed_session() as session:
            ids = [
                row.id
                for row in session.query(Withdrawal.id)
                .filter(
                    Withdrawal.kind == WithdrawalKind.MANUAL_WITHDRAWAL.value,
                    Withdrawal.state == WithdrawalState.PENDING.value,
                    Withdrawal.approval_claimed_at.isnot(None),
                    or_(
                        Withdrawal.payout_unconfirmed.is_(True),
                        Withdrawal.approval_claimed_at <= stale_before,
                    ),
                )
                .order_by(Withdrawal.approval_claimed_at)
                .limit(batch_size)
                .all()
            ]

        stats = {"checked": 0, "processing": 0, "released": 0, "unresolved": 0, "errors": 0}
        for withdrawal_id in ids:
            stats["checked"] += 1
            try:
                result = await self.verify_payout(withdrawal_id)
            except (MonetizationError, SQLAlchemyError) as e:
                stats["errors"] += 1
                logger.warning(f"⚠️ WITHDRAWAL_VERIFY_FAILED: #{withdrawal_id}: {error_message(e)}")
                continue

            if result["status"] == WithdrawalState.PROCESSING.value:
                stats["processing"] += 1
            elif result["payoutUnconfirmed"]:
                stats["unresolved"] += 1
            else:
                stats["released"] += 1

        if ids:
            logger.info(
                f"🔁 WITHDRAWAL_RECONCILE_COMPLETE: checked {stats['checked']}, processing {stats['processing']}, "
                f"released {stats['released']}, unresolved {stats['unresolved']}, errors {stats['errors']}"
            )
        return stats

    def complete(self, withdrawal_id: int) -> Dict[str, Any]:
        """Confirm a disbursed withdrawal: processing -> available"""
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            self._ensure_manual(withdrawal)
            WithdrawalStateValidator.ensure_transition(
                WithdrawalState(withdrawal.state), WithdrawalState.COMPLETED, withdrawal_id
            )
            self.ledger.complete_withdrawal(session, withdrawal.user_id, withdrawal.amount)
            now = get_naive_utc_now()
            withdrawal.state = WithdrawalState.COMPLETED.value
            withdrawal.completed_at = now
            withdrawal.updated_at = now
            self._queue_status_email(session, withdrawal)
            response = withdrawal_to_dict(withdrawal)

        logger.info(f"🏁 WITHDRAWAL_COMPLETED: #{withdrawal_id}")
        return response

    def reject(self, withdrawal_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """Refuse a pending withdrawal and return the money to the pending balance"""
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            self._ensure_manual(withdrawal)
            if withdrawal.state == WithdrawalState.PENDING.value and withdrawal.approval_claimed_at is not None:
                if withdrawal.payout_unconfirmed:
                    raise InvalidStateTransition(
                        f"Withdrawal {withdrawal_id} has a payout awaiting gateway confirmation",
                        withdrawal_id=withdrawal_id,
                    )
                raise InvalidStateTransition(
                    f"Withdrawal {withdrawal_id} is being approved", withdrawal_id=withdrawal_id
                )
            WithdrawalStateValidator.ensure_transition(
                WithdrawalState(withdrawal.state), WithdrawalState.REJECTED, withdrawal_id
            )
            self.ledger.reject_withdrawal(session, withdrawal.user_id, withdrawal.amount)
            now = get_naive_utc_now()
            withdrawal.state = WithdrawalState.REJECTED.value
            withdrawal.failure_reason = (reason or "Rejected by administrator")[:500]
            withdrawal.processed_at = now
            withdrawal.updated_at = now
            self._queue_status_email(session, withdrawal, reason=withdrawal.failure_reason)
            response = withdrawal_to_dict(withdrawal)

        logger.info(f"🚫 WITHDRAWAL_REJECTED: #{withdrawal_id}: {reason}")
        return response

    async def handle_action(self, withdrawal_id: int, action: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Dispatch an admin action from PATCH /withdrawals/{id}"""
        action = (action or "").strip().lower()
        if action == "approve":
            return await self.approve(withdrawal_id)
        if action == "complete":
            return self.complete(withdrawal_id)
        if action == "reject":
            return self.reject(withdrawal_id, reason)
        raise ValidationError(f"action must be one of {list(ACTIONS)}")

    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_manual(withdrawal: Withdrawal) -> None:
        if withdrawal.kind != WithdrawalKind.MANUAL_WITHDRAWAL.value:
            raise InvalidStateTransition(
                f"Withdrawal {withdrawal.id} is an automatic {withdrawal.kind} record",
                withdrawal_id=withdrawal.id,
            )

    def _raise_unclaimable(self, withdrawal: Withdrawal, target: WithdrawalState) -> None:
        self._ensure_manual(withdrawal)
        if withdrawal.state == WithdrawalState.PENDING.value:
            raise InvalidStateTransition(
                f"Withdrawal {withdrawal.id} is already being approved", withdrawal_id=withdrawal.id
            )
        WithdrawalStateValidator.ensure_transition(WithdrawalState(withdrawal.state), target, withdrawal.id)

    def _mark_processing(
        self, withdrawal_id: int, gateway_ref: str, provider_tx_id: Optional[str]
    ) -> Dict[str, Any]:
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            WithdrawalStateValidator.ensure_transition(
                WithdrawalState(withdrawal.state), WithdrawalState.PROCESSING, withdrawal_id
            )
            now = get_naive_utc_now()
            withdrawal.state = WithdrawalState.PROCESSING.value
            withdrawal.gateway_ref = gateway_ref
            withdrawal.transaction_id = provider_tx_id
            withdrawal.failure_reason = None
            withdrawal.payout_unconfirmed = False
            withdrawal.processed_at = now
            withdrawal.updated_at = now
            self._queue_status_email(session, withdrawal)
            return withdrawal_to_dict(withdrawal)

    def _hold_unconfirmed(self, withdrawal_id: int, reason: str) -> Dict[str, Any]:
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            withdrawal.payout_unconfirmed = True
            withdrawal.gateway_ref = withdrawal.gateway_ref or payout_reference(withdrawal_id)
            withdrawal.failure_reason = reason[:500]
            withdrawal.updated_at = get_naive_utc_now()
            response = withdrawal_to_dict(withdrawal)
        logger.warning(f"⏳ WITHDRAWAL_PAYOUT_UNCONFIRMED: #{withdrawal_id}: {reason}")
        return response

    def _release_claim(self, withdrawal_id: int, reason: Optional[str]) -> Dict[str, Any]:
        with atomic_transaction() as session:
            withdrawal = locked_withdrawal(session, withdrawal_id)
            withdrawal.approval_claimed_at = None
            withdrawal.payout_unconfirmed = False
            withdrawal.failure_reason = (reason or "Payout failed")[:500]
            withdrawal.updated_at = get_naive_utc_now()
            response = withdrawal_to_dict(withdrawal)
        logger.warning(f"⚠️ WITHDRAWAL_PAYOUT_FAILED: #{withdrawal_id}: {reason}")
        return response

    def _queue_status_email(self, session, withdrawal: Withdrawal, reason: Optional[str] = None) -> None:
        user = session.get(User, withdrawal.user_id)
        if user is None or not user.email:
            return
        self.outbox.append(
            session,
            OutboxEventType.WITHDRAWAL_STATUS_EMAIL,
            withdrawal.id,
            {
                "email": user.email,
                "name": user.name,
                "amount": str(withdrawal.amount),
                "status": withdrawal.state,
                "reason": reason,
            },
        )


_withdrawal_service: Optional[WithdrawalService] = None


def get_withdrawal_service() -> WithdrawalService:
    global _withdrawal_service
    if _withdrawal_service is None:
        _withdrawal_service = WithdrawalService()
    return _withdrawal_service
