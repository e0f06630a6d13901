"""
Shared fixtures for the monetization core tests

Key components:
1. In-memory SQLite database recreated for every test
2. Factories for users, content and payments
3. Mocked gateways (mobile money and card) and a real outbox with a mocked mailer
4. Service fixtures wired together the way the API wires them
"""

import os

# Must be set before config/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from config import MonetizationSettings
from database import engine, managed_session
from models import (
    Base, Content, ContentKind, ContentStatus, Payment, PaymentKind, PaymentMethod,
    PaymentProvider, PaymentState, User, UserRole,
)
from services.email_service import EmailService
from services.entitlement_service import EntitlementService
from services.lanari_pay_service import (
    CollectionResult, DisbursementResult, GatewayStatus, LanariPayService,
)
from services.ledger_service import LedgerService
from services.outbox_service import OutboxService
from services.payment_orchestrator import PaymentOrchestrator
from services.payment_reconciler import PaymentReconciler
from services.payment_side_effects import PaymentSideEffects
from services.stripe_service import StripeService
from services.withdrawal_service import WithdrawalService
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

CREATOR_PHONE = "0781234567"
PAYER_PHONE = "0788000111"


@pytest.fixture(autouse=True)
def db_schema():
    """Fresh schema for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return MonetizationSettings(
        plan_devices={"basic": 1, "pro": 4},
        insufficient_balance_messages={
            "en": "Insufficient mobile money balance.",
            "rw": "Nta mafaranga ahagije.",
        },
    )


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_user():
    def _make_user(**overrides) -> int:
        values = {
            "name": "Test User",
            "role": UserRole.VIEWER.value,
            "preferred_language": "en",
        }
        values.update(overrides)
        with managed_session() as session:
            user = User(**values)
            session.add(user)
            session.flush()
            return user.id
    return _make_user


@pytest.fixture
def make_content():
    def _make_content(**overrides) -> int:
        values = {
            "kind": ContentKind.MOVIE.value,
            "title": "Imbabazi",
            "status": ContentStatus.APPROVED.value,
            "view_price": Decimal("1000"),
            "download_price": Decimal("2000"),
        }
        values.update(overrides)
        with managed_session() as session:
            content = Content(**values)
            session.add(content)
            session.flush()
            return content.id
    return _make_content


@pytest.fixture
def creator_id(make_user):
    return make_user(
        name="Filmmaker",
        email="filmmaker@example.com",
        role=UserRole.FILMMAKER.value,
        payout_phone=CREATOR_PHONE,
    )


@pytest.fixture
def viewer_id(make_user):
    return make_user(name="Viewer", email="viewer@example.com")


@pytest.fixture
def movie_id(make_content, creator_id):
    return make_content(owner_id=creator_id)


@pytest.fixture
def make_payment():
    def _make_payment(user_id: int, **overrides) -> int:
        values = {
            "user_id": user_id,
            "kind": PaymentKind.MOVIE_WATCH.value,
            "method": PaymentMethod.MOMO.value,
            "provider": PaymentProvider.LANARI_PAY.value,
            "amount": Decimal("1000"),
            "original_amount": Decimal("1000"),
            "original_currency": "RWF",
            "creator_share": Decimal("700"),
            "platform_share": Decimal("300"),
            "creator_percentage": 70,
            "platform_percentage": 30,
            "access_period": "one-time",
            "state": PaymentState.PENDING.value,
            "client_reference": f"momo_{uuid.uuid4().hex[:24]}",
            "payment_metadata": {"purchase_type": "watch"},
        }
        values.update(overrides)
        with managed_session() as session:
            payment = Payment(**values)
            session.add(payment)
            session.flush()
            return payment.id
    return _make_payment


def minutes_ago(minutes: int):
    return get_naive_utc_now() - timedelta(minutes=minutes)


# ============================================================================
# GATEWAYS
# ============================================================================

def collection(status: GatewayStatus, reference: str = "LP-REF-1", **overrides) -> CollectionResult:
    values = {
        "reference_id": reference,
        "gateway_status": status,
        "provider_tx_id": "MTN-TX-1" if status == GatewayStatus.SUCCESSFUL else None,
        "failure": "Payment declined" if status == GatewayStatus.FAILED else None,
        "message": None,
        "insufficient_balance": False,
        "raw": {},
    }
    values.update(overrides)
    return CollectionResult(**values)


@pytest.fixture
def lanari_pay():
    gateway = AsyncMock(spec=LanariPayService)
    gateway.request_to_pay.return_value = collection(GatewayStatus.SUCCESSFUL)
    gateway.check_status.return_value = collection(GatewayStatus.PENDING)
    gateway.send_money.return_value = DisbursementResult(
        reference_id="withdrawal_1", provider_tx_id="PAYOUT-1", failure=None, raw={}
    )
    return gateway


@pytest.fixture
def stripe_gateway():
    gateway = AsyncMock(spec=StripeService)
    gateway.construct_webhook_event = Mock()
    return gateway


@pytest.fixture
def mailer():
    email_service = AsyncMock(spec=EmailService)
    email_service.send_payment_confirmation.return_value = True
    email_service.send_withdrawal_status.return_value = True
    return email_service


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture
def outbox(mailer):
    return OutboxService(email_service=mailer, max_retries=3)


@pytest.fixture
def ledger(settings):
    return LedgerService(settings)


@pytest.fixture
def entitlements(settings):
    return EntitlementService(settings)


@pytest.fixture
def side_effects(settings, entitlements, ledger, outbox):
    return PaymentSideEffects(settings, entitlements=entitlements, ledger=ledger, outbox=outbox)


@pytest.fixture
def orchestrator(settings, lanari_pay, stripe_gateway, ledger, side_effects):
    return PaymentOrchestrator(
        settings,
        lanari_pay=lanari_pay,
        stripe_service=stripe_gateway,
        ledger=ledger,
        side_effects=side_effects,
    )


@pytest.fixture
def reconciler(settings, lanari_pay, stripe_gateway, ledger, side_effects):
    return PaymentReconciler(
        settings,
        lanari_pay=lanari_pay,
        stripe_service=stripe_gateway,
        ledger=ledger,
        side_effects=side_effects,
    )


@pytest.fixture
def withdrawals(settings, lanari_pay, ledger, outbox):
    return WithdrawalService(settings, lanari_pay=lanari_pay, ledger=ledger, outbox=outbox)


def load(model, pk):
    with managed_session() as session:
        obj = session.get(model, pk)
        if obj is not None:
            session.expunge(obj)
        return obj
