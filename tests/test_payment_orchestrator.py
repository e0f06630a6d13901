"""
End-to-end purchase flows through the payment orchestrator
Gateways are mocked; the database, ledger, entitlements and outbox are real.
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from conftest import CREATOR_PHONE, PAYER_PHONE, collection, load
from database import managed_session
from models import (
    AccessPeriod, Content, ContentKind, Currency, EntitlementScope, OutboxEvent,
    OutboxEventType, Payment, PaymentKind, PaymentProvider, PaymentState,
    SubscriptionPeriod, User, Withdrawal, WithdrawalKind,
)
from services.lanari_pay_service import GatewayStatus
from services.payment_orchestrator import PaymentOrchestrator
from services.stripe_service import CardIntent
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import Money
from utils.exception_handler import (
    GatewayFailure, GatewayTimeout, InsufficientBalance, NotFound, OwnerMissing,
    OwnerPayoutMissing, ValidationError,
)
from utils.input_validation import (
    MoviePurchaseRequest, SeriesPurchaseRequest, SubscriptionPurchaseRequest,
)


def movie_request(user_id, movie_id, amount="1000", currency=Currency.RWF, **overrides):
    values = {
        "user_id": user_id,
        "movie_id": movie_id,
        "money": Money(Decimal(amount), currency),
        "phone": PAYER_PHONE,
        "watch": True,
        "access_period": AccessPeriod.ONE_TIME,
    }
    values.update(overrides)
    return MoviePurchaseRequest(**values)


def subscription_request(user_id, plan_id="pro", amount="5000", phone=PAYER_PHONE):
    return SubscriptionPurchaseRequest(
        user_id=user_id,
        plan_id=plan_id,
        period=SubscriptionPeriod.MONTH,
        money=Money(Decimal(amount), Currency.RWF),
        phone=phone,
    )


def payments_for(user_id):
    with managed_session() as session:
        payments = session.query(Payment).filter(Payment.user_id == user_id).all()
        for payment in payments:
            session.expunge(payment)
        return payments


def withdrawals_for(payment_id):
    with managed_session() as session:
        return {
            row.kind: (row.user_id, row.amount)
            for row in session.query(Withdrawal).filter(Withdrawal.payment_id == payment_id).all()
        }


@pytest.fixture
def series_id(make_content, creator_id):
    series = make_content(
        kind=ContentKind.SERIES.value,
        title="Umuryango",
        owner_id=creator_id,
        view_price=Decimal("0"),
        pricing_tiers={"7d": 2000, "30d": 5000},
    )
    for number in range(1, 11):
        make_content(
            kind=ContentKind.EPISODE.value,
            title=f"Umuryango E{number}",
            owner_id=creator_id,
            parent_series_id=series,
            season_number=1,
            episode_number=number,
            view_price=Decimal("300"),
        )
    return series


class TestMovieMomoPurchase:

    @pytest.mark.asyncio
    async def test_immediate_success_applies_every_side_effect(
        self, orchestrator, entitlements, lanari_pay, viewer_id, creator_id, movie_id
    ):
        response = await orchestrator.pay_movie_momo(movie_request(viewer_id, movie_id))

        assert response["success"] is True
        assert response["status"] == "SUCCESSFUL"
        assert response["transactionId"] == "LP-REF-1"
        assert response["distribution"]["filmmakerAmount"] == 700.0
        assert response["distribution"]["adminAmount"] == 300.0
        assert response["expiresAt"] is not None

        call = lanari_pay.request_to_pay.call_args
        assert call.args[1] == PAYER_PHONE
        assert call.kwargs["payout_numbers"] == [
            {"tel": CREATOR_PHONE, "percentage": 70},
            {"tel": "0790019543", "percentage": 30},
        ]

        payment = load(Payment, response["paymentId"])
        assert payment.state == PaymentState.SUCCEEDED.value
        assert payment.side_effects_applied is True
        assert payment.ledger_applied is True
        assert payment.gateway_tx_id == "MTN-TX-1"
        assert payment.expires_at is not None

        creator = load(User, creator_id)
        assert creator.pending_balance == Decimal("700")
        assert creator.total_earned == Decimal("700")

        content = load(Content, movie_id)
        assert content.total_revenue == Decimal("700")
        assert content.total_views == 1

        assert withdrawals_for(payment.id) == {
            WithdrawalKind.ADMIN_FEE.value: (viewer_id, Decimal("300")),
            WithdrawalKind.AUTOMATIC_PAYOUT.value: (creator_id, Decimal("700")),
        }

        access = entitlements.check(viewer_id, movie_id)
        assert access.has_access is True
        assert access.scope == EntitlementScope.TITLE

        with managed_session() as session:
            event = session.query(OutboxEvent).one()
            assert event.event_type == OutboxEventType.PAYMENT_CONFIRMATION_EMAIL.value
            assert event.event_data["email"] == "viewer@example.com"
            assert event.event_data["title"] == "Imbabazi"

    @pytest.mark.asyncio
    async def test_pending_collection_leaves_payment_pending(
        self, orchestrator, lanari_pay, viewer_id, creator_id, movie_id
    ):
        lanari_pay.request_to_pay.return_value = collection(GatewayStatus.PENDING, reference="LP-REF-2")

        response = await orchestrator.pay_movie_momo(movie_request(viewer_id, movie_id))

        assert response["status"] == "PENDING"
        assert response["transactionId"] == "LP-REF-2"
        assert "expiresAt" not in response
        payment = load(Payment, response["paymentId"])
        assert payment.state == PaymentState.PENDING.value
        assert payment.reference_id == "LP-REF-2"
        assert load(User, creator_id).pending_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_foreign_currency_converted_before_split(self, orchestrator, lanari_pay, viewer_id, movie_id):
        response = await orchestrator.pay_movie_momo(
            movie_request(viewer_id, movie_id, amount="2.5", currency=Currency.USD)
        )
        assert response["amount"] == 3000.0
        payment = load(Payment, response["paymentId"])
        assert payment.original_amount == Decimal("2.5")
        assert payment.original_currency == "USD"
        assert payment.creator_share == Decimal("2100")
        assert lanari_pay.request_to_pay.call_args.args[0] == Decimal("3000.00")

    @pytest.mark.asyncio
    async def test_download_never_expires(self, orchestrator, viewer_id, movie_id):
        response = await orchestrator.pay_movie_momo(
            movie_request(viewer_id, movie_id, amount="2000", watch=False)
        )
        payment = load(Payment, response["paymentId"])
        assert payment.kind == PaymentKind.MOVIE_DOWNLOAD.value
        assert payment.expires_at is None

    @pytest.mark.asyncio
    async def test_insufficient_balance_uses_payer_language(
        self, orchestrator, lanari_pay, make_user, movie_id
    ):
        payer_id = make_user(name="Umukiriya", preferred_language="rw")
        lanari_pay.request_to_pay.return_value = collection(
            GatewayStatus.FAILED,
            reference="LP-REF-3",
            failure="Please check users balance",
            insufficient_balance=True,
        )

        with pytest.raises(InsufficientBalance) as exc_info:
            await orchestrator.pay_movie_momo(movie_request(payer_id, movie_id))

        assert exc_info.value.message == "Nta mafaranga ahagije."
        payment = load(Payment, exc_info.value.details["payment_id"])
        assert payment.state == PaymentState.FAILED.value
        assert payment.failure_reason == "Please check users balance"

    @pytest.mark.asyncio
    async def test_declined_collection_raises_gateway_failure(self, orchestrator, lanari_pay, viewer_id, movie_id):
        lanari_pay.request_to_pay.return_value = collection(GatewayStatus.FAILED, reference="LP-REF-4")

        with pytest.raises(GatewayFailure) as exc_info:
            await orchestrator.pay_movie_momo(movie_request(viewer_id, movie_id))

        assert "declined" in exc_info.value.message
        assert load(Payment, exc_info.value.details["payment_id"]).state == PaymentState.FAILED.value

    @pytest.mark.asyncio
    async def test_timeout_keeps_payment_pending_for_reconciler(
        self, orchestrator, lanari_pay, viewer_id, movie_id
    ):
        lanari_pay.request_to_pay.side_effect = GatewayTimeout("Mobile money gateway timed out after 30s")

        with pytest.raises(GatewayTimeout) as exc_info:
            await orchestrator.pay_movie_momo(movie_request(viewer_id, movie_id))

        payment = load(Payment, exc_info.value.details["payment_id"])
        assert payment.state == PaymentState.PENDING.value
        assert payment.reference_id is None

    @pytest.mark.asyncio
    async def test_owner_without_payout_phone(self, orchestrator, lanari_pay, viewer_id, make_user, make_content):
        owner_id = make_user(name="No Phone", role="filmmaker")
        movie = make_content(owner_id=owner_id)

        with pytest.raises(OwnerPayoutMissing):
            await orchestrator.pay_movie_momo(movie_request(viewer_id, movie))

        lanari_pay.request_to_pay.assert_not_called()
        assert payments_for(viewer_id) == []

    @pytest.mark.asyncio
    async def test_misconfigured_split_fails_before_recording(
        self, settings, lanari_pay, stripe_gateway, ledger, side_effects, viewer_id, movie_id
    ):
        orchestrator = PaymentOrchestrator(
            replace(settings, platform_percentage=40),
            lanari_pay=lanari_pay,
            stripe_service=stripe_gateway,
            ledger=ledger,
            side_effects=side_effects,
        )

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.pay_movie_momo(movie_request(viewer_id, movie_id))

        assert exc_info.value.details["total"] == 110
        lanari_pay.request_to_pay.assert_not_called()
        assert payments_for(viewer_id) == []

    @pytest.mark.asyncio
    async def test_content_without_owner(self, orchestrator, viewer_id, make_content):
        orphan = make_content(owner_id=None)
        with pytest.raises(OwnerMissing):
            await orchestrator.pay_movie_momo(movie_request(viewer_id, orphan))

    @pytest.mark.asyncio
    async def test_unknown_movie_and_user(self, orchestrator, viewer_id, movie_id):
        with pytest.raises(NotFound):
            await orchestrator.pay_movie_momo(movie_request(viewer_id, 9999))
        with pytest.raises(NotFound):
            await orchestrator.pay_movie_momo(movie_request(9999, movie_id))

    @pytest.mark.asyncio
    async def test_series_cannot_be_bought_as_title(self, orchestrator, viewer_id, series_id):
        with pytest.raises(ValidationError):
            await orchestrator.pay_movie_momo(movie_request(viewer_id, series_id))

    @pytest.mark.asyncio
    async def test_episode_purchase(self, orchestrator, viewer_id, series_id):
        with managed_session() as session:
            episode_id = (
                session.query(Content.id)
                .filter(Content.parent_series_id == series_id)
                .order_by(Content.episode_number)
                .first()[0]
            )
        response = await orchestrator.pay_movie_momo(movie_request(viewer_id, episode_id, amount="300"))
        payment = load(Payment, response["paymentId"])
        assert payment.kind == PaymentKind.SERIES_EPISODE.value
        assert payment.series_id == series_id


class TestSeriesPurchase:

    @pytest.mark.asyncio
    async def test_tier_price_substituted_within_tolerance(
        self, orchestrator, entitlements, lanari_pay, viewer_id, creator_id, series_id
    ):
        request = SeriesPurchaseRequest(
            user_id=viewer_id,
            series_id=series_id,
            money=Money(Decimal("4999.50"), Currency.RWF),
            phone=PAYER_PHONE,
            access_period=AccessPeriod.DAYS_30,
        )

        response = await orchestrator.pay_series_momo(request)

        assert response["amount"] == 5000.0
        assert response["accessPeriod"] == "30d"
        assert lanari_pay.request_to_pay.call_args.args[0] == Decimal("5000.00")

        payment = load(Payment, response["paymentId"])
        assert payment.kind == PaymentKind.SERIES_ACCESS.value
        assert payment.creator_share == Decimal("3500")
        assert load(User, creator_id).pending_balance == Decimal("3500")
        assert load(Content, series_id).total_revenue == Decimal("3500")

        with managed_session() as session:
            episode_ids = [
                row[0] for row in session.query(Content.id).filter(Content.parent_series_id == series_id).all()
            ]
        assert len(episode_ids) == 10
        now = get_naive_utc_now()
        for episode_id in episode_ids:
            access = entitlements.check(viewer_id, episode_id)
            assert access.scope == EntitlementScope.SERIES
            assert access.expires_at > now + timedelta(days=29)

    @pytest.mark.asyncio
    async def test_amount_far_from_tier_rejected(self, orchestrator, lanari_pay, viewer_id, series_id):
        request = SeriesPurchaseRequest(
            user_id=viewer_id,
            series_id=series_id,
            money=Money(Decimal("4000"), Currency.RWF),
            phone=PAYER_PHONE,
            access_period=AccessPeriod.DAYS_30,
        )
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.pay_series_momo(request)
        assert exc_info.value.details["expected"] == 5000.0
        lanari_pay.request_to_pay.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_tier_rejected(self, orchestrator, viewer_id, series_id):
        request = SeriesPurchaseRequest(
            user_id=viewer_id,
            series_id=series_id,
            money=Money(Decimal("9000"), Currency.RWF),
            phone=PAYER_PHONE,
            access_period=AccessPeriod.DAYS_90,
        )
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.pay_series_momo(request)
        assert exc_info.value.details["available"] == ["30d", "7d"]


class TestSubscriptionPurchase:

    @pytest.mark.asyncio
    async def test_pro_upgrade_truncates_devices(self, orchestrator, lanari_pay, make_user):
        user_id = make_user(email="sub@example.com", active_devices=["a", "b", "c", "d", "e", "f"])

        response = await orchestrator.pay_subscription_momo(subscription_request(user_id))

        assert response["status"] == "SUCCESSFUL"
        assert response["planId"] == "pro"
        assert response["distribution"]["filmmakerAmount"] == 0.0
        assert lanari_pay.request_to_pay.call_args.kwargs["payout_numbers"] == [
            {"tel": "0790019543", "percentage": 100},
        ]

        user = load(User, user_id)
        assert user.subscription_plan == "pro"
        assert user.max_devices == 4
        assert user.active_devices == ["c", "d", "e", "f"]
        assert user.subscription_end_at > get_naive_utc_now() + timedelta(days=27)

        payment = load(Payment, response["paymentId"])
        assert payment.kind == PaymentKind.SUBSCRIPTION_UPGRADE.value
        assert payment.creator_share == Decimal("0")
        assert withdrawals_for(payment.id) == {WithdrawalKind.ADMIN_FEE.value: (user_id, Decimal("5000"))}

    @pytest.mark.asyncio
    async def test_same_plan_is_renewal(self, orchestrator, make_user):
        now = get_naive_utc_now()
        current_end = now + timedelta(days=10)
        user_id = make_user(
            subscription_plan="pro",
            subscription_period="month",
            subscription_start_at=now - timedelta(days=20),
            subscription_end_at=current_end,
        )

        response = await orchestrator.pay_subscription_momo(subscription_request(user_id))

        payment = load(Payment, response["paymentId"])
        assert payment.kind == PaymentKind.SUBSCRIPTION_RENEWAL.value
        assert load(User, user_id).subscription_end_at > current_end + timedelta(days=27)

    @pytest.mark.asyncio
    async def test_empty_phone_is_internal_grant(self, orchestrator, lanari_pay, make_user):
        user_id = make_user()

        response = await orchestrator.pay_subscription_momo(subscription_request(user_id, "basic", phone=None))

        lanari_pay.request_to_pay.assert_not_called()
        assert response["status"] == "SUCCESSFUL"
        payment = load(Payment, response["paymentId"])
        assert payment.provider == PaymentProvider.INTERNAL.value
        assert payment.state == PaymentState.SUCCEEDED.value
        assert withdrawals_for(payment.id) == {}
        assert load(User, user_id).subscription_plan == "basic"

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, orchestrator, viewer_id):
        with pytest.raises(ValidationError):
            await orchestrator.pay_subscription_momo(subscription_request(viewer_id, "platinum"))


class TestCardPurchase:

    @pytest.mark.asyncio
    async def test_card_intent_recorded_as_pending(self, orchestrator, stripe_gateway, viewer_id, movie_id):
        stripe_gateway.create_payment_intent.return_value = CardIntent(intent_id="pi_123", client_secret="secret_abc")

        response = await orchestrator.pay_movie_card(
            movie_request(viewer_id, movie_id, amount="2.5", currency=Currency.USD, phone=None)
        )

        assert response["intentId"] == "pi_123"
        assert response["clientSecret"] == "secret_abc"
        assert response["status"] == "PENDING"

        args = stripe_gateway.create_payment_intent.call_args
        assert args.args[0] == 250
        assert args.args[1] == Currency.USD
        metadata = args.args[4]
        assert metadata["payment_id"] == response["paymentId"]
        assert args.kwargs["idempotency_key"] == metadata["client_reference"]

        payment = load(Payment, response["paymentId"])
        assert payment.provider == PaymentProvider.STRIPE.value
        assert payment.reference_id == "pi_123"
        assert payment.amount == Decimal("3000")

    @pytest.mark.asyncio
    async def test_card_does_not_need_owner_phone(self, orchestrator, stripe_gateway, viewer_id, make_user, make_content):
        owner_id = make_user(name="No Phone", role="filmmaker")
        movie = make_content(owner_id=owner_id)
        stripe_gateway.create_payment_intent.return_value = CardIntent(intent_id="pi_456", client_secret="s")

        response = await orchestrator.pay_movie_card(movie_request(viewer_id, movie, phone=None))
        assert response["intentId"] == "pi_456"

    @pytest.mark.asyncio
    async def test_intent_failure_marks_payment_failed(self, orchestrator, stripe_gateway, viewer_id, movie_id):
        stripe_gateway.create_payment_intent.side_effect = GatewayFailure("Card declined")

        with pytest.raises(GatewayFailure):
            await orchestrator.pay_movie_card(movie_request(viewer_id, movie_id, phone=None))

        [payment] = payments_for(viewer_id)
        assert payment.state == PaymentState.FAILED.value
        assert payment.failure_reason == "Card declined"
