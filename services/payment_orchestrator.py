"""
Payment Orchestrator
Single entry point for every purchase flow (movie, episode, series pass,
subscription; mobile money or card). Each flow follows the same steps:

    admit -> resolve owner -> quote in RWF -> distribute -> payout numbers
          -> record pending -> initiate with the gateway -> branch on outcome

No database transaction is held while waiting on a gateway.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import MonetizationSettings, get_settings
from models import (
    AccessPeriod, Content, ContentKind, ContentStatus, Currency, Payment, PaymentKind,
    PaymentMethod, PaymentProvider, PaymentState, User,
)
from services.distribution_policy import Distribution, payout_numbers, split
from services.entitlement_service import EntitlementService
from services.lanari_pay_service import (
    CollectionResult, LanariPayService, get_lanari_pay_service,
)
from services.ledger_service import LedgerService
from services.payment_side_effects import PaymentOutcome, PaymentSideEffects
from services.stripe_service import StripeService, get_stripe_service
from database import managed_session
from utils.atomic_transactions import atomic_transaction, locked_payment
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal, Money
from utils.exception_handler import (
    GatewayFailure, GatewayTimeout, InsufficientBalance, NotFound, OwnerMissing,
    OwnerPayoutMissing, ValidationError, error_message,
)
from utils.input_validation import (
    InputValidator, MoviePurchaseRequest, SeriesPurchaseRequest, SubscriptionPurchaseRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class PurchaseQuote:
    """Everything resolved before a payment row is written"""
    user_id: int
    kind: PaymentKind
    money: Money
    amount_rwf: Decimal
    exchange_rate: Decimal
    distribution: Distribution
    owner_id: Optional[int] = None
    owner_phone: Optional[str] = None
    content_id: Optional[int] = None
    series_id: Optional[int] = None
    plan_id: Optional[str] = None
    access_period: Optional[AccessPeriod] = None
    subscription_period: Optional[str] = None
    payer_email: Optional[str] = None
    language: str = "en"
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


def new_client_reference(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


class PaymentOrchestrator:
    """Drives one purchase from request to a terminal or pending state"""

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
    # Mobile money flows
    # ------------------------------------------------------------------

    async def pay_movie_momo(self, request: MoviePurchaseRequest) -> Dict[str, Any]:
        """Movie watch/download or single episode paid with mobile money"""
        quote = self._quote_title(request, require_payout_phone=True)
        return await self._collect(quote, request.phone)

    async def pay_series_momo(self, request: SeriesPurchaseRequest) -> Dict[str, Any]:
        """Series pass at one of the series' pricing tiers"""
        quote = self._quote_series(request)
        return await self._collect(quote, request.phone)

    async def pay_subscription_momo(self, request: SubscriptionPurchaseRequest) -> Dict[str, Any]:
        """Subscription upgrade or renewal; an empty phone is an internal grant"""
        quote = self._quote_subscription(request)
        if not request.phone:
            return self._grant_internal(quote)
        return await self._collect(quote, request.phone)

    # ------------------------------------------------------------------
    # Card flows
    # ------------------------------------------------------------------

    async def pay_movie_card(self, request: MoviePurchaseRequest) -> Dict[str, Any]:
        quote = self._quote_title(request, require_payout_phone=False)
        return await self._create_card_intent(quote)

    async def pay_subscription_card(self, request: SubscriptionPurchaseRequest) -> Dict[str, Any]:
        quote = self._quote_subscription(request)
        return await self._create_card_intent(quote)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _load_user(self, session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def _resolve_owner(self, session, content: Content, require_payout_phone: bool):
        if content.owner_id is None:
            raise OwnerMissing(f"Content {content.id} has no owner", content_id=content.id)
        owner = session.get(User, content.owner_id)
        if owner is None:
            raise OwnerMissing(f"Owner of content {content.id} not found", content_id=content.id)
        if not require_payout_phone:
            return owner, None
        if not owner.payout_phone:
            raise OwnerPayoutMissing(
                "The filmmaker has not set up a mobile money number yet", content_id=content.id
            )
        try:
            phone = InputValidator.normalize_momo_phone(owner.payout_phone)
        except ValidationError:
            raise OwnerPayoutMissing(
                "The filmmaker's mobile money number is invalid", content_id=content.id
            )
        return owner, phone

    def _convert(self, money: Money):
        return MonetaryDecimal.to_rwf(money, self.settings.exchange_rates)

    def _quote_title(self, request: MoviePurchaseRequest, require_payout_phone: bool) -> PurchaseQuote:
        with managed_session() as session:
            user = self._load_user(session, request.user_id)
            content = session.get(Content, request.movie_id)
            if content is None:
                raise NotFound(f"Movie {request.movie_id} not found")
            if content.kind == ContentKind.SERIES.value:
                raise ValidationError("Series are sold as series passes, use the series endpoint")
            if content.status != ContentStatus.APPROVED.value:
                raise ValidationError(f"'{content.title}' is not available for purchase")

            owner, owner_phone = self._resolve_owner(session, content, require_payout_phone)

            if request.is_episode or content.kind == ContentKind.EPISODE.value:
                kind = PaymentKind.SERIES_EPISODE
            else:
                kind = PaymentKind.MOVIE_WATCH if request.watch else PaymentKind.MOVIE_DOWNLOAD

            amount_rwf, rate = self._convert(request.money)
            distribution = split(kind, amount_rwf, self.settings)
            purchase_type = "watch" if request.watch else "download"
            return PurchaseQuote(
                user_id=user.id,
                kind=kind,
                money=request.money,
                amount_rwf=amount_rwf,
                exchange_rate=rate,
                distribution=distribution,
                owner_id=owner.id,
                owner_phone=owner_phone,
                content_id=content.id,
                series_id=content.parent_series_id,
                access_period=request.access_period,
                payer_email=request.email or user.email,
                language=user.preferred_language,
                description=f"CinemaRwa {purchase_type} {content.title}",
                metadata={"purchase_type": purchase_type, "title": content.title},
            )

    def _quote_series(self, request: SeriesPurchaseRequest) -> PurchaseQuote:
        with managed_session() as session:
            user = self._load_user(session, request.user_id)
            series = session.get(Content, request.series_id)
            if series is None or series.kind != ContentKind.SERIES.value:
                raise NotFound(f"Series {request.series_id} not found")
            if series.status != ContentStatus.APPROVED.value:
                raise ValidationError(f"'{series.title}' is not available for purchase")

            tier = series.tier_price(request.access_period)
            if tier is None:
                raise ValidationError(
                    f"'{series.title}' is not sold for {request.access_period.value}",
                    available=sorted((series.pricing_tiers or {}).keys()),
                )

            owner, owner_phone = self._resolve_owner(session, series, require_payout_phone=True)

            amount_rwf, rate = self._convert(request.money)
            tier_rwf = MonetaryDecimal.convert(
                tier, MonetaryDecimal.parse_currency(series.currency), Currency.RWF, self.settings.exchange_rates
            )
            difference = abs(amount_rwf - tier_rwf)
            if difference >= self.settings.series_price_tolerance:
                raise ValidationError(
                    f"Amount {amount_rwf} RWF does not match the {request.access_period.value} "
                    f"price of {tier_rwf} RWF",
                    expected=float(tier_rwf),
                )
            if difference:
                logger.warning(
                    f"⚠️ SERIES_PRICE_ADJUSTED: series {series.id} {request.access_period.value} "
                    f"requested {amount_rwf} -> tier {tier_rwf}"
                )
                amount_rwf = tier_rwf

            distribution = split(PaymentKind.SERIES_ACCESS, amount_rwf, self.settings)
            return PurchaseQuote(
                user_id=user.id,
                kind=PaymentKind.SERIES_ACCESS,
                money=request.money,
                amount_rwf=amount_rwf,
                exchange_rate=rate,
                distribution=distribution,
                owner_id=owner.id,
                owner_phone=owner_phone,
                content_id=series.id,
                series_id=series.id,
                access_period=request.access_period,
                payer_email=user.email,
                language=user.preferred_language,
                description=f"CinemaRwa series {series.title} {request.access_period.value}",
                metadata={"title": series.title, "tier_price": str(tier_rwf)},
            )

    def _quote_subscription(self, request: SubscriptionPurchaseRequest) -> PurchaseQuote:
        if request.plan_id not in self.settings.plan_devices:
            raise ValidationError(
                f"Unknown subscription plan: {request.plan_id}",
                available=sorted(self.settings.plan_devices.keys()),
            )
        with managed_session() as session:
            user = self._load_user(session, request.user_id)
            kind, _, _ = EntitlementService.subscription_window(
                user, request.plan_id, request.period, get_naive_utc_now()
            )
            amount_rwf, rate = self._convert(request.money)
            distribution = split(kind, amount_rwf, self.settings)
            return PurchaseQuote(
                user_id=user.id,
                kind=kind,
                money=request.money,
                amount_rwf=amount_rwf,
                exchange_rate=rate,
                distribution=distribution,
                plan_id=request.plan_id,
                subscription_period=request.period.value,
                payer_email=request.email or user.email,
                language=user.preferred_language,
                description=f"CinemaRwa {request.plan_id} subscription {request.period.value}",
                metadata=dict(request.metadata),
            )

    # ------------------------------------------------------------------
    # Recording and initiation
    # ------------------------------------------------------------------

    def _record(self, quote: PurchaseQuote, method: PaymentMethod, provider: PaymentProvider,
                payer_phone: Optional[str], prefix: str) -> int:
        with atomic_transaction() as session:
            payment = Payment(
                user_id=quote.user_id,
                content_id=quote.content_id,
                series_id=quote.series_id,
                plan_id=quote.plan_id,
                kind=quote.kind.value,
                method=method.value,
                provider=provider.value,
                amount=quote.amount_rwf,
                currency=Currency.RWF.value,
                original_amount=quote.money.amount,
                original_currency=quote.money.currency.value,
                exchange_rate=quote.exchange_rate,
                creator_share=quote.distribution.creator_share,
                platform_share=quote.distribution.platform_share,
                creator_percentage=quote.distribution.creator_percentage,
                platform_percentage=quote.distribution.platform_percentage,
                owner_id=quote.owner_id,
                access_period=quote.access_period.value if quote.access_period else None,
                subscription_period=quote.subscription_period,
                client_reference=new_client_reference(prefix),
                payer_phone=payer_phone,
                payer_email=quote.payer_email,
                payment_metadata=quote.metadata or None,
            )
            self.ledger.record_payment(session, payment)
            return payment.id

    def _payout_numbers(self, quote: PurchaseQuote) -> List[Dict[str, Any]]:
        return payout_numbers(quote.distribution, self.settings, quote.owner_phone)

    async def _collect(self, quote: PurchaseQuote, payer_phone: str) -> Dict[str, Any]:
        # A bad split must fail before a payment row exists
        split_numbers = InputValidator.validate_payout_numbers(self._payout_numbers(quote))
        payment_id = self._record(quote, PaymentMethod.MOMO, PaymentProvider.LANARI_PAY, payer_phone, "momo")
        with managed_session() as session:
            client_reference = session.get(Payment, payment_id).client_reference

        try:
            result = await self.lanari_pay.request_to_pay(
                quote.amount_rwf,
                payer_phone,
                client_reference,
                quote.description,
                payout_numbers=split_numbers,
            )
        except (GatewayTimeout, GatewayFailure) as e:
            # Outcome unknown: the payment stays pending for the reconciler
            logger.error(f"❌ COLLECTION_NOT_CONFIRMED: payment #{payment_id}: {e.message}")
            e.details.setdefault("payment_id", payment_id)
            raise

        self._store_reference(payment_id, result)
        outcome = self._branch(payment_id, result, quote)
        return self._response(outcome, quote)

    def _store_reference(self, payment_id: int, result: CollectionResult) -> None:
        with atomic_transaction() as session:
            payment = locked_payment(session, payment_id)
            if result.reference_id and not payment.reference_id:
                payment.reference_id = result.reference_id
            if result.provider_tx_id:
                payment.gateway_tx_id = result.provider_tx_id

    def _branch(self, payment_id: int, result: CollectionResult, quote: PurchaseQuote) -> PaymentOutcome:
        if result.is_successful:
            return self.side_effects.apply_success(payment_id, result.provider_tx_id)

        if result.is_failed:
            outcome = self.side_effects.mark_failed(payment_id, result.failure, result.provider_tx_id)
            if result.insufficient_balance:
                raise InsufficientBalance(
                    self.settings.insufficient_balance_message(quote.language), payment_id=payment_id
                )
            raise GatewayFailure(
                f"Payment was declined: {outcome.failure_reason}", payment_id=payment_id
            )

        logger.info(f"⏳ PAYMENT_PENDING: #{payment_id} awaiting payer approval")
        with managed_session() as session:
            return PaymentOutcome.of(session.get(Payment, payment_id))

    def _grant_internal(self, quote: PurchaseQuote) -> Dict[str, Any]:
        """No gateway: the subscription is granted immediately, without split records"""
        payment_id = self._record(quote, PaymentMethod.MOMO, PaymentProvider.INTERNAL, None, "internal")
        outcome = self.side_effects.apply_success(payment_id, record_split=False)
        logger.info(f"🎁 INTERNAL_GRANT: payment #{payment_id} plan {quote.plan_id} for user {quote.user_id}")
        return self._response(outcome, quote)

    async def _create_card_intent(self, quote: PurchaseQuote) -> Dict[str, Any]:
        payment_id = self._record(quote, PaymentMethod.CARD, PaymentProvider.STRIPE, None, "card")
        with managed_session() as session:
            client_reference = session.get(Payment, payment_id).client_reference

        try:
            intent = await self.stripe.create_payment_intent(
                MonetaryDecimal.to_minor_units(quote.money.amount, quote.money.currency),
                quote.money.currency,
                quote.payer_email,
                quote.description,
                {
                    "payment_id": payment_id,
                    "client_reference": client_reference,
                    "user_id": quote.user_id,
                    "kind": quote.kind.value,
                    "content_id": quote.content_id,
                    "plan_id": quote.plan_id,
                },
                idempotency_key=client_reference,
            )
        except (GatewayTimeout, GatewayFailure) as e:
            # No intent exists, so nothing can be charged
            self.side_effects.mark_failed(payment_id, error_message(e))
            raise

        with atomic_transaction() as session:
            payment = locked_payment(session, payment_id)
            payment.reference_id = intent.intent_id

        logger.info(f"💳 CARD_PAYMENT_PENDING: #{payment_id} intent {intent.intent_id}")
        return {
            "success": True,
            "paymentId": payment_id,
            "intentId": intent.intent_id,
            "clientSecret": intent.client_secret,
            "status": "PENDING",
            "amount": float(quote.amount_rwf),
            "currency": Currency.RWF.value,
            "distribution": quote.distribution.to_dict(),
        }

    def _response(self, outcome: PaymentOutcome, quote: PurchaseQuote) -> Dict[str, Any]:
        response = {
            "success": True,
            "paymentId": outcome.payment_id,
            "transactionId": outcome.reference_id or outcome.client_reference,
            "referenceId": outcome.client_reference,
            "status": outcome.gateway_status,
            "amount": float(quote.amount_rwf),
            "currency": Currency.RWF.value,
            "distribution": quote.distribution.to_dict(),
        }
        if quote.access_period is not None:
            response["accessPeriod"] = quote.access_period.value
        if quote.plan_id is not None:
            response["planId"] = quote.plan_id
            response["period"] = quote.subscription_period
        if outcome.state == PaymentState.SUCCEEDED:
            response["expiresAt"] = outcome.expires_at.isoformat() if outcome.expires_at else None
        return response


_payment_orchestrator: Optional[PaymentOrchestrator] = None


def get_payment_orchestrator() -> PaymentOrchestrator:
    global _payment_orchestrator
    if _payment_orchestrator is None:
        _payment_orchestrator = PaymentOrchestrator()
    return _payment_orchestrator
