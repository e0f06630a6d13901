"""
Stripe card payments
Creates payment intents for the web checkout and verifies them afterwards.
The blocking Stripe SDK runs in a worker thread with a timeout.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from config import Config
from models import Currency
from services.lanari_pay_service import GatewayStatus
from utils.exception_handler import GatewayFailure, GatewayTimeout, ValidationError

logger = logging.getLogger(__name__)

# Stripe intent status -> our gateway status
INTENT_STATUS_MAP = {
    "succeeded": GatewayStatus.SUCCESSFUL,
    "canceled": GatewayStatus.FAILED,
    "requires_payment_method": GatewayStatus.PENDING,
    "requires_confirmation": GatewayStatus.PENDING,
    "requires_action": GatewayStatus.PENDING,
    "requires_capture": GatewayStatus.PENDING,
    "processing": GatewayStatus.PENDING,
}


@dataclass(frozen=True)
class CardIntent:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class CardIntentStatus:
    intent_id: str
    gateway_status: GatewayStatus
    raw_status: str
    failure: Optional[str] = None


class StripeService:
    """Thin async wrapper around the Stripe PaymentIntent API"""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 timeout_seconds: Optional[int] = None):
        self.secret_key = secret_key or Config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET
        self.timeout_seconds = timeout_seconds or Config.GATEWAY_TIMEOUT_SECONDS
        if self.secret_key:
            stripe.api_key = self.secret_key
        else:
            logger.warning("STRIPE_SECRET_KEY not configured - card payments will not work")

    def is_available(self) -> bool:
        return bool(self.secret_key)

    async def _call(self, operation: str, func, *args, **kwargs):
        if not self.is_available():
            raise GatewayFailure("Card gateway is not configured", operation=operation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"⏰ STRIPE_TIMEOUT: {operation} exceeded {self.timeout_seconds}s")
            raise GatewayTimeout(f"Card gateway timed out after {self.timeout_seconds}s", operation=operation)
        except stripe.CardError as e:
            # Declines are business outcomes, surfaced to the caller as failures
            logger.warning(f"💳 STRIPE_CARD_DECLINED: {operation}: {e.user_message}")
            raise GatewayFailure(e.user_message or "Card was declined", operation=operation)
        except stripe.StripeError as e:
            logger.error(f"❌ STRIPE_ERROR: {operation}: {type(e).__name__}: {e}")
            raise GatewayFailure(f"Card gateway error: {type(e).__name__}", operation=operation)

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: Currency,
        email: Optional[str],
        description: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> CardIntent:
        if amount_minor <= 0:
            raise ValidationError("Card payment amount must be positive")

        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.value.lower(),
            "description": description,
            "metadata": {k: str(v) for k, v in metadata.items() if v is not None},
            "automatic_payment_methods": {"enabled": True},
        }
        if email:
            params["receipt_email"] = email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        logger.info(f"💳 STRIPE_INTENT_CREATED: {intent.id} {amount_minor} {currency.value}")
        return CardIntent(intent_id=intent.id, client_secret=intent.client_secret)

    async def retrieve_intent_status(self, intent_id: str) -> CardIntentStatus:
        intent = await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, intent_id)
        raw_status = intent.status
        gateway_status = INTENT_STATUS_MAP.get(raw_status, GatewayStatus.PENDING)

        failure = None
        last_error = getattr(intent, "last_payment_error", None)
        if gateway_status == GatewayStatus.FAILED:
            failure = (last_error.message if last_error else None) or f"Payment intent {raw_status}"
        return CardIntentStatus(intent_id=intent_id, gateway_status=gateway_status,
                                raw_status=raw_status, failure=failure)

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]):
        """Verify and parse a Stripe webhook; raises ValidationError on a bad signature"""
        if not self.webhook_secret:
            raise GatewayFailure("Card webhook secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"🚫 STRIPE_WEBHOOK_SIGNATURE_INVALID: {e}")
            raise ValidationError("Invalid webhook signature")
        except ValueError as e:
            raise ValidationError(f"Invalid webhook payload: {e}")


_stripe_service: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service
