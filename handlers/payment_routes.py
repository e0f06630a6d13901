"""
Payment and access API routes
Mobile money and card purchases, status polling, history, analytics and access checks
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from services.entitlement_service import get_entitlement_service
from services.ledger_service import get_ledger_service
from services.payment_orchestrator import get_payment_orchestrator
from services.payment_reconciler import get_payment_reconciler, outcome_to_dict
from utils.exception_handler import safe_api_handler
from utils.input_validation import InputValidator, read_json_body

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments/momo")
@safe_api_handler
async def pay_movie_momo(request: Request):
    """Buy a movie or episode with mobile money"""
    body = await read_json_body(request)
    purchase = InputValidator.parse_movie_purchase(body)
    return await get_payment_orchestrator().pay_movie_momo(purchase)


@router.post("/payments/series-momo")
@safe_api_handler
async def pay_series_momo(request: Request):
    body = await read_json_body(request)
    purchase = InputValidator.parse_series_purchase(body)
    return await get_payment_orchestrator().pay_series_momo(purchase)


@router.post("/payments/subscription-momo")
@safe_api_handler
async def pay_subscription_momo(request: Request):
    """Subscribe with mobile money; without a phone number the plan is granted internally"""
    body = await read_json_body(request)
    purchase = InputValidator.parse_subscription_purchase(body)
    return await get_payment_orchestrator().pay_subscription_momo(purchase)


@router.post("/payments/stripe")
@safe_api_handler
async def pay_movie_card(request: Request):
    body = await read_json_body(request)
    purchase = InputValidator.parse_movie_purchase(body, require_phone=False)
    return await get_payment_orchestrator().pay_movie_card(purchase)


@router.post("/payments/subscription-stripe")
@safe_api_handler
async def pay_subscription_card(request: Request):
    body = await read_json_body(request)
    purchase = InputValidator.parse_subscription_purchase(body)
    return await get_payment_orchestrator().pay_subscription_card(purchase)


@router.get("/payments/momo/{transaction_id}")
@safe_api_handler
async def momo_payment_status(transaction_id: str):
    """Poll a mobile money payment by gateway reference, client reference or id"""
    return await get_payment_reconciler().poll_transaction(transaction_id)


@router.post("/payments/{payment_id}/confirm")
@safe_api_handler
async def confirm_card_payment(payment_id: str):
    """Re-check a card payment with the card gateway after the client-side confirmation"""
    validated_id = InputValidator.validate_id(payment_id, "paymentId")
    outcome = await get_payment_reconciler().confirm_card_payment(validated_id)
    return outcome_to_dict(outcome)


@router.get("/payments/user/{user_id}")
@safe_api_handler
async def user_payment_history(
    user_id: str,
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    validated_id = InputValidator.validate_id(user_id, "userId")
    result = get_ledger_service().list_user_payments(validated_id, page=page, limit=limit, state=state)
    return {"success": True, **result}


@router.get("/payments/movie/{movie_id}/analytics")
@safe_api_handler
async def movie_analytics(movie_id: str):
    validated_id = InputValidator.validate_id(movie_id, "movieId")
    return {"success": True, "analytics": get_ledger_service().movie_analytics(validated_id)}


@router.get("/access/{user_id}/{content_id}")
@safe_api_handler
async def check_access(user_id: str, content_id: str):
    access = get_entitlement_service().check(
        InputValidator.validate_id(user_id, "userId"),
        InputValidator.validate_id(content_id, "contentId"),
    )
    return {"success": True, **access.to_dict()}


@router.get("/access/{user_id}")
@safe_api_handler
async def list_access(user_id: str, active_only: bool = Query(True, alias="activeOnly")):
    validated_id = InputValidator.validate_id(user_id, "userId")
    entitlements = get_entitlement_service().list_user_entitlements(validated_id, active_only=active_only)
    return {"success": True, "entitlements": entitlements}
