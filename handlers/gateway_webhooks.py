"""
Gateway webhook routes

Collecting gateway callbacks are only hints: the reconciler re-reads the
status from the gateway before moving the payment. Card gateway callbacks are
verified against the signing secret before anything is recorded.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request

from services.payment_reconciler import get_payment_reconciler
from utils.exception_handler import safe_api_handler
from utils.input_validation import read_json_body

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/collecting-gateway")
@safe_api_handler
async def collecting_gateway_webhook(request: Request):
    payload = await read_json_body(request)
    client_ip = request.client.host if request.client else "unknown"
    logger.info(f"📨 COLLECTING_WEBHOOK: received from {client_ip}")
    return await get_payment_reconciler().handle_collecting_webhook(payload)


@router.post("/webhook/card-gateway")
@safe_api_handler
async def card_gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    # Signature verification needs the raw bytes, not the parsed body
    raw_body = await request.body()
    return await get_payment_reconciler().handle_card_webhook(raw_body, stripe_signature)
