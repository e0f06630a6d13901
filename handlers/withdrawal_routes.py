"""
Creator withdrawal and finance API routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from services.ledger_service import get_ledger_service
from services.withdrawal_service import get_withdrawal_service
from utils.exception_handler import ValidationError, safe_api_handler
from utils.input_validation import InputValidator, read_json_body

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/withdrawals/{filmmaker_id}")
@safe_api_handler
async def request_withdrawal(filmmaker_id: str, request: Request):
    """Filmmaker asks for part of the pending balance to be paid out"""
    body = await read_json_body(request)
    withdrawal = InputValidator.parse_withdrawal(filmmaker_id, body)
    result = get_withdrawal_service().request(
        withdrawal.user_id, withdrawal.amount, withdrawal.method, withdrawal.destination
    )
    return {"success": True, "message": "Withdrawal request submitted", "withdrawal": result}


@router.patch("/withdrawals/{withdrawal_id}")
@safe_api_handler
async def update_withdrawal(withdrawal_id: str, request: Request):
    """Admin action on a withdrawal: approve, complete or reject"""
    validated_id = InputValidator.validate_id(withdrawal_id, "withdrawalId")
    body = await read_json_body(request)
    action = body.get("action")
    if not action:
        raise ValidationError("action is required")
    reason = str(body["reason"]).strip() if body.get("reason") else None
    result = await get_withdrawal_service().handle_action(validated_id, str(action), reason)
    return {"success": True, "withdrawal": result}


@router.get("/withdrawals")
@safe_api_handler
async def list_withdrawals(
    user_id: Optional[str] = Query(None, alias="userId"),
    state: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
):
    validated_user = InputValidator.validate_id(user_id, "userId") if user_id else None
    result = get_ledger_service().list_withdrawals(
        user_id=validated_user, state=state, kind=kind, page=page, limit=limit
    )
    return {"success": True, **result}


@router.get("/withdrawals/{withdrawal_id}")
@safe_api_handler
async def withdrawal_details(withdrawal_id: str):
    validated_id = InputValidator.validate_id(withdrawal_id, "withdrawalId")
    return {"success": True, "withdrawal": get_ledger_service().get_withdrawal(validated_id)}


@router.get("/filmmaker/finance")
@safe_api_handler
async def filmmaker_finance(user_id: Optional[str] = Query(None, alias="userId")):
    validated_id = InputValidator.validate_id(user_id, "userId")
    return {"success": True, "finance": get_ledger_service().finance_summary(validated_id)}
