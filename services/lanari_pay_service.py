#!/usr/bin/env python3
"""
Lanari Pay Service for RWF mobile money
Handles collections (request to pay, optionally with an automatic payout split),
status checks and disbursements to creators.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import GatewayFailure, GatewayTimeout
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


class GatewayStatus(Enum):
    SUCCESSFUL = "SUCCESSFUL"
    PENDING = "PENDING"
    FAILED = "FAILED"


SUCCESS_STATUSES = {"successful", "success", "completed", "succeeded"}
FAILED_STATUSES = {"failed", "failure", "cancelled", "canceled", "rejected", "declined", "expired"}

INSUFFICIENT_BALANCE_MARKER = "check users balance"


def map_gateway_status(raw: Optional[str]) -> GatewayStatus:
    """Gateway status strings vary in case and wording; anything unknown is still pending"""
    value = str(raw or "").strip().lower()
    if value in SUCCESS_STATUSES:
        return GatewayStatus.SUCCESSFUL
    if value in FAILED_STATUSES:
        return GatewayStatus.FAILED
    return GatewayStatus.PENDING


@dataclass
class CollectionResult:
    """Outcome of a collection request or status check"""
    reference_id: Optional[str]
    gateway_status: GatewayStatus
    provider_tx_id: Optional[str] = None
    failure: Optional[str] = None
    message: Optional[str] = None
    insufficient_balance: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_successful(self) -> bool:
        return self.gateway_status == GatewayStatus.SUCCESSFUL

    @property
    def is_failed(self) -> bool:
        return self.gateway_status == GatewayStatus.FAILED


@dataclass
class DisbursementResult:
    reference_id: str
    provider_tx_id: Optional[str] = None
    failure: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def accepted(self) -> bool:
        return self.failure is None


def _redact(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of a request payload that is safe to log"""
    if not payload:
        return {}
    return {k: ("***" if k in ("api_key", "api_secret") else v) for k, v in payload.items()}


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


class LanariPayService:
    """Client for the Lanari Pay mobile money API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key or Config.LANARI_PAY_API_KEY
        self.api_secret = api_secret or Config.LANARI_PAY_API_SECRET
        self.process_url = Config.LANARI_PAY_PROCESS_URL
        self.status_url = Config.LANARI_PAY_STATUS_URL
        self.payout_url = Config.LANARI_PAY_PAYOUT_URL
        self.timeout_seconds = timeout_seconds or Config.GATEWAY_TIMEOUT_SECONDS

        if not self.api_key or not self.api_secret:
            logger.warning(
                "LANARI_PAY_API_KEY or LANARI_PAY_API_SECRET not configured - mobile money will not work"
            )

    def is_available(self) -> bool:
        """Check if Lanari Pay is properly configured"""
        return bool(self.api_key and self.api_secret)

    def _credentials(self) -> Dict[str, str]:
        return {"api_key": self.api_key or "", "api_secret": self.api_secret or ""}

    async def _make_request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "unknown",
    ) -> Dict[str, Any]:
        """
        Send one request to Lanari Pay.

        Transport problems (timeouts, connection errors, 5xx, unreadable bodies)
        raise GatewayTimeout / GatewayFailure. Business rejections come back as
        a parsed body for the caller to interpret.
        """
        if not self.is_available():
            raise GatewayFailure("Mobile money gateway is not configured", operation=operation)

        logger.debug(f"📤 LANARI_PAY_REQUEST: {operation} {method} {url} {_redact(payload)}")
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
                async with session.request(
                    method,
                    url,
                    json=payload,
                    params=params,
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                    timeout=timeout,
                ) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = await response.text()
                        logger.error(
                            f"❌ LANARI_PAY_ERROR: {operation} returned non-JSON body "
                            f"(HTTP {response.status}): {body[:200]}"
                        )
                        raise GatewayFailure(
                            "Mobile money gateway returned an unreadable response",
                            operation=operation,
                            http_status=response.status,
                        )

                    if response.status >= 500:
                        logger.error(f"❌ LANARI_PAY_ERROR: {operation} HTTP {response.status} - {response_data}")
                        raise GatewayFailure(
                            f"Mobile money gateway error (HTTP {response.status})",
                            operation=operation,
                            http_status=response.status,
                        )

                    if not isinstance(response_data, dict):
                        raise GatewayFailure("Mobile money gateway returned an unexpected response", operation=operation)

                    if response.status >= 400:
                        logger.warning(f"⚠️ LANARI_PAY_REJECTED: {operation} HTTP {response.status} - {response_data}")
                    else:
                        logger.info(f"Lanari Pay API success: {operation} (HTTP {response.status})")
                    return response_data

        except asyncio.TimeoutError:
            logger.error(f"⏰ LANARI_PAY_TIMEOUT: {operation} exceeded {self.timeout_seconds}s")
            raise GatewayTimeout(
                f"Mobile money gateway timed out after {self.timeout_seconds}s", operation=operation
            )
        except aiohttp.ClientError as e:
            logger.error(f"❌ LANARI_PAY_NETWORK_ERROR: {operation}: {type(e).__name__}: {e}")
            raise GatewayFailure(f"Could not reach mobile money gateway: {type(e).__name__}", operation=operation)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def request_to_pay(
        self,
        amount_rwf: Decimal,
        payer_phone: str,
        reference_id: str,
        description: str,
        payout_numbers: Optional[List[Dict[str, Any]]] = None,
    ) -> CollectionResult:
        """Ask the payer to approve a collection; with payout_numbers the gateway splits on settlement"""
        payload: Dict[str, Any] = {
            **self._credentials(),
            "amount": MonetaryDecimal.to_integer_rwf(amount_rwf),
            "customer_phone": InputValidator.normalize_momo_phone(payer_phone),
            "currency": "RWF",
            "payment_method": "mobile_money",
            "description": InputValidator.sanitize_description(description),
            "customer_email": "",
        }
        split_numbers = InputValidator.validate_payout_numbers(payout_numbers)
        if split_numbers:
            payload["payout_numbers"] = split_numbers

        response = await self._make_request("POST", self.process_url, payload=payload, operation="request_to_pay")
        result = self._parse_collection(response, fallback_reference=reference_id)
        logger.info(
            f"📲 LANARI_PAY_COLLECTION: ref {reference_id} -> {result.gateway_status.value} "
            f"(gateway ref {result.reference_id})"
        )
        return result

    async def check_status(self, reference_id: str) -> CollectionResult:
        """Current status of a collection at the gateway"""
        params = {"transaction_ref": reference_id, **self._credentials()}
        response = await self._make_request("GET", self.status_url, params=params, operation="check_status")

        data = response.get("data") if isinstance(response.get("data"), dict) else response
        status = _first(data.get("status"), data.get("payment_status"), response.get("status"))
        if response.get("success") is False and not data.get("status") and not data.get("payment_status"):
            # Lookup error rather than a payment outcome
            message = _first(response.get("message"), response.get("error")) or "Status lookup failed"
            logger.warning(f"⚠️ LANARI_PAY_STATUS_UNKNOWN: {reference_id}: {message}")
            return CollectionResult(reference_id, GatewayStatus.PENDING, message=message, raw=response)

        gateway_status = map_gateway_status(status)
        message = _first(data.get("reason"), data.get("message"), response.get("message"))
        return CollectionResult(
            reference_id=reference_id,
            gateway_status=gateway_status,
            provider_tx_id=_first(
                data.get("financial_transaction_id"),
                data.get("momo_transaction_id"),
                data.get("transaction_id"),
            ),
            failure=message if gateway_status == GatewayStatus.FAILED else None,
            message=message,
            insufficient_balance=bool(message and INSUFFICIENT_BALANCE_MARKER in message.lower()),
            raw=response,
        )

    def _parse_collection(self, response: Dict[str, Any], fallback_reference: str) -> CollectionResult:
        gateway_data = ((response.get("gateway_response") or {}).get("data") or {})
        if not isinstance(gateway_data, dict):
            gateway_data = {}

        reference = _first(
            response.get("transaction_ref"),
            response.get("referenceId"),
            response.get("transaction_id"),
            response.get("reference_id"),
            response.get("id"),
            fallback_reference,
        )
        message = _first(response.get("message"), response.get("error"), gateway_data.get("message"))
        insufficient = bool(message and INSUFFICIENT_BALANCE_MARKER in message.lower())

        raw_status = gateway_data.get("status")
        if raw_status:
            gateway_status = map_gateway_status(raw_status)
        elif response.get("success") is False or str(response.get("status", "")).lower() in ("error", "failed"):
            gateway_status = GatewayStatus.FAILED
        else:
            gateway_status = GatewayStatus.PENDING

        if insufficient:
            gateway_status = GatewayStatus.FAILED

        return CollectionResult(
            reference_id=reference,
            gateway_status=gateway_status,
            provider_tx_id=_first(gateway_data.get("transaction_id")),
            failure=(message or "Payment rejected by gateway") if gateway_status == GatewayStatus.FAILED else None,
            message=message,
            insufficient_balance=insufficient,
            raw=response,
        )

    # ------------------------------------------------------------------
    # Disbursements
    # ------------------------------------------------------------------

    async def send_money(
        self,
        amount_rwf: Decimal,
        recipient_phone: str,
        reference_id: str,
        description: str,
    ) -> DisbursementResult:
        """Pay out to a mobile money number"""
        payload = {
            **self._credentials(),
            "amount": MonetaryDecimal.to_integer_rwf(amount_rwf),
            "recipient_phone": InputValidator.normalize_momo_phone(recipient_phone),
            "currency": "RWF",
            "payment_method": "mobile_money",
            "description": InputValidator.sanitize_description(description),
            "reference_id": reference_id,
        }
        response = await self._make_request("POST", self.payout_url, payload=payload, operation="send_money")

        accepted = str(response.get("status", "")).lower() == "success" or response.get("success") is True
        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        if not accepted:
            failure = _first(response.get("message"), response.get("error")) or "Payout rejected by gateway"
            logger.warning(f"❌ LANARI_PAY_PAYOUT_REJECTED: {reference_id}: {failure}")
            return DisbursementResult(reference_id=reference_id, failure=failure, raw=response)

        provider_tx_id = _first(
            data.get("transaction_id"),
            response.get("transaction_id"),
            response.get("transaction_ref"),
        )
        logger.info(f"💸 LANARI_PAY_PAYOUT_ACCEPTED: {reference_id} tx {provider_tx_id}")
        return DisbursementResult(reference_id=reference_id, provider_tx_id=provider_tx_id, raw=response)


_lanari_pay_service: Optional[LanariPayService] = None


def get_lanari_pay_service() -> LanariPayService:
    """Get or create the shared Lanari Pay client"""
    global _lanari_pay_service
    if _lanari_pay_service is None:
        _lanari_pay_service = LanariPayService()
    return _lanari_pay_service
