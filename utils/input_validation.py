"""
Input Validation Utilities
Validation and sanitization of payment and withdrawal request bodies
"""

import re
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

import phonenumbers
from fastapi import Request
from phonenumbers import NumberParseException

from models import AccessPeriod, Currency, PayoutMethod, SubscriptionPeriod
from utils.decimal_precision import MonetaryDecimal, Money
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoviePurchaseRequest:
    user_id: int
    movie_id: int
    money: Money
    phone: Optional[str]
    watch: bool
    access_period: AccessPeriod
    is_episode: bool = False
    email: Optional[str] = None


@dataclass(frozen=True)
class SeriesPurchaseRequest:
    user_id: int
    series_id: int
    money: Money
    phone: str
    access_period: AccessPeriod


@dataclass(frozen=True)
class SubscriptionPurchaseRequest:
    user_id: int
    plan_id: str
    period: SubscriptionPeriod
    money: Money
    phone: Optional[str]
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WithdrawalRequest:
    user_id: int
    amount: Decimal
    method: PayoutMethod
    destination: Optional[str] = None


class InputValidator:
    """Request validation for the payment API"""

    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    RAW_PHONE_PATTERN = re.compile(r"^\+?[0-9]{9,15}$")
    PHONE_STRIP_PATTERN = re.compile(r"[+\s\-()]")
    CANONICAL_PHONE_PATTERN = re.compile(r"^0[0-9]{9}$")
    DESCRIPTION_STRIP_PATTERN = re.compile(r"[^A-Za-z0-9 ]")
    MAX_DESCRIPTION_LENGTH = 500

    @classmethod
    def validate_id(cls, value: Union[int, str, None], name: str) -> int:
        """Positive integer identifier from a path or body value"""
        if value is None or value == "" or isinstance(value, bool):
            raise ValidationError(f"{name} is required")
        try:
            parsed = int(str(value).strip())
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid {name} format")
        if parsed <= 0:
            raise ValidationError(f"{name} must be positive")
        return parsed

    @classmethod
    def validate_email(cls, email: Optional[str]) -> Optional[str]:
        """Optional email: normalised to lowercase or None"""
        if not email:
            return None
        email = str(email).strip().lower()
        if len(email) > 254 or not cls.EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format")
        return email

    @classmethod
    def normalize_momo_phone(cls, phone: str) -> str:
        """
        Normalise a Rwandan mobile money number to the canonical 0######### form.

        Separators and '+' are dropped, a 250 country prefix becomes the leading 0
        and a bare 9-digit subscriber number gets one prepended.
        """
        if not phone:
            raise ValidationError("Phone number cannot be empty")

        cleaned = cls.PHONE_STRIP_PATTERN.sub("", str(phone).strip())
        if cleaned.startswith("250"):
            cleaned = "0" + cleaned[3:]
        elif not cleaned.startswith("0"):
            cleaned = "0" + cleaned

        if not cls.CANONICAL_PHONE_PATTERN.match(cleaned):
            raise ValidationError(
                "Invalid phone number. Use a Rwandan mobile number\n"
                "Examples: 0781234567, 250781234567, +250781234567"
            )

        try:
            parsed = phonenumbers.parse("+250" + cleaned[1:], None)
        except NumberParseException:
            raise ValidationError("Invalid phone number format")
        if not phonenumbers.is_possible_number(parsed):
            raise ValidationError("Invalid phone number format - please double-check the digits")

        return cleaned

    @classmethod
    def validate_raw_phone(cls, phone: Any) -> str:
        """Shape check on the phone as sent by the client, before normalisation"""
        text = str(phone or "").strip().replace(" ", "")
        if not cls.RAW_PHONE_PATTERN.match(text):
            raise ValidationError("Phone number must contain 9 to 15 digits")
        return cls.normalize_momo_phone(text)

    @classmethod
    def sanitize_description(cls, description: Optional[str]) -> str:
        """Alphanumeric-plus-space text the collecting gateway accepts"""
        if not description:
            return ""
        cleaned = cls.DESCRIPTION_STRIP_PATTERN.sub("", str(description))
        cleaned = re.sub(r" {2,}", " ", cleaned).strip()
        return cleaned[:cls.MAX_DESCRIPTION_LENGTH]

    @classmethod
    def validate_payout_numbers(cls, payout_numbers: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
        """Canonical [{tel, percentage}] split for the collecting gateway; percentages must total 100"""
        if not payout_numbers:
            return []
        entries = []
        for entry in payout_numbers:
            try:
                percentage = int(entry["percentage"])
            except (KeyError, TypeError, ValueError):
                raise ValidationError("Each payout number needs an integer percentage")
            if percentage <= 0:
                raise ValidationError(f"Payout percentages must be positive (got {percentage})")
            entries.append({"tel": cls.normalize_momo_phone(entry.get("tel")), "percentage": percentage})
        total = sum(entry["percentage"] for entry in entries)
        if total != 100:
            raise ValidationError(f"Payout percentages must sum to 100 (got {total})", total=total)
        return entries

    @classmethod
    def validate_access_period(cls, value: Optional[str], default: Optional[AccessPeriod] = None) -> AccessPeriod:
        if value is None or value == "":
            if default is None:
                raise ValidationError("accessPeriod is required")
            return default
        try:
            return AccessPeriod(str(value).strip())
        except ValueError:
            valid = [p.value for p in AccessPeriod]
            raise ValidationError(f"Invalid accessPeriod '{value}'. Must be one of: {valid}")

    @classmethod
    def validate_subscription_period(cls, value: Optional[str]) -> SubscriptionPeriod:
        try:
            return SubscriptionPeriod(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError("period must be 'month' or 'year'")

    @classmethod
    def validate_payout_method(cls, value: Optional[str]) -> PayoutMethod:
        if not value:
            return PayoutMethod.MOMO
        try:
            return PayoutMethod(str(value).strip().lower())
        except ValueError:
            valid = [m.value for m in PayoutMethod]
            raise ValidationError(f"Invalid payout method '{value}'. Must be one of: {valid}")

    @classmethod
    def _money(cls, body: Mapping[str, Any]) -> Money:
        if body.get("amount") in (None, ""):
            raise ValidationError("amount is required")
        money = MonetaryDecimal.parse_money(body.get("amount"), body.get("currency"))
        if money.amount <= 0:
            raise ValidationError("amount must be greater than zero")
        return money

    @classmethod
    def _purchase_type(cls, body: Mapping[str, Any]) -> bool:
        """True for watch, False for download"""
        purchase_type = str(body.get("type") or "").strip().lower()
        if purchase_type not in ("watch", "download"):
            raise ValidationError("type must be 'watch' or 'download'")
        return purchase_type == "watch"

    # ------------------------------------------------------------------
    # Request bodies
    # ------------------------------------------------------------------

    @classmethod
    def parse_movie_purchase(cls, body: Mapping[str, Any], require_phone: bool = True) -> MoviePurchaseRequest:
        """Body of POST /payments/momo and POST /payments/stripe"""
        if not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        return MoviePurchaseRequest(
            user_id=cls.validate_id(body.get("userId"), "userId"),
            movie_id=cls.validate_id(body.get("movieId"), "movieId"),
            money=cls._money(body),
            phone=cls.validate_raw_phone(body.get("phoneNumber")) if require_phone else None,
            watch=cls._purchase_type(body),
            access_period=cls.validate_access_period(body.get("accessPeriod"), default=AccessPeriod.ONE_TIME),
            is_episode=str(body.get("contentType") or "").strip().lower() == "episode",
            email=cls.validate_email(body.get("email")),
        )

    @classmethod
    def parse_series_purchase(cls, body: Mapping[str, Any]) -> SeriesPurchaseRequest:
        """Body of POST /payments/series-momo"""
        if not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        return SeriesPurchaseRequest(
            user_id=cls.validate_id(body.get("userId"), "userId"),
            series_id=cls.validate_id(body.get("seriesId"), "seriesId"),
            money=cls._money(body),
            phone=cls.validate_raw_phone(body.get("phoneNumber")),
            access_period=cls.validate_access_period(body.get("accessPeriod")),
        )

    @classmethod
    def parse_subscription_purchase(
        cls, body: Mapping[str, Any], allow_internal: bool = True
    ) -> SubscriptionPurchaseRequest:
        """Body of the subscription endpoints; an empty phone means an internal grant"""
        if not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        plan_id = str(body.get("planId") or "").strip().lower()
        if not plan_id:
            raise ValidationError("planId is required")

        raw_phone = body.get("phoneNumber")
        phone = None
        if raw_phone:
            phone = cls.validate_raw_phone(raw_phone)
        elif not allow_internal:
            raise ValidationError("phoneNumber is required")

        metadata = body.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        return SubscriptionPurchaseRequest(
            user_id=cls.validate_id(body.get("userId"), "userId"),
            plan_id=plan_id,
            period=cls.validate_subscription_period(body.get("period")),
            money=cls._money(body),
            phone=phone,
            email=cls.validate_email(body.get("email")),
            metadata=metadata,
        )

    @classmethod
    def parse_withdrawal(cls, user_id: Union[int, str], body: Mapping[str, Any]) -> WithdrawalRequest:
        """Body of POST /withdrawals/{filmmaker_id}"""
        if not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        if body.get("amount") in (None, ""):
            raise ValidationError("amount is required")
        currency = MonetaryDecimal.parse_currency(body.get("currency"))
        if currency != Currency.RWF:
            raise ValidationError("Withdrawals are paid out in RWF")
        destination = body.get("destination") or body.get("phoneNumber")
        return WithdrawalRequest(
            user_id=cls.validate_id(user_id, "filmmakerId"),
            amount=MonetaryDecimal.parse(body.get("amount")),
            method=cls.validate_payout_method(body.get("method")),
            destination=str(destination).strip() if destination else None,
        )


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parse a request body as a JSON object"""
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body
