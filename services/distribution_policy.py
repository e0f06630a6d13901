"""
Revenue distribution policy: how a payment is split between the content owner
and the platform for each product type.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import MonetizationSettings
from models import PaymentKind, SUBSCRIPTION_KINDS
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Distribution:
    total: Decimal
    creator_share: Decimal
    platform_share: Decimal
    creator_percentage: int
    platform_percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAmount": float(self.total),
            "filmmakerAmount": float(self.creator_share),
            "filmmakerPercentage": self.creator_percentage,
            "adminAmount": float(self.platform_share),
            "adminPercentage": self.platform_percentage,
        }


def percentages_for(kind: PaymentKind, settings: MonetizationSettings) -> tuple:
    """(creator %, platform %) for a product type"""
    if kind in SUBSCRIPTION_KINDS:
        return settings.subscription_creator_percentage, settings.subscription_platform_percentage
    return settings.creator_percentage, settings.platform_percentage


def split(kind: PaymentKind, amount: Decimal, settings: MonetizationSettings) -> Distribution:
    """Compute the creator/platform split of a settlement amount"""
    creator_pct, platform_pct = percentages_for(kind, settings)
    creator_share, platform_share = MonetaryDecimal.distribute(amount, creator_pct)
    distribution = Distribution(
        total=MonetaryDecimal.quantize(amount),
        creator_share=creator_share,
        platform_share=platform_share,
        creator_percentage=creator_pct,
        platform_percentage=platform_pct,
    )
    logger.debug(
        f"DISTRIBUTION: {kind.value} {distribution.total} -> creator {creator_share} ({creator_pct}%), "
        f"platform {platform_share} ({platform_pct}%)"
    )
    return distribution


def payout_numbers(
    distribution: Distribution,
    settings: MonetizationSettings,
    creator_phone: Optional[str],
) -> List[Dict[str, Any]]:
    """Recipients for the collecting gateway's automatic split"""
    if distribution.creator_percentage == 0:
        return [{"tel": settings.admin_momo_number, "percentage": distribution.platform_percentage}]
    return [
        {"tel": creator_phone, "percentage": distribution.creator_percentage},
        {"tel": settings.admin_momo_number, "percentage": distribution.platform_percentage},
    ]
