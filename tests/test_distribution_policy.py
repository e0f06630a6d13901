"""
Tests for the creator/platform revenue split
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from models import PaymentKind
from services.distribution_policy import payout_numbers, percentages_for, split


class TestSplit:

    @pytest.mark.parametrize("kind", [
        PaymentKind.MOVIE_WATCH,
        PaymentKind.MOVIE_DOWNLOAD,
        PaymentKind.SERIES_ACCESS,
        PaymentKind.SERIES_EPISODE,
    ])
    def test_content_purchases_split_70_30(self, settings, kind):
        distribution = split(kind, Decimal("1000"), settings)
        assert distribution.creator_share == Decimal("700.00")
        assert distribution.platform_share == Decimal("300.00")
        assert (distribution.creator_percentage, distribution.platform_percentage) == (70, 30)

    @pytest.mark.parametrize("kind", [PaymentKind.SUBSCRIPTION_UPGRADE, PaymentKind.SUBSCRIPTION_RENEWAL])
    def test_subscriptions_go_entirely_to_platform(self, settings, kind):
        distribution = split(kind, Decimal("5000"), settings)
        assert distribution.creator_share == Decimal("0")
        assert distribution.platform_share == Decimal("5000.00")
        assert percentages_for(kind, settings) == (0, 100)

    def test_subscription_split_follows_settings(self, settings):
        shared = replace(settings, subscription_creator_percentage=10, subscription_platform_percentage=90)
        distribution = split(PaymentKind.SUBSCRIPTION_RENEWAL, Decimal("5000"), shared)
        assert (distribution.creator_percentage, distribution.platform_percentage) == (10, 90)
        assert distribution.creator_share == Decimal("500.00")
        assert distribution.platform_share == Decimal("4500.00")

    def test_odd_amount_still_sums_exactly(self, settings):
        distribution = split(PaymentKind.MOVIE_WATCH, Decimal("999.99"), settings)
        assert distribution.creator_share + distribution.platform_share == Decimal("999.99")

    def test_to_dict_uses_api_field_names(self, settings):
        body = split(PaymentKind.MOVIE_WATCH, Decimal("1000"), settings).to_dict()
        assert body == {
            "totalAmount": 1000.0,
            "filmmakerAmount": 700.0,
            "filmmakerPercentage": 70,
            "adminAmount": 300.0,
            "adminPercentage": 30,
        }


class TestPayoutNumbers:

    def test_content_purchase_pays_creator_and_admin(self, settings):
        distribution = split(PaymentKind.MOVIE_WATCH, Decimal("1000"), settings)
        numbers = payout_numbers(distribution, settings, "0781234567")
        assert numbers == [
            {"tel": "0781234567", "percentage": 70},
            {"tel": settings.admin_momo_number, "percentage": 30},
        ]
        assert sum(entry["percentage"] for entry in numbers) == 100

    def test_subscription_pays_admin_only(self, settings):
        distribution = split(PaymentKind.SUBSCRIPTION_UPGRADE, Decimal("3000"), settings)
        assert payout_numbers(distribution, settings, None) == [
            {"tel": settings.admin_momo_number, "percentage": 100},
        ]
