"""
Tests for access grants and access resolution
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from conftest import load
from database import managed_session
from models import (
    AccessPeriod, ContentKind, Entitlement, EntitlementScope, EntitlementState,
    PaymentKind, SubscriptionPeriod, User,
)
from services.entitlement_service import EntitlementService
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import NotFound, ValidationError


@pytest.fixture
def series_with_episodes(make_content, creator_id):
    series_id = make_content(
        kind=ContentKind.SERIES.value,
        title="Umuryango",
        owner_id=creator_id,
        view_price=Decimal("0"),
        pricing_tiers={"7d": 2000, "30d": 5000},
    )
    episode_ids = [
        make_content(
            kind=ContentKind.EPISODE.value,
            title=f"Umuryango S1E{number}",
            owner_id=creator_id,
            parent_series_id=series_id,
            season_number=1,
            episode_number=number,
            view_price=Decimal("300"),
        )
        for number in range(1, 4)
    ]
    return series_id, episode_ids


class TestComputeExpiry:

    def test_one_time_watch_gets_watch_window(self, entitlements):
        now = get_naive_utc_now()
        assert entitlements.compute_expiry(AccessPeriod.ONE_TIME, now) == now + timedelta(hours=48)

    def test_one_time_download_never_expires(self, entitlements):
        assert entitlements.compute_expiry(AccessPeriod.ONE_TIME, get_naive_utc_now(), watch=False) is None

    @pytest.mark.parametrize("period,days", [
        (AccessPeriod.HOURS_24, 1),
        (AccessPeriod.DAYS_7, 7),
        (AccessPeriod.DAYS_30, 30),
        (AccessPeriod.DAYS_365, 365),
    ])
    def test_periods_add_days(self, entitlements, period, days):
        now = get_naive_utc_now()
        assert entitlements.compute_expiry(period, now) == now + timedelta(days=days)


class TestTitleGrants:

    def test_grant_gives_title_access(self, entitlements, viewer_id, movie_id):
        with managed_session() as session:
            entitlements.grant_title(session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None)

        access = entitlements.check(viewer_id, movie_id)
        assert access.has_access is True
        assert access.scope == EntitlementScope.TITLE
        assert access.expires_at is not None

    def test_regrant_supersedes_previous(self, entitlements, viewer_id, movie_id):
        with managed_session() as session:
            first = entitlements.grant_title(session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None)
            first_id = first.id
        with managed_session() as session:
            second = entitlements.grant_title(session, viewer_id, movie_id, AccessPeriod.DAYS_30, Decimal("3000"), None)
            second_id = second.id

        assert load(Entitlement, first_id).state == EntitlementState.RENEWED.value
        renewed = load(Entitlement, second_id)
        assert renewed.state == EntitlementState.ACTIVE.value
        assert renewed.previous_entitlement_id == first_id

    def test_expired_title_gives_no_access(self, entitlements, viewer_id, movie_id):
        past = get_naive_utc_now() - timedelta(days=10)
        with managed_session() as session:
            entitlements.grant_title(
                session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None, now=past
            )
        assert entitlements.check(viewer_id, movie_id).has_access is False


class TestSeriesGrants:

    def test_series_grant_covers_every_episode(self, entitlements, viewer_id, series_with_episodes):
        series_id, episode_ids = series_with_episodes
        with managed_session() as session:
            series_grant, episode_grants = entitlements.grant_series(
                session, viewer_id, series_id, AccessPeriod.DAYS_30, Decimal("5000"), None
            )
            assert len(episode_grants) == 3
            assert all(grant.expires_at == series_grant.expires_at for grant in episode_grants)
            assert all(grant.price_paid == Decimal("0") for grant in episode_grants)

        for episode_id in episode_ids:
            access = entitlements.check(viewer_id, episode_id)
            assert access.has_access is True
            assert access.scope == EntitlementScope.SERIES

    def test_renewal_extends_from_current_expiry(self, entitlements, viewer_id, series_with_episodes):
        series_id, _ = series_with_episodes
        with managed_session() as session:
            first, _ = entitlements.grant_series(
                session, viewer_id, series_id, AccessPeriod.DAYS_7, Decimal("2000"), None
            )
            first_expiry = first.expires_at
        with managed_session() as session:
            second, _ = entitlements.grant_series(
                session, viewer_id, series_id, AccessPeriod.DAYS_7, Decimal("2000"), None
            )
            assert second.expires_at == first_expiry + timedelta(days=7)

        with managed_session() as session:
            active = (
                session.query(Entitlement)
                .filter(
                    Entitlement.user_id == viewer_id,
                    Entitlement.series_id == series_id,
                    Entitlement.state == EntitlementState.ACTIVE.value,
                )
                .count()
            )
        # one series row plus three episodes
        assert active == 4


class TestAccessPrecedence:

    def test_owner_always_has_access(self, entitlements, creator_id, movie_id):
        access = entitlements.check(creator_id, movie_id)
        assert access.has_access is True
        assert access.scope == EntitlementScope.OWNER

    def test_title_wins_over_subscription(self, entitlements, viewer_id, movie_id):
        now = get_naive_utc_now()
        with managed_session() as session:
            entitlements.grant_subscription(
                session, viewer_id, "basic", "month", now + timedelta(days=30), now
            )
            entitlements.grant_title(session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None)
        assert entitlements.check(viewer_id, movie_id).scope == EntitlementScope.TITLE

    def test_subscription_grants_paid_content(self, entitlements, viewer_id, movie_id):
        now = get_naive_utc_now()
        with managed_session() as session:
            entitlements.grant_subscription(session, viewer_id, "pro", "month", now + timedelta(days=30), now)
        access = entitlements.check(viewer_id, movie_id)
        assert access.scope == EntitlementScope.SUBSCRIPTION

    def test_free_content_is_open(self, entitlements, viewer_id, make_content, creator_id):
        free_id = make_content(owner_id=creator_id, view_price=Decimal("0"))
        access = entitlements.check(viewer_id, free_id)
        assert access.has_access is True
        assert access.scope == EntitlementScope.FREE

    def test_priced_series_is_not_free(self, entitlements, viewer_id, series_with_episodes):
        series_id, _ = series_with_episodes
        assert entitlements.check(viewer_id, series_id).has_access is False

    def test_paid_content_without_grant_is_denied(self, entitlements, viewer_id, movie_id):
        access = entitlements.check(viewer_id, movie_id)
        assert access.has_access is False
        assert access.to_dict() == {"hasAccess": False, "scope": None, "expiresAt": None, "daysRemaining": None}

    def test_unknown_content_is_denied(self, entitlements, viewer_id):
        assert entitlements.check(viewer_id, 9999).has_access is False


class TestSubscriptions:

    def test_devices_truncated_to_plan_limit(self, entitlements, make_user):
        user_id = make_user(active_devices=["d1", "d2", "d3", "d4", "d5", "d6"])
        end_at = get_naive_utc_now() + timedelta(days=30)
        with managed_session() as session:
            entitlements.grant_subscription(session, user_id, "pro", "month", end_at)

        user = load(User, user_id)
        assert user.max_devices == 4
        assert user.active_devices == ["d3", "d4", "d5", "d6"]
        assert user.subscription_plan == "pro"

    def test_unknown_plan_rejected(self, entitlements, viewer_id):
        with managed_session() as session:
            with pytest.raises(ValidationError):
                entitlements.grant_subscription(
                    session, viewer_id, "platinum", "month", get_naive_utc_now() + timedelta(days=30)
                )

    def test_same_active_plan_renews_from_current_end(self, make_user):
        now = get_naive_utc_now()
        user_id = make_user(
            subscription_plan="pro",
            subscription_period="month",
            subscription_start_at=now - timedelta(days=10),
            subscription_end_at=now + timedelta(days=20),
        )
        user = load(User, user_id)
        kind, start_at, end_at = EntitlementService.subscription_window(user, "pro", SubscriptionPeriod.MONTH, now)
        assert kind == PaymentKind.SUBSCRIPTION_RENEWAL
        assert start_at == now - timedelta(days=10)
        assert end_at > now + timedelta(days=45)

    def test_different_plan_is_upgrade_from_now(self, make_user):
        now = get_naive_utc_now()
        user_id = make_user(
            subscription_plan="basic",
            subscription_start_at=now - timedelta(days=10),
            subscription_end_at=now + timedelta(days=20),
        )
        kind, start_at, _ = EntitlementService.subscription_window(
            load(User, user_id), "pro", SubscriptionPeriod.YEAR, now
        )
        assert kind == PaymentKind.SUBSCRIPTION_UPGRADE
        assert start_at == now


class TestListingAndExpiry:

    def test_list_user_entitlements(self, entitlements, viewer_id, movie_id):
        with managed_session() as session:
            entitlements.grant_title(session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None)
        rows = entitlements.list_user_entitlements(viewer_id)
        assert len(rows) == 1
        assert rows[0]["contentId"] == movie_id
        assert rows[0]["scope"] == "title"
        assert rows[0]["pricePaid"] == 1000.0

    def test_list_for_unknown_user(self, entitlements):
        with pytest.raises(NotFound):
            entitlements.list_user_entitlements(424242)

    def test_expire_stale_marks_past_windows(self, entitlements, viewer_id, movie_id):
        past = get_naive_utc_now() - timedelta(days=10)
        with managed_session() as session:
            grant = entitlements.grant_title(
                session, viewer_id, movie_id, AccessPeriod.DAYS_7, Decimal("1000"), None, now=past
            )
            grant_id = grant.id
        assert entitlements.expire_stale() == 1
        assert load(Entitlement, grant_id).state == EntitlementState.EXPIRED.value
        assert entitlements.expire_stale() == 0
