"""
Entitlement Store
Persists and resolves access grants: per-title purchases, series umbrellas,
platform subscriptions, ownership and free content.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from config import MonetizationSettings, get_settings
from database import managed_session
from models import (
    AccessPeriod, Content, ContentKind, ContentStatus, Entitlement,
    EntitlementScope, EntitlementState, PaymentKind, SubscriptionPeriod, User,
)
from utils.atomic_transactions import locked_user
from utils.datetime_helpers import add_months, days_remaining, get_naive_utc_now
from utils.exception_handler import NotFound, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessCheck:
    has_access: bool
    scope: Optional[EntitlementScope] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAccess": self.has_access,
            "scope": self.scope.value if self.scope else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "daysRemaining": days_remaining(self.expires_at) if self.expires_at else None,
        }


NO_ACCESS = AccessCheck(has_access=False)


def _active_clause(now: datetime):
    return and_(
        Entitlement.state == EntitlementState.ACTIVE.value,
        or_(Entitlement.expires_at.is_(None), Entitlement.expires_at > now),
    )


class EntitlementService:
    """Grants and checks access to content"""

    def __init__(self, settings: Optional[MonetizationSettings] = None):
        self.settings = settings or get_settings()

    def compute_expiry(self, period: AccessPeriod, now: datetime, watch: bool = True) -> Optional[datetime]:
        """one-time: 48h watch window for watches, no expiry for downloads; otherwise now + period days"""
        if period == AccessPeriod.ONE_TIME:
            if watch:
                return now + timedelta(hours=self.settings.watch_window_hours)
            return None
        return now + timedelta(days=period.days)

    # ------------------------------------------------------------------
    # Grants (run inside the caller's transaction)
    # ------------------------------------------------------------------

    def grant_title(
        self,
        session: Session,
        user_id: int,
        content_id: int,
        period: AccessPeriod,
        price_paid: Decimal,
        payment_id: Optional[int],
        watch: bool = True,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """Grant per-title access, superseding any active title entitlement for the same content"""
        now = now or get_naive_utc_now()

        previous = (
            session.query(Entitlement)
            .filter(
                Entitlement.user_id == user_id,
                Entitlement.content_id == content_id,
                Entitlement.scope == EntitlementScope.TITLE.value,
                Entitlement.state == EntitlementState.ACTIVE.value,
            )
            .with_for_update()
            .first()
        )
        if previous is not None:
            previous.state = EntitlementState.RENEWED.value
            session.flush()  # free the active-title unique slot before inserting

        content = session.get(Content, content_id)
        entitlement = Entitlement(
            user_id=user_id,
            content_id=content_id,
            series_id=content.parent_series_id if content else None,
            scope=EntitlementScope.TITLE.value,
            period=period.value,
            price_paid=price_paid,
            expires_at=self.compute_expiry(period, now, watch=watch),
            payment_id=payment_id,
            previous_entitlement_id=previous.id if previous else None,
            state=EntitlementState.ACTIVE.value,
        )
        session.add(entitlement)
        session.flush()
        logger.info(
            f"🎬 TITLE_ACCESS_GRANTED: user {user_id} content {content_id} period {period.value} "
            f"expires {entitlement.expires_at}"
        )
        return entitlement

    def grant_series(
        self,
        session: Session,
        user_id: int,
        series_id: int,
        period: AccessPeriod,
        price_paid: Decimal,
        payment_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> Tuple[Entitlement, List[Entitlement]]:
        """
        Grant series-wide access plus a zero-cost entitlement for every approved
        episode, all sharing one expiry. An unexpired series grant is renewed:
        the new window starts at its expiry and the old rows become 'renewed'.
        """
        now = now or get_naive_utc_now()

        current = (
            session.query(Entitlement)
            .filter(
                Entitlement.user_id == user_id,
                Entitlement.content_id == series_id,
                Entitlement.series_id == series_id,
                Entitlement.scope == EntitlementScope.SERIES.value,
                _active_clause(now),
            )
            .order_by(Entitlement.expires_at.desc())
            .first()
        )

        start = now
        if current is not None and current.expires_at is not None:
            start = max(now, current.expires_at)
        expires_at = None if period == AccessPeriod.ONE_TIME else start + timedelta(days=period.days)

        if current is not None:
            renewed = session.execute(
                update(Entitlement)
                .where(
                    Entitlement.user_id == user_id,
                    Entitlement.series_id == series_id,
                    Entitlement.scope == EntitlementScope.SERIES.value,
                    Entitlement.state == EntitlementState.ACTIVE.value,
                )
                .values(state=EntitlementState.RENEWED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            logger.info(
                f"🔁 SERIES_ACCESS_RENEWED: user {user_id} series {series_id} "
                f"({renewed.rowcount} rows) new expiry {expires_at}"
            )

        series_entitlement = Entitlement(
            user_id=user_id,
            content_id=series_id,
            series_id=series_id,
            scope=EntitlementScope.SERIES.value,
            period=period.value,
            price_paid=price_paid,
            expires_at=expires_at,
            payment_id=payment_id,
            previous_entitlement_id=current.id if current else None,
            state=EntitlementState.ACTIVE.value,
        )
        session.add(series_entitlement)

        episodes = (
            session.query(Content)
            .filter(
                Content.parent_series_id == series_id,
                Content.kind == ContentKind.EPISODE.value,
                Content.status == ContentStatus.APPROVED.value,
            )
            .order_by(Content.season_number, Content.episode_number, Content.id)
            .all()
        )
        episode_entitlements = []
        for episode in episodes:
            episode_entitlement = Entitlement(
                user_id=user_id,
                content_id=episode.id,
                series_id=series_id,
                scope=EntitlementScope.SERIES.value,
                period=period.value,
                price_paid=Decimal("0"),
                expires_at=expires_at,
                payment_id=payment_id,
                state=EntitlementState.ACTIVE.value,
            )
            session.add(episode_entitlement)
            episode_entitlements.append(episode_entitlement)

        session.flush()
        logger.info(
            f"📺 SERIES_ACCESS_GRANTED: user {user_id} series {series_id} period {period.value} "
            f"with {len(episode_entitlements)} episodes, expires {expires_at}"
        )
        return series_entitlement, episode_entitlements

    @staticmethod
    def subscription_window(
        user: Optional[User], plan: str, period: SubscriptionPeriod, now: datetime
    ) -> Tuple[PaymentKind, datetime, datetime]:
        """
        (kind, start_at, end_at) for a subscription purchase.
        Buying the plan that is already active renews it from its current end;
        any other purchase is an upgrade starting now.
        """
        months = 1 if period == SubscriptionPeriod.MONTH else 12
        current = user.subscription if user else None
        if current is not None and current.plan == plan and current.is_active(now):
            return PaymentKind.SUBSCRIPTION_RENEWAL, current.start_at, add_months(current.end_at, months)
        return PaymentKind.SUBSCRIPTION_UPGRADE, now, add_months(now, months)

    def grant_subscription(
        self,
        session: Session,
        user_id: int,
        plan: str,
        period: str,
        end_at: datetime,
        start_at: Optional[datetime] = None,
    ) -> User:
        """Set the user's subscription and device limit; active devices beyond the limit are dropped"""
        if plan not in self.settings.plan_devices:
            raise ValidationError(f"Unknown subscription plan: {plan}")

        user = locked_user(session, user_id)
        max_devices = int(self.settings.plan_devices[plan])

        user.subscription_plan = plan
        user.subscription_period = period
        user.subscription_start_at = start_at or get_naive_utc_now()
        user.subscription_end_at = end_at
        user.max_devices = max_devices

        devices = list(user.active_devices or [])
        if len(devices) > max_devices:
            # Most recent logins are appended last
            user.active_devices = devices[-max_devices:]
            logger.info(f"📱 DEVICES_TRUNCATED: user {user_id} {len(devices)} -> {max_devices}")

        session.flush()
        logger.info(f"⭐ SUBSCRIPTION_GRANTED: user {user_id} plan {plan} until {end_at}")
        return user

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def check(
        self,
        user_id: int,
        content_id: int,
        session: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> AccessCheck:
        """Resolve access: owner -> title -> series -> subscription -> free"""
        if session is None:
            with managed_session() as new_session:
                return self._check(new_session, user_id, content_id, now or get_naive_utc_now())
        return self._check(session, user_id, content_id, now or get_naive_utc_now())

    def _check(self, session: Session, user_id: int, content_id: int, now: datetime) -> AccessCheck:
        content = session.get(Content, content_id)
        if content is None:
            return NO_ACCESS

        if content.owner_id is not None and content.owner_id == user_id:
            return AccessCheck(True, EntitlementScope.OWNER, None)

        title = (
            session.query(Entitlement)
            .filter(
                Entitlement.user_id == user_id,
                Entitlement.content_id == content_id,
                Entitlement.scope == EntitlementScope.TITLE.value,
                _active_clause(now),
            )
            .first()
        )
        if title is not None:
            return AccessCheck(True, EntitlementScope.TITLE, title.expires_at)

        series_id = None
        if content.kind == ContentKind.EPISODE.value:
            series_id = content.parent_series_id
        elif content.kind == ContentKind.SERIES.value:
            series_id = content.id
        if series_id is not None:
            series_grant = (
                session.query(Entitlement)
                .filter(
                    Entitlement.user_id == user_id,
                    Entitlement.series_id == series_id,
                    Entitlement.scope == EntitlementScope.SERIES.value,
                    _active_clause(now),
                )
                .order_by(Entitlement.expires_at.desc())
                .first()
            )
            if series_grant is not None:
                return AccessCheck(True, EntitlementScope.SERIES, series_grant.expires_at)

        user = session.get(User, user_id)
        subscription = user.subscription if user else None
        if subscription is not None and subscription.is_active(now):
            return AccessCheck(True, EntitlementScope.SUBSCRIPTION, subscription.end_at)

        is_priced_series = content.kind == ContentKind.SERIES.value and bool(content.pricing_tiers)
        if (content.view_price or 0) == 0 and not is_priced_series:
            return AccessCheck(True, EntitlementScope.FREE, None)

        return NO_ACCESS

    def list_user_entitlements(self, user_id: int, active_only: bool = True) -> List[Dict[str, Any]]:
        """Purchased access for a user, newest first"""
        now = get_naive_utc_now()
        with managed_session() as session:
            if session.get(User, user_id) is None:
                raise NotFound(f"User {user_id} not found")
            query = session.query(Entitlement, Content).join(Content, Content.id == Entitlement.content_id).filter(
                Entitlement.user_id == user_id
            )
            if active_only:
                query = query.filter(_active_clause(now))
            rows = query.order_by(Entitlement.created_at.desc(), Entitlement.id.desc()).all()
            return [
                {
                    "id": entitlement.id,
                    "contentId": entitlement.content_id,
                    "contentTitle": content.title,
                    "contentKind": content.kind,
                    "seriesId": entitlement.series_id,
                    "scope": entitlement.scope,
                    "accessPeriod": entitlement.period,
                    "pricePaid": float(entitlement.price_paid),
                    "currency": entitlement.currency,
                    "expiresAt": entitlement.expires_at.isoformat() if entitlement.expires_at else None,
                    "daysRemaining": days_remaining(entitlement.expires_at, now),
                    "state": entitlement.state if entitlement.is_active(now) or entitlement.state != EntitlementState.ACTIVE.value
                    else EntitlementState.EXPIRED.value,
                    "paymentId": entitlement.payment_id,
                }
                for entitlement, content in rows
            ]

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark active entitlements whose window has passed as expired"""
        now = now or get_naive_utc_now()
        with managed_session() as session:
            result = session.execute(
                update(Entitlement)
                .where(
                    Entitlement.state == EntitlementState.ACTIVE.value,
                    Entitlement.expires_at.is_not(None),
                    Entitlement.expires_at <= now,
                )
                .values(state=EntitlementState.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0
        if expired:
            logger.info(f"⌛ ENTITLEMENTS_EXPIRED: {expired} entitlements marked expired")
        return expired


_entitlement_service: Optional[EntitlementService] = None


def get_entitlement_service() -> EntitlementService:
    global _entitlement_service
    if _entitlement_service is None:
        _entitlement_service = EntitlementService()
    return _entitlement_service
