from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convbot.models.subscription import PLAN_UNLIMITED, STATUS_ACTIVE, STATUS_CANCELED, Subscription


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionService:
    """Unlimited-plan subscriptions. Methods flush; the caller owns the transaction."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.user_id == user_id).one_or_none()

    def is_unlimited(self, user_id: str, now: datetime | None = None) -> bool:
        sub = self.get(user_id)
        if sub is None or sub.plan != PLAN_UNLIMITED or sub.status != STATUS_ACTIVE:
            return False
        expires_at = as_utc(sub.expires_at)
        return expires_at is None or expires_at > (now or datetime.now(timezone.utc))

    def activate_or_extend_unlimited(
        self,
        user_id: str,
        duration: timedelta,
        now: datetime | None = None,
    ) -> Subscription:
        """Extend from max(now, current expiry). A lapsed subscription restarts from now."""
        if duration <= timedelta(0):
            raise ValueError("duration must be positive")
        now = now or datetime.now(timezone.utc)
        sub = self._lock(user_id)
        if sub is None:
            try:
                self.db.add(Subscription(user_id=user_id, plan=PLAN_UNLIMITED, status=STATUS_ACTIVE, expires_at=now))
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
            sub = self._lock(user_id)

        base = now
        current = as_utc(sub.expires_at)
        if sub.status == STATUS_ACTIVE and sub.plan == PLAN_UNLIMITED and current is not None and current > now:
            base = current
        sub.plan = PLAN_UNLIMITED
        sub.status = STATUS_ACTIVE
        sub.expires_at = base + duration
        self.db.flush()
        return sub

    def cancel(self, user_id: str) -> bool:
        sub = self._lock(user_id)
        if sub is None or sub.status == STATUS_CANCELED:
            return False
        sub.status = STATUS_CANCELED
        self.db.flush()
        return True

    def _lock(self, user_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .with_for_update()
            .one_or_none()
        )
