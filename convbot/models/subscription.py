from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from convbot.db.base import Base


PLAN_UNLIMITED = "unlimited"
STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"


class Subscription(Base):
    __tablename__ = "subscriptions"

    user_id = Column(String, primary_key=True)
    plan = Column(String, nullable=False, default=PLAN_UNLIMITED)
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # null = never expires
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
