from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from convbot.db.base import Base


class UserCredits(Base):
    """Daily credit account. One row per user, created lazily on first access."""

    __tablename__ = "user_credits"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_credits_balance_non_negative"),
    )

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False)
    # Next UTC midnight; the balance is refilled on the first access at or after it
    reset_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
