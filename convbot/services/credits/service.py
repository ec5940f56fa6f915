"""
Daily credit ledger.

Every operation is one short transaction holding a row lock on the user's
account, so concurrent debits for the same user serialize and the balance
never goes negative. The daily refill is lazy: the first access at or after
`reset_at` (next UTC midnight) restores the cap before anything else happens.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from convbot.core.config import settings
from convbot.models.credits import UserCredits
from convbot.services.subscriptions.service import SubscriptionService, as_utc
from convbot.utils.metrics import credit_operations_total


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    remaining: int
    unlimited: bool = False
    insufficient: bool = False

    @property
    def ok(self) -> bool:
        return not self.insufficient


def next_utc_midnight(now: datetime) -> datetime:
    day = as_utc(now).date() + timedelta(days=1)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


class CreditLedger:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        daily_credits: int | None = None,
        transaction_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from convbot.db.session import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.daily_credits = settings.daily_credits if daily_credits is None else daily_credits
        self.transaction_timeout = (
            settings.credits_transaction_timeout_seconds if transaction_timeout is None else transaction_timeout
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_unlimited(self, user_id: str) -> bool:
        db = self._session_factory()
        try:
            return SubscriptionService(db).is_unlimited(user_id, self._clock())
        except SQLAlchemyError as e:
            logger.error("Unlimited check failed", extra={"user_id": user_id, "error": str(e)})
            raise
        finally:
            db.close()

    def consume(self, user_id: str, amount: int) -> ConsumeResult:
        """
        Debit `amount` credits atomically.
        Unlimited users are never debited. When the balance is short nothing
        changes and the result carries the current balance.
        """
        amount = max(int(amount), 0)
        now = self._clock()
        db = self._session_factory()
        try:
            if SubscriptionService(db).is_unlimited(user_id, now):
                credit_operations_total.labels(result="unlimited").inc()
                return ConsumeResult(remaining=0, unlimited=True)

            self._apply_lock_timeout(db)
            account = self._lock_account(db, user_id, now)
            if as_utc(account.reset_at) <= now:
                account.balance = self.daily_credits
                account.reset_at = next_utc_midnight(now)
                credit_operations_total.labels(result="reset").inc()
                logger.info("Daily credits reset", extra={"user_id": user_id, "remaining": self.daily_credits})

            balance = account.balance
            if amount > balance:
                db.commit()  # keep a reset that happened on this access
                credit_operations_total.labels(result="insufficient").inc()
                logger.info(
                    "Insufficient credits",
                    extra={"user_id": user_id, "credits": amount, "remaining": balance},
                )
                return ConsumeResult(remaining=balance, insufficient=True)

            account.balance = balance - amount
            db.commit()
            if amount > 0:
                credit_operations_total.labels(result="consumed").inc()
            return ConsumeResult(remaining=balance - amount)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Credit consume failed", extra={"user_id": user_id, "credits": amount, "error": str(e)})
            raise
        finally:
            db.close()

    def get_or_reset_balance(self, user_id: str) -> int:
        return self.consume(user_id, 0).remaining

    def _lock_account(self, db: Session, user_id: str, now: datetime) -> UserCredits:
        account = self._select_for_update(db, user_id)
        if account is not None:
            return account
        try:
            db.add(UserCredits(user_id=user_id, balance=self.daily_credits, reset_at=next_utc_midnight(now)))
            db.flush()
        except IntegrityError:
            # Created concurrently by another transaction
            db.rollback()
            self._apply_lock_timeout(db)
        return self._select_for_update(db, user_id, required=True)

    @staticmethod
    def _select_for_update(db: Session, user_id: str, required: bool = False) -> UserCredits | None:
        query = db.query(UserCredits).filter(UserCredits.user_id == user_id).with_for_update()
        return query.one() if required else query.one_or_none()

    def _apply_lock_timeout(self, db: Session) -> None:
        if db.get_bind().dialect.name != "postgresql":
            return
        ms = int(self.transaction_timeout * 1000)
        db.execute(text(f"SET LOCAL lock_timeout = {ms}"))
        db.execute(text(f"SET LOCAL statement_timeout = {ms}"))
