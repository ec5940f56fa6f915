from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from convbot.db.base import Base
from convbot.services.subscriptions.service import SubscriptionService, as_utc


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()
    engine.dispose()


def test_activate_new_subscription(db):
    svc = SubscriptionService(db)
    sub = svc.activate_or_extend_unlimited("u1", timedelta(days=30), now=NOW)
    db.commit()
    assert as_utc(sub.expires_at) == NOW + timedelta(days=30)
    assert svc.is_unlimited("u1", NOW + timedelta(days=29))
    assert not svc.is_unlimited("u1", NOW + timedelta(days=31))


def test_extend_active_subscription_from_current_expiry(db):
    svc = SubscriptionService(db)
    svc.activate_or_extend_unlimited("u1", timedelta(days=30), now=NOW)
    sub = svc.activate_or_extend_unlimited("u1", timedelta(days=30), now=NOW + timedelta(days=10))
    assert as_utc(sub.expires_at) == NOW + timedelta(days=60)


def test_lapsed_subscription_restarts_from_now(db):
    svc = SubscriptionService(db)
    svc.activate_or_extend_unlimited("u1", timedelta(days=1), now=NOW)
    later = NOW + timedelta(days=5)
    sub = svc.activate_or_extend_unlimited("u1", timedelta(days=7), now=later)
    assert as_utc(sub.expires_at) == later + timedelta(days=7)


def test_cancel_ends_unlimited(db):
    svc = SubscriptionService(db)
    svc.activate_or_extend_unlimited("u1", timedelta(days=30), now=NOW)
    assert svc.cancel("u1") is True
    assert not svc.is_unlimited("u1", NOW)
    assert svc.cancel("u1") is False


def test_non_positive_duration_rejected(db):
    with pytest.raises(ValueError):
        SubscriptionService(db).activate_or_extend_unlimited("u1", timedelta(0), now=NOW)
