from __future__ import annotations

from datetime import timedelta

from app.db import session_scope
from app.repositories import LockRepository
from app.services.market_locks import MarketLockManager
from conftest import market_id


def test_claim_and_release(locks, session_factory):
    """Verify that a claim creates a lock row and release removes it."""
    mid = market_id(1)
    assert locks.claim(mid)
    with session_scope(session_factory) as session:
        assert LockRepository(session).get(mid).owner == "test-instance"

    locks.release(mid)
    with session_scope(session_factory) as session:
        assert LockRepository(session).get(mid) is None


def test_second_instance_cannot_claim_live_lock(locks, session_factory):
    """Verify that another owner is refused while the claim is unexpired."""
    mid = market_id(2)
    other = MarketLockManager(session_factory, owner="other", ttl=timedelta(minutes=5))

    assert locks.claim(mid)
    assert not other.claim(mid)
    assert locks.claim(mid)


def test_expired_lock_can_be_taken_over(session_factory):
    """Verify that a crashed holder's expired claim is taken over."""
    mid = market_id(3)
    crashed = MarketLockManager(session_factory, owner="crashed", ttl=timedelta(seconds=-1))
    survivor = MarketLockManager(session_factory, owner="survivor", ttl=timedelta(minutes=5))

    assert crashed.claim(mid)
    assert survivor.claim(mid)
    with session_scope(session_factory) as session:
        assert LockRepository(session).get(mid).owner == "survivor"


def test_hold_releases_on_error(locks, session_factory):
    """Verify that the hold context releases the claim even when the body raises."""
    mid = market_id(4)
    try:
        with locks.hold(mid) as acquired:
            assert acquired
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    with session_scope(session_factory) as session:
        assert LockRepository(session).get(mid) is None


def test_disabled_locking_always_claims(session_factory):
    """Verify that single-instance mode never touches the lock table."""
    manager = MarketLockManager(session_factory, owner="solo", ttl=timedelta(minutes=5), enabled=False)
    with manager.hold(market_id(5)) as acquired:
        assert acquired
    with session_scope(session_factory) as session:
        assert LockRepository(session).get(market_id(5)) is None


def test_from_settings_uses_instance_id(test_settings, session_factory):
    """Verify that the configured instance id becomes the lock owner."""
    manager = MarketLockManager.from_settings(test_settings, session_factory)
    assert manager.owner == "test-instance"
    assert manager.ttl == timedelta(seconds=test_settings.lock_ttl_seconds)
