"""Compare-and-swap claim rows serializing per-market submissions across instances."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.orm import Session

from app.models import MarketLock, utcnow


class LockRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def take_over(self, market_id: str, owner: str, *, ttl: timedelta, now: datetime | None = None) -> bool:
        """Claim an existing row if it expired or already belongs to ``owner``."""

        now = now or utcnow()
        statement = (
            update(MarketLock)
            .where(
                MarketLock.market_id == market_id,
                or_(MarketLock.expires_at < now, MarketLock.owner == owner),
            )
            .values(owner=owner, claimed_at=now, expires_at=now + ttl)
            .execution_options(synchronize_session=False)
        )
        return (self._session.execute(statement).rowcount or 0) == 1

    def insert_claim(self, market_id: str, owner: str, *, ttl: timedelta, now: datetime | None = None) -> MarketLock:
        """Insert a fresh claim; the primary key rejects a concurrent claimant."""

        now = now or utcnow()
        lock = MarketLock(market_id=market_id, owner=owner, claimed_at=now, expires_at=now + ttl)
        self._session.add(lock)
        self._session.flush()
        return lock

    def release(self, market_id: str, owner: str) -> bool:
        statement = (
            delete(MarketLock)
            .where(MarketLock.market_id == market_id, MarketLock.owner == owner)
            .execution_options(synchronize_session=False)
        )
        return (self._session.execute(statement).rowcount or 0) == 1

    def get(self, market_id: str) -> MarketLock | None:
        return self._session.get(MarketLock, market_id)
