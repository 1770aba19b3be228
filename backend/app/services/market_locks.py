"""Distributed per-market mutual exclusion backed by the market_locks table."""

from __future__ import annotations

import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from loguru import logger
from sqlalchemy.exc import IntegrityError

from app.core.config import Settings
from app.db import SessionFactory, session_scope
from app.repositories import LockRepository


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class MarketLockManager:
    """Claim a market before submitting for it so two instances never race.

    A claim is an atomic update of an expired (or self-owned) row, falling back
    to an insert guarded by the primary key. Claims expire after ``ttl`` so a
    crashed holder cannot block a market forever.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        owner: str,
        ttl: timedelta,
        enabled: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self.owner = owner
        self.ttl = ttl
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: SessionFactory) -> "MarketLockManager":
        return cls(
            session_factory,
            owner=settings.instance_id or default_instance_id(),
            ttl=timedelta(seconds=settings.lock_ttl_seconds),
            enabled=settings.distributed_locking,
        )

    def claim(self, market_id: str) -> bool:
        if not self.enabled:
            return True
        with session_scope(self._session_factory) as session:
            if LockRepository(session).take_over(market_id, self.owner, ttl=self.ttl):
                return True
        try:
            with session_scope(self._session_factory) as session:
                LockRepository(session).insert_claim(market_id, self.owner, ttl=self.ttl)
        except IntegrityError:
            return False
        return True

    def release(self, market_id: str) -> None:
        if not self.enabled:
            return
        with session_scope(self._session_factory) as session:
            LockRepository(session).release(market_id, self.owner)

    @contextmanager
    def hold(self, market_id: str) -> Iterator[bool]:
        """Yield whether the claim succeeded; release it on exit when held."""

        acquired = self.claim(market_id)
        if not acquired:
            logger.info("Market {} is locked by another instance; skipping", market_id)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    self.release(market_id)
                except Exception as exc:  # noqa: BLE001 - lock expires on its own
                    logger.warning("Failed to release lock for {}: {}", market_id, exc)
