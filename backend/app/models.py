from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .db import Base
from .domain import MarketState, VoteKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class UtcDateTime(TypeDecorator):
    """Timezone-aware timestamps that survive SQLite round trips."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class VoteRecord(Base):
    __tablename__ = "vote_records"
    __table_args__ = (
        UniqueConstraint("market_id", "voter_id", "vote_kind", name="uq_vote_market_voter_kind"),
        Index("ix_vote_records_pending", "vote_kind", "aggregated", "cast_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    voter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vote_kind: Mapped[str] = mapped_column(String(16), nullable=False, default=VoteKind.PROPOSAL.value)
    value: Mapped[bool] = mapped_column(Boolean, nullable=False)
    cast_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    aggregated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    aggregated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    tx_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)


class MarketMirror(Base):
    """Off-chain cache of a market account; only transition signatures may move it."""

    __tablename__ = "market_mirrors"

    market_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=MarketState.PROPOSED.value)
    proposed_outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolution_proposed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    dispute_initiated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    final_outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    last_transition_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    last_transition_tx: Mapped[str | None] = mapped_column(String(128), nullable=True)

    transitions: Mapped[list["MarketTransition"]] = relationship(
        "MarketTransition",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="MarketTransition.id",
    )


class MarketTransition(Base):
    """Append-only ledger of mirror state changes and the signatures behind them."""

    __tablename__ = "market_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("market_mirrors.market_id"), nullable=False, index=True
    )
    from_state: Mapped[str] = mapped_column(String(16), nullable=False)
    to_state: Mapped[str] = mapped_column(String(16), nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="orchestrator")
    recorded_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)

    market: Mapped[MarketMirror] = relationship("MarketMirror", back_populates="transitions")


class MarketLock(Base):
    __tablename__ = "market_locks"

    market_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class FinalizationError(Base):
    __tablename__ = "market_finalization_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    error_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
    last_failed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, default=utcnow)
