"""Vote record persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.domain import PendingVote, VoteKind
from app.models import VoteRecord, utcnow


class VoteRepository:
    """Read pending votes and flip their aggregated flag once a transition confirms."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def add_vote(
        self,
        market_id: str,
        voter_id: str,
        kind: VoteKind,
        value: bool,
        *,
        cast_at: datetime | None = None,
    ) -> VoteRecord:
        record = VoteRecord(
            market_id=market_id,
            voter_id=voter_id,
            vote_kind=kind.value,
            value=value,
            cast_at=cast_at or utcnow(),
            aggregated=False,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def mark_aggregated(
        self,
        vote_ids: Iterable[int],
        *,
        tx_signature: str,
        aggregated_at: datetime | None = None,
    ) -> int:
        ids = list(vote_ids)
        if not ids:
            return 0
        if not tx_signature:
            raise ValueError("Votes can only be marked aggregated with a transaction signature")
        statement = (
            update(VoteRecord)
            .where(VoteRecord.id.in_(ids), VoteRecord.aggregated.is_(False))
            .values(
                aggregated=True,
                aggregated_at=aggregated_at or utcnow(),
                tx_signature=tx_signature,
            )
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(statement)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Queries

    def fetch_pending(self, kind: VoteKind, limit: int) -> list[PendingVote]:
        query = (
            select(VoteRecord)
            .where(VoteRecord.vote_kind == kind.value, VoteRecord.aggregated.is_(False))
            .order_by(VoteRecord.cast_at.asc(), VoteRecord.id.asc())
            .limit(limit)
        )
        rows = self._session.execute(query).scalars().all()
        return [
            PendingVote(
                vote_id=row.id,
                market_id=row.market_id,
                voter_id=row.voter_id,
                vote_kind=VoteKind(row.vote_kind),
                value=bool(row.value),
                cast_at=row.cast_at,
            )
            for row in rows
        ]

    def count_votes(self, market_id: str, kind: VoteKind) -> tuple[int, int]:
        """Return ``(agree, disagree)`` over every vote of ``kind`` for the market."""

        query = select(
            func.coalesce(func.sum(case((VoteRecord.value.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((VoteRecord.value.is_(False), 1), else_=0)), 0),
        ).where(VoteRecord.market_id == market_id, VoteRecord.vote_kind == kind.value)
        agree, disagree = self._session.execute(query).one()
        return int(agree), int(disagree)

    def pending_vote_ids(self, market_id: str, kind: VoteKind) -> list[int]:
        query = (
            select(VoteRecord.id)
            .where(
                VoteRecord.market_id == market_id,
                VoteRecord.vote_kind == kind.value,
                VoteRecord.aggregated.is_(False),
            )
            .order_by(VoteRecord.id.asc())
        )
        return list(self._session.execute(query).scalars().all())

