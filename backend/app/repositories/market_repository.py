"""Market mirror persistence helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.domain import MarketState, MirrorViolation, OnChainMarket
from app.models import FinalizationError, MarketMirror, MarketTransition, utcnow

_TERMINAL_STATES = [state.value for state in MarketState if state.is_terminal]


class MirrorWriteError(ValueError):
    """Raised when a mirror write would break the signature-backed history."""


class MarketRepository:
    """Encapsulate all mirror reads and the signature-gated writes."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def register_market(
        self,
        market_id: str,
        *,
        creation_tx: str,
        state: MarketState = MarketState.PROPOSED,
        proposed_outcome: bool | None = None,
        resolution_proposed_at: datetime | None = None,
        dispute_initiated_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> MarketMirror:
        if not creation_tx:
            raise MirrorWriteError(f"Registering {market_id} requires the creating transaction signature")
        if self._session.get(MarketMirror, market_id) is not None:
            raise MirrorWriteError(f"Market {market_id} is already mirrored")

        at = created_at or utcnow()
        mirror = MarketMirror(
            market_id=market_id,
            state=state.value,
            proposed_outcome=proposed_outcome,
            resolution_proposed_at=resolution_proposed_at,
            dispute_initiated_at=dispute_initiated_at,
            created_at=at,
            last_transition_at=at,
            last_transition_tx=creation_tx,
        )
        self._session.add(mirror)
        self._session.add(
            MarketTransition(
                market=mirror,
                from_state=state.value,
                to_state=state.value,
                tx_signature=creation_tx,
                source="registered",
                recorded_at=at,
            )
        )
        self._session.flush()
        return mirror

    def apply_transition(
        self,
        market_id: str,
        *,
        from_state: MarketState,
        to_state: MarketState,
        tx_signature: str,
        snapshot: OnChainMarket | None = None,
        at: datetime | None = None,
        source: str = "orchestrator",
    ) -> MarketTransition | None:
        """Move the mirror to ``to_state`` backed by ``tx_signature``.

        Returns ``None`` when the mirror already reflects the transition, which
        keeps reconciliation after a crash idempotent.
        """

        if not tx_signature:
            raise MirrorWriteError(f"Transition of {market_id} to {to_state.value} has no signature")

        mirror = self._session.get(MarketMirror, market_id)
        if mirror is None:
            raise MirrorWriteError(f"Market {market_id} is not mirrored")

        current = MarketState(mirror.state)
        if current is to_state:
            if snapshot is not None:
                self._copy_snapshot(mirror, snapshot)
            return None
        if current is not from_state:
            raise MirrorWriteError(
                f"Mirror for {market_id} is {current.value}, cannot apply {from_state.value} -> {to_state.value}"
            )
        if not current.can_transition_to(to_state):
            raise MirrorWriteError(f"{current.value} -> {to_state.value} is not a lifecycle transition")

        recorded_at = at or utcnow()
        mirror.state = to_state.value
        mirror.last_transition_at = recorded_at
        mirror.last_transition_tx = tx_signature
        if snapshot is not None:
            self._copy_snapshot(mirror, snapshot)

        transition = MarketTransition(
            market=mirror,
            from_state=current.value,
            to_state=to_state.value,
            tx_signature=tx_signature,
            source=source,
            recorded_at=recorded_at,
        )
        self._session.add(transition)
        self._session.flush()
        return transition

    def reconcile(
        self,
        snapshot: OnChainMarket,
        *,
        tx_signature: str,
        source: str = "indexer",
    ) -> MarketTransition | None:
        """Bring the mirror in line with an on-chain snapshot observed after ``tx_signature``."""

        mirror = self._session.get(MarketMirror, snapshot.market_id)
        if mirror is None:
            raise MirrorWriteError(f"Market {snapshot.market_id} is not mirrored")
        return self.apply_transition(
            snapshot.market_id,
            from_state=MarketState(mirror.state),
            to_state=snapshot.state,
            tx_signature=tx_signature,
            snapshot=snapshot,
            source=source,
        )

    def record_finalization_error(
        self,
        market_id: str,
        *,
        error_kind: str,
        error_message: str,
        attempts: int,
    ) -> FinalizationError:
        """Keep one row per market: repeated failures add to ``attempts`` and replace the message."""

        record = self._session.execute(
            select(FinalizationError).where(FinalizationError.market_id == market_id)
        ).scalar_one_or_none()
        if record is None:
            record = FinalizationError(market_id=market_id, attempts=0)
            self._session.add(record)
        record.error_kind = error_kind
        record.error_message = error_message[:2000]
        record.attempts += attempts
        record.last_failed_at = utcnow()
        self._session.flush()
        return record

    @staticmethod
    def _copy_snapshot(mirror: MarketMirror, snapshot: OnChainMarket) -> None:
        if snapshot.proposed_outcome is not None:
            mirror.proposed_outcome = snapshot.proposed_outcome
        if snapshot.final_outcome is not None:
            mirror.final_outcome = snapshot.final_outcome
        if snapshot.resolution_proposed_at is not None:
            mirror.resolution_proposed_at = snapshot.resolution_proposed_at
        if snapshot.dispute_initiated_at is not None:
            mirror.dispute_initiated_at = snapshot.dispute_initiated_at

    # ------------------------------------------------------------------
    # Queries

    def get(self, market_id: str) -> MarketMirror | None:
        return self._session.get(MarketMirror, market_id)

    def list_in_state(self, state: MarketState, *, limit: int | None = None) -> Sequence[MarketMirror]:
        query = (
            select(MarketMirror)
            .where(MarketMirror.state == state.value)
            .order_by(MarketMirror.last_transition_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return self._session.execute(query).scalars().all()

    def list_due_for_finalization(self, cutoff: datetime, *, limit: int) -> Sequence[MarketMirror]:
        query = (
            select(MarketMirror)
            .where(
                MarketMirror.state == MarketState.RESOLVING.value,
                MarketMirror.resolution_proposed_at.is_not(None),
                MarketMirror.resolution_proposed_at <= cutoff,
                MarketMirror.dispute_initiated_at.is_(None),
            )
            .order_by(MarketMirror.resolution_proposed_at.asc())
            .limit(limit)
        )
        return self._session.execute(query).scalars().all()

    def list_closed_disputes(self, cutoff: datetime) -> Sequence[MarketMirror]:
        query = (
            select(MarketMirror)
            .where(
                MarketMirror.state == MarketState.DISPUTED.value,
                MarketMirror.dispute_initiated_at.is_not(None),
                MarketMirror.dispute_initiated_at <= cutoff,
            )
            .order_by(MarketMirror.dispute_initiated_at.asc())
        )
        return self._session.execute(query).scalars().all()

    def list_stale(self, cutoff: datetime) -> Sequence[MarketMirror]:
        query = (
            select(MarketMirror)
            .where(
                MarketMirror.state.not_in(_TERMINAL_STATES),
                MarketMirror.last_transition_at < cutoff,
            )
            .order_by(MarketMirror.last_transition_at.asc())
        )
        return self._session.execute(query).scalars().all()

    def finalization_errors(self, market_id: str) -> Sequence[FinalizationError]:
        query = (
            select(FinalizationError)
            .where(FinalizationError.market_id == market_id)
            .order_by(FinalizationError.id.asc())
        )
        return self._session.execute(query).scalars().all()

    def verify_mirror_invariant(self) -> list[MirrorViolation]:
        """Report mirror rows whose fields are not explained by the signed transition ledger."""

        violations: list[MirrorViolation] = []
        mirrors = (
            self._session.execute(select(MarketMirror).options(selectinload(MarketMirror.transitions)))
            .scalars()
            .all()
        )
        for mirror in mirrors:
            ledger = list(mirror.transitions)
            if not ledger:
                violations.append(MirrorViolation(mirror.market_id, "no recorded transitions"))
                continue

            unsigned = [entry.id for entry in ledger if not entry.tx_signature]
            if unsigned:
                violations.append(
                    MirrorViolation(mirror.market_id, "ledger entries without signature", {"ids": unsigned})
                )

            for previous, entry in zip(ledger, ledger[1:]):
                if entry.from_state != previous.to_state:
                    violations.append(
                        MirrorViolation(
                            mirror.market_id,
                            "ledger gap",
                            {"expected_from": previous.to_state, "found_from": entry.from_state},
                        )
                    )

            latest = ledger[-1]
            if latest.to_state != mirror.state:
                violations.append(
                    MirrorViolation(
                        mirror.market_id,
                        "state changed without a signed transition",
                        {"mirror_state": mirror.state, "ledger_state": latest.to_state},
                    )
                )
            if latest.tx_signature != mirror.last_transition_tx:
                violations.append(
                    MirrorViolation(
                        mirror.market_id,
                        "last transition signature mismatch",
                        {"mirror_tx": mirror.last_transition_tx, "ledger_tx": latest.tx_signature},
                    )
                )
        return violations
