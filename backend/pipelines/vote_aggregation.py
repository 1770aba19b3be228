"""Periodic job that turns pending votes into on-chain lifecycle transitions."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.errors import ChainRejectionError, DataIntegrityError
from app.db import SessionFactory, session_scope
from app.domain import (
    AggregationResult,
    Decision,
    MarketState,
    Transition,
    TransitionEvent,
    VoteKind,
)
from app.models import utcnow
from app.repositories import MarketRepository, VoteRepository
from app.services.events import EventBroadcaster
from app.services.market_locks import MarketLockManager
from app.services.threshold_policy import ThresholdPolicy
from chain.errors import classify_error, error_summary
from chain.submitter import ChainSubmitter, SubmissionOutcome

from .context import build_context


@dataclass(slots=True)
class _MarketView:
    """Mirror fields copied out of the session before any RPC call."""

    market_id: str
    state: MarketState
    created_at: datetime
    proposed_outcome: bool | None
    dispute_initiated_at: datetime | None
    last_transition_tx: str | None


@dataclass(slots=True)
class AggregationSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    approved: int = 0
    finalized: int = 0
    pending: int = 0
    expired: int = 0
    skipped: int = 0
    reconciled: int = 0
    votes_marked: int = 0
    errors: int = 0
    aborted: bool = False
    results: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "approved": self.approved,
            "finalized": self.finalized,
            "pending": self.pending,
            "expired": self.expired,
            "skipped": self.skipped,
            "reconciled": self.reconciled,
            "votes_marked": self.votes_marked,
            "errors": self.errors,
            "aborted": self.aborted,
            "results": self.results,
            "failures": self.failures,
        }


class VoteAggregationEngine:
    """Aggregate proposal and dispute votes market by market.

    Each market is evaluated in isolation: a failure is logged and counted and
    its votes stay pending for the next run. A transition that already landed
    on chain is recorded before the policy is consulted. On success the mirror
    transition and the vote flags are written in one transaction, so a later
    run never sees those votes as pending again.
    """

    name = "vote-aggregation"

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: SessionFactory,
        submitter: ChainSubmitter,
        broadcaster: EventBroadcaster,
        locks: MarketLockManager,
        policy: ThresholdPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._submitter = submitter
        self._broadcaster = broadcaster
        self._locks = locks
        self._policy = policy or ThresholdPolicy.from_settings(settings)
        self._clock = clock
        self._voting_period = timedelta(milliseconds=settings.dispute_voting_period_ms)
        self._proposal_expiry = (
            timedelta(milliseconds=settings.proposal_expiry_ms) if settings.proposal_expiry_ms else None
        )

    def run(self) -> AggregationSummary:
        now = self._clock()
        summary = AggregationSummary(run_id=uuid4().hex, started_at=now)
        logger.info(
            "Starting vote aggregation run {}: fetch_limit={}, dry_run={}",
            summary.run_id,
            self.settings.vote_fetch_limit,
            self._submitter.dry_run,
        )

        try:
            proposal_markets, dispute_markets = self._load_work(now)
        except SQLAlchemyError as exc:
            logger.exception("Vote aggregation run {} aborted: store read failed", summary.run_id)
            summary.aborted = True
            summary.errors += 1
            summary.failures.append({"market_id": None, "reason": f"store read failed: {exc}"})
            summary.finished_at = self._clock()
            return summary

        for market_id in proposal_markets:
            self._process_market(market_id, VoteKind.PROPOSAL, summary, now)
        for market_id in dispute_markets:
            self._process_market(market_id, VoteKind.DISPUTE, summary, now)

        summary.finished_at = self._clock()
        logger.info(
            "Vote aggregation run {} finished: processed={}, approved={}, finalized={}, "
            "pending={}, skipped={}, errors={}",
            summary.run_id,
            summary.processed,
            summary.approved,
            summary.finalized,
            summary.pending,
            summary.skipped,
            summary.errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Work discovery

    def _load_work(self, now: datetime) -> tuple[list[str], list[str]]:
        limit = self.settings.vote_fetch_limit
        with session_scope(self._session_factory) as session:
            votes = VoteRepository(session)
            proposal_votes = votes.fetch_pending(VoteKind.PROPOSAL, limit)
            dispute_votes = votes.fetch_pending(VoteKind.DISPUTE, limit)
            closed_disputes = MarketRepository(session).list_closed_disputes(now - self._voting_period)
            closed_dispute_ids = [mirror.market_id for mirror in closed_disputes]

        proposal_markets = _group_market_ids(vote.market_id for vote in proposal_votes)
        dispute_markets = _group_market_ids(
            [vote.market_id for vote in dispute_votes] + closed_dispute_ids
        )
        logger.info(
            "Found {} pending proposal vote(s) across {} market(s) and {} dispute vote(s) across {} market(s)",
            len(proposal_votes),
            len(proposal_markets),
            len(dispute_votes),
            len(dispute_markets),
        )
        return proposal_markets, dispute_markets

    # ------------------------------------------------------------------
    # Per-market processing

    def _process_market(
        self,
        market_id: str,
        kind: VoteKind,
        summary: AggregationSummary,
        now: datetime,
    ) -> None:
        summary.processed += 1
        try:
            with self._locks.hold(market_id) as acquired:
                if not acquired:
                    summary.skipped += 1
                    return
                self._aggregate_market(market_id, kind, summary, now)
        except Exception as exc:  # noqa: BLE001 - isolate market failures
            error = classify_error(exc)
            summary.errors += 1
            summary.failures.append(
                {
                    "market_id": market_id,
                    "vote_kind": kind.value,
                    "error_kind": error.__class__.__name__,
                    "reason": error_summary(error),
                }
            )
            if isinstance(error, (ChainRejectionError, DataIntegrityError)):
                logger.warning("Skipping {} market {}: {}", kind.value, market_id, error_summary(error))
            else:
                logger.exception("Failed to aggregate {} votes for market {}", kind.value, market_id)

    def _aggregate_market(
        self,
        market_id: str,
        kind: VoteKind,
        summary: AggregationSummary,
        now: datetime,
    ) -> None:
        with session_scope(self._session_factory) as session:
            mirror = MarketRepository(session).get(market_id)
            if mirror is None:
                raise DataIntegrityError(f"Votes reference unknown market {market_id}")
            view = _MarketView(
                market_id=mirror.market_id,
                state=MarketState(mirror.state),
                created_at=mirror.created_at,
                proposed_outcome=mirror.proposed_outcome,
                dispute_initiated_at=mirror.dispute_initiated_at,
                last_transition_tx=mirror.last_transition_tx,
            )
            agree, disagree = VoteRepository(session).count_votes(market_id, kind)

        if kind is VoteKind.PROPOSAL:
            if view.state is not MarketState.PROPOSED:
                self._close_out_late_votes(view, kind, summary)
                return
            expired = self._proposal_expiry is not None and now - view.created_at >= self._proposal_expiry
            result = self._policy.evaluate(market_id, kind, agree, disagree, expired=expired)
            summary.results.append(result.to_dict())
            landed = self._submitter.check_applied(market_id, Transition.APPROVE, source_state=view.state)
            if landed is not None:
                self._commit(view, kind, result, landed, summary, now)
                return
            if result.decision is Decision.PENDING:
                summary.pending += 1
                logger.debug(
                    "Proposal {} pending: {}/{} agree ({:.2%})",
                    market_id,
                    result.agree_count,
                    result.total,
                    result.ratio,
                )
                return
            if result.decision is Decision.REJECT:
                # No backend instruction rejects a proposal; an admin has to cancel it.
                summary.expired += 1
                logger.warning(
                    "Proposal {} expired at {:.2%} approval with {} vote(s); awaiting admin cancellation",
                    market_id,
                    result.ratio,
                    result.total,
                )
                return
            outcome = self._submitter.submit(
                market_id, Transition.APPROVE, agree=agree, disagree=disagree, source_state=view.state
            )
            self._commit(view, kind, result, outcome, summary, now)
            return

        if view.state is not MarketState.DISPUTED:
            if view.state.is_terminal:
                self._close_out_late_votes(view, kind, summary)
            else:
                summary.pending += 1
                logger.info(
                    "Dispute votes for {} found while mirror is {}; waiting for the dispute to be mirrored",
                    market_id,
                    view.state.value,
                )
            return
        if view.dispute_initiated_at is None:
            raise DataIntegrityError(f"Disputed market {market_id} has no dispute_initiated_at")

        voting_closed = now >= view.dispute_initiated_at + self._voting_period
        result = self._policy.evaluate(market_id, kind, agree, disagree, voting_closed=voting_closed)
        summary.results.append(result.to_dict())
        landed = self._submitter.check_applied(market_id, Transition.FINALIZE, source_state=view.state)
        if landed is not None:
            self._commit(view, kind, result, landed, summary, now)
            return
        if result.decision is Decision.PENDING:
            summary.pending += 1
            return
        outcome = self._submitter.submit(
            market_id, Transition.FINALIZE, agree=agree, disagree=disagree, source_state=view.state
        )
        self._commit(view, kind, result, outcome, summary, now)

    def _commit(
        self,
        view: _MarketView,
        kind: VoteKind,
        result: AggregationResult,
        outcome: SubmissionOutcome,
        summary: AggregationSummary,
        now: datetime,
    ) -> None:
        if outcome.dry_run:
            logger.info("[dry-run] {} {} not persisted", outcome.transition.value, view.market_id)
            return

        snapshot = outcome.snapshot
        if (
            outcome.transition is Transition.FINALIZE
            and snapshot is not None
            and snapshot.final_outcome is None
            and view.proposed_outcome is not None
        ):
            overturned = result.decision is Decision.APPROVE
            snapshot = replace(snapshot, final_outcome=(not view.proposed_outcome) if overturned else view.proposed_outcome)

        with session_scope(self._session_factory) as session:
            transition = MarketRepository(session).apply_transition(
                view.market_id,
                from_state=view.state,
                to_state=outcome.to_state,
                tx_signature=outcome.signature,
                snapshot=snapshot,
                at=now,
            )
            votes = VoteRepository(session)
            marked = votes.mark_aggregated(
                votes.pending_vote_ids(view.market_id, kind),
                tx_signature=outcome.signature,
                aggregated_at=now,
            )

        summary.votes_marked += marked
        if outcome.to_state is MarketState.APPROVED:
            summary.approved += 1
        else:
            summary.finalized += 1
        if outcome.already_applied:
            summary.reconciled += 1

        logger.info(
            "Market {} {} -> {} recorded with {} ({} vote(s) marked, already_applied={})",
            view.market_id,
            view.state.value,
            outcome.to_state.value,
            outcome.signature,
            marked,
            outcome.already_applied,
        )

        if transition is not None and not outcome.already_applied:
            self._broadcaster.publish(
                TransitionEvent(
                    market_id=view.market_id,
                    from_state=view.state,
                    to_state=outcome.to_state,
                    tx_signature=outcome.signature,
                    timestamp=now,
                )
            )

    def _close_out_late_votes(self, view: _MarketView, kind: VoteKind, summary: AggregationSummary) -> None:
        """Attach votes cast after the deciding transition to that transition's signature."""

        if not view.last_transition_tx:
            raise DataIntegrityError(f"Mirror for {view.market_id} has no transition signature")
        with session_scope(self._session_factory) as session:
            votes = VoteRepository(session)
            marked = votes.mark_aggregated(
                votes.pending_vote_ids(view.market_id, kind),
                tx_signature=view.last_transition_tx,
            )
        summary.votes_marked += marked
        summary.reconciled += 1
        logger.info(
            "Closed out {} late {} vote(s) for {} already {}",
            marked,
            kind.value,
            view.market_id,
            view.state.value,
        )


def _group_market_ids(market_ids) -> list[str]:
    """Unique market ids in first-seen order."""

    seen: dict[str, None] = {}
    for market_id in market_ids:
        seen.setdefault(market_id, None)
    return list(seen)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a single vote aggregation pass")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate thresholds and log intended transactions without sending them",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: AggregationSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Aggregation summary written to {}", path)


def main() -> AggregationSummary:
    args = _parse_args()
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    context = build_context(settings)
    engine = VoteAggregationEngine(
        settings,
        session_factory=context.session_factory,
        submitter=context.submitter,
        broadcaster=context.broadcaster,
        locks=context.locks,
        policy=context.policy,
    )
    try:
        summary = engine.run()
    finally:
        context.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
