"""Periodic job that finalizes undisputed markets and reports stuck ones."""

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
from app.domain import MarketState, StuckMarketAlert, Transition, TransitionEvent
from app.models import utcnow
from app.repositories import MarketRepository
from app.services.events import EventBroadcaster
from app.services.market_locks import MarketLockManager
from chain.errors import classify_error, error_summary
from chain.submitter import ChainSubmitter

from .context import build_context


@dataclass(slots=True)
class _DueMarket:
    market_id: str
    state: MarketState
    proposed_outcome: bool | None
    resolution_proposed_at: datetime


@dataclass(slots=True)
class MonitorSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    found: int = 0
    processed: int = 0
    finalized: int = 0
    reconciled: int = 0
    skipped: int = 0
    errors: int = 0
    aborted: bool = False
    stuck: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "found": self.found,
            "processed": self.processed,
            "finalized": self.finalized,
            "reconciled": self.reconciled,
            "skipped": self.skipped,
            "errors": self.errors,
            "aborted": self.aborted,
            "stuck": self.stuck,
            "failures": self.failures,
        }


class MarketStateMonitor:
    """Time-gate Resolving -> Finalized and flag markets that stopped moving.

    Stuck-market detection is read only: it produces alerts and never mutates
    the mirror or submits anything.
    """

    name = "market-monitor"

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: SessionFactory,
        submitter: ChainSubmitter,
        broadcaster: EventBroadcaster,
        locks: MarketLockManager,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._submitter = submitter
        self._broadcaster = broadcaster
        self._locks = locks
        self._clock = clock
        self._finalization_delay = timedelta(
            milliseconds=settings.dispute_window_ms + settings.finalization_safety_buffer_ms
        )
        self._stuck_threshold = timedelta(milliseconds=settings.stuck_threshold_ms)

    def run(self) -> MonitorSummary:
        now = self._clock()
        summary = MonitorSummary(run_id=uuid4().hex, started_at=now)
        cutoff = now - self._finalization_delay
        logger.info(
            "Starting market monitor run {}: finalizing markets proposed before {}",
            summary.run_id,
            cutoff.isoformat(),
        )

        try:
            due = self._load_due(cutoff)
            alerts = self.detect_stuck(now)
        except SQLAlchemyError as exc:
            logger.exception("Market monitor run {} aborted: store read failed", summary.run_id)
            summary.aborted = True
            summary.errors += 1
            summary.failures.append({"market_id": None, "reason": f"store read failed: {exc}"})
            summary.finished_at = self._clock()
            return summary

        summary.found = len(due)
        for market in due:
            self._process_market(market, summary, now)

        summary.stuck = [alert.to_dict() for alert in alerts]
        summary.finished_at = self._clock()
        logger.info(
            "Market monitor run {} finished: found={}, finalized={}, failed={}, skipped={}, stuck={}",
            summary.run_id,
            summary.found,
            summary.finalized,
            summary.errors,
            summary.skipped,
            len(summary.stuck),
        )
        return summary

    def detect_stuck(self, now: datetime | None = None) -> list[StuckMarketAlert]:
        now = now or self._clock()
        with session_scope(self._session_factory) as session:
            stale = MarketRepository(session).list_stale(now - self._stuck_threshold)
            alerts = [
                StuckMarketAlert(
                    market_id=mirror.market_id,
                    state=MarketState(mirror.state),
                    last_transition_at=mirror.last_transition_at,
                    stuck_for_hours=(now - mirror.last_transition_at).total_seconds() / 3600,
                )
                for mirror in stale
            ]
        for alert in alerts:
            logger.warning(
                "Market {} stuck in {} for {:.1f}h (last transition {})",
                alert.market_id,
                alert.state.value,
                alert.stuck_for_hours,
                alert.last_transition_at.isoformat(),
            )
        return alerts

    def _load_due(self, cutoff: datetime) -> list[_DueMarket]:
        with session_scope(self._session_factory) as session:
            mirrors = MarketRepository(session).list_due_for_finalization(
                cutoff, limit=self.settings.monitor_batch_size
            )
            return [
                _DueMarket(
                    market_id=mirror.market_id,
                    state=MarketState(mirror.state),
                    proposed_outcome=mirror.proposed_outcome,
                    resolution_proposed_at=mirror.resolution_proposed_at,
                )
                for mirror in mirrors
            ]

    def _process_market(self, market: _DueMarket, summary: MonitorSummary, now: datetime) -> None:
        summary.processed += 1
        try:
            with self._locks.hold(market.market_id) as acquired:
                if not acquired:
                    summary.skipped += 1
                    return
                self._finalize_market(market, summary, now)
        except Exception as exc:  # noqa: BLE001 - isolate market failures
            error = classify_error(exc)
            summary.errors += 1
            summary.failures.append(
                {
                    "market_id": market.market_id,
                    "error_kind": error.__class__.__name__,
                    "reason": error_summary(error),
                }
            )
            if isinstance(error, (ChainRejectionError, DataIntegrityError)):
                logger.warning("Failed to finalize market {}: {}", market.market_id, error_summary(error))
            else:
                logger.exception("Failed to finalize market {}", market.market_id)
            self._record_failure(market.market_id, error)

    def _finalize_market(self, market: _DueMarket, summary: MonitorSummary, now: datetime) -> None:
        outcome = self._submitter.submit(market.market_id, Transition.FINALIZE, source_state=market.state)
        if outcome.dry_run:
            logger.info("[dry-run] finalize {} not persisted", market.market_id)
            return

        snapshot = outcome.snapshot
        if snapshot is not None and snapshot.final_outcome is None and market.proposed_outcome is not None:
            snapshot = replace(snapshot, final_outcome=market.proposed_outcome)

        with session_scope(self._session_factory) as session:
            transition = MarketRepository(session).apply_transition(
                market.market_id,
                from_state=market.state,
                to_state=outcome.to_state,
                tx_signature=outcome.signature,
                snapshot=snapshot,
                at=now,
            )

        summary.finalized += 1
        if outcome.already_applied:
            summary.reconciled += 1
        logger.info(
            "Market {} finalized with outcome {} ({}, already_applied={})",
            market.market_id,
            snapshot.final_outcome if snapshot else market.proposed_outcome,
            outcome.signature,
            outcome.already_applied,
        )

        if transition is not None and not outcome.already_applied:
            self._broadcaster.publish(
                TransitionEvent(
                    market_id=market.market_id,
                    from_state=market.state,
                    to_state=outcome.to_state,
                    tx_signature=outcome.signature,
                    timestamp=now,
                )
            )

    def _record_failure(self, market_id: str, error: Exception) -> None:
        attempts = self.settings.max_retries + 1 if getattr(error, "retryable", False) else 1
        try:
            with session_scope(self._session_factory) as session:
                MarketRepository(session).record_finalization_error(
                    market_id,
                    error_kind=error.__class__.__name__,
                    error_message=str(error) or error.__class__.__name__,
                    attempts=attempts,
                )
        except SQLAlchemyError:
            logger.exception("Could not record finalization error for {}", market_id)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a single market monitor pass")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report markets due for finalization without sending transactions",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: MonitorSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Monitor summary written to {}", path)


def main() -> MonitorSummary:
    args = _parse_args()
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    context = build_context(settings)
    monitor = MarketStateMonitor(
        settings,
        session_factory=context.session_factory,
        submitter=context.submitter,
        broadcaster=context.broadcaster,
        locks=context.locks,
    )
    try:
        summary = monitor.run()
    finally:
        context.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
