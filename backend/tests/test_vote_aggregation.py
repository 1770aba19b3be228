from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.config import DAY_MS
from app.db import session_scope
from app.domain import MarketState, VoteKind
from app.models import VoteRecord
from app.repositories import LockRepository, MarketRepository
from chain.submitter import ChainSubmitter
from conftest import NOW, market_id
from pipelines.vote_aggregation import VoteAggregationEngine


@pytest.fixture
def make_engine(test_settings, session_factory, submitter, broadcaster, locks):
    def _make(settings=None, *, submitter_override=None) -> VoteAggregationEngine:
        return VoteAggregationEngine(
            settings or test_settings,
            session_factory=session_factory,
            submitter=submitter_override or submitter,
            broadcaster=broadcaster,
            locks=locks,
            clock=lambda: NOW,
        )

    return _make


def _votes(session_factory, mid: str) -> list[VoteRecord]:
    with session_scope(session_factory) as session:
        return list(session.execute(select(VoteRecord).where(VoteRecord.market_id == mid)).scalars().all())


def _mirror(session_factory, mid: str):
    with session_scope(session_factory) as session:
        mirror = MarketRepository(session).get(mid)
        session.expunge(mirror)
        return mirror


def test_approves_proposal_and_marks_votes(make_engine, register_market, cast_votes, session_factory, chain, broadcaster):
    """Verify that a proposal at threshold is approved on chain, mirrored, and its votes closed."""
    mid = market_id(1)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 7, 3)

    summary = make_engine().run()

    assert summary.approved == 1
    assert summary.errors == 0
    assert summary.votes_marked == 10
    assert chain.sent == [(mid, "approved")]

    mirror = _mirror(session_factory, mid)
    assert mirror.state == MarketState.APPROVED.value
    assert mirror.last_transition_tx == "sig-1"

    votes = _votes(session_factory, mid)
    assert all(vote.aggregated for vote in votes)
    assert {vote.tx_signature for vote in votes} == {"sig-1"}

    assert len(broadcaster.events) == 1
    payload = broadcaster.events[0].to_payload()
    assert payload == {
        "marketId": mid,
        "fromState": "proposed",
        "toState": "approved",
        "txSignature": "sig-1",
        "timestamp": int(NOW.timestamp() * 1000),
    }


def test_second_run_is_a_no_op(make_engine, register_market, cast_votes, chain, broadcaster, session_factory):
    """Verify that rerunning after a successful approval sends and emits nothing new."""
    mid = market_id(2)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 8, 2)
    engine = make_engine()

    engine.run()
    second = engine.run()

    assert second.processed == 0
    assert len(chain.sent) == 1
    assert len(broadcaster.events) == 1
    with session_scope(session_factory) as session:
        assert MarketRepository(session).verify_mirror_invariant() == []


def test_below_threshold_leaves_votes_pending(make_engine, register_market, cast_votes, session_factory, chain):
    """Verify that a proposal short of the threshold is left untouched."""
    mid = market_id(3)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 6, 4)

    summary = make_engine().run()

    assert summary.pending == 1
    assert chain.sent == []
    assert not any(vote.aggregated for vote in _votes(session_factory, mid))
    assert _mirror(session_factory, mid).state == MarketState.PROPOSED.value


def test_recovers_after_crash_between_confirm_and_commit(
    make_engine, register_market, cast_votes, session_factory, chain, broadcaster
):
    """Verify that a transition already on chain is reconciled without resubmitting or re-emitting."""
    mid = market_id(4)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 9, 1)
    chain.set_state(mid, MarketState.APPROVED, signature="sig-before-crash")

    summary = make_engine().run()

    assert chain.sent == []
    assert summary.approved == 1
    assert summary.reconciled == 1
    assert broadcaster.events == []
    mirror = _mirror(session_factory, mid)
    assert mirror.state == MarketState.APPROVED.value
    assert mirror.last_transition_tx == "sig-before-crash"
    assert {vote.tx_signature for vote in _votes(session_factory, mid)} == {"sig-before-crash"}


def test_recovery_does_not_depend_on_current_tally(
    make_engine, register_market, cast_votes, session_factory, chain, broadcaster
):
    """Verify that an approval already on chain is recorded even after later votes drop below threshold."""
    mid = market_id(16)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 7, 3)
    chain.set_state(mid, MarketState.APPROVED, signature="sig-landed")
    cast_votes(mid, VoteKind.PROPOSAL, 0, 3, prefix="late")

    summary = make_engine().run()

    assert summary.pending == 0
    assert summary.reconciled == 1
    assert summary.votes_marked == 13
    assert chain.sent == []
    assert broadcaster.events == []
    mirror = _mirror(session_factory, mid)
    assert mirror.state == MarketState.APPROVED.value
    assert mirror.last_transition_tx == "sig-landed"
    assert {vote.tx_signature for vote in _votes(session_factory, mid)} == {"sig-landed"}


def test_dispute_finalized_on_chain_is_recorded_while_voting_open(
    make_engine, register_market, cast_votes, session_factory, chain
):
    """Verify that a finalized dispute is mirrored even if local voting has not closed yet."""
    mid = market_id(17)
    register_market(
        mid,
        MarketState.DISPUTED,
        proposed_outcome=True,
        resolution_proposed_at=NOW - timedelta(days=2),
        dispute_initiated_at=NOW - timedelta(days=1),
    )
    cast_votes(mid, VoteKind.DISPUTE, 2, 8)
    chain.set_state(mid, MarketState.FINALIZED, signature="finalized-early")
    chain.markets[mid].final_outcome = False

    summary = make_engine().run()

    assert summary.finalized == 1
    assert summary.pending == 0
    assert chain.sent == []
    mirror = _mirror(session_factory, mid)
    assert mirror.state == MarketState.FINALIZED.value
    assert mirror.final_outcome is False
    assert {vote.tx_signature for vote in _votes(session_factory, mid)} == {"finalized-early"}


def test_confirmed_approval_with_lagging_read_emits_once(
    make_engine, register_market, cast_votes, session_factory, chain, broadcaster
):
    """Verify that a confirmed approval is recorded and announced even when the node read lags."""
    mid = market_id(18)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 7, 3)
    chain.lag_reads = True
    engine = make_engine()

    first = engine.run()
    second = engine.run()

    assert first.errors == 0
    assert first.approved == 1
    assert second.processed == 0
    assert chain.sent == [(mid, "approved")]
    assert [event.tx_signature for event in broadcaster.events] == ["sig-1"]
    assert _mirror(session_factory, mid).state == MarketState.APPROVED.value


def test_one_failing_market_does_not_block_others(make_engine, register_market, cast_votes, session_factory, chain):
    """Verify that a market failure is counted while the rest of the run proceeds."""
    first, broken, last = market_id(5), market_id(6), market_id(7)
    register_market(first)
    register_market(broken, on_chain=False)
    register_market(last)
    for mid in (first, broken, last):
        cast_votes(mid, VoteKind.PROPOSAL, 7, 3)

    summary = make_engine().run()

    assert summary.approved == 2
    assert summary.errors == 1
    assert summary.failures[0]["market_id"] == broken
    assert summary.failures[0]["error_kind"] == "DataIntegrityError"
    assert not any(vote.aggregated for vote in _votes(session_factory, broken))
    assert _mirror(session_factory, last).state == MarketState.APPROVED.value


def test_expired_proposal_is_counted_not_submitted(test_settings, make_engine, register_market, cast_votes, chain):
    """Verify that an expired proposal below threshold is reported for cancellation and not sent."""
    mid = market_id(8)
    register_market(mid, created_at=NOW - timedelta(days=2))
    cast_votes(mid, VoteKind.PROPOSAL, 5, 5)
    settings = test_settings.model_copy(update={"proposal_expiry_ms": DAY_MS})

    summary = make_engine(settings).run()

    assert summary.expired == 1
    assert chain.sent == []


def test_dispute_overturns_proposed_outcome(make_engine, register_market, cast_votes, session_factory, broadcaster):
    """Verify that a successful dispute finalizes with the opposite outcome."""
    mid = market_id(9)
    register_market(
        mid,
        MarketState.DISPUTED,
        proposed_outcome=True,
        resolution_proposed_at=NOW - timedelta(days=5),
        dispute_initiated_at=NOW - timedelta(days=4),
    )
    cast_votes(mid, VoteKind.DISPUTE, 7, 3)

    summary = make_engine().run()

    assert summary.finalized == 1
    mirror = _mirror(session_factory, mid)
    assert mirror.state == MarketState.FINALIZED.value
    assert mirror.final_outcome is False
    assert broadcaster.events[0].from_state is MarketState.DISPUTED


def test_failed_dispute_upholds_proposed_outcome(make_engine, register_market, cast_votes, session_factory):
    """Verify that a dispute below the overturn threshold finalizes with the proposed outcome."""
    mid = market_id(10)
    register_market(
        mid,
        MarketState.DISPUTED,
        proposed_outcome=True,
        resolution_proposed_at=NOW - timedelta(days=5),
        dispute_initiated_at=NOW - timedelta(days=4),
    )
    cast_votes(mid, VoteKind.DISPUTE, 4, 6)

    make_engine().run()

    assert _mirror(session_factory, mid).final_outcome is True


def test_dispute_waits_for_voting_period(make_engine, register_market, cast_votes, chain):
    """Verify that dispute votes are not finalized while voting is still open."""
    mid = market_id(11)
    register_market(
        mid,
        MarketState.DISPUTED,
        proposed_outcome=False,
        resolution_proposed_at=NOW - timedelta(days=2),
        dispute_initiated_at=NOW - timedelta(days=1),
    )
    cast_votes(mid, VoteKind.DISPUTE, 10, 0)

    summary = make_engine().run()

    assert summary.pending == 1
    assert chain.sent == []


def test_closed_dispute_without_votes_is_finalized(make_engine, register_market, session_factory, chain):
    """Verify that a dispute nobody voted on still finalizes once its period ends."""
    mid = market_id(12)
    register_market(
        mid,
        MarketState.DISPUTED,
        proposed_outcome=False,
        resolution_proposed_at=NOW - timedelta(days=6),
        dispute_initiated_at=NOW - timedelta(days=5),
    )

    summary = make_engine().run()

    assert summary.finalized == 1
    assert chain.sent == [(mid, "finalized")]
    assert _mirror(session_factory, mid).final_outcome is False


def test_late_votes_are_closed_out_with_existing_signature(make_engine, register_market, cast_votes, session_factory, chain):
    """Verify that votes cast after approval are attached to the approving signature."""
    mid = market_id(13)
    register_market(mid, MarketState.APPROVED)
    cast_votes(mid, VoteKind.PROPOSAL, 2, 0)

    summary = make_engine().run()

    assert chain.sent == []
    assert summary.votes_marked == 2
    assert {vote.tx_signature for vote in _votes(session_factory, mid)} == {f"create-{mid[-4:]}"}


def test_market_locked_elsewhere_is_skipped(make_engine, register_market, cast_votes, session_factory, chain):
    """Verify that a market claimed by another instance is skipped this run."""
    mid = market_id(14)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 7, 3)
    with session_scope(session_factory) as session:
        LockRepository(session).insert_claim(mid, "other-instance", ttl=timedelta(hours=1))

    summary = make_engine().run()

    assert summary.skipped == 1
    assert chain.sent == []


def test_dry_run_persists_nothing(make_engine, register_market, cast_votes, session_factory, chain, executor, broadcaster):
    """Verify that dry-run aggregation leaves the mirror and votes untouched."""
    mid = market_id(15)
    register_market(mid)
    cast_votes(mid, VoteKind.PROPOSAL, 7, 3)
    dry = ChainSubmitter(chain, executor, None, dry_run=True)

    summary = make_engine(submitter_override=dry).run()

    assert summary.approved == 0
    assert chain.sent == []
    assert broadcaster.events == []
    assert _mirror(session_factory, mid).state == MarketState.PROPOSED.value
    assert not any(vote.aggregated for vote in _votes(session_factory, mid))
