from __future__ import annotations

from solders.keypair import Keypair

from app.domain import MarketState, VoteKind
from app.services.events import InMemoryEventBroadcaster
from chain.program import GlobalConfigAccount
from conftest import FakeChain, market_id
from pipelines.context import build_context
from scripts.run_orchestrator import build_services, validate_environment


def _context(test_settings, chain, keypair):
    return build_context(
        test_settings,
        chain_factory=lambda _settings: chain,
        authority_loader=lambda _settings: keypair,
    )


def test_build_context_wires_settings_through(test_settings):
    """Verify that every collaborator is built from the one settings object."""
    context = _context(test_settings, FakeChain(), Keypair())
    try:
        assert context.executor.max_retries == test_settings.max_retries
        assert context.locks.owner == "test-instance"
        assert context.policy.min_votes_required == test_settings.min_votes_required
        assert isinstance(context.broadcaster, InMemoryEventBroadcaster)
        assert not context.submitter.dry_run
    finally:
        context.close()


def test_validate_environment_checks_authority(test_settings):
    """Verify that start-up validation fails on an authority mismatch."""
    chain = FakeChain()
    keypair = Keypair()
    context = _context(test_settings, chain, keypair)
    try:
        chain.global_config = GlobalConfigAccount(
            admin=keypair.pubkey(),
            backend_authority=keypair.pubkey(),
            proposal_approval_threshold=7000,
            dispute_success_threshold=6000,
            dispute_period_seconds=259200,
            is_paused=False,
        )
        assert validate_environment(context)

        chain.global_config = None
        assert not validate_environment(context)
    finally:
        context.close()


def test_services_run_once_end_to_end(test_settings, register_market, cast_votes, chain):
    """Verify that both scheduled services process work through the shared context."""
    context = _context(test_settings, chain, Keypair())
    try:
        mid = market_id(1)
        register_market(mid)
        cast_votes(mid, VoteKind.PROPOSAL, 10, 0)
        aggregator, monitor = build_services(context)

        aggregator.run_once()
        monitor.run_once()

        assert chain.markets[mid].state is MarketState.APPROVED
        assert [service.name for service in (aggregator, monitor)] == ["vote-aggregation", "market-monitor"]
        assert aggregator.state().total_processed == 1
        assert aggregator.state().error_count == 0
        assert context.broadcaster.events[0].to_state is MarketState.APPROVED
    finally:
        context.close()
