from __future__ import annotations

import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db, session_scope
from app.domain import MarketState, OnChainMarket, VoteKind
from app.repositories import MarketRepository, VoteRepository
from app.services.events import InMemoryEventBroadcaster
from app.services.market_locks import MarketLockManager
from chain.client import BlockhashToken
from chain.executor import ConcurrentExecutor
from chain.program import derive_market_address, instruction_discriminator
from chain.submitter import ChainSubmitter

PROGRAM_ID = "7h3gXfBfYFueFVLYyfL5Qo1QGsf4GQUfW96FKVgnUsJS"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_APPROVE_DISCRIMINATOR = instruction_discriminator("aggregate_proposal_votes")


def market_id(number: int) -> str:
    return f"{number:064x}"


class FakeChain:
    """In-memory program: applies approve/finalize instructions to stored market snapshots."""

    def __init__(self) -> None:
        self.program_id = Pubkey.from_string(PROGRAM_ID)
        self.markets: dict[str, OnChainMarket] = {}
        self.signatures: dict[str, str] = {}
        self.sent: list[tuple[str, str]] = []
        self.send_errors: list[Exception] = []
        self.fetch_errors: list[Exception] = []
        self.blockhash_calls = 0
        self.land_on_error = False
        self.lag_reads = False
        self.global_config: Any = None
        self._addresses: dict[str, str] = {}
        self._stale: dict[str, OnChainMarket] = {}

    def add_market(self, market_id_: str, state: MarketState, **fields: Any) -> OnChainMarket:
        address = self.market_address(market_id_)
        snapshot = OnChainMarket(address=str(address), market_id=market_id_, state=state, **fields)
        self.markets[market_id_] = snapshot
        return snapshot

    def set_state(self, market_id_: str, state: MarketState, *, signature: str) -> None:
        self.markets[market_id_].state = state
        self.signatures[market_id_] = signature

    def market_address(self, market_id_: str) -> Pubkey:
        address = derive_market_address(self.program_id, market_id_)
        self._addresses[str(address)] = market_id_
        return address

    def fetch_market(self, market_id_: str) -> OnChainMarket | None:
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        stale = self._stale.pop(market_id_, None)
        if stale is not None:
            return stale
        snapshot = self.markets.get(market_id_)
        if snapshot is None:
            return None
        return replace(snapshot)

    def latest_signature(self, address: Pubkey) -> str | None:
        return self.signatures.get(self._addresses.get(str(address), ""))

    def fetch_global_config(self):
        return self.global_config

    def get_slot(self) -> int:
        return 1

    def latest_blockhash(self) -> BlockhashToken:
        self.blockhash_calls += 1
        return BlockhashToken(blockhash=Hash.default(), last_valid_block_height=100 + self.blockhash_calls)

    def send_and_confirm(self, instructions: Sequence, signers: Sequence[Keypair], token: BlockhashToken) -> str:
        instruction = instructions[0]
        is_approve = bytes(instruction.data[:8]) == _APPROVE_DISCRIMINATOR
        market_account = instruction.accounts[0 if is_approve else 1].pubkey
        target_id = self._addresses[str(market_account)]
        if self.send_errors:
            error = self.send_errors.pop(0)
            if self.land_on_error:
                self._apply(target_id, is_approve, f"landed-{len(self.sent)}")
            raise error
        signature = f"sig-{len(self.sent) + 1}"
        self._apply(target_id, is_approve, signature)
        return signature

    def _apply(self, target_id: str, is_approve: bool, signature: str) -> None:
        target = MarketState.APPROVED if is_approve else MarketState.FINALIZED
        if self.lag_reads:
            # The next read of this market still sees the pre-transaction account.
            self._stale[target_id] = replace(self.markets[target_id])
        self.set_state(target_id, target, signature=signature)
        self.sent.append((target_id, target.value))

    def close(self) -> None:
        return None


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'orchestrator.db'}",
        min_votes_required=10,
        max_retries=2,
        retry_backoff_base_ms=0,
        batch_delay_ms=0,
        instance_id="test-instance",
        redis_url=None,
        status_api_port=None,
    )


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def executor(chain, sleeps) -> ConcurrentExecutor:
    return ConcurrentExecutor(
        chain,
        batch_size=5,
        max_retries=2,
        retry_delay_seconds=0.01,
        batch_delay_seconds=0.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def authority() -> Keypair:
    return Keypair()


@pytest.fixture
def submitter(chain, executor, authority) -> ChainSubmitter:
    return ChainSubmitter(chain, executor, authority)


@pytest.fixture
def broadcaster() -> InMemoryEventBroadcaster:
    return InMemoryEventBroadcaster()


@pytest.fixture
def locks(session_factory) -> MarketLockManager:
    return MarketLockManager(session_factory, owner="test-instance", ttl=timedelta(minutes=5))


@pytest.fixture
def register_market(session_factory, chain):
    """Mirror a market and create its on-chain account in the same state."""

    def _register(market_id_: str, state: MarketState = MarketState.PROPOSED, *, on_chain: bool = True, **fields):
        created_at = fields.pop("created_at", NOW)
        with session_scope(session_factory) as session:
            MarketRepository(session).register_market(
                market_id_,
                creation_tx=f"create-{market_id_[-4:]}",
                state=state,
                created_at=created_at,
                **fields,
            )
        if on_chain:
            chain.add_market(
                market_id_,
                state,
                proposed_outcome=fields.get("proposed_outcome"),
                resolution_proposed_at=fields.get("resolution_proposed_at"),
                dispute_initiated_at=fields.get("dispute_initiated_at"),
            )

    return _register


@pytest.fixture
def cast_votes(session_factory):
    def _cast(market_id_: str, kind: VoteKind, agree: int, disagree: int, *, prefix: str = "voter") -> None:
        with session_scope(session_factory) as session:
            votes = VoteRepository(session)
            for index in range(agree):
                votes.add_vote(market_id_, f"{prefix}-yes-{index}", kind, True, cast_at=NOW)
            for index in range(disagree):
                votes.add_vote(market_id_, f"{prefix}-no-{index}", kind, False, cast_at=NOW)

    return _cast
