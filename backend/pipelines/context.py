from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger
from solders.keypair import Keypair
from sqlalchemy.engine import Engine

from app.core.config import Settings
from app.db import SessionFactory, build_db_components, init_db
from app.services.events import EventBroadcaster, build_event_broadcaster
from app.services.market_locks import MarketLockManager
from app.services.threshold_policy import ThresholdPolicy
from chain.client import SolanaChainClient
from chain.executor import ConcurrentExecutor
from chain.program import load_backend_keypair
from chain.submitter import ChainSubmitter


@dataclass(slots=True)
class OrchestratorContext:
    """Every long-lived collaborator, built once from one immutable Settings."""

    settings: Settings
    engine: Engine | None
    session_factory: SessionFactory
    chain: SolanaChainClient
    executor: ConcurrentExecutor
    submitter: ChainSubmitter
    broadcaster: EventBroadcaster
    locks: MarketLockManager
    policy: ThresholdPolicy

    def close(self) -> None:
        self.chain.close()
        self.broadcaster.close()
        if self.engine is not None:
            self.engine.dispose()


def _load_authority(settings: Settings) -> Keypair | None:
    if settings.backend_authority_private_key is None and settings.dry_run:
        logger.warning("No backend authority key configured; running in dry-run mode")
        return None
    return load_backend_keypair(settings.backend_authority_private_key)


def build_context(
    settings: Settings,
    *,
    chain_factory: Callable[[Settings], SolanaChainClient] = SolanaChainClient,
    broadcaster_factory: Callable[[Settings], EventBroadcaster] = build_event_broadcaster,
    authority_loader: Callable[[Settings], Keypair | None] = _load_authority,
    init_db_fn: Callable[[Engine], None] = init_db,
) -> OrchestratorContext:
    engine, session_factory = build_db_components(settings)
    init_db_fn(engine)

    chain = chain_factory(settings)
    executor = ConcurrentExecutor.from_settings(settings, chain)
    submitter = ChainSubmitter.from_settings(settings, chain, executor, authority_loader(settings))
    return OrchestratorContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        chain=chain,
        executor=executor,
        submitter=submitter,
        broadcaster=broadcaster_factory(settings),
        locks=MarketLockManager.from_settings(settings, session_factory),
        policy=ThresholdPolicy.from_settings(settings),
    )
