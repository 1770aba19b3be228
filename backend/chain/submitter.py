"""Turn one lifecycle decision into one confirmed program instruction."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Protocol

from loguru import logger
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from app.core.config import Settings
from app.core.errors import (
    ChainRejectionError,
    DataIntegrityError,
    InvalidTransitionError,
    TransientChainError,
)
from app.domain import MarketState, OnChainMarket, Transition

from .errors import classify_error
from .executor import ConcurrentExecutor, SubmissionTask
from .program import GlobalConfigAccount, build_approve_market_ix, build_finalize_market_ix


class MarketChain(Protocol):
    program_id: Pubkey

    def market_address(self, market_id: str) -> Pubkey:
        ...

    def fetch_market(self, market_id: str) -> OnChainMarket | None:
        ...

    def latest_signature(self, address: Pubkey) -> str | None:
        ...

    def fetch_global_config(self) -> GlobalConfigAccount | None:
        ...


@dataclass(slots=True)
class SubmissionOutcome:
    market_id: str
    transition: Transition
    signature: str
    from_state: MarketState | None
    to_state: MarketState
    already_applied: bool = False
    dry_run: bool = False
    snapshot: OnChainMarket | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "transition": self.transition.value,
            "signature": self.signature,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "already_applied": self.already_applied,
            "dry_run": self.dry_run,
        }


class ChainSubmitter:
    """Check authoritative state, then submit through the shared executor.

    The pre-submission read is what makes overlapping or retried runs safe: a
    market that already reached the target state is reported as
    ``already_applied`` with the account's latest signature and nothing is sent.
    """

    def __init__(
        self,
        chain: MarketChain,
        executor: ConcurrentExecutor,
        authority: Keypair | None,
        *,
        dry_run: bool = False,
    ) -> None:
        if authority is None and not dry_run:
            raise ValueError("A backend authority keypair is required unless dry_run is enabled")
        self._chain = chain
        self._executor = executor
        self._authority = authority
        self.dry_run = dry_run

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        chain: MarketChain,
        executor: ConcurrentExecutor,
        authority: Keypair | None,
    ) -> "ChainSubmitter":
        return cls(chain, executor, authority, dry_run=settings.dry_run)

    @property
    def authority_pubkey(self) -> Pubkey | None:
        return self._authority.pubkey() if self._authority else None

    def submit(
        self,
        market_id: str,
        transition: Transition,
        *,
        agree: int | None = None,
        disagree: int | None = None,
        source_state: MarketState | None = None,
    ) -> SubmissionOutcome:
        snapshot = self._read_market(market_id)

        if snapshot.state is transition.target:
            return self._already_applied(market_id, transition, snapshot, source_state=source_state)

        if snapshot.state not in transition.sources:
            raise InvalidTransitionError(
                f"Cannot {transition.value} market {market_id}: on-chain state is "
                f"{snapshot.state.value}, expected one of "
                f"{', '.join(state.value for state in transition.sources)}"
            )

        instruction = self._build_instruction(market_id, transition, snapshot, agree=agree, disagree=disagree)

        if self.dry_run:
            logger.info(
                "[dry-run] Would {} market {} ({} -> {}) agree={} disagree={}",
                transition.value,
                market_id,
                snapshot.state.value,
                transition.target.value,
                agree,
                disagree,
            )
            return SubmissionOutcome(
                market_id=market_id,
                transition=transition,
                signature=f"dry-run:{market_id}",
                from_state=snapshot.state,
                to_state=transition.target,
                dry_run=True,
                snapshot=snapshot,
            )

        task = SubmissionTask(
            id=f"{transition.value}:{market_id}",
            instructions=[instruction],
            signers=[self._authority],
            description=f"{transition.value} {market_id} from {snapshot.state.value}",
        )
        result = self._executor.execute_single(task)

        if not result.success:
            # A send that timed out may still have landed.
            refreshed = self._try_read_market(market_id)
            if refreshed is not None and refreshed.state is transition.target:
                return self._already_applied(market_id, transition, refreshed, source_state=snapshot.state)
            if result.retryable is False:
                raise ChainRejectionError(result.error or f"{task.id} rejected")
            raise TransientChainError(result.error or f"{task.id} failed after {result.retries} retries")

        confirmed = self._try_read_market(market_id)
        if confirmed is None or confirmed.state is not transition.target:
            # The confirmed signature is authoritative; the read node may lag behind it.
            logger.warning(
                "Transaction {} confirmed but follow-up read of market {} shows {}; recording {}",
                result.signature,
                market_id,
                confirmed.state.value if confirmed else "nothing",
                transition.target.value,
            )
            confirmed = replace(snapshot, state=transition.target)

        logger.info(
            "Market {} {} -> {} confirmed in {:.0f}ms (retries={}): {}",
            market_id,
            snapshot.state.value,
            transition.target.value,
            result.duration_ms,
            result.retries,
            result.signature,
        )
        return SubmissionOutcome(
            market_id=market_id,
            transition=transition,
            signature=result.signature or "",
            from_state=snapshot.state,
            to_state=transition.target,
            snapshot=confirmed,
        )

    def check_applied(
        self,
        market_id: str,
        transition: Transition,
        *,
        source_state: MarketState | None = None,
    ) -> SubmissionOutcome | None:
        """Return the reconciled outcome if ``transition`` already landed on chain, else None.

        Callers run this before evaluating votes so that a transition confirmed
        by an earlier, interrupted run is recorded whatever the current tally says.
        """

        snapshot = self._read_market(market_id)
        if snapshot.state is not transition.target:
            return None
        return self._already_applied(market_id, transition, snapshot, source_state=source_state)

    def validate_authority(self) -> bool:
        """Return True when the configured key matches the program's backend authority."""

        config = self._chain.fetch_global_config()
        if config is None:
            raise DataIntegrityError("Global config account not found for program")
        expected = config.backend_authority
        actual = self.authority_pubkey
        if actual is None:
            logger.warning("No backend authority configured; only dry-run submissions are possible")
            return False
        if actual != expected:
            logger.error(
                "Backend authority mismatch: configured {} but global config expects {}",
                actual,
                expected,
            )
            return False
        if config.is_paused:
            logger.warning("Program is paused; submissions will be rejected until it resumes")
        logger.info("Backend authority {} matches global config", actual)
        return True

    # ------------------------------------------------------------------
    # Helpers

    def _read_market(self, market_id: str) -> OnChainMarket:
        try:
            snapshot = self._chain.fetch_market(market_id)
        except DataIntegrityError:
            raise
        except Exception as exc:  # noqa: BLE001 - reclassified for the caller
            raise classify_error(exc) from exc
        if snapshot is None:
            raise DataIntegrityError(f"Market account for {market_id} not found on chain")
        return snapshot

    def _try_read_market(self, market_id: str) -> OnChainMarket | None:
        try:
            return self._chain.fetch_market(market_id)
        except Exception as exc:  # noqa: BLE001 - best effort follow-up read
            logger.warning("Follow-up read of market {} failed: {}", market_id, exc)
            return None

    def _already_applied(
        self,
        market_id: str,
        transition: Transition,
        snapshot: OnChainMarket,
        *,
        source_state: MarketState | None = None,
    ) -> SubmissionOutcome:
        address = self._chain.market_address(market_id)
        try:
            signature = self._chain.latest_signature(address)
        except Exception as exc:  # noqa: BLE001 - reclassified for the caller
            raise classify_error(exc) from exc
        if not signature:
            raise DataIntegrityError(
                f"Market {market_id} is {snapshot.state.value} on chain but has no transaction history"
            )
        logger.info(
            "Market {} already {} on chain; skipping submission and reconciling with {}",
            market_id,
            transition.target.value,
            signature,
        )
        return SubmissionOutcome(
            market_id=market_id,
            transition=transition,
            signature=signature,
            from_state=source_state,
            to_state=transition.target,
            already_applied=True,
            snapshot=snapshot,
        )

    def _build_instruction(
        self,
        market_id: str,
        transition: Transition,
        snapshot: OnChainMarket,
        *,
        agree: int | None,
        disagree: int | None,
    ) -> Instruction:
        address = self._chain.market_address(market_id)
        authority = self.authority_pubkey or Pubkey.default()
        if transition is Transition.APPROVE:
            if agree is None or disagree is None:
                raise DataIntegrityError(f"Approval of {market_id} requires vote tallies")
            return build_approve_market_ix(
                self._chain.program_id, address, authority, likes=agree, dislikes=disagree
            )
        if snapshot.state is MarketState.DISPUTED:
            if agree is None or disagree is None:
                raise DataIntegrityError(f"Finalizing disputed market {market_id} requires dispute tallies")
            return build_finalize_market_ix(
                self._chain.program_id,
                address,
                authority,
                dispute_agree=agree,
                dispute_disagree=disagree,
            )
        return build_finalize_market_ix(self._chain.program_id, address, authority)
