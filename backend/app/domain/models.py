"""Typed domain representations shared by the aggregation engine, monitor, and chain layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class VoteKind(str, Enum):
    PROPOSAL = "proposal"
    DISPUTE = "dispute"


class Decision(str, Enum):
    """Outcome of a threshold evaluation.

    For proposals ``APPROVE`` moves the market to Approved. For disputes the
    market is always finalized once voting closes: ``APPROVE`` overturns the
    proposed outcome and ``REJECT`` upholds it.
    """

    APPROVE = "approve"
    REJECT = "reject"
    PENDING = "pending"


class MarketState(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    ACTIVE = "active"
    RESOLVING = "resolving"
    DISPUTED = "disputed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"

    @classmethod
    def from_chain(cls, value: int) -> "MarketState":
        if not 0 <= value < len(_CHAIN_ORDER):
            raise ValueError(f"Unknown on-chain market state {value}")
        return _CHAIN_ORDER[value]

    @property
    def chain_value(self) -> int:
        return _CHAIN_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (MarketState.FINALIZED, MarketState.CANCELLED)

    def can_transition_to(self, target: "MarketState") -> bool:
        if self.is_terminal:
            return False
        if target is MarketState.CANCELLED:
            return True
        return target in _ALLOWED_TRANSITIONS.get(self, ())


# Order matches the u8 discriminant of the program's MarketState enum.
_CHAIN_ORDER: tuple[MarketState, ...] = (
    MarketState.PROPOSED,
    MarketState.APPROVED,
    MarketState.ACTIVE,
    MarketState.RESOLVING,
    MarketState.DISPUTED,
    MarketState.FINALIZED,
    MarketState.CANCELLED,
)

_ALLOWED_TRANSITIONS: dict[MarketState, tuple[MarketState, ...]] = {
    MarketState.PROPOSED: (MarketState.APPROVED,),
    MarketState.APPROVED: (MarketState.ACTIVE,),
    MarketState.ACTIVE: (MarketState.RESOLVING,),
    MarketState.RESOLVING: (MarketState.DISPUTED, MarketState.FINALIZED),
    MarketState.DISPUTED: (MarketState.FINALIZED,),
}


class Transition(str, Enum):
    """State changes this service is allowed to submit."""

    APPROVE = "approve"
    FINALIZE = "finalize"

    @property
    def sources(self) -> tuple[MarketState, ...]:
        if self is Transition.APPROVE:
            return (MarketState.PROPOSED,)
        return (MarketState.RESOLVING, MarketState.DISPUTED)

    @property
    def target(self) -> MarketState:
        if self is Transition.APPROVE:
            return MarketState.APPROVED
        return MarketState.FINALIZED


@dataclass(slots=True)
class PendingVote:
    """Unaggregated vote row as read from the store."""

    vote_id: int
    market_id: str
    voter_id: str
    vote_kind: VoteKind
    value: bool
    cast_at: datetime


@dataclass(slots=True)
class AggregationResult:
    market_id: str
    agree_count: int
    disagree_count: int
    total: int
    ratio: float
    decision: Decision

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "agree_count": self.agree_count,
            "disagree_count": self.disagree_count,
            "total": self.total,
            "ratio": self.ratio,
            "decision": self.decision.value,
        }


@dataclass(slots=True)
class OnChainMarket:
    """Fields of the program's market account that drive lifecycle decisions."""

    address: str
    market_id: str
    state: MarketState
    proposed_outcome: bool | None = None
    final_outcome: bool | None = None
    resolution_proposed_at: datetime | None = None
    dispute_initiated_at: datetime | None = None
    finalized_at: datetime | None = None
    proposal_likes: int = 0
    proposal_dislikes: int = 0
    dispute_agree: int = 0
    dispute_disagree: int = 0
    was_disputed: bool = False
    is_cancelled: bool = False


@dataclass(slots=True)
class TransitionEvent:
    """Message published once per confirmed on-chain transition."""

    market_id: str
    from_state: MarketState
    to_state: MarketState
    tx_signature: str
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "marketId": self.market_id,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "txSignature": self.tx_signature,
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }


@dataclass(slots=True)
class StuckMarketAlert:
    market_id: str
    state: MarketState
    last_transition_at: datetime
    stuck_for_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "state": self.state.value,
            "last_transition_at": self.last_transition_at.isoformat(),
            "stuck_for_hours": round(self.stuck_for_hours, 2),
        }


@dataclass(slots=True)
class MirrorViolation:
    """A mirror row whose state is not backed by a recorded transaction."""

    market_id: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
