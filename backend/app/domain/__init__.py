"""Domain types describing votes, market lifecycle states, and transitions."""

from .models import (
    AggregationResult,
    Decision,
    MarketState,
    MirrorViolation,
    OnChainMarket,
    PendingVote,
    StuckMarketAlert,
    Transition,
    TransitionEvent,
    VoteKind,
)

__all__ = [
    "AggregationResult",
    "Decision",
    "MarketState",
    "MirrorViolation",
    "OnChainMarket",
    "PendingVote",
    "StuckMarketAlert",
    "Transition",
    "TransitionEvent",
    "VoteKind",
]
