"""Pure vote-count decisions for proposal approval and dispute resolution."""

from __future__ import annotations

from dataclasses import dataclass

from app.core.config import Settings
from app.core.errors import DataIntegrityError
from app.domain import AggregationResult, Decision, VoteKind

BPS_DENOMINATOR = 10_000


def meets_threshold(agree: int, total: int, threshold_bps: int) -> bool:
    """``agree / total >= threshold_bps / 10000`` in exact integer arithmetic."""

    if total <= 0:
        return False
    return agree * BPS_DENOMINATOR >= total * threshold_bps


@dataclass(slots=True, frozen=True)
class ThresholdPolicy:
    proposal_approval_bps: int = 7000
    dispute_overturn_bps: int = 6000
    min_votes_required: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "ThresholdPolicy":
        return cls(
            proposal_approval_bps=settings.proposal_approval_bps,
            dispute_overturn_bps=settings.dispute_overturn_bps,
            min_votes_required=settings.min_votes_required,
        )

    def decide(
        self,
        kind: VoteKind,
        agree: int,
        disagree: int,
        *,
        voting_closed: bool = True,
        expired: bool = False,
    ) -> Decision:
        if agree < 0 or disagree < 0:
            raise DataIntegrityError(f"Negative vote counts: agree={agree} disagree={disagree}")
        total = agree + disagree
        quorum = total >= self.min_votes_required

        if kind is VoteKind.PROPOSAL:
            if quorum and meets_threshold(agree, total, self.proposal_approval_bps):
                return Decision.APPROVE
            return Decision.REJECT if expired else Decision.PENDING

        if not voting_closed:
            return Decision.PENDING
        if quorum and meets_threshold(agree, total, self.dispute_overturn_bps):
            return Decision.APPROVE
        return Decision.REJECT

    def evaluate(
        self,
        market_id: str,
        kind: VoteKind,
        agree: int,
        disagree: int,
        *,
        voting_closed: bool = True,
        expired: bool = False,
    ) -> AggregationResult:
        decision = self.decide(kind, agree, disagree, voting_closed=voting_closed, expired=expired)
        total = agree + disagree
        return AggregationResult(
            market_id=market_id,
            agree_count=agree,
            disagree_count=disagree,
            total=total,
            ratio=agree / total if total else 0.0,
            decision=decision,
        )
