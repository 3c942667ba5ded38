"""
Ensemble strategy voting.

Runs every member strategy, normalizes their weights to sum to 1 and adds
each member's weight to the score of the direction it voted for (abstaining
members add nothing). The best-scoring direction wins if its score reaches
the threshold.

In unanimous mode every non-abstaining member must vote the same way before
the threshold is checked. An empty member list, or a vote where everyone
abstains, yields ``none`` and counts as unanimous.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from edgelab.config.strategy_config import EnsembleParams
from edgelab.core.enums import SignalType
from edgelab.core.numeric import safe_ratio
from edgelab.strategies.base import ClosedTradeInfo, RuleBasedStrategy, Strategy, StrategyContext

logger = logging.getLogger(__name__)

VOTING_DIRECTIONS = (SignalType.BUY, SignalType.SELL, SignalType.SHORT, SignalType.COVER)


@dataclass
class MemberVote:
    strategy_id: str
    signal: SignalType
    weight: float
    normalized_weight: float


@dataclass
class VoteResult:
    signal: SignalType
    votes: List[MemberVote] = field(default_factory=list)
    scores: Dict[SignalType, float] = field(
        default_factory=lambda: {direction: 0.0 for direction in VOTING_DIRECTIONS}
    )
    confidence: float = 0.0
    unanimous: bool = True
    total_weight: float = 1.0

    def to_dict(self) -> dict:
        return {
            "signal": self.signal.value,
            "votes": [
                {"strategy_id": v.strategy_id, "signal": v.signal.value, "weight": v.weight}
                for v in self.votes
            ],
            "scores": {k.value: round(v, 4) for k, v in self.scores.items()},
            "confidence": round(self.confidence, 4),
            "unanimous": self.unanimous,
        }


def normalize_weights(weights: Sequence[float]) -> Tuple[List[float], float]:
    """Weights divided by their total; a total <= 0 is clamped to 1."""
    total = sum(weights)
    if total <= 0:
        total = 1.0
    return [safe_ratio(w, total) for w in weights], total


def tally_votes(
    votes: Sequence[Tuple[str, SignalType, float]],
    threshold: float = 0.5,
    unanimous: bool = False,
) -> VoteResult:
    """Combine (strategy_id, signal, weight) votes into one decision."""
    if not votes:
        return VoteResult(signal=SignalType.NONE)

    normalized, total = normalize_weights([w for _, _, w in votes])
    member_votes = [
        MemberVote(strategy_id, signal, weight, norm)
        for (strategy_id, signal, weight), norm in zip(votes, normalized)
    ]

    scores = {direction: 0.0 for direction in VOTING_DIRECTIONS}
    for vote in member_votes:
        if vote.signal in scores:
            scores[vote.signal] += vote.normalized_weight

    active = [v.signal for v in member_votes if v.signal != SignalType.NONE]

    if unanimous:
        if not active:
            return VoteResult(SignalType.NONE, member_votes, scores, 0.0, True, total)
        first = active[0]
        if any(s != first for s in active):
            return VoteResult(SignalType.NONE, member_votes, scores, 0.0, False, total)
        win_score = scores[first]
        winner = first if win_score >= threshold else SignalType.NONE
        return VoteResult(winner, member_votes, scores, win_score, True, total)

    winner = SignalType.NONE
    best = 0.0
    for direction in VOTING_DIRECTIONS:
        if scores[direction] > best:
            best = scores[direction]
            winner = direction
    if best < threshold:
        winner = SignalType.NONE

    if active:
        agreed = all(s == active[0] for s in active) and len(active) == len(member_votes)
    else:
        agreed = True

    return VoteResult(winner, member_votes, scores, best, agreed, total)


class EnsembleStrategy(Strategy):
    """Weighted vote over already-resolved member strategies."""

    id = "ensemble"
    name = "Ensemble"
    description = "Weighted vote across member strategies."

    def __init__(self, members: Sequence[Tuple[Strategy, float]], threshold: float = 0.5,
                 unanimous: bool = False):
        self.members = list(members)
        self.threshold = threshold
        self.unanimous = unanimous

    @classmethod
    def from_config(cls, params: EnsembleParams, registry: Any) -> "EnsembleStrategy":
        """Resolve member ids; unknown ids are skipped with a warning."""
        members = []
        for member in params.strategies:
            if member.id == RuleBasedStrategy.id:
                members.append((RuleBasedStrategy(), member.weight))
                continue
            strategy = registry.find(member.id)
            if strategy is None or strategy.id == cls.id:
                logger.warning("Ensemble member '%s' is not registered, skipping", member.id)
                continue
            members.append((strategy, member.weight))
        return cls(members, threshold=params.threshold, unanimous=params.unanimous)

    def vote(self, ctx: StrategyContext) -> VoteResult:
        votes = [
            (strategy.id, strategy.populate_signal(ctx), weight)
            for strategy, weight in self.members
        ]
        return tally_votes(votes, self.threshold, self.unanimous)

    def populate_signal(self, ctx: StrategyContext) -> SignalType:
        result = self.vote(ctx)
        logger.debug("%s ensemble vote: %s", ctx.symbol, result.to_dict())
        return result.signal

    def populate_indicators(self, ctx: StrategyContext) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for strategy, _ in self.members:
            for key, value in strategy.populate_indicators(ctx).items():
                fields.setdefault(key, value)
        return fields

    def should_exit(self, ctx: StrategyContext, position: Any) -> bool:
        return any(strategy.should_exit(ctx, position) for strategy, _ in self.members)

    def on_trade_closed(self, trade: ClosedTradeInfo, ctx: StrategyContext) -> None:
        for strategy, _ in self.members:
            strategy.on_trade_closed(trade, ctx)
