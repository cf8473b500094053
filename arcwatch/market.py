"""Prediction market math: trust tiers, consensus odds and settlement payouts.

Observers stake points on whether a pending pull request will be merged or
rejected. Everything here is deterministic and storage-free:

- **Trust tier**: derived from resolved-prediction history; bounds the stake
  an observer may place on one pull request.
- **Odds**: each outcome's share of the total staked pool.
- **Payout multiplier**: ``total_pool / outcome_pool``, rounded for display. Settlement
  pays a correct prediction ``floor(stake * total_pool / outcome_pool)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from arcwatch.config import TrustTierRule
from arcwatch.utils import round2

ENTRY_TIER = "entry"


class PredictionOutcome(str, Enum):
    MERGE = "merge"
    REJECT = "reject"


DECIDED_STATUS_OUTCOMES = {
    "merged": PredictionOutcome.MERGE,
    "rejected": PredictionOutcome.REJECT,
}


@dataclass(frozen=True)
class RiskProfile:
    trust_tier: str
    max_stake_points: int


@dataclass(frozen=True)
class MarketPools:
    merge_stake_points: int
    reject_stake_points: int

    @property
    def total_stake_points(self) -> int:
        return self.merge_stake_points + self.reject_stake_points

    def pool_for(self, outcome: PredictionOutcome) -> int:
        if outcome is PredictionOutcome.MERGE:
            return self.merge_stake_points
        return self.reject_stake_points

    def odds(self, outcome: PredictionOutcome) -> float:
        total = self.total_stake_points
        return round2(self.pool_for(outcome) / total) if total > 0 else 0.0

    def payout_multiplier(self, outcome: PredictionOutcome) -> float:
        pool = self.pool_for(outcome)
        return round2(self.total_stake_points / pool) if pool > 0 else 0.0


def accuracy_rate(correct: int, total: int) -> float:
    return round2(correct / total) if total > 0 else 0.0


def resolve_trust_tier(
    resolved_count: int, rate: float, rules: list[TrustTierRule], entry_max_stake_points: int,
) -> RiskProfile:
    for rule in rules:
        if resolved_count >= rule.min_resolved and rate >= rule.min_accuracy:
            return RiskProfile(rule.tier, rule.max_stake_points)
    return RiskProfile(ENTRY_TIER, entry_max_stake_points)


def parse_outcome(value: str | PredictionOutcome) -> PredictionOutcome | None:
    if isinstance(value, PredictionOutcome):
        return value
    try:
        return PredictionOutcome(str(value).strip().lower())
    except ValueError:
        return None
