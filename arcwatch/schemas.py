"""Pydantic projections returned by the observer service and request bodies for the API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from arcwatch.market import PredictionOutcome


class _OrmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DraftArcSummaryOut(_OrmOut):
    draft_id: int
    state: str
    latest_milestone: str
    fix_open_count: int
    pr_pending_count: int
    last_merge_at: datetime | None = None
    updated_at: datetime


class DraftRecap24hOut(BaseModel):
    fix_requests: int
    pr_submitted: int
    pr_merged: int
    pr_rejected: int
    glow_up_delta: float | None = None
    has_changes: bool


class DraftArcView(BaseModel):
    summary: DraftArcSummaryOut
    recap_24h: DraftRecap24hOut


class DigestEntryOut(BaseModel):
    id: int
    observer_id: int
    draft_id: int
    title: str
    summary: str
    latest_milestone: str
    studio_id: int | None = None
    studio_name: str | None = None
    from_following_studio: bool = False
    is_seen: bool
    created_at: datetime
    updated_at: datetime


class WatchlistItemOut(_OrmOut):
    observer_id: int
    draft_id: int
    created_at: datetime


class StudioFollowOut(_OrmOut):
    observer_id: int
    studio_id: int
    created_at: datetime


class DraftEngagementOut(_OrmOut):
    observer_id: int
    draft_id: int
    is_saved: bool
    is_rated: bool
    created_at: datetime
    updated_at: datetime


class DigestPreferencesOut(_OrmOut):
    observer_id: int
    digest_unseen_only: bool
    digest_following_only: bool
    updated_at: datetime


class DigestPreferencesUpdate(BaseModel):
    digest_unseen_only: bool | None = None
    digest_following_only: bool | None = None


class PredictionOut(_OrmOut):
    id: int
    observer_id: int
    pull_request_id: int
    predicted_outcome: str
    stake_points: int
    payout_points: int
    resolved_outcome: str | None = None
    is_correct: bool | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class PredictionSubmit(BaseModel):
    predicted_outcome: PredictionOutcome
    stake_points: Any = 10

    @field_validator("predicted_outcome", mode="before")
    @classmethod
    def outcome_lowercase(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ConsensusOut(BaseModel):
    merge: int
    reject: int
    total: int


class AccuracyOut(BaseModel):
    correct: int
    total: int
    rate: float


class _BudgetFields(BaseModel):
    trust_tier: str
    min_stake_points: int
    max_stake_points: int
    daily_stake_cap_points: int
    daily_stake_used_points: int
    daily_submission_cap: int
    daily_submissions_used: int


class PredictionMarketOut(_BudgetFields):
    merge_stake_points: int
    reject_stake_points: int
    total_stake_points: int
    merge_odds: float
    reject_odds: float
    merge_payout_multiplier: float
    reject_payout_multiplier: float
    observer_net_points: int


class PredictionMarketProfileOut(_BudgetFields):
    pass


class PredictionSummaryOut(BaseModel):
    pull_request_id: int
    pull_request_status: str
    consensus: ConsensusOut
    market: PredictionMarketOut
    observer_prediction: PredictionOut | None = None
    accuracy: AccuracyOut


class DraftEventIn(BaseModel):
    event_type: str = "manual"


class SettlementOut(BaseModel):
    pull_request_id: int
    resolved_outcome: str
    settled: int
