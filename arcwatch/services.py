"""Observer-facing business logic shared by the API and the CLI.

Every public method takes an :class:`~arcwatch.store.Executor` (normally a
SQLAlchemy ``Session``) as its first argument. The service flushes but never
commits; the caller owns the transaction boundary.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import case, delete, func, select, union, update

from arcwatch.arc import RELEASE_STATUS, ArcEventKind, calculate_arc, glow_up_score, latest_event
from arcwatch.config import Settings, get_settings
from arcwatch.errors import InvalidInputError, LimitExceededError, NotFoundError, StateConflictError
from arcwatch.market import (
    DECIDED_STATUS_OUTCOMES, MarketPools, PredictionOutcome, RiskProfile,
    accuracy_rate, parse_outcome, resolve_trust_tier,
)
from arcwatch.models import (
    Draft, DraftArcSummary, FixRequest, Observer, ObserverDigestEntry, ObserverDraftEngagement,
    ObserverDraftFollow, ObserverPrediction, ObserverPreferences, ObserverStudioFollow,
    PullRequest, Studio,
)
from arcwatch.schemas import (
    AccuracyOut, ConsensusOut, DigestEntryOut, DigestPreferencesOut, DraftArcSummaryOut,
    DraftArcView, DraftEngagementOut, DraftRecap24hOut, PredictionMarketOut,
    PredictionMarketProfileOut, PredictionOut, PredictionSummaryOut, StudioFollowOut,
    WatchlistItemOut,
)
from arcwatch.store import Executor, upsert_statement
from arcwatch.utils import AddressedFixRequests, round2, utc_now

log = logging.getLogger(__name__)

DIGEST_DEFAULT_LIMIT = 20
DIGEST_MAX_LIMIT = 100
DIGEST_MAX_OFFSET = 10_000

_POPULATE = {"populate_existing": True}


class DraftEventType(str, Enum):
    FIX_REQUEST = "fix_request"
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_DECISION = "pull_request_decision"
    DRAFT_RELEASED = "draft_released"
    MANUAL = "manual"


_DIGEST_TITLES = {
    DraftEventType.DRAFT_RELEASED: "Draft released",
    DraftEventType.PULL_REQUEST: "New PR on watched draft",
    DraftEventType.PULL_REQUEST_DECISION: "PR decision on watched draft",
    DraftEventType.FIX_REQUEST: "New critique on watched draft",
}


def digest_title(event_type: str) -> str:
    try:
        return _DIGEST_TITLES.get(DraftEventType(event_type), "Draft activity update")
    except ValueError:
        return "Draft activity update"


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _clamp(value: Any, default: int, low: int, high: int, label: str) -> int:
    if value is None:
        return default
    if not _is_int(value):
        raise InvalidInputError("DIGEST_PAGINATION_INVALID", f"{label} must be an integer.")
    return min(max(value, low), high)


def _optional_flag(value: Any, label: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise InvalidInputError("INVALID_FLAG", f"{label} must be a boolean.")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ObserverService:
    """Draft arcs, digest fan-out, watchlists and the prediction market.

    Holds configuration and a clock only; all state lives in the rows the
    executor reads and writes.
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.settings = settings or get_settings()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def start_of_day(self) -> datetime:
        """Midnight of the current day in the configured zone, as naive UTC."""
        local = self.now().replace(tzinfo=UTC).astimezone(self.settings.day_boundary_zone)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(UTC).replace(tzinfo=None)

    # -- existence checks ---------------------------------------------------

    def _require_draft(self, session: Executor, draft_id: int) -> Draft:
        draft = session.get(Draft, draft_id)
        if draft is None:
            raise NotFoundError("DRAFT_NOT_FOUND", "Draft not found.")
        return draft

    def _require_observer(self, session: Executor, observer_id: int) -> None:
        if session.get(Observer, observer_id) is None:
            raise NotFoundError("OBSERVER_NOT_FOUND", "Observer not found.")

    def _require_studio(self, session: Executor, studio_id: int) -> None:
        if session.get(Studio, studio_id) is None:
            raise NotFoundError("STUDIO_NOT_FOUND", "Studio not found.")

    def _require_pull_request(self, session: Executor, pull_request_id: int) -> PullRequest:
        pr = session.get(PullRequest, pull_request_id)
        if pr is None:
            raise NotFoundError("PR_NOT_FOUND", "Pull request not found.")
        return pr

    # -----------------------------------------------------------------------
    # Arc summary
    # -----------------------------------------------------------------------

    def get_draft_arc(self, session: Executor, draft_id: int) -> DraftArcView:
        summary = self.recompute_draft_arc_summary(session, draft_id)
        return DraftArcView(summary=summary, recap_24h=self.get_recap_24h(session, draft_id))

    def recompute_draft_arc_summary(self, session: Executor, draft_id: int) -> DraftArcSummaryOut:
        """Recompute the arc from source rows and upsert the cached summary.

        Never reads the previous summary, so concurrent recomputes for the same
        draft simply race to the last write.
        """
        draft = self._require_draft(session, draft_id)

        merged = (PullRequest.draft_id == draft_id) & (PullRequest.status == "merged")
        addressed: set[int] = set()
        for raw in session.scalars(select(PullRequest.addressed_fix_requests_json).where(merged)):
            addressed.update(AddressedFixRequests.decode(raw))

        open_fixes = select(func.count()).select_from(FixRequest).where(FixRequest.draft_id == draft_id)
        if addressed:
            open_fixes = open_fixes.where(FixRequest.id.not_in(addressed))
        fix_open_count = session.scalar(open_fixes) or 0

        on_draft = PullRequest.draft_id == draft_id
        pr_pending_count = session.scalar(
            select(func.count()).select_from(PullRequest).where(on_draft, PullRequest.status == "pending")
        )
        last_merge_at = session.scalar(select(func.max(PullRequest.decided_at)).where(merged))
        last_reject_at = session.scalar(
            select(func.max(PullRequest.decided_at)).where(on_draft, PullRequest.status == "rejected")
        )
        last_submit_at = session.scalar(select(func.max(PullRequest.created_at)).where(on_draft))
        last_fix_at = session.scalar(select(func.max(FixRequest.created_at)).where(FixRequest.draft_id == draft_id))

        kind = latest_event([
            (ArcEventKind.DRAFT_RELEASE, draft.updated_at if draft.status == RELEASE_STATUS else None),
            (ArcEventKind.PR_MERGED, last_merge_at),
            (ArcEventKind.PR_REJECTED, last_reject_at),
            (ArcEventKind.PR_SUBMITTED, last_submit_at),
            (ArcEventKind.FIX_REQUEST, last_fix_at),
        ])
        calc = calculate_arc(draft.status, int(fix_open_count), int(pr_pending_count or 0), kind)

        stmt = upsert_statement(session, DraftArcSummary).values(
            draft_id=draft_id,
            state=calc.state.value,
            latest_milestone=calc.latest_milestone,
            fix_open_count=calc.fix_open_count,
            pr_pending_count=calc.pr_pending_count,
            last_merge_at=last_merge_at,
            updated_at=self.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["draft_id"],
            set_={
                "state": stmt.excluded.state,
                "latest_milestone": stmt.excluded.latest_milestone,
                "fix_open_count": stmt.excluded.fix_open_count,
                "pr_pending_count": stmt.excluded.pr_pending_count,
                "last_merge_at": stmt.excluded.last_merge_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        row = session.scalars(stmt.returning(DraftArcSummary), execution_options=_POPULATE).one()
        log.debug("Draft %s arc -> %s (%s)", draft_id, row.state, row.latest_milestone)
        return DraftArcSummaryOut.model_validate(row)

    def get_recap_24h(self, session: Executor, draft_id: int) -> DraftRecap24hOut:
        self._require_draft(session, draft_id)
        since = self.now() - timedelta(hours=self.settings.recap_window_hours)
        merged = PullRequest.status == "merged"
        in_window = PullRequest.decided_at >= since
        major = PullRequest.severity == "major"
        minor = PullRequest.severity == "minor"

        row = session.execute(
            select(
                func.count().filter(PullRequest.created_at >= since),
                func.count().filter(merged & in_window),
                func.count().filter((PullRequest.status == "rejected") & in_window),
                func.count().filter(merged & major),
                func.count().filter(merged & minor),
                func.count().filter(merged & major & in_window),
                func.count().filter(merged & minor & in_window),
            ).where(PullRequest.draft_id == draft_id)
        ).one()
        pr_submitted, pr_merged, pr_rejected, major_total, minor_total, major_window, minor_window = (
            int(v or 0) for v in row
        )
        fix_requests = int(session.scalar(
            select(func.count()).select_from(FixRequest)
            .where(FixRequest.draft_id == draft_id, FixRequest.created_at >= since)
        ) or 0)

        glow_up_delta = None
        if major_window + minor_window > 0:
            weights = (self.settings.glowup_major_weight, self.settings.glowup_minor_weight)
            glow_up_delta = round2(
                glow_up_score(major_total, minor_total, *weights)
                - glow_up_score(major_total - major_window, minor_total - minor_window, *weights)
            )

        return DraftRecap24hOut(
            fix_requests=fix_requests,
            pr_submitted=pr_submitted,
            pr_merged=pr_merged,
            pr_rejected=pr_rejected,
            glow_up_delta=glow_up_delta,
            has_changes=fix_requests + pr_submitted + pr_merged + pr_rejected > 0,
        )

    # -----------------------------------------------------------------------
    # Digest fan-out
    # -----------------------------------------------------------------------

    def record_draft_event(self, session: Executor, draft_id: int, event_type: str = "manual") -> DraftArcSummaryOut:
        """Recompute the arc, then refresh or create one digest entry per follower."""
        if not isinstance(event_type, str):
            raise InvalidInputError("DRAFT_EVENT_INVALID", "Event type must be a string.")
        summary = self.recompute_draft_arc_summary(session, draft_id)
        draft = self._require_draft(session, draft_id)

        followers = union(
            select(ObserverDraftFollow.observer_id).where(ObserverDraftFollow.draft_id == draft_id),
            select(ObserverStudioFollow.observer_id).where(ObserverStudioFollow.studio_id == draft.studio_id),
        )
        observer_ids = sorted(session.scalars(followers).all())
        if not observer_ids:
            return summary

        now = self.now()
        cutoff = now - timedelta(minutes=self.settings.digest_dedup_window_minutes)
        title = digest_title(event_type)
        text = (
            f"{summary.latest_milestone}. Open fixes: {summary.fix_open_count}, "
            f"pending PRs: {summary.pr_pending_count}."
        )

        refreshed = 0
        for observer_id in observer_ids:
            recent = session.scalars(
                select(ObserverDigestEntry)
                .where(
                    ObserverDigestEntry.observer_id == observer_id,
                    ObserverDigestEntry.draft_id == draft_id,
                    ObserverDigestEntry.created_at >= cutoff,
                )
                .order_by(ObserverDigestEntry.created_at.desc(), ObserverDigestEntry.id.desc())
                .limit(1)
            ).first()
            if recent is not None:
                recent.title = title
                recent.summary = text
                recent.latest_milestone = summary.latest_milestone
                recent.is_seen = False
                recent.updated_at = now
                refreshed += 1
            else:
                session.add(ObserverDigestEntry(
                    observer_id=observer_id, draft_id=draft_id, title=title, summary=text,
                    latest_milestone=summary.latest_milestone, is_seen=False,
                    created_at=now, updated_at=now,
                ))
        session.flush()
        log.debug("Draft %s %s: %d followers, %d entries refreshed",
                  draft_id, event_type, len(observer_ids), refreshed)
        return summary

    def _digest_query(self, observer_id: int):
        following = (
            select(ObserverStudioFollow.id)
            .where(
                ObserverStudioFollow.observer_id == ObserverDigestEntry.observer_id,
                ObserverStudioFollow.studio_id == Draft.studio_id,
            )
            .exists()
        )
        following_col = following.label("from_following_studio")
        stmt = (
            select(ObserverDigestEntry, Studio.id, Studio.name, following_col)
            .join(Draft, Draft.id == ObserverDigestEntry.draft_id)
            .join(Studio, Studio.id == Draft.studio_id)
            .where(ObserverDigestEntry.observer_id == observer_id)
        )
        return stmt, following, following_col

    @staticmethod
    def _digest_out(row) -> DigestEntryOut:
        entry, studio_id, studio_name, from_following = row
        return DigestEntryOut(
            id=entry.id, observer_id=entry.observer_id, draft_id=entry.draft_id,
            title=entry.title, summary=entry.summary, latest_milestone=entry.latest_milestone,
            studio_id=studio_id, studio_name=studio_name,
            from_following_studio=bool(from_following), is_seen=bool(entry.is_seen),
            created_at=entry.created_at, updated_at=entry.updated_at,
        )

    def list_digest(
        self, session: Executor, observer_id: int, *,
        unseen_only: bool | None = None, from_following_studio_only: bool | None = None,
        limit: int | None = None, offset: int | None = None,
    ) -> list[DigestEntryOut]:
        """Unseen first, then followed-studio entries, then newest.

        Filters left as ``None`` fall back to the observer's stored digest
        preferences.
        """
        unseen_only = _optional_flag(unseen_only, "unseen_only")
        from_following_studio_only = _optional_flag(from_following_studio_only, "from_following_studio_only")
        limit = _clamp(limit, DIGEST_DEFAULT_LIMIT, 1, DIGEST_MAX_LIMIT, "limit")
        offset = _clamp(offset, 0, 0, DIGEST_MAX_OFFSET, "offset")

        if unseen_only is None or from_following_studio_only is None:
            prefs = session.get(ObserverPreferences, observer_id)
            if unseen_only is None:
                unseen_only = bool(prefs and prefs.digest_unseen_only)
            if from_following_studio_only is None:
                from_following_studio_only = bool(prefs and prefs.digest_following_only)

        stmt, following, following_col = self._digest_query(observer_id)
        if unseen_only:
            stmt = stmt.where(ObserverDigestEntry.is_seen.is_(False))
        if from_following_studio_only:
            stmt = stmt.where(following)
        stmt = (
            stmt.order_by(
                ObserverDigestEntry.is_seen.asc(),
                following_col.desc(),
                ObserverDigestEntry.created_at.desc(),
                ObserverDigestEntry.id.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        return [self._digest_out(row) for row in session.execute(stmt).all()]

    def mark_digest_seen(self, session: Executor, observer_id: int, entry_id: int) -> DigestEntryOut:
        updated_id = session.scalars(
            update(ObserverDigestEntry)
            .where(ObserverDigestEntry.id == entry_id, ObserverDigestEntry.observer_id == observer_id)
            .values(is_seen=True, updated_at=self.now())
            .returning(ObserverDigestEntry.id)
        ).first()
        if updated_id is None:
            raise NotFoundError("DIGEST_ENTRY_NOT_FOUND", "Digest entry not found.")
        stmt, _, _ = self._digest_query(observer_id)
        row = session.execute(
            stmt.where(ObserverDigestEntry.id == entry_id).execution_options(populate_existing=True)
        ).one()
        return self._digest_out(row)

    # -----------------------------------------------------------------------
    # Watchlist and engagement
    # -----------------------------------------------------------------------

    def follow_draft(self, session: Executor, observer_id: int, draft_id: int) -> WatchlistItemOut:
        self._require_observer(session, observer_id)
        self._require_draft(session, draft_id)
        stmt = upsert_statement(session, ObserverDraftFollow).values(
            observer_id=observer_id, draft_id=draft_id, created_at=self.now(),
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=["observer_id", "draft_id"]))
        row = session.scalars(
            select(ObserverDraftFollow).where(
                ObserverDraftFollow.observer_id == observer_id, ObserverDraftFollow.draft_id == draft_id,
            )
        ).one()
        return WatchlistItemOut.model_validate(row)

    def unfollow_draft(self, session: Executor, observer_id: int, draft_id: int) -> dict[str, bool]:
        result = session.execute(
            delete(ObserverDraftFollow).where(
                ObserverDraftFollow.observer_id == observer_id, ObserverDraftFollow.draft_id == draft_id,
            )
        )
        return {"removed": result.rowcount > 0}

    def list_watchlist(self, session: Executor, observer_id: int) -> list[WatchlistItemOut]:
        rows = session.scalars(
            select(ObserverDraftFollow)
            .where(ObserverDraftFollow.observer_id == observer_id)
            .order_by(ObserverDraftFollow.created_at.desc(), ObserverDraftFollow.id.desc())
        ).all()
        return [WatchlistItemOut.model_validate(r) for r in rows]

    def follow_studio(self, session: Executor, observer_id: int, studio_id: int) -> StudioFollowOut:
        self._require_observer(session, observer_id)
        self._require_studio(session, studio_id)
        stmt = upsert_statement(session, ObserverStudioFollow).values(
            observer_id=observer_id, studio_id=studio_id, created_at=self.now(),
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=["observer_id", "studio_id"]))
        row = session.scalars(
            select(ObserverStudioFollow).where(
                ObserverStudioFollow.observer_id == observer_id, ObserverStudioFollow.studio_id == studio_id,
            )
        ).one()
        return StudioFollowOut.model_validate(row)

    def unfollow_studio(self, session: Executor, observer_id: int, studio_id: int) -> dict[str, bool]:
        result = session.execute(
            delete(ObserverStudioFollow).where(
                ObserverStudioFollow.observer_id == observer_id, ObserverStudioFollow.studio_id == studio_id,
            )
        )
        return {"removed": result.rowcount > 0}

    def _set_engagement_flag(self, session: Executor, observer_id: int, draft_id: int, flag: str) -> None:
        self._require_observer(session, observer_id)
        self._require_draft(session, draft_id)
        now = self.now()
        stmt = upsert_statement(session, ObserverDraftEngagement).values(
            observer_id=observer_id, draft_id=draft_id,
            is_saved=flag == "is_saved", is_rated=flag == "is_rated",
            created_at=now, updated_at=now,
        )
        session.execute(stmt.on_conflict_do_update(
            index_elements=["observer_id", "draft_id"],
            set_={flag: True, "updated_at": now},
        ))

    def _clear_engagement_flag(self, session: Executor, observer_id: int, draft_id: int, flag: str) -> None:
        other = "is_rated" if flag == "is_saved" else "is_saved"
        match = (ObserverDraftEngagement.observer_id == observer_id) & (ObserverDraftEngagement.draft_id == draft_id)
        other_col = getattr(ObserverDraftEngagement, other)
        # A row must keep at least one flag set; drop it when the other flag is already clear.
        session.execute(delete(ObserverDraftEngagement).where(match, other_col.is_(False)))
        session.execute(
            update(ObserverDraftEngagement)
            .where(match, other_col.is_(True))
            .values({flag: False, "updated_at": self.now()})
            .execution_options(synchronize_session="fetch")
        )

    def save_draft(self, session: Executor, observer_id: int, draft_id: int) -> dict[str, bool]:
        self._set_engagement_flag(session, observer_id, draft_id, "is_saved")
        return {"saved": True}

    def unsave_draft(self, session: Executor, observer_id: int, draft_id: int) -> dict[str, bool]:
        self._clear_engagement_flag(session, observer_id, draft_id, "is_saved")
        return {"saved": False}

    def rate_draft(self, session: Executor, observer_id: int, draft_id: int) -> dict[str, bool]:
        self._set_engagement_flag(session, observer_id, draft_id, "is_rated")
        return {"rated": True}

    def unrate_draft(self, session: Executor, observer_id: int, draft_id: int) -> dict[str, bool]:
        self._clear_engagement_flag(session, observer_id, draft_id, "is_rated")
        return {"rated": False}

    def list_draft_engagements(self, session: Executor, observer_id: int) -> list[DraftEngagementOut]:
        rows = session.scalars(
            select(ObserverDraftEngagement)
            .where(ObserverDraftEngagement.observer_id == observer_id)
            .order_by(ObserverDraftEngagement.updated_at.desc(), ObserverDraftEngagement.id.desc())
            .execution_options(populate_existing=True)
        ).all()
        return [DraftEngagementOut.model_validate(r) for r in rows]

    # -----------------------------------------------------------------------
    # Digest preferences
    # -----------------------------------------------------------------------

    def get_digest_preferences(self, session: Executor, observer_id: int) -> DigestPreferencesOut:
        self._require_observer(session, observer_id)
        stmt = upsert_statement(session, ObserverPreferences).values(
            observer_id=observer_id, digest_unseen_only=False, digest_following_only=False,
            updated_at=self.now(),
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=["observer_id"]))
        row = session.scalars(
            select(ObserverPreferences).where(ObserverPreferences.observer_id == observer_id)
            .execution_options(populate_existing=True)
        ).one()
        return DigestPreferencesOut.model_validate(row)

    def upsert_digest_preferences(
        self, session: Executor, observer_id: int, *,
        digest_unseen_only: bool | None = None, digest_following_only: bool | None = None,
    ) -> DigestPreferencesOut:
        """Fields passed as ``None`` keep their stored value (``False`` on first write)."""
        digest_unseen_only = _optional_flag(digest_unseen_only, "digest_unseen_only")
        digest_following_only = _optional_flag(digest_following_only, "digest_following_only")
        self._require_observer(session, observer_id)
        now = self.now()
        stmt = upsert_statement(session, ObserverPreferences).values(
            observer_id=observer_id,
            digest_unseen_only=bool(digest_unseen_only),
            digest_following_only=bool(digest_following_only),
            updated_at=now,
        )
        changes: dict[str, Any] = {"updated_at": now}
        if digest_unseen_only is not None:
            changes["digest_unseen_only"] = digest_unseen_only
        if digest_following_only is not None:
            changes["digest_following_only"] = digest_following_only
        stmt = stmt.on_conflict_do_update(index_elements=["observer_id"], set_=changes)
        row = session.scalars(stmt.returning(ObserverPreferences), execution_options=_POPULATE).one()
        return DigestPreferencesOut.model_validate(row)

    # -----------------------------------------------------------------------
    # Prediction market
    # -----------------------------------------------------------------------

    def _risk_profile(self, session: Executor, observer_id: int) -> RiskProfile:
        resolved_count, correct_count = session.execute(
            select(
                func.count().filter(ObserverPrediction.resolved_outcome.is_not(None)),
                func.count().filter(ObserverPrediction.is_correct.is_(True)),
            ).where(ObserverPrediction.observer_id == observer_id)
        ).one()
        resolved_count = int(resolved_count or 0)
        rate = accuracy_rate(int(correct_count or 0), resolved_count)
        return resolve_trust_tier(
            resolved_count, rate, self.settings.trust_tier_rules,
            self.settings.prediction_entry_max_stake_points,
        )

    def _daily_usage(self, session: Executor, observer_id: int) -> tuple[int, int]:
        """(predictions created today, stake points committed by them)."""
        count, stake = session.execute(
            select(func.count(), func.coalesce(func.sum(ObserverPrediction.stake_points), 0))
            .where(
                ObserverPrediction.observer_id == observer_id,
                ObserverPrediction.created_at >= self.start_of_day(),
            )
        ).one()
        return int(count or 0), int(stake or 0)

    def _market_pools(self, session: Executor, pull_request_id: int) -> tuple[int, int, MarketPools]:
        merge = ObserverPrediction.predicted_outcome == PredictionOutcome.MERGE.value
        reject = ObserverPrediction.predicted_outcome == PredictionOutcome.REJECT.value
        row = session.execute(
            select(
                func.count().filter(merge),
                func.count().filter(reject),
                func.coalesce(func.sum(ObserverPrediction.stake_points).filter(merge), 0),
                func.coalesce(func.sum(ObserverPrediction.stake_points).filter(reject), 0),
            ).where(ObserverPrediction.pull_request_id == pull_request_id)
        ).one()
        merge_count, reject_count, merge_stake, reject_stake = (int(v or 0) for v in row)
        return merge_count, reject_count, MarketPools(merge_stake, reject_stake)

    def _validate_stake(self, stake_points: Any) -> int:
        low = self.settings.prediction_min_stake_points
        high = self.settings.prediction_max_stake_points
        if not _is_int(stake_points) or not low <= stake_points <= high:
            raise InvalidInputError(
                "PREDICTION_STAKE_INVALID",
                f"Stake points must be an integer between {low} and {high}.",
            )
        return stake_points

    def submit_prediction(
        self, session: Executor, observer_id: int, pull_request_id: int,
        predicted_outcome: str | PredictionOutcome, stake_points: int | None = None,
    ) -> PredictionOut:
        """Place or edit a stake on a pending pull request.

        Every check runs before the single guarded upsert; a prediction that
        was resolved in the meantime makes the upsert return nothing.
        """
        if stake_points is None:
            stake_points = self.settings.prediction_default_stake_points
        self._require_observer(session, observer_id)
        pr = self._require_pull_request(session, pull_request_id)
        if pr.status != "pending":
            raise StateConflictError("PR_NOT_PENDING", "Predictions are allowed only for pending pull requests.")
        outcome = parse_outcome(predicted_outcome)
        if outcome is None:
            raise InvalidInputError("PREDICTION_OUTCOME_INVALID", "Predicted outcome must be 'merge' or 'reject'.")
        stake_points = self._validate_stake(stake_points)

        existing = session.scalars(
            select(ObserverPrediction).where(
                ObserverPrediction.observer_id == observer_id,
                ObserverPrediction.pull_request_id == pull_request_id,
            )
        ).first()
        if existing is not None and existing.resolved_at is not None:
            raise StateConflictError("PREDICTION_RESOLVED", "Prediction already resolved for this pull request.")
        if (existing is not None and existing.predicted_outcome == outcome.value
                and existing.stake_points == stake_points):
            return PredictionOut.model_validate(existing)

        existing_stake = existing.stake_points if existing is not None else 0
        risk = self._risk_profile(session, observer_id)
        effective_cap = max(risk.max_stake_points, existing_stake)
        if stake_points > effective_cap:
            raise LimitExceededError(
                "PREDICTION_STAKE_LIMIT_EXCEEDED",
                f"Stake points exceed your current trust-tier limit ({effective_cap}).",
                metadata={"trust_tier": risk.trust_tier, "max_stake_points": effective_cap},
            )

        submissions_today, stake_today = self._daily_usage(session, observer_id)
        submission_cap = self.settings.prediction_daily_submission_cap
        stake_cap = self.settings.prediction_daily_stake_cap_points
        if existing is None and submissions_today >= submission_cap:
            raise LimitExceededError(
                "PREDICTION_DAILY_SUBMISSION_CAP_REACHED",
                f"Daily prediction limit reached ({submission_cap}).", status=429,
            )
        projected = stake_today
        if existing is None:
            projected = stake_today + stake_points
        elif existing.created_at >= self.start_of_day():
            projected = stake_today - existing_stake + stake_points
        if projected > stake_cap:
            raise LimitExceededError(
                "PREDICTION_DAILY_STAKE_CAP_REACHED",
                f"Daily stake limit reached ({stake_cap}).", status=429,
            )

        stmt = upsert_statement(session, ObserverPrediction).values(
            observer_id=observer_id,
            pull_request_id=pull_request_id,
            predicted_outcome=outcome.value,
            stake_points=stake_points,
            payout_points=0,
            created_at=self.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["observer_id", "pull_request_id"],
            set_={
                "predicted_outcome": stmt.excluded.predicted_outcome,
                "stake_points": stmt.excluded.stake_points,
            },
            where=ObserverPrediction.resolved_at.is_(None),
        )
        row = session.scalars(stmt.returning(ObserverPrediction), execution_options=_POPULATE).first()
        if row is None:
            raise StateConflictError("PREDICTION_RESOLVED", "Prediction already resolved for this pull request.")
        log.info("Observer %s predicted %s on PR %s (stake %d)",
                 observer_id, outcome.value, pull_request_id, stake_points)
        return PredictionOut.model_validate(row)

    def get_prediction_summary(self, session: Executor, observer_id: int, pull_request_id: int) -> PredictionSummaryOut:
        self._require_observer(session, observer_id)
        pr = self._require_pull_request(session, pull_request_id)

        merge_count, reject_count, pools = self._market_pools(session, pull_request_id)
        own = session.scalars(
            select(ObserverPrediction).where(
                ObserverPrediction.observer_id == observer_id,
                ObserverPrediction.pull_request_id == pull_request_id,
            )
        ).first()
        resolved = ObserverPrediction.resolved_outcome.is_not(None)
        correct, total, net = session.execute(
            select(
                func.count().filter(ObserverPrediction.is_correct.is_(True)),
                func.count().filter(resolved),
                func.coalesce(
                    func.sum(ObserverPrediction.payout_points - ObserverPrediction.stake_points).filter(resolved), 0,
                ),
            ).where(ObserverPrediction.observer_id == observer_id)
        ).one()
        correct, total, net = int(correct or 0), int(total or 0), int(net or 0)

        risk = self._risk_profile(session, observer_id)
        submissions_today, stake_today = self._daily_usage(session, observer_id)
        merge, reject = PredictionOutcome.MERGE, PredictionOutcome.REJECT
        market = PredictionMarketOut(
            trust_tier=risk.trust_tier,
            min_stake_points=self.settings.prediction_min_stake_points,
            max_stake_points=max(risk.max_stake_points, own.stake_points if own else 0),
            daily_stake_cap_points=self.settings.prediction_daily_stake_cap_points,
            daily_stake_used_points=stake_today,
            daily_submission_cap=self.settings.prediction_daily_submission_cap,
            daily_submissions_used=submissions_today,
            merge_stake_points=pools.merge_stake_points,
            reject_stake_points=pools.reject_stake_points,
            total_stake_points=pools.total_stake_points,
            merge_odds=pools.odds(merge),
            reject_odds=pools.odds(reject),
            merge_payout_multiplier=pools.payout_multiplier(merge),
            reject_payout_multiplier=pools.payout_multiplier(reject),
            observer_net_points=net,
        )
        return PredictionSummaryOut(
            pull_request_id=pull_request_id,
            pull_request_status=pr.status,
            consensus=ConsensusOut(merge=merge_count, reject=reject_count, total=merge_count + reject_count),
            market=market,
            observer_prediction=PredictionOut.model_validate(own) if own else None,
            accuracy=AccuracyOut(correct=correct, total=total, rate=accuracy_rate(correct, total)),
        )

    def get_prediction_market_profile(self, session: Executor, observer_id: int) -> PredictionMarketProfileOut:
        self._require_observer(session, observer_id)
        risk = self._risk_profile(session, observer_id)
        submissions_today, stake_today = self._daily_usage(session, observer_id)
        return PredictionMarketProfileOut(
            trust_tier=risk.trust_tier,
            min_stake_points=self.settings.prediction_min_stake_points,
            max_stake_points=risk.max_stake_points,
            daily_stake_cap_points=self.settings.prediction_daily_stake_cap_points,
            daily_stake_used_points=stake_today,
            daily_submission_cap=self.settings.prediction_daily_submission_cap,
            daily_submissions_used=submissions_today,
        )

    def settle_pull_request_predictions(self, session: Executor, pull_request_id: int) -> int:
        """Resolve every open prediction on a merged or rejected pull request.

        Correct predictions pay ``floor(stake * total_pool / winning_pool)``.
        Rows already resolved are left untouched. Returns the number settled.
        """
        pr = self._require_pull_request(session, pull_request_id)
        outcome = DECIDED_STATUS_OUTCOMES.get(pr.status)
        if outcome is None:
            raise StateConflictError("PR_NOT_DECIDED", "Pull request has not been merged or rejected.")

        _, _, pools = self._market_pools(session, pull_request_id)
        winning_pool = pools.pool_for(outcome)
        is_correct = ObserverPrediction.predicted_outcome == outcome.value
        if winning_pool > 0:
            payout = case(
                (is_correct, ObserverPrediction.stake_points * pools.total_stake_points // winning_pool),
                else_=0,
            )
        else:
            payout = 0

        settled_rows = session.scalars(
            update(ObserverPrediction)
            .where(ObserverPrediction.pull_request_id == pull_request_id, ObserverPrediction.resolved_at.is_(None))
            .values(
                resolved_outcome=outcome.value,
                is_correct=case((is_correct, True), else_=False),
                payout_points=payout,
                resolved_at=self.now(),
            )
            .returning(ObserverPrediction),
            execution_options=_POPULATE,
        ).all()
        settled = len(settled_rows)
        log.info("Settled %d predictions on PR %s as %s", settled, pull_request_id, outcome.value)
        return settled
