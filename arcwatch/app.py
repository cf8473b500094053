from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from arcwatch.db import get_session, init_db
from arcwatch.errors import ServiceError
from arcwatch.market import DECIDED_STATUS_OUTCOMES
from arcwatch.models import PullRequest
from arcwatch.schemas import (
    DigestEntryOut,
    DigestPreferencesOut,
    DigestPreferencesUpdate,
    DraftArcSummaryOut,
    DraftArcView,
    DraftEngagementOut,
    DraftEventIn,
    PredictionMarketProfileOut,
    PredictionOut,
    PredictionSubmit,
    PredictionSummaryOut,
    SettlementOut,
    StudioFollowOut,
    WatchlistItemOut,
)
from arcwatch.services import ObserverService

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Arcwatch",
    version="0.1.0",
    description=(
        "Observer API for collaborative drafts. Follow a draft's arc, read a "
        "personalised digest, and stake points on pull request outcomes. "
        "Observer identity is taken from the X-Observer-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Drafts", "description": "Arc summaries, 24h recaps and event fan-out."},
        {"name": "Watchlist", "description": "Follow drafts and studios."},
        {"name": "Engagement", "description": "Save and rate drafts."},
        {"name": "Digest", "description": "Per-observer digest feed and its preferences."},
        {"name": "Predictions", "description": "Stake points on pending pull request outcomes."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def observer_service() -> ObserverService:
    return ObserverService()


def current_observer(x_observer_id: int | None = Header(None)) -> int:
    if x_observer_id is None:
        raise HTTPException(401, "X-Observer-Id header required")
    return x_observer_id


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Routes: Drafts
# ---------------------------------------------------------------------------


@app.get("/api/drafts/{draft_id}/arc", response_model=DraftArcView,
         tags=["Drafts"], summary="Recompute and return the draft arc with its 24h recap")
async def get_draft_arc(draft_id: int, session: Session = Depends(db_session),
                        service: ObserverService = Depends(observer_service)):
    view = service.get_draft_arc(session, draft_id)
    session.commit()
    return view


@app.post("/api/drafts/{draft_id}/events", response_model=DraftArcSummaryOut,
          tags=["Drafts"], summary="Record a draft event and fan it out to followers' digests")
async def record_draft_event(draft_id: int, body: DraftEventIn | None = None,
                             session: Session = Depends(db_session),
                             service: ObserverService = Depends(observer_service)):
    summary = service.record_draft_event(session, draft_id, (body or DraftEventIn()).event_type)
    session.commit()
    return summary


# ---------------------------------------------------------------------------
# Routes: Watchlist
# ---------------------------------------------------------------------------


@app.get("/api/observers/watchlist", response_model=list[WatchlistItemOut],
         tags=["Watchlist"], summary="List followed drafts, newest first")
async def list_watchlist(observer_id: int = Depends(current_observer), session: Session = Depends(db_session),
                         service: ObserverService = Depends(observer_service)):
    return service.list_watchlist(session, observer_id)


@app.post("/api/observers/watchlist/{draft_id}", response_model=WatchlistItemOut, status_code=201,
          tags=["Watchlist"], summary="Follow a draft (idempotent)")
async def follow_draft(draft_id: int, observer_id: int = Depends(current_observer),
                       session: Session = Depends(db_session),
                       service: ObserverService = Depends(observer_service)):
    item = service.follow_draft(session, observer_id, draft_id)
    session.commit()
    return item


@app.delete("/api/observers/watchlist/{draft_id}", tags=["Watchlist"], summary="Unfollow a draft")
async def unfollow_draft(draft_id: int, observer_id: int = Depends(current_observer),
                         session: Session = Depends(db_session),
                         service: ObserverService = Depends(observer_service)):
    result = service.unfollow_draft(session, observer_id, draft_id)
    session.commit()
    return result


@app.post("/api/observers/studios/{studio_id}/follow", response_model=StudioFollowOut, status_code=201,
          tags=["Watchlist"], summary="Follow every draft of a studio")
async def follow_studio(studio_id: int, observer_id: int = Depends(current_observer),
                        session: Session = Depends(db_session),
                        service: ObserverService = Depends(observer_service)):
    item = service.follow_studio(session, observer_id, studio_id)
    session.commit()
    return item


@app.delete("/api/observers/studios/{studio_id}/follow", tags=["Watchlist"], summary="Unfollow a studio")
async def unfollow_studio(studio_id: int, observer_id: int = Depends(current_observer),
                          session: Session = Depends(db_session),
                          service: ObserverService = Depends(observer_service)):
    result = service.unfollow_studio(session, observer_id, studio_id)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Engagement
# ---------------------------------------------------------------------------


@app.get("/api/observers/engagements", response_model=list[DraftEngagementOut],
         tags=["Engagement"], summary="List saved or rated drafts")
async def list_engagements(observer_id: int = Depends(current_observer), session: Session = Depends(db_session),
                           service: ObserverService = Depends(observer_service)):
    return service.list_draft_engagements(session, observer_id)


@app.post("/api/observers/engagements/{draft_id}/save", tags=["Engagement"], summary="Save a draft")
async def save_draft(draft_id: int, observer_id: int = Depends(current_observer),
                     session: Session = Depends(db_session),
                     service: ObserverService = Depends(observer_service)):
    result = service.save_draft(session, observer_id, draft_id)
    session.commit()
    return result


@app.delete("/api/observers/engagements/{draft_id}/save", tags=["Engagement"], summary="Unsave a draft")
async def unsave_draft(draft_id: int, observer_id: int = Depends(current_observer),
                       session: Session = Depends(db_session),
                       service: ObserverService = Depends(observer_service)):
    result = service.unsave_draft(session, observer_id, draft_id)
    session.commit()
    return result


@app.post("/api/observers/engagements/{draft_id}/rate", tags=["Engagement"], summary="Rate a draft")
async def rate_draft(draft_id: int, observer_id: int = Depends(current_observer),
                     session: Session = Depends(db_session),
                     service: ObserverService = Depends(observer_service)):
    result = service.rate_draft(session, observer_id, draft_id)
    session.commit()
    return result


@app.delete("/api/observers/engagements/{draft_id}/rate", tags=["Engagement"], summary="Remove a draft rating")
async def unrate_draft(draft_id: int, observer_id: int = Depends(current_observer),
                       session: Session = Depends(db_session),
                       service: ObserverService = Depends(observer_service)):
    result = service.unrate_draft(session, observer_id, draft_id)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Digest
# ---------------------------------------------------------------------------


@app.get("/api/observers/preferences/digest", response_model=DigestPreferencesOut,
         tags=["Digest"], summary="Get digest preferences (created with defaults on first read)")
async def get_digest_preferences(observer_id: int = Depends(current_observer),
                                 session: Session = Depends(db_session),
                                 service: ObserverService = Depends(observer_service)):
    prefs = service.get_digest_preferences(session, observer_id)
    session.commit()
    return prefs


@app.put("/api/observers/preferences/digest", response_model=DigestPreferencesOut,
         tags=["Digest"], summary="Update digest preferences (null fields keep their value)")
async def update_digest_preferences(body: DigestPreferencesUpdate, observer_id: int = Depends(current_observer),
                                    session: Session = Depends(db_session),
                                    service: ObserverService = Depends(observer_service)):
    prefs = service.upsert_digest_preferences(
        session, observer_id,
        digest_unseen_only=body.digest_unseen_only,
        digest_following_only=body.digest_following_only,
    )
    session.commit()
    return prefs


@app.get("/api/observers/digest", response_model=list[DigestEntryOut],
         tags=["Digest"], summary="List digest entries: unseen first, followed studios next, newest first")
async def list_digest(
    unseen_only: bool | None = Query(None, description="Omit to use the stored preference"),
    from_following_studio_only: bool | None = Query(None, description="Omit to use the stored preference"),
    limit: int | None = Query(None, description="Clamped to 1..100, default 20"),
    offset: int | None = Query(None, description="Clamped to 0..10000, default 0"),
    observer_id: int = Depends(current_observer),
    session: Session = Depends(db_session),
    service: ObserverService = Depends(observer_service),
):
    return service.list_digest(
        session, observer_id,
        unseen_only=unseen_only, from_following_studio_only=from_following_studio_only,
        limit=limit, offset=offset,
    )


@app.post("/api/observers/digest/{entry_id}/seen", response_model=DigestEntryOut,
          tags=["Digest"], summary="Mark a digest entry as seen")
async def mark_digest_seen(entry_id: int, observer_id: int = Depends(current_observer),
                           session: Session = Depends(db_session),
                           service: ObserverService = Depends(observer_service)):
    entry = service.mark_digest_seen(session, observer_id, entry_id)
    session.commit()
    return entry


# ---------------------------------------------------------------------------
# Routes: Predictions
# ---------------------------------------------------------------------------


@app.post("/api/pull-requests/{pull_request_id}/predict", response_model=PredictionOut,
          tags=["Predictions"], summary="Place or edit a stake on a pending pull request")
async def submit_prediction(pull_request_id: int, body: PredictionSubmit,
                            observer_id: int = Depends(current_observer),
                            session: Session = Depends(db_session),
                            service: ObserverService = Depends(observer_service)):
    prediction = service.submit_prediction(
        session, observer_id, pull_request_id, body.predicted_outcome, body.stake_points,
    )
    session.commit()
    return prediction


@app.get("/api/pull-requests/{pull_request_id}/predictions", response_model=PredictionSummaryOut,
         tags=["Predictions"], summary="Consensus, market pools and the caller's own prediction")
async def get_prediction_summary(pull_request_id: int, observer_id: int = Depends(current_observer),
                                 session: Session = Depends(db_session),
                                 service: ObserverService = Depends(observer_service)):
    return service.get_prediction_summary(session, observer_id, pull_request_id)


@app.post("/api/pull-requests/{pull_request_id}/settle", response_model=SettlementOut,
          tags=["Predictions"], summary="Resolve open predictions on a merged or rejected pull request")
async def settle_predictions(pull_request_id: int, session: Session = Depends(db_session),
                             service: ObserverService = Depends(observer_service)):
    settled = service.settle_pull_request_predictions(session, pull_request_id)
    session.commit()
    outcome = DECIDED_STATUS_OUTCOMES[session.get(PullRequest, pull_request_id).status]
    return SettlementOut(pull_request_id=pull_request_id, resolved_outcome=outcome.value, settled=settled)


@app.get("/api/observers/me/market-profile", response_model=PredictionMarketProfileOut,
         tags=["Predictions"], summary="Trust tier, stake ceiling and today's budget usage")
async def get_market_profile(observer_id: int = Depends(current_observer), session: Session = Depends(db_session),
                             service: ObserverService = Depends(observer_service)):
    return service.get_prediction_market_profile(session, observer_id)


def main():
    import uvicorn
    uvicorn.run("arcwatch.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
