"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database shared through StaticPool.
"""
from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from arcwatch.config import get_settings
from arcwatch.models import Base, Draft, Observer, PullRequest, Studio
from arcwatch.services import ObserverService


@pytest.fixture()
def test_db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, settings, clock, monkeypatch):
    """FastAPI TestClient using the in-memory database and a frozen clock."""
    engine, TestSession = test_db
    monkeypatch.setenv("ARCWATCH_DATABASE_URL", "sqlite:///:memory:")
    get_settings.cache_clear()
    from arcwatch.app import app, db_session, observer_service

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[observer_service] = lambda: ObserverService(settings, clock=clock)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture()
def seeded(client, clock):
    """Client with a studio, a draft, two observers and one pending pull request."""
    c, TestSession = client
    session = TestSession()
    studio = Studio(name="North Light")
    session.add(studio)
    session.flush()
    draft = Draft(studio_id=studio.id, title="Harbour", status="draft",
                  created_at=clock() - timedelta(days=1), updated_at=clock() - timedelta(days=1))
    ada, grace = Observer(handle="ada"), Observer(handle="grace")
    session.add_all([draft, ada, grace])
    session.flush()
    pr = PullRequest(draft_id=draft.id, status="pending", severity="major",
                     created_at=clock() - timedelta(hours=1))
    session.add(pr)
    session.commit()
    ids = {"studio": studio.id, "draft": draft.id, "ada": ada.id, "grace": grace.id, "pr": pr.id}
    session.close()
    return c, TestSession, ids


def _as(observer_id: int) -> dict[str, str]:
    return {"X-Observer-Id": str(observer_id)}


class TestDraftEndpoints:
    def test_get_arc(self, seeded):
        c, _, ids = seeded
        resp = c.get(f"/api/drafts/{ids['draft']}/arc")
        assert resp.status_code == 200
        data = resp.json()
        assert data["summary"]["state"] == "ready_for_review"
        assert data["summary"]["latest_milestone"] == "PR pending review"
        assert data["recap_24h"]["pr_submitted"] == 1

    def test_get_arc_404(self, client):
        c, _ = client
        resp = c.get("/api/drafts/99999/arc")
        assert resp.status_code == 404
        assert resp.json() == {"error": "DRAFT_NOT_FOUND", "message": "Draft not found."}

    def test_event_fans_out_to_digest(self, seeded):
        c, _, ids = seeded
        assert c.post(f"/api/observers/watchlist/{ids['draft']}", headers=_as(ids["ada"])).status_code == 201
        resp = c.post(f"/api/drafts/{ids['draft']}/events", json={"event_type": "pull_request"})
        assert resp.status_code == 200

        digest = c.get("/api/observers/digest", headers=_as(ids["ada"])).json()
        assert len(digest) == 1
        assert digest[0]["title"] == "New PR on watched draft"
        assert digest[0]["summary"] == "PR pending review. Open fixes: 0, pending PRs: 1."

        seen = c.post(f"/api/observers/digest/{digest[0]['id']}/seen", headers=_as(ids["ada"]))
        assert seen.status_code == 200
        assert seen.json()["is_seen"] is True
        unseen = c.get("/api/observers/digest", params={"unseen_only": "true"}, headers=_as(ids["ada"]))
        assert unseen.json() == []

    def test_event_without_body_defaults_to_manual(self, seeded):
        c, _, ids = seeded
        c.post(f"/api/observers/studios/{ids['studio']}/follow", headers=_as(ids["grace"]))
        assert c.post(f"/api/drafts/{ids['draft']}/events").status_code == 200
        [entry] = c.get("/api/observers/digest", headers=_as(ids["grace"])).json()
        assert entry["title"] == "Draft activity update"
        assert entry["from_following_studio"] is True


class TestObserverEndpoints:
    def test_missing_observer_header(self, client):
        c, _ = client
        assert c.get("/api/observers/watchlist").status_code == 401

    def test_watchlist_round_trip(self, seeded):
        c, _, ids = seeded
        c.post(f"/api/observers/watchlist/{ids['draft']}", headers=_as(ids["ada"]))
        items = c.get("/api/observers/watchlist", headers=_as(ids["ada"])).json()
        assert [i["draft_id"] for i in items] == [ids["draft"]]
        resp = c.delete(f"/api/observers/watchlist/{ids['draft']}", headers=_as(ids["ada"]))
        assert resp.json() == {"removed": True}

    def test_engagements(self, seeded):
        c, _, ids = seeded
        assert c.post(f"/api/observers/engagements/{ids['draft']}/save", headers=_as(ids["ada"])).json() == {"saved": True}
        assert c.post(f"/api/observers/engagements/{ids['draft']}/rate", headers=_as(ids["ada"])).json() == {"rated": True}
        c.delete(f"/api/observers/engagements/{ids['draft']}/save", headers=_as(ids["ada"]))
        [row] = c.get("/api/observers/engagements", headers=_as(ids["ada"])).json()
        assert (row["is_saved"], row["is_rated"]) == (False, True)

    def test_digest_preferences(self, seeded):
        c, _, ids = seeded
        resp = c.get("/api/observers/preferences/digest", headers=_as(ids["ada"]))
        assert resp.json()["digest_unseen_only"] is False
        resp = c.put("/api/observers/preferences/digest", json={"digest_following_only": True},
                     headers=_as(ids["ada"]))
        assert resp.status_code == 200
        assert (resp.json()["digest_unseen_only"], resp.json()["digest_following_only"]) == (False, True)

    def test_unknown_observer_preferences(self, client):
        c, _ = client
        resp = c.get("/api/observers/preferences/digest", headers=_as(777))
        assert resp.status_code == 404
        assert resp.json()["error"] == "OBSERVER_NOT_FOUND"


class TestPredictionEndpoints:
    def test_predict_and_summary(self, seeded):
        c, _, ids = seeded
        resp = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                      json={"predicted_outcome": "Merge", "stake_points": 60}, headers=_as(ids["ada"]))
        assert resp.status_code == 200
        assert resp.json()["predicted_outcome"] == "merge"
        c.post(f"/api/pull-requests/{ids['pr']}/predict",
               json={"predicted_outcome": "reject", "stake_points": 40}, headers=_as(ids["grace"]))

        summary = c.get(f"/api/pull-requests/{ids['pr']}/predictions", headers=_as(ids["ada"])).json()
        assert summary["consensus"] == {"merge": 1, "reject": 1, "total": 2}
        assert summary["market"]["merge_payout_multiplier"] == 1.67
        assert summary["observer_prediction"]["stake_points"] == 60

    def test_stake_out_of_bounds(self, seeded):
        c, _, ids = seeded
        resp = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                      json={"predicted_outcome": "merge", "stake_points": 4}, headers=_as(ids["ada"]))
        assert resp.status_code == 400
        assert resp.json()["error"] == "PREDICTION_STAKE_INVALID"

    @pytest.mark.parametrize("stake", [10.5, "abc", "10", True])
    def test_malformed_stake_is_a_service_error(self, seeded, stake):
        c, _, ids = seeded
        resp = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                      json={"predicted_outcome": "merge", "stake_points": stake}, headers=_as(ids["ada"]))
        assert resp.status_code == 400
        assert resp.json()["error"] == "PREDICTION_STAKE_INVALID"

    def test_stake_above_tier_ceiling(self, seeded):
        c, _, ids = seeded
        resp = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                      json={"predicted_outcome": "merge", "stake_points": 300}, headers=_as(ids["ada"]))
        assert resp.status_code == 400
        assert resp.json()["error"] == "PREDICTION_STAKE_LIMIT_EXCEEDED"

    def test_unknown_outcome_rejected_by_schema(self, seeded):
        c, _, ids = seeded
        resp = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                      json={"predicted_outcome": "maybe"}, headers=_as(ids["ada"]))
        assert resp.status_code == 422

    def test_settle_after_merge(self, seeded, clock):
        c, TestSession, ids = seeded
        c.post(f"/api/pull-requests/{ids['pr']}/predict",
               json={"predicted_outcome": "merge", "stake_points": 20}, headers=_as(ids["ada"]))

        resp = c.post(f"/api/pull-requests/{ids['pr']}/settle")
        assert resp.status_code == 409
        assert resp.json()["error"] == "PR_NOT_DECIDED"

        session = TestSession()
        pr = session.get(PullRequest, ids["pr"])
        pr.status = "merged"
        pr.decided_at = clock()
        session.commit()
        session.close()

        resp = c.post(f"/api/pull-requests/{ids['pr']}/settle")
        assert resp.status_code == 200
        assert resp.json() == {"pull_request_id": ids["pr"], "resolved_outcome": "merge", "settled": 1}

        again = c.post(f"/api/pull-requests/{ids['pr']}/predict",
                       json={"predicted_outcome": "reject", "stake_points": 20}, headers=_as(ids["ada"]))
        assert again.status_code == 409
        assert again.json()["error"] == "PR_NOT_PENDING"

    def test_market_profile(self, seeded):
        c, _, ids = seeded
        profile = c.get("/api/observers/me/market-profile", headers=_as(ids["ada"])).json()
        assert profile["trust_tier"] == "entry"
        assert profile["max_stake_points"] == 120
        assert profile["daily_submission_cap"] == 30
