from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from arcwatch.config import Settings
from arcwatch.models import Base, Draft, FixRequest, Observer, PullRequest, Studio
from arcwatch.services import ObserverService

NOW = datetime(2026, 3, 10, 12, 0, 0)


class FrozenClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, current: datetime = NOW) -> None:
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(database_url="sqlite:///:memory:")


@pytest.fixture()
def service(settings, clock) -> ObserverService:
    return ObserverService(settings, clock=clock)


@pytest.fixture()
def studio(session: Session) -> Studio:
    s = Studio(name="North Light")
    session.add(s)
    session.flush()
    return s


@pytest.fixture()
def draft(session: Session, studio: Studio) -> Draft:
    d = Draft(studio_id=studio.id, title="Harbour at dusk", status="draft",
              created_at=NOW - timedelta(days=3), updated_at=NOW - timedelta(days=3))
    session.add(d)
    session.flush()
    return d


@pytest.fixture()
def observer(session: Session) -> Observer:
    o = Observer(handle="ada")
    session.add(o)
    session.flush()
    return o


@pytest.fixture()
def other_observer(session: Session) -> Observer:
    o = Observer(handle="grace")
    session.add(o)
    session.flush()
    return o


@pytest.fixture()
def make_fix(session: Session, draft: Draft):
    def _make(created_at: datetime = NOW - timedelta(hours=2), target: Draft | None = None) -> FixRequest:
        fix = FixRequest(draft_id=(target or draft).id, description="tighten the horizon", created_at=created_at)
        session.add(fix)
        session.flush()
        return fix
    return _make


@pytest.fixture()
def make_pr(session: Session, draft: Draft):
    def _make(
        *, target: Draft | None = None, status: str = "pending", severity: str = "minor",
        created_at: datetime = NOW - timedelta(hours=1), decided_at: datetime | None = None,
        addressed: str = "[]",
    ) -> PullRequest:
        pr = PullRequest(
            draft_id=(target or draft).id, status=status, severity=severity, created_at=created_at,
            decided_at=decided_at, addressed_fix_requests_json=addressed,
        )
        session.add(pr)
        session.flush()
        return pr
    return _make


@pytest.fixture()
def pending_pr(make_pr) -> PullRequest:
    return make_pr()
