from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Review pipeline (written by the surrounding review system)
# ---------------------------------------------------------------------------


class Observer(Base):
    __tablename__ = "observers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Studio(Base):
    __tablename__ = "studios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    drafts: Mapped[list[Draft]] = relationship("Draft", back_populates="studio")


class Draft(Base):
    __tablename__ = "drafts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    studio_id: Mapped[int] = mapped_column(Integer, ForeignKey("studios.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    status: Mapped[str] = mapped_column(String(30), default="draft")  # draft | release
    glow_up_score: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    studio: Mapped[Studio] = relationship("Studio", back_populates="drafts")


class FixRequest(Base):
    __tablename__ = "fix_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), default="pending")  # pending | merged | rejected | changes_requested
    severity: Mapped[str] = mapped_column(String(10), default="minor")  # major | minor
    addressed_fix_requests_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


# ---------------------------------------------------------------------------
# Observer read models
# ---------------------------------------------------------------------------


class DraftArcSummary(Base):
    __tablename__ = "draft_arc_summaries"

    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), primary_key=True)
    state: Mapped[str] = mapped_column(String(30), nullable=False)
    latest_milestone: Mapped[str] = mapped_column(String(255), default="No activity yet")
    fix_open_count: Mapped[int] = mapped_column(Integer, default=0)
    pr_pending_count: Mapped[int] = mapped_column(Integer, default=0)
    last_merge_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObserverDraftFollow(Base):
    __tablename__ = "observer_draft_follows"
    __table_args__ = (UniqueConstraint("observer_id", "draft_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), nullable=False)
    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObserverStudioFollow(Base):
    __tablename__ = "observer_studio_follows"
    __table_args__ = (UniqueConstraint("observer_id", "studio_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), nullable=False)
    studio_id: Mapped[int] = mapped_column(Integer, ForeignKey("studios.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObserverDraftEngagement(Base):
    __tablename__ = "observer_draft_engagements"
    __table_args__ = (
        UniqueConstraint("observer_id", "draft_id"),
        CheckConstraint("is_saved OR is_rated", name="observer_draft_engagements_non_empty"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), nullable=False)
    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), nullable=False)
    is_saved: Mapped[bool] = mapped_column(Boolean, default=False)
    is_rated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObserverDigestEntry(Base):
    __tablename__ = "observer_digest_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), nullable=False, index=True)
    draft_id: Mapped[int] = mapped_column(Integer, ForeignKey("drafts.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    latest_milestone: Mapped[str] = mapped_column(String(255), default="No activity yet")
    is_seen: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObserverPrediction(Base):
    __tablename__ = "observer_pr_predictions"
    __table_args__ = (
        UniqueConstraint("observer_id", "pull_request_id"),
        CheckConstraint("stake_points >= 5 AND stake_points <= 500", name="observer_pr_predictions_stake_points_check"),
        CheckConstraint("payout_points >= 0", name="observer_pr_predictions_payout_points_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), nullable=False, index=True)
    pull_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("pull_requests.id"), nullable=False, index=True)
    predicted_outcome: Mapped[str] = mapped_column(String(20), nullable=False)  # merge | reject
    stake_points: Mapped[int] = mapped_column(Integer, default=10)
    payout_points: Mapped[int] = mapped_column(Integer, default=0)
    resolved_outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ObserverPreferences(Base):
    __tablename__ = "observer_preferences"

    observer_id: Mapped[int] = mapped_column(Integer, ForeignKey("observers.id"), primary_key=True)
    digest_unseen_only: Mapped[bool] = mapped_column(Boolean, default=False)
    digest_following_only: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
