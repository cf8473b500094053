"""Arc state calculator: derive a draft's progress phase from aggregate counts.

Pure functions only. The service gathers the counts and the latest
qualifying event from storage and hands them here.

State rules (first match wins)
------------------------------
1. draft status is ``release``  -> ``released``
2. pending pull requests        -> ``ready_for_review``
3. open fix requests            -> ``in_progress``
4. otherwise                    -> ``needs_help``

The milestone string follows the most recent qualifying event; with no events
it falls back to phrasing driven by the state.
"""
from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

RELEASE_STATUS = "release"


class ArcState(str, Enum):
    NEEDS_HELP = "needs_help"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    RELEASED = "released"


class ArcEventKind(str, Enum):
    DRAFT_RELEASE = "draft_release"
    PR_MERGED = "pr_merged"
    PR_REJECTED = "pr_rejected"
    PR_SUBMITTED = "pr_submitted"
    FIX_REQUEST = "fix_request"

    @property
    def priority(self) -> int:
        return _EVENT_PRIORITY[self]


# Later pipeline stages win timestamp ties.
_EVENT_PRIORITY = {
    ArcEventKind.DRAFT_RELEASE: 5,
    ArcEventKind.PR_MERGED: 4,
    ArcEventKind.PR_REJECTED: 3,
    ArcEventKind.PR_SUBMITTED: 2,
    ArcEventKind.FIX_REQUEST: 1,
}

_FIXED_MILESTONES = {
    ArcEventKind.DRAFT_RELEASE: "Draft released",
    ArcEventKind.PR_MERGED: "Recent PR merged",
    ArcEventKind.PR_REJECTED: "Recent PR rejected",
}


@dataclass(frozen=True)
class ArcCalculation:
    state: ArcState
    latest_milestone: str
    fix_open_count: int
    pr_pending_count: int


def latest_event(candidates: Iterable[tuple[ArcEventKind, datetime | None]]) -> ArcEventKind | None:
    """Pick the most recent event kind; ``None`` timestamps are ignored."""
    dated = [(occurred_at, kind.priority, kind) for kind, occurred_at in candidates if occurred_at is not None]
    if not dated:
        return None
    return max(dated, key=lambda item: (item[0], item[1]))[2]


def infer_state(status: str, fix_open_count: int, pr_pending_count: int) -> ArcState:
    if status == RELEASE_STATUS:
        return ArcState.RELEASED
    if pr_pending_count > 0:
        return ArcState.READY_FOR_REVIEW
    if fix_open_count > 0:
        return ArcState.IN_PROGRESS
    return ArcState.NEEDS_HELP


def _pending_phrase(pr_pending_count: int) -> str:
    return f"{pr_pending_count} PRs pending review" if pr_pending_count > 1 else "PR pending review"


def _open_fix_phrase(fix_open_count: int) -> str:
    return f"{fix_open_count} open fix requests" if fix_open_count > 1 else "1 open fix request"


def infer_milestone(
    latest_kind: ArcEventKind | None, state: ArcState, fix_open_count: int, pr_pending_count: int,
) -> str:
    if latest_kind in _FIXED_MILESTONES:
        return _FIXED_MILESTONES[latest_kind]
    if latest_kind is ArcEventKind.PR_SUBMITTED:
        return _pending_phrase(pr_pending_count)
    if latest_kind is ArcEventKind.FIX_REQUEST:
        return _open_fix_phrase(fix_open_count)
    if state is ArcState.RELEASED:
        return "Draft released"
    if state is ArcState.READY_FOR_REVIEW:
        return _pending_phrase(pr_pending_count)
    if state is ArcState.IN_PROGRESS:
        return _open_fix_phrase(fix_open_count)
    return "No activity yet"


def calculate_arc(
    status: str,
    fix_open_count: int,
    pr_pending_count: int,
    latest_kind: ArcEventKind | None = None,
) -> ArcCalculation:
    state = infer_state(status, fix_open_count, pr_pending_count)
    return ArcCalculation(
        state=state,
        latest_milestone=infer_milestone(latest_kind, state, fix_open_count, pr_pending_count),
        fix_open_count=fix_open_count,
        pr_pending_count=pr_pending_count,
    )


def glow_up_score(major: int, minor: int, major_weight: float, minor_weight: float) -> float:
    """Weighted merge score, boosted logarithmically by the number of merges."""
    major = max(major, 0)
    minor = max(minor, 0)
    pr_count = major + minor
    if pr_count == 0:
        return 0.0
    weighted = major * major_weight + minor * minor_weight
    return weighted * (1 + math.log(pr_count + 1))
