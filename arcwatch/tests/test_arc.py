"""Tests for the pure arc calculator and glow-up scoring."""
from __future__ import annotations

import math
from datetime import datetime, timedelta

import pytest

from arcwatch.arc import (
    ArcEventKind, ArcState, calculate_arc, glow_up_score, infer_milestone, infer_state, latest_event,
)

T0 = datetime(2026, 3, 10, 12, 0, 0)


class TestInferState:
    def test_release_wins_over_everything(self):
        assert infer_state("release", 3, 2) is ArcState.RELEASED

    def test_pending_pr_means_ready_for_review(self):
        assert infer_state("draft", 4, 1) is ArcState.READY_FOR_REVIEW

    def test_open_fixes_mean_in_progress(self):
        assert infer_state("draft", 2, 0) is ArcState.IN_PROGRESS

    def test_nothing_open_needs_help(self):
        assert infer_state("draft", 0, 0) is ArcState.NEEDS_HELP


class TestLatestEvent:
    def test_none_when_no_timestamps(self):
        assert latest_event([(ArcEventKind.PR_MERGED, None), (ArcEventKind.FIX_REQUEST, None)]) is None

    def test_most_recent_wins(self):
        kind = latest_event([
            (ArcEventKind.PR_MERGED, T0),
            (ArcEventKind.FIX_REQUEST, T0 + timedelta(seconds=1)),
        ])
        assert kind is ArcEventKind.FIX_REQUEST

    def test_tie_goes_to_later_pipeline_stage(self):
        kind = latest_event([
            (ArcEventKind.FIX_REQUEST, T0),
            (ArcEventKind.PR_SUBMITTED, T0),
            (ArcEventKind.PR_REJECTED, T0),
            (ArcEventKind.PR_MERGED, T0),
        ])
        assert kind is ArcEventKind.PR_MERGED

    def test_release_beats_merge_on_tie(self):
        kind = latest_event([(ArcEventKind.PR_MERGED, T0), (ArcEventKind.DRAFT_RELEASE, T0)])
        assert kind is ArcEventKind.DRAFT_RELEASE


class TestMilestone:
    @pytest.mark.parametrize("kind, expected", [
        (ArcEventKind.DRAFT_RELEASE, "Draft released"),
        (ArcEventKind.PR_MERGED, "Recent PR merged"),
        (ArcEventKind.PR_REJECTED, "Recent PR rejected"),
    ])
    def test_fixed_phrases(self, kind, expected):
        assert infer_milestone(kind, ArcState.NEEDS_HELP, 0, 0) == expected

    def test_pending_phrase_pluralises(self):
        assert infer_milestone(ArcEventKind.PR_SUBMITTED, ArcState.READY_FOR_REVIEW, 0, 1) == "PR pending review"
        assert infer_milestone(ArcEventKind.PR_SUBMITTED, ArcState.READY_FOR_REVIEW, 0, 3) == "3 PRs pending review"

    def test_fix_phrase_pluralises(self):
        assert infer_milestone(ArcEventKind.FIX_REQUEST, ArcState.IN_PROGRESS, 1, 0) == "1 open fix request"
        assert infer_milestone(ArcEventKind.FIX_REQUEST, ArcState.IN_PROGRESS, 2, 0) == "2 open fix requests"

    def test_state_fallback_without_events(self):
        assert infer_milestone(None, ArcState.NEEDS_HELP, 0, 0) == "No activity yet"
        assert infer_milestone(None, ArcState.IN_PROGRESS, 2, 0) == "2 open fix requests"
        assert infer_milestone(None, ArcState.RELEASED, 0, 0) == "Draft released"

    def test_calculate_arc_bundles_counts(self):
        calc = calculate_arc("draft", 1, 2, ArcEventKind.PR_SUBMITTED)
        assert calc.state is ArcState.READY_FOR_REVIEW
        assert calc.latest_milestone == "2 PRs pending review"
        assert (calc.fix_open_count, calc.pr_pending_count) == (1, 2)


class TestGlowUpScore:
    def test_zero_merges_scores_zero(self):
        assert glow_up_score(0, 0, 3.0, 1.0) == 0.0

    def test_negative_counts_clamp_to_zero(self):
        assert glow_up_score(-2, 0, 3.0, 1.0) == 0.0

    def test_weighted_with_log_boost(self):
        expected = (1 * 3.0 + 2 * 1.0) * (1 + math.log(4))
        assert glow_up_score(1, 2, 3.0, 1.0) == pytest.approx(expected)
