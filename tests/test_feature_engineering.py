"""Tests for per-member feature extraction."""
from datetime import datetime, timedelta, timezone
import numpy as np
import pandas as pd
import pytest

from conftest import ACTIVITY, BASE_TIME, ORG_ID, SILENT_MEMBERS, make_interactions, make_members
from engagement_ml.feature_engineering import (
    build_feature_matrix,
    build_user_features,
    events_to_frame,
    features_to_frame,
    rsvp_labels,
)
from engagement_ml.models import FEATURE_COLUMNS, InteractionEvent, TimeWindow, UserFeatureVector


def _by_id(vectors):
    return {v.user_id: v for v in vectors}


class TestBuildUserFeatures:
    def test_one_vector_per_member_including_silent(self, scenario_vectors):
        assert [v.user_id for v in scenario_vectors] == list(ACTIVITY)
        vectors = _by_id(scenario_vectors)
        for user_id in SILENT_MEMBERS:
            v = vectors[user_id]
            assert v.feature_values() == tuple(0.0 for _ in FEATURE_COLUMNS)
            assert v.rsvp_rate == 0.0

    def test_counts_and_derived_features(self, scenario_vectors):
        v = _by_id(scenario_vectors)["u07"]
        assert (v.views, v.likes, v.polls, v.rsvps) == (20, 10, 4, 2)
        assert (v.registers, v.feedbacks, v.evaluations) == (2, 1, 1)
        assert v.engagement_frequency == 40
        assert v.interaction_diversity == 7
        assert v.rsvp_rate == pytest.approx(50.0)

    def test_engagement_score_weights(self, scenario_vectors):
        v = _by_id(scenario_vectors)["u06"]
        # 7 views, 2 likes, 1 poll, 1 feedback
        assert v.engagement_score == pytest.approx(7 * 1 + 2 * 5 + 1 * 10 + 1 * 20)

    def test_rsvp_rate_zero_without_events(self, scenario_members, scenario_interactions):
        vectors = build_user_features(scenario_members, scenario_interactions, total_events=0)
        assert all(v.rsvp_rate == 0.0 for v in vectors)
        assert _by_id(vectors)["u07"].rsvps == 2

    def test_rsvp_rate_capped_at_100(self):
        members = make_members(["a", "b"])
        interactions = make_interactions({"a": {"rsvp": 3}})
        vectors = build_user_features(members, interactions, total_events=1)
        assert _by_id(vectors)["a"].rsvp_rate == 100.0

    def test_unknown_kinds_and_non_members_are_ignored(self):
        members = make_members(["a", "b"])
        interactions = make_interactions({"a": {"view": 2, "share": 3}, "outsider": {"like": 4}})
        vectors = _by_id(build_user_features(members, interactions, total_events=2))
        assert set(vectors) == {"a", "b"}
        assert vectors["a"].engagement_frequency == 2
        assert vectors["b"].engagement_frequency == 0

    def test_window_and_org_filters(self):
        members = make_members(["a"])
        inside = make_interactions({"a": {"view": 2}}, start=BASE_TIME)
        outside = make_interactions({"a": {"like": 5}}, start=datetime(2025, 1, 1, tzinfo=timezone.utc))
        other_org = make_interactions({"a": {"poll": 1}}, org_id="org-2", start=BASE_TIME)
        interactions = pd.concat([inside, outside, other_org], ignore_index=True)

        window = TimeWindow(start=datetime(2026, 1, 1, tzinfo=timezone.utc), end=datetime(2027, 1, 1, tzinfo=timezone.utc))
        v = build_user_features(members, interactions, total_events=1, window=window, org_id=ORG_ID)[0]
        assert (v.views, v.likes, v.polls) == (2, 0, 0)

    def test_empty_interaction_log(self):
        members = make_members(["a", "b", "c"])
        vectors = build_user_features(members, make_interactions({}), total_events=3)
        assert len(vectors) == 3
        assert all(v.engagement_frequency == 0 for v in vectors)

    def test_missing_member_columns(self):
        with pytest.raises(ValueError, match="user_name"):
            build_user_features(pd.DataFrame({"user_id": ["a"]}), make_interactions({}), total_events=0)

    def test_negative_event_count_rejected(self, scenario_members, scenario_interactions):
        with pytest.raises(ValueError):
            build_user_features(scenario_members, scenario_interactions, total_events=-1)


class TestMatrixAndLabels:
    def test_feature_matrix_shape_and_order(self, scenario_vectors):
        X = build_feature_matrix(scenario_vectors)
        assert X.shape == (12, len(FEATURE_COLUMNS))
        u07 = [v.user_id for v in scenario_vectors].index("u07")
        assert X[u07, FEATURE_COLUMNS.index("rsvp_rate")] == pytest.approx(50.0)
        assert X[u07, FEATURE_COLUMNS.index("views")] == 20

    def test_empty_matrix(self):
        assert build_feature_matrix([]).shape == (0, len(FEATURE_COLUMNS))

    def test_rsvp_labels(self, scenario_vectors):
        y = rsvp_labels(scenario_vectors)
        assert y.sum() == 1
        assert y[[v.user_id for v in scenario_vectors].index("u07")] == 1.0

    def test_features_to_frame(self, scenario_vectors):
        df = features_to_frame(scenario_vectors)
        assert len(df) == 12
        assert df["cluster"].isna().all()


def test_events_to_frame_round_trips_into_features():
    events = [
        InteractionEvent("rsvp", "a", ORG_ID, "p1", BASE_TIME),
        InteractionEvent("view", "a", ORG_ID, "p1", BASE_TIME),
        InteractionEvent("view", "b", "org-2", "p9", BASE_TIME),
    ]
    df = events_to_frame(events)
    assert list(df.columns) == ["user_id", "action", "org_id", "post_id", "created_at"]
    vectors = _by_id(build_user_features(make_members(["a", "b"]), df, total_events=2, org_id=ORG_ID))
    assert vectors["a"].rsvp_rate == pytest.approx(50.0)
    assert vectors["b"].views == 0


def test_events_to_frame_skips_events_outside_window():
    window = TimeWindow(start=BASE_TIME, end=BASE_TIME + timedelta(days=1), selector="custom")
    events = [
        InteractionEvent("view", "a", ORG_ID, "p1", BASE_TIME - timedelta(seconds=1)),
        InteractionEvent("view", "a", ORG_ID, "p1", BASE_TIME),
        InteractionEvent("like", "a", ORG_ID, "p1", BASE_TIME + timedelta(hours=23)),
        InteractionEvent("poll", "a", ORG_ID, "p1", BASE_TIME + timedelta(days=1)),
    ]
    df = events_to_frame(events, window)
    assert df["action"].tolist() == ["view", "like"]
    assert len(events_to_frame(events)) == 4


def test_feature_vector_rejects_invalid_values():
    with pytest.raises(ValueError):
        UserFeatureVector(user_id="a", user_name="A", rsvp_rate=120.0)
    with pytest.raises(ValueError):
        UserFeatureVector(user_id="a", user_name="A", views=-1)
    with pytest.raises(ValueError):
        UserFeatureVector(user_id="a", user_name="A", predicted_probability=float("nan"))
    assert np.isfinite(UserFeatureVector(user_id="a", user_name="A").feature_values()).all()
