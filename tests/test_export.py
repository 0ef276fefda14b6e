"""Tests for CSV and JSON export."""
import json
import numpy as np
import pytest

from engagement_ml.export import (
    EXPORT_COLUMNS,
    NO_DATA,
    export_to_csv,
    export_to_json,
    parse_csv_export,
    parse_json_export,
)
from engagement_ml.insights import ProbabilityThresholds
from engagement_ml.models import COUNT_COLUMNS, TimeWindow, UserFeatureVector


@pytest.fixture
def results():
    vectors = [
        UserFeatureVector(user_id="007", user_name="Gus, Jr.", views=3, rsvps=1, engagement_frequency=4,
                          interaction_diversity=2, rsvp_rate=25.0, engagement_score=3.0),
        UserFeatureVector(user_id="u2", user_name="Hana", likes=2, engagement_frequency=2,
                          interaction_diversity=1, engagement_score=10.0),
    ]
    return [
        vectors[0].with_results(2, 0.8123456789012345),
        vectors[1].with_results(0, 0.1),
    ]


@pytest.fixture
def thresholds():
    return ProbabilityThresholds(high=0.7, medium=0.4, strategy="fixed")


def test_empty_exports_return_marker():
    assert export_to_csv([]) == NO_DATA
    assert export_to_json([]) == NO_DATA
    assert parse_csv_export(NO_DATA).empty
    assert list(parse_json_export(NO_DATA).columns) == EXPORT_COLUMNS


def test_csv_header_order(results, thresholds):
    text = export_to_csv(results, {0: "low", 2: "high"}, thresholds)
    assert text.splitlines()[0] == ",".join(EXPORT_COLUMNS)


def test_csv_round_trip(results, thresholds):
    df = parse_csv_export(export_to_csv(results, {0: "low", 2: "high"}, thresholds))
    assert df["user_id"].tolist() == ["007", "u2"]
    assert df["user_name"].tolist() == ["Gus, Jr.", "Hana"]
    for v, (_, row) in zip(results, df.iterrows()):
        for col in COUNT_COLUMNS:
            assert row[col] == getattr(v, col)
        assert row["cluster"] == v.cluster
        assert row["predicted_probability"] == pytest.approx(v.predicted_probability, abs=1e-6)
    assert df["segment"].tolist() == ["high", "low"]
    assert df["probability_tier"].tolist() == ["high", "low"]
    assert df["has_rsvp"].tolist() == [1, 0]


def test_csv_without_results():
    vectors = [UserFeatureVector(user_id="a", user_name="A")]
    df = parse_csv_export(export_to_csv(vectors))
    assert df["cluster"].isna().all()
    assert df["predicted_probability"].isna().all()


def test_parse_rejects_foreign_csv():
    with pytest.raises(ValueError):
        parse_csv_export("user_id,score\na,1\n")


def test_json_document(results, thresholds):
    window = TimeWindow(selector="all-time")
    text = export_to_json(results, {0: "low", 2: "high"}, thresholds, org_id="org-1", window=window)
    document = json.loads(text)
    assert document["organization_id"] == "org-1"
    assert document["time_window"] == {"selector": "all-time", "start": None, "end": None}
    assert document["thresholds"] == {"high": 0.7, "medium": 0.4, "strategy": "fixed"}
    assert document["columns"] == EXPORT_COLUMNS
    assert list(document["users"][0]) == EXPORT_COLUMNS

    df = parse_json_export(text)
    assert df["predicted_probability"].tolist() == pytest.approx([0.8123456789012345, 0.1])
    assert df["cluster"].tolist() == [2, 0]


def test_csv_keeps_na_like_identifiers():
    vectors = [
        UserFeatureVector(user_id="NA", user_name="None"),
        UserFeatureVector(user_id="null", user_name="", views=1, engagement_frequency=1, interaction_diversity=1),
    ]
    df = parse_csv_export(export_to_csv(vectors))
    assert df["user_id"].tolist() == ["NA", "null"]
    assert df["user_name"].tolist() == ["None", ""]
    assert df["cluster"].isna().all()
    assert df["predicted_probability"].isna().all()


def test_json_export_accepts_numpy_counts():
    vector = UserFeatureVector(
        user_id="u1",
        user_name="Ada",
        views=np.int64(3),
        rsvps=np.int64(1),
        engagement_frequency=np.int64(4),
        interaction_diversity=np.int64(2),
        rsvp_rate=np.float64(25.0),
        engagement_score=np.float64(3.0),
    ).with_results(np.int64(1), np.float64(0.6))
    assert type(vector.views) is int
    assert type(vector.rsvp_rate) is float
    assert type(vector.cluster) is int
    document = json.loads(export_to_json([vector], {1: "high"}))
    assert document["users"][0]["views"] == 3
    assert document["users"][0]["segment"] == "high"
