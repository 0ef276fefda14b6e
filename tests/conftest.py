"""
Shared pytest fixtures for the engagement analytics tests.

Provides a small synthetic organization (roster, interaction log, event
posts) and an in-memory stand-in for the Supabase query builder so that
nothing touches the network.
"""
from datetime import datetime, timedelta, timezone
import numpy as np
import pandas as pd
import pytest

from engagement_ml.feature_engineering import build_user_features
from engagement_ml.orchestrator import EngagementModel

# ── reproducibility ──────────────────────────────────────────────
SEED = 42
np.random.seed(SEED)

ORG_ID = "org-1"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

# Per-member activity for the 12-member scenario: three light, three
# moderate, three heavy and three silent members. Only u07 RSVPs.
ACTIVITY = {
    "u01": {"view": 1},
    "u02": {"view": 2},
    "u03": {"view": 1, "like": 1},
    "u04": {"view": 6, "like": 3, "poll": 1},
    "u05": {"view": 5, "like": 4, "poll": 2},
    "u06": {"view": 7, "like": 2, "poll": 1, "feedback": 1},
    "u07": {"view": 20, "like": 10, "poll": 4, "rsvp": 2, "register": 2, "feedback": 1, "evaluate": 1},
    "u08": {"view": 18, "like": 12, "poll": 5, "register": 2, "feedback": 2},
    "u09": {"view": 22, "like": 9, "poll": 3, "register": 1, "evaluate": 1},
    "u10": {},
    "u11": {},
    "u12": {},
}
SILENT_MEMBERS = {"u10", "u11", "u12"}

FIRST_NAMES = ["Ada", "Ben", "Cleo", "Dev", "Eli", "Fay", "Gus", "Hana", "Ivo", "Jun", "Kai", "Lea"]


# ── helpers ──────────────────────────────────────────────────────

def make_members(user_ids) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "user_id": list(user_ids),
            "user_name": [f"{FIRST_NAMES[i % len(FIRST_NAMES)]} Member" for i in range(len(user_ids))],
        }
    )


def make_interactions(activity, org_id: str = ORG_ID, start: datetime = BASE_TIME) -> pd.DataFrame:
    rows = []
    offset = 0
    for user_id, kinds in activity.items():
        for kind, count in kinds.items():
            for _ in range(count):
                rows.append(
                    {
                        "user_id": user_id,
                        "action": kind,
                        "org_id": org_id,
                        "post_id": f"p{offset % 7}",
                        "created_at": start + timedelta(hours=offset),
                    }
                )
                offset += 1
    df = pd.DataFrame(rows, columns=["user_id", "action", "org_id", "post_id", "created_at"])
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    return df


def make_events(n: int, start: datetime = BASE_TIME) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": [f"e{i}" for i in range(n)],
            "title": [f"Event {i}" for i in range(n)],
            "created_at": [start + timedelta(days=i) for i in range(n)],
        }
    )


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Chainable stand-in for the PostgREST query builder."""

    def __init__(self, client, table_name):
        self.client = client
        self.table_name = table_name
        self.columns = None
        self.filters = []

    def select(self, columns):
        self.columns = columns
        return self

    def _filter(self, operator, column, value):
        self.filters.append((operator, column, value))
        return self

    def eq(self, column, value):
        return self._filter("eq", column, value)

    def gte(self, column, value):
        return self._filter("gte", column, value)

    def lt(self, column, value):
        return self._filter("lt", column, value)

    def lte(self, column, value):
        return self._filter("lte", column, value)

    def in_(self, column, value):
        return self._filter("in_", column, value)

    def execute(self):
        self.client.executed.append(self)
        if self.table_name in self.client.failing_tables:
            raise RuntimeError(f"connection reset while reading {self.table_name}")
        return FakeResponse(self.client.tables.get(self.table_name, []))


class FakeSupabaseClient:
    """Returns canned rows per table and records every executed query."""

    def __init__(self, tables=None, failing_tables=()):
        self.tables = tables or {}
        self.failing_tables = set(failing_tables)
        self.executed = []

    def table(self, table_name):
        return FakeQuery(self, table_name)


# ── fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def scenario_members() -> pd.DataFrame:
    return make_members(list(ACTIVITY))


@pytest.fixture
def scenario_interactions() -> pd.DataFrame:
    return make_interactions(ACTIVITY)


@pytest.fixture
def scenario_events() -> pd.DataFrame:
    return make_events(4)


@pytest.fixture
def scenario_vectors(scenario_members, scenario_interactions):
    return build_user_features(scenario_members, scenario_interactions, total_events=4)


@pytest.fixture
def model_factory():
    """EngagementModel with a fixed seed and a short epoch budget."""
    def _make(**overrides):
        params = {
            "random_state": SEED,
            "epochs": 200,
            "kmeans_restarts": 5,
            "threshold_strategy": "dynamic",
        }
        params.update(overrides)
        return EngagementModel(**params)
    return _make


@pytest.fixture
def trained_model(model_factory, scenario_members, scenario_interactions, scenario_events):
    model = model_factory()
    model.load_from_frames(scenario_members, scenario_interactions, scenario_events, org_id=ORG_ID)
    model.train_models()
    return model


@pytest.fixture
def fake_client():
    members = [
        {"user_id": "u01", "users": {"first_name": "Ada", "last_name": "Lovelace"}},
        {"user_id": "u02", "users": {"first_name": "Ben", "last_name": None}},
        {"user_id": "u03", "users": None},
    ]
    interactions = [
        {"user_id": "u01", "action": "view", "post_id": "p1",
         "created_at": "2026-03-01T12:00:00+00:00", "posts": {"org_id": ORG_ID}},
        {"user_id": "u01", "action": "rsvp", "post_id": "p2",
         "created_at": "2026-03-02T12:00:00+00:00", "posts": {"org_id": ORG_ID}},
        {"user_id": "u02", "action": "like", "post_id": "p1",
         "created_at": "2026-03-03T12:00:00+00:00", "posts": {"org_id": ORG_ID}},
    ]
    posts = [
        {"id": "p2", "title": "Spring mixer", "created_at": "2026-03-01T09:00:00+00:00"},
        {"id": "p3", "title": "Workshop", "created_at": "2026-03-05T09:00:00+00:00"},
    ]
    return FakeSupabaseClient(
        tables={"org_members": members, "reward_log": interactions, "posts": posts}
    )
