"""
Feature engineering for the engagement models.

Projects raw interaction logs and the active roster onto one fixed-schema
feature vector per member, and builds the model matrix from those vectors.
"""

import logging
from typing import Iterable, List, Optional, Sequence
import numpy as np
import pandas as pd
from engagement_ml.models import (
    COUNT_COLUMNS,
    FEATURE_COLUMNS,
    INTERACTION_KINDS,
    KIND_TO_COLUMN,
    InteractionEvent,
    TimeWindow,
    UserFeatureVector,
)

logger = logging.getLogger(__name__)

# Reporting-only weighted activity score; not a model dimension
ENGAGEMENT_SCORE_WEIGHTS = {
    "views": 1,
    "likes": 5,
    "polls": 10,
    "feedbacks": 20,
    "registers": 20,
    "evaluations": 50,
}


def events_to_frame(
    events: Iterable[InteractionEvent],
    window: Optional[TimeWindow] = None
) -> pd.DataFrame:
    """
    Convert InteractionEvent records into the interaction frame shape.

    Events outside the window, when one is given, are skipped.

    Returns:
        DataFrame with user_id, action, org_id, post_id, created_at
    """
    rows = [
        {
            "user_id": e.user_id,
            "action": e.kind,
            "org_id": e.org_id,
            "post_id": e.post_id,
            "created_at": e.timestamp,
        }
        for e in events
        if window is None or window.contains(e.timestamp)
    ]
    df = pd.DataFrame(rows, columns=["user_id", "action", "org_id", "post_id", "created_at"])
    if not df.empty:
        df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    return df


def filter_interactions(
    interactions: pd.DataFrame,
    window: Optional[TimeWindow] = None,
    org_id: Optional[str] = None
) -> pd.DataFrame:
    """
    Keep interactions inside the window (and organization, when the frame
    carries an org_id column).
    """
    df = interactions.copy()
    if df.empty:
        return df

    if org_id is not None and "org_id" in df.columns:
        df = df[df["org_id"].astype(str) == str(org_id)]

    if window is not None and not window.is_unbounded:
        created = pd.to_datetime(df["created_at"], utc=True)
        mask = pd.Series(True, index=df.index)
        if window.start is not None:
            mask &= created >= pd.Timestamp(window.start)
        if window.end is not None:
            mask &= created < pd.Timestamp(window.end)
        df = df[mask]

    return df


def count_interactions(members: pd.DataFrame, interactions: pd.DataFrame) -> pd.DataFrame:
    """
    Count interactions per member and kind.

    Members with no interactions get all-zero counts; interactions by users
    outside the roster are dropped.

    Args:
        members: DataFrame with user_id, user_name
        interactions: DataFrame with user_id, action

    Returns:
        DataFrame with user_id, user_name and one count column per kind
    """
    roster = members[["user_id", "user_name"]].copy()
    roster["user_id"] = roster["user_id"].astype(str)
    roster = roster.drop_duplicates(subset="user_id").reset_index(drop=True)
    for col in COUNT_COLUMNS:
        roster[col] = 0

    if interactions.empty:
        return roster

    df = interactions[["user_id", "action"]].copy()
    df["user_id"] = df["user_id"].astype(str)

    unknown = ~df["action"].isin(INTERACTION_KINDS)
    if unknown.any():
        logger.warning(
            f"Ignoring {int(unknown.sum())} interactions with unknown kinds: "
            f"{', '.join(sorted(df.loc[unknown, 'action'].astype(str).unique()))}"
        )
        df = df[~unknown]

    outside = ~df["user_id"].isin(roster["user_id"])
    if outside.any():
        logger.info(f"Dropped {int(outside.sum())} interactions by users outside the active roster")
        df = df[~outside]

    if df.empty:
        return roster

    counts = (
        df.groupby(["user_id", "action"]).size()
        .unstack(fill_value=0)
        .reindex(index=roster["user_id"], columns=list(INTERACTION_KINDS), fill_value=0)
        .rename(columns=KIND_TO_COLUMN)
    )

    roster[list(COUNT_COLUMNS)] = counts[list(COUNT_COLUMNS)].to_numpy(dtype=int)
    return roster


def add_derived_features(df: pd.DataFrame, total_events: int) -> pd.DataFrame:
    """
    Add engagement_frequency, interaction_diversity, rsvp_rate and
    engagement_score.

    rsvp_rate is rsvps / total_events * 100 with the denominator shared by
    every member; it is 0 when there are no events and capped at 100.
    """
    df = df.copy()
    counts = df[list(COUNT_COLUMNS)]

    df["engagement_frequency"] = counts.sum(axis=1).astype(int)
    df["interaction_diversity"] = (counts > 0).sum(axis=1).astype(int)

    if total_events > 0:
        df["rsvp_rate"] = (df["rsvps"] / total_events * 100).clip(upper=100.0)
    else:
        df["rsvp_rate"] = 0.0

    df["engagement_score"] = sum(
        df[col] * weight for col, weight in ENGAGEMENT_SCORE_WEIGHTS.items()
    ).astype(float)

    return df


def build_user_features(
    members: pd.DataFrame,
    interactions: pd.DataFrame,
    total_events: int,
    window: Optional[TimeWindow] = None,
    org_id: Optional[str] = None
) -> List[UserFeatureVector]:
    """
    Build one feature vector per active member.

    Args:
        members: Active roster (user_id, user_name)
        interactions: Interaction log (user_id, action, created_at[, org_id])
        total_events: Number of qualifying events in the window
        window: Optional window to re-apply to the interaction log
        org_id: Optional organization to re-apply to the interaction log

    Returns:
        List of UserFeatureVector in roster order
    """
    if total_events < 0:
        raise ValueError(f"total_events must be non-negative, got {total_events}")

    missing = [col for col in ("user_id", "user_name") if col not in members.columns]
    if missing:
        raise ValueError(f"Members frame is missing required columns: {', '.join(missing)}")

    logger.info(
        f"Building features for {len(members)} members from {len(interactions)} interactions "
        f"({total_events} events in window)"
    )

    scoped = filter_interactions(interactions, window=window, org_id=org_id)
    df = count_interactions(members, scoped)
    df = add_derived_features(df, total_events)

    vectors = features_from_frame(df)

    active = sum(1 for v in vectors if v.engagement_frequency > 0)
    logger.info(f"Built {len(vectors)} feature vectors ({active} with activity)")
    return vectors


def features_from_frame(df: pd.DataFrame) -> List[UserFeatureVector]:
    """Convert a feature frame into UserFeatureVector records."""
    vectors = []
    for row in df.to_dict("records"):
        vectors.append(
            UserFeatureVector(
                user_id=str(row["user_id"]),
                user_name=str(row["user_name"]),
                **{col: int(row[col]) for col in COUNT_COLUMNS},
                engagement_frequency=int(row["engagement_frequency"]),
                interaction_diversity=int(row["interaction_diversity"]),
                rsvp_rate=float(row["rsvp_rate"]),
                engagement_score=float(row.get("engagement_score", 0.0)),
            )
        )
    return vectors


def features_to_frame(vectors: Sequence[UserFeatureVector]) -> pd.DataFrame:
    """Convert feature vectors into a DataFrame, one row per member."""
    columns = list(UserFeatureVector.__dataclass_fields__.keys())
    return pd.DataFrame([v.to_dict() for v in vectors], columns=columns)


def build_feature_matrix(vectors: Sequence[UserFeatureVector]) -> np.ndarray:
    """
    Build the n x d model matrix in FEATURE_COLUMNS order.

    Both the clustering engine and the classifier consume this matrix.
    """
    X = np.array([v.feature_values() for v in vectors], dtype=float).reshape(len(vectors), len(FEATURE_COLUMNS))
    logger.info(f"Built feature matrix: {X.shape[0]} samples, {X.shape[1]} features")
    return X


def rsvp_labels(vectors: Sequence[UserFeatureVector]) -> np.ndarray:
    """
    Binary training target: 1 if the member RSVPed at least once in-window.

    This treats "ever RSVPed" as "likely to RSVP".
    """
    return np.array([1.0 if v.has_rsvp else 0.0 for v in vectors], dtype=float)
