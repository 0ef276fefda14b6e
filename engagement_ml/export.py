"""
Serialization of the feature-vector-plus-prediction table.

Column order is fixed by EXPORT_COLUMNS. Exports of an empty table return
the NO_DATA marker instead of a header-only file.
"""

import io
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence
import pandas as pd
from engagement_ml.models import COUNT_COLUMNS, TimeWindow, UserFeatureVector
from engagement_ml.insights import ProbabilityThresholds

logger = logging.getLogger(__name__)

NO_DATA = "no data"

EXPORT_COLUMNS: List[str] = (
    ["user_id", "user_name"]
    + list(COUNT_COLUMNS)
    + [
        "engagement_frequency",
        "interaction_diversity",
        "rsvp_rate",
        "engagement_score",
        "has_rsvp",
        "cluster",
        "segment",
        "predicted_probability",
        "probability_tier",
    ]
)

# Columns that are empty for untrained rows; every other cell is read verbatim
NULLABLE_EXPORT_COLUMNS = ("cluster", "segment", "predicted_probability", "probability_tier")


def _export_records(
    vectors: Sequence[UserFeatureVector],
    segment_of: Mapping[int, str],
    thresholds: Optional[ProbabilityThresholds]
) -> List[Dict[str, Any]]:
    records = []
    for v in vectors:
        row = v.to_dict()
        row["has_rsvp"] = int(v.has_rsvp)
        row["segment"] = segment_of.get(v.cluster) if v.cluster is not None else None
        if thresholds is not None and v.predicted_probability is not None:
            row["probability_tier"] = thresholds.classify(v.predicted_probability)
        else:
            row["probability_tier"] = None
        records.append({col: row.get(col) for col in EXPORT_COLUMNS})
    return records


def export_to_csv(
    vectors: Sequence[UserFeatureVector],
    segment_of: Optional[Mapping[int, str]] = None,
    thresholds: Optional[ProbabilityThresholds] = None
) -> str:
    """
    Serialize vectors to CSV text with a stable column order.

    Returns:
        CSV text, or NO_DATA when there are no rows
    """
    if not vectors:
        logger.info("Nothing to export; returning no-data marker")
        return NO_DATA

    df = pd.DataFrame(_export_records(vectors, segment_of or {}, thresholds), columns=EXPORT_COLUMNS)
    df["cluster"] = df["cluster"].astype("Int64")

    csv_text = df.to_csv(index=False)
    logger.info(f"Exported {len(df)} rows to CSV")
    return csv_text


def export_to_json(
    vectors: Sequence[UserFeatureVector],
    segment_of: Optional[Mapping[int, str]] = None,
    thresholds: Optional[ProbabilityThresholds] = None,
    org_id: Optional[str] = None,
    window: Optional[TimeWindow] = None
) -> str:
    """
    Serialize vectors to a JSON document.

    Returns:
        JSON text, or NO_DATA when there are no rows
    """
    if not vectors:
        logger.info("Nothing to export; returning no-data marker")
        return NO_DATA

    document = {
        "organization_id": org_id,
        "time_window": window.to_dict() if window is not None else None,
        "thresholds": thresholds.to_dict() if thresholds is not None else None,
        "columns": EXPORT_COLUMNS,
        "users": _export_records(vectors, segment_of or {}, thresholds),
    }

    logger.info(f"Exported {len(vectors)} rows to JSON")
    return json.dumps(document)


def parse_csv_export(text: str) -> pd.DataFrame:
    """
    Read an export produced by export_to_csv back into a DataFrame.

    The NO_DATA marker yields an empty frame with the export columns.
    """
    if text.strip() == NO_DATA:
        return pd.DataFrame(columns=EXPORT_COLUMNS)

    df = pd.read_csv(
        io.StringIO(text),
        dtype={"user_id": str, "user_name": str, "segment": str},
        keep_default_na=False,
        na_values={col: [""] for col in NULLABLE_EXPORT_COLUMNS},
    )
    missing = [col for col in EXPORT_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Export is missing columns: {', '.join(missing)}")
    return df[EXPORT_COLUMNS]


def parse_json_export(text: str) -> pd.DataFrame:
    """Read an export produced by export_to_json back into a DataFrame."""
    if text.strip() == NO_DATA:
        return pd.DataFrame(columns=EXPORT_COLUMNS)
    document = json.loads(text)
    return pd.DataFrame(document["users"], columns=EXPORT_COLUMNS)
