"""
Data extraction from Supabase tables.

Pulls event posts, interaction logs and the active roster for one
organization and time window, with column validation.
"""

import asyncio
import logging
from typing import Dict, List, Optional
import pandas as pd
from supabase import Client
from engagement_ml.config import Config
from engagement_ml.database import get_supabase_client, query_table_to_dataframe
from engagement_ml.models import TimeWindow

logger = logging.getLogger(__name__)


# Required columns for each extracted frame
REQUIRED_COLUMNS = {
    "events": ["id", "created_at"],
    "interactions": ["user_id", "action", "created_at"],
    "members": ["user_id", "user_name"],
}


def validate_columns(df: pd.DataFrame, table_name: str) -> None:
    """
    Validate that DataFrame contains all required columns.

    Args:
        df: DataFrame to validate
        table_name: Name of the frame (for error messages)

    Raises:
        ValueError: If required columns are missing
    """
    if table_name not in REQUIRED_COLUMNS:
        logger.warning(f"No required columns defined for {table_name}, skipping validation")
        return

    required = REQUIRED_COLUMNS[table_name]
    missing = [col for col in required if col not in df.columns]

    if missing:
        raise ValueError(
            f"Table {table_name} is missing required columns: {', '.join(missing)}. "
            f"Found columns: {', '.join(map(str, df.columns))}"
        )

    logger.info(f"Table {table_name} validation passed ({len(df)} rows)")


def _window_filters(window: TimeWindow, column: str = "created_at") -> List[tuple]:
    filters = []
    if window.start is not None:
        filters.append(("gte", column, window.start.isoformat()))
    if window.end is not None:
        filters.append(("lt", column, window.end.isoformat()))
    return filters


def extract_event_posts(client: Client, org_id: str, window: TimeWindow) -> pd.DataFrame:
    """
    Extract the organization's event posts created within the window.

    The row count is the shared RSVP-rate denominator.

    Args:
        client: Supabase client
        org_id: Organization id
        window: Resolved time window

    Returns:
        DataFrame with id, title, created_at
    """
    logger.info(f"Extracting event posts for organization {org_id}")
    df = query_table_to_dataframe(
        client,
        Config.POSTS_TABLE,
        "id, title, created_at",
        filters=[("eq", "org_id", org_id), ("eq", "post_type", "event")] + _window_filters(window),
        expected_columns=["id", "title", "created_at"],
    )
    validate_columns(df, "events")
    return df


def extract_interactions(client: Client, org_id: str, window: TimeWindow) -> pd.DataFrame:
    """
    Extract interaction log rows on the organization's posts within the window.

    Args:
        client: Supabase client
        org_id: Organization id
        window: Resolved time window

    Returns:
        DataFrame with user_id, action, post_id, created_at
    """
    logger.info(f"Extracting interaction log for organization {org_id}")
    df = query_table_to_dataframe(
        client,
        Config.INTERACTIONS_TABLE,
        "user_id, action, post_id, created_at, posts!inner(org_id)",
        filters=[("eq", "posts.org_id", org_id)] + _window_filters(window),
        expected_columns=["user_id", "action", "post_id", "created_at"],
    )
    df = df.drop(columns=["posts"], errors="ignore")
    validate_columns(df, "interactions")

    if not df.empty:
        df["created_at"] = pd.to_datetime(df["created_at"], utc=True)

    return df


def _display_name(user: Optional[dict], user_id: str) -> str:
    if not isinstance(user, dict):
        return str(user_id)
    name = " ".join(
        part.strip() for part in (user.get("first_name") or "", user.get("last_name") or "") if part.strip()
    )
    return name or str(user_id)


def extract_active_members(client: Client, org_id: str) -> pd.DataFrame:
    """
    Extract the organization's active membership roster.

    Args:
        client: Supabase client
        org_id: Organization id

    Returns:
        DataFrame with user_id, user_name (one row per member)
    """
    logger.info(f"Extracting active members for organization {org_id}")
    df = query_table_to_dataframe(
        client,
        Config.MEMBERS_TABLE,
        f"user_id, {Config.USERS_TABLE}(first_name, last_name)",
        filters=[("eq", "org_id", org_id), ("eq", "is_active", "true")],
        expected_columns=["user_id", Config.USERS_TABLE],
    )

    if Config.USERS_TABLE not in df.columns:
        df[Config.USERS_TABLE] = None

    df["user_name"] = [
        _display_name(user, user_id)
        for user, user_id in zip(df[Config.USERS_TABLE], df["user_id"])
    ]
    df = df[["user_id", "user_name"]].drop_duplicates(subset="user_id").reset_index(drop=True)

    validate_columns(df, "members")
    return df


def extract_all_data(client: Client = None, org_id: str = "", window: TimeWindow = None) -> Dict[str, pd.DataFrame]:
    """
    Extract all required data from Supabase.

    Args:
        client: Optional Supabase client (creates new one if not provided)
        org_id: Organization id
        window: Resolved time window (default: all time)

    Returns:
        Dictionary containing:
        - events: event posts in the window
        - interactions: interaction log rows in the window
        - members: active roster
    """
    if not org_id:
        raise ValueError("org_id is required")
    if window is None:
        window = TimeWindow()
    if client is None:
        client = get_supabase_client()

    data = {
        "events": extract_event_posts(client, org_id, window),
        "interactions": extract_interactions(client, org_id, window),
        "members": extract_active_members(client, org_id),
    }

    logger.info("All data extraction completed successfully")
    return data


async def fetch_engagement_data(
    org_id: str,
    window: TimeWindow,
    client: Client = None
) -> Dict[str, pd.DataFrame]:
    """
    Awaitable wrapper around extract_all_data.

    The blocking queries run on a worker thread so the caller's event loop
    stays responsive. Cancelling the awaiting task abandons the result.
    """
    return await asyncio.to_thread(extract_all_data, client, org_id, window)
