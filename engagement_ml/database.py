"""
Database operations for Supabase.

Handles client initialization and read-only filtered table queries.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
import pandas as pd
from supabase import create_client, Client
from engagement_ml.config import Config
from engagement_ml.exceptions import DataFetchError

logger = logging.getLogger(__name__)

# (operator, column, value) triples understood by query_table_to_dataframe
Filter = Tuple[str, str, Any]

_SUPPORTED_OPERATORS = ("eq", "gte", "lt", "lte", "in_")


def get_supabase_client() -> Client:
    """
    Initialize and return a Supabase client.

    Returns:
        Client: Initialized Supabase client

    Raises:
        ValueError: If configuration is invalid
    """
    Config.validate()

    client = create_client(Config.SUPABASE_URL, Config.SUPABASE_SERVICE_ROLE_KEY)
    logger.info("Supabase client initialized successfully")
    return client


def query_table_to_dataframe(
    client: Client,
    table_name: str,
    columns: str = "*",
    filters: Optional[List[Filter]] = None,
    expected_columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Query a Supabase table and return as pandas DataFrame.

    Args:
        client: Supabase client
        table_name: Name of the table to query
        columns: Column names to select (default: "*" for all); may embed
                 related tables using PostgREST syntax
        filters: Optional (operator, column, value) filters, e.g.
                 ("eq", "org_id", org_id) or ("gte", "created_at", iso_ts)
        expected_columns: Columns of the empty DataFrame returned when the
                          query matches no rows

    Returns:
        DataFrame containing table data

    Raises:
        DataFetchError: If the query fails
    """
    try:
        query = client.table(table_name).select(columns)
        for operator, column, value in filters or []:
            if operator not in _SUPPORTED_OPERATORS:
                raise ValueError(f"Unsupported filter operator: {operator}")
            query = getattr(query, operator)(column, value)
        response = query.execute()
    except ValueError:
        raise
    except Exception as e:
        logger.error(f"Error querying table {table_name}: {e}")
        raise DataFetchError(f"Query on {table_name} failed: {e}") from e

    rows: List[Dict[str, Any]] = response.data or []
    if not rows:
        df = pd.DataFrame(columns=expected_columns or [])
    else:
        df = pd.DataFrame(rows)
    logger.info(f"Retrieved {len(df)} rows from {table_name}")
    return df
