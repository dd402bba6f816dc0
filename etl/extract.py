"""
Table Extraction

Reads the profile tables from PostgreSQL into pandas DataFrames.
Used by the pattern validator and by the dry-run cleaner.
"""

import logging
from typing import Dict, Iterable, Optional

import pandas as pd
from psycopg2 import sql

from db.connection import DatabaseConnection
from db.schema import TABLES

logger = logging.getLogger(__name__)


def fetch_frame(query, params: Optional[tuple] = None) -> pd.DataFrame:
    """
    Run a SELECT and return the rows as a DataFrame.

    Args:
        query: SQL string or psycopg2.sql.Composed
        params: Query parameters (optional)

    Returns:
        DataFrame with the query's column names
    """
    columns, rows = DatabaseConnection.fetch_with_columns(query, params)
    return pd.DataFrame(rows, columns=columns)


def fetch_table(table: str) -> pd.DataFrame:
    query = sql.SQL("SELECT * FROM {table} ORDER BY id;").format(table=sql.Identifier(table))
    frame = fetch_frame(query)
    logger.debug(f"Fetched {len(frame)} rows from {table}")
    return frame


def fetch_tables(tables: Iterable[str] = TABLES) -> Dict[str, pd.DataFrame]:
    """
    Extract every profile table.

    Returns:
        Mapping of table name to DataFrame
    """
    frames = {table: fetch_table(table) for table in tables}
    logger.info(
        "Extracted " + ", ".join(f"{table}={len(frame)}" for table, frame in frames.items())
    )
    return frames
