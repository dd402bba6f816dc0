"""
Data Quality Analysis

A fixed battery of read-only diagnostic queries. Each query is independent
and reports one quality dimension: null rates, duplicates, malformed formats
and orphaned references. The same battery runs before and after cleaning.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import pandas as pd
import psycopg2

from db.connection import DatabaseConnection
from etl.validator import EMAIL_PATTERN_SQL, PHONE_PATTERN_SQL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisQuery:
    """A named read-only query."""
    name: str
    sql: str


@dataclass
class QueryResult:
    """Outcome of one analysis query."""
    name: str
    frame: pd.DataFrame
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def row_count(self) -> int:
        return len(self.frame)


ANALYSIS_QUERIES: List[AnalysisQuery] = [
    AnalysisQuery(
        name="Total Records Count",
        sql="""
            SELECT 'users' AS table_name, COUNT(*) AS total_rows FROM users
            UNION ALL SELECT 'auth', COUNT(*) FROM auth
            UNION ALL SELECT 'user_roles', COUNT(*) FROM user_roles
            UNION ALL SELECT 'user_divisions', COUNT(*) FROM user_divisions
            UNION ALL SELECT 'user_logs', COUNT(*) FROM user_logs;
        """,
    ),
    AnalysisQuery(
        name="NULL Values Analysis",
        sql="""
            SELECT
                COUNT(*) AS total_rows,
                COUNT(CASE WHEN u.auth_id IS NULL THEN 1 END) AS null_auth_id,
                COUNT(CASE WHEN u.full_name IS NULL OR TRIM(u.full_name) = '' THEN 1 END) AS null_full_name,
                COUNT(CASE WHEN u.username IS NULL OR TRIM(u.username) = '' THEN 1 END) AS null_username,
                COUNT(CASE WHEN u.birth_date IS NULL THEN 1 END) AS null_birth_date,
                COUNT(CASE WHEN u.phone_number IS NULL OR TRIM(u.phone_number) = '' THEN 1 END) AS null_phone,
                COUNT(CASE WHEN a.email IS NULL OR TRIM(a.email) = '' THEN 1 END) AS null_email
            FROM users u
            LEFT JOIN auth a ON u.auth_id = a.id;
        """,
    ),
    AnalysisQuery(
        name="Duplicate Usernames",
        sql="""
            SELECT username, COUNT(*) AS duplicate_count
            FROM users
            WHERE username IS NOT NULL
            GROUP BY username
            HAVING COUNT(*) > 1
            ORDER BY duplicate_count DESC, username;
        """,
    ),
    AnalysisQuery(
        name="Duplicate Emails",
        sql="""
            SELECT email, COUNT(*) AS duplicate_count
            FROM auth
            WHERE email IS NOT NULL
            GROUP BY email
            HAVING COUNT(*) > 1
            ORDER BY duplicate_count DESC, email;
        """,
    ),
    AnalysisQuery(
        name="Invalid Email Formats",
        sql=f"""
            SELECT a.id AS auth_id, a.email
            FROM auth a
            WHERE a.email IS NULL
               OR a.email !~ '{EMAIL_PATTERN_SQL}'
            ORDER BY a.id;
        """,
    ),
    AnalysisQuery(
        name="Invalid Phone Numbers",
        sql=f"""
            SELECT id, username, phone_number
            FROM users
            WHERE phone_number IS NOT NULL
              AND phone_number !~ '{PHONE_PATTERN_SQL}'
            ORDER BY id;
        """,
    ),
    AnalysisQuery(
        name="Invalid Birth Dates",
        sql="""
            SELECT id, username, birth_date
            FROM users
            WHERE birth_date IS NOT NULL
              AND (birth_date > CURRENT_DATE OR birth_date < DATE '1900-01-01')
            ORDER BY id;
        """,
    ),
    AnalysisQuery(
        name="Orphaned Users",
        sql="""
            SELECT u.id, u.username, u.auth_id
            FROM users u
            LEFT JOIN auth a ON u.auth_id = a.id
            WHERE a.id IS NULL
            ORDER BY u.id;
        """,
    ),
    AnalysisQuery(
        name="Orphaned Related Records",
        sql="""
            SELECT 'user_roles' AS table_name, COUNT(*) AS orphaned_rows
            FROM user_roles r
            WHERE NOT EXISTS (SELECT 1 FROM users u WHERE u.id = r.user_id)
            UNION ALL
            SELECT 'user_divisions', COUNT(*)
            FROM user_divisions d
            WHERE NOT EXISTS (SELECT 1 FROM users u WHERE u.id = d.user_id)
            UNION ALL
            SELECT 'user_logs', COUNT(*)
            FROM user_logs l
            WHERE NOT EXISTS (SELECT 1 FROM users u WHERE u.id = l.user_id);
        """,
    ),
]


def run_query(query: AnalysisQuery) -> QueryResult:
    """
    Run one read-only query.

    A statement error is logged and captured in the result instead of raised,
    so the rest of a battery still runs. Connection loss propagates.
    """
    try:
        columns, rows = DatabaseConnection.fetch_with_columns(query.sql)
        frame = pd.DataFrame(rows, columns=columns)
        return QueryResult(name=query.name, frame=frame)
    except psycopg2.OperationalError:
        raise
    except psycopg2.Error as e:
        message = str(e).strip()
        logger.error(f"Error in {query.name}: {message}")
        logger.error(f"Statement: {query.sql.strip()[:100]}...")
        return QueryResult(name=query.name, frame=pd.DataFrame(), error=message)


def run_queries(queries: Sequence[AnalysisQuery]) -> List[QueryResult]:
    """Run each query independently, in order."""
    return [run_query(query) for query in queries]


def run_analysis() -> List[QueryResult]:
    """Run the full analysis battery and log every row set."""
    logger.info("Running data quality analysis...")
    results = run_queries(ANALYSIS_QUERIES)
    log_results(results)
    return results


def format_frame(frame: pd.DataFrame) -> str:
    if frame.empty:
        return "(no rows)"
    return frame.to_string(index=False)


def log_results(results: Sequence[QueryResult]) -> None:
    """Log each successful result as a table."""
    for result in results:
        if not result.ok:
            continue
        logger.info(f"{result.name} ({result.row_count} rows):\n{format_frame(result.frame)}")
