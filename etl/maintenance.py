"""
Index and Statistics Maintenance

Rebuilds indexes and refreshes planner statistics for every profile table,
then installs the monitoring view and validation function operators use
between runs. No logical row changes happen here.
"""

import logging
from typing import Dict, Iterable, List

import psycopg2
from psycopg2 import sql

from db.connection import DatabaseConnection
from db.schema import TABLES
from etl.validator import EMAIL_PATTERN_SQL, PHONE_PATTERN_SQL

logger = logging.getLogger(__name__)

MONITOR_VIEW = f"""
    CREATE OR REPLACE VIEW data_quality_monitor AS
    SELECT
        'users' AS table_name,
        COUNT(*) AS total_rows,
        COUNT(CASE WHEN u.auth_id IS NULL THEN 1 END) AS null_auth_id,
        COUNT(CASE WHEN u.full_name IS NULL OR TRIM(u.full_name) = '' THEN 1 END) AS null_full_name,
        COUNT(CASE WHEN u.username IS NULL OR TRIM(u.username) = '' THEN 1 END) AS null_username,
        COUNT(CASE WHEN u.phone_number IS NOT NULL
                    AND u.phone_number !~ '{PHONE_PATTERN_SQL}' THEN 1 END) AS invalid_phone,
        COUNT(CASE WHEN u.birth_date IS NOT NULL
                    AND (u.birth_date > CURRENT_DATE OR u.birth_date < DATE '1900-01-01')
                   THEN 1 END) AS invalid_birth_date,
        CURRENT_TIMESTAMP AS last_checked
    FROM users u
    LEFT JOIN auth a ON u.auth_id = a.id;
"""

# One unit: the body contains ';' and '$$'
VALIDATION_FUNCTION = f"""
    CREATE OR REPLACE FUNCTION validate_user_data()
    RETURNS TABLE (
        issue_type TEXT,
        issue_count BIGINT,
        sample_records TEXT
    ) AS $$
    BEGIN
        RETURN QUERY
        SELECT
            'Invalid Email Format'::TEXT,
            COUNT(*),
            STRING_AGG(DISTINCT a.email, ', ')
        FROM users u
        JOIN auth a ON u.auth_id = a.id
        WHERE a.email !~ '{EMAIL_PATTERN_SQL}'

        UNION ALL

        SELECT
            'Invalid Phone Number'::TEXT,
            COUNT(*),
            STRING_AGG(DISTINCT u.phone_number, ', ')
        FROM users u
        WHERE u.phone_number IS NOT NULL
          AND u.phone_number !~ '{PHONE_PATTERN_SQL}'

        UNION ALL

        SELECT
            'Future Birth Date'::TEXT,
            COUNT(*),
            STRING_AGG(DISTINCT u.birth_date::TEXT, ', ')
        FROM users u
        WHERE u.birth_date > CURRENT_DATE;
    END;
    $$ LANGUAGE plpgsql;
"""


def maintenance_statements(table: str) -> List[sql.Composed]:
    identifier = sql.Identifier(table)
    return [
        sql.SQL("REINDEX TABLE {table};").format(table=identifier),
        sql.SQL("ANALYZE {table};").format(table=identifier),
    ]


def run_maintenance(tables: Iterable[str] = TABLES) -> Dict[str, bool]:
    """
    Rebuild indexes and refresh statistics, one table at a time.

    Returns:
        Dictionary mapping table name to success
    """
    logger.info("Rebuilding indexes and updating statistics...")
    outcome = {}

    for table in tables:
        try:
            for statement in maintenance_statements(table):
                DatabaseConnection.execute_update(statement)
            outcome[table] = True
            logger.info(f"Maintained {table}")
        except psycopg2.OperationalError:
            raise
        except psycopg2.Error as e:
            outcome[table] = False
            logger.error(f"Error maintaining {table}: {str(e).strip()}")

    return outcome


def install_monitoring() -> Dict[str, bool]:
    """
    Create or replace the data_quality_monitor view and validate_user_data().

    Returns:
        Dictionary mapping object name to success
    """
    outcome = {}
    for name, statement in (
        ("data_quality_monitor", MONITOR_VIEW),
        ("validate_user_data", VALIDATION_FUNCTION),
    ):
        try:
            DatabaseConnection.execute_update(statement)
            outcome[name] = True
            logger.info(f"Installed {name}")
        except psycopg2.OperationalError:
            raise
        except psycopg2.Error as e:
            outcome[name] = False
            logger.error(f"Error installing {name}: {str(e).strip()}")
            logger.error(f"Statement: {' '.join(statement.split())[:100]}...")

    return outcome
