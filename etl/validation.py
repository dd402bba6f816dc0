"""
Post-Cleaning Validation

Re-runs the analysis battery and adds residual checks. Purely observational:
nothing here fails the run, it only reports what the operator should look at.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

import pandas as pd

from etl.analysis import ANALYSIS_QUERIES, AnalysisQuery, QueryResult, format_frame, log_results, run_queries
from etl.extract import fetch_frame
from etl.validator import PHONE_PATTERN_SQL, ProfileRecordValidator, is_missing

logger = logging.getLogger(__name__)

VALIDATION_QUERIES: List[AnalysisQuery] = [
    AnalysisQuery(
        name="Final Report",
        sql=f"""
            SELECT
                'users' AS table_name,
                COUNT(*) AS total_clean_rows,
                COUNT(CASE WHEN u.auth_id IS NULL THEN 1 END) AS remaining_null_auth_id,
                COUNT(CASE WHEN u.full_name IS NULL OR TRIM(u.full_name) = '' THEN 1 END) AS remaining_null_full_name,
                COUNT(CASE WHEN u.username IS NULL OR TRIM(u.username) = '' THEN 1 END) AS remaining_null_username,
                COUNT(CASE WHEN u.phone_number IS NOT NULL
                            AND u.phone_number !~ '{PHONE_PATTERN_SQL}' THEN 1 END) AS invalid_phone_numbers,
                COUNT(CASE WHEN u.birth_date IS NOT NULL
                            AND (u.birth_date > CURRENT_DATE OR u.birth_date < DATE '1900-01-01')
                           THEN 1 END) AS invalid_birth_dates
            FROM users u
            LEFT JOIN auth a ON u.auth_id = a.id;
        """,
    ),
    AnalysisQuery(
        name="Remaining Duplicates",
        sql="""
            SELECT 'Duplicate usernames remaining' AS check_type, COUNT(*) AS count
            FROM (SELECT username FROM users GROUP BY username HAVING COUNT(*) > 1) duplicates
            UNION ALL
            SELECT 'Duplicate emails remaining' AS check_type, COUNT(*) AS count
            FROM (SELECT email FROM auth GROUP BY email HAVING COUNT(*) > 1) duplicates;
        """,
    ),
]

PROFILE_PATTERN_QUERY = """
    SELECT u.id, u.username, u.full_name, u.phone_number, u.birth_date, a.email
    FROM users u
    LEFT JOIN auth a ON u.auth_id = a.id
    ORDER BY u.id;
"""

PATTERN_CHECKS = {
    "Email Format Validation": "email",
    "Phone Number Validation": "phone_number",
    "Birth Date Validation": "birth_date",
}


def run_validation() -> List[QueryResult]:
    """Re-run the analysis battery plus residual checks and log them."""
    logger.info("Running final validation...")
    results = run_queries(list(ANALYSIS_QUERIES) + VALIDATION_QUERIES)
    log_results(results)
    return results


def find_pattern_issues(
    frame: pd.DataFrame,
    today: Optional[date] = None,
) -> Dict[str, pd.DataFrame]:
    """
    Check each profile row against the canonical field patterns.

    Args:
        frame: Users joined to their auth email
        today: Upper bound for birth dates (defaults to today)

    Returns:
        Mapping of check name to the offending rows with a status column
    """
    validator = ProfileRecordValidator(today=today)
    check_for_field = {column: name for name, column in PATTERN_CHECKS.items()}

    records = [
        {key: (None if is_missing(value) else value) for key, value in record.items()}
        for record in frame.to_dict("records")
    ]
    checked = []
    for record in records:
        fields = {column: record[column] for column in check_for_field if column in record}
        if fields.get("email") is None:
            # users without auth are reported as orphans, not here
            fields.pop("email", None)
        checked.append(fields)

    _, invalid = validator.validate_batch(checked)

    offenders: Dict[str, list] = {name: [] for name in PATTERN_CHECKS}
    for entry in invalid:
        record = records[entry["row_number"] - 1]
        for column, error in entry["errors"]:
            offenders[check_for_field[column]].append({
                "id": record.get("id"),
                "username": record.get("username"),
                column: record.get(column),
                "status": error,
            })

    return {name: pd.DataFrame(rows) for name, rows in offenders.items()}


def validate_patterns() -> Dict[str, pd.DataFrame]:
    """Fetch profiles and log every pattern violation."""
    logger.info("Validating data patterns...")
    frame = fetch_frame(PROFILE_PATTERN_QUERY)
    issues = find_pattern_issues(frame)

    for check_name, offenders in issues.items():
        if offenders.empty:
            logger.info(f"{check_name}: No issues found")
        else:
            logger.warning(f"{check_name}: {len(offenders)} issue(s)\n{format_frame(offenders)}")

    return issues
