"""
Cleaning Stage

The ordered sequence of UPDATE/DELETE operations that normalize and
deduplicate the profile tables. Later steps assume earlier ones already
normalized case and whitespace, so the order is fixed.

Each step is a distinct unit holding one or more statements. The whole stage
runs in one transaction with constraints deferred: any failure rolls back
every step.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg2

from db.connection import DatabaseConnection
from db.schema import find_non_deferrable_constraints
from etl.validator import EMAIL_PATTERN_SQL, MIN_PHONE_DIGITS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleaningStep:
    """One logical cleaning operation."""
    number: int
    name: str
    statements: Tuple[str, ...]


@dataclass
class StatementFailure:
    """A statement that raised, with enough context to find it again."""
    stage: str
    unit: str
    statement: str
    error: str

    @property
    def statement_prefix(self) -> str:
        return " ".join(self.statement.split())[:100]


@dataclass
class StageResult:
    """Outcome of a transactional stage."""
    stage: str
    succeeded: bool = True
    rows_affected: Dict[str, int] = field(default_factory=dict)
    failure: Optional[StatementFailure] = None


def dedup_statement(table: str, keys: Sequence[str], tie_breaker: str = "id") -> str:
    """
    Build an earliest-wins DELETE for duplicate key groups.

    Args:
        table: Table to deduplicate
        keys: Columns forming the uniqueness key
        tie_breaker: "id" keeps exactly one row per key, ordering by
            created_at then id; "none" only deletes rows strictly later than
            the group's earliest created_at, so rows tied at the minimum all
            survive

    Returns:
        SQL statement
    """
    key_list = ", ".join(keys)
    not_null = " AND ".join(f"{key} IS NOT NULL" for key in keys)

    if tie_breaker == "id":
        return f"""
            DELETE FROM {table}
            WHERE id IN (
                SELECT id FROM (
                    SELECT id,
                           ROW_NUMBER() OVER (
                               PARTITION BY {key_list}
                               ORDER BY created_at ASC NULLS LAST, id ASC
                           ) AS rn
                    FROM {table}
                    WHERE {not_null}
                ) ranked
                WHERE ranked.rn > 1
            );
        """

    if tie_breaker == "none":
        join_on = " AND ".join(f"t.{key} = d.{key}" for key in keys)
        return f"""
            WITH duplicates AS (
                SELECT {key_list}, MIN(created_at) AS earliest_created
                FROM {table}
                WHERE {not_null}
                GROUP BY {key_list}
                HAVING COUNT(*) > 1
            )
            DELETE FROM {table}
            WHERE id IN (
                SELECT t.id
                FROM {table} t
                JOIN duplicates d ON {join_on}
                WHERE t.created_at > d.earliest_created
            );
        """

    raise ValueError(f"Unknown tie breaker: {tie_breaker}")


def orphan_condition(table: str) -> str:
    return f"NOT EXISTS (SELECT 1 FROM users u WHERE u.id = {table}.user_id)"


def build_cleaning_steps(tie_breaker: str = "id") -> List[CleaningStep]:
    """
    Build the fixed cleaning sequence.

    Args:
        tie_breaker: Deduplication tie breaker ("id" or "none")

    Returns:
        Ordered list of cleaning steps
    """
    return [
        CleaningStep(1, "Normalize auth email", (
            "UPDATE auth SET email = LOWER(TRIM(email)) WHERE email IS NOT NULL;",
        )),
        CleaningStep(2, "Remove invalid auth emails", (
            f"""
            DELETE FROM auth
            WHERE email IS NULL
               OR email = ''
               OR email !~ '{EMAIL_PATTERN_SQL}';
            """,
        )),
        CleaningStep(3, "Standardize phone numbers", (
            r"""
            UPDATE users
            SET phone_number = REGEXP_REPLACE(phone_number, '[^0-9+]', '', 'g')
            WHERE phone_number IS NOT NULL;
            """,
            f"""
            UPDATE users
            SET phone_number = NULL
            WHERE phone_number IS NOT NULL
              AND LENGTH(REGEXP_REPLACE(phone_number, '[^0-9]', '', 'g')) < {MIN_PHONE_DIGITS};
            """,
        )),
        CleaningStep(4, "Normalize username", (
            "UPDATE users SET username = LOWER(TRIM(username)) WHERE username IS NOT NULL;",
        )),
        CleaningStep(5, "Normalize full name", (
            r"""
            UPDATE users
            SET full_name = TRIM(REGEXP_REPLACE(full_name, '\s+', ' ', 'g'))
            WHERE full_name IS NOT NULL;
            """,
        )),
        CleaningStep(6, "Null out invalid birth dates", (
            """
            UPDATE users
            SET birth_date = NULL
            WHERE birth_date IS NOT NULL
              AND (birth_date > CURRENT_DATE OR birth_date < DATE '1900-01-01');
            """,
        )),
        CleaningStep(7, "Trim bio fields", (
            "UPDATE users SET bio = NULLIF(TRIM(bio), '') WHERE bio IS NOT NULL;",
            "UPDATE users SET long_bio = NULLIF(TRIM(long_bio), '') WHERE long_bio IS NOT NULL;",
        )),
        CleaningStep(8, "Remove orphaned users", (
            """
            DELETE FROM users
            WHERE auth_id IS NULL
               OR NOT EXISTS (SELECT 1 FROM auth a WHERE a.id = users.auth_id);
            """,
        )),
        CleaningStep(9, "Deduplicate usernames", (
            dedup_statement("users", ["username"], tie_breaker),
        )),
        CleaningStep(10, "Deduplicate emails", (
            dedup_statement("auth", ["email"], tie_breaker),
        )),
        CleaningStep(11, "Remove users missing essential fields", (
            """
            DELETE FROM users
            WHERE full_name IS NULL
               OR TRIM(full_name) = ''
               OR username IS NULL
               OR TRIM(username) = ''
               OR auth_id IS NULL
               OR NOT EXISTS (SELECT 1 FROM auth a WHERE a.id = users.auth_id);
            """,
        )),
        CleaningStep(12, "Clean related tables", (
            f"""
            DELETE FROM user_roles
            WHERE {orphan_condition('user_roles')}
               OR role IS NULL
               OR TRIM(role) = '';
            """,
            f"""
            DELETE FROM user_divisions
            WHERE {orphan_condition('user_divisions')}
               OR division_name IS NULL
               OR TRIM(division_name) = '';
            """,
            f"""
            DELETE FROM user_logs
            WHERE {orphan_condition('user_logs')}
               OR action IS NULL
               OR TRIM(action) = '';
            """,
        )),
        CleaningStep(13, "Standardize role and division names", (
            "UPDATE user_roles SET role = LOWER(TRIM(role));",
            r"UPDATE user_divisions SET division_name = TRIM(REGEXP_REPLACE(division_name, '\s+', ' ', 'g'));",
        )),
        CleaningStep(14, "Deduplicate roles and divisions", (
            dedup_statement("user_roles", ["user_id", "role"], tie_breaker),
            dedup_statement("user_divisions", ["user_id", "division_name"], tie_breaker),
        )),
        CleaningStep(15, "Standardize log actions", (
            "UPDATE user_logs SET action = LOWER(TRIM(action));",
        )),
    ]


def run_cleaning(steps: Sequence[CleaningStep]) -> StageResult:
    """
    Apply every cleaning step inside one scoped transaction.

    Args:
        steps: Ordered cleaning steps

    Returns:
        StageResult; on failure the stage is rolled back and the failing
        statement is recorded

    Raises:
        psycopg2.OperationalError: If the connection is lost
    """
    result = StageResult(stage="cleaning")
    current: Tuple[str, str] = ("commit", "COMMIT")

    logger.info(f"Applying {len(steps)} cleaning steps in one transaction...")

    try:
        with DatabaseConnection.transaction(defer_constraints=True) as cursor:
            for step in steps:
                affected = 0
                for statement in step.statements:
                    current = (step.name, statement)
                    cursor.execute(statement)
                    affected += max(cursor.rowcount, 0)
                result.rows_affected[step.name] = affected
                logger.info(f"Step {step.number:>2}: {step.name} ({affected} rows)")
            current = ("commit", "COMMIT")
    except psycopg2.OperationalError:
        raise
    except psycopg2.Error as e:
        unit, statement = current
        result.succeeded = False
        result.rows_affected = {}
        result.failure = StatementFailure(
            stage="cleaning",
            unit=unit,
            statement=statement,
            error=str(e).strip(),
        )
        logger.error(f"Error executing '{unit}': {result.failure.error}")
        logger.error(f"Statement: {result.failure.statement_prefix}...")
        logger.error("Cleaning stage rolled back; no cleaning changes were kept")
        return result

    logger.info("Cleaning stage committed")
    return result


def check_constraints() -> Optional[StatementFailure]:
    """
    Make sure the cleaning stage can defer every unique and foreign-key check.

    Normalizing "A@Test.com " next to "a@test.com" passes through a duplicate
    before step 10 removes it, which an immediate constraint rejects.

    Returns:
        None when cleaning can run, otherwise the failure to report
    """
    constraints = find_non_deferrable_constraints()
    if not constraints:
        return None

    names = ", ".join(f"{table}.{name}" for table, name, _ in constraints)
    failure = StatementFailure(
        stage="cleaning",
        unit="constraint check",
        statement="",
        error=f"constraints are not deferrable: {names}",
    )
    logger.error(f"Cleaning skipped: {failure.error}")
    logger.error("Run 'profile-etl init-schema' to recreate them as DEFERRABLE INITIALLY IMMEDIATE")
    return failure
