"""
User-Profile Schema

Five relations: auth, users, user_roles, user_divisions, user_logs.
Unique and foreign-key constraints are DEFERRABLE so the cleaning stage can
normalize and deduplicate inside one transaction before they are checked.
"""

import logging
from typing import List, Tuple

from psycopg2 import sql

from db.connection import DatabaseConnection

logger = logging.getLogger(__name__)

TABLES = ["auth", "users", "user_roles", "user_divisions", "user_logs"]

COLUMNS = {
    "auth": ["id", "email", "password", "created_at", "updated_at"],
    "users": [
        "id", "auth_id", "full_name", "username", "birth_date", "bio", "long_bio",
        "profile_json", "address", "phone_number", "created_at", "updated_at",
    ],
    "user_roles": ["id", "user_id", "role", "created_at"],
    "user_divisions": ["id", "user_id", "division_name", "created_at"],
    "user_logs": ["id", "user_id", "action", "created_at"],
}

CREATE_AUTH = """
    CREATE TABLE IF NOT EXISTS auth (
        id SERIAL PRIMARY KEY,
        email VARCHAR(100) NOT NULL,
        password VARCHAR(255) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT auth_email_key UNIQUE (email) DEFERRABLE INITIALLY IMMEDIATE
    );
"""

CREATE_USERS = """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        auth_id INTEGER,
        full_name VARCHAR(100) NOT NULL,
        username VARCHAR(50) NOT NULL,
        birth_date DATE,
        bio TEXT,
        long_bio TEXT,
        profile_json JSON,
        address TEXT,
        phone_number VARCHAR(20),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT users_username_key UNIQUE (username) DEFERRABLE INITIALLY IMMEDIATE,
        CONSTRAINT users_auth_id_fkey FOREIGN KEY (auth_id)
            REFERENCES auth(id) DEFERRABLE INITIALLY IMMEDIATE
    );
"""

CREATE_USER_ROLES = """
    CREATE TABLE IF NOT EXISTS user_roles (
        id SERIAL PRIMARY KEY,
        user_id INTEGER,
        role VARCHAR(50) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT user_roles_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES users(id) DEFERRABLE INITIALLY IMMEDIATE
    );
"""

CREATE_USER_LOGS = """
    CREATE TABLE IF NOT EXISTS user_logs (
        id SERIAL PRIMARY KEY,
        user_id INTEGER,
        action VARCHAR(100) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT user_logs_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES users(id) DEFERRABLE INITIALLY IMMEDIATE
    );
"""

CREATE_USER_DIVISIONS = """
    CREATE TABLE IF NOT EXISTS user_divisions (
        id SERIAL PRIMARY KEY,
        user_id INTEGER,
        division_name VARCHAR(100) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT user_divisions_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES users(id) DEFERRABLE INITIALLY IMMEDIATE
    );
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_users_auth_id ON users(auth_id);",
    "CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);",
    "CREATE INDEX IF NOT EXISTS idx_user_roles_user_id ON user_roles(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_user_logs_user_id ON user_logs(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_user_divisions_user_id ON user_divisions(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_user_divisions_division_name ON user_divisions(division_name);",
    "CREATE INDEX IF NOT EXISTS idx_auth_email ON auth(email);",
]

# Parents before children
SCHEMA_STATEMENTS = [
    CREATE_AUTH,
    CREATE_USERS,
    CREATE_USER_ROLES,
    CREATE_USER_LOGS,
    CREATE_USER_DIVISIONS,
] + INDEXES


# Unique and foreign-key constraints on the profile tables that cannot be
# deferred; the cleaning stage needs every one of them deferrable
NON_DEFERRABLE_QUERY = """
    SELECT t.relname AS table_name, c.conname, pg_get_constraintdef(c.oid) AS definition
    FROM pg_constraint c
    JOIN pg_class t ON t.oid = c.conrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    WHERE n.nspname = current_schema()
      AND t.relname = ANY(%s)
      AND c.contype IN ('u', 'f')
      AND NOT c.condeferrable
    ORDER BY c.contype DESC, t.relname, c.conname;
"""


def find_non_deferrable_constraints() -> List[Tuple[str, str, str]]:
    """
    List constraints that would make intermediate cleaning states fail.

    Returns:
        List of (table, constraint_name, definition)
    """
    rows = DatabaseConnection.execute_query(NON_DEFERRABLE_QUERY, (TABLES,))
    return [(row[0], row[1], row[2]) for row in rows]


def make_constraints_deferrable() -> int:
    """
    Recreate every non-deferrable unique and foreign-key constraint as
    DEFERRABLE INITIALLY IMMEDIATE, in a single transaction.

    Existing rows already satisfy the constraints, so re-adding them never
    fails on data.

    Returns:
        Number of constraints recreated
    """
    constraints = find_non_deferrable_constraints()
    if not constraints:
        return 0

    with DatabaseConnection.transaction() as cursor:
        for table, name, definition in constraints:
            cursor.execute(
                sql.SQL("ALTER TABLE {table} DROP CONSTRAINT {name};").format(
                    table=sql.Identifier(table), name=sql.Identifier(name)
                )
            )
            cursor.execute(
                sql.SQL("ALTER TABLE {table} ADD CONSTRAINT {name} {definition} DEFERRABLE INITIALLY IMMEDIATE;").format(
                    table=sql.Identifier(table),
                    name=sql.Identifier(name),
                    definition=sql.SQL(definition),
                )
            )
            logger.info(f"Constraint {name} on {table} is now deferrable")

    return len(constraints)


def create_schema() -> int:
    """
    Create all tables and indexes in a single transaction, then make any
    constraint of a pre-existing table deferrable.

    Returns:
        Number of statements executed plus constraints recreated

    Raises:
        psycopg2.Error: If any statement fails (nothing is kept)
    """
    logger.info(f"Creating schema ({len(TABLES)} tables, {len(INDEXES)} indexes)")
    with DatabaseConnection.transaction() as cursor:
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)
    upgraded = make_constraints_deferrable()
    logger.info(f"Schema created ({upgraded} existing constraint(s) made deferrable)")
    return len(SCHEMA_STATEMENTS) + upgraded
