"""
Cleaning statements run against a throwaway PostgreSQL server.

Needs the `pgserver` package from the test extra; skipped without it.
"""

import tempfile
import unittest
from datetime import date, datetime

import pytest
from psycopg2.extensions import parse_dsn

pgserver = pytest.importorskip("pgserver")

from db.connection import DatabaseConnection  # noqa: E402
from db.schema import TABLES, create_schema, find_non_deferrable_constraints, make_constraints_deferrable  # noqa: E402
from etl.backup import backup_table_name, create_backups  # noqa: E402
from etl.cleaning import build_cleaning_steps, check_constraints, run_cleaning  # noqa: E402
from etl.extract import fetch_tables  # noqa: E402
from etl.transform import dry_run_clean  # noqa: E402

# Same tables with plain, non-deferrable UNIQUE and REFERENCES constraints
PLAIN_SCHEMA = """
    CREATE TABLE auth (
        id SERIAL PRIMARY KEY,
        email VARCHAR(100) UNIQUE NOT NULL,
        password VARCHAR(255) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE TABLE users (
        id SERIAL PRIMARY KEY,
        auth_id INTEGER REFERENCES auth(id),
        full_name VARCHAR(100) NOT NULL,
        username VARCHAR(50) UNIQUE NOT NULL,
        birth_date DATE,
        bio TEXT,
        long_bio TEXT,
        profile_json JSON,
        address TEXT,
        phone_number VARCHAR(20),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE TABLE user_roles (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id),
        role VARCHAR(50) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE TABLE user_logs (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id),
        action VARCHAR(100) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE TABLE user_divisions (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id),
        division_name VARCHAR(100) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
"""

EARLY = datetime(2024, 1, 1)
LATE = datetime(2024, 1, 2)

AUTH_ROWS = [
    (1, "A@Test.com ", LATE),
    (2, "a@test.com", EARLY),
    (3, "bad-email", EARLY),
    (4, "c@test.io", EARLY),
    (5, "nl@test.com\n", EARLY),
]

# (id, auth_id, full_name, username, birth_date, phone_number)
USER_ROWS = [
    (10, 2, "  Alice   Smith ", " Alice", date(1990, 1, 1), "+1 (234) 567-8900"),
    (11, 1, "Alias", "alias", None, None),
    (12, 4, "Carol", "carol", date(2999, 1, 1), "555-1234"),
    (13, 4, "Ghost", "   ", None, None),
    (14, 3, "Bad", "bad", None, None),
    (15, 5, "Newline", "newline", None, None),
]

ROLE_ROWS = [
    (100, 13, "admin", EARLY),
    (101, 10, " ADMIN ", EARLY),
    (102, 10, "admin", LATE),
    (103, 12, "user", EARLY),
]
DIVISION_ROWS = [(200, 10, "Tech  Team", EARLY), (201, 10, "Tech Team", LATE)]
LOG_ROWS = [(300, 13, "LOGIN", EARLY), (301, 10, " Login ", EARLY)]


def _select(query):
    return DatabaseConnection.execute_query(query)


def _count(table):
    return _select(f"SELECT COUNT(*) FROM {table};")[0][0]


def _seed():
    with DatabaseConnection.transaction() as cursor:
        for row in AUTH_ROWS:
            cursor.execute(
                "INSERT INTO auth (id, email, password, created_at, updated_at) VALUES (%s, %s, 'h', %s, %s);",
                (row[0], row[1], row[2], row[2]),
            )
        for row in USER_ROWS:
            cursor.execute(
                "INSERT INTO users (id, auth_id, full_name, username, birth_date, phone_number, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s);",
                row + (EARLY,),
            )
        for table, label, rows in (
            ("user_roles", "role", ROLE_ROWS),
            ("user_divisions", "division_name", DIVISION_ROWS),
            ("user_logs", "action", LOG_ROWS),
        ):
            for row in rows:
                cursor.execute(
                    f"INSERT INTO {table} (id, user_id, {label}, created_at) VALUES (%s, %s, %s, %s);",
                    row,
                )


class TestCleaningAgainstPostgres(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.pgdata = tempfile.TemporaryDirectory()
        cls.server = pgserver.get_server(cls.pgdata.name, cleanup_mode="stop")
        dsn = parse_dsn(cls.server.get_uri())
        DatabaseConnection.initialize(
            host=dsn.get("host"),
            port=int(dsn.get("port", 5432)),
            database=dsn.get("dbname", "postgres"),
            user=dsn.get("user", "postgres"),
            password=dsn.get("password", ""),
        )

    @classmethod
    def tearDownClass(cls):
        DatabaseConnection.close_all()
        cls.server.cleanup()
        cls.pgdata.cleanup()

    def setUp(self):
        tables = list(reversed(TABLES)) + [backup_table_name(table) for table in TABLES]
        DatabaseConnection.execute_update(f"DROP TABLE IF EXISTS {', '.join(tables)} CASCADE;")

    def _create_deferrable_schema(self):
        create_schema()
        _seed()

    def test_scenarios_hold_after_cleaning(self):
        self._create_deferrable_schema()

        result = run_cleaning(build_cleaning_steps())

        self.assertTrue(result.succeeded, result.failure)
        self.assertEqual(_select("SELECT id, email FROM auth ORDER BY id;"), [(2, "a@test.com"), (4, "c@test.io")])
        users = _select("SELECT id, full_name, username, birth_date, phone_number FROM users ORDER BY id;")
        self.assertEqual(
            users,
            [(10, "Alice Smith", "alice", date(1990, 1, 1), "+12345678900"), (12, "Carol", "carol", None, None)],
        )
        self.assertEqual(_select("SELECT id, role FROM user_roles ORDER BY id;"), [(101, "admin"), (103, "user")])
        self.assertEqual(_select("SELECT id, division_name FROM user_divisions ORDER BY id;"), [(200, "Tech Team")])
        self.assertEqual(_select("SELECT id, action FROM user_logs ORDER BY id;"), [(301, "login")])

    def test_no_orphans_or_duplicates_remain(self):
        self._create_deferrable_schema()

        run_cleaning(build_cleaning_steps())

        self.assertEqual(_count("users u WHERE NOT EXISTS (SELECT 1 FROM auth a WHERE a.id = u.auth_id)"), 0)
        for table in ("user_roles", "user_divisions", "user_logs"):
            self.assertEqual(
                _count(f"{table} t WHERE NOT EXISTS (SELECT 1 FROM users u WHERE u.id = t.user_id)"), 0, table
            )
        self.assertEqual(_count("(SELECT user_id, role FROM user_roles GROUP BY 1, 2 HAVING COUNT(*) > 1) d"), 0)
        self.assertEqual(_count("auth WHERE email <> LOWER(TRIM(email))"), 0)

    def test_backups_keep_the_pre_cleaning_rows(self):
        self._create_deferrable_schema()
        before = {table: _count(table) for table in TABLES}

        self.assertTrue(all(create_backups().values()))
        run_cleaning(build_cleaning_steps())
        create_backups()

        for table in TABLES:
            self.assertEqual(_count(backup_table_name(table)), before[table], table)
        self.assertLess(_count("users"), before["users"])

    def test_dry_run_matches_the_database(self):
        self._create_deferrable_schema()
        cleaned, _ = dry_run_clean(fetch_tables())

        run_cleaning(build_cleaning_steps())

        for table in TABLES:
            stored = [row[0] for row in _select(f"SELECT id FROM {table} ORDER BY id;")]
            self.assertEqual(sorted(cleaned[table]["id"].tolist()), stored, table)

    def test_plain_constraints_are_detected_and_upgraded(self):
        DatabaseConnection.execute_update(PLAIN_SCHEMA)
        _seed()

        self.assertEqual(len(find_non_deferrable_constraints()), 6)
        with self.assertLogs("etl.cleaning", level="ERROR"):
            self.assertIsNotNone(check_constraints())

        self.assertEqual(make_constraints_deferrable(), 6)
        self.assertEqual(find_non_deferrable_constraints(), [])

        result = run_cleaning(build_cleaning_steps())
        self.assertTrue(result.succeeded, result.failure)
        self.assertEqual(_select("SELECT email FROM auth ORDER BY id;"), [("a@test.com",), ("c@test.io",)])


if __name__ == "__main__":
    unittest.main()
