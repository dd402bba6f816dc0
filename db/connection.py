"""
PostgreSQL Connection Helper

Provides a single pooled connection and context management for database operations.
Every context-managed block is its own transaction: committed on success,
rolled back on any error.
"""

import psycopg2
from psycopg2 import pool, OperationalError
from contextlib import contextmanager
from typing import Optional, List, Tuple
import logging

logger = logging.getLogger(__name__)


class DatabaseConnection:
    """
    Manages the PostgreSQL connection used by the cleaning pipeline.

    The pool is pinned to one connection: statements run strictly in sequence
    against the same session.
    """

    _instance = None
    _pool: Optional[pool.SimpleConnectionPool] = None

    def __new__(cls):
        """Ensure singleton pattern for connection pool."""
        if cls._instance is None:
            cls._instance = super(DatabaseConnection, cls).__new__(cls)
        return cls._instance

    @classmethod
    def initialize(
        cls,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
    ) -> None:
        """
        Initialize the single-connection pool.

        Args:
            host: PostgreSQL server host
            port: PostgreSQL server port
            database: Database name
            user: Database user
            password: Database password

        Raises:
            OperationalError: If connection fails
        """
        try:
            cls._pool = pool.SimpleConnectionPool(
                1,
                1,
                host=host,
                port=port,
                database=database,
                user=user,
                password=password,
                connect_timeout=10,
            )
            logger.info(f"Database connection opened to {host}:{port}/{database}")
        except OperationalError as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    @classmethod
    def close_all(cls) -> None:
        """Close the pooled connection."""
        if cls._pool:
            cls._pool.closeall()
            cls._pool = None
            logger.info("Database connection closed")

    @classmethod
    @contextmanager
    def get_connection(cls):
        """
        Context manager to get the connection from the pool.

        Yields:
            psycopg2 connection object

        Raises:
            OperationalError: If pool is not initialized or connection fails
        """
        if cls._pool is None:
            raise OperationalError("Database pool not initialized. Call initialize() first.")

        conn = None
        try:
            conn = cls._pool.getconn()
            yield conn
            conn.commit()
            logger.debug("Transaction committed successfully")
        except Exception as e:
            if conn:
                conn.rollback()
            logger.debug(f"Transaction rolled back: {e}")
            raise
        finally:
            if conn:
                cls._pool.putconn(conn)

    @classmethod
    @contextmanager
    def get_cursor(cls, commit: bool = True):
        """
        Context manager to get a cursor for direct SQL execution.

        Args:
            commit: Whether to commit on success

        Yields:
            psycopg2 cursor object

        Example:
            with DatabaseConnection.get_cursor() as cursor:
                cursor.execute("SELECT * FROM users")
                results = cursor.fetchall()
        """
        with cls.get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                if commit:
                    conn.commit()
                else:
                    conn.rollback()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    @classmethod
    @contextmanager
    def transaction(cls, defer_constraints: bool = False):
        """
        Scoped transaction spanning several statements.

        Args:
            defer_constraints: Run SET CONSTRAINTS ALL DEFERRED first, so
                deferrable unique and foreign-key checks happen at commit

        Yields:
            psycopg2 cursor object; any exception rolls back every statement
            executed through it
        """
        with cls.get_cursor(commit=True) as cursor:
            if defer_constraints:
                cursor.execute("SET CONSTRAINTS ALL DEFERRED;")
            yield cursor

    @classmethod
    def execute_query(cls, query, params: Optional[tuple] = None) -> list:
        """
        Execute a SELECT query and return results.

        Args:
            query: SQL query string
            params: Query parameters (optional)

        Returns:
            List of result rows
        """
        with cls.get_cursor(commit=False) as cursor:
            cursor.execute(query, params)
            return cursor.fetchall()

    @classmethod
    def fetch_with_columns(cls, query, params=None) -> Tuple[List[str], list]:
        """
        Execute a SELECT query and return column names with the rows.

        Args:
            query: SQL query string or psycopg2.sql.Composed
            params: Positional tuple or named dict (optional)

        Returns:
            Tuple of (column_names, rows)
        """
        with cls.get_cursor(commit=False) as cursor:
            cursor.execute(query, params)
            columns = [desc[0] for desc in cursor.description or []]
            rows = cursor.fetchall() if cursor.description else []
            return columns, rows

    @classmethod
    def execute_update(cls, query, params: Optional[tuple] = None) -> int:
        """
        Execute a DDL/INSERT/UPDATE/DELETE statement in its own transaction.

        Args:
            query: SQL query string
            params: Query parameters (optional)

        Returns:
            Number of rows affected
        """
        with cls.get_cursor(commit=True) as cursor:
            cursor.execute(query, params)
            return cursor.rowcount
