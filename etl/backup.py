"""
Table Backups

Snapshots every profile table into a parallel "<table>_backup" table before
any destructive statement runs. An existing backup is never replaced.
"""

import logging
from typing import Dict, Iterable

import psycopg2
from psycopg2 import sql

from db.connection import DatabaseConnection
from db.schema import TABLES

logger = logging.getLogger(__name__)

BACKUP_TABLES = list(TABLES)


def backup_table_name(table: str) -> str:
    return f"{table}_backup"


def build_backup_statement(table: str) -> sql.Composed:
    """CREATE TABLE IF NOT EXISTS <table>_backup AS SELECT * FROM <table>."""
    return sql.SQL("CREATE TABLE IF NOT EXISTS {backup} AS SELECT * FROM {source};").format(
        backup=sql.Identifier(backup_table_name(table)),
        source=sql.Identifier(table),
    )


def create_backups(tables: Iterable[str] = BACKUP_TABLES) -> Dict[str, bool]:
    """
    Back up each table in its own transaction.

    Args:
        tables: Tables to snapshot

    Returns:
        Dictionary mapping table name to success
    """
    logger.info("Creating table backups...")
    outcome = {}

    for table in tables:
        try:
            DatabaseConnection.execute_update(build_backup_statement(table))
            outcome[table] = True
            logger.info(f"Backup ready: {backup_table_name(table)}")
        except psycopg2.OperationalError:
            raise
        except psycopg2.Error as e:
            outcome[table] = False
            logger.error(f"Error creating backup of {table}: {str(e).strip()}")

    succeeded = sum(outcome.values())
    logger.info(f"Backups complete: {succeeded}/{len(outcome)} tables")
    return outcome
