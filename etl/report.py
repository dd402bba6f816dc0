"""
Cleaning Report

Row-count summary of the five profile tables and, when present, their
backup snapshots.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from psycopg2 import sql

from db.connection import DatabaseConnection
from db.schema import TABLES
from etl.backup import backup_table_name

logger = logging.getLogger(__name__)

REPORT_QUERY = """
    SELECT
        'Data Cleaning Summary' AS report_title,
        (SELECT COUNT(*) FROM users) AS total_users,
        (SELECT COUNT(*) FROM auth) AS total_auth_records,
        (SELECT COUNT(*) FROM user_roles) AS total_roles,
        (SELECT COUNT(*) FROM user_divisions) AS total_divisions,
        (SELECT COUNT(*) FROM user_logs) AS total_logs,
        CURRENT_TIMESTAMP AS report_generated_at;
"""

# Order of the count columns in REPORT_QUERY
REPORT_TABLES = ["users", "auth", "user_roles", "user_divisions", "user_logs"]

EXISTING_TABLES_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = current_schema()
      AND table_name = ANY(%s);
"""


@dataclass
class RowCountReport:
    """Row counts per table at a point in time."""
    generated_at: datetime
    counts: Dict[str, int]
    backup_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return sum(self.counts.values())

    def removed_since_backup(self, table: str) -> Optional[int]:
        """Rows removed from a table since its backup, or None without a backup."""
        backup = self.backup_counts.get(backup_table_name(table))
        if backup is None:
            return None
        return backup - self.counts.get(table, 0)


def count_backups() -> Dict[str, int]:
    """Count rows in every backup table that exists."""
    candidates = [backup_table_name(table) for table in TABLES]
    existing = [row[0] for row in DatabaseConnection.execute_query(EXISTING_TABLES_QUERY, (candidates,))]

    counts = {}
    for name in existing:
        query = sql.SQL("SELECT COUNT(*) FROM {table};").format(table=sql.Identifier(name))
        counts[name] = int(DatabaseConnection.execute_query(query)[0][0])
    return counts


def generate_report() -> RowCountReport:
    """
    Run the summary query and collect backup counts.

    Returns:
        RowCountReport
    """
    row = DatabaseConnection.execute_query(REPORT_QUERY)[0]
    counts = {table: int(value) for table, value in zip(REPORT_TABLES, row[1:6])}
    return RowCountReport(generated_at=row[6], counts=counts, backup_counts=count_backups())


def format_report(report: RowCountReport) -> str:
    """Render the report as aligned text lines."""
    lines = [f"Data Cleaning Summary (generated {report.generated_at})"]
    for table in TABLES:
        line = f"  {table:<16} {report.counts.get(table, 0):>8}"
        removed = report.removed_since_backup(table)
        if removed is not None:
            backup = report.backup_counts[backup_table_name(table)]
            line += f"   backup {backup:>8}   removed {removed:>8}"
        lines.append(line)
    lines.append(f"  {'total':<16} {report.total_rows:>8}")
    return "\n".join(lines)
