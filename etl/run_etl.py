"""
Cleaning Pipeline Orchestrator

Coordinates the profile-data cleaning workflow on a single connection:
- Analyze data quality
- Back up every table
- Clean (one transaction)
- Validate
- Rebuild indexes and statistics, install monitoring objects

Statement failures are logged and the pipeline moves on; only connection or
configuration errors stop a run.
"""

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.settings import Settings
from db.connection import DatabaseConnection
from db.schema import TABLES, create_schema
from etl.analysis import QueryResult, run_analysis
from etl.backup import create_backups
from etl.cleaning import (
    StageResult,
    StatementFailure,
    build_cleaning_steps,
    check_constraints,
    run_cleaning,
)
from etl.extract import fetch_tables
from etl.maintenance import install_monitoring, run_maintenance
from etl.profile import fetch_user_profile
from etl.report import format_report, generate_report
from etl.transform import dry_run_clean
from etl.validation import run_validation, validate_patterns

logger = logging.getLogger(__name__)

COMMANDS = ("analyze", "clean", "validate", "report", "profile", "init-schema")

USAGE = """\
Profile data cleaning tool

Usage:
  profile-etl analyze            Analyze data quality issues
  profile-etl clean              Run the complete cleaning pipeline
  profile-etl clean --dry-run    Show what cleaning would change, without writing
  profile-etl validate           Validate data patterns
  profile-etl report             Generate row-count report
  profile-etl profile USER_ID    Fetch one user profile
  profile-etl init-schema        Create tables and indexes, make existing
                                 constraints deferrable

Environment Variables:
  DB_HOST            Database host (default: localhost)
  DB_PORT            Database port (default: 5432)
  DB_NAME            Database name (default: workshop_db)
  DB_USER            Database user (default: postgres)
  DB_PASSWORD        Database password (default: password)
  DEDUP_TIE_BREAKER  id | none (default: id)
  LOG_LEVEL          Console log level (default: INFO)
  LOG_FILE           Log file path (default: logs/etl.log)
"""


class PipelineState(Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    BACKING_UP = "backing_up"
    CLEANING = "cleaning"
    VALIDATING = "validating"
    MAINTAINING = "maintaining"
    DONE = "done"


class CleaningOrchestrator:
    """
    Orchestrates the cleaning pipeline and the single-purpose commands.

    Workflow of run_clean():
    1. Analysis (read-only battery)
    2. Backups (one transaction per table)
    3. Cleaning (one transaction, rolled back on any failure)
    4. Validation (analysis again plus residual checks)
    5. Maintenance (REINDEX / ANALYZE, monitoring view and function)
    """

    def __init__(self, settings: Settings):
        """
        Initialize orchestrator.

        Args:
            settings: Configuration object with database credentials
        """
        self.settings = settings
        self.state = PipelineState.IDLE
        self.failures: List[StatementFailure] = []
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.metrics: Dict[str, Any] = {}

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state

    def _initialize_database(self) -> None:
        """Open the single database connection."""
        logger.info("Initializing database connection...")
        DatabaseConnection.initialize(
            host=self.settings.DB_HOST,
            port=self.settings.DB_PORT,
            database=self.settings.DB_NAME,
            user=self.settings.DB_USER,
            password=self.settings.DB_PASSWORD,
        )

    def _with_connection(self, action: Callable[[], Any]) -> Any:
        """Open the connection, run an action, always close the connection."""
        self.start_time = datetime.now(timezone.utc)
        try:
            self._initialize_database()
            return action()
        finally:
            self.end_time = datetime.now(timezone.utc)
            DatabaseConnection.close_all()

    def run_clean(self) -> bool:
        """
        Execute the complete cleaning pipeline.

        Returns:
            True once the pipeline reaches DONE, whatever statements failed

        Raises:
            psycopg2.OperationalError: If the database cannot be reached
        """
        return self._with_connection(self._execute_pipeline)

    def _execute_pipeline(self) -> bool:
        logger.info("=" * 60)
        logger.info("Starting Profile Data Cleaning Pipeline")
        logger.info("=" * 60)

        self._transition(PipelineState.ANALYZING)
        logger.info("Step 1: Analyzing data quality...")
        self._record_query_failures("analysis", run_analysis())

        self._transition(PipelineState.BACKING_UP)
        logger.info("Step 2: Creating backups...")
        backups = create_backups()
        self.metrics["backups_created"] = sum(backups.values())
        self._record_unit_failures("backup", backups)

        self._transition(PipelineState.CLEANING)
        logger.info("Step 3: Cleaning data...")
        steps = build_cleaning_steps(self.settings.DEDUP_TIE_BREAKER)
        blocked = check_constraints()
        if blocked:
            cleaning = StageResult(stage="cleaning", succeeded=False, failure=blocked)
        else:
            cleaning = run_cleaning(steps)
        self.metrics["cleaning_committed"] = cleaning.succeeded
        self.metrics["rows_affected"] = cleaning.rows_affected
        if cleaning.failure:
            self.failures.append(cleaning.failure)

        self._transition(PipelineState.VALIDATING)
        logger.info("Step 4: Running final validation...")
        self._record_query_failures("validation", run_validation())

        self._transition(PipelineState.MAINTAINING)
        logger.info("Step 5: Rebuilding indexes and statistics...")
        self._record_unit_failures("maintenance", run_maintenance())
        self._record_unit_failures("monitoring", install_monitoring())

        self._transition(PipelineState.DONE)
        logger.info("=" * 60)
        logger.info("Profile Data Cleaning Pipeline Completed")
        logger.info("=" * 60)
        self._log_summary()
        return True

    def _record_query_failures(self, stage: str, results: List[QueryResult]) -> None:
        for result in results:
            if not result.ok:
                self.failures.append(
                    StatementFailure(stage=stage, unit=result.name, statement="", error=result.error)
                )

    def _record_unit_failures(self, stage: str, outcome: Dict[str, bool]) -> None:
        for unit, succeeded in outcome.items():
            if not succeeded:
                self.failures.append(
                    StatementFailure(stage=stage, unit=unit, statement="", error="see log")
                )

    def _log_summary(self) -> None:
        """Log the run summary, including every failed unit."""
        if self.start_time:
            duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
            logger.info(f"Duration: {duration:.2f} seconds")
        logger.info(f"Backups created: {self.metrics.get('backups_created', 0)}/{len(TABLES)}")
        if self.metrics.get("cleaning_committed"):
            logger.info("Cleaning committed:")
            for step, rows in self.metrics.get("rows_affected", {}).items():
                logger.info(f"  {step}: {rows} rows")
        else:
            logger.warning("Cleaning rolled back: no cleaning changes were kept")

        if self.failures:
            logger.warning(f"{len(self.failures)} unit(s) failed:")
            for failure in self.failures:
                logger.warning(f"  [{failure.stage}] {failure.unit}: {failure.error}")
        else:
            logger.info("All units succeeded")
        logger.info("Backup tables (<table>_backup) hold the pre-cleaning data for manual restore")

    def run_analyze(self) -> List[QueryResult]:
        return self._with_connection(run_analysis)

    def run_validate(self):
        return self._with_connection(validate_patterns)

    def run_report(self):
        def action():
            report = generate_report()
            logger.info(f"\n{format_report(report)}")
            return report

        return self._with_connection(action)

    def run_profile(self, user_id: int) -> Optional[Dict[str, Any]]:
        def action():
            profile = fetch_user_profile(user_id)
            if profile is not None:
                width = max(len(key) for key in profile)
                logger.info(
                    f"Profile {user_id}:\n"
                    + "\n".join(f"  {key:<{width}}  {value}" for key, value in profile.items())
                )
            return profile

        return self._with_connection(action)

    def run_dry_run(self) -> Dict[str, int]:
        """Clean extracted copies in memory and report what would change."""
        def action():
            tables = fetch_tables()
            cleaned, step_metrics = dry_run_clean(tables, self.settings.DEDUP_TIE_BREAKER)
            logger.info("Dry run (nothing written):")
            for step, rows in step_metrics.items():
                logger.info(f"  {step}: {rows} rows")
            for table in TABLES:
                logger.info(f"  {table}: {len(tables[table])} -> {len(cleaned[table])} rows")
            return step_metrics

        return self._with_connection(action)

    def run_init_schema(self) -> int:
        return self._with_connection(create_schema)


def setup_logging(log_file: str = "logs/etl.log", level: str = "INFO") -> None:
    """
    Configure logging for the cleaning tool.

    Args:
        log_file: Path to log file
        level: Console log level
    """
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="profile-etl", add_help=False)
    parser.add_argument("command", nargs="?")
    parser.add_argument("user_id", nargs="?")
    parser.add_argument("--dry-run", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the cleaning tool."""
    args, unknown = build_parser().parse_known_args(argv)

    if args.command not in COMMANDS:
        print(USAGE)
        sys.exit(0)

    # Arguments the command does not take
    if args.user_id is not None and args.command != "profile":
        unknown.insert(0, args.user_id)
    if args.dry_run and args.command != "clean":
        unknown.append("--dry-run")
    if unknown:
        print(f"Unrecognized arguments: {' '.join(unknown)}", file=sys.stderr)
        print(USAGE)
        sys.exit(2)

    user_id = None
    if args.command == "profile":
        try:
            user_id = int(args.user_id)
        except (TypeError, ValueError):
            print(USAGE)
            sys.exit(0)

    try:
        settings = Settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings.LOG_FILE, settings.LOG_LEVEL)
    logger.info(f"Loaded {settings!r}")

    orchestrator = CleaningOrchestrator(settings)
    try:
        if args.command == "clean" and args.dry_run:
            orchestrator.run_dry_run()
        elif args.command == "clean":
            orchestrator.run_clean()
        elif args.command == "analyze":
            orchestrator.run_analyze()
        elif args.command == "validate":
            orchestrator.run_validate()
        elif args.command == "report":
            orchestrator.run_report()
        elif args.command == "profile":
            orchestrator.run_profile(user_id)
        elif args.command == "init-schema":
            orchestrator.run_init_schema()
    except Exception as e:
        logger.error(f"Process failed: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
