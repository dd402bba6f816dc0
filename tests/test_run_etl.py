import unittest
from unittest.mock import MagicMock, patch

import pandas as pd
import psycopg2

from config.settings import Settings
from db.connection import DatabaseConnection
from etl import run_etl
from etl.analysis import QueryResult
from etl.cleaning import StageResult, StatementFailure
from etl.run_etl import CleaningOrchestrator, PipelineState, main


def _settings(tie_breaker="id"):
    settings = MagicMock(spec=Settings)
    settings.DB_HOST = "localhost"
    settings.DB_PORT = 5432
    settings.DB_NAME = "workshop_db"
    settings.DB_USER = "postgres"
    settings.DB_PASSWORD = "password"
    settings.DEDUP_TIE_BREAKER = tie_breaker
    settings.LOG_FILE = "logs/etl.log"
    settings.LOG_LEVEL = "INFO"
    return settings


class TestMain(unittest.TestCase):
    @patch.object(DatabaseConnection, "initialize")
    def test_no_command_prints_usage_without_connecting(self, initialize):
        with patch("builtins.print") as printed:
            with self.assertRaises(SystemExit) as exit_info:
                main([])

        self.assertEqual(exit_info.exception.code, 0)
        self.assertIn("Usage:", printed.call_args[0][0])
        initialize.assert_not_called()

    @patch.object(DatabaseConnection, "initialize")
    def test_unknown_command_prints_usage(self, initialize):
        with patch("builtins.print"):
            with self.assertRaises(SystemExit) as exit_info:
                main(["vacuum"])

        self.assertEqual(exit_info.exception.code, 0)
        initialize.assert_not_called()

    @patch.object(DatabaseConnection, "initialize")
    def test_profile_without_numeric_id_prints_usage(self, initialize):
        with patch("builtins.print"):
            with self.assertRaises(SystemExit) as exit_info:
                main(["profile", "alice"])

        self.assertEqual(exit_info.exception.code, 0)
        initialize.assert_not_called()

    @patch.object(run_etl, "Settings")
    def test_mistyped_flag_is_rejected_before_running(self, settings_cls):
        with patch.object(CleaningOrchestrator, "run_clean") as clean, \
                patch.object(CleaningOrchestrator, "run_dry_run") as dry_run:
            with patch("builtins.print") as printed:
                with self.assertRaises(SystemExit) as exit_info:
                    main(["clean", "--dryrun"])

        self.assertEqual(exit_info.exception.code, 2)
        self.assertIn("--dryrun", printed.call_args_list[0][0][0])
        clean.assert_not_called()
        dry_run.assert_not_called()
        settings_cls.assert_not_called()

    @patch.object(run_etl, "Settings")
    def test_arguments_a_command_does_not_take_are_rejected(self, settings_cls):
        for argv in (["analyze", "42"], ["validate", "--dry-run"], ["profile", "7", "8"]):
            with patch("builtins.print"):
                with self.assertRaises(SystemExit) as exit_info:
                    main(argv)
            self.assertEqual(exit_info.exception.code, 2, argv)
        settings_cls.assert_not_called()

    @patch.object(run_etl, "Settings", side_effect=ValueError("DB_PORT must be an integer, got: x"))
    def test_bad_configuration_exits_one(self, _settings_cls):
        with patch("builtins.print"):
            with self.assertRaises(SystemExit) as exit_info:
                main(["analyze"])

        self.assertEqual(exit_info.exception.code, 1)

    @patch.object(run_etl, "setup_logging")
    @patch.object(DatabaseConnection, "close_all")
    @patch.object(
        DatabaseConnection,
        "initialize",
        side_effect=psycopg2.OperationalError("could not connect to server"),
    )
    def test_connection_failure_exits_one(self, initialize, close_all, _logging):
        with patch.object(run_etl, "Settings", return_value=_settings()):
            with self.assertLogs("etl.run_etl", level="ERROR"):
                with self.assertRaises(SystemExit) as exit_info:
                    main(["clean"])

        self.assertEqual(exit_info.exception.code, 1)
        initialize.assert_called_once()
        close_all.assert_called_once()

    @patch.object(run_etl, "setup_logging")
    def test_dry_run_flag_selects_dry_run(self, _logging):
        with patch.object(run_etl, "Settings", return_value=_settings()):
            with patch.object(CleaningOrchestrator, "run_dry_run") as dry_run, \
                    patch.object(CleaningOrchestrator, "run_clean") as clean:
                with self.assertRaises(SystemExit) as exit_info:
                    main(["clean", "--dry-run"])

        self.assertEqual(exit_info.exception.code, 0)
        dry_run.assert_called_once()
        clean.assert_not_called()


@patch.object(DatabaseConnection, "close_all")
@patch.object(DatabaseConnection, "initialize")
class TestCleaningOrchestrator(unittest.TestCase):
    def _patch_stages(self, order, cleaning=None, backups=None, blocked=None):
        def stage(name, value):
            def run(*args, **kwargs):
                order.append(name)
                return value
            return run

        failed_query = QueryResult(name="Invalid Phone Numbers", frame=pd.DataFrame(), error="boom")
        stages = {
            "run_analysis": stage("analysis", [failed_query]),
            "create_backups": stage("backup", backups or {"users": True}),
            "run_cleaning": stage("cleaning", cleaning or StageResult(stage="cleaning", succeeded=True)),
            "run_validation": stage("validation", []),
            "run_maintenance": stage("maintenance", {"users": True}),
            "install_monitoring": stage("monitoring", {"validate_user_data": True}),
        }
        for name, func in stages.items():
            patcher = patch.object(run_etl, name, side_effect=func)
            patcher.start()
            self.addCleanup(patcher.stop)

        patcher = patch.object(run_etl, "check_constraints", return_value=blocked)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_stages_run_in_order_and_reach_done(self, initialize, close_all):
        order = []
        self._patch_stages(order)
        orchestrator = CleaningOrchestrator(_settings())

        self.assertTrue(orchestrator.run_clean())

        self.assertEqual(
            order, ["analysis", "backup", "cleaning", "validation", "maintenance", "monitoring"]
        )
        self.assertEqual(orchestrator.state, PipelineState.DONE)
        initialize.assert_called_once()
        close_all.assert_called_once()

    def test_failures_are_accumulated_without_stopping(self, initialize, close_all):
        order = []
        failure = StatementFailure(
            stage="cleaning", unit="Deduplicate emails", statement="DELETE FROM auth", error="deadlock"
        )
        self._patch_stages(
            order,
            cleaning=StageResult(stage="cleaning", succeeded=False, failure=failure),
            backups={"users": True, "auth": False},
        )
        orchestrator = CleaningOrchestrator(_settings())

        with self.assertLogs("etl.run_etl", level="WARNING") as logs:
            orchestrator.run_clean()

        self.assertEqual(orchestrator.state, PipelineState.DONE)
        units = [(f.stage, f.unit) for f in orchestrator.failures]
        self.assertEqual(
            units,
            [("analysis", "Invalid Phone Numbers"), ("backup", "auth"), ("cleaning", "Deduplicate emails")],
        )
        self.assertFalse(orchestrator.metrics["cleaning_committed"])
        self.assertTrue(any("rolled back" in line for line in logs.output))

    def test_non_deferrable_constraints_skip_cleaning(self, initialize, close_all):
        order = []
        blocked = StatementFailure(
            stage="cleaning",
            unit="constraint check",
            statement="",
            error="constraints are not deferrable: auth.auth_email_key",
        )
        self._patch_stages(order, blocked=blocked)
        orchestrator = CleaningOrchestrator(_settings())

        with self.assertLogs("etl.run_etl", level="WARNING"):
            orchestrator.run_clean()

        self.assertNotIn("cleaning", order)
        self.assertEqual(orchestrator.state, PipelineState.DONE)
        self.assertFalse(orchestrator.metrics["cleaning_committed"])
        self.assertIn(blocked, orchestrator.failures)
        self.assertEqual(order[-2:], ["maintenance", "monitoring"])

    def test_tie_breaker_setting_reaches_cleaning_steps(self, initialize, close_all):
        self._patch_stages([])
        with patch.object(run_etl, "build_cleaning_steps", return_value=[]) as build:
            CleaningOrchestrator(_settings("none")).run_clean()

        build.assert_called_once_with("none")

    def test_connection_closed_when_stage_raises(self, initialize, close_all):
        with patch.object(run_etl, "run_analysis", side_effect=psycopg2.OperationalError("gone")):
            with self.assertRaises(psycopg2.OperationalError):
                CleaningOrchestrator(_settings()).run_clean()

        close_all.assert_called_once()


class TestSettings(unittest.TestCase):
    def test_port_is_converted_to_int(self):
        with patch.object(Settings, "DB_PORT", "6543"):
            self.assertEqual(Settings().DB_PORT, 6543)

    def test_non_numeric_port_is_rejected(self):
        with patch.object(Settings, "DB_PORT", "fifty"):
            with self.assertRaises(ValueError):
                Settings()

    def test_tie_breaker_is_normalized_and_checked(self):
        with patch.object(Settings, "DEDUP_TIE_BREAKER", " None "):
            self.assertEqual(Settings().DEDUP_TIE_BREAKER, "none")
        with patch.object(Settings, "DEDUP_TIE_BREAKER", "random"):
            with self.assertRaises(ValueError):
                Settings()

    def test_repr_hides_password(self):
        with patch.object(Settings, "DB_PASSWORD", "s3cret"):
            self.assertNotIn("s3cret", repr(Settings()))


if __name__ == "__main__":
    unittest.main()
