# tests/test_logging_config.py

"""Tests for run-log creation, pruning and console verbosity."""

import logging
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from src.config.logging_config import (
    PROJECT_LOGGER,
    prune_run_logs,
    setup_logging,
)


def _detach_handlers() -> None:
    project = logging.getLogger(PROJECT_LOGGER)
    for handler in list(project.handlers):
        handler.close()
        project.removeHandler(handler)


def _console(project: logging.Logger) -> logging.Handler:
    return next(
        h for h in project.handlers if not isinstance(h, logging.FileHandler)
    )


class TestSetupLogging(unittest.TestCase):
    """Handlers attached to the price_watch logger."""

    def setUp(self) -> None:
        _detach_handlers()
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.logs = Path(self.tmp_dir.name) / "logs"

    def tearDown(self) -> None:
        _detach_handlers()
        self.tmp_dir.cleanup()

    def test_creates_timestamped_run_file(self) -> None:
        log_file = setup_logging(logs_dir=self.logs)

        self.assertTrue(log_file.exists())
        self.assertEqual(log_file.parent, self.logs)
        self.assertRegex(log_file.name, r"^run_\d{8}_\d{6}\.log$")

    def test_module_records_reach_run_file(self) -> None:
        """INFO goes to the file; the quiet console needs WARNING."""
        log_file = setup_logging(logs_dir=self.logs)
        project = logging.getLogger(PROJECT_LOGGER)

        logging.getLogger("price_watch.monitor").info("evaluated 4 watches")
        for handler in project.handlers:
            handler.flush()

        self.assertIn(
            "evaluated 4 watches", log_file.read_text(encoding="utf-8")
        )
        self.assertEqual(_console(project).level, logging.WARNING)

    def test_second_call_reuses_file_and_updates_verbosity(self) -> None:
        first = setup_logging(logs_dir=self.logs)
        second = setup_logging(verbose=True, logs_dir=self.logs)
        project = logging.getLogger(PROJECT_LOGGER)

        self.assertEqual(first, second)
        self.assertEqual(len(project.handlers), 2)
        self.assertEqual(_console(project).level, logging.INFO)

    def test_http_libraries_quieted(self) -> None:
        logging.getLogger("urllib3").setLevel(logging.DEBUG)
        setup_logging(logs_dir=self.logs)
        self.assertEqual(
            logging.getLogger("urllib3").level, logging.WARNING
        )

    @patch("src.config.logging_config.Settings.LOG_KEEP_RUNS", 2)
    def test_old_runs_pruned_before_new_file(self) -> None:
        self.logs.mkdir(parents=True)
        for stamp in ("20261001_060000", "20261002_060000", "20261003_060000"):
            (self.logs / f"run_{stamp}.log").write_text("x", encoding="utf-8")

        log_file = setup_logging(logs_dir=self.logs)

        remaining = sorted(p.name for p in self.logs.glob("run_*.log"))
        self.assertEqual(len(remaining), 2)
        self.assertIn("run_20261003_060000.log", remaining)
        self.assertIn(log_file.name, remaining)


class TestPruneRunLogs(unittest.TestCase):
    """Retention of per-run files."""

    def test_keeps_newest_and_ignores_other_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            logs = Path(tmp)
            for day in (1, 2, 3, 4):
                (logs / f"run_2026100{day}_000000.log").touch()
            (logs / "notes.txt").touch()

            removed = prune_run_logs(logs, keep=2)

            self.assertEqual(
                [p.name for p in removed],
                ["run_20261001_000000.log", "run_20261002_000000.log"],
            )
            self.assertTrue((logs / "notes.txt").exists())
            self.assertEqual(len(list(logs.glob("run_*.log"))), 2)

    def test_zero_keep_removes_everything(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            logs = Path(tmp)
            (logs / "run_20261001_000000.log").touch()
            self.assertEqual(len(prune_run_logs(logs, keep=0)), 1)


if __name__ == "__main__":
    unittest.main()
