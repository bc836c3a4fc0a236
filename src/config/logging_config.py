# src/config/logging_config.py

"""Logging for price_watch daemons and one-shot commands.

Every invocation writes to its own ``run_<timestamp>.log`` under
``Settings.LOGS_DIR``.  A long-lived daemon produces one file per
restart, so older files are pruned down to ``Settings.LOG_KEEP_RUNS``.
The console only shows warnings unless ``-v`` is given.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from src.config.settings import Settings

PROJECT_LOGGER = "price_watch"

_FILE_LINE = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(threadName)s | "
    "%(module)s:%(funcName)s:%(lineno)d | %(message)s"
)
_CONSOLE_LINE = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_STAMP = "%Y-%m-%d %H:%M:%S"

# HTTP stacks underneath the adapters are chatty at DEBUG
_NOISY_LIBRARIES = ("urllib3", "cloudscraper", "curl_cffi", "charset_normalizer")


def prune_run_logs(logs_dir: Path, keep: int) -> list[Path]:
    """Delete all but the newest ``keep`` run logs; return what was removed."""
    runs = sorted(logs_dir.glob("run_*.log"), key=lambda p: p.name)
    doomed = runs[:-keep] if keep > 0 else runs
    removed: list[Path] = []
    for path in doomed:
        try:
            path.unlink()
        except OSError:
            continue
        removed.append(path)
    return removed


def _is_configured(logger: logging.Logger) -> bool:
    return any(isinstance(h, logging.FileHandler) for h in logger.handlers)


def setup_logging(
    verbose: bool = False, logs_dir: Path | None = None,
) -> Path:
    """Attach the run file and console handlers to ``price_watch``.

    Safe to call more than once; later calls leave the existing handlers
    in place and only adjust the console level.
    """
    target_dir = logs_dir or Settings.LOGS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    console_level = logging.INFO if verbose else logging.WARNING

    project = logging.getLogger(PROJECT_LOGGER)
    project.setLevel(logging.DEBUG)

    if _is_configured(project):
        for handler in project.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(console_level)
        existing = next(
            h for h in project.handlers if isinstance(h, logging.FileHandler)
        )
        return Path(existing.baseFilename)

    # Make room for the file about to be opened
    prune_run_logs(target_dir, Settings.LOG_KEEP_RUNS - 1)
    log_file = target_dir / f"run_{datetime.now():%Y%m%d_%H%M%S}.log"

    to_file = logging.FileHandler(log_file, encoding="utf-8")
    to_file.setLevel(logging.DEBUG)
    to_file.setFormatter(logging.Formatter(_FILE_LINE, datefmt=_STAMP))
    project.addHandler(to_file)

    to_console = logging.StreamHandler(sys.stderr)
    to_console.setLevel(console_level)
    to_console.setFormatter(logging.Formatter(_CONSOLE_LINE, datefmt=_STAMP))
    project.addHandler(to_console)

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    project.debug(
        "Run log %s (console level %s)",
        log_file,
        logging.getLevelName(console_level),
    )
    return log_file
