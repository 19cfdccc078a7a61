"""
Logging setup for converge runs.

main.py calls ``setup_logging()`` once; modules log through
``logging.getLogger(__name__)``.

Console level: CLI flag, then CONVERGE_LOG_LEVEL, then WARNING.
CONVERGE_LOG_FILE adds a file handler (level CONVERGE_LOG_FILE_LEVEL)
whose lines carry the run id. An unattended server keeps DEBUG detail
in the file while the console stays quiet.

Secret values resolved during a run are registered with ``redact()``.
Both handlers mask them before a record is written.
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LEVEL = "CONVERGE_LOG_LEVEL"
ENV_FILE = "CONVERGE_LOG_FILE"
ENV_FILE_LEVEL = "CONVERGE_LOG_FILE_LEVEL"

MASK = "********"

# console level → (format, datefmt)
_CONSOLE_FORMATS = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s  %(message)s", "%H:%M:%S"),
}
_CONSOLE_QUIET = ("%(levelname)s: %(message)s", None)

_FILE_FORMAT = "%(asctime)s %(run_id)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# http.client echoes request headers, including auth, at DEBUG
_NOISY_LOGGERS = ("urllib3", "http.client", "jinja2")

# shorter values would mask ordinary words
_MIN_SECRET_LENGTH = 4


class RunFilter(logging.Filter):
    """Tags records with the current run id and masks registered secrets."""

    def __init__(self) -> None:
        super().__init__()
        self.run_id = "-"
        self._secrets: set[str] = set()

    def add_secret(self, value: str) -> None:
        if value and len(value) >= _MIN_SECRET_LENGTH:
            self._secrets.add(value)

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        if self._secrets:
            message = record.getMessage()
            masked = message
            for secret in self._secrets:
                masked = masked.replace(secret, MASK)
            if masked != message:
                record.msg, record.args = masked, None
        return True


_run_filter = RunFilter()


def bind_run(run_id: str | None) -> None:
    """Tag subsequent log lines with ``run_id`` (None clears it)."""
    _run_filter.run_id = run_id or "-"


def redact(value: str | None) -> None:
    """Never write ``value`` to a log handler."""
    if value:
        _run_filter.add_secret(value)


def resolve_level(verbose: bool = False, quiet: bool = False, debug: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to the env var."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers with converge's.

    Args:
        level: Console level name.
        log_file: Optional log file path.
        log_file_level: Level for the file; defaults to ``level``.
        quiet_third_party: Hold library loggers at WARNING unless the
            console is at DEBUG.
    """
    console_level = _parse_level(level)
    fmt, datefmt = _CONSOLE_FORMATS.get(console_level, _CONSOLE_QUIET)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    console.addFilter(_run_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        root_level = min(root_level, file_level)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        file_handler.addFilter(_run_filter)
        root.addHandler(file_handler)

    root.setLevel(root_level)

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    numeric = logging.getLevelName((level or "").upper())
    return numeric if isinstance(numeric, int) else logging.WARNING
