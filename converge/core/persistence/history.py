"""
Run history — append-only log of reconciliation runs.

Every run writes one entry to an NDJSON file. This is what an
operator reads to see when the server was last converged, what
changed and which action stopped a failed run.

The ledger is append-only: entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_FILE = "history.ndjson"


class HistoryEntry(BaseModel):
    """A single run summary."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    environment: str = ""
    dry_run: bool = False

    # Results
    status: str = ""               # ok, failed
    actions_total: int = 0
    actions_applied: int = 0
    actions_skipped: int = 0
    actions_changed: int = 0
    restart_performed: bool = False
    duration_ms: int = 0

    # Failure (if any)
    failed_action: str | None = None
    error_kind: str | None = None
    error: str | None = None

    # keys of the actions that changed something
    context: dict[str, Any] = Field(default_factory=dict)


class HistoryWriter:
    """Append-only run history writer.

    Each call to write() appends a single JSON line to the ledger file.
    The file is created if it doesn't exist.
    """

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: HistoryEntry) -> None:
        """Append an entry to the ledger.

        History is informational: a failed write is logged, not raised,
        so it can never turn a converged run into a failed one.
        """
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("History entry written: %s (%s)", entry.run_id, entry.status)
        except OSError as e:
            logger.error("Failed to write history entry: %s", e)

    def read_all(self) -> list[HistoryEntry]:
        """Read all entries, oldest first."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(HistoryEntry.model_validate(json.loads(line)))
                    except ValueError as e:
                        logger.warning("Skipping corrupt history entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read history: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[HistoryEntry]:
        """Read the most recent N entries."""
        return self.read_all()[-n:]
