"""
Run journal - finished RunReports persisted as JSON.

Layout:
    runs_dir/
        {run_id}.json

Run ids are ULIDs, so sorting file names sorts runs by start time. Reports
are written to a temporary file and renamed into place, so a crash never
leaves a half-written {run_id}.json behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from provisio.errors import JournalError
from provisio.schemas import RunReport

logger = logging.getLogger(__name__)


class RunJournal:
    """File-based store of finished run reports."""

    def __init__(self, runs_dir: Path | str):
        self._runs_dir = Path(runs_dir).expanduser()

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def save(self, report: RunReport) -> Path:
        """
        Write a finalized report atomically.

        Raises:
            ValueError: If the report is not final
        """
        if not report.is_final:
            raise ValueError(f"Run {report.run_id} is not finalized")
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        path = self._runs_dir / f"{report.run_id}.json"
        fd, tmp_name = tempfile.mkstemp(
            dir=self._runs_dir, prefix=f".{report.run_id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(report.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Journaled run {report.run_id} to {path}", extra={"event": "run_journaled"})
        return path

    def load(self, run_id: str) -> Optional[RunReport]:
        """
        Load a report by run id, or None if it was never journaled.

        Raises:
            JournalError: If the file exists but is not a readable report
        """
        path = self._runs_dir / f"{run_id}.json"
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return RunReport.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError, RuntimeError) as e:
            # json.JSONDecodeError is a ValueError
            raise JournalError(f"Unreadable run report {path}: {e}") from e

    def list_runs(self) -> list[str]:
        """Run ids, newest first."""
        if not self._runs_dir.exists():
            return []
        return sorted((p.stem for p in self._runs_dir.glob("*.json")), reverse=True)

    def latest(self) -> Optional[RunReport]:
        """The newest readable report; unreadable entries are skipped."""
        for run_id in self.list_runs():
            try:
                return self.load(run_id)
            except JournalError as e:
                logger.warning(str(e), extra={"event": "journal_entry_unreadable"})
        return None
