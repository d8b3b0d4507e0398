"""
Completion ledger for provisioning steps.

Each finished step is recorded as a marker file ``<ledger_dir>/<name>.done``.
Presence of a marker is the only thing that matters when deciding whether a
step is complete; the JSON body (completion timestamp, duration) is
informational and feeds ``vmprovision status``.

Markers are written atomically: temp file in the same directory, fsync,
``os.replace``, then fsync of the directory. A crash at any point either
leaves no marker or a complete one.

Layout:
    ~/.vmclaude/
    ├── python.done
    ├── nvm.done
    ├── ...
    └── setup-complete      # written after a run in which no step failed
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmprovision.errors import LedgerWriteFailed, StepDefinitionError

__all__ = ["CompletionLedger", "MARKER_SUFFIX", "RUN_COMPLETE_MARKER", "validate_step_name"]

logger = logging.getLogger(__name__)

MARKER_SUFFIX = ".done"
RUN_COMPLETE_MARKER = "setup-complete"

_STEP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_step_name(name: str) -> str:
    """Ensure a step name can be used as a marker file name."""
    if not _STEP_NAME_RE.match(name or "") or name == RUN_COMPLETE_MARKER:
        raise StepDefinitionError(
            f"Invalid step name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


def _fsync_dir(path: Path) -> None:
    """Flush directory entries so a rename survives power loss (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class CompletionLedger:
    """
    Durable set of completed step names.

    Single-actor: concurrent runs against the same ledger directory are not
    supported and must be prevented by the caller.
    """

    def __init__(self, path: Path):
        """
        Initialize ledger.

        Args:
            path: Ledger directory. Created lazily on the first write.
        """
        self.path = Path(path)

    def _marker(self, name: str) -> Path:
        return self.path / f"{validate_step_name(name)}{MARKER_SUFFIX}"

    def exists(self) -> bool:
        """Check if the ledger directory exists."""
        return self.path.is_dir()

    def is_complete(self, name: str) -> bool:
        """True iff a marker exists for ``name``. Never raises for a missing ledger."""
        return self._marker(name).is_file()

    def _write_atomic(self, target: Path, payload: Dict[str, Any]) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.path,
            prefix=f".{target.name}-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        _fsync_dir(self.path)

    def mark_complete(self, name: str, duration_seconds: Optional[float] = None) -> None:
        """
        Record ``name`` as complete.

        Must only be called once every side effect of the step has finished.

        Raises:
            LedgerWriteFailed: If the marker could not be written
        """
        marker = self._marker(name)
        payload = {
            "step": name,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "duration_seconds": duration_seconds,
        }
        try:
            self._write_atomic(marker, payload)
        except OSError as e:
            raise LedgerWriteFailed(name, e) from e
        logger.debug("Marked step %s complete at %s", name, marker)

    def completed_at(self, name: str) -> Optional[str]:
        """Return the recorded completion timestamp, if readable."""
        marker = self._marker(name)
        if not marker.is_file():
            return None
        try:
            with open(marker) as f:
                return json.load(f).get("completed_at")
        except (OSError, ValueError, AttributeError):
            # Markers from older tooling are empty files; presence still counts
            return None

    def completed_steps(self) -> List[str]:
        """Names of all completed steps, sorted."""
        if not self.exists():
            return []
        return sorted(
            p.name[: -len(MARKER_SUFFIX)]
            for p in self.path.glob(f"*{MARKER_SUFFIX}")
            if p.is_file()
        )

    def reset(self, name: str) -> bool:
        """
        Force one step to re-run.

        Returns:
            True if a marker was removed
        """
        marker = self._marker(name)
        try:
            marker.unlink()
        except FileNotFoundError:
            return False
        self.clear_run_complete()
        logger.info("Reset step %s", name)
        return True

    def reset_all(self) -> int:
        """
        Delete every marker in the ledger.

        Returns:
            Number of step markers removed
        """
        removed = 0
        for name in self.completed_steps():
            (self.path / f"{name}{MARKER_SUFFIX}").unlink(missing_ok=True)
            removed += 1
        self.clear_run_complete()
        logger.info("Reset %d step(s)", removed)
        return removed

    # Whole-run marker

    def mark_run_complete(self) -> None:
        try:
            self._write_atomic(
                self.path / RUN_COMPLETE_MARKER,
                {"completed_at": datetime.now(timezone.utc).isoformat()},
            )
        except OSError as e:
            raise LedgerWriteFailed(RUN_COMPLETE_MARKER, e) from e

    def run_complete(self) -> bool:
        return (self.path / RUN_COMPLETE_MARKER).is_file()

    def clear_run_complete(self) -> None:
        (self.path / RUN_COMPLETE_MARKER).unlink(missing_ok=True)
