"""
Logging setup and structured step events.

``configure_logging`` installs one handler on the ``vmprovision`` logger
tree, writing either JSON lines (for log shippers) or plain text to stderr.
Terminal progress for humans is printed by the CLI reporter, not by logging.

Step events emitted by ``StepEventLogger``:
- step.started
- step.skipped
- step.restored
- step.completed
- step.failed
- cache.fallback (restore failed, falling back to a full build)
- cache.store_failed

Usage:
    from vmprovision.logger import StepEventLogger

    events = StepEventLogger(run_id="b1946ac9")
    events.log_step_completed("rust", duration_seconds=42.1)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

__all__ = ["JsonFormatter", "configure_logging", "StepEventLogger"]

_ROOT_LOGGER = "vmprovision"
_EVENT_LOGGER = "vmprovision.steps"


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured events pass through unchanged."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event_payload", None)
        if event is not None:
            return json.dumps(event, default=str)
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "info", fmt: str = "text", stream: Any = None) -> logging.Logger:
    """
    Configure the ``vmprovision`` logger.

    Replaces handlers installed by a previous call so it is safe to call
    more than once (CLI invocations in tests).
    """
    root = logging.getLogger(_ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.propagate = False
    return root


class StepEventLogger:
    """
    Structured logger for step lifecycle events.

    Each entry carries the run id and step name so a single provisioning
    run can be filtered out of a shared log.
    """

    def __init__(self, run_id: str, service_name: str = "vmprovision"):
        self.run_id = run_id
        self.service_name = service_name
        self._logger = logging.getLogger(_EVENT_LOGGER)

    def _emit(self, event: str, step: str, level: str = "info", **extra_fields: Any) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "run_id": self.run_id,
            "step": step,
        }
        entry.update({k: v for k, v in extra_fields.items() if v is not None})

        message = f"{event} step={step}"
        details = " ".join(f"{k}={v}" for k, v in extra_fields.items() if v is not None)
        if details:
            message = f"{message} {details}"

        log = {
            "error": self._logger.error,
            "warn": self._logger.warning,
            "debug": self._logger.debug,
        }.get(level, self._logger.info)
        log(message, extra={"event_payload": entry})

    def log_step_started(self, step: str, cache_key: Optional[str] = None) -> None:
        self._emit("step.started", step, level="debug", cache_key=cache_key)

    def log_step_skipped(self, step: str) -> None:
        self._emit("step.skipped", step)

    def log_step_restored(self, step: str, cache_key: str, duration_seconds: float) -> None:
        self._emit(
            "step.restored",
            step,
            cache_key=cache_key,
            duration_seconds=round(duration_seconds, 3),
        )

    def log_step_completed(self, step: str, duration_seconds: float) -> None:
        self._emit("step.completed", step, duration_seconds=round(duration_seconds, 3))

    def log_step_failed(self, step: str, error: str, duration_seconds: Optional[float] = None) -> None:
        self._emit(
            "step.failed",
            step,
            level="error",
            error=error,
            duration_seconds=round(duration_seconds, 3) if duration_seconds is not None else None,
        )

    def log_cache_fallback(self, step: str, cache_key: str, error: str) -> None:
        self._emit("cache.fallback", step, level="warn", cache_key=cache_key, error=error)

    def log_cache_store_failed(self, step: str, cache_key: str, error: str) -> None:
        self._emit("cache.store_failed", step, level="warn", cache_key=cache_key, error=error)
