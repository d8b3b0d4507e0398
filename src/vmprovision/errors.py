"""
Error taxonomy for provisioning runs.

Only ``ActionFailed`` and ``LedgerWriteFailed`` stop a pipeline run. Cache
errors are absorbed by the runner and downgrade to a full build.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ProvisionError",
    "ActionFailed",
    "LedgerWriteFailed",
    "CacheError",
    "CacheMiss",
    "CacheCorrupt",
    "CacheStoreFailed",
    "StepDefinitionError",
    "CommandError",
]


class ProvisionError(Exception):
    """Base class for all provisioning errors."""


class ActionFailed(ProvisionError):
    """A step's action did not complete. Retryable on the next run."""

    def __init__(
        self,
        step: str,
        message: str,
        returncode: Optional[int] = None,
    ) -> None:
        self.step = step
        self.message = message
        self.returncode = returncode
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(f"Step '{step}' failed{detail}: {message}")


class LedgerWriteFailed(ProvisionError):
    """The completion marker could not be written after a successful action."""

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Could not record completion of step '{step}': {cause}")


class CacheError(ProvisionError):
    """Base class for artifact cache errors. Never fatal to a run."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"{key}: {message}")


class CacheMiss(CacheError):
    """No artifact is stored under the requested key."""


class CacheCorrupt(CacheError):
    """The stored artifact is unreadable or incomplete."""


class CacheStoreFailed(CacheError):
    """A freshly built artifact could not be captured."""


class StepDefinitionError(ProvisionError):
    """A step definition is malformed (bad name, duplicate, invalid YAML)."""


class CommandError(ProvisionError):
    """A subprocess exited non-zero or could not be started."""

    def __init__(
        self,
        cmd: list[str],
        returncode: Optional[int],
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [f"Command: {' '.join(self.cmd)}"]
        if self.returncode is None:
            parts.append("Command could not be started")
        else:
            parts.append(f"Exit code: {self.returncode}")
        if self.stderr:
            parts.append(f"Error: {self.stderr.strip()}")
        return "\n".join(parts)
