"""Subprocess helpers shared by shell step actions and the environment probe."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from vmprovision.environment import DiscoveredEnvironment
from vmprovision.errors import CommandError

__all__ = ["CommandResult", "run_command"]

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured output of a finished command."""
    cmd: List[str]
    returncode: int
    stdout: str
    stderr: str


def run_command(
    cmd: List[str],
    env: Optional[DiscoveredEnvironment] = None,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    capture: bool = True,
) -> CommandResult:
    """
    Run a command with consistent error handling.

    Args:
        cmd: Command and arguments
        env: Environment to run in (defaults to the current process environment)
        cwd: Working directory
        timeout: Seconds before the command is killed; ``None`` waits forever
        capture: Capture stdout/stderr instead of streaming to the terminal

    Returns:
        CommandResult for a zero exit status

    Raises:
        CommandError: On non-zero exit, missing executable or timeout
    """
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=env.as_dict() if env is not None else None,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, None, stderr=str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, None, stderr=f"timed out after {timeout}s") from e
    except OSError as e:
        raise CommandError(cmd, None, stderr=str(e)) from e

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    if result.returncode != 0:
        logger.debug("Command failed with exit code %d: %s", result.returncode, stderr.strip())
        raise CommandError(cmd, result.returncode, stdout, stderr)

    return CommandResult(cmd=list(cmd), returncode=result.returncode, stdout=stdout, stderr=stderr)
