"""
Provisioning steps.

A step is a named unit of work: an action, an optional cache key for an
expensive artifact, and the environment it makes available to later steps.
Steps carry no execution state; completion lives in the ledger and ordering
is the position in the list handed to the runner.

Actions receive a ``StepContext`` and signal failure by raising. They must
tolerate being re-run against a partially prepared machine (a crash can
happen after the action's side effects but before the ledger marker), so
write them as "create if missing" rather than "always create".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from vmprovision.cache import CacheKey
from vmprovision.commands import run_command
from vmprovision.environment import DiscoveredEnvironment, EnvironmentUpdate
from vmprovision.errors import ActionFailed, CommandError, StepDefinitionError
from vmprovision.ledger import validate_step_name

__all__ = ["StepContext", "Step", "Action", "ShellAction"]

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """What an action gets to see while it runs."""
    name: str
    env: DiscoveredEnvironment
    cache_available: bool = False


Action = Callable[[StepContext], Optional[EnvironmentUpdate]]


@dataclass
class Step:
    """
    A single idempotent-by-contract unit of provisioning work.

    Attributes:
        name: Stable ledger key. Renaming a step makes it run again.
        action: Callable doing the work; may return an EnvironmentUpdate
        label: Display name for reports
        cache_key: Artifact cache entry consulted before running ``action``
        artifact_dir: Directory the cached artifact is built into / restored to
        env: Environment made available once the step is complete
        finalize: Runs after ``action`` or after a cache restore, before the
            ledger is marked
    """
    name: str
    action: Action
    label: Optional[str] = None
    cache_key: Optional[CacheKey] = None
    artifact_dir: Optional[Union[str, Path]] = None
    env: EnvironmentUpdate = field(default_factory=EnvironmentUpdate)
    finalize: Optional[Action] = None

    def __post_init__(self) -> None:
        validate_step_name(self.name)
        if self.cache_key is not None and self.artifact_dir is None:
            raise StepDefinitionError(
                f"Step '{self.name}' declares a cache key but no artifact_dir"
            )
        if self.label is None:
            self.label = self.name

    def resolve_artifact_dir(self, env: DiscoveredEnvironment) -> Optional[Path]:
        """Artifact directory with ``~`` and ``$VAR`` expanded against ``env``."""
        if self.artifact_dir is None:
            return None
        return Path(env.expand(str(self.artifact_dir)))


class ShellAction:
    """
    Run a bash script in the discovered environment.

    Output is streamed to the terminal; installs can take minutes and the
    user should see progress. A non-zero exit raises ``ActionFailed``.
    """

    def __init__(self, script: str, strict: bool = True):
        """
        Args:
            script: Bash source to execute
            strict: Prefix the script with ``set -euo pipefail``
        """
        self.script = script
        self.strict = strict

    def command(self) -> list[str]:
        source = f"set -euo pipefail\n{self.script}" if self.strict else self.script
        return ["bash", "-c", source]

    def __call__(self, ctx: StepContext) -> None:
        try:
            run_command(self.command(), env=ctx.env, capture=False)
        except CommandError as e:
            message = e.stderr.strip() or "script exited with an error"
            raise ActionFailed(ctx.name, message, e.returncode) from e

    def __repr__(self) -> str:
        first_line = self.script.strip().splitlines()[0] if self.script.strip() else ""
        return f"ShellAction({first_line!r})"
