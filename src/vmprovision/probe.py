"""
Read-only report of installed tool versions.

Used for the summary printed after a run. Probing never raises and never
influences the pipeline result: anything that goes wrong while asking a tool
for its version is reported as "not found".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from vmprovision.commands import run_command
from vmprovision.environment import DiscoveredEnvironment
from vmprovision.errors import CommandError

__all__ = ["ToolProbe", "ToolVersion", "EnvironmentProbe", "DEFAULT_PROBES", "NOT_FOUND"]

logger = logging.getLogger(__name__)

NOT_FOUND = "not found"
DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class ToolProbe:
    """How to ask one tool for its version."""
    label: str
    command: tuple[str, ...]


@dataclass
class ToolVersion:
    label: str
    version: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.version is not None

    def display(self) -> str:
        return self.version if self.version is not None else NOT_FOUND


def _shell(script: str) -> tuple[str, ...]:
    return ("bash", "-c", script)


# nvm only exists as a shell function, so node and pnpm are queried after
# sourcing it.
_NVM = '[ -s "${NVM_DIR:-$HOME/.nvm}/nvm.sh" ] && . "${NVM_DIR:-$HOME/.nvm}/nvm.sh" >/dev/null 2>&1; '

DEFAULT_PROBES: tuple[ToolProbe, ...] = (
    ToolProbe("Python", ("python3", "--version")),
    ToolProbe("Node.js", _shell(_NVM + "node --version")),
    ToolProbe("pnpm", _shell(_NVM + "pnpm --version")),
    ToolProbe("Rust", ("rustc", "--version")),
    ToolProbe("Go", _shell("command -v go >/dev/null && go version || /usr/local/go/bin/go version")),
    ToolProbe("Ruby", ("ruby", "--version")),
    ToolProbe("Claude", ("claude", "--version")),
)


class EnvironmentProbe:
    """Queries tool versions using the environment discovered during a run."""

    def __init__(
        self,
        probes: Sequence[ToolProbe] = DEFAULT_PROBES,
        timeout: float = DEFAULT_TIMEOUT_S,
    ):
        self.probes = list(probes)
        self.timeout = timeout

    def query(self, probe: ToolProbe, env: Optional[DiscoveredEnvironment] = None) -> ToolVersion:
        """Version of a single tool, or an unfound ToolVersion."""
        try:
            result = run_command(list(probe.command), env=env, timeout=self.timeout)
        except CommandError as e:
            logger.debug("Probe %s failed: %s", probe.label, e)
            return ToolVersion(probe.label)
        except Exception as e:
            logger.debug("Probe %s raised unexpectedly: %s", probe.label, e)
            return ToolVersion(probe.label)

        # Some tools (python2, java) print their version on stderr
        output = result.stdout.strip() or result.stderr.strip()
        if not output:
            return ToolVersion(probe.label)
        return ToolVersion(probe.label, output.splitlines()[0].strip())

    def collect(self, env: Optional[DiscoveredEnvironment] = None) -> List[ToolVersion]:
        """Versions of every known tool, in probe order."""
        return [self.query(probe, env) for probe in self.probes]
