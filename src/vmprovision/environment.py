"""
Discovered environment threaded through a provisioning run.

Installing nvm, rustup or rbenv makes new executables and variables
available, but only to shells that source the right profile snippets. Rather
than mutating ``os.environ``, each step declares what it made available as an
``EnvironmentUpdate`` and the runner folds those into an immutable
``DiscoveredEnvironment`` handed to every later step and to the probe.

Example:
    env = DiscoveredEnvironment.from_os()
    env = env.applied(EnvironmentUpdate(
        vars={"NVM_DIR": "~/.nvm"},
        path=["~/.cargo/bin"],
    ))
    subprocess.run(["cargo", "--version"], env=env.as_dict())
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

__all__ = ["EnvironmentUpdate", "DiscoveredEnvironment"]

_VAR_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<plain>[A-Za-z_][A-Za-z0-9_]*))")


@dataclass(frozen=True)
class EnvironmentUpdate:
    """Variables and PATH entries a step makes available to later steps."""
    vars: Mapping[str, str] = field(default_factory=dict)
    path: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "vars", dict(self.vars))
        object.__setattr__(self, "path", tuple(self.path))

    def is_empty(self) -> bool:
        return not self.vars and not self.path


class DiscoveredEnvironment:
    """
    Immutable view of the process environment plus everything discovered so far.

    PATH entries from updates are prepended in application order, later
    updates taking precedence. Values are expanded against the environment
    itself (``~``, ``$HOME``, ``${VAR}``), not against ``os.environ``.
    """

    def __init__(
        self,
        base: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, str]] = None,
        path_entries: Tuple[str, ...] = (),
    ):
        self._base: Dict[str, str] = dict(base or {})
        self._overrides: Dict[str, str] = dict(overrides or {})
        self._path_entries: Tuple[str, ...] = tuple(path_entries)

    @classmethod
    def from_os(cls) -> "DiscoveredEnvironment":
        return cls(base=os.environ)

    @property
    def discovered(self) -> Dict[str, str]:
        """Variables added by steps (excludes the base environment)."""
        return dict(self._overrides)

    @property
    def path_entries(self) -> Tuple[str, ...]:
        """PATH entries added by steps, highest precedence first."""
        return self._path_entries

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name == "PATH":
            return self.as_dict().get("PATH", default)
        if name in self._overrides:
            return self._overrides[name]
        return self._base.get(name, default)

    def expand(self, value: str) -> str:
        """Expand ``~`` and ``$VAR`` references using this environment."""
        home = self.get("HOME") or os.path.expanduser("~")
        if value == "~" or value.startswith("~/"):
            value = home + value[1:]

        def _sub(match: re.Match) -> str:
            name = match.group("braced") or match.group("plain")
            found = self.get(name)
            return found if found is not None else match.group(0)

        return _VAR_RE.sub(_sub, value)

    def applied(self, update: Optional[EnvironmentUpdate]) -> "DiscoveredEnvironment":
        """Return a new environment with ``update`` folded in."""
        if update is None or update.is_empty():
            return self
        overrides = dict(self._overrides)
        interim = DiscoveredEnvironment(self._base, overrides, self._path_entries)
        for name, value in update.vars.items():
            overrides[name] = interim.expand(value)
        expanded = tuple(interim.expand(p) for p in update.path)
        # Newest entries first, without duplicates
        entries = expanded + tuple(p for p in self._path_entries if p not in expanded)
        return DiscoveredEnvironment(self._base, overrides, entries)

    def as_dict(self) -> Dict[str, str]:
        """Full environment suitable for ``subprocess`` ``env=``."""
        env = dict(self._base)
        env.update(self._overrides)
        if self._path_entries:
            existing = [p for p in env.get("PATH", "").split(os.pathsep) if p]
            merged = list(self._path_entries) + [p for p in existing if p not in self._path_entries]
            env["PATH"] = os.pathsep.join(merged)
        return env
