"""
Pytest configuration and fixtures for vmprovision tests.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from vmprovision.cache import ArtifactCache, CacheKey
from vmprovision.config import reset_config
from vmprovision.environment import DiscoveredEnvironment, EnvironmentUpdate
from vmprovision.ledger import CompletionLedger
from vmprovision.steps import Step, StepContext


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_config_env() -> Generator[None, None, None]:
    """Hide VMPROVISION_* variables from the host and reset the config singleton."""
    saved = {k: v for k, v in os.environ.items() if k.startswith("VMPROVISION_")}
    for key in saved:
        del os.environ[key]
    reset_config()

    yield

    reset_config()
    for key in [k for k in os.environ if k.startswith("VMPROVISION_")]:
        del os.environ[key]
    os.environ.update(saved)


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """CLI invocations reconfigure the vmprovision logger; undo that per test."""
    root = logging.getLogger("vmprovision")
    handlers, level, propagate = list(root.handlers), root.level, root.propagate

    yield

    root.handlers[:] = handlers
    root.setLevel(level)
    root.propagate = propagate


@pytest.fixture
def base_env(tmp_path: Path) -> DiscoveredEnvironment:
    """A small, fully controlled environment with HOME inside tmp_path."""
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    return DiscoveredEnvironment(base={"HOME": str(home), "PATH": "/usr/bin:/bin"})


# ============================================================================
# Ledger / Cache Fixtures
# ============================================================================


@pytest.fixture
def ledger(tmp_path: Path) -> CompletionLedger:
    """Ledger in a directory that does not exist yet."""
    return CompletionLedger(tmp_path / "ledger")


@pytest.fixture
def cache(tmp_path: Path) -> ArtifactCache:
    """Available (opted-in) artifact cache."""
    root = tmp_path / "cache"
    (root / "runtimes").mkdir(parents=True)
    return ArtifactCache(root)


@pytest.fixture
def unavailable_cache(tmp_path: Path) -> ArtifactCache:
    """Cache whose runtimes/ directory was never created."""
    return ArtifactCache(tmp_path / "no-cache")


@pytest.fixture
def ruby_key() -> CacheKey:
    return CacheKey(tool="ruby", version="3.3.0", arch="x86_64")


# ============================================================================
# Step Fixtures
# ============================================================================


class RecordingAction:
    """Step action that records its calls and optionally fails."""

    def __init__(
        self,
        calls: List[str],
        name: str,
        fail_times: int = 0,
        update: Optional[EnvironmentUpdate] = None,
        side_effect: Optional[Callable[[StepContext], None]] = None,
    ):
        self.calls = calls
        self.name = name
        self.fail_times = fail_times
        self.update = update
        self.side_effect = side_effect
        self.contexts: List[StepContext] = []

    def __call__(self, ctx: StepContext) -> Optional[EnvironmentUpdate]:
        self.calls.append(self.name)
        self.contexts.append(ctx)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError(f"{self.name} exploded")
        if self.side_effect is not None:
            self.side_effect(ctx)
        return self.update


@pytest.fixture
def calls() -> List[str]:
    """Shared, ordered record of action invocations."""
    return []


@pytest.fixture
def make_step(calls: List[str]) -> Callable[..., Step]:
    """Factory for steps backed by RecordingAction."""

    def _make(name: str, fail_times: int = 0, **kwargs) -> Step:
        action_kwargs = {
            k: kwargs.pop(k) for k in ("update", "side_effect") if k in kwargs
        }
        action = RecordingAction(calls, name, fail_times=fail_times, **action_kwargs)
        return Step(name=name, action=action, **kwargs)

    return _make
