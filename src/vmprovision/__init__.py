"""
vmprovision - resumable, idempotent provisioning of development VMs.

Runs an ordered list of installation steps exactly once each. Completed
steps are recorded in a marker-file ledger so re-running after a crash or a
network failure resumes at the first unfinished step, and expensive builds
can be restored from an artifact cache instead of rebuilt.

Example:
    from pathlib import Path
    from vmprovision import ArtifactCache, CompletionLedger, PipelineRunner
    from vmprovision.catalog import load_default_steps

    runner = PipelineRunner(
        ledger=CompletionLedger(Path.home() / ".vmclaude"),
        cache=ArtifactCache(Path.home() / ".vmclaude-cache"),
    )
    result = runner.run(load_default_steps())
"""

from vmprovision.cache import ArtifactCache, CacheKey
from vmprovision.environment import DiscoveredEnvironment, EnvironmentUpdate
from vmprovision.errors import (
    ActionFailed,
    CacheCorrupt,
    CacheMiss,
    CacheStoreFailed,
    LedgerWriteFailed,
    ProvisionError,
    StepDefinitionError,
)
from vmprovision.ledger import CompletionLedger
from vmprovision.probe import EnvironmentProbe, ToolProbe, ToolVersion
from vmprovision.runner import PipelineResult, PipelineRunner, RunReporter, StepOutcome
from vmprovision.steps import ShellAction, Step, StepContext

__version__ = "0.3.0"

__all__ = [
    "ActionFailed",
    "ArtifactCache",
    "CacheCorrupt",
    "CacheKey",
    "CacheMiss",
    "CacheStoreFailed",
    "CompletionLedger",
    "DiscoveredEnvironment",
    "EnvironmentProbe",
    "EnvironmentUpdate",
    "LedgerWriteFailed",
    "PipelineResult",
    "PipelineRunner",
    "ProvisionError",
    "RunReporter",
    "ShellAction",
    "Step",
    "StepContext",
    "StepDefinitionError",
    "StepOutcome",
    "ToolProbe",
    "ToolVersion",
]
