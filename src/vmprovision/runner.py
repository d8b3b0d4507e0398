"""
Pipeline runner: ordered, fail-fast, resumable step execution.

Per step, in registration order:

1. Ledger says complete -> SKIPPED.
2. Step has a cache key, the cache is available and holds the key ->
   restore. Any lookup or restore error falls through to 3.
3. Run the action.
4. On success: best-effort cache store (fresh builds only), finalize hook,
   then the ledger marker as the very last operation -> COMPLETED / RESTORED.
5. On failure: ledger untouched -> FAILED, remaining steps are not attempted.

Cache availability is decided once, when the run starts.

Usage:
    runner = PipelineRunner(
        ledger=CompletionLedger(Path("~/.vmclaude").expanduser()),
        cache=ArtifactCache(Path("~/.vmclaude-cache").expanduser()),
    )
    result = runner.run(steps)
    sys.exit(result.exit_code)
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from opentelemetry.trace import Status, StatusCode

from vmprovision.cache import ArtifactCache
from vmprovision.environment import DiscoveredEnvironment, EnvironmentUpdate
from vmprovision.errors import ActionFailed, LedgerWriteFailed, StepDefinitionError
from vmprovision.ledger import CompletionLedger
from vmprovision.logger import StepEventLogger
from vmprovision.steps import Action, Step, StepContext
from vmprovision.telemetry import add_span_event, get_tracer

__all__ = [
    "StepOutcome",
    "StepReport",
    "PipelineResult",
    "RunReporter",
    "PipelineRunner",
]

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    """Terminal outcome of a step within one run."""
    SKIPPED = "skipped"
    COMPLETED = "completed"
    RESTORED = "restored"
    FAILED = "failed"
    PENDING = "pending"  # dry run only


@dataclass
class StepReport:
    """What happened to one step."""
    name: str
    label: str
    outcome: StepOutcome
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    cache_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "outcome": self.outcome.value,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "cache_key": self.cache_key,
        }


@dataclass
class PipelineResult:
    """
    Result of one pipeline run.

    ``completed`` lists every step that did work this run, including those
    restored from the cache; ``restored`` is the subset that came from the
    cache.
    """
    completed: List[str] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    error: Optional[str] = None
    not_attempted: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    reports: List[StepReport] = field(default_factory=list)
    environment: Optional[DiscoveredEnvironment] = None

    @property
    def success(self) -> bool:
        return self.failed is None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "completed": list(self.completed),
            "restored": list(self.restored),
            "skipped": list(self.skipped),
            "failed": self.failed,
            "error": self.error,
            "not_attempted": list(self.not_attempted),
            "pending": list(self.pending),
            "steps": [r.to_dict() for r in self.reports],
        }


class RunReporter:
    """Progress callbacks. The default implementation ignores everything."""

    def run_started(self, steps: Sequence[Step], cache_available: bool) -> None:
        pass

    def step_started(self, step: Step) -> None:
        pass

    def step_skipped(self, step: Step) -> None:
        pass

    def step_pending(self, step: Step, cache_hit: bool) -> None:
        pass

    def step_restored(self, step: Step, duration_seconds: float) -> None:
        pass

    def step_completed(self, step: Step, duration_seconds: float) -> None:
        pass

    def step_failed(self, step: Step, error: str) -> None:
        pass

    def cache_fallback(self, step: Step, error: str) -> None:
        pass

    def cache_store_failed(self, step: Step, error: str) -> None:
        pass


def _check_unique(steps: Sequence[Step]) -> None:
    seen = set()
    for step in steps:
        if step.name in seen:
            raise StepDefinitionError(f"Duplicate step name '{step.name}'")
        seen.add(step.name)


def _call_action(action: Action, ctx: StepContext) -> Optional[EnvironmentUpdate]:
    """Invoke an action, normalising every failure to ActionFailed."""
    try:
        update = action(ctx)
    except ActionFailed:
        raise
    except Exception as e:
        raise ActionFailed(ctx.name, str(e) or type(e).__name__) from e
    return update if isinstance(update, EnvironmentUpdate) else None


class PipelineRunner:
    """
    Runs an ordered list of steps against a ledger and an optional cache.

    Single-threaded and single-actor: one runner per ledger at a time.
    """

    def __init__(
        self,
        ledger: CompletionLedger,
        cache: Optional[ArtifactCache] = None,
        reporter: Optional[RunReporter] = None,
        env: Optional[DiscoveredEnvironment] = None,
        dry_run: bool = False,
        run_id: Optional[str] = None,
    ):
        """
        Initialize runner.

        Args:
            ledger: Completion ledger
            cache: Artifact cache; ``None`` disables caching entirely
            reporter: Progress callbacks (e.g. terminal output)
            env: Starting environment (defaults to the process environment)
            dry_run: Report what would run without invoking actions or
                touching the ledger or cache
            run_id: Identifier attached to log events
        """
        self.ledger = ledger
        self.cache = cache
        self.reporter = reporter or RunReporter()
        self.env = env if env is not None else DiscoveredEnvironment.from_os()
        self.dry_run = dry_run
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.events = StepEventLogger(run_id=self.run_id)
        self._tracer = get_tracer()

    def run(self, steps: Sequence[Step]) -> PipelineResult:
        """
        Run ``steps`` in order.

        Raises:
            StepDefinitionError: Duplicate step names (before any work)
        """
        steps = list(steps)
        _check_unique(steps)

        cache_available = self.cache is not None and self.cache.available()
        logger.debug(
            "Starting run %s: %d steps, cache %s",
            self.run_id,
            len(steps),
            "available" if cache_available else "unavailable",
        )
        self.reporter.run_started(steps, cache_available)

        result = PipelineResult()
        env = self.env

        with self._tracer.start_as_current_span(
            "provision.run",
            attributes={
                "run.id": self.run_id,
                "run.step_count": len(steps),
                "run.cache_available": cache_available,
                "run.dry_run": self.dry_run,
            },
        ) as run_span:
            for index, step in enumerate(steps):
                if self.ledger.is_complete(step.name):
                    env = env.applied(step.env)
                    result.skipped.append(step.name)
                    result.reports.append(StepReport(step.name, step.label, StepOutcome.SKIPPED))
                    self.events.log_step_skipped(step.name)
                    self.reporter.step_skipped(step)
                    continue

                if self.dry_run:
                    cache_hit = cache_available and self._cached(step)
                    env = env.applied(step.env)
                    result.pending.append(step.name)
                    result.reports.append(
                        StepReport(
                            step.name,
                            step.label,
                            StepOutcome.PENDING,
                            cache_key=str(step.cache_key) if cache_hit else None,
                        )
                    )
                    self.reporter.step_pending(step, cache_hit)
                    continue

                report, env = self._run_step(step, env, cache_available)
                result.reports.append(report)

                if report.outcome is StepOutcome.FAILED:
                    result.failed = step.name
                    result.error = report.error
                    result.not_attempted = [s.name for s in steps[index + 1:]]
                    break

                result.completed.append(step.name)
                if report.outcome is StepOutcome.RESTORED:
                    result.restored.append(step.name)

            run_span.set_attribute("run.completed", len(result.completed))
            run_span.set_attribute("run.skipped", len(result.skipped))
            if result.failed:
                run_span.set_attribute("run.failed_step", result.failed)
                run_span.set_status(Status(StatusCode.ERROR, result.error or ""))

        if result.success and not self.dry_run:
            try:
                self.ledger.mark_run_complete()
            except LedgerWriteFailed as e:
                logger.warning("%s", e)

        result.environment = env
        return result

    def _cached(self, step: Step) -> bool:
        """Dry-run cache lookup; lookup errors count as a miss."""
        if step.cache_key is None:
            return False
        try:
            return self.cache.has(step.cache_key)
        except Exception as e:
            logger.warning("Cache lookup of %s failed: %s", step.cache_key, e)
            return False

    def _run_step(
        self,
        step: Step,
        env: DiscoveredEnvironment,
        cache_available: bool,
    ) -> tuple[StepReport, DiscoveredEnvironment]:
        key = step.cache_key
        key_str = str(key) if key is not None else None
        start = time.monotonic()

        self.events.log_step_started(step.name, cache_key=key_str)
        self.reporter.step_started(step)

        with self._tracer.start_as_current_span(
            "provision.step",
            attributes={"step.name": step.name},
        ) as span:
            try:
                env_after, restored = self._execute(step, env, cache_available)
                self.ledger.mark_complete(step.name, duration_seconds=time.monotonic() - start)
            except (ActionFailed, LedgerWriteFailed) as e:
                duration = time.monotonic() - start
                span.set_attribute("step.outcome", StepOutcome.FAILED.value)
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                self.events.log_step_failed(step.name, str(e), duration)
                self.reporter.step_failed(step, str(e))
                report = StepReport(
                    step.name,
                    step.label,
                    StepOutcome.FAILED,
                    duration_seconds=duration,
                    error=str(e),
                    cache_key=key_str,
                )
                return report, env

            duration = time.monotonic() - start
            outcome = StepOutcome.RESTORED if restored else StepOutcome.COMPLETED
            span.set_attribute("step.outcome", outcome.value)

        if restored:
            self.events.log_step_restored(step.name, key_str, duration)
            self.reporter.step_restored(step, duration)
        else:
            self.events.log_step_completed(step.name, duration)
            self.reporter.step_completed(step, duration)

        report = StepReport(
            step.name,
            step.label,
            outcome,
            duration_seconds=duration,
            cache_key=key_str if restored else None,
        )
        return report, env_after

    def _execute(
        self,
        step: Step,
        env: DiscoveredEnvironment,
        cache_available: bool,
    ) -> tuple[DiscoveredEnvironment, bool]:
        """Restore or run the step, store a fresh artifact, run finalize."""
        key = step.cache_key
        artifact_dir = step.resolve_artifact_dir(env)
        restored = False

        if key is not None and cache_available:
            try:
                if self.cache.has(key):
                    self.cache.restore(key, artifact_dir)
                    restored = True
                    add_span_event("cache.restored", {"cache.key": str(key)})
            except Exception as e:
                # Any restore problem degrades to a full build
                logger.warning("Cache restore of %s failed, building instead: %s", key, e)
                self.events.log_cache_fallback(step.name, str(key), str(e))
                self.reporter.cache_fallback(step, str(e))

        if not restored:
            update = _call_action(step.action, StepContext(step.name, env, cache_available))
            env = env.applied(update)
            if key is not None and cache_available:
                try:
                    self.cache.store(key, artifact_dir)
                    add_span_event("cache.stored", {"cache.key": str(key)})
                except Exception as e:
                    logger.warning("Could not cache %s: %s", key, e)
                    self.events.log_cache_store_failed(step.name, str(key), str(e))
                    self.reporter.cache_store_failed(step, str(e))

        env = env.applied(step.env)
        if step.finalize is not None:
            update = _call_action(step.finalize, StepContext(step.name, env, cache_available))
            env = env.applied(update)

        return env, restored
