"""
Tests for PipelineRunner - ordered, fail-fast, resumable execution.
"""

import os
from unittest.mock import MagicMock, patch

import pytest

from vmprovision.cache import ArtifactCache, CacheKey
from vmprovision.environment import EnvironmentUpdate
from vmprovision.errors import ActionFailed, CacheCorrupt, LedgerWriteFailed, StepDefinitionError
from vmprovision.runner import PipelineResult, PipelineRunner, RunReporter, StepOutcome
from vmprovision.steps import Step


class RecordingReporter(RunReporter):
    """Collects (event, step name) pairs."""

    def __init__(self):
        self.events = []

    def step_started(self, step):
        self.events.append(("started", step.name))

    def step_skipped(self, step):
        self.events.append(("skipped", step.name))

    def step_pending(self, step, cache_hit):
        self.events.append(("pending", step.name, cache_hit))

    def step_restored(self, step, duration_seconds):
        self.events.append(("restored", step.name))

    def step_completed(self, step, duration_seconds):
        self.events.append(("completed", step.name))

    def step_failed(self, step, error):
        self.events.append(("failed", step.name))

    def cache_fallback(self, step, error):
        self.events.append(("cache_fallback", step.name))

    def cache_store_failed(self, step, error):
        self.events.append(("cache_store_failed", step.name))


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def runner_factory(ledger, base_env, reporter):
    def _make(cache=None, dry_run=False):
        return PipelineRunner(
            ledger=ledger,
            cache=cache,
            reporter=reporter,
            env=base_env,
            dry_run=dry_run,
            run_id="test-run",
        )

    return _make


def _build_artifact(ctx):
    """Simulate a slow build producing ~/.rbenv/versions/3.3.0."""
    target = ctx.env.expand("~/.rbenv/versions/3.3.0")
    os.makedirs(os.path.join(target, "bin"), exist_ok=True)
    with open(os.path.join(target, "bin", "ruby"), "w") as f:
        f.write("ruby")


RUBY_DIR = "~/.rbenv/versions/3.3.0"


class TestFreshRun:
    """All steps pending."""

    def test_runs_every_step_in_order(self, runner_factory, make_step, calls, ledger):
        steps = [make_step("a"), make_step("b"), make_step("c")]

        result = runner_factory().run(steps)

        assert calls == ["a", "b", "c"]
        assert result.completed == ["a", "b", "c"]
        assert result.skipped == []
        assert result.failed is None
        assert result.success
        assert result.exit_code == 0
        assert ledger.completed_steps() == ["a", "b", "c"]
        assert ledger.run_complete()

    def test_empty_pipeline(self, runner_factory):
        result = runner_factory().run([])
        assert result.success
        assert result.completed == []

    def test_marker_written_after_action(self, runner_factory, make_step, ledger):
        """The ledger is the last thing touched for a step."""
        seen = []
        step = make_step("a", side_effect=lambda ctx: seen.append(ledger.is_complete("a")))

        runner_factory().run([step])

        assert seen == [False]
        assert ledger.is_complete("a")


class TestIdempotence:
    """A second run with nothing new to do performs no work."""

    def test_second_run_skips_everything(self, runner_factory, make_step, calls, reporter):
        steps = [make_step("a"), make_step("b")]
        runner_factory().run(steps)
        calls.clear()
        reporter.events.clear()

        result = runner_factory().run(steps)

        assert calls == []
        assert result.skipped == ["a", "b"]
        assert result.completed == []
        assert result.success
        assert reporter.events == [("skipped", "a"), ("skipped", "b")]

    def test_reports_carry_outcomes(self, runner_factory, make_step):
        steps = [make_step("a")]
        runner_factory().run(steps)

        result = runner_factory().run(steps)

        assert [r.outcome for r in result.reports] == [StepOutcome.SKIPPED]


class TestFailFastAndResume:
    """The first failure stops the run; the next run resumes there."""

    def test_b_fails_then_resumes(self, runner_factory, make_step, calls, ledger):
        steps = [make_step("a"), make_step("b", fail_times=1), make_step("c")]

        first = runner_factory().run(steps)

        assert calls == ["a", "b"]
        assert first.completed == ["a"]
        assert first.failed == "b"
        assert "b exploded" in first.error
        assert first.not_attempted == ["c"]
        assert first.exit_code == 1
        assert ledger.completed_steps() == ["a"]
        assert not ledger.run_complete()

        calls.clear()
        second = runner_factory().run(steps)

        assert calls == ["b", "c"]
        assert second.skipped == ["a"]
        assert second.completed == ["b", "c"]
        assert second.success
        assert ledger.run_complete()

    def test_action_failed_message_preserved(self, runner_factory, ledger):
        def fail(ctx):
            raise ActionFailed(ctx.name, "download failed", returncode=22)

        result = runner_factory().run([Step(name="rust", action=fail)])

        assert result.failed == "rust"
        assert "exit code 22" in result.error
        assert "download failed" in result.error
        assert not ledger.is_complete("rust")

    def test_failed_report(self, runner_factory, make_step):
        result = runner_factory().run([make_step("a", fail_times=1)])

        (report,) = result.reports
        assert report.outcome is StepOutcome.FAILED
        assert report.error == result.error
        assert report.duration_seconds is not None

    def test_finalize_failure_fails_step(self, runner_factory, calls, make_step, ledger):
        def bad_finalize(ctx):
            raise RuntimeError("bundler install failed")

        step = make_step("ruby", finalize=bad_finalize)
        result = runner_factory().run([step, make_step("claude-code")])

        assert result.failed == "ruby"
        assert calls == ["ruby"]
        assert not ledger.is_complete("ruby")

    def test_reporter_sees_failure(self, runner_factory, make_step, reporter):
        runner_factory().run([make_step("a", fail_times=1), make_step("b")])
        assert reporter.events == [("started", "a"), ("failed", "a")]


class TestLedgerWriteFailure:
    """Work done but not recorded is reported as a failure and redone later."""

    def test_ledger_write_failure_fails_run(self, runner_factory, make_step, calls, ledger):
        steps = [make_step("a"), make_step("b")]
        original = ledger.mark_complete

        def flaky(name, duration_seconds=None):
            if name == "a":
                raise LedgerWriteFailed(name, OSError("read-only file system"))
            return original(name, duration_seconds=duration_seconds)

        with patch.object(ledger, "mark_complete", side_effect=flaky):
            result = runner_factory().run(steps)

        assert calls == ["a"]
        assert result.failed == "a"
        assert "read-only" in result.error
        assert result.not_attempted == ["b"]

        # At-least-once: the action runs again on the next attempt
        calls.clear()
        result = runner_factory().run(steps)
        assert calls == ["a", "b"]
        assert result.success

    def test_run_complete_write_failure_is_not_fatal(self, runner_factory, make_step, ledger):
        with patch.object(
            ledger,
            "mark_run_complete",
            side_effect=LedgerWriteFailed("setup-complete", OSError("nope")),
        ):
            result = runner_factory().run([make_step("a")])

        assert result.success
        assert ledger.is_complete("a")


class TestDuplicateNames:
    def test_rejected_before_any_work(self, runner_factory, make_step, calls, ledger):
        with pytest.raises(StepDefinitionError, match="Duplicate"):
            runner_factory().run([make_step("a"), make_step("b"), make_step("a")])

        assert calls == []
        assert not ledger.exists()


class TestEnvironmentThreading:
    """Later steps see what earlier steps made available."""

    def test_returned_update_visible_to_later_steps(self, runner_factory, make_step, base_env):
        first = make_step("nvm", update=EnvironmentUpdate(vars={"NVM_DIR": "~/.nvm"}))
        second = make_step("node")

        result = runner_factory().run([first, second])

        node_ctx = second.action.contexts[0]
        assert node_ctx.env.get("NVM_DIR") == f"{base_env.get('HOME')}/.nvm"
        assert result.environment.get("NVM_DIR") == node_ctx.env.get("NVM_DIR")
        assert base_env.get("NVM_DIR") is None

    def test_declared_env_applied_after_step(self, runner_factory, make_step, base_env):
        rust = make_step("rust", env=EnvironmentUpdate(path=["~/.cargo/bin"]))
        after = make_step("after")

        runner_factory().run([rust, after])

        path = after.action.contexts[0].env.get("PATH")
        assert path.startswith(f"{base_env.get('HOME')}/.cargo/bin")
        # The step's own action runs before its declared env exists
        assert ".cargo" not in rust.action.contexts[0].env.get("PATH")

    def test_skipped_steps_still_contribute_env(self, runner_factory, make_step, ledger):
        rust = make_step("rust", env=EnvironmentUpdate(path=["/opt/cargo/bin"]))
        after = make_step("after")
        ledger.mark_complete("rust")

        result = runner_factory().run([rust, after])

        assert result.skipped == ["rust"]
        assert after.action.contexts[0].env.path_entries == ("/opt/cargo/bin",)

    def test_failed_run_returns_environment(self, runner_factory, make_step):
        result = runner_factory().run(
            [make_step("a", env=EnvironmentUpdate(vars={"X": "1"})), make_step("b", fail_times=1)]
        )
        assert result.environment.get("X") == "1"


class TestDryRun:
    def test_nothing_executed_or_recorded(self, runner_factory, make_step, calls, ledger, reporter):
        ledger.mark_complete("a")
        steps = [make_step("a"), make_step("b"), make_step("c")]

        result = runner_factory(dry_run=True).run(steps)

        assert calls == []
        assert result.skipped == ["a"]
        assert result.pending == ["b", "c"]
        assert ledger.completed_steps() == ["a"]
        assert not ledger.run_complete()
        assert ("pending", "b", False) in reporter.events

    def test_reports_cache_hits(self, runner_factory, make_step, reporter):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True
        cache.has.return_value = True
        key = CacheKey(tool="ruby", version="3.3.0", arch="x86_64")
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache, dry_run=True).run([step])

        assert result.reports[0].cache_key == "ruby-3.3.0-x86_64"
        assert reporter.events == [("pending", "ruby", True)]
        cache.restore.assert_not_called()
        cache.store.assert_not_called()

    def test_lookup_error_reported_as_miss(self, runner_factory, make_step, reporter):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True
        cache.has.side_effect = OSError(36, "File name too long")
        key = CacheKey(tool="ruby", version="3.3.0", arch="x86_64")
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache, dry_run=True).run([step])

        assert result.success
        assert reporter.events == [("pending", "ruby", False)]


class TestCache:
    """Cache interaction is best effort and never changes success."""

    @pytest.fixture
    def key(self):
        return CacheKey(tool="ruby", version="3.3.0", arch="x86_64")

    def test_unavailable_cache_never_consulted(self, runner_factory, make_step, calls, key):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = False
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache).run([step])

        assert calls == ["ruby"]
        assert result.completed == ["ruby"]
        assert result.restored == []
        cache.available.assert_called_once_with()
        cache.has.assert_not_called()
        cache.restore.assert_not_called()
        cache.store.assert_not_called()

    def test_no_cache_at_all(self, runner_factory, make_step, calls, key):
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)
        result = runner_factory(cache=None).run([step])
        assert result.completed == ["ruby"]

    def test_corrupt_entry_falls_back_to_action(
        self, runner_factory, make_step, calls, key, ledger, reporter
    ):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True
        cache.has.return_value = True
        cache.restore.side_effect = CacheCorrupt(str(key), "truncated")
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache).run([step])

        assert calls == ["ruby"]
        assert result.completed == ["ruby"]
        assert result.restored == []
        assert result.success
        assert ledger.is_complete("ruby")
        assert ("cache_fallback", "ruby") in reporter.events
        cache.store.assert_called_once()

    def test_fresh_build_is_stored(self, runner_factory, make_step, cache, key, base_env):
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR, side_effect=_build_artifact)

        result = runner_factory(cache=cache).run([step])

        assert result.completed == ["ruby"]
        assert cache.has(key)

    def test_restore_skips_action(
        self, runner_factory, make_step, calls, cache, key, base_env, ledger, tmp_path
    ):
        # Produce an artifact on "another VM" and cache it
        other_home = tmp_path / "other"
        build = other_home / "versions" / "3.3.0"
        (build / "bin").mkdir(parents=True)
        (build / "bin" / "ruby").write_text("ruby")
        cache.store(key, build)

        finalized = []
        step = make_step(
            "ruby",
            cache_key=key,
            artifact_dir=RUBY_DIR,
            finalize=lambda ctx: finalized.append(ctx.name),
        )

        result = runner_factory(cache=cache).run([step])

        assert calls == []
        assert finalized == ["ruby"]
        assert result.completed == ["ruby"]
        assert result.restored == ["ruby"]
        assert result.reports[0].outcome is StepOutcome.RESTORED
        assert ledger.is_complete("ruby")
        restored_ruby = base_env.expand(RUBY_DIR) + "/bin/ruby"
        with open(restored_ruby) as f:
            assert f.read() == "ruby"

    def test_store_failure_is_not_fatal(self, runner_factory, make_step, cache, key, reporter):
        # Action "succeeds" without producing the artifact directory
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache).run([step])

        assert result.success
        assert result.completed == ["ruby"]
        assert not cache.has(key)
        assert ("cache_store_failed", "ruby") in reporter.events

    def test_failed_action_is_not_stored(self, runner_factory, make_step, key):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True
        cache.has.return_value = False
        step = make_step("ruby", fail_times=1, cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache).run([step])

        assert result.failed == "ruby"
        cache.store.assert_not_called()

    def test_lookup_error_falls_back_to_action(
        self, runner_factory, make_step, calls, key, ledger, reporter
    ):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True
        cache.has.side_effect = PermissionError(13, "Permission denied")
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR)

        result = runner_factory(cache=cache).run([step])

        assert calls == ["ruby"]
        assert result.success
        assert result.completed == ["ruby"]
        assert ledger.is_complete("ruby")
        assert ("cache_fallback", "ruby") in reporter.events
        cache.restore.assert_not_called()

    def test_overlong_key_still_builds(self, runner_factory, make_step, calls, cache, ledger):
        key = CacheKey(tool="ruby", version="3" * 300, arch="x86_64")
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR, side_effect=_build_artifact)

        result = runner_factory(cache=cache).run([step])

        assert calls == ["ruby"]
        assert result.success
        assert ledger.is_complete("ruby")

    def test_differently_named_artifact_falls_back(
        self, runner_factory, make_step, calls, cache, key, base_env, reporter, tmp_path
    ):
        build = tmp_path / "elsewhere" / "ruby-3.3.0-build"
        (build / "bin").mkdir(parents=True)
        (build / "bin" / "ruby").write_text("stale")
        cache.store(key, build)
        step = make_step("ruby", cache_key=key, artifact_dir=RUBY_DIR, side_effect=_build_artifact)

        result = runner_factory(cache=cache).run([step])

        assert calls == ["ruby"]
        assert result.restored == []
        assert result.completed == ["ruby"]
        assert ("cache_fallback", "ruby") in reporter.events
        versions = os.path.dirname(base_env.expand(RUBY_DIR))
        assert sorted(os.listdir(versions)) == ["3.3.0"]
        with open(base_env.expand(RUBY_DIR) + "/bin/ruby") as f:
            assert f.read() == "ruby"

    def test_steps_without_key_ignore_cache(self, runner_factory, make_step):
        cache = MagicMock(spec=ArtifactCache)
        cache.available.return_value = True

        runner_factory(cache=cache).run([make_step("python")])

        cache.has.assert_not_called()
        cache.store.assert_not_called()


class TestPipelineResult:
    def test_to_dict(self):
        result = PipelineResult(completed=["a"], skipped=["b"], failed="c", error="boom", not_attempted=["d"])
        data = result.to_dict()

        assert data["success"] is False
        assert data["failed"] == "c"
        assert data["not_attempted"] == ["d"]
        assert data["steps"] == []
