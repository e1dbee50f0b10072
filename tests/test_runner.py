"""Tests for the pipeline runner."""

from __future__ import annotations

import threading
import time

import pytest

import smokeci.context as context_mod
from smokeci.context import LocalContextProvider
from smokeci.dsl import pipeline, step
from smokeci.errors import CycleDetected, StepFailed, UnknownDependency
from smokeci.executor import StepExecutor
from smokeci.model import StepStatus
from smokeci.reporting import ResultReporter
from smokeci.runner import PipelineRunner, run_pipeline
from smokeci.ui.console import Console, set_console

from conftest import SpyContext, SpyProvider, fail, ok, py, sleep

BUILD, RUN, TEST, CLEANUP = ok("build"), ok("run"), ok("test"), ok("cleanup")


def smoke_pipeline(test_cmd=TEST, cleanup_always=False, test_retries=0, test_timeout=600.0):
    return pipeline(
        "smoke",
        step("build", BUILD),
        step("run", RUN, needs=["build"]),
        step("test", test_cmd, needs=["run"], retries=test_retries, timeout=test_timeout),
        step("cleanup", CLEANUP, needs=["test"], always_run=cleanup_always),
    )


def statuses(result):
    return {r.step_id: r.status for r in result.steps}


class CollectingReporter(ResultReporter):
    def __init__(self):
        self.results = []

    def report(self, result):
        self.results.append(result)


class TestScenarios:
    def test_all_succeed_in_order(self, spy_provider, spy_context):
        result = PipelineRunner(provider=spy_provider).run(smoke_pipeline())

        assert result.status is StepStatus.SUCCEEDED
        assert result.succeeded
        assert [r.step_id for r in result.steps] == ["build", "run", "test", "cleanup"]
        assert spy_context.calls == [BUILD, RUN, TEST, CLEANUP]
        assert not result.cancelled
        result.raise_for_status()

    def test_failed_test_skips_cleanup(self, spy_provider, spy_context):
        failing = fail(1, "probe failed")
        result = PipelineRunner(provider=spy_provider).run(smoke_pipeline(test_cmd=failing))

        assert statuses(result) == {
            "build": StepStatus.SUCCEEDED,
            "run": StepStatus.SUCCEEDED,
            "test": StepStatus.FAILED,
            "cleanup": StepStatus.SKIPPED,
        }
        assert result.status is StepStatus.FAILED
        assert spy_context.count(CLEANUP) == 0
        assert result.step("test").exit_code == 1
        assert "test" in result.step("cleanup").error
        with pytest.raises(StepFailed) as exc:
            result.raise_for_status()
        assert exc.value.step == "test"

    def test_always_run_cleanup_after_failure(self, spy_provider, spy_context):
        result = PipelineRunner(provider=spy_provider).run(
            smoke_pipeline(test_cmd=fail(), cleanup_always=True)
        )
        assert result.step("cleanup").status is StepStatus.SUCCEEDED
        assert spy_context.count(CLEANUP) == 1
        assert result.status is StepStatus.FAILED

    def test_skip_propagates_transitively(self, spy_provider, spy_context):
        p = pipeline(
            "p",
            step("a", fail()),
            step("b", ok("b"), needs=["a"]),
            step("c", ok("c"), needs=["b"]),
        )
        result = PipelineRunner(provider=spy_provider).run(p)
        assert statuses(result) == {
            "a": StepStatus.FAILED,
            "b": StepStatus.SKIPPED,
            "c": StepStatus.SKIPPED,
        }
        assert spy_context.calls == [fail()]
        assert "b" in result.step("c").error

    def test_sibling_branch_still_runs(self, spy_provider, spy_context):
        p = pipeline(
            "p",
            step("a", fail()),
            step("b", ok("b")),
            step("after-a", ok("after-a"), needs=["a"]),
            step("after-b", ok("after-b"), needs=["b"]),
        )
        result = PipelineRunner(provider=spy_provider).run(p)
        assert statuses(result) == {
            "a": StepStatus.FAILED,
            "b": StepStatus.SUCCEEDED,
            "after-a": StepStatus.SKIPPED,
            "after-b": StepStatus.SUCCEEDED,
        }

    def test_run_pipeline_helper(self, spy_provider):
        result = run_pipeline(smoke_pipeline(), provider=spy_provider)
        assert result.succeeded


class TestRetries:
    def test_fails_twice_then_succeeds(self, tmp_path):
        context = SpyContext(tmp_path, scripted={TEST: [1, 1, 0]})
        provider = SpyProvider(context)

        result = PipelineRunner(provider=provider).run(smoke_pipeline(test_retries=2))

        test = result.step("test")
        assert test.status is StepStatus.SUCCEEDED
        assert test.attempts == 3
        assert context.count(TEST) == 3
        assert result.succeeded

    def test_retries_exhausted(self, tmp_path):
        context = SpyContext(tmp_path, scripted={TEST: [1, 1, 1]})
        result = PipelineRunner(provider=SpyProvider(context)).run(smoke_pipeline(test_retries=1))

        assert result.step("test").status is StepStatus.FAILED
        assert result.step("test").attempts == 2
        assert context.count(TEST) == 2
        assert context.count(CLEANUP) == 0

    def test_timeout_not_retried_by_default(self, spy_provider, spy_context):
        hang = sleep(30, "hang")
        result = PipelineRunner(provider=spy_provider, executor=StepExecutor(kill_grace=1)).run(
            smoke_pipeline(test_cmd=hang, test_retries=2, test_timeout=0.3)
        )
        assert result.step("test").status is StepStatus.TIMED_OUT
        assert spy_context.count(hang) == 1

    def test_timeout_retried_when_enabled(self, spy_provider, spy_context):
        hang = sleep(30, "hang")
        runner = PipelineRunner(
            provider=spy_provider,
            executor=StepExecutor(kill_grace=1),
            retry_on_timeout=True,
        )
        result = runner.run(smoke_pipeline(test_cmd=hang, test_retries=1, test_timeout=0.3))
        assert result.step("test").status is StepStatus.TIMED_OUT
        assert result.step("test").attempts == 2
        assert spy_context.count(hang) == 2


class TestValidation:
    def test_cycle_fails_before_any_side_effect(self, spy_provider, spy_context):
        p = pipeline("p", step("a", ok(), needs=["b"]), step("b", ok(), needs=["a"]))
        with pytest.raises(CycleDetected):
            PipelineRunner(provider=spy_provider).run(p)
        assert spy_provider.created == 0
        assert spy_context.calls == []

    def test_unknown_dependency_fails_before_any_side_effect(self, spy_provider, spy_context):
        p = pipeline("p", step("a", ok(), needs=["ghost"]))
        with pytest.raises(UnknownDependency):
            PipelineRunner(provider=spy_provider, shared_context=True).run(p)
        assert spy_provider.created == 0

    def test_parallelism_must_be_positive(self):
        with pytest.raises(ValueError):
            PipelineRunner(parallelism=0)


class TestContexts:
    def test_context_per_step(self, spy_provider):
        p = pipeline("p", step("a", fail()), step("b", ok(), needs=["a"]), step("c", ok()), image="app:latest", ports=["3000:3000"])
        PipelineRunner(provider=spy_provider).run(p)
        # b is skipped and never gets a context
        assert spy_provider.created == 2
        assert spy_provider.destroyed == 2
        assert spy_provider.requests[0] == ("app:latest", ["3000:3000"])

    def test_shared_context_created_once(self, spy_provider, spy_context):
        result = PipelineRunner(provider=spy_provider, shared_context=True, parallelism=4).run(smoke_pipeline())
        assert result.succeeded
        assert spy_provider.created == 1
        assert spy_provider.destroyed == 1
        assert spy_context.calls == [BUILD, RUN, TEST, CLEANUP]

    def test_shared_context_from_pipeline(self, spy_provider):
        p = pipeline("p", step("a", ok()), step("b", ok()), shared_context=True)
        PipelineRunner(provider=spy_provider).run(p)
        assert spy_provider.created == 1

    def test_provisioning_failure_fails_step(self, spy_context):
        provider = SpyProvider(spy_context, fail_create=True)
        result = PipelineRunner(provider=provider).run(smoke_pipeline())

        assert result.step("build").status is StepStatus.FAILED
        assert "context provisioning failed" in result.step("build").error
        assert "no capacity" in result.step("build").error
        assert result.step("run").status is StepStatus.SKIPPED
        assert result.status is StepStatus.FAILED
        assert spy_context.calls == []

    def test_shared_provisioning_failure(self, spy_context):
        provider = SpyProvider(spy_context, fail_create=True)
        result = PipelineRunner(provider=provider, shared_context=True).run(smoke_pipeline())
        assert result.step("build").status is StepStatus.FAILED
        assert [r.status for r in result.steps[1:]] == [StepStatus.SKIPPED] * 3
        assert provider.destroyed == 0


class TestConcurrency:
    def test_parallel_steps_overlap(self, tmp_path, spy_provider):
        # each step announces itself and waits for the other; only works if both run at once
        def meet(me, other):
            return py(
                "import pathlib, time, sys\n"
                f"d = pathlib.Path({str(tmp_path)!r})\n"
                f"(d / {me!r}).touch()\n"
                "end = time.time() + 5\n"
                f"while not (d / {other!r}).exists():\n"
                "    if time.time() > end: sys.exit(1)\n"
                "    time.sleep(0.05)\n"
            )

        p = pipeline("p", step("left", meet("left", "right")), step("right", meet("right", "left")))
        result = PipelineRunner(provider=spy_provider, parallelism=2).run(p)
        assert result.succeeded

    def test_sequential_by_default(self, spy_provider, spy_context):
        p = pipeline("p", step("c", ok("c")), step("a", ok("a")), step("b", ok("b")))
        PipelineRunner(provider=spy_provider).run(p)
        assert spy_context.calls == [ok("c"), ok("a"), ok("b")]

    def test_start_order_respects_topology(self, spy_provider, spy_context):
        p = pipeline(
            "p",
            step("x", ok("x"), needs=["z"]),
            step("y", ok("y")),
            step("z", ok("z")),
        )
        result = PipelineRunner(provider=spy_provider).run(p)
        assert [r.step_id for r in result.steps] == ["z", "x", "y"]
        assert spy_context.calls == [ok("z"), ok("x"), ok("y")]


class TestCancellation:
    def test_run_timeout_cancels(self, spy_provider, spy_context):
        hang = sleep(30, "hang")
        p = pipeline("p", step("hang", hang), step("after", ok("after"), needs=["hang"]))
        runner = PipelineRunner(provider=spy_provider, executor=StepExecutor(kill_grace=1), run_timeout=0.5)

        started = time.monotonic()
        result = runner.run(p)

        assert time.monotonic() - started < 10
        assert result.cancelled
        assert result.step("hang").status is StepStatus.FAILED
        assert result.step("hang").error == "run timeout"
        assert result.step("after").status is StepStatus.SKIPPED
        assert spy_context.count(ok("after")) == 0
        assert result.status is StepStatus.FAILED

    def test_cancel_from_other_thread(self, spy_provider):
        p = pipeline("p", step("done", ok("done")), step("hang", sleep(30), needs=["done"]))
        runner = PipelineRunner(provider=spy_provider, executor=StepExecutor(kill_grace=1))
        threading.Timer(2.0, runner.cancel).start()

        result = runner.run(p)

        assert result.cancelled
        # already-terminal steps are untouched
        assert result.step("done").status is StepStatus.SUCCEEDED
        assert result.step("hang").status is StepStatus.FAILED
        assert result.step("hang").error == "cancelled"

    def test_cancel_before_run_skips_everything(self, spy_provider, spy_context):
        runner = PipelineRunner(provider=spy_provider)
        runner.cancel()
        result = runner.run(smoke_pipeline())
        assert all(r.status is StepStatus.SKIPPED for r in result.steps)
        assert spy_context.calls == []
        assert result.status is StepStatus.FAILED

    def test_continue_on_skip(self, spy_provider):
        runner = PipelineRunner(provider=spy_provider, continue_on_skip=True)
        runner.cancel()
        result = runner.run(smoke_pipeline())
        assert result.status is StepStatus.SUCCEEDED

    def test_continue_on_skip_still_fails_on_failure(self, spy_provider):
        runner = PipelineRunner(provider=spy_provider, continue_on_skip=True)
        result = runner.run(smoke_pipeline(test_cmd=fail()))
        assert result.step("cleanup").status is StepStatus.SKIPPED
        assert result.status is StepStatus.FAILED


class TestReportingAndRobustness:
    def test_reporter_receives_result(self, spy_provider):
        reporter = CollectingReporter()
        result = PipelineRunner(provider=spy_provider, reporter=reporter).run(smoke_pipeline())
        assert reporter.results == [result]

    def test_slow_reporter_does_not_block(self, spy_provider):
        class Slow(ResultReporter):
            def report(self, result):
                time.sleep(5)

        started = time.monotonic()
        result = PipelineRunner(provider=spy_provider, reporter=Slow(), report_timeout=0.2).run(smoke_pipeline())
        assert time.monotonic() - started < 4
        assert result.succeeded

    def test_broken_executor_fails_step(self, spy_provider):
        class Broken(StepExecutor):
            def execute(self, step, context, cancel=None):
                raise RuntimeError("boom")

        result = PipelineRunner(provider=spy_provider, executor=Broken()).run(smoke_pipeline())
        assert result.step("build").status is StepStatus.FAILED
        assert result.step("build").error == "RuntimeError: boom"
        assert result.step("cleanup").status is StepStatus.SKIPPED
        assert spy_provider.destroyed == spy_provider.created

    def test_every_step_terminal_with_timestamps(self, spy_provider):
        result = PipelineRunner(provider=spy_provider).run(smoke_pipeline(test_cmd=fail()))
        for r in result.steps:
            assert r.status.terminal
        for sid in ("build", "run", "test"):
            r = result.step(sid)
            assert r.started_at <= r.finished_at
        assert result.started_at <= result.finished_at

    def test_to_dict(self, spy_provider):
        result = PipelineRunner(provider=spy_provider).run(smoke_pipeline())
        data = result.to_dict()
        assert data["pipeline_id"] == "smoke"
        assert data["status"] == "succeeded"
        assert [s["step_id"] for s in data["steps"]] == ["build", "run", "test", "cleanup"]
        assert data["steps"][0]["stdout"].strip() == "build"


def expect_env(name, value):
    return py(f"import os, sys; sys.exit(0 if os.environ.get({name!r}) == {value!r} else 7)")


class TestPipelineSettings:
    def test_pipeline_env_reaches_steps(self, tmp_path):
        p = pipeline(
            "p",
            step("probe", expect_env("APP_PORT", "3000")),
            step("override", expect_env("APP_PORT", "8080"), env={"APP_PORT": "8080"}),
            env={"APP_PORT": "3000"},
        )
        result = PipelineRunner(provider=LocalContextProvider(tmp_path)).run(p)
        assert result.step("probe").status is StepStatus.SUCCEEDED
        assert result.step("override").status is StepStatus.SUCCEEDED

    def test_pipeline_env_without_injected_provider(self):
        p = pipeline("p", step("probe", expect_env("APP_PORT", "3000")), env={"APP_PORT": "3000"})
        assert run_pipeline(p).succeeded

    def test_provider_built_from_pipeline(self, tmp_path, monkeypatch):
        monkeypatch.setattr(context_mod, "DOCKER_BIN", str(tmp_path / "no-docker-here"))
        p = pipeline("p", step("build", ok()), provider="docker", image="app:latest")

        result = PipelineRunner().run(p)

        assert result.step("build").status is StepStatus.FAILED
        assert "Docker is not available" in result.step("build").error


class TestRunnerReuse:
    def test_cancel_does_not_leak_into_next_run(self, spy_provider, spy_context):
        runner = PipelineRunner(provider=spy_provider)
        runner.cancel()
        first = runner.run(smoke_pipeline())
        assert first.cancelled

        second = runner.run(smoke_pipeline())
        assert not second.cancelled
        assert second.succeeded
        assert spy_context.count(CLEANUP) == 1

    def test_interrupt_while_scheduling_cancels_running_steps(self, spy_provider):
        class InterruptOnStart(Console):
            def print_step_start(self, name, command=None):
                if name == "b":
                    raise KeyboardInterrupt
                super().print_step_start(name, command)

        set_console(InterruptOnStart(debug=False))
        p = pipeline("p", step("hang", sleep(30)), step("b", ok("b")))
        runner = PipelineRunner(provider=spy_provider, executor=StepExecutor(kill_grace=1), parallelism=2)

        started = time.monotonic()
        with pytest.raises(KeyboardInterrupt):
            runner.run(p)

        assert time.monotonic() - started < 10
        assert runner.cancelled
        assert spy_provider.destroyed == spy_provider.created
