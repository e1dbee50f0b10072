# runner.py
from __future__ import annotations

import heapq
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple
import time

from .context import ContextProvider, ExecutionContext, make_provider
from .dag import DependencyGraph
from .errors import ContextProvisionError
from .executor import CancelToken, StepExecutor
from .model import Pipeline, RunResult, Step, StepResult, StepStatus, now_utc
from .reporting import ResultReporter, deliver
from .settings import DEFAULT_PARALLELISM, REPORT_TIMEOUT_SECONDS
from .ui.console import get_console


@dataclass
class _Shared:
    """The one context every step binds to in shared mode (or why there is none)."""
    context: Optional[ExecutionContext] = None
    error: Optional[ContextProvisionError] = None


class PipelineRunner:
    """
    Drives a pipeline's steps through a StepExecutor.

    - validates the pipeline before anything runs
    - starts ready steps in topological order, at most `parallelism` at once
    - skips steps whose dependencies did not succeed (unless always_run)
    - retries failed steps up to step.retries times
    - cancels on cancel(), Ctrl-C or run_timeout
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        provider: ContextProvider | None = None,
        *,
        parallelism: int = DEFAULT_PARALLELISM,
        run_timeout: float | None = None,
        shared_context: bool | None = None,
        retry_on_timeout: bool = False,
        continue_on_skip: bool = False,
        reporter: ResultReporter | None = None,
        report_timeout: float = REPORT_TIMEOUT_SECONDS,
    ):
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        self.executor = executor or StepExecutor()
        self.provider = provider  # None -> built from pipeline.provider on each run
        self.parallelism = parallelism
        self.run_timeout = run_timeout
        self.shared_context = shared_context  # None -> pipeline.shared_context
        self.retry_on_timeout = retry_on_timeout
        self.continue_on_skip = continue_on_skip
        self.reporter = reporter
        self.report_timeout = report_timeout
        self._token = CancelToken()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled") -> None:
        """Terminate running steps; nothing new is started. Safe from any thread."""
        self._token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    def _attempts(self, step: Step, context: ExecutionContext) -> StepResult:
        console = get_console()
        first_start = None
        attempt = 0

        while True:
            attempt += 1
            result = self.executor.execute(step, context, cancel=self._token)
            first_start = first_start or result.started_at

            if result.status is StepStatus.SUCCEEDED or self.cancelled:
                break
            if attempt > step.retries:
                break
            if result.status is StepStatus.TIMED_OUT and not self.retry_on_timeout:
                break
            console.print_retry(step.id, attempt, step.retries + 1, result)

        result.attempts = attempt
        result.started_at = first_start
        return result

    def _run_step(
        self,
        pipeline: Pipeline,
        step: Step,
        provider: ContextProvider,
        shared: _Shared,
    ) -> StepResult:
        try:
            if self._use_shared(pipeline):
                if shared.error is not None:
                    return _provision_failed(step, shared.error)
                return self._attempts(step, shared.context)

            try:
                context = provider.create_context(pipeline.image, pipeline.ports)
            except ContextProvisionError as e:
                return _provision_failed(step, e)
            try:
                return self._attempts(step, context)
            finally:
                self._destroy(provider, context)
        except Exception as e:
            # a broken executor or provider must not take the scheduler down
            get_console().print_debug(f"[{step.id}] worker crashed: {e!r}")
            failed = StepResult(step_id=step.id, status=StepStatus.FAILED, finished_at=now_utc())
            failed.error = f"{type(e).__name__}: {e}"
            return failed

    def _destroy(self, provider: ContextProvider, context: ExecutionContext) -> None:
        try:
            provider.destroy_context(context)
        except Exception as e:
            get_console().print_error(
                "Could not destroy execution context",
                f"{context!r}: {e}",
            )

    def _use_shared(self, pipeline: Pipeline) -> bool:
        if self.shared_context is None:
            return pipeline.shared_context
        return self.shared_context

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, pipeline: Pipeline) -> RunResult:
        # Raises CycleDetected / UnknownDependency before any side effect.
        graph = DependencyGraph.build(pipeline.steps.values())
        order = graph.topological_order()
        position = {s.id: i for i, s in enumerate(order)}
        provider = self.provider or make_provider(pipeline.provider)

        console = get_console()
        started_at = now_utc()
        console.print_run_started(pipeline.id, len(order), self._use_shared(pipeline))

        results: Dict[str, StepResult] = {s.id: StepResult(step_id=s.id) for s in order}
        waiting: Dict[str, int] = {s.id: len(graph.dependencies(s.id)) for s in order}
        ready: List[Tuple[int, str]] = [(position[sid], sid) for sid, n in waiting.items() if n == 0]
        heapq.heapify(ready)

        shared = _Shared()
        if self._use_shared(pipeline):
            try:
                shared.context = provider.create_context(pipeline.image, pipeline.ports)
            except ContextProvisionError as e:
                shared.error = e

        workers = 1 if self._use_shared(pipeline) else self.parallelism
        deadline = time.monotonic() + self.run_timeout if self.run_timeout else None
        in_flight: Dict[Future, str] = {}

        def release(sid: str) -> None:
            for nxt in graph.dependents(sid):
                waiting[nxt] -= 1
                if waiting[nxt] == 0:
                    heapq.heappush(ready, (position[nxt], nxt))

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="smokeci-step") as pool:
                try:
                    while ready or in_flight:
                        # schedule ready steps, lowest topological position first
                        while ready and len(in_flight) < workers:
                            _, sid = heapq.heappop(ready)
                            step = graph.step(sid)

                            reason = self._skip_reason(step, graph, results)
                            if reason is not None:
                                results[sid].status = StepStatus.SKIPPED
                                results[sid].error = reason
                                console.print_step_skipped(sid, reason)
                                release(sid)
                                continue

                            results[sid].status = StepStatus.RUNNING
                            results[sid].started_at = now_utc()
                            console.print_step_start(sid, list(step.command))
                            fut = pool.submit(
                                self._run_step, pipeline, _with_env(step, pipeline.env), provider, shared
                            )
                            in_flight[fut] = sid

                        if not in_flight:
                            continue

                        # wait for one completion, then loop to schedule newly-ready steps
                        timeout = None
                        if deadline is not None and not self.cancelled:
                            timeout = max(0.0, deadline - time.monotonic())
                        try:
                            fut = next(as_completed(list(in_flight), timeout=timeout))
                        except FuturesTimeout:
                            console.print_info(f"Run timeout ({self.run_timeout:g}s) reached, cancelling")
                            self.cancel("run timeout")
                            continue
                        except KeyboardInterrupt:
                            console.print_info("\nInterrupted, cancelling running steps")
                            self.cancel("interrupted")
                            continue

                        sid = in_flight.pop(fut)
                        results[sid] = fut.result()
                        console.print_step_result(results[sid])
                        release(sid)
                except KeyboardInterrupt:
                    # interrupted while scheduling: stop running steps before the pool joins them
                    self.cancel("interrupted")
                    raise
        finally:
            if shared.context is not None:
                self._destroy(provider, shared.context)

        run = RunResult(
            pipeline_id=pipeline.id,
            steps=[results[s.id] for s in order],
            status=self._overall(results.values()),
            started_at=started_at,
            finished_at=now_utc(),
            cancelled=self.cancelled,
        )
        # a cancel only applies to the run it interrupted
        self._token = CancelToken()

        if self.reporter is not None:
            deliver(self.reporter, run, timeout=self.report_timeout)

        return run

    def _skip_reason(self, step: Step, graph: DependencyGraph, results: Dict[str, StepResult]) -> Optional[str]:
        if self.cancelled:
            return self._token.reason or "cancelled"
        if step.always_run:
            return None
        blocked = [d for d in graph.dependencies(step.id) if results[d].status.blocks_dependents]
        if blocked:
            return f"dependency not successful: {', '.join(blocked)}"
        return None

    def _overall(self, results) -> StepStatus:
        for r in results:
            if r.status is StepStatus.SUCCEEDED:
                continue
            if r.status is StepStatus.SKIPPED and self.continue_on_skip:
                continue
            return StepStatus.FAILED
        return StepStatus.SUCCEEDED


def _with_env(step: Step, env: Dict[str, str]) -> Step:
    """Pipeline-level env under the step's own."""
    if not env:
        return step
    return replace(step, env={**env, **step.env})


def _provision_failed(step: Step, error: ContextProvisionError) -> StepResult:
    now = now_utc()
    return StepResult(
        step_id=step.id,
        status=StepStatus.FAILED,
        started_at=now,
        finished_at=now,
        error=f"context provisioning failed: {error}",
    )


def run_pipeline(pipeline: Pipeline, **kwargs) -> RunResult:
    """Convenience: PipelineRunner(**kwargs).run(pipeline)."""
    return PipelineRunner(**kwargs).run(pipeline)
