# cli.py
from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from typing import List, Tuple

import click

from smokeci.context import make_provider
from smokeci.dag import DependencyGraph
from smokeci.definition import load_definition
from smokeci.errors import CycleDetected, MalformedDefinition, PipelineError, UnknownDependency
from smokeci.model import Pipeline
from smokeci.reporting import ConsoleReporter, HttpReporter, JsonFileReporter, MultiReporter
from smokeci.runner import PipelineRunner
from smokeci.settings import DEFAULT_PARALLELISM, REPORT_TIMEOUT_SECONDS
from smokeci.ui.console import Console, set_console, get_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

DEFAULT_DEFINITIONS = ("smokeci.yaml", "smokeci.yml", "smokeci.json", "smokeci_workflow.py")


def discover_definition(definition_arg: str | None) -> Path:
    """
    Resolve the definition file from the argument or the defaults.

    Raises:
        SystemExit(2): If nothing usable is found
    """
    console = get_console()

    if definition_arg:
        return Path(definition_arg)

    found = [Path(name) for name in DEFAULT_DEFINITIONS if Path(name).exists()]
    if len(found) == 1:
        return found[0]

    if not found:
        console.print_error(
            "No definition file found",
            "Could not find a pipeline definition.",
            details=["Looked for:"] + [f"  {name}" for name in DEFAULT_DEFINITIONS],
            suggestion="Pass one explicitly:\n  smokeci run pipeline.yaml",
        )
    else:
        console.print_error(
            "Multiple definition files found",
            "Please specify which one to use:",
            details=[f"  {p}" for p in found],
        )
    sys.exit(EXIT_INVALID)


def load_and_validate(path: Path) -> Tuple[Pipeline, DependencyGraph]:
    """Load a definition and validate its graph; exit 2 on any problem."""
    console = get_console()
    try:
        pipeline = load_definition(path)
        graph = DependencyGraph.build(pipeline.steps.values())
    except MalformedDefinition as e:
        console.print_error("Malformed definition", e.message, details=e.details)
        sys.exit(EXIT_INVALID)
    except UnknownDependency as e:
        console.print_error(
            "Unknown dependency",
            str(e),
            suggestion=f"Add a step with id '{e.dependency}' or fix dependsOn of '{e.step}'.",
        )
        sys.exit(EXIT_INVALID)
    except CycleDetected as e:
        console.print_error("Dependency cycle", str(e))
        sys.exit(EXIT_INVALID)
    return pipeline, graph


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """smokeci: build, run and smoke-test a service as a pipeline of steps."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("definition", required=False)
@click.option("--parallelism", "-j", default=DEFAULT_PARALLELISM, show_default=True, type=click.IntRange(min=1), help="Maximum steps running at once")
@click.option("--timeout-run", default=None, type=click.FloatRange(min=0, min_open=True), help="Cancel the whole run after SECONDS")
@click.option("--provider", type=click.Choice(["local", "docker"]), default=None, help="Execution context provider (defaults to the definition's)")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False), help="Directory steps run in (mounted at /workspace for docker)")
@click.option("--shared-context/--no-shared-context", default=None, help="Bind all steps to one context, run serially")
@click.option("--retry-on-timeout", is_flag=True, default=False, help="Also retry steps that timed out")
@click.option("--continue-on-skip", is_flag=True, default=False, help="Skipped steps do not fail the run")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run result as JSON")
@click.option("--report-url", default=None, help="POST the run result as JSON to this URL")
@click.option("--report-timeout", default=REPORT_TIMEOUT_SECONDS, show_default=True, type=float, help="Seconds to wait for reporters")
def run(
    definition,
    parallelism,
    timeout_run,
    provider,
    workdir,
    shared_context,
    retry_on_timeout,
    continue_on_skip,
    report_json,
    report_url,
    report_timeout,
):
    """Run a pipeline definition."""
    console = get_console()

    path = discover_definition(definition)
    pipeline, _graph = load_and_validate(path)

    reporters: List = [ConsoleReporter()]
    if report_json:
        reporters.append(JsonFileReporter(report_json))
    if report_url:
        reporters.append(HttpReporter(report_url, timeout=report_timeout))

    try:
        context_provider = make_provider(provider or pipeline.provider, workdir=workdir)
    except ValueError as e:
        console.print_error("Invalid provider", str(e))
        sys.exit(EXIT_INVALID)

    runner = PipelineRunner(
        provider=context_provider,
        parallelism=parallelism,
        run_timeout=timeout_run,
        shared_context=shared_context,
        retry_on_timeout=retry_on_timeout,
        continue_on_skip=continue_on_skip,
        reporter=MultiReporter(reporters),
        report_timeout=report_timeout,
    )

    # SIGTERM (e.g. from a CI system) cancels like Ctrl-C does
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, lambda signum, frame: runner.cancel(f"signal {signum}"))

    try:
        result = runner.run(pipeline)
    except PipelineError as e:
        console.print_exception(e)
        sys.exit(EXIT_INVALID)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    sys.exit(EXIT_OK if result.succeeded else EXIT_FAILED)


@cli.command()
@click.argument("definition", required=False)
def validate(definition):
    """Check a pipeline definition without running it."""
    console = get_console()
    path = discover_definition(definition)
    pipeline, _graph = load_and_validate(path)
    console.print_info(f"Valid: {pipeline.id} ({len(pipeline)} step(s)) from {path}")


@cli.command()
@click.argument("definition", required=False)
def plan(definition):
    """Print the execution order and parallel stages."""
    console = get_console()
    path = discover_definition(definition)
    pipeline, graph = load_and_validate(path)
    console.print_plan(
        pipeline.id,
        [s.id for s in graph.topological_order()],
        graph.stages(),
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
