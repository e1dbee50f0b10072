# src/smokeci/dsl.py
from __future__ import annotations

import shlex
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import Pipeline, Step
from .settings import DEFAULT_STEP_TIMEOUT


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def step(
    id: str,
    command: str | Sequence[str],
    *,
    needs: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_STEP_TIMEOUT,
    retries: int = 0,
    always_run: bool = False,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
) -> Step:
    """
    Create a step. A string command is split like a shell would
    (shlex), but is NOT run through a shell; use sh() for pipes etc.
    """
    tokens = tuple(shlex.split(command)) if isinstance(command, str) else tuple(command)
    if not tokens:
        raise ValueError(f"step({id!r}) must have a non-empty command")
    if retries < 0:
        raise ValueError(f"step({id!r}) retries must be >= 0")
    return Step(
        id=id,
        command=tokens,
        depends_on=tuple(needs or ()),
        timeout=float(timeout),
        retries=retries,
        always_run=always_run,
        env={k: str(v) for k, v in (env or {}).items()},
        cwd=cwd,
    )


def sh(id: str, script: str, **kwargs: Any) -> Step:
    """Create a step that runs `script` with `sh -c`."""
    return step(id, ["sh", "-c", script], **kwargs)


def chain(*steps: Step) -> List[Step]:
    """
    Make each step depend on the one before it (keeps existing needs).

        chain(sh("build", ...), sh("run", ...), sh("test", ...))
    """
    out: List[Step] = []
    prev: Step | None = None
    for s in steps:
        if prev is not None and prev.id not in s.depends_on:
            s = replace(s, depends_on=s.depends_on + (prev.id,))
        out.append(s)
        prev = s
    return out


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    id: str,
    *steps: Step | Iterable[Step],
    image: str | None = None,
    ports: Optional[List[str]] = None,
    provider: str = "local",
    shared_context: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Pipeline definition helper. Accepts steps and lists of steps
    (e.g. the output of chain() or matrix().steps()).

        def workflow():
            return pipeline("smoke", *chain(...), sh("cleanup", ..., always_run=True))
    """
    flat: List[Step] = []
    for s in steps:
        if isinstance(s, Step):
            flat.append(s)
        else:
            flat.extend(s)

    if not flat:
        raise ValueError(f"pipeline({id!r}) must have at least one step")

    return Pipeline.from_steps(
        id,
        flat,
        image=image,
        ports=list(ports or []),
        provider=provider,
        shared_context=shared_context,
        env=dict(env or {}),
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("node", ["18", "20"]).steps(
            lambda v: sh(f"build-node{v}", f"docker build --build-arg NODE={v} .")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def steps(self, builder: Callable[[Any], Step]) -> List[Step]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
