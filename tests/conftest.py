"""Shared test fixtures and helpers."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from smokeci.context import ContextProvider, LocalContext
from smokeci.errors import ContextProvisionError
from smokeci.ui.console import Console, set_console


def py(code: str) -> Tuple[str, ...]:
    """A command that runs `code` with the current interpreter."""
    return (sys.executable, "-c", code)


def ok(tag: str = "ok") -> Tuple[str, ...]:
    return py(f"print({tag!r})")


def fail(code: int = 1, tag: str = "fail") -> Tuple[str, ...]:
    return py(f"import sys; print({tag!r}, file=sys.stderr); sys.exit({code})")


def sleep(seconds: float, tag: str = "sleep") -> Tuple[str, ...]:
    return py(f"import time; time.sleep({seconds}); print({tag!r})")


class SpyContext(LocalContext):
    """
    LocalContext that records every spawned command.

    `scripted` maps a command to a list of exit codes; each spawn of that
    command consumes the next code instead of running the real command.
    """

    def __init__(self, workdir, scripted: Optional[Dict[Sequence[str], List[int]]] = None):
        super().__init__(workdir)
        self.calls: List[Tuple[str, ...]] = []
        self.scripted = {tuple(k): list(v) for k, v in (scripted or {}).items()}
        self._lock = threading.Lock()

    def spawn(self, command, env=None, cwd=None):
        command = tuple(command)
        with self._lock:
            self.calls.append(command)
            codes = self.scripted.get(command)
            if codes:
                command = py(f"import sys; sys.exit({codes.pop(0)})")
        return super().spawn(command, env=env, cwd=cwd)

    def count(self, command: Sequence[str]) -> int:
        return self.calls.count(tuple(command))


class SpyProvider(ContextProvider):
    """Hands out one SpyContext and counts create/destroy calls."""

    def __init__(self, context: SpyContext, fail_create: bool = False):
        self.context = context
        self.fail_create = fail_create
        self.created = 0
        self.destroyed = 0
        self.requests: List[Tuple[Optional[str], List[str]]] = []
        self._lock = threading.Lock()

    def create_context(self, image, ports):
        with self._lock:
            self.created += 1
            self.requests.append((image, list(ports)))
        if self.fail_create:
            raise ContextProvisionError("no capacity", details={"image": image})
        return self.context

    def destroy_context(self, handle):
        with self._lock:
            self.destroyed += 1


@pytest.fixture(autouse=True)
def fresh_console():
    console = Console(debug=False)
    set_console(console)
    yield console


@pytest.fixture
def spy_context(tmp_path) -> SpyContext:
    return SpyContext(tmp_path)


@pytest.fixture
def spy_provider(spy_context) -> SpyProvider:
    return SpyProvider(spy_context)
