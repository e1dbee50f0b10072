# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class PipelineError(Exception):
    """Base class for every error smokeci raises or records."""


# ----------------------------------------------------------------------
# Validation errors (raised before anything runs)
# ----------------------------------------------------------------------

@dataclass
class MalformedDefinition(PipelineError):
    message: str
    details: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [self.message]
        lines.extend(self.details)
        return "\n".join(lines)


@dataclass
class UnknownDependency(PipelineError):
    step: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Step '{self.step}' depends on missing step '{self.dependency}'. "
            f"Known steps: {self.known}"
        )


@dataclass
class CycleDetected(PipelineError):
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle: " + " -> ".join(self.cycle)


# ----------------------------------------------------------------------
# Runtime errors (recorded per step)
# ----------------------------------------------------------------------

@dataclass
class StepFailed(PipelineError):
    step: str
    exit_code: Optional[int] = None
    reason: Optional[str] = None

    def __str__(self) -> str:
        msg = f"step '{self.step}' failed"
        if self.exit_code is not None:
            msg += f" (exit={self.exit_code})"
        if self.reason:
            msg += f": {self.reason}"
        return msg


@dataclass
class StepTimedOut(PipelineError):
    step: str
    after: Optional[float] = None

    def __str__(self) -> str:
        if self.after is None:
            return f"step '{self.step}' timed out"
        return f"step '{self.step}' timed out after {self.after:.1f}s"


@dataclass
class ContextProvisionError(PipelineError):
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
