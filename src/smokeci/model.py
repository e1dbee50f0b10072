# model.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import MalformedDefinition, PipelineError, StepFailed, StepTimedOut
from .settings import DEFAULT_STEP_TIMEOUT


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)

    @property
    def blocks_dependents(self) -> bool:
        return self in (StepStatus.FAILED, StepStatus.TIMED_OUT, StepStatus.SKIPPED)


@dataclass(frozen=True)
class Step:
    """A single named command inside a pipeline."""
    id: str
    command: Tuple[str, ...]
    depends_on: Tuple[str, ...] = ()
    timeout: float = DEFAULT_STEP_TIMEOUT
    retries: int = 0

    # run even when a dependency failed (e.g. cleanup)
    always_run: bool = False

    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None


@dataclass
class Pipeline:
    """
    An ordered set of steps plus the execution context they share.

    Step order is submission order; it is the tie-breaker for the
    topological sort.
    """
    id: str
    steps: Dict[str, Step]

    image: str | None = None
    ports: List[str] = field(default_factory=list)
    provider: str = "local"
    shared_context: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_steps(cls, id: str, steps: Iterable[Step], **kwargs: Any) -> Pipeline:
        by_id: Dict[str, Step] = {}
        for s in steps:
            if s.id in by_id:
                raise MalformedDefinition(
                    f"Duplicate step id: {s.id}",
                    details=[f"pipeline={id}"],
                )
            by_id[s.id] = s
        return cls(id=id, steps=by_id, **kwargs)

    def __len__(self) -> int:
        return len(self.steps)


@dataclass
class StepResult:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    truncated: bool = False
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def error_for_status(self) -> Optional[PipelineError]:
        if self.status is StepStatus.FAILED:
            return StepFailed(
                step=self.step_id,
                exit_code=self.exit_code,
                reason=self.error,
            )
        if self.status is StepStatus.TIMED_OUT:
            return StepTimedOut(step=self.step_id, after=self.duration)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "attempts": self.attempts,
            "truncated": self.truncated,
            "error": self.error,
        }


@dataclass
class RunResult:
    pipeline_id: str
    steps: List[StepResult]
    status: StepStatus
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

    def step(self, step_id: str) -> StepResult:
        for r in self.steps:
            if r.step_id == step_id:
                return r
        raise KeyError(step_id)

    def raise_for_status(self) -> None:
        """Raise the first step error, in execution order."""
        for r in self.steps:
            err = r.error_for_status()
            if err is not None:
                raise err

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "steps": [r.to_dict() for r in self.steps],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
