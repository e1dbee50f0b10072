"""Pipeline definition loading: YAML/JSON documents and Python workflow files."""

from __future__ import annotations

import json
import runpy
import shlex
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import MalformedDefinition
from .model import Pipeline, Step
from .settings import DEFAULT_STEP_TIMEOUT

YAML_SUFFIXES = (".yaml", ".yml")
JSON_SUFFIXES = (".json",)
PYTHON_SUFFIXES = (".py",)


# -------------------- Schemas --------------------

class _Spec(BaseModel):
    # strict: "3" is not a number, "yes" is not a bool
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)


class StepSpec(_Spec):
    id: str = Field(min_length=1)
    command: Union[str, List[str]]
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    timeout_seconds: float = Field(default=DEFAULT_STEP_TIMEOUT, alias="timeoutSeconds", gt=0)
    retries: int = Field(default=0, ge=0)
    always_run: bool = Field(default=False, alias="alwaysRun")
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    @field_validator("command")
    @classmethod
    def _split_command(cls, v: Union[str, List[str]]) -> List[str]:
        tokens = shlex.split(v) if isinstance(v, str) else list(v)
        if not tokens:
            raise ValueError("command must not be empty")
        return tokens

    def to_step(self) -> Step:
        return Step(
            id=self.id,
            command=tuple(self.command),
            depends_on=tuple(self.depends_on),
            timeout=self.timeout_seconds,
            retries=self.retries,
            always_run=self.always_run,
            env=dict(self.env),
            cwd=self.cwd,
        )


class ContextSpec(_Spec):
    provider: Literal["local", "docker"] = "local"
    image: Optional[str] = None
    ports: List[Union[str, int]] = Field(default_factory=list)
    shared: bool = False

    @model_validator(mode="after")
    def _docker_needs_image(self) -> "ContextSpec":
        if self.provider == "docker" and not self.image:
            raise ValueError("context.image is required when context.provider is 'docker'")
        return self


class PipelineSpec(_Spec):
    id: Optional[str] = None
    name: Optional[str] = None
    steps: List[StepSpec] = Field(min_length=1)
    context: ContextSpec = Field(default_factory=ContextSpec)
    env: Dict[str, str] = Field(default_factory=dict)

    def to_pipeline(self, default_id: str = "pipeline") -> Pipeline:
        return Pipeline.from_steps(
            self.id or self.name or default_id,
            [s.to_step() for s in self.steps],
            image=self.context.image,
            ports=[str(p) for p in self.context.ports],
            provider=self.context.provider,
            shared_context=self.context.shared,
            env=dict(self.env),
        )


# -------------------- Parsing --------------------

def _format_errors(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"{loc}: {err['msg']}")
    return lines


def parse_definition(data: Any, source: str = "<definition>", default_id: str = "pipeline") -> Pipeline:
    """Validate an already-decoded document and build a Pipeline."""
    if not isinstance(data, dict):
        raise MalformedDefinition(
            f"Expected a mapping in {source}, got {type(data).__name__}",
        )
    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise MalformedDefinition(
            f"Invalid pipeline definition in {source}",
            details=_format_errors(e),
        ) from e
    return spec.to_pipeline(default_id=default_id)


def _load_python(path: Path) -> Pipeline:
    """
    Load a pipeline from a python file.

    The file must define either:
      - workflow() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    module_name = f"smokeci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            pipeline = globals_dict["workflow"]()
        else:
            pipeline = globals_dict.get("PIPELINE")
    except MalformedDefinition:
        raise
    except Exception as e:
        raise MalformedDefinition(
            f"Could not load workflow {path}",
            details=[f"{type(e).__name__}: {e}"],
        ) from e

    if not isinstance(pipeline, Pipeline):
        raise MalformedDefinition(
            f"Workflow {path.name} did not produce a Pipeline",
            details=["Define workflow() -> Pipeline or PIPELINE = pipeline(...)."],
        )
    return pipeline


def load_definition(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a .yaml/.yml, .json or .py file.

    Raises MalformedDefinition for unreadable files, bad syntax, schema
    violations and unsupported file types. Dependency checks happen
    later, in DependencyGraph.build().
    """
    p = Path(path).expanduser()
    if not p.is_file():
        raise MalformedDefinition(f"Definition file not found: {p}")

    suffix = p.suffix.lower()
    if suffix in PYTHON_SUFFIXES:
        return _load_python(p.resolve())

    try:
        raw = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedDefinition(f"Cannot read {p}: {e}") from e

    if suffix in YAML_SUFFIXES:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise MalformedDefinition(f"Invalid YAML in {p}", details=[str(e)]) from e
    elif suffix in JSON_SUFFIXES:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedDefinition(f"Invalid JSON in {p}", details=[str(e)]) from e
    else:
        raise MalformedDefinition(
            f"Unsupported definition file type: {p.name}",
            details=["Use .yaml, .yml, .json or .py."],
        )

    return parse_definition(data, source=str(p), default_id=p.stem)
