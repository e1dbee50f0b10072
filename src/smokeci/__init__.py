from .dsl import step, sh, chain, pipeline, matrix
from .dag import DependencyGraph
from .definition import load_definition, parse_definition
from .executor import StepExecutor
from .model import Pipeline, RunResult, Step, StepResult, StepStatus
from .runner import PipelineRunner, run_pipeline

__version__ = "0.1.0"

__all__ = [
    "step", "sh", "chain", "pipeline", "matrix",
    "DependencyGraph", "load_definition", "parse_definition", "StepExecutor",
    "Pipeline", "RunResult", "Step", "StepResult", "StepStatus",
    "PipelineRunner", "run_pipeline",
]
