"""End-to-end analysis workflows built from in-process pipeline stages."""

from .annotation import WorkflowResult, build_annotation_executor, run_annotation_workflow
from .config import WorkflowConfig, WorkflowPaths
from .integration import build_integration_executor, run_integration_workflow

__all__ = [
    "WorkflowConfig",
    "WorkflowPaths",
    "WorkflowResult",
    "build_annotation_executor",
    "build_integration_executor",
    "run_annotation_workflow",
    "run_integration_workflow",
]
