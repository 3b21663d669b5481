"""Pipeline orchestration module.

Provides YAML-based stage configuration, subprocess execution with
checkpoint/resume support, and an in-memory executor used by the
analysis workflows.

Example Usage
-------------
>>> from scatlas.pipeline import PipelineConfig, PipelineExecutor, PipelineLogger
>>> config = PipelineConfig("pipeline.yaml")
>>> config.load()
>>> config.parse_stages()
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> exit_code = PipelineExecutor(config, logger).run()
"""

from .stage import Stage
from .config import PipelineConfig, topological_order
from .logger import ColoredFormatter, PipelineLogger
from .executor import InMemoryExecutor, PipelineExecutor

__all__ = [
    "Stage",
    "PipelineConfig",
    "topological_order",
    "ColoredFormatter",
    "PipelineLogger",
    "InMemoryExecutor",
    "PipelineExecutor",
]
