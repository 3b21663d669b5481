"""Pipeline configuration loader and validator."""

import re
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from .stage import Stage

TEMPLATE_PATTERN = re.compile(r"\{([^}]+)\}")


def topological_order(dependencies: Mapping[str, Sequence[str]]) -> List[str]:
    """Order node IDs so that every node follows its dependencies.

    Kahn's algorithm; ties keep the insertion order of ``dependencies``.

    Raises
    ------
    ValueError
        If the dependency graph has a cycle or names an unknown node.
    """
    for node, deps in dependencies.items():
        unknown = [d for d in deps if d not in dependencies]
        if unknown:
            raise ValueError(f"Stage '{node}' depends on unknown stage(s): {unknown}")

    in_degree = {node: len(set(deps)) for node, deps in dependencies.items()}
    queue = deque(node for node, degree in in_degree.items() if degree == 0)
    order: List[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for other, deps in dependencies.items():
            if node in deps:
                in_degree[other] -= 1
                if in_degree[other] == 0:
                    queue.append(other)

    if len(order) != len(dependencies):
        raise ValueError("Circular dependency detected - cannot compute execution order")
    return order


class PipelineConfig:
    """Loads and manages a stage pipeline from YAML.

    The YAML has three sections: ``pipeline`` (name, version), ``global``
    (shared parameters such as ``output_dir``) and ``stages``. String values
    may reference other entries with ``{section.key...}`` templates, e.g.
    ``{global.output_dir}/qc`` or ``{stages.qc.outputs.query}``.

    Parameters
    ----------
    config_path : str
        Path to the YAML configuration file

    Example
    -------
    >>> config = PipelineConfig("pipeline.yaml")
    >>> config.load()
    >>> config.parse_stages()
    >>> valid, errors = config.validate_dependencies()
    >>> order = config.get_execution_order()
    """

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self.raw_config: Dict[str, Any] = {}
        self.stages: Dict[str, Stage] = {}
        self.global_settings: Dict[str, Any] = {}

    def load(self) -> None:
        """Load the YAML configuration file.

        Raises
        ------
        FileNotFoundError
            If config file doesn't exist
        yaml.YAMLError
            If YAML is malformed
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            self.raw_config = yaml.safe_load(f) or {}

        self.global_settings = {
            "pipeline": self.raw_config.get("pipeline", {}),
            "global": self.raw_config.get("global", {}),
        }

    def parse_stages(self) -> None:
        """Convert YAML stage definitions to Stage objects with resolved templates.

        Raises
        ------
        KeyError
            If the ``stages`` section or a stage's ``script_module`` is missing
        """
        if "stages" not in self.raw_config:
            raise KeyError("No 'stages' section in configuration")

        for stage_id, stage_def in self.raw_config["stages"].items():
            resolved = dict(stage_def)
            for section in ("inputs", "outputs"):
                resolved[section] = {
                    k: self.resolve_paths(v) for k, v in stage_def.get(section, {}).items()
                }
            resolved["args"] = {
                k: self.resolve_paths(v) if isinstance(v, str) else v
                for k, v in stage_def.get("args", {}).items()
            }
            resolved["required_files"] = [
                self.resolve_paths(p) for p in stage_def.get("required_files", [])
            ]
            self.stages[stage_id] = Stage.from_dict(resolved, stage_id)

    def _lookup(self, reference: str) -> Optional[Any]:
        value: Any = self.raw_config
        for part in reference.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def resolve_paths(self, path_template: str) -> str:
        """Resolve ``{...}`` templates against the raw configuration.

        Unresolvable references are left untouched. Resolution repeats
        until no further substitution happens, so templates may chain.
        """
        if "{" not in path_template:
            return path_template

        def replace(match: "re.Match[str]") -> str:
            value = self._lookup(match.group(1))
            if value is None or isinstance(value, (dict, list)):
                return match.group(0)
            return str(value)

        resolved = TEMPLATE_PATTERN.sub(replace, path_template)
        if resolved != path_template and "{" in resolved:
            return self.resolve_paths(resolved)
        return resolved

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Check that dependencies exist and contain no cycles.

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors)
        """
        errors = [
            f"Stage '{stage_id}' depends on unknown stage '{dep}'"
            for stage_id, stage in self.stages.items()
            for dep in stage.depends_on
            if dep not in self.stages
        ]
        if not errors:
            try:
                self.get_execution_order()
            except ValueError:
                errors.append("Circular dependency detected in stage dependencies")
        return (len(errors) == 0, errors)

    def get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort.

        Raises
        ------
        ValueError
            If circular or unknown dependencies are detected
        """
        return topological_order(
            {stage_id: stage.depends_on for stage_id, stage in self.stages.items()}
        )

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        """Get a stage by its ID, or None."""
        return self.stages.get(stage_id)

    def list_stages(self) -> List[str]:
        """List all stage IDs in definition order."""
        return list(self.stages.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "pipeline": self.global_settings.get("pipeline", {}),
            "global": self.global_settings.get("global", {}),
            "stages": {sid: stage.to_dict() for sid, stage in self.stages.items()},
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "PipelineConfig":
        """Create a PipelineConfig from an in-memory dictionary."""
        config = cls(".")
        config.raw_config = config_dict
        config.global_settings = {
            "pipeline": config_dict.get("pipeline", {}),
            "global": config_dict.get("global", {}),
        }
        if "stages" in config_dict:
            config.parse_stages()
        return config
