"""Stage representation and validation for pipeline execution."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple


@dataclass
class Stage:
    """One pipeline step backed by a runnable ``python -m`` module.

    Attributes
    ----------
    name : str
        Human-readable stage name (e.g., "Reference annotation")
    stage_id : str
        Short identifier used in ``depends_on`` and checkpoints
    script_module : str
        Module path (e.g., "scatlas.core.integration")
    depends_on : List[str]
        Stage IDs that must complete first
    inputs : Dict[str, str]
        Input name -> path; every path must exist before running
    outputs : Dict[str, str]
        Output name -> path; every path must exist after running
    args : Dict[str, Any]
        Command-line arguments passed to the module
    required_files : List[str]
        Additional files that must exist before running
    optional : bool
        Whether the stage may be skipped when its config is absent

    Example
    -------
    >>> stage = Stage(
    ...     name="Integration",
    ...     stage_id="integrate",
    ...     script_module="scatlas.core.integration",
    ...     inputs={"query": "query.h5ad", "reference": "ref.h5ad"},
    ...     outputs={"integrated": "out/integrated.h5ad"},
    ... )
    >>> valid, errors = stage.validate_inputs()
    """

    name: str
    stage_id: str
    script_module: str
    depends_on: List[str] = field(default_factory=list)
    inputs: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    args: Dict[str, Any] = field(default_factory=dict)
    required_files: List[str] = field(default_factory=list)
    optional: bool = False

    @staticmethod
    def _missing(paths: Dict[str, str], kind: str) -> List[str]:
        return [
            f"{kind} '{name}' not found: {path}"
            for name, path in paths.items()
            if not Path(path).exists()
        ]

    def validate_inputs(self) -> Tuple[bool, List[str]]:
        """Check that all inputs and required files exist.

        Returns
        -------
        Tuple[bool, List[str]]
            (success, errors)
        """
        errors = self._missing(self.inputs, "Input")
        errors.extend(
            f"Required file not found: {path}"
            for path in self.required_files
            if not Path(path).exists()
        )
        return (len(errors) == 0, errors)

    def validate_outputs(self) -> Tuple[bool, List[str]]:
        """Check that all declared outputs exist after execution."""
        errors = self._missing(self.outputs, "Output")
        return (len(errors) == 0, errors)

    def get_command(self) -> List[str]:
        """Build the subprocess argument list.

        ``True`` values become bare flags, ``False``/``None`` are dropped and
        lists are expanded into repeated values after a single flag.

        Example
        -------
        >>> Stage("QC", "qc", "scatlas.core.preprocessing",
        ...       args={"input": "q.h5ad", "per_batch": True}).get_command()
        ['python', '-m', 'scatlas.core.preprocessing', '--input', 'q.h5ad', '--per-batch']
        """
        cmd = ["python", "-m", self.script_module]

        for key, value in self.args.items():
            flag = f"--{key.replace('_', '-')}"
            if value is True:
                cmd.append(flag)
            elif value is False or value is None:
                continue
            elif isinstance(value, (list, tuple)):
                cmd.append(flag)
                cmd.extend(str(v) for v in value)
            else:
                cmd.extend([flag, str(value)])

        return cmd

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage to dictionary for serialization."""
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "script_module": self.script_module,
            "depends_on": list(self.depends_on),
            "inputs": dict(self.inputs),
            "outputs": dict(self.outputs),
            "args": dict(self.args),
            "required_files": list(self.required_files),
            "optional": self.optional,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], stage_id: str) -> "Stage":
        """Create a Stage from its YAML/dict definition.

        Raises
        ------
        KeyError
            If ``script_module`` is missing.
        """
        if "script_module" not in data:
            raise KeyError(f"Stage '{stage_id}' missing required field 'script_module'")
        return cls(
            name=data.get("name", stage_id),
            stage_id=stage_id,
            script_module=data["script_module"],
            depends_on=list(data.get("depends_on", [])),
            inputs=dict(data.get("inputs", {})),
            outputs=dict(data.get("outputs", {})),
            args=dict(data.get("args", {})),
            required_files=list(data.get("required_files", [])),
            optional=data.get("optional", False),
        )
