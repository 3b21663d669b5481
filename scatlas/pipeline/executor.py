"""Stage executors for scatlas pipelines.

``PipelineExecutor`` runs configured step modules (``python -m
scatlas.core.<step>``) as subprocesses and checkpoints finished stages to a
JSON file, so an interrupted analysis resumes at the first unfinished step.

``InMemoryExecutor`` runs Python callables in one process and hands each
one the results of the stages before it; the workflows use it to pass a
single AnnData from loading to writing.
"""

import json
import subprocess
import sys
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import PipelineConfig, topological_order
from .logger import PipelineLogger
from .stage import Stage

STATE_FILENAME = ".scatlas_state.json"

# Lines of a failed stage's output repeated in the pipeline log
_TAIL_LINES = 20


class PipelineExecutor:
    """Runs configured stages as subprocesses with checkpoints.

    The checkpoint stores, per finished stage, when it finished, how long
    it took and which outputs it produced. Each stage's stdout and stderr
    go to ``<log_dir>/stages/<stage_id>.log``.

    Parameters
    ----------
    config : PipelineConfig
        Loaded and parsed PipelineConfig
    logger : PipelineLogger
        Initialized PipelineLogger
    state_file : str, optional
        Checkpoint path. Default: ``.scatlas_state.json`` inside
        ``global.output_dir`` (or the working directory).

    Example
    -------
    >>> config = PipelineConfig("pipeline.yaml")
    >>> config.load()
    >>> config.parse_stages()
    >>> logger = PipelineLogger("logs/")
    >>> logger.setup()
    >>> exit_code = PipelineExecutor(config, logger).run(end_stage="integrate")
    """

    def __init__(
        self,
        config: PipelineConfig,
        logger: PipelineLogger,
        state_file: Optional[str] = None,
    ):
        self.config = config
        self.logger = logger
        if state_file:
            self.state_file = Path(state_file)
        else:
            output_dir = config.global_settings.get("global", {}).get("output_dir", ".")
            self.state_file = Path(output_dir) / STATE_FILENAME
        self.completed_stages: List[str] = []
        self.stage_records: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    def load_state(self) -> None:
        """Read finished stages from the checkpoint; unreadable files are ignored."""
        self.completed_stages = []
        self.stage_records = {}
        if not self.state_file.exists():
            self.logger.log_debug(f"No checkpoint at {self.state_file}")
            return

        try:
            state = json.loads(self.state_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            self.logger.log_warning(f"Ignoring unreadable checkpoint {self.state_file}: {e}")
            return

        self.completed_stages = list(state.get("completed_stages", []))
        self.stage_records = dict(state.get("stages", {}))
        if self.completed_stages:
            self.logger.log_info(
                f"Checkpoint: {len(self.completed_stages)} stage(s) done, "
                f"last was '{self.completed_stages[-1]}'"
            )

    def save_state(self) -> None:
        pipeline_meta = self.config.global_settings.get("pipeline", {})
        state = {
            "pipeline_version": str(pipeline_meta.get("version", "1.0")),
            "updated": datetime.now().isoformat(timespec="seconds"),
            "completed_stages": self.completed_stages,
            "stages": self.stage_records,
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(json.dumps(state, indent=2))

    def clear_state(self) -> None:
        """Forget all finished stages and delete the checkpoint."""
        if self.state_file.exists():
            self.state_file.unlink()
            self.logger.log_info(f"Removed checkpoint {self.state_file}")
        self.completed_stages = []
        self.stage_records = {}

    def _mark_complete(self, stage: Stage, duration: float, skipped: bool = False) -> None:
        self.completed_stages.append(stage.stage_id)
        self.stage_records[stage.stage_id] = {
            "finished": datetime.now().isoformat(timespec="seconds"),
            "duration": round(duration, 3),
            "skipped": skipped,
            "outputs": dict(stage.outputs),
        }
        self.save_state()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def should_skip_stage(self, stage: Stage) -> bool:
        """Optional stages are skipped when the file named by their ``config`` arg is absent."""
        if not stage.optional:
            return False
        config_arg = stage.args.get("config")
        return bool(config_arg) and not Path(config_arg).exists()

    def _report(self, stage_id: str, kind: str, errors: List[str]) -> None:
        self.logger.log_error(f"{kind} validation failed for stage {stage_id}:")
        for error in errors:
            self.logger.log_error(f"  - {error}")

    def _stage_log(self, stage_id: str) -> Path:
        path = self.logger.log_dir / "stages" / f"{stage_id}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def _run_command(self, stage: Stage, cmd: List[str]) -> Tuple[int, Path]:
        log_path = self._stage_log(stage.stage_id)
        with open(log_path, "w") as handle:
            handle.write(f"$ {' '.join(cmd)}\n")
            handle.flush()
            completed = subprocess.run(
                cmd, stdout=handle, stderr=subprocess.STDOUT, text=True, check=False
            )
        return completed.returncode, log_path

    def execute_stage(self, stage: Stage, dry_run: bool = False) -> int:
        """Run one stage; returns its exit code (0 = success)."""
        if self.should_skip_stage(stage):
            self.logger.log_stage_skip(stage.stage_id, "optional and its config is missing")
            self._mark_complete(stage, 0.0, skipped=True)
            return 0

        # Step modules run under the interpreter that runs the pipeline
        cmd = [sys.executable] + stage.get_command()[1:]
        if dry_run:
            self.logger.log_info(f"[DRY RUN] {stage.stage_id}: {' '.join(cmd)}")
            return 0

        valid, errors = stage.validate_inputs()
        if not valid:
            self._report(stage.stage_id, "Input", errors)
            return 1

        self.logger.log_stage_start(stage.stage_id, stage.name)
        start = time.time()
        try:
            returncode, log_path = self._run_command(stage, cmd)
        except OSError as e:
            self.logger.log_stage_error(stage.stage_id, str(e))
            return 1
        duration = time.time() - start

        if returncode != 0:
            self.logger.log_stage_error(stage.stage_id, f"exit code {returncode} (see {log_path})")
            with open(log_path) as handle:
                for line in deque(handle, maxlen=_TAIL_LINES):
                    self.logger.log_error(f"  | {line.rstrip()}")
            return returncode

        valid, errors = stage.validate_outputs()
        if not valid:
            self._report(stage.stage_id, "Output", errors)
            return 1

        self.logger.log_stage_complete(stage.stage_id, duration)
        self._mark_complete(stage, duration)
        return 0

    def _slice_order(
        self, order: List[str], start_stage: Optional[str], end_stage: Optional[str]
    ) -> Optional[List[str]]:
        for label, stage_id in (("Start", start_stage), ("End", end_stage)):
            if stage_id and stage_id not in order:
                self.logger.log_error(f"{label} stage '{stage_id}' not found")
                return None
        first = order.index(start_stage) if start_stage else 0
        last = order.index(end_stage) + 1 if end_stage else len(order)
        return order[first:last]

    def run(
        self,
        start_stage: Optional[str] = None,
        end_stage: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> int:
        """Run stages from ``start_stage`` to ``end_stage`` in dependency order.

        Parameters
        ----------
        start_stage : str, optional
            First stage to consider (default: first in order)
        end_stage : str, optional
            Last stage to consider (default: last in order)
        dry_run : bool
            Log the commands without running anything
        force : bool
            Discard the checkpoint and re-run every stage

        Returns
        -------
        int
            Exit code (0 = success, non-zero = failure)
        """
        try:
            order = self._slice_order(self.config.get_execution_order(), start_stage, end_stage)
        except ValueError as e:
            self.logger.log_error(str(e))
            return 1
        if order is None:
            return 1

        if force:
            self.clear_state()
        else:
            self.load_state()

        self.logger.log_plan(order, done=self.completed_stages, dry_run=dry_run)
        started = time.time()
        for stage_id in order:
            if stage_id in self.completed_stages:
                self.logger.log_stage_skip(stage_id, "already completed")
                continue
            exit_code = self.execute_stage(self.config.stages[stage_id], dry_run)
            if exit_code != 0:
                self.logger.log_error(f"Pipeline stopped at stage {stage_id}")
                return exit_code

        if not dry_run:
            self.logger.log_summary(
                {sid: self.stage_records.get(sid, {}).get("duration", 0.0) for sid in order},
                total=time.time() - started,
            )
        return 0

    def get_resume_stage(self) -> Optional[str]:
        """First stage in execution order that the checkpoint does not list as done."""
        self.load_state()
        if not self.completed_stages:
            return None
        for stage_id in self.config.get_execution_order():
            if stage_id not in self.completed_stages:
                return stage_id
        return None


class InMemoryExecutor:
    """Runs Python callables as dependent stages within one process.

    Each stage is called as ``func(**kwargs, stage_results=results)`` where
    ``results`` maps finished stage IDs to their return values. Wall time
    per stage is kept in ``durations``.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("qc", run_qc)
    >>> executor.register_stage("annotate", run_annotation, depends_on=["qc"])
    >>> results = executor.run(config=config)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.durations: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register a stage function.

        Raises
        ------
        ValueError
            If ``stage_id`` is already registered
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
        }

    def get_execution_order(self) -> List[str]:
        return topological_order(
            {stage_id: stage["depends_on"] for stage_id, stage in self.stages.items()}
        )

    def run(self, **kwargs) -> Dict[str, Any]:
        """Run every registered stage; returns stage ID -> return value.

        A failing stage is logged and its exception propagates.
        """
        order = self.get_execution_order()
        if self.logger:
            self.logger.log_plan(order)

        results: Dict[str, Any] = {}
        started = time.time()
        for stage_id in order:
            stage = self.stages[stage_id]
            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])
            start = time.time()
            try:
                results[stage_id] = stage["func"](**kwargs, stage_results=results)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, f"{type(e).__name__}: {e}")
                raise
            self.durations[stage_id] = time.time() - start
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.durations[stage_id])

        if self.logger:
            self.logger.log_summary(self.durations, total=time.time() - started)
        return results
