"""Structured logging for pipeline and workflow execution."""

import copy
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

_RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level name for terminal output."""

    def __init__(self, fmt: str, datefmt: str, colors: Dict[str, str]):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        # Handlers share the record; colour a copy only
        record = copy.copy(record)
        color = self.colors.get(record.levelname)
        if color:
            record.levelname = f"{color}{record.levelname}{_RESET}"
        return super().format(record)


class PipelineLogger:
    """Run log for a pipeline or workflow.

    Everything goes to ``<log_dir>/<name>_<timestamp>.log``; the console
    stream is coloured when attached to a terminal. Stage events are
    numbered against the plan announced with :meth:`log_plan`.

    Parameters
    ----------
    log_dir : str
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name; its last dotted part names the log file. Default: "scatlas"

    Example
    -------
    >>> logger = PipelineLogger("out/logs", log_name="scatlas.integration")
    >>> logger.setup()
    >>> logger.log_plan(["load", "qc", "integrate"])
    >>> logger.log_stage_start("integrate", "fastMNN integration")
    >>> logger.log_stage_complete("integrate", 45.2)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",
        "INFO": "\033[0;34m",
        "WARNING": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[1;31m",
    }

    def __init__(
        self,
        log_dir: str,
        log_level: str = "INFO",
        log_name: str = "scatlas",
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        stem = log_name.rsplit(".", 1)[-1]
        self.log_file = self.log_dir / f"{stem}_{datetime.now():%Y%m%d_%H%M%S}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.handlers = []
        self._plan: List[str] = []

    def setup(self, stream=None) -> None:
        """Attach the file handler and the console handler (stdout by default)."""
        stream = stream or sys.stdout

        file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        console_handler = logging.StreamHandler(stream)
        console_handler.setLevel(self.log_level)
        colors = self.COLORS if getattr(stream, "isatty", lambda: False)() else {}
        console_handler.setFormatter(
            ColoredFormatter("%(asctime)s - %(levelname)s - %(message)s", "%H:%M:%S", colors)
        )

        self.logger.addHandler(file_handler)
        self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def _position(self, stage_id: str) -> str:
        if stage_id in self._plan:
            return f"[{self._plan.index(stage_id) + 1}/{len(self._plan)}] "
        return ""

    def log_plan(
        self,
        order: Sequence[str],
        done: Optional[Sequence[str]] = None,
        dry_run: bool = False,
    ) -> None:
        """Announce the stage order; stages in ``done`` are marked."""
        self._plan = list(order)
        done = set(done or [])
        steps = " -> ".join(f"{s} (done)" if s in done else s for s in self._plan)
        prefix = "DRY RUN plan" if dry_run else "Execution plan"
        self.logger.info(f"{prefix}: {steps}")

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        self.logger.info("=" * 80)
        self.logger.info(f"{self._position(stage_id)}Starting {stage_id}: {stage_name}")
        self.logger.info("=" * 80)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        self.logger.info(
            f"{self._position(stage_id)}{stage_id} finished in {self.format_duration(duration)}"
        )

    def log_stage_skip(self, stage_id: str, reason: str) -> None:
        self.logger.info(f"{self._position(stage_id)}[SKIP] {stage_id}: {reason}")

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error(f"{self._position(stage_id)}{stage_id} failed: {error}")

    def log_summary(self, durations: Dict[str, float], total: Optional[float] = None) -> None:
        """Table of per-stage wall times."""
        if not durations:
            return
        width = max(len(stage_id) for stage_id in durations)
        self.logger.info("Stage timings:")
        for stage_id, seconds in durations.items():
            self.logger.info(f"  {stage_id:<{width}}  {self.format_duration(seconds):>8}")
        if total is not None:
            self.logger.info(f"  {'total':<{width}}  {self.format_duration(total):>8}")

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    def log_error(self, message: str) -> None:
        self.logger.error(message)

    def log_debug(self, message: str) -> None:
        self.logger.debug(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """45.2 -> "45.2s", 125 -> "2m 5s", 7300 -> "2h 1m"."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        minutes, secs = divmod(int(seconds), 60)
        if minutes < 60:
            return f"{minutes}m {secs}s"
        hours, minutes = divmod(minutes, 60)
        return f"{hours}h {minutes}m"
