"""Logging utilities for scatlas.

Every step runner writes two things next to its outputs: a human-readable
log file and machine-readable run records (JSON lines or YAML documents)
holding the step's parameters and summary statistics.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Tuple, Union

import yaml

PathLike = Union[str, Path]

FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
CONSOLE_LOG_FORMAT = "%(levelname)s: %(message)s"
RECORD_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def get_timestamped_log_path(log_path: PathLike, when: Optional[datetime] = None) -> Path:
    """``run.log`` -> ``run_20260118_080530.log`` (suffix defaults to .log)."""
    log_path = Path(log_path)
    stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return log_path.with_name(f"{log_path.stem}_{stamp}{log_path.suffix or '.log'}")


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
    console: bool = False,
) -> Tuple[logging.Logger, Path]:
    """Return a logger writing one step's log file.

    Parameters
    ----------
    name : str
        Logger name, e.g. ``scatlas.integration``.
    log_path : PathLike
        Base path of the log file.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        Keep earlier runs by stamping the filename; otherwise the file at
        ``log_path`` is replaced.
    console : bool
        Also echo records to stderr.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the file it writes to.
    """
    log_path = Path(log_path)
    target = get_timestamped_log_path(log_path) if timestamped else log_path
    target.parent.mkdir(parents=True, exist_ok=True)
    if not timestamped:
        target.unlink(missing_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    _reset_handlers(logger)

    file_handler = logging.FileHandler(target, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT))
        logger.addHandler(stream)
    return logger, target


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def run_record(step: str, adata: Any = None, **fields: Any) -> dict[str, Any]:
    """Standard run record: step name, time, dataset shape and extra fields."""
    record: dict[str, Any] = {"step": step, "time": datetime.now().strftime(RECORD_TIME_FORMAT)}
    if adata is not None:
        record["n_cells"] = int(adata.n_obs)
        record["n_genes"] = int(adata.n_vars)
    record.update(fields)
    return _plain(record)


def _open_for_append(log_path: PathLike):
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("a", encoding="utf-8")


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append ``record`` to a JSON-lines file."""
    with _open_for_append(log_path) as handle:
        handle.write(json.dumps(_plain(record), default=str) + "\n")


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append ``record`` as a ``---``-terminated YAML document.

    When ``logger`` is given the document is emitted there instead and
    nothing is written to ``log_path``.
    """
    document = yaml.safe_dump(_plain(record), sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", document)
        return
    with _open_for_append(log_path) as handle:
        handle.write(document + "\n")


def _plain(value: Any) -> Any:
    """Numpy scalars, tuples and paths -> YAML/JSON-safe builtins."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "tolist") and callable(value.tolist):
        return value.tolist()
    return value
