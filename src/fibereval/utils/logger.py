"""
Logging utilities for fibereval

Provides structured logging with file and console output, the run-scoped
score log written next to the scored tractograms, and the decision log.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional, Sequence, TextIO, Union


class FiberEvalLogger:
    """Configures the package logger for one run"""

    def __init__(
        self,
        name: str = "fibereval",
        log_dir: Optional[Union[str, Path]] = "logs",
        level: int = logging.INFO,
        console: bool = True,
        file: bool = True
    ):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if file else level)
        self.logger.handlers = []  # Clear existing handlers
        self.log_file: Optional[Path] = None

        # Create formatters
        detailed_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        simple_formatter = logging.Formatter(
            '%(levelname)s: %(message)s'
        )

        # Console handler
        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(simple_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if file and log_dir is not None:
            log_path = Path(log_dir)
            log_path.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            self.log_file = log_path / f"fibereval_{timestamp}.log"

            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(detailed_formatter)
            self.logger.addHandler(file_handler)

            self.logger.info(f"Logging to: {self.log_file}")

    def get_logger(self) -> logging.Logger:
        """Get the configured logger instance"""
        return self.logger

    def close(self):
        """Detach and close all handlers"""
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)


def get_logger(name: str = "fibereval") -> logging.Logger:
    """Get a logger below the package namespace"""
    if name != "fibereval" and not name.startswith("fibereval."):
        name = f"fibereval.{name}"
    return logging.getLogger(name)


class ScoreLog:
    """
    Run-scoped plain-text log of bundle scores (``log.txt``)

    One instance is opened per run and handed to the pipeline driver; every
    record is flushed immediately so partial runs leave a usable log.
    """

    VERSION = "V3"

    def __init__(self, path: Union[str, Path], precision: int = 5):
        self.path = Path(path)
        self.precision = precision
        self._handle: Optional[TextIO] = None

    def open(self) -> "ScoreLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, 'w', encoding='utf-8')
        self._write(self.VERSION)
        return self

    def close(self):
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "ScoreLog":
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _fmt(self, value: float) -> str:
        return f"{value:.{self.precision}g}"

    def _write(self, line: str):
        if self._handle is None:
            raise RuntimeError(f"Score log is not open: {self.path}")
        self._handle.write(line + "\n")
        self._handle.flush()

    def anchor(self, rms_diff: float, name: str, rmse: float):
        self._write(f"RMS_DIFF: {self._fmt(rms_diff)} {name} RMSE: {self._fmt(rmse)}")

    def bundle_score(
        self,
        score: float,
        name: str,
        num_voxels: int,
        num_fibers: int,
        weight_sum: float
    ):
        self._write(
            f"RMS_DIFF: {self._fmt(score)} {name} {num_voxels} {num_fibers} "
            f"{self._fmt(weight_sum)}"
        )

    def greedy_round(self, rmse: float, name: str, covered_directions: int):
        self._write(f"RMSE: {self._fmt(rmse)} {name} {covered_directions}")

    def overlap(self, report, reference_names: Sequence[str]):
        """Write the best volumetric and directional matches of an OverlapReport"""
        best = report.best_volumetric
        if best.index is None:
            self._write("No_overlap")
            return

        self._write(
            f"Best_overlap: {self._fmt(best.volumetric)} {self._fmt(best.directional)} "
            f"{reference_names[best.index]}"
        )
        directional = report.best_directional
        if directional is not None and directional.index is not None:
            self._write(
                f"Best_dir_overlap: {self._fmt(directional.directional)} "
                f"{self._fmt(directional.volumetric)} {reference_names[directional.index]}"
            )


def log_decision(
    decision_id: str,
    component: str,
    decision: str,
    rationale: str,
    parameters: dict,
    output_file: Union[str, Path] = "decision_log.md"
):
    """
    Append one run decision (e.g. the resolved scoring mode) to ``decision_log.md``

    Args:
        decision_id: Short tag such as "RUN-MODE"
        component: Module that took the decision
        decision: Resolved choice
        rationale: Option or default that led to it
        parameters: Run parameters relevant to the decision
        output_file: Markdown file, appended to across runs
    """
    lines = [
        f"### [{decision_id}] {decision}",
        f"- time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"- component: {component}",
        f"- rationale: {rationale}",
    ]
    lines.extend(f"- {key} = {value}" for key, value in parameters.items())

    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'a', encoding='utf-8') as f:
        f.write("\n".join(lines) + "\n\n")

    get_logger().debug(f"Decision logged: {decision_id}")
