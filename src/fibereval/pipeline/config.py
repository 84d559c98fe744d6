"""
Run Configuration
=================

``PlausibilityConfig`` gathers every option of a plausibility run. Values are
layered from dataclass defaults, an optional JSON file and explicit
command-line flags (highest precedence).
"""

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from ..fitting.regularization import Regularization

logger = logging.getLogger(__name__)


class RunMode(Enum):
    """How candidates are scored after the anchor step"""
    WEIGHTS = "weights"
    STREAMLINE_COUNT = "streamline_count"
    JOINT = "joint"
    GREEDY = "greedy"


@dataclass
class PlausibilityConfig:
    """
    Options of an anchor-constrained plausibility run

    Attributes:
        peaks: Peak image file
        candidates: Folder (or single file) with candidate tractograms
        output: Output folder
        anchor: Optional anchor tractogram
        mask: Optional fit mask
        reference_mask_folders: Folders or files with reference tract masks
        reference_peaks_folders: Folders or files with reference peak images
        greedy: Add candidates one by one instead of a joint fit
        lambda_: Regularization strength
        regularization: Penalty used for the joint candidate fit
        filter_outliers: Refit with a 99th percentile weight bound
        use_weights: Score candidates by their first fiber weight
        use_num_streamlines: Score candidates by their fiber count
        filter_zero_weights: Drop zero-weight fibers before saving
        flip_x, flip_y, flip_z: Flip the peak image along an axis
        step_fraction: Segment sampling step relative to the voxel size
        max_iterations: Optimiser iteration limit
        n_jobs: Threads used for greedy candidate fits
        resample_mask: Resample the fit mask onto the peak grid if needed
        memory_limit_gb: Memory budget for the fitting problem
        verbose: Verbose progress output
    """
    peaks: Optional[str] = None
    candidates: Optional[str] = None
    output: Optional[str] = None
    anchor: Optional[str] = None
    mask: Optional[str] = None
    reference_mask_folders: List[str] = field(default_factory=list)
    reference_peaks_folders: List[str] = field(default_factory=list)
    greedy: bool = False
    lambda_: float = 0.1
    regularization: Regularization = Regularization.NONE
    filter_outliers: bool = False
    use_weights: bool = False
    use_num_streamlines: bool = False
    filter_zero_weights: bool = False
    flip_x: bool = False
    flip_y: bool = False
    flip_z: bool = False
    step_fraction: float = 0.25
    max_iterations: int = 1000
    n_jobs: int = 1
    resample_mask: bool = False
    memory_limit_gb: float = 10.0
    verbose: bool = False

    def __post_init__(self):
        self.regularization = Regularization.from_name(self.regularization)
        self.reference_mask_folders = _as_list(self.reference_mask_folders)
        self.reference_peaks_folders = _as_list(self.reference_peaks_folders)
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type is bool:
                setattr(self, f.name, _as_bool(f.name, value))
            elif f.type is float:
                setattr(self, f.name, float(value))
            elif f.type is int:
                if isinstance(value, bool) or float(value) != int(value):
                    raise ValueError(f"{f.name} must be an integer, got {value!r}")
                setattr(self, f.name, int(value))

    @property
    def mode(self) -> RunMode:
        """Scoring mode; weight/count scoring takes precedence over greedy"""
        if self.use_weights:
            return RunMode.WEIGHTS
        if self.use_num_streamlines:
            return RunMode.STREAMLINE_COUNT
        if self.greedy:
            return RunMode.GREEDY
        return RunMode.JOINT

    @property
    def flips(self) -> bool:
        return self.flip_x or self.flip_y or self.flip_z

    def validate(self, require_paths: bool = True):
        """
        Check option values

        Raises:
            ValueError: On missing required paths or out-of-range values
        """
        if require_paths:
            missing = [name for name in ('peaks', 'candidates', 'output') if not getattr(self, name)]
            if missing:
                raise ValueError(f"Missing required option(s): {', '.join(missing)}")
        if self.lambda_ < 0:
            raise ValueError(f"lambda must be >= 0, got {self.lambda_}")
        if not 0 < self.step_fraction <= 1:
            raise ValueError(f"step_fraction must be in (0, 1], got {self.step_fraction}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
        if self.memory_limit_gb <= 0:
            raise ValueError(f"memory_limit_gb must be positive, got {self.memory_limit_gb}")
        if self.use_weights and self.use_num_streamlines:
            logger.warning("Both use_weights and use_num_streamlines set; using weights")

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable view (enum as its name string)"""
        data = asdict(self)
        data['regularization'] = self.regularization.value
        return data

    def updated(self, overrides: Dict[str, Any]) -> "PlausibilityConfig":
        """Copy with the given non-None values replaced"""
        data = self.to_dict()
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            key = _canonical_key(key)
            if key not in known:
                raise ValueError(f"Unknown configuration option: {key}")
            if value is not None:
                data[key] = value
        return PlausibilityConfig(**data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlausibilityConfig":
        return cls().updated(data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "PlausibilityConfig":
        """
        Load options from a JSON object

        Raises:
            ValueError: If the file is not a JSON object or has unknown keys
        """
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a JSON object")
        logger.info(f"Loaded configuration from {path}")
        return cls.from_dict(data)

    def save(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)


_ALIASES = {
    'lambda': 'lambda_',
    'regu': 'regularization',
    'greedy_add': 'greedy',
    'flipx': 'flip_x',
    'flipy': 'flip_y',
    'flipz': 'flip_z',
}


def _canonical_key(key: str) -> str:
    key = key.replace('-', '_')
    return _ALIASES.get(key, key)


def build_config(
    config_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> PlausibilityConfig:
    """
    Resolve the run configuration

    Args:
        config_file: Optional JSON file
        overrides: Explicitly given values; None entries are ignored

    Returns:
        Validated PlausibilityConfig
    """
    config = PlausibilityConfig.from_json(config_file) if config_file else PlausibilityConfig()
    if overrides:
        config = config.updated(overrides)
    config.validate()
    return config


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, Path)):
        return [str(value)]
    return [str(v) for v in value]
