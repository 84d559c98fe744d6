"""
Pipeline Module

Anchor-constrained plausibility runs and their configuration.
"""

from .config import PlausibilityConfig, RunMode, build_config
from .plausibility import (
    AnchorConstrainedPlausibility,
    PipelineInputs,
    PlausibilityResult,
    BundleScore,
)

__all__ = [
    "PlausibilityConfig",
    "RunMode",
    "build_config",
    "AnchorConstrainedPlausibility",
    "PipelineInputs",
    "PlausibilityResult",
    "BundleScore",
]
