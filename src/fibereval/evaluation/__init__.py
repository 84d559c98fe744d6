"""
Evaluation Module

Volumetric and directional overlap of bundles with reference tracts.
"""

from .overlap import (
    OverlapScore,
    OverlapReport,
    OverlapScorer,
    volumetric_overlap,
    directional_overlap,
    score_overlap,
)

__all__ = [
    "OverlapScore",
    "OverlapReport",
    "OverlapScorer",
    "volumetric_overlap",
    "directional_overlap",
    "score_overlap",
]
