"""
Bundle Overlap Scoring

Compares the voxel footprint of a bundle with reference tract masks and,
when available, reference peak images:

- volumetric overlap: fraction of the mask voxels reached by the bundle
- directional overlap: fraction of the bundle footprint inside the mask,
  weighted by how well the local fiber direction agrees with the reference
  peaks of each voxel

Scores are pure functions of their inputs.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging

from ..data.bundle import StreamlineBundle, SegmentSamples, sampling_step
from ..data.images import DimensionMismatch, Mask, PeakField

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverlapScore:
    """
    Overlap of a bundle with one reference

    Attributes:
        volumetric: Fraction of mask voxels covered, in [0, 1]
        directional: Direction-weighted fraction of the footprint, in [0, 1]
        index: Reference index, None if no reference matched
        name: Reference name
    """
    volumetric: float = 0.0
    directional: float = 0.0
    index: Optional[int] = None
    name: str = ""


@dataclass(frozen=True)
class OverlapReport:
    """Best volumetric and best directional match of a bundle"""
    best_volumetric: OverlapScore = OverlapScore()
    best_directional: Optional[OverlapScore] = None
    scores: Tuple[OverlapScore, ...] = field(default_factory=tuple)

    @property
    def has_overlap(self) -> bool:
        return self.best_volumetric.index is not None


def _grid_samples(bundle: StreamlineBundle, mask: Mask, step_fraction: float) -> Tuple[SegmentSamples, np.ndarray]:
    """Segments on the mask grid (inside the grid only) and their linear voxel indices"""
    samples = bundle.segments(mask.affine, sampling_step(mask.affine, step_fraction))
    samples = samples.select(samples.inside(mask.shape))
    if len(samples) == 0:
        return samples, np.zeros(0, dtype=np.intp)
    return samples, np.ravel_multi_index(samples.voxel.T, mask.shape)


def volumetric_overlap(bundle: StreamlineBundle, mask: Mask, step_fraction: float = 0.25) -> float:
    """
    Fraction of mask voxels traversed by the bundle

    Returns 0 for an empty mask or an empty bundle.
    """
    n_mask = mask.num_voxels
    if n_mask == 0:
        return 0.0
    _, linear = _grid_samples(bundle, mask, step_fraction)
    footprint = np.unique(linear)
    hits = np.count_nonzero(mask.data.reshape(-1)[footprint])
    return float(hits) / n_mask


def directional_overlap(
    bundle: StreamlineBundle,
    mask: Mask,
    peaks: PeakField,
    step_fraction: float = 0.25
) -> Tuple[float, float]:
    """
    Directional and volumetric overlap with one reference

    Parameters
    ----------
    bundle : StreamlineBundle
        Bundle to score
    mask : Mask
        Reference tract mask
    peaks : PeakField
        Reference peaks on the grid of ``mask``
    step_fraction : float
        Segment sampling step as fraction of the smallest voxel edge

    Returns
    -------
    directional : float
        Sum over footprint voxels inside the mask of the length-weighted mean
        |cos| between segment and closest reference peak, divided by the
        footprint size
    volumetric : float
        Same as ``volumetric_overlap``

    Raises
    ------
    DimensionMismatch
        If the peak image is not on the mask grid
    """
    peaks.check_same_grid(mask.shape, mask.affine, "reference mask and reference peaks")

    samples, linear = _grid_samples(bundle, mask, step_fraction)
    n_mask = mask.num_voxels
    if len(linear) == 0 or n_mask == 0:
        return 0.0, 0.0

    footprint, inverse = np.unique(linear, return_inverse=True)
    inside = mask.data.reshape(-1)[footprint]
    volumetric = float(np.count_nonzero(inside)) / n_mask

    n_voxels = int(np.prod(mask.shape))
    directions = peaks.directions().reshape(n_voxels, peaks.num_peaks, 3)
    cosines = np.abs(np.einsum('nk,npk->np', samples.direction, directions[linear]))
    best_cos = cosines.max(axis=1) if peaks.num_peaks > 0 else np.zeros(len(linear))

    weight = samples.length_mm
    weighted = np.bincount(inverse, weights=weight * best_cos, minlength=len(footprint))
    total = np.bincount(inverse, weights=weight, minlength=len(footprint))
    align = np.divide(weighted, total, out=np.zeros_like(weighted), where=total > 0)

    directional = float(np.sum(align[inside])) / len(footprint)
    return min(directional, 1.0), volumetric


class OverlapScorer:
    """
    Scores bundles against a fixed list of references.

    When as many reference peak images as masks are given they are paired by
    index and both metrics are tracked; otherwise only volumetric overlap is
    computed and ``best_directional`` stays None.

    Parameters
    ----------
    reference_masks : sequence of Mask
        Reference tract masks
    reference_peaks : sequence of PeakField, optional
        Reference peak images, index-aligned with the masks
    names : sequence of str, optional
        Reference names used in reports (default: "reference_<i>")
    step_fraction : float, default=0.25
        Segment sampling step as fraction of the smallest voxel edge
    logger : logging.Logger, optional
        Logger receiving skipped-reference warnings
    """

    def __init__(
        self,
        reference_masks: Sequence[Mask],
        reference_peaks: Optional[Sequence[PeakField]] = None,
        names: Optional[Sequence[str]] = None,
        step_fraction: float = 0.25,
        logger: Optional[logging.Logger] = None
    ):
        self.reference_masks: List[Mask] = list(reference_masks)
        self.reference_peaks: List[PeakField] = list(reference_peaks or [])
        if names is None:
            names = [f"reference_{i}" for i in range(len(self.reference_masks))]
        if len(names) != len(self.reference_masks):
            raise ValueError(
                f"Got {len(names)} reference names for {len(self.reference_masks)} masks"
            )
        self.names: List[str] = list(names)
        self.step_fraction = step_fraction
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        if self.use_directions:
            self.logger.debug(f"Scoring against {len(self.reference_masks)} mask/peak pairs")
        else:
            self.logger.info(
                f"{len(self.reference_masks)} reference masks but "
                f"{len(self.reference_peaks)} reference peak images: "
                f"directional overlap disabled"
            )

    @property
    def use_directions(self) -> bool:
        return len(self.reference_masks) == len(self.reference_peaks)

    def score(self, bundle: StreamlineBundle) -> OverlapReport:
        """Best-matching references of one bundle"""
        best_volumetric = OverlapScore()
        best_directional = OverlapScore() if self.use_directions else None
        scores: List[OverlapScore] = []

        for i, mask in enumerate(self.reference_masks):
            if self.use_directions:
                try:
                    directional, volumetric = directional_overlap(
                        bundle, mask, self.reference_peaks[i], self.step_fraction
                    )
                except DimensionMismatch as e:
                    self.logger.warning(f"Skipping reference {self.names[i]}: {e}")
                    continue
            else:
                directional = 0.0
                volumetric = volumetric_overlap(bundle, mask, self.step_fraction)

            current = OverlapScore(volumetric, directional, i, self.names[i])
            scores.append(current)

            if volumetric > best_volumetric.volumetric:
                best_volumetric = current
            if best_directional is not None and directional > best_directional.directional:
                best_directional = current

        return OverlapReport(best_volumetric, best_directional, tuple(scores))


def score_overlap(
    bundle: StreamlineBundle,
    reference_masks: Sequence[Mask],
    reference_peaks: Optional[Sequence[PeakField]] = None,
    names: Optional[Sequence[str]] = None
) -> OverlapReport:
    """One-off scoring of a bundle against references"""
    return OverlapScorer(reference_masks, reference_peaks, names).score(bundle)
