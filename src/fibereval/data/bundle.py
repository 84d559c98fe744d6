"""
Streamline Bundle Container

Provides:
- Per-fiber weights with filtering and aggregation
- Colour annotations (uniform, orientation, weight colormap)
- Bundle concatenation
- Segment sampling on a voxel grid (used by fitting and overlap scoring)
- Voxel density rasterization
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from dipy.tracking.streamline import length, set_number_of_points
from matplotlib import colormaps
from nibabel.affines import apply_affine, voxel_sizes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentSamples:
    """
    Short fiber segments mapped onto a voxel grid

    Attributes:
        fiber_index: Index of the fiber owning each segment (n,)
        voxel: Voxel index of each segment midpoint (n, 3), may be out of bounds
        direction: Unit segment direction in world space (n, 3)
        length_vox: Segment length in voxel units (n,)
        length_mm: Segment length in mm (n,)
    """
    fiber_index: np.ndarray
    voxel: np.ndarray
    direction: np.ndarray
    length_vox: np.ndarray
    length_mm: np.ndarray

    def __len__(self) -> int:
        return len(self.fiber_index)

    def inside(self, shape: Sequence[int]) -> np.ndarray:
        """Boolean selector of segments whose voxel lies in the grid"""
        return np.all((self.voxel >= 0) & (self.voxel < np.array(shape[:3])), axis=1)

    def select(self, keep: np.ndarray) -> "SegmentSamples":
        return SegmentSamples(
            fiber_index=self.fiber_index[keep],
            voxel=self.voxel[keep],
            direction=self.direction[keep],
            length_vox=self.length_vox[keep],
            length_mm=self.length_mm[keep]
        )


def sampling_step(affine: np.ndarray, step_fraction: float = 0.25) -> float:
    """Resampling step in mm for a grid: a fraction of the smallest voxel edge"""
    return float(step_fraction * np.min(voxel_sizes(affine)))


class StreamlineBundle:
    """
    Ordered set of fibers, each with a non-negative weight

    Fiber order is never changed by fitting; weights can be replaced with
    ``with_weights`` and zero-weight fibers removed with ``filter_by_weights``.
    """

    def __init__(
        self,
        fibers: Sequence[np.ndarray],
        weights: Optional[Sequence[float]] = None,
        colors: Optional[Sequence[np.ndarray]] = None,
        name: str = ""
    ):
        self._fibers: List[np.ndarray] = [
            np.ascontiguousarray(np.asarray(f, dtype=np.float64).reshape(-1, 3))
            for f in fibers
        ]
        n = len(self._fibers)

        if weights is None:
            weights = np.ones(n)
        weights = np.array(weights, dtype=np.float64).reshape(-1)
        if len(weights) != n:
            raise ValueError(f"Got {len(weights)} weights for {n} fibers")
        if np.any(weights < 0) or not np.all(np.isfinite(weights)):
            raise ValueError("Fiber weights must be finite and non-negative")
        self._weights = weights

        self._colors: Optional[List[np.ndarray]] = None
        if colors is not None:
            self.set_point_colors(colors)

        self.name = name
        self._segment_cache: Dict[Tuple[float, bytes], SegmentSamples] = {}

    # ------------------------------------------------------------------
    # Basic queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._fibers)

    @property
    def num_fibers(self) -> int:
        return len(self._fibers)

    @property
    def is_empty(self) -> bool:
        return len(self._fibers) == 0

    @property
    def fibers(self) -> List[np.ndarray]:
        return list(self._fibers)

    @property
    def weights(self) -> np.ndarray:
        return self._weights.copy()

    @property
    def colors(self) -> Optional[List[np.ndarray]]:
        if self._colors is None:
            return None
        return [c.copy() for c in self._colors]

    def fiber_weight(self, index: int) -> float:
        return float(self._weights[index])

    def total_weight(self) -> float:
        return float(np.sum(self._weights))

    def lengths(self) -> np.ndarray:
        """Fiber lengths in mm"""
        return np.array([
            float(length(f)) if len(f) > 1 else 0.0 for f in self._fibers
        ])

    def __repr__(self) -> str:
        return f"StreamlineBundle(name={self.name!r}, num_fibers={self.num_fibers})"

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def with_weights(self, weights: Sequence[float]) -> "StreamlineBundle":
        """Copy of the bundle carrying new fiber weights"""
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        if len(weights) == 1 and self.num_fibers != 1:
            weights = np.full(self.num_fibers, weights[0])
        bundle = StreamlineBundle(self._fibers, weights, self._colors, self.name)
        bundle._segment_cache = self._segment_cache
        return bundle

    def filter_by_weights(self, min_weight: float = 0.0) -> "StreamlineBundle":
        """
        Remove fibers whose weight is not above ``min_weight``

        Retained fibers keep their order, weights and colours.
        """
        keep = np.where(self._weights > min_weight)[0]
        colors = None if self._colors is None else [self._colors[i] for i in keep]
        filtered = StreamlineBundle(
            [self._fibers[i] for i in keep],
            self._weights[keep],
            colors,
            self.name
        )
        logger.info(
            f"Weight filter: kept {len(keep)}/{self.num_fibers} fibers of "
            f"{self.name or 'bundle'} (weight > {min_weight})"
        )
        return filtered

    @classmethod
    def concatenate(
        cls,
        bundles: Sequence["StreamlineBundle"],
        name: str = ""
    ) -> "StreamlineBundle":
        """Join several bundles; colours are kept only when all bundles have them"""
        fibers: List[np.ndarray] = []
        weights: List[np.ndarray] = []
        colors: Optional[List[np.ndarray]] = []
        for bundle in bundles:
            fibers.extend(bundle._fibers)
            weights.append(bundle._weights)
            if colors is not None and bundle._colors is not None:
                colors.extend(bundle._colors)
            elif bundle.num_fibers > 0:
                colors = None

        joined = np.concatenate(weights) if weights else np.zeros(0)
        return cls(fibers, joined, colors, name)

    # ------------------------------------------------------------------
    # Colours
    # ------------------------------------------------------------------

    def set_point_colors(self, colors: Sequence[np.ndarray]):
        if len(colors) != self.num_fibers:
            raise ValueError(f"Got {len(colors)} colour arrays for {self.num_fibers} fibers")
        checked = []
        for fiber, c in zip(self._fibers, colors):
            c = np.asarray(c)
            if c.shape != (len(fiber), 3):
                raise ValueError(
                    f"Colour array shape {c.shape} does not match fiber with {len(fiber)} points"
                )
            checked.append(np.clip(c, 0, 255).astype(np.uint8))
        self._colors = checked

    def set_colors(self, r: int, g: int, b: int):
        """Uniform colour for every point"""
        rgb = np.array([r, g, b], dtype=np.uint8)
        self._colors = [np.tile(rgb, (len(f), 1)) for f in self._fibers]

    def color_by_orientation(self):
        """Colour each point by its absolute local direction (RGB = |x|,|y|,|z|)"""
        colors = []
        for fiber in self._fibers:
            if len(fiber) < 2:
                colors.append(np.full((len(fiber), 3), 255, dtype=np.uint8))
                continue
            tangents = np.gradient(fiber, axis=0)
            norms = np.linalg.norm(tangents, axis=1, keepdims=True)
            tangents = np.abs(tangents) / np.where(norms > 0, norms, 1.0)
            colors.append((tangents * 255).astype(np.uint8))
        self._colors = colors

    def color_by_weights(self, colormap: str = 'jet', normalize: bool = True):
        """Colour each fiber by its weight through a matplotlib colormap"""
        cmap = colormaps[colormap]
        values = self._weights.copy()
        max_weight = values.max() if len(values) else 0.0
        if normalize and max_weight > 0:
            values = values / max_weight
        values = np.clip(values, 0.0, 1.0)

        rgb = (np.asarray(cmap(values))[:, :3] * 255).astype(np.uint8)
        self._colors = [np.tile(rgb[i], (len(f), 1)) for i, f in enumerate(self._fibers)]

    # ------------------------------------------------------------------
    # Grid sampling
    # ------------------------------------------------------------------

    def resampled(self, step: float) -> List[np.ndarray]:
        """
        Resample every fiber so that no segment is longer than ``step`` mm

        Args:
            step: Maximum segment length in mm

        Returns:
            List of resampled fibers (single-point fibers are returned as-is)
        """
        if step <= 0:
            raise ValueError(f"Step must be positive, got {step}")

        out = []
        for fiber in self._fibers:
            if len(fiber) < 2:
                out.append(fiber)
                continue
            fiber_length = float(length(fiber))
            if fiber_length <= 0:
                out.append(fiber[:1])
                continue
            n_points = max(2, int(np.ceil(fiber_length / step - 1e-9)) + 1)
            out.append(set_number_of_points(fiber, n_points))
        return out

    def segments(self, affine: np.ndarray, step: float) -> SegmentSamples:
        """
        Sample the bundle as short segments assigned to voxels of a grid

        Args:
            affine: Voxel-to-world affine of the grid
            step: Resampling step in mm

        Returns:
            SegmentSamples for all fibers (cached per grid and step)
        """
        affine = np.asarray(affine, dtype=np.float64)
        key = (round(float(step), 9), affine.tobytes())
        cached = self._segment_cache.get(key)
        if cached is not None:
            return cached

        inv_affine = np.linalg.inv(affine)
        fiber_index, voxel, direction, length_vox, length_mm = [], [], [], [], []

        for i, fiber in enumerate(self.resampled(step)):
            if len(fiber) < 2:
                continue
            diff = np.diff(fiber, axis=0)
            seg_mm = np.linalg.norm(diff, axis=1)
            keep = seg_mm > 0
            if not np.any(keep):
                continue

            vox_points = apply_affine(inv_affine, fiber)
            midpoints = 0.5 * (vox_points[:-1] + vox_points[1:])
            seg_vox = np.linalg.norm(np.diff(vox_points, axis=0), axis=1)

            fiber_index.append(np.full(int(np.count_nonzero(keep)), i, dtype=np.intp))
            voxel.append(np.floor(midpoints[keep] + 0.5).astype(np.intp))
            direction.append(diff[keep] / seg_mm[keep, None])
            length_vox.append(seg_vox[keep])
            length_mm.append(seg_mm[keep])

        if fiber_index:
            samples = SegmentSamples(
                fiber_index=np.concatenate(fiber_index),
                voxel=np.concatenate(voxel),
                direction=np.concatenate(direction),
                length_vox=np.concatenate(length_vox),
                length_mm=np.concatenate(length_mm)
            )
        else:
            samples = SegmentSamples(
                fiber_index=np.zeros(0, dtype=np.intp),
                voxel=np.zeros((0, 3), dtype=np.intp),
                direction=np.zeros((0, 3)),
                length_vox=np.zeros(0),
                length_mm=np.zeros(0)
            )

        self._segment_cache[key] = samples
        return samples

    def density_map(
        self,
        shape: Sequence[int],
        affine: np.ndarray,
        binary: bool = False,
        step_fraction: float = 0.25
    ) -> np.ndarray:
        """
        Number of fibers visiting each voxel

        Args:
            shape: Grid dimensions
            affine: Voxel-to-world affine
            binary: Return a boolean footprint instead of counts
            step_fraction: Resampling step as fraction of the smallest voxel edge

        Returns:
            Density volume of the given shape
        """
        shape = tuple(int(s) for s in shape[:3])
        samples = self.segments(affine, sampling_step(affine, step_fraction))
        samples = samples.select(samples.inside(shape))

        density = np.zeros(shape, dtype=np.int64)
        if len(samples):
            linear = np.ravel_multi_index(samples.voxel.T, shape)
            # each fiber counts once per voxel
            pairs = np.unique(np.stack([samples.fiber_index, linear], axis=1), axis=0)
            np.add.at(density.reshape(-1), pairs[:, 1], 1)

        if binary:
            return density > 0
        return density

    def covered_voxels(self, shape: Sequence[int], affine: np.ndarray) -> int:
        """Number of voxels traversed by at least one fiber"""
        return int(np.count_nonzero(self.density_map(shape, affine, binary=True)))
