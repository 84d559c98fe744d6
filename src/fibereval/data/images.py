"""
Voxel Grid Containers
=====================

Peak fields (per-voxel fiber direction vectors) and binary masks, both
carrying the voxel-to-world affine of their grid.

"""

import numpy as np
from typing import Optional, Sequence, Tuple
import logging

from nibabel.affines import apply_affine, voxel_sizes

logger = logging.getLogger(__name__)


class DimensionMismatch(Exception):
    """Exception raised when two volumes do not share a voxel grid"""
    pass


def grids_match(
    shape_a: Sequence[int],
    affine_a: np.ndarray,
    shape_b: Sequence[int],
    affine_b: np.ndarray,
    atol: float = 1e-4
) -> bool:
    """Check that two volumes share dimensions, spacing and orientation"""
    if tuple(shape_a[:3]) != tuple(shape_b[:3]):
        return False
    return bool(np.allclose(affine_a, affine_b, atol=atol))


def check_grids(
    shape_a: Sequence[int],
    affine_a: np.ndarray,
    shape_b: Sequence[int],
    affine_b: np.ndarray,
    what: str = "volumes"
):
    """
    Raise DimensionMismatch unless both grids agree

    Parameters
    ----------
    what : str
        Description used in the error message
    """
    if not grids_match(shape_a, affine_a, shape_b, affine_b):
        raise DimensionMismatch(
            f"Grid mismatch between {what}: shapes {tuple(shape_a[:3])} vs "
            f"{tuple(shape_b[:3])}, affines differ by "
            f"{np.max(np.abs(np.asarray(affine_a) - np.asarray(affine_b))):.3g}"
        )


class PeakField:
    """
    Per-voxel set of peak vectors (direction times magnitude).

    Instances are immutable: every transform returns a new field.

    Parameters
    ----------
    peaks : ndarray of shape (X, Y, Z, 3*P) or (X, Y, Z, P, 3)
        Peak vectors. A zero vector marks an empty peak slot.
    affine : ndarray of shape (4, 4), optional
        Voxel-to-world transformation. Identity if None.
    """

    def __init__(self, peaks: np.ndarray, affine: Optional[np.ndarray] = None):
        peaks = np.array(peaks, dtype=np.float64)

        if peaks.ndim == 4:
            if peaks.shape[3] % 3 != 0:
                raise ValueError(
                    f"Last dimension of a 4D peak image must be a multiple of 3, "
                    f"got {peaks.shape[3]}"
                )
            peaks = peaks.reshape(peaks.shape[:3] + (peaks.shape[3] // 3, 3))
        elif peaks.ndim != 5 or peaks.shape[4] != 3:
            raise ValueError(f"Invalid peak array shape: {peaks.shape}")

        peaks[~np.isfinite(peaks)] = 0.0
        peaks.setflags(write=False)
        self._peaks = peaks

        if affine is None:
            affine = np.eye(4)
        affine = np.array(affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {affine.shape}")
        affine.setflags(write=False)
        self._affine = affine

    @property
    def peaks(self) -> np.ndarray:
        """Read-only peak array (X, Y, Z, P, 3)"""
        return self._peaks

    @property
    def affine(self) -> np.ndarray:
        return self._affine

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Spatial dimensions"""
        return tuple(int(s) for s in self._peaks.shape[:3])

    @property
    def num_peaks(self) -> int:
        return int(self._peaks.shape[3])

    @property
    def voxel_size(self) -> Tuple[float, float, float]:
        """Voxel dimensions in mm"""
        return tuple(float(v) for v in voxel_sizes(self._affine))

    def magnitudes(self) -> np.ndarray:
        """Peak magnitudes (X, Y, Z, P)"""
        return np.linalg.norm(self._peaks, axis=-1)

    def directions(self) -> np.ndarray:
        """Unit peak directions (X, Y, Z, P, 3); empty slots stay zero"""
        mags = self.magnitudes()
        safe = np.where(mags > 0, mags, 1.0)
        return self._peaks / safe[..., None]

    def with_magnitudes(self, magnitudes: np.ndarray) -> "PeakField":
        """New field with the same directions and the given magnitudes"""
        magnitudes = np.asarray(magnitudes, dtype=np.float64)
        if magnitudes.shape != self._peaks.shape[:4]:
            raise ValueError(
                f"Magnitude array {magnitudes.shape} does not match field "
                f"{self._peaks.shape[:4]}"
            )
        return PeakField(self.directions() * magnitudes[..., None], self._affine)

    def flip(self, flip_x: bool = False, flip_y: bool = False, flip_z: bool = False) -> "PeakField":
        """Negate the selected vector components of every peak"""
        signs = np.array([
            -1.0 if flip_x else 1.0,
            -1.0 if flip_y else 1.0,
            -1.0 if flip_z else 1.0
        ])
        logger.debug(f"Flipping peaks with signs {signs}")
        return PeakField(self._peaks * signs, self._affine)

    def subtract(self, other: "PeakField") -> "PeakField":
        """Elementwise difference of two fields on the same grid"""
        self.check_same_grid(other.shape, other.affine, "peak fields")
        if other.num_peaks != self.num_peaks:
            raise DimensionMismatch(
                f"Peak count mismatch: {self.num_peaks} vs {other.num_peaks}"
            )
        return PeakField(self._peaks - other.peaks, self._affine)

    def world_to_voxel(self, points: np.ndarray) -> np.ndarray:
        """Integer voxel indices of world points (nearest voxel centre)"""
        inv = np.linalg.inv(self._affine)
        continuous = apply_affine(inv, np.asarray(points, dtype=np.float64))
        return np.floor(continuous + 0.5).astype(np.intp)

    def in_bounds(self, indices: np.ndarray) -> np.ndarray:
        indices = np.atleast_2d(indices)
        return np.all((indices >= 0) & (indices < np.array(self.shape)), axis=-1)

    def sample(self, point: Sequence[float]) -> np.ndarray:
        """
        Peaks of the voxel containing a world point

        Returns
        -------
        ndarray of shape (P, 3)
            Zeros when the point lies outside the grid
        """
        index = self.world_to_voxel(np.asarray(point, dtype=np.float64)[None, :])[0]
        if not self.in_bounds(index)[0]:
            return np.zeros((self.num_peaks, 3))
        return self._peaks[tuple(index)].copy()

    def to_array(self) -> np.ndarray:
        """Peak image in the on-disk layout (X, Y, Z, 3*P)"""
        return self._peaks.reshape(self.shape + (3 * self.num_peaks,)).copy()

    def same_grid(self, shape: Sequence[int], affine: np.ndarray) -> bool:
        return grids_match(self.shape, self._affine, shape, affine)

    def check_same_grid(self, shape: Sequence[int], affine: np.ndarray, what: str = "volumes"):
        check_grids(self.shape, self._affine, shape, affine, what)

    def __repr__(self) -> str:
        return f"PeakField(shape={self.shape}, num_peaks={self.num_peaks})"


class Mask:
    """Binary voxel mask with its grid affine"""

    def __init__(self, data: np.ndarray, affine: Optional[np.ndarray] = None):
        data = np.asarray(data)
        if data.ndim == 4 and data.shape[3] == 1:
            data = data[..., 0]
        if data.ndim != 3:
            raise ValueError(f"Mask must be 3D, got shape {data.shape}")
        self.data = data > 0
        self.affine = np.eye(4) if affine is None else np.array(affine, dtype=np.float64)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(int(s) for s in self.data.shape)

    @property
    def num_voxels(self) -> int:
        return int(np.count_nonzero(self.data))

    def same_grid(self, shape: Sequence[int], affine: np.ndarray) -> bool:
        return grids_match(self.shape, self.affine, shape, affine)

    def __repr__(self) -> str:
        return f"Mask(shape={self.shape}, num_voxels={self.num_voxels})"
