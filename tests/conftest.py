"""
Shared fixtures: synthetic peak fields and straight-line bundles on a
10x10x10 identity grid (voxel centres at integer coordinates)
"""

import numpy as np
import pytest

from fibereval.data.bundle import StreamlineBundle
from fibereval.data.images import Mask, PeakField


GRID_SHAPE = (10, 10, 10)


@pytest.fixture
def make_field():
    """Factory: one-peak field with unit x-peaks at the given voxels"""
    def _make(voxels, direction=(1.0, 0.0, 0.0), magnitude=1.0, shape=GRID_SHAPE):
        peaks = np.zeros(tuple(shape) + (1, 3))
        d = np.asarray(direction, dtype=np.float64)
        d = d / np.linalg.norm(d)
        for v in voxels:
            peaks[tuple(v) + (0,)] = magnitude * d
        return PeakField(peaks, np.eye(4))
    return _make


@pytest.fixture
def make_line():
    """Factory: single-fiber bundle along x at fixed y, z"""
    def _make(x_start, x_end, y=4.0, z=4.0, name="line", n_fibers=1):
        fiber = np.array([[x_start, y, z], [x_end, y, z]], dtype=np.float64)
        return StreamlineBundle([fiber.copy() for _ in range(n_fibers)], name=name)
    return _make


@pytest.fixture
def path_field(make_field):
    """Unit x-peaks at voxels x = 1..5 on the line y = z = 4"""
    return make_field([(x, 4, 4) for x in range(1, 6)])


@pytest.fixture
def full_mask():
    return Mask(np.ones(GRID_SHAPE, dtype=np.uint8), np.eye(4))
