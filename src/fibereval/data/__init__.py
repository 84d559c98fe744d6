"""
Data Module

Peak images, masks and streamline bundles with their file I/O.

Main Components:
- PeakField: Per-voxel peak vectors with grid affine
- Mask: Binary voxel mask
- StreamlineBundle: Weighted fibers with colours and grid sampling
- load_*/save_*: NIfTI and TRK/TCK readers and writers
"""

from .images import PeakField, Mask, DimensionMismatch, grids_match, check_grids
from .bundle import StreamlineBundle, SegmentSamples, sampling_step
from .io import (
    LoadError,
    list_files,
    load_peak_field,
    save_peak_field,
    load_mask,
    save_mask,
    adapt_mask_to_grid,
    load_bundle,
    save_bundle,
)

__all__ = [
    # Images
    "PeakField",
    "Mask",
    "DimensionMismatch",
    "grids_match",
    "check_grids",
    # Bundles
    "StreamlineBundle",
    "SegmentSamples",
    "sampling_step",
    # I/O
    "LoadError",
    "list_files",
    "load_peak_field",
    "save_peak_field",
    "load_mask",
    "save_mask",
    "adapt_mask_to_grid",
    "load_bundle",
    "save_bundle",
]
