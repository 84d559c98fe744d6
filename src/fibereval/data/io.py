#!/usr/bin/env python
"""
Data Loading Module for fibereval

Typed loaders and savers for peak images, masks and tractograms with nibabel,
plus deterministic directory listing and mask grid adaptation.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import nibabel as nib
import numpy as np
from nibabel.affines import voxel_sizes
from nibabel.orientations import aff2axcodes
from nibabel.processing import resample_from_to
from nibabel.streamlines import Field, Tractogram
from nibabel.streamlines.trk import TrkFile

from .bundle import StreamlineBundle
from .images import Mask, PeakField


logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.nii', '.nii.gz')
TRACTOGRAM_EXTENSIONS = ('.trk', '.tck')
WEIGHT_KEYS = ('weights', 'weight', 'FIBER_WEIGHTS')
COLOR_KEYS = ('colors', 'color', 'RGB')


class LoadError(Exception):
    """Exception raised for unreadable or missing input files"""
    pass


PathLike = Union[str, Path]


def file_extension(path: PathLike) -> str:
    """Lower-case extension, treating '.nii.gz' as one extension"""
    name = Path(path).name.lower()
    if name.endswith('.nii.gz'):
        return '.nii.gz'
    return Path(name).suffix


def file_stem(path: PathLike) -> str:
    """File name without directory and extension"""
    name = Path(path).name
    ext = file_extension(path)
    return name[:-len(ext)] if ext else name


def list_files(path: PathLike, extensions: Sequence[str] = TRACTOGRAM_EXTENSIONS) -> List[Path]:
    """
    List files with the given extensions in lexicographic order

    Parameters
    ----------
    path : str or Path
        Directory to scan, or a single file which is returned on its own
    extensions : sequence of str
        Accepted extensions (e.g. '.trk', '.nii.gz')

    Returns
    -------
    list of Path
        Sorted matching files; empty if the path does not exist
    """
    path = Path(path)
    wanted = {e.lower() for e in extensions}

    if path.is_file():
        return [path]
    if not path.is_dir():
        logger.warning(f"Path does not exist: {path}")
        return []

    files = [p for p in path.iterdir() if p.is_file() and file_extension(p) in wanted]
    return sorted(files, key=lambda p: str(p))


def _load_image(path: PathLike):
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Image file not found: {path}")
    try:
        return nib.load(str(path))
    except Exception as e:
        raise LoadError(f"Failed to load image {path}: {e}") from e


def load_peak_field(path: PathLike) -> PeakField:
    """
    Load a peak image stored as (X, Y, Z, 3*P)

    Raises
    ------
    LoadError
        If the file is missing, unreadable or not a peak image
    """
    img = _load_image(path)
    data = np.asarray(img.get_fdata(dtype=np.float32))
    try:
        field = PeakField(data, img.affine)
    except ValueError as e:
        raise LoadError(f"{path} is not a peak image: {e}") from e

    logger.info(
        f"Loaded peak image {Path(path).name}: shape={field.shape}, "
        f"num_peaks={field.num_peaks}, voxel_size={field.voxel_size}"
    )
    return field


def save_peak_field(field: PeakField, path: PathLike):
    """Save a peak field as a float32 NIfTI image"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    img = nib.Nifti1Image(field.to_array().astype(np.float32), field.affine)
    nib.save(img, str(path))
    logger.info(f"Saved peak image to: {path}")


def load_mask(path: PathLike) -> Mask:
    """Load a binary mask (any non-zero voxel is inside)"""
    img = _load_image(path)
    try:
        mask = Mask(np.asanyarray(img.dataobj), img.affine)
    except ValueError as e:
        raise LoadError(f"{path} is not a mask image: {e}") from e
    logger.debug(f"Loaded mask {Path(path).name}: {mask}")
    return mask


def save_mask(mask: Mask, path: PathLike):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(nib.Nifti1Image(mask.data.astype(np.uint8), mask.affine), str(path))


def adapt_mask_to_grid(mask: Mask, shape: Sequence[int], affine: np.ndarray) -> Mask:
    """
    Resample a mask onto another voxel grid (nearest neighbour)

    Returns the input unchanged when the grids already agree.
    """
    if mask.same_grid(shape, affine):
        return mask

    logger.info(f"Resampling mask {mask.shape} onto grid {tuple(shape[:3])}")
    img = nib.Nifti1Image(mask.data.astype(np.uint8), mask.affine)
    resampled = resample_from_to(img, (tuple(shape[:3]), np.asarray(affine)), order=0)
    return Mask(np.asanyarray(resampled.dataobj), resampled.affine)


def _first_present(data: dict, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        if key in data:
            return key
    return None


def load_bundle(path: PathLike) -> StreamlineBundle:
    """
    Load a tractogram (TRK or TCK) into a StreamlineBundle

    Per-streamline weights and per-point colours are read when present;
    otherwise all weights are 1.

    Raises
    ------
    LoadError
        If the file is missing or cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Tractogram file not found: {path}")

    try:
        tract_file = nib.streamlines.load(str(path))
    except Exception as e:
        raise LoadError(f"Failed to load tractogram {path}: {e}") from e

    tractogram = tract_file.tractogram
    fibers = [np.asarray(s, dtype=np.float64) for s in tractogram.streamlines]

    weights = None
    weight_key = _first_present(tractogram.data_per_streamline, WEIGHT_KEYS)
    if weight_key is not None and len(fibers) > 0:
        weights = np.asarray(tractogram.data_per_streamline[weight_key], dtype=np.float64)
        weights = weights.reshape(len(fibers), -1)[:, 0]

    colors = None
    color_key = _first_present(tractogram.data_per_point, COLOR_KEYS)
    if color_key is not None and len(fibers) > 0:
        colors = [np.asarray(c)[:, :3] for c in tractogram.data_per_point[color_key]]

    try:
        bundle = StreamlineBundle(fibers, weights, colors, name=file_stem(path))
    except ValueError as e:
        raise LoadError(f"Invalid tractogram annotations in {path}: {e}") from e

    logger.debug(f"Loaded {bundle.num_fibers} streamlines from {path.name}")
    return bundle


def save_bundle(
    bundle: StreamlineBundle,
    path: PathLike,
    reference: Tuple[Sequence[int], np.ndarray]
):
    """
    Save a bundle with its weights and colours

    Args:
        bundle: Bundle in world (RASMM) coordinates
        path: Output path (.trk keeps annotations, .tck stores geometry only)
        reference: (shape, affine) of the grid written into the TRK header
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    shape, affine = reference
    affine = np.asarray(affine, dtype=np.float64)

    data_per_streamline = {}
    data_per_point = {}
    if bundle.num_fibers > 0:
        data_per_streamline['weights'] = bundle.weights.astype(np.float32)[:, None]
        if bundle.colors is not None:
            data_per_point['colors'] = [c.astype(np.float32) for c in bundle.colors]

    if file_extension(path) == '.tck':
        if data_per_streamline:
            logger.warning(f"TCK format drops weights and colours: {path.name}")
        tractogram = Tractogram(bundle.fibers, affine_to_rasmm=np.eye(4))
        nib.streamlines.save(tractogram, str(path))
        return

    tractogram = Tractogram(
        bundle.fibers,
        data_per_streamline=data_per_streamline,
        data_per_point=data_per_point,
        affine_to_rasmm=np.eye(4)
    )
    header = {
        Field.VOXEL_TO_RASMM: affine,
        Field.DIMENSIONS: tuple(int(s) for s in shape[:3]),
        Field.VOXEL_SIZES: tuple(float(v) for v in voxel_sizes(affine)),
        Field.VOXEL_ORDER: ''.join(aff2axcodes(affine)),
    }
    TrkFile(tractogram, header=header).save(str(path))
    logger.debug(f"Saved {bundle.num_fibers} streamlines to {path}")
