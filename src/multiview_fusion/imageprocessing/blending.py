"""
Per-view blending weights for multiview fusion.

A view's coverage mask is turned into a taxicab distance-to-boundary field,
and the distance field into a weight that eases from 0 at the edge of the
acquired region to 1 at `blending_range` voxels inside it. The ease curve is
(cos((1 - d/r) * pi) + 1) / 2, read from a 1001 entry lookup table.
"""

from typing import Optional, Sequence, Union

import numpy as np
from numba import njit, prange
from numpy.typing import NDArray
from scipy import ndimage

from multiview_fusion.errors import InvalidConfigurationError, ShapeMismatchError
from multiview_fusion.plan import DEFAULT_BLENDING_RANGE, Volume

LOOKUP_RESOLUTION = 1000


def _make_blend_lookup(resolution: int = LOOKUP_RESOLUTION) -> np.ndarray:
    """
    Tabulate the cosine ease curve on [0, 1].

    Parameters
    ----------
    resolution : int
        Number of intervals; the table has `resolution + 1` entries.

    Returns
    -------
    lookup : (resolution + 1,) float64
        Weight for ratio `i / resolution` at index `i`.
    """
    ratios = np.arange(resolution + 1, dtype=np.float64) / resolution
    return (np.cos((1.0 - ratios) * np.pi) + 1.0) / 2.0


BLEND_LOOKUP = _make_blend_lookup()


@njit(parallel=True)
def _apply_blend_lookup(
    distance: np.ndarray,
    blending_range: float,
    lookup: np.ndarray,
    out: np.ndarray,
) -> None:
    """
    Map flat distances to weights in-place.

    Parameters
    ----------
    distance : float32[N]
        Distance to the nearest uncovered voxel.
    blending_range : float
        Distance at which the weight reaches 1.
    lookup : float64[R + 1]
        Ease curve sampled at ratios i / R.
    out : float32[N]
        Weight output.
    """
    resolution = lookup.shape[0] - 1
    for i in prange(distance.shape[0]):
        if distance[i] >= blending_range:
            out[i] = 1.0
        elif not distance[i] > 0.0:
            out[i] = lookup[0]
        else:
            ratio = distance[i] / blending_range
            out[i] = lookup[int(np.floor(ratio * resolution + 0.5))]


@njit
def _all_zero_along(
    data: np.ndarray,
    z: int,
    y: int,
    x: int,
    dz: int,
    dy: int,
    dx: int,
    search_distance: int,
) -> bool:
    nz, ny, nx = data.shape
    for k in range(1, search_distance + 1):
        zz = z + k * dz
        yy = y + k * dy
        xx = x + k * dx
        # zero-extended outside the volume
        if 0 <= zz < nz and 0 <= yy < ny and 0 <= xx < nx:
            if data[zz, yy, xx] != 0:
                return False
    return True


@njit(parallel=True)
def _coverage_kernel(
    data: np.ndarray,
    mask: np.ndarray,
    search_distance: int,
    out: np.ndarray,
) -> None:
    """
    Flag voxels that belong to the acquired region of a view.

    A zero-valued voxel counts as acquired unless one of the six axis
    directions is empty for `search_distance` voxels.

    Parameters
    ----------
    data : [Z, Y, X]
        View samples.
    mask : bool[Z, Y, X]
        Acquisition mask.
    search_distance : int
        Number of voxels inspected per direction.
    out : bool[Z, Y, X]
        Coverage output.
    """
    nz, ny, nx = data.shape
    total = nz * ny

    for idx in prange(total):
        z = idx // ny
        y = idx % ny
        for x in range(nx):
            if not mask[z, y, x]:
                out[z, y, x] = False
            elif data[z, y, x] != 0:
                out[z, y, x] = True
            else:
                outside = (
                    _all_zero_along(data, z, y, x, 0, 0, 1, search_distance)
                    or _all_zero_along(data, z, y, x, 0, 0, -1, search_distance)
                    or _all_zero_along(data, z, y, x, 0, 1, 0, search_distance)
                    or _all_zero_along(data, z, y, x, 0, -1, 0, search_distance)
                    or _all_zero_along(data, z, y, x, 1, 0, 0, search_distance)
                    or _all_zero_along(data, z, y, x, -1, 0, 0, search_distance)
                )
                out[z, y, x] = not outside


def broadcast_mask(mask: NDArray, shape: Sequence[int]) -> NDArray:
    """
    Expand a mask to a volume shape.

    Parameters
    ----------
    mask : NDArray
        Mask with the full volume shape, or a YX mask for a ZYX volume.
    shape : sequence of int
        Target volume shape.

    Returns
    -------
    mask : bool NDArray
        Read-only boolean view with shape `shape`.
    """
    mask = np.asarray(mask) != 0
    shape = tuple(shape)
    if mask.shape == shape:
        return mask
    if len(shape) == 3 and mask.shape == shape[1:]:
        return np.broadcast_to(mask, shape)
    raise ShapeMismatchError(f"Mask of shape {mask.shape} does not match volume shape {shape}.")


def coverage_mask(
    data: NDArray,
    mask: Optional[NDArray] = None,
    search_distance: int = 100,
) -> NDArray:
    """
    Estimate which voxels of a resampled view hold acquired data.

    Parameters
    ----------
    data : NDArray
        3D view samples (ZYX); zero marks "no data" after resampling.
    mask : NDArray, optional
        Acquisition mask (ZYX or YX). Everything is eligible if omitted.
    search_distance : int
        Voxels scanned along each axis direction before a zero voxel is
        declared outside the acquisition.

    Returns
    -------
    covered : bool[Z, Y, X]
    """
    data = np.asarray(data)
    if data.ndim != 3:
        raise InvalidConfigurationError(f"coverage_mask expects a 3D volume, got ndim={data.ndim}.")
    if search_distance < 1:
        raise InvalidConfigurationError("search_distance must be >= 1.")
    if mask is None:
        full_mask = np.ones(data.shape, dtype=np.bool_)
    else:
        full_mask = np.ascontiguousarray(broadcast_mask(mask, data.shape))
    covered = np.empty(data.shape, dtype=np.bool_)
    _coverage_kernel(np.ascontiguousarray(data), full_mask, int(search_distance), covered)
    return covered


def distance_field(mask: NDArray) -> NDArray:
    """
    Taxicab distance of each covered voxel to the nearest uncovered voxel.

    Parameters
    ----------
    mask : NDArray
        Coverage mask, non-zero where the view holds data.

    Returns
    -------
    distance : float32 NDArray
        0 outside the mask; +inf everywhere if the mask has no uncovered voxel.
    """
    covered = np.asarray(mask) != 0
    if covered.all():
        return np.full(covered.shape, np.inf, dtype=np.float32)
    if not covered.any():
        return np.zeros(covered.shape, dtype=np.float32)
    return ndimage.distance_transform_cdt(covered, metric="taxicab").astype(np.float32)


def _check_blending_range(blending_range: float) -> None:
    if not 0 < blending_range < np.inf:
        raise InvalidConfigurationError(
            f"blending_range must be finite and > 0, got {blending_range}"
        )


def blend_weights(distance: NDArray, blending_range: float = DEFAULT_BLENDING_RANGE) -> NDArray:
    """
    Convert a distance field into a weight field in [0, 1].

    Parameters
    ----------
    distance : NDArray
        Distance to the nearest uncovered voxel.
    blending_range : float
        Distance at which the weight reaches 1. Must be finite and > 0.

    Returns
    -------
    weights : float32 NDArray
        Same shape as `distance`.
    """
    _check_blending_range(blending_range)
    distance = np.asarray(distance, dtype=np.float32)
    flat = np.ascontiguousarray(distance).ravel()
    out = np.empty(flat.shape, dtype=np.float32)
    _apply_blend_lookup(flat, float(blending_range), BLEND_LOOKUP, out)
    return out.reshape(distance.shape)


def weight_field(
    volume: Union[Volume, NDArray],
    mask: Optional[NDArray] = None,
    blending_range: float = DEFAULT_BLENDING_RANGE,
) -> NDArray:
    """
    Weight field of one view: mask -> distance -> ease curve.

    Parameters
    ----------
    volume : Volume or NDArray
        View whose shape the weights must match.
    mask : NDArray, optional
        Coverage mask (full shape or YX). A missing mask means fully covered.
    blending_range : float
        Distance at which the weight reaches 1.

    Returns
    -------
    weights : float32 NDArray
    """
    _check_blending_range(blending_range)
    shape = volume.shape if isinstance(volume, Volume) else np.shape(volume)
    if mask is None:
        return np.ones(shape, dtype=np.float32)
    return blend_weights(distance_field(broadcast_mask(mask, shape)), blending_range)
