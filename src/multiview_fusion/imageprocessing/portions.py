"""
Split an output volume's linear voxel range into independent work portions.

Linear indices follow numpy's row-major (C) order over the output shape, so
portion `[start, start + size)` is also the slice `out.reshape(-1)[start:stop]`.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

# voxels per portion above which more portions than threads are created
MIN_PORTION_VOXELS = 64 * 64 * 64


@dataclass(frozen=True)
class Portion:
    """Contiguous slice of the linear voxel index space."""

    start: int
    size: int

    @property
    def stop(self) -> int:
        return self.start + self.size

    def indices(self) -> NDArray:
        return np.arange(self.start, self.stop, dtype=np.int64)


def default_num_threads() -> int:
    return os.cpu_count() or 1


def divide_into_portions(num_pixels: int, num_threads: Optional[int] = None) -> List[Portion]:
    """
    Partition `[0, num_pixels)` into ordered, non-overlapping portions.

    Small volumes get one portion per voxel up to the thread count; large ones
    get at least one portion per thread and roughly one per 64**3 voxels.

    Parameters
    ----------
    num_pixels : int
        Number of output voxels.
    num_threads : int, optional
        Parallelism hint. Defaults to the CPU count.

    Returns
    -------
    portions : list of Portion
        Empty when `num_pixels <= 0`.
    """
    num_pixels = int(num_pixels)
    if num_pixels <= 0:
        return []
    threads = max(1, int(num_threads) if num_threads is not None else default_num_threads())

    if num_pixels <= threads:
        num_portions = num_pixels
    else:
        num_portions = max(threads, num_pixels // MIN_PORTION_VOXELS)

    chunk = -(-num_pixels // num_portions)
    portions = []
    start = 0
    while start < num_pixels:
        size = min(chunk, num_pixels - start)
        portions.append(Portion(start, size))
        start += size
    return portions


def index_to_position(
    index: Union[int, NDArray],
    shape: Sequence[int],
) -> Tuple[Union[int, NDArray], ...]:
    """Row-major position of linear `index` within `shape`."""
    return np.unravel_index(index, tuple(shape), order="C")


def position_to_index(
    position: Sequence[Union[int, NDArray]],
    shape: Sequence[int],
) -> Union[int, NDArray]:
    """Linear row-major index of `position` within `shape`."""
    return np.ravel_multi_index(tuple(position), tuple(shape), order="C")
