"""
Weighted multiview fusion of co-registered volumes.

Every output voxel is the weight-normalised mean of the views covering it.
One view can be designated the low-resolution base: it only contributes where
the other views together carry less than `fallback_threshold` weight, and then
exactly enough to bring the total up to that threshold.

The output is split into linear portions that are fused in parallel threads.
Each portion writes a disjoint slice of the output, so no locking is needed.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
from numba import njit
from numpy.typing import NDArray
from tqdm import tqdm

from multiview_fusion.errors import InvalidConfigurationError, ShapeMismatchError
from multiview_fusion.imageprocessing.blending import weight_field
from multiview_fusion.imageprocessing.portions import (
    Portion,
    default_num_threads,
    divide_into_portions,
    index_to_position,
)
from multiview_fusion.plan import FusionPlan, Volume

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ProgressCallback = Callable[[int, int], None]


@njit(nogil=True)
def _combine_portion(
    values: np.ndarray,
    weights: np.ndarray,
    base_index: int,
    threshold: float,
    out: np.ndarray,
) -> None:
    """
    Weighted combination of gathered view samples.

    Parameters
    ----------
    values : float64[V, N]
        Sample of each view at each voxel.
    weights : float32[V, N]
        Weight of each view at each voxel, 0 where the view does not cover it.
    base_index : int
        Row of the low-resolution base view, or -1 for none.
    threshold : float
        Total high-resolution weight below which the base view fills in.
    out : float64[N]
        Normalised result, 0 where no view contributes.
    """
    n_views, n = values.shape
    for i in range(n):
        acc = 0.0
        other = 0.0
        for v in range(n_views):
            if v == base_index:
                continue
            w = weights[v, i]
            acc += values[v, i] * w
            other += w

        total = other
        if base_index >= 0 and weights[base_index, i] > 0.0 and other < threshold:
            w_base = threshold - other
            acc += values[base_index, i] * w_base
            total += w_base

        if total > 0.0:
            out[i] = acc / total
        else:
            out[i] = 0.0


def cast_to_pixel_type(values: NDArray, dtype: np.dtype) -> NDArray:
    """
    Convert fused float values to the output sample type.

    Integer types are rounded half up and clipped to their range.
    """
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.floor(values + 0.5), info.min, info.max).astype(dtype)
    return values.astype(dtype)


class MultiViewFusion:
    """
    Portion-parallel weighted fusion of co-registered views.

    Parameters
    ----------
    plan : FusionPlan
        Output geometry, pixel type and blending parameters.
    max_workers : int, optional
        Thread pool size. Defaults to the CPU count.
    debug : bool
        If True, log per-run diagnostics.
    progress : bool
        If True, show a tqdm progress bar over portions.
    """

    def __init__(
        self,
        plan: FusionPlan,
        max_workers: Optional[int] = None,
        debug: bool = False,
        progress: bool = True,
    ):
        if not isinstance(plan, FusionPlan):
            raise InvalidConfigurationError("plan must be a FusionPlan.")
        self._plan = plan
        self.max_workers = default_num_threads() if max_workers is None else max_workers
        self._debug = bool(debug)
        self._progress = bool(progress)

    @property
    def plan(self) -> FusionPlan:
        """
        Fusion plan used for every run of this instance.
        """
        return self._plan

    @property
    def max_workers(self) -> int:
        """
        Number of portions fused concurrently.
        """
        return self._max_workers

    @max_workers.setter
    def max_workers(self, mw: int):
        if mw < 1:
            raise InvalidConfigurationError("max_workers must be >= 1.")
        self._max_workers = int(mw)

    @property
    def debug(self) -> bool:
        """
        Debug flag for verbose logging.
        """
        return self._debug

    @debug.setter
    def debug(self, flag: bool):
        self._debug = bool(flag)

    def _prepare_volumes(self, volumes: Sequence[Union[Volume, NDArray]]) -> List[Volume]:
        if len(volumes) == 0:
            raise InvalidConfigurationError("At least one volume is required for fusion.")
        prepared = [v if isinstance(v, Volume) else Volume(v) for v in volumes]
        for idx, volume in enumerate(prepared):
            if volume.ndim != self._plan.ndim:
                raise InvalidConfigurationError(
                    f"Volume {idx} has rank {volume.ndim} but the bounding box has rank {self._plan.ndim}."
                )
        return prepared

    def _prepare_weights(
        self,
        volumes: List[Volume],
        weights: Optional[Sequence[Optional[NDArray]]],
        masks: Optional[Sequence[Optional[NDArray]]],
    ) -> List[Optional[NDArray]]:
        """
        Resolve one weight field per view; None means weight 1 wherever the view exists.
        """
        if weights is not None and masks is not None:
            raise InvalidConfigurationError("Pass either weights or masks, not both.")

        if weights is None:
            if masks is None:
                return [None] * len(volumes)
            if len(masks) != len(volumes):
                raise InvalidConfigurationError(
                    f"Got {len(masks)} masks for {len(volumes)} volumes."
                )
            return [
                None if mask is None else weight_field(volume, mask, self._plan.blending_range)
                for volume, mask in zip(volumes, masks)
            ]

        if len(weights) != len(volumes):
            raise InvalidConfigurationError(
                f"Got {len(weights)} weight fields for {len(volumes)} volumes."
            )
        prepared = []
        for idx, (volume, weight) in enumerate(zip(volumes, weights)):
            if weight is None:
                prepared.append(None)
                continue
            weight = np.asarray(weight, dtype=np.float32)
            if weight.shape != volume.shape:
                raise ShapeMismatchError(
                    f"Weight field {idx} has shape {weight.shape}, its volume has shape {volume.shape}."
                )
            prepared.append(weight)
        return prepared

    def _fuse_portion(
        self,
        portion: Portion,
        volumes: List[Volume],
        weights: List[Optional[NDArray]],
        base_index: int,
        out_flat: NDArray,
    ) -> None:
        """
        Fuse one portion into its slice of the flat output buffer.

        Parameters
        ----------
        portion : Portion
            Linear voxel range to compute.
        volumes : list of Volume
            Input views.
        weights : list of NDArray or None
            Weight field per view.
        base_index : int
            Base view index or -1.
        out_flat : NDArray
            Flat view of the output volume.
        """
        positions = index_to_position(portion.indices(), self._plan.output_shape)
        world = self._plan.world_coordinates(positions)

        n_views = len(volumes)
        values = np.zeros((n_views, portion.size), dtype=np.float64)
        gathered = np.zeros((n_views, portion.size), dtype=np.float32)
        for v, (volume, weight) in enumerate(zip(volumes, weights)):
            indices, valid = volume.local_indices(world)
            if not valid.any():
                continue
            sel = tuple(indices[:, valid])
            values[v, valid] = volume.data[sel]
            gathered[v, valid] = 1.0 if weight is None else weight[sel]

        fused = np.empty(portion.size, dtype=np.float64)
        _combine_portion(values, gathered, base_index, float(self._plan.fallback_threshold), fused)
        out_flat[portion.start:portion.stop] = cast_to_pixel_type(fused, self._plan.dtype)

    def _execute_portions(
        self,
        portions: List[Portion],
        task: Callable[[Portion], None],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Run `task` for every portion on the thread pool.

        The first failing portion cancels everything still queued and its
        exception is re-raised once running portions have stopped.
        """
        total = len(portions)
        executor = ThreadPoolExecutor(max_workers=self._max_workers)
        futures = [executor.submit(task, portion) for portion in portions]
        try:
            with tqdm(total=total, desc="fuse", leave=True, disable=not self._progress) as pbar:
                for done, fut in enumerate(as_completed(futures), start=1):
                    fut.result()
                    pbar.update(1)
                    if progress_callback is not None:
                        progress_callback(done, total)
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
        finally:
            executor.shutdown(wait=True)

    def fuse(
        self,
        volumes: Sequence[Union[Volume, NDArray]],
        weights: Optional[Sequence[Optional[NDArray]]] = None,
        masks: Optional[Sequence[Optional[NDArray]]] = None,
        base_index: Optional[int] = 0,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Volume:
        """
        Fuse co-registered views into one volume.

        Parameters
        ----------
        volumes : sequence of Volume or NDArray
            Views in the common world frame. Bare arrays sit at the origin.
        weights : sequence of NDArray or None, optional
            Precomputed weight field per view, same shape as the view.
        masks : sequence of NDArray or None, optional
            Coverage mask per view, turned into weights with the plan's
            blending range. Mutually exclusive with `weights`.
        base_index : int or None
            View used as low-resolution fallback. None fuses all views alike.
        progress_callback : callable, optional
            Called with (completed_portions, total_portions).

        Returns
        -------
        fused : Volume
            Output placed at the plan's output origin and voxel size.
        """
        volumes = self._prepare_volumes(volumes)
        if base_index is not None and not 0 <= base_index < len(volumes):
            raise InvalidConfigurationError(
                f"base_index {base_index} is out of range for {len(volumes)} volumes."
            )
        weights = self._prepare_weights(volumes, weights, masks)
        base = -1 if base_index is None else int(base_index)

        shape = self._plan.output_shape
        out = np.zeros(shape, dtype=self._plan.dtype)
        out_flat = out.reshape(-1)
        portions = divide_into_portions(out.size, self._max_workers)

        if self._debug:
            logger.info(
                "Fusing %d views into %s %s volume (%d portions, %d workers, base view %s)",
                len(volumes), shape, self._plan.pixel_type.value,
                len(portions), self._max_workers, base_index,
            )

        self._execute_portions(
            portions,
            lambda portion: self._fuse_portion(portion, volumes, weights, base, out_flat),
            progress_callback,
        )

        return Volume(out, origin=self._plan.output_origin, voxel_size=self._plan.output_voxel_size)


def fuse_views(
    volumes: Sequence[Union[Volume, NDArray]],
    plan: FusionPlan,
    weights: Optional[Sequence[Optional[NDArray]]] = None,
    masks: Optional[Sequence[Optional[NDArray]]] = None,
    base_index: Optional[int] = 0,
    max_workers: Optional[int] = None,
    progress: bool = False,
) -> Volume:
    """Convenience wrapper around MultiViewFusion.fuse."""
    fusion = MultiViewFusion(plan, max_workers=max_workers, progress=progress)
    return fusion.fuse(volumes, weights=weights, masks=masks, base_index=base_index)
