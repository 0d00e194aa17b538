"""
Pre-flight memory estimate for a fusion run.

The estimate is a pure function of the fusion plan and a description of the
input dataset. It never touches image data, so it can be evaluated for many
candidate plans before committing to one.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Tuple, Union

import numpy as np
import psutil
from numpy.typing import NDArray

from multiview_fusion.errors import InvalidConfigurationError
from multiview_fusion.plan import CacheStrategy, FusionPlan, PixelType, Volume, round_half_up

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

MB = 1024 * 1024
# a virtual loader may fill up to ~90% of the memory budget
VIRTUAL_LOADER_HEADROOM = 1.1
# multi-resolution sources are read one pyramid level finer than the output
MULTIRESOLUTION_OVERSAMPLING = 1.5
CACHED_OUTPUT_EXPONENT = 0.3
NON_RIGID_OVERHEAD = 1.5
CONTENT_BASED_BYTES_PER_PIXEL = 4


@dataclass(frozen=True)
class DatasetProperties:
    """
    What the estimator needs to know about the input views.

    Parameters
    ----------
    max_input_pixels : int
        Largest number of input pixels read for one output group.
    input_bytes_per_pixel : int
        Size of one input sample.
    num_views : int
        Number of views contributing to the output region.
    virtual_loader : bool
        True if views are streamed lazily rather than held in memory.
    multi_resolution : bool
        True if the source provides a resolution pyramid.
    non_rigid : bool
        True if non-rigid correction is applied during fusion.
    """

    max_input_pixels: int
    input_bytes_per_pixel: int = 2
    num_views: int = 1
    virtual_loader: bool = True
    multi_resolution: bool = False
    non_rigid: bool = False

    def __post_init__(self):
        if self.max_input_pixels < 0:
            raise InvalidConfigurationError("max_input_pixels must be >= 0.")
        if self.input_bytes_per_pixel < 1:
            raise InvalidConfigurationError("input_bytes_per_pixel must be >= 1.")
        if self.num_views < 1:
            raise InvalidConfigurationError("num_views must be >= 1.")

    @classmethod
    def from_volumes(
        cls,
        volumes: Iterable[Union[Volume, NDArray]],
        virtual_loader: bool = False,
        non_rigid: bool = False,
    ) -> "DatasetProperties":
        """Describe in-memory views that are fused together as one group."""
        arrays = [v.data if isinstance(v, Volume) else np.asarray(v) for v in volumes]
        if not arrays:
            raise InvalidConfigurationError("At least one volume is required.")
        return cls(
            max_input_pixels=int(sum(a.size for a in arrays)),
            input_bytes_per_pixel=max(a.dtype.itemsize for a in arrays),
            num_views=len(arrays),
            virtual_loader=virtual_loader,
            non_rigid=non_rigid,
        )


@dataclass(frozen=True)
class MemoryEstimate:
    """
    Predicted peak memory of a fusion run, in megabytes.
    """

    input_mb: float
    processing_mb: float
    output_mb: float
    fused_image_mb: float
    output_shape: Tuple[int, ...]
    pixel_type: PixelType

    @property
    def total_mb(self) -> float:
        return self.input_mb + self.processing_mb + self.output_mb

    def summary(self) -> str:
        dims = " x ".join(str(d) for d in self.output_shape)
        return (
            f"Fused image: {self.fused_image_mb:.0f} MB, "
            f"required total memory ~{self.total_mb:.0f} MB\n"
            f"Dimensions: {dims} pixels @ {self.pixel_type.value}"
        )


def _output_term(fused_mb: float, strategy: CacheStrategy) -> float:
    if strategy is CacheStrategy.VIRTUAL:
        return fused_mb / max(1, round_half_up(fused_mb ** CACHED_OUTPUT_EXPONENT))
    if strategy is CacheStrategy.CACHED:
        return 2.0 * round_half_up(
            fused_mb / max(1, round_half_up(fused_mb ** CACHED_OUTPUT_EXPONENT))
        )
    return fused_mb


def estimate_memory(
    plan: FusionPlan,
    dataset: DatasetProperties,
    available_memory_bytes: Optional[int] = None,
) -> MemoryEstimate:
    """
    Estimate the memory a fusion run will need.

    Parameters
    ----------
    plan : FusionPlan
        Candidate plan.
    dataset : DatasetProperties
        Description of the input views.
    available_memory_bytes : int, optional
        Memory budget a virtual loader may fill. Defaults to the physical
        memory of this machine.

    Returns
    -------
    estimate : MemoryEstimate
    """
    if not isinstance(plan, FusionPlan):
        raise InvalidConfigurationError("plan must be a FusionPlan.")
    if not isinstance(dataset, DatasetProperties):
        raise InvalidConfigurationError("dataset must be a DatasetProperties.")

    pixels = dataset.max_input_pixels
    input_bpp = dataset.input_bytes_per_pixel
    if dataset.multi_resolution:
        input_downsampling = plan.downsampling / MULTIRESOLUTION_OVERSAMPLING
    else:
        input_downsampling = 1.0
    # pixels per input megabyte, never below one for extreme downsampling
    pixels_per_mb = max(1, round_half_up(input_downsampling * MB))

    if dataset.virtual_loader:
        if available_memory_bytes is None:
            available_memory_bytes = psutil.virtual_memory().total
        budget_mb = round_half_up(available_memory_bytes / (MB * VIRTUAL_LOADER_HEADROOM))
        input_mb = min(
            float(budget_mb),
            pixels / pixels_per_mb * input_bpp,
        )
    else:
        input_mb = float(round_half_up(pixels / (input_downsampling * MB)) * input_bpp)

    processing_mb = 0.0
    if plan.content_based:
        if dataset.multi_resolution:
            processing_mb = pixels / MB * CONTENT_BASED_BYTES_PER_PIXEL
        else:
            processing_mb = (
                pixels / pixels_per_mb * CONTENT_BASED_BYTES_PER_PIXEL
            )

    fused_mb = plan.num_output_pixels * plan.pixel_type.bytes_per_pixel / MB
    output_mb = _output_term(fused_mb, plan.cache_strategy)
    if dataset.non_rigid:
        output_mb *= NON_RIGID_OVERHEAD

    return MemoryEstimate(
        input_mb=input_mb,
        processing_mb=processing_mb,
        output_mb=output_mb,
        fused_image_mb=fused_mb,
        output_shape=plan.output_shape,
        pixel_type=plan.pixel_type,
    )


def choose_cache_strategy(
    plan: FusionPlan,
    dataset: DatasetProperties,
    budget_mb: float,
    available_memory_bytes: Optional[int] = None,
) -> CacheStrategy:
    """
    Pick the most eager cache strategy whose estimate fits `budget_mb`.

    Tries precomputed, then cached, then virtual; falls back to virtual when
    nothing fits.
    """
    for strategy in (CacheStrategy.PRECOMPUTED, CacheStrategy.CACHED, CacheStrategy.VIRTUAL):
        estimate = estimate_memory(
            replace(plan, cache_strategy=strategy), dataset, available_memory_bytes
        )
        logger.debug("%s: ~%.1f MB (budget %.1f MB)", strategy.value, estimate.total_mb, budget_mb)
        if estimate.total_mb <= budget_mb:
            return strategy
    return CacheStrategy.VIRTUAL
