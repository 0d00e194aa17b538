from types import SimpleNamespace

import numpy as np
import pytest

from multiview_fusion.errors import InvalidConfigurationError
from multiview_fusion.imageprocessing import resources
from multiview_fusion.imageprocessing.resources import (
    MB,
    DatasetProperties,
    MemoryEstimate,
    choose_cache_strategy,
    estimate_memory,
)
from multiview_fusion.plan import BoundingBox, CacheStrategy, FusionPlan, PixelType

GB = 1024 * MB


def _cube_plan(size, **kwargs):
    return FusionPlan(BoundingBox((0, 0, 0), (size - 1,) * 3), **kwargs)


def _dataset(**kwargs):
    defaults = dict(max_input_pixels=0, input_bytes_per_pixel=2, virtual_loader=False)
    defaults.update(kwargs)
    return DatasetProperties(**defaults)


def test_cached_output_term():
    """Cached output holds two tiles of fused / round(fused**0.3) MB."""
    plan = _cube_plan(1000, pixel_type="uint16", cache_strategy="cached")
    est = estimate_memory(plan, _dataset())
    assert est.fused_image_mb == pytest.approx(1907.3486, abs=1e-3)
    assert est.output_mb == 382.0


def test_virtual_and_precomputed_output_terms():
    """Virtual output holds one tile; precomputed holds the whole image."""
    virtual = estimate_memory(_cube_plan(1000, pixel_type="uint16"), _dataset())
    assert virtual.output_mb == pytest.approx(1907.3486 / 10, abs=1e-3)

    pre = estimate_memory(
        _cube_plan(1000, pixel_type="uint16", cache_strategy=CacheStrategy.PRECOMPUTED),
        _dataset(),
    )
    assert pre.output_mb == pytest.approx(pre.fused_image_mb)


def test_tiny_output_is_not_inflated():
    """A sub-megabyte image keeps its size in the virtual term."""
    est = estimate_memory(_cube_plan(10, pixel_type="uint16"), _dataset())
    assert est.fused_image_mb == pytest.approx(2000 / MB)
    assert est.output_mb == pytest.approx(2000 / MB)


def test_output_term_follows_output_shape():
    """Downsampling and pixel type shrink or grow the fused image."""
    full = estimate_memory(_cube_plan(100, pixel_type="float32"), _dataset())
    half = estimate_memory(_cube_plan(100, pixel_type="float32", downsampling=2), _dataset())
    small = estimate_memory(_cube_plan(100, pixel_type="uint8"), _dataset())
    assert full.fused_image_mb == pytest.approx(4 * 100**3 / MB)
    assert half.fused_image_mb == pytest.approx(4 * 50**3 / MB)
    assert small.fused_image_mb == pytest.approx(100**3 / MB)
    assert half.output_shape == (50, 50, 50)


def test_materialized_input_term():
    """In-memory inputs cost round(pixels / MB) * bytes per pixel."""
    est = estimate_memory(_cube_plan(10), _dataset(max_input_pixels=10 * MB + 300_000))
    assert est.input_mb == 20.0


def test_virtual_input_term_is_capped_by_memory():
    """A virtual loader never needs more than the memory it may fill."""
    dataset = _dataset(max_input_pixels=4 * MB, virtual_loader=True)
    uncapped = estimate_memory(_cube_plan(10), dataset, available_memory_bytes=64 * GB)
    assert uncapped.input_mb == pytest.approx(8.0)

    capped = estimate_memory(_cube_plan(10), dataset, available_memory_bytes=int(5.5 * MB))
    assert capped.input_mb == 5.0


def test_available_memory_defaults_to_physical_memory(monkeypatch):
    """Without a budget the machine's physical memory caps the input term."""
    monkeypatch.setattr(
        resources.psutil, "virtual_memory", lambda: SimpleNamespace(total=int(11 * MB))
    )
    dataset = _dataset(max_input_pixels=100 * MB, virtual_loader=True)
    assert estimate_memory(_cube_plan(10), dataset).input_mb == 10.0


def test_multi_resolution_reads_finer_level():
    """Multi-resolution sources are read at downsampling / 1.5."""
    plan = _cube_plan(100, downsampling=3)
    dataset = _dataset(max_input_pixels=4 * MB, multi_resolution=True)
    est = estimate_memory(plan, dataset)
    assert est.input_mb == float(round(4 * MB / (2.0 * MB)) * 2)


def test_content_based_processing_term():
    """Content-based fusion adds four bytes per input pixel."""
    dataset = _dataset(max_input_pixels=3 * MB)
    plain = estimate_memory(_cube_plan(10), dataset)
    content = estimate_memory(_cube_plan(10, content_based=True), dataset)
    assert plain.processing_mb == 0.0
    assert content.processing_mb == pytest.approx(12.0)
    assert content.total_mb == pytest.approx(plain.total_mb + 12.0)


def test_non_rigid_scales_output_term():
    """Non-rigid correction multiplies the output term by 1.5."""
    plan = _cube_plan(1000, pixel_type="uint16", cache_strategy="cached")
    rigid = estimate_memory(plan, _dataset())
    non_rigid = estimate_memory(plan, _dataset(non_rigid=True))
    assert non_rigid.output_mb == pytest.approx(rigid.output_mb * 1.5)


def test_summary_line():
    """The summary reports fused size, total and dimensions."""
    est = MemoryEstimate(
        input_mb=10.0,
        processing_mb=0.0,
        output_mb=5.0,
        fused_image_mb=20.0,
        output_shape=(10, 20, 30),
        pixel_type=PixelType.UINT16,
    )
    assert est.total_mb == 15.0
    assert est.summary() == (
        "Fused image: 20 MB, required total memory ~15 MB\n"
        "Dimensions: 10 x 20 x 30 pixels @ uint16"
    )


def test_choose_cache_strategy_respects_budget():
    """The most eager strategy that fits the budget is chosen."""
    plan = _cube_plan(1000, pixel_type="uint16")
    dataset = _dataset()
    assert choose_cache_strategy(plan, dataset, budget_mb=10_000) is CacheStrategy.PRECOMPUTED
    assert choose_cache_strategy(plan, dataset, budget_mb=400) is CacheStrategy.CACHED
    assert choose_cache_strategy(plan, dataset, budget_mb=200) is CacheStrategy.VIRTUAL
    assert choose_cache_strategy(plan, dataset, budget_mb=1) is CacheStrategy.VIRTUAL


def test_from_volumes_describes_group():
    """In-memory views are summed into one input group."""
    volumes = [np.zeros((2, 3, 4), dtype=np.uint16), np.zeros((2, 3, 4), dtype=np.float32)]
    dataset = DatasetProperties.from_volumes(volumes)
    assert dataset.max_input_pixels == 48
    assert dataset.input_bytes_per_pixel == 4
    assert dataset.num_views == 2
    assert dataset.virtual_loader is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_input_pixels": -1},
        {"max_input_pixels": 1, "input_bytes_per_pixel": 0},
        {"max_input_pixels": 1, "num_views": 0},
    ],
)
def test_invalid_dataset_is_rejected(kwargs):
    """Negative sizes and empty groups are configuration errors."""
    with pytest.raises(InvalidConfigurationError):
        DatasetProperties(**kwargs)


def test_estimate_rejects_wrong_types():
    """Only plans and dataset descriptions are accepted."""
    with pytest.raises(InvalidConfigurationError):
        estimate_memory("plan", _dataset())
    with pytest.raises(InvalidConfigurationError):
        estimate_memory(_cube_plan(4), {"max_input_pixels": 1})
    with pytest.raises(InvalidConfigurationError):
        DatasetProperties.from_volumes([])


def test_extreme_multi_resolution_downsampling_is_finite():
    """A vanishing input downsampling never divides by zero."""
    plan = FusionPlan(BoundingBox((0,), (0,)), downsampling=1e-7, content_based=True)
    dataset = _dataset(max_input_pixels=10, virtual_loader=True, multi_resolution=True)
    est = estimate_memory(plan, dataset, available_memory_bytes=64 * GB)
    assert est.input_mb == pytest.approx(20.0)
    assert np.isfinite(est.total_mb)
