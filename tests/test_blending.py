import numpy as np
import pytest

from multiview_fusion.errors import InvalidConfigurationError, ShapeMismatchError
from multiview_fusion.imageprocessing.blending import (
    BLEND_LOOKUP,
    blend_weights,
    coverage_mask,
    distance_field,
    weight_field,
)
from multiview_fusion.plan import Volume


def _exact_curve(distance: np.ndarray, blending_range: float) -> np.ndarray:
    ratio = np.minimum(distance / blending_range, 1.0)
    return (np.cos((1.0 - ratio) * np.pi) + 1.0) / 2.0


def test_lookup_table_spans_zero_to_one():
    """The ease curve table has 1001 entries from exactly 0 to exactly 1."""
    assert BLEND_LOOKUP.shape == (1001,)
    assert BLEND_LOOKUP[0] == 0.0
    assert BLEND_LOOKUP[-1] == 1.0
    assert np.isclose(BLEND_LOOKUP[500], 0.5)


def test_blend_weights_is_one_at_and_beyond_range():
    """Distances >= the blending range map to exactly 1."""
    d = np.array([20.0, 20.5, 21.0, 100.0, np.inf], dtype=np.float32)
    w = blend_weights(d, blending_range=20)
    assert w.dtype == np.float32
    assert np.all(w == 1.0)


def test_blend_weights_is_zero_at_boundary():
    """Distance 0 maps to exactly 0."""
    w = blend_weights(np.zeros((2, 3, 4), dtype=np.float32), blending_range=7.5)
    assert w.shape == (2, 3, 4)
    assert np.all(w == 0.0)


def test_blend_weights_monotonic_and_close_to_cosine():
    """Weights never decrease with distance and track the exact curve."""
    d = np.linspace(0.0, 30.0, 3001).astype(np.float32)
    w = blend_weights(d, blending_range=20)
    assert np.all(np.diff(w) >= 0)
    assert np.allclose(w, _exact_curve(d.astype(np.float64), 20.0), atol=2e-3)


@pytest.mark.parametrize("blending_range", [0, -1.0, np.inf, np.nan])
def test_blend_weights_rejects_invalid_range(blending_range):
    """A non-positive or non-finite blending range is a configuration error."""
    with pytest.raises(InvalidConfigurationError):
        blend_weights(np.ones(4), blending_range=blending_range)
    with pytest.raises(ValueError):
        weight_field(np.ones((2, 2, 2)), np.ones((2, 2, 2)), blending_range=blending_range)


def test_distance_field_is_taxicab():
    """Distance counts city-block steps to the nearest uncovered voxel."""
    mask = np.zeros((1, 5, 5), dtype=np.uint8)
    mask[0, 1:4, 1:4] = 1
    d = distance_field(mask)
    assert d.dtype == np.float32
    assert d[0, 2, 2] == 2
    assert d[0, 1, 1] == 1
    assert d[0, 1, 2] == 1
    assert d[0, 0, 0] == 0
    assert np.all(d[mask == 0] == 0)


def test_distance_field_fully_covered_is_infinite():
    """Without any uncovered voxel every distance is +inf."""
    d = distance_field(np.ones((2, 3, 3), dtype=bool))
    assert np.all(np.isinf(d))
    assert np.all(blend_weights(d, 10) == 1.0)


def test_distance_field_empty_mask_is_zero():
    """An empty mask yields zero distance everywhere."""
    d = distance_field(np.zeros((2, 2, 2)))
    assert np.all(d == 0)


def test_weight_field_without_mask_is_one():
    """A missing mask means the view is trusted everywhere."""
    vol = Volume(np.zeros((2, 3, 4), dtype=np.uint16))
    w = weight_field(vol)
    assert w.shape == (2, 3, 4)
    assert np.all(w == 1.0)


def test_weight_field_broadcasts_yx_mask():
    """A YX mask applies to every z plane."""
    data = np.zeros((3, 6, 6), dtype=np.uint16)
    mask = np.zeros((6, 6), dtype=np.uint8)
    mask[1:5, 1:5] = 1
    w = weight_field(data, mask, blending_range=4)
    assert w.shape == data.shape
    assert np.array_equal(w[0], w[1])
    assert np.array_equal(w[1], w[2])
    assert w[0, 0, 0] == 0.0
    assert 0.0 < w[0, 1, 1] < 1.0


def test_weight_field_rejects_mismatched_mask():
    """A mask that cannot be aligned with its volume is rejected."""
    with pytest.raises(ShapeMismatchError):
        weight_field(np.zeros((2, 3, 4)), np.ones((3, 3, 4)))


def test_coverage_mask_keeps_enclosed_zero_voxels():
    """A dark voxel surrounded by data still belongs to the acquisition."""
    data = np.ones((5, 5, 5), dtype=np.uint16)
    data[2, 2, 2] = 0
    covered = coverage_mask(data, search_distance=2)
    assert covered.dtype == np.bool_
    assert covered.all()


def test_coverage_mask_drops_empty_regions_and_masked_voxels():
    """Zero runs reaching past the search distance and masked voxels are uncovered."""
    data = np.zeros((3, 3, 10), dtype=np.uint16)
    data[:, :, :5] = 7
    mask = np.ones((3, 10), dtype=np.uint8)
    mask[0, :] = 0
    covered = coverage_mask(data, mask=mask, search_distance=3)
    assert not covered[:, :, 5:].any()
    assert not covered[:, 0, :].any()
    assert covered[:, 1:, :5].all()


def test_coverage_mask_rejects_bad_input():
    """Only 3D data and positive search distances are accepted."""
    with pytest.raises(InvalidConfigurationError):
        coverage_mask(np.ones((4, 4)))
    with pytest.raises(InvalidConfigurationError):
        coverage_mask(np.ones((2, 2, 2)), search_distance=0)


def test_fully_covered_mask_keeps_full_weight():
    """A view covering everything has weight 1, however large the range."""
    w = weight_field(np.zeros((2, 2, 2)), np.ones((2, 2, 2)), blending_range=1e30)
    assert np.all(w == 1.0)


def test_blend_weights_handles_non_finite_distances():
    """Infinite distances give weight 1; NaN distances give weight 0."""
    w = blend_weights(np.array([np.inf, np.nan, 1.0], dtype=np.float32), blending_range=1e30)
    assert w[0] == 1.0
    assert w[1] == 0.0
    assert 0.0 <= w[2] < 1e-6
