# tests/unit/test_aggregate.py

import itertools

import numpy as np
import pytest

from eocube.cube.aggregate import (
    AGGREGATION_METHODS,
    ImageMask,
    MedianAccumulator,
    MomentAccumulator,
    aggregate,
    make_accumulator,
    reduce_array
)

@pytest.fixture
def stack():
    """Four 3x3 layers with scattered no-data, one cell without any data."""
    rng = np.random.default_rng(42)
    values = rng.normal(10.0, 3.0, size=(4, 3, 3))
    values[0, 0, 0] = np.nan
    values[2, 1, 1] = np.nan
    values[:, 2, 2] = np.nan
    return values

@pytest.mark.parametrize("method", AGGREGATION_METHODS)
def test_aggregation_is_order_independent(stack, method):
    reference = aggregate(stack, method)
    for order in itertools.permutations(range(len(stack))):
        result = aggregate(stack[list(order)], method)
        assert np.allclose(result, reference, equal_nan=True)

@pytest.mark.parametrize("method", AGGREGATION_METHODS)
def test_cells_without_data_are_nan(stack, method):
    result = aggregate(stack, method)
    assert np.isnan(result[2, 2])
    assert not np.isnan(result[0, 0])

@pytest.mark.parametrize("method", AGGREGATION_METHODS)
def test_aggregation_matches_numpy(stack, method):
    expected = {
        "median": np.nanmedian,
        "mean": np.nanmean,
        "min": np.nanmin,
        "max": np.nanmax,
        "sum": np.nansum,
        "count": lambda v, axis: np.sum(~np.isnan(v), axis=axis).astype(float),
        "var": lambda v, axis: np.nanvar(v, axis=axis, ddof=1),
        "sd": lambda v, axis: np.nanstd(v, axis=axis, ddof=1)
    }[method]
    reference = expected(stack[:, :2, :2], axis=0)
    assert np.allclose(aggregate(stack[:, :2, :2], method), reference)

@pytest.mark.parametrize("method", ["mean", "sum", "count", "min", "max", "var", "sd"])
def test_merge_equals_whole(stack, method):
    shape = stack.shape[1:]
    left = MomentAccumulator(method, shape)
    right = MomentAccumulator(method, shape)
    for layer in stack[:1]:
        left.add(layer)
    for layer in stack[1:]:
        right.add(layer)

    merged = left.merge(right).result()
    assert np.allclose(merged, aggregate(stack, method), equal_nan=True)

def test_median_merge_equals_whole(stack):
    left, right = MedianAccumulator(stack.shape[1:]), MedianAccumulator(stack.shape[1:])
    for layer in stack[:2]:
        left.add(layer)
    for layer in stack[2:]:
        right.add(layer)
    assert np.allclose(left.merge(right).result(), aggregate(stack, "median"), equal_nan=True)

def test_masked_pixels_are_excluded_before_aggregation():
    values = np.array([[[1.0, 5.0]], [[100.0, 7.0]]])
    invalid = np.array([[[False, False]], [[True, False]]])

    result = aggregate(values, "mean", invalid=invalid)
    assert result.tolist() == [[1.0, 6.0]]

    counted = aggregate(values, "count", invalid=invalid)
    assert counted.tolist() == [[1.0, 2.0]]

def test_fully_masked_cell_is_nan_not_zero():
    values = np.array([[[3.0]], [[4.0]]])
    invalid = np.ones_like(values, dtype=bool)
    for method in ("count", "sum", "mean"):
        assert np.isnan(aggregate(values, method, invalid=invalid)[0, 0])

def test_variance_needs_two_observations():
    values = np.array([[[2.0, 2.0]], [[np.nan, 4.0]]])
    assert np.isnan(aggregate(values, "var")[0, 0])
    assert aggregate(values, "var")[0, 1] == pytest.approx(2.0)
    assert aggregate(values, "sd")[0, 1] == pytest.approx(np.sqrt(2.0))

def test_empty_input_needs_shape():
    assert np.isnan(aggregate([], "mean", shape=(2, 2))).all()
    with pytest.raises(ValueError):
        aggregate([], "mean")

def test_mismatched_mask_layers_rejected():
    with pytest.raises(ValueError):
        aggregate(np.ones((2, 1, 1)), "mean", invalid=[np.zeros((1, 1), dtype=bool)])

def test_unknown_method_rejected():
    with pytest.raises(ValueError):
        make_accumulator("mode", (1, 1))
    with pytest.raises(ValueError):
        reduce_array(np.ones((2, 2)), "mode")

def test_image_mask_values_and_range():
    scl = np.array([[3, 4, 8], [9, 10, 11]])

    assert ImageMask("SCL", {3, 8, 9}).invalid(scl).tolist() == [[True, False, True], [True, False, False]]
    assert ImageMask("SCL", value_range=(8, 10)).invalid(scl).tolist() == [[False, False, True], [True, True, False]]
    assert ImageMask("SCL", {4, 5}, invert=True).invalid(scl).tolist() == [[True, False, True], [True, True, True]]

def test_image_mask_requires_a_criterion():
    with pytest.raises(ValueError):
        ImageMask("SCL")
    with pytest.raises(ValueError):
        ImageMask("SCL", value_range=(5, 1))

def test_reduce_array_extra_reducers():
    series = np.array([[3.0, np.nan], [1.0, np.nan], [2.0, np.nan]])

    assert reduce_array(series, "which_min")[0] == 1.0
    assert reduce_array(series, "which_max")[0] == 0.0
    assert reduce_array(series, "prod")[0] == 6.0
    assert reduce_array(series, "q1")[0] == pytest.approx(1.5)
    for method in ("which_min", "prod", "q3", "median", "count"):
        assert np.isnan(reduce_array(series, method)[1])

def test_reduce_array_along_other_axis():
    values = np.array([[1.0, 2.0, 3.0], [4.0, np.nan, 6.0]])
    assert reduce_array(values, "mean", axis=1).tolist() == [2.0, 5.0]
    assert reduce_array(np.empty((0, 2)), "sum").shape == (2,)
