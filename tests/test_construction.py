"""Tests of data construction functions."""

import numpy as np
import pytest

from pystructural import (
    Formulation, Integration, build_blp_instruments, build_id_data, build_integration, build_ownership
)


@pytest.mark.parametrize(['T', 'J', 'F'], [
    pytest.param(1, 1, 1, id="single product"),
    pytest.param(3, 4, 2, id="divisible products"),
    pytest.param(2, 5, 3, id="excess products"),
])
def test_id_data(T: int, J: int, F: int) -> None:
    """Test that IDs form a balanced panel in which every firm produces at least one product in each market."""
    id_data = build_id_data(T, J, F)
    assert id_data.shape[0] == T * J
    market_ids = id_data.market_ids.flatten()
    firm_ids = id_data.firm_ids.flatten()
    for t in range(T):
        assert (market_ids == t).sum() == J
        assert set(firm_ids[market_ids == t]) == set(range(F))
    np.testing.assert_array_equal(np.diff(firm_ids[market_ids == 0].astype(np.int64)) >= 0, True)


@pytest.mark.parametrize(['T', 'J', 'F'], [
    pytest.param(0, 2, 1, id="no markets"),
    pytest.param(1, 2, 0, id="no firms"),
    pytest.param(1, 1, 2, id="fewer products than firms"),
    pytest.param(1.0, 2, 1, id="non-integer markets"),
])
def test_invalid_id_data(T: int, J: int, F: int) -> None:
    """Test that invalid dimensions are rejected."""
    with pytest.raises(ValueError):
        build_id_data(T, J, F)


def test_ownership() -> None:
    """Test that ownership matrices are built from firm IDs and that markets with fewer products are padded."""
    product_data = {
        'market_ids': np.array([0, 0, 0, 1, 1]),
        'firm_ids': np.array([0, 0, 1, 0, 1])
    }
    nan = np.nan
    expected = {
        None: [[1, 1, 0], [1, 1, 0], [0, 0, 1], [1, 0, nan], [0, 1, nan]],
        'monopoly': [[1, 1, 1], [1, 1, 1], [1, 1, 1], [1, 1, nan], [1, 1, nan]],
        'single': [[1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 0, nan], [0, 1, nan]],
        'partial': [[1, 1, 0.5], [1, 1, 0.5], [0.5, 0.5, 1], [1, 0.5, nan], [0.5, 1, nan]],
    }
    for key, expected_ownership in expected.items():
        kappa_specification = (lambda f, g: 1 if f == g else 0.5) if key == 'partial' else key
        ownership = build_ownership(product_data, kappa_specification)
        np.testing.assert_array_equal(ownership, np.array(expected_ownership), err_msg=str(key))


def test_invalid_ownership() -> None:
    """Test that unsupported kappa specifications and missing firm IDs are rejected."""
    with pytest.raises(ValueError):
        build_ownership({'market_ids': [0, 0], 'firm_ids': [0, 1]}, 'duopoly')
    with pytest.raises(KeyError):
        build_ownership({'market_ids': [0, 0]})
    build_ownership({'market_ids': [0, 0]}, 'monopoly')


def test_blp_instruments() -> None:
    """Test that sums of characteristics are split into those of other products of the same firm and those of rivals.
    """
    product_data = {
        'market_ids': np.array([0, 0, 0, 0, 1, 1]),
        'firm_ids': np.array([0, 0, 1, 2, 0, 1]),
        'x': np.array([1.0, 2.0, 4.0, 8.0, 16.0, 32.0])
    }
    instruments = build_blp_instruments(Formulation('1 + x'), product_data)
    expected = np.array([
        [1, 2, 2, 12],
        [1, 1, 2, 12],
        [0, 0, 3, 11],
        [0, 0, 3, 7],
        [0, 0, 1, 32],
        [0, 0, 1, 16],
    ])
    np.testing.assert_allclose(instruments, expected, rtol=0, atol=1e-14)


@pytest.mark.parametrize(['integration', 'dimensions', 'nodes'], [
    pytest.param(Integration('product', 3), 2, 9, id="product rule"),
    pytest.param(Integration('halton', 20), 3, 20, id="Halton"),
])
def test_integration(integration: Integration, dimensions: int, nodes: int) -> None:
    """Test that structured nodes and weights have the expected shapes and that weights sum to one."""
    agent_data = build_integration(integration, dimensions)
    assert agent_data.nodes.shape == (nodes, dimensions)
    assert agent_data.weights.shape == (nodes, 1)
    np.testing.assert_allclose(agent_data.weights.sum(), 1, rtol=0, atol=1e-12)
    with pytest.raises(ValueError):
        build_integration(integration, 0)
