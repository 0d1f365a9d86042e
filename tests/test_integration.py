"""Tests of construction of nodes and weights for integration."""

import numpy as np
import pytest

from pystructural import Integration


@pytest.mark.parametrize(['dimensions', 'specification', 'size', 'naive_specification'], [
    pytest.param(1, 'monte_carlo', 100000, None, id="1D Monte Carlo"),
    pytest.param(2, 'monte_carlo', 150000, None, id="2D Monte Carlo"),
    pytest.param(1, 'halton', 50000, None, id="1D Halton"),
    pytest.param(2, 'halton', 100000, None, id="2D Halton"),
    pytest.param(1, 'lhs', 100000, None, id="1D LHS"),
    pytest.param(3, 'lhs', 200000, None, id="3D LHS"),
    pytest.param(1, 'mlhs', 50000, None, id="1D MLHS"),
    pytest.param(3, 'mlhs', 100000, None, id="3D MLHS"),
    pytest.param(1, 'product', 6, 'monte_carlo', id="1D product rule and Monte Carlo"),
    pytest.param(3, 'product', 3, 'monte_carlo', id="3D product rule and Monte Carlo"),
    pytest.param(5, 'product', 4, 'monte_carlo', id="5D product rule and Monte Carlo"),
])
def test_hermite_integral(dimensions: int, specification: str, size: int, naive_specification: str) -> None:
    """Test if approximations of a simple Gauss-Hermite integral (product of squared variables of integration with
    respect to the standard normal density) are reasonably correct. Then, if a naive specification is given, tests that
    it performs worse, even with an order of magnitude more nodes.
    """
    integral = lambda n, w: w.T @ (n**2).prod(axis=1)
    specification_options = None if specification == 'product' else {'seed': 0}
    nodes, weights = Integration(specification, size, specification_options)._build(dimensions)
    simulated = integral(nodes, weights)
    np.testing.assert_allclose(simulated, 1, rtol=0, atol=0.01)
    if naive_specification:
        naive = integral(*Integration(naive_specification, 10 * weights.size, {'seed': 0})._build(dimensions))
        np.testing.assert_array_less(np.linalg.norm(simulated - 1), np.linalg.norm(naive - 1))


@pytest.mark.parametrize('dimensions', [
    pytest.param(1, id="1D"),
    pytest.param(2, id="2D"),
    pytest.param(3, id="3D"),
    pytest.param(6, id="6D"),
])
@pytest.mark.parametrize(['specification', 'size'], [
    pytest.param('monte_carlo', 100, id="small Monte Carlo"),
    pytest.param('monte_carlo', 300, id="large Monte Carlo"),
    pytest.param('halton', 10, id="small Halton"),
    pytest.param('halton', 20, id="large Halton"),
    pytest.param('lhs', 10, id="small LHS"),
    pytest.param('mlhs', 20, id="large MLHS"),
    pytest.param('product', 1, id="small product rule"),
    pytest.param('product', 7, id="large product rule"),
])
def test_weights_and_formatting(dimensions: int, specification: str, size: int) -> None:
    """Test that weights sum to one, that there are the expected numbers of nodes, and that the configurations can be
    formatted.
    """
    integration = Integration(specification, size)
    assert str(integration)
    nodes, weights = integration._build(dimensions)
    np.testing.assert_allclose(weights.sum(), 1, rtol=0, atol=1e-12)
    assert nodes.shape == (size**dimensions if specification == 'product' else size, dimensions)


@pytest.mark.parametrize('specification', [
    pytest.param('monte_carlo', id="Monte Carlo"),
    pytest.param('halton', id="Halton"),
    pytest.param('mlhs', id="MLHS"),
])
def test_markets(specification: str) -> None:
    """Test that nodes are built for each market, that seeds give the same draws, and that random draws differ across
    markets.
    """
    integration = Integration(specification, 50, {'seed': 0})
    ids, nodes, weights = integration._build_many(2, ['a', 'b', 'c'])
    assert ids.size == weights.size == nodes.shape[0] == 150
    for market_id in ['a', 'b', 'c']:
        np.testing.assert_allclose(weights[ids == market_id].sum(), 1, rtol=0, atol=1e-12)
    assert not np.allclose(nodes[ids == 'a'], nodes[ids == 'b'])
    np.testing.assert_array_equal(nodes, integration._build_many(2, ['a', 'b', 'c'])[1])


@pytest.mark.parametrize(['specification', 'size', 'specification_options'], [
    pytest.param('unknown', 10, None, id="unknown specification"),
    pytest.param('monte_carlo', 0, None, id="nonpositive size"),
    pytest.param('monte_carlo', 10, {'seed': 0.5}, id="non-integer seed"),
    pytest.param('product', 3, {'seed': 0}, id="product rule seed"),
    pytest.param('halton', 10, {'discard': -1}, id="negative discard"),
])
def test_invalid(specification: str, size: int, specification_options: dict) -> None:
    """Test that invalid configurations are rejected."""
    with pytest.raises(ValueError):
        Integration(specification, size, specification_options)
