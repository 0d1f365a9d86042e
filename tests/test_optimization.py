"""Tests of optimization routines."""

from typing import Callable, List, Tuple

import numpy as np
import pytest

from pystructural import Optimization
from pystructural.configurations.optimization import ObjectiveResults
from pystructural.utilities.basics import Array, Options


@pytest.mark.parametrize(['lb', 'ub'], [
    pytest.param(-np.inf, np.inf, id="unbounded"),
    pytest.param(-np.inf, 1, id="bounded above"),
    pytest.param(-1, np.inf, id="bounded below"),
    pytest.param(-1, 1, id="bounded above and below")
])
@pytest.mark.parametrize(['method', 'method_options'], [
    pytest.param('slsqp', {}, id="SLSQP"),
    pytest.param('l-bfgs-b', {}, id="L-BFGS-B"),
    pytest.param('trust-constr', {}, id="trust-region"),
    pytest.param('trust-constr', {'keep_feasible': True}, id="trust-region feasible"),
    pytest.param('tnc', {}, id="TNC"),
    pytest.param('nelder-mead', {}, id="Nelder-Mead"),
    pytest.param('powell', {}, id="Powell"),
    pytest.param('cg', {}, id="CG"),
    pytest.param('bfgs', {}, id="BFGS"),
    pytest.param('newton-cg', {}, id="Newton-CG"),
    pytest.param('return', {}, id="Return")
])
@pytest.mark.parametrize('compute_gradient', [
    pytest.param(True, id="analytic gradient"),
    pytest.param(False, id="no analytic gradient")
])
@pytest.mark.parametrize('universal_display', [
    pytest.param(True, id="universal display"),
    pytest.param(False, id="default display")
])
def test_logit_likelihood(
        lb: float, ub: float, method: str, method_options: Options, compute_gradient: bool,
        universal_display: bool) -> None:
    """Test that each routine maximizes a per-consumer logit log-likelihood of product counts, which is maximized by
    mean utilities equal to log ratios of inside to outside counts.
    """
    counts = np.array([40, 20])
    outside_count = 30
    total = counts.sum() + outside_count

    def objective_function(x: Array) -> ObjectiveResults:
        log_denominator = np.log1p(np.exp(x).sum())
        objective = log_denominator - counts @ x / total
        gradient = np.exp(x - log_denominator) - counts / total if compute_gradient else None
        return objective, gradient, None

    if compute_gradient and method in {'nelder-mead', 'powell'}:
        return pytest.skip("This method does not support an analytic gradient.")
    if not compute_gradient and method == 'newton-cg':
        return pytest.skip("This method requires an analytic gradient.")
    optimization = Optimization(method, method_options, compute_gradient, universal_display)
    assert str(optimization)

    # the maximum lies within every set of bounds
    exact_values = np.log(counts / outside_count)
    start_values = exact_values if method == 'return' else np.zeros_like(exact_values)
    estimated_values, stats = optimization._optimize(
        start_values, 2 * [(lb, ub)], lambda x, *_: objective_function(x)
    )
    assert stats.converged
    exact = objective_function(exact_values)[0]
    estimated = objective_function(estimated_values.flatten())[0]
    np.testing.assert_allclose(estimated, exact, rtol=1e-5, atol=0)


def test_custom() -> None:
    """Test that a custom optimization routine receives bounds and options, and that evaluations are counted."""
    def custom(
            initial: Array, bounds: List[Tuple[float, float]], objective_function: Callable, callback: Callable,
            step: float) -> Tuple[Array, bool]:
        """Take a single clipped gradient descent step."""
        _, gradient, _ = objective_function(initial)
        callback()
        lb, ub = np.array(bounds).T
        return np.clip(initial - step * gradient, lb, ub), True

    def objective_function(x: Array, iterations: int, evaluations: int) -> ObjectiveResults:
        """Evaluate a quadratic objective with a minimum at one."""
        assert evaluations >= 1
        return float(((x - 1)**2).sum()), 2 * (x - 1), None

    optimization = Optimization(custom, {'step': 0.5})
    bounds = [(-np.inf, np.inf), (-np.inf, 0.5)]
    estimated_values, stats = optimization._optimize(np.zeros(2), bounds, objective_function)
    assert stats.converged and stats.iterations == 1 and stats.evaluations == 1
    np.testing.assert_allclose(estimated_values.flatten(), [1, 0.5], rtol=0, atol=1e-14)


@pytest.mark.parametrize(['method', 'compute_gradient'], [
    pytest.param('nelder-mead', True, id="Nelder-Mead with gradient"),
    pytest.param('newton-cg', False, id="Newton-CG without gradient"),
    pytest.param('unknown', True, id="unknown method"),
])
def test_invalid(method: str, compute_gradient: bool) -> None:
    """Test that invalid configurations are rejected."""
    with pytest.raises(ValueError):
        Optimization(method, compute_gradient=compute_gradient)
