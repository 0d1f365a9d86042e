"""Tests of fixed point iteration routines."""

from typing import Callable, Tuple

import numpy as np
import pytest
import scipy.special

from pystructural import Iteration
from pystructural.configurations.iteration import ContractionResults
from pystructural.utilities.basics import Array, Options


def build_share_contraction(shares: Array, compute_jacobian: bool = False, use_weights: bool = False) -> Callable:
    """Build the contraction that inverts logit shares, delta <- delta + log(s) - log(s(delta)), along with its
    exact fixed point, log(s) - log(s0). Log shares are computed with log-sum-exp so that routines which take large
    steps do not overflow.
    """
    def contraction(delta: Array, iterations: int, evaluations: int) -> ContractionResults:
        assert evaluations >= iterations >= 0
        with np.errstate(over='ignore', under='ignore'):
            log_computed = delta - np.logaddexp(0, scipy.special.logsumexp(delta))
            computed = np.exp(log_computed)
        weights = np.ones_like(delta) if use_weights else None
        jacobian = np.outer(np.ones_like(delta), computed) if compute_jacobian else None
        return delta + np.log(shares) - log_computed, weights, jacobian

    return contraction


@pytest.mark.parametrize(['method', 'method_options'], [
    pytest.param('simple', {}, id="Simple"),
    pytest.param('simple', {'norm': lambda x: np.linalg.norm(x, np.inf)}, id="simple with infinity norm"),
    pytest.param('broyden1', {}, id="Broyden 1"),
    pytest.param('broyden2', {}, id="Broyden 2"),
    pytest.param('anderson', {}, id="Anderson"),
    pytest.param('diagbroyden', {}, id="diagonal Broyden"),
    pytest.param('krylov', {}, id="Krylov"),
    pytest.param('df-sane', {}, id="DF-SANE"),
    pytest.param('squarem', {'scheme': 1, 'step_min': 0.9, 'step_max': 1.1, 'step_factor': 3.0}, id="SQUAREM S1"),
    pytest.param('squarem', {'scheme': 2, 'step_min': 0.8, 'step_max': 1.2, 'step_factor': 4.0}, id="SQUAREM S2"),
    pytest.param('squarem', {'scheme': 3, 'step_min': 0.7, 'step_max': 1.3, 'step_factor': 5.0}, id="SQUAREM S3"),
    pytest.param('hybr', {}, id="Powell hybrid method"),
    pytest.param('lm', {}, id="Levenberg-Marquardt"),
    pytest.param('return', {}, id="Return")
])
@pytest.mark.parametrize('compute_jacobian', [
    pytest.param(True, id="analytic Jacobian"),
    pytest.param(False, id="no analytic Jacobian")
])
@pytest.mark.parametrize('universal_display', [
    pytest.param(True, id="universal display"),
    pytest.param(False, id="no universal display")
])
@pytest.mark.parametrize('use_weights', [
    pytest.param(True, id="weights"),
    pytest.param(False, id="no weights")
])
def test_scipy(
        method: str, method_options: Options, compute_jacobian: bool, universal_display: bool,
        use_weights: bool) -> None:
    """Test that each routine inverts logit market shares into mean utilities and that its configuration can be
    formatted.
    """
    if compute_jacobian and method not in {'hybr', 'lm'}:
        return pytest.skip("This method does not accept an analytic Jacobian.")
    iteration = Iteration(method, method_options, compute_jacobian, universal_display)
    assert str(iteration)

    shares = np.array([0.1, 0.2, 0.3])
    exact_delta = np.log(shares) - np.log(1 - shares.sum())
    contraction = build_share_contraction(shares, compute_jacobian, use_weights)
    initial_delta = exact_delta if method == 'return' else np.zeros_like(shares)
    computed_delta, stats = iteration._iterate(initial_delta, contraction)
    assert stats.converged
    np.testing.assert_allclose(computed_delta, exact_delta, rtol=0, atol=1e-5)


@pytest.mark.parametrize('scheme', [pytest.param(1, id="S1"), pytest.param(2, id="S2"), pytest.param(3, id="S3")])
def test_squarem_acceleration(scheme: int) -> None:
    """Test that SQUAREM inverts shares with a tiny outside share well within an evaluation cap that stops simple
    iteration, whose rate of convergence is the sum of inside shares.
    """
    shares = np.full(4, 0.2475)
    exact_delta = np.log(shares) - np.log(1 - shares.sum())
    contraction = build_share_contraction(shares)
    method_options = {'atol': 1e-10, 'max_evaluations': 300}
    delta, stats = Iteration('squarem', {**method_options, 'scheme': scheme})._iterate(np.zeros(4), contraction)
    assert stats.converged
    np.testing.assert_allclose(delta, exact_delta, rtol=0, atol=1e-8)
    assert not Iteration('simple', method_options)._iterate(np.zeros(4), contraction)[1].converged


@pytest.mark.parametrize('method', [pytest.param('simple', id="simple"), pytest.param('squarem', id="SQUAREM")])
@pytest.mark.parametrize('max_evaluations', [pytest.param(1, id="one"), pytest.param(7, id="seven")])
def test_evaluation_cap(method: str, max_evaluations: int) -> None:
    """Test that iteration stops at the evaluation cap and reports non-convergence when the contraction never settles
    down.
    """
    def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
        """Evaluate a contraction with a fixed point at zero that moves slowly toward it."""
        assert evaluations <= max_evaluations
        return 0.999 * x, None, None

    iteration = Iteration(method, {'atol': 1e-14, 'max_evaluations': max_evaluations})
    computed_values, stats = iteration._iterate(np.ones(3), contraction)
    assert not stats.converged
    assert stats.evaluations == max_evaluations
    assert stats.iterations <= stats.evaluations
    assert np.isfinite(computed_values).all()


@pytest.mark.parametrize('method', [pytest.param('simple', id="simple"), pytest.param('squarem', id="SQUAREM")])
def test_non_finite(method: str) -> None:
    """Test that iteration stops with the last finite values and reports non-convergence when the contraction returns
    non-finite values.
    """
    def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
        """Evaluate a contraction that breaks down after a few evaluations."""
        if evaluations > 3:
            return np.full_like(x, np.nan), None, None
        return 0.5 * x, None, None

    computed_values, stats = Iteration(method)._iterate(np.ones(2), contraction)
    assert not stats.converged
    assert np.isfinite(computed_values).all()


def test_custom() -> None:
    """Test that a custom iteration routine receives options and that its output is passed along."""
    def custom(initial: Array, contraction: Callable, callback: Callable, scale: float) -> Tuple[Array, bool]:
        """Take a single contraction evaluation and scale the result."""
        x = contraction(initial)[0]
        callback()
        return scale * x, True

    def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
        """Evaluate the contraction."""
        return x + 1, None, None

    computed_values, stats = Iteration(custom, {'scale': 2.0})._iterate(np.zeros(2), contraction)
    assert stats.converged and stats.iterations == stats.evaluations == 1
    np.testing.assert_array_equal(computed_values, np.full(2, 2.0))
