"""Tests of maximum likelihood estimation of logit demand from purchase counts."""

import numpy as np
import pytest

from pystructural import ChoiceProblem, Formulation, Optimization, exceptions
from pystructural.utilities.basics import compute_finite_differences
from .conftest import SimulationFixture


@pytest.mark.usefixtures('large_logit_simulation')
def test_simulated_choices(large_logit_simulation: SimulationFixture) -> None:
    """Test that counts are drawn for every product, do not exceed market sizes, and are reproducible with a seed."""
    simulation, simulation_results = large_logit_simulation
    product_data = simulation_results.simulate_choices(market_size=500, seed=0)
    assert (product_data.counts >= 0).all()
    np.testing.assert_array_equal(product_data.market_sizes, 500)
    for indices in simulation._product_market_indices.values():
        assert product_data.counts[indices].sum() <= 500
    np.testing.assert_array_equal(product_data.counts, simulation_results.simulate_choices(500, seed=0).counts)
    with pytest.raises(ValueError):
        simulation_results.simulate_choices(market_size=0.5)
    with pytest.raises(ValueError):
        simulation_results.simulate_choices(market_size=[100, 200])


@pytest.mark.usefixtures('large_logit_simulation')
def test_recovery(large_logit_simulation: SimulationFixture) -> None:
    """Test that maximum likelihood estimates from many simulated consumers are close to the true parameters, which
    generated shares along with a structural error term with a small variance.
    """
    simulation, simulation_results = large_logit_simulation
    product_data = simulation_results.simulate_choices(market_size=100000, seed=0)
    problem = ChoiceProblem(simulation.product_formulations[0], product_data)
    results = problem.solve()
    assert str(results)
    assert results.converged
    assert results.gradient_norm / (problem.T * 100000) < 1e-6
    np.testing.assert_allclose(results.beta, simulation.beta, atol=0, rtol=0.1)
    assert np.isfinite(results.beta_se).all() and (results.beta_se > 0).all()


@pytest.mark.usefixtures('large_logit_simulation')
def test_information(large_logit_simulation: SimulationFixture) -> None:
    """Test that the analytic information matrix is the negative Hessian of the log-likelihood, which is approximated
    with central differences of its analytic gradient.
    """
    _, simulation_results = large_logit_simulation
    product_data = simulation_results.simulate_choices(market_size=1000, seed=1)
    problem = ChoiceProblem(Formulation('1 + prices + x'), product_data)
    beta = np.c_[[0.5, -2, 0.5]]
    information, errors = problem.safely_compute_information(beta)
    assert not errors
    hessian = compute_finite_differences(lambda b: problem.safely_compute_log_likelihood(b)[1], beta)
    np.testing.assert_allclose(information, -hessian, atol=1e-2, rtol=1e-5)


@pytest.mark.parametrize('optimization', [
    pytest.param(None, id="default"),
    pytest.param(Optimization('bfgs', {'gtol': 1e-10}), id="BFGS"),
    pytest.param(
        Optimization('nelder-mead', {'xatol': 1e-12, 'fatol': 1e-14}, compute_gradient=False), id="Nelder-Mead"
    )
])
def test_closed_form(optimization: Optimization) -> None:
    """Test that with only a constant, the estimate and its standard error have closed forms."""
    problem = ChoiceProblem(Formulation('1'), {'market_ids': [0], 'counts': [300], 'market_sizes': [1000]})
    results = problem.solve(optimization=optimization)
    np.testing.assert_allclose(results.beta, np.log(300 / 700), atol=1e-6, rtol=0)
    np.testing.assert_allclose(results.beta_se, 1 / np.sqrt(1000 * 0.3 * 0.7), atol=0, rtol=1e-4)


@pytest.mark.parametrize(['product_data', 'exception'], [
    pytest.param({'market_ids': [0, 0], 'counts': [1, 2]}, KeyError, id="missing market sizes"),
    pytest.param({'market_ids': [0, 0], 'market_sizes': [5, 5]}, KeyError, id="missing counts"),
    pytest.param({'market_ids': [0, 0], 'counts': [3, 4], 'market_sizes': [5, 5]}, ValueError, id="too many counts"),
    pytest.param({'market_ids': [0, 0], 'counts': [1, 2], 'market_sizes': [5, 6]}, ValueError, id="varying sizes"),
    pytest.param({'market_ids': [0, 0], 'counts': [-1, 2], 'market_sizes': [5, 5]}, ValueError, id="negative counts"),
])
def test_invalid_data(product_data: dict, exception: type) -> None:
    """Test that invalid counts and market sizes are rejected."""
    with pytest.raises(exception):
        ChoiceProblem(Formulation('1'), product_data)


def test_objective_reversion(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that a log-likelihood that cannot be computed during optimization is reverted to the last finite value,
    which is recorded as an error, and that optimization still recovers the closed-form estimate.
    """
    problem = ChoiceProblem(Formulation('1'), {'market_ids': [0], 'counts': [300], 'market_sizes': [1000]})
    compute_log_likelihood = problem.safely_compute_log_likelihood
    evaluations = []

    def failing_compute_log_likelihood(beta: np.ndarray) -> tuple:
        log_likelihood, gradient, errors = compute_log_likelihood(beta)
        evaluations.append(beta)
        if len(evaluations) == 2:
            return np.nan, np.full_like(gradient, np.nan), errors
        return log_likelihood, gradient, errors

    monkeypatch.setattr(problem, 'safely_compute_log_likelihood', failing_compute_log_likelihood)
    results = problem.solve()
    assert len(evaluations) > 2
    assert any(isinstance(e, exceptions.ObjectiveReversionError) for e in results._errors)
    assert np.isfinite(results.log_likelihood)
    np.testing.assert_allclose(results.beta, np.log(300 / 700), atol=1e-6, rtol=0)

    # with errors raised, the reversion is not silently absorbed
    evaluations.clear()
    with pytest.raises(exceptions.MultipleErrors):
        problem.solve(error_behavior='raise')
