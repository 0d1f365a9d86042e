"""Primary tests of demand simulation, pricing equilibria, and GMM estimation."""

from typing import List, Optional

import numpy as np
import pytest

from pystructural import Iteration, Optimization, Simulation, exceptions, parallel
from pystructural.utilities.basics import Array, Error
from .conftest import SimulatedProblemFixture, SimulationFixture


def unpack_errors(exception: Exception) -> List[Error]:
    """Get the distinct errors that were raised together."""
    return getattr(exception, '_errors', [exception])


def get_true_sigma(simulation: Simulation) -> Optional[Array]:
    """Get true nonlinear parameters in a form that can be passed to a problem."""
    return simulation.sigma if simulation.K2 > 0 else None


@pytest.mark.usefixtures('simulated_problem')
def test_accuracy(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that starting parameters that are half their true values give rise to errors of less than 10% for linear
    parameters and reasonably accurate nonlinear parameters.
    """
    simulation, _, _, _, results = simulated_problem
    assert results.converged
    assert results.step == 2 and results.last_results is not None and results.last_results.step == 1
    assert results.fp_converged.all()
    np.testing.assert_allclose(simulation.beta, results.beta, atol=0, rtol=0.1)
    np.testing.assert_allclose(simulation.sigma, results.sigma, atol=0.25, rtol=0)
    assert np.isfinite(results.beta_se).all()
    assert np.isfinite(results.sigma_se).all()


@pytest.mark.usefixtures('simulated_problem')
def test_cumulative_statistics(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that cumulative statistics stack those from both GMM steps."""
    _, _, problem, _, results = simulated_problem
    assert results.cumulative_fp_converged.shape == (problem.T, results.fp_converged.shape[1] * 2)
    assert results.cumulative_objective_evaluations >= results.objective_evaluations
    assert results.cumulative_total_time >= results.total_time
    assert str(results)


@pytest.mark.usefixtures('simulated_problem')
def test_delta_inversion(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that at the true parameters, inverting equilibrium market shares recovers the mean utilities under which
    the shares were simulated, and that shares at the recovered mean utilities are the observed ones.
    """
    simulation, simulation_results, problem, _, _ = simulated_problem
    results = problem.solve(get_true_sigma(simulation), optimization=Optimization('return'), method='1s')
    np.testing.assert_allclose(results.delta, simulation_results.delta, atol=1e-8, rtol=0)
    np.testing.assert_allclose(results.compute_shares(), problem.products.shares, atol=1e-12, rtol=1e-8)
    if problem.K2 > 0:
        assert results.fp_converged.all()
        assert (results.contraction_evaluations > 0).all()


@pytest.mark.usefixtures('simulated_problem')
def test_capped_delta_iteration(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that the contraction that inverts market shares stops at its evaluation cap, that the failure is reported,
    and that it raises an exception when requested.
    """
    simulation, _, problem, _, _ = simulated_problem
    if problem.K2 == 0:
        return pytest.skip("Mean utilities are computed in closed form when there are no random coefficients.")

    # non-convergence is reported when errors are reverted
    iteration = Iteration('simple', {'atol': 1e-14, 'max_evaluations': 2})
    optimization = Optimization('return')
    results = problem.solve(simulation.sigma, optimization=optimization, iteration=iteration, method='1s')
    assert not results.fp_converged.any()
    np.testing.assert_array_equal(results.contraction_evaluations, 2)
    assert exceptions.DeltaConvergenceError() in results._errors

    # non-convergence is raised when requested
    with pytest.raises(Exception) as exception_info:
        problem.solve(
            simulation.sigma, optimization=optimization, iteration=iteration, method='1s', error_behavior='raise'
        )
    assert all(isinstance(e, exceptions.DeltaConvergenceError) for e in unpack_errors(exception_info.value))


@pytest.mark.usefixtures('simulated_problem')
def test_gmm_objective(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that the GMM objective at the estimated parameters is no larger than at the true ones when the same
    weighting matrix is used, and that the projected gradient is small.
    """
    simulation, _, problem, _, results = simulated_problem
    true_results = problem.solve(
        get_true_sigma(simulation), optimization=Optimization('return'), method='1s', W=results.W
    )
    assert results.objective <= true_results.objective + 1e-8
    if problem.K2 > 0:
        assert results.projected_gradient_norm < 1e-5


@pytest.mark.usefixtures('simulated_problem')
def test_optimal_prices(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that equilibrium prices satisfy firms' first order conditions and that best response iteration and the
    zeta-markup contraction reach the same equilibrium.
    """
    simulation, simulation_results, _, _, _ = simulated_problem
    assert simulation_results.fp_converged.all()
    assert (simulation_results.profit_gradient_norms < 1e-6).all()
    assert (simulation_results.product_data.prices >= simulation_results.costs).all()
    zeta_results = simulation.replace_endogenous(method='zeta')
    assert zeta_results.fp_converged.all()
    assert (zeta_results.profit_gradient_norms < 1e-10).all()
    np.testing.assert_allclose(
        zeta_results.product_data.prices, simulation_results.product_data.prices, atol=1e-6, rtol=0
    )
    np.testing.assert_allclose(
        zeta_results.product_data.shares, simulation_results.product_data.shares, atol=1e-6, rtol=0
    )


@pytest.mark.usefixtures('simulated_problem')
@pytest.mark.parametrize('method', [pytest.param('best_response', id="best response"), pytest.param('zeta', id="zeta")])
def test_capped_prices(simulated_problem: SimulatedProblemFixture, method: str) -> None:
    """Test that price iteration stops at its evaluation cap and that its failure to converge is raised or warned."""
    simulation, simulation_results, _, _, _ = simulated_problem
    iteration = Iteration('simple', {'atol': 1e-14, 'max_evaluations': 1})
    with pytest.raises(Exception) as exception_info:
        simulation.replace_endogenous(method=method, iteration=iteration)
    errors = unpack_errors(exception_info.value)
    assert exceptions.EquilibriumPricesConvergenceError() in errors
    capped_results = simulation.replace_endogenous(method=method, iteration=iteration, error_behavior='warn')
    assert not capped_results.fp_converged.any()
    np.testing.assert_array_equal(capped_results.contraction_evaluations, 1)
    assert capped_results.product_data.prices.shape == simulation_results.product_data.prices.shape


@pytest.mark.usefixtures('simulated_problem')
def test_costs(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that marginal costs recovered from estimated markups are close to the ones under which prices were
    simulated, and that markups and costs computed in a single market are the same as those stacked over markets.
    """
    _, simulation_results, problem, _, results = simulated_problem
    costs = results.compute_costs()
    np.testing.assert_allclose(costs, simulation_results.costs, atol=0, rtol=0.05)
    markups = results.compute_markups()
    np.testing.assert_allclose(markups, problem.products.prices - costs, atol=1e-14, rtol=0)
    t = problem.unique_market_ids[0]
    indices = problem._product_market_indices[t]
    np.testing.assert_allclose(results.compute_costs(t), costs[indices], atol=1e-12, rtol=0)
    with pytest.raises(ValueError):
        results.compute_costs('unknown')


@pytest.mark.usefixtures('simulated_problem')
def test_elasticities(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that own-price elasticities are negative and cross-price elasticities are positive, and that logit
    elasticities have their closed form.
    """
    _, _, problem, _, results = simulated_problem
    t = problem.unique_market_ids[0]
    indices = problem._product_market_indices[t]
    elasticities = results.compute_elasticities(market_id=t)
    assert elasticities.shape == (indices.size, indices.size)
    own = np.diagonal(elasticities)
    cross = elasticities[~np.eye(indices.size, dtype=np.bool_)]
    assert (own < 0).all() and (cross > 0).all()
    stacked = results.compute_elasticities()
    np.testing.assert_allclose(stacked[indices], elasticities, atol=1e-12, rtol=0)
    if problem.K2 == 0:
        alpha = results.beta[results.beta_labels.index('prices')]
        prices = problem.products.prices[indices].flatten()
        shares = problem.products.shares[indices].flatten()
        expected = alpha * prices[None] * (np.eye(indices.size) - shares[None])
        np.testing.assert_allclose(elasticities, expected, atol=1e-12, rtol=1e-8)


@pytest.mark.usefixtures('simulated_problem')
def test_counterfactual_shares(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that raising prices lowers inside shares and, for logit demand, gives closed-form shares."""
    _, _, problem, _, results = simulated_problem
    new_prices = 1.1 * problem.products.prices
    new_shares = results.compute_shares(new_prices)
    assert new_shares.shape == problem.products.shares.shape
    for t, indices in problem._product_market_indices.items():
        assert new_shares[indices].sum() < problem.products.shares[indices].sum()
    if problem.K2 == 0:
        alpha = results.beta[results.beta_labels.index('prices')]
        for t, indices in problem._product_market_indices.items():
            changes = new_prices[indices] - problem.products.prices[indices]
            exp_delta = np.exp(results.delta[indices] + alpha * changes)
            expected = exp_delta / (1 + exp_delta.sum())
            np.testing.assert_allclose(new_shares[indices], expected, atol=1e-14, rtol=1e-8, err_msg=str(t))


@pytest.mark.usefixtures('large_logit_simulation')
def test_fixed_costs(large_logit_simulation: SimulationFixture) -> None:
    """Test that specified marginal costs are used when replacing prices and that they must have the right shape."""
    simulation, simulation_results = large_logit_simulation
    results = simulation.replace_endogenous(costs=simulation_results.costs, prices=simulation_results.costs)
    np.testing.assert_allclose(results.costs, simulation_results.costs, atol=0, rtol=0)
    np.testing.assert_allclose(
        results.product_data.prices, simulation_results.product_data.prices, atol=1e-6, rtol=0
    )
    with pytest.raises(ValueError):
        simulation.replace_endogenous(costs=simulation_results.costs[1:])
    with pytest.raises(ValueError):
        simulation.replace_endogenous(method='unknown')


@pytest.mark.usefixtures('large_logit_simulation')
def test_invalid_solve(large_logit_simulation: SimulationFixture) -> None:
    """Test that unsupported estimation configurations are rejected."""
    _, simulation_results = large_logit_simulation
    problem = simulation_results.to_problem()
    with pytest.raises(TypeError):
        problem.solve(method='3s')
    with pytest.raises(ValueError):
        problem.solve(error_behavior='ignore')
    with pytest.raises(TypeError):
        problem.solve(iteration='simple')


@pytest.mark.usefixtures('simulated_problem')
def test_best_response_restart(simulated_problem: SimulatedProblemFixture) -> None:
    """Test that best response iteration started at equilibrium prices does not report firm-level convergence
    failures, even though each firm's optimizer starts at its optimum and cannot take a step.
    """
    simulation, simulation_results, _, _, _ = simulated_problem
    costs = simulation_results.costs
    restarted = simulation.replace_endogenous(costs, simulation_results.product_data.prices)
    assert restarted.fp_converged.all()
    assert (restarted.profit_gradient_norms < 1e-6).all()
    np.testing.assert_allclose(
        restarted.product_data.prices, simulation_results.product_data.prices, atol=1e-6, rtol=0
    )


@pytest.mark.usefixtures('large_logit_simulation')
def test_parallel(large_logit_simulation: SimulationFixture) -> None:
    """Test that solving markets in a process pool gives the same equilibrium and estimates as solving them
    serially.
    """
    simulation, simulation_results = large_logit_simulation
    problem = simulation_results.to_problem()
    serial_results = problem.solve()
    with parallel(2):
        parallel_simulation_results = simulation.replace_endogenous()
        parallel_results = problem.solve()
    for key in ['prices', 'shares']:
        np.testing.assert_allclose(
            parallel_simulation_results.product_data[key], simulation_results.product_data[key], atol=1e-14, rtol=0,
            err_msg=key
        )
    np.testing.assert_allclose(parallel_results.beta, serial_results.beta, atol=1e-12, rtol=0)
    np.testing.assert_allclose(parallel_results.objective, serial_results.objective, atol=1e-12, rtol=1e-10)
