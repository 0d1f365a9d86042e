"""Tests of solution, simulation, and estimation of the bus engine replacement model."""

import numpy as np
import pytest

from pystructural import DynamicProblem, DynamicResults, Iteration, RustModel, exceptions, options
from pystructural.utilities.basics import compute_finite_differences
from .conftest import DynamicFixture


@pytest.mark.usefixtures('rust_model')
def test_bellman_equation(rust_model: RustModel) -> None:
    """Test that the solved value function is a fixed point of the Bellman operator and that replacement becomes more
    likely as mileage accumulates.
    """
    solution = rust_model.solve()
    assert solution.converged and str(solution)
    utilities = rust_model.compute_utilities(rust_model.theta)
    choice_values = rust_model.compute_choice_values(utilities, solution.value)
    np.testing.assert_allclose(rust_model.compute_integrated_value(choice_values), solution.value, atol=1e-10, rtol=0)
    np.testing.assert_allclose(solution.ccps.sum(axis=1), 1, atol=1e-14, rtol=0)
    np.testing.assert_allclose(solution.ccps, rust_model.compute_ccps(choice_values), atol=1e-12, rtol=0)
    assert (np.diff(solution.ccps[:, 1]) > -1e-12).all()
    assert solution.ccps[-1, 1] > solution.ccps[0, 1]


def test_transition_matrices() -> None:
    """Test that transition matrices are stochastic, that mileage is capped at the last state, and that replacement
    resets mileage.
    """
    model = RustModel(states=5, transition_probabilities=[0.2, 0.5, 0.3])
    keep, replace = model.transitions
    np.testing.assert_allclose(keep.sum(axis=1), 1, atol=1e-14, rtol=0)
    np.testing.assert_allclose(keep[0, :3], [0.2, 0.5, 0.3], atol=1e-14, rtol=0)
    np.testing.assert_allclose(keep[3, 3:], [0.2, 0.8], atol=1e-14, rtol=0)
    np.testing.assert_allclose(keep[4, 4], 1, atol=1e-14, rtol=0)
    np.testing.assert_allclose(replace, np.tile(keep[0], (5, 1)), atol=0, rtol=0)


@pytest.mark.usefixtures('rust_model')
@pytest.mark.parametrize('iteration', [
    pytest.param(Iteration('squarem', {'atol': 1e-12}), id="SQUAREM"),
    pytest.param(Iteration('hybr', {'xtol': 1e-12}, compute_jacobian=True), id="Powell hybrid with Jacobian"),
])
def test_solution_methods(rust_model: RustModel, iteration: Iteration) -> None:
    """Test that accelerated and Newton-type routines reach the same value function as value iteration, and that the
    Newton-type routines need far fewer evaluations.
    """
    simple = rust_model.solve()
    accelerated = rust_model.solve(iteration=iteration)
    assert accelerated.converged
    np.testing.assert_allclose(accelerated.value, simple.value, atol=1e-8, rtol=0)
    np.testing.assert_allclose(accelerated.ccps, simple.ccps, atol=1e-8, rtol=0)
    assert accelerated.evaluations < simple.evaluations


@pytest.mark.usefixtures('rust_model')
def test_capped_value_iteration(rust_model: RustModel) -> None:
    """Test that value iteration stops at its evaluation cap and that its failure to converge is raised or warned."""
    iteration = Iteration('simple', {'atol': 1e-14, 'max_evaluations': 5})
    with pytest.raises(exceptions.ValueFunctionConvergenceError):
        rust_model.solve(iteration=iteration)
    solution = rust_model.solve(iteration=iteration, error_behavior='warn')
    assert not solution.converged
    assert solution.evaluations == 5
    assert np.isfinite(solution.value).all()


@pytest.mark.usefixtures('rust_model')
def test_value_jacobian(rust_model: RustModel) -> None:
    """Test that the implicit function theorem gives the same Jacobian of the value function with respect to utility
    parameters as central finite differences.
    """
    iteration = Iteration('simple', {'atol': 1e-12, 'max_evaluations': 100000})
    solution = rust_model.solve(iteration=iteration)
    jacobian, errors = rust_model.compute_value_by_theta_jacobian(solution.ccps)
    assert not errors
    finite_differences = compute_finite_differences(
        lambda t: rust_model.safely_solve_value(t, solution.value, iteration)[0], rust_model.theta,
        epsilon_scale=1e-4 / options.finite_differences_epsilon
    )
    np.testing.assert_allclose(jacobian, finite_differences, atol=1e-6, rtol=1e-5)


@pytest.mark.usefixtures('rust_panel')
def test_simulation(rust_panel: DynamicFixture) -> None:
    """Test that the simulated panel is internally consistent and reproducible."""
    model, panel, _ = rust_panel
    assert panel.shape[0] == 200 * 100
    states = panel.states.flatten()
    decisions = panel.decisions.flatten()
    next_states = panel.next_states.flatten()
    assert set(np.unique(decisions)) == {0, 1}
    assert (next_states >= 0).all() and (next_states < model.states).all()
    increments = next_states - np.where(decisions == 1, 0, states)
    assert (increments >= 0).all() and (increments < model.transition_probabilities.size).all()

    # within each bus, the next state is the following period's state
    same_bus = panel.bus_ids.flatten()[1:] == panel.bus_ids.flatten()[:-1]
    np.testing.assert_array_equal(next_states[:-1][same_bus], states[1:][same_bus])
    np.testing.assert_array_equal(states[panel.periods.flatten() == 0], 0)

    # the same seed gives the same panel
    np.testing.assert_array_equal(model.simulate(buses=200, periods=100, seed=0).decisions, panel.decisions)


@pytest.mark.usefixtures('rust_model')
@pytest.mark.parametrize(['arguments', 'exception'], [
    pytest.param({'buses': 0}, ValueError, id="no buses"),
    pytest.param({'periods': 1.5}, ValueError, id="non-integer periods"),
    pytest.param({'buses': 2, 'initial_states': [0, 30]}, ValueError, id="initial state out of range"),
    pytest.param({'buses': 2, 'initial_states': [0]}, ValueError, id="too few initial states"),
    pytest.param({'theta': [1, 2, 3]}, ValueError, id="too many parameters"),
])
def test_invalid_simulation(rust_model: RustModel, arguments: dict, exception: type) -> None:
    """Test that invalid simulation configurations are rejected."""
    with pytest.raises(exception):
        rust_model.simulate(**arguments)


@pytest.mark.usefixtures('rust_panel')
def test_first_stage(rust_panel: DynamicFixture) -> None:
    """Test that estimated transitions are close to the true ones and that estimated CCPs are bounded probabilities.
    """
    model, _, problem = rust_panel
    assert problem.increments == model.transition_probabilities.size
    np.testing.assert_allclose(problem.estimate_transitions(), model.transition_probabilities, atol=0.02, rtol=0)
    ccps = problem.estimate_ccps((0.01, 0.99))
    assert ccps.shape == (model.states, 2)
    np.testing.assert_allclose(ccps.sum(axis=1), 1, atol=1e-14, rtol=0)
    assert (ccps >= 0.01 - 1e-14).all() and (ccps <= 0.99 + 1e-14).all()
    with pytest.raises(ValueError):
        problem.estimate_ccps((0.5, 0.1))


@pytest.mark.usefixtures('rust_panel', 'nfxp_results')
def test_nfxp(rust_panel: DynamicFixture, nfxp_results: DynamicResults) -> None:
    """Test that nested fixed point estimates are close to the true parameters, that every Bellman equation was solved,
    and that results can be formatted next to true values.
    """
    model, _, problem = rust_panel
    assert nfxp_results.converged
    assert nfxp_results.fp_converged.all()
    assert nfxp_results.theta_labels == problem.theta_labels == model.theta_labels
    np.testing.assert_allclose(nfxp_results.theta, model.theta, atol=0, rtol=0.2)
    assert np.isfinite(nfxp_results.theta_se).all() and (nfxp_results.theta_se > 0).all()
    assert np.abs(nfxp_results.gradient).max() / problem.N < 1e-6
    assert str(nfxp_results)
    assert 'RC' in nfxp_results.compare(model.theta)
    with pytest.raises(ValueError):
        nfxp_results.compare([1, 2, 3])


@pytest.mark.usefixtures('rust_panel', 'nfxp_results')
def test_hotz_miller(rust_panel: DynamicFixture, nfxp_results: DynamicResults) -> None:
    """Test that Hotz-Miller estimates do not require solving the Bellman equation and are reasonably close to both
    the true parameters and the nested fixed point estimates.
    """
    model, _, problem = rust_panel
    results = problem.solve('hotz_miller')
    assert results.converged
    assert results.fp_converged.size == 0
    np.testing.assert_allclose(results.theta, model.theta, atol=0, rtol=0.5)
    np.testing.assert_allclose(results.theta, nfxp_results.theta, atol=0, rtol=0.5)
    assert np.isfinite(results.theta_se).all()


@pytest.mark.usefixtures('rust_panel', 'nfxp_results')
def test_npl(rust_panel: DynamicFixture, nfxp_results: DynamicResults) -> None:
    """Test that nested pseudo-likelihood iteration converges to the maximum likelihood estimates, at which the CCPs
    are the ones implied by the model.
    """
    _, _, problem = rust_panel
    results = problem.solve('npl')
    assert results.converged
    assert results.fp_converged.all() and results.fp_iterations.sum() > 0
    np.testing.assert_allclose(results.theta, nfxp_results.theta, atol=0, rtol=0.01)
    np.testing.assert_allclose(results.ccps, nfxp_results.ccps, atol=1e-3, rtol=0)
    np.testing.assert_allclose(results.log_likelihood, nfxp_results.log_likelihood, atol=1e-2, rtol=0)


@pytest.mark.usefixtures('rust_panel')
def test_capped_npl(rust_panel: DynamicFixture) -> None:
    """Test that nested pseudo-likelihood iteration stops at its evaluation cap and that its failure to converge is
    raised or warned.
    """
    _, _, problem = rust_panel
    npl_iteration = Iteration('simple', {'atol': 1e-14, 'max_evaluations': 1})
    with pytest.raises(exceptions.CCPConvergenceError):
        problem.solve('npl', npl_iteration=npl_iteration)
    results = problem.solve('npl', npl_iteration=npl_iteration, error_behavior='warn')
    assert not results.fp_converged.any()
    assert exceptions.CCPConvergenceError() in results._errors


@pytest.mark.usefixtures('rust_panel')
def test_capped_nfxp(rust_panel: DynamicFixture) -> None:
    """Test that a failure to solve the Bellman equation during nested fixed point estimation is raised."""
    _, _, problem = rust_panel
    with pytest.raises(exceptions.ValueFunctionConvergenceError):
        problem.solve('nfxp', iteration=Iteration('simple', {'atol': 1e-14, 'max_evaluations': 3}))


@pytest.mark.parametrize(['panel_data', 'exception'], [
    pytest.param({'states': [0, 1], 'decisions': [0, 0]}, KeyError, id="missing next states"),
    pytest.param({'states': [0, 1], 'decisions': [0, 2], 'next_states': [1, 2]}, ValueError, id="invalid decisions"),
    pytest.param({'states': [0, 9], 'decisions': [0, 0], 'next_states': [1, 10]}, ValueError, id="states out of range"),
    pytest.param({'states': [0, 3], 'decisions': [0, 0], 'next_states': [1, 2]}, ValueError, id="decreasing mileage"),
    pytest.param({'states': [0.5, 1], 'decisions': [0, 0], 'next_states': [1, 2]}, ValueError, id="fractional states"),
])
def test_invalid_panel(panel_data: dict, exception: type) -> None:
    """Test that invalid panels are rejected."""
    with pytest.raises(exception):
        DynamicProblem(panel_data, states=10)


@pytest.mark.usefixtures('rust_panel')
def test_invalid_solve(rust_panel: DynamicFixture) -> None:
    """Test that unsupported estimation configurations are rejected."""
    _, _, problem = rust_panel
    with pytest.raises(ValueError):
        problem.solve('gmm')
    with pytest.raises(ValueError):
        problem.solve(theta=[1, 2, 3])
    with pytest.raises(ValueError):
        problem.solve(error_behavior='revert')
    with pytest.raises(TypeError):
        problem.solve(optimization='l-bfgs-b')
