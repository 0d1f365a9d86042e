"""Fixtures used by tests."""

import hashlib
import os
from typing import Any, Callable, Dict, Hashable, Iterator, Tuple

import numpy as np
import patsy
import pytest
import scipy.linalg

from pystructural import (
    DynamicProblem, DynamicResults, Formulation, Integration, Problem, ProblemResults, RustModel, Simulation,
    SimulationResults, build_id_data, options
)
from pystructural.utilities.basics import Array, Data, RecArray


# define common types
SimulationFixture = Tuple[Simulation, SimulationResults]
SimulatedProblemFixture = Tuple[Simulation, SimulationResults, Problem, Dict[str, Any], ProblemResults]
DynamicFixture = Tuple[RustModel, RecArray, DynamicProblem]


@pytest.fixture(scope='session', autouse=True)
def configure() -> Iterator[None]:
    """Configure NumPy so that it raises all warnings as exceptions. Next, if a DTYPE environment variable is set in
    this testing environment that is different from the default data type, use it for all numeric calculations. Finally,
    cache results for SciPy linear algebra routines. This is very memory inefficient but guarantees that linear algebra
    will always give rise to the same deterministic result, which is important for precise testing of equality.
    """

    # configure NumPy so that it raises all warnings as exceptions
    old_error = np.seterr(all='raise', under='ignore')

    # use any different data type for all numeric calculations
    old_dtype = options.dtype
    dtype_string = os.environ.get('DTYPE')
    if dtype_string:
        options.dtype = np.dtype(dtype_string)
        if np.finfo(options.dtype).dtype == old_dtype:
            pytest.skip(f"The {dtype_string} data type is the same as the default one in this environment.")

    def patch(uncached: Callable) -> Callable:
        """Patch a function by caching its array arguments."""
        mapping: Dict[Hashable, Array] = {}

        def cached(*args: Array, **kwargs: Any) -> Array:
            """Replicate the function, caching its results."""
            nonlocal mapping
            key = tuple(hashlib.sha1(a.data.tobytes()).digest() for a in args)
            if key not in mapping:
                mapping[key] = uncached(*args, **kwargs)
            return mapping[key]

        return cached

    # patch the functions
    old = {}
    for name in ['inv', 'solve', 'svd', 'pinv', 'qr']:
        old[name] = getattr(scipy.linalg, name)
        setattr(scipy.linalg, name, patch(old[name]))

    # run tests before reverting all changes
    yield
    for name, old in old.items():
        setattr(scipy.linalg, name, old)
    options.dtype = old_dtype
    np.seterr(**old_error)


@pytest.fixture(scope='session', params=[pytest.param(1, id="1 observation"), pytest.param(10, id="10 observations")])
def formula_data(request: Any) -> Data:
    """Simulate patsy demo data with two-level categorical variables and varying numbers of observations."""
    raw_data = patsy.user_util.demo_data('a', 'b', 'c', 'x', 'y', 'z', nlevels=2, min_rows=request.param)
    return {k: np.array(v) if isinstance(v[0], str) else np.abs(v) for k, v in raw_data.items()}


@pytest.fixture(scope='session')
def large_logit_simulation() -> SimulationFixture:
    """Solve a simulation with many markets, a linear constant, linear prices, a linear characteristic, and two cost
    characteristics.
    """
    id_data = build_id_data(T=40, J=10, F=5)
    simulation = Simulation(
        product_formulations=(
            Formulation('1 + prices + x'),
            None,
            Formulation('1 + a')
        ),
        product_data={
            'market_ids': id_data.market_ids,
            'firm_ids': id_data.firm_ids
        },
        beta=[1, -3, 1],
        gamma=[0.5, 1],
        xi_variance=0.001,
        omega_variance=0.001,
        correlation=0.7,
        seed=1
    )
    simulation_results = simulation.replace_endogenous()
    return simulation, simulation_results


@pytest.fixture(scope='session')
def large_blp_simulation() -> SimulationFixture:
    """Solve a simulation with many markets, a linear constant, linear prices, a characteristic with a random
    coefficient, two cost characteristics, and product rule integration.
    """
    id_data = build_id_data(T=40, J=10, F=5)
    simulation = Simulation(
        product_formulations=(
            Formulation('1 + prices + x'),
            Formulation('0 + x'),
            Formulation('1 + a')
        ),
        product_data={
            'market_ids': id_data.market_ids,
            'firm_ids': id_data.firm_ids
        },
        beta=[1, -3, 1],
        sigma=1,
        gamma=[0.5, 1],
        integration=Integration('product', 5),
        xi_variance=0.001,
        omega_variance=0.001,
        correlation=0.7,
        seed=2
    )
    simulation_results = simulation.replace_endogenous()
    return simulation, simulation_results


@pytest.fixture(scope='session', params=[
    pytest.param(['large_logit_simulation', {}], id="large logit"),
    pytest.param(['large_blp_simulation', {'sigma': 0.5, 'sigma_bounds': (0, 5)}], id="large BLP"),
])
def simulated_problem(request: Any) -> SimulatedProblemFixture:
    """Configure and solve a simulated problem from a simulation with default instruments."""
    name, solve_options = request.param
    simulation, simulation_results = request.getfixturevalue(name)
    problem = simulation_results.to_problem()
    problem_results = problem.solve(**solve_options)
    return simulation, simulation_results, problem, solve_options, problem_results


@pytest.fixture(scope='session')
def rust_model() -> RustModel:
    """Configure a bus engine replacement model that is small enough to estimate quickly and in which engines are
    replaced often enough for replacement costs to be precisely estimated.
    """
    return RustModel(states=30, beta=0.95, replacement_cost=5, maintenance_costs=[20], cost_scale=0.01)


@pytest.fixture(scope='session')
def rust_panel(rust_model: RustModel) -> DynamicFixture:
    """Simulate a panel from the bus engine replacement model and configure a problem for it."""
    panel = rust_model.simulate(buses=200, periods=100, seed=0)
    problem = DynamicProblem(panel, states=30, beta=0.95, maintenance_terms=1, cost_scale=0.01)
    return rust_model, panel, problem


@pytest.fixture(scope='session')
def nfxp_results(rust_panel: DynamicFixture) -> DynamicResults:
    """Estimate the bus engine replacement model with the nested fixed point algorithm."""
    _, _, problem = rust_panel
    return problem.solve('nfxp')
