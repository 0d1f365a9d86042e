"""Economy-level simulation of synthetic demand data."""

import collections.abc
import time
from typing import Any, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .economy import Economy
from .. import exceptions, options
from ..configurations.formulation import Formulation
from ..configurations.integration import Integration
from ..configurations.iteration import Iteration
from ..configurations.optimization import Optimization
from ..markets.simulation_market import SimulationMarket
from ..parameters import Parameters
from ..primitives import Agents, Products, extract_ids
from ..results.simulation_results import SimulationResults
from ..utilities.algebra import require_psd
from ..utilities.basics import (
    Array, Error, Groups, RecArray, SolverStats, extract_matrix, format_seconds, generate_items, output,
    output_progress, structure_matrices
)


class Simulation(Economy):
    r"""Synthetic data from logit and BLP demand models.

    Data that are not given are simulated when the simulation is initialized, after which
    :meth:`Simulation.replace_endogenous` replaces placeholder prices and shares with Bertrand-Nash equilibrium ones.
    Results convert into a :class:`Problem` with :meth:`SimulationResults.to_problem` or into purchase counts with
    :meth:`SimulationResults.simulate_choices`.

    Agent :math:`i` gets utility from product :math:`j` in market :math:`t` of

    .. math:: u_{ijt} = \delta_{jt} + \mu_{ijt} + \epsilon_{ijt},

    in which :math:`\delta = X_1\beta + \xi`, :math:`\mu_{ijt} = x_{jt}' \Sigma \nu_{it}` for rows :math:`x_{jt}` of
    :math:`X_2`, and :math:`\epsilon_{ijt}` is Type I Extreme Value. Marginal costs are :math:`c = X_3\gamma + \omega`.

    Parameters
    ----------
    product_formulations : `Formulation or sequence of Formulation`
        :class:`Formulation` configurations for up to three matrices: linear characteristics, :math:`X_1`, nonlinear
        characteristics, :math:`X_2`, and cost characteristics, :math:`X_3`. Without :math:`X_2`, the simple logit model
        is simulated.

        Variables without a field in ``product_data`` are drawn from the standard uniform distribution in the sorted
        order of their names.

    product_data : `structured array-like`
        Fields like those of :class:`Problem`. Only ``market_ids`` and ``firm_ids`` are required, and any ``shares``
        and ``prices`` are placeholders.
    beta : `array-like`
        True linear parameters, :math:`\beta`.
    sigma : `array-like, optional`
        True lower-triangular Cholesky root of the covariance matrix of random coefficients, :math:`\Sigma`.
    gamma : `array-like, optional`
        True cost parameters, :math:`\gamma`, which are given only when :math:`X_3` is formulated.
    integration : `Integration, optional`
        :class:`Integration` configuration that builds nodes and weights in each market. When :math:`X_2` is
        formulated, exactly one of this and ``agent_data`` should be given.
    agent_data : `structured array-like, optional`
        One row per agent with ``market_ids``, ``weights``, and ``nodes`` fields.
    xi : `array-like, optional`
        Unobserved demand-side characteristics, :math:`\xi`. By default, :math:`\xi` and :math:`\omega` are drawn from a
        mean-zero bivariate normal distribution.
    omega : `array-like, optional`
        Unobserved supply-side characteristics, :math:`\omega`.
    xi_variance : `float, optional`
        Variance of :math:`\xi`, which is ``1.0`` by default.
    omega_variance : `float, optional`
        Variance of :math:`\omega`, which is ``1.0`` by default.
    correlation : `float, optional`
        Correlation of :math:`\xi` and :math:`\omega`, which is ``0.9`` by default.
    seed : `int, optional`
        Seed for the :class:`numpy.random.RandomState` that draws data.

    Attributes
    ----------
    product_formulations : `tuple`
        :class:`Formulation` configurations for :math:`X_1`, :math:`X_2`, and :math:`X_3`.
    product_data : `recarray`
        Loaded or simulated product data with placeholder prices and shares.
    agent_data : `recarray or None`
        Loaded agent data.
    integration : `Integration or None`
        :class:`Integration` configuration that built nodes and weights.
    products : `Products`
        Structured :class:`Products`.
    agents : `Agents`
        Structured :class:`Agents`.
    sigma : `ndarray`
        True :math:`\Sigma`.
    beta : `ndarray`
        True :math:`\beta`.
    gamma : `ndarray`
        True :math:`\gamma`.
    xi : `ndarray`
        Unobserved demand-side characteristics, :math:`\xi`.
    omega : `ndarray`
        Unobserved supply-side characteristics, :math:`\omega`.

    Examples
    --------
    Two firms in each of ten markets, with prices solved for by best responses::

        id_data = pystructural.build_id_data(T=10, J=4, F=2)
        simulation = pystructural.Simulation(
            product_formulations=(
                pystructural.Formulation('1 + prices + x'),
                pystructural.Formulation('0 + x'),
                pystructural.Formulation('1 + w')
            ),
            product_data={'market_ids': id_data.market_ids, 'firm_ids': id_data.firm_ids},
            beta=[1, -2, 1],
            sigma=1,
            gamma=[1, 1],
            integration=pystructural.Integration('product', 5),
            seed=0
        )
        results = simulation.replace_endogenous()

    """

    product_data: RecArray
    agent_data: Optional[RecArray]
    integration: Optional[Integration]
    sigma: Array
    beta: Array
    gamma: Array
    xi: Array
    omega: Optional[Array]
    _parameters: Parameters

    def __init__(
            self, product_formulations: Union[Formulation, Sequence[Optional[Formulation]]], product_data: Mapping,
            beta: Any, sigma: Optional[Any] = None, gamma: Optional[Any] = None,
            integration: Optional[Integration] = None, agent_data: Optional[Mapping] = None, xi: Optional[Any] = None,
            omega: Optional[Any] = None, xi_variance: float = 1, omega_variance: float = 1, correlation: float = 0.9,
            seed: Optional[int] = None) -> None:
        """Load or draw everything except for equilibrium prices and shares."""
        output("Initializing the simulation ...")
        start_time = time.time()
        if isinstance(product_formulations, Formulation):
            product_formulations = [product_formulations]
        if not isinstance(product_formulations, collections.abc.Sequence) or len(product_formulations) > 3:
            raise TypeError("product_formulations must be a Formulation instance or a sequence of up to three of them.")
        formulations = list(product_formulations) + [None] * (3 - len(product_formulations))

        # one random state draws everything so that a seed always gives the same data
        state = np.random.RandomState(seed)
        self.product_data = simulate_product_data(formulations, product_data, state)
        self.agent_data = None
        if agent_data is not None:
            self.agent_data = structure_matrices({
                'market_ids': (extract_matrix(agent_data, 'market_ids'), np.object_),
                'weights': (extract_matrix(agent_data, 'weights'), options.dtype),
                'nodes': (extract_matrix(agent_data, 'nodes'), options.dtype)
            })
        self.integration = integration
        products = Products(formulations, self.product_data, instruments=False)
        agents = Agents(products, self.agent_data, integration)
        super().__init__(formulations, products, agents)

        # structural errors are drawn jointly unless either is given
        xi = coerce_vector('xi', xi, self.N)
        omega = coerce_vector('omega', omega, self.N)
        if xi is None and omega is None:
            covariance = correlation * np.sqrt(xi_variance * omega_variance)
            covariances = np.array([[xi_variance, covariance], [covariance, omega_variance]], options.dtype)
            require_psd(covariances, "the covariance matrix from xi_variance, omega_variance, and correlation")
            draws = state.multivariate_normal([0, 0], covariances, self.N, check_valid='ignore').astype(options.dtype)
            xi, omega = draws[:, [0]], draws[:, [1]]
        if xi is None:
            raise ValueError("xi must be specified if omega is specified.")
        if omega is None and self.K3 > 0:
            raise ValueError("omega must be specified if X3 is formulated and xi is specified.")
        self.xi = xi
        self.omega = omega

        self._parameters = Parameters(self, sigma, beta, gamma)
        self.sigma = self._parameters.sigma
        self.beta = self._parameters.beta
        self.gamma = self._parameters.gamma

        output(f"Initialized the simulation after {format_seconds(time.time() - start_time)}.")
        output("")
        output(self)

    def __str__(self) -> str:
        """Format the economy along with true parameters."""
        return f"{super().__str__()}\n\n{self._parameters.format('True Values')}"

    def replace_endogenous(
            self, costs: Optional[Any] = None, prices: Optional[Any] = None, method: str = 'best_response',
            iteration: Optional[Iteration] = None, optimization: Optional[Optimization] = None,
            error_behavior: str = 'raise') -> SimulationResults:
        r"""Replace placeholder prices and shares with ones from a multi-product Bertrand-Nash equilibrium.

        Markets are solved separately. With ``method='best_response'``, firms take turns choosing their own prices to
        maximize profits,

        .. math:: \pi_f = \sum_{j \in J_f} (p_j - c_j) s_j(p),

        given rivals' prices, and sweeps over firms repeat until prices stop changing. With ``method='zeta'``, prices
        solve the :math:`\zeta`-markup fixed point

        .. math:: p \leftarrow c + \zeta(p).

        When the equilibrium is unique, both methods reach it.

        .. note::

           This method supports :func:`parallel` processing, which distributes markets among processes.

        Parameters
        ----------
        costs : `array-like, optional`
            Marginal costs, :math:`c`, which are :math:`X_3\gamma + \omega` by default. They must be given when
            :math:`X_3` is not formulated.
        prices : `array-like, optional`
            Starting prices, which are ``costs`` by default.
        method : `str, optional`
            ``'best_response'`` (the default) or ``'zeta'``.
        iteration : `Iteration, optional`
            :class:`Iteration` configuration for the fixed point over prices, in which each best-response evaluation is
            a full sweep over firms. By default, best responses use
            ``Iteration('simple', {'atol': 1e-8, 'max_evaluations': 1000})`` and the :math:`\zeta`-markup fixed point
            uses ``Iteration('simple', {'atol': 1e-12, 'max_evaluations': 1000})``.
        optimization : `Optimization, optional`
            :class:`Optimization` configuration for each firm's profit maximization, with prices bounded from below by
            costs. By default, ``Optimization('l-bfgs-b', {'ftol': 1e-15, 'gtol': 1e-8})`` is used. This is ignored
            when ``method='zeta'``.
        error_behavior : `str, optional`
            How to handle errors:

                - ``'raise'`` (default) - Raise an exception.

                - ``'warn'`` - Output the errors and keep the last computed prices and shares.

        Returns
        -------
        `SimulationResults`
            :class:`SimulationResults` of the solved simulation.

        """
        output("Replacing prices and shares ...")
        start_time = time.time()
        costs = coerce_vector('costs', costs, self.N)
        if costs is None:
            if self.K3 == 0:
                raise ValueError("costs must be specified if X3 was not formulated.")
            costs = self.products.X3 @ self.gamma + self.omega
        initial_prices = coerce_vector('prices', prices, self.N)
        if initial_prices is None:
            initial_prices = costs
        if method not in {'best_response', 'zeta'}:
            raise ValueError("method must be 'best_response' or 'zeta'.")
        if error_behavior not in {'raise', 'warn'}:
            raise ValueError("error_behavior must be 'raise' or 'warn'.")
        iteration = self._coerce_optional_prices_iteration(iteration, method)
        if method == 'best_response':
            optimization = self._coerce_optional_prices_optimization(optimization)

        # markets update delta at placeholder prices as prices change
        delta = self.products.X1 @ self.beta + self.xi

        def market_factory(
                s: Hashable) -> Tuple[SimulationMarket, Array, Array, str, Iteration, Optional[Optimization]]:
            """Build a market along with its costs, starting prices, and configurations."""
            indices = self._product_market_indices[s]
            market_s = SimulationMarket(self, s, self._parameters, self.sigma, self.beta, self.gamma, delta)
            return market_s, costs[indices], initial_prices[indices], method, iteration, optimization

        data_override = {'prices': np.zeros_like(self.products.prices), 'shares': np.zeros_like(self.products.shares)}
        true_delta = np.zeros_like(delta)
        iteration_stats: Dict[Hashable, SolverStats] = {}
        profit_gradient_norms: Dict[Hashable, float] = {}
        errors: List[Error] = []
        generator = generate_items(self.unique_market_ids, market_factory, SimulationMarket.compute_endogenous)
        for t, (prices_t, shares_t, delta_t, stats_t, norm_t, errors_t) in output_progress(
                generator, self.T, start_time):
            indices = self._product_market_indices[t]
            data_override['prices'][indices] = prices_t
            data_override['shares'][indices] = shares_t
            true_delta[indices] = delta_t
            iteration_stats[t] = stats_t
            profit_gradient_norms[t] = norm_t
            errors.extend(errors_t)
        exceptions.handle_errors(errors, error_behavior)

        results = SimulationResults(
            self, data_override, true_delta, costs, start_time, time.time(), iteration_stats, profit_gradient_norms
        )
        output(f"Replaced prices and shares after {format_seconds(results.computation_time)}.")
        output("")
        output(results)
        return results


def coerce_vector(name: str, values: Optional[Any], size: int) -> Optional[Array]:
    """Validate that optional values make up a vector with one element for each product."""
    if values is None:
        return None
    vector = np.c_[np.asarray(values, options.dtype)]
    if vector.shape != (size, 1):
        raise ValueError(f"{name} must be None or a {size}-vector.")
    return vector


def simulate_product_data(
        formulations: Sequence[Optional[Formulation]], product_data: Mapping,
        state: np.random.RandomState) -> RecArray:
    """Load IDs and variables from product data, drawing placeholder shares and prices along with any variables in
    formulations that are missing. Placeholder shares in a market sum to less than one.
    """
    market_ids = extract_ids(product_data, 'market_ids', 'product_data', required=True)
    firm_ids = extract_ids(product_data, 'firm_ids', 'product_data', required=True)
    groups = Groups(market_ids)
    shares = extract_matrix(product_data, 'shares')
    if shares is None:
        shares = state.uniform(size=market_ids.size) / groups.expand(groups.counts).flatten()
    prices = extract_matrix(product_data, 'prices')
    if prices is None:
        prices = state.uniform(size=market_ids.size)

    mapping: Dict[str, Tuple[Optional[Array], Any]] = {
        'market_ids': (market_ids, np.object_),
        'firm_ids': (firm_ids, np.object_),
        'clustering_ids': (extract_matrix(product_data, 'clustering_ids'), np.object_),
        'ownership': (extract_matrix(product_data, 'ownership'), options.dtype),
        'shares': (shares, options.dtype),
        'prices': (prices, options.dtype),
    }
    names = set().union(*(f._names for f in formulations if f is not None))
    for name in sorted(names - set(mapping)):
        variable = extract_matrix(product_data, name)
        if variable is None:
            variable = state.uniform(size=market_ids.size)
        elif variable.shape[1] > 1:
            raise ValueError(f"The {name} variable has a field in product_data with more than one column.")
        mapping[name] = (variable, options.dtype)
    return structure_matrices(mapping)
