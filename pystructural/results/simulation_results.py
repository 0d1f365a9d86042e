"""Economy-level structuring of simulation results."""

from typing import Any, Dict, Hashable, Optional, Sequence, TYPE_CHECKING, Union

import numpy as np

from .. import options
from ..configurations.formulation import Formulation
from ..configurations.integration import Integration
from ..construction import build_blp_instruments
from ..utilities.basics import (
    Array, Groups, Mapping, RecArray, SolverStats, StringRepresentation, format_number, format_seconds, format_table,
    update_matrices
)


# only import objects that create import cycles when checking types
if TYPE_CHECKING:
    from ..economies.problem import Problem  # noqa
    from ..economies.simulation import Simulation  # noqa


class SimulationResults(StringRepresentation):
    r"""Results of a solved simulation of synthetic demand data.

    The :meth:`SimulationResults.to_problem` method can be used to convert the full set of simulated data (along with
    some basic default instruments) and configured information into a :class:`Problem`. The
    :meth:`SimulationResults.simulate_choices` method instead draws individual purchase decisions, which can be used
    to estimate a logit model by maximum likelihood with :class:`ChoiceProblem`.

    Attributes
    ----------
    simulation : `Simulation`
        :class:`Simulation` that created these results.
    product_data : `recarray`
        Simulated :attr:`Simulation.product_data` with prices and shares replaced so as to be consistent with the true
        parameters.
    delta : `ndarray`
        Simulated mean utility, :math:`\delta`.
    costs : `ndarray`
        Marginal costs, :math:`c`.
    computation_time : `float`
        Number of seconds it took to compute prices and market shares.
    fp_converged : `ndarray`
        Flags for convergence of the iteration routine used to compute prices in each market. Flags are in the same
        order as :attr:`Simulation.unique_market_ids`.
    fp_iterations : `ndarray`
        Number of major iterations completed by the iteration routine used to compute prices in each market.
    contraction_evaluations : `ndarray`
        Number of times the contraction used to compute prices was evaluated in each market. For best response
        iteration, this is the number of sweeps over firms.
    profit_gradient_norms : `ndarray`
        Infinity norm of the derivatives of firms' profits with respect to their own prices in each market. Norms near
        zero mean that first order conditions are satisfied.

    """

    simulation: 'Simulation'
    product_data: RecArray
    delta: Array
    costs: Array
    computation_time: float
    fp_converged: Array
    fp_iterations: Array
    contraction_evaluations: Array
    profit_gradient_norms: Array

    def __init__(
            self, simulation: 'Simulation', data_override: Dict[str, Array], delta: Array, costs: Array,
            start_time: float, end_time: float, iteration_stats: Dict[Hashable, SolverStats],
            profit_gradient_norms: Dict[Hashable, float]) -> None:
        """Store equilibrium data along with per-market statistics ordered like the simulation's market IDs."""
        self.simulation = simulation
        overrides = {k: (v, v.dtype) for k, v in data_override.items()}
        self.product_data = update_matrices(simulation.product_data, overrides)
        self.delta = delta
        self.costs = costs
        self.computation_time = end_time - start_time
        stats = [iteration_stats[t] for t in simulation.unique_market_ids]
        self.fp_converged = np.array([s.converged for s in stats], np.bool_)
        self.fp_iterations = np.array([s.iterations for s in stats], np.int64)
        self.contraction_evaluations = np.array([s.evaluations for s in stats], np.int64)
        self.profit_gradient_norms = np.array(
            [profit_gradient_norms[t] for t in simulation.unique_market_ids], options.dtype
        )

    def __str__(self) -> str:
        """Summarize the time taken, fixed point statistics, and the largest finite profit gradient norm."""
        norms = self.profit_gradient_norms[np.isfinite(self.profit_gradient_norms)]
        columns = [
            (("Computation", "Time"), format_seconds(self.computation_time)),
            (("Fixed Point", "Failures"), np.count_nonzero(~self.fp_converged)),
            (("Fixed Point", "Iterations"), self.fp_iterations.sum()),
            (("Contraction", "Evaluations"), self.contraction_evaluations.sum()),
            (("Profit Gradients", "Max Norm"), format_number(norms.max() if norms.size > 0 else np.nan)),
        ]
        header, values = zip(*columns)
        return format_table(list(header), list(values), title="Simulation Results Summary")

    def to_problem(
            self, product_formulations: Optional[Union[Formulation, Sequence[Optional[Formulation]]]] = None,
            product_data: Optional[Mapping] = None, integration: Optional[Integration] = None,
            agent_data: Optional[Mapping] = None) -> 'Problem':
        """Convert the solved simulation into a problem.

        Arguments are the same as those of :class:`Problem`. By default, the structure of the problem will be the same
        as that of the solved simulation.

        By default, some simple "sums of characteristics" BLP instruments are constructed by
        :func:`build_blp_instruments` from the exogenous variables in :math:`X_1`, along with any cost shifters
        (variables in :math:`X_3` but not :math:`X_1`). Any constant columns are dropped. For example, if each firm owns
        exactly one product in each market, the "other products of the same firm" columns will be zero and hence
        dropped.

        .. note::

           These excluded instruments are constructed only for convenience. Especially for more complicated problems,
           they should be replaced with better instruments.

        Parameters
        ----------
        product_formulations : `Formulation or sequence of Formulation, optional`
            By default, :attr:`Simulation.product_formulations` without the formulation for :math:`X_3`.
        product_data : `structured array-like, optional`
            By default, :attr:`SimulationResults.product_data` with excluded instruments.
        integration : `Integration, optional`
            By default, :attr:`Simulation.integration` if :attr:`Simulation.agent_data` was not specified.
        agent_data : `structured array-like, optional`
            By default, :attr:`Simulation.agent_data`.

        Returns
        -------
        `Problem`
            A demand estimation problem.

        """
        if product_formulations is None:
            product_formulations = self.simulation.product_formulations[:2]
        if product_data is None:
            product_data = update_matrices(self.product_data, {
                'demand_instruments': (self._compute_default_instruments(), options.dtype)
            })
        if agent_data is None and integration is None:
            agent_data = self.simulation.agent_data
            if agent_data is None and self.simulation.K2 > 0:
                integration = self.simulation.integration
        from ..economies.problem import Problem  # noqa
        return Problem(product_formulations, product_data, integration, agent_data)

    def simulate_choices(self, market_size: Any = 1000, seed: Optional[int] = None) -> RecArray:
        r"""Simulate purchase counts from the equilibrium market shares.

        In each market :math:`t`, :math:`M_t` consumers each choose one of the :math:`J_t` products or the outside
        good according to the simulated shares, so counts are multinomial:

        .. math:: (n_{0t}, n_{1t}, \dots, n_{J_t t}) \sim \text{Multinomial}(M_t, (s_{0t}, s_{1t}, \dots, s_{J_t t})).

        Parameters
        ----------
        market_size : `int or array-like, optional`
            Number of consumers in each market, :math:`M_t`. Either a single number for all markets or a vector with one
            element for each market in :attr:`Simulation.unique_market_ids`. By default, there are 1,000 consumers in
            each market.
        seed : `int, optional`
            Passed to :class:`numpy.random.RandomState` to seed the random number generator before counts are drawn.

        Returns
        -------
        `recarray`
            :attr:`SimulationResults.product_data` supplemented with purchase ``counts`` and ``market_sizes`` fields,
            which can be passed to :class:`ChoiceProblem`.

        """
        market_sizes = np.asarray(market_size).flatten()
        if market_sizes.size == 1:
            market_sizes = np.full(self.simulation.T, market_sizes[0])
        if market_sizes.size != self.simulation.T or not np.issubdtype(market_sizes.dtype, np.integer):
            raise ValueError(f"market_size must be an integer or a vector of {self.simulation.T} integers.")
        if (market_sizes <= 0).any():
            raise ValueError("market_size must be positive.")

        # draw counts in the same order as unique market IDs so that a seed always gives the same draws
        state = np.random.RandomState(seed)
        shares = self.product_data.shares
        counts = np.zeros_like(shares)
        for t, size_t in zip(self.simulation.unique_market_ids, market_sizes):
            indices_t = self.simulation._product_market_indices[t]
            shares_t = shares[indices_t].flatten()
            probabilities_t = np.r_[shares_t, max(0, 1 - shares_t.sum())]
            counts[indices_t] = state.multinomial(size_t, probabilities_t / probabilities_t.sum())[:-1, None]

        market_groups = Groups(self.product_data.market_ids)
        size_lookup = dict(zip(self.simulation.unique_market_ids, market_sizes))
        product_market_sizes = np.array([size_lookup[t] for t in market_groups.unique], options.dtype)
        return update_matrices(self.product_data, {
            'counts': (counts, options.dtype),
            'market_sizes': (market_groups.expand(product_market_sizes), options.dtype)
        })

    def _compute_default_instruments(self) -> Array:
        """Build sums of exogenous characteristics over rival and own-firm products, dropping constant columns, and
        append any cost shifters, which are excluded from demand.
        """
        simulation = self.simulation
        linear_formulation, _, cost_formulation = simulation.product_formulations
        exogenous = linear_formulation._names - {'prices'}
        shifters = set() if cost_formulation is None else cost_formulation._names - exogenous

        # a constant only varies over markets when the number of products does
        names = sorted(exogenous)
        if any(i.size < simulation._max_J for i in simulation._product_market_indices.values()):
            names.insert(0, '1')
        instruments = np.zeros((simulation.N, 0), options.dtype)
        if names:
            sums = build_blp_instruments(Formulation(' + '.join(['0'] + names)), simulation.product_data)
            instruments = sums[:, (sums != sums[0]).any(axis=0)]
        return np.column_stack([instruments] + [simulation.product_data[n] for n in sorted(shifters)])
