"""Single-agent dynamic discrete choice model of engine replacement."""

import time
from typing import Any, List, Optional, Tuple

import numpy as np

from .. import exceptions, options
from ..configurations.iteration import ContractionResults, Iteration
from ..utilities.algebra import approximately_solve
from ..utilities.basics import (
    Array, Error, NumericalErrorHandler, RecArray, SolverStats, StringRepresentation, format_estimates, format_number,
    format_seconds, format_table, output, structure_matrices
)


class RustModel(StringRepresentation):
    r"""The bus engine replacement model of Rust (1987).

    Each period, the manager of a bus with mileage state :math:`x \in \{0, 1, \dots, S - 1\}` decides whether to keep
    the engine (:math:`d = 0`) or to replace it (:math:`d = 1`). Flow utilities are

    .. math::

       u_0(x) = -c(x), \quad u_1(x) = -RC - c(0), \quad c(x) = \kappa\sum_{k=1}^K \theta_k x^k,

    in which :math:`RC` is the replacement cost and :math:`\kappa` is a cost scale. After keeping the engine, mileage
    increases by :math:`j` with probability :math:`p_j`, capped at :math:`S - 1`. After replacing it, mileage resets to
    zero and then increases in the same way. With type I extreme value shocks, the integrated value function solves

    .. math:: V(x) = \gamma + \log\sum_d \exp v_d(x), \quad v_d = u_d + \beta F_d V,

    in which :math:`\gamma` is the Euler constant and :math:`F_d` is the transition matrix under decision :math:`d`.
    Conditional choice probabilities (CCPs) are :math:`P_d(x) = \exp v_d(x) / \sum_{d'}\exp v_{d'}(x)`.

    Parameters
    ----------
    states : `int, optional`
        Number of discrete mileage states, :math:`S`. By default, there are ``90`` states.
    beta : `float, optional`
        Discount factor, :math:`\beta`, which should be between zero and one, exclusive. By default, ``0.99``.
    transition_probabilities : `array-like, optional`
        Probabilities of mileage increments :math:`0, 1, \dots, J - 1`, which should sum to one. By default, the
        estimates ``(0.3919, 0.5953, 0.0128)`` for the buses studied by Rust (1987) are used.
    replacement_cost : `float, optional`
        Replacement cost, :math:`RC`. By default, ``10``.
    maintenance_costs : `array-like, optional`
        Coefficients :math:`\theta_1, \dots, \theta_K` on powers of mileage in the maintenance cost function. By
        default, there is one linear coefficient of ``2.5``.
    cost_scale : `float, optional`
        Scale, :math:`\kappa`, of the maintenance cost function. By default, ``0.001``, as in Rust (1987).

    Attributes
    ----------
    states : `int`
        Number of mileage states, :math:`S`.
    beta : `float`
        Discount factor, :math:`\beta`.
    transition_probabilities : `ndarray`
        Probabilities of mileage increments, :math:`p`.
    transitions : `ndarray`
        Stacked :math:`S \times S` transition matrices :math:`F_0` and :math:`F_1`.
    theta : `ndarray`
        Utility parameters, :math:`\theta = (RC, \theta_1, \dots, \theta_K)`.
    theta_labels : `list of str`
        Labels for :math:`\theta`.
    cost_scale : `float`
        Scale of the maintenance cost function, :math:`\kappa`.
    K : `int`
        Number of maintenance cost coefficients.
    P : `int`
        Number of utility parameters, :math:`K + 1`.

    Examples
    --------
    Solve the model and simulate a panel of buses::

        model = pystructural.RustModel(states=90, beta=0.99, replacement_cost=10, maintenance_costs=[2.5])
        solution = model.solve()
        panel = model.simulate(buses=500, periods=100, seed=0)

    """

    states: int
    beta: float
    transition_probabilities: Array
    transitions: Array
    theta: Array
    theta_labels: List[str]
    cost_scale: float
    K: int
    P: int
    _utility_jacobian: Array

    def __init__(
            self, states: int = 90, beta: float = 0.99, transition_probabilities: Optional[Any] = None,
            replacement_cost: float = 10, maintenance_costs: Optional[Any] = None, cost_scale: float = 0.001) -> None:
        """Validate the primitives and build transition matrices."""
        if not isinstance(states, int) or states < 2:
            raise ValueError("states must be an integer of at least 2.")
        if not 0 < beta < 1:
            raise ValueError("beta must be between zero and one, exclusive.")
        if transition_probabilities is None:
            transition_probabilities = [0.3919, 0.5953, 0.0128]
        if maintenance_costs is None:
            maintenance_costs = [2.5]
        self.states = states
        self.beta = float(beta)
        self.cost_scale = float(cost_scale)

        # validate increment probabilities
        self.transition_probabilities = np.asarray(transition_probabilities, options.dtype).flatten()
        if self.transition_probabilities.size == 0 or (self.transition_probabilities < 0).any():
            raise ValueError("transition_probabilities must be a nonempty vector of nonnegative probabilities.")
        if not np.isclose(self.transition_probabilities.sum(), 1):
            raise ValueError("transition_probabilities must sum to one.")

        # structure parameters
        maintenance_costs = np.asarray(maintenance_costs, options.dtype).flatten()
        self.K = maintenance_costs.size
        self.P = self.K + 1
        self.theta = np.c_[np.r_[replacement_cost, maintenance_costs]]
        self.theta_labels = ['RC'] + [f'theta_{k}' for k in range(1, self.K + 1)]

        # build transition matrices
        self.transitions = self.build_transitions(self.states, self.transition_probabilities)

        # flow utilities are linear in theta, so their Jacobian is constant
        mileage = np.arange(self.states, dtype=options.dtype)[:, None]
        powers = -self.cost_scale * mileage ** np.arange(1, self.K + 1)
        self._utility_jacobian = np.zeros((2, self.states, self.P), options.dtype)
        self._utility_jacobian[0, :, 1:] = powers
        self._utility_jacobian[1, :, 0] = -1
        self._utility_jacobian[1, :, 1:] = powers[0]

    def __str__(self) -> str:
        """Format model information as a string."""
        dimensions = format_table(
            ["States", "Increments", "Parameters", "Discount Factor"],
            [self.states, self.transition_probabilities.size, self.P, format_number(self.beta).strip()],
            title="Dimensions"
        )
        transitions = format_estimates(
            "Mileage Increment Probabilities", [f"p_{j}" for j in range(self.transition_probabilities.size)],
            self.transition_probabilities
        )
        parameters = format_estimates("Utility Parameters", self.theta_labels, self.theta)
        return "\n\n".join([dimensions, transitions, parameters])

    @staticmethod
    def build_transitions(states: int, transition_probabilities: Array) -> Array:
        """Build stacked transition matrices for keeping and replacing the engine, with mileage capped at the last
        state.
        """
        keep = np.zeros((states, states), options.dtype)
        for j, probability in enumerate(transition_probabilities):
            np.add.at(keep, (np.arange(states), np.minimum(np.arange(states) + j, states - 1)), probability)
        replace = np.tile(keep[0], (states, 1))
        return np.stack([keep, replace])

    def _coerce_theta(self, theta: Optional[Any]) -> Array:
        """Validate or choose default utility parameters."""
        if theta is None:
            return self.theta
        theta = np.c_[np.asarray(theta, options.dtype)]
        if theta.shape != (self.P, 1):
            raise ValueError(f"theta must be a {self.P}-vector.")
        return theta

    def compute_utilities(self, theta: Array) -> Array:
        """Compute flow utilities with one column for each decision."""
        return np.c_[self._utility_jacobian[0] @ theta, self._utility_jacobian[1] @ theta]

    def compute_choice_values(self, utilities: Array, value: Array) -> Array:
        """Compute choice-specific values given flow utilities and the integrated value function."""
        return utilities + self.beta * np.c_[self.transitions[0] @ value, self.transitions[1] @ value]

    @staticmethod
    def compute_ccps(choice_values: Array) -> Array:
        """Compute conditional choice probabilities, re-scaling choice values by their maxima to avoid overflow."""
        exp_values = np.exp(choice_values - choice_values.max(axis=1, keepdims=True))
        return exp_values / exp_values.sum(axis=1, keepdims=True)

    @staticmethod
    def compute_integrated_value(choice_values: Array) -> Array:
        """Compute the expected maximum of choice values and extreme value shocks."""
        maxima = choice_values.max(axis=1, keepdims=True)
        return np.euler_gamma + maxima + np.log(np.exp(choice_values - maxima).sum(axis=1, keepdims=True))

    def compute_value_by_value_jacobian(self, ccps: Array) -> Array:
        """Compute the Jacobian of the Bellman operator, which is the CCP-weighted discounted transition matrix."""
        return self.beta * (ccps[:, [0]] * self.transitions[0] + ccps[:, [1]] * self.transitions[1])

    def compute_value_by_theta_jacobian(self, ccps: Array) -> Tuple[Array, List[Error]]:
        """Use the implicit function theorem to compute the Jacobian of the integrated value function with respect to
        utility parameters.
        """
        errors: List[Error] = []
        value_jacobian = np.eye(self.states, dtype=options.dtype) - self.compute_value_by_value_jacobian(ccps)
        utility_jacobian = ccps[:, [0]] * self._utility_jacobian[0] + ccps[:, [1]] * self._utility_jacobian[1]
        jacobian, replacement = approximately_solve(value_jacobian, utility_jacobian)
        if replacement:
            errors.append(exceptions.ValueJacobianInversionError(value_jacobian, replacement))
        return jacobian, errors

    @NumericalErrorHandler(exceptions.ValueFunctionNumericalError)
    def safely_solve_value(
            self, theta: Array, initial: Optional[Array], iteration: Iteration) -> (
            Tuple[Array, SolverStats, List[Error]]):
        """Solve for the integrated value function with value iteration, handling any numerical errors."""
        errors: List[Error] = []
        utilities = self.compute_utilities(theta)
        if initial is None:
            initial = np.zeros((self.states, 1), options.dtype)

        def contraction(value: Array, *_: Any) -> ContractionResults:
            """Apply the Bellman operator, optionally computing its Jacobian."""
            choice_values = self.compute_choice_values(utilities, value)
            jacobian = None
            if iteration._compute_jacobian:
                jacobian = self.compute_value_by_value_jacobian(self.compute_ccps(choice_values))
            return self.compute_integrated_value(choice_values), None, jacobian

        value, stats = iteration._iterate(initial, contraction)
        if not stats.converged:
            errors.append(exceptions.ValueFunctionConvergenceError())
        return value, stats, errors

    def solve(
            self, theta: Optional[Any] = None, iteration: Optional[Iteration] = None,
            error_behavior: str = 'raise') -> 'DynamicSolution':
        r"""Solve for the integrated value function and conditional choice probabilities.

        Parameters
        ----------
        theta : `array-like, optional`
            Utility parameters, :math:`\theta`, at which to solve the model. By default, :attr:`RustModel.theta`.
        iteration : `Iteration, optional`
            :class:`Iteration` configuration for how to solve the Bellman equation. By default,
            ``Iteration('simple', {'atol': 1e-12, 'max_evaluations': 100000})`` is used, which is value iteration.
            Newton-type routines such as ``Iteration('hybr', compute_jacobian=True)`` use the analytic Jacobian of the
            Bellman operator and usually need far fewer evaluations when :math:`\beta` is close to one.
        error_behavior : `str, optional`
            How to handle errors such as non-convergence:

                - ``'raise'`` (default) - Raise an exception.

                - ``'warn'`` - Output a warning and return the last values.

        Returns
        -------
        `DynamicSolution`
            :class:`DynamicSolution` of the solved model.

        """
        if error_behavior not in {'raise', 'warn'}:
            raise ValueError("error_behavior must be 'raise' or 'warn'.")
        theta = self._coerce_theta(theta)
        iteration = self._coerce_optional_iteration(iteration)

        output("Solving the dynamic model ...")
        start_time = time.time()
        value, stats, errors = self.safely_solve_value(theta, None, iteration)
        exceptions.handle_errors(errors, error_behavior)

        solution = DynamicSolution(self, theta, value, stats, time.time() - start_time)
        output(f"Solved the dynamic model after {format_seconds(solution.computation_time)}.")
        output("")
        output(solution)
        return solution

    @staticmethod
    def _coerce_optional_iteration(iteration: Optional[Iteration]) -> Iteration:
        """Validate or choose a default configuration for solving the Bellman equation."""
        if iteration is None:
            iteration = Iteration('simple', {'atol': 1e-12, 'max_evaluations': 100000})
        elif not isinstance(iteration, Iteration):
            raise TypeError("iteration must be None or an Iteration instance.")
        return iteration

    def simulate(
            self, buses: int = 100, periods: int = 100, seed: Optional[int] = None,
            initial_states: Optional[Any] = None, theta: Optional[Any] = None,
            iteration: Optional[Iteration] = None) -> RecArray:
        """Simulate a panel of replacement decisions and mileage transitions.

        Decisions are drawn from the CCPs of the solved model and increments from the transition probabilities.

        Parameters
        ----------
        buses : `int, optional`
            Number of buses. By default, ``100``.
        periods : `int, optional`
            Number of periods. By default, ``100``.
        seed : `int, optional`
            Passed to :class:`numpy.random.RandomState` to seed the random number generator before data are simulated.
        initial_states : `array-like, optional`
            Initial mileage state of each bus. By default, all buses start with new engines in state zero.
        theta : `array-like, optional`
            Utility parameters at which to solve the model. By default, :attr:`RustModel.theta`.
        iteration : `Iteration, optional`
            :class:`Iteration` configuration passed to :meth:`RustModel.solve`.

        Returns
        -------
        `recarray`
            Panel with one row per bus and period, and fields ``bus_ids``, ``periods``, ``states``, ``decisions``,
            and ``next_states``. Rows are sorted by bus and then by period.

        """
        if not isinstance(buses, int) or buses < 1:
            raise ValueError("buses must be a positive integer.")
        if not isinstance(periods, int) or periods < 1:
            raise ValueError("periods must be a positive integer.")
        if initial_states is None:
            states = np.zeros(buses, np.int64)
        else:
            states = np.asarray(initial_states, np.int64).flatten()
            if states.size != buses or (states < 0).any() or (states >= self.states).any():
                raise ValueError(f"initial_states must be a {buses}-vector of states between 0 and {self.states - 1}.")

        # solve the model to get replacement probabilities
        ccps = self.solve(theta, iteration).ccps

        # draw decisions and increments period by period
        output("Simulating the panel ...")
        state = np.random.RandomState(seed)
        panel_states = np.zeros((buses, periods), np.int64)
        panel_decisions = np.zeros((buses, periods), np.int64)
        panel_next_states = np.zeros((buses, periods), np.int64)
        for period in range(periods):
            decisions = (state.uniform(size=buses) < ccps[states, 1]).astype(np.int64)
            increments = state.choice(self.transition_probabilities.size, size=buses, p=self.transition_probabilities)
            next_states = np.minimum(np.where(decisions == 1, 0, states) + increments, self.states - 1)
            panel_states[:, period] = states
            panel_decisions[:, period] = decisions
            panel_next_states[:, period] = next_states
            states = next_states

        return structure_matrices({
            'bus_ids': (np.repeat(np.arange(buses), periods), np.int64),
            'periods': (np.tile(np.arange(periods), buses), np.int64),
            'states': (panel_states.flatten(), np.int64),
            'decisions': (panel_decisions.flatten(), np.int64),
            'next_states': (panel_next_states.flatten(), np.int64),
        })


class DynamicSolution(StringRepresentation):
    r"""Solution of a dynamic model at some utility parameters.

    Attributes
    ----------
    model : `RustModel`
        :class:`RustModel` that created this solution.
    theta : `ndarray`
        Utility parameters at which the model was solved.
    value : `ndarray`
        Integrated value function, :math:`V`.
    choice_values : `ndarray`
        Choice-specific values, :math:`v_d`, with one column for each decision.
    ccps : `ndarray`
        Conditional choice probabilities, :math:`P_d`, with one column for each decision.
    converged : `bool`
        Whether the fixed point routine converged.
    iterations : `int`
        Number of major iterations completed by the fixed point routine.
    evaluations : `int`
        Number of times the Bellman operator was evaluated.
    computation_time : `float`
        Number of seconds it took to solve the model.

    """

    model: RustModel
    theta: Array
    value: Array
    choice_values: Array
    ccps: Array
    converged: bool
    iterations: int
    evaluations: int
    computation_time: float

    def __init__(
            self, model: RustModel, theta: Array, value: Array, stats: SolverStats, computation_time: float) -> None:
        """Compute choice values and CCPs from the value function."""
        self.model = model
        self.theta = theta
        self.value = value
        self.choice_values = model.compute_choice_values(model.compute_utilities(theta), value)
        self.ccps = model.compute_ccps(self.choice_values)
        self.converged = stats.converged
        self.iterations = stats.iterations
        self.evaluations = stats.evaluations
        self.computation_time = computation_time

    def __str__(self) -> str:
        """Format a summary of the solution as a string."""
        header = [
            ("Computation", "Time"), ("Fixed Point", "Converged"), ("Fixed Point", "Iterations"),
            ("Contraction", "Evaluations"), ("Replacement", "Prob. at 0"), ("Replacement", "Prob. at Max")
        ]
        values = [
            format_seconds(self.computation_time),
            "Yes" if self.converged else "No",
            self.iterations,
            self.evaluations,
            format_number(self.ccps[0, 1]),
            format_number(self.ccps[-1, 1]),
        ]
        return format_table(header, values, title="Dynamic Solution Summary")
