"""Estimation of dynamic discrete choice models from panel data."""

import time
from typing import Any, Callable, List, Mapping, Optional, Tuple

import numpy as np

from .model import RustModel
from .. import exceptions, options
from ..configurations.iteration import ContractionResults, Iteration
from ..configurations.optimization import ObjectiveResults, Optimization
from ..results.dynamic_results import DynamicResults
from ..utilities.algebra import approximately_solve
from ..utilities.basics import (
    Array, Error, NumericalErrorHandler, RecArray, SolverStats, StringRepresentation, extract_matrix, format_number,
    format_seconds, format_table, output, structure_matrices
)


class DynamicProblem(StringRepresentation):
    r"""A bus engine replacement model estimated from a panel of mileage states and replacement decisions.

    Estimation follows the two-step approach of Rust (1987). First, mileage increment probabilities are estimated by
    their sample frequencies with :meth:`DynamicProblem.estimate_transitions`. Then, utility parameters
    :math:`\theta = (RC, \theta_1, \dots, \theta_K)` are estimated by maximizing a likelihood of replacement decisions
    with :meth:`DynamicProblem.solve`, using one of three methods:

        - ``'nfxp'`` - The nested fixed point algorithm, which solves the Bellman equation at each objective
          evaluation.

        - ``'hotz_miller'`` - The CCP inversion of Hotz and Miller (1993), which replaces the value function with one
          implied by first-stage frequency estimates of conditional choice probabilities, so that no fixed point is
          solved.

        - ``'npl'`` - The nested pseudo-likelihood algorithm of Aguirregabiria and Mira (2002), which iterates on
          Hotz-Miller estimates by updating CCPs with those implied by the last estimates.

    Parameters
    ----------
    panel_data : `structured array-like`
        Each row corresponds to a bus in a period. The following fields are required:

            - **states** : (`int`) - Mileage state at the beginning of the period, :math:`x`.

            - **decisions** : (`int`) - Replacement decision, :math:`d`, which is ``1`` if the engine was replaced and
              ``0`` otherwise.

            - **next_states** : (`int`) - Mileage state at the beginning of the next period.

        A panel with these fields is returned by :meth:`RustModel.simulate`.

    states : `int, optional`
        Number of mileage states, :math:`S`. By default, ``90``.
    beta : `float, optional`
        Discount factor, :math:`\beta`, which is not estimated. By default, ``0.99``.
    maintenance_terms : `int, optional`
        Number of powers of mileage, :math:`K`, in the maintenance cost function. By default, costs are linear.
    cost_scale : `float, optional`
        Scale of the maintenance cost function, :math:`\kappa`. By default, ``0.001``.
    increments : `int, optional`
        Number of possible mileage increments, :math:`J`. By default, this is one more than the largest observed
        increment.

    Attributes
    ----------
    panel : `recarray`
        Structured ``states``, ``decisions``, and ``next_states``.
    states : `int`
        Number of mileage states, :math:`S`.
    beta : `float`
        Discount factor, :math:`\beta`.
    maintenance_terms : `int`
        Number of maintenance cost coefficients, :math:`K`.
    cost_scale : `float`
        Scale of the maintenance cost function, :math:`\kappa`.
    increments : `int`
        Number of possible mileage increments, :math:`J`.
    N : `int`
        Number of observations.
    P : `int`
        Number of utility parameters.
    theta_labels : `list of str`
        Labels for :math:`\theta`.

    """

    panel: RecArray
    states: int
    beta: float
    maintenance_terms: int
    cost_scale: float
    increments: int
    N: int
    P: int
    theta_labels: List[str]
    _observed_increments: Array

    def __init__(
            self, panel_data: Mapping, states: int = 90, beta: float = 0.99, maintenance_terms: int = 1,
            cost_scale: float = 0.001, increments: Optional[int] = None) -> None:
        """Structure and validate the panel."""
        output("Initializing the dynamic problem ...")
        start_time = time.time()
        if not isinstance(states, int) or states < 2:
            raise ValueError("states must be an integer of at least 2.")
        if not 0 < beta < 1:
            raise ValueError("beta must be between zero and one, exclusive.")
        if not isinstance(maintenance_terms, int) or maintenance_terms < 1:
            raise ValueError("maintenance_terms must be a positive integer.")
        self.states = states
        self.beta = float(beta)
        self.maintenance_terms = maintenance_terms
        self.cost_scale = float(cost_scale)
        self.P = maintenance_terms + 1
        self.theta_labels = ['RC'] + [f'theta_{k}' for k in range(1, maintenance_terms + 1)]

        # load and validate the panel
        matrices = {}
        for name in ['states', 'decisions', 'next_states']:
            matrix = extract_matrix(panel_data, name)
            if matrix is None:
                raise KeyError(f"panel_data must have a {name} field.")
            if matrix.shape[1] > 1:
                raise ValueError(f"The {name} field of panel_data must be one-dimensional.")
            if not np.issubdtype(matrix.dtype, np.number) or (matrix != np.round(matrix)).any():
                raise ValueError(f"The {name} field of panel_data must consist of integers.")
            matrices[name] = matrix.astype(np.int64)
        for name in ['states', 'next_states']:
            if (matrices[name] < 0).any() or (matrices[name] >= states).any():
                raise ValueError(f"The {name} field of panel_data must consist of integers between 0 and {states - 1}.")
        if not np.isin(matrices['decisions'], [0, 1]).all():
            raise ValueError("The decisions field of panel_data must consist of zeros and ones.")
        self.panel = structure_matrices({k: (v, np.int64) for k, v in matrices.items()})
        self.N = self.panel.shape[0]

        # mileage resets after replacement, so increments are measured from zero
        base = np.where(self.panel.decisions == 1, 0, self.panel.states)
        self._observed_increments = self.panel.next_states - base
        if (self._observed_increments < 0).any():
            raise ValueError("Mileage can only decrease after a replacement, when it is reset to zero.")
        if increments is None:
            increments = int(self._observed_increments.max()) + 1
        elif not isinstance(increments, int) or increments <= self._observed_increments.max():
            raise ValueError(f"increments must be an integer larger than {self._observed_increments.max()}.")
        self.increments = increments

        output(f"Initialized the dynamic problem after {format_seconds(time.time() - start_time)}.")
        output("")
        output(self)

    def __str__(self) -> str:
        """Format problem information as a string."""
        header = ["Observations", "States", "Increments", "Parameters", "Discount Factor", "Replacements"]
        values = [
            self.N, self.states, self.increments, self.P, format_number(self.beta).strip(),
            int(self.panel.decisions.sum())
        ]
        return format_table(header, values, title="Dimensions")

    def estimate_transitions(self) -> Array:
        r"""Estimate mileage increment probabilities by their sample frequencies.

        Increments are measured from zero after replacements. Observations from states close enough to the last state
        that mileage could have been capped are excluded.

        Returns
        -------
        `ndarray`
            Estimated probabilities of increments :math:`0, 1, \dots, J - 1`.

        """
        base = np.where(self.panel.decisions == 1, 0, self.panel.states).flatten()
        uncapped = base + self.increments - 1 <= self.states - 1
        if not uncapped.any():
            raise ValueError("There are no observations from which increments can be estimated without capping.")
        counts = np.bincount(self._observed_increments.flatten()[uncapped], minlength=self.increments)
        return counts.astype(options.dtype) / counts.sum()

    def estimate_ccps(self, ccp_bounds: Optional[Tuple[float, float]] = None) -> Array:
        """Estimate conditional choice probabilities by sample frequencies of replacement in each state.

        Probabilities in states that are never visited are linearly interpolated from the nearest visited states.

        Parameters
        ----------
        ccp_bounds : `tuple, optional`
            Bounds ``(lb, ub)`` to which estimated replacement probabilities are clipped so that their logarithms are
            finite. By default, ``(1e-6, 1 - 1e-6)``.

        Returns
        -------
        `ndarray`
            Estimated CCPs with one row for each state and one column for each decision.

        """
        lb, ub = self._coerce_ccp_bounds(ccp_bounds)
        states = self.panel.states.flatten()
        visits = np.bincount(states, minlength=self.states)
        replacements = np.bincount(states, weights=self.panel.decisions.flatten(), minlength=self.states)
        visited = np.flatnonzero(visits)
        frequencies = np.interp(np.arange(self.states), visited, replacements[visited] / visits[visited])
        probabilities = np.clip(frequencies, lb, ub).astype(options.dtype)
        return np.c_[1 - probabilities, probabilities]

    @staticmethod
    def _coerce_ccp_bounds(ccp_bounds: Optional[Tuple[float, float]]) -> Tuple[float, float]:
        """Validate or choose default bounds for estimated CCPs."""
        if ccp_bounds is None:
            return 1e-6, 1 - 1e-6
        if len(ccp_bounds) != 2 or not 0 < ccp_bounds[0] < ccp_bounds[1] < 1:
            raise ValueError("ccp_bounds must be a tuple of the form (lb, ub) with 0 < lb < ub < 1.")
        return float(ccp_bounds[0]), float(ccp_bounds[1])

    def solve(
            self, method: str = 'nfxp', theta: Optional[Any] = None, optimization: Optional[Optimization] = None,
            iteration: Optional[Iteration] = None, npl_iteration: Optional[Iteration] = None,
            ccp_bounds: Optional[Tuple[float, float]] = None, error_behavior: str = 'raise') -> DynamicResults:
        r"""Estimate utility parameters by maximum likelihood or pseudo-maximum likelihood.

        Standard errors are computed with the BHHH outer product of per-observation scores. For the CCP methods, they
        are conditional on first-stage estimates of CCPs and transitions. For all methods, they are conditional on
        first-stage transition estimates.

        Parameters
        ----------
        method : `str, optional`
            Estimation method: ``'nfxp'`` (default), ``'hotz_miller'``, or ``'npl'``.
        theta : `array-like, optional`
            Starting values for :math:`\theta = (RC, \theta_1, \dots, \theta_K)`. By default, all elements start at
            zero.
        optimization : `Optimization, optional`
            :class:`Optimization` configuration for how to maximize the (pseudo-)likelihood, which is scaled by the
            number of observations. By default, ``Optimization('l-bfgs-b', {'gtol': 1e-8})`` is used. The ``'npl'``
            method instead defaults to ``Optimization('l-bfgs-b', {'ftol': 0, 'gtol': 1e-8})`` because precise
            estimates at each policy iteration are needed to detect convergence of CCPs.
        iteration : `Iteration, optional`
            :class:`Iteration` configuration for how to solve the Bellman equation when ``method`` is ``'nfxp'``. By
            default, ``Iteration('simple', {'atol': 1e-12, 'max_evaluations': 100000})`` is used.
        npl_iteration : `Iteration, optional`
            :class:`Iteration` configuration for how to iterate over replacement probabilities when ``method`` is
            ``'npl'``. By default, ``Iteration('simple', {'atol': 1e-6, 'max_evaluations': 100})`` is used.
        ccp_bounds : `tuple, optional`
            Bounds passed to :meth:`DynamicProblem.estimate_ccps` and used to clip CCPs during policy iteration.
        error_behavior : `str, optional`
            How to handle errors such as non-convergence of the Bellman equation:

                - ``'raise'`` (default) - Raise an exception.

                - ``'warn'`` - Output a warning and continue. Non-finite likelihoods are replaced by the last finite
                  values.

        Returns
        -------
        `DynamicResults`
            :class:`DynamicResults` of the solved problem.

        """
        start_time = time.time()

        # validate the configuration
        if method not in {'nfxp', 'hotz_miller', 'npl'}:
            raise ValueError("method must be 'nfxp', 'hotz_miller', or 'npl'.")
        if error_behavior not in {'raise', 'warn'}:
            raise ValueError("error_behavior must be 'raise' or 'warn'.")
        if optimization is None:
            optimization_options = {'ftol': 0, 'gtol': 1e-8} if method == 'npl' else {'gtol': 1e-8}
            optimization = Optimization('l-bfgs-b', optimization_options)
        elif not isinstance(optimization, Optimization):
            raise TypeError("optimization must be None or an Optimization instance.")
        iteration = RustModel._coerce_optional_iteration(iteration)
        if npl_iteration is None:
            npl_iteration = Iteration('simple', {'atol': 1e-6, 'max_evaluations': 100})
        elif not isinstance(npl_iteration, Iteration):
            raise TypeError("npl_iteration must be None or an Iteration instance.")
        if theta is None:
            theta = np.zeros((self.P, 1), options.dtype)
        else:
            theta = np.c_[np.asarray(theta, options.dtype)]
            if theta.shape != (self.P, 1):
                raise ValueError(f"theta must be a {self.P}-vector.")
        ccp_bounds = self._coerce_ccp_bounds(ccp_bounds)

        # estimate transitions in a first step and build a model with them
        transitions = self.estimate_transitions()
        model = RustModel(
            self.states, self.beta, transitions, 0, np.zeros(self.maintenance_terms), self.cost_scale
        )
        errors: List[Error] = []
        fp_stats: List[SolverStats] = []

        output(f"Estimating parameters with the {method} method ...")
        output("")
        optimization_start_time = time.time()
        if method == 'nfxp':
            theta, optimization_stats, evaluation = self._solve_nfxp(
                model, theta, optimization, iteration, error_behavior, errors, fp_stats
            )
        else:
            ccps = self.estimate_ccps(ccp_bounds)
            theta, optimization_stats, evaluation = self._solve_pseudo_likelihood(
                model, ccps, theta, optimization, error_behavior, errors
            )
            if method == 'npl':
                theta, optimization_stats, evaluation = self._solve_npl(
                    model, evaluation[-1], theta, optimization, npl_iteration, ccp_bounds, error_behavior, errors,
                    fp_stats, optimization_stats
                )
        optimization_end_time = time.time()
        output("")
        output(f"Estimation finished after {format_seconds(optimization_end_time - optimization_start_time)}.")

        # structure results
        log_likelihood, gradient, scores, ccps = evaluation
        results = DynamicResults(
            self, method, theta, log_likelihood, gradient, scores, ccps, transitions, optimization_stats, fp_stats,
            start_time, optimization_start_time, optimization_end_time, errors
        )
        exceptions.handle_errors(results._errors, error_behavior)
        output("")
        output(results)
        return results

    def _maximize(
            self, theta: Array, optimization: Optimization, error_behavior: str, errors: List[Error],
            evaluate: Callable[[Array], Tuple[Array, Array, List[Error]]]) -> Tuple[Array, SolverStats]:
        """Maximize a log-likelihood scaled by the number of observations, reverting to the last finite values when
        it cannot be computed.
        """
        last_objective = np.array(np.inf, options.dtype)
        last_gradient = np.zeros((self.P, 1), options.dtype)

        def wrapper(values: Array, iterations: int, evaluations: int) -> ObjectiveResults:
            """Compute and output progress associated with a single objective evaluation."""
            nonlocal last_objective, last_gradient
            log_likelihood, gradient, errors_e = evaluate(values)
            objective = -log_likelihood / self.N
            gradient = -gradient / self.N
            if not np.isfinite(objective):
                objective = last_objective
                gradient = np.zeros_like(last_gradient)
                errors_e.append(exceptions.ObjectiveReversionError())
            else:
                last_objective = objective
                last_gradient = gradient
            if errors_e:
                if error_behavior == 'raise':
                    raise exceptions.MultipleErrors(errors_e)
                errors.extend(e for e in errors_e if e not in errors)
            if optimization._universal_display:
                output(format_table(
                    ["Iterations", "Evaluations", "Objective Value", "Gradient Norm"],
                    [iterations, evaluations, format_number(objective), format_number(np.abs(gradient).max())],
                    include_border=False, include_header=evaluations == 1
                ))
            return objective, gradient if optimization._compute_gradient else None, None

        theta, stats = optimization._optimize(theta, None, wrapper)
        if not stats.converged:
            convergence_error = exceptions.ThetaConvergenceError()
            if error_behavior == 'raise':
                raise exceptions.MultipleErrors([convergence_error])
            errors.append(convergence_error)
        return theta, stats

    def _solve_nfxp(
            self, model: RustModel, theta: Array, optimization: Optimization, iteration: Iteration,
            error_behavior: str, errors: List[Error], fp_stats: List[SolverStats]) -> (
            Tuple[Array, SolverStats, Tuple[Array, Array, Array, Array]]):
        """Maximize the full likelihood, solving the Bellman equation at each evaluation from the last value."""
        last_value: Optional[Array] = None

        def evaluate(values: Array) -> Tuple[Array, Array, List[Error]]:
            """Solve the model and evaluate the log-likelihood."""
            nonlocal last_value
            value, log_likelihood, gradient, _, _, errors_e = self._evaluate_nfxp(
                model, values, last_value, iteration, fp_stats
            )
            if np.isfinite(value).all():
                last_value = value
            return log_likelihood, gradient, errors_e

        theta, stats = self._maximize(theta, optimization, error_behavior, errors, evaluate)
        _, log_likelihood, gradient, scores, ccps, final_errors = self._evaluate_nfxp(
            model, theta, last_value, iteration, fp_stats
        )
        errors.extend(final_errors)
        return theta, stats, (log_likelihood, gradient, scores, ccps)

    def _evaluate_nfxp(
            self, model: RustModel, theta: Array, initial: Optional[Array], iteration: Iteration,
            fp_stats: List[SolverStats]) -> Tuple[Array, Array, Array, Array, Array, List[Error]]:
        """Solve the Bellman equation and differentiate choice values with the implicit function theorem."""
        value, stats, errors = model.safely_solve_value(theta, initial, iteration)
        fp_stats.append(stats)
        choice_values = model.compute_choice_values(model.compute_utilities(theta), value)
        ccps = model.compute_ccps(choice_values)
        value_jacobian, jacobian_errors = model.compute_value_by_theta_jacobian(ccps)
        choice_jacobian = model._utility_jacobian + model.beta * (model.transitions @ value_jacobian)
        log_likelihood, gradient, scores, likelihood_errors = self.safely_compute_log_likelihood(
            choice_values, choice_jacobian
        )
        return value, log_likelihood, gradient, scores, ccps, errors + jacobian_errors + likelihood_errors

    def _solve_pseudo_likelihood(
            self, model: RustModel, ccps: Array, theta: Array, optimization: Optimization, error_behavior: str,
            errors: List[Error]) -> Tuple[Array, SolverStats, Tuple[Array, Array, Array, Array]]:
        """Maximize the pseudo-likelihood implied by a CCP representation of the value function."""
        choice_jacobian, offsets, representation_errors = self._compute_ccp_representation(model, ccps)
        if representation_errors:
            if error_behavior == 'raise':
                raise exceptions.MultipleErrors(representation_errors)
            errors.extend(representation_errors)

        def evaluate(values: Array) -> Tuple[Array, Array, List[Error]]:
            """Evaluate the pseudo-log-likelihood."""
            choice_values = self._compute_linear_choice_values(choice_jacobian, offsets, values)
            log_likelihood, gradient, _, errors_e = self.safely_compute_log_likelihood(choice_values, choice_jacobian)
            return log_likelihood, gradient, errors_e

        theta, stats = self._maximize(theta, optimization, error_behavior, errors, evaluate)
        choice_values = self._compute_linear_choice_values(choice_jacobian, offsets, theta)
        log_likelihood, gradient, scores, final_errors = self.safely_compute_log_likelihood(
            choice_values, choice_jacobian
        )
        errors.extend(final_errors)
        return theta, stats, (log_likelihood, gradient, scores, model.compute_ccps(choice_values))

    def _solve_npl(
            self, model: RustModel, ccps: Array, theta: Array, optimization: Optimization, npl_iteration: Iteration,
            ccp_bounds: Tuple[float, float], error_behavior: str, errors: List[Error], fp_stats: List[SolverStats],
            optimization_stats: SolverStats) -> Tuple[Array, SolverStats, Tuple[Array, Array, Array, Array]]:
        """Iterate over replacement probabilities, re-estimating parameters from the CCPs they imply."""
        evaluation: Optional[Tuple[Array, Array, Array, Array]] = None

        def contraction(probabilities: Array, *_: Any) -> ContractionResults:
            """Update replacement probabilities with those implied by pseudo-likelihood estimates."""
            nonlocal theta, evaluation
            clipped = np.clip(probabilities, *ccp_bounds)
            theta, stats, evaluation = self._solve_pseudo_likelihood(
                model, np.c_[1 - clipped, clipped], theta, optimization, error_behavior, errors
            )
            optimization_stats.iterations += stats.iterations
            optimization_stats.evaluations += stats.evaluations
            optimization_stats.converged = optimization_stats.converged and stats.converged
            return evaluation[-1][:, [1]], None, None

        _, stats = npl_iteration._iterate(ccps[:, [1]], contraction)
        fp_stats.append(stats)
        if not stats.converged:
            convergence_error = exceptions.CCPConvergenceError()
            if error_behavior == 'raise':
                raise exceptions.MultipleErrors([convergence_error])
            errors.append(convergence_error)
        assert evaluation is not None
        return theta, optimization_stats, evaluation

    def _compute_ccp_representation(self, model: RustModel, ccps: Array) -> Tuple[Array, Array, List[Error]]:
        r"""Represent choice values as linear functions of utility parameters given CCPs.

        Since :math:`V = (I - \beta F_P)^{-1}\sum_d P_d(u_d + \gamma - \log P_d)` and flow utilities are linear in
        parameters, choice values are :math:`v_d = (Z_d + \beta F_d A)\theta + \beta F_d b`.
        """
        errors: List[Error] = []
        value_jacobian = np.eye(self.states, dtype=options.dtype) - model.compute_value_by_value_jacobian(ccps)
        utility_jacobian = ccps[:, [0]] * model._utility_jacobian[0] + ccps[:, [1]] * model._utility_jacobian[1]
        expected_shocks = (ccps * (np.euler_gamma - np.log(ccps))).sum(axis=1, keepdims=True)
        solved, replacement = approximately_solve(value_jacobian, np.c_[utility_jacobian, expected_shocks])
        if replacement:
            errors.append(exceptions.ValueJacobianInversionError(value_jacobian, replacement))
        A, b = solved[:, :-1], solved[:, [-1]]
        choice_jacobian = model._utility_jacobian + model.beta * (model.transitions @ A)
        offsets = model.beta * np.c_[model.transitions[0] @ b, model.transitions[1] @ b]
        return choice_jacobian, offsets, errors

    @staticmethod
    def _compute_linear_choice_values(choice_jacobian: Array, offsets: Array, theta: Array) -> Array:
        """Compute choice values that are linear in parameters."""
        return np.c_[choice_jacobian[0] @ theta, choice_jacobian[1] @ theta] + offsets

    @NumericalErrorHandler(exceptions.LikelihoodNumericalError)
    def safely_compute_log_likelihood(
            self, choice_values: Array, choice_jacobian: Array) -> Tuple[Array, Array, Array, List[Error]]:
        """Compute the log-likelihood of observed decisions, its gradient, and per-observation scores, handling any
        numerical errors.
        """
        errors: List[Error] = []
        states = self.panel.states.flatten()
        decisions = self.panel.decisions.flatten()

        # compute log CCPs, re-scaling choice values by their maxima to avoid overflow
        maxima = choice_values.max(axis=1, keepdims=True)
        log_ccps = choice_values - maxima - np.log(np.exp(choice_values - maxima).sum(axis=1, keepdims=True))
        ccps = np.exp(log_ccps)
        log_likelihood = log_ccps[states, decisions].sum()

        # the score of an observation is the Jacobian of its chosen value less the CCP-weighted mean Jacobian
        mean_jacobian = ccps[:, [0]] * choice_jacobian[0] + ccps[:, [1]] * choice_jacobian[1]
        scores = choice_jacobian[decisions, states] - mean_jacobian[states]
        gradient = np.c_[scores.sum(axis=0)]
        return log_likelihood, gradient, scores, errors
