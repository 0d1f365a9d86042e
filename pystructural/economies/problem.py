"""Economy-level GMM estimation of demand models."""

import collections.abc
import functools
import time
from typing import Any, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple, Type, Union

import numpy as np

from .economy import Economy
from .. import exceptions, options
from ..configurations.formulation import Formulation
from ..configurations.integration import Integration
from ..configurations.iteration import Iteration
from ..configurations.optimization import ObjectiveResults, Optimization
from ..markets.problem_market import ProblemMarket
from ..parameters import Parameters
from ..primitives import Agents, Products
from ..results.problem_results import ProblemResults
from ..utilities.algebra import precisely_invert, require_psd, warn_singularity
from ..utilities.basics import (
    Array, Bounds, Error, SolverStats, format_number, format_seconds, format_table, generate_items, output, warn
)
from ..utilities.statistics import IV, compute_gmm_moments_mean


class Problem(Economy):
    r"""A BLP demand estimation problem, solved with :meth:`Problem.solve`.

    Parameters
    ----------
    product_formulations : `Formulation or sequence of Formulation`
        :class:`Formulation` configuration for the linear characteristics, :math:`X_1`, optionally followed by one for
        the nonlinear characteristics, :math:`X_2`. Without :math:`X_2`, the simple logit model is estimated.

        Variables are fields of ``product_data``. Prices must appear in at least one of the two formulations and
        shares in neither.

    product_data : `structured array-like`
        One row per product. Markets can have differing numbers of products. Required fields:

            - **market_ids** : (`object`) - IDs that associate products with markets.

            - **shares** : (`numeric`) - Market shares, :math:`s`, strictly between zero and one. In each market, they
              should sum to less than one so that the outside good has a positive share.

            - **prices** : (`numeric`) - Product prices, :math:`p`.

        Excluded instruments go in ``demand_instruments``, either as a matrix or as fields ``demand_instruments0``,
        ``demand_instruments1``, and so on. Columns of :math:`X_1` without prices are appended to them. Optional
        ``firm_ids`` are used for post-estimation markups and ``clustering_ids`` for clustered standard errors.

    integration : `Integration, optional`
        :class:`Integration` configuration that builds nodes and weights in each market.
    agent_data : `structured array-like, optional`
        One row per agent with ``market_ids``, ``weights``, and ``nodes`` fields. When :math:`X_2` is formulated,
        exactly one of this and ``integration`` should be given.

    Attributes
    ----------
    product_formulations : `tuple`
        :class:`Formulation` configurations for :math:`X_1` and :math:`X_2`.
    products : `Products`
        Structured :class:`Products`.
    agents : `Agents`
        Structured :class:`Agents`.
    unique_market_ids : `ndarray`
        Sorted unique market IDs.
    N : `int`
        Number of products in all markets.
    T : `int`
        Number of markets.
    I : `int`
        Number of agents in all markets.
    K1 : `int`
        Number of columns in :math:`X_1`.
    K2 : `int`
        Number of columns in :math:`X_2`.
    MD : `int`
        Number of demand-side instruments: excluded ones plus exogenous columns of :math:`X_1`.

    Examples
    --------
    A random coefficient on prices integrated with a Gauss-Hermite product rule::

        problem = pystructural.Problem(
            product_formulations=(pystructural.Formulation('1 + prices + x'), pystructural.Formulation('0 + prices')),
            product_data=product_data,
            integration=pystructural.Integration('product', 9)
        )
        results = problem.solve(sigma=0.5)

    """

    def __init__(
            self, product_formulations: Union[Formulation, Sequence[Optional[Formulation]]], product_data: Mapping,
            integration: Optional[Integration] = None, agent_data: Optional[Mapping] = None) -> None:
        """Structure data and check it for collinearity."""
        output("Initializing the problem ...")
        start_time = time.time()
        if isinstance(product_formulations, Formulation):
            product_formulations = [product_formulations]
        if not isinstance(product_formulations, collections.abc.Sequence) or len(product_formulations) > 2:
            raise TypeError("product_formulations must be a Formulation instance or a sequence of up to two of them.")
        formulations = list(product_formulations) + [None] * (3 - len(product_formulations))

        products = Products(formulations, product_data)
        agents = Agents(products, agent_data, integration)
        super().__init__(formulations, products, agents)
        self._detect_collinearity()

        output(f"Initialized the problem after {format_seconds(time.time() - start_time)}.")
        output("")
        output(self)

    def solve(
            self, sigma: Optional[Any] = None, sigma_bounds: Optional[Tuple[Any, Any]] = None, method: str = '2s',
            optimization: Optional[Optimization] = None, iteration: Optional[Iteration] = None,
            W: Optional[Any] = None, shares_bounds: Optional[Tuple[Any, Any]] = (1e-300, None),
            error_behavior: str = 'revert', error_punishment: float = 1, center_moments: bool = True,
            W_type: str = 'robust', se_type: str = 'robust') -> ProblemResults:
        r"""Estimate the model with one-step or two-step GMM.

        In each step, the unfixed elements of :math:`\Sigma`, collected in :math:`\theta`, minimize

        .. math:: q(\theta) = N \bar{g}(\theta)' W \bar{g}(\theta), \quad \bar{g} = \frac{1}{N} Z_D' \xi(\theta).

        With random coefficients, :math:`\delta(\theta)` solves the contraction

        .. math:: \delta \leftarrow \delta + \log s - \log s(\delta, \theta)

        in each market. Without them, :math:`\delta_{jt} = \log s_{jt} - \log s_{0t}`. IV-GMM concentrates out
        :math:`\beta` so that :math:`\xi = \delta - X_1\beta`, and the Implicit Function Theorem gives the analytic
        gradient :math:`2N\bar{G}'W\bar{g}` with :math:`\bar{G} = Z_D' \partial\xi / \partial\theta / N`.

        The first step uses :math:`W = (Z_D'Z_D / N)^{-1}` unless ``W`` is given. The second step uses
        :math:`W = S^{-1}`, the inverse of the estimated covariance matrix of the moments at the first-step estimates.

        .. note::

           This method supports :func:`parallel` processing, which distributes markets among processes.

        Parameters
        ----------
        sigma : `array-like, optional`
            Lower-triangular Cholesky root of the covariance matrix of random coefficients, :math:`\Sigma`. Zeros are
            fixed and other elements are starting values for :math:`\theta`, unless ``sigma_bounds`` fixes them. Values
            above the diagonal are ignored. This should not be given when :math:`X_2` is not formulated.
        sigma_bounds : `tuple, optional`
            Bounds ``(lb, ub)`` on :math:`\Sigma`, each of the same size as ``sigma``. Equal bounds fix an element. By
            default, diagonal elements are bounded from below by zero when the optimization routine supports bounds.
        method : `str, optional`
            ``'2s'`` (the default) for two-step GMM or ``'1s'`` for one-step GMM.
        optimization : `Optimization, optional`
            :class:`Optimization` configuration for minimizing the objective in each step. By default,
            ``Optimization('l-bfgs-b', {'ftol': 0, 'gtol': 1e-8})`` is used.
        iteration : `Iteration, optional`
            :class:`Iteration` configuration for the contraction in each market. By default,
            ``Iteration('squarem', {'atol': 1e-14, 'max_evaluations': 5000})`` is used. Use
            ``Iteration('simple', {'atol': 1e-14})`` for the plain contraction.
        W : `array-like, optional`
            Weighting matrix for the first step. By default, the 2SLS weighting matrix is used.
        shares_bounds : `tuple, optional`
            Bounds ``(lb, ub)`` to which shares computed during the contraction are clipped. By default, shares are
            bounded from below by ``1e-300``.
        error_behavior : `str, optional`
            How to handle errors when computing the objective:

                - ``'revert'`` (default) - Revert problematic elements of :math:`\delta(\theta)`, its Jacobian, the
                  objective, and its gradient to their last values, and scale the objective by ``error_punishment``.

                - ``'punish'`` - Set the objective to ``error_punishment`` times its last value and the gradient to
                  zero.

                - ``'raise'`` - Raise an exception.

        error_punishment : `float, optional`
            Scale of the objective after an error, which is ``1`` by default.
        center_moments : `bool, optional`
            Whether to center moments before updating the weighting matrix, which is the default.
        W_type : `str, optional`
            How to update the weighting matrix: ``'robust'`` (the default), ``'unadjusted'``, or ``'clustered'``.
        se_type : `str, optional`
            How to compute standard errors: ``'robust'`` (the default), ``'unadjusted'``, or ``'clustered'``.
            Clustering requires ``clustering_ids`` in ``product_data``.

        Returns
        -------
        `ProblemResults`
            :class:`ProblemResults` of the final GMM step.

        """
        output("Solving the problem ...")
        step_start_time = time.time()
        if method not in {'1s', '2s'}:
            raise TypeError("method must be '1s' or '2s'.")
        if optimization is None:
            optimization = Optimization('l-bfgs-b', {'ftol': 0, 'gtol': 1e-8})
        if not isinstance(optimization, Optimization):
            raise TypeError("optimization must be None or an Optimization instance.")
        if error_behavior not in {'revert', 'punish', 'raise'}:
            raise ValueError("error_behavior must be 'revert', 'punish', or 'raise'.")
        if not isinstance(error_punishment, (float, int)) or error_punishment < 0:
            raise ValueError("error_punishment must be a positive float.")
        for name, value in [('W_type', W_type), ('se_type', se_type)]:
            if value not in {'robust', 'unadjusted', 'clustered'}:
                raise ValueError(f"{name} must be 'robust', 'unadjusted', or 'clustered'.")
        if 'clustered' in {W_type, se_type} and self.products.clustering_ids.size == 0:
            raise ValueError("W_type or se_type is 'clustered' but clustering_ids were not specified in product_data.")
        iteration = self._coerce_optional_delta_iteration(iteration)
        shares_bounds = self._coerce_optional_bounds(shares_bounds, 'shares_bounds')

        parameters = Parameters(
            self, sigma, sigma_bounds=sigma_bounds, bounded=optimization._supports_bounds, allow_linear_nans=True
        )
        theta = parameters.compress()
        theta_bounds = parameters.compress_bounds()
        if parameters.P > 0:
            output("")
            output(parameters.format("Initial Values"))
            output("")

        # concentrated linear parameters still need moments to identify them
        unknowns = parameters.P + parameters.eliminated
        if unknowns > self.MD:
            warn(
                f"The model may be under-identified. The total number of unfixed parameters is {unknowns}, which is "
                f"more than the total number of moments, {self.MD}. Consider checking whether instruments were "
                f"properly specified when initializing the problem."
            )

        W = self._compute_initial_W(W)
        progress = Progress.initial(self, parameters, W, theta)
        last_results: Optional[ProblemResults] = None
        steps = 1 if method == '1s' else 2
        for step in range(1, steps + 1):
            last_step = step == steps
            iv = IV(self.products.X1, self.products.ZD, W)
            exceptions.handle_errors(iv.errors, error_behavior)
            compute_progress = functools.partial(
                self._compute_progress, parameters, iv, W, error_behavior, error_punishment, iteration, shares_bounds
            )

            # the objective wrapper records each evaluation's fixed point statistics
            iteration_stats: List[Dict[Hashable, SolverStats]] = []
            smallest_objective = np.inf

            def wrapper(new_theta: Array, iterations: int, evaluations: int) -> ObjectiveResults:
                """Evaluate the objective, output a row of progress, and keep the results to start the next one."""
                nonlocal progress, smallest_objective
                assert optimization is not None
                evaluation_start_time = time.time()
                progress = compute_progress(new_theta, progress, optimization._compute_gradient)
                iteration_stats.append(progress.iteration_stats)
                formatted = progress.format(
                    optimization, shares_bounds, step, iterations, evaluations, time.time() - evaluation_start_time,
                    smallest_objective
                )
                if formatted:
                    output(formatted)
                smallest_objective = min(smallest_objective, progress.objective)
                return progress.objective, progress.gradient if optimization._compute_gradient else None, None

            optimization_stats = SolverStats()
            optimization_start_time = optimization_end_time = time.time()
            if parameters.P > 0:
                output("Starting optimization ...")
                output("")
                theta, optimization_stats = optimization._optimize(theta, theta_bounds, wrapper)
                optimization_end_time = time.time()
                if not optimization_stats.converged:
                    exceptions.handle_errors([exceptions.ThetaConvergenceError()], error_behavior)
                status = "completed" if optimization_stats.converged else "failed"
                output("")
                optimization_time = optimization_end_time - optimization_start_time
                output(f"Optimization {status} after {format_seconds(optimization_time)}.")

            # results are computed from one more evaluation at the optimum
            output("Estimating standard errors ..." if last_step else "Updating the weighting matrix ...")
            progress = compute_progress(theta, progress, parameters.P > 0)
            iteration_stats.append(progress.iteration_stats)
            optimization_stats.evaluations += 1
            results = ProblemResults(
                progress, last_results, step, last_step, step_start_time, optimization_start_time,
                optimization_end_time, optimization_stats, iteration_stats, shares_bounds, center_moments, W_type,
                se_type
            )
            exceptions.handle_errors(results._errors, error_behavior)
            output(f"Computed results after {format_seconds(results.total_time - results.optimization_time)}.")
            output("")
            if not last_step:
                output(results._format_summary())
                output("")
                last_results = results
                W = results.updated_W
                step_start_time = time.time()

        output(results)
        return results

    def _compute_initial_W(self, W: Optional[Any]) -> Array:
        """Validate a starting weighting matrix or compute the 2SLS one."""
        if W is None:
            S = self.products.ZD.T @ self.products.ZD / self.N
            warn_singularity(S, "the 2SLS weighting matrix")
            W, successful = precisely_invert(S)
            if not successful:
                raise ValueError("Failed to compute the 2SLS weighting matrix. There may be instrument collinearity.")
            return W
        W = np.c_[np.asarray(W, options.dtype)]
        if W.shape != (self.MD, self.MD):
            raise ValueError(f"W must be a square {self.MD} by {self.MD} matrix.")
        require_psd(W, "W")
        warn_singularity(W, "W")
        return W

    def _compute_progress(
            self, parameters: Parameters, iv: IV, W: Array, error_behavior: str, error_punishment: float,
            iteration: Iteration, shares_bounds: Bounds, theta: Array, progress: 'Progress',
            compute_gradient: bool) -> 'Progress':
        """Evaluate the GMM objective at theta. Failed elements are replaced by the last good values of progress, and
        error_behavior decides how errors change the objective.
        """
        errors: List[Error] = []
        sigma = parameters.expand(theta)
        delta = np.zeros((self.N, 1), options.dtype)
        delta_jacobian = np.zeros((self.N, parameters.P), options.dtype)
        clipped_shares = np.zeros((self.N, 1), np.bool_)
        iteration_stats: Dict[Hashable, SolverStats] = {}
        if self.K2 == 0:
            delta = self._compute_logit_delta()
        else:
            def market_factory(s: Hashable) -> Tuple[ProblemMarket, Array, Array, Iteration, Bounds, bool]:
                """Build a market and the arguments of its contraction, which starts at the last delta."""
                indices = self._product_market_indices[s]
                market_s = ProblemMarket(self, s, parameters, sigma)
                next_delta_s = progress.next_delta[indices]
                return market_s, next_delta_s, progress.delta[indices], iteration, shares_bounds, compute_gradient

            generator = generate_items(self.unique_market_ids, market_factory, ProblemMarket.solve)
            for t, (delta_t, delta_jacobian_t, clipped_shares_t, iteration_stats_t, errors_t) in generator:
                indices = self._product_market_indices[t]
                delta[indices] = delta_t
                delta_jacobian[indices] = delta_jacobian_t
                clipped_shares[indices] = clipped_shares_t
                iteration_stats[t] = iteration_stats_t
                errors.extend(errors_t)

        revert_invalid(delta, progress.delta, exceptions.DeltaReversionError, errors)
        if compute_gradient:
            revert_invalid(delta_jacobian, progress.delta_jacobian, exceptions.XiByThetaJacobianReversionError, errors)

        # beta is concentrated out
        beta, xi, xi_jacobian = iv.estimate(self.products.X1, self.products.ZD, W, delta, delta_jacobian)
        with np.errstate(all='ignore'):
            mean_g = compute_gmm_moments_mean(xi, self.products.ZD)
            objective = np.array((mean_g.T @ W @ mean_g).item() * self.N, options.dtype)
        if not np.isfinite(objective):
            objective = progress.objective
            errors.append(exceptions.ObjectiveReversionError())
        gradient = np.full_like(progress.gradient, np.nan)
        if compute_gradient:
            with np.errstate(all='ignore'):
                mean_G = self.products.ZD.T @ xi_jacobian / self.N
                gradient = 2 * self.N * (mean_G.T @ W @ mean_g)
            revert_invalid(gradient, progress.gradient, exceptions.GradientReversionError, errors)

        if errors:
            if error_behavior == 'raise':
                raise exceptions.MultipleErrors(errors)
            if error_behavior == 'revert':
                objective = objective * error_punishment
            else:
                objective = np.array(error_punishment * progress.objective, options.dtype)
                if compute_gradient:
                    gradient = np.zeros_like(progress.gradient)

        return Progress(
            self, parameters, W, theta, objective, gradient, delta, delta, xi_jacobian, delta_jacobian, mean_g, xi,
            beta, iteration_stats, clipped_shares, errors
        )


def revert_invalid(values: Array, last_values: Array, error_class: Type[Error], errors: List[Error]) -> None:
    """Replace non-finite values in place with their last values, recording an error if there were any."""
    bad_index = ~np.isfinite(values)
    if bad_index.any():
        values[bad_index] = last_values[bad_index]
        errors.append(error_class(bad_index))


class Progress(object):
    """GMM objective evaluated at some theta, along with everything needed to start the next evaluation from it."""

    problem: Problem
    parameters: Parameters
    W: Array
    theta: Array
    objective: Array
    gradient: Array
    next_delta: Array
    delta: Array
    xi_jacobian: Array
    delta_jacobian: Array
    mean_g: Array
    xi: Array
    beta: Array
    iteration_stats: Dict[Hashable, SolverStats]
    clipped_shares: Array
    errors: List[Error]
    projected_gradient: Array
    projected_gradient_norm: Array

    def __init__(
            self, problem: Problem, parameters: Parameters, W: Array, theta: Array, objective: Array, gradient: Array,
            next_delta: Array, delta: Array, xi_jacobian: Array, delta_jacobian: Array, mean_g: Array, xi: Array,
            beta: Array, iteration_stats: Dict[Hashable, SolverStats], clipped_shares: Array,
            errors: List[Error]) -> None:
        self.problem = problem
        self.parameters = parameters
        self.W = W
        self.theta = theta
        self.objective = objective
        self.gradient = gradient
        self.next_delta = next_delta
        self.delta = delta
        self.xi_jacobian = xi_jacobian
        self.delta_jacobian = delta_jacobian
        self.mean_g = mean_g
        self.xi = xi
        self.beta = beta
        self.iteration_stats = iteration_stats
        self.clipped_shares = clipped_shares
        self.errors = errors

        # elements at bounds that the gradient pushes against are projected out
        self.projected_gradient = gradient.copy()
        with np.errstate(invalid='ignore'):
            for p, (lb, ub) in enumerate(parameters.compress_bounds()):
                if theta[p] <= lb:
                    self.projected_gradient[p] = min(0, gradient[p])
                elif theta[p] >= ub:
                    self.projected_gradient[p] = max(0, gradient[p])
            self.projected_gradient_norm = np.array(np.nan, options.dtype)
            if gradient.size > 0:
                self.projected_gradient_norm = np.abs(self.projected_gradient).max()

    @classmethod
    def initial(cls, problem: Problem, parameters: Parameters, W: Array, theta: Array) -> 'Progress':
        """Start from the logit delta with a large objective and zeros for derivatives, which are replaced once good
        values have been computed.
        """
        delta = problem._compute_logit_delta()
        jacobian = np.zeros((problem.N, parameters.P), options.dtype)
        return cls(
            problem, parameters, W, theta, np.array(1e10, options.dtype), np.zeros((parameters.P, 1), options.dtype),
            delta, delta, jacobian, jacobian, np.full((problem.MD, 1), np.nan, options.dtype),
            np.full_like(delta, np.nan), np.full((problem.K1, 1), np.nan, options.dtype), {},
            np.zeros((problem.N, 1), np.bool_), []
        )

    def format(
            self, optimization: Optimization, shares_bounds: Bounds, step: int, iterations: int, evaluations: int,
            progress_time: float, smallest_objective: Array) -> str:
        """Format any errors and, when the universal display is used, a row of the progress table, which starts with
        a header every 50 evaluations.
        """
        lines: List[str] = []
        if self.errors:
            lines.extend([
                "",
                "At least one error was encountered. As long as the optimization routine does not get stuck at values "
                "of theta that give rise to errors, this is not necessarily a problem. If the errors persist or seem "
                "to be impacting the optimization results, consider setting an error punishment or following any of "
                "the other suggestions below:",
                str(exceptions.MultipleErrors(self.errors)),
                ""
            ])
        if not optimization._universal_display:
            return "\n".join(lines)

        columns: List[Tuple[Tuple[str, str], str]] = [
            (("GMM", "Step"), str(step)),
            (("Computation", "Time"), format_seconds(progress_time)),
            (("Optimization", "Iterations"), str(iterations)),
            (("Objective", "Evaluations"), str(evaluations)),
            (("Fixed Point", "Iterations"), str(sum(s.iterations for s in self.iteration_stats.values()))),
            (("Contraction", "Evaluations"), str(sum(s.evaluations for s in self.iteration_stats.values()))),
        ]
        if np.isfinite(shares_bounds).any():
            columns.append((("Clipped", "Shares"), str(self.clipped_shares.sum())))
        improvement = smallest_objective - self.objective
        formatted_improvement = format_number(improvement)
        if not np.isfinite(improvement) or improvement <= 0:
            formatted_improvement = " " * len(formatted_improvement)
        columns.extend([
            (("Objective", "Value"), format_number(self.objective)),
            (("Objective", "Improvement"), formatted_improvement),
        ])
        if optimization._compute_gradient:
            label = ("Projected", "Gradient Norm") if self.parameters.any_bounds else ("Gradient", "Norm")
            columns.append((label, format_number(self.projected_gradient_norm)))
        columns.append((("", "Theta"), ", ".join(format_number(x) for x in self.theta.flat)))

        include_header = (evaluations - 1) % 50 == 0
        if include_header and evaluations > 1:
            lines.append("")
        header, values = zip(*columns)
        lines.append(format_table(list(header), list(values), include_border=False, include_header=include_header))
        return "\n".join(lines)
