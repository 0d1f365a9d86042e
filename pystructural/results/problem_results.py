"""Economy-level structuring of demand estimation results."""

import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, TYPE_CHECKING

import numpy as np

from .. import exceptions, options
from ..markets.results_market import ResultsMarket
from ..utilities.algebra import compute_condition_number, warn_singularity
from ..utilities.basics import (
    Array, Bounds, Error, SolverStats, StringRepresentation, format_number, format_seconds, format_table,
    generate_items, output, output_progress
)
from ..utilities.statistics import (
    compute_gmm_moment_covariances, compute_gmm_parameter_covariances, compute_gmm_weights
)


# only import objects that create import cycles when checking types
if TYPE_CHECKING:
    from ..economies.problem import Problem, Progress  # noqa


def stack_market_stats(
        iteration_stats: Sequence[Dict[Hashable, SolverStats]], market_ids: Array, attribute: str,
        default: int) -> Array:
    """Arrange a fixed point statistic into a matrix with a row for each market and a column for each evaluation.
    Evaluations without any market-level statistics get the default.
    """
    return np.array(
        [[getattr(m[t], attribute) if m else default for m in iteration_stats] for t in market_ids], np.int64
    )


class ProblemResults(StringRepresentation):
    r"""Results of one GMM step of :meth:`Problem.solve`.

    Estimates and diagnostics are attributes, and post-estimation outputs are computed with methods.

    .. note::

       Methods that compute an output in each market support :func:`parallel` processing, which distributes markets
       among processes.

    Attributes
    ----------
    problem : `Problem`
        :class:`Problem` that created these results.
    last_results : `ProblemResults`
        :class:`ProblemResults` of the previous GMM step, if there was one.
    step : `int`
        GMM step of these results.
    optimization_time : `float`
        Seconds spent by the optimization routine.
    cumulative_optimization_time : `float`
        :attr:`ProblemResults.optimization_time` summed over this and all prior steps.
    total_time : `float`
        Seconds spent on the whole step, including set up and post-optimization computation.
    cumulative_total_time : `float`
        :attr:`ProblemResults.total_time` summed over this and all prior steps.
    converged : `bool`
        Whether the optimization routine converged.
    cumulative_converged : `bool`
        Whether it converged in this and all prior steps.
    optimization_iterations : `int`
        Major iterations of the optimization routine.
    objective_evaluations : `int`
        Evaluations of the GMM objective.
    fp_converged : `ndarray`
        Whether the contraction for :math:`\delta(\theta)` converged, with a row for each market in the order of
        :attr:`Problem.unique_market_ids` and a column for each objective evaluation.
    fp_iterations : `ndarray`
        Major iterations of the contraction's iteration routine, arranged like :attr:`ProblemResults.fp_converged`.
    contraction_evaluations : `ndarray`
        Evaluations of the contraction, arranged like :attr:`ProblemResults.fp_converged`.
    parameters : `ndarray`
        Stacked :math:`\hat{\theta}` and :math:`\hat{\beta}`.
    parameter_covariances : `ndarray`
        Estimated asymptotic covariance matrix of :math:`\sqrt{N}(\hat{\theta}, \hat{\beta})`, ordered like
        :attr:`ProblemResults.parameters`.
    theta : `ndarray`
        Estimated unfixed elements of :math:`\Sigma`, :math:`\hat{\theta}`.
    sigma : `ndarray`
        Estimated Cholesky root of the covariance matrix of random coefficients, :math:`\hat{\Sigma}`.
    beta : `ndarray`
        Estimated linear parameters, :math:`\hat{\beta}`.
    sigma_se : `ndarray`
        Standard errors of unfixed elements of :math:`\hat{\Sigma}`. Other elements are null.
    beta_se : `ndarray`
        Standard errors of :math:`\hat{\beta}`.
    sigma_labels : `list of str`
        Labels of the rows and columns of :math:`\Sigma`.
    beta_labels : `list of str`
        Labels of :math:`\beta`.
    theta_labels : `list of str`
        Labels of :math:`\theta`.
    delta : `ndarray`
        Mean utility, :math:`\delta(\hat{\theta})`.
    xi : `ndarray`
        Unobserved product characteristics, :math:`\xi(\hat{\theta})`.
    xi_by_theta_jacobian : `ndarray`
        :math:`\partial\xi / \partial\theta` with :math:`\beta` concentrated out.
    moments : `ndarray`
        Sample moments, :math:`\bar{g}`.
    objective : `float`
        GMM objective, :math:`q(\hat{\theta})`.
    gradient : `ndarray`
        Gradient of the GMM objective, :math:`\nabla q(\hat{\theta})`.
    projected_gradient : `ndarray`
        Gradient with elements at binding bounds set to zero. Without bounds, this is the gradient.
    projected_gradient_norm : `float`
        Infinity norm of :attr:`ProblemResults.projected_gradient`.
    W : `ndarray`
        Weighting matrix used in this step, :math:`W`.
    updated_W : `ndarray`
        Weighting matrix for a next step, :math:`\hat{S}^{-1}`.

    """

    problem: 'Problem'
    last_results: Optional['ProblemResults']
    step: int
    optimization_time: float
    cumulative_optimization_time: float
    total_time: float
    cumulative_total_time: float
    converged: bool
    cumulative_converged: bool
    optimization_iterations: int
    cumulative_optimization_iterations: int
    objective_evaluations: int
    cumulative_objective_evaluations: int
    fp_converged: Array
    cumulative_fp_converged: Array
    fp_iterations: Array
    cumulative_fp_iterations: Array
    contraction_evaluations: Array
    cumulative_contraction_evaluations: Array
    parameters: Array
    parameter_covariances: Array
    theta: Array
    sigma: Array
    beta: Array
    sigma_se: Array
    beta_se: Array
    sigma_labels: List[str]
    beta_labels: List[str]
    theta_labels: List[str]
    delta: Array
    xi: Array
    xi_by_theta_jacobian: Array
    moments: Array
    moments_jacobian: Array
    objective: Array
    gradient: Array
    projected_gradient: Array
    projected_gradient_norm: Array
    clipped_shares: Array
    W: Array
    updated_W: Array
    _shares_bounds: Bounds
    _se_type: str
    _errors: List[Error]

    def __init__(
            self, progress: 'Progress', last_results: Optional['ProblemResults'], step: int, last_step: bool,
            step_start_time: float, optimization_start_time: float, optimization_end_time: float,
            optimization_stats: SolverStats, iteration_stats: Sequence[Dict[Hashable, SolverStats]],
            shares_bounds: Bounds, center_moments: bool, W_type: str, se_type: str) -> None:
        """Store progress at the optimum, accumulate statistics over steps, update the weighting matrix, and, in the
        last step, estimate standard errors.
        """
        self.problem = progress.problem
        self.last_results = last_results
        self.step = step
        self._parameters = progress.parameters
        self._errors = progress.errors
        self._shares_bounds = shares_bounds
        self._se_type = se_type
        self.W = progress.W
        self.theta = progress.theta
        self.sigma = self._parameters.expand(self.theta)
        self.beta = progress.beta
        self.delta = progress.delta
        self.xi = progress.xi
        self.xi_by_theta_jacobian = progress.xi_jacobian
        self.moments = progress.mean_g
        self.objective = progress.objective
        self.gradient = progress.gradient
        self.projected_gradient = progress.projected_gradient
        self.projected_gradient_norm = progress.projected_gradient_norm
        self.clipped_shares = progress.clipped_shares
        self.parameters = np.c_[np.r_[self.theta, self.beta.flatten()]]
        self.sigma_labels = self._parameters.sigma_labels
        self.beta_labels = self._parameters.beta_labels
        self.theta_labels = self._parameters.theta_labels

        # statistics of this step
        market_ids = self.problem.unique_market_ids
        self.total_time = time.time() - step_start_time
        self.optimization_time = optimization_end_time - optimization_start_time
        self.converged = optimization_stats.converged
        self.optimization_iterations = optimization_stats.iterations
        self.objective_evaluations = optimization_stats.evaluations
        self.fp_converged = stack_market_stats(iteration_stats, market_ids, 'converged', True)
        self.fp_iterations = stack_market_stats(iteration_stats, market_ids, 'iterations', 0)
        self.contraction_evaluations = stack_market_stats(iteration_stats, market_ids, 'evaluations', 0)

        # scalar statistics are summed over steps and market-level ones are concatenated
        for name in ['total_time', 'optimization_time', 'optimization_iterations', 'objective_evaluations']:
            previous = 0 if last_results is None else getattr(last_results, f'cumulative_{name}')
            setattr(self, f'cumulative_{name}', previous + getattr(self, name))
        for name in ['fp_converged', 'fp_iterations', 'contraction_evaluations']:
            cumulative = getattr(self, name)
            if last_results is not None:
                cumulative = np.c_[getattr(last_results, f'cumulative_{name}'), cumulative]
            setattr(self, f'cumulative_{name}', cumulative)
        self.cumulative_converged = self.converged
        if last_results is not None:
            self.cumulative_converged = last_results.cumulative_converged and self.converged

        with np.errstate(all='ignore'):
            S = self._compute_S(W_type, center_moments)
            self.updated_W, W_errors = compute_gmm_weights(S)
            self._errors.extend(W_errors)
            self.moments_jacobian = np.full((self.moments.size, self.parameters.size), np.nan, options.dtype)
            self.parameter_covariances = np.full((self.parameters.size, self.parameters.size), np.nan, options.dtype)
            se = np.full((self.parameters.size, 1), np.nan, options.dtype)
            if last_step:
                se = self._estimate_se(progress.delta_jacobian, S, W_type, center_moments)

        theta_se, self.beta_se = np.split(se, [self._parameters.P])
        self.sigma_se = self._parameters.expand(theta_se.flatten(), nullify=True)

    def __str__(self) -> str:
        """Format a summary, cumulative statistics, and estimates as a string."""
        se_description = "Unadjusted SEs" if self._se_type == 'unadjusted' else "Robust SEs"
        if self._se_type == 'clustered':
            clusters = np.unique(self.problem.products.clustering_ids).size
            se_description = f"Robust SEs Adjusted for {clusters} Clusters"
        estimates = self._parameters.format_estimates(
            f"Estimates ({se_description} in Parentheses)", self.sigma, self.beta, self.sigma_se,
            self.beta_se
        )
        return "\n\n".join([self._format_summary(), self._format_cumulative_statistics(), estimates])

    def _estimate_se(self, delta_jacobian: Array, S: Array, W_type: str, center_moments: bool) -> Array:
        """Estimate parameter covariances from the Jacobian of moments and return standard errors."""
        if self._se_type != W_type or center_moments:
            S = self._compute_S(self._se_type)

        # unadjusted covariances in the first step are scaled by an unadjusted weighting matrix
        W = self.W
        if self._se_type == 'unadjusted' and self.step == 1:
            W, W_errors = compute_gmm_weights(S)
            self._errors.extend(W_errors)

        self.moments_jacobian = self._compute_mean_G(delta_jacobian)
        self.parameter_covariances, covariance_errors = compute_gmm_parameter_covariances(
            W, S, self.moments_jacobian, self._se_type
        )
        self._errors.extend(covariance_errors)
        se = np.sqrt(np.c_[self.parameter_covariances.diagonal()] / self.problem.N)
        if np.isnan(se).any():
            self._errors.append(exceptions.InvalidParameterCovariancesError())
        return se

    def _compute_mean_G(self, delta_jacobian: Array) -> Array:
        """Compute the Jacobian of the sample moments with respect to theta and beta."""
        products = self.problem.products
        return products.ZD.T @ np.c_[delta_jacobian, -products.X1] / self.problem.N

    def _compute_S(self, S_type: str, center_moments: bool = False) -> Array:
        """Estimate the covariance matrix of the moments, warning if it is nearly singular."""
        products = self.problem.products
        S = compute_gmm_moment_covariances(self.xi, products.ZD, S_type, products.clustering_ids, center_moments)
        warn_singularity(S, "the estimated covariance matrix of GMM moments")
        return S

    def _format_summary(self) -> str:
        """Format the objective along with diagnostics of the optimum as a table."""
        columns = [(("GMM", "Step"), str(self.step)), (("Objective", "Value"), format_number(self.objective))]
        if np.isfinite(self.projected_gradient_norm):
            label = ("Projected", "Gradient Norm") if self._parameters.any_bounds else ("Gradient", "Norm")
            columns.append((label, format_number(self.projected_gradient_norm)))
        if np.isfinite(self._shares_bounds).any():
            columns.append((("Clipped", "Shares"), str(self.clipped_shares.sum())))
        columns.append((("Weighting Matrix", "Condition Number"), format_number(compute_condition_number(self.W))))
        if self.parameter_covariances.size > 1 and np.isfinite(self.parameter_covariances).any():
            condition = compute_condition_number(self.parameter_covariances)
            columns.append((("Covariance Matrix", "Condition Number"), format_number(condition)))
        header, values = zip(*columns)
        return format_table(list(header), list(values), title="Problem Results Summary")

    def _format_cumulative_statistics(self) -> str:
        """Format a table of statistics accumulated over GMM steps."""
        columns = [(("Computation", "Time"), format_seconds(self.cumulative_total_time))]
        if self._parameters.P > 0:
            columns.extend([
                (("Optimizer", "Converged"), "Yes" if self.cumulative_converged else "No"),
                (("Optimization", "Iterations"), str(self.cumulative_optimization_iterations)),
            ])
        columns.append((("Objective", "Evaluations"), str(self.cumulative_objective_evaluations)))
        if (self.cumulative_contraction_evaluations > 0).any():
            columns.extend([
                (("Fixed Point", "Iterations"), str(self.cumulative_fp_iterations.sum())),
                (("Contraction", "Evaluations"), str(self.cumulative_contraction_evaluations.sum())),
            ])
        header, values = zip(*columns)
        return format_table(list(header), list(values), title="Cumulative Statistics")

    def _select_market_ids(self, market_id: Optional[Any] = None) -> Array:
        """Select a single market or, by default, all markets."""
        unique_market_ids = self.problem.unique_market_ids
        if market_id is None:
            return unique_market_ids
        if market_id not in unique_market_ids:
            raise ValueError(f"market_id must be None or one of {sorted(unique_market_ids)}.")
        return np.atleast_1d(np.array(market_id, np.object_))

    def _coerce_optional_prices(self, prices: Optional[Any], market_ids: Array) -> Optional[Array]:
        """Validate that any prices have a row for each product in the selected markets."""
        if prices is None:
            return None
        prices = np.c_[np.asarray(prices, options.dtype)]
        rows = sum(self.problem._product_market_indices[t].size for t in market_ids)
        if prices.shape != (rows, 1):
            raise ValueError(f"prices must be None or a {rows}-vector.")
        return prices

    def _combine_arrays(
            self, compute_market_results: Callable, market_ids: Array, fixed_args: Sequence = (),
            market_args: Sequence = ()) -> Array:
        """Compute an output in each selected market with a ResultsMarket method and stack the outputs in product
        order. The method is passed fixed_args as they are and the rows of market_args that belong to the market.
        Stacked outputs with fewer columns than others are padded with nulls.
        """
        start_time = time.time()
        indices = self.problem._product_market_indices

        def market_factory(s: Hashable) -> tuple:
            """Build a market along with its arguments."""
            market_s = ResultsMarket(self.problem, s, self._parameters, self.sigma, self.beta, delta=self.delta)
            args_s = market_args
            if market_ids.size > 1:
                args_s = [None if a is None else a[indices[s]] for a in market_args]
            return (market_s, *fixed_args, *args_s)

        arrays: Dict[Hashable, Array] = {}
        errors: List[Error] = []
        generator = generate_items(market_ids, market_factory, compute_market_results)
        if market_ids.size > 1:
            generator = output_progress(generator, market_ids.size, start_time)
        for t, (array_t, errors_t) in generator:
            arrays[t] = np.c_[array_t]
            errors.extend(errors_t)
        exceptions.handle_errors(errors, 'warn')

        if market_ids.size == 1:
            combined = arrays[market_ids[0]]
        else:
            combined = np.full((self.problem.N, max(a.shape[1] for a in arrays.values())), np.nan, options.dtype)
            for t, array_t in arrays.items():
                combined[indices[t], :array_t.shape[1]] = array_t

        output(f"Finished after {format_seconds(time.time() - start_time)}.")
        output("")
        return combined

    def compute_elasticities(self, name: str = 'prices', market_id: Optional[Any] = None) -> Array:
        r"""Estimate elasticities of demand, :math:`\varepsilon`, with respect to a variable, :math:`x`.

        In market :math:`t`, row :math:`j` and column :math:`k` of :math:`\varepsilon` is

        .. math:: \varepsilon_{jk} = \frac{x_k}{s_j}\frac{\partial s_j}{\partial x_k},

        so own elasticities are on the diagonal.

        Parameters
        ----------
        name : `str, optional`
            Name of the variable, :math:`x`, which is prices by default.
        market_id : `object, optional`
            Market in which to compute elasticities. By default, they are computed in all markets and stacked.

        Returns
        -------
        `ndarray`
            Stacked :math:`J_t \times J_t` matrices of elasticities. Columns are in the order of the market's products,
            and markets with fewer products than others have trailing columns of ``numpy.nan``.

        """
        output(f"Computing elasticities with respect to {name} ...")
        if name not in self.problem.products.dtype.names:
            raise NameError(f"'{name}' is not the name of a field in product_data that enters into X1 or X2.")
        market_ids = self._select_market_ids(market_id)
        return self._combine_arrays(ResultsMarket.safely_compute_elasticities, market_ids, fixed_args=[name])

    def compute_markups(self, market_id: Optional[Any] = None) -> Array:
        r"""Estimate markups implied by multi-product Bertrand competition,

        .. math:: \eta = -\left(O \odot \frac{\partial s}{\partial p}'\right)^{-1} s,

        in which :math:`O` is the ownership matrix.

        Parameters
        ----------
        market_id : `object, optional`
            Market in which to compute markups. By default, they are computed in all markets and stacked.

        Returns
        -------
        `ndarray`
            Markups, :math:`\eta = p - c`.

        """
        output("Computing markups ...")
        return self._combine_arrays(ResultsMarket.safely_compute_markups, self._select_market_ids(market_id))

    def compute_costs(self, market_id: Optional[Any] = None) -> Array:
        r"""Estimate marginal costs, :math:`c = p - \eta`.

        Parameters
        ----------
        market_id : `object, optional`
            Market in which to compute marginal costs. By default, they are computed in all markets and stacked.

        Returns
        -------
        `ndarray`
            Marginal costs, :math:`c`.

        """
        market_ids = self._select_market_ids(market_id)
        prices = self.problem.products.prices
        if market_ids.size == 1:
            prices = prices[self.problem._product_market_indices[market_ids[0]]]
        return prices - self.compute_markups(market_id)

    def compute_shares(self, prices: Optional[Any] = None, market_id: Optional[Any] = None) -> Array:
        r"""Estimate shares at counterfactual prices.

        Parameters
        ----------
        prices : `array-like`
            Prices at which to evaluate shares. By default, observed prices are used.
        market_id : `object, optional`
            Market in which to compute shares. By default, they are computed in all markets and stacked.

        Returns
        -------
        `ndarray`
            Estimated shares.

        """
        output("Computing shares ...")
        market_ids = self._select_market_ids(market_id)
        prices = self._coerce_optional_prices(prices, market_ids)
        return self._combine_arrays(ResultsMarket.safely_compute_shares, market_ids, market_args=[prices])

