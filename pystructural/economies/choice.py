"""Maximum likelihood estimation of the logit model from purchase counts."""

import time
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

from .. import exceptions, options
from ..configurations.formulation import Formulation
from ..configurations.optimization import ObjectiveResults, Optimization
from ..results.choice_results import ChoiceResults
from ..utilities.algebra import warn_collinearity
from ..utilities.basics import (
    Array, Error, Groups, NumericalErrorHandler, RecArray, StringRepresentation, extract_matrix,
    format_number, format_seconds, format_table, output, structure_matrices
)


class ChoiceProblem(StringRepresentation):
    r"""A logit demand model estimated by maximum likelihood from purchase counts.

    In market :math:`t`, each of :math:`M_t` consumers chooses one of the :math:`J_t` inside products or the outside
    good. Mean utilities are :math:`\delta_{jt} = x_{jt}'\beta` and the outside good has a mean utility of zero, so
    with type I extreme value errors the log-likelihood of counts :math:`n_{jt}` is

    .. math:: \log L(\beta) = \sum_t \left(\sum_j n_{jt}\log s_{jt}(\beta) + n_{0t}\log s_{0t}(\beta)\right)

    in which :math:`n_{0t} = M_t - \sum_j n_{jt}`. Unlike GMM estimation with :class:`Problem`, there is no structural
    error term, so prices are treated as exogenous.

    Parameters
    ----------
    product_formulation : `Formulation`
        :class:`Formulation` configuration for the matrix of product characteristics, :math:`X`.
    product_data : `structured array-like`
        Each row corresponds to a product. The following fields are required:

            - **market_ids** : (`object`) - IDs that associate products with markets.

            - **counts** : (`numeric`) - Number of consumers who purchased each product, :math:`n_{jt}`.

            - **market_sizes** : (`numeric`) - Number of consumers in the product's market, :math:`M_t`, which should
              be the same for all products in a market.

        Along with ``market_ids``, these fields are returned by :meth:`SimulationResults.simulate_choices`.

    Attributes
    ----------
    product_formulation : `Formulation`
        :class:`Formulation` configuration for :math:`X`.
    products : `recarray`
        Structured ``market_ids``, ``counts``, ``market_sizes``, and ``X``.
    unique_market_ids : `ndarray`
        Unique market IDs in sorted order.
    N : `int`
        Number of products across all markets.
    T : `int`
        Number of markets.
    K : `int`
        Number of product characteristics.
    beta_labels : `list of str`
        Variable labels for :math:`\beta`.

    """

    product_formulation: Formulation
    products: RecArray
    unique_market_ids: Array
    N: int
    T: int
    K: int
    beta_labels: List[str]
    _groups: Groups
    _market_sizes: Array

    def __init__(self, product_formulation: Formulation, product_data: Mapping) -> None:
        """Structure and validate product data."""
        output("Initializing the choice problem ...")
        start_time = time.time()
        if not isinstance(product_formulation, Formulation):
            raise TypeError("product_formulation must be a Formulation instance.")
        self.product_formulation = product_formulation

        # build the matrix of characteristics
        X, X_formulations, _ = product_formulation._build_matrix(product_data)
        self.beta_labels = [str(f) for f in X_formulations]

        # load and validate IDs, counts, and market sizes
        market_ids = extract_matrix(product_data, 'market_ids')
        counts = extract_matrix(product_data, 'counts')
        market_sizes = extract_matrix(product_data, 'market_sizes')
        if market_ids is None:
            raise KeyError("product_data must have a market_ids field.")
        if counts is None:
            raise KeyError("product_data must have a counts field.")
        if market_sizes is None:
            raise KeyError("product_data must have a market_sizes field.")
        for name, matrix in [('market_ids', market_ids), ('counts', counts), ('market_sizes', market_sizes)]:
            if matrix.shape[1] > 1:
                raise ValueError(f"The {name} field of product_data must be one-dimensional.")
        if (counts < 0).any():
            raise ValueError("The counts field of product_data must be nonnegative.")

        # market sizes must be constant within markets and no smaller than total inside counts
        self._groups = Groups(market_ids)
        self._market_sizes = self._groups.mean(market_sizes.astype(options.dtype))
        if (self._groups.expand(self._market_sizes) != market_sizes).any():
            raise ValueError("The market_sizes field of product_data must be constant within each market.")
        if (self._groups.sum(counts.astype(options.dtype)) > self._market_sizes).any():
            raise ValueError("Total counts in each market cannot exceed its market size.")

        self.products = structure_matrices({
            'market_ids': (market_ids, np.object_),
            'counts': (counts, options.dtype),
            'market_sizes': (market_sizes, options.dtype),
            (tuple(X_formulations), 'X'): (X, options.dtype),
        })
        self.unique_market_ids = self._groups.unique
        self.N = self.products.shape[0]
        self.T = self.unique_market_ids.size
        self.K = self.products.X.shape[1]

        warn_collinearity(self.products.X, "X", self.beta_labels)

        output(f"Initialized the choice problem after {format_seconds(time.time() - start_time)}.")
        output("")
        output(self)

    def __str__(self) -> str:
        """Format problem information as a string."""
        dimensions = format_table(["T", "N", "K", "Consumers"], [
            self.T, self.N, self.K, format_number(self._market_sizes.sum()).strip()
        ], title="Dimensions")
        formulations = format_table(
            ["Column Indices:"] + [f" {i} " for i in range(self.K)], ["X"] + self.beta_labels, title="Formulations"
        )
        return "\n\n".join([dimensions, formulations])

    def solve(
            self, beta: Optional[Any] = None, optimization: Optional[Optimization] = None,
            error_behavior: str = 'warn') -> ChoiceResults:
        r"""Estimate :math:`\beta` by maximizing the log-likelihood.

        Standard errors are computed from the inverse of the analytic information matrix,

        .. math:: \mathcal{I}(\beta) = \sum_t M_t\left(\sum_j s_{jt}x_{jt}x_{jt}' - \bar{x}_t\bar{x}_t'\right),
           \quad \bar{x}_t = \sum_j s_{jt}x_{jt},

        which for the logit model equals the negative Hessian of the log-likelihood.

        Parameters
        ----------
        beta : `array-like, optional`
            Starting values for :math:`\beta`. By default, all elements start at zero.
        optimization : `Optimization, optional`
            :class:`Optimization` configuration for how to maximize the log-likelihood. By default,
            ``Optimization('l-bfgs-b', {'gtol': 1e-8})`` is used. The minimized objective is the negative
            log-likelihood divided by the total number of consumers. Routines that do not use analytic gradients will
            usually require more evaluations.
        error_behavior : `str, optional`
            How to handle numerical and convergence errors:

                - ``'warn'`` (default) - Output the errors and return results.

                - ``'raise'`` - Raise an exception.

        Returns
        -------
        `ChoiceResults`
            :class:`ChoiceResults` of the solved problem.

        """
        start_time = time.time()

        # validate the configuration
        if error_behavior not in {'raise', 'warn'}:
            raise ValueError("error_behavior must be 'raise' or 'warn'.")
        if optimization is None:
            optimization = Optimization('l-bfgs-b', {'gtol': 1e-8})
        if not isinstance(optimization, Optimization):
            raise TypeError("optimization must be None or an Optimization instance.")
        if beta is None:
            beta = np.zeros((self.K, 1), options.dtype)
        else:
            beta = np.c_[np.asarray(beta, options.dtype)]
            if beta.shape != (self.K, 1):
                raise ValueError(f"beta must be a {self.K}-vector.")

        # the routine minimizes the negative log-likelihood per consumer
        consumers = self._market_sizes.sum()
        errors: List[Error] = []
        last_objective = np.array(np.inf, options.dtype)
        last_gradient = np.zeros((self.K, 1), options.dtype)

        def wrapper(values: Array, iterations: int, evaluations: int) -> ObjectiveResults:
            """Compute the negative log-likelihood and its gradient, reverting to the last finite values when they
            cannot be computed.
            """
            nonlocal last_objective, last_gradient
            log_likelihood, gradient, errors_e = self.safely_compute_log_likelihood(values)
            objective = np.array(-log_likelihood / consumers, options.dtype)
            gradient = -gradient / consumers
            if not np.isfinite(objective) or not np.isfinite(gradient).all():
                objective = last_objective
                gradient = np.zeros_like(last_gradient)
                errors_e.append(exceptions.ObjectiveReversionError())
            else:
                last_objective = objective
                last_gradient = gradient
            errors.extend(e for e in errors_e if e not in errors)
            if optimization._universal_display:
                output(format_table(
                    ["Iterations", "Evaluations", "Log-Likelihood"],
                    [iterations, evaluations, format_number(-objective * consumers)],
                    include_border=False, include_header=evaluations == 1
                ))
            return objective, gradient if optimization._compute_gradient else None, None

        output("Starting optimization ...")
        output("")
        optimization_start_time = time.time()
        beta, stats = optimization._optimize(beta, None, wrapper)
        optimization_end_time = time.time()
        status = "completed" if stats.converged else "failed"
        output("")
        output(f"Optimization {status} after {format_seconds(optimization_end_time - optimization_start_time)}.")
        if not stats.converged:
            errors.append(exceptions.ThetaConvergenceError())

        # compute the final log-likelihood and the information matrix
        log_likelihood, gradient, final_errors = self.safely_compute_log_likelihood(beta)
        information, information_errors = self.safely_compute_information(beta)
        errors.extend(final_errors + information_errors)
        results = ChoiceResults(
            self, beta, log_likelihood, gradient, information, stats, start_time, optimization_start_time,
            optimization_end_time, list(set(errors))
        )
        exceptions.handle_errors(results._errors, error_behavior)
        output("")
        output(results)
        return results

    def _compute_shares(self, beta: Array) -> Tuple[Array, Array, Array]:
        """Compute inside shares along with log inside and outside shares, re-scaling utilities by their market
        maxima to avoid overflow.
        """
        delta = self.products.X @ beta
        maxima = np.maximum(0, np.maximum.reduceat(delta[self._groups.sort_indices], self._groups.reduce_indices))
        exp_delta = np.exp(delta - self._groups.expand(maxima))
        log_denominators = maxima + np.log(np.exp(-maxima) + self._groups.sum(exp_delta))
        log_shares = delta - self._groups.expand(log_denominators)
        return np.exp(log_shares), log_shares, -log_denominators

    @NumericalErrorHandler(exceptions.LikelihoodNumericalError)
    def safely_compute_log_likelihood(self, beta: Array) -> Tuple[Array, Array, List[Error]]:
        """Compute the log-likelihood and its gradient, handling any numerical errors."""
        errors: List[Error] = []
        shares, log_shares, log_outside_shares = self._compute_shares(beta)
        outside_counts = self._market_sizes - self._groups.sum(self.products.counts)
        log_likelihood = (self.products.counts * log_shares).sum() + (outside_counts * log_outside_shares).sum()
        mean_X = self._groups.sum(shares * self.products.X)
        gradient = self.products.X.T @ self.products.counts - mean_X.T @ self._market_sizes
        return log_likelihood, gradient, errors

    @NumericalErrorHandler(exceptions.LikelihoodNumericalError)
    def safely_compute_information(self, beta: Array) -> Tuple[Array, List[Error]]:
        """Compute the information matrix of the log-likelihood, handling any numerical errors."""
        errors: List[Error] = []
        shares = self._compute_shares(beta)[0]
        X = self.products.X
        mean_X = self._groups.sum(shares * X)
        weights = shares * self._groups.expand(self._market_sizes)
        information = (X * weights).T @ X - (mean_X * self._market_sizes).T @ mean_X
        return information, errors

