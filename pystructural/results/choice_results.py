"""Structuring of logit maximum likelihood results."""

import time
from typing import List, TYPE_CHECKING

import numpy as np

from ..utilities.algebra import compute_condition_number
from ..utilities.basics import (
    Array, Error, SolverStats, StringRepresentation, format_estimates, format_number, format_seconds, format_table
)
from ..utilities.statistics import compute_likelihood_parameter_covariances


# only import objects that create import cycles when checking types
if TYPE_CHECKING:
    from ..economies.choice import ChoiceProblem  # noqa


class ChoiceResults(StringRepresentation):
    r"""Results of a logit model estimated by maximum likelihood.

    Attributes
    ----------
    problem : `ChoiceProblem`
        :class:`ChoiceProblem` that created these results.
    beta : `ndarray`
        Estimated parameters, :math:`\hat{\beta}`.
    beta_se : `ndarray`
        Estimated standard errors for :math:`\hat{\beta}`.
    beta_labels : `list of str`
        Variable labels for :math:`\beta`.
    log_likelihood : `float`
        Log-likelihood at :math:`\hat{\beta}`.
    gradient : `ndarray`
        Gradient of the log-likelihood at :math:`\hat{\beta}`.
    gradient_norm : `float`
        Infinity norm of :attr:`ChoiceResults.gradient`.
    information : `ndarray`
        Information matrix, which for the logit model is the negative Hessian of the log-likelihood.
    parameter_covariances : `ndarray`
        Estimated covariance matrix of :math:`\hat{\beta}`, which is the inverse of the information matrix.
    converged : `bool`
        Whether the optimization routine converged.
    optimization_iterations : `int`
        Number of major iterations completed by the optimization routine.
    objective_evaluations : `int`
        Number of log-likelihood evaluations.
    optimization_time : `float`
        Number of seconds it took the optimization routine to finish.
    total_time : `float`
        Number of seconds it took to estimate the model and compute standard errors.

    """

    problem: 'ChoiceProblem'
    beta: Array
    beta_se: Array
    beta_labels: List[str]
    log_likelihood: float
    gradient: Array
    gradient_norm: float
    information: Array
    parameter_covariances: Array
    converged: bool
    optimization_iterations: int
    objective_evaluations: int
    optimization_time: float
    total_time: float
    _errors: List[Error]

    def __init__(
            self, problem: 'ChoiceProblem', beta: Array, log_likelihood: Array, gradient: Array, information: Array,
            stats: SolverStats, start_time: float, optimization_start_time: float, optimization_end_time: float,
            errors: List[Error]) -> None:
        """Invert the information matrix to compute standard errors."""
        self.problem = problem
        self.beta = beta
        self.beta_labels = problem.beta_labels
        self.log_likelihood = float(log_likelihood)
        self.gradient = gradient
        self.gradient_norm = float(np.abs(gradient).max()) if gradient.size > 0 else np.nan
        self.information = information
        self.converged = stats.converged
        self.optimization_iterations = stats.iterations
        self.objective_evaluations = stats.evaluations
        self.optimization_time = optimization_end_time - optimization_start_time
        self._errors = errors
        with np.errstate(all='ignore'):
            self.parameter_covariances, covariance_errors = compute_likelihood_parameter_covariances(information)
            self.beta_se = np.sqrt(np.c_[self.parameter_covariances.diagonal()])
        self._errors.extend(covariance_errors)
        self.total_time = time.time() - start_time

    def __str__(self) -> str:
        """Format results as a string."""
        header = [
            ("Computation", "Time"), ("Optimizer", "Converged"), ("Optimization", "Iterations"),
            ("Objective", "Evaluations"), ("Log-Likelihood", ""), ("Gradient", "Norm"),
            ("Information Matrix", "Condition Number")
        ]
        values = [
            format_seconds(self.total_time),
            "Yes" if self.converged else "No",
            self.optimization_iterations,
            self.objective_evaluations,
            format_number(self.log_likelihood),
            format_number(self.gradient_norm),
            format_number(compute_condition_number(self.information)),
        ]
        return "\n\n".join([
            format_table(header, values, title="Maximum Likelihood Results Summary"),
            format_estimates("Estimates (SEs in Parentheses)", self.beta_labels, self.beta, self.beta_se),
        ])
