"""Structuring of dynamic discrete choice estimation results."""

import time
from typing import List, Optional, Sequence, TYPE_CHECKING

import numpy as np

from ..utilities.algebra import compute_condition_number
from ..utilities.basics import (
    Array, Error, SolverStats, StringRepresentation, format_estimates, format_number, format_seconds, format_table
)
from ..utilities.statistics import compute_likelihood_parameter_covariances


# only import objects that create import cycles when checking types
if TYPE_CHECKING:
    from ..dynamic.estimation import DynamicProblem  # noqa


class DynamicResults(StringRepresentation):
    r"""Results of an estimated dynamic discrete choice model.

    Attributes
    ----------
    problem : `DynamicProblem`
        :class:`DynamicProblem` that created these results.
    method : `str`
        Estimation method: ``'nfxp'``, ``'hotz_miller'``, or ``'npl'``.
    theta : `ndarray`
        Estimated utility parameters, :math:`\hat{\theta}`.
    theta_se : `ndarray`
        Estimated BHHH standard errors for :math:`\hat{\theta}`.
    theta_labels : `list of str`
        Labels for :math:`\theta`.
    parameter_covariances : `ndarray`
        Inverse of the BHHH outer product of per-observation scores.
    log_likelihood : `float`
        Log-likelihood of observed decisions at :math:`\hat{\theta}`. For the CCP methods, this is the
        pseudo-log-likelihood given the CCPs used in the last step.
    gradient : `ndarray`
        Gradient of the log-likelihood at :math:`\hat{\theta}`.
    ccps : `ndarray`
        Conditional choice probabilities implied by :math:`\hat{\theta}`, with one row for each state and one column
        for each decision.
    transition_probabilities : `ndarray`
        First-stage estimates of mileage increment probabilities.
    converged : `bool`
        Whether the optimization routine converged. For the ``'npl'`` method, whether it converged at every policy
        iteration.
    optimization_iterations : `int`
        Number of major iterations completed by the optimization routine.
    objective_evaluations : `int`
        Number of log-likelihood evaluations.
    fp_converged : `ndarray`
        Flags for convergence of the fixed point routines. For the ``'nfxp'`` method, there is one flag for the Bellman
        equation at each objective evaluation. For the ``'npl'`` method, there is one flag for the iteration over CCPs.
    fp_iterations : `ndarray`
        Number of major iterations completed by the fixed point routines.
    contraction_evaluations : `ndarray`
        Number of times the contractions of the fixed point routines were evaluated.
    optimization_time : `float`
        Number of seconds it took the estimation routine to finish.
    total_time : `float`
        Number of seconds it took to estimate the model and compute standard errors.

    """

    problem: 'DynamicProblem'
    method: str
    theta: Array
    theta_se: Array
    theta_labels: List[str]
    parameter_covariances: Array
    log_likelihood: float
    gradient: Array
    ccps: Array
    transition_probabilities: Array
    converged: bool
    optimization_iterations: int
    objective_evaluations: int
    fp_converged: Array
    fp_iterations: Array
    contraction_evaluations: Array
    optimization_time: float
    total_time: float
    _errors: List[Error]

    def __init__(
            self, problem: 'DynamicProblem', method: str, theta: Array, log_likelihood: Array, gradient: Array,
            scores: Array, ccps: Array, transition_probabilities: Array, optimization_stats: SolverStats,
            fp_stats: Sequence[SolverStats], start_time: float, optimization_start_time: float,
            optimization_end_time: float, errors: List[Error]) -> None:
        """Compute BHHH standard errors and structure statistics."""
        self.problem = problem
        self.method = method
        self.theta = theta
        self.theta_labels = problem.theta_labels
        self.log_likelihood = float(log_likelihood)
        self.gradient = gradient
        self.ccps = ccps
        self.transition_probabilities = transition_probabilities
        self.converged = optimization_stats.converged
        self.optimization_iterations = optimization_stats.iterations
        self.objective_evaluations = optimization_stats.evaluations
        self.fp_converged = np.array([s.converged for s in fp_stats], dtype=np.bool_)
        self.fp_iterations = np.array([s.iterations for s in fp_stats], dtype=np.int64)
        self.contraction_evaluations = np.array([s.evaluations for s in fp_stats], dtype=np.int64)
        self.optimization_time = optimization_end_time - optimization_start_time
        self._errors = errors

        # compute standard errors from the outer product of scores
        with np.errstate(all='ignore'):
            self._information = scores.T @ scores
            self.parameter_covariances, covariance_errors = compute_likelihood_parameter_covariances(self._information)
            self.theta_se = np.sqrt(np.c_[self.parameter_covariances.diagonal()])
        self._errors.extend(covariance_errors)
        self.total_time = time.time() - start_time

    def __str__(self) -> str:
        """Format results as a string."""
        return "\n\n".join([self._format_summary(), self._format_estimates()])

    def _format_summary(self) -> str:
        """Format a summary table of estimation results."""
        descriptions = {'nfxp': "NFXP", 'hotz_miller': "Hotz-Miller", 'npl': "NPL"}
        header = [
            ("Method", ""), ("Computation", "Time"), ("Optimizer", "Converged"), ("Optimization", "Iterations"),
            ("Objective", "Evaluations")
        ]
        values = [
            descriptions[self.method],
            format_seconds(self.total_time),
            "Yes" if self.converged else "No",
            self.optimization_iterations,
            self.objective_evaluations,
        ]
        if self.fp_converged.size > 0:
            header.extend([("Fixed Point", "Failures"), ("Fixed Point", "Iterations")])
            values.extend([(~self.fp_converged).sum(), self.fp_iterations.sum()])
        header.extend([("Log-Likelihood", ""), ("Gradient", "Norm"), ("BHHH Matrix", "Condition Number")])
        values.extend([
            format_number(self.log_likelihood),
            format_number(np.abs(self.gradient).max()),
            format_number(compute_condition_number(self._information)),
        ])
        return format_table(header, values, title="Dynamic Estimation Results Summary")

    def _format_estimates(self, truths: Optional[Array] = None) -> str:
        """Format estimates and standard errors, optionally next to true values."""
        title = "Estimates (BHHH SEs in Parentheses"
        title += ", True Values in Brackets)" if truths is not None else ")"
        return format_estimates(title, self.theta_labels, self.theta, self.theta_se, truths)

    def compare(self, truths: Array) -> str:
        """Format estimates and standard errors next to known true values, such as those of a simulated model.

        Parameters
        ----------
        truths : `array-like`
            True utility parameters, such as :attr:`RustModel.theta`.

        Returns
        -------
        `str`
            A formatted table.

        """
        truths = np.asarray(truths).flatten()
        if truths.size != self.theta.size:
            raise ValueError(f"truths must be a {self.theta.size}-vector.")
        return self._format_estimates(truths)
