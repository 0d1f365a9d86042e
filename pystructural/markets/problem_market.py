"""Market-level demand estimation functionality."""

from typing import List, Tuple

import numpy as np

from .market import Market
from .. import exceptions, options
from ..configurations.iteration import Iteration
from ..utilities.basics import Array, Bounds, Error, SolverStats, NumericalErrorHandler


class ProblemMarket(Market):
    """A market in a demand estimation problem, which inverts observed shares into mean utilities."""

    def solve(
            self, delta: Array, last_delta: Array, iteration: Iteration, shares_bounds: Bounds,
            compute_jacobian: bool) -> Tuple[Array, Array, Array, SolverStats, List[Error]]:
        """Run the contraction that matches observed shares and optionally differentiate xi with respect to theta,
        holding beta fixed. Non-finite elements of delta fall back to their last values before differentiation.
        """
        delta, clipped_shares, stats, errors = self.safely_compute_delta(delta, iteration, shares_bounds)
        xi_jacobian = np.full((self.J, self.parameters.P), np.nan, options.dtype)
        if compute_jacobian and self.parameters.P > 0:
            fallback_delta = np.where(np.isfinite(delta), delta, last_delta)
            xi_jacobian, jacobian_errors = self.safely_compute_xi_by_theta_jacobian(fallback_delta)
            errors = errors + jacobian_errors
        return delta, xi_jacobian, clipped_shares, stats, errors

    @NumericalErrorHandler(exceptions.DeltaNumericalError)
    def safely_compute_delta(
            self, initial_delta: Array, iteration: Iteration,
            shares_bounds: Bounds) -> Tuple[Array, Array, SolverStats, List[Error]]:
        """Invert shares, recording a failure to converge."""
        delta, clipped_shares, stats, errors = self.compute_delta(initial_delta, iteration, shares_bounds)
        if not stats.converged:
            errors.append(exceptions.DeltaConvergenceError())
        return delta, clipped_shares, stats, errors

    @NumericalErrorHandler(exceptions.XiByThetaJacobianNumericalError)
    def safely_compute_xi_by_theta_jacobian(self, delta: Array) -> Tuple[Array, List[Error]]:
        return self.compute_xi_by_theta_jacobian(self.compute_probabilities(delta))
