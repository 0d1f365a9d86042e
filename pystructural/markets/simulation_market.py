"""Market-level simulation of synthetic demand data."""

from typing import List, Optional, Tuple

import numpy as np

from .market import Market
from .. import exceptions
from ..configurations.iteration import Iteration
from ..configurations.optimization import Optimization
from ..utilities.basics import Array, Error, SolverStats, NumericalErrorHandler


class SimulationMarket(Market):
    """A market in a simulation of synthetic demand data."""

    def compute_endogenous(
            self, costs: Array, prices: Array, method: str, iteration: Iteration,
            optimization: Optional[Optimization]) -> Tuple[Array, Array, Array, SolverStats, float, List[Error]]:
        """Compute endogenous prices and shares, along with the associated delta and the largest absolute derivative of
        any firm's profits with respect to its prices.
        """
        errors: List[Error] = []
        prices, stats, price_errors = self.safely_compute_equilibrium_prices(
            costs, prices, method, iteration, optimization
        )
        shares, share_errors = self.safely_compute_shares(prices)
        errors.extend(price_errors + share_errors)
        with np.errstate(all='ignore'):
            delta = self.update_delta_with_variable('prices', prices)
            profit_gradient = self.compute_profit_gradient(costs, prices)
            profit_gradient_norm = np.abs(profit_gradient).max() if profit_gradient.size > 0 else 0.0
        return prices, shares, delta, stats, profit_gradient_norm, errors

    @NumericalErrorHandler(exceptions.EquilibriumPricesNumericalError)
    def safely_compute_equilibrium_prices(
            self, costs: Array, prices: Array, method: str, iteration: Iteration,
            optimization: Optional[Optimization]) -> Tuple[Array, SolverStats, List[Error]]:
        """Compute equilibrium prices with either best-response or zeta-markup iteration, handling any numerical
        errors.
        """
        errors: List[Error] = []
        if method == 'zeta':
            prices, stats = self.compute_equilibrium_prices(costs, iteration, prices)
        else:
            assert method == 'best_response' and optimization is not None
            prices, stats, firm_stats = self.compute_best_response_prices(costs, iteration, optimization, prices)
            if not all(s.converged for s in firm_stats):
                errors.append(exceptions.BestResponseConvergenceError())
        if not stats.converged:
            errors.append(exceptions.EquilibriumPricesConvergenceError())
        return prices, stats, errors

    @NumericalErrorHandler(exceptions.EquilibriumSharesNumericalError)
    def safely_compute_shares(self, prices: Array) -> Tuple[Array, List[Error]]:
        """Compute equilibrium shares associated with prices, handling any numerical errors."""
        errors: List[Error] = []
        shares = self.compute_shares(prices)
        return shares, errors
