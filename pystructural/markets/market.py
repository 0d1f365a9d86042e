"""Market underlying static discrete choice demand models."""

from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from .. import exceptions, options
from ..configurations.iteration import ContractionResults, Iteration
from ..configurations.optimization import ObjectiveResults, Optimization
from ..economies.economy import Economy
from ..parameters import Parameters
from ..primitives import Container
from ..utilities.algebra import approximately_solve
from ..utilities.basics import Array, Bounds, Error, RecArray, SolverStats, format_number, format_table, output


class Market(Container):
    """Products and agents in a single market, along with utilities at some parameters."""

    t: Any
    ownership_matrix: Optional[Array]
    J: int
    I: int
    K1: int
    K2: int
    K3: int
    nodes: Array
    sigma: Array
    beta: Optional[Array]
    gamma: Optional[Array]
    delta: Optional[Array]
    mu: Array
    parameters: Parameters

    def __init__(
            self, economy: Economy, t: Any, parameters: Parameters, sigma: Array, beta: Optional[Array] = None,
            gamma: Optional[Array] = None, delta: Optional[Array] = None,
            products_override: Optional[RecArray] = None) -> None:
        """Restrict data to the market and compute the agent-specific part of utility."""
        product_indices = economy._product_market_indices[t]
        products = economy.products[product_indices] if products_override is None else products_override
        super().__init__(products, economy.agents[economy._agent_market_indices[t]])
        self.t = t
        self.J = self.products.shape[0]
        self.I = self.agents.shape[0]
        self.K1, self.K2, self.K3 = economy.K1, economy.K2, economy.K3
        self.parameters = parameters
        self.sigma = sigma
        self.beta = beta
        self.gamma = gamma
        self.delta = None if delta is None else delta[product_indices]

        # ownership is padded to the largest market, and is built from firm IDs when it is not given
        self.ownership_matrix = None
        if self.products.ownership.shape[1] > 0:
            self.ownership_matrix = self.products.ownership[:, :self.J]

        # nodes only exist for columns of sigma with nonzero elements
        self.nodes = self.agents.nodes
        if self.K2 > 0 and self.nodes.shape[1] != self.K2:
            self.nodes = np.zeros((self.I, self.K2), options.dtype)
            self.nodes[:, parameters.nonzero_sigma_index] = self.agents.nodes[:, :parameters.nonzero_sigma_index.sum()]
        with np.errstate(all='ignore'):
            self.mu = self.compute_mu()

    def get_ownership_matrix(self) -> Array:
        if self.ownership_matrix is None:
            if self.products.firm_ids.size == 0:
                raise ValueError("Either firm IDs or an ownership matrix must have been specified.")
            firm_ids = self.products.firm_ids
            self.ownership_matrix = (firm_ids == firm_ids.T).astype(options.dtype)
        return self.ownership_matrix

    def compute_random_coefficients(self) -> Array:
        """Compute each agent's deviations from mean tastes, with a column for each agent."""
        return self.sigma @ self.nodes.T

    def compute_mu(self, X2: Optional[Array] = None) -> Array:
        """Compute the agent-specific part of utility, by default at observed characteristics."""
        if self.K2 == 0:
            return np.zeros((self.J, self.I), options.dtype)
        return (self.products.X2 if X2 is None else X2) @ self.compute_random_coefficients()

    def update_delta_with_variable(self, name: str, variable: Array) -> Array:
        """Shift delta by the beta-weighted changes in columns of X1 that involve a changed variable."""
        assert self.beta is not None and self.delta is not None
        delta = self.delta.copy()
        for k, formulation in enumerate(self._X1_formulations):
            if name in formulation.names:
                changed = formulation.evaluate(self.products, {name: variable})
                delta += self.beta[k] * (changed - formulation.evaluate(self.products))
        return delta

    def update_mu_with_variable(self, name: str, variable: Array) -> Array:
        """Recompute mu after re-evaluating columns of X2 that involve a changed variable."""
        changed = [k for k, f in enumerate(self._X2_formulations) if name in f.names]
        if not changed:
            return self.mu
        X2 = self.products.X2.copy()
        for k in changed:
            X2[:, [k]] = self._X2_formulations[k].evaluate(self.products, {name: variable})
        return self.compute_mu(X2)

    def compute_X_derivatives(self, matrix: str, name: str, variable: Optional[Array] = None) -> Array:
        """Differentiate the columns of X1 or X2 with respect to a variable, by default at its observed values."""
        formulations = self._X1_formulations if matrix == 'X1' else self._X2_formulations
        override = None if variable is None else {name: variable}
        derivatives = np.zeros((self.J, len(formulations)), options.dtype)
        for k, formulation in enumerate(formulations):
            if name in formulation.names:
                derivatives[:, [k]] = formulation.evaluate_derivative(name, self.products, override)
        return derivatives

    def compute_utility_derivatives(self, name: str, variable: Optional[Array] = None) -> Array:
        """Differentiate each agent's utilities with respect to a variable, by default at its observed values."""
        assert self.beta is not None
        derivatives = np.tile(self.compute_X_derivatives('X1', name, variable) @ np.nan_to_num(self.beta), self.I)
        if self.K2 > 0:
            derivatives += self.compute_X_derivatives('X2', name, variable) @ self.compute_random_coefficients()
        return derivatives

    def compute_probabilities(self, delta: Optional[Array] = None, mu: Optional[Array] = None) -> Array:
        """Compute logit choice probabilities, by default at the market's delta and mu. Each agent's utilities are
        shifted down by their maximum, which is no smaller than the outside good's utility of zero, so that
        exponentials do not overflow.
        """
        utilities = (self.delta if delta is None else delta) + (self.mu if mu is None else mu)
        shift = np.maximum(utilities.max(axis=0, keepdims=True), 0)
        exp_utilities = np.exp(utilities - shift)
        return exp_utilities / (np.exp(-shift) + exp_utilities.sum(axis=0, keepdims=True))

    def compute_probabilities_at_prices(self, prices: Array) -> Array:
        """Compute choice probabilities after replacing prices."""
        delta = self.update_delta_with_variable('prices', prices)
        mu = self.update_mu_with_variable('prices', prices)
        return self.compute_probabilities(delta, mu)

    def compute_shares(self, prices: Optional[Array] = None) -> Array:
        """Integrate choice probabilities over agents, by default at observed prices."""
        if prices is None:
            return self.compute_probabilities() @ self.agents.weights
        return self.compute_probabilities_at_prices(prices) @ self.agents.weights

    def compute_delta(
            self, initial_delta: Array, iteration: Iteration, shares_bounds: Bounds) -> (
            Tuple[Array, Array, SolverStats, List[Error]]):
        """Solve for the delta that equates computed shares to observed ones. Without random coefficients, the
        solution is the closed-form logit one. Otherwise, shares computed during the contraction are clipped to their
        bounds, and the returned flags mark which were clipped in its final evaluation.
        """
        log_shares = np.log(self.products.shares)
        clipped_shares = np.zeros((self.J, 1), np.bool_)
        if self.K2 == 0:
            return log_shares - np.log1p(-self.products.shares.sum()), clipped_shares, SolverStats(), []

        display = MaxNormDisplay(
            self.t, iteration, "Contraction", "Delta", lambda: clipped_shares.sum(), np.isfinite(shares_bounds).any()
        )

        def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
            """Apply the BLP contraction, along with its Jacobian when the iteration routine needs it."""
            nonlocal clipped_shares
            probabilities = self.compute_probabilities(x)
            shares = probabilities @ self.agents.weights
            clipped_shares = (shares < shares_bounds[0]) | (shares > shares_bounds[1])
            shares = np.clip(shares, shares_bounds[0], shares_bounds[1])
            updated = x + log_shares - np.log(shares)
            display(x, updated, iterations, evaluations)
            jacobian = None
            if iteration._compute_jacobian:
                jacobian = probabilities @ (self.agents.weights * probabilities.T) / shares
            return updated, None, jacobian

        delta, stats = iteration._iterate(initial_delta, contraction)
        display.close()
        return delta, clipped_shares, stats, []

    def decompose_shares_jacobian(self, utility_derivatives: Array, probabilities: Array) -> Tuple[Array, Array]:
        """Decompose the Jacobian of shares with respect to a variable into the diagonal of capital lambda and the
        dense capital gamma, so that the Jacobian is diag(lambda) - gamma.
        """
        weighted = probabilities * utility_derivatives
        capital_lamda_diagonal = (weighted @ self.agents.weights).flatten()
        capital_gamma = probabilities @ (self.agents.weights * weighted.T)
        return capital_lamda_diagonal, capital_gamma

    def compute_shares_by_variable_jacobian(self, utility_derivatives: Array, probabilities: Array) -> Array:
        """Compute the Jacobian of shares (rows) with respect to a variable of each product (columns)."""
        capital_lamda_diagonal, capital_gamma = self.decompose_shares_jacobian(utility_derivatives, probabilities)
        return np.diag(capital_lamda_diagonal) - capital_gamma

    def compute_eta(self, ownership: Optional[Array] = None, probabilities: Optional[Array] = None) -> (
            Tuple[Array, List[Error]]):
        """Solve the multi-product Bertrand first order conditions for markups, by default with the market's
        ownership matrix and choice probabilities.
        """
        ownership = self.get_ownership_matrix() if ownership is None else ownership
        probabilities = self.compute_probabilities() if probabilities is None else probabilities
        jacobian = self.compute_shares_by_variable_jacobian(self.compute_utility_derivatives('prices'), probabilities)
        capital_delta = -ownership * jacobian.T
        eta, replacement = approximately_solve(capital_delta, probabilities @ self.agents.weights)
        errors: List[Error] = []
        if replacement:
            errors.append(exceptions.IntraFirmJacobianInversionError(capital_delta, replacement))
        return eta, errors

    def compute_equilibrium_prices(self, costs: Array, iteration: Iteration, prices: Optional[Array] = None) -> (
            Tuple[Array, SolverStats]):
        """Iterate over the zeta-markup equation p = c + zeta(p), by default starting from observed prices.
        Convergence is judged on differences weighted by the diagonal of capital lambda, which makes them
        proportional to profit gradients.
        """
        ownership = self.get_ownership_matrix()

        # utility derivatives are fixed unless they depend on prices
        formulations = self._X1_formulations + self._X2_formulations
        constant = all('prices' not in {s.name for s in f.differentiate('prices').free_symbols} for f in formulations)
        fixed_derivatives = self.compute_utility_derivatives('prices') if constant else None
        display = MaxNormDisplay(self.t, iteration, "Contraction", "Prices")

        def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
            """Compute zeta at the current prices, bounding the inverse of capital lambda against underflow."""
            probabilities = self.compute_probabilities_at_prices(x)
            derivatives = fixed_derivatives
            if derivatives is None:
                derivatives = self.compute_utility_derivatives('prices', x)
            capital_lamda_diagonal, capital_gamma = self.decompose_shares_jacobian(derivatives, probabilities)
            capital_lamda_inverse = 1 / capital_lamda_diagonal
            capital_lamda_inverse[~np.isfinite(capital_lamda_inverse)] = 1e300
            shares = probabilities @ self.agents.weights
            zeta = capital_lamda_inverse[:, None] * ((ownership * capital_gamma).T @ (x - costs) - shares)
            updated = costs + zeta
            display(x, updated, iterations, evaluations)
            return updated, np.abs(capital_lamda_diagonal)[:, None], None

        prices, stats = iteration._iterate(self.products.prices if prices is None else prices, contraction)
        display.close()
        return prices, stats

    def compute_best_response_prices(
            self, costs: Array, iteration: Iteration, optimization: Optimization, prices: Optional[Array] = None,
            gradient_tolerance: float = 1e-6) -> Tuple[Array, SolverStats, List[SolverStats]]:
        """Iterate over Gauss-Seidel sweeps in which each firm in turn maximizes its profits over its own prices, with
        prices no lower than costs, given the latest prices of its rivals. Along with prices and sweep statistics,
        return the statistics of each firm's maximization in the last sweep.

        A firm's maximization has converged when the largest absolute element of its projected profit gradient at its
        updated prices is no larger than the gradient tolerance. Prices at costs only count gradient elements that
        would raise profits above the bound. The success flag reported by the optimizer is not used, since a routine
        started at an optimum can terminate abnormally without taking a step.
        """
        firm_ids = self.products.firm_ids.flatten()
        firm_indices = [firm_ids == f for f in np.unique(firm_ids)]
        firm_stats: List[SolverStats] = []
        display = MaxNormDisplay(self.t, iteration, "Best Response", "Prices")

        def compute_profits(x: Array, firm_index: Array) -> Tuple[float, Array]:
            """Compute a firm's profits and their gradient with respect to its own prices."""
            probabilities = self.compute_probabilities_at_prices(x)
            shares = probabilities @ self.agents.weights
            jacobian = self.compute_shares_by_variable_jacobian(
                self.compute_utility_derivatives('prices', x), probabilities
            )
            margins = x[firm_index] - costs[firm_index]
            gradient = shares[firm_index] + jacobian[np.ix_(firm_index, firm_index)].T @ margins
            return float((margins * shares[firm_index]).sum()), gradient

        def contraction(x: Array, iterations: int, evaluations: int) -> ContractionResults:
            """Sweep over firms once."""
            firm_stats.clear()
            updated = x.copy()
            for firm_index in firm_indices:
                def objective(values: Array, *_: Any) -> ObjectiveResults:
                    candidate = updated.copy()
                    candidate[firm_index] = values
                    profits, gradient = compute_profits(candidate, firm_index)
                    return -profits, -gradient, None

                firm_costs = costs[firm_index]
                bounds = [(float(c), np.inf) for c in firm_costs.flat]
                updated[firm_index], stats = optimization._optimize(
                    np.maximum(updated[firm_index], firm_costs), bounds, objective
                )
                gradient = compute_profits(updated, firm_index)[1]
                at_costs = updated[firm_index] <= firm_costs
                projected = np.where(at_costs, np.maximum(gradient, 0), gradient)
                stats.converged = bool(np.abs(projected).max(initial=0) <= gradient_tolerance)
                firm_stats.append(stats)

            display(x, updated, iterations, evaluations)
            return updated, None, None

        prices, stats = iteration._iterate(self.products.prices if prices is None else prices, contraction)
        display.close()
        return prices, stats, firm_stats

    def compute_profit_gradient(self, costs: Array, prices: Optional[Array] = None) -> Array:
        """Differentiate the profits of each product's firm with respect to the product's price, by default at
        observed prices.
        """
        prices = self.products.prices if prices is None else prices
        probabilities = self.compute_probabilities_at_prices(prices)
        shares_jacobian = self.compute_shares_by_variable_jacobian(
            self.compute_utility_derivatives('prices', prices), probabilities
        )
        profit_jacobian = np.diagflat(probabilities @ self.agents.weights) + (prices - costs) * shares_jacobian
        return np.c_[(self.get_ownership_matrix() * profit_jacobian).sum(axis=0)]

    def compute_shares_by_xi_jacobian(self, probabilities: Array) -> Array:
        """Differentiate shares with respect to xi, or equivalently delta, holding beta fixed."""
        weights = self.agents.weights
        return np.diagflat(probabilities @ weights) - probabilities @ (weights * probabilities.T)

    def compute_shares_by_theta_jacobian(self, probabilities: Array) -> Array:
        """Differentiate shares with respect to each unfixed element of sigma."""
        jacobian = np.zeros((self.J, self.parameters.P), options.dtype)
        for p, parameter in enumerate(self.parameters.unfixed):
            v = parameter.get_product_characteristic(self) @ parameter.get_agent_characteristic(self).T
            tangent = probabilities * (v - (probabilities * v).sum(axis=0, keepdims=True))
            jacobian[:, [p]] = tangent @ self.agents.weights
        return jacobian

    def compute_xi_by_theta_jacobian(self, probabilities: Array) -> Tuple[Array, List[Error]]:
        """Differentiate xi, or equivalently delta, with respect to theta with the Implicit Function Theorem."""
        shares_by_xi_jacobian = self.compute_shares_by_xi_jacobian(probabilities)
        jacobian, replacement = approximately_solve(
            shares_by_xi_jacobian, -self.compute_shares_by_theta_jacobian(probabilities)
        )
        errors: List[Error] = []
        if replacement:
            errors.append(exceptions.SharesByXiJacobianInversionError(shares_by_xi_jacobian, replacement))
        return jacobian, errors

    def compute_elasticities(self, name: str = 'prices') -> Array:
        """Compute elasticities of shares (rows) with respect to a variable of each product (columns)."""
        probabilities = self.compute_probabilities()
        shares = probabilities @ self.agents.weights
        jacobian = self.compute_shares_by_variable_jacobian(self.compute_utility_derivatives(name), probabilities)
        return jacobian * self.products[name].T / shares


class MaxNormDisplay(object):
    """Rows of a progress table for fixed point iteration in a market. Each row shows the max norm of the latest
    change along with its improvement over the smallest norm so far, and optionally the number of clipped shares.
    """

    def __init__(
            self, t: Any, iteration: Iteration, label: str, quantity: str,
            count_clipped: Optional[Callable[[], int]] = None, show_clipped: bool = False) -> None:
        self.t = t
        self.enabled = iteration._universal_display
        self.label = label
        self.quantity = quantity
        self.count_clipped = count_clipped if show_clipped else None
        self.smallest_max_norm = np.inf
        if self.enabled:
            output("")

    def __call__(self, x0: Array, x: Array, iterations: int, evaluations: int) -> None:
        if not self.enabled:
            return
        columns = [
            (("", "Market"), str(self.t)),
            ((self.label, "Iterations"), str(iterations)),
            ((self.label, "Evaluations"), str(evaluations)),
        ]
        if self.count_clipped is not None:
            columns.append((("Clipped", "Shares"), str(self.count_clipped())))
        max_norm = np.abs(x - x0).max()
        improvement = self.smallest_max_norm - max_norm
        formatted_improvement = format_number(improvement)
        if not np.isfinite(improvement) or improvement <= 0:
            formatted_improvement = " " * len(formatted_improvement)
        if improvement > 0:
            self.smallest_max_norm = max_norm
        columns.extend([
            ((self.quantity, "Max Norm"), format_number(max_norm)),
            (("Max Norm", "Improvement"), formatted_improvement),
        ])

        # the header repeats every 50 evaluations
        include_header = (evaluations - 1) % 50 == 0
        if include_header and evaluations > 1:
            output("")
        header, values = zip(*columns)
        output(format_table(list(header), list(values), include_border=False, include_header=include_header))

    def close(self) -> None:
        """Pad the end of the table."""
        if self.enabled:
            output("")
