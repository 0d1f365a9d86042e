"""Economy underlying static discrete choice demand models."""

import abc
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np

from .. import options
from ..configurations.formulation import Formulation
from ..configurations.iteration import Iteration
from ..configurations.optimization import Optimization
from ..primitives import Container
from ..utilities.algebra import warn_collinearity
from ..utilities.basics import Array, Bounds, RecArray, StringRepresentation, format_table, get_indices


class Economy(Container, StringRepresentation):
    """Markets of differentiated products shared by estimation problems and simulations."""

    product_formulations: Sequence[Optional[Formulation]]
    unique_market_ids: Array
    unique_firm_ids: Array
    T: int
    N: int
    F: int
    I: int
    K1: int
    K2: int
    K3: int
    MD: int
    _product_market_indices: Dict[Hashable, Array]
    _agent_market_indices: Dict[Hashable, Array]
    _max_J: int

    @abc.abstractmethod
    def __init__(
            self, product_formulations: Sequence[Optional[Formulation]], products: RecArray, agents: RecArray) -> None:
        """Count markets, firms, and characteristics, and index the rows of each market."""
        super().__init__(products, agents)
        self.product_formulations = product_formulations
        self.unique_market_ids = np.unique(products.market_ids.flatten())
        self.unique_firm_ids = np.unique(products.firm_ids.flatten())
        self.T = self.unique_market_ids.size
        self.N = products.shape[0]
        self.F = self.unique_firm_ids.size
        self.K1, self.K2, self.K3, self.MD = (products[k].shape[1] for k in ['X1', 'X2', 'X3', 'ZD'])

        # without random coefficients, agents are only placeholders
        self.I = agents.shape[0] if self.K2 > 0 else 0

        self._product_market_indices = get_indices(products.market_ids)
        self._agent_market_indices = get_indices(agents.market_ids)
        self._max_J = max(i.size for i in self._product_market_indices.values())

    def __str__(self) -> str:
        """Format dimensions and formulations as a string."""
        return f"{self._format_dimensions()}\n\n{self._format_formulations()}"

    def _format_dimensions(self) -> str:
        """Format a table of the nonzero dimensions."""
        dimensions = {k: getattr(self, k) for k in ['T', 'N', 'F', 'I', 'K1', 'K2', 'K3', 'MD']}
        nonzero = {k: v for k, v in dimensions.items() if v > 0}
        return format_table([f" {k} " for k in nonzero], [str(v) for v in nonzero.values()], title="Dimensions")

    def _format_formulations(self) -> str:
        """Format a table with a row of column formulations for each formulated matrix."""
        rows: List[List[str]] = []
        for title, formulations in [
                ("X1: Linear Characteristics", self._X1_formulations),
                ("X2: Nonlinear Characteristics", self._X2_formulations),
                ("X3: Cost Characteristics", self._X3_formulations)]:
            if formulations:
                rows.append([title] + [str(f) for f in formulations])
        columns = max(len(r) for r in rows) - 1
        return format_table(["Column Indices:"] + [f" {i} " for i in range(columns)], *rows, title="Formulations")

    def _detect_collinearity(self) -> None:
        """Warn about collinear columns in each matrix of characteristics and in the demand-side instruments."""
        exogenous = [str(f) for f in self._X1_formulations if 'prices' not in f.names]
        excluded = [f'demand_instruments{i}' for i in range(self.MD - len(exogenous))]
        labels = {
            'X1': [str(f) for f in self._X1_formulations],
            'X2': [str(f) for f in self._X2_formulations],
            'X3': [str(f) for f in self._X3_formulations],
            'ZD': excluded + exogenous,
        }
        for name, matrix_labels in labels.items():
            warn_collinearity(self.products[name], name, matrix_labels)

    @staticmethod
    def _coerce_optional_delta_iteration(iteration: Optional[Iteration]) -> Iteration:
        """Validate the configuration of the contraction over mean utilities, which is SQUAREM by default."""
        if iteration is None:
            return Iteration('squarem', {'atol': 1e-14, 'max_evaluations': 5000})
        if not isinstance(iteration, Iteration):
            raise TypeError("iteration must be None or an Iteration instance.")
        return iteration

    @staticmethod
    def _coerce_optional_prices_iteration(iteration: Optional[Iteration], method: str) -> Iteration:
        """Validate the configuration of sweeps over prices, which stop after 1000 evaluations by default. Best-response
        sweeps are only as precise as each firm's profit maximization, so their default tolerance is looser.
        """
        if iteration is None:
            atol = 1e-8 if method == 'best_response' else 1e-12
            return Iteration('simple', {'atol': atol, 'max_evaluations': 1000})
        if not isinstance(iteration, Iteration):
            raise TypeError("iteration must be None or an Iteration instance.")
        return iteration

    @staticmethod
    def _coerce_optional_prices_optimization(optimization: Optional[Optimization]) -> Optimization:
        if optimization is None:
            return Optimization('l-bfgs-b', {'ftol': 1e-15, 'gtol': 1e-8}, universal_display=False)
        if not isinstance(optimization, Optimization):
            raise TypeError("optimization must be None or an Optimization instance.")
        return optimization

    @staticmethod
    def _coerce_optional_bounds(bounds: Optional[Tuple[Any, Any]], name: str) -> Bounds:
        """Validate scalar (lb, ub) bounds, treating missing ones as infinite."""
        if bounds is None:
            return -np.inf, +np.inf
        if len(bounds) != 2:
            raise ValueError(f"{name} must be a tuple of the form (lb, ub).")
        coerced = []
        for bound, description, default in [(bounds[0], "lower", -np.inf), (bounds[1], "upper", +np.inf)]:
            array = np.asarray(default if bound is None else bound, options.dtype)
            if array.size != 1:
                raise ValueError(f"The {description} bound in {name} must be None or a float.")
            coerced.append(np.where(np.isnan(array), default, array))
        lb, ub = coerced
        if lb > ub:
            raise ValueError(f"The lower bound in {name} cannot be larger than the upper bound.")
        return lb, ub

    def _compute_logit_delta(self) -> Array:
        """Invert observed shares with the simple logit model: log s_jt - log s_0t."""
        shares = self.products.shares
        delta = np.log(shares)
        for indices in self._product_market_indices.values():
            delta[indices] -= np.log1p(-shares[indices].sum())
        return delta
