"""Parameters underlying static discrete choice demand models."""

from typing import Any, List, Optional, Sequence, TYPE_CHECKING, Tuple

import numpy as np

from . import options
from .utilities.basics import Array, Bounds, format_estimates, format_number, format_se, format_table


# only import objects that create import cycles when checking types
if TYPE_CHECKING:
    from .economies.economy import Economy  # noqa
    from .markets.market import Market  # noqa


class SigmaParameter(object):
    """A single element of the Cholesky root of the covariance matrix of random coefficients. It is fixed when its
    bounds are equal.
    """

    location: Tuple[int, int]
    value: Optional[float]

    def __init__(self, location: Sequence[int], bounds: Bounds) -> None:
        """Store the location and any fixed value."""
        self.location = (int(location[0]), int(location[1]))
        lb, ub = bounds[0][self.location], bounds[1][self.location]
        self.value = lb if lb == ub else None

    def get_product_characteristic(self, market: 'Market') -> Array:
        """Get the column of X2 that the random coefficient multiplies."""
        return market.products.X2[:, [self.location[0]]]

    def get_agent_characteristic(self, market: 'Market') -> Array:
        """Get the column of integration nodes that scales the random coefficient."""
        return market.nodes[:, [self.location[1]]]


class Parameters(object):
    """Sigma, beta, and gamma, along with which elements of sigma are unfixed and make up theta. Linear parameters are
    never in theta: they are known when simulating and concentrated out when estimating.
    """

    sigma_labels: List[str]
    beta_labels: List[str]
    gamma_labels: List[str]
    theta_labels: List[str]
    sigma: Array
    beta: Array
    gamma: Array
    sigma_bounds: Bounds
    nonzero_sigma_index: Array
    fixed: List[SigmaParameter]
    unfixed: List[SigmaParameter]
    eliminated: int
    P: int
    any_bounds: bool

    def __init__(
            self, economy: 'Economy', sigma: Optional[Any] = None, beta: Optional[Any] = None,
            gamma: Optional[Any] = None, sigma_bounds: Optional[Tuple[Any, Any]] = None, bounded: bool = False,
            allow_linear_nans: bool = False) -> None:
        """Validate parameters and sort elements of sigma into fixed and unfixed ones. When allow_linear_nans is True,
        missing linear parameters are allowed and counted as eliminated.
        """
        self.sigma_labels = [str(f) for f in economy._X2_formulations]
        self.beta_labels = [str(f) for f in economy._X1_formulations]
        self.gamma_labels = [str(f) for f in economy._X3_formulations]
        self.sigma = coerce_matrix("sigma", "X2 was formulated", sigma, (economy.K2, economy.K2))
        self.beta = coerce_matrix("beta", "X1 was formulated", beta, (economy.K1, 1), allow_linear_nans)
        self.gamma = coerce_matrix("gamma", "X3 was formulated", gamma, (economy.K3, 1), allow_linear_nans)
        self.eliminated = int(np.isnan(self.beta).sum() + np.isnan(self.gamma).sum())

        # sigma is lower triangular, and only its columns with nonzero elements need integration nodes
        self.sigma[np.triu_indices(economy.K2, 1)] = 0
        self.nonzero_sigma_index = np.any(self.sigma != 0, axis=0)
        node_columns = economy.agents.nodes.shape[1]
        if node_columns < self.nonzero_sigma_index.sum():
            raise ValueError(
                f"The number of columns of integration nodes, {node_columns}, is smaller than the number of columns in "
                f"sigma with at least one nonzero parameter, {self.nonzero_sigma_index.sum()}."
            )

        # zeros are always fixed
        self.sigma_bounds = coerce_bounds("sigma", self.sigma, sigma_bounds, bounded)
        self.fixed = []
        self.unfixed = []
        for location in zip(*np.tril_indices_from(self.sigma)):
            parameter = SigmaParameter(location, self.sigma_bounds)
            (self.unfixed if parameter.value is None else self.fixed).append(parameter)
        self.P = len(self.unfixed)

        # by default, diagonal elements are bounded from below by zero
        if bounded and sigma_bounds is None:
            for parameter in self.unfixed:
                row, column = parameter.location
                if row == column:
                    self.sigma_bounds[0][row, column] = min(0, self.sigma[row, column])

        self.any_bounds = np.isfinite(self.compress_bounds()).any()
        self.theta_labels = [
            f'{self.sigma_labels[p.location[0]]} x {self.sigma_labels[p.location[1]]}' for p in self.unfixed
        ]

    def compress(self) -> Array:
        """Collect unfixed elements of sigma into theta."""
        return np.array([self.sigma[p.location] for p in self.unfixed], options.dtype)

    def compress_bounds(self) -> List[Tuple[float, float]]:
        """Collect (lb, ub) bounds on unfixed elements of sigma."""
        return [(self.sigma_bounds[0][p.location], self.sigma_bounds[1][p.location]) for p in self.unfixed]

    def expand(self, theta_like: Array, nullify: bool = False) -> Array:
        """Place a vector like theta into a matrix like sigma. Other elements are their fixed values unless nullify is
        True, in which case they are null.
        """
        sigma_like = np.full_like(self.sigma, np.nan)
        if not nullify:
            sigma_like[np.triu_indices_from(sigma_like, 1)] = 0
            for parameter in self.fixed:
                sigma_like[parameter.location] = parameter.value
        for parameter, value in zip(self.unfixed, theta_like):
            sigma_like[parameter.location] = value
        return sigma_like

    def format(self, title: str) -> str:
        """Format sigma and any known linear parameters as a string."""
        sections = []
        if self.sigma.size > 0:
            sections.append(self.format_sigma(title, self.sigma))
        for name, labels, vector in [('Beta', self.beta_labels, self.beta), ('Gamma', self.gamma_labels, self.gamma)]:
            if vector.size > 0 and not np.isnan(vector).all():
                sections.append(format_estimates(f"{name} {title}", labels, vector))
        return "\n\n".join(sections)

    def format_estimates(self, title: str, sigma: Array, beta: Array, sigma_se: Array, beta_se: Array) -> str:
        """Format estimates of sigma and beta along with their standard errors as a string."""
        sections = []
        if sigma.size > 0:
            sections.append(self.format_sigma(title, sigma, sigma_se))
        if beta.size > 0:
            sections.append(format_estimates(f"Beta {title}", self.beta_labels, beta, beta_se))
        return "\n\n".join(sections)

    def format_sigma(self, title: str, sigma_like: Array, sigma_se: Optional[Array] = None) -> str:
        """Format the lower triangle of a matrix like sigma, with standard errors below unfixed elements."""
        K2 = sigma_like.shape[1]
        unfixed_locations = {p.location for p in self.unfixed}
        data: List[List[str]] = []
        for row, label in enumerate(self.sigma_labels):
            padding = [""] * (K2 - row - 1)
            data.append([label] + [format_number(sigma_like[row, c]) for c in range(row + 1)] + padding)
            if sigma_se is not None:
                se_row = [format_se(sigma_se[row, c]) if (row, c) in unfixed_locations else "" for c in range(row + 1)]
                data.append([""] + se_row + padding)
                if row < K2 - 1:
                    data.append([""] * (K2 + 1))
        return format_table(["Sigma:"] + self.sigma_labels, *data, title=f"Sigma {title}", line_indices={0})


def coerce_matrix(
        name: str, condition_name: str, values: Optional[Any], shape: Tuple[int, int],
        allow_nans: bool = False) -> Array:
    """Validate the shape of a parameter matrix, which is null when it is missing and null values are allowed."""
    if values is None and allow_nans:
        return np.full(shape, np.nan, options.dtype)
    matrix = np.full(shape, np.nan, options.dtype) if values is None else np.c_[np.asarray(values, options.dtype)]
    if (values is not None and matrix.size > 0) != (shape[0] * shape[1] > 0):
        raise ValueError(f"{name} should be specified only when {condition_name}.")
    if matrix.shape != shape:
        raise ValueError(f"{name} must be {shape[0]} by {shape[1]}.")
    if not allow_nans and np.isnan(matrix).any():
        raise ValueError(f"{name} should not have any null values.")
    return matrix


def coerce_bounds(name: str, matrix: Array, bound_values: Optional[Tuple[Any, Any]], bounded: bool) -> Bounds:
    """Validate bounds on a parameter matrix. Null bounds are infinite, unequal bounds are dropped when the routine
    does not support bounds, and zeros are fixed.
    """
    lb = np.full_like(matrix, -np.inf, options.dtype)
    ub = np.full_like(matrix, +np.inf, options.dtype)
    if matrix.size > 0 and bound_values is not None:
        if len(bound_values) != 2:
            raise ValueError(f"{name}_bounds must be a tuple of the form (lb, ub).")
        lb = np.c_[np.asarray(bound_values[0], options.dtype)]
        ub = np.c_[np.asarray(bound_values[1], options.dtype)]
        for bound, description in [(lb, "lower"), (ub, "upper")]:
            if bound.shape != matrix.shape:
                raise ValueError(f"The {description} bound in {name}_bounds does not have the same shape as {name}.")
        lb[np.isnan(lb)] = -np.inf
        ub[np.isnan(ub)] = +np.inf
        with np.errstate(invalid='ignore'):
            if ((matrix < lb) | (matrix > ub)).any():
                raise ValueError(f"{name} must be within its bounds.")
    if not bounded:
        unequal = lb != ub
        lb[unequal] = -np.inf
        ub[unequal] = +np.inf
    lb[matrix == 0] = ub[matrix == 0] = 0
    return lb, ub
