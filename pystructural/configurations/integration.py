"""Construction of nodes and weights for integrating over random coefficients."""

import functools
import itertools
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
import numpy.polynomial.hermite_e
import scipy.stats

from ..utilities.basics import Array, Options, StringRepresentation, format_options


# primes that serve as the bases of Halton sequences, one for each dimension
HALTON_PRIMES = [2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41, 43, 47, 53, 59, 61, 67, 71, 73, 79, 83, 89, 97]


class Integration(StringRepresentation):
    r"""Configuration for building integration nodes and weights.

    Nodes are draws of the standard normal taste shocks :math:`\nu`, which are scaled by :math:`\Sigma` in
    agent-specific utilities. In each market, weights sum to one.

    Parameters
    ----------
    specification : `str`
        How to build nodes and weights:

            - ``'monte_carlo'`` - Pseudo-random draws from the standard multivariate normal distribution with equal
              weights.

            - ``'halton'`` - Halton sequences with a different prime base in each dimension, transformed into normal
              draws with equal weights. By default, the first ``1000`` values of each sequence are discarded and
              digits are scrambled with random permutations.

            - ``'lhs'`` - Latin Hypercube Sampling (LHS) with equal weights.

            - ``'mlhs'`` - Modified Latin Hypercube Sampling (MLHS), which shifts every stratum by the same uniform
              draw, with equal weights.

            - ``'product'`` - The Gauss-Hermite product rule.

    size : `int`
        The number of draws in each market, or for ``'product'``, the number of nodes in each dimension.
    specification_options : `dict, optional`
        Options for random specifications:

            - **seed** : (`int`) - Seed for the :class:`numpy.random.RandomState` that is created before building
              nodes. By default, no seed is set.

        Additional options for ``'halton'``:

            - **discard** : (`int`) - Number of values to skip at the start of each sequence, which is by default
              ``1000``. Markets continue where the previous market's sequence left off.

            - **scramble** : (`bool`) - Whether to scramble digits, which is the default.

        The ``'product'`` rule does not have any options.

    Examples
    --------
    Build ``200`` scrambled Halton draws in each market::

        integration = pystructural.Integration('halton', 200, {'seed': 0})

    """

    _size: int
    _specification: str
    _description: str
    _builder: Callable[..., Tuple[Array, Array]]
    _specification_options: Options

    def __init__(self, specification: str, size: int, specification_options: Optional[Options] = None) -> None:
        """Validate the specification and its options."""
        descriptions = {
            'monte_carlo': "with Monte Carlo simulation",
            'halton': "with Halton sequences",
            'lhs': "with Latin Hypercube Sampling (LHS)",
            'mlhs': "with Modified Latin Hypercube Sampling (MLHS)",
            'product': f"according to the level-{size} Gauss-Hermite product rule",
        }
        if specification not in descriptions:
            raise ValueError(f"specification must be one of {list(descriptions)}.")
        if not isinstance(size, int) or size < 1:
            raise ValueError("size must be a positive integer.")
        if specification_options is not None and not isinstance(specification_options, dict):
            raise ValueError("specification_options must be None or a dict.")

        self._size = size
        self._specification = specification
        self._description = descriptions[specification]
        defaults = {'discard': 1000, 'scramble': True} if specification == 'halton' else {}
        self._specification_options = {**defaults, **(specification_options or {})}

        # validate options
        if specification == 'product':
            if self._specification_options:
                raise ValueError("The product specification does not support any options.")
        elif not isinstance(self._specification_options.get('seed', 0), int):
            raise ValueError("The specification option seed must be an integer.")
        if specification == 'halton':
            discard = self._specification_options['discard']
            if not isinstance(discard, int) or discard < 0:
                raise ValueError("The specification option discard must be a nonnegative integer.")

        # every builder is called with the same arguments
        self._builder = {
            'monte_carlo': monte_carlo,
            'halton': functools.partial(halton, scramble=self._specification_options.get('scramble')),
            'lhs': lhs,
            'mlhs': functools.partial(lhs, modified=True),
            'product': product_rule_builder,
        }[specification]

    def __str__(self) -> str:
        """Format the configuration as a string."""
        options_string = format_options(self._specification_options)
        return f"Configured to construct nodes and weights {self._description} with options {options_string}."

    def _build_many(self, dimensions: int, ids: Iterable) -> Tuple[Array, Array, Array]:
        """Build stacked IDs, nodes, and weights. Random draws continue from one ID to the next, so they differ across
        IDs.
        """
        state = self._create_state()
        offset = self._specification_options.get('discard', 0)
        ids_list: List[Array] = []
        nodes_list: List[Array] = []
        weights_list: List[Array] = []
        for i in ids:
            nodes, weights = self._builder(dimensions, self._size, state, offset)
            offset += weights.size
            ids_list.append(np.repeat(i, weights.size))
            nodes_list.append(nodes)
            weights_list.append(weights)
        return np.concatenate(ids_list), np.concatenate(nodes_list), np.concatenate(weights_list)

    def _build(self, dimensions: int) -> Tuple[Array, Array]:
        """Build a single set of nodes and weights."""
        offset = self._specification_options.get('discard', 0)
        return self._builder(dimensions, self._size, self._create_state(), offset)

    def _create_state(self) -> Optional[np.random.RandomState]:
        """Create a seeded random number generator for specifications that use one."""
        if self._specification == 'product':
            return None
        return np.random.RandomState(self._specification_options.get('seed'))


def monte_carlo(dimensions: int, size: int, state: np.random.RandomState, *_: int) -> Tuple[Array, Array]:
    """Draw from the standard multivariate normal distribution."""
    return state.normal(size=(size, dimensions)), np.full(size, 1 / size)


def halton(
        dimensions: int, size: int, state: np.random.RandomState, start: int, scramble: bool) -> Tuple[Array, Array]:
    """Transform Halton sequences that begin at a starting index into normal draws. Each dimension has its own prime
    base, and scrambling applies a random permutation to the digits at each position.
    """
    if dimensions > len(HALTON_PRIMES):
        raise ValueError(f"Halton sequences are only available for {len(HALTON_PRIMES)} dimensions here.")
    sequences = np.zeros((size, dimensions))
    for dimension, base in enumerate(HALTON_PRIMES[:dimensions]):
        indices = np.arange(start, start + size)
        factor = 1 / base
        while 1 - factor < 1:
            indices, digits = np.divmod(indices, base)
            if scramble:
                digits = state.permutation(base)[digits]
            sequences[:, dimension] += factor * digits
            factor /= base
    return scipy.stats.norm.ppf(sequences), np.full(size, 1 / size)


def lhs(
        dimensions: int, size: int, state: np.random.RandomState, *_: int, modified: bool = False) -> (
        Tuple[Array, Array]):
    """Transform a Latin Hypercube sample into normal draws. The modified version shifts every stratum of a dimension
    by the same uniform draw.
    """
    samples = np.zeros((size, dimensions))
    for dimension in range(dimensions):
        shifts = state.uniform(size=1 if modified else size)
        samples[:, dimension] = state.permutation(np.arange(size) + shifts) / size
    return scipy.stats.norm.ppf(samples), np.full(size, 1 / size)


@functools.lru_cache()
def product_rule(dimensions: int, level: int) -> Tuple[Array, Array]:
    """Build nodes and weights of the Gauss-Hermite product rule for the standard normal density."""
    base_nodes, base_weights = numpy.polynomial.hermite_e.hermegauss(level)
    base_weights = base_weights / base_weights.sum()
    nodes = np.array(list(itertools.product(base_nodes, repeat=dimensions)))
    weights = functools.reduce(np.kron, [base_weights] * dimensions)
    return nodes, weights


def product_rule_builder(dimensions: int, level: int, *_: object) -> Tuple[Array, Array]:
    """Build the product rule with the same arguments as random specifications."""
    return product_rule(dimensions, level)
