"""Data construction."""

from typing import Any, Callable, Mapping, Optional, Union

import numpy as np

from . import options
from .configurations.formulation import Formulation
from .configurations.integration import Integration
from .primitives import extract_ids
from .utilities.basics import Array, Groups, RecArray, get_indices, interact_ids, structure_matrices


def build_id_data(T: int, J: int, F: int) -> RecArray:
    r"""Build a balanced panel of market and firm IDs.

    This function can be used to build the ``market_ids`` and ``firm_ids`` of ``product_data`` for :class:`Simulation`
    initialization.

    Parameters
    ----------
    T : `int`
        Number of markets.
    J : `int`
        Number of products in each market.
    F : `int`
        Number of firms. If ``J`` is divisible by ``F``, firms produce ``J / F`` products in each market. Otherwise,
        firms with smaller IDs will produce excess products.

    Returns
    -------
    `recarray`
        IDs that associate products with markets and firms. Each of the ``T * J`` rows corresponds to a product. Fields:

            - **market_ids** : (`object`) - Market IDs that take on values from ``0`` to ``T - 1``.

            - **firm_ids** : (`object`) - Firm IDs that take on values from ``0`` to ``F - 1``.

    """
    if not isinstance(T, int) or not isinstance(F, int) or T < 1 or F < 1:
        raise ValueError("Both T and F must be positive ints.")
    if not isinstance(J, int) or J < F:
        raise ValueError("J must be an int that is at least F.")
    return structure_matrices({
        'market_ids': (np.repeat(np.arange(T), J).astype(np.int64), np.object_),
        'firm_ids': (np.floor(np.tile(np.arange(J), T) * F / J).astype(np.int64), np.object_)
    })


def build_ownership(
        product_data: Mapping, kappa_specification: Optional[Union[str, Callable[[Any, Any], float]]] = None) -> Array:
    r"""Build ownership matrices, :math:`O`.

    For each market :math:`t`, :math:`O_{jk} = \kappa_{fg}` where :math:`f` produces :math:`j` and :math:`g` produces
    :math:`k`. Ownership matrices pick out which products' profits enter each firm's first-order conditions.

    Parameters
    ----------
    product_data : `structured array-like`
        Each row corresponds to a product. The field ``market_ids`` is required, and ``firm_ids`` is required unless
        ``kappa_specification`` is one of the special cases.
    kappa_specification : `str or callable, optional`
        Specification for each market's cooperation matrix :math:`\kappa`, either a function ``kappa(f, g) -> value``
        of two firm IDs or one of the following special cases:

            - ``'monopoly'`` - Ownership matrices are all ones.

            - ``'single'`` - Single product firm ownership matrices are identity matrices.

        By default, :math:`O_{jk}` is one if the same firm produces products :math:`j` and :math:`k`, and zero
        otherwise.

    Returns
    -------
    `ndarray`
        Stacked :math:`J_t \times J_t` ownership matrices for each market :math:`t`. If a market has fewer products
        than others, extra columns will contain ``numpy.nan``.

    """
    if kappa_specification is not None and not callable(kappa_specification):
        if kappa_specification not in {'monopoly', 'single'}:
            raise ValueError("kappa_specification must be None, callable, 'monopoly', or 'single'.")
    market_ids = extract_ids(product_data, 'market_ids', 'product_data', required=True)
    firm_ids = extract_ids(
        product_data, 'firm_ids', 'product_data', required=kappa_specification not in {'monopoly', 'single'}
    )

    def build_kappa(ids: Array) -> Array:
        """Build the cooperation matrix among the products with the given firm IDs."""
        size = ids.shape[0]
        if kappa_specification == 'monopoly':
            return np.ones((size, size), options.dtype)
        if kappa_specification == 'single':
            return np.eye(size, dtype=options.dtype)
        rows, columns = np.meshgrid(ids.flatten(), ids.flatten(), indexing='ij')
        if kappa_specification is None:
            return (rows == columns).astype(options.dtype)
        return np.vectorize(kappa_specification, [options.dtype])(rows, columns)

    # markets with fewer products are padded with NaNs
    market_indices = get_indices(market_ids)
    ownership = np.full((market_ids.shape[0], max(i.size for i in market_indices.values())), np.nan, options.dtype)
    for indices_t in market_indices.values():
        ids_t = np.zeros((indices_t.size, 1)) if firm_ids is None else firm_ids[indices_t]
        ownership[indices_t, :indices_t.size] = build_kappa(ids_t)
    return ownership


def build_blp_instruments(formulation: Formulation, product_data: Mapping) -> Array:
    r"""Construct "sums of characteristics" excluded BLP instruments.

    For product :math:`j` produced by firm :math:`f` in market :math:`t`, the instruments are

    .. math::

       Z_{jt}^\text{Other} = \sum_{k \in J_{ft} \setminus \{j\}} x_{kt}, \quad
       Z_{jt}^\text{Rival} = \sum_{k \notin J_{ft}} x_{kt}.

    Parameters
    ----------
    formulation : `Formulation`
        :class:`Formulation` configuration for the characteristics :math:`X` that are summed.
    product_data : `structured array-like`
        Each row corresponds to a product. The fields ``market_ids`` and ``firm_ids`` are required, and any other
        fields can be used as variables in ``formulation``.

    Returns
    -------
    `ndarray`
        The instruments :math:`[Z^\text{Other}, Z^\text{Rival}]`.

    """
    market_ids = extract_ids(product_data, 'market_ids', 'product_data', required=True)
    firm_ids = extract_ids(product_data, 'firm_ids', 'product_data', required=True)
    X = build_matrix(formulation, product_data)

    # net out own characteristics from firm totals and firm totals from market totals
    firm_totals = Groups(interact_ids(market_ids, firm_ids))
    market_totals = Groups(market_ids)
    other = firm_totals.expand(firm_totals.sum(X)) - X
    rival = market_totals.expand(market_totals.sum(X)) - X - other
    return np.ascontiguousarray(np.column_stack([other, rival]))


def build_integration(integration: Integration, dimensions: int) -> RecArray:
    r"""Build nodes and weights for integration over agent choice probabilities.

    This function can be used to build custom ``agent_data`` for :class:`Simulation` or :class:`Problem`
    initialization. To build nodes and weights for multiple markets, call it once for each market and add a
    ``market_ids`` field.

    Parameters
    ----------
    integration : `Integration`
        :class:`Integration` configuration for how to build nodes and weights for integration.
    dimensions : `int`
        Number of dimensions over which to integrate, usually the number of random coefficients :math:`K_2`.

    Returns
    -------
    `recarray`
        Nodes and weights for integration over agent utilities. Fields:

            - **weights** : (`numeric`) - Integration weights, :math:`w`.

            - **nodes** : (`numeric`) - Unobserved agent tastes called integration nodes, :math:`\nu`.

    """
    if not isinstance(integration, Integration):
        raise TypeError("integration must be an Integration instance.")
    if not isinstance(dimensions, int) or dimensions < 1:
        raise ValueError("dimensions must be a positive integer.")
    nodes, weights = integration._build(dimensions)
    return structure_matrices({
        'weights': (weights, options.dtype),
        'nodes': (nodes, options.dtype)
    })


def build_matrix(formulation: Formulation, data: Mapping) -> Array:
    r"""Construct a matrix according to a formulation.

    Parameters
    ----------
    formulation : `Formulation`
        :class:`Formulation` configuration for the matrix. Variable names should correspond to fields in ``data``.
    data : `structured array-like`
        Fields can be used as variables in ``formulation``.

    Returns
    -------
    `ndarray`
        The built matrix.

    """
    if not isinstance(formulation, Formulation):
        raise TypeError("formulation must be a Formulation instance.")
    return formulation._build_matrix(data)[0]
