"""Primitive data structures for static discrete choice demand models."""

import abc
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from . import options
from .configurations.formulation import ColumnFormulation, Formulation
from .configurations.integration import Integration
from .utilities.basics import Array, Data, Groups, RecArray, extract_matrix, structure_matrices, warn


def extract_ids(data: Mapping, key: str, data_name: str, required: bool = False) -> Optional[Array]:
    """Extract a column of IDs, which must be one-dimensional."""
    ids = extract_matrix(data, key)
    if ids is None:
        if required:
            raise KeyError(f"{data_name} must have a {key} field.")
        return None
    if ids.shape[1] > 1:
        raise ValueError(f"The {key} field of {data_name} must be one-dimensional.")
    return ids


def build_formulated_matrix(
        formulation: Optional[Formulation], product_data: Mapping, name: str, reserved: Set[str]) -> (
        Tuple[Optional[Array], List[ColumnFormulation], Data]):
    """Build a matrix of product characteristics along with the formulations of its columns and its underlying data,
    making sure that none of the reserved variables are used.
    """
    if formulation is None:
        return None, [], {}
    matrix, column_formulations, underlying_data = formulation._build_matrix(product_data)
    used = sorted(reserved & set(underlying_data))
    if used:
        raise NameError(f"The formulation for {name} cannot include {' or '.join(used)}.")
    return matrix, column_formulations, underlying_data


class Products(object):
    r"""Product data structured as a record array.

    Along with the fields below, there is a field for each variable that underlies :math:`X_1`, :math:`X_2`, or
    :math:`X_3`, including prices.

    Attributes
    ----------
    market_ids : `ndarray`
        IDs that associate products with markets.
    firm_ids : `ndarray`
        IDs that associate products with firms.
    clustering_ids : `ndarray`
        IDs used to compute clustered standard errors.
    ownership : `ndarray`
        Stacked :math:`J_t \times J_t` ownership matrices, :math:`O`, for each market :math:`t`.
    shares : `ndarray`
        Market shares, :math:`s`.
    ZD : `ndarray`
        Demand-side instruments, :math:`Z_D`: any excluded instruments followed by the columns of :math:`X_1` that
        do not involve prices.
    X1 : `ndarray`
        Linear product characteristics, :math:`X_1`.
    X2 : `ndarray`
        Nonlinear product characteristics, :math:`X_2`.
    X3 : `ndarray`
        Marginal cost characteristics, :math:`X_3`.

    """

    market_ids: Array
    firm_ids: Array
    clustering_ids: Array
    ownership: Array
    shares: Array
    prices: Array
    ZD: Array
    X1: Array
    X2: Array
    X3: Array

    def __new__(
            cls, product_formulations: Sequence[Optional[Formulation]], product_data: Mapping,
            instruments: bool = True) -> RecArray:
        """Structure product data."""
        if len(product_formulations) > 3:
            raise ValueError("product_formulations must have at most three formulations.")
        X1_formulation, X2_formulation, X3_formulation = list(product_formulations) + [None] * (
            3 - len(product_formulations)
        )
        if not all(f is None or isinstance(f, Formulation) for f in [X1_formulation, X2_formulation, X3_formulation]):
            raise TypeError("Each formulation in product_formulations must be a Formulation instance or None.")
        if X1_formulation is None:
            raise ValueError("The formulation for X1 must be specified.")

        # build the matrices of characteristics, only one of which is allowed to be free of prices
        X1, X1_formulations, X1_data = build_formulated_matrix(X1_formulation, product_data, 'X1', {'shares'})
        X2, X2_formulations, X2_data = build_formulated_matrix(X2_formulation, product_data, 'X2', {'shares'})
        X3, X3_formulations, X3_data = build_formulated_matrix(
            X3_formulation, product_data, 'X3', {'prices', 'shares'}
        )
        if 'prices' not in X1_data and 'prices' not in X2_data:
            raise NameError("prices must be included in at least one of formulations for X1 or X2.")

        # exogenous columns of X1 instrument for themselves
        ZD = None
        if instruments:
            exogenous = [i for i, f in enumerate(X1_formulations) if 'prices' not in f.names]
            excluded = extract_matrix(product_data, 'demand_instruments')
            ZD = np.c_[excluded if excluded is not None else np.zeros((X1.shape[0], 0)), X1[:, exogenous]]
            if ZD.shape[1] == 0:
                ZD = None

        # load IDs
        market_ids = extract_ids(product_data, 'market_ids', 'product_data', required=True)
        firm_ids = extract_ids(product_data, 'firm_ids', 'product_data', required=X3 is not None)
        clustering_ids = extract_ids(product_data, 'clustering_ids', 'product_data')
        if clustering_ids is not None and np.unique(clustering_ids).size == 1:
            raise ValueError("The clustering_ids field of product_data must have at least two distinct IDs.")

        # shares must be inside probabilities that sum to less than one in each market
        market_groups = Groups(market_ids)
        shares = extract_matrix(product_data, 'shares')
        if shares is None:
            raise KeyError("product_data must have a shares field.")
        if shares.shape[1] > 1:
            raise ValueError("The shares field of product_data must be one-dimensional.")
        if (shares <= 0).any() or (shares >= 1).any():
            raise ValueError("The shares field of product_data must consist of values between zero and one, exclusive.")
        outside_missing = market_groups.sum(shares).flatten() >= 1
        if outside_missing.any():
            bad_market_ids = market_groups.unique[outside_missing]
            raise ValueError(f"Shares in these markets do not sum to less than 1: {bad_market_ids}.")

        # ownership matrices are padded to the size of the largest market
        ownership = None if firm_ids is None else extract_matrix(product_data, 'ownership')
        if ownership is not None and ownership.shape[1] != market_groups.counts.max():
            raise ValueError(
                f"The ownership field of product_data must have {market_groups.counts.max()} columns, which is the "
                f"number of products in the market with the most products."
            )

        # characteristic matrices are titled with the formulations of their columns
        product_mapping: Dict[Union[str, tuple], Tuple[Optional[Array], Any]] = {
            'market_ids': (market_ids, np.object_),
            'firm_ids': (firm_ids, np.object_),
            'clustering_ids': (clustering_ids, np.object_),
            'ownership': (ownership, options.dtype),
            'shares': (shares, options.dtype),
            'ZD': (ZD, options.dtype),
            (tuple(X1_formulations), 'X1'): (X1, options.dtype),
            (tuple(X2_formulations), 'X2'): (X2, options.dtype),
            (tuple(X3_formulations), 'X3'): (X3, options.dtype)
        }
        field_names = {k if isinstance(k, str) else k[1] for k in product_mapping}
        underlying_data = {**X1_data, **X2_data, **X3_data}
        reserved = sorted(field_names & set(underlying_data))
        if reserved:
            raise NameError(f"These reserved names in product_formulations are invalid: {reserved}.")
        product_mapping.update({k: (v, options.dtype) for k, v in underlying_data.items()})
        return structure_matrices(product_mapping)


class Agents(object):
    r"""Agent data structured as a record array.

    Attributes
    ----------
    market_ids : `ndarray`
        IDs that associate agents with markets.
    weights : `ndarray`
        Integration weights, :math:`w`.
    nodes : `ndarray`
        Unobserved agent tastes called integration nodes, :math:`\nu`.

    """

    market_ids: Array
    weights: Array
    nodes: Array

    def __new__(
            cls, products: RecArray, agent_data: Optional[Mapping] = None,
            integration: Optional[Integration] = None) -> RecArray:
        """Structure agent data, which are trivial when there are no random coefficients."""
        K2 = products.X2.shape[1]
        product_market_ids = np.unique(products.market_ids)
        nodes = None
        if K2 == 0:
            if agent_data is not None or integration is not None:
                raise ValueError("Since X2 is not formulated, neither agent_data nor integration should be specified.")
            market_ids = product_market_ids
            weights = np.ones_like(market_ids, options.dtype)
        elif integration is not None:
            if not isinstance(integration, Integration):
                raise TypeError("integration must be None or an Integration instance.")
            if agent_data is not None:
                raise ValueError("Only one of agent_data and integration can be specified.")
            market_ids, nodes, weights = integration._build_many(K2, product_market_ids)
        elif agent_data is None:
            raise ValueError("Since X2 is formulated, either agent_data or integration must be specified.")
        else:
            market_ids = extract_ids(agent_data, 'market_ids', 'agent_data', required=True)
            if set(product_market_ids) != set(np.unique(market_ids)):
                raise ValueError("The market_ids field of agent_data must have the same IDs as product data.")
            nodes = extract_matrix(agent_data, 'nodes')
            weights = extract_matrix(agent_data, 'weights')
            if nodes is None or weights is None:
                raise KeyError("agent_data must have nodes and weights fields.")
            if weights.shape[1] != 1:
                raise ValueError("The weights field of agent_data must be one-dimensional.")
            if nodes.shape[1] < K2:
                raise ValueError(f"The nodes field of agent_data must have at least {K2} columns.")
            nodes = nodes[:, :K2]

        # weights that do not sum to one suggest a data problem
        market_groups = Groups(market_ids)
        bad = np.abs(1 - market_groups.sum(weights)).flatten() > options.weights_tol
        if bad.any():
            bad_markets = "all markets" if bad.all() else market_groups.unique[bad]
            warn(
                f"Integration weights in the following markets sum to a value that differs from 1 by more than "
                f"options.weights_tol: {bad_markets}. This is a sign that there is a data problem."
            )

        return structure_matrices({
            'market_ids': (market_ids, np.object_),
            'weights': (weights, options.dtype),
            'nodes': (nodes, options.dtype)
        })


class Container(abc.ABC):
    """Structured product and agent data along with the formulations of each characteristic matrix's columns."""

    products: RecArray
    agents: RecArray
    _X1_formulations: Tuple[ColumnFormulation, ...]
    _X2_formulations: Tuple[ColumnFormulation, ...]
    _X3_formulations: Tuple[ColumnFormulation, ...]

    @abc.abstractmethod
    def __init__(self, products: RecArray, agents: RecArray) -> None:
        """Store data, recovering column formulations from the titles of the characteristic fields."""
        self.products = products
        self.agents = agents
        self._X1_formulations, self._X2_formulations, self._X3_formulations = (
            products.dtype.fields[k][2] for k in ['X1', 'X2', 'X3']
        )
