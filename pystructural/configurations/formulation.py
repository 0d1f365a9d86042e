"""Formulation of product characteristic matrices."""

import functools
import numbers
import token
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Type, Union

import numpy as np
import patsy
import patsy.desc
import patsy.design_info
import patsy.origin
import sympy as sp
import sympy.parsing.sympy_parser

from .. import options
from ..utilities.basics import Array, Data, StringRepresentation, extract_size


# functions that can appear in formulas, the first of which is patsy's identity function
FUNCTION_NAMES = {'I', 'log', 'exp'}

# SymPy classes used to represent parsed expressions, which are reserved names in formulas
CLASS_NAMES = {'Add', 'Mul', 'Pow', 'Integer', 'Float', 'Symbol'}

# operators that can appear inside of terms
OPERATORS = {'+', '-', '*', '/', '**', '(', ')'}


class Formulation(StringRepresentation):
    r"""Configuration for designing matrices of product characteristics.

    Formulas are R-style strings, which `patsy <https://patsy.readthedocs.io/en/stable/>`_ converts into matrices. The
    usual binary operators design interactions:

        - ``+`` - Union of terms.
        - ``-`` - Difference of terms.
        - ``*`` - The formula ``a * b`` is short for ``a + b + a:b``.
        - ``/`` - The formula ``a / b`` is short for ``a + a:b``.
        - ``:`` - Interactions between terms.
        - ``**`` - Interactions up to an integer degree.

    Each column is also parsed into a `SymPy <https://www.sympy.org/en/index.html>`_ expression, which is evaluated at
    counterfactual prices and symbolically differentiated with respect to prices when computing equilibrium prices,
    markups, and elasticities. For this reason, only a few functions are supported:

        - ``I`` - Encapsulate mathematical operations. See :func:`patsy.builtins.I`.
        - ``log`` - Natural logarithm.
        - ``exp`` - Natural exponential.

    Every variable must be numeric.

    Parameters
    ----------
    formula : `str`
        R-style formula without a left-hand side. An intercept is included unless it is removed with ``0`` or ``-1``.
        Variable names are validated once the formulation is used with data.

    Examples
    --------
    An intercept, prices, and a quadratic in a characteristic ``x``::

        formulation = pystructural.Formulation('1 + prices + x + I(x ** 2)')

    """

    _formula: str
    _terms: List[patsy.desc.Term]
    _expressions: List[sp.Expr]
    _names: Set[str]

    def __init__(self, formula: str) -> None:
        """Parse the formula into patsy terms and SymPy expressions, validating as much as possible without data."""
        if not isinstance(formula, str):
            raise TypeError("formula must be a str.")
        self._formula = formula
        self._terms = parse_terms(formula)
        if not self._terms:
            raise self._error("formula has no terms.")
        self._expressions = [parse_term_expression(t) for t in self._terms]
        self._names = {s.name for e in self._expressions for s in e.free_symbols}
        if len([e for e in self._expressions if not e.free_symbols]) > 1:
            raise self._error("formula should have at most one constant term.")

    def __reduce__(self) -> Tuple[Type['Formulation'], Tuple]:
        """Pickle only the formula."""
        return (self.__class__, (self._formula,))

    def __str__(self) -> str:
        """Format the terms as a string."""
        return ' + '.join('1' if t == patsy.desc.INTERCEPT else t.name() for t in self._terms)

    def _error(self, message: str) -> patsy.PatsyError:
        """Create an error that points to the entire formula."""
        return patsy.PatsyError(message, patsy.origin.Origin(self._formula, 0, len(self._formula)))

    def _build_matrix(self, data: Mapping) -> Tuple[Array, List['ColumnFormulation'], Data]:
        """Design a matrix from a mapping of variable names to arrays. Along with the matrix, return a formulation for
        each of its columns and the flattened arrays of variables that appear in at least one column.
        """
        variables: Data = {}
        for name in sorted(self._names):
            try:
                variables[name] = np.asarray(data[name]).flatten()
            except Exception as exception:
                message = f"Failed to load data for '{name}' because of the above exception."
                raise self._error(message) from exception
            if not np.issubdtype(variables[name].dtype, np.number):
                raise self._error(f"The variable '{name}' must be numeric.")

        # without any variables, a placeholder column carries the number of rows
        if not variables:
            variables = {'': np.zeros(extract_size(data))}

        # a term can expand into more than one column, each of which has the term's expression
        design = design_matrix(self._terms, variables)
        column_formulations: List[ColumnFormulation] = []
        for term, expression in zip(self._terms, self._expressions):
            columns = design.term_slices[term]
            column_formulations.extend(ColumnFormulation(expression) for _ in range(columns.start, columns.stop))

        used_names = {n for f in column_formulations for n in f.names}
        underlying_data = {n: variables[n] for n in used_names}
        return build_matrix(design, variables), column_formulations, underlying_data


class ColumnFormulation(object):
    """Expression behind a single column of a designed matrix, which can be re-evaluated and differentiated."""

    names: Set[str]
    expression: sp.Expr

    def __init__(self, expression: sp.Expr) -> None:
        """Store the expression and the names of its variables."""
        self.expression = expression
        self.names = {s.name for s in expression.free_symbols}

    def __str__(self) -> str:
        return str(self.expression)

    def __repr__(self) -> str:
        return str(self)

    def __hash__(self) -> int:
        return hash(self.expression)

    def __eq__(self, other: Any) -> bool:
        return str(self) == str(other)

    def evaluate(self, data: Mapping, data_override: Optional[Mapping] = None) -> Array:
        """Evaluate the column at data, taking variables from the override mapping when they are there."""
        return evaluate_expression(self.expression, data, data_override)

    def evaluate_derivative(self, name: str, data: Mapping, data_override: Optional[Mapping] = None) -> Array:
        """Evaluate the derivative of the column with respect to a variable."""
        return evaluate_expression(self.differentiate(name), data, data_override)

    def differentiate(self, name: str) -> sp.Expr:
        """Differentiate the column with respect to a variable."""
        return differentiate_expression(self.expression, name)


@functools.lru_cache(maxsize=None)
def differentiate_expression(expression: sp.Expr, name: str) -> sp.Expr:
    """Symbolically differentiate an expression, caching derivatives because they are needed repeatedly in each
    market.
    """
    return expression.diff(sp.Symbol(name))


class EvaluationEnvironment(patsy.eval.EvalEnvironment):
    """Environment in which patsy evaluates factors by parsing them into SymPy expressions and evaluating these at data
    that make up the environment's only namespace.
    """

    flags: int
    _namespaces: List[Data]

    def subset(self, _: Any) -> patsy.eval.EvalEnvironment:
        """Keep this class when patsy subsets the environment."""
        return self.__class__(self._namespaces, self.flags)

    def eval(self, string: str, **_: Any) -> Array:
        """Evaluate a factor, repeating constants so that they have a row for each observation."""
        data = self._namespaces[0]
        evaluated = evaluate_expression(parse_expression(string), data)
        if isinstance(evaluated, (numbers.Number, np.ndarray)) and np.asarray(evaluated).size == 1:
            evaluated = np.full(next(iter(data.values())).shape[0], float(evaluated))
        return evaluated


def parse_terms(formula: str) -> List[patsy.desc.Term]:
    """Parse the right-hand side terms of a formula, which cannot have a left-hand side."""
    description = patsy.highlevel.ModelDesc.from_formula(formula)
    if description.lhs_termlist:
        end = formula.index('~') + 1 if '~' in formula else len(formula)
        raise patsy.PatsyError("Formulas should not have left-hand sides.", patsy.origin.Origin(formula, 0, end))
    return description.rhs_termlist


def design_matrix(terms: Sequence[patsy.desc.Term], data: Mapping) -> patsy.design_info.DesignInfo:
    """Design a patsy matrix with factors that are evaluated in a SymPy environment."""
    return patsy.build.design_matrix_builders([terms], lambda: iter([data]), EvaluationEnvironment([data]))[0]


def build_matrix(design: patsy.design_info.DesignInfo, data: Mapping) -> Array:
    """Build a designed matrix, raising an exception for any null values."""
    size = next(iter(data.values())).shape[0]
    if not design.factor_infos:
        return np.ones((size, 1))
    matrix = patsy.build.build_design_matrices([design], data, NA_action='raise')[0].base
    if matrix.shape[0] != size:
        matrix = np.repeat(matrix[[0]], size, axis=0)
    return matrix


def parse_term_expression(term: patsy.desc.Term) -> sp.Expr:
    """Multiply the expressions of a term's factors."""
    expression = sp.Integer(1)
    for factor in term.factors:
        try:
            expression *= parse_expression(factor.name())
        except Exception as exception:
            message = "Failed to parse a term because of the above exception."
            raise patsy.PatsyError(message, factor.origin) from exception
    return expression


def transform_tokens(tokens: List[Tuple[int, str]], *_: Any) -> List[Tuple[int, str]]:
    """Validate the tokens of a SymPy expression, replacing each variable name with a symbol constructor."""
    transformed: List[Tuple[int, str]] = []
    previous_variable = None
    for code, value in tokens:
        if code not in {token.NAME, token.OP, token.NUMBER, token.NEWLINE, token.ENDMARKER}:
            raise ValueError(f"The token '{value}' is invalid.")
        if code == token.OP:
            if value not in OPERATORS:
                raise ValueError(f"The operation '{value}' is invalid.")
            if value == '(' and previous_variable is not None:
                raise ValueError(f"The function '{previous_variable}' is invalid.")
        if code != token.NAME or value in FUNCTION_NAMES:
            transformed.append((code, value))
            previous_variable = None
        elif value in CLASS_NAMES | {'Intercept'}:
            raise ValueError(f"The name '{value}' is invalid.")
        else:
            transformed.extend([(token.NAME, 'Symbol'), (token.OP, '('), (token.NAME, repr(value)), (token.OP, ')')])
            previous_variable = value
    return transformed


def parse_expression(string: str) -> sp.Expr:
    """Parse a SymPy expression from a string, treating patsy's function I as the identity."""
    identity = sp.Function('I')
    namespace = {'I': identity, **{n: getattr(sp, n) for n in (FUNCTION_NAMES - {'I'}) | CLASS_NAMES}}
    try:
        expression = sympy.parsing.sympy_parser.parse_expr(string, namespace, [transform_tokens], evaluate=False)
        str(expression)
    except (TypeError, ValueError) as exception:
        raise ValueError(f"The expression '{string}' is malformed because of the above exception.") from exception
    return expression.replace(identity, sp.Id)


def evaluate_expression(
        expression: Union[sp.Expr, sp.Symbol], data: Mapping, data_override: Optional[Mapping] = None) -> Array:
    """Evaluate a SymPy expression at data that map variable names to arrays."""
    def get(symbol: sp.Symbol) -> Any:
        if data_override is not None and symbol.name in data_override:
            return data_override[symbol.name]
        return data[symbol.name]

    if expression.is_number:
        return np.asarray(float(expression), options.dtype)
    if expression.is_symbol:
        return get(expression)
    symbols = list(expression.free_symbols)
    return sp.lambdify(symbols, expression, 'numpy')(*map(get, symbols))
