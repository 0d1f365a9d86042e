"""Tests of formulation of data matrices."""

import pickle
import traceback
from typing import Any, Callable, Iterable, Mapping, Sequence, Type

import numpy as np
import patsy
import pytest

from pystructural import Formulation, build_matrix
from pystructural.utilities.basics import Array, Data


@pytest.mark.usefixtures('formula_data')
@pytest.mark.parametrize(['formulas', 'build_columns', 'build_derivatives'], [
    pytest.param(
        ['', '1', '0 + I(1)', '-1 + I(1)', 'I(1) - 1'],
        lambda d: [d['1']],
        lambda d: [d['0']],
        id="intercept"
    ),
    pytest.param(
        ['0 + x', 'I(x) - 1'],
        lambda d: [d['x']],
        lambda d: [d['1']],
        id="continuous variable"
    ),
    pytest.param(
        ['0 + x + I(1)', 'x + I(1) - 1'],
        lambda d: [d['x'], d['1']],
        lambda d: [d['1'], d['0']],
        id="continuous variable before intercept"
    ),
    pytest.param(
        ['0 + log(2 * x * y) + I(1 + x ** -0.5 * exp(y))'],
        lambda d: [np.log(2 * d['x'] * d['y']), 1 + d['x'] ** -0.5 * np.exp(d['y'])],
        lambda d: [1 / d['x'], -0.5 * d['x'] ** -1.5 * np.exp(d['y'])],
        id="functions"
    ),
    pytest.param(
        ['0 + x * y', '0 + (x + y) ** 2', '0 + x + y + x:y'],
        lambda d: [d['x'], d['y'], d['x'] * d['y']],
        lambda d: [d['1'], d['0'], d['y']],
        id="product short-hands"
    ),
    pytest.param(
        ['0 + x / y', '0 + x * y - y', '0 + x + x:y'],
        lambda d: [d['x'], d['x'] * d['y']],
        lambda d: [d['1'], d['y']],
        id="division short-hand"
    ),
    pytest.param(
        ['0 + x:y + x:z + y:z', '0 + I(x * y) + I(x * z) + I(y * z)'],
        lambda d: [d['x'] * d['y'], d['x'] * d['z'], d['y'] * d['z']],
        lambda d: [d['y'], d['z'], d['0']],
        id="interactions"
    ),
    pytest.param(
        ['1 + I(x ** 2) + I(exp(-x) * y)'],
        lambda d: [d['1'], d['x'] ** 2, np.exp(-d['x']) * d['y']],
        lambda d: [d['0'], 2 * d['x'], -np.exp(-d['x']) * d['y']],
        id="nonlinear transformations"
    )
])
def test_matrices(
        formula_data: Data, formulas: Iterable[str], build_columns: Callable[[Mapping[str, Array]], Sequence[Array]],
        build_derivatives: Callable[[Mapping[str, Array]], Sequence[Array]]) -> None:
    """Test that equivalent formulas build columns and derivatives as expected. Take derivatives with respect to x."""

    # construct convenience columns of ones and zeros
    ones = np.ones_like(formula_data['x'])
    zeros = np.zeros_like(formula_data['x'])

    # build columns and derivatives for each formula, making sure that it can be formatted
    for formula in formulas:
        formulation = Formulation(formula)
        assert str(formulation)
        matrix, column_formulations, underlying_data = formulation._build_matrix(formula_data)
        evaluated_matrix = np.column_stack([ones * f.evaluate(underlying_data) for f in column_formulations])
        derivatives = np.column_stack([ones * f.evaluate_derivative('x', underlying_data) for f in column_formulations])

        # build expected columns and derivatives
        supplemented_data = {'1': ones, '0': zeros, **formula_data}
        expected_matrix = np.column_stack(build_columns(supplemented_data))
        expected_derivatives = np.column_stack(build_derivatives(supplemented_data))

        # compare columns and derivatives
        np.testing.assert_allclose(matrix, expected_matrix, rtol=0, atol=1e-14, err_msg=formula)
        np.testing.assert_allclose(matrix, evaluated_matrix, rtol=0, atol=1e-14, err_msg=formula)
        np.testing.assert_allclose(derivatives, expected_derivatives, rtol=0, atol=1e-14, err_msg=formula)


@pytest.mark.usefixtures('formula_data')
def test_override(formula_data: Data) -> None:
    """Test that columns can be evaluated at overridden data, which is how counterfactual prices enter utilities."""
    formulation = Formulation('0 + x + I(x * y)')
    _, column_formulations, underlying_data = formulation._build_matrix(formula_data)
    override = {'x': 2 * formula_data['x']}
    evaluated = np.column_stack([f.evaluate(underlying_data, override) for f in column_formulations])
    expected = np.column_stack([2 * formula_data['x'], 2 * formula_data['x'] * formula_data['y']])
    np.testing.assert_allclose(evaluated, expected, rtol=0, atol=1e-14)


@pytest.mark.usefixtures('formula_data')
def test_serialization(formula_data: Data) -> None:
    """Test that formulations can be pickled and that unpickled formulations build the same matrices."""
    formulation = Formulation('1 + x + log(y)')
    unpickled = pickle.loads(pickle.dumps(formulation))
    assert str(formulation) == str(unpickled)
    np.testing.assert_array_equal(build_matrix(formulation, formula_data), build_matrix(unpickled, formula_data))


@pytest.mark.usefixtures('formula_data')
@pytest.mark.parametrize(['exception', 'formula'], [
    pytest.param(TypeError, None, id="None"),
    pytest.param(TypeError, 1, id="integer"),
    pytest.param(patsy.PatsyError, 'x ~ y', id="left-hand side"),
    pytest.param(patsy.PatsyError, 'I(1)', id="two intercepts"),
    pytest.param(patsy.PatsyError, '0', id="no terms"),
    pytest.param(patsy.PatsyError, 'a', id="categorical variable"),
    pytest.param(patsy.PatsyError, 'I(x + a)', id="categorical variable inside identity function"),
    pytest.param(patsy.PatsyError, 'C(x)', id="categorical marker"),
    pytest.param(patsy.PatsyError, 'abs(x)', id="unsupported function"),
    pytest.param(patsy.PatsyError, 'g', id="bad variable name"),
    pytest.param(patsy.PatsyError, 'x ^ y', id="unsupported patsy operator"),
    pytest.param(patsy.PatsyError, 'I(x | y)', id="unsupported SymPy operator"),
    pytest.param(patsy.PatsyError, 'log(-x)', id="logarithm of negative values"),
    pytest.param(patsy.PatsyError, 'Q("x")', id="unsupported patsy quoting")
])
def test_invalid_formulas(formula_data: Data, exception: Type[Exception], formula: Any) -> None:
    """Test that an invalid formula gives rise to an exception."""
    try:
        formulation = Formulation(formula)
        formulation._build_matrix(formula_data)
    except exception:
        print(traceback.format_exc())
        return
    raise RuntimeError(f"Successful formulation: {formulation}.")
