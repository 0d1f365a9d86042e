"""Fixed-point iteration routines."""

import functools
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
import scipy.optimize

from ..utilities.basics import Array, Options, SolverStats, StringRepresentation, format_options


# define contraction function types
ContractionResults = Tuple[Array, Optional[Array], Optional[Array]]
ContractionFunction = Callable[[Array, int, int], ContractionResults]
ContractionWrapper = Callable[[Array], ContractionResults]

# SciPy root finding methods that accept a custom norm but not an analytic Jacobian
SCIPY_NORM_METHODS = {'broyden1', 'broyden2', 'anderson', 'diagbroyden', 'krylov', 'df-sane'}

# SciPy root finding methods that accept an analytic Jacobian but not a custom norm
SCIPY_JACOBIAN_METHODS = {'hybr', 'lm'}


class Iteration(StringRepresentation):
    r"""Configuration for solving fixed point problems.

    The same configuration is used for every fixed point in the package: inverting market shares into mean utilities
    :math:`\delta`, iterating over firms' best responses or :math:`\zeta`-markups until prices settle down, solving
    the Bellman equation for the integrated value function of a dynamic model, and updating conditional choice
    probabilities in nested pseudo-likelihood estimation. Each of these has its own default configuration.

    Parameters
    ----------
    method : `str or callable`
        The fixed point iteration routine. Routines that never use analytic Jacobians:

            - ``'simple'`` - Repeatedly evaluate the contraction without any acceleration.

            - ``'squarem'`` - The SQUAREM method of Varadhan and Roland (2008), which extrapolates from two successive
              contraction evaluations before a third stabilizing one.

            - ``'broyden1'``, ``'broyden2'``, ``'anderson'``, ``'diagbroyden'``, ``'krylov'``, and ``'df-sane'`` -
              Methods of :func:`scipy.optimize.root` applied to the residual :math:`x - f(x)`.

        Routines that can use analytic Jacobians:

            - ``'hybr'`` - The :func:`scipy.optimize.root` modification of the Powell hybrid method.

            - ``'lm'`` - The :func:`scipy.optimize.root` modification of the Levenberg-Marquardt algorithm.

        A trivial routine, which treats the initial values as the fixed point:

            - ``'return'`` - Return the initial values without evaluating the contraction.

        A custom routine can also be passed as a callable of the form::

            method(initial, contraction, callback, **options) -> (final, converged)

        in which ``contraction(x0) -> (x1, weights, jacobian)`` evaluates the mapping and ``callback()`` should be
        called after each major iteration. Here, ``weights`` is ``None`` or a vector that multiplies differences before
        their norm is computed, and ``jacobian`` is ``None`` unless ``compute_jacobian`` is ``True``.

        Whatever the routine, non-finite values from the contraction stop iteration at the last finite values, which
        are reported as not having converged.

    method_options : `dict, optional`
        Options for the routine. For SciPy routines, these are passed to ``options`` in :func:`scipy.optimize.root`,
        and methods that accept a norm are configured to use the infinity norm unless told otherwise.

        The ``'simple'`` and ``'squarem'`` routines accept:

            - **max_evaluations** : (`int`) - Cap on the number of contraction evaluations, which is by default
              ``5000``. Iteration that reaches the cap has not converged.

            - **atol** : (`float`) - Absolute tolerance on the norm of the change between evaluations. By default, it
              is ``1e-14``.

            - **rtol** : (`float`) - Tolerance relative to the norm of the current values, which is by default zero.

            - **norm** : (`callable`) - Norm of the change between evaluations. By default, this is the infinity norm.

        The ``'squarem'`` routine also accepts the step length options of the R package SQUAREM:

            - **scheme** : (`int`) - Step length scheme ``1``, ``2``, or, by default, ``3``.

            - **step_min** : (`float`) - Initial lower bound on the step length, which is by default ``1.0``.

            - **step_max** : (`float`) - Initial upper bound on the step length, which is by default ``1.0``.

            - **step_factor** : (`float`) - Multiplier applied to a bound whenever the step length hits it. By default,
              it is ``4.0``.

    compute_jacobian : `bool, optional`
        Whether the contraction should compute its analytic Jacobian. This is only supported by routines that can use
        one, and by default Jacobians are approximated by those routines.
    universal_display : `bool, optional`
        Whether to display a progress table that looks the same for every routine. By default, progress is not shown.

    Examples
    --------
    Share inversion can be made to use the plain contraction with a looser tolerance::

        iteration = pystructural.Iteration('simple', {'atol': 1e-12})

    A Newton-type routine can solve the Bellman equation of a dynamic model with analytic derivatives::

        iteration = pystructural.Iteration('hybr', compute_jacobian=True)

    """

    _iterator: functools.partial
    _description: str
    _method_options: Options
    _compute_jacobian: bool
    _universal_display: bool

    def __init__(self, method: Union[str, Callable], method_options: Optional[Options] = None,
                 compute_jacobian: bool = False, universal_display: bool = False) -> None:
        """Validate the method and configure default options."""
        descriptions = {
            'simple': "no acceleration",
            'squarem': "the SQUAREM acceleration method",
            'broyden1': "Broyden's good method implemented in SciPy",
            'broyden2': "Broyden's bad method implemented in SciPy",
            'anderson': "Anderson's method implemented in SciPy",
            'diagbroyden': "Broyden's diagonal method implemented in SciPy",
            'krylov': "Krylov method implemented in SciPy",
            'df-sane': "the derivative-free spectral method implemented in SciPy",
            'hybr': "modification of the Powell hybrid method in SciPy",
            'lm': "modification of the Levenberg-Marquardt algorithm in SciPy",
            'return': "a trivial routine that returns the initial values",
        }
        if not callable(method) and method not in descriptions:
            raise ValueError(f"method must be one of {list(descriptions)} or a callable object.")
        if method_options is not None and not isinstance(method_options, dict):
            raise ValueError("method_options must be None or a dict.")
        if compute_jacobian and method in {'simple', 'squarem'} | SCIPY_NORM_METHODS:
            raise ValueError(f"compute_jacobian must be False when method is '{method}'.")

        self._compute_jacobian = compute_jacobian
        self._universal_display = universal_display
        if method_options is None:
            method_options = {}

        # custom routines receive options as they are
        if callable(method):
            self._iterator = functools.partial(method)
            self._description = "a custom method"
            self._method_options = method_options
            return

        # choose the routine and its default options
        self._description = descriptions[method]
        defaults: Options = {}
        if method == 'return':
            self._iterator = functools.partial(return_iterator)
        elif method in {'simple', 'squarem'}:
            defaults = {'atol': 1e-14, 'rtol': 0, 'max_evaluations': 5000, 'norm': infinity_norm}
            self._iterator = functools.partial(simple_iterator)
            if method == 'squarem':
                defaults.update({'scheme': 3, 'step_min': 1.0, 'step_max': 1.0, 'step_factor': 4.0})
                self._iterator = functools.partial(squarem_iterator)
        else:
            self._iterator = functools.partial(scipy_iterator, method=method, compute_jacobian=compute_jacobian)
            if method in SCIPY_NORM_METHODS:
                defaults['fnorm' if method == 'df-sane' else 'tol_norm'] = infinity_norm
        self._method_options = {**defaults, **method_options}

        # validate options of routines that are not implemented by SciPy
        if method == 'return' and self._method_options:
            raise ValueError("The return method does not support any options.")
        if method in {'simple', 'squarem'}:
            validate_termination_options(self._method_options)
        if method == 'squarem':
            validate_squarem_options(self._method_options)

    def __str__(self) -> str:
        """Format the configuration as a string."""
        jacobians = "with analytic Jacobians" if self._compute_jacobian else "without analytic Jacobians"
        options = format_options(self._method_options)
        return f"Configured to iterate using {self._description} {jacobians} with options {options}."

    def _iterate(self, initial: Array, contraction: ContractionFunction) -> Tuple[Array, SolverStats]:
        """Find a fixed point of a contraction that is passed the current values along with counts of major iterations
        and contraction evaluations so far. Routines work with flattened 64-bit arrays, which are converted back to the
        data type and shape of the initial values before the contraction sees them.
        """
        stats = SolverStats(converged=False)

        def callback() -> None:
            stats.iterations += 1

        def wrapped(raw: Any) -> ContractionResults:
            raw = np.asarray(raw)
            stats.evaluations += 1
            x = raw.reshape(initial.shape).astype(initial.dtype, copy=False)
            x, weights, jacobian = contraction(x, stats.iterations, stats.evaluations)
            if weights is not None:
                weights = weights.astype(raw.dtype, copy=False).reshape(raw.shape)
            if jacobian is not None:
                jacobian = jacobian.astype(raw.dtype, copy=False)
            return x.astype(raw.dtype, copy=False).reshape(raw.shape), weights, jacobian

        raw_initial = initial.astype(np.float64, copy=False).flatten()
        raw_final, stats.converged = self._iterator(raw_initial, wrapped, callback, **self._method_options)
        final = np.asarray(raw_final).astype(initial.dtype, copy=False).reshape(initial.shape)
        return final, stats


def validate_termination_options(method_options: Options) -> None:
    """Validate the evaluation cap, tolerances, and norm used by non-SciPy routines."""
    for key in ['atol', 'rtol']:
        value = method_options[key]
        if not isinstance(value, (float, int)) or value < 0:
            raise ValueError(f"The iteration option {key} must be a nonnegative float.")
    if method_options['atol'] == method_options['rtol'] == 0:
        raise ValueError("atol and rtol cannot both be zero.")
    if not isinstance(method_options['max_evaluations'], int):
        raise ValueError("The iteration option max_evaluations must be an int.")
    if method_options['max_evaluations'] < 1:
        raise ValueError("The iteration option max_evaluations must be a positive int.")
    if not callable(method_options['norm']):
        raise ValueError("The iteration option norm must be callable.")


def validate_squarem_options(method_options: Options) -> None:
    """Validate SQUAREM step length options."""
    if method_options['scheme'] not in {1, 2, 3}:
        raise ValueError("The iteration option scheme must be 1, 2, or 3.")
    if not isinstance(method_options['step_min'], float):
        raise ValueError("The iteration option step_min must be a float.")
    for key in ['step_max', 'step_factor']:
        if not isinstance(method_options[key], float) or method_options[key] <= 0:
            raise ValueError(f"The iteration option {key} must be a positive float.")
    if method_options['step_min'] > method_options['step_max']:
        raise ValueError("The iteration option step_min must be smaller than step_max.")


def infinity_norm(x: Array) -> float:
    """Compute the largest absolute element of a vector, which is zero for an empty one."""
    return np.abs(x).max() if x.size > 0 else 0.0


def return_iterator(initial: Array, *_: Any, **__: Any) -> Tuple[Array, bool]:
    """Treat the initial values as the fixed point."""
    return initial, True


def scipy_iterator(
        initial: Array, contraction: ContractionWrapper, iteration_callback: Callable[[], None], method: str,
        compute_jacobian: bool, **scipy_options: Any) -> Tuple[Array, bool]:
    """Find a root of x - f(x) with SciPy. Weights from the contraction scale the norm or, for methods that do not
    accept a norm, the variables.
    """
    weights = np.ones_like(initial)
    scipy_options = scipy_options.copy()
    counts_iterations = method not in SCIPY_JACOBIAN_METHODS
    if counts_iterations:
        norm_key = 'fnorm' if method == 'df-sane' else 'tol_norm'
        norm = scipy_options.get(norm_key, infinity_norm)
        scipy_options[norm_key] = lambda x: norm(weights * x)
    else:
        scipy_options['diag'] = weights

    # non-finite contraction values end up being reported as a failure
    state: Dict[str, bool] = {'failed': False}

    def residual(x0: Array) -> Union[Tuple[Array, Array], Array]:
        x, new_weights, jacobian = contraction(x0)
        if not all_finite(x, new_weights, jacobian):
            state['failed'] = True
            x, new_weights = x0, None
            jacobian = None if jacobian is None else np.zeros_like(jacobian)
        if not counts_iterations:
            iteration_callback()
        if new_weights is not None:
            weights[:] = new_weights
        if jacobian is None:
            return x0 - x
        return x0 - x, np.eye(x.size) - jacobian

    results = scipy.optimize.root(
        residual, initial, method=method, jac=compute_jacobian or None,
        callback=(lambda *_: iteration_callback()) if counts_iterations else None, options=scipy_options
    )
    return results.x, results.success and not state['failed']


def simple_iterator(
        initial: Array, contraction: ContractionWrapper, iteration_callback: Callable[[], None], max_evaluations: int,
        atol: float, rtol: float, norm: Callable[[Array], float]) -> Tuple[Array, bool]:
    """Evaluate the contraction until successive values are within tolerance or the evaluation cap is reached. Each
    evaluation is a major iteration.
    """
    x = initial
    for _ in range(max_evaluations):
        x_next, weights = contraction(x)[:2]
        if not all_finite(x_next, weights):
            return x, False
        iteration_callback()
        x, change = x_next, x_next - x
        if termination_check(x, change, weights, atol, rtol, norm):
            return x, True
    return x, False


def squarem_iterator(
        initial: Array, contraction: ContractionWrapper, iteration_callback: Callable[[], None], max_evaluations: int,
        atol: float, rtol: float, norm: Callable[[Array], float], scheme: int, step_min: float, step_max: float,
        step_factor: float) -> Tuple[Array, bool]:
    """Accelerate iteration with SQUAREM. Each major iteration takes two contraction evaluations, extrapolates from
    them, and stabilizes the extrapolated values with a third evaluation. The cap applies to evaluations, so a major
    iteration can be cut short.
    """
    x = initial
    evaluations = 0

    def step(x0: Array) -> Tuple[Optional[Array], bool]:
        """Evaluate the contraction once, returning None for non-finite values along with whether to stop."""
        nonlocal evaluations
        evaluations += 1
        x1, weights = contraction(x0)[:2]
        if not all_finite(x1, weights):
            return None, False
        return x1, termination_check(x1, x1 - x0, weights, atol, rtol, norm)

    while evaluations < max_evaluations:
        x1, converged = step(x)
        if x1 is None or converged or evaluations >= max_evaluations:
            return (x, False) if x1 is None else (x1, converged)
        x2, converged = step(x1)
        if x2 is None or converged or evaluations >= max_evaluations:
            return (x1, False) if x2 is None else (x2, converged)

        # compute the step length from the first and second differences
        r = x1 - x
        v = (x2 - x1) - r
        with np.errstate(divide='ignore', invalid='ignore'):
            if scheme == 1:
                alpha = (r.T @ v) / (v.T @ v)
            elif scheme == 2:
                alpha = (r.T @ r) / (r.T @ v)
            else:
                alpha = -np.sqrt((r.T @ r) / (v.T @ v))
        if not np.isfinite(alpha):
            alpha = -1.0

        # bound the step length and widen any bound that binds
        alpha = -np.maximum(step_min, np.minimum(step_max, -alpha))
        if -alpha == step_max:
            step_max *= step_factor
        if -alpha == step_min and step_min < 0:
            step_min *= step_factor

        # extrapolate and then stabilize
        extrapolated = x - 2 * alpha * r + alpha**2 * v
        x3, converged = step(extrapolated)
        if x3 is None:
            return x2, False
        iteration_callback()
        x = x3
        if converged:
            return x, True
    return x, False


def all_finite(*arrays: Optional[Array]) -> bool:
    """Check that arrays are either None or finite."""
    return all(a is None or np.isfinite(a).all() for a in arrays)


def termination_check(
        x: Array, change: Array, weights: Optional[Array], atol: float, rtol: float,
        norm: Callable[[Array], float]) -> bool:
    """Check whether the weighted norm of a change is within the absolute tolerance plus the relative tolerance times
    the weighted norm of the current values.
    """
    if weights is not None:
        x = weights * x
        change = weights * change
    tolerance = atol + (rtol * norm(x) if rtol > 0 else 0)
    return norm(change) < tolerance
