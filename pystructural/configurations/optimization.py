"""Optimization routines."""

import functools
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import numpy as np
import scipy.optimize

from .. import options
from ..utilities.basics import Array, Options, SolverStats, StringRepresentation, format_options


# objective function types
ObjectiveResults = Tuple[float, Optional[Array], Any]
ObjectiveFunction = Callable[[Array], ObjectiveResults]

# descriptions of SciPy routines, grouped by whether they use analytic gradients and respect bounds
GRADIENT_FREE_METHODS = {
    'nelder-mead': "the Nelder-Mead algorithm implemented in SciPy",
    'powell': "the modified Powell algorithm implemented in SciPy",
}
UNBOUNDED_METHODS = {
    'cg': "the conjugate gradient algorithm implemented in SciPy",
    'bfgs': "the BFGS algorithm implemented in SciPy",
    'newton-cg': "the Newton-CG algorithm implemented in SciPy",
}
BOUNDED_METHODS = {
    'l-bfgs-b': "the L-BFGS-B algorithm implemented in SciPy",
    'tnc': "the truncated Newton algorithm implemented in SciPy",
    'slsqp': "Sequential Least SQuares Programming implemented in SciPy",
    'trust-constr': "trust-region routine implemented in SciPy",
}


class Optimization(StringRepresentation):
    r"""Configuration for solving optimization problems.

    Every optimization in the package is configured with this class: the GMM outer loop of :meth:`Problem.solve`, the
    likelihood maximizations of :meth:`ChoiceProblem.solve` and :meth:`DynamicProblem.solve`, and each firm's profit
    maximization when :meth:`Simulation.replace_endogenous` computes best-response prices. Routines always minimize, so
    maximization problems are passed to them with negated objectives.

    Parameters
    ----------
    method : `str or callable`
        The optimization routine. Routines of :func:`scipy.optimize.minimize` that use analytic gradients and respect
        parameter bounds:

            - ``'l-bfgs-b'``, ``'tnc'``, ``'slsqp'``, and ``'trust-constr'``.

        Routines that use analytic gradients but ignore bounds:

            - ``'cg'``, ``'bfgs'``, and ``'newton-cg'``.

        Routines that neither use analytic gradients nor respect bounds:

            - ``'nelder-mead'`` and ``'powell'``.

        A trivial routine, which evaluates the objective at the initial values:

            - ``'return'`` - Treat the initial values as optimal.

        A custom routine can also be passed as a callable of the form::

            method(initial, bounds, objective_function, iteration_callback, **options) -> (final, converged)

        in which ``bounds`` is a list of ``(min, max)`` pairs, ``objective_function(theta)`` returns an
        ``(objective, gradient, progress)`` tuple, and ``iteration_callback()`` should be called after each major
        iteration. The gradient is ``None`` when ``compute_gradient`` is ``False``.

    method_options : `dict, optional`
        Options passed to ``options`` in :func:`scipy.optimize.minimize`. The exception is ``'keep_feasible'``, which
        configures :class:`scipy.optimize.Bounds`.
    compute_gradient : `bool, optional`
        Whether to compute analytic gradients, which is the default. This must be ``False`` for routines that do not
        use them and ``True`` for ``'newton-cg'``.
    universal_display : `bool, optional`
        Whether to display progress in a table that looks the same for every routine, which is the default. Otherwise,
        SciPy's own display is turned on when verbosity is.

    Examples
    --------
    Tighten the gradient-based tolerance::

        optimization = pystructural.Optimization('l-bfgs-b', {'gtol': 1e-8})

    Evaluate the objective at the initial values without optimizing::

        optimization = pystructural.Optimization('return')

    """

    _optimizer: functools.partial
    _description: str
    _method_options: Options
    _supports_bounds: bool
    _compute_gradient: bool
    _universal_display: bool

    def __init__(
            self, method: Union[str, Callable], method_options: Optional[Options] = None, compute_gradient: bool = True,
            universal_display: bool = True) -> None:
        """Validate the method and set default options."""
        descriptions: Dict[str, str] = {
            **GRADIENT_FREE_METHODS, **UNBOUNDED_METHODS, **BOUNDED_METHODS,
            'return': "a trivial routine that returns the initial parameters"
        }
        if not callable(method) and method not in descriptions:
            raise ValueError(f"method must be one of {list(descriptions)} or a callable object.")
        if method_options is not None and not isinstance(method_options, dict):
            raise ValueError("method_options must be None or a dict.")
        if compute_gradient and method in GRADIENT_FREE_METHODS:
            raise ValueError(f"compute_gradient must be False when method is '{method}'.")
        if not compute_gradient and method == 'newton-cg':
            raise ValueError(f"compute_gradient must be True when method is '{method}'.")

        self._compute_gradient = compute_gradient
        self._universal_display = universal_display
        self._supports_bounds = callable(method) or method in BOUNDED_METHODS or method == 'return'
        if method_options is None:
            method_options = {}

        # custom routines receive options as they are
        if callable(method):
            self._optimizer = functools.partial(method)
            self._description = "a custom method"
            self._method_options = method_options
            return

        self._description = descriptions[method]
        if method == 'return':
            if method_options:
                raise ValueError("The return method does not support any options.")
            self._optimizer = functools.partial(return_optimizer)
            self._method_options = {}
            return

        # turn on SciPy's own display when the universal one is turned off
        defaults: Options = {}
        if not universal_display and options.verbose:
            if method == 'trust-constr':
                defaults['verbose'] = 3
            elif method != 'l-bfgs-b':
                defaults['disp'] = True
        self._optimizer = functools.partial(scipy_optimizer, method=method, compute_gradient=compute_gradient)
        self._method_options = {**defaults, **method_options}

    def __str__(self) -> str:
        """Format the configuration as a string."""
        gradients = "with analytic gradients" if self._compute_gradient else "without analytic gradients"
        options_string = format_options(self._method_options)
        return f"Configured to optimize using {self._description} {gradients} and options {options_string}."

    def _optimize(
            self, initial: Array, bounds: Optional[Iterable[Tuple[float, float]]],
            verbose_objective_function: Callable[[Array, int, int], ObjectiveResults]) -> Tuple[Array, SolverStats]:
        """Minimize an objective that is passed the current parameters along with counts of major iterations and
        objective evaluations so far. Routines work with flattened 64-bit arrays, which are converted back to the data
        type and shape of the initial values before the objective sees them.
        """
        stats = SolverStats(converged=False)

        def callback() -> None:
            stats.iterations += 1

        def wrapped(raw: Any) -> ObjectiveResults:
            raw = np.asanyarray(raw)
            stats.evaluations += 1
            values = raw.reshape(initial.shape).astype(initial.dtype, copy=False)
            objective, gradient, progress = verbose_objective_function(values, stats.iterations, stats.evaluations)
            if gradient is not None:
                gradient = np.asarray(gradient).astype(raw.dtype, copy=False).flatten()
            return float(objective), gradient, progress

        raw_initial = initial.astype(np.float64, copy=False).flatten()
        raw_bounds = None
        if bounds is not None and self._supports_bounds:
            raw_bounds = [(float(lb), float(ub)) for lb, ub in bounds]
        raw_final, stats.converged = self._optimizer(
            raw_initial, raw_bounds, wrapped, callback, **self._method_options
        )
        final = np.asanyarray(raw_final).astype(initial.dtype, copy=False).reshape(initial.shape)
        return final, stats


def return_optimizer(initial_values: Array, *_: Any, **__: Any) -> Tuple[Array, bool]:
    """Treat the initial values as optimal."""
    return initial_values, True


def scipy_optimizer(
        initial_values: Array, bounds: Optional[Iterable[Tuple[float, float]]], objective_function: ObjectiveFunction,
        iteration_callback: Callable[[], None], method: str, compute_gradient: bool, **scipy_options: Any) -> (
        Tuple[Array, bool]):
    """Minimize with a SciPy routine. SciPy asks for objectives and gradients separately, so the latest evaluation is
    cached and reused when both are requested at the same values.
    """
    cached_values: Optional[Array] = None
    cached_results: Tuple[float, Optional[Array]] = (np.nan, None)

    def evaluate(values: Array) -> Tuple[float, Optional[Array]]:
        nonlocal cached_values, cached_results
        if cached_values is None or not np.array_equal(values, cached_values):
            cached_values = values.copy()
            cached_results = objective_function(values)[:2]
        return cached_results

    # trust-constr approximates the Hessian with BFGS unless told otherwise
    scipy_options = scipy_options.copy()
    hess = scipy_options.pop('hess', scipy.optimize.BFGS() if method == 'trust-constr' else None)
    keep_feasible = scipy_options.pop('keep_feasible', None)
    if keep_feasible is not None and bounds is not None:
        lb, ub = zip(*bounds)
        bounds = scipy.optimize.Bounds(lb, ub, keep_feasible)

    results = scipy.optimize.minimize(
        lambda x: evaluate(x)[0], initial_values, method=method,
        jac=(lambda x: evaluate(x)[1]) if compute_gradient else False, hess=hess, bounds=bounds,
        callback=lambda *_: iteration_callback(), options=scipy_options
    )
    return results.x, results.success
