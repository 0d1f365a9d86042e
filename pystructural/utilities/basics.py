"""Basic functionality shared by every model: common types, status output, table formatting, structuring of data,
market-by-market parallel processing, and errors that are collected instead of immediately raised.
"""

import contextlib
import functools
import inspect
import multiprocessing.pool
import re
import sys
import time
import traceback
from typing import (
    Any, Callable, Container, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Set, Sequence, Type, Tuple
)
import warnings

import numpy as np

from .. import options


# define common types
Array = Any
RecArray = Any
Data = Dict[str, Array]
Options = Dict[str, Any]
Bounds = Tuple[Array, Array]

# process pool that is only set inside of a parallel context
pool: Any = None


@contextlib.contextmanager
def parallel(processes: int) -> Iterator[None]:
    r"""Context manager used for parallel processing in a ``with`` statement context.

    Inside the context, market-by-market computation in methods such as :meth:`Simulation.replace_endogenous`,
    :meth:`Problem.solve`, and :meth:`ProblemResults.compute_elasticities` is distributed among a pool of Python
    processes. The pool is terminated when the context ends, after which markets are once again processed one after
    another.

    Because market data are serialized before being sent to workers, parallelization only helps when each market
    requires a substantial amount of computation.

    Arguments
    ---------
    processes : `int`
        Number of Python processes in the pool. There must be at least two.

    Examples
    --------
    .. code-block:: python

       with pystructural.parallel(4):
           results = problem.solve(sigma=1)

    """
    if not isinstance(processes, int):
        raise TypeError("processes must be an int.")
    if processes < 2:
        raise ValueError("processes must be at least 2.")

    global pool
    output(f"Starting a pool of {processes} processes ...")
    start_time = time.time()
    try:
        with multiprocessing.pool.Pool(processes) as pool:
            output(f"Started the process pool after {format_seconds(time.time() - start_time)}.")
            yield
            output(f"Terminating the pool of {processes} processes ...")
            start_time = time.time()
    finally:
        pool = None
    output(f"Terminated the process pool after {format_seconds(time.time() - start_time)}.")


def generate_items(keys: Iterable, factory: Callable[[Any], tuple], method: Callable) -> Iterator:
    """Lazily compute method(*factory(key)) for each key, yielding the key along with the returned object. The first
    object made by the factory is the instance to which the method is bound. When a pool is active, items are computed
    by its workers and may arrive in any order.
    """
    tasks = ((k, factory(k), method) for k in keys)
    if pool is None:
        return map(generate_items_worker, tasks)
    return pool.imap_unordered(generate_items_worker, tasks)


def generate_items_worker(args: Tuple[Any, tuple, Callable]) -> Tuple[Any, Any]:
    """Unpack a single task and call its method."""
    key, (instance, *method_args), method = args
    return key, method(instance, *method_args)


def structure_matrices(mapping: Mapping) -> RecArray:
    """Stack a mapping from field keys to (array or None, dtype) pairs into a record array. Every field is at least
    two-dimensional, and missing arrays become fields without any columns. A key can be a (title, name) tuple, in which
    case the field is accessed by its name and the title holds column labels.
    """
    rows = next(a.shape[0] for a, _ in mapping.values() if a is not None)
    fields = []
    for key, (array, dtype) in mapping.items():
        matrix = np.zeros((rows, 0)) if array is None else np.c_[array]
        fields.append((key, dtype, matrix))

    structured: RecArray = np.recarray(rows, [(k, d, m.shape[1:]) for k, d, m in fields])
    for key, _, matrix in fields:
        structured[key if isinstance(key, str) else key[1]] = matrix
    return structured


def update_matrices(matrices: RecArray, update_mapping: Dict) -> RecArray:
    """Re-structure a record array after replacing or adding the fields in a mapping, keeping any column labels."""
    mapping = update_mapping.copy()
    for name in matrices.dtype.names:
        if name in mapping:
            continue
        field = matrices.dtype.fields[name]
        key = (field[2], name) if len(field) > 2 else name
        mapping[key] = (matrices[name], matrices[name].dtype)
    return structure_matrices(mapping)


def extract_matrix(structured_array_like: Mapping, key: Any) -> Optional[Array]:
    """Extract a field as a matrix with at least two dimensions. If there is no such field, horizontally stack any
    numbered fields key0, key1, and so on. Empty fields are treated as missing.
    """
    try:
        matrix = np.c_[structured_array_like[key]]
    except Exception:
        parts: List[Array] = []
        for index in range(sys.maxsize):
            try:
                part = np.c_[structured_array_like[f'{key}{index}']]
            except Exception:
                break
            if part.size > 0:
                parts.append(part)
        return np.hstack(parts) if parts else None
    return matrix if matrix.size > 0 else None


def extract_size(structured_array_like: Mapping) -> int:
    """Determine how many rows are in a structured array-like object."""
    candidates = [
        lambda: structured_array_like.shape[0],
        lambda: next(iter(structured_array_like.values())).shape[0],
        lambda: len(next(iter(structured_array_like.values()))),
        lambda: len(structured_array_like),
    ]
    for candidate in candidates:
        try:
            size = candidate()
        except Exception:
            continue
        if size > 0:
            return size
        break
    raise TypeError(
        f"Failed to get the number of rows in the structured array-like object of type {type(structured_array_like)}. "
        f"Try using a dictionary or a NumPy structured array."
    )


def interact_ids(*columns: Array) -> Array:
    """Combine ID columns into a single column of tuples."""
    combined = np.empty(columns[0].size, np.object_)
    if len(columns) == 1:
        combined[:] = columns[0].flatten()
    else:
        combined[:] = list(zip(*(c.flatten() for c in columns)))
    return combined


def get_indices(ids: Array) -> Dict[Hashable, Array]:
    """Map each unique ID to the ascending indices at which it appears in a column of IDs."""
    unique, codes = np.unique(ids.flatten(), return_inverse=True)
    order = np.argsort(codes.flatten(), kind='stable')
    boundaries = np.cumsum(np.bincount(codes.flatten(), minlength=unique.size))[:-1]
    return dict(zip(unique, np.split(order, boundaries)))


def warn(message: Any) -> None:
    """Issue a warning that is displayed without its source line."""
    original = warnings.formatwarning
    warnings.formatwarning = lambda m, *_, **__: f"{m}\n"
    try:
        warnings.warn(message)
    finally:
        warnings.formatwarning = original


def output(message: Any) -> None:
    """Pass a status update to the output function when verbosity is turned on."""
    if not options.verbose:
        return
    if not callable(options.verbose_output):
        raise TypeError("options.verbose_output should be callable.")
    options.verbose_output(str(message))
    if options.flush_output:
        sys.stdout.flush()


def output_progress(iterable: Iterable, length: int, start_time: float) -> Iterator:
    """Pass through items while outputting progress no more than once a minute."""
    next_update = 60 * (int((time.time() - start_time) / 60) + 1)
    for count, item in enumerate(iterable, start=1):
        yield item
        elapsed = time.time() - start_time
        if elapsed > next_update:
            output(f"Finished {count} out of {length} after {format_seconds(elapsed)}.")
            next_update = 60 * (int(elapsed / 60) + 1)


def format_seconds(seconds: float) -> str:
    """Display a duration as HH:MM:SS."""
    minutes, seconds = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    return f'{hours:02}:{minutes:02}:{seconds:02}'


def format_number(number: Any) -> str:
    """Display a number in scientific notation with a fixed width."""
    if not isinstance(options.digits, int):
        raise TypeError("options.digits must be an int.")
    formatted = f"{float(number):^+{options.digits + 6}.{options.digits - 1}E}"
    return formatted.replace("+", " ") if "NAN" in formatted else formatted


def format_se(se: Any) -> str:
    """Display a standard error in parentheses."""
    formatted = format_number(se)
    for special in ["NAN", "-INF", "+INF"]:
        if special in formatted:
            return formatted.replace(special, f"({special})")
    return f"({formatted})"


def format_options(mapping: Options) -> str:
    """Display a mapping of options, naming any callables by where they are defined."""
    strings: List[str] = []
    for key, value in mapping.items():
        if callable(value):
            value = f'{value.__module__}.{value.__qualname__}'
        elif isinstance(value, float):
            value = format_number(value)
        strings.append(f'{key}: {value}')
    return '{' + ', '.join(strings) + '}'


def format_table(
        header: Sequence, *data: Sequence, title: Optional[str] = None, include_border: bool = True,
        include_header: bool = True, line_indices: Container[int] = ()) -> str:
    """Format a table with centered columns of fixed widths. Header cells can be sequences of strings, which are
    stacked vertically and aligned at the bottom. Vertical lines are drawn after columns in line_indices.
    """

    # align multi-line header cells at the bottom
    header_cells = [[c] if isinstance(c, str) else list(c) for c in header]
    height = max((len(c) for c in header_cells), default=0)
    header_rows = [[""] * (height - len(c)) + c for c in header_cells]
    header_rows = [list(r) for r in zip(*header_rows)]
    header_rows = [r for r in header_rows if any(r)]

    # pad short data rows with empty cells
    data_rows = [[str(c) for c in r] + [""] * (len(header) - len(r)) for r in data]

    # size each column to its widest cell
    widths = [max(len(r[i]) for r in header_rows + data_rows) for i in range(len(header))]
    cells = [f"{{:^{w}}}" + ("  |" if i in line_indices else "") for i, w in enumerate(widths)]
    template = "  ".join(cells)
    border = "=" * len(template.format(*[""] * len(widths)))

    lines = [] if title is None else [f"{title}:"]
    if include_border:
        lines.append(border)
    if include_header:
        lines.extend(template.format(*r) for r in header_rows)
        lines.append(template.format(*("-" * w for w in widths)))
    lines.extend(template.format(*r) for r in data_rows)
    if include_border:
        lines.append(border)
    return "\n".join(lines)


def format_estimates(
        title: str, labels: Sequence[str], estimates: Array, ses: Optional[Array] = None,
        truths: Optional[Array] = None) -> str:
    """Format a row of estimates, one column per parameter, followed by rows of any standard errors in parentheses and
    any true values in brackets.
    """
    rows = [[format_number(x) for x in np.asarray(estimates).flat]]
    if ses is not None:
        rows.append([format_se(x) for x in np.asarray(ses).flat])
    if truths is not None:
        rows.append([f"[{format_number(x).strip()}]" for x in np.asarray(truths).flat])
    return format_table(labels, *rows, title=title)


def compute_finite_differences(f: Callable[[Array], Array], x: Array, epsilon_scale: float = 1.0) -> Array:
    """Approximate the derivatives of a function with central finite differences. Derivatives of a vector-valued
    function are columns of a Jacobian, and those of a matrix-valued function are stacked along a third axis.
    """
    epsilon = epsilon_scale * options.finite_differences_epsilon
    derivatives = []
    for index in range(x.size):
        step = np.zeros_like(x)
        step.flat[index] = epsilon / 2
        derivatives.append((f(x + step) - f(x - step)) / epsilon)

    shape = derivatives[0].shape
    if len(shape) == 1 or (len(shape) == 2 and shape[1] == 1):
        return np.column_stack(derivatives)
    return np.dstack(derivatives)


class SolverStats(object):
    """Convergence information reported by an optimization or fixed point routine."""

    converged: bool
    iterations: int
    evaluations: int

    def __init__(self, converged: bool = True, iterations: int = 0, evaluations: int = 0) -> None:
        self.converged = converged
        self.iterations = iterations
        self.evaluations = evaluations


class StringRepresentation(object):
    """Object whose representation is its formatted string."""

    def __repr__(self) -> str:
        return str(self)


class Groups(object):
    """Sums, means, and expansions of rows that share an ID."""

    unique: Array
    codes: Array
    counts: Array
    sort_indices: Array
    reduce_indices: Array
    group_count: int

    def __init__(self, ids: Array) -> None:
        """Encode each ID by the position of its group among the sorted unique IDs."""
        self.unique, codes, self.counts = np.unique(ids.flatten(), return_inverse=True, return_counts=True)
        self.codes = codes.flatten()
        self.sort_indices = np.argsort(self.codes, kind='stable')
        self.reduce_indices = np.r_[0, np.cumsum(self.counts)[:-1]].astype(np.int64)
        self.group_count = self.unique.size

    def sum(self, matrix: Array) -> Array:
        """Sum rows within each group."""
        return np.add.reduceat(matrix[self.sort_indices], self.reduce_indices)

    def mean(self, matrix: Array) -> Array:
        """Average rows within each group."""
        return self.sum(matrix) / self.counts[:, None]

    def expand(self, statistics: Array) -> Array:
        """Repeat each group's statistics for each of its rows."""
        return statistics[self.codes]


class Error(Exception):
    """Error whose message is its docstring. Errors of the same type with the same message compare as equal, so
    repeated errors from many markets collapse into one.
    """

    stack: Optional[str]

    def __init__(self) -> None:
        """Keep the current traceback if verbose tracebacks are turned on."""
        self.stack = ''.join(traceback.format_stack()) if options.verbose_tracebacks else None

    def __eq__(self, other: Any) -> bool:
        return hash(self) == hash(other)

    def __hash__(self) -> int:
        return hash((type(self).__name__, str(self)))

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        """Convert the reStructuredText in the docstring into plain text."""
        doc = inspect.getdoc(self)
        assert doc is not None

        def simplify_math(match: Any) -> str:
            return re.sub(r'\s+', ' ', re.sub(r'[\\{}]', ' ', match.group(1))).lower()

        doc = re.sub(r':math:`([^`]+)`', simplify_math, doc)
        doc = re.sub(r'\s+', ' ', re.sub(r':[a-z\-]+:|`', '', doc))
        if self.stack is not None:
            doc = f"{doc} Traceback:\n\n{self.stack}\n"
        return doc


class NumericalError(Error):
    """Floating point issues."""

    _messages: Set[str]

    def __init__(self) -> None:
        super().__init__()
        self._messages = set()

    def __str__(self) -> str:
        return f"{super().__str__()} Errors encountered: {', '.join(sorted(self._messages))}."


class MultipleReversionError(Error):
    """Reversion of problematic elements."""

    _bad: int
    _total: int

    def __init__(self, bad_indices: Array) -> None:
        super().__init__()
        self._bad = bad_indices.sum()
        self._total = bad_indices.size

    def __str__(self) -> str:
        return f"{super().__str__()} Number of reverted elements: {self._bad} out of {self._total}."


class InversionError(Error):
    """Problems with inverting a matrix."""

    _condition: float

    def __init__(self, matrix: Array) -> None:
        super().__init__()
        from .algebra import compute_condition_number
        self._condition = compute_condition_number(matrix)

    def __str__(self) -> str:
        return f"{super().__str__()} Condition number: {format_number(self._condition)}."


class InversionReplacementError(InversionError):
    """Problems with inverting a matrix led to the use of a replacement such as an approximation."""

    _replacement: str

    def __init__(self, matrix: Array, replacement: str) -> None:
        super().__init__(matrix)
        self._replacement = replacement

    def __str__(self) -> str:
        return f"{super().__str__()} The inverse was replaced with {self._replacement}."


class NumericalErrorHandler(object):
    """Decorator for functions that return a list of errors as their last object. Any floating point problems that
    NumPy encounters while the function runs are collected into a single error of the given type, which is appended
    to the list.
    """

    error: Type[NumericalError]

    def __init__(self, error: Type[NumericalError]) -> None:
        self.error = error

    def __call__(self, decorated: Callable) -> Callable:
        @functools.wraps(decorated)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            detector = NumericalErrorDetector(self.error)
            with np.errstate(divide='call', over='call', under='ignore', invalid='call'):
                np.seterrcall(detector)
                returned = decorated(*args, **kwargs)
            if detector.detected is not None:
                returned[-1].append(detector.detected)
            return returned

        return wrapper


class NumericalErrorDetector(object):
    """Callback for NumPy that accumulates floating point messages."""

    error: Type[NumericalError]
    detected: Optional[NumericalError]

    def __init__(self, error: Type[NumericalError]) -> None:
        self.error = error
        self.detected = None

    def __call__(self, message: str, _: int) -> None:
        if self.detected is None:
            self.detected = self.error()
        self.detected._messages.add(message)
