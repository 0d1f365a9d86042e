"""Linear algebra routines that report failures instead of raising them."""

import contextlib
from typing import Callable, Iterator, List, Optional, Sequence, Tuple
import warnings

import numpy as np
import scipy.linalg

from .basics import Array, format_number, warn
from .. import options


# exceptions that signal a failed decomposition, solve, or inverse
LINALG_FAILURES = (ValueError, scipy.linalg.LinAlgError, scipy.linalg.LinAlgWarning)


@contextlib.contextmanager
def strict_linear_algebra() -> Iterator[None]:
    """Turn SciPy warnings about ill-conditioned matrices into exceptions."""
    with warnings.catch_warnings():
        warnings.filterwarnings('error')
        yield


def compute_condition_number(x: Array) -> float:
    """Compute the condition number of a square matrix, which is NaN if it cannot be computed."""
    if x.size == 0:
        return 0
    if not np.isfinite(x).all():
        return np.nan
    try:
        return np.linalg.cond(x.astype(np.float64))
    except np.linalg.LinAlgError:
        return np.nan


def precisely_identify_singularity(x: Array) -> Tuple[bool, bool, float]:
    """Determine whether a matrix has a condition number above the singularity tolerance."""
    if not options.singular_tol < np.inf:
        return False, True, np.nan
    condition = compute_condition_number(x)
    successful = not np.isnan(condition)
    return successful and condition > options.singular_tol, successful, condition


def precisely_identify_collinearity(x: Array) -> Tuple[Array, bool]:
    """Flag columns whose diagonal elements in the R factor of a QR decomposition are small relative to the columns'
    standard deviations.
    """
    collinear = np.zeros(x.shape[1], np.bool_)
    if x.size == 0 or max(options.collinear_atol, options.collinear_rtol) <= 0:
        return collinear, True
    try:
        with strict_linear_algebra():
            diagonal = np.abs(scipy.linalg.qr(x, mode='r')[0].diagonal())
    except LINALG_FAILURES:
        return collinear, False
    return diagonal < options.collinear_atol + options.collinear_rtol * x.std(axis=0), True


def precisely_identify_psd(x: Array) -> Tuple[bool, bool]:
    """Determine whether a matrix is positive semidefinite by reconstructing it from its singular values and right
    singular vectors.
    """
    if x.size == 0 or not np.isfinite([options.psd_atol, options.psd_rtol]).any():
        return True, True
    try:
        with strict_linear_algebra():
            _, s, v = scipy.linalg.svd(x)
    except LINALG_FAILURES:
        return False, False
    return np.allclose((v.T * s) @ v, x, atol=options.psd_atol, rtol=options.psd_rtol), True


def warn_collinearity(x: Array, name: str, labels: Sequence[str]) -> None:
    """Warn about columns of a data matrix that are collinear with other columns."""
    disable = "To disable collinearity checks, set options.collinear_atol = options.collinear_rtol = 0."
    collinear, successful = precisely_identify_collinearity(x)
    if not successful:
        warn(f"Failed to compute the QR decomposition of {name} while checking for collinearity issues. {disable}")
    if collinear.any():
        flagged = ", ".join(l for l, c in zip(labels, collinear) if c)
        warn(f"Detected collinearity issues with [{flagged}] and at least one other column in {name}. {disable}")


def warn_singularity(x: Array, name: str) -> None:
    """Warn about a matrix with a condition number above the singularity tolerance."""
    disable = "To disable singularity checks, set options.singular_tol = numpy.inf."
    singular, successful, condition = precisely_identify_singularity(x)
    if not successful:
        warn(f"Failed to compute the condition number of {name} while checking for singularity. {disable}")
    elif singular:
        qualifier = "" if condition == np.inf else "nearly "
        condition_string = format_number(condition).strip()
        warn(f"Detected that {name} is {qualifier}singular with condition number {condition_string}. {disable}")


def require_psd(x: Array, name: str) -> None:
    """Raise an exception for a matrix that is not positive semidefinite."""
    disable = "To disable PSD checks, set options.psd_atol = options.psd_rtol = numpy.inf."
    psd, successful = precisely_identify_psd(x)
    if not successful:
        raise ValueError(f"Failed to compute the SVD of {name} while checking that it is PSD. {disable}")
    if not psd:
        raise ValueError(f"{name} must be a PSD matrix. {disable}")


def precisely_invert(x: Array) -> Tuple[Array, bool]:
    """Invert a matrix, returning NaNs along with a failure flag if it cannot be precisely inverted."""
    if x.size == 0:
        return x, True
    try:
        with strict_linear_algebra():
            return scipy.linalg.inv(x), True
    except LINALG_FAILURES:
        return np.full_like(x, np.nan), False


def approximately_solve(a: Array, b: Array) -> Tuple[Array, Optional[str]]:
    """Solve a linear system. If it cannot be solved directly, multiply by the best available replacement for the
    inverse and describe the replacement.
    """
    if b.size == 0:
        return b, None
    try:
        with strict_linear_algebra():
            return scipy.linalg.solve(a, b), None
    except (*LINALG_FAILURES, FloatingPointError):
        inverse, replacement = approximately_invert(a)
        return inverse @ b, replacement


def approximately_invert(x: Array) -> Tuple[Array, Optional[str]]:
    """Invert a matrix, falling back to less precise replacements for the inverse. Along with the inverse, return a
    description of any replacement that was used.
    """
    if x.size == 0:
        return np.full_like(x, np.nan), None

    # order the candidates from most to least precise
    candidates: List[Tuple[Callable[[Array], Array], Optional[str]]] = [(scipy.linalg.pinv, None)]
    if not options.pseudo_inverses:
        candidates = [(scipy.linalg.inv, None), (scipy.linalg.pinv, "its Moore-Penrose pseudo inverse")]
    candidates.append((
        lambda y: np.diag(1 / y.diagonal()),
        "inverted diagonal terms because the Moore-Penrose pseudo-inverse could not be computed"
    ))

    # use the first candidate that succeeds
    for invert, replacement in candidates:
        try:
            with strict_linear_algebra():
                return invert(x), replacement
        except ValueError:
            return np.full_like(x, np.nan), "null values"
        except (scipy.linalg.LinAlgError, scipy.linalg.LinAlgWarning):
            continue
    return np.full_like(x, np.nan), candidates[-1][1]
