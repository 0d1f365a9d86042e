r"""Global options.

Attributes
----------
digits : `int`
    Number of digits displayed by status updates and result tables. The default number of digits is ``7``. The number
    of digits can be changed to, for example, ``2``, with ``pystructural.options.digits = 2``.
verbose : `bool`
    Whether to output status updates. By default, verbosity is turned on. Verbosity can be turned off with
    ``pystructural.options.verbose = False``.
verbose_tracebacks : `bool`
    Whether to include full tracebacks in error messages. By default, full tracebacks are turned off. Tracebacks can be
    turned on with ``pystructural.options.verbose_tracebacks = True``.
verbose_output : `callable`
    Function used to output status updates. The default function is simply ``print``. The function can be changed, for
    example, to send updates to a logger, with ``pystructural.options.verbose_output = logging.getLogger().info``.
flush_output : `bool`
    Whether to call ``sys.stdout.flush()`` after outputting a status update. By default, output is not flushed.
dtype : `dtype`
    The data type used for internal calculations, which is by default ``numpy.float64``. Arrays passed to optimization
    and fixed point routines are always ``numpy.float64``.
finite_differences_epsilon : `float`
    Perturbation :math:`\epsilon` used to numerically approximate derivatives with central finite differences:

    .. math:: f'(x) = \frac{f(x + \epsilon / 2) - f(x - \epsilon / 2)}{\epsilon}.

    By default, this is the square root of the machine epsilon: ``numpy.sqrt(numpy.finfo(options.dtype).eps)``.

pseudo_inverses : `bool`
    Whether to compute Moore-Penrose pseudo-inverses of matrices with :func:`scipy.linalg.pinv` instead of their classic
    inverses with :func:`scipy.linalg.inv`. This is by default ``True``. Using the pseudo-inverse can help alleviate
    problems from, for example, near-singular weighting matrices.
weights_tol : `float`
    Tolerance for detecting integration weights that do not sum to one in each market, which is by default ``1e-10``.
    Warnings can be disabled by setting this to ``numpy.inf``.
singular_tol : `float`
    Tolerance for detecting singular matrices, which is by default ``1 / numpy.finfo(options.dtype).eps``. If a matrix
    has a condition number larger than this tolerance, an error will be reported.
collinear_atol : `float`
    Absolute tolerance for detecting collinear columns in each matrix of product characteristics and instruments:
    :math:`X_1`, :math:`X_2`, :math:`X_3`, and :math:`Z_D`.

    Each matrix is decomposed into a :math:`QR` decomposition and a warning is displayed for any column whose diagonal
    element in :math:`R` has a magnitude less than ``collinear_atol + collinear_rtol * sd`` where ``sd`` is the column's
    standard deviation. The default absolute tolerance is ``1e-10``. To disable collinearity checks, set
    ``pystructural.options.collinear_atol = pystructural.options.collinear_rtol = 0``.

collinear_rtol : `float`
    Relative tolerance for detecting collinear columns, which is by default also ``1e-10``.
psd_atol : `float`
    Absolute tolerance for detecting non-positive semidefinite matrices, such as a custom weighting matrix :math:`W`.
    The default tolerance is ``1e-8``.
psd_rtol : `float`
    Relative tolerance for detecting non-positive semidefinite matrices, which is by default also ``1e-8``.

"""

import numpy as _np


digits = 7
verbose = True
verbose_tracebacks = False
verbose_output = print
flush_output = False
dtype = _np.float64
finite_differences_epsilon = _np.sqrt(_np.finfo(dtype).eps)
pseudo_inverses = True
weights_tol = 1e-10
singular_tol = 1 / _np.finfo(dtype).eps
collinear_atol = collinear_rtol = 1e-10
psd_atol = psd_rtol = 1e-8
