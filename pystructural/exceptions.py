"""Exceptions raised, warned, or reverted by structural estimation routines."""

import collections
from typing import Any, List, Sequence

from .utilities.basics import Error, InversionReplacementError, MultipleReversionError, NumericalError, output


class MultipleErrors(Error):
    """Multiple errors that occurred around the same time."""

    _errors: List[Error]

    def __new__(cls, errors: Sequence[Error]) -> Any:
        """Defer to the class of a singular error."""
        if len(errors) == 1:
            return next(iter(errors))
        return super().__new__(cls)

    def __init__(self, errors: Sequence[Error]) -> None:
        """Store distinct errors."""
        super().__init__()
        self._errors = list(collections.OrderedDict.fromkeys(errors))

    def __str__(self) -> str:
        """Combine all the error messages."""
        return "\n".join(str(e) for e in self._errors)


def handle_errors(errors: Sequence[Error], error_behavior: str = 'raise') -> None:
    """Raise any errors together or, when error_behavior is 'warn', output them and carry on."""
    if not errors:
        return
    if error_behavior == 'raise':
        raise MultipleErrors(errors)
    output("")
    output(MultipleErrors(errors))
    output("")


class InvalidParameterCovariancesError(Error):
    """Failed to compute standard errors because of invalid estimated parameter covariances."""


class InvalidMomentCovariancesError(Error):
    """Failed to compute a weighting matrix because of invalid estimated covariances of GMM moments."""


class DeltaNumericalError(NumericalError):
    r"""Encountered a numerical error when computing :math:`\delta`.

    This problem is often due to prior problems, overflow, or nonpositive shares, and can sometimes be mitigated by
    choosing smaller initial parameter values, setting more conservative bounds on parameters or shares, rescaling data,
    or using different optimization, iteration, or integration configurations.

    """


class XiByThetaJacobianNumericalError(NumericalError):
    r"""Encountered a numerical error when computing the Jacobian (holding :math:`\beta` fixed) of :math:`\xi`
    (equivalently, of :math:`\delta`) with respect to :math:`\theta`.

    """


class EquilibriumPricesNumericalError(NumericalError):
    """Encountered a numerical error when computing equilibrium prices.

    This problem is often due to overflow and can sometimes be mitigated by making sure that the specified parameters
    are reasonable. For example, the parameters on prices should generally imply a downward sloping demand curve.

    """


class EquilibriumSharesNumericalError(NumericalError):
    """Encountered a numerical error when computing shares at equilibrium prices."""


class PostEstimationNumericalError(NumericalError):
    """Encountered a numerical error when computing a post-estimation output."""


class LikelihoodNumericalError(NumericalError):
    """Encountered a numerical error when computing a log-likelihood.

    This problem is often due to choice probabilities that are numerically zero, and can sometimes be mitigated by
    choosing more reasonable initial parameter values or setting more conservative parameter bounds.

    """


class ValueFunctionNumericalError(NumericalError):
    """Encountered a numerical error when computing the integrated value function.

    This problem is often due to overflow of choice-specific values and can sometimes be mitigated by rescaling
    costs or choosing more reasonable parameter values.

    """


class ThetaConvergenceError(Error):
    """The optimization routine failed to converge.

    This problem can sometimes be mitigated by choosing more reasonable initial parameter values, setting more
    conservative bounds, or configuring other optimization settings.

    """


class DeltaConvergenceError(Error):
    r"""The fixed point computation of :math:`\delta` failed to converge.

    This problem can sometimes be mitigated by increasing the maximum number of fixed point iterations, increasing the
    fixed point tolerance, choosing more reasonable initial parameter values, or setting more conservative parameter or
    share bounds.

    """


class EquilibriumPricesConvergenceError(Error):
    """The fixed point computation of equilibrium prices failed to converge.

    This problem can sometimes be mitigated by increasing the maximum number of fixed point iterations, increasing the
    fixed point tolerance, or configuring other iteration settings.

    """


class BestResponseConvergenceError(Error):
    """A firm's profit maximization failed to converge when computing best-response prices.

    This problem can sometimes be mitigated by configuring other optimization settings or making sure that the
    specified parameters imply a downward sloping demand curve.

    """


class ValueFunctionConvergenceError(Error):
    """The fixed point computation of the integrated value function failed to converge.

    This problem can sometimes be mitigated by increasing the maximum number of fixed point iterations, using a
    Newton-type iteration routine, or choosing a smaller discount factor.

    """


class CCPConvergenceError(Error):
    """The nested pseudo-likelihood iteration over conditional choice probabilities failed to converge.

    This problem can sometimes be mitigated by increasing the maximum number of policy iterations or loosening the
    tolerance.

    """


class ObjectiveReversionError(Error):
    """Reverted a problematic objective value."""


class GradientReversionError(MultipleReversionError):
    """Reverted problematic elements in the objective gradient."""


class DeltaReversionError(MultipleReversionError):
    r"""Reverted problematic elements in :math:`\delta`."""


class XiByThetaJacobianReversionError(MultipleReversionError):
    r"""Reverted problematic elements in the Jacobian (holding :math:`\beta` fixed) of :math:`\xi` (equivalently, of
    :math:`\delta`) with respect to :math:`\theta`.

    """


class SharesByXiJacobianInversionError(InversionReplacementError):
    r"""Failed to invert a Jacobian of shares with respect to :math:`\xi` when computing the Jacobian (holding
    :math:`\beta` fixed) of :math:`\xi` (equivalently, of :math:`\delta`) with respect to :math:`\theta`.

    """


class IntraFirmJacobianInversionError(InversionReplacementError):
    r"""Failed to invert an intra-firm Jacobian of shares with respect to prices."""


class LinearParameterCovariancesInversionError(InversionReplacementError):
    """Failed to invert an estimated covariance matrix of linear parameters.

    One or more data matrices may be highly collinear.

    """


class GMMParameterCovariancesInversionError(InversionReplacementError):
    """Failed to invert an estimated covariance matrix of GMM parameters.

    One or more data matrices may be highly collinear.

    """


class GMMMomentCovariancesInversionError(InversionReplacementError):
    """Failed to invert an estimated covariance matrix of GMM moments.

    One or more data matrices may be highly collinear.

    """


class InformationMatrixInversionError(InversionReplacementError):
    """Failed to invert an information matrix when computing maximum likelihood standard errors.

    Some parameters may not be identified from the data.

    """


class ValueJacobianInversionError(InversionReplacementError):
    r"""Failed to invert :math:`I - \beta F` when computing value function derivatives or CCP representations of the
    value function.

    """
