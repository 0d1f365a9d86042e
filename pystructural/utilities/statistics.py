"""Linear IV, GMM, and likelihood covariance routines."""

from typing import List, Optional, Tuple, Type

import numpy as np

from .algebra import approximately_invert
from .basics import Array, Error, Groups, InversionReplacementError
from .. import exceptions


def symmetrize(matrix: Array) -> Array:
    """Average a square matrix with its transpose."""
    return np.c_[matrix + matrix.T] / 2


def invert_with_errors(matrix: Array, error: Type[InversionReplacementError], errors: List[Error]) -> Array:
    """Approximately invert a matrix, recording an error if the inverse had to be replaced."""
    inverse, replacement = approximately_invert(matrix)
    if replacement:
        errors.append(error(matrix, replacement))
    return inverse


class IV(object):
    """Two-stage least squares with a fixed weighting matrix. The inverse of X'ZWZ'X is computed once so that
    parameters can be re-estimated cheaply for different left-hand sides.
    """

    covariances: Array
    errors: List[Error]

    def __init__(self, X: Array, Z: Array, W: Array) -> None:
        self.errors = []
        ZX = Z.T @ X
        self.covariances = invert_with_errors(
            ZX.T @ W @ ZX, exceptions.LinearParameterCovariancesInversionError, self.errors
        )

    def estimate(
            self, X: Array, Z: Array, W: Array, y: Array,
            jacobian: Optional[Array] = None) -> Tuple[Array, Array, Optional[Array]]:
        """Estimate parameters and compute residuals. A Jacobian of y is projected into one of residuals."""
        projection = self.covariances @ X.T @ Z @ W
        parameters = projection @ (Z.T @ y)
        residuals = y - X @ parameters
        if jacobian is not None:
            jacobian = jacobian - X @ (projection @ (Z.T @ jacobian))
        return parameters, residuals, jacobian


def compute_gmm_weights(S: Array) -> Tuple[Array, List[Error]]:
    """Invert moment covariances into a GMM weighting matrix."""
    errors: List[Error] = []
    W = invert_with_errors(S, exceptions.GMMMomentCovariancesInversionError, errors)
    if np.isnan(W).any():
        errors.append(exceptions.InvalidMomentCovariancesError())
    return symmetrize(W), errors


def compute_gmm_moment_covariances(
        u: Array, Z: Array, covariance_type: str, clustering_ids: Optional[Array], center_moments: bool) -> Array:
    """Estimate covariances between moments under homoskedasticity, heteroskedasticity, or clustering."""
    if covariance_type == 'unadjusted':
        return symmetrize(np.var(u) * (Z.T @ Z) / u.shape[0])
    g = u * Z
    if center_moments:
        g = g - g.mean(axis=0)
    if covariance_type == 'clustered':
        g = Groups(clustering_ids).sum(g)
    return symmetrize(g.T @ g / u.shape[0])


def compute_gmm_parameter_covariances(W: Array, S: Array, mean_G: Array, se_type: str) -> Tuple[Array, List[Error]]:
    """Estimate GMM parameter covariances. Unless errors are unadjusted, the bread is wrapped around moment
    covariances in the usual sandwich.
    """
    errors: List[Error] = []
    bread = invert_with_errors(mean_G.T @ W @ mean_G, exceptions.GMMParameterCovariancesInversionError, errors)
    if se_type == 'unadjusted':
        return symmetrize(bread), errors
    with np.errstate(invalid='ignore'):
        meat = mean_G.T @ W @ S @ W @ mean_G
        return symmetrize(bread @ meat @ bread), errors


def compute_likelihood_parameter_covariances(information: Array) -> Tuple[Array, List[Error]]:
    """Estimate maximum likelihood parameter covariances by inverting an information matrix, which is either the
    negative Hessian of the log-likelihood or the BHHH outer product of scores.
    """
    errors: List[Error] = []
    covariances = invert_with_errors(information, exceptions.InformationMatrixInversionError, errors)
    if np.isnan(covariances).any() or (np.diag(covariances) < 0).any():
        errors.append(exceptions.InvalidParameterCovariancesError())
    return symmetrize(covariances), errors


def compute_gmm_moments_mean(u: Array, Z: Array) -> Array:
    return np.c_[(u * Z).mean(axis=0)]
