"""Market-level post-estimation outputs."""

from typing import List, Optional, Tuple

from .market import Market
from .. import exceptions
from ..utilities.basics import Array, Error, NumericalErrorHandler


class ResultsMarket(Market):
    """A market in structured estimation results."""

    @NumericalErrorHandler(exceptions.PostEstimationNumericalError)
    def safely_compute_elasticities(self, name: str) -> Tuple[Array, List[Error]]:
        """Compute a matrix of elasticities of shares with respect to a variable, handling any numerical errors."""
        errors: List[Error] = []
        elasticities = self.compute_elasticities(name)
        return elasticities, errors

    @NumericalErrorHandler(exceptions.PostEstimationNumericalError)
    def safely_compute_markups(self) -> Tuple[Array, List[Error]]:
        """Compute Bertrand markups implied by the estimated demand system, handling any numerical errors."""
        eta, errors = self.compute_eta()
        return eta, errors

    @NumericalErrorHandler(exceptions.PostEstimationNumericalError)
    def safely_compute_shares(self, prices: Optional[Array]) -> Tuple[Array, List[Error]]:
        """Compute shares at some prices, handling any numerical errors."""
        errors: List[Error] = []
        shares = self.compute_shares(prices)
        return shares, errors
