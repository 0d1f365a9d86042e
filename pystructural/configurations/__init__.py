"""Configuration classes."""

from .iteration import Iteration
from .integration import Integration
from .formulation import Formulation
from .optimization import Optimization
