"""Public-facing objects."""

from . import exceptions, options
from .configurations.formulation import Formulation
from .configurations.integration import Integration
from .configurations.iteration import Iteration
from .configurations.optimization import Optimization
from .construction import build_blp_instruments, build_id_data, build_integration, build_matrix, build_ownership
from .dynamic.estimation import DynamicProblem
from .dynamic.model import DynamicSolution, RustModel
from .economies.choice import ChoiceProblem
from .economies.problem import Problem
from .economies.simulation import Simulation
from .primitives import Agents, Products
from .results.choice_results import ChoiceResults
from .results.dynamic_results import DynamicResults
from .results.problem_results import ProblemResults
from .results.simulation_results import SimulationResults
from .utilities.basics import parallel
from .version import __version__

__all__ = [
    'exceptions', 'options', 'Formulation', 'Integration', 'Iteration', 'Optimization', 'build_blp_instruments',
    'build_id_data', 'build_integration', 'build_matrix', 'build_ownership', 'DynamicProblem', 'DynamicSolution',
    'RustModel', 'ChoiceProblem', 'Problem', 'Simulation', 'Agents', 'Products', 'ChoiceResults', 'DynamicResults',
    'ProblemResults', 'SimulationResults', 'parallel', '__version__'
]
