"""General functionality."""

from .statistics import IV, compute_gmm_weights
from .basics import (
    parallel, generate_items, extract_matrix, extract_size, output, format_seconds, format_number, format_se, Groups
)
from .algebra import precisely_invert, approximately_solve, approximately_invert
