"""
diffcoexnet: co-expression networks, modules and differential co-expression tests.

ExpressionMatrix → select_soft_threshold → build_network → detect_modules
ExpressionMatrix subsets (by group) → sled_test, swept by run_sweep
"""

from .config import ModuleParams, NetworkParams, SledParams, ThresholdParams
from .errors import (
    ComparisonCancelled,
    ConfigurationError,
    DegenerateFeatureError,
    DiffCoexError,
    InputShapeError,
    NumericalInstabilityError,
    ThresholdSelectionFailure,
)
from .expression import ExpressionMatrix, correlation_matrix
from .modules import (
    UNASSIGNED,
    Dendrogram,
    ModuleAssignment,
    ModuleResult,
    cut_tree,
    detect_modules,
    merge_close_modules,
    module_eigengenes,
)
from .network import NetworkResult, build_adjacency, build_network, soft_threshold, topological_overlap
from .sled import DifferenceTestResult, sled_test, sparse_leading_eigen
from .sweep import (
    Comparison,
    SweepResult,
    marker_split_comparisons,
    pairwise_comparisons,
    run_sweep,
)
from .threshold import ThresholdResult, select_soft_threshold

__version__ = "0.1.0"
