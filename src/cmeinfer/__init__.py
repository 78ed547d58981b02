from importlib import metadata

try:
    __version__ = metadata.version("cmeinfer")
except Exception:
    __version__ = "unknown"

from .errors import CmeInferError, ConfigurationError, AlignmentError, EstimationError
from .config import FspOptions, PdoOptions, FitOptions, merge_options, PROBABILITY_FLOOR
from .interfaces import (
    Reducible,
    DenseTensor,
    StateSpace,
    TimeSolution,
    ModelSolution,
    ModelSolver,
    DistortionOperator,
)
from .tensors import marginalize, align_to_shape, align_solution
from .data import DataTensor, load_data
from .likelihood import LikelihoodEngine, LikelihoodResult, log_likelihood
from .fim import FimAggregator, ExperimentEvaluation, evaluate_experiment, compute_single_cell_fim
from .design import optimize_cell_counts, is_locally_optimal, DesignResult
from .estimation import ParameterEstimator, FitResult, estimate
