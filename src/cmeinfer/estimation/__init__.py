#########################################################################################
##
##                         PARAMETER ESTIMATION PUBLIC API
##                           (estimation/__init__.py)
##
#########################################################################################

from .parameters import Parameter, log_parameters
from .mcmc import (
    ChainResult,
    gaussian_proposal,
    metropolis_hastings_sample,
    run_chains,
    best_chain,
)
from .backends import (
    EstimateResult,
    Simplex,
    Gradient,
    ParticleSwarm,
    MetropolisHastings,
    BACKENDS,
    get_backend,
    estimate,
)
from .estimator import LogSpaceObjective, FitResult, ParameterEstimator
