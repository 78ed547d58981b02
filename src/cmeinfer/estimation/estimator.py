#########################################################################################
##
##                       MAXIMUM-LIKELIHOOD PARAMETER ESTIMATION
##                           (estimation/estimator.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from ..errors import ConfigurationError
from ..interfaces import StateSpace
from ..likelihood import LikelihoodEngine
from .backends import EstimateResult, estimate, get_backend
from .parameters import Parameter, log_parameters


logger = logging.getLogger(__name__)

__all__ = ["LogSpaceObjective", "FitResult", "ParameterEstimator"]


# OBJECTIVE =============================================================================

class LogSpaceObjective:
    """Negative log-likelihood as a function of ``log`` parameters.

    Parameters
    ----------
    engine : LikelihoodEngine
        Engine evaluated at ``exp(x)``.
    state_space : StateSpace, optional
        Frozen state set reused by every evaluation.
    """

    def __init__(self, engine: LikelihoodEngine, state_space: StateSpace | None = None):
        self.engine = engine
        self.state_space = state_space


    def __call__(self, x) -> float:
        value, _ = self.engine.minus_log_likelihood(x, self.state_space, False)
        return value


    def with_gradient(self, x) -> tuple[float, np.ndarray]:
        return self.engine.minus_log_likelihood(x, self.state_space, True)


    def log_density(self, x) -> float:
        return -self(x)


# RESULT ================================================================================

@dataclass
class FitResult:
    """Outcome of :meth:`ParameterEstimator.maximize_likelihood`.

    Attributes
    ----------
    parameters : np.ndarray
        Fitted model-space values, in fit order.
    log_likelihood : float
        Log-likelihood at ``parameters`` (log-prior included).
    names : list[str]
        Fitted parameter names.
    result : EstimateResult
        Raw back-end output; ``result.x`` holds the log-space point.
    """

    parameters: np.ndarray
    log_likelihood: float
    names: list[str]
    result: EstimateResult
    state_space: StateSpace | None = field(default=None, repr=False)


    @property
    def backend(self) -> str:
        return self.result.backend


    @property
    def chains(self) -> list:
        """Metropolis-Hastings chains (empty for optimizers)."""
        return self.result.diagnostics.get("chains", [])


    def __repr__(self) -> str:
        pars = ", ".join(f"{n}={v:.6g}" for n, v in zip(self.names, self.parameters))
        return f"FitResult({self.backend}, logL={self.log_likelihood:.6g}, {pars})"


# ESTIMATOR =============================================================================

class ParameterEstimator:
    """Maximum-likelihood fitting of an FSP model to single-cell data.

    The estimator solves the model once at the initial guess, freezes the
    resulting state space and FSP bounds, and minimises ``-logL(exp(x))``
    over log-parameters with the selected back-end.

    Parameters
    ----------
    engine : LikelihoodEngine
        Likelihood of the data under the model.

    Example
    -------
    .. code-block:: python

        est = ParameterEstimator(LikelihoodEngine(solver, data))
        fit = est.maximize_likelihood(backend="gradient")
        est.display()
        chains = est.maximize_likelihood(
            backend="metropolis_hastings", options={"num_chains": 4, "seed": 1}
        ).chains
    """

    def __init__(self, engine: LikelihoodEngine):
        self.engine = engine
        self.state_space: StateSpace | None = None
        self.parameters: list[Parameter] = []
        self.last_fit: FitResult | None = None


    # STATE SPACE -----------------------------------------------------------------------

    def freeze_state_space(self, pars=None) -> StateSpace | None:
        """Solve once at *pars* and reuse the state set and bounds afterwards."""
        solution = self.engine.solve(pars)
        self.state_space = solution.state_space
        bounds = solution.bounds
        if bounds is None and solution.state_space is not None:
            bounds = solution.state_space.bounds
        if bounds is not None:
            self.engine = self.engine.with_options(fsp_options={"bounds": bounds})
        logger.info(
            "Frozen state space with %s state(s)",
            "unknown" if self.state_space is None else self.state_space.n_states,
        )
        return self.state_space


    # FITTING ---------------------------------------------------------------------------

    def objective(self, backend) -> LogSpaceObjective:
        """Objective for *backend*; gradient and swarm back-ends disable FSP expansion."""
        engine = self.engine
        if getattr(backend, "unbounded_fsp", False):
            engine = engine.with_options(fsp_options={"fsp_tol": np.inf})
        return LogSpaceObjective(engine, self.state_space)


    def maximize_likelihood(self, par_guess=None, backend="simplex", options=None, **kwargs) -> FitResult:
        """Fit the parameters selected by ``model_vars_to_fit``.

        Parameters
        ----------
        par_guess : array_like, optional
            Positive model-space starting values; defaults to the solver's
            current values.
        backend : str or back-end instance
            ``"simplex"`` (default), ``"gradient"``, ``"particle_swarm"`` or
            ``"metropolis_hastings"``.
        options : mapping, optional
            Back-end option overrides.
        **kwargs
            Further back-end option overrides.

        Returns
        -------
        FitResult
        """
        if isinstance(backend, str):
            backend = get_backend(backend, options, **kwargs)
        elif options or kwargs:
            raise ConfigurationError("options can only be given with a back-end name")

        guess = (
            self.engine.initial_guess() if par_guess is None
            else np.asarray(par_guess, dtype=float).reshape(-1)
        )
        if guess.size != self.engine.fit_indices.size:
            raise ConfigurationError(
                f"Expected {self.engine.fit_indices.size} starting value(s), got {guess.size}"
            )
        if np.any(guess <= 0) or not np.all(np.isfinite(guess)):
            raise ConfigurationError("Starting values must be positive and finite")

        names = [self.engine.parameter_names[i] for i in self.engine.fit_indices]
        self.parameters = log_parameters(names, guess, self.engine.fit_indices)

        self.freeze_state_space(guess)
        result = estimate(self.objective(backend), np.log(guess), backend)

        for p, xi in zip(self.parameters, result.x):
            p.set(xi)

        fit = FitResult(
            parameters=np.exp(result.x),
            log_likelihood=-result.value,
            names=names,
            result=result,
            state_space=self.state_space,
        )
        self.last_fit = fit
        return fit


    # DISPLAY ---------------------------------------------------------------------------

    def display(self) -> None:
        """Print a summary table of the fitted parameters."""
        print("=" * 60)
        print("Parameter Estimation Results")
        print("=" * 60)

        if self.last_fit is not None:
            print(f"  back-end        : {self.last_fit.backend}")
            print(f"  log-likelihood  : {self.last_fit.log_likelihood:.6g}")
            print("-" * 40)

        for p in self.parameters:
            print(f"  {p.name:32s}  x={p.value:.6g}  ->  {p():.6g}")

        print("=" * 60)
