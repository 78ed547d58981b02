#########################################################################################
##
##                          OPTIMIZATION / SAMPLING BACK-ENDS
##                           (estimation/backends.py)
##
##         Every back-end minimises the same objective (a negative
##         log-likelihood in log-parameter space) and is dispatched through
##         :func:`estimate`.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

import numpy as np
import scipy.optimize as sci_opt

from ..config import merge_options
from ..errors import ConfigurationError, EstimationError
from .mcmc import best_chain, run_chains


logger = logging.getLogger(__name__)

__all__ = [
    "EstimateResult",
    "Simplex",
    "Gradient",
    "ParticleSwarm",
    "MetropolisHastings",
    "BACKENDS",
    "get_backend",
    "estimate",
]


# RESULT ================================================================================

@dataclass
class EstimateResult:
    """Back-end result container.

    Attributes
    ----------
    x : np.ndarray
        Best point found, in optimizer space.
    value : float
        Objective (negative log-likelihood) at ``x``.
    nfev : int
        Objective evaluations.
    success : bool
    message : str
    backend : str
        Name of the back-end that produced the result.
    diagnostics : dict
        Back-end specific output (sampler chains, swarm history, ...).
    """

    x: np.ndarray
    value: float
    nfev: int
    success: bool
    message: str
    backend: str = ""
    diagnostics: dict[str, Any] = field(default_factory=dict)


    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        return (
            f"EstimateResult({self.backend}, {status}, value={self.value:.6g}, "
            f"nfev={self.nfev}, x={self.x})"
        )


# OBJECTIVE HELPERS =====================================================================

def _value(objective, x) -> float:
    return float(objective(np.asarray(x, dtype=float)))


# BACK-ENDS =============================================================================

@dataclass
class Simplex:
    """Derivative-free Nelder-Mead search (``scipy.optimize.minimize``)."""

    name: ClassVar[str] = "simplex"
    requires_gradient: ClassVar[bool] = False
    unbounded_fsp: ClassVar[bool] = False

    max_iter: int | None = None
    max_fev: int | None = None
    xatol: float = 1e-4
    fatol: float = 1e-4
    display: bool = False


    def run(self, objective: Callable, x0) -> EstimateResult:
        x0 = np.asarray(x0, dtype=float).reshape(-1)
        opts: dict = {"xatol": self.xatol, "fatol": self.fatol, "disp": self.display}
        if self.max_iter is not None:
            opts["maxiter"] = int(self.max_iter)
        if self.max_fev is not None:
            opts["maxfev"] = int(self.max_fev)

        res = sci_opt.minimize(lambda x: _value(objective, x), x0, method="Nelder-Mead", options=opts)

        return EstimateResult(
            x=np.asarray(res.x, dtype=float),
            value=float(res.fun),
            nfev=int(res.nfev),
            success=bool(res.success),
            message=str(res.message),
            backend=self.name,
            diagnostics={"nit": int(res.nit), "final_simplex": res.final_simplex},
        )


@dataclass
class Gradient:
    """Quasi-Newton descent using the analytic gradient (``scipy.optimize.minimize``).

    The objective must provide ``with_gradient(x) -> (value, gradient)``;
    plain callables fall back to finite differences.
    """

    name: ClassVar[str] = "gradient"
    requires_gradient: ClassVar[bool] = True
    unbounded_fsp: ClassVar[bool] = True

    method: str = "BFGS"
    max_iter: int | None = None
    gtol: float = 1e-5
    display: bool = False


    def run(self, objective: Callable, x0) -> EstimateResult:
        x0 = np.asarray(x0, dtype=float).reshape(-1)
        opts: dict = {"gtol": self.gtol, "disp": self.display}
        if self.max_iter is not None:
            opts["maxiter"] = int(self.max_iter)

        with_gradient = getattr(objective, "with_gradient", None)
        if with_gradient is not None:
            def fun(x):
                f, g = with_gradient(np.asarray(x, dtype=float))
                return float(f), np.asarray(g, dtype=float)
            res = sci_opt.minimize(fun, x0, jac=True, method=self.method, options=opts)
        else:
            logger.debug("Objective has no analytic gradient; using finite differences")
            res = sci_opt.minimize(lambda x: _value(objective, x), x0, method=self.method, options=opts)

        return EstimateResult(
            x=np.asarray(res.x, dtype=float),
            value=float(res.fun),
            nfev=int(res.nfev),
            success=bool(res.success),
            message=str(res.message),
            backend=self.name,
            diagnostics={"nit": int(res.nit), "jac": np.asarray(res.jac)},
        )


@dataclass
class ParticleSwarm:
    """Global particle-swarm search (pymoo ``PSO``).

    The search box is ``x0 ± half_width`` in optimizer space. The initial
    swarm holds ``x0`` and ``swarm_size - 1`` perturbed copies
    ``x0 * (1 + perturbation * N(0, 1))`` clipped to the box.
    """

    name: ClassVar[str] = "particle_swarm"
    requires_gradient: ClassVar[bool] = False
    unbounded_fsp: ClassVar[bool] = True

    swarm_size: int = 25
    max_generations: int = 50
    half_width: float = 5.0
    perturbation: float = 0.1
    seed: int | None = None
    display: bool = False


    def initial_swarm(self, x0, rng: np.random.Generator) -> np.ndarray:
        x0 = np.asarray(x0, dtype=float).reshape(-1)
        lo, hi = x0 - self.half_width, x0 + self.half_width
        noise = rng.standard_normal((self.swarm_size - 1, x0.size))
        swarm = np.vstack([x0, x0 * (1.0 + self.perturbation * noise)])
        return np.clip(swarm, lo, hi)


    def run(self, objective: Callable, x0) -> EstimateResult:
        from pymoo.algorithms.soo.nonconvex.pso import PSO
        from pymoo.core.problem import ElementwiseProblem
        from pymoo.optimize import minimize as pymoo_minimize

        if self.swarm_size < 2:
            raise ConfigurationError("swarm_size must be >= 2")

        x0 = np.asarray(x0, dtype=float).reshape(-1)

        class _SwarmProblem(ElementwiseProblem):
            def __init__(self, cost_fun, xl, xu):
                super().__init__(n_var=xl.size, n_obj=1, xl=xl, xu=xu)
                self.cost_fun = cost_fun

            def _evaluate(self, x, out, *args, **kwargs):
                out["F"] = _value(self.cost_fun, x)

        problem = _SwarmProblem(objective, x0 - self.half_width, x0 + self.half_width)
        rng = np.random.default_rng(self.seed)
        algorithm = PSO(pop_size=self.swarm_size, sampling=self.initial_swarm(x0, rng))

        res = pymoo_minimize(
            problem,
            algorithm,
            ("n_gen", int(self.max_generations)),
            seed=self.seed,
            verbose=self.display,
        )

        x = np.asarray(res.X, dtype=float).reshape(-1)
        return EstimateResult(
            x=x,
            value=float(np.asarray(res.F).reshape(-1)[0]),
            nfev=int(res.algorithm.evaluator.n_eval),
            success=True,
            message=f"completed {self.max_generations} generation(s)",
            backend=self.name,
            diagnostics={"n_gen": int(res.algorithm.n_gen)},
        )


@dataclass
class MetropolisHastings:
    """Random-walk Metropolis-Hastings on ``-objective`` (see :mod:`.mcmc`).

    With ``num_chains > 1`` the chains run concurrently on independent random
    streams; the reported point is the best state of the chain with the
    highest log-density.
    """

    name: ClassVar[str] = "metropolis_hastings"
    requires_gradient: ClassVar[bool] = False
    unbounded_fsp: ClassVar[bool] = False

    number_of_samples: int = 1000
    burn_in: int = 100
    thin: int = 1
    proposal_scale: float = 0.01
    proposal: Callable | None = None
    num_chains: int = 1
    max_workers: int | None = None
    seed: int | None = None


    def run(self, objective: Callable, x0) -> EstimateResult:
        log_density = getattr(objective, "log_density", None)
        if log_density is None:
            def log_density(x):
                return -_value(objective, x)

        chains = run_chains(
            log_density,
            x0,
            self.num_chains,
            seed=self.seed,
            max_workers=self.max_workers,
            n_samples=self.number_of_samples,
            burn_in=self.burn_in,
            thin=self.thin,
            proposal=self.proposal,
            proposal_scale=self.proposal_scale,
        )
        best = best_chain(chains)
        n_failed = sum(c.failed for c in chains)

        logger.info(
            "Metropolis-Hastings: %d chain(s), %d failed, best chain %d (acceptance %.1f%%)",
            len(chains), n_failed, best.chain_id, 100.0 * best.acceptance_rate,
        )

        return EstimateResult(
            x=best.x_best.copy(),
            value=-best.f_best,
            nfev=sum(c.n_evaluations for c in chains),
            success=True,
            message=f"{len(chains) - n_failed} of {len(chains)} chain(s) completed",
            backend=self.name,
            diagnostics={
                "chains": chains,
                "best_chain": best.chain_id,
                "samples": best.samples,
                "log_density": best.log_density,
                "acceptance": best.accepted,
            },
        )


# DISPATCH ==============================================================================

BACKENDS = {
    "simplex": Simplex,
    "fminsearch": Simplex,
    "gradient": Gradient,
    "fminunc": Gradient,
    "particle_swarm": ParticleSwarm,
    "particleswarm": ParticleSwarm,
    "metropolis_hastings": MetropolisHastings,
    "metropolishastings": MetropolisHastings,
}


def get_backend(name: str, options=None, **kwargs):
    """Back-end instance for a tag, with default options overridden.

    Parameters
    ----------
    name : str
        ``"simplex"``, ``"gradient"``, ``"particle_swarm"`` or
        ``"metropolis_hastings"`` (case-insensitive; the legacy names
        ``fminsearch``, ``fminunc``, ``particleSwarm`` and
        ``MetropolisHastings`` are accepted).
    options : mapping or back-end instance, optional
        Overrides applied with :func:`~cmeinfer.config.merge_options`.
    """
    try:
        cls = BACKENDS[str(name).strip().lower()]
    except KeyError:
        raise EstimationError(
            f"Unknown estimation back-end {name!r}. "
            f"Choose from {sorted(set(b.name for b in BACKENDS.values()))}."
        ) from None
    return merge_options(cls(), options, **kwargs)


def estimate(objective: Callable, x0, backend="simplex") -> EstimateResult:
    """Minimise *objective* from *x0* with the selected back-end.

    Parameters
    ----------
    objective : callable
        ``x -> float`` to minimise. Optional methods ``with_gradient`` and
        ``log_density`` are used by the back-ends that need them.
    x0 : array_like
        Starting point in optimizer space.
    backend : str or back-end instance
        See :func:`get_backend`.

    Returns
    -------
    EstimateResult
    """
    if isinstance(backend, str):
        backend = get_backend(backend)
    if not hasattr(backend, "run"):
        raise EstimationError(f"{backend!r} is not an estimation back-end")

    logger.info("Running %s from x0=%s", backend.name, np.asarray(x0))
    result = backend.run(objective, x0)
    logger.info("%s finished: value=%.6g after %d evaluation(s)", backend.name, result.value, result.nfev)
    return result
