#########################################################################################
##
##                    RANDOM-WALK METROPOLIS-HASTINGS SAMPLING
##                            (estimation/mcmc.py)
##
##         Single chains with burn-in and thinning, and independent chains
##         run concurrently with statistically independent random streams.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from ..errors import EstimationError


logger = logging.getLogger(__name__)

__all__ = [
    "gaussian_proposal",
    "ChainResult",
    "metropolis_hastings_sample",
    "run_chains",
    "best_chain",
]


# PROPOSALS =============================================================================

def gaussian_proposal(scale: float = 0.01) -> Callable[[np.ndarray, np.random.Generator], np.ndarray]:
    """Symmetric random-walk proposal ``x + scale * N(0, I)``."""
    def _propose(x: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        return x + scale * rng.standard_normal(x.shape)
    return _propose


# RESULT ================================================================================

@dataclass
class ChainResult:
    """Output of one Metropolis-Hastings chain.

    Attributes
    ----------
    samples : np.ndarray
        Retained states, shape ``(n_samples, n_params)``.
    log_density : np.ndarray
        Log-density of each retained state.
    accepted : np.ndarray
        Acceptance flag of every proposal, burn-in included.
    x_best : np.ndarray
        Highest-density state visited.
    f_best : float
        Log-density at ``x_best``.
    chain_id : int
    error : str or None
        Failure message when the chain raised; all arrays are then empty.
    """

    samples: np.ndarray
    log_density: np.ndarray
    accepted: np.ndarray
    x_best: np.ndarray
    f_best: float
    chain_id: int = 0
    error: str | None = None
    n_evaluations: int = field(default=0)


    @property
    def failed(self) -> bool:
        return self.error is not None


    @property
    def acceptance_rate(self) -> float:
        return float(self.accepted.mean()) if self.accepted.size else 0.0


    def __repr__(self) -> str:
        if self.failed:
            return f"ChainResult(chain={self.chain_id}, FAILED: {self.error})"
        return (
            f"ChainResult(chain={self.chain_id}, n_samples={len(self.samples)}, "
            f"acceptance={self.acceptance_rate:.1%}, f_best={self.f_best:.6g})"
        )


# SINGLE CHAIN ==========================================================================

def _finite_or_minus_inf(value) -> float:
    value = float(value)
    return value if np.isfinite(value) else -np.inf


def metropolis_hastings_sample(
    log_density: Callable[[np.ndarray], float],
    x0,
    n_samples: int = 1000,
    *,
    burn_in: int = 100,
    thin: int = 1,
    proposal: Callable[[np.ndarray, np.random.Generator], np.ndarray] | None = None,
    proposal_scale: float = 0.01,
    rng: np.random.Generator | None = None,
    chain_id: int = 0,
) -> ChainResult:
    """Random-walk Metropolis-Hastings sampler.

    Runs ``burn_in + n_samples * thin`` steps and keeps every ``thin``-th
    state after burn-in. Proposals are assumed symmetric, so a move is
    accepted with probability ``min(1, exp(f(x') - f(x)))``. Non-finite
    densities count as ``-inf`` and are never accepted.

    Parameters
    ----------
    log_density : callable
        Unnormalised log target, ``x -> float``.
    x0 : array_like
        Starting state; must have a finite log-density.
    n_samples : int
        Number of retained samples.
    burn_in : int
        Initial steps discarded.
    thin : int
        Keep one state every *thin* steps.
    proposal : callable, optional
        Symmetric proposal ``(x, rng) -> x'``; defaults to
        :func:`gaussian_proposal` with *proposal_scale*.
    proposal_scale : float
        Standard deviation of the default Gaussian proposal.
    rng : numpy.random.Generator, optional
        Random stream; a fresh unseeded generator when omitted.

    Returns
    -------
    ChainResult
    """
    if n_samples < 1:
        raise ValueError("n_samples must be >= 1")
    if burn_in < 0:
        raise ValueError("burn_in must be >= 0")
    if thin < 1:
        raise ValueError("thin must be >= 1")

    rng = rng if rng is not None else np.random.default_rng()
    propose = proposal if proposal is not None else gaussian_proposal(proposal_scale)

    x = np.asarray(x0, dtype=float).reshape(-1).copy()
    f = _finite_or_minus_inf(log_density(x))
    if not np.isfinite(f):
        raise EstimationError(f"Chain {chain_id}: log-density at the starting point is not finite")

    n_steps = burn_in + n_samples * thin
    samples = np.empty((n_samples, x.size))
    values = np.empty(n_samples)
    accepted = np.zeros(n_steps, dtype=bool)
    x_best, f_best = x.copy(), f

    k = 0
    for step in range(n_steps):
        x_prop = np.asarray(propose(x, rng), dtype=float)
        f_prop = _finite_or_minus_inf(log_density(x_prop))

        if np.log(rng.random()) < f_prop - f:
            x, f = x_prop, f_prop
            accepted[step] = True
            if f > f_best:
                x_best, f_best = x.copy(), f

        if step >= burn_in and (step - burn_in + 1) % thin == 0:
            samples[k] = x
            values[k] = f
            k += 1

    logger.debug(
        "Chain %d complete: %d samples, acceptance %.1f%%",
        chain_id, n_samples, 100.0 * accepted.mean(),
    )
    return ChainResult(
        samples=samples,
        log_density=values,
        accepted=accepted,
        x_best=x_best,
        f_best=float(f_best),
        chain_id=chain_id,
        n_evaluations=n_steps + 1,
    )


# MULTIPLE CHAINS =======================================================================

def _failed_chain(chain_id: int, n_params: int, exc: BaseException) -> ChainResult:
    return ChainResult(
        samples=np.empty((0, n_params)),
        log_density=np.empty(0),
        accepted=np.empty(0, dtype=bool),
        x_best=np.full(n_params, np.nan),
        f_best=-np.inf,
        chain_id=chain_id,
        error=f"{type(exc).__name__}: {exc}",
    )


def run_chains(
    log_density: Callable[[np.ndarray], float],
    x0,
    n_chains: int = 1,
    *,
    seed=None,
    max_workers: int | None = None,
    **sampler_kwargs,
) -> list[ChainResult]:
    """Run independent Metropolis-Hastings chains concurrently.

    Each chain draws from its own generator spawned from
    ``numpy.random.SeedSequence(seed)``, so chains are independent and a
    fixed *seed* reproduces every chain. A chain that raises is reported as
    a failed :class:`ChainResult` and the others continue.

    Parameters
    ----------
    log_density : callable
        Unnormalised log target.
    x0 : array_like
        Common starting state.
    n_chains : int
        Number of chains.
    seed : int or SeedSequence, optional
        Root seed.
    max_workers : int, optional
        Thread-pool size; defaults to *n_chains*.
    **sampler_kwargs
        Forwarded to :func:`metropolis_hastings_sample`.

    Returns
    -------
    list[ChainResult]
        In chain order.

    Raises
    ------
    EstimationError
        If every chain failed.
    """
    if n_chains < 1:
        raise ValueError("n_chains must be >= 1")

    x0 = np.asarray(x0, dtype=float).reshape(-1)
    root = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    streams = [np.random.default_rng(s) for s in root.spawn(n_chains)]

    def _run(i: int) -> ChainResult:
        try:
            return metropolis_hastings_sample(
                log_density, x0, rng=streams[i], chain_id=i, **sampler_kwargs
            )
        except Exception as exc:
            logger.warning("Chain %d failed: %s", i, exc)
            return _failed_chain(i, x0.size, exc)

    if n_chains == 1:
        results = [_run(0)]
    else:
        with ThreadPoolExecutor(max_workers=max_workers or n_chains) as pool:
            results = list(pool.map(_run, range(n_chains)))

    if all(r.failed for r in results):
        raise EstimationError(
            "All Metropolis-Hastings chains failed: "
            + "; ".join(f"chain {r.chain_id}: {r.error}" for r in results)
        )
    return results


def best_chain(chains: list[ChainResult]) -> ChainResult:
    """Successful chain with the highest ``f_best``; ties go to the lowest chain id."""
    ok = [c for c in chains if not c.failed]
    if not ok:
        raise EstimationError("No successful chain to select from")
    return max(ok, key=lambda c: (c.f_best, -c.chain_id))
