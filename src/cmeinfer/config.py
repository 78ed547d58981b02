#########################################################################################
##
##                          SOLVER, DISTORTION AND FIT OPTIONS
##                                    (config.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from .errors import ConfigurationError


# CONSTANTS =============================================================================

PROBABILITY_FLOOR = 1e-10

TRUNCATION_POLICIES = ("discard", "warn", "renormalize")


# OPTION CONTAINERS =====================================================================

@dataclass(frozen=True)
class FspOptions:
    """Options forwarded to the external FSP solver.

    Parameters
    ----------
    fsp_tol : float
        FSP truncation tolerance. ``np.inf`` disables adaptive expansion so the
        solver keeps the supplied (frozen) projection.
    integrator_rel_tol : float
        Relative tolerance of the ODE integrator.
    integrator_abs_tol : float
        Absolute tolerance of the ODE integrator.
    ode_solver : str
        Integrator selection passed through to the solver.
    verbose : bool
        Solver verbosity.
    bounds : array_like, optional
        Projection bounds from a previous solve.
    """

    fsp_tol: float = 1e-3
    integrator_rel_tol: float = 1e-2
    integrator_abs_tol: float = 1e-4
    ode_solver: str = "auto"
    verbose: bool = False
    bounds: Any = None


@dataclass(frozen=True)
class PdoOptions:
    """Observation settings: unobserved species and the distortion operator."""

    unobserved_species: tuple[str, ...] = ()
    pdo: Any = None


@dataclass(frozen=True)
class FitOptions:
    """Likelihood / fitting options.

    Parameters
    ----------
    model_vars_to_fit : "all" or sequence of int
        Indices of the model parameters that are fitted. The gradient is
        returned in this order.
    times_to_fit : "all" or sequence of int
        Indices into the data time bins used in the likelihood.
    log_prior : callable, optional
        ``log_prior(pars) -> array_like``; its sum is added to the
        log-likelihood. Evaluated on natural-space (non-log) parameters.
    log_prior_gradient : callable, optional
        ``log_prior_gradient(pars) -> array_like`` added to the gradient when
        sensitivities are computed.
    probability_floor : float
        Lower clamp applied to aligned model probabilities before ``log``.
    truncation : str
        What to do with model mass outside the observed data window:
        ``"discard"``, ``"warn"`` or ``"renormalize"``.
    """

    model_vars_to_fit: str | Sequence[int] = "all"
    times_to_fit: str | Sequence[int] = "all"
    log_prior: Callable[[np.ndarray], Any] | None = None
    log_prior_gradient: Callable[[np.ndarray], Any] | None = None
    probability_floor: float = PROBABILITY_FLOOR
    truncation: str = "discard"

    def __post_init__(self) -> None:
        if self.truncation not in TRUNCATION_POLICIES:
            raise ConfigurationError(
                f"Unknown truncation policy {self.truncation!r}; "
                f"expected one of {TRUNCATION_POLICIES}"
            )
        if not self.probability_floor > 0.0:
            raise ConfigurationError("probability_floor must be positive")


# MERGING ===============================================================================

def merge_options(defaults, overrides: Mapping[str, Any] | Any | None = None, **kwargs):
    """Return a copy of *defaults* with named fields replaced.

    Parameters
    ----------
    defaults : dataclass instance
        Option container with documented defaults.
    overrides : mapping or dataclass, optional
        Field values to override. A dataclass of the same type contributes
        every field that differs from a freshly constructed default.
    **kwargs
        Additional overrides, applied after *overrides*.

    Returns
    -------
    dataclass instance
        New instance; *defaults* is not modified.

    Raises
    ------
    ConfigurationError
        If an override names a field the container does not have.
    """
    if not dataclasses.is_dataclass(defaults) or isinstance(defaults, type):
        raise TypeError("merge_options expects a dataclass instance as defaults")

    changes: dict[str, Any] = {}
    if overrides is not None:
        if dataclasses.is_dataclass(overrides):
            if type(overrides) is not type(defaults):
                raise ConfigurationError(
                    f"Cannot merge {type(overrides).__name__} into "
                    f"{type(defaults).__name__}"
                )
            fresh = type(defaults)()
            for f in dataclasses.fields(overrides):
                value = getattr(overrides, f.name)
                if not _same(value, getattr(fresh, f.name)):
                    changes[f.name] = value
        else:
            changes.update(dict(overrides))
    changes.update(kwargs)

    known = {f.name for f in dataclasses.fields(defaults)}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown option(s) for {type(defaults).__name__}: {', '.join(unknown)}. "
            f"Valid options are: {', '.join(sorted(known))}"
        )
    return dataclasses.replace(defaults, **changes)


def _same(a, b) -> bool:
    if a is b:
        return True
    try:
        return bool(np.all(a == b)) if type(a) is type(b) else False
    except (TypeError, ValueError):
        return False
