#########################################################################################
##
##                         LOG-LIKELIHOOD AND GRADIENT ENGINE
##                                  (likelihood.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
from scipy.ndimage import uniform_filter1d
from scipy.optimize import approx_fprime

from .config import FitOptions, FspOptions, PdoOptions, PROBABILITY_FLOOR, merge_options
from .data import DataTensor
from .errors import ConfigurationError
from .fim import FimAggregator
from .interfaces import ModelSolution, StateSpace, TimeSolution
from .tensors import align_solution, observed_axes, unobserved_axes


logger = logging.getLogger(__name__)

__all__ = [
    "nearest_time_index",
    "resolve_indices",
    "log_likelihood",
    "LikelihoodResult",
    "LikelihoodEngine",
    "LikelihoodSweep",
]


# HELPERS ===============================================================================

def nearest_time_index(model_times, t: float) -> int:
    """Index of the model time closest to *t*; ties resolve to the earlier time."""
    model_times = np.asarray(model_times, dtype=float).reshape(-1)
    if model_times.size == 0:
        raise ValueError("model_times is empty")
    return int(np.argmin(np.abs(model_times - float(t))))


def resolve_indices(selection, n: int, what: str = "index") -> np.ndarray:
    """Expand ``"all"`` or validate an explicit index selection into ``0..n-1``."""
    if isinstance(selection, str):
        if selection != "all":
            raise ConfigurationError(f"Unknown {what} selection {selection!r}")
        return np.arange(n)
    idx = np.asarray(selection, dtype=int).reshape(-1)
    if idx.size and (idx.min() < 0 or idx.max() >= n):
        raise ConfigurationError(f"{what} selection {idx.tolist()} out of range 0..{n - 1}")
    return idx


def _perfect_model(h: np.ndarray, smooth: bool = False) -> float:
    """Log-likelihood of the counts under their own empirical distribution."""
    total = h.sum()
    if total <= 0:
        return 0.0
    q = h.reshape(-1) / total
    if smooth:
        q = uniform_filter1d(q, size=5, mode="nearest")
    hv = h.reshape(-1)
    mask = hv > 0
    return float(np.sum(hv[mask] * np.log(q[mask])))


# RESULT ================================================================================

@dataclass
class LikelihoodResult:
    """Outcome of one likelihood evaluation.

    Attributes
    ----------
    log_likelihood : float
        Total log-likelihood including the log-prior.
    gradient : np.ndarray or None
        Derivative of the log-likelihood with respect to the fitted parameters.
    per_time : np.ndarray
        Log-likelihood contribution of each fit time.
    fit_times : np.ndarray
        Data times used in the fit.
    num_cells : np.ndarray
        Number of cells at each fit time.
    log_prior : float
        Log-prior term included in ``log_likelihood``.
    perfect_model : np.ndarray
        Per-time log-likelihood of the data under its own empirical
        distribution (an upper reference for ``per_time``).
    perfect_model_smoothed : np.ndarray
        Same, with the empirical distribution smoothed by a 5-point moving
        average.
    model_distributions : list[np.ndarray]
        Aligned, floored model distribution at each fit time.
    data_distributions : list[np.ndarray]
        Empirical distribution at each fit time.
    solution : ModelSolution or None
        Solver output used for the evaluation (for state-space reuse).
    """

    log_likelihood: float
    gradient: np.ndarray | None
    per_time: np.ndarray
    fit_times: np.ndarray
    num_cells: np.ndarray
    log_prior: float = 0.0
    perfect_model: np.ndarray = field(default_factory=lambda: np.zeros(0))
    perfect_model_smoothed: np.ndarray = field(default_factory=lambda: np.zeros(0))
    model_distributions: list = field(default_factory=list)
    data_distributions: list = field(default_factory=list)
    solution: ModelSolution | None = None


    def __repr__(self) -> str:
        grad = "None" if self.gradient is None else np.array2string(self.gradient, precision=4)
        return (
            f"LikelihoodResult(logL={self.log_likelihood:.6g}, "
            f"n_times={self.fit_times.size}, gradient={grad})"
        )


# CORE EVALUATION =======================================================================

def log_likelihood(
    data: DataTensor,
    model_times,
    distributions: Sequence[Any],
    sensitivities: Sequence[Sequence[Any]] | None = None,
    *,
    unobserved: Sequence[int] = (),
    axis_order: Sequence[int] | None = None,
    pdo=None,
    times_to_fit="all",
    floor: float = PROBABILITY_FLOOR,
    truncation: str = "discard",
) -> LikelihoodResult:
    """Log-likelihood of count data under solved model distributions.

    For each fit time the nearest model time is located, its distribution is
    reduced to the observed species and aligned to the data slice, and the
    contribution ``Σ counts · log(max(p, floor))`` is accumulated. When
    *sensitivities* are given, the gradient contribution of parameter ``k``
    is ``Σ counts · s_k / max(p, floor)``.

    Parameters
    ----------
    data : DataTensor
        Empirical counts.
    model_times : array_like
        Output time of each entry of *distributions*.
    distributions : sequence
        Model distribution per model time (``Reducible`` or array).
    sensitivities : sequence of sequence, optional
        Per model time, one sensitivity tensor per parameter.
    unobserved : sequence of int
        State-space axes summed out before alignment.
    axis_order : sequence of int, optional
        Permutation mapping the reduced model axes onto the data axes.
    pdo : DistortionOperator, optional
        Observation distortion applied before alignment.
    times_to_fit : "all" or sequence of int
        Data time bins included in the sum.
    floor : float
        Probability floor.
    truncation : str
        Policy for model mass outside the data window.

    Returns
    -------
    LikelihoodResult
    """
    model_times = np.asarray(model_times, dtype=float).reshape(-1)
    if len(distributions) != model_times.size:
        raise ValueError(
            f"{len(distributions)} distribution(s) supplied for {model_times.size} model time(s)"
        )
    if sensitivities is not None and len(sensitivities) != model_times.size:
        raise ValueError("sensitivities must have one entry per model time")

    fit_idx = resolve_indices(times_to_fit, data.n_times, "times_to_fit")
    n_fit = fit_idx.size
    n_par = None if sensitivities is None else len(sensitivities[0])

    per_time = np.zeros(n_fit)
    num_cells = np.zeros(n_fit)
    perfect = np.zeros(n_fit)
    perfect_sm = np.zeros(n_fit)
    dlogl = None if n_par is None else np.zeros((n_par, n_fit))
    model_dists, data_dists = [], []

    aligned_cache: dict[int, Any] = {}

    for col, i in enumerate(fit_idx):
        j = nearest_time_index(model_times, data.times[i])
        if j not in aligned_cache:
            aligned_cache[j] = align_solution(
                distributions[j],
                None if sensitivities is None else sensitivities[j],
                target_shape=data.slice_shape,
                unobserved=unobserved,
                axis_order=axis_order,
                pdo=pdo,
                floor=floor,
                truncation=truncation,
            )
        aligned = aligned_cache[j]

        h = data.slice(int(i))
        pf = aligned.p_floored

        per_time[col] = float(np.sum(h * np.log(pf)))
        num_cells[col] = float(h.sum())
        perfect[col] = _perfect_model(h)
        perfect_sm[col] = _perfect_model(h, smooth=True)

        if dlogl is not None:
            for k, s in enumerate(aligned.sensitivities):
                dlogl[k, col] = float(np.sum(h * s / pf))

        model_dists.append(pf)
        data_dists.append(h / num_cells[col] if num_cells[col] > 0 else h)

    return LikelihoodResult(
        log_likelihood=float(per_time.sum()),
        gradient=None if dlogl is None else dlogl.sum(axis=1),
        per_time=per_time,
        fit_times=data.times[fit_idx],
        num_cells=num_cells,
        perfect_model=perfect,
        perfect_model_smoothed=perfect_sm,
        model_distributions=model_dists,
        data_distributions=data_dists,
    )


# ENGINE ================================================================================

class LikelihoodEngine:
    """Likelihood of a data set under an external FSP model.

    Couples a :class:`~cmeinfer.interfaces.ModelSolver` with a
    :class:`~cmeinfer.data.DataTensor`. Each evaluation solves the model at
    the initial time plus all data times, reduces the output to the species
    linked in the data and scores it with :func:`log_likelihood`.

    Parameters
    ----------
    solver : ModelSolver
        External solver exposing ``species``, ``parameter_names``,
        ``parameter_values``, ``initial_time`` and ``solve``.
    data : DataTensor
        Loaded data; its ``species`` form the species-link table.
    fit_options : FitOptions or mapping, optional
        Overrides of the default :class:`FitOptions`.
    fsp_options : FspOptions or mapping, optional
        Overrides of the default :class:`FspOptions`.
    pdo_options : PdoOptions or mapping, optional
        Distortion operator used for the likelihood.

    Example
    -------
    .. code-block:: python

        engine = LikelihoodEngine(solver, data)
        res = engine.compute_likelihood([10.0, 0.2], compute_sensitivity=True)
        res.log_likelihood, res.gradient
    """

    def __init__(
        self,
        solver,
        data: DataTensor,
        *,
        fit_options=None,
        fsp_options=None,
        pdo_options=None,
    ):
        self.solver = solver
        self.data = data
        self.fit_options: FitOptions = merge_options(FitOptions(), fit_options)
        self.fsp_options: FspOptions = merge_options(FspOptions(), fsp_options)
        self.pdo_options: PdoOptions = merge_options(PdoOptions(), pdo_options)

        species = list(solver.species)
        hidden = list(self.pdo_options.unobserved_species)
        unknown = [s for s in hidden if s not in species]
        if unknown:
            raise ConfigurationError(f"Unobserved species {unknown} are not model species {species}")
        clash = [s for s in hidden if s in data.species]
        if clash:
            raise ConfigurationError(f"Species {clash} are declared unobserved but linked to data")

        self.observed = observed_axes(species, data.species)
        self.unobserved = unobserved_axes(species, data.species)

        # reduced axes follow model order; data axes follow the link table
        data_axes = [species.index(s) for s in data.species]
        if len(set(data_axes)) != len(data_axes):
            raise ConfigurationError(f"Species linked more than once: {data.species}")
        self.axis_order = [self.observed.index(a) for a in data_axes]

        t0 = float(getattr(solver, "initial_time", 0.0))
        if t0 > data.times[0]:
            raise ConfigurationError(
                f"First data time {data.times[0]} is earlier than the initial time {t0}"
            )


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def parameter_names(self) -> list[str]:
        return list(self.solver.parameter_names)


    @property
    def fit_indices(self) -> np.ndarray:
        """Model parameter indices that are fitted, in gradient order."""
        return resolve_indices(
            self.fit_options.model_vars_to_fit,
            len(self.solver.parameter_values),
            "model_vars_to_fit",
        )


    @property
    def solve_times(self) -> np.ndarray:
        """Initial time plus every data time, sorted and unique."""
        t0 = float(getattr(self.solver, "initial_time", 0.0))
        return np.unique(np.concatenate([[t0], self.data.times]))


    def initial_guess(self) -> np.ndarray:
        """Current solver values of the fitted parameters."""
        values = np.asarray(self.solver.parameter_values, dtype=float)
        return values[self.fit_indices].copy()


    def with_options(self, *, fit_options=None, fsp_options=None) -> "LikelihoodEngine":
        """Copy of this engine with some options overridden."""
        return LikelihoodEngine(
            self.solver,
            self.data,
            fit_options=merge_options(self.fit_options, fit_options),
            fsp_options=merge_options(self.fsp_options, fsp_options),
            pdo_options=self.pdo_options,
        )


    # EVALUATION ------------------------------------------------------------------------

    def solve(
        self,
        pars=None,
        state_space: StateSpace | None = None,
        compute_sensitivity: bool = False,
        times=None,
    ) -> ModelSolution:
        """Solve the model for the fitted parameter values *pars*.

        Output times default to :attr:`solve_times`.
        """
        if state_space is not None and not state_space.is_consistent():
            logger.debug(
                "Discarding stale state space (%d states, %d index entries)",
                state_space.n_states, len(state_space.index_map),
            )
            state_space = None

        fit_idx = self.fit_indices
        all_pars = np.asarray(self.solver.parameter_values, dtype=float).copy()
        if pars is not None:
            pars = np.asarray(pars, dtype=float).reshape(-1)
            if pars.size != fit_idx.size:
                raise ValueError(
                    f"Expected {fit_idx.size} fitted parameter value(s), got {pars.size}"
                )
            all_pars[fit_idx] = pars

        return self.solver.solve(
            all_pars,
            self.solve_times if times is None else np.asarray(times, dtype=float).reshape(-1),
            options=self.fsp_options,
            state_space=state_space,
            sensitivity=compute_sensitivity,
        )


    def compute_likelihood(
        self,
        pars=None,
        state_space: StateSpace | None = None,
        compute_sensitivity: bool = False,
    ) -> LikelihoodResult:
        """Log-likelihood (and optionally its gradient) at natural-space *pars*.

        Parameters
        ----------
        pars : array_like, optional
            Values of the fitted parameters; defaults to the solver's current
            values.
        state_space : StateSpace, optional
            State set to reuse. A stale handle is discarded and the solver
            builds a fresh one.
        compute_sensitivity : bool
            Request sensitivities from the solver and return the gradient.

        Returns
        -------
        LikelihoodResult
        """
        pars_arr = (
            self.initial_guess() if pars is None
            else np.asarray(pars, dtype=float).reshape(-1)
        )

        solution = self.solve(pars_arr, state_space, compute_sensitivity)

        sens = None
        if compute_sensitivity:
            sens = [self.fitted_sensitivities(s.sensitivities) for s in solution.solutions]

        res = log_likelihood(
            self.data,
            solution.times,
            [s.p for s in solution.solutions],
            sens,
            unobserved=self.unobserved,
            axis_order=self.axis_order,
            pdo=self.pdo_options.pdo,
            times_to_fit=self.fit_options.times_to_fit,
            floor=self.fit_options.probability_floor,
            truncation=self.fit_options.truncation,
        )

        if self.fit_options.log_prior is not None:
            res.log_prior = self._log_prior(pars_arr)
            res.log_likelihood += res.log_prior
            if res.gradient is not None:
                res.gradient = res.gradient + self._log_prior_gradient(pars_arr)

        res.solution = solution
        return res


    def fitted_sensitivities(self, sensitivities) -> list:
        """Sensitivities of the fitted parameters, in :attr:`fit_indices` order.

        A solver may return one sensitivity per model parameter or one per
        fitted parameter; the first is subset by :attr:`fit_indices`, the
        second is used as given.
        """
        if sensitivities is None:
            raise ConfigurationError(
                "Solver returned no sensitivities although they were requested"
            )
        sensitivities = list(sensitivities)
        fit_idx = self.fit_indices
        n_model = len(self.solver.parameter_values)
        if len(sensitivities) == n_model:
            return [sensitivities[i] for i in fit_idx]
        if len(sensitivities) == fit_idx.size:
            return sensitivities
        raise ConfigurationError(
            f"Solver returned {len(sensitivities)} sensitivities; expected {n_model} "
            f"(all model parameters) or {fit_idx.size} (fitted parameters)"
        )


    def _log_prior(self, pars: np.ndarray) -> float:
        return float(np.sum(self.fit_options.log_prior(pars)))


    def _log_prior_gradient(self, pars: np.ndarray) -> np.ndarray:
        if self.fit_options.log_prior_gradient is not None:
            return np.asarray(self.fit_options.log_prior_gradient(pars), dtype=float).reshape(-1)
        # forward differences when no analytic prior gradient is supplied
        eps = 1e-7 * np.maximum(np.abs(pars), 1.0)
        return np.asarray(approx_fprime(pars, self._log_prior, eps), dtype=float).reshape(-1)


    def minus_log_likelihood(
        self,
        log_pars,
        state_space: StateSpace | None = None,
        compute_sensitivity: bool = False,
    ) -> tuple[float, np.ndarray | None]:
        """Negative log-likelihood at ``exp(log_pars)`` and its log-space gradient.

        The gradient is scaled by ``exp(log_pars)`` (chain rule), so unconstrained
        optimizers can work in log-space while rates stay positive.
        """
        log_pars = np.asarray(log_pars, dtype=float).reshape(-1)
        pars = np.exp(log_pars)
        res = self.compute_likelihood(pars, state_space, compute_sensitivity)
        grad = None if res.gradient is None else -res.gradient * pars
        return -res.log_likelihood, grad


    def compute_fim(
        self,
        pars=None,
        times=None,
        state_space: StateSpace | None = None,
    ) -> list[np.ndarray]:
        """Single-cell FIMs of the fitted parameters at candidate measurement times.

        Runs the sensitivity solve and aggregates it with a
        :class:`~cmeinfer.fim.FimAggregator` over the observed species, using
        the engine's distortion operator.

        Parameters
        ----------
        pars : array_like, optional
            Values of the fitted parameters; defaults to the solver's values.
        times : array_like, optional
            Candidate times; defaults to the data times.
        state_space : StateSpace, optional
            State set to reuse.

        Returns
        -------
        list[np.ndarray]
            One FIM per time, each ``(n_fit, n_fit)``.
        """
        times = self.data.times if times is None else times
        solution = self.solve(pars, state_space, compute_sensitivity=True, times=times)
        fitted = ModelSolution(
            solutions=[
                TimeSolution(s.time, s.p, self.fitted_sensitivities(s.sensitivities))
                for s in solution.solutions
            ],
            state_space=solution.state_space,
            bounds=solution.bounds,
        )
        return FimAggregator(unobserved_axes=self.unobserved).compute_fim(
            fitted, self.pdo_options.pdo
        )


    def likelihood_sweep(
        self,
        par_indices: Sequence[int],
        scaling_range=None,
        state_space: StateSpace | None = None,
    ) -> "LikelihoodSweep":
        """Evaluate the log-likelihood on a grid of scaled parameter values.

        Parameters
        ----------
        par_indices : sequence of int
            One or two model parameter indices to vary.
        scaling_range : array_like, optional
            Multiplicative factors applied to the current values; defaults to
            ``linspace(0.5, 1.5, 15)``.
        state_space : StateSpace, optional
            State set reused across the sweep.

        Returns
        -------
        LikelihoodSweep
        """
        par_indices = [int(i) for i in par_indices]
        if len(par_indices) not in (1, 2):
            raise ValueError("likelihood_sweep supports one or two parameters")
        scaling = (
            np.linspace(0.5, 1.5, 15) if scaling_range is None
            else np.asarray(scaling_range, dtype=float).reshape(-1)
        )

        sweep_engine = self.with_options(fit_options={"model_vars_to_fit": par_indices})
        pars0 = sweep_engine.initial_guess()
        n = scaling.size

        if len(par_indices) == 1:
            values = np.array([
                sweep_engine.compute_likelihood(pars0 * s, state_space).log_likelihood
                for s in scaling
            ])
        else:
            values = np.zeros((n, n))
            for i in range(n):
                for j in range(n):
                    pars = pars0 * scaling[[i, j]]
                    values[i, j] = sweep_engine.compute_likelihood(pars, state_space).log_likelihood

        return LikelihoodSweep(
            par_indices=par_indices,
            par_names=[self.parameter_names[i] for i in par_indices],
            base_values=pars0,
            scaling=scaling,
            log_likelihood=values,
        )


# SWEEP RESULT ==========================================================================

@dataclass
class LikelihoodSweep:
    """Log-likelihood over a grid of scaled parameter values."""

    par_indices: list[int]
    par_names: list[str]
    base_values: np.ndarray
    scaling: np.ndarray
    log_likelihood: np.ndarray


    @property
    def best(self) -> np.ndarray:
        """Parameter values at the grid point with the largest log-likelihood."""
        idx = np.unravel_index(np.argmax(self.log_likelihood), self.log_likelihood.shape)
        return self.base_values * self.scaling[list(idx)]


    def plot(self, *, figsize: tuple = (6, 5)):
        """Line (one parameter) or filled contour (two parameters) of the sweep.

        Returns
        -------
        fig : matplotlib.figure.Figure
        ax : matplotlib.axes.Axes
        """
        import matplotlib.pyplot as plt

        fig, ax = plt.subplots(figsize=figsize)
        x = self.scaling * self.base_values[0]

        if self.log_likelihood.ndim == 1:
            ax.plot(x, self.log_likelihood, "o-")
            ax.axvline(self.base_values[0], color="k", ls="--")
            ax.set_xlabel(self.par_names[0])
            ax.set_ylabel("log-likelihood")
        else:
            y = self.scaling * self.base_values[1]
            # rows follow the first parameter
            cs = ax.contourf(y, x, self.log_likelihood, 30)
            fig.colorbar(cs, ax=ax, label="log-likelihood")
            ax.axhline(self.base_values[0], color="k", ls="--", lw=2)
            ax.axvline(self.base_values[1], color="k", ls="--", lw=2)
            best = self.best
            ax.plot(best[1], best[0], "ro", ms=12)
            ax.set_xlabel(self.par_names[1])
            ax.set_ylabel(self.par_names[0])

        ax.grid(True, alpha=0.3)
        return fig, ax
