#########################################################################################
##
##                     FISHER INFORMATION: PER-TIME AND TOTAL FIMs
##                                      (fim.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .config import PROBABILITY_FLOOR
from .interfaces import ModelSolution, SingleCellFim, as_reducible
from .tensors import marginalize


logger = logging.getLogger(__name__)

__all__ = [
    "compute_single_cell_fim",
    "log_transform_fim",
    "total_fim",
    "FimMetrics",
    "ExperimentEvaluation",
    "FimAggregator",
    "evaluate_experiment",
]


# SINGLE-CELL FIM =======================================================================

def compute_single_cell_fim(p, sensitivities, pdo=None, floor: float = PROBABILITY_FLOOR) -> np.ndarray:
    """Fisher information contributed by one measured cell.

    ``F_ij = Σ_x s_i(x) s_j(x) / p(x)`` over states with ``p(x) > floor``. With a
    distortion operator, ``p`` and ``s`` are first mapped to the measurement
    space.

    Parameters
    ----------
    p : Reducible or array_like
        Distribution at one time.
    sensitivities : sequence
        ``dp/dθ_k`` for every parameter.
    pdo : DistortionOperator, optional
        Measurement distortion.
    floor : float
        States with probability at or below *floor* are ignored.

    Returns
    -------
    np.ndarray, shape (n_params, n_params)
    """
    px = as_reducible(p)
    sx = [as_reducible(s) for s in sensitivities]
    if pdo is not None:
        sx = [as_reducible(pdo.compute_observation_dist_diff(px, s, k)) for k, s in enumerate(sx)]
        px = as_reducible(pdo.compute_observation_dist(px))

    pv = np.asarray(px.as_dense_array(), dtype=float).reshape(-1)
    mask = pv > floor
    n_p = len(sx)
    if n_p == 0:
        return np.zeros((0, 0))

    S = np.empty((n_p, int(mask.sum())))
    for k, s in enumerate(sx):
        sv = np.asarray(s.as_dense_array(), dtype=float).reshape(-1)
        if sv.size != pv.size:
            raise ValueError(
                f"sensitivity {k} has {sv.size} entries, distribution has {pv.size}"
            )
        S[k] = sv[mask]

    F = (S / pv[mask]) @ S.T
    return 0.5 * (F + F.T)


def log_transform_fim(fim, theta) -> np.ndarray:
    """FIM with respect to ``log θ``: ``diag(θ) F diag(θ)``."""
    theta = np.asarray(theta, dtype=float).reshape(-1)
    return np.asarray(fim, dtype=float) * np.outer(theta, theta)


def total_fim(fims: Sequence[np.ndarray], cell_counts) -> np.ndarray:
    """``Σ_t N_t F_t`` over time points."""
    counts = np.asarray(cell_counts, dtype=float).reshape(-1)
    if counts.size != len(fims):
        raise ValueError(f"{counts.size} cell count(s) for {len(fims)} FIM(s)")
    if not len(fims):
        raise ValueError("at least one FIM is required")
    out = np.zeros_like(np.asarray(fims[0], dtype=float))
    for n, F in zip(counts, fims):
        out += n * np.asarray(F, dtype=float)
    return out


# HELPERS ===============================================================================

def _covariance_stats(covariance: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Standard errors and correlation matrix of a covariance estimate."""
    n_p = covariance.shape[0]
    std_errors = np.sqrt(np.maximum(np.diag(covariance), 0.0))

    corr = np.zeros((n_p, n_p))
    for i in range(n_p):
        for j in range(n_p):
            denom = std_errors[i] * std_errors[j]
            if denom > 0.0:
                corr[i, j] = covariance[i, j] / denom
            elif i == j:
                corr[i, j] = 1.0
    return std_errors, corr


def _print_param_table(param_names, param_values, std_errors, W=72):
    """Print the parameter value / std-error / rel-error table."""
    dash = "-" * W
    print(f"  {'Parameter':<22} {'Value':>12} {'Std Error':>12} {'Rel Error':>10}")
    print(dash)

    for i, name in enumerate(param_names):
        val = param_values[i] if param_values is not None else np.nan
        se = std_errors[i]

        if np.isfinite(val) and abs(val) > 1e-15 and np.isfinite(se):
            rel_str = f"{se / abs(val) * 100:.2f}%"
        else:
            rel_str = "N/A"

        print(f"  {name:<22} {val:>12.4g} {se:>12.4g} {rel_str:>10}")

    print(dash)


# RESULTS ===============================================================================

@dataclass(frozen=True)
class FimMetrics:
    """Scalar summaries of a total FIM."""

    det: float
    trace: float
    min_eigenvalue: float


    @classmethod
    def from_fim(cls, fim: np.ndarray) -> "FimMetrics":
        F = np.asarray(fim, dtype=float)
        eig = np.linalg.eigvalsh(0.5 * (F + F.T))
        return cls(
            det=float(np.linalg.det(F)),
            trace=float(np.trace(F)),
            min_eigenvalue=float(eig.min()),
        )


class ExperimentEvaluation:
    """Total FIM of a candidate experiment and what follows from it.

    Parameters
    ----------
    fim_total : np.ndarray
        ``Σ N_t F_t``.
    cell_counts : array_like
        Allocation the FIM was built from.
    param_names : list of str, optional
        Names used by :meth:`display`.
    param_values : array_like, optional
        Values used for relative errors in :meth:`display`.

    Attributes
    ----------
    rank : int
        Numerical rank of the total FIM.
    mle_covariance : np.ndarray or None
        ``inv(fim_total)``; ``None`` (undefined) when the FIM is rank
        deficient.
    metrics : FimMetrics
        Determinant, trace and smallest eigenvalue.
    std_errors, correlation : np.ndarray or None
        Derived from ``mle_covariance`` when it is defined.
    """

    def __init__(self, fim_total, cell_counts, param_names=None, param_values=None):
        self.fim_total = np.asarray(fim_total, dtype=float)
        self.cell_counts = np.asarray(cell_counts).reshape(-1)
        n_p = self.fim_total.shape[0]
        self.param_names = (
            list(param_names) if param_names is not None else [f"p{i}" for i in range(n_p)]
        )
        self.param_values = None if param_values is None else np.asarray(param_values, dtype=float)

        self.rank = int(np.linalg.matrix_rank(self.fim_total)) if n_p else 0
        self.metrics = FimMetrics.from_fim(self.fim_total)

        if self.rank < n_p:
            logger.info(
                "FIM has rank %d (< %d parameters) and is not invertible for this "
                "experiment design", self.rank, n_p,
            )
            self.mle_covariance = None
            self.std_errors = None
            self.correlation = None
        else:
            self.mle_covariance = np.linalg.inv(self.fim_total)
            self.std_errors, self.correlation = _covariance_stats(self.mle_covariance)


    @property
    def is_identifiable(self) -> bool:
        """True when the total FIM is full rank."""
        return self.mle_covariance is not None


    def display(self) -> None:
        """Print a formatted summary of the evaluated experiment."""
        W = 72
        line = "=" * W

        print(line)
        print("  Experiment Evaluation")
        print(line)
        print(f"  Cells per time : {self.cell_counts.tolist()}")
        print(f"  det(FIM)       : {self.metrics.det:.4g}")
        print(f"  trace(FIM)     : {self.metrics.trace:.4g}")
        print(f"  min eig(FIM)   : {self.metrics.min_eigenvalue:.4g}")

        if self.mle_covariance is None:
            print(f"\n  FIM rank {self.rank} < {self.fim_total.shape[0]}: "
                  "MLE covariance undefined")
        else:
            print()
            _print_param_table(self.param_names, self.param_values, self.std_errors, W)
        print(line)


    def plot(self, *, figsize: tuple = (6, 4.5)):
        """Bar chart of the total-FIM eigenvalue spectrum.

        Returns
        -------
        fig : matplotlib.figure.Figure
        ax : matplotlib.axes.Axes
        """
        import matplotlib.pyplot as plt

        ev = np.sort(np.linalg.eigvalsh(0.5 * (self.fim_total + self.fim_total.T)))[::-1]
        pos = ev > 0.0

        fig, ax = plt.subplots(figsize=figsize)
        colors = ["steelblue" if p else "salmon" for p in pos]
        ax.bar(range(len(ev)), np.where(pos, ev, np.abs(ev)), color=colors)

        pos_vals = ev[pos]
        if len(pos_vals) > 1 and pos_vals.max() / pos_vals.min() > 100.0:
            ax.set_yscale("log")

        ax.set_xticks(range(len(ev)))
        ax.set_xticklabels([f"λ{i + 1}" for i in range(len(ev))], fontsize=9)
        ax.set_xlabel("Eigendirection")
        ax.set_ylabel("Eigenvalue magnitude")
        ax.set_title("Total FIM Eigenvalue Spectrum")
        ax.grid(True, axis="y", alpha=0.3)
        return fig, ax


    def __repr__(self) -> str:
        return (
            f"ExperimentEvaluation(rank={self.rank}, det={self.metrics.det:.4g}, "
            f"trace={self.metrics.trace:.4g}, "
            f"min_eig={self.metrics.min_eigenvalue:.4g})"
        )


def evaluate_experiment(fims: Sequence[np.ndarray], cell_counts, **kwargs) -> ExperimentEvaluation:
    """Total FIM, MLE covariance estimate and metrics for an allocation."""
    return ExperimentEvaluation(total_fim(fims, cell_counts), cell_counts, **kwargs)


# AGGREGATOR ============================================================================

class FimAggregator:
    """Builds per-time single-cell FIMs from a sensitivity solution.

    Parameters
    ----------
    unobserved_axes : sequence of int
        State-space axes summed out of the distribution and of every
        sensitivity before the single-cell FIM is computed.
    single_cell_fim : callable
        ``(p, sensitivities, pdo) -> np.ndarray``; defaults to
        :func:`compute_single_cell_fim`.

    Example
    -------
    .. code-block:: python

        agg = FimAggregator(unobserved_axes=[0])
        fims = agg.compute_fim(sens_solution, pdo)
        ev = agg.evaluate_experiment(fims, [0, 100, 100])
    """

    def __init__(
        self,
        unobserved_axes: Sequence[int] = (),
        single_cell_fim: SingleCellFim | None = None,
    ):
        self.unobserved_axes = [int(a) for a in unobserved_axes]
        self.single_cell_fim = single_cell_fim or compute_single_cell_fim


    @classmethod
    def for_species(cls, species: Sequence[str], unobserved_species: Sequence[str], **kwargs):
        """Aggregator whose unobserved axes are given by species name."""
        species = list(species)
        unknown = [s for s in unobserved_species if s not in species]
        if unknown:
            raise ValueError(f"Unobserved species {unknown} are not model species {species}")
        axes = [i for i, s in enumerate(species) if s in set(unobserved_species)]
        return cls(unobserved_axes=axes, **kwargs)


    def compute_fim(self, solution: ModelSolution, pdo=None) -> list[np.ndarray]:
        """Single-cell FIM at every time point of *solution*.

        Parameters
        ----------
        solution : ModelSolution
            Solver output that includes sensitivities.
        pdo : DistortionOperator, optional
            Measurement distortion passed to the single-cell FIM.

        Returns
        -------
        list[np.ndarray]
            One FIM per time point, in solution order.
        """
        fims: list[np.ndarray] = []
        for sol in solution.solutions:
            if sol.sensitivities is None:
                raise ValueError(
                    f"Solution at t={sol.time} has no sensitivities; "
                    "solve with sensitivity=True"
                )
            if self.unobserved_axes:
                p = marginalize(sol.p, self.unobserved_axes)
                s = [marginalize(sk, self.unobserved_axes) for sk in sol.sensitivities]
            else:
                p, s = sol.p, sol.sensitivities
            fims.append(np.asarray(self.single_cell_fim(p, s, pdo), dtype=float))
        return fims


    def evaluate_experiment(self, fims, cell_counts, **kwargs) -> ExperimentEvaluation:
        """See :func:`evaluate_experiment`."""
        return evaluate_experiment(fims, cell_counts, **kwargs)
