#########################################################################################
##
##                   EXPERIMENT DESIGN: CELL-COUNT ALLOCATION SEARCH
##                                    (design.py)
##
##         Greedy single-unit exchange over the number of cells measured at
##         each time point, scored by a scalar criterion of the total FIM.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence, Union

import numpy as np

from .fim import ExperimentEvaluation, total_fim


logger = logging.getLogger(__name__)

__all__ = [
    "determinant_criterion",
    "smallest_eigenvalue_criterion",
    "trace_criterion",
    "inverse_trace_criterion",
    "SubspaceCriterion",
    "get_criterion",
    "Scanning",
    "Converged",
    "DesignResult",
    "optimize_cell_counts",
    "is_locally_optimal",
]


# CRITERIA ==============================================================================
#
# Every criterion maps a total FIM to a value that is minimised.

def _sym(F: np.ndarray) -> np.ndarray:
    return 0.5 * (F + F.T)


def determinant_criterion(F: np.ndarray) -> float:
    """D-optimality: ``-det(F)``."""
    return -float(np.linalg.det(F))


def smallest_eigenvalue_criterion(F: np.ndarray) -> float:
    """E-optimality: ``-min eig(F)``."""
    return -float(np.linalg.eigvalsh(_sym(F)).min())


def trace_criterion(F: np.ndarray) -> float:
    """Trace of the FIM, maximised: ``-trace(F)``."""
    return -float(np.trace(F))


def inverse_trace_criterion(F: np.ndarray) -> float:
    """A-optimality on the covariance: ``trace(inv(F))``; ``inf`` when singular."""
    if np.linalg.matrix_rank(F) < F.shape[0]:
        return np.inf
    return float(np.trace(np.linalg.inv(F)))


class SubspaceCriterion:
    """Determinant of the inverse FIM projected onto selected parameters.

    Parameters
    ----------
    indices : sequence of int
        Parameter indices spanning the subspace of interest.

    Notes
    -----
    Evaluates ``det(E inv(F) Eᵀ)`` with ``E`` the rows of the identity
    selected by *indices*. A singular ``F`` scores ``inf``.
    """

    def __init__(self, indices: Sequence[int]):
        self.indices = [int(i) for i in indices]
        if not self.indices:
            raise ValueError("SubspaceCriterion requires at least one parameter index")


    def __call__(self, F: np.ndarray) -> float:
        n_p = F.shape[0]
        if max(self.indices) >= n_p or min(self.indices) < 0:
            raise IndexError(f"subspace indices {self.indices} out of range for {n_p} parameters")
        if np.linalg.matrix_rank(F) < n_p:
            return np.inf
        E = np.eye(n_p)[self.indices]
        return float(np.linalg.det(E @ np.linalg.inv(F) @ E.T))


    def __repr__(self) -> str:
        return f"SubspaceCriterion({self.indices})"


_CRITERIA = {
    "determinant": determinant_criterion,
    "d": determinant_criterion,
    "smallest_eigenvalue": smallest_eigenvalue_criterion,
    "smallest eigenvalue": smallest_eigenvalue_criterion,
    "e": smallest_eigenvalue_criterion,
    "trace": trace_criterion,
    "inverse_trace": inverse_trace_criterion,
    "a": inverse_trace_criterion,
}

Criterion = Union[str, Sequence[int], Callable[[np.ndarray], float]]


def get_criterion(criterion: Criterion) -> Callable[[np.ndarray], float]:
    """Resolve a criterion name, index list or callable to a minimisation objective.

    Names are case-insensitive: ``"determinant"``/``"D"``,
    ``"smallest_eigenvalue"``/``"E"``, ``"trace"``, ``"inverse_trace"``/``"A"``.
    A sequence of parameter indices builds a :class:`SubspaceCriterion`.
    """
    if callable(criterion):
        return criterion
    if isinstance(criterion, str):
        try:
            return _CRITERIA[criterion.strip().lower()]
        except KeyError:
            raise ValueError(
                f"Unknown design criterion {criterion!r}. "
                f"Choose from {sorted(set(_CRITERIA))} or pass parameter indices."
            ) from None
    return SubspaceCriterion(criterion)


# SEARCH STATES =========================================================================

@dataclass(frozen=True)
class Scanning:
    """Examining time point ``index``; ``moved`` records a move in this sweep."""

    index: int
    moved: bool = False


@dataclass(frozen=True)
class Converged:
    """A full sweep made no move."""


# RESULT ================================================================================

@dataclass
class DesignResult:
    """Outcome of :func:`optimize_cell_counts`.

    Attributes
    ----------
    cell_counts : np.ndarray
        Integer allocation, one entry per time point.
    criterion_value : float
        Minimised criterion at ``cell_counts``.
    n_moves : int
        Number of committed single-unit moves.
    n_sweeps : int
        Number of sweeps over the time points, the final (move-free) one
        included.
    evaluation : ExperimentEvaluation
        Total FIM, covariance estimate and metrics of the allocation.
    """

    cell_counts: np.ndarray
    criterion_value: float
    n_moves: int
    n_sweeps: int
    evaluation: ExperimentEvaluation


# SEARCH ================================================================================

def _score(criterion, F: np.ndarray) -> float:
    value = float(criterion(F))
    return np.inf if np.isnan(value) else value


def _best_move(fims, counts: np.ndarray, i: int, criterion) -> tuple[int, float]:
    """Best destination for one unit taken from time point *i*.

    Ties resolve to the lowest index; the unit stays at *i* unless another
    destination is strictly better.
    """
    reduced = counts.copy()
    reduced[i] -= 1
    base = total_fim(fims, reduced)
    scores = np.array([_score(criterion, base + F) for F in fims])
    k = int(np.argmin(scores))
    if scores[i] <= scores[k]:
        return i, float(scores[i])
    return k, float(scores[k])


def optimize_cell_counts(
    fims: Sequence[np.ndarray],
    n_cells_total: int | None = None,
    criterion: Criterion = "smallest_eigenvalue",
    initial=None,
) -> DesignResult:
    """Allocate a cell budget across time points by greedy single-unit exchange.

    Starting from *initial* (or the whole budget on the first time point), the
    search scans time points in order. At time point ``i`` with cells left it
    removes one cell and tries every destination, ``i`` included. The
    best destination is committed if it strictly improves on putting the cell
    back, and the scan stays at ``i``; otherwise the scan advances. The search
    ends after a sweep without moves.

    The result is a local optimum under single-unit exchanges, not a global
    optimum: different seeds can converge to different allocations.

    Parameters
    ----------
    fims : sequence of np.ndarray
        Single-cell FIM of each candidate time point.
    n_cells_total : int, optional
        Budget. Required when *initial* is not given.
    criterion : str, sequence of int or callable
        See :func:`get_criterion`. Defaults to E-optimality.
    initial : array_like of int, optional
        Seed allocation; copied, never modified.

    Returns
    -------
    DesignResult
    """
    n_t = len(fims)
    if n_t == 0:
        raise ValueError("at least one candidate time point is required")
    crit = get_criterion(criterion)

    if initial is None:
        if n_cells_total is None:
            raise ValueError("n_cells_total is required when no initial allocation is given")
        if int(n_cells_total) != n_cells_total or n_cells_total < 0:
            raise ValueError("n_cells_total must be a non-negative integer")
        counts = np.zeros(n_t, dtype=np.int64)
        counts[0] = int(n_cells_total)
    else:
        seed = np.asarray(initial).reshape(-1)
        if seed.size != n_t:
            raise ValueError(f"initial allocation has {seed.size} entries for {n_t} time points")
        if np.any(seed < 0) or not np.all(np.equal(np.mod(seed, 1), 0)):
            raise ValueError("initial allocation must contain non-negative integers")
        counts = seed.astype(np.int64).copy()
        if n_cells_total is not None and int(counts.sum()) != int(n_cells_total):
            raise ValueError(
                f"initial allocation sums to {int(counts.sum())}, budget is {n_cells_total}"
            )

    n_moves = 0
    n_sweeps = 1
    state: Scanning | Converged = Scanning(0)

    while not isinstance(state, Converged):
        i = state.index

        if counts[i] > 0:
            k, value = _best_move(fims, counts, i, crit)
            if k != i:
                counts[i] -= 1
                counts[k] += 1
                n_moves += 1
                logger.debug("move one cell %d -> %d (criterion %.6g)", i, k, value)
                state = Scanning(i, moved=True)
                continue

        if i + 1 < n_t:
            state = Scanning(i + 1, moved=state.moved)
        elif state.moved:
            n_sweeps += 1
            state = Scanning(0)
        else:
            state = Converged()

    fim = total_fim(fims, counts)
    value = _score(crit, fim)
    logger.info(
        "Cell allocation converged after %d move(s) in %d sweep(s): %s",
        n_moves, n_sweeps, counts.tolist(),
    )
    return DesignResult(
        cell_counts=counts,
        criterion_value=value,
        n_moves=n_moves,
        n_sweeps=n_sweeps,
        evaluation=ExperimentEvaluation(fim, counts),
    )


def is_locally_optimal(fims: Sequence[np.ndarray], cell_counts, criterion: Criterion = "smallest_eigenvalue") -> bool:
    """True when no single-unit move strictly improves the criterion.

    This is the stopping condition of :func:`optimize_cell_counts`, checked
    directly on an allocation.
    """
    crit = get_criterion(criterion)
    counts = np.asarray(cell_counts, dtype=np.int64).reshape(-1)
    for i in range(counts.size):
        if counts[i] > 0 and _best_move(fims, counts, i, crit)[0] != i:
            return False
    return True
