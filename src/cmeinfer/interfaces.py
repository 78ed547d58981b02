#########################################################################################
##
##                        EXTERNAL COLLABORATOR INTERFACES
##                                 (interfaces.py)
##
##         Protocols for the FSP solver, the distortion operator and the
##         single-cell FIM, plus light-weight containers for their output.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np


# REDUCIBLE TENSORS =====================================================================

@runtime_checkable
class Reducible(Protocol):
    """Probability or sensitivity tensor with one axis per species."""

    def sum_over_axes(self, axes: Sequence[int]) -> "Reducible":
        ...

    def as_dense_array(self) -> np.ndarray:
        ...


class DenseTensor:
    """:class:`Reducible` backed by a dense numpy array.

    Parameters
    ----------
    data : array_like
        Tensor values, one axis per species.
    """

    __slots__ = ("data",)

    def __init__(self, data):
        self.data = np.asarray(data, dtype=float)


    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape


    def sum_over_axes(self, axes: Sequence[int]) -> "DenseTensor":
        """Sum out *axes*; the remaining axes keep their relative order."""
        axes = tuple(sorted({int(a) for a in axes}))
        if not axes:
            return DenseTensor(self.data)
        for a in axes:
            if a < 0 or a >= self.data.ndim:
                raise IndexError(
                    f"axis {a} out of range for tensor with {self.data.ndim} axes"
                )
        return DenseTensor(self.data.sum(axis=axes))


    def as_dense_array(self) -> np.ndarray:
        return self.data


    def __repr__(self) -> str:
        return f"DenseTensor(shape={self.data.shape})"


def as_reducible(obj) -> Reducible:
    """Wrap arrays in :class:`DenseTensor`; pass through anything already reducible."""
    if isinstance(obj, Reducible):
        return obj
    return DenseTensor(obj)


# STATE SPACE ===========================================================================

@dataclass(frozen=True)
class StateSpace:
    """Immutable handle to an enumerated FSP state set.

    Parameters
    ----------
    states : np.ndarray
        Integer array of shape ``(n_species, n_states)``.
    index_map : mapping
        Maps a state tuple to its column in *states*.
    bounds : array_like, optional
        Projection bounds that produced this state set.

    Notes
    -----
    A handle whose state count differs from its index-map size is stale. Callers
    discard stale handles and let the solver build a fresh state set; handles
    are never repaired in place.
    """

    states: np.ndarray
    index_map: Mapping[tuple, int]
    bounds: Any = None


    @classmethod
    def from_states(cls, states, bounds=None) -> "StateSpace":
        """Build a consistent handle from a ``(n_species, n_states)`` array."""
        arr = np.asarray(states, dtype=int)
        if arr.ndim != 2:
            raise ValueError("states must have shape (n_species, n_states)")
        index_map = {tuple(int(v) for v in arr[:, j]): j for j in range(arr.shape[1])}
        return cls(states=arr, index_map=index_map, bounds=bounds)


    @property
    def n_states(self) -> int:
        return int(np.shape(self.states)[1])


    def is_consistent(self) -> bool:
        """True when the state list and index map describe the same states."""
        return self.n_states == len(self.index_map)


# SOLVER OUTPUT =========================================================================

@dataclass
class TimeSolution:
    """Distribution (and optional sensitivities) at one output time."""

    time: float
    p: Reducible
    sensitivities: list[Reducible] | None = None


@dataclass
class ModelSolution:
    """Per-time output of one solver call."""

    solutions: list[TimeSolution] = field(default_factory=list)
    state_space: StateSpace | None = None
    bounds: Any = None


    @property
    def times(self) -> np.ndarray:
        return np.array([s.time for s in self.solutions], dtype=float)


    def __len__(self) -> int:
        return len(self.solutions)


    def __getitem__(self, idx: int) -> TimeSolution:
        return self.solutions[idx]


# COLLABORATOR PROTOCOLS ================================================================

class ModelSolver(Protocol):
    """External FSP solver bound to one reaction network.

    The solver owns the stoichiometry, propensities and initial condition; this
    package only supplies parameter values, output times, options and an
    optional state space to reuse.
    """

    species: Sequence[str]
    parameter_names: Sequence[str]
    parameter_values: Sequence[float]
    initial_time: float

    def solve(
        self,
        parameters: np.ndarray,
        times: np.ndarray,
        *,
        options: Any,
        state_space: StateSpace | None = None,
        sensitivity: bool = False,
    ) -> ModelSolution:
        ...


class DistortionOperator(Protocol):
    """Probabilistic distortion operator (true state → measurement)."""

    def compute_observation_dist(self, p: Reducible) -> Reducible:
        ...

    def compute_observation_dist_diff(
        self, p: Reducible, s: Reducible, param_index: int
    ) -> Reducible:
        ...


SingleCellFim = Callable[[Reducible, Sequence[Reducible], Any], np.ndarray]
