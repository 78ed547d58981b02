#########################################################################################
##
##                           SINGLE-CELL COUNT DATA TENSOR
##                                     (data.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import logging
import os
from typing import Sequence

import numpy as np
import pandas as pd

from .errors import ConfigurationError


logger = logging.getLogger(__name__)

__all__ = ["DataTensor", "load_data", "find_time_column"]


# CLASS =================================================================================

class DataTensor:

    """Sparse tensor of cell counts over ``(time bin, species values...)``.

    Stored in coordinate form: row ``k`` of ``subs`` holds the time-bin index
    followed by one observed count per linked species, and ``vals[k]`` is the
    number of cells observed in that state. Built once when data is loaded and
    treated as read-only afterwards.

    Parameters
    ----------
    subs : array_like
        Integer coordinates of shape ``(n_entries, 1 + n_species)``.
    vals : array_like
        Non-negative integer counts of shape ``(n_entries,)``.
    times : array_like
        Strictly increasing time of each time bin.
    species : sequence of str
        Model species linked to the data axes, in axis order.
    columns : sequence of str, optional
        Data column name per species axis.
    shape : sequence of int, optional
        Full tensor shape; defaults to ``(len(times), max(subs) + 1 ...)``.

    Notes
    -----
    Duplicate coordinates are summed.
    """

    def __init__(self, subs, vals, times, species, columns=None, shape=None):
        t = np.asarray(times, dtype=float).reshape(-1)
        species = [str(s) for s in species]
        n_sp = len(species)

        subs = np.asarray(subs, dtype=np.int64).reshape(-1, 1 + n_sp)
        v = np.asarray(vals)

        if v.ndim != 1 or v.size != subs.shape[0]:
            raise ValueError("DataTensor requires one count per coordinate row")
        if v.size and (not np.all(np.isfinite(v)) or np.any(v < 0)):
            raise ValueError("DataTensor counts must be non-negative")
        if v.size and not np.all(np.equal(np.mod(v, 1), 0)):
            raise ValueError("DataTensor counts must be integers")
        if np.any(subs < 0):
            raise ValueError("DataTensor coordinates must be non-negative")
        if t.size < 1:
            raise ValueError("DataTensor requires at least one time bin")
        if not np.all(np.diff(t) > 0):
            raise ValueError("DataTensor requires strictly increasing time")
        if subs.size and subs[:, 0].max() >= t.size:
            raise ValueError("DataTensor time-bin index exceeds number of times")

        if shape is None:
            extent = subs[:, 1:].max(axis=0) + 1 if subs.shape[0] else np.ones(n_sp, dtype=int)
            shape = (t.size, *[int(n) for n in extent])
        shape = tuple(int(n) for n in shape)
        if len(shape) != 1 + n_sp or shape[0] != t.size:
            raise ValueError(f"DataTensor shape {shape} inconsistent with times/species")
        if subs.shape[0] and np.any(subs.max(axis=0) >= np.asarray(shape)):
            raise ValueError("DataTensor coordinates exceed tensor shape")

        # merge duplicate coordinates
        if subs.shape[0]:
            uniq, inverse = np.unique(subs, axis=0, return_inverse=True)
            merged = np.zeros(uniq.shape[0], dtype=np.int64)
            np.add.at(merged, inverse.reshape(-1), v.astype(np.int64))
            subs, v = uniq, merged
        else:
            v = v.astype(np.int64)

        self.subs = subs
        self.vals = v
        self.times = t
        self.species = species
        self.columns = list(columns) if columns is not None else list(species)
        self.shape = shape


    @classmethod
    def from_samples(cls, times, values, species, *, time_points=None, columns=None):
        """Build a tensor from per-cell measurements.

        Parameters
        ----------
        times : array_like
            Measurement time of each cell, shape ``(n_cells,)``.
        values : array_like
            Observed counts, shape ``(n_cells,)`` or ``(n_cells, n_species)``.
        species : sequence of str
            Linked model species, one per column of *values*.
        time_points : array_like, optional
            Time bins; defaults to the sorted unique *times*.
        """
        t = np.asarray(times, dtype=float).reshape(-1)
        x = np.asarray(values)
        if x.ndim == 1:
            x = x.reshape(-1, 1)
        if x.shape[0] != t.size:
            raise ValueError("from_samples requires one row of values per cell time")
        if x.shape[1] != len(species):
            raise ValueError(
                f"values have {x.shape[1]} column(s) but {len(species)} species were given"
            )
        if np.any(x < 0) or not np.all(np.equal(np.mod(x, 1), 0)):
            raise ValueError("observed counts must be non-negative integers")

        bins = np.unique(t) if time_points is None else np.asarray(time_points, dtype=float)
        t_idx = np.searchsorted(bins, t)
        if np.any(t_idx >= bins.size) or np.any(bins[np.minimum(t_idx, bins.size - 1)] != t):
            raise ValueError("cell times must be members of time_points")

        subs = np.column_stack([t_idx, x.astype(np.int64)])
        return cls(subs, np.ones(t.size, dtype=np.int64), bins, species, columns=columns)


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def ndim(self) -> int:
        """Number of species axes (excluding time)."""
        return len(self.shape) - 1


    @property
    def slice_shape(self) -> tuple[int, ...]:
        """Shape of one time-bin slice."""
        return self.shape[1:]


    @property
    def n_times(self) -> int:
        return self.times.size


    @property
    def n_cells(self) -> np.ndarray:
        """Total number of cells per time bin."""
        out = np.zeros(self.n_times, dtype=np.int64)
        np.add.at(out, self.subs[:, 0], self.vals)
        return out


    # ACCESS ----------------------------------------------------------------------------

    def slice(self, index: int) -> np.ndarray:
        """Dense count array for time bin *index*."""
        if index < 0 or index >= self.n_times:
            raise IndexError(f"time-bin index {index} out of range (0..{self.n_times - 1})")
        out = np.zeros(self.slice_shape, dtype=float)
        mask = self.subs[:, 0] == index
        if np.any(mask):
            coords = tuple(self.subs[mask, 1:].T)
            np.add.at(out, coords, self.vals[mask])
        return out


    def to_dense(self) -> np.ndarray:
        """Dense count array of the full tensor."""
        out = np.zeros(self.shape, dtype=float)
        if self.subs.shape[0]:
            np.add.at(out, tuple(self.subs.T), self.vals)
        return out


    def marginal(self, axis: int) -> np.ndarray:
        """Counts per time bin and value of one species axis, shape ``(n_times, n_values)``."""
        if axis < 0 or axis >= self.ndim:
            raise IndexError(f"species axis {axis} out of range")
        out = np.zeros((self.n_times, self.shape[1 + axis]), dtype=float)
        np.add.at(out, (self.subs[:, 0], self.subs[:, 1 + axis]), self.vals)
        return out


    def __repr__(self) -> str:
        return (
            f"DataTensor(shape={self.shape}, species={self.species}, "
            f"n_cells={int(self.vals.sum())})"
        )


# LOADING ===============================================================================

def find_time_column(columns: Sequence[str]) -> str:
    """Return the single column whose name contains ``time`` (any case).

    Raises
    ------
    ConfigurationError
        If there is no such column or more than one.
    """
    candidates = [c for c in columns if "time" in str(c).lower()]
    if len(candidates) == 0:
        raise ConfigurationError(
            'Provided data set does not have required column named "time"'
        )
    if len(candidates) > 1:
        raise ConfigurationError(
            f"Provided data set has more than one candidate time column: {candidates}"
        )
    return candidates[0]


def load_data(
    source,
    linked_species,
    conditions=(),
    species: Sequence[str] | None = None,
) -> DataTensor:
    """Load single-cell measurements into a :class:`DataTensor`.

    Parameters
    ----------
    source : str, os.PathLike or pandas.DataFrame
        CSV file, or an already loaded table, with one row per cell.
    linked_species : sequence of (str, str)
        ``(model species, data column)`` pairs; each becomes one tensor axis.
    conditions : sequence of (str, object), optional
        ``(column, value)`` pairs; only rows matching every condition are kept.
    species : sequence of str, optional
        Model species; when given, axes follow model species order and
        unknown linked species are rejected.

    Returns
    -------
    DataTensor

    Raises
    ------
    ConfigurationError
        Missing or ambiguous time column, unknown columns or species.
    """
    if isinstance(source, pd.DataFrame):
        table = source
    elif isinstance(source, (str, os.PathLike)):
        table = pd.read_csv(source)
    else:
        raise TypeError(
            f"load_data expects a path or DataFrame, got {type(source).__name__}"
        )

    time_col = find_time_column(list(table.columns))

    links = [(str(s), str(c)) for s, c in linked_species]
    if not links:
        raise ConfigurationError("At least one linked species is required")
    missing = [c for _, c in links if c not in table.columns]
    if missing:
        raise ConfigurationError(f"Linked data column(s) {missing} not found in data")

    if species is not None:
        species = list(species)
        unknown = [s for s, _ in links if s not in species]
        if unknown:
            raise ConfigurationError(
                f"Linked species {unknown} are not model species {species}"
            )
        links.sort(key=lambda sc: species.index(sc[0]))

    cols = [c for _, c in links]
    table = table.dropna(subset=[time_col])

    # time bins come from the unfiltered table so bins align across conditions
    time_points = np.unique(table[time_col].to_numpy(dtype=float))

    for col, value in conditions:
        if col not in table.columns:
            raise ConfigurationError(f"Condition column {col!r} not found in data")
        table = table[table[col].astype(str) == str(value)]

    table = table.dropna(subset=cols)

    logger.info(
        "Loaded %d cells over %d time point(s) for species %s",
        len(table), table[time_col].nunique(), [s for s, _ in links],
    )

    return DataTensor.from_samples(
        table[time_col].to_numpy(dtype=float),
        table[cols].to_numpy(),
        species=[s for s, _ in links],
        time_points=time_points,
        columns=cols,
    )
