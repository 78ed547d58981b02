#########################################################################################
##
##                       PROBABILITY / SENSITIVITY TENSOR ADAPTER
##                                   (tensors.py)
##
##         Reduces model tensors to the observed species, reconciles their
##         extent with the empirical data window and applies the probability
##         floor used by the likelihood.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .config import PROBABILITY_FLOOR, TRUNCATION_POLICIES
from .errors import AlignmentError, ConfigurationError
from .interfaces import Reducible, as_reducible


__all__ = [
    "observed_axes",
    "unobserved_axes",
    "marginalize",
    "align_to_shape",
    "apply_floor",
    "AlignedTensors",
    "align_solution",
]


# SPECIES LINKS =========================================================================

def _linked_names(linked_species) -> list[str]:
    names = []
    for item in linked_species:
        if isinstance(item, str):
            names.append(item)
        else:
            names.append(str(item[0]))
    return names


def observed_axes(species: Sequence[str], linked_species) -> list[int]:
    """Axes of the model state space that are linked to a data column.

    Parameters
    ----------
    species : sequence of str
        Model species, one per state-space axis.
    linked_species : sequence
        Species-link table as ``(species, column)`` pairs, or bare species
        names.

    Returns
    -------
    list[int]
        Observed axes in model species order.
    """
    species = list(species)
    names = _linked_names(linked_species)
    unknown = [n for n in names if n not in species]
    if unknown:
        raise ConfigurationError(
            f"Linked species {unknown} are not model species {species}"
        )
    return [i for i, s in enumerate(species) if s in names]


def unobserved_axes(species: Sequence[str], linked_species) -> list[int]:
    """Axes that are summed out before comparing against data."""
    kept = set(observed_axes(species, linked_species))
    return [i for i in range(len(species)) if i not in kept]


# REDUCTION =============================================================================

def marginalize(tensor, axes: Sequence[int]) -> Reducible:
    """Sum *tensor* over *axes*; returns the tensor unchanged when *axes* is empty."""
    tensor = as_reducible(tensor)
    if len(axes) == 0:
        return tensor
    return tensor.sum_over_axes(list(axes))


# ALIGNMENT =============================================================================

def align_to_shape(array, target_shape: Sequence[int]) -> np.ndarray:
    """Zero-pad or truncate *array* so that its shape equals *target_shape*.

    Axes where the model is shorter than the data are padded with zeros
    (unmodelled outcomes), axes where it is longer are cut at the data extent.
    An array that already has *target_shape* is returned as-is.

    Raises
    ------
    AlignmentError
        If the number of axes differs.
    """
    arr = np.asarray(array, dtype=float)
    target = tuple(int(n) for n in target_shape)

    if arr.ndim != len(target):
        raise AlignmentError(
            f"Model tensor has {arr.ndim} observed axis/axes {arr.shape} but the "
            f"data tensor slice has {len(target)} {target}. Check that the "
            "species-link table matches the data columns."
        )

    if arr.shape == target:
        return arr

    trunc = tuple(slice(0, min(n, t)) for n, t in zip(arr.shape, target))
    arr = arr[trunc]

    pad = [(0, max(t - n, 0)) for n, t in zip(arr.shape, target)]
    if any(after for _, after in pad):
        arr = np.pad(arr, pad, mode="constant", constant_values=0.0)
    return arr


def apply_floor(p, floor: float = PROBABILITY_FLOOR) -> np.ndarray:
    """Clamp probabilities from below so that ``log`` stays finite."""
    return np.maximum(np.asarray(p, dtype=float), floor)


# SOLUTION ALIGNMENT ====================================================================

@dataclass
class AlignedTensors:
    """Model tensors reduced and aligned to one data time slice.

    Attributes
    ----------
    p : np.ndarray
        Aligned probabilities before flooring.
    p_floored : np.ndarray
        Aligned probabilities clamped at the floor.
    sensitivities : list[np.ndarray] or None
        Aligned sensitivities, one per parameter, same shape as ``p``.
    discarded_mass : float
        Probability mass cut off by truncation (before renormalisation).
    """

    p: np.ndarray
    p_floored: np.ndarray
    sensitivities: list[np.ndarray] | None
    discarded_mass: float = 0.0


def align_solution(
    p,
    sensitivities=None,
    *,
    target_shape: Sequence[int],
    unobserved: Sequence[int] = (),
    axis_order: Sequence[int] | None = None,
    pdo=None,
    floor: float = PROBABILITY_FLOOR,
    truncation: str = "discard",
) -> AlignedTensors:
    """Distort, marginalise and align one probability tensor and its sensitivities.

    The same sequence of operations is applied to the probability tensor and to
    every sensitivity tensor, so cell indices stay aligned.

    Parameters
    ----------
    p : Reducible or array_like
        Model distribution over the full state space.
    sensitivities : sequence, optional
        ``dp/dθ_k`` tensors with the same shape as *p*.
    target_shape : sequence of int
        Extent of the data slice along each observed axis.
    unobserved : sequence of int
        Axes summed out before alignment.
    axis_order : sequence of int, optional
        Permutation applied to the reduced axes so they follow the data axis
        order.
    pdo : DistortionOperator, optional
        Applied to *p* (and, via its derivative, to each sensitivity) before
        marginalisation.
    floor : float
        Probability floor.
    truncation : str
        Policy for mass outside the data window (``"discard"``, ``"warn"`` or
        ``"renormalize"``).

    Returns
    -------
    AlignedTensors
    """
    if truncation not in TRUNCATION_POLICIES:
        raise ConfigurationError(f"Unknown truncation policy {truncation!r}")

    px = as_reducible(p)
    sx = None if sensitivities is None else [as_reducible(s) for s in sensitivities]

    if pdo is not None:
        if sx is not None:
            sx = [
                as_reducible(pdo.compute_observation_dist_diff(px, s, k))
                for k, s in enumerate(sx)
            ]
        px = as_reducible(pdo.compute_observation_dist(px))

    def _reduce(t) -> np.ndarray:
        arr = np.asarray(marginalize(t, unobserved).as_dense_array(), dtype=float)
        if axis_order is not None and arr.ndim == len(axis_order):
            arr = np.transpose(arr, tuple(axis_order))
        return arr

    p_red = _reduce(px)
    p_al = align_to_shape(p_red, target_shape)

    total = float(p_red.sum())
    kept = float(p_al.sum())
    discarded = max(total - kept, 0.0)

    s_red = s_al = None
    if sx is not None:
        s_red = [_reduce(s) for s in sx]
        s_al = [align_to_shape(s, target_shape) for s in s_red]

    if discarded > 0.0:
        if truncation == "warn":
            warnings.warn(
                f"Truncating model output to data window {tuple(target_shape)} "
                f"discards probability mass {discarded:.3g}",
                UserWarning,
                stacklevel=2,
            )
        elif truncation == "renormalize" and kept > 0.0:
            scale = total / kept
            if s_al is not None:
                # d(p * M/m) = s * M/m + p * (dM * m - M * dm) / m^2
                s_al = [
                    s_a * scale + p_al * (float(s_r.sum()) * kept - total * float(s_a.sum())) / kept**2
                    for s_a, s_r in zip(s_al, s_red)
                ]
            p_al = p_al * scale

    return AlignedTensors(
        p=p_al,
        p_floored=apply_floor(p_al, floor),
        sensitivities=s_al,
        discarded_mass=discarded,
    )
